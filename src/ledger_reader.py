#!/usr/bin/env python3
"""
Ledger Reader

Reads token metadata and account balances from an ERC20 contract through the
call codec and an injected read-only contract call capability.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

from erc20_codec import ERC20Codec, erc20_codec
from logger_utils import with_fields


logger = logging.getLogger(__name__)


class ContractCaller(Protocol):
    def call(self, address: str, payload: bytes) -> bytes:
        ...


class ReadError(Exception):
    """Transient failure reading a balance; the caller skips this poll"""
    pass


class MetadataError(Exception):
    """Token metadata could not be fetched; amounts cannot be formatted safely"""
    pass


@dataclass(frozen=True)
class TokenMetadata:
    decimals: int
    symbol: str


class LedgerReader:
    def __init__(self, caller: ContractCaller, codec: Optional[ERC20Codec] = None):
        self.caller = caller
        self.codec = codec or erc20_codec
        self.metadata: Optional[TokenMetadata] = None

    def _call(self, contract_address: str, function_name: str, args: Sequence[Any] = ()) -> Any:
        payload = self.codec.encode(function_name, args)
        result = self.caller.call(contract_address, payload)
        return self.codec.decode(function_name, result)

    def fetch_metadata(self, token_address: str) -> TokenMetadata:
        """Fetch symbol and decimals once; the result is cached on the reader"""
        try:
            symbol = self._call(token_address, "symbol")
            decimals = self._call(token_address, "decimals")
        except Exception as e:
            logger.error("Failed to fetch token metadata", extra=with_fields(token=token_address, err=e))
            raise MetadataError(f"Failed to fetch metadata for token {token_address}: {e}") from e

        self.metadata = TokenMetadata(decimals=decimals, symbol=symbol)
        return self.metadata

    def fetch_balance(self, token_address: str, account_address: str) -> int:
        """Fetch the raw balance of ``account_address``; any failure becomes ReadError"""
        try:
            return self._call(token_address, "balanceOf", [account_address])
        except Exception as e:
            raise ReadError(f"Failed to fetch balance of {account_address}: {e}") from e
