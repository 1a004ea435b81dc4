#!/usr/bin/env python3
import logging
import time
from typing import Dict, List, Optional

from web3 import Web3

from logger_utils import with_fields


logger = logging.getLogger(__name__)


class NetworkError(ConnectionError):
    """Raised when no RPC endpoint could serve a request (includes timeouts)"""
    pass


class EVMProviderPool:
    """Read-only contract call capability over one or more JSON-RPC endpoints.

    The first endpoint that answers becomes sticky and is tried first on the
    next request; the preference is forgotten periodically so a recovered
    primary endpoint gets picked up again.
    """

    def __init__(self, urls: List[str], request_timeout_s: float = 10, preference_reset_minutes: int = 60):
        if not urls:
            raise ValueError("EVMProviderPool requires at least one URL")
        self.urls = urls
        self.request_timeout_s = request_timeout_s
        self.preference_reset_sec = max(1, int(preference_reset_minutes) * 60)
        self._last_reset_ts = 0.0
        self._sticky_index: Optional[int] = None
        self._clients: Dict[int, Web3] = {}

    def _should_reset_preferences(self) -> bool:
        now = time.time()
        if self._last_reset_ts == 0.0:
            self._last_reset_ts = now
            return False
        return (now - self._last_reset_ts) >= self.preference_reset_sec

    def _maybe_reset_preferences(self) -> None:
        if self._should_reset_preferences():
            self._last_reset_ts = time.time()
            self._sticky_index = None

    def _iter_indices_in_preference_order(self) -> List[int]:
        sticky = self._sticky_index
        if sticky is None:
            return list(range(len(self.urls)))
        return [sticky] + [i for i in range(len(self.urls)) if i != sticky]

    def _build_web3(self, index: int) -> Web3:
        return Web3(Web3.HTTPProvider(
            self.urls[index],
            request_kwargs={"timeout": self.request_timeout_s},
        ))

    def _get_web3(self, index: int) -> Web3:
        if index not in self._clients:
            self._clients[index] = self._build_web3(index)
        return self._clients[index]

    def ensure_connected(self) -> int:
        """Probe the endpoints and return the latest block number of the first reachable one"""
        self._maybe_reset_preferences()

        last_error: Optional[Exception] = None
        for i in self._iter_indices_in_preference_order():
            try:
                block_number = self._get_web3(i).eth.block_number
                self._sticky_index = i
                logger.debug("Connected to EVM RPC", extra=with_fields(url=self.urls[i], block=block_number))
                return block_number
            except Exception as e:
                last_error = e
                logger.warning("EVM RPC endpoint unreachable", extra=with_fields(url=self.urls[i], err=e))
                continue
        raise NetworkError(f"No EVM RPC endpoints are reachable: {last_error}")

    def call(self, address: str, payload: bytes) -> bytes:
        """Execute an ``eth_call`` against ``address`` at the latest block and return the raw result"""
        self._maybe_reset_preferences()

        to_address = Web3.to_checksum_address(address)
        last_error: Optional[Exception] = None

        for i in self._iter_indices_in_preference_order():
            try:
                result = self._get_web3(i).eth.call({"to": to_address, "data": payload})
                self._sticky_index = i
                return bytes(result)
            except Exception as e:
                last_error = e
                logger.debug("eth_call failed", extra=with_fields(url=self.urls[i], err=e))
                if self._sticky_index == i:
                    # sticky failed; clear it and fall back to full scan
                    self._sticky_index = None
                continue

        raise NetworkError(f"All EVM RPC endpoints failed for contract call: {last_error}")
