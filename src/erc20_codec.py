#!/usr/bin/env python3
"""
ERC20 call codec

Encodes and decodes the three read-only ERC20 functions the balance monitor
needs: decimals(), symbol() and balanceOf(address). The interface is fixed at
import time, no ABI files are loaded at runtime.

Each function carries its own result converter so callers receive a typed
value (int or str) rather than a tuple of loosely typed ABI values.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError as AbiDecodingError
from eth_abi.exceptions import EncodingError as AbiEncodingError
from eth_utils import function_signature_to_4byte_selector, is_hex_address, to_canonical_address


ADDRESS_SIZE = 20
WORD_SIZE = 32


class EncodingError(ValueError):
    """Raised when call arguments do not match a function's input signature"""
    pass


class DecodingError(ValueError):
    """Raised when return data cannot be decoded into a function's outputs"""
    pass


def _as_uint8(values: Tuple[Any, ...]) -> int:
    value = values[0]
    if not isinstance(value, int) or not 0 <= value <= 0xFF:
        raise DecodingError(f"decimals out of uint8 range: {value!r}")
    return value


def _as_string(values: Tuple[Any, ...]) -> str:
    value = values[0]
    if not isinstance(value, str):
        raise DecodingError(f"expected string result, got {type(value).__name__}")
    return value


def _as_uint256(values: Tuple[Any, ...]) -> int:
    value = values[0]
    if not isinstance(value, int) or value < 0:
        raise DecodingError(f"expected unsigned integer result, got {value!r}")
    return value


@dataclass(frozen=True)
class FunctionSignature:
    name: str
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    convert: Callable[[Tuple[Any, ...]], Any] = field(compare=False, repr=False)

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.canonical)


DECIMALS = FunctionSignature("decimals", (), ("uint8",), _as_uint8)
SYMBOL = FunctionSignature("symbol", (), ("string",), _as_string)
BALANCE_OF = FunctionSignature("balanceOf", ("address",), ("uint256",), _as_uint256)

ERC20_FUNCTIONS: Dict[str, FunctionSignature] = {
    fn.name: fn for fn in (DECIMALS, SYMBOL, BALANCE_OF)
}


def normalize_address(value: Any) -> bytes:
    """Return the 20 raw bytes of an address given as hex text or bytes"""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != ADDRESS_SIZE:
            raise EncodingError(
                f"address must be exactly {ADDRESS_SIZE} bytes, got {len(value)}"
            )
        return bytes(value)
    if isinstance(value, str):
        if not is_hex_address(value):
            raise EncodingError(f"invalid hex address: {value!r}")
        return to_canonical_address(value)
    raise EncodingError(f"address must be str or bytes, got {type(value).__name__}")


class ERC20Codec:
    """Stateless encoder/decoder for the fixed ERC20 read interface"""

    def __init__(self, functions: Optional[Dict[str, FunctionSignature]] = None):
        self.functions = dict(functions or ERC20_FUNCTIONS)

    def get_function(self, name: str) -> FunctionSignature:
        try:
            return self.functions[name]
        except KeyError:
            raise EncodingError(f"unsupported function: {name}") from None

    def _prepare_args(self, fn: FunctionSignature, args: Sequence[Any]) -> list:
        if len(args) != len(fn.inputs):
            raise EncodingError(
                f"{fn.canonical} takes {len(fn.inputs)} argument(s), got {len(args)}"
            )
        prepared = []
        for abi_type, value in zip(fn.inputs, args):
            if abi_type != "address":
                raise EncodingError(f"unsupported argument type {abi_type} in {fn.canonical}")
            prepared.append(normalize_address(value))
        return prepared

    def encode(self, name: str, args: Sequence[Any] = ()) -> bytes:
        """Build the call data (selector + encoded arguments) for ``name``"""
        fn = self.get_function(name)
        prepared = self._prepare_args(fn, args)
        try:
            encoded_args = encode(list(fn.inputs), prepared) if fn.inputs else b""
        except (AbiEncodingError, TypeError, ValueError) as exc:
            raise EncodingError(f"failed to encode {fn.canonical}: {exc}") from exc
        return fn.selector + encoded_args

    def decode(self, name: str, data: bytes) -> Any:
        """Decode return data of ``name`` into its typed result"""
        fn = self.get_function(name)
        data = bytes(data)
        min_size = WORD_SIZE * len(fn.outputs)
        if len(data) < min_size:
            raise DecodingError(
                f"{fn.canonical} returned {len(data)} bytes, need at least {min_size}"
            )
        try:
            values = decode(list(fn.outputs), data)
        except (AbiDecodingError, UnicodeDecodeError, OverflowError, ValueError) as exc:
            raise DecodingError(f"failed to decode {fn.canonical} result: {exc}") from exc
        return fn.convert(tuple(values))


# shared instance; the codec holds no mutable state
erc20_codec = ERC20Codec()
