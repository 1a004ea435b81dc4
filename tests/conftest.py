"""Pytest configuration and shared fixtures."""

from typing import Any, Dict, List, Tuple

import pytest
from eth_abi import encode

from erc20_codec import erc20_codec
from rpc_failover import NetworkError


TOKEN = "0x967aEC3276b63c5E2262da9641DB9dbeBB07dC0d"
ACCOUNT = "0x25aB3Efd52e6470681CE037cD546Dc60726948D3"


class FakeCaller:
    """Deterministic stand-in for the RPC provider pool.

    Responses are keyed by function name; a queued list is consumed one entry
    per call, and an Exception entry is raised instead of returned.
    """

    def __init__(self, responses: Dict[str, Any]):
        self.responses = {name: list(value) if isinstance(value, list) else value
                          for name, value in responses.items()}
        self.calls: List[Tuple[str, bytes]] = []

    def _function_for(self, payload: bytes) -> str:
        for fn in erc20_codec.functions.values():
            if payload[:4] == fn.selector:
                return fn.name
        raise AssertionError(f"unexpected selector {payload[:4].hex()}")

    def call(self, address: str, payload: bytes) -> bytes:
        self.calls.append((address, payload))
        name = self._function_for(payload)
        response = self.responses[name]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def calls_to(self, name: str) -> int:
        return sum(1 for _, payload in self.calls if self._function_for(payload) == name)


class FakeSender:
    def __init__(self, fail: bool = False, status: int = 200):
        self.fail = fail
        self.status = status
        self.posts: List[Tuple[str, Dict[str, Any]]] = []

    def post(self, url: str, body: Dict[str, Any]) -> int:
        self.posts.append((url, body))
        if self.fail:
            raise NetworkError("webhook unreachable")
        return self.status


def uint_result(value: int) -> bytes:
    return encode(["uint256"], [value])


def string_result(value: str) -> bytes:
    return encode(["string"], [value])


@pytest.fixture
def token_responses() -> Dict[str, Any]:
    """Metadata responses for a 6-decimal token called USDT."""
    return {
        "symbol": string_result("USDT"),
        "decimals": uint_result(6),
    }


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()
