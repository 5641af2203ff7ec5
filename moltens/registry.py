"""
moltens/registry.py

Read-only availability lookup against the registrar contract.

Calls `isAvailable(string) returns (bool)` through a plain JSON-RPC eth_call.
Without an RPC endpoint configured every valid name reports available; the
contract still has the final word when register() is sent.
"""

import logging
from typing import Optional

import httpx
from eth_abi import decode, encode
from eth_utils import keccak

from .errors import RegistryUnavailable


log = logging.getLogger(__name__)

IS_AVAILABLE_SELECTOR = keccak(text="isAvailable(string)")[:4]


def encode_is_available_call(label: str) -> str:
    return "0x" + (IS_AVAILABLE_SELECTOR + encode(["string"], [label])).hex()


class ContractRegistry:
    def __init__(
        self,
        contract_address: str,
        rpc_url: Optional[str] = None,
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.contract_address = contract_address.lower()
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.rpc_url)

    def is_available(self, label: str) -> bool:
        if not self.enabled:
            return True

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [
                {"to": self.contract_address, "data": encode_is_available_call(label)},
                "latest",
            ],
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(self.rpc_url, json=payload)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("isAvailable(%s) rpc failed: %s", label, str(e)[:200])
            raise RegistryUnavailable() from e

        if "error" in body or "result" not in body:
            log.warning("isAvailable(%s) rpc error: %s", label, body.get("error"))
            raise RegistryUnavailable()

        try:
            (available,) = decode(["bool"], bytes.fromhex(str(body["result"])[2:]))
        except Exception as e:
            log.warning("isAvailable(%s) returned undecodable data: %s", label, str(e)[:200])
            raise RegistryUnavailable() from e
        return bool(available)
