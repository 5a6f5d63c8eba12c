"""
Read-only access to chain state.

The pipeline needs a handful of facts from the chain (balances, deployed
code, EntryPoint nonce, gas price, factory address prediction). They are
read through the ChainReader port so tests and alternative transports can
substitute their own implementation.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

import httpx
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from .config import NetworkConfig
from .exceptions import ChainUnavailableError, ContractNotDeployed
from .logging_utils import get_chain_logger

logger = logging.getLogger(__name__)


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256(signature)."""
    return bytes(Web3.keccak(text=signature)[:4])


def encode_call(signature: str, types: Sequence[str], args: Sequence[Any]) -> str:
    """ABI-encode a contract call as 0x-prefixed hex calldata."""
    return "0x" + (function_selector(signature) + encode(list(types), list(args))).hex()


class ChainReader(ABC):
    """Port for reading chain state."""

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""

    @abstractmethod
    async def get_token_balance(self, token_address: str, owner: str) -> int:
        """ERC-20 balance in the token's minor units."""

    @abstractmethod
    async def get_code(self, address: str) -> str:
        """Deployed bytecode as hex ("0x" when none)."""

    @abstractmethod
    async def get_nonce(self, entrypoint: str, sender: str, key: int = 0) -> int:
        """EntryPoint nonce for (sender, key)."""

    @abstractmethod
    async def get_gas_price(self) -> int:
        """Current gas price in wei."""

    @abstractmethod
    async def get_chain_id(self) -> int:
        ...

    @abstractmethod
    async def get_factory_address(self, factory: str, public_key: bytes, salt: bytes) -> str:
        """Counterfactual account address reported by the factory's getAddress."""

    async def is_deployed(self, address: str) -> bool:
        code = await self.get_code(address)
        return code not in ("", "0x", "0x0", None)


class JsonRpcChainReader(ChainReader):
    """
    ChainReader over plain JSON-RPC with endpoint failover.

    Endpoints are tried in priority order; the first one that answers wins.
    When every endpoint fails the call raises ChainUnavailableError.
    """

    def __init__(
        self,
        network: NetworkConfig,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not network.rpc_endpoints:
            raise ValueError(f"No RPC endpoints configured for {network.name}")
        self._network = network
        self._endpoints = sorted(network.rpc_endpoints, key=lambda e: e.priority)
        timeout = max(e.timeout_seconds for e in self._endpoints)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    @property
    def network(self) -> NetworkConfig:
        return self._network

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        chain_logger = get_chain_logger()
        last_error: Optional[str] = None

        for endpoint in self._endpoints:
            start = time.monotonic()
            try:
                response = await self._client.post(endpoint.url, json=payload)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                chain_logger.log_rpc_call(
                    method, endpoint.url, (time.monotonic() - start) * 1000, False, last_error
                )
                logger.warning(f"RPC {method} failed on {self._network.name}: {last_error}")
                continue

            chain_logger.log_rpc_call(
                method, endpoint.url, (time.monotonic() - start) * 1000, not data.get("error")
            )
            if data.get("error"):
                raise ChainUnavailableError(
                    f"RPC error ({method}) on {self._network.name}: {data['error']}",
                    service="rpc",
                    details={"method": method, "error": data["error"]},
                )
            return data.get("result")

        raise ChainUnavailableError(
            f"All RPC endpoints failed for {self._network.name} ({method}): {last_error}",
            service="rpc",
            details={"method": method, "chain": self._network.name},
        )

    async def _call(self, to: str, data: str) -> bytes:
        result = await self._rpc("eth_call", [{"to": to, "data": data}, "latest"])
        if not isinstance(result, str):
            raise ChainUnavailableError(
                f"Invalid eth_call result from {self._network.name}", service="rpc"
            )
        return bytes.fromhex(result[2:] if result.startswith("0x") else result)

    async def _call_decoded(self, to: str, data: str, types: Sequence[str], what: str) -> tuple:
        raw = await self._call(to, data)
        if not raw:
            raise ContractNotDeployed(
                f"{what}: no contract at {to} on {self._network.name}",
                service="rpc",
                details={"address": to, "chain": self._network.name},
            )
        try:
            return decode(types, raw)
        except DecodingError as e:
            raise ChainUnavailableError(
                f"{what}: undecodable result from {to} on {self._network.name}: {e}",
                service="rpc",
                details={"address": to, "chain": self._network.name},
            ) from e

    async def get_balance(self, address: str) -> int:
        result = await self._rpc("eth_getBalance", [address, "latest"])
        return int(result, 16)

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        data = encode_call(
            "balanceOf(address)", ["address"], [Web3.to_checksum_address(owner)]
        )
        (balance,) = await self._call_decoded(token_address, data, ["uint256"], "balanceOf")
        return balance

    async def get_code(self, address: str) -> str:
        result = await self._rpc("eth_getCode", [address, "latest"])
        return result or "0x"

    async def get_nonce(self, entrypoint: str, sender: str, key: int = 0) -> int:
        data = encode_call(
            "getNonce(address,uint192)",
            ["address", "uint192"],
            [Web3.to_checksum_address(sender), key],
        )
        (nonce,) = await self._call_decoded(entrypoint, data, ["uint256"], "getNonce")
        return nonce

    async def get_gas_price(self) -> int:
        result = await self._rpc("eth_gasPrice", [])
        return int(result, 16)

    async def get_chain_id(self) -> int:
        result = await self._rpc("eth_chainId", [])
        return int(result, 16)

    async def get_factory_address(self, factory: str, public_key: bytes, salt: bytes) -> str:
        data = encode_call("getAddress(bytes,bytes32)", ["bytes", "bytes32"], [public_key, salt])
        (address,) = await self._call_decoded(factory, data, ["address"], "getAddress")
        return Web3.to_checksum_address(address)

    async def close(self) -> None:
        await self._client.aclose()
