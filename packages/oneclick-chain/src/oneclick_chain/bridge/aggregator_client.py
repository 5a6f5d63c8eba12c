"""OKX DEX cross-chain aggregator client.

Requests are signed with HMAC-SHA256 over
``timestamp + METHOD + request_path + body`` and sent with the
``OK-ACCESS-*`` headers. Any non-"0" response code, HTTP failure or
missing credentials raises AggregatorUnavailable; the orchestrator
decides whether to fall back.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode, urlparse

import httpx

from ..config import AggregatorConfig
from ..exceptions import AggregatorUnavailable
from ..logging_utils import get_chain_logger

logger = logging.getLogger(__name__)


@dataclass
class AggregatorQuote:
    from_amount: int
    to_amount: int
    bridge_id: str
    estimated_time_seconds: int
    gas_fee: str = "0"
    bridge_fee: str = "0"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AggregatorTransaction:
    to: str
    data: str
    value: int
    gas_limit: Optional[int] = None
    gas_price: Optional[int] = None


@dataclass
class AggregatorStatus:
    status: str
    dest_tx_hash: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status.lower() in ("completed", "success")

    @property
    def is_failed(self) -> bool:
        return self.status.lower() in ("failed", "failure", "refunded")


def _int(value: Any, default: int = 0) -> int:
    if value in (None, ""):
        return default
    text = str(value)
    return int(text, 16) if text.startswith("0x") else int(text)


class OKXCrossChainClient:
    def __init__(self, config: AggregatorConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._base_path = urlparse(config.base_url).path.rstrip("/")

    @property
    def configured(self) -> bool:
        return self._config.has_credentials

    def sign(self, timestamp: str, method: str, request_path: str, body: str = "") -> str:
        message = f"{timestamp}{method.upper()}{request_path}{body}"
        digest = hmac.new(
            self._config.secret_key.encode("utf-8"),
            message.encode("utf-8"),
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def _headers(self, method: str, request_path: str, body: str = "") -> Dict[str, str]:
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return {
            "OK-ACCESS-KEY": self._config.api_key,
            "OK-ACCESS-SIGN": self.sign(timestamp, method, request_path, body),
            "OK-ACCESS-TIMESTAMP": timestamp,
            "OK-ACCESS-PASSPHRASE": self._config.passphrase,
            "OK-ACCESS-PROJECT": self._config.project_id,
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        if not self.configured:
            raise AggregatorUnavailable("Aggregator credentials not configured", service="okx")

        query = f"?{urlencode(params)}" if params else ""
        request_path = f"{self._base_path}{endpoint}{query}"
        body_text = json.dumps(body, separators=(",", ":")) if body is not None else ""
        url = f"{self._config.base_url.rstrip('/')}{endpoint}{query}"

        start = time.monotonic()
        try:
            response = await self._client.request(
                method,
                url,
                headers=self._headers(method, request_path, body_text),
                content=body_text or None,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            get_chain_logger().log_rpc_call(
                f"okx {endpoint}", url, (time.monotonic() - start) * 1000, False, str(e)
            )
            raise AggregatorUnavailable(
                f"Aggregator request {endpoint} failed: {e}", service="okx"
            ) from e

        get_chain_logger().log_rpc_call(
            f"okx {endpoint}", url, (time.monotonic() - start) * 1000, data.get("code") == "0"
        )
        if data.get("code") != "0":
            raise AggregatorUnavailable(
                f"Aggregator error on {endpoint}: {data.get('msg') or 'Unknown error'}",
                service="okx",
                details={"code": data.get("code")},
            )
        result = data.get("data") or []
        return result if isinstance(result, list) else [result]

    async def get_supported_chains(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/supported/chain")

    async def get_quote(
        self,
        from_chain_id: int,
        to_chain_id: int,
        from_token_address: str,
        to_token_address: str,
        amount: int,
        user_wallet_address: str,
        slippage: str = "0.005",
        receive_address: Optional[str] = None,
    ) -> AggregatorQuote:
        params = {
            "fromChainId": str(from_chain_id),
            "toChainId": str(to_chain_id),
            "fromTokenAddress": from_token_address,
            "toTokenAddress": to_token_address,
            "amount": str(amount),
            "userWalletAddress": user_wallet_address,
            "slippage": slippage,
        }
        if receive_address:
            params["receiveAddress"] = receive_address
        entries = await self._request("GET", "/quote", params=params)
        if not entries:
            raise AggregatorUnavailable("Aggregator returned no route", service="okx")
        entry = entries[0]
        try:
            return AggregatorQuote(
                from_amount=_int(entry.get("fromTokenAmount"), amount),
                to_amount=_int(entry.get("toTokenAmount")),
                bridge_id=str(entry.get("bridgeId", "")),
                estimated_time_seconds=_int(entry.get("estimatedTime"), 0),
                gas_fee=str(entry.get("gasFee", "0")),
                bridge_fee=str(entry.get("bridgeFee", "0")),
                raw=entry,
            )
        except ValueError as e:
            raise AggregatorUnavailable(f"Malformed aggregator quote: {e}", service="okx") from e

    async def build_transaction(
        self,
        from_chain_id: int,
        to_chain_id: int,
        from_token_address: str,
        to_token_address: str,
        amount: int,
        user_wallet_address: str,
        bridge_id: str,
        slippage: str = "0.005",
        receive_address: Optional[str] = None,
    ) -> AggregatorTransaction:
        body = {
            "fromChainId": str(from_chain_id),
            "toChainId": str(to_chain_id),
            "fromTokenAddress": from_token_address,
            "toTokenAddress": to_token_address,
            "amount": str(amount),
            "userWalletAddress": user_wallet_address,
            "bridgeId": bridge_id,
            "slippage": slippage,
        }
        if receive_address:
            body["receiveAddress"] = receive_address
        entries = await self._request("POST", "/build-tx", body=body)
        if not entries:
            raise AggregatorUnavailable("Aggregator returned no transaction", service="okx")
        tx = entries[0].get("tx", entries[0])
        try:
            return AggregatorTransaction(
                to=tx["to"],
                data=tx.get("data") or "0x",
                value=_int(tx.get("value")),
                gas_limit=_int(tx.get("gasLimit")) or None,
                gas_price=_int(tx.get("gasPrice")) or None,
            )
        except (KeyError, ValueError) as e:
            raise AggregatorUnavailable(f"Malformed aggregator transaction: {e}", service="okx") from e

    async def get_status(self, tx_hash: str, from_chain_id: int) -> AggregatorStatus:
        entries = await self._request("GET", "/status", params={
            "txHash": tx_hash,
            "fromChainId": str(from_chain_id),
        })
        if not entries:
            return AggregatorStatus(status="pending")
        entry = entries[0]
        return AggregatorStatus(
            status=str(entry.get("status", "pending")),
            dest_tx_hash=entry.get("toTxHash") or entry.get("destTxHash"),
            raw=entry,
        )

    async def close(self) -> None:
        await self._client.aclose()
