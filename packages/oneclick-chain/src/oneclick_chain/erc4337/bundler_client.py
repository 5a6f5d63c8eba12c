"""ERC-4337 bundler client."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from ..chain_reader import ChainReader
from ..config import PipelineConfig
from ..exceptions import (
    BundlerUnavailable,
    ChainUnavailableError,
    ExternalServiceError,
    SubmissionRejected,
    submission_error_from_rpc,
)
from ..logging_utils import OperationType, get_chain_logger
from .user_operation import UserOperation, parse_int

logger = logging.getLogger(__name__)


@dataclass
class BundlerConfig:
    url: str
    entrypoint: str
    chain: str = ""
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 2.0


@dataclass
class GasEstimate:
    pre_verification_gas: int
    verification_gas_limit: int
    call_gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    is_fallback: bool = False

    def apply(self, user_op: UserOperation) -> UserOperation:
        return user_op.with_fields(
            pre_verification_gas=self.pre_verification_gas,
            verification_gas_limit=self.verification_gas_limit,
            call_gas_limit=self.call_gas_limit,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
        )


@dataclass(frozen=True)
class OperationHandle:
    """Everything needed to resume polling for a submitted operation."""
    user_op_hash: str
    chain: str
    entrypoint: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UserOperationReceipt:
    user_op_hash: str
    sender: str
    nonce: int
    success: bool
    actual_gas_cost: int
    actual_gas_used: int
    transaction_hash: str
    block_number: int
    paymaster: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc(cls, payload: Dict[str, Any]) -> "UserOperationReceipt":
        tx_receipt = payload.get("receipt") or {}
        return cls(
            user_op_hash=payload["userOpHash"],
            sender=payload.get("sender", ""),
            nonce=parse_int(payload.get("nonce", 0)),
            success=bool(payload.get("success")),
            actual_gas_cost=parse_int(payload.get("actualGasCost", 0)),
            actual_gas_used=parse_int(payload.get("actualGasUsed", 0)),
            transaction_hash=tx_receipt.get("transactionHash", ""),
            block_number=parse_int(tx_receipt.get("blockNumber", 0)),
            paymaster=payload.get("paymaster"),
            raw=payload,
        )


class ReceiptOutcome(str, Enum):
    INCLUDED = "included"
    TIMED_OUT = "timed_out"


@dataclass
class ReceiptPollResult:
    outcome: ReceiptOutcome
    handle: OperationHandle
    receipt: Optional[UserOperationReceipt] = None
    waited_seconds: float = 0.0

    @property
    def included(self) -> bool:
        return self.outcome == ReceiptOutcome.INCLUDED


class _BundlerRPCError(Exception):
    def __init__(self, method: str, error: Any):
        super().__init__(f"Bundler RPC error ({method}): {error}")
        self.method = method
        self.error = error


class BundlerClient:
    def __init__(
        self,
        config: BundlerConfig,
        chain_reader: Optional[ChainReader] = None,
        pipeline_config: Optional[PipelineConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        self._reader = chain_reader
        self._pipeline = pipeline_config or PipelineConfig()
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    @property
    def entrypoint(self) -> str:
        return self._config.entrypoint

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        start = time.monotonic()
        try:
            response = await self._client.post(self._config.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            get_chain_logger().log_rpc_call(
                method, self._config.url, (time.monotonic() - start) * 1000, False, str(e)
            )
            raise BundlerUnavailable(
                f"Bundler unreachable ({method}): {e}",
                service="bundler",
                details={"method": method},
            ) from e
        get_chain_logger().log_rpc_call(
            method, self._config.url, (time.monotonic() - start) * 1000, not data.get("error")
        )
        if data.get("error"):
            raise _BundlerRPCError(method, data["error"])
        return data.get("result")

    async def _fallback_estimate(self, user_op: UserOperation) -> GasEstimate:
        gas_price = self._pipeline.fallback_gas_price_wei
        if self._reader is not None:
            try:
                gas_price = await self._reader.get_gas_price()
            except ChainUnavailableError as e:
                logger.warning(f"Gas price unavailable for fallback estimate: {e}")

        deploying = user_op.init_code not in ("", "0x")
        return GasEstimate(
            pre_verification_gas=21_000 + (32_000 if deploying else 0),
            verification_gas_limit=(
                self._pipeline.fallback_deployment_verification_gas_limit
                if deploying
                else self._pipeline.default_verification_gas_limit
            ),
            call_gas_limit=self._pipeline.fallback_call_gas_limit,
            max_fee_per_gas=gas_price * 12 // 10,
            max_priority_fee_per_gas=self._pipeline.fallback_priority_fee_wei,
            is_fallback=True,
        )

    async def estimate_user_operation_gas(self, user_op: UserOperation) -> GasEstimate:
        """Best-effort estimate; falls back to a conservative static estimate."""
        unsigned = user_op.with_fields(paymaster_and_data="0x", signature="0x")
        async with get_chain_logger().operation_context(
            OperationType.GAS_ESTIMATION, self._config.chain, sender=user_op.sender
        ) as ctx:
            try:
                result = await self._rpc(
                    "eth_estimateUserOperationGas", [unsigned.to_rpc(), self._config.entrypoint]
                )
                if not isinstance(result, dict):
                    raise ValueError("invalid gas estimate payload")
                estimate = GasEstimate(
                    pre_verification_gas=parse_int(result["preVerificationGas"]),
                    verification_gas_limit=parse_int(result["verificationGasLimit"]),
                    call_gas_limit=parse_int(result["callGasLimit"]),
                    max_fee_per_gas=parse_int(result.get("maxFeePerGas") or user_op.max_fee_per_gas),
                    max_priority_fee_per_gas=parse_int(
                        result.get("maxPriorityFeePerGas") or user_op.max_priority_fee_per_gas
                    ),
                )
            except (_BundlerRPCError, BundlerUnavailable, KeyError, ValueError) as e:
                get_chain_logger().log_fallback("gas_estimation", "bundler_estimate_failed", str(e))
                estimate = await self._fallback_estimate(user_op)
            ctx.metadata["fallback"] = estimate.is_fallback
            return estimate

    async def send_user_operation(self, user_op: UserOperation) -> OperationHandle:
        """Submit a signed operation. Rejections are typed and never retried."""
        method = "eth_sendUserOperation"
        async with get_chain_logger().operation_context(
            OperationType.SUBMISSION, self._config.chain, sender=user_op.sender
        ):
            try:
                result = await self._rpc(method, [user_op.to_rpc(), self._config.entrypoint])
            except _BundlerRPCError as e:
                raise submission_error_from_rpc(e.error, method) from e
            if not isinstance(result, str):
                raise SubmissionRejected("Bundler returned invalid user op hash")

        get_chain_logger().log_user_operation_submitted(
            user_op_hash=result,
            chain=self._config.chain,
            sender=user_op.sender,
            nonce=user_op.nonce,
            sponsored=user_op.paymaster_and_data not in ("", "0x"),
        )
        return OperationHandle(
            user_op_hash=result,
            chain=self._config.chain,
            entrypoint=self._config.entrypoint,
        )

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[UserOperationReceipt]:
        try:
            result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        except _BundlerRPCError as e:
            raise BundlerUnavailable(
                f"Receipt lookup failed: {e.error}", service="bundler"
            ) from e
        if result is None:
            return None
        if not isinstance(result, dict):
            raise BundlerUnavailable("Bundler returned invalid receipt payload", service="bundler")
        try:
            return UserOperationReceipt.from_rpc(result)
        except (KeyError, ValueError) as e:
            raise BundlerUnavailable(f"Malformed receipt: {e}", service="bundler") from e

    async def poll_receipt(
        self,
        handle: OperationHandle,
        timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> ReceiptPollResult:
        """
        Poll for inclusion until a monotonic deadline.

        Running out of time is an outcome, not an error: the returned handle
        can be polled again later.
        """
        timeout = self._pipeline.receipt_timeout_seconds if timeout_seconds is None else timeout_seconds
        interval = self._config.poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        start = time.monotonic()
        deadline = start + timeout

        async with get_chain_logger().operation_context(
            OperationType.RECEIPT_POLL, handle.chain, user_op_hash=handle.user_op_hash
        ) as ctx:
            while True:
                try:
                    receipt = await self.get_user_operation_receipt(handle.user_op_hash)
                except ExternalServiceError as e:
                    logger.warning(f"Receipt fetch for {handle.user_op_hash} failed, retrying: {e}")
                    receipt = None

                if receipt is not None:
                    ctx.metadata["outcome"] = ReceiptOutcome.INCLUDED.value
                    return ReceiptPollResult(
                        outcome=ReceiptOutcome.INCLUDED,
                        handle=handle,
                        receipt=receipt,
                        waited_seconds=time.monotonic() - start,
                    )

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(interval, remaining))

            ctx.metadata["outcome"] = ReceiptOutcome.TIMED_OUT.value
            logger.warning(
                f"UserOperation {handle.user_op_hash} not included within {timeout:.0f}s"
            )
            return ReceiptPollResult(
                outcome=ReceiptOutcome.TIMED_OUT,
                handle=handle,
                waited_seconds=time.monotonic() - start,
            )

    async def _query(self, method: str) -> Any:
        try:
            return await self._rpc(method, [])
        except _BundlerRPCError as e:
            raise BundlerUnavailable(str(e), service="bundler") from e

    async def get_supported_entry_points(self) -> List[str]:
        result = await self._query("eth_supportedEntryPoints")
        return list(result or [])

    async def get_chain_id(self) -> int:
        return parse_int(await self._query("eth_chainId"))

    async def close(self) -> None:
        await self._client.aclose()
