"""ERC-4337 paymaster client (Pimlico sponsor model)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

import httpx

from ..exceptions import SponsorshipUnknown, sponsorship_error_from_rpc
from ..logging_utils import get_chain_logger
from .user_operation import UserOperation, parse_int

logger = logging.getLogger(__name__)


@dataclass
class PaymasterConfig:
    url: str
    timeout_seconds: float = 30.0


@dataclass
class SponsorshipResult:
    paymaster_and_data: str
    pre_verification_gas: int
    verification_gas_limit: int
    call_gas_limit: int
    paymaster: str = ""
    paymaster_verification_gas_limit: Optional[int] = None
    paymaster_post_op_gas_limit: Optional[int] = None

    def apply(self, user_op: UserOperation) -> UserOperation:
        """Copy of ``user_op`` carrying the sponsorship fields."""
        return user_op.with_fields(
            paymaster_and_data=self.paymaster_and_data,
            pre_verification_gas=self.pre_verification_gas,
            verification_gas_limit=self.verification_gas_limit,
            call_gas_limit=self.call_gas_limit,
        )


@dataclass
class SponsorshipStatus:
    active: bool = False
    balance: int = 0
    policies: List[str] = field(default_factory=list)


class _PaymasterRPCError(Exception):
    def __init__(self, method: str, error: Any):
        super().__init__(f"Paymaster RPC error ({method}): {error}")
        self.method = method
        self.error = error


class PaymasterClient:
    """Pimlico-compatible paymaster client (sponsor model)."""

    def __init__(self, config: PaymasterConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

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
            raise
        get_chain_logger().log_rpc_call(
            method, self._config.url, (time.monotonic() - start) * 1000, not data.get("error")
        )
        if data.get("error"):
            raise _PaymasterRPCError(method, data["error"])
        return data.get("result")

    async def sponsor_user_operation(
        self,
        user_op: UserOperation,
        entrypoint: str,
        sponsorship_policy_id: Optional[str] = None,
    ) -> SponsorshipResult:
        """Ask the paymaster to sponsor ``user_op``.

        Raises a SponsorshipError subclass describing why sponsorship failed.
        """
        method = "pm_sponsorUserOperation"
        context = {"sponsorshipPolicyId": sponsorship_policy_id} if sponsorship_policy_id else {}
        unsponsored = user_op.with_fields(paymaster_and_data="0x", signature="0x")
        try:
            result = await self._rpc(method, [unsponsored.to_rpc(), entrypoint, context])
        except _PaymasterRPCError as e:
            raise sponsorship_error_from_rpc(e.error, method) from e
        except (httpx.HTTPError, ValueError) as e:
            raise SponsorshipUnknown(
                f"Paymaster unreachable: {e}", details={"method": method}
            ) from e

        if not isinstance(result, dict) or not isinstance(result.get("paymasterAndData"), str):
            raise SponsorshipUnknown("Paymaster returned invalid sponsorship payload")

        def gas(key: str, default: int) -> int:
            value = result.get(key)
            return parse_int(value) if value is not None else default

        try:
            sponsorship = SponsorshipResult(
                paymaster_and_data=result["paymasterAndData"],
                pre_verification_gas=gas("preVerificationGas", user_op.pre_verification_gas),
                verification_gas_limit=gas("verificationGasLimit", user_op.verification_gas_limit),
                call_gas_limit=gas("callGasLimit", user_op.call_gas_limit),
                paymaster=result.get("paymaster") or "",
                paymaster_verification_gas_limit=(
                    parse_int(result["paymasterVerificationGasLimit"])
                    if result.get("paymasterVerificationGasLimit") else None
                ),
                paymaster_post_op_gas_limit=(
                    parse_int(result["paymasterPostOpGasLimit"])
                    if result.get("paymasterPostOpGasLimit") else None
                ),
            )
        except ValueError as e:
            raise SponsorshipUnknown(f"Paymaster returned malformed gas values: {e}") from e

        logger.info(f"UserOperation from {user_op.sender} sponsored")
        return sponsorship

    async def validate_sponsorship_policy(self, policy_id: str) -> bool:
        try:
            result = await self._rpc("pm_validateSponsorshipPolicy", [policy_id])
        except (_PaymasterRPCError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Policy validation failed for {policy_id}: {e}")
            return False
        return isinstance(result, dict) and result.get("valid") is True

    async def get_sponsorship_status(self) -> SponsorshipStatus:
        try:
            status = await self._rpc("pm_sponsorshipStatus", [])
        except (_PaymasterRPCError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to get sponsorship status: {e}")
            return SponsorshipStatus()
        if not isinstance(status, dict):
            return SponsorshipStatus()
        try:
            balance = parse_int(status.get("balance") or 0)
        except ValueError:
            balance = 0
        return SponsorshipStatus(
            active=bool(status.get("active")),
            balance=balance,
            policies=list(status.get("policies") or []),
        )

    async def close(self) -> None:
        await self._client.aclose()

