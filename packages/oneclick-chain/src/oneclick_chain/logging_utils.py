"""
Structured logging for the user operation pipeline and the bridge.

Features:
- Operation context tracking with durations
- RPC call logging with API-key masking
- User operation lifecycle logging
- Audit trail of bridge status transitions and fallbacks
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import LoggingConfig, get_config

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of pipeline and bridge operations."""
    ADDRESS_DERIVATION = "address_derivation"
    OPERATION_BUILD = "operation_build"
    GAS_ESTIMATION = "gas_estimation"
    SPONSORSHIP = "sponsorship"
    SIGNING = "signing"
    SUBMISSION = "submission"
    RECEIPT_POLL = "receipt_poll"
    BRIDGE_QUOTE = "bridge_quote"
    BRIDGE_SETTLEMENT = "bridge_settlement"


@dataclass
class OperationContext:
    """Context for a single tracked operation."""
    operation_id: str
    operation_type: OperationType
    chain: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (self.completed_at - self.started_at).total_seconds() * 1000
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "chain": self.chain,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


def mask_url(url: str) -> str:
    """Mask query parameters of a URL (bundler URLs carry API keys)."""
    if "?" in url:
        base = url.split("?")[0]
        return f"{base}?<params_masked>"
    return url


def mask_address(address: str) -> str:
    """Mask middle portion of address for privacy."""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class ChainLogger:
    """
    Structured logger for pipeline and bridge operations.

    Keeps a bounded in-memory audit trail so callers (and tests) can inspect
    what happened to a bridge transaction after the fact.
    """

    def __init__(
        self,
        name: str = "oneclick_chain",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or get_config().logging
        self._operation_counter = 0
        self._audit_trail: List[Dict[str, Any]] = []
        self._max_history = 1000

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    @asynccontextmanager
    async def operation_context(
        self,
        operation_type: OperationType,
        chain: str,
        **metadata: Any,
    ):
        """
        Context manager for tracking an operation.

        Usage:
            async with chain_logger.operation_context(OperationType.SPONSORSHIP, "sepolia") as ctx:
                result = await paymaster.sponsor_user_operation(...)
                ctx.metadata["paymaster"] = result.paymaster
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            chain=chain,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value} on {chain}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)
        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise
        finally:
            level = (
                self._get_level(self._config.error_level)
                if not ctx.success
                else self._get_level(self._config.operation_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} on {chain} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        duration_ms: float,
        success: bool,
        error_message: Optional[str] = None,
    ) -> None:
        """Log a JSON-RPC / REST call."""
        if not self._config.log_rpc_latency:
            return

        level = (
            self._get_level(self._config.error_level)
            if not success
            else self._get_level(self._config.rpc_call_level)
        )
        self._logger.log(
            level,
            f"RPC {method} to {mask_url(endpoint_url)} in {duration_ms:.0f}ms (success={success})",
            extra={
                "rpc_call": {
                    "method": method,
                    "endpoint_url": mask_url(endpoint_url),
                    "duration_ms": duration_ms,
                    "success": success,
                    "error_message": error_message,
                }
            },
        )

    def log_user_operation_submitted(
        self,
        user_op_hash: str,
        chain: str,
        sender: str,
        nonce: int,
        sponsored: bool,
    ) -> None:
        """Log a user operation accepted by the bundler."""
        shown_sender = mask_address(sender) if self._config.mask_addresses else sender
        self._logger.log(
            self._get_level(self._config.operation_level),
            f"UserOperation submitted: {user_op_hash} on {chain}",
            extra={
                "user_operation": {
                    "user_op_hash": user_op_hash,
                    "chain": chain,
                    "sender": shown_sender,
                    "nonce": nonce,
                    "sponsored": sponsored,
                }
            },
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("user_operation_submitted", {
                "user_op_hash": user_op_hash,
                "chain": chain,
                "sender": sender,
                "nonce": nonce,
                "sponsored": sponsored,
            })

    def log_bridge_transition(
        self,
        transaction_id: str,
        previous: Optional[str],
        current: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log a bridge status transition. Failures are logged at error level."""
        level = logging.ERROR if current == "failed" else self._get_level(self._config.operation_level)
        self._logger.log(
            level,
            f"Bridge {transaction_id}: {previous or 'new'} -> {current}",
            extra={
                "bridge_transition": {
                    "transaction_id": transaction_id,
                    "previous": previous,
                    "current": current,
                    "details": details or {},
                }
            },
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("bridge_transition", {
                "transaction_id": transaction_id,
                "previous": previous,
                "current": current,
                **(details or {}),
            })

    def log_fallback(self, component: str, reason: str, detail: str = "") -> None:
        """Log an explicit decision to use a degraded-confidence fallback."""
        self._logger.warning(
            f"{component} using fallback ({reason}): {detail}",
            extra={"fallback": {"component": component, "reason": reason, "detail": detail}},
        )
        if self._config.audit_log_enabled:
            self._write_audit_log("fallback_used", {
                "component": component,
                "reason": reason,
                "detail": detail,
            })

    def _write_audit_log(self, event_type: str, data: Dict[str, Any]) -> None:
        def convert(obj: Any) -> Any:
            if isinstance(obj, Decimal):
                return str(obj)
            if isinstance(obj, datetime):
                return obj.isoformat()
            if isinstance(obj, Enum):
                return obj.value
            return obj

        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "data": {k: convert(v) for k, v in data.items()},
        }
        self._audit_trail.append(audit_entry)
        if len(self._audit_trail) > self._max_history:
            self._audit_trail = self._audit_trail[-self._max_history:]

        self._logger.info(
            f"AUDIT: {event_type}",
            extra={"audit": json.loads(json.dumps(audit_entry, default=str))},
        )

    def get_audit_trail(self, event_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if event_type is None:
            return list(self._audit_trail)
        return [e for e in self._audit_trail if e["event_type"] == event_type]


# Global logger instance
_chain_logger: Optional[ChainLogger] = None


def get_chain_logger(
    name: str = "oneclick_chain",
    config: Optional[LoggingConfig] = None,
) -> ChainLogger:
    """Get the global chain logger instance."""
    global _chain_logger
    if _chain_logger is None:
        _chain_logger = ChainLogger(name, config)
    return _chain_logger


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("oneclick_chain").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
