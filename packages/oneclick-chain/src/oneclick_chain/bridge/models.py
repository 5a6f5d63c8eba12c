"""Bridge data model."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class BridgeStatus(str, Enum):
    """Status of a cross-chain bridge transaction."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BridgeStatus.COMPLETED, BridgeStatus.FAILED)


ALLOWED_TRANSITIONS: Dict[BridgeStatus, frozenset] = {
    BridgeStatus.PENDING: frozenset({BridgeStatus.PROCESSING, BridgeStatus.FAILED}),
    BridgeStatus.PROCESSING: frozenset({BridgeStatus.COMPLETED, BridgeStatus.FAILED}),
    BridgeStatus.COMPLETED: frozenset(),
    BridgeStatus.FAILED: frozenset(),
}


def can_transition(current: BridgeStatus, requested: BridgeStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


class SettlementKind(str, Enum):
    REAL = "real"            # settled on-chain / through the aggregator
    SIMULATED = "simulated"  # demo settlement, hashes are not on-chain


class FailureStage(str, Enum):
    SOURCE = "source"
    DESTINATION = "destination"


class FallbackReason(str, Enum):
    AGGREGATOR_UNAVAILABLE = "aggregator_unavailable"
    UNSUPPORTED_PAIR = "unsupported_pair"
    CHAIN_UNAVAILABLE = "chain_unavailable"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a primary path: a value, or the reason a fallback is needed."""

    value: Optional[T] = None
    fallback_reason: Optional[FallbackReason] = None
    detail: str = ""

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fallback(cls, reason: FallbackReason, detail: str = "") -> "Outcome[T]":
        return cls(fallback_reason=reason, detail=detail)

    @property
    def is_ok(self) -> bool:
        return self.fallback_reason is None


@dataclass
class BridgeQuote:
    source_amount: str
    dest_amount: str
    fee_amount: str
    rate: str
    eta_seconds: int
    route: List[str] = field(default_factory=list)
    bridge_route_id: Optional[str] = None
    is_fallback: bool = False
    fallback_reason: Optional[FallbackReason] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_amount": self.source_amount,
            "dest_amount": self.dest_amount,
            "fee_amount": self.fee_amount,
            "rate": self.rate,
            "eta_seconds": self.eta_seconds,
            "route": list(self.route),
            "bridge_route_id": self.bridge_route_id,
            "is_fallback": self.is_fallback,
            "fallback_reason": self.fallback_reason.value if self.fallback_reason else None,
        }


@dataclass
class BridgeTransaction:
    """Tracks one cross-chain transfer through the status machine."""
    source_chain: str
    dest_chain: str
    source_token: str
    dest_token: str
    amount: Decimal
    recipient: str
    settlement_kind: SettlementKind
    source_settlement_kind: Optional[SettlementKind] = None
    dest_settlement_kind: Optional[SettlementKind] = None
    id: str = field(default_factory=lambda: f"bridge_{uuid.uuid4().hex[:16]}")
    status: BridgeStatus = BridgeStatus.PENDING
    source_tx_hash: Optional[str] = None
    dest_tx_hash: Optional[str] = None
    bridge_route_id: Optional[str] = None
    error: Optional[str] = None
    failure_stage: Optional[FailureStage] = None
    requires_reconciliation: bool = False
    estimated_duration_seconds: int = 0
    next_step_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_simulated(self) -> bool:
        return self.settlement_kind == SettlementKind.SIMULATED

    @property
    def source_moved_funds(self) -> bool:
        """True when the source leg settled on-chain, whatever the route kind."""
        return self.source_settlement_kind == SettlementKind.REAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_chain": self.source_chain,
            "dest_chain": self.dest_chain,
            "source_token": self.source_token,
            "dest_token": self.dest_token,
            "amount": str(self.amount),
            "recipient": self.recipient,
            "status": self.status.value,
            "settlement_kind": self.settlement_kind.value,
            "source_settlement_kind": (
                self.source_settlement_kind.value if self.source_settlement_kind else None
            ),
            "dest_settlement_kind": (
                self.dest_settlement_kind.value if self.dest_settlement_kind else None
            ),
            "source_tx_hash": self.source_tx_hash,
            "dest_tx_hash": self.dest_tx_hash,
            "bridge_route_id": self.bridge_route_id,
            "error": self.error,
            "failure_stage": self.failure_stage.value if self.failure_stage else None,
            "requires_reconciliation": self.requires_reconciliation,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "next_step_at": self.next_step_at.isoformat() if self.next_step_at else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
