"""
Bridge transaction storage.

The store is the single owner of bridge transaction state. Status changes
go through transition(), which checks monotonicity and applies the new
status atomically, so a late completion can never overwrite a failure
(or the reverse).
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List

from ..exceptions import BridgeError, BridgeTransactionNotFound, InvalidStatusTransition
from .models import BridgeStatus, BridgeTransaction, can_transition

logger = logging.getLogger(__name__)


class BridgeTransactionStore(ABC):
    """Abstract interface for bridge transaction storage."""

    @abstractmethod
    async def get(self, transaction_id: str) -> BridgeTransaction:
        """Get a transaction by id. Raises BridgeTransactionNotFound."""
        pass

    @abstractmethod
    async def insert(self, transaction: BridgeTransaction) -> BridgeTransaction:
        pass

    @abstractmethod
    async def transition(
        self,
        transaction_id: str,
        status: BridgeStatus,
        **fields: Any,
    ) -> BridgeTransaction:
        """
        Move a transaction to ``status`` and apply ``fields`` in one step.

        Raises InvalidStatusTransition when the move is not allowed.
        """
        pass

    @abstractmethod
    async def update_fields(self, transaction_id: str, **fields: Any) -> BridgeTransaction:
        """Update non-status fields."""
        pass

    @abstractmethod
    async def list_by_recipient(self, recipient: str) -> List[BridgeTransaction]:
        """Transactions for ``recipient`` (case-insensitive), newest first."""
        pass

    @abstractmethod
    async def list_by_status(self, status: BridgeStatus) -> List[BridgeTransaction]:
        pass


class InMemoryBridgeTransactionStore(BridgeTransactionStore):
    """
    In-memory store for development and testing.

    Returns copies; callers never hold a reference to the stored record.
    """

    def __init__(self) -> None:
        self._records: Dict[str, BridgeTransaction] = {}
        self._inserted: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _require(self, transaction_id: str) -> BridgeTransaction:
        record = self._records.get(transaction_id)
        if record is None:
            raise BridgeTransactionNotFound(transaction_id)
        return record

    async def get(self, transaction_id: str) -> BridgeTransaction:
        async with self._lock:
            return replace(self._require(transaction_id))

    async def insert(self, transaction: BridgeTransaction) -> BridgeTransaction:
        async with self._lock:
            if transaction.id in self._records:
                raise BridgeError(
                    f"Bridge transaction '{transaction.id}' already exists",
                    details={"transaction_id": transaction.id},
                )
            self._records[transaction.id] = replace(transaction)
            self._inserted[transaction.id] = len(self._inserted)
            return replace(transaction)

    async def transition(
        self,
        transaction_id: str,
        status: BridgeStatus,
        **fields: Any,
    ) -> BridgeTransaction:
        async with self._lock:
            current = self._require(transaction_id)
            if not can_transition(current.status, status):
                raise InvalidStatusTransition(transaction_id, current.status.value, status.value)
            updated = replace(
                current,
                **fields,
                status=status,
                updated_at=datetime.now(timezone.utc),
            )
            self._records[transaction_id] = updated
            return replace(updated)

    async def update_fields(self, transaction_id: str, **fields: Any) -> BridgeTransaction:
        if "status" in fields:
            raise BridgeError("Use transition() to change status")
        async with self._lock:
            current = self._require(transaction_id)
            updated = replace(current, **fields, updated_at=datetime.now(timezone.utc))
            self._records[transaction_id] = updated
            return replace(updated)

    async def list_by_recipient(self, recipient: str) -> List[BridgeTransaction]:
        wanted = recipient.lower()
        async with self._lock:
            matches = [replace(t) for t in self._records.values() if t.recipient.lower() == wanted]
        return sorted(
            matches, key=lambda t: (t.created_at, self._inserted[t.id]), reverse=True
        )

    async def list_by_status(self, status: BridgeStatus) -> List[BridgeTransaction]:
        async with self._lock:
            return [replace(t) for t in self._records.values() if t.status == status]
