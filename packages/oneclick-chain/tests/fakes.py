"""
Test doubles shared by the oneclick-chain test modules.
"""
from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from web3 import Web3

from oneclick_chain.chain_reader import ChainReader
from oneclick_chain.config import ENTRYPOINT_V06_ADDRESS, OneClickChainConfig
from oneclick_chain.exceptions import ChainUnavailableError
from oneclick_chain.bridge.models import BridgeStatus, BridgeTransaction, SettlementKind
from oneclick_chain.bridge.settlement import (
    DestinationCheck,
    DestinationState,
    SettlementBackend,
    SourceSettlement,
)
from oneclick_chain.erc4337.account import Identity, SmartAccount
from oneclick_chain.erc4337.bundler_client import (
    GasEstimate,
    OperationHandle,
    ReceiptOutcome,
    ReceiptPollResult,
    UserOperationReceipt,
)
from oneclick_chain.erc4337.pipeline import PipelineResult
from oneclick_chain.erc4337.public_key import PublicKey
from oneclick_chain.erc4337.user_operation import UserOperation

ACCOUNT_ADDRESS = Web3.to_checksum_address("0x" + "12" * 20)
RECIPIENT_ADDRESS = Web3.to_checksum_address("0x" + "34" * 20)
FACTORY_RESULT = Web3.to_checksum_address("0x" + "ab" * 20)
SEPOLIA_CHAIN_ID = 11155111
SOURCE_TX_HASH = "0x" + "aa" * 32
DEST_TX_HASH = "0x" + "bb" * 32


class FakeChainReader(ChainReader):
    """In-memory ChainReader. Methods named in ``failing`` raise ChainUnavailableError."""

    def __init__(self, chain_id: int = SEPOLIA_CHAIN_ID):
        self.balances: Dict[str, int] = {}
        self.token_balances: Dict[str, int] = {}
        self.code: Dict[str, str] = {}
        self.nonces: Dict[str, int] = {}
        self.gas_price = 2_000_000_000
        self.chain_id = chain_id
        self.factory_result = FACTORY_RESULT
        self.failing: Set[str] = set()
        self.calls: List[str] = []

    def _record(self, method: str) -> None:
        self.calls.append(method)
        if method in self.failing:
            raise ChainUnavailableError(f"{method} unavailable", service="rpc")

    async def get_balance(self, address: str) -> int:
        self._record("get_balance")
        return self.balances.get(address.lower(), 0)

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        self._record("get_token_balance")
        return self.token_balances.get(f"{token_address.lower()}:{owner.lower()}", 0)

    async def get_code(self, address: str) -> str:
        self._record("get_code")
        return self.code.get(address.lower(), "0x")

    async def get_nonce(self, entrypoint: str, sender: str, key: int = 0) -> int:
        self._record("get_nonce")
        return self.nonces.get(sender.lower(), 0)

    async def get_gas_price(self) -> int:
        self._record("get_gas_price")
        return self.gas_price

    async def get_chain_id(self) -> int:
        self._record("get_chain_id")
        return self.chain_id

    async def get_factory_address(self, factory: str, public_key: bytes, salt: bytes) -> str:
        self._record("get_factory_address")
        return self.factory_result


class StubBackend(SettlementBackend):
    """Scripted settlement backend.

    ``checks`` are consumed one per destination check; an Exception entry
    is raised. Once exhausted, checks complete unless ``pending_forever``.
    ``source_gate`` holds the source leg until the event is set.
    """

    def __init__(
        self,
        config: OneClickChainConfig,
        kind: SettlementKind = SettlementKind.SIMULATED,
        delay: float = 0.01,
        checks: Optional[List[Any]] = None,
        source_error: Optional[Exception] = None,
        pending_forever: bool = False,
        source_gate: Optional[asyncio.Event] = None,
        source_kind: SettlementKind = SettlementKind.REAL,
    ):
        super().__init__(config)
        self.source_gate = source_gate
        self.source_kind = source_kind
        self.source_started = asyncio.Event()
        self.kind = kind
        self.delay = delay
        self.checks = list(checks or [])
        self.source_error = source_error
        self.pending_forever = pending_forever
        self.settled: List[str] = []
        self.checked: List[str] = []

    @property
    def first_check_delay_seconds(self) -> float:
        return self.delay

    @property
    def poll_interval_seconds(self) -> float:
        return self.delay

    async def settle_source(
        self,
        transaction: BridgeTransaction,
        account: SmartAccount,
        credential_ref: str,
    ) -> SourceSettlement:
        self.source_started.set()
        if self.source_gate is not None:
            await self.source_gate.wait()
        if self.source_error is not None:
            raise self.source_error
        self.settled.append(transaction.id)
        return SourceSettlement(
            tx_hash=SOURCE_TX_HASH, kind=self.source_kind, bridge_route_id="route-1"
        )

    async def check_destination(self, transaction: BridgeTransaction) -> DestinationCheck:
        self.checked.append(transaction.id)
        if self.checks:
            item = self.checks.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.pending_forever:
            return DestinationCheck(DestinationState.PENDING)
        return DestinationCheck(DestinationState.COMPLETED, dest_tx_hash=DEST_TX_HASH)


def sample_public_key() -> PublicKey:
    return PublicKey(bytes(range(64)))


def sample_identity(handle: str = "alice@example.com") -> Identity:
    return Identity(handle, sample_public_key())


def sample_account(chain: str = "sepolia", deployed: bool = True) -> SmartAccount:
    return SmartAccount(
        address=ACCOUNT_ADDRESS,
        identity=sample_identity(),
        account_index=0,
        chain=chain,
        deployed=deployed,
    )


def make_user_op(**overrides: Any) -> UserOperation:
    fields: Dict[str, Any] = dict(
        sender=ACCOUNT_ADDRESS,
        nonce=0,
        init_code="0x",
        call_data="0x",
        call_gas_limit=100_000,
        verification_gas_limit=150_000,
        pre_verification_gas=50_000,
        max_fee_per_gas=2_000_000_000,
        max_priority_fee_per_gas=1_000_000_000,
        paymaster_and_data="0x",
        signature="0x",
    )
    fields.update(overrides)
    return UserOperation(**fields)


async def wait_for_status(orchestrator, transaction_id: str, status: BridgeStatus, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        transaction = await orchestrator.get_status(transaction_id)
        if transaction.status == status:
            return transaction
        await asyncio.sleep(0.01)
    raise AssertionError(f"{transaction_id} did not reach {status.value} within {timeout}s")


def make_pipeline_result(tx_hash: str, included: bool = True, success: bool = True) -> PipelineResult:
    """A PipelineResult whose receipt poll landed (or timed out) with ``tx_hash``."""
    handle = OperationHandle(user_op_hash="0x" + "cc" * 32, chain="sepolia", entrypoint=ENTRYPOINT_V06_ADDRESS)
    receipt = UserOperationReceipt(
        user_op_hash=handle.user_op_hash,
        sender="",
        nonce=0,
        success=success,
        actual_gas_cost=0,
        actual_gas_used=0,
        transaction_hash=tx_hash,
        block_number=1,
    )
    return PipelineResult(
        user_op=make_user_op(),
        user_op_hash=handle.user_op_hash,
        handle=handle,
        gas_estimate=GasEstimate(1, 1, 1, 1, 1),
        poll_result=ReceiptPollResult(
            outcome=ReceiptOutcome.INCLUDED if included else ReceiptOutcome.TIMED_OUT,
            handle=handle,
            receipt=receipt if included else None,
        ),
    )
