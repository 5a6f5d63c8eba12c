"""
Cross-chain bridge orchestration.

Features:
- Pair and amount validation against configured routes
- Aggregator quotes with an explicit static-rate fallback
- Balance check before any record is created
- Monotonic status machine (pending -> processing -> completed | failed)
- Cancellable destination steps with a persisted next_step_at for recovery
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from ..chain_reader import ChainReader, JsonRpcChainReader
from ..config import BridgePairConfig, OneClickChainConfig, TokenConfig, get_config
from ..exceptions import (
    AggregatorUnavailable,
    CancellationNotAllowed,
    ChainUnavailableError,
    ConfigurationError,
    ExternalServiceError,
    InsufficientBalanceError,
    InvalidAmount,
    InvalidStatusTransition,
    UnsupportedBridgePair,
    ValidationError,
)
from ..erc4337.account import SmartAccount
from ..erc4337.address import checksum_address
from ..erc4337.pipeline import build_pipeline
from ..erc4337.signer import SignerGateway
from ..logging_utils import OperationType, get_chain_logger
from .aggregator_client import OKXCrossChainClient
from .models import (
    BridgeQuote,
    BridgeStatus,
    BridgeTransaction,
    FailureStage,
    FallbackReason,
    Outcome,
    SettlementKind,
)
from .settlement import (
    OKX_NATIVE_TOKEN_ADDRESS,
    AggregatorSettlement,
    DestinationState,
    SettlementBackend,
    SimulatedSettlement,
    from_minor_units,
    to_minor_units,
)
from .store import BridgeTransactionStore, InMemoryBridgeTransactionStore

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BridgeOrchestrator:
    """
    Runs bridge transactions through quote, source settlement and
    destination settlement.

    Settlement backends are injected. A pair the real bridge supports uses
    ``real_settlement`` when one is configured; everything else runs through
    ``simulated_settlement`` and is recorded as SIMULATED.
    """

    def __init__(
        self,
        config: Optional[OneClickChainConfig] = None,
        store: Optional[BridgeTransactionStore] = None,
        chain_readers: Optional[Dict[str, ChainReader]] = None,
        aggregator: Optional[OKXCrossChainClient] = None,
        real_settlement: Optional[SettlementBackend] = None,
        simulated_settlement: Optional[SettlementBackend] = None,
    ):
        self._config = config or get_config()
        self._store = store or InMemoryBridgeTransactionStore()
        self._readers = chain_readers or {}
        self._aggregator = aggregator
        self._backends: Dict[SettlementKind, SettlementBackend] = {
            SettlementKind.SIMULATED: simulated_settlement or SimulatedSettlement(self._config),
        }
        if real_settlement is not None:
            self._backends[SettlementKind.REAL] = real_settlement
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def store(self) -> BridgeTransactionStore:
        return self._store

    # ------------------------------------------------------------------
    # Pairs and validation
    # ------------------------------------------------------------------

    def supported_pairs(self) -> List[BridgePairConfig]:
        return list(self._config.bridge.pairs)

    def _find_pair(
        self, source_chain: str, dest_chain: str, source_token: str, dest_token: str
    ) -> Optional[BridgePairConfig]:
        for pair in self._config.bridge.pairs:
            if (
                pair.source_chain == source_chain
                and pair.dest_chain == dest_chain
                and pair.source_token == source_token
                and pair.dest_token == dest_token
            ):
                return pair
        return None

    def is_pair_supported(
        self, source_chain: str, dest_chain: str, source_token: str, dest_token: str
    ) -> bool:
        return self._find_pair(source_chain, dest_chain, source_token, dest_token) is not None

    def _require_pair(
        self, source_chain: str, dest_chain: str, source_token: str, dest_token: str
    ) -> BridgePairConfig:
        pair = self._find_pair(source_chain, dest_chain, source_token, dest_token)
        if pair is None:
            raise UnsupportedBridgePair(
                f"Bridge pair {source_token}@{source_chain} -> {dest_token}@{dest_chain} "
                "is not supported",
                details={
                    "source_chain": source_chain,
                    "dest_chain": dest_chain,
                    "source_token": source_token,
                    "dest_token": dest_token,
                },
            )
        return pair

    @staticmethod
    def _parse_amount(amount: Union[str, Decimal], pair: BridgePairConfig) -> Decimal:
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except InvalidOperation as e:
            raise InvalidAmount(f"Invalid amount: {amount!r}", field="amount") from e
        if not value.is_finite() or value <= 0:
            raise InvalidAmount("Amount must be a positive number", field="amount")
        if value < pair.min_amount or value > pair.max_amount:
            raise InvalidAmount(
                f"Amount must be between {pair.min_amount} and {pair.max_amount}",
                field="amount",
                details={"min_amount": str(pair.min_amount), "max_amount": str(pair.max_amount)},
            )
        return value

    def _token(self, chain: str, symbol: str) -> TokenConfig:
        token = self._config.get_network(chain).get_token(symbol)
        if token is None:
            raise ConfigurationError(f"Token {symbol} is not configured on {chain}")
        return token

    def _quantize(self, value: Decimal) -> str:
        exponent = Decimal(1).scaleb(-self._config.bridge.quote_decimals)
        return str(value.quantize(exponent, rounding=ROUND_DOWN))

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def _aggregator_quote(
        self,
        pair: BridgePairConfig,
        amount: Decimal,
        recipient: Optional[str],
    ) -> Outcome[BridgeQuote]:
        if not pair.real_bridge_supported:
            return Outcome.fallback(FallbackReason.UNSUPPORTED_PAIR, "Pair has no aggregator route")
        if self._aggregator is None or not self._aggregator.configured:
            return Outcome.fallback(
                FallbackReason.AGGREGATOR_UNAVAILABLE, "Aggregator credentials not configured"
            )

        source_network = self._config.get_network(pair.source_chain)
        dest_network = self._config.get_network(pair.dest_chain)
        source_token = self._token(pair.source_chain, pair.source_token)
        dest_token = self._token(pair.dest_chain, pair.dest_token)
        try:
            quote = await self._aggregator.get_quote(
                source_network.chain_id,
                dest_network.chain_id,
                OKX_NATIVE_TOKEN_ADDRESS if source_token.is_native else source_token.address,
                OKX_NATIVE_TOKEN_ADDRESS if dest_token.is_native else dest_token.address,
                to_minor_units(amount, source_token.decimals),
                recipient or ZERO_ADDRESS,
                self._config.bridge.slippage_tolerance,
                receive_address=recipient,
            )
        except AggregatorUnavailable as e:
            return Outcome.fallback(FallbackReason.AGGREGATOR_UNAVAILABLE, e.message)
        except ChainUnavailableError as e:
            return Outcome.fallback(FallbackReason.CHAIN_UNAVAILABLE, e.message)

        dest_amount = from_minor_units(quote.to_amount, dest_token.decimals)
        fee = max(amount * pair.rate - dest_amount, Decimal(0))
        return Outcome.ok(BridgeQuote(
            source_amount=self._quantize(amount),
            dest_amount=self._quantize(dest_amount),
            fee_amount=self._quantize(fee),
            rate=str((dest_amount / amount).normalize()),
            eta_seconds=quote.estimated_time_seconds or self._config.bridge.fallback_eta_seconds,
            route=[f"{pair.source_chain}:{pair.source_token}", f"{pair.dest_chain}:{pair.dest_token}"],
            bridge_route_id=quote.bridge_id or None,
        ))

    def _fallback_quote(
        self, pair: BridgePairConfig, amount: Decimal, reason: FallbackReason
    ) -> BridgeQuote:
        gross = amount * pair.rate
        fee = gross * self._config.bridge.fee_rate
        return BridgeQuote(
            source_amount=self._quantize(amount),
            dest_amount=self._quantize(gross - fee),
            fee_amount=self._quantize(fee),
            rate=str(pair.rate),
            eta_seconds=self._config.bridge.fallback_eta_seconds,
            route=[f"{pair.source_chain}:{pair.source_token}", f"{pair.dest_chain}:{pair.dest_token}"],
            is_fallback=True,
            fallback_reason=reason,
        )

    async def quote(
        self,
        source_chain: str,
        dest_chain: str,
        source_token: str,
        dest_token: str,
        amount: Union[str, Decimal],
        recipient: Optional[str] = None,
    ) -> BridgeQuote:
        pair = self._require_pair(source_chain, dest_chain, source_token, dest_token)
        value = self._parse_amount(amount, pair)
        if recipient is not None:
            recipient = checksum_address(recipient, "recipient")

        async with get_chain_logger().operation_context(
            OperationType.BRIDGE_QUOTE, source_chain, dest_chain=dest_chain
        ) as ctx:
            outcome = await self._aggregator_quote(pair, value, recipient)
            if outcome.is_ok:
                ctx.metadata["fallback"] = False
                return outcome.value
            get_chain_logger().log_fallback("bridge_quote", outcome.fallback_reason.value, outcome.detail)
            ctx.metadata["fallback"] = True
            return self._fallback_quote(pair, value, outcome.fallback_reason)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _check_balance(self, account: SmartAccount, token: TokenConfig, amount: Decimal) -> None:
        reader = self._readers.get(account.chain)
        if reader is None:
            raise ConfigurationError(f"No chain reader configured for {account.chain}")
        if token.is_native:
            raw = await reader.get_balance(account.address)
        else:
            raw = await reader.get_token_balance(token.address, account.address)
        balance = from_minor_units(raw, token.decimals)
        if balance < amount:
            raise InsufficientBalanceError(
                balance=str(balance.normalize()),
                required=str(amount),
                token=token.symbol,
                chain=account.chain,
            )

    def _select_backend(self, pair: BridgePairConfig) -> SettlementBackend:
        if pair.real_bridge_supported and SettlementKind.REAL in self._backends:
            return self._backends[SettlementKind.REAL]
        return self._backends[SettlementKind.SIMULATED]

    async def _transition(
        self, transaction_id: str, status: BridgeStatus, **fields: Any
    ) -> BridgeTransaction:
        previous = (await self._store.get(transaction_id)).status
        updated = await self._store.transition(transaction_id, status, **fields)
        get_chain_logger().log_bridge_transition(
            transaction_id,
            previous.value,
            status.value,
            {k: v for k, v in fields.items() if k in ("source_tx_hash", "dest_tx_hash", "error")},
        )
        return updated

    async def execute(
        self,
        source_chain: str,
        dest_chain: str,
        source_token: str,
        dest_token: str,
        amount: Union[str, Decimal],
        recipient: str,
        account: SmartAccount,
        credential_ref: str,
    ) -> BridgeTransaction:
        """
        Start a bridge transaction.

        Returns once the source leg has settled (status ``processing``);
        the destination leg continues in the background.
        """
        pair = self._require_pair(source_chain, dest_chain, source_token, dest_token)
        value = self._parse_amount(amount, pair)
        recipient = checksum_address(recipient, "recipient")
        if account.chain != source_chain:
            raise ValidationError(
                f"Account lives on {account.chain}, not {source_chain}", field="account"
            )

        token = self._token(source_chain, source_token)
        await self._check_balance(account, token, value)

        backend = self._select_backend(pair)
        eta = (
            self._config.bridge.fallback_eta_seconds
            if backend.kind == SettlementKind.REAL
            else self._config.bridge.simulated_eta_seconds
        )
        transaction = await self._store.insert(BridgeTransaction(
            source_chain=source_chain,
            dest_chain=dest_chain,
            source_token=source_token,
            dest_token=dest_token,
            amount=value,
            recipient=recipient,
            settlement_kind=backend.kind,
            estimated_duration_seconds=eta,
        ))
        get_chain_logger().log_bridge_transition(
            transaction.id, None, BridgeStatus.PENDING.value,
            {"settlement_kind": backend.kind.value, "amount": str(value)},
        )

        try:
            async with get_chain_logger().operation_context(
                OperationType.BRIDGE_SETTLEMENT, source_chain,
                transaction_id=transaction.id, stage=FailureStage.SOURCE.value,
            ):
                source = await backend.settle_source(transaction, account, credential_ref)
        except Exception as e:
            await self._transition(
                transaction.id,
                BridgeStatus.FAILED,
                error=str(e),
                failure_stage=FailureStage.SOURCE,
            )
            raise

        delay = backend.first_check_delay_seconds
        try:
            transaction = await self._transition(
                transaction.id,
                BridgeStatus.PROCESSING,
                source_tx_hash=source.tx_hash,
                source_settlement_kind=source.kind,
                bridge_route_id=source.bridge_route_id,
                next_step_at=_utcnow() + timedelta(seconds=delay),
            )
        except InvalidStatusTransition:
            # Settled after the record went terminal; keep the hash for reconciliation.
            await self._store.update_fields(
                transaction.id,
                source_tx_hash=source.tx_hash,
                source_settlement_kind=source.kind,
                bridge_route_id=source.bridge_route_id,
                failure_stage=FailureStage.DESTINATION,
                requires_reconciliation=True,
            )
            logger.error(
                f"Bridge {transaction.id} source settled ({source.tx_hash}) after the "
                "transaction was marked failed; reconciliation required"
            )
            raise
        self._schedule(transaction.id, backend, delay)
        return transaction

    # ------------------------------------------------------------------
    # Destination step
    # ------------------------------------------------------------------

    def _schedule(self, transaction_id: str, backend: SettlementBackend, delay: float) -> None:
        task = asyncio.create_task(
            self._run_destination(transaction_id, backend, delay),
            name=f"bridge-destination-{transaction_id}",
        )
        self._tasks[transaction_id] = task

        def _forget(finished: asyncio.Task) -> None:
            if self._tasks.get(transaction_id) is finished:
                del self._tasks[transaction_id]
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    f"Bridge {transaction_id} destination step crashed: {finished.exception()}"
                )

        task.add_done_callback(_forget)

    async def _fail_destination(self, transaction_id: str, error: str) -> None:
        try:
            await self._transition(
                transaction_id,
                BridgeStatus.FAILED,
                error=error,
                failure_stage=FailureStage.DESTINATION,
                requires_reconciliation=True,
                next_step_at=None,
            )
        except InvalidStatusTransition:
            logger.info(f"Bridge {transaction_id} already terminal, dropping failure: {error}")

    async def _run_destination(
        self, transaction_id: str, backend: SettlementBackend, delay: float
    ) -> None:
        deadline = time.monotonic() + self._config.bridge.status_deadline_seconds
        while True:
            await asyncio.sleep(delay)
            transaction = await self._store.get(transaction_id)
            if transaction.status.is_terminal:
                return

            try:
                check = await backend.check_destination(transaction)
            except ExternalServiceError as e:
                logger.warning(f"Bridge {transaction_id} destination check failed, retrying: {e}")
                check = None
                delay = backend.retry_interval_seconds
            except Exception as e:
                await self._fail_destination(transaction_id, str(e) or type(e).__name__)
                return

            if check is not None:
                if check.state == DestinationState.COMPLETED:
                    try:
                        await self._transition(
                            transaction_id,
                            BridgeStatus.COMPLETED,
                            dest_tx_hash=check.dest_tx_hash,
                            dest_settlement_kind=check.kind,
                            next_step_at=None,
                        )
                    except InvalidStatusTransition:
                        logger.info(f"Bridge {transaction_id} already terminal, dropping completion")
                    return
                if check.state == DestinationState.FAILED:
                    await self._fail_destination(
                        transaction_id, check.error or "Destination settlement failed"
                    )
                    return
                delay = backend.poll_interval_seconds

            if time.monotonic() + delay > deadline:
                await self._fail_destination(
                    transaction_id,
                    f"Destination not settled within {self._config.bridge.status_deadline_seconds:.0f}s",
                )
                return
            await self._store.update_fields(
                transaction_id, next_step_at=_utcnow() + timedelta(seconds=delay)
            )

    # ------------------------------------------------------------------
    # Queries and lifecycle
    # ------------------------------------------------------------------

    async def get_status(self, transaction_id: str) -> BridgeTransaction:
        return await self._store.get(transaction_id)

    async def get_history(self, recipient: str) -> List[BridgeTransaction]:
        return await self._store.list_by_recipient(recipient)

    async def cancel(self, transaction_id: str) -> BridgeTransaction:
        """Mark a processing transaction failed and stop its destination step.

        A pending transaction has its source leg in flight and cannot be
        cancelled until that leg has settled or failed.
        """
        transaction = await self._store.get(transaction_id)
        if transaction.status == BridgeStatus.PENDING:
            raise CancellationNotAllowed(
                f"Bridge transaction {transaction_id} is settling its source leg",
                details={"transaction_id": transaction_id, "status": transaction.status.value},
            )
        task = self._tasks.pop(transaction_id, None)
        if task is not None:
            task.cancel()
        return await self._transition(
            transaction_id,
            BridgeStatus.FAILED,
            error="Cancelled",
            failure_stage=FailureStage.DESTINATION,
            requires_reconciliation=True,
            next_step_at=None,
        )

    async def resume_pending(self) -> List[str]:
        """Reschedule destination steps for processing transactions with no live task."""
        resumed = []
        for transaction in await self._store.list_by_status(BridgeStatus.PROCESSING):
            if transaction.id in self._tasks or transaction.next_step_at is None:
                continue
            backend = self._backends.get(transaction.settlement_kind)
            if backend is None:
                logger.warning(
                    f"Bridge {transaction.id} needs {transaction.settlement_kind.value} "
                    "settlement, which is not configured"
                )
                continue
            delay = max(0.0, (transaction.next_step_at - _utcnow()).total_seconds())
            self._schedule(transaction.id, backend, delay)
            resumed.append(transaction.id)
        if resumed:
            logger.info(f"Resumed {len(resumed)} bridge destination steps")
        return resumed

    async def shutdown(self) -> None:
        """Cancel all scheduled destination steps. Persisted state is kept for resume_pending()."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def build_orchestrator(
    signer: SignerGateway,
    config: Optional[OneClickChainConfig] = None,
    store: Optional[BridgeTransactionStore] = None,
) -> BridgeOrchestrator:
    """Wire an orchestrator with JSON-RPC readers, gasless pipelines and the aggregator."""
    config = config or get_config()
    readers: Dict[str, ChainReader] = {
        name: JsonRpcChainReader(network) for name, network in config.networks.items()
    }
    pipelines = {
        name: build_pipeline(name, signer, config, chain_reader=readers[name])
        for name in config.networks
    }
    aggregator = OKXCrossChainClient(config.aggregator)
    real_settlement = (
        AggregatorSettlement(config, aggregator, pipelines) if aggregator.configured else None
    )
    return BridgeOrchestrator(
        config=config,
        store=store,
        chain_readers=readers,
        aggregator=aggregator,
        real_settlement=real_settlement,
        simulated_settlement=SimulatedSettlement(config, burn_pipelines=pipelines),
    )
