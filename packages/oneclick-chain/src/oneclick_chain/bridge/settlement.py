"""
Source and destination settlement for bridge transactions.

A settlement backend moves value on the source chain and later reports
whether the destination side has been credited. The orchestrator owns
scheduling and status; backends only perform and observe the legs.

- AggregatorSettlement (REAL): executes the aggregator-built bridge
  transaction through the gasless pipeline, then polls the aggregator's
  status endpoint.
- SimulatedSettlement (SIMULATED): the destination mint is simulated. The
  source leg is a real ERC-20 burn when a pipeline for the source chain is
  provided, otherwise it is simulated too. Simulated hashes never
  correspond to on-chain transactions. Each leg reports its own kind, so a
  real burn is recorded as REAL even on a SIMULATED route.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from web3 import Web3

from ..config import OneClickChainConfig, TokenConfig
from ..exceptions import ConfigurationError, InvalidAmount, SourceSettlementFailed
from ..erc4337.account import SmartAccount
from ..erc4337.pipeline import OperationPipeline, PipelineResult
from .aggregator_client import OKXCrossChainClient
from .models import BridgeTransaction, SettlementKind

logger = logging.getLogger(__name__)

# OKX uses the 0xEeee... sentinel for native tokens
OKX_NATIVE_TOKEN_ADDRESS = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"


def to_minor_units(amount: Decimal, decimals: int) -> int:
    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(
            f"Amount {amount} has more than {decimals} decimal places", field="amount"
        )
    return int(scaled)


def from_minor_units(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def simulated_hash(transaction_id: str, stage: str) -> str:
    return "0x" + bytes(Web3.keccak(text=f"oneclick-simulated:{stage}:{transaction_id}")).hex()


class DestinationState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SourceSettlement:
    tx_hash: str
    kind: SettlementKind = SettlementKind.REAL
    bridge_route_id: Optional[str] = None
    user_op_hash: Optional[str] = None


@dataclass
class DestinationCheck:
    state: DestinationState
    dest_tx_hash: Optional[str] = None
    error: Optional[str] = None
    kind: SettlementKind = SettlementKind.REAL


def _require_included(result: PipelineResult, what: str) -> str:
    poll = result.poll_result
    if poll is None or not poll.included or poll.receipt is None:
        raise SourceSettlementFailed(
            f"{what} was not included before the receipt deadline",
            details={"user_op_hash": result.user_op_hash},
        )
    if not poll.receipt.success:
        raise SourceSettlementFailed(
            f"{what} reverted on-chain",
            details={
                "user_op_hash": result.user_op_hash,
                "transaction_hash": poll.receipt.transaction_hash,
            },
        )
    return poll.receipt.transaction_hash


class SettlementBackend(ABC):
    kind: SettlementKind

    def __init__(self, config: OneClickChainConfig):
        self._config = config

    def _token(self, chain: str, symbol: str) -> TokenConfig:
        token = self._config.get_network(chain).get_token(symbol)
        if token is None:
            raise ConfigurationError(f"Token {symbol} is not configured on {chain}")
        return token

    @property
    @abstractmethod
    def first_check_delay_seconds(self) -> float:
        """Delay between source settlement and the first destination check."""

    @property
    @abstractmethod
    def poll_interval_seconds(self) -> float:
        ...

    @property
    def retry_interval_seconds(self) -> float:
        """Delay after a destination check failed to reach its service."""
        return self.poll_interval_seconds

    @abstractmethod
    async def settle_source(
        self,
        transaction: BridgeTransaction,
        account: SmartAccount,
        credential_ref: str,
    ) -> SourceSettlement:
        ...

    @abstractmethod
    async def check_destination(self, transaction: BridgeTransaction) -> DestinationCheck:
        ...


class AggregatorSettlement(SettlementBackend):
    kind = SettlementKind.REAL

    def __init__(
        self,
        config: OneClickChainConfig,
        aggregator: OKXCrossChainClient,
        pipelines: Dict[str, OperationPipeline],
    ):
        super().__init__(config)
        self._aggregator = aggregator
        self._pipelines = pipelines

    @property
    def first_check_delay_seconds(self) -> float:
        return self._config.bridge.status_poll_interval_seconds

    @property
    def poll_interval_seconds(self) -> float:
        return self._config.bridge.status_poll_interval_seconds

    @property
    def retry_interval_seconds(self) -> float:
        return self._config.bridge.status_poll_retry_seconds

    def _aggregator_address(self, token: TokenConfig) -> str:
        return OKX_NATIVE_TOKEN_ADDRESS if token.is_native else token.address

    async def settle_source(
        self,
        transaction: BridgeTransaction,
        account: SmartAccount,
        credential_ref: str,
    ) -> SourceSettlement:
        pipeline = self._pipelines.get(transaction.source_chain)
        if pipeline is None:
            raise ConfigurationError(f"No pipeline configured for {transaction.source_chain}")

        source_network = self._config.get_network(transaction.source_chain)
        dest_network = self._config.get_network(transaction.dest_chain)
        source_token = self._token(transaction.source_chain, transaction.source_token)
        dest_token = self._token(transaction.dest_chain, transaction.dest_token)
        amount = to_minor_units(transaction.amount, source_token.decimals)

        quote = await self._aggregator.get_quote(
            source_network.chain_id,
            dest_network.chain_id,
            self._aggregator_address(source_token),
            self._aggregator_address(dest_token),
            amount,
            account.address,
            self._config.bridge.slippage_tolerance,
            receive_address=transaction.recipient,
        )
        built = await self._aggregator.build_transaction(
            source_network.chain_id,
            dest_network.chain_id,
            self._aggregator_address(source_token),
            self._aggregator_address(dest_token),
            amount,
            account.address,
            quote.bridge_id,
            self._config.bridge.slippage_tolerance,
            receive_address=transaction.recipient,
        )
        result = await pipeline.execute(
            account, built.to, built.value, built.data, credential_ref, wait=True
        )
        tx_hash = _require_included(result, "Bridge transaction")
        logger.info(f"Bridge {transaction.id} source settled: {tx_hash}")
        return SourceSettlement(
            tx_hash=tx_hash,
            bridge_route_id=quote.bridge_id,
            user_op_hash=result.user_op_hash,
        )

    async def check_destination(self, transaction: BridgeTransaction) -> DestinationCheck:
        if not transaction.source_tx_hash:
            return DestinationCheck(DestinationState.FAILED, error="No source transaction hash")
        source_network = self._config.get_network(transaction.source_chain)
        status = await self._aggregator.get_status(transaction.source_tx_hash, source_network.chain_id)
        if status.is_completed:
            return DestinationCheck(DestinationState.COMPLETED, dest_tx_hash=status.dest_tx_hash)
        if status.is_failed:
            return DestinationCheck(
                DestinationState.FAILED, error=f"Aggregator reported status {status.status}"
            )
        logger.debug(f"Bridge {transaction.id} still processing: {status.status}")
        return DestinationCheck(DestinationState.PENDING)


class SimulatedSettlement(SettlementBackend):
    kind = SettlementKind.SIMULATED

    def __init__(
        self,
        config: OneClickChainConfig,
        burn_pipelines: Optional[Dict[str, OperationPipeline]] = None,
    ):
        super().__init__(config)
        self._burn_pipelines = burn_pipelines or {}

    @property
    def first_check_delay_seconds(self) -> float:
        return self._config.bridge.relay_interval_seconds

    @property
    def poll_interval_seconds(self) -> float:
        return self._config.bridge.relay_interval_seconds

    async def _burn(
        self,
        pipeline: OperationPipeline,
        transaction: BridgeTransaction,
        token: TokenConfig,
        account: SmartAccount,
        credential_ref: str,
    ) -> SourceSettlement:
        amount = to_minor_units(transaction.amount, token.decimals)
        user_op = await pipeline.builder.build_erc20_burn(account, token.address, amount)
        result = await pipeline.execute_operation(user_op, credential_ref, wait=True)
        tx_hash = _require_included(result, "Token burn")
        logger.info(f"Bridge {transaction.id} burned {transaction.amount} {token.symbol}: {tx_hash}")
        return SourceSettlement(tx_hash=tx_hash, user_op_hash=result.user_op_hash)

    async def settle_source(
        self,
        transaction: BridgeTransaction,
        account: SmartAccount,
        credential_ref: str,
    ) -> SourceSettlement:
        token = self._token(transaction.source_chain, transaction.source_token)
        pipeline = self._burn_pipelines.get(transaction.source_chain)
        if pipeline is not None and not token.is_native:
            return await self._burn(pipeline, transaction, token, account, credential_ref)

        tx_hash = simulated_hash(transaction.id, "source")
        logger.info(f"Bridge {transaction.id} source simulated: {tx_hash}")
        return SourceSettlement(tx_hash=tx_hash, kind=SettlementKind.SIMULATED)

    async def check_destination(self, transaction: BridgeTransaction) -> DestinationCheck:
        tx_hash = simulated_hash(transaction.id, "mint")
        logger.info(
            f"Bridge {transaction.id} mint simulated: {transaction.amount} "
            f"{transaction.dest_token} to {transaction.recipient} on {transaction.dest_chain}"
        )
        return DestinationCheck(
            DestinationState.COMPLETED, dest_tx_hash=tx_hash, kind=SettlementKind.SIMULATED
        )
