"""Cross-chain bridge: quotes, settlement and transaction tracking."""

from .models import (
    BridgeQuote,
    BridgeStatus,
    BridgeTransaction,
    FailureStage,
    FallbackReason,
    Outcome,
    SettlementKind,
)
from .store import BridgeTransactionStore, InMemoryBridgeTransactionStore
from .aggregator_client import (
    AggregatorQuote,
    AggregatorStatus,
    AggregatorTransaction,
    OKXCrossChainClient,
)
from .settlement import (
    AggregatorSettlement,
    DestinationCheck,
    DestinationState,
    SettlementBackend,
    SimulatedSettlement,
    SourceSettlement,
)
from .orchestrator import BridgeOrchestrator, build_orchestrator

__all__ = [
    "BridgeQuote",
    "BridgeStatus",
    "BridgeTransaction",
    "FailureStage",
    "FallbackReason",
    "Outcome",
    "SettlementKind",
    "BridgeTransactionStore",
    "InMemoryBridgeTransactionStore",
    "AggregatorQuote",
    "AggregatorStatus",
    "AggregatorTransaction",
    "OKXCrossChainClient",
    "AggregatorSettlement",
    "DestinationCheck",
    "DestinationState",
    "SettlementBackend",
    "SimulatedSettlement",
    "SourceSettlement",
    "BridgeOrchestrator",
    "build_orchestrator",
]
