"""
oneclick-chain: passkey smart accounts, gasless user operations and a
cross-chain bridge orchestrator for the Sepolia and X Layer testnets.
"""

from .config import (
    OneClickChainConfig,
    NetworkConfig,
    PipelineConfig,
    BridgeConfig,
    BridgePairConfig,
    AggregatorConfig,
    LoggingConfig,
    build_default_config,
    get_config,
    set_config,
    get_network_config,
)
from .exceptions import (
    OneClickChainError,
    ValidationError,
    ConfigurationError,
    SigningError,
    SponsorshipError,
    SubmissionError,
    ExternalServiceError,
    BridgeError,
)
from .logging_utils import ChainLogger, OperationType, get_chain_logger, setup_logging
from .chain_reader import ChainReader, JsonRpcChainReader

__version__ = "0.1.0"

__all__ = [
    "OneClickChainConfig",
    "NetworkConfig",
    "PipelineConfig",
    "BridgeConfig",
    "BridgePairConfig",
    "AggregatorConfig",
    "LoggingConfig",
    "build_default_config",
    "get_config",
    "set_config",
    "get_network_config",
    "OneClickChainError",
    "ValidationError",
    "ConfigurationError",
    "SigningError",
    "SponsorshipError",
    "SubmissionError",
    "ExternalServiceError",
    "BridgeError",
    "ChainLogger",
    "OperationType",
    "get_chain_logger",
    "setup_logging",
    "ChainReader",
    "JsonRpcChainReader",
]
