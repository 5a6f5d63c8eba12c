"""
Configuration management for oneclick-chain.

Provides centralized configuration for:
- Network definitions (chain IDs, RPC endpoints, ERC-4337 contracts)
- Bundler and paymaster endpoints
- Gasless pipeline behaviour (sponsorship policy, timeouts, default gas)
- Bridge pairs, fees and relay timing
- Aggregator API credentials
- Logging configuration

Every value can be overridden from the environment with the
ONECLICK_CHAIN_ prefix.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "ONECLICK_CHAIN_"

# ERC-4337 EntryPoint v0.6 (same address on every EVM chain)
ENTRYPOINT_V06_ADDRESS = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"


def _get_env(key: str, default: Any = None, prefix: str = ENV_PREFIX) -> Any:
    """Get environment variable with prefix."""
    return os.getenv(f"{prefix}{key}", default)


def _get_env_float(key: str, default: float) -> float:
    raw = _get_env(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {ENV_PREFIX}{key}={raw!r}")
        return default


def _get_env_bool(key: str, default: bool) -> bool:
    raw = _get_env(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RPCEndpointConfig:
    """Configuration for a single RPC endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = 30.0


@dataclass
class TokenConfig:
    """A token known to the bridge and the balance checks."""
    symbol: str
    name: str
    address: str
    decimals: int = 18
    is_native: bool = False


@dataclass
class NetworkConfig:
    """Configuration for one network the smart account lives on."""
    chain_id: int
    name: str
    display_name: str

    rpc_endpoints: List[RPCEndpointConfig] = field(default_factory=list)

    # ERC-4337 contracts
    entrypoint_address: str = ENTRYPOINT_V06_ADDRESS
    factory_address: str = ""
    # Creation code of the account proxy deployed by the factory. Needed for
    # the offline CREATE2 computation; without it only the factory can answer.
    account_creation_code: str = ""

    bundler_url: str = ""
    paymaster_url: str = ""
    bridge_contract: str = ""

    native_token: str = "ETH"
    explorer_url: str = ""
    is_testnet: bool = True
    tokens: List[TokenConfig] = field(default_factory=list)

    def get_primary_rpc_url(self) -> str:
        """Get the primary (highest priority) RPC URL."""
        if not self.rpc_endpoints:
            raise ValueError(f"No RPC endpoints configured for {self.name}")
        sorted_endpoints = sorted(self.rpc_endpoints, key=lambda e: e.priority)
        return sorted_endpoints[0].url

    def get_token(self, symbol: str) -> Optional[TokenConfig]:
        for token in self.tokens:
            if token.symbol == symbol:
                return token
        return None


@dataclass
class PipelineConfig:
    """Configuration for the gasless user operation pipeline."""
    # Proceed without a paymaster (user pays gas) when sponsorship fails.
    allow_unsponsored: bool = False
    sponsorship_policy_id: Optional[str] = None

    # Receipt polling
    receipt_poll_interval_seconds: float = 2.0
    receipt_timeout_seconds: float = 60.0

    # Human-present passkey ceremony
    signing_timeout_seconds: float = 60.0

    # Gas seeds used before estimation / sponsorship
    default_call_gas_limit: int = 200_000
    default_verification_gas_limit: int = 150_000
    deployment_verification_gas_limit: int = 500_000
    default_pre_verification_gas: int = 50_000
    fallback_gas_price_wei: int = 1_000_000_000  # 1 gwei

    # Static estimate returned when the bundler cannot estimate
    fallback_call_gas_limit: int = 300_000
    fallback_deployment_verification_gas_limit: int = 600_000
    fallback_priority_fee_wei: int = 100_000_000  # 0.1 gwei

    http_timeout_seconds: float = 30.0


@dataclass
class BridgePairConfig:
    """A supported (source, destination) route with its static rate."""
    source_chain: str
    source_token: str
    dest_chain: str
    dest_token: str
    rate: Decimal = Decimal("1")
    min_amount: Decimal = Decimal("0.001")
    max_amount: Decimal = Decimal("10")
    # Whether the aggregator can settle this pair for real
    real_bridge_supported: bool = False


@dataclass
class BridgeConfig:
    """Configuration for the bridge orchestrator."""
    pairs: List[BridgePairConfig] = field(default_factory=list)

    fee_rate: Decimal = Decimal("0.005")  # 0.5%
    quote_decimals: int = 6
    slippage_tolerance: str = "0.005"

    fallback_eta_seconds: int = 300
    simulated_eta_seconds: int = 120
    relay_interval_seconds: float = 10.0

    status_poll_interval_seconds: float = 30.0
    status_poll_retry_seconds: float = 60.0
    status_deadline_seconds: float = 3600.0


@dataclass
class AggregatorConfig:
    """OKX cross-chain aggregator API credentials."""
    base_url: str = "https://www.okx.com/api/v5/dex/cross-chain"
    api_key: str = ""
    secret_key: str = ""
    passphrase: str = ""
    project_id: str = ""
    timeout_seconds: float = 30.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.secret_key and self.passphrase)


@dataclass
class LoggingConfig:
    """Configuration for pipeline and bridge logging."""
    rpc_call_level: str = "DEBUG"
    operation_level: str = "INFO"
    error_level: str = "ERROR"

    mask_addresses: bool = False
    log_rpc_latency: bool = True

    audit_log_enabled: bool = True


@dataclass
class OneClickChainConfig:
    """
    Master configuration for oneclick-chain.

    Supports loading from environment variables with prefix ONECLICK_CHAIN_.
    """
    networks: Dict[str, NetworkConfig] = field(default_factory=dict)

    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    default_network: str = "sepolia"

    def get_network(self, name: str) -> NetworkConfig:
        """Get configuration for a specific network."""
        if name not in self.networks:
            raise ValueError(f"Unknown network: {name}")
        return self.networks[name]

    def is_network_supported(self, name: str) -> bool:
        return name in self.networks

    def get_network_by_chain_id(self, chain_id: int) -> Optional[NetworkConfig]:
        for network in self.networks.values():
            if network.chain_id == chain_id:
                return network
        return None


def _pimlico_url(slug: str) -> str:
    api_key = _get_env("PIMLICO_API_KEY", "")
    return f"https://api.pimlico.io/v2/{slug}/rpc?apikey={api_key}"


def _build_network_config(
    chain_id: int,
    name: str,
    display_name: str,
    default_rpc: str,
    fallback_rpcs: List[str],
    factory_address: str,
    bundler_slug: str,
    native_token: str,
    explorer_url: str,
    tokens: List[TokenConfig],
    bridge_contract: str = "",
) -> NetworkConfig:
    """Build a NetworkConfig with environment variable overrides."""
    key = name.upper()
    primary_url = _get_env(f"{key}_RPC_URL") or default_rpc

    endpoints = [RPCEndpointConfig(url=primary_url, priority=0)]
    for i, url in enumerate(fallback_rpcs):
        if url != primary_url:
            endpoints.append(RPCEndpointConfig(url=url, priority=i + 1))

    bundler_url = _get_env(f"{key}_BUNDLER_URL") or _pimlico_url(bundler_slug)
    paymaster_url = _get_env(f"{key}_PAYMASTER_URL") or bundler_url

    return NetworkConfig(
        chain_id=chain_id,
        name=name,
        display_name=display_name,
        rpc_endpoints=endpoints,
        entrypoint_address=_get_env(f"{key}_ENTRYPOINT_ADDRESS") or ENTRYPOINT_V06_ADDRESS,
        factory_address=_get_env(f"{key}_FACTORY_ADDRESS") or factory_address,
        account_creation_code=_get_env(f"{key}_ACCOUNT_CREATION_CODE", ""),
        bundler_url=bundler_url,
        paymaster_url=paymaster_url,
        bridge_contract=_get_env(f"{key}_BRIDGE_CONTRACT") or bridge_contract,
        native_token=native_token,
        explorer_url=explorer_url,
        is_testnet=True,
        tokens=tokens,
    )


def default_bridge_pairs() -> List[BridgePairConfig]:
    return [
        BridgePairConfig("sepolia", "ETH", "xlayer", "OKB", real_bridge_supported=True),
        BridgePairConfig("sepolia", "OKB", "xlayer", "OKB", real_bridge_supported=True),
        BridgePairConfig("xlayer", "OKB", "sepolia", "ETH"),
        BridgePairConfig("xlayer", "OKB", "sepolia", "OKB"),
    ]


def build_default_config() -> OneClickChainConfig:
    """Build default configuration with the Sepolia and X Layer testnets."""
    networks: Dict[str, NetworkConfig] = {}

    networks["sepolia"] = _build_network_config(
        chain_id=11155111,
        name="sepolia",
        display_name="Sepolia",
        default_rpc="https://eth-sepolia.public.blastapi.io",
        fallback_rpcs=["https://ethereum-sepolia-rpc.publicnode.com"],
        factory_address="0xb8d779eeef173c6dbc3a28f0dec73e48cbe6411c",
        bundler_slug="sepolia",
        native_token="ETH",
        explorer_url="https://sepolia.etherscan.io",
        bridge_contract="0x298bc730bdcc17a2b8e8d9841efa3e0bdbd5165a",
        tokens=[
            TokenConfig("ETH", "Sepolia Ether", NATIVE_TOKEN_ADDRESS, 18, is_native=True),
            TokenConfig("OKB", "OKB Token", "0x0bc13595f7dabbf1d00fc5caa670d2374bd4aa9a", 18),
            TokenConfig("USDC", "USD Coin (Sepolia)", "0x1c7d4b196cb0c7b01d743fbc6116a902379c7238", 6),
        ],
    )

    networks["xlayer"] = _build_network_config(
        chain_id=195,
        name="xlayer",
        display_name="X Layer Testnet",
        default_rpc="https://testrpc.xlayer.tech",
        fallback_rpcs=[],
        factory_address="0x7ceb6617962dd76e96b3227352f0ee9f83fcd2b7",
        bundler_slug="xlayer-testnet",
        native_token="OKB",
        explorer_url="https://www.okx.com/explorer/xlayer-test",
        tokens=[
            TokenConfig("OKB", "OKB", NATIVE_TOKEN_ADDRESS, 18, is_native=True),
        ],
    )

    pipeline = PipelineConfig(
        allow_unsponsored=_get_env_bool("ALLOW_UNSPONSORED", False),
        sponsorship_policy_id=_get_env("SPONSORSHIP_POLICY_ID") or None,
        receipt_timeout_seconds=_get_env_float("RECEIPT_TIMEOUT_SECONDS", 60.0),
        signing_timeout_seconds=_get_env_float("SIGNING_TIMEOUT_SECONDS", 60.0),
    )

    bridge = BridgeConfig(
        pairs=default_bridge_pairs(),
        relay_interval_seconds=_get_env_float("BRIDGE_RELAY_INTERVAL_SECONDS", 10.0),
    )

    aggregator = AggregatorConfig(
        api_key=_get_env("OKX_API_KEY", ""),
        secret_key=_get_env("OKX_SECRET_KEY", ""),
        passphrase=_get_env("OKX_PASSPHRASE", ""),
        project_id=_get_env("OKX_PROJECT_ID", ""),
    )

    return OneClickChainConfig(
        networks=networks,
        pipeline=pipeline,
        bridge=bridge,
        aggregator=aggregator,
        default_network=_get_env("DEFAULT_NETWORK", "sepolia"),
    )


# Global configuration instance
_global_config: Optional[OneClickChainConfig] = None


def get_config() -> OneClickChainConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = build_default_config()
    return _global_config


def set_config(config: Optional[OneClickChainConfig]) -> None:
    """Set (or reset with None) the global configuration instance."""
    global _global_config
    _global_config = config


def get_network_config(name: str) -> NetworkConfig:
    """Convenience function to get network configuration."""
    return get_config().get_network(name)
