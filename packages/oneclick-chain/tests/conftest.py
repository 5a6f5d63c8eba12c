"""
Pytest configuration for oneclick-chain tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("ONECLICK_CHAIN_PIMLICO_API_KEY", "test-pimlico-key")
os.environ.setdefault("ONECLICK_CHAIN_BRIDGE_RELAY_INTERVAL_SECONDS", "0.01")

from oneclick_chain import logging_utils
from oneclick_chain.config import set_config

from fakes import FakeChainReader


@pytest.fixture(scope="session")
def anyio_backend():
    """Use asyncio for async tests."""
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_globals():
    """Each test starts from a freshly built configuration and logger."""
    set_config(None)
    logging_utils._chain_logger = None
    yield
    set_config(None)
    logging_utils._chain_logger = None


@pytest.fixture
def sample_eth_address():
    """Valid Ethereum address for testing."""
    return "0x1234567890123456789012345678901234567890"


@pytest.fixture
def sample_tx_hash():
    """Valid transaction hash for testing."""
    return "0x" + "a" * 64


@pytest.fixture
def fake_reader():
    """Chain reader backed by dictionaries."""
    return FakeChainReader()
