"""
Percolator Keeper Test Configuration
====================================
Shared fixtures and pytest markers for the test suite.
"""

import pytest
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from solders.keypair import Keypair
from solders.pubkey import Pubkey


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "network: marks tests that require network access"
    )
    config.addinivalue_line(
        "markers", "integration: marks integration tests"
    )


# ============================================================================
# SHARED FIXTURES
# ============================================================================

@pytest.fixture
def program_id():
    return Pubkey.new_unique()


@pytest.fixture
def keeper_keypair():
    return Keypair()


@pytest.fixture
def slab_builder():
    """Factory for tier-sized slab buffers."""
    from tests.mocks.slab_builder import SlabBuilder

    def _make(max_accounts: int = 64) -> SlabBuilder:
        return SlabBuilder(max_accounts)

    return _make


@pytest.fixture
def mock_rpc_client():
    from tests.mocks.mock_rpc import MockRpcClient
    return MockRpcClient()


@pytest.fixture
def mock_encoder():
    from tests.mocks.mock_encoder import MockEncoder
    return MockEncoder()
