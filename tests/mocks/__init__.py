"""
Percolator Keeper Test Mocks
============================
Reusable mock classes for isolated testing.
"""

from tests.mocks.mock_encoder import MockEncoder
from tests.mocks.mock_rpc import MockRpcClient
from tests.mocks.slab_builder import SlabBuilder

__all__ = [
    "MockEncoder",
    "MockRpcClient",
    "SlabBuilder",
]
