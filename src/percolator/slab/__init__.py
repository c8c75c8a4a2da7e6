"""
Slab Codec
==========
Binary codec for Percolator slab accounts.

Components:
- layout.py: offsets and length-based tier resolution
- models.py: typed header / config / params / engine / account views
- codec.py: little-endian readers and region decoders
"""

from src.percolator.slab.layout import (
    ACCOUNT_SIZE,
    MAGIC,
    MAGIC_BYTES,
    SLAB_TIERS,
    TIER_CAPACITIES,
    SlabLayout,
    resolve_tier,
    slab_layout,
    tier_layout,
)
from src.percolator.slab.models import (
    Account,
    AccountKind,
    EngineState,
    MarketConfig,
    MarketSnapshot,
    RiskParams,
    SlabHeader,
)
from src.percolator.slab.codec import (
    bitmap_consistent,
    decode_snapshot,
    is_account_used,
    max_account_index,
    parse_account,
    parse_all_accounts,
    parse_config,
    parse_engine,
    parse_header,
    parse_params,
    parse_used_indices,
    read_i128,
    read_u128,
)

__all__ = [
    "ACCOUNT_SIZE",
    "MAGIC",
    "MAGIC_BYTES",
    "SLAB_TIERS",
    "TIER_CAPACITIES",
    "SlabLayout",
    "resolve_tier",
    "slab_layout",
    "tier_layout",
    "Account",
    "AccountKind",
    "EngineState",
    "MarketConfig",
    "MarketSnapshot",
    "RiskParams",
    "SlabHeader",
    "bitmap_consistent",
    "decode_snapshot",
    "is_account_used",
    "max_account_index",
    "parse_account",
    "parse_all_accounts",
    "parse_config",
    "parse_engine",
    "parse_header",
    "parse_params",
    "parse_used_indices",
    "read_i128",
    "read_u128",
]
