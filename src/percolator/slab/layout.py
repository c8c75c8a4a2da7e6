"""
Slab Layout & Tier Resolution
=============================
Byte offsets of the slab account and the length-based tier detection.

The slab header does not record its capacity, so the tier is inferred from
the total account length. Everything downstream of `resolve_tier` is
tier-agnostic and works from a SlabLayout.

Slab = header(72) + config(320) + engine
Engine = fixed(408) + bitmap(words*8) + post_bitmap(24) + next_free(N*2)
         -> aligned to 16 -> accounts(N*240)
"""

from dataclasses import dataclass
from typing import Dict, Optional

# =============================================================================
# FIXED REGIONS
# =============================================================================

MAGIC = 0x504552434F4C4154  # "PERCOLAT" read as little-endian u64
MAGIC_BYTES = MAGIC.to_bytes(8, "little")

HEADER_LEN = 72
CONFIG_OFFSET = HEADER_LEN
CONFIG_LEN = 320
ENGINE_OFF = HEADER_LEN + CONFIG_LEN  # 392

# Header
HEADER_VERSION_OFF = 8
HEADER_BUMP_OFF = 12
HEADER_FLAGS_OFF = 13
HEADER_ADMIN_OFF = 16
RESERVED_OFF = 48
FLAG_RESOLVED = 1 << 0

# Engine (relative to ENGINE_OFF)
ENGINE_VAULT_OFF = 0
ENGINE_INSURANCE_OFF = 16
ENGINE_PARAMS_OFF = 48
PARAMS_LEN = 144
ENGINE_CURRENT_SLOT_OFF = 192
ENGINE_FUNDING_INDEX_OFF = 200
ENGINE_LAST_FUNDING_SLOT_OFF = 216
ENGINE_FUNDING_RATE_BPS_OFF = 224
ENGINE_LAST_CRANK_SLOT_OFF = 232
ENGINE_MAX_CRANK_STALENESS_OFF = 240
ENGINE_TOTAL_OI_OFF = 248
ENGINE_C_TOT_OFF = 264
ENGINE_PNL_POS_TOT_OFF = 280
ENGINE_LIQ_CURSOR_OFF = 296
ENGINE_GC_CURSOR_OFF = 298
ENGINE_LAST_SWEEP_START_OFF = 304
ENGINE_LAST_SWEEP_COMPLETE_OFF = 312
ENGINE_CRANK_CURSOR_OFF = 320
ENGINE_SWEEP_START_IDX_OFF = 322
ENGINE_LIFETIME_LIQUIDATIONS_OFF = 328
ENGINE_LIFETIME_FORCE_CLOSES_OFF = 336
ENGINE_NET_LP_POS_OFF = 344
ENGINE_LP_SUM_ABS_OFF = 360
ENGINE_LP_MAX_ABS_OFF = 376
ENGINE_LP_MAX_ABS_SWEEP_OFF = 392
ENGINE_BITMAP_OFF = 408

# num_used(u16) + pad(6) + next_account_id(u64) + free_head(u16) + pad(6)
POST_BITMAP_LEN = 24

# RiskParams (relative to ENGINE_OFF + ENGINE_PARAMS_OFF)
PARAMS_WARMUP_PERIOD_OFF = 0
PARAMS_MAINTENANCE_MARGIN_OFF = 8
PARAMS_INITIAL_MARGIN_OFF = 16
PARAMS_TRADING_FEE_OFF = 24
PARAMS_MAX_ACCOUNTS_OFF = 32
PARAMS_NEW_ACCOUNT_FEE_OFF = 40
PARAMS_RISK_THRESHOLD_OFF = 56
PARAMS_MAINTENANCE_FEE_OFF = 72
PARAMS_MAX_CRANK_STALENESS_OFF = 88
PARAMS_LIQUIDATION_FEE_BPS_OFF = 96
PARAMS_LIQUIDATION_FEE_CAP_OFF = 104
PARAMS_LIQUIDATION_BUFFER_OFF = 120
PARAMS_MIN_LIQUIDATION_OFF = 128

# Account record
ACCOUNT_SIZE = 240
ACCT_ACCOUNT_ID_OFF = 0
ACCT_CAPITAL_OFF = 8
ACCT_KIND_OFF = 24
ACCT_PNL_OFF = 32
ACCT_RESERVED_PNL_OFF = 48
ACCT_WARMUP_STARTED_OFF = 56
ACCT_WARMUP_SLOPE_OFF = 64
ACCT_POSITION_SIZE_OFF = 80
ACCT_ENTRY_PRICE_OFF = 96
ACCT_FUNDING_INDEX_OFF = 104
ACCT_MATCHER_PROGRAM_OFF = 120
ACCT_MATCHER_CONTEXT_OFF = 152
ACCT_OWNER_OFF = 184
ACCT_FEE_CREDITS_OFF = 216
ACCT_LAST_FEE_SLOT_OFF = 232

TIER_CAPACITIES = (64, 256, 1024, 4096)
LARGEST_TIER = TIER_CAPACITIES[-1]


# =============================================================================
# TIER LAYOUT
# =============================================================================

@dataclass(frozen=True)
class SlabLayout:
    """Tier-dependent offsets. Engine-relative unless named *_size."""

    max_accounts: int
    bitmap_words: int
    num_used_off: int
    next_account_id_off: int
    free_head_off: int
    next_free_off: int
    accounts_off: int
    total_size: int

    @property
    def header_slice_len(self) -> int:
        """Bytes needed to decode everything except the account array."""
        return ENGINE_OFF + self.next_free_off


def _align16(n: int) -> int:
    return (n + 15) // 16 * 16


def slab_layout(max_accounts: int) -> SlabLayout:
    """Compute the layout for an arbitrary account capacity."""
    bitmap_words = (max_accounts + 63) // 64
    post_bitmap_off = ENGINE_BITMAP_OFF + bitmap_words * 8
    next_free_off = post_bitmap_off + POST_BITMAP_LEN
    accounts_off = _align16(next_free_off + max_accounts * 2)
    return SlabLayout(
        max_accounts=max_accounts,
        bitmap_words=bitmap_words,
        num_used_off=post_bitmap_off,
        next_account_id_off=post_bitmap_off + 8,
        free_head_off=post_bitmap_off + 16,
        next_free_off=next_free_off,
        accounts_off=accounts_off,
        total_size=ENGINE_OFF + accounts_off + max_accounts * ACCOUNT_SIZE,
    )


SLAB_TIERS: Dict[int, SlabLayout] = {n: slab_layout(n) for n in TIER_CAPACITIES}

TIER_LABELS = {
    64: "Micro",
    256: "Small",
    1024: "Medium",
    4096: "Large",
}


def resolve_tier(data_len: int) -> Optional[SlabLayout]:
    """
    Return the unique tier whose total size equals `data_len`.

    Returns None when no tier matches; callers that need the account
    region raise UnknownLayout.
    """
    matches = [layout for layout in SLAB_TIERS.values() if layout.total_size == data_len]
    if len(matches) != 1:
        return None
    return matches[0]


def tier_layout(max_accounts: int) -> SlabLayout:
    """Layout for a known tier capacity."""
    try:
        return SLAB_TIERS[max_accounts]
    except KeyError:
        raise ValueError(f"Unknown slab tier capacity: {max_accounts}") from None
