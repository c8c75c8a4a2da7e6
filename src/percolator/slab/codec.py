"""
Slab Codec
==========
Decodes raw slab account bytes into typed views.

All integers are little-endian. u128 values are assembled from two u64
halves; i128 values are read unsigned and reinterpreted as two's complement.

Usage:
    from src.percolator.slab.codec import decode_snapshot, parse_account

    snapshot = decode_snapshot(slab_pubkey, program_id, data)
    account = parse_account(snapshot.data, 3, snapshot.layout)
"""

import struct
from typing import Iterator, List, Optional, Tuple

from solders.pubkey import Pubkey

from src.percolator.errors import AccountIndexError, DecodeError, UnknownLayout
from src.percolator.slab import layout as L
from src.percolator.slab.layout import SlabLayout, resolve_tier
from src.percolator.slab.models import (
    Account,
    AccountKind,
    EngineState,
    InsuranceFund,
    MarketConfig,
    MarketSnapshot,
    RiskParams,
    SlabHeader,
)

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_U64_PAIR = struct.Struct("<QQ")

_TWO_127 = 1 << 127
_TWO_128 = 1 << 128


# =============================================================================
# PRIMITIVE READERS
# =============================================================================

def read_u8(data: bytes, off: int) -> int:
    return _U8.unpack_from(data, off)[0]


def read_u16(data: bytes, off: int) -> int:
    return _U16.unpack_from(data, off)[0]


def read_u32(data: bytes, off: int) -> int:
    return _U32.unpack_from(data, off)[0]


def read_u64(data: bytes, off: int) -> int:
    return _U64.unpack_from(data, off)[0]


def read_i64(data: bytes, off: int) -> int:
    return _I64.unpack_from(data, off)[0]


def read_u128(data: bytes, off: int) -> int:
    lo, hi = _U64_PAIR.unpack_from(data, off)
    return (hi << 64) | lo


def read_i128(data: bytes, off: int) -> int:
    unsigned = read_u128(data, off)
    if unsigned >= _TWO_127:
        return unsigned - _TWO_128
    return unsigned


def read_pubkey(data: bytes, off: int) -> Pubkey:
    return Pubkey.from_bytes(bytes(data[off:off + 32]))


def _require_len(data: bytes, needed: int, what: str) -> None:
    if len(data) < needed:
        raise DecodeError(f"Slab data too short for {what}: {len(data)} < {needed}")


def _layout_for(data: bytes, layout: Optional[SlabLayout]) -> SlabLayout:
    """Explicit layout wins; otherwise infer it from the byte length."""
    if layout is not None:
        return layout
    resolved = resolve_tier(len(data))
    if resolved is None:
        raise UnknownLayout(len(data))
    return resolved


# =============================================================================
# HEADER & CONFIG
# =============================================================================

def parse_header(data: bytes) -> SlabHeader:
    _require_len(data, L.HEADER_LEN, "header")

    magic = read_u64(data, 0)
    if magic != L.MAGIC:
        raise DecodeError(f"Invalid slab magic: expected {L.MAGIC:x}, got {magic:x}")

    flags = read_u8(data, L.HEADER_FLAGS_OFF)
    return SlabHeader(
        magic=magic,
        version=read_u32(data, L.HEADER_VERSION_OFF),
        bump=read_u8(data, L.HEADER_BUMP_OFF),
        flags=flags,
        resolved=bool(flags & L.FLAG_RESOLVED),
        admin=read_pubkey(data, L.HEADER_ADMIN_OFF),
        nonce=read_u64(data, L.RESERVED_OFF),
        last_threshold_update_slot=read_u64(data, L.RESERVED_OFF + 8),
    )


def read_nonce(data: bytes) -> int:
    _require_len(data, L.RESERVED_OFF + 8, "nonce")
    return read_u64(data, L.RESERVED_OFF)


def read_last_threshold_update_slot(data: bytes) -> int:
    _require_len(data, L.RESERVED_OFF + 16, "last threshold update slot")
    return read_u64(data, L.RESERVED_OFF + 8)


class _Cursor:
    """Sequential reader for the packed MarketConfig region."""

    def __init__(self, data: bytes, off: int):
        self.data = data
        self.off = off

    def take(self, reader, size: int):
        value = reader(self.data, self.off)
        self.off += size
        return value

    def raw(self, size: int) -> bytes:
        value = bytes(self.data[self.off:self.off + size])
        self.off += size
        return value


def parse_config(data: bytes) -> MarketConfig:
    _require_len(data, L.CONFIG_OFFSET + L.CONFIG_LEN, "config")

    c = _Cursor(data, L.CONFIG_OFFSET)
    return MarketConfig(
        collateral_mint=c.take(read_pubkey, 32),
        vault_pubkey=c.take(read_pubkey, 32),
        index_feed_id=c.raw(32),
        max_staleness_secs=c.take(read_u64, 8),
        conf_filter_bps=c.take(read_u16, 2),
        vault_authority_bump=c.take(read_u8, 1),
        invert=c.take(read_u8, 1),
        unit_scale=c.take(read_u32, 4),
        funding_horizon_slots=c.take(read_u64, 8),
        funding_k_bps=c.take(read_u64, 8),
        funding_inv_scale_notional_e6=c.take(read_i128, 16),
        funding_max_premium_bps=c.take(read_u64, 8),
        funding_max_bps_per_slot=c.take(read_u64, 8),
        thresh_floor=c.take(read_u128, 16),
        thresh_risk_bps=c.take(read_u64, 8),
        thresh_update_interval_slots=c.take(read_u64, 8),
        thresh_step_bps=c.take(read_u64, 8),
        thresh_alpha_bps=c.take(read_u64, 8),
        thresh_min=c.take(read_u128, 16),
        thresh_max=c.take(read_u128, 16),
        thresh_min_step=c.take(read_u128, 16),
        oracle_authority=c.take(read_pubkey, 32),
        authority_price_e6=c.take(read_u64, 8),
        authority_timestamp=c.take(read_i64, 8),
        oracle_price_cap_e2bps=c.take(read_u64, 8),
        last_effective_price_e6=c.take(read_u64, 8),
    )


# =============================================================================
# ENGINE
# =============================================================================

def parse_params(data: bytes) -> RiskParams:
    base = L.ENGINE_OFF + L.ENGINE_PARAMS_OFF
    _require_len(data, base + L.PARAMS_LEN, "RiskParams")

    return RiskParams(
        warmup_period_slots=read_u64(data, base + L.PARAMS_WARMUP_PERIOD_OFF),
        maintenance_margin_bps=read_u64(data, base + L.PARAMS_MAINTENANCE_MARGIN_OFF),
        initial_margin_bps=read_u64(data, base + L.PARAMS_INITIAL_MARGIN_OFF),
        trading_fee_bps=read_u64(data, base + L.PARAMS_TRADING_FEE_OFF),
        max_accounts=read_u64(data, base + L.PARAMS_MAX_ACCOUNTS_OFF),
        new_account_fee=read_u128(data, base + L.PARAMS_NEW_ACCOUNT_FEE_OFF),
        risk_reduction_threshold=read_u128(data, base + L.PARAMS_RISK_THRESHOLD_OFF),
        maintenance_fee_per_slot=read_u128(data, base + L.PARAMS_MAINTENANCE_FEE_OFF),
        max_crank_staleness_slots=read_u64(data, base + L.PARAMS_MAX_CRANK_STALENESS_OFF),
        liquidation_fee_bps=read_u64(data, base + L.PARAMS_LIQUIDATION_FEE_BPS_OFF),
        liquidation_fee_cap=read_u128(data, base + L.PARAMS_LIQUIDATION_FEE_CAP_OFF),
        liquidation_buffer_bps=read_u64(data, base + L.PARAMS_LIQUIDATION_BUFFER_OFF),
        min_liquidation_abs=read_u128(data, base + L.PARAMS_MIN_LIQUIDATION_OFF),
    )


def parse_engine(data: bytes, layout: Optional[SlabLayout] = None) -> EngineState:
    """
    Parse RiskEngine aggregates (everything except the account array).

    The post-bitmap counters move with the tier. When no layout is given and
    none can be inferred, the largest tier's positions are used so partial
    or oversized buffers still yield the fixed-offset fields.
    """
    if layout is None:
        layout = resolve_tier(len(data)) or L.SLAB_TIERS[L.LARGEST_TIER]

    base = L.ENGINE_OFF
    _require_len(data, base + layout.next_account_id_off + 8, "RiskEngine")

    return EngineState(
        vault=read_u128(data, base + L.ENGINE_VAULT_OFF),
        insurance_fund=InsuranceFund(
            balance=read_u128(data, base + L.ENGINE_INSURANCE_OFF),
            fee_revenue=read_u128(data, base + L.ENGINE_INSURANCE_OFF + 16),
        ),
        current_slot=read_u64(data, base + L.ENGINE_CURRENT_SLOT_OFF),
        funding_index_qpb_e6=read_i128(data, base + L.ENGINE_FUNDING_INDEX_OFF),
        last_funding_slot=read_u64(data, base + L.ENGINE_LAST_FUNDING_SLOT_OFF),
        funding_rate_bps_per_slot_last=read_i64(data, base + L.ENGINE_FUNDING_RATE_BPS_OFF),
        last_crank_slot=read_u64(data, base + L.ENGINE_LAST_CRANK_SLOT_OFF),
        max_crank_staleness_slots=read_u64(data, base + L.ENGINE_MAX_CRANK_STALENESS_OFF),
        total_open_interest=read_u128(data, base + L.ENGINE_TOTAL_OI_OFF),
        c_tot=read_u128(data, base + L.ENGINE_C_TOT_OFF),
        pnl_pos_tot=read_u128(data, base + L.ENGINE_PNL_POS_TOT_OFF),
        liq_cursor=read_u16(data, base + L.ENGINE_LIQ_CURSOR_OFF),
        gc_cursor=read_u16(data, base + L.ENGINE_GC_CURSOR_OFF),
        last_sweep_start_slot=read_u64(data, base + L.ENGINE_LAST_SWEEP_START_OFF),
        last_sweep_complete_slot=read_u64(data, base + L.ENGINE_LAST_SWEEP_COMPLETE_OFF),
        crank_cursor=read_u16(data, base + L.ENGINE_CRANK_CURSOR_OFF),
        sweep_start_idx=read_u16(data, base + L.ENGINE_SWEEP_START_IDX_OFF),
        lifetime_liquidations=read_u64(data, base + L.ENGINE_LIFETIME_LIQUIDATIONS_OFF),
        lifetime_force_closes=read_u64(data, base + L.ENGINE_LIFETIME_FORCE_CLOSES_OFF),
        net_lp_pos=read_i128(data, base + L.ENGINE_NET_LP_POS_OFF),
        lp_sum_abs=read_u128(data, base + L.ENGINE_LP_SUM_ABS_OFF),
        lp_max_abs=read_u128(data, base + L.ENGINE_LP_MAX_ABS_OFF),
        lp_max_abs_sweep=read_u128(data, base + L.ENGINE_LP_MAX_ABS_SWEEP_OFF),
        num_used_accounts=read_u16(data, base + layout.num_used_off),
        next_account_id=read_u64(data, base + layout.next_account_id_off),
    )


# =============================================================================
# BITMAP & ACCOUNTS
# =============================================================================

def iter_used_indices(data: bytes, layout: Optional[SlabLayout] = None) -> Iterator[int]:
    """Yield live account indices in ascending order."""
    layout = _layout_for(data, layout)
    base = L.ENGINE_OFF + L.ENGINE_BITMAP_OFF
    _require_len(data, base + layout.bitmap_words * 8, "bitmap")

    for word in range(layout.bitmap_words):
        bits = read_u64(data, base + word * 8)
        if bits == 0:
            continue
        for bit in range(64):
            if (bits >> bit) & 1:
                yield word * 64 + bit


def parse_used_indices(data: bytes, layout: Optional[SlabLayout] = None) -> List[int]:
    return list(iter_used_indices(data, layout))


def is_account_used(data: bytes, idx: int, layout: Optional[SlabLayout] = None) -> bool:
    layout = _layout_for(data, layout)
    if idx < 0 or idx >= layout.max_accounts:
        return False
    word, bit = divmod(idx, 64)
    off = L.ENGINE_OFF + L.ENGINE_BITMAP_OFF + word * 8
    _require_len(data, off + 8, "bitmap")
    return bool((read_u64(data, off) >> bit) & 1)


def bitmap_consistent(data: bytes, layout: Optional[SlabLayout] = None) -> bool:
    """Popcount of the used bitmap equals engine.num_used_accounts."""
    layout = _layout_for(data, layout)
    return len(parse_used_indices(data, layout)) == parse_engine(data, layout).num_used_accounts


def max_account_index(data: bytes, layout: Optional[SlabLayout] = None) -> int:
    """Capacity of the account array (exclusive upper bound for indices)."""
    return _layout_for(data, layout).max_accounts


def parse_account(data: bytes, idx: int, layout: Optional[SlabLayout] = None) -> Account:
    layout = _layout_for(data, layout)
    if idx < 0 or idx >= layout.max_accounts:
        raise AccountIndexError(idx, layout.max_accounts)

    base = L.ENGINE_OFF + layout.accounts_off + idx * L.ACCOUNT_SIZE
    _require_len(data, base + L.ACCOUNT_SIZE, "account")

    kind_byte = read_u8(data, base + L.ACCT_KIND_OFF)
    return Account(
        kind=AccountKind.LP if kind_byte == 1 else AccountKind.USER,
        account_id=read_u64(data, base + L.ACCT_ACCOUNT_ID_OFF),
        capital=read_u128(data, base + L.ACCT_CAPITAL_OFF),
        pnl=read_i128(data, base + L.ACCT_PNL_OFF),
        reserved_pnl=read_u64(data, base + L.ACCT_RESERVED_PNL_OFF),
        warmup_started_at_slot=read_u64(data, base + L.ACCT_WARMUP_STARTED_OFF),
        warmup_slope_per_step=read_u128(data, base + L.ACCT_WARMUP_SLOPE_OFF),
        position_size=read_i128(data, base + L.ACCT_POSITION_SIZE_OFF),
        entry_price=read_u64(data, base + L.ACCT_ENTRY_PRICE_OFF),
        funding_index=read_i128(data, base + L.ACCT_FUNDING_INDEX_OFF),
        matcher_program=read_pubkey(data, base + L.ACCT_MATCHER_PROGRAM_OFF),
        matcher_context=read_pubkey(data, base + L.ACCT_MATCHER_CONTEXT_OFF),
        owner=read_pubkey(data, base + L.ACCT_OWNER_OFF),
        fee_credits=read_i128(data, base + L.ACCT_FEE_CREDITS_OFF),
        last_fee_slot=read_u64(data, base + L.ACCT_LAST_FEE_SLOT_OFF),
    )


def parse_all_accounts(data: bytes, layout: Optional[SlabLayout] = None) -> List[Tuple[int, Account]]:
    """All live accounts as (index, account) pairs."""
    layout = _layout_for(data, layout)
    return [(idx, parse_account(data, idx, layout)) for idx in iter_used_indices(data, layout)]


# =============================================================================
# SNAPSHOT
# =============================================================================

def decode_snapshot(
    slab_address: Pubkey,
    program_id: Optional[Pubkey],
    data: bytes,
    layout: Optional[SlabLayout] = None,
) -> MarketSnapshot:
    """
    Decode header, config, params and engine in one pass.

    `layout` must be supplied for partial (data-sliced) buffers; for full
    slabs it is inferred and may come back None for unknown lengths.
    """
    data = bytes(data)
    if layout is None:
        layout = resolve_tier(len(data))

    return MarketSnapshot(
        slab_address=slab_address,
        program_id=program_id,
        layout=layout,
        header=parse_header(data),
        config=parse_config(data),
        params=parse_params(data),
        engine=parse_engine(data, layout),
        data=data,
    )
