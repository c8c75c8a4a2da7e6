"""
Slab Models
===========
Typed views of a decoded slab account. All integer fields keep their
on-chain width as Python ints; prices and some amounts are E6 fixed point.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from solders.pubkey import Pubkey

from src.percolator.slab.layout import SlabLayout


@dataclass(frozen=True)
class SlabHeader:
    magic: int
    version: int
    bump: int
    flags: int
    resolved: bool
    admin: Pubkey
    nonce: int
    last_threshold_update_slot: int


@dataclass(frozen=True)
class MarketConfig:
    collateral_mint: Pubkey
    vault_pubkey: Pubkey
    index_feed_id: bytes
    max_staleness_secs: int
    conf_filter_bps: int
    vault_authority_bump: int
    invert: int
    unit_scale: int
    # Funding curve
    funding_horizon_slots: int
    funding_k_bps: int
    funding_inv_scale_notional_e6: int
    funding_max_premium_bps: int
    funding_max_bps_per_slot: int
    # Threshold curve
    thresh_floor: int
    thresh_risk_bps: int
    thresh_update_interval_slots: int
    thresh_step_bps: int
    thresh_alpha_bps: int
    thresh_min: int
    thresh_max: int
    thresh_min_step: int
    # Oracle authority
    oracle_authority: Pubkey
    authority_price_e6: int
    authority_timestamp: int
    # Price circuit breaker
    oracle_price_cap_e2bps: int
    last_effective_price_e6: int

    @property
    def is_admin_oracle(self) -> bool:
        """Admin-pushed prices instead of an external feed."""
        return self.oracle_authority != Pubkey.default()

    @property
    def oracle_price_e6(self) -> int:
        """Current oracle price as the keeper sees it (0 = no price)."""
        if self.is_admin_oracle:
            return self.authority_price_e6
        return self.last_effective_price_e6

    @property
    def index_feed_hex(self) -> str:
        return self.index_feed_id.hex()


@dataclass(frozen=True)
class RiskParams:
    warmup_period_slots: int
    maintenance_margin_bps: int
    initial_margin_bps: int
    trading_fee_bps: int
    max_accounts: int
    new_account_fee: int
    risk_reduction_threshold: int
    maintenance_fee_per_slot: int
    max_crank_staleness_slots: int
    liquidation_fee_bps: int
    liquidation_fee_cap: int
    liquidation_buffer_bps: int
    min_liquidation_abs: int


@dataclass(frozen=True)
class InsuranceFund:
    balance: int
    fee_revenue: int


@dataclass(frozen=True)
class EngineState:
    vault: int
    insurance_fund: InsuranceFund
    current_slot: int
    funding_index_qpb_e6: int
    last_funding_slot: int
    funding_rate_bps_per_slot_last: int
    last_crank_slot: int
    max_crank_staleness_slots: int
    total_open_interest: int
    c_tot: int
    pnl_pos_tot: int
    liq_cursor: int
    gc_cursor: int
    last_sweep_start_slot: int
    last_sweep_complete_slot: int
    crank_cursor: int
    sweep_start_idx: int
    lifetime_liquidations: int
    lifetime_force_closes: int
    # LP aggregates
    net_lp_pos: int
    lp_sum_abs: int
    lp_max_abs: int
    lp_max_abs_sweep: int
    num_used_accounts: int
    next_account_id: int


class AccountKind(IntEnum):
    USER = 0
    LP = 1


@dataclass(frozen=True)
class Account:
    kind: AccountKind
    account_id: int
    capital: int
    pnl: int
    reserved_pnl: int
    warmup_started_at_slot: int
    warmup_slope_per_step: int
    position_size: int
    entry_price: int
    funding_index: int
    matcher_program: Pubkey
    matcher_context: Pubkey
    owner: Pubkey
    fee_credits: int
    last_fee_slot: int


@dataclass(frozen=True)
class MarketSnapshot:
    """Header + config + params + engine of one slab, plus the bytes they came from."""

    slab_address: Pubkey
    program_id: Optional[Pubkey]
    layout: Optional[SlabLayout]
    header: SlabHeader
    config: MarketConfig
    params: RiskParams
    engine: EngineState
    data: bytes = field(repr=False, default=b"")

    @property
    def max_accounts(self) -> Optional[int]:
        return self.layout.max_accounts if self.layout else None

    @property
    def has_accounts(self) -> bool:
        """True when `data` covers the full account array."""
        return self.layout is not None and len(self.data) >= self.layout.total_size
