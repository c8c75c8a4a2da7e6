"""
Liquidation Scanner
===================
Flags accounts whose equity no longer covers the market's maintenance
margin at the current oracle price.

Rules:
- Zero oracle price: no decision, empty result
- LP accounts and flat accounts are never candidates
- equity <= 0: UNDERWATER, candidate regardless of margin
- equity * 10_000 / notional < maintenance_margin_bps: BELOW_MAINTENANCE
  (a ratio equal to the threshold is safe)

Usage:
    scanner = LiquidationScanner()
    candidates = scanner.scan(snapshot)
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from solders.pubkey import Pubkey

from src.percolator.errors import DecodeError, UnknownLayout
from src.percolator.slab.codec import parse_account
from src.percolator.slab.models import AccountKind, MarketSnapshot
from src.shared.system.logging import Logger

PRICE_SCALE = 1_000_000
BPS = 10_000


class MarginStatus(Enum):
    UNDERWATER = "underwater"
    BELOW_MAINTENANCE = "below_maintenance"


@dataclass(frozen=True)
class LiquidationCandidate:
    slab_address: Pubkey
    account_idx: int
    owner: Pubkey
    position_size: int
    capital: int
    pnl: int
    status: MarginStatus
    # None when UNDERWATER
    margin_ratio_bps: Optional[int]
    maintenance_margin_bps: int

    @property
    def equity(self) -> int:
        return self.capital + self.pnl


class LiquidationScanner:
    """Stateless apart from counters; safe to share across markets."""

    def __init__(self):
        self.scans = 0
        self.skipped_accounts = 0
        self.candidates_found = 0

    def scan(self, snapshot: MarketSnapshot) -> List[LiquidationCandidate]:
        self.scans += 1
        price = snapshot.config.oracle_price_e6
        if price == 0:
            Logger.debug(f"[LIQUIDATION] {str(snapshot.slab_address)[:8]} has no oracle price, skipping")
            return []

        if snapshot.layout is None:
            raise UnknownLayout(len(snapshot.data))

        threshold = snapshot.params.maintenance_margin_bps
        bound = min(snapshot.engine.num_used_accounts, snapshot.layout.max_accounts)
        candidates: List[LiquidationCandidate] = []

        for idx in range(bound):
            try:
                account = parse_account(snapshot.data, idx, snapshot.layout)
            except DecodeError as e:
                self.skipped_accounts += 1
                Logger.debug(f"[LIQUIDATION] Skipping account {idx}: {e}")
                continue

            if account.kind == AccountKind.LP or account.position_size == 0:
                continue

            notional = abs(account.position_size) * price // PRICE_SCALE
            if notional == 0:
                continue

            equity = account.capital + account.pnl
            if equity <= 0:
                status, ratio = MarginStatus.UNDERWATER, None
            else:
                ratio = equity * BPS // notional
                if ratio >= threshold:
                    continue
                status = MarginStatus.BELOW_MAINTENANCE

            candidates.append(LiquidationCandidate(
                slab_address=snapshot.slab_address,
                account_idx=idx,
                owner=account.owner,
                position_size=account.position_size,
                capital=account.capital,
                pnl=account.pnl,
                status=status,
                margin_ratio_bps=ratio,
                maintenance_margin_bps=threshold,
            ))

        if candidates:
            self.candidates_found += len(candidates)
            Logger.info(
                f"[LIQUIDATION] {len(candidates)} candidates in {str(snapshot.slab_address)[:8]}"
            )
        return candidates

    def get_stats(self) -> dict:
        return {
            "scans": self.scans,
            "skipped_accounts": self.skipped_accounts,
            "candidates_found": self.candidates_found,
        }
