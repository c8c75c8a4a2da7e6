from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

from src.percolator.slab.models import MarketSnapshot


@dataclass
class MarketCrankState:
    """
    Cadence bookkeeping for one tracked market.

    Owned by the KeeperOrchestrator; only the running cycle mutates it.
    `last_crank_time` is the last crank attempt (success or failure) on the
    orchestrator's clock, so inactive markets really do wait the longer
    interval.
    """

    slab_address: Pubkey
    program_id: Optional[Pubkey]
    snapshot: MarketSnapshot
    last_crank_time: float = 0.0
    last_success_time: float = 0.0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    is_active: bool = True
    missing_discovery_count: int = 0
    last_signature: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: MarketSnapshot) -> "MarketCrankState":
        return cls(
            slab_address=snapshot.slab_address,
            program_id=snapshot.program_id,
            snapshot=snapshot,
        )

    @property
    def key(self) -> str:
        return str(self.slab_address)

    def is_due(self, now: float, active_interval: float, inactive_interval: float) -> bool:
        interval = active_interval if self.is_active else inactive_interval
        return now - self.last_crank_time >= interval

    def is_abandoned(self, max_consecutive_failures: int) -> bool:
        """Never cranked successfully and past the hard cap. A market that has
        succeeded before keeps its inactive-cadence retries."""
        return self.success_count == 0 and self.consecutive_failures > max_consecutive_failures

    def record_success(self, now: float, signature: Optional[str] = None) -> bool:
        """Returns True when the market came back from Inactive."""
        reactivated = not self.is_active
        self.last_crank_time = now
        self.last_success_time = now
        self.success_count += 1
        self.consecutive_failures = 0
        self.is_active = True
        self.last_signature = signature
        self.last_error = None
        return reactivated

    def record_failure(self, now: float, error: str, inactive_after: int) -> bool:
        """Returns True when this failure moved the market to Inactive."""
        self.last_crank_time = now
        self.failure_count += 1
        self.consecutive_failures += 1
        self.last_error = error
        if self.is_active and self.consecutive_failures >= inactive_after:
            self.is_active = False
            return True
        return False

    def to_status(self) -> dict:
        return {
            "program_id": str(self.program_id) if self.program_id else None,
            "last_crank_time": self.last_crank_time,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "is_active": self.is_active,
            "missing_discovery_count": self.missing_discovery_count,
            "last_signature": self.last_signature,
            "last_error": self.last_error,
        }
