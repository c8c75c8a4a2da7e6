"""
Circuit Breaker
===============
Process-wide stop for a keeper that can no longer reach the ledger.

Counts submissions that ended in exhausted transient failures (rate limits,
timeouts). Any confirmed submission resets the count; on-chain rejections
leave it untouched since they prove the RPC is answering.
"""

from src.percolator.errors import CircuitBreakerTrip
from src.shared.system.logging import Logger


class CircuitBreaker:
    def __init__(self, threshold: int = 20):
        self.threshold = threshold
        self.consecutive_failures = 0
        self.total_failures = 0
        self.tripped = False

    def record_success(self) -> None:
        if self.consecutive_failures:
            Logger.debug(f"[SUBMIT] Breaker reset after {self.consecutive_failures} failures")
        self.consecutive_failures = 0

    def record_failure(self) -> None:
        """Count one failure. Raises CircuitBreakerTrip at the threshold."""
        self.consecutive_failures += 1
        self.total_failures += 1
        if self.consecutive_failures >= self.threshold:
            self.tripped = True
            Logger.critical(
                f"[SUBMIT] Circuit breaker tripped: {self.consecutive_failures} consecutive failures"
            )
            raise CircuitBreakerTrip(self.consecutive_failures)
        Logger.warning(
            f"[SUBMIT] Consecutive transient failures: {self.consecutive_failures}/{self.threshold}"
        )

    def get_stats(self) -> dict:
        return {
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "threshold": self.threshold,
            "tripped": self.tripped,
        }
