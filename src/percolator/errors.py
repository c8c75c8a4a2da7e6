"""
Keeper Error Taxonomy
=====================
Every failure the keeper distinguishes, rooted at KeeperError.

- DecodeError / AccountIndexError: one read of one slab failed
- UnknownLayout: byte length matches no tier, account region unreadable
- RpcTransientError: timeouts and rate limits, retried with backoff
- SubmissionError: the ledger rejected the transaction, retried next cadence
- CircuitBreakerTrip: sustained transient failures, the process stops
"""

from typing import Optional


class KeeperError(Exception):
    """Base class for all keeper errors."""


class DecodeError(KeeperError):
    """Bad magic or a buffer too short for the requested region."""


class AccountIndexError(DecodeError):
    """Account index at or beyond the tier capacity."""

    def __init__(self, idx: int, max_accounts: int):
        super().__init__(f"Account index out of range: {idx} (max: {max_accounts - 1})")
        self.idx = idx
        self.max_accounts = max_accounts


class UnknownLayout(KeeperError):
    """Slab byte length matches none of the known tiers."""

    def __init__(self, data_len: int):
        super().__init__(f"No slab tier matches data length {data_len}")
        self.data_len = data_len


class RpcTransientError(KeeperError):
    """Timeout or rate-limit response from the RPC endpoint."""


class SubmissionError(KeeperError):
    """Transaction rejected on-chain or failed simulation."""

    def __init__(self, message: str, signature: Optional[str] = None):
        super().__init__(message)
        self.signature = signature


class CircuitBreakerTrip(KeeperError):
    """Too many consecutive transient failures across submissions."""

    def __init__(self, consecutive_failures: int):
        super().__init__(
            f"Circuit breaker tripped after {consecutive_failures} consecutive failures"
        )
        self.consecutive_failures = consecutive_failures


class EncoderNotConfigured(KeeperError):
    """No instruction encoder could be loaded."""


class MarketNotFound(KeeperError):
    """Slab account does not exist on the ledger."""
