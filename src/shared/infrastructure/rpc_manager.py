"""
RPC Connection Manager
======================
Owns the keeper's Solana RPC connections and their rate budgets.

Two connections are kept apart on purpose: `read_only` serves the
expensive, rate-limit sensitive getProgramAccounts discovery calls and
`primary` serves blockhash / send / confirm. Each has its own token bucket.
"""

import asyncio
import time
from typing import Callable, Dict, Optional

import httpx
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed

from src.shared.system.logging import Logger

_RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit")
_TIMEOUT_MARKERS = ("timed out", "timeout", "connection reset", "503", "502", "504")


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

def _error_chain(err: BaseException):
    seen = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        yield err
        err = err.__cause__ or err.__context__


def is_rate_limited(err: BaseException) -> bool:
    """True for HTTP 429 / 'too many requests' style failures anywhere in the chain."""
    for e in _error_chain(err):
        if isinstance(e, httpx.HTTPStatusError) and e.response.status_code == 429:
            return True
        msg = str(e).lower()
        if any(marker in msg for marker in _RATE_LIMIT_MARKERS):
            return True
    return False


def is_transient(err: BaseException) -> bool:
    """Rate limits, timeouts and transport failures: worth retrying."""
    if is_rate_limited(err):
        return True
    for e in _error_chain(err):
        if isinstance(e, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError)):
            return True
        if type(e).__name__ in ("UnconfirmedTxError", "TransactionExpiredBlockheightExceededError"):
            return True
        msg = str(e).lower()
        if any(marker in msg for marker in _TIMEOUT_MARKERS):
            return True
    return False


def backoff_seconds(attempt: int, base: float = 2.0, cap: float = 60.0) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped."""
    return min(base * (2 ** attempt), cap)


# =============================================================================
# TOKEN BUCKET
# =============================================================================

class RateLimiter:
    """
    Async token bucket.

    `acquire()` waits until a token is available. Shared by every caller
    of one connection so concurrent batches cannot exceed the budget.
    """

    def __init__(
        self,
        requests_per_second: float,
        burst: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        self.rate = requests_per_second
        self.capacity = float(burst if burst is not None else max(1, int(requests_per_second)))
        self._tokens = self.capacity
        self._clock = clock
        self._last = clock()
        self._lock = asyncio.Lock()
        self.waits = 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last
        self._last = now
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                self.waits += 1
                await asyncio.sleep((1 - self._tokens) / self.rate)


# =============================================================================
# CONNECTION MANAGER
# =============================================================================

class RpcConnectionManager:
    """
    Primary (submission) and read-only (discovery) connections.

    Usage:
        rpc = RpcConnectionManager(Settings.RPC_URL, Settings.READ_RPC_URL)
        await rpc.throttle(read_only=True)
        resp = await rpc.read_only.get_program_accounts(...)
        await rpc.close()
    """

    def __init__(
        self,
        rpc_url: str,
        read_rpc_url: Optional[str] = None,
        requests_per_second: float = 8.0,
        timeout: float = 30.0,
        commitment: Commitment = Confirmed,
    ):
        self.rpc_url = rpc_url
        self.read_rpc_url = read_rpc_url or rpc_url
        self.primary = AsyncClient(self.rpc_url, commitment=commitment, timeout=timeout)
        # Separate client even when URLs match: separate pool, separate budget.
        self.read_only = AsyncClient(self.read_rpc_url, commitment=commitment, timeout=timeout)
        self._limiters: Dict[str, RateLimiter] = {
            "primary": RateLimiter(requests_per_second),
            "read_only": RateLimiter(requests_per_second),
        }

        Logger.info(
            f"[RPC] Primary={self._short(self.rpc_url)} ReadOnly={self._short(self.read_rpc_url)} "
            f"@ {requests_per_second:g} req/s"
        )

    @staticmethod
    def _short(url: str) -> str:
        return url.split("?")[0]

    async def throttle(self, read_only: bool = False) -> None:
        await self._limiters["read_only" if read_only else "primary"].acquire()

    async def close(self) -> None:
        await self.primary.close()
        await self.read_only.close()

    def get_stats(self) -> Dict[str, Dict]:
        return {
            name: {"waits": limiter.waits, "rate": limiter.rate}
            for name, limiter in self._limiters.items()
        }
