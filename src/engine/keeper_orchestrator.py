"""
Keeper Orchestrator
===================
The keeper's scheduler: discovers markets, decides which are due, pushes
admin-oracle prices, cranks, and sweeps liquidations.

State machine per market:
    Active   --(N consecutive failures)-->  Inactive (slower cadence)
    Inactive --(one successful crank)---->  Active

Cycle:
    1. Discovery, only when nothing is tracked or the discovery interval
       has elapsed. Markets missing from successful programs accrue misses
       and are pruned at the miss limit.
    2. Collect due markets, skipping markets that have never cranked
       successfully and are past the failure hard cap.
    3. Crank in batches (fixed width, fixed pause between batches). Each
       market is timed out and fails on its own.

Only one cycle is ever in flight; a tick that lands during a cycle is
dropped. A CircuitBreakerTrip from the submitter stops the orchestrator.

Usage:
    orchestrator = KeeperOrchestrator(discovery, read_client, submitter, builder, oracle)
    await orchestrator.run_forever()
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set, Tuple

from solders.pubkey import Pubkey

from src.engine.crank_state import MarketCrankState
from src.execution.tx_submitter import TransactionSubmitter
from src.percolator.discovery import DiscoveryResult, MarketDiscovery, fetch_snapshot
from src.percolator.errors import CircuitBreakerTrip
from src.percolator.instructions import KeeperInstructions
from src.percolator.liquidation import LiquidationScanner
from src.percolator.oracle import OracleService
from src.percolator.registry import MarketRegistry
from src.shared.system.event_channel import EventChannel, KeeperEventType
from src.shared.system.logging import Logger


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class OrchestratorConfig:
    """Cadence and isolation knobs. Intervals are seconds."""

    program_ids: Tuple[Pubkey, ...] = ()

    crank_interval_sec: float = 10.0
    inactive_interval_sec: float = 60.0
    discovery_interval_sec: float = 60.0

    # Active -> Inactive after this many consecutive failures
    inactive_after_failures: int = 10
    # Markets that never cranked successfully are dropped from the cycle
    # once their consecutive failures exceed this
    max_consecutive_failures: int = 10
    prune_after_misses: int = 3

    batch_size: int = 3
    batch_delay_sec: float = 2.0
    market_timeout_sec: float = 90.0

    liquidation_enabled: bool = True


@dataclass
class CycleResult:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    discovered: int = 0
    pruned: int = 0
    started_at: float = field(default_factory=time.time)
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "discovered": self.discovered,
            "pruned": self.pruned,
            "duration_ms": round(self.duration_ms, 1),
        }


def _tier_failed(state: MarketCrankState, failed_tiers) -> bool:
    """True when the tier query that would have returned this market failed."""
    if not failed_tiers:
        return False
    layout = state.snapshot.layout if state.snapshot is not None else None
    return layout is None or layout.max_accounts in failed_tiers


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class KeeperOrchestrator:
    def __init__(
        self,
        discovery: MarketDiscovery,
        read_client,
        submitter: TransactionSubmitter,
        instructions: KeeperInstructions,
        oracle: OracleService,
        scanner: Optional[LiquidationScanner] = None,
        registry: Optional[MarketRegistry] = None,
        events: Optional[EventChannel] = None,
        config: Optional[OrchestratorConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        read_throttle: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.discovery = discovery
        self.read_client = read_client
        self.submitter = submitter
        self.instructions = instructions
        self.oracle = oracle
        self.scanner = scanner or LiquidationScanner()
        self.registry = registry
        self.events = events or EventChannel()
        self.config = config or OrchestratorConfig()
        self._clock = clock
        self._sleep = sleep
        self._read_throttle = read_throttle

        # Market state index, keyed by slab address
        self.markets: Dict[str, MarketCrankState] = {}

        self._cycling = False
        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()
        self._stopped = asyncio.Event()
        self._fatal: Optional[BaseException] = None
        self._last_discovery: Optional[float] = None

        self.last_cycle_result: Optional[CycleResult] = None
        self.cycles = 0
        self.dropped_ticks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def keeper_pubkey(self) -> Pubkey:
        return self.submitter.payer

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    async def tick(self) -> bool:
        """Run one cycle unless one is already in flight. Returns False when dropped."""
        if self._cycling:
            self.dropped_ticks += 1
            Logger.debug("[KEEPER] Cycle still running, tick dropped")
            return False

        self._cycling = True
        try:
            await self.run_cycle()
        finally:
            self._cycling = False
        return True

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._on_tick_done)

    def _on_tick_done(self, task: asyncio.Task) -> None:
        self._tick_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, CircuitBreakerTrip):
            self._fatal = exc
            self.stop()
        else:
            Logger.error(f"[KEEPER] Cycle error: {exc}")

    async def _timer_loop(self) -> None:
        while self._running:
            self._spawn_tick()
            await self._sleep(self.config.crank_interval_sec)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopped.clear()
        self._fatal = None
        Logger.info(
            f"[KEEPER] Starting: interval {self.config.crank_interval_sec:.0f}s "
            f"(inactive {self.config.inactive_interval_sec:.0f}s), "
            f"{len(self.config.program_ids)} programs"
        )
        self._timer_task = asyncio.create_task(self._timer_loop())

    def stop(self) -> None:
        """Cancel the timer. Work already in flight finishes on its own."""
        if not self._running:
            return
        self._running = False
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
        self._stopped.set()
        Logger.info("[KEEPER] Stopped")

    async def run_forever(self) -> None:
        """Run until stop(). Re-raises CircuitBreakerTrip if that is what stopped it."""
        self.start()
        await self._stopped.wait()
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        if self._fatal is not None:
            raise self._fatal

    # =========================================================================
    # CYCLE
    # =========================================================================

    def _discovery_due(self, now: float) -> bool:
        if not self.markets or self._last_discovery is None:
            return True
        return now - self._last_discovery >= self.config.discovery_interval_sec

    async def run_cycle(self) -> CycleResult:
        result = CycleResult()
        start = time.time()

        if self._discovery_due(self._clock()):
            result.discovered, result.pruned = await self.run_discovery()

        now = self._clock()
        due: List[MarketCrankState] = []
        for state in self.markets.values():
            if state.is_abandoned(self.config.max_consecutive_failures):
                result.skipped += 1
                continue
            if not state.is_due(now, self.config.crank_interval_sec, self.config.inactive_interval_sec):
                result.skipped += 1
                continue
            due.append(state)

        outcomes = await self._process_batched(due)
        result.success = sum(1 for ok in outcomes if ok)
        result.failed = len(outcomes) - result.success
        result.duration_ms = (time.time() - start) * 1000

        self.cycles += 1
        self.last_cycle_result = result
        if result.failed:
            Logger.warning(
                f"[CRANK] Cycle: {result.success} ok, {result.failed} failed, {result.skipped} skipped"
            )
        elif result.success:
            Logger.info(f"[CRANK] Cycle: {result.success} cranked, {result.skipped} skipped")
        return result

    async def _process_batched(self, states: Sequence[MarketCrankState]) -> List[bool]:
        outcomes: List[bool] = []
        size = max(1, self.config.batch_size)

        for i in range(0, len(states), size):
            if i > 0 and self.config.batch_delay_sec > 0:
                await self._sleep(self.config.batch_delay_sec)
            batch = states[i:i + size]
            results = await asyncio.gather(
                *(self.crank_market(state) for state in batch),
                return_exceptions=True,
            )
            for state, res in zip(batch, results):
                if isinstance(res, CircuitBreakerTrip):
                    raise res
                if isinstance(res, BaseException):
                    if not isinstance(res, Exception):
                        raise res
                    Logger.error(f"[CRANK] Unhandled error for {state.key[:8]}: {res}")
                    outcomes.append(False)
                else:
                    outcomes.append(res)
        return outcomes

    # =========================================================================
    # DISCOVERY
    # =========================================================================

    async def run_discovery(self) -> Tuple[int, int]:
        """Refresh the tracked set. Returns (new markets, pruned markets)."""
        result: DiscoveryResult = await self.discovery.discover(list(self.config.program_ids))
        self._last_discovery = self._clock()

        seen: Set[str] = set()
        added = 0
        for snapshot in result.markets:
            key = str(snapshot.slab_address)
            seen.add(key)
            state = self.markets.get(key)
            if state is None:
                self.markets[key] = MarketCrankState.from_snapshot(snapshot)
                added += 1
                self.events.emit(
                    KeeperEventType.MARKET_DISCOVERED, key,
                    program_id=str(snapshot.program_id),
                )
                await self._registry_call("register_market", snapshot)
            else:
                state.snapshot = snapshot
                state.missing_discovery_count = 0

        # Programs (or tiers) that failed this pass say nothing about their markets
        answered = {str(p) for p in result.succeeded_programs}
        pruned = 0
        for key, state in list(self.markets.items()):
            if key in seen or str(state.program_id) not in answered:
                continue
            if _tier_failed(state, result.failed_tiers.get(str(state.program_id), ())):
                continue
            state.missing_discovery_count += 1
            if state.missing_discovery_count >= self.config.prune_after_misses:
                del self.markets[key]
                pruned += 1
                self.events.emit(KeeperEventType.MARKET_PRUNED, key)
                Logger.info(f"[DISCOVERY] Pruned {key[:8]} after {state.missing_discovery_count} misses")

        if added:
            Logger.success(f"[DISCOVERY] {added} new markets ({len(self.markets)} tracked)")
        return added, pruned

    async def _registry_call(self, method: str, snapshot) -> None:
        if self.registry is None:
            return
        try:
            await getattr(self.registry, method)(snapshot)
        except Exception as e:
            Logger.warning(f"[KEEPER] Registry {method} failed for {str(snapshot.slab_address)[:8]}: {e}")

    # =========================================================================
    # PER-MARKET WORK
    # =========================================================================

    def _crank_failed(self, state: MarketCrankState, error: str) -> None:
        went_inactive = state.record_failure(self._clock(), error, self.config.inactive_after_failures)
        self.events.emit(KeeperEventType.CRANK_FAILURE, state.key, error=error)
        Logger.error(f"[CRANK] Crank failed for {state.key[:8]}: {error}")
        if went_inactive:
            Logger.warning(
                f"[CRANK] {state.key[:8]} inactive after {state.consecutive_failures} consecutive failures"
            )

    async def push_oracle_price(self, state: MarketCrankState) -> bool:
        """Push the oracle price for an admin-oracle market. Never raises except breaker trips."""
        snapshot = state.snapshot
        mint = str(snapshot.config.collateral_mint)
        try:
            entry = await self.oracle.fetch_price(mint, state.key)
            if entry is None:
                raise ValueError(f"no price for {mint[:8]}")
            ix = self.instructions.push_oracle_price(
                snapshot, self.keeper_pubkey, entry.price_e6, int(entry.timestamp)
            )
            result = await self.submitter.submit(ix)
        except CircuitBreakerTrip:
            raise
        except Exception as e:
            Logger.warning(f"[ORACLE] Price push failed for {state.key[:8]}: {e}")
            self.events.emit(KeeperEventType.PRICE_FAILED, state.key, error=str(e))
            return False

        self.events.emit(
            KeeperEventType.PRICE_PUSHED, state.key,
            price_e6=entry.price_e6, signature=result.signature,
        )
        return True

    async def crank_market(self, state: MarketCrankState) -> bool:
        """
        Price push, crank and bookkeeping under the per-market timeout, then
        the liquidation sweep under its own timeout. A slow sweep never turns
        a landed crank into a failure.
        """
        timeout = self.config.market_timeout_sec
        try:
            cranked = await asyncio.wait_for(self._push_and_crank(state), timeout=timeout)
        except asyncio.TimeoutError:
            self._crank_failed(state, f"timed out after {timeout:.0f}s")
            return False
        if not cranked:
            return False

        if self.config.liquidation_enabled:
            try:
                await asyncio.wait_for(self.liquidate_market(state), timeout=timeout)
            except CircuitBreakerTrip:
                raise
            except asyncio.TimeoutError:
                Logger.warning(f"[LIQUIDATION] Sweep for {state.key[:8]} timed out after {timeout:.0f}s")
            except Exception as e:
                Logger.warning(f"[LIQUIDATION] Sweep failed for {state.key[:8]}: {e}")
        await self._registry_call("record_snapshot", state.snapshot)
        return True

    async def _push_and_crank(self, state: MarketCrankState) -> bool:
        snapshot = state.snapshot
        if snapshot.config.is_admin_oracle:
            await self.push_oracle_price(state)

        try:
            ix = self.instructions.keeper_crank(snapshot, self.keeper_pubkey)
            result = await self.submitter.submit(ix)
        except CircuitBreakerTrip:
            raise
        except Exception as e:
            self._crank_failed(state, str(e))
            return False

        if state.record_success(self._clock(), result.signature):
            Logger.info(f"[CRANK] {state.key[:8]} active again")
        self.events.emit(KeeperEventType.CRANK_SUCCESS, state.key, signature=result.signature)
        Logger.debug(f"[CRANK] Cranked {state.key[:8]}: {result.signature[:16]}...")
        return True

    async def liquidate_market(self, state: MarketCrankState) -> int:
        """Fetch the full slab, scan it, and liquidate each candidate independently."""
        if self._read_throttle:
            await self._read_throttle()
        snapshot = await fetch_snapshot(self.read_client, state.slab_address)
        state.snapshot = snapshot

        liquidated = 0
        for candidate in self.scanner.scan(snapshot):
            try:
                ix = self.instructions.liquidate_at_oracle(
                    snapshot, self.keeper_pubkey, candidate.account_idx
                )
                result = await self.submitter.submit(ix)
            except CircuitBreakerTrip:
                raise
            except Exception as e:
                Logger.warning(
                    f"[LIQUIDATION] Account {candidate.account_idx} in {state.key[:8]} failed: {e}"
                )
                self.events.emit(
                    KeeperEventType.LIQUIDATION_FAILURE, state.key,
                    account_idx=candidate.account_idx, error=str(e),
                )
                continue

            liquidated += 1
            Logger.success(
                f"[LIQUIDATION] Liquidated account {candidate.account_idx} in {state.key[:8]} "
                f"({candidate.status.value})"
            )
            self.events.emit(
                KeeperEventType.LIQUIDATION_SUCCESS, state.key,
                account_idx=candidate.account_idx,
                owner=str(candidate.owner),
                signature=result.signature,
            )
        return liquidated

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> Dict[str, dict]:
        return {key: state.to_status() for key, state in self.markets.items()}

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "markets": len(self.markets),
            "active": sum(1 for s in self.markets.values() if s.is_active),
            "cycles": self.cycles,
            "dropped_ticks": self.dropped_ticks,
            "last_cycle": self.last_cycle_result.to_dict() if self.last_cycle_result else None,
            "submitter": self.submitter.get_stats(),
            "scanner": self.scanner.get_stats(),
            "events_dropped": self.events.dropped,
        }

