"""
Keeper Orchestrator Unit Tests
==============================
Cadence state machine, discovery pruning, re-entrancy, batching and
per-market isolation. Discovery, submitter and oracle are fakes; the
instruction builder is real with the mock encoder.
"""

import asyncio
from typing import Callable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from src.engine.crank_state import MarketCrankState
from src.engine.keeper_orchestrator import KeeperOrchestrator, OrchestratorConfig
from src.execution.tx_submitter import SubmitResult
from src.percolator.discovery import DiscoveryResult
from src.percolator.errors import CircuitBreakerTrip, SubmissionError
from src.percolator.instructions import KeeperInstructions
from src.percolator.oracle import PriceEntry
from src.percolator.slab.codec import decode_snapshot
from src.shared.system.event_channel import EventChannel, KeeperEventType
from tests.mocks.mock_encoder import TAG_KEEPER_CRANK, TAG_LIQUIDATE_AT_ORACLE, TAG_PUSH_ORACLE_PRICE, MockEncoder

PROGRAM = Pubkey.new_unique()


# ============================================================================
# FAKES
# ============================================================================


class FakeSubmitter:
    """Records instructions; `behavior(ix)` may raise to fail a submission."""

    def __init__(self, behavior: Optional[Callable] = None):
        self.keypair = Keypair()
        self.behavior = behavior
        self.submitted = []

    @property
    def payer(self):
        return self.keypair.pubkey()

    async def submit(self, ix, signer=None):
        self.submitted.append(ix)
        if self.behavior is not None:
            result = self.behavior(ix)
            if asyncio.iscoroutine(result):
                await result
        return SubmitResult(signature=f"sig{len(self.submitted)}", attempts=1, priority_fee=0)

    def tags(self) -> List[int]:
        return [bytes(ix.data)[0] for ix in self.submitted]

    def get_stats(self):
        return {"submissions": len(self.submitted)}


class FakeDiscovery:
    """Returns the queued results in order, then repeats the last one."""

    def __init__(self, *results: DiscoveryResult):
        self.results = list(results)
        self.calls = 0

    async def discover(self, program_ids):
        self.calls += 1
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


def _failing(ix):
    raise SubmissionError("custom program error: 0x1")


def _snapshot(slab_builder, slab=None, admin_oracle=False):
    b = slab_builder(64).with_price(1_000_000).with_maintenance_margin(500)
    if admin_oracle:
        b.with_admin_oracle(Pubkey.new_unique(), 1_000_000)
    return decode_snapshot(slab or Pubkey.new_unique(), PROGRAM, b.build())


def _found(*snapshots) -> DiscoveryResult:
    return DiscoveryResult(markets=list(snapshots), succeeded_programs=[PROGRAM])


@pytest.fixture
def oracle():
    service = MagicMock()
    service.fetch_price = AsyncMock(return_value=PriceEntry(price_e6=1_500_000, source="test"))
    return service


@pytest.fixture
def make_orchestrator(fake_clock, no_sleep, oracle, mock_rpc_client):
    def _make(discovery=None, submitter=None, **config):
        config.setdefault("program_ids", (PROGRAM,))
        config.setdefault("liquidation_enabled", False)
        return KeeperOrchestrator(
            discovery or FakeDiscovery(_found()),
            mock_rpc_client,
            submitter or FakeSubmitter(),
            KeeperInstructions(MockEncoder()),
            oracle,
            events=EventChannel(),
            config=OrchestratorConfig(**config),
            clock=fake_clock,
            sleep=no_sleep,
        )
    return _make


def _drain(events: EventChannel):
    out = []
    while True:
        event = events.get_nowait()
        if event is None:
            return out
        out.append(event)


# ============================================================================
# CADENCE STATE MACHINE
# ============================================================================


class TestCadence:

    @pytest.mark.asyncio
    async def test_ten_failures_then_success_reactivates(self, make_orchestrator, slab_builder):
        submitter = FakeSubmitter(behavior=_failing)
        orch = make_orchestrator(submitter=submitter)
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder))

        for _ in range(9):
            assert await orch.crank_market(state) is False
        assert state.is_active

        await orch.crank_market(state)
        assert not state.is_active
        assert state.consecutive_failures == 10
        assert state.success_count == 0

        submitter.behavior = None
        assert await orch.crank_market(state) is True
        assert state.is_active
        assert state.consecutive_failures == 0
        assert state.failure_count == 10

    def test_due_uses_interval_for_state(self, slab_builder):
        state = MarketCrankState(Pubkey.new_unique(), PROGRAM, None, last_crank_time=100.0)

        assert not state.is_due(105.0, 10.0, 60.0)
        assert state.is_due(110.0, 10.0, 60.0)
        state.is_active = False
        assert not state.is_due(110.0, 10.0, 60.0)
        assert state.is_due(160.0, 10.0, 60.0)

    @pytest.mark.asyncio
    async def test_market_past_hard_cap_is_skipped(self, make_orchestrator, slab_builder):
        snap = _snapshot(slab_builder)
        submitter = FakeSubmitter()
        orch = make_orchestrator(discovery=FakeDiscovery(_found(snap)), submitter=submitter)
        await orch.run_discovery()
        orch.markets[str(snap.slab_address)].consecutive_failures = 11

        result = await orch.run_cycle()

        assert result.skipped == 1
        assert submitter.submitted == []

    @pytest.mark.asyncio
    async def test_previously_healthy_market_recovers_after_long_outage(
        self, make_orchestrator, slab_builder, fake_clock
    ):
        snap = _snapshot(slab_builder)
        submitter = FakeSubmitter()
        orch = make_orchestrator(discovery=FakeDiscovery(_found(snap)), submitter=submitter)
        assert (await orch.run_cycle()).success == 1
        state = orch.markets[str(snap.slab_address)]

        submitter.behavior = _failing
        for _ in range(15):
            fake_clock.advance(60)
            await orch.run_cycle()
        assert state.consecutive_failures == 15
        assert not state.is_active

        submitter.behavior = None
        fake_clock.advance(60)
        result = await orch.run_cycle()

        assert result.success == 1
        assert state.is_active
        assert state.consecutive_failures == 0

    def test_only_never_successful_markets_are_abandoned(self):
        state = MarketCrankState(Pubkey.new_unique(), PROGRAM, None, consecutive_failures=11)

        assert state.is_abandoned(10)
        state.success_count = 1
        assert not state.is_abandoned(10)
        state.success_count = 0
        state.consecutive_failures = 10
        assert not state.is_abandoned(10)

    @pytest.mark.asyncio
    async def test_not_due_market_skipped(self, make_orchestrator, slab_builder, fake_clock):
        snap = _snapshot(slab_builder)
        submitter = FakeSubmitter()
        orch = make_orchestrator(discovery=FakeDiscovery(_found(snap)), submitter=submitter)

        first = await orch.run_cycle()
        fake_clock.advance(5)
        second = await orch.run_cycle()
        fake_clock.advance(5)
        third = await orch.run_cycle()

        assert (first.success, second.skipped, third.success) == (1, 1, 1)

    @pytest.mark.asyncio
    async def test_status_reports_market_and_last_cycle(self, make_orchestrator, slab_builder):
        snap = _snapshot(slab_builder)
        orch = make_orchestrator(discovery=FakeDiscovery(_found(snap)))

        await orch.run_cycle()

        status = orch.get_status()[str(snap.slab_address)]
        assert status["success_count"] == 1
        assert status["is_active"] is True
        assert status["last_signature"] == "sig1"
        assert orch.get_stats()["last_cycle"]["success"] == 1


# ============================================================================
# DISCOVERY & PRUNING
# ============================================================================


class TestDiscoveryPruning:

    @pytest.mark.asyncio
    async def test_pruned_after_three_misses(self, make_orchestrator, slab_builder):
        snap = _snapshot(slab_builder)
        orch = make_orchestrator(discovery=FakeDiscovery(_found(snap), _found(), _found(), _found()))

        await orch.run_discovery()
        await orch.run_discovery()
        await orch.run_discovery()
        assert str(snap.slab_address) in orch.markets

        await orch.run_discovery()
        assert orch.markets == {}
        types = [e.type for e in _drain(orch.events)]
        assert types == [KeeperEventType.MARKET_DISCOVERED, KeeperEventType.MARKET_PRUNED]

    @pytest.mark.asyncio
    async def test_reappearing_market_resets_misses(self, make_orchestrator, slab_builder):
        snap = _snapshot(slab_builder)
        orch = make_orchestrator(discovery=FakeDiscovery(
            _found(snap), _found(), _found(snap), _found(), _found(),
        ))

        await orch.run_discovery()
        await orch.run_discovery()
        state = orch.markets[str(snap.slab_address)]
        assert state.missing_discovery_count == 1

        await orch.run_discovery()
        assert state.missing_discovery_count == 0

        await orch.run_discovery()
        await orch.run_discovery()
        assert state.missing_discovery_count == 2
        assert str(snap.slab_address) in orch.markets

    @pytest.mark.asyncio
    async def test_failed_program_does_not_count_as_miss(self, make_orchestrator, slab_builder):
        snap = _snapshot(slab_builder)
        failed = DiscoveryResult(failed_programs={str(PROGRAM): "429"})
        orch = make_orchestrator(discovery=FakeDiscovery(_found(snap), failed, failed, failed))

        for _ in range(4):
            await orch.run_discovery()

        assert orch.markets[str(snap.slab_address)].missing_discovery_count == 0

    @pytest.mark.asyncio
    async def test_failed_tier_does_not_count_as_miss(self, make_orchestrator, slab_builder):
        micro = _snapshot(slab_builder)
        small = decode_snapshot(Pubkey.new_unique(), PROGRAM, slab_builder(256).with_price(1_000_000).build())
        partial = DiscoveryResult(succeeded_programs=[PROGRAM], failed_tiers={str(PROGRAM): [64]})
        orch = make_orchestrator(discovery=FakeDiscovery(_found(micro, small), partial, partial, partial))

        for _ in range(4):
            await orch.run_discovery()

        assert orch.markets[str(micro.slab_address)].missing_discovery_count == 0
        assert str(small.slab_address) not in orch.markets

    @pytest.mark.asyncio
    async def test_discovery_only_when_due(self, make_orchestrator, slab_builder, fake_clock):
        discovery = FakeDiscovery(_found(_snapshot(slab_builder)))
        orch = make_orchestrator(discovery=discovery, discovery_interval_sec=60.0)

        await orch.run_cycle()
        fake_clock.advance(30)
        await orch.run_cycle()
        assert discovery.calls == 1

        fake_clock.advance(30)
        await orch.run_cycle()
        assert discovery.calls == 2

    @pytest.mark.asyncio
    async def test_registry_failure_isolated(self, make_orchestrator, slab_builder):
        registry = MagicMock()
        registry.register_market = AsyncMock(side_effect=RuntimeError("db down"))
        registry.record_snapshot = AsyncMock()
        orch = make_orchestrator(discovery=FakeDiscovery(_found(_snapshot(slab_builder))))
        orch.registry = registry

        result = await orch.run_cycle()

        assert result.success == 1
        registry.register_market.assert_awaited_once()
        registry.record_snapshot.assert_awaited_once()


# ============================================================================
# RE-ENTRANCY & SCHEDULING
# ============================================================================


class TestReentrancy:

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_dropped(self, make_orchestrator, slab_builder):
        entered, release = asyncio.Event(), asyncio.Event()

        async def block(ix):
            entered.set()
            await release.wait()

        orch = make_orchestrator(
            discovery=FakeDiscovery(_found(_snapshot(slab_builder))),
            submitter=FakeSubmitter(behavior=block),
        )
        cycles = []
        run_cycle = orch.run_cycle

        async def counting_cycle():
            cycles.append(1)
            return await run_cycle()

        orch.run_cycle = counting_cycle

        first = asyncio.create_task(orch.tick())
        await entered.wait()

        assert await orch.tick() is False
        assert len(cycles) == 1

        release.set()
        assert await first is True
        assert orch.dropped_ticks == 1

    @pytest.mark.asyncio
    async def test_run_forever_raises_breaker_trip(self, fake_clock, oracle, mock_rpc_client, slab_builder):
        def trip(ix):
            raise CircuitBreakerTrip(20)

        async def yield_sleep(seconds):
            await asyncio.sleep(0)

        orch = KeeperOrchestrator(
            FakeDiscovery(_found(_snapshot(slab_builder))),
            mock_rpc_client,
            FakeSubmitter(behavior=trip),
            KeeperInstructions(MockEncoder()),
            oracle,
            config=OrchestratorConfig(program_ids=(PROGRAM,), liquidation_enabled=False),
            clock=fake_clock,
            sleep=yield_sleep,
        )

        with pytest.raises(CircuitBreakerTrip):
            await asyncio.wait_for(orch.run_forever(), timeout=5)
        assert not orch.is_running

    @pytest.mark.asyncio
    async def test_stop_ends_run_forever(self, make_orchestrator):
        async def yield_sleep(seconds):
            await asyncio.sleep(0)

        orch = make_orchestrator()
        orch._sleep = yield_sleep

        async def stop_soon():
            await asyncio.sleep(0)
            orch.stop()

        asyncio.get_running_loop().create_task(stop_soon())
        await asyncio.wait_for(orch.run_forever(), timeout=5)

        assert not orch.is_running


# ============================================================================
# PER-MARKET WORK & ISOLATION
# ============================================================================


class TestCrankMarket:

    @pytest.mark.asyncio
    async def test_admin_oracle_pushes_price_first(self, make_orchestrator, slab_builder, oracle):
        submitter = FakeSubmitter()
        orch = make_orchestrator(submitter=submitter)
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder, admin_oracle=True))

        assert await orch.crank_market(state)

        assert submitter.tags() == [TAG_PUSH_ORACLE_PRICE, TAG_KEEPER_CRANK]
        oracle.fetch_price.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_price_fetch_failure_still_cranks(self, make_orchestrator, slab_builder, oracle):
        oracle.fetch_price = AsyncMock(return_value=None)
        submitter = FakeSubmitter()
        orch = make_orchestrator(submitter=submitter)
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder, admin_oracle=True))

        assert await orch.crank_market(state)

        assert submitter.tags() == [TAG_KEEPER_CRANK]
        types = [e.type for e in _drain(orch.events)]
        assert KeeperEventType.PRICE_FAILED in types
        assert KeeperEventType.CRANK_SUCCESS in types

    @pytest.mark.asyncio
    async def test_price_push_submit_failure_still_cranks(self, make_orchestrator, slab_builder):
        def fail_push(ix):
            if bytes(ix.data)[0] == TAG_PUSH_ORACLE_PRICE:
                raise SubmissionError("stale authority")

        submitter = FakeSubmitter(behavior=fail_push)
        orch = make_orchestrator(submitter=submitter)
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder, admin_oracle=True))

        assert await orch.crank_market(state)
        assert state.success_count == 1

    @pytest.mark.asyncio
    async def test_crank_uses_slab_as_oracle_for_admin_markets(self, make_orchestrator, slab_builder):
        submitter = FakeSubmitter()
        orch = make_orchestrator(submitter=submitter)
        snap = _snapshot(slab_builder, admin_oracle=True)

        await orch.crank_market(MarketCrankState.from_snapshot(snap))

        crank = submitter.submitted[-1]
        assert crank.program_id == PROGRAM
        assert crank.accounts[0].pubkey == submitter.payer
        assert crank.accounts[1].pubkey == snap.slab_address
        assert crank.accounts[3].pubkey == snap.slab_address

    @pytest.mark.asyncio
    async def test_batch_isolation(self, make_orchestrator, slab_builder, no_sleep):
        snaps = [_snapshot(slab_builder) for _ in range(5)]
        bad = snaps[1].slab_address

        def fail_one(ix):
            if ix.accounts[1].pubkey == bad:
                raise RuntimeError("boom")

        orch = make_orchestrator(
            discovery=FakeDiscovery(_found(*snaps)),
            submitter=FakeSubmitter(behavior=fail_one),
        )

        result = await orch.run_cycle()

        assert (result.success, result.failed) == (4, 1)
        assert no_sleep.delays == [2.0]
        assert orch.markets[str(bad)].consecutive_failures == 1
        assert orch.last_cycle_result is result

    @pytest.mark.asyncio
    async def test_breaker_trip_escapes_cycle(self, make_orchestrator, slab_builder):
        def trip(ix):
            raise CircuitBreakerTrip(20)

        orch = make_orchestrator(
            discovery=FakeDiscovery(_found(_snapshot(slab_builder))),
            submitter=FakeSubmitter(behavior=trip),
        )

        with pytest.raises(CircuitBreakerTrip):
            await orch.run_cycle()

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, make_orchestrator, slab_builder):
        async def hang(ix):
            await asyncio.sleep(10)

        orch = make_orchestrator(
            discovery=FakeDiscovery(_found(_snapshot(slab_builder))),
            submitter=FakeSubmitter(behavior=hang),
            market_timeout_sec=0.01,
        )

        result = await orch.run_cycle()

        assert result.failed == 1
        state = next(iter(orch.markets.values()))
        assert state.consecutive_failures == 1
        assert "timed out" in state.last_error


class TestLiquidation:

    @pytest.mark.asyncio
    async def test_candidates_liquidated_after_crank(self, make_orchestrator, slab_builder, mock_rpc_client):
        slab = Pubkey.new_unique()
        full = (
            slab_builder(64).with_price(1_000_000).with_maintenance_margin(500)
            .add_account(0, capital=100, pnl=-150, position_size=10_000)
            .add_account(1, capital=5_000, position_size=10_000)
            .add_account(2, capital=499, position_size=-10_000)
        )
        mock_rpc_client.add_account(PROGRAM, slab, full.build())
        submitter = FakeSubmitter()
        orch = make_orchestrator(submitter=submitter, liquidation_enabled=True)
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder, slab=slab))

        assert await orch.crank_market(state)

        assert submitter.tags() == [TAG_KEEPER_CRANK, TAG_LIQUIDATE_AT_ORACLE, TAG_LIQUIDATE_AT_ORACLE]
        assert state.snapshot.has_accounts
        liquidated = [e for e in _drain(orch.events) if e.type == KeeperEventType.LIQUIDATION_SUCCESS]
        assert [e.data["account_idx"] for e in liquidated] == [0, 2]

    @pytest.mark.asyncio
    async def test_one_failed_liquidation_does_not_stop_others(self, make_orchestrator, slab_builder, mock_rpc_client):
        slab = Pubkey.new_unique()
        full = (
            slab_builder(64).with_price(1_000_000).with_maintenance_margin(500)
            .add_account(0, capital=100, pnl=-150, position_size=10_000)
            .add_account(1, capital=100, pnl=-150, position_size=10_000)
        )
        mock_rpc_client.add_account(PROGRAM, slab, full.build())
        calls = []

        def fail_first_liquidation(ix):
            if bytes(ix.data)[0] == TAG_LIQUIDATE_AT_ORACLE:
                calls.append(ix)
                if len(calls) == 1:
                    raise SubmissionError("already liquidated")

        orch = make_orchestrator(
            submitter=FakeSubmitter(behavior=fail_first_liquidation), liquidation_enabled=True
        )
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder, slab=slab))

        assert await orch.liquidate_market(state) == 1
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_liquidation_fetch_failure_keeps_crank_success(self, make_orchestrator, slab_builder):
        # Slab is not on the mock ledger: fetch raises MarketNotFound
        orch = make_orchestrator(liquidation_enabled=True)
        state = MarketCrankState.from_snapshot(_snapshot(slab_builder))

        assert await orch.crank_market(state)
        assert state.success_count == 1

    @pytest.mark.asyncio
    async def test_slow_sweep_does_not_fail_landed_crank(self, make_orchestrator, slab_builder, mock_rpc_client):
        slab = Pubkey.new_unique()
        full = (
            slab_builder(64).with_price(1_000_000).with_maintenance_margin(500)
            .add_account(0, capital=100, pnl=-150, position_size=10_000)
        )
        mock_rpc_client.add_account(PROGRAM, slab, full.build())

        def slow_liquidation(ix):
            if bytes(ix.data)[0] == TAG_LIQUIDATE_AT_ORACLE:
                return asyncio.sleep(10)

        orch = make_orchestrator(
            discovery=FakeDiscovery(_found(_snapshot(slab_builder, slab=slab))),
            submitter=FakeSubmitter(behavior=slow_liquidation),
            liquidation_enabled=True,
            market_timeout_sec=0.05,
        )

        result = await orch.run_cycle()

        assert (result.success, result.failed) == (1, 0)
        state = orch.markets[str(slab)]
        assert (state.success_count, state.failure_count, state.consecutive_failures) == (1, 0, 0)
        assert state.last_error is None
