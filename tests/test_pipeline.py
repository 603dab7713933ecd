"""Tests for the pipeline orchestrator."""

from __future__ import annotations

from datetime import timezone

import pytest
import pytest_asyncio

from alpha_edge.errors import SubmissionError
from alpha_edge.execution.idempotency import IdempotencyService, KeyStatus
from alpha_edge.execution.positions import VenuePosition
from alpha_edge.pipeline import AlphaPipeline, ExecutionStatus
from alpha_edge.risk.machine import RiskStateMachine
from alpha_edge.risk.models import ExecutionMode
from alpha_edge.risk.sizing import PositionSizer, SizingConfig
from alpha_edge.risk.store import RiskStateStore
from alpha_edge.signals.combiner import MetaCombiner
from alpha_edge.signals.combiner_store import CombinerStateStore
from alpha_edge.signals.generator import TimeDelayConfig, TimeDelayGenerator
from alpha_edge.signals.mispricing import MispricingConfig, MispricingGenerator
from alpha_edge.signals.models import DecisionAction
from alpha_edge.signals.tracker import DecisionTracker

BANKROLL = 400.0


class FakeSubmitter:
    def __init__(self, error: Exception | None = None):
        self.error = error
        self.orders = []

    async def submit(self, order):
        self.orders.append(order)
        if self.error is not None:
            raise self.error
        return "exec-1"


class FakeSource:
    def __init__(self, positions):
        self.positions = positions

    async def fetch_positions(self):
        return self.positions


@pytest.fixture
def build(tmp_db, clock):
    def _build(settings, position_source=None) -> AlphaPipeline:
        return AlphaPipeline(
            machine=RiskStateMachine(
                store=RiskStateStore(tmp_db), settings=settings, clock=clock, tz=timezone.utc,
            ),
            idempotency=IdempotencyService(tmp_db, clock=clock),
            combiner=MetaCombiner(store=CombinerStateStore(tmp_db), clock=clock),
            tracker=DecisionTracker(tmp_db),
            time_delay=TimeDelayGenerator(TimeDelayConfig(), clock=clock),
            mispricing=MispricingGenerator(MispricingConfig(), clock=clock),
            sizer=PositionSizer(SizingConfig(), breaking_bankroll_fraction=0.5),
            position_source=position_source,
            settings=settings,
            clock=clock,
        )

    return _build


@pytest_asyncio.fixture
async def pipeline(build, settings):
    p = build(settings)
    await p.startup()
    return p


@pytest.fixture
def news(make_event):
    return [make_event(source_name=name) for name in ("Reuters", "AP", "BBC")]


class TestStartup:
    @pytest.mark.asyncio
    async def test_restores_and_syncs(self, build, settings):
        source = FakeSource([VenuePosition("0xaaa", "Yes", 50.0, 0.4)])
        p = build(settings, position_source=source)
        sync = await p.startup()

        assert p.machine.loaded is True
        assert p.combiner.loaded is True
        assert sync.synced is True
        assert p.machine.state.positions == pytest.approx({"0xaaa": 20.0})

    @pytest.mark.asyncio
    async def test_no_source_no_sync(self, pipeline):
        assert pipeline.machine.loaded is True
        assert pipeline.machine.state.positions == {}


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_fresh_news_high_conviction(self, pipeline, news, make_market):
        decisions = await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL)

        assert len(decisions) == 1
        d = decisions[0]
        assert d.action is DecisionAction.HIGH_CONVICTION
        assert d.market_id == "m1"
        assert d.size_usdc == pytest.approx(36.94)
        assert d.risk_checks.all_passed
        assert await pipeline.tracker.get_decision(d.decision_id) is not None

    @pytest.mark.asyncio
    async def test_oversized_rejected_by_market_cap(self, pipeline, news, make_market):
        decisions = await pipeline.evaluate(news, [make_market()], bankroll=1000.0)
        d = decisions[0]
        assert d.action is DecisionAction.REJECT
        assert d.size_usdc is None
        assert d.risk_checks.failed() == ["per_market_cap_ok"]

    @pytest.mark.asyncio
    async def test_tuned_min_edge_applies(self, pipeline, news, make_market):
        await pipeline.machine.update_settings(min_edge=0.99)
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        assert d.action is DecisionAction.REJECT
        assert d.rationale.rejection_reasons[0].startswith("Edge too low")
        assert d.rationale.rejection_reasons[0].endswith("< 99.00%")

    @pytest.mark.asyncio
    async def test_halted_rejects(self, pipeline, news, make_market):
        await pipeline.machine.activate_kill_switch("manual")
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        assert d.action is DecisionAction.REJECT
        assert "Kill switch active: manual" in d.rationale.rejection_reasons

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, pipeline, make_market):
        assert await pipeline.evaluate([], [make_market()]) == []


class TestExecute:
    @pytest.mark.asyncio
    async def test_paper_simulates_once(self, pipeline, news, make_market):
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]

        first = await pipeline.execute(d)
        assert first.status is ExecutionStatus.SIMULATED
        assert first.execution_id.startswith("paper-")
        assert pipeline.machine.state.positions == pytest.approx({"m1": 36.94})
        assert (await pipeline.idempotency.check(first.key)).status is KeyStatus.COMPLETED

        second = await pipeline.execute(d)
        assert second.status is ExecutionStatus.DUPLICATE
        assert second.execution_id == first.execution_id
        assert pipeline.machine.state.positions == pytest.approx({"m1": 36.94})

    @pytest.mark.asyncio
    async def test_blocked_creates_no_key(self, pipeline, news, make_market):
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        await pipeline.machine.activate_kill_switch("manual")

        result = await pipeline.execute(d)
        assert result.status is ExecutionStatus.BLOCKED
        assert (await pipeline.idempotency.get_stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_reject_skipped(self, pipeline, news, make_market):
        d = (await pipeline.evaluate(news, [make_market()], bankroll=1000.0))[0]
        assert (await pipeline.execute(d)).status is ExecutionStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_shadow_opens_no_position(self, pipeline, news, make_market):
        await pipeline.machine.set_execution_mode(ExecutionMode.SHADOW)
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]

        result = await pipeline.execute(d)
        assert result.status is ExecutionStatus.SIMULATED
        assert result.execution_id.startswith("shadow-")
        assert pipeline.machine.state.positions == {}

    @pytest.mark.asyncio
    async def test_live_submits(self, build, wallet_settings, news, make_market):
        p = build(wallet_settings)
        await p.startup()
        await p.machine.set_execution_mode(ExecutionMode.LIVE)
        d = (await p.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        submitter = FakeSubmitter()

        result = await p.execute(d, submitter)
        assert result.status is ExecutionStatus.SUBMITTED
        assert result.execution_id == "exec-1"
        assert submitter.orders[0].side == "BUY"
        assert submitter.orders[0].idempotency_key == result.key
        assert p.machine.state.positions == pytest.approx({"m1": 36.94})

        again = await p.execute(d, submitter)
        assert again.status is ExecutionStatus.DUPLICATE
        assert len(submitter.orders) == 1

    @pytest.mark.asyncio
    async def test_live_failure_marks_key(self, build, wallet_settings, news, make_market):
        p = build(wallet_settings)
        await p.startup()
        await p.machine.set_execution_mode(ExecutionMode.LIVE)
        d = (await p.evaluate(news, [make_market()], bankroll=BANKROLL))[0]

        result = await p.execute(d, FakeSubmitter(error=SubmissionError("rejected")))
        assert result.status is ExecutionStatus.FAILED
        assert (await p.idempotency.check(result.key)).status is KeyStatus.FAILED
        assert p.machine.state.positions == {}

    @pytest.mark.asyncio
    async def test_live_without_submitter(self, build, wallet_settings, news, make_market):
        p = build(wallet_settings)
        await p.startup()
        await p.machine.set_execution_mode(ExecutionMode.LIVE)
        d = (await p.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        assert (await p.execute(d)).status is ExecutionStatus.FAILED


class TestRecordOutcome:
    @pytest.mark.asyncio
    async def test_feeds_risk_combiner_and_tracker(self, pipeline, news, make_market):
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        await pipeline.execute(d)

        result = await pipeline.record_outcome(d.decision_id, 1, pnl=5.0)
        assert result.recorded_trade is True
        assert result.backfilled == 1
        assert 0.0 < result.combiner_prediction < 1.0

        state = pipeline.machine.state
        assert state.daily_pnl == 5.0
        assert state.positions == {}
        assert pipeline.combiner.training_count == 1
        assert (await pipeline.tracker.get_performance_summary())["wins"] == 1

    @pytest.mark.asyncio
    async def test_second_outcome_ignored(self, pipeline, news, make_market):
        d = (await pipeline.evaluate(news, [make_market()], bankroll=BANKROLL))[0]
        await pipeline.record_outcome(d.decision_id, 1, pnl=5.0)

        again = await pipeline.record_outcome(d.decision_id, 0, pnl=-5.0)
        assert again.recorded_trade is False
        assert again.backfilled == 0
        assert pipeline.machine.state.daily_pnl == 5.0
        assert pipeline.combiner.training_count == 1

    @pytest.mark.asyncio
    async def test_rejected_decision_trains_only(self, pipeline, news, make_market):
        d = (await pipeline.evaluate(news, [make_market()], bankroll=1000.0))[0]
        result = await pipeline.record_outcome(d.decision_id, 0, pnl=-10.0)
        assert result.recorded_trade is False
        assert pipeline.machine.state.daily_trades == 0
        assert pipeline.combiner.training_count == 1

    @pytest.mark.asyncio
    async def test_unknown_decision(self, pipeline):
        assert await pipeline.record_outcome("missing", 1) is None
