"""Tests for decision classification."""

from __future__ import annotations

import pytest

from alpha_edge.markets.models import MarketQuality
from alpha_edge.risk.models import GateResult, RiskCheckResult, RiskChecks
from alpha_edge.risk.sizing import PositionSizer, SizingConfig, SizingResult
from alpha_edge.signals.decisions import build_decision, classify_action
from alpha_edge.signals.models import Certainty, DecisionAction, SourceType

PASSED = RiskCheckResult(checks=RiskChecks(), passed=True, failed_reasons=[])
ALLOWED = GateResult(True, "OK")
COSTS = dict(min_edge=0.02, fees=0.002, min_net_edge=0.01)


def _sizing(size: float = 40.0, slippage: float = 0.001) -> SizingResult:
    return SizingResult(size=size, reasoning=["Final size: 40.00 USDC"], expected_slippage=slippage)


class TestClassifyAction:
    def test_trade(self, make_signal):
        action, reasons = classify_action(make_signal(), _sizing(), PASSED, ALLOWED, **COSTS)
        assert action is DecisionAction.TRADE
        assert reasons == []

    @pytest.mark.parametrize("certainty", [Certainty.HIGH, Certainty.BREAKING_CONFIRMED])
    def test_high_conviction(self, make_signal, certainty):
        signal = make_signal(certainty=certainty)
        action, _ = classify_action(signal, _sizing(), PASSED, ALLOWED, **COSTS)
        assert action is DecisionAction.HIGH_CONVICTION

    def test_watch_when_costs_eat_edge(self, make_signal):
        signal = make_signal(edge=0.03, certainty=Certainty.HIGH)
        action, reasons = classify_action(signal, _sizing(slippage=0.02), PASSED, ALLOWED, **COSTS)
        assert action is DecisionAction.WATCH
        assert reasons[0].startswith("Net edge too low")

    def test_show_below_min_edge(self, make_signal):
        signal = make_signal(edge=0.01)
        action, _ = classify_action(signal, _sizing(), PASSED, ALLOWED, **COSTS)
        assert action is DecisionAction.SHOW

    def test_reject_zero_size(self, make_signal):
        sizer = PositionSizer(config=SizingConfig(), breaking_bankroll_fraction=0.5)
        quality = MarketQuality(market_id="m1", liquidity_score=1.0, spread_proxy=0.0, volume_24h=50_000.0)
        sizing = sizer.size_with_certainty(Certainty.MEDIUM, 0.03, 0.6, quality, 10)
        action, reasons = classify_action(make_signal(), sizing, PASSED, ALLOWED, **COSTS)
        assert action is DecisionAction.REJECT
        assert reasons == ["Size below minimum: 0.09 < 1.0 USDC"]

    def test_reject_zero_size_without_reason(self, make_signal):
        action, reasons = classify_action(make_signal(), _sizing(size=0.0), PASSED, ALLOWED, **COSTS)
        assert action is DecisionAction.REJECT
        assert reasons == ["Size is zero"]

    def test_reject_collects_every_reason(self, make_signal):
        failed = RiskCheckResult(
            checks=RiskChecks(spread_ok=False),
            passed=False,
            failed_reasons=["Spread too high: 8.00% (max 5.00%)"],
        )
        halted = GateResult(False, "Kill switch active: manual")
        action, reasons = classify_action(make_signal(), _sizing(), failed, halted, **COSTS)
        assert action is DecisionAction.REJECT
        assert reasons == ["Spread too high: 8.00% (max 5.00%)", "Kill switch active: manual"]


class TestBuildDecision:
    def test_fields(self, make_signal, clock, now):
        signal = make_signal(source_type=SourceType.MISPRICING, edge=0.08, confidence=0.7)
        decision = build_decision(
            signal, _sizing(), PASSED, ALLOWED,
            top_features=["Mispricing edge (+0.010)"], clock=clock, **COSTS,
        )
        assert decision.signal_id == signal.signal_id
        assert decision.market_id == "m1"
        assert decision.direction is signal.direction
        assert decision.action is DecisionAction.TRADE
        assert decision.size_usdc == 40.0
        assert decision.risk_checks == RiskChecks()
        assert decision.rationale.source_type is SourceType.MISPRICING
        assert decision.rationale.edge == 0.08
        assert decision.rationale.top_features == ("Mispricing edge (+0.010)",)
        assert decision.created_at == now
        assert len(decision.decision_id) == 32

    def test_rejected_has_no_size(self, make_signal, clock):
        halted = GateResult(False, "Kill switch active: manual")
        decision = build_decision(make_signal(), _sizing(), PASSED, halted, clock=clock, **COSTS)
        assert decision.action is DecisionAction.REJECT
        assert decision.size_usdc is None
        assert decision.rationale.rejection_reasons == ("Kill switch active: manual",)

    def test_unique_ids(self, make_signal, clock):
        signal = make_signal()
        first = build_decision(signal, _sizing(), PASSED, ALLOWED, clock=clock, **COSTS)
        second = build_decision(signal, _sizing(), PASSED, ALLOWED, clock=clock, **COSTS)
        assert first.decision_id != second.decision_id
