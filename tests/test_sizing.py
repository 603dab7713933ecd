"""Tests for position sizing."""

from __future__ import annotations

import pytest

from alpha_edge.markets.models import MarketQuality
from alpha_edge.risk.sizing import (
    MAX_SLIPPAGE,
    PositionSizer,
    SizingConfig,
    calculate_breaking_size,
    calculate_expected_pnl,
    calculate_optimal_size,
    calculate_position_size,
    estimate_slippage,
    is_trade_viable,
)
from alpha_edge.signals.models import Certainty


def _quality(**overrides) -> MarketQuality:
    values = dict(market_id="m1", liquidity_score=1.0, spread_proxy=0.0, volume_24h=50_000.0)
    values.update(overrides)
    return MarketQuality(**values)


@pytest.fixture
def sizer():
    return PositionSizer(config=SizingConfig(), breaking_bankroll_fraction=0.5)


class TestSlippage:
    def test_perfect_market(self):
        assert estimate_slippage(1000, _quality()) == pytest.approx(0.0011)

    def test_illiquid_wide_market(self):
        q = _quality(liquidity_score=0.5, spread_proxy=0.04, volatility=0.5)
        # 0.001 + 0.0001 + 0.0025 + 0.001 + 0.02
        assert estimate_slippage(1000, q) == pytest.approx(0.0246)

    def test_capped(self):
        assert estimate_slippage(100, _quality(spread_proxy=0.5)) == MAX_SLIPPAGE


class TestViability:
    def test_net_edge_exactly_zero_not_viable(self):
        viable, reason = is_trade_viable(0.03, 0.02, 0.01, 0.01)
        assert viable is False
        assert reason.startswith("Net edge too low")

    def test_viable(self):
        viable, reason = is_trade_viable(0.10, 0.01, 0.002, 0.01)
        assert viable is True
        assert "8.80%" in reason

    def test_expected_pnl(self):
        pnl = calculate_expected_pnl(100, 0.10, 0.01, 0.002)
        assert pnl.gross == pytest.approx(10.0)
        assert pnl.costs == pytest.approx(1.2)
        assert pnl.net == pytest.approx(8.8)


class TestKellySizing:
    def test_quarter_kelly(self):
        result = calculate_position_size(0.10, 0.80, 1000, _quality())
        assert result.kelly_raw == pytest.approx(0.20)
        assert result.kelly_adjusted == pytest.approx(0.04)
        assert result.size == pytest.approx(40.0)

    def test_capped_at_max_size(self):
        result = calculate_position_size(0.10, 1.0, 10_000, _quality())
        assert result.size == 100.0
        assert any(line.startswith("Size capped") for line in result.reasoning)

    def test_edge_too_low(self):
        result = calculate_position_size(0.01, 0.9, 1000, _quality())
        assert result.size == 0.0
        assert result.rejection_reason.startswith("Edge too low")

    def test_confidence_too_low(self):
        result = calculate_position_size(0.10, 0.4, 1000, _quality())
        assert result.size == 0.0
        assert result.rejection_reason.startswith("Confidence too low")

    def test_below_minimum(self):
        result = calculate_position_size(0.10, 0.80, 10, _quality())
        assert result.size == 0.0
        assert result.rejection_reason == "Size below minimum: 0.40 < 1.0 USDC"
        assert result.rejection_reason in result.reasoning

    def test_liquidity_penalty(self):
        result = calculate_position_size(0.10, 0.80, 1000, _quality(liquidity_score=0.25))
        assert result.size == pytest.approx(20.0)

    def test_volatility_penalty(self):
        result = calculate_position_size(0.10, 0.80, 1000, _quality(volatility=0.5))
        assert result.size == pytest.approx(32.0)


class TestOptimalSize:
    def test_viable_size_untouched(self):
        result = calculate_optimal_size(0.10, 0.80, 1000, _quality())
        assert result.size == pytest.approx(40.0)
        assert result.rejection_reason is None

    def test_unviable_reduced_to_zero(self):
        config = SizingConfig(min_size=50.0)
        # spread 3.6% costs 1.8% slippage, leaving <1% net of a 3% edge
        result = calculate_optimal_size(
            0.03, 1.0, 10_000, _quality(spread_proxy=0.036), config,
        )
        assert result.size == 0.0
        assert result.rejection_reason.startswith("Not viable after slippage adjustment")


class TestCertaintySizing:
    def test_low_uses_configured_fraction(self, sizer):
        result = sizer.size_with_certainty(Certainty.LOW, 0.10, 0.80, _quality(), 1000)
        assert result.size == pytest.approx(40.0)
        assert result.reasoning[0] == "Certainty low: Kelly fraction 0.25"

    def test_high_uses_half_kelly(self, sizer):
        result = sizer.size_with_certainty(Certainty.HIGH, 0.10, 0.80, _quality(), 1000)
        assert result.size == pytest.approx(80.0)

    def test_breaking_confirmed_lifts_cap(self, sizer):
        # high-impact path: half the bankroll on one market
        result = sizer.size_with_certainty(
            Certainty.BREAKING_CONFIRMED, 0.10, 0.80, _quality(), 1000,
        )
        assert result.size == pytest.approx(500.0)
        assert result.kelly_adjusted == 0.5
        assert result.reasoning[0].startswith("BREAKING CONFIRMED")

    def test_breaking_confirmed_keeps_penalties(self):
        result = calculate_breaking_size(0.10, 0.80, 1000, _quality(liquidity_score=0.25))
        assert result.size == pytest.approx(250.0)

    def test_breaking_confirmed_keeps_minimums(self):
        result = calculate_breaking_size(0.01, 0.80, 1000, _quality())
        assert result.size == 0.0

    def test_viability_and_pnl_helpers(self, sizer):
        viable, _ = sizer.viability(0.10, 40, _quality())
        assert viable is True
        pnl = sizer.expected_pnl(0.10, 100, _quality())
        assert pnl.gross == pytest.approx(10.0)
        assert pnl.net < pnl.gross

    def test_below_minimum_reason_survives(self, sizer):
        # 10 * 0.06 * 0.25 * 0.6 = 0.09 USDC
        result = sizer.size_with_certainty(Certainty.MEDIUM, 0.03, 0.6, _quality(), 10)
        assert result.size == 0.0
        assert result.rejection_reason == "Size below minimum: 0.09 < 1.0 USDC"
        assert result.reasoning[-1].startswith("Expected slippage")

    def test_breaking_below_minimum_reason(self):
        result = calculate_breaking_size(0.10, 0.80, 1, _quality())
        assert result.size == 0.0
        assert result.rejection_reason == "Size below minimum: 0.50 < 1.0 USDC"

    def test_min_edge_override(self, sizer):
        result = sizer.size_with_certainty(Certainty.LOW, 0.10, 0.80, _quality(), 1000, min_edge=0.15)
        assert result.size == 0.0
        assert result.rejection_reason == "Edge too low: 10.00% < 15.00%"
        assert sizer.config.min_edge == 0.02
