"""Mispricing signal generation: transparent P_true estimate vs. market price."""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass

from alpha_edge.common.types import Clock, utc_now
from alpha_edge.config import Settings, get_settings
from alpha_edge.markets.models import MarketQuality, MarketSnapshot
from alpha_edge.markets.quality import days_to_expiry, market_quality
from alpha_edge.signals.models import (
    AlphaSignal,
    Certainty,
    Direction,
    MispricingFeaturesV1,
    SourceType,
)

logger = logging.getLogger(__name__)

MAX_UNCERTAINTY = 0.25
BIAS_SHARE = 0.3
N_BUCKETS = 10


@dataclass(frozen=True)
class MispricingConfig:
    min_edge: float = 0.03
    max_uncertainty: float = 0.15
    min_liquidity: float = 0.3
    max_spread: float = 0.05
    mean_reversion_strength: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings) -> MispricingConfig:
        return cls(
            min_edge=settings.mispricing_min_edge,
            max_uncertainty=settings.mispricing_max_uncertainty,
            min_liquidity=settings.min_liquidity_score,
            max_spread=settings.max_spread,
        )


@dataclass(frozen=True)
class ProbEstimate:
    estimate: float
    uncertainty: float
    bias: float
    reasoning: list[str]


def bucket_index(prob: float) -> int:
    """0.0-0.1 -> 0, ..., 0.9-1.0 -> 9."""
    return max(0, min(N_BUCKETS - 1, math.floor(prob * N_BUCKETS)))


def apply_mean_reversion(price: float, strength: float = 0.1) -> float:
    """Pull extreme prices (<10%, >90%) slightly toward the middle."""
    if price < 0.1:
        return price + (0.1 - price) * strength
    if price > 0.9:
        return price - (price - 0.9) * strength
    return price


def estimate_uncertainty(quality: MarketQuality, days: int) -> float:
    uncertainty = 0.1
    uncertainty += quality.spread_proxy * 0.5
    uncertainty += (1 - quality.liquidity_score) * 0.1
    if days > 30:
        uncertainty += 0.05
    if days > 90:
        uncertainty += 0.05
    return min(MAX_UNCERTAINTY, uncertainty)


def mispricing_confidence(uncertainty: float, quality: MarketQuality) -> float:
    confidence = 1 - uncertainty / MAX_UNCERTAINTY
    confidence *= (quality.liquidity_score + 1) / 2
    confidence *= 1 - quality.spread_proxy
    return max(0.0, min(1.0, confidence))


class MispricingGenerator:
    """Estimates the true YES probability from price, mean reversion and past calibration."""

    def __init__(self, config: MispricingConfig | None = None, clock: Clock = utc_now) -> None:
        self.config = config or MispricingConfig.from_settings(get_settings())
        self._clock = clock
        self._bias: dict[int, float] = {}

    @property
    def historical_bias(self) -> dict[int, float]:
        return dict(self._bias)

    def load_calibration(self, pairs: list[tuple[float, int]]) -> int:
        """Load per-bucket bias (actual - predicted) from (predicted, outcome) pairs.

        Returns the number of populated buckets.
        """
        grouped: dict[int, list[tuple[float, int]]] = {}
        for predicted, outcome in pairs:
            grouped.setdefault(bucket_index(predicted), []).append((predicted, outcome))

        self._bias = {}
        for index, rows in grouped.items():
            predicted_avg = sum(p for p, _ in rows) / len(rows)
            actual_avg = sum(o for _, o in rows) / len(rows)
            self._bias[index] = actual_avg - predicted_avg

        logger.info(
            "Mispricing calibration loaded: %d outcomes, %d buckets",
            len(pairs), len(self._bias),
        )
        return len(self._bias)

    def estimate_true_prob(self, market: MarketSnapshot, quality: MarketQuality) -> ProbEstimate:
        reasoning: list[str] = []
        estimate = market.yes_price
        reasoning.append(f"Base: market price {estimate:.1%}")

        reverted = apply_mean_reversion(estimate, self.config.mean_reversion_strength)
        if reverted != estimate:
            reasoning.append(f"Mean reversion: {estimate:.1%} -> {reverted:.1%}")
        estimate = reverted

        bias = self._bias.get(bucket_index(estimate), 0.0)
        if bias:
            estimate += bias * BIAS_SHARE
            reasoning.append(
                f"Historical bias: {bias:+.1%} (applied {bias * BIAS_SHARE:+.1%})"
            )

        estimate = max(0.01, min(0.99, estimate))

        days = days_to_expiry(market, self._clock())
        uncertainty = estimate_uncertainty(quality, days)
        reasoning.append(f"Uncertainty: +/- {uncertainty:.1%}")

        return ProbEstimate(estimate, uncertainty, bias, reasoning)

    def tradeable_check(
        self, edge: float, uncertainty: float, quality: MarketQuality,
    ) -> tuple[bool, list[str]]:
        reasons: list[str] = []
        abs_edge = abs(edge)

        if abs_edge < uncertainty:
            reasons.append(f"Edge ({abs_edge:.1%}) < uncertainty ({uncertainty:.1%})")
        if abs_edge < self.config.min_edge:
            reasons.append(f"Edge ({abs_edge:.1%}) < min edge ({self.config.min_edge:.1%})")
        if uncertainty > self.config.max_uncertainty:
            reasons.append(
                f"Uncertainty ({uncertainty:.1%}) > max ({self.config.max_uncertainty:.1%})"
            )
        if quality.liquidity_score < self.config.min_liquidity:
            reasons.append(
                f"Liquidity ({quality.liquidity_score:.2f}) < min ({self.config.min_liquidity})"
            )
        if quality.spread_proxy > self.config.max_spread:
            reasons.append(f"Spread ({quality.spread_proxy:.1%}) > max ({self.config.max_spread:.1%})")

        if reasons:
            return False, reasons
        return True, ["All tradeable checks passed"]

    def generate_signal(
        self, market: MarketSnapshot, quality: MarketQuality | None = None,
    ) -> AlphaSignal | None:
        """Signal for one market, or None when it is not tradeable."""
        quality = quality or market_quality(
            market, min_liquidity=self.config.min_liquidity, max_spread=self.config.max_spread,
        )
        prob = self.estimate_true_prob(market, quality)
        edge = prob.estimate - market.implied_prob

        tradeable, checks = self.tradeable_check(edge, prob.uncertainty, quality)
        if not tradeable:
            logger.debug("Mispricing skip %s: %s", market.market_id, "; ".join(checks))
            return None

        now = self._clock()
        features = MispricingFeaturesV1(
            implied_prob=market.implied_prob,
            estimated_prob=prob.estimate,
            prob_uncertainty=prob.uncertainty,
            historical_bias=prob.bias,
            liquidity_score=quality.liquidity_score,
            spread_proxy=quality.spread_proxy,
            days_to_expiry=days_to_expiry(market, now),
            volatility_30d=quality.volatility,
        )
        signal = AlphaSignal(
            signal_id=uuid.uuid4().hex,
            source_type=SourceType.MISPRICING,
            market_id=market.market_id,
            question=market.question,
            direction=Direction.YES if edge > 0 else Direction.NO,
            predicted_edge=abs(edge),
            confidence=mispricing_confidence(prob.uncertainty, quality),
            certainty=Certainty.LOW,
            features=features,
            reasoning=tuple(prob.reasoning + checks),
            created_at=now,
        )
        logger.debug(
            "Mispricing signal %s: edge=%+.1f%% confidence=%.2f",
            market.market_id, edge * 100, signal.confidence,
        )
        return signal

    def generate_signals(self, markets: list[MarketSnapshot]) -> list[AlphaSignal]:
        signals = [s for s in (self.generate_signal(m) for m in markets) if s is not None]
        signals.sort(key=lambda s: s.predicted_edge, reverse=True)
        logger.info("Mispricing: %d signals from %d markets", len(signals), len(markets))
        return signals
