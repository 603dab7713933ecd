"""Time-delay signal generation: news events to scored alpha signals.

Pipeline per batch:
  age filter -> fuzzy match (grouped by market) -> confirmation ->
  price-move check -> features -> edge / confidence / certainty ->
  direction -> reasoning.

Scoring is a transparent rule table, not a learned model.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from alpha_edge.common.types import Clock, utc_now
from alpha_edge.config import Settings, get_settings
from alpha_edge.events.models import SourceEvent
from alpha_edge.markets.models import MarketSnapshot
from alpha_edge.signals.direction import impact_score, resolve_direction, sentiment_score
from alpha_edge.signals.matching import MatchResult, batch_match
from alpha_edge.signals.models import (
    AlphaSignal,
    Certainty,
    SourceType,
    TimeDelayFeaturesV1,
)

logger = logging.getLogger(__name__)

MAX_EDGE = 0.15


@dataclass(frozen=True)
class TimeDelayConfig:
    min_source_count: int = 2
    max_news_age_minutes: float = 60.0
    min_match_confidence: float = 0.3
    max_price_move_since_news: float = 0.05
    min_source_reliability: float = 0.8

    @classmethod
    def from_settings(cls, settings: Settings) -> TimeDelayConfig:
        return cls(
            min_source_count=settings.min_source_count,
            max_news_age_minutes=settings.max_news_age_minutes,
            min_match_confidence=settings.min_match_confidence,
            max_price_move_since_news=settings.max_price_move_since_news,
            min_source_reliability=settings.min_source_reliability,
        )


def calculate_edge(f: TimeDelayFeaturesV1) -> float:
    """Bounded additive edge estimate from feature bonuses."""
    edge = f.match_confidence * 0.05

    if f.source_count >= 3:
        edge += 0.03
    elif f.source_count >= 2:
        edge += 0.02

    if f.avg_source_reliability >= 0.9:
        edge += 0.02
    elif f.avg_source_reliability >= 0.7:
        edge += 0.01

    if f.news_age_minutes <= 10:
        edge += 0.03
    elif f.news_age_minutes <= 30:
        edge += 0.01

    abs_sentiment = abs(f.sentiment_score)
    if abs_sentiment >= 0.7:
        edge += 0.02
    elif abs_sentiment >= 0.4:
        edge += 0.01

    if f.impact_score >= 0.5:
        edge += 0.02

    # Market already reacting
    if f.price_move_since_news > 0.02:
        edge *= 0.7
    elif f.price_move_since_news > 0.01:
        edge *= 0.85

    return min(edge, MAX_EDGE)


def calculate_confidence(f: TimeDelayFeaturesV1) -> float:
    confidence = f.match_confidence * 0.4
    confidence += min(f.source_count / 5, 0.2)
    confidence += f.avg_source_reliability * 0.2

    if f.news_age_minutes <= 15:
        confidence += 0.1
    elif f.news_age_minutes <= 30:
        confidence += 0.05

    confidence += f.impact_score * 0.1
    return min(confidence, 1.0)


def calculate_certainty(f: TimeDelayFeaturesV1) -> Certainty:
    """Certainty tier. breaking_confirmed unlocks half-bankroll sizing."""
    is_breaking = f.impact_score >= 0.5
    is_very_fresh = f.news_age_minutes <= 10
    has_multi_source = f.source_count >= 3
    has_tier1_source = f.avg_source_reliability >= 0.9
    no_market_move = f.price_move_since_news < 0.02
    strong_sentiment = abs(f.sentiment_score) >= 0.5
    high_match = f.match_confidence >= 0.6

    if (
        is_breaking
        and is_very_fresh
        and (has_multi_source or has_tier1_source)
        and no_market_move
        and strong_sentiment
        and high_match
    ):
        logger.warning(
            "BREAKING_CONFIRMED: fresh=%.0fmin sources=%d reliability=%.2f "
            "sentiment=%.2f match=%.2f",
            f.news_age_minutes, f.source_count, f.avg_source_reliability,
            f.sentiment_score, f.match_confidence,
        )
        return Certainty.BREAKING_CONFIRMED

    if (is_breaking or is_very_fresh) and (has_multi_source or has_tier1_source) and high_match:
        return Certainty.HIGH

    if f.source_count >= 2 and f.avg_source_reliability >= 0.7 and f.match_confidence >= 0.5:
        return Certainty.MEDIUM

    return Certainty.LOW


def build_reasoning(
    events: list[SourceEvent],
    matches: list[tuple[SourceEvent, MatchResult]],
    f: TimeDelayFeaturesV1,
    edge: float,
    certainty: Certainty,
) -> list[str]:
    reasoning: list[str] = []

    if certainty is Certainty.BREAKING_CONFIRMED:
        reasoning.append("BREAKING CONFIRMED: up to 50% of bankroll")
    elif certainty is Certainty.HIGH:
        reasoning.append("HIGH CERTAINTY: aggressive sizing")

    sources = list(dict.fromkeys(e.source_name for e in events))
    shown = ", ".join(sources[:3]) + ("..." if len(sources) > 3 else "")
    reasoning.append(f"{len(events)} events from {len(sources)} sources: {shown}")

    best_event, best_match = max(matches, key=lambda m: m[1].confidence)
    reasoning.append(
        f'Best match: "{best_event.title[:50]}..." ({best_match.confidence:.0%} confidence)'
    )

    if f.news_age_minutes <= 10:
        reasoning.append(f"Very fresh news ({f.news_age_minutes:.0f} min old)")
    else:
        reasoning.append(f"News age: {f.news_age_minutes:.0f} minutes")

    if f.sentiment_score >= 0.4:
        reasoning.append(f"Strongly positive sentiment ({f.sentiment_score:.2f})")
    elif f.sentiment_score <= -0.4:
        reasoning.append(f"Strongly negative sentiment ({f.sentiment_score:.2f})")
    elif abs(f.sentiment_score) >= 0.1:
        reasoning.append(f"Moderate sentiment ({f.sentiment_score:.2f})")

    if f.impact_score >= 0.5:
        reasoning.append("Breaking news indicator detected")

    reasoning.append(f"Estimated edge: {edge:.1%}")
    reasoning.append(f"Certainty level: {certainty.value.upper()}")
    return reasoning


class TimeDelayGenerator:
    """Turns confirmed, fresh news into signals on markets that have not moved yet."""

    def __init__(self, config: TimeDelayConfig | None = None, clock: Clock = utc_now) -> None:
        self.config = config or TimeDelayConfig.from_settings(get_settings())
        self._clock = clock

    def _is_confirmed(self, events: list[SourceEvent]) -> bool:
        """Multi-source confirmation, or a single high-reliability source."""
        if len({e.source_name for e in events}) >= self.config.min_source_count:
            return True
        return max(e.reliability_score for e in events) >= self.config.min_source_reliability

    def calculate_features(
        self,
        events: list[SourceEvent],
        matches: list[MatchResult],
        market: MarketSnapshot,
        price_at_news: float,
        now: datetime,
    ) -> TimeDelayFeaturesV1:
        newest = max(e.timestamp for e in events)
        return TimeDelayFeaturesV1(
            source_count=len({e.source_name for e in events}),
            avg_source_reliability=sum(e.reliability_score for e in events) / len(events),
            news_age_minutes=(now - newest).total_seconds() / 60,
            sentiment_score=sentiment_score(events),
            impact_score=impact_score(events),
            market_price_at_news=price_at_news,
            price_move_since_news=abs(market.yes_price - price_at_news),
            volume_at_news=market.volume_24h,
            match_confidence=sum(m.confidence for m in matches) / len(matches),
        )

    def generate_signals(
        self,
        events: list[SourceEvent],
        markets: list[MarketSnapshot],
        prices_at_news: dict[str, float] | None = None,
    ) -> list[AlphaSignal]:
        """Score every market that confirmed, fresh news matches.

        Markets without a match, with stale or unconfirmed news, or whose
        price already moved are skipped silently. Result is sorted by edge,
        best first.
        """
        prices_at_news = prices_at_news or {}
        now = self._clock()
        max_age = timedelta(minutes=self.config.max_news_age_minutes)

        recent = [e for e in events if now - e.timestamp <= max_age]
        logger.info(
            "Time-delay: %d/%d events within %.0f min, %d markets",
            len(recent), len(events), self.config.max_news_age_minutes, len(markets),
        )
        if not recent:
            return []

        markets_by_id = {m.market_id: m for m in markets}
        signals: list[AlphaSignal] = []

        for market_id, all_pairs in batch_match(recent, markets).items():
            pairs = [
                (event, match) for event, match in all_pairs
                if match.confidence >= self.config.min_match_confidence
            ]
            if not pairs:
                continue
            market = markets_by_id[market_id]
            matched_events = [event for event, _ in pairs]

            if not self._is_confirmed(matched_events):
                logger.debug("Market %s: not confirmed (%d events)", market_id, len(matched_events))
                continue

            price_at_news = prices_at_news.get(market_id)
            if price_at_news is not None and (
                abs(market.yes_price - price_at_news) > self.config.max_price_move_since_news
            ):
                logger.debug(
                    "Market %s: already moved %.2f -> %.2f",
                    market_id, price_at_news, market.yes_price,
                )
                continue

            features = self.calculate_features(
                matched_events,
                [match for _, match in pairs],
                market,
                price_at_news if price_at_news is not None else market.yes_price,
                now,
            )
            edge = calculate_edge(features)
            confidence = calculate_confidence(features)
            certainty = calculate_certainty(features)
            direction = resolve_direction(matched_events, market.question)

            signal = AlphaSignal(
                signal_id=uuid.uuid4().hex,
                source_type=SourceType.TIME_DELAY,
                market_id=market_id,
                question=market.question,
                direction=direction,
                predicted_edge=edge,
                confidence=confidence,
                certainty=certainty,
                features=features,
                reasoning=tuple(build_reasoning(matched_events, pairs, features, edge, certainty)),
                created_at=now,
            )
            signals.append(signal)
            logger.info(
                "Signal: %s | direction=%s edge=%.1f%% confidence=%.2f certainty=%s sources=%d",
                market.question[:40], direction.value, edge * 100, confidence,
                certainty.value, features.source_count,
            )

        signals.sort(key=lambda s: s.predicted_edge, reverse=True)
        logger.info("Time-delay: %d signals generated", len(signals))
        return signals
