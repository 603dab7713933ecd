"""Shared test fixtures."""

from __future__ import annotations

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from alpha_edge.config import Settings
from alpha_edge.events.models import SourceEvent
from alpha_edge.markets.models import MarketQuality, MarketSnapshot


class FakeClock:
    """Deterministic clock: call it for the time, advance() to move it."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FakeClock(now)


@pytest.fixture
def tmp_db():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "test.db"


@pytest.fixture
def settings(tmp_db):
    return Settings(db_path=tmp_db, wallet_private_key="", wallet_address="")


@pytest.fixture
def wallet_settings(tmp_db):
    return Settings(db_path=tmp_db, wallet_private_key="0xabc", wallet_address="0xwallet")


@pytest.fixture
def good_quality():
    return MarketQuality(
        market_id="m1", liquidity_score=1.0, spread_proxy=0.0, volume_24h=50_000.0,
    )


@pytest.fixture
def make_market():
    def _make(
        market_id: str = "m1",
        question: str = "Will Trump win the 2028 election?",
        yes_price: float = 0.40,
        no_price: float = 0.60,
        volume_24h: float = 50_000.0,
        liquidity: float = 200_000.0,
        end_date: datetime | None = None,
    ) -> MarketSnapshot:
        return MarketSnapshot(
            market_id=market_id,
            question=question,
            yes_price=yes_price,
            no_price=no_price,
            volume_24h=volume_24h,
            liquidity=liquidity,
            end_date=end_date,
        )

    return _make


@pytest.fixture
def make_event(now):
    counter = iter(range(10_000))

    def _make(
        title: str = "Trump wins decisive victory in primary",
        source_name: str = "Reuters",
        reliability: float = 0.9,
        age_minutes: float = 5.0,
        content: str | None = None,
    ) -> SourceEvent:
        n = next(counter)
        return SourceEvent(
            event_hash=f"hash-{n}",
            source_id=source_name.lower(),
            source_name=source_name,
            title=title,
            content=content,
            reliability_score=reliability,
            ingested_at=now - timedelta(minutes=age_minutes),
            published_at=now - timedelta(minutes=age_minutes),
        )

    return _make


@pytest.fixture
def make_signal(now):
    """Origin signal factory: time_delay or mispricing with plausible features."""
    from alpha_edge.signals.models import (
        AlphaSignal,
        Certainty,
        Direction,
        MispricingFeaturesV1,
        SourceType,
        TimeDelayFeaturesV1,
    )

    counter = iter(range(10_000))

    def _make(
        source_type: SourceType = SourceType.TIME_DELAY,
        market_id: str = "m1",
        direction: Direction = Direction.YES,
        edge: float = 0.10,
        confidence: float = 0.80,
        certainty: Certainty = Certainty.MEDIUM,
    ) -> AlphaSignal:
        if source_type is SourceType.TIME_DELAY:
            features = TimeDelayFeaturesV1(
                source_count=2,
                avg_source_reliability=0.9,
                news_age_minutes=5.0,
                sentiment_score=0.5,
                impact_score=0.5,
                market_price_at_news=0.40,
                price_move_since_news=0.0,
                volume_at_news=50_000.0,
                match_confidence=0.7,
            )
        else:
            features = MispricingFeaturesV1(
                implied_prob=0.40,
                estimated_prob=0.50,
                prob_uncertainty=0.08,
                historical_bias=0.10,
                liquidity_score=1.0,
                spread_proxy=0.0,
                days_to_expiry=7,
            )
        return AlphaSignal(
            signal_id=f"{source_type.value}-{next(counter)}",
            source_type=source_type,
            market_id=market_id,
            question="Will Trump win the 2028 election?",
            direction=direction,
            predicted_edge=edge,
            confidence=confidence,
            certainty=certainty,
            features=features,
            reasoning=("test signal",),
            created_at=now,
        )

    return _make
