"""Market quality scoring from a snapshot."""

from __future__ import annotations

import math
from datetime import datetime

from alpha_edge.markets.models import MarketQuality, MarketSnapshot

MIN_LIQUIDITY_SCORE = 0.3
MAX_SPREAD = 0.05
MIN_VOLUME_24H = 100.0


def liquidity_score(liquidity: float) -> float:
    """Map raw liquidity to 0-1: $100k and above scores 1.0."""
    return min(1.0, math.log10(max(1.0, liquidity)) / 5)


def spread_proxy(market: MarketSnapshot) -> float:
    return abs(market.yes_price + market.no_price - 1.0)


def days_to_expiry(market: MarketSnapshot, now: datetime) -> int:
    """Whole days until the market ends; 365 when no end date is known."""
    if market.end_date is None:
        return 365
    delta = market.end_date - now
    return max(0, math.floor(delta.total_seconds() / 86400))


def market_quality(
    market: MarketSnapshot,
    volatility: float = 0.0,
    min_liquidity: float = MIN_LIQUIDITY_SCORE,
    max_spread: float = MAX_SPREAD,
) -> MarketQuality:
    liq = liquidity_score(market.liquidity)
    spread = spread_proxy(market)

    reasons: list[str] = []
    tradeable = True

    if liq < min_liquidity:
        reasons.append(f"Low liquidity: {liq:.2f}")
        tradeable = False
    if spread > max_spread:
        reasons.append(f"High spread: {spread:.1%}")
        tradeable = False
    if market.volume_24h < MIN_VOLUME_24H:
        reasons.append(f"Low volume: ${market.volume_24h:,.0f}")
        tradeable = False

    if tradeable:
        reasons.append("Market quality OK")

    return MarketQuality(
        market_id=market.market_id,
        liquidity_score=liq,
        spread_proxy=spread,
        volume_24h=market.volume_24h,
        volatility=volatility,
        tradeable=tradeable,
        reasons=reasons,
    )
