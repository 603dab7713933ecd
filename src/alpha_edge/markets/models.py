"""Market data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class MarketSnapshot:
    """Point-in-time view of a binary prediction market.

    Supplied by the ingestion layer; prices are the last YES/NO quotes.
    """

    market_id: str
    question: str
    yes_price: float = 0.5
    no_price: float = 0.5
    volume_24h: float = 0.0
    liquidity: float = 0.0
    end_date: datetime | None = None
    category: str | None = None

    @property
    def implied_prob(self) -> float:
        """Market-implied probability (YES price), clamped to [0.001, 0.999]."""
        return max(0.001, min(0.999, self.yes_price))


@dataclass
class MarketQuality:
    """Tradeability metrics for a market.

    Attributes:
        market_id: Market the metrics belong to
        liquidity_score: 0-1, log-scaled from raw liquidity
        spread_proxy: |yes + no - 1|
        volume_24h: 24h traded volume in USD
        volatility: Recent price volatility (0 when unknown)
        tradeable: Whether all quality thresholds pass
        reasons: Human-readable quality notes
    """

    market_id: str
    liquidity_score: float
    spread_proxy: float
    volume_24h: float = 0.0
    volatility: float = 0.0
    tradeable: bool = True
    reasons: list[str] = field(default_factory=list)
