"""Alpha signal, feature set and decision models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from alpha_edge.risk.models import RiskChecks


class Direction(str, Enum):
    """Which outcome token the signal favours."""

    YES = "yes"
    NO = "no"

    @property
    def opposite(self) -> Direction:
        return Direction.NO if self is Direction.YES else Direction.YES


class Certainty(str, Enum):
    """Discrete confidence bucket controlling sizing aggressiveness."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    BREAKING_CONFIRMED = "breaking_confirmed"


class SourceType(str, Enum):
    """Signal origin."""

    TIME_DELAY = "time_delay"
    MISPRICING = "mispricing"
    META = "meta"


class DecisionAction(str, Enum):
    SHOW = "show"
    WATCH = "watch"
    TRADE = "trade"
    HIGH_CONVICTION = "high_conviction"
    REJECT = "reject"

    @property
    def executable(self) -> bool:
        return self in (DecisionAction.TRADE, DecisionAction.HIGH_CONVICTION)


@dataclass(frozen=True)
class TimeDelayFeaturesV1:
    """Features of a news-driven (time advantage) signal."""

    source_count: int
    avg_source_reliability: float
    news_age_minutes: float
    sentiment_score: float
    impact_score: float
    market_price_at_news: float
    price_move_since_news: float
    volume_at_news: float
    match_confidence: float
    volume_change_since_news: float = 0.0
    version: Literal["time_delay/1"] = "time_delay/1"


@dataclass(frozen=True)
class MispricingFeaturesV1:
    """Features of a market-valuation signal."""

    implied_prob: float
    estimated_prob: float
    prob_uncertainty: float
    historical_bias: float
    liquidity_score: float
    spread_proxy: float
    days_to_expiry: int
    volatility_30d: float = 0.0
    version: Literal["mispricing/1"] = "mispricing/1"


@dataclass(frozen=True)
class CombinedFeaturesV1:
    """Features of a combined signal: each origin's set plus meta fields."""

    source_count: int
    weight_time_delay: float
    weight_mispricing: float
    agreement: bool | None = None
    time_delay: TimeDelayFeaturesV1 | None = None
    mispricing: MispricingFeaturesV1 | None = None
    version: Literal["combined/1"] = "combined/1"

    def flatten(self) -> dict[str, float | int | bool | None]:
        """Prefixed flat view: td_*, mp_* and meta_* keys."""
        flat: dict[str, float | int | bool | None] = {}
        if self.time_delay is not None:
            for key, value in feature_values(self.time_delay).items():
                flat[f"td_{key}"] = value
        if self.mispricing is not None:
            for key, value in feature_values(self.mispricing).items():
                flat[f"mp_{key}"] = value
        flat["meta_agreement"] = self.agreement
        flat["meta_source_count"] = self.source_count
        flat["meta_weight_td"] = self.weight_time_delay
        flat["meta_weight_mp"] = self.weight_mispricing
        return flat


FeatureSet = Annotated[
    Union[TimeDelayFeaturesV1, MispricingFeaturesV1, CombinedFeaturesV1],
    Field(discriminator="version"),
]


def feature_values(features: TimeDelayFeaturesV1 | MispricingFeaturesV1) -> dict:
    """Feature values without the version tag."""
    values = asdict(features)
    values.pop("version")
    return values


@dataclass(frozen=True)
class AlphaSignal:
    """A scored trading signal. Immutable once created.

    Attributes:
        signal_id: Unique identifier (uuid4 hex)
        source_type: Generator that produced the signal
        market_id: Market the signal is about
        question: Market question text
        direction: Outcome the signal favours
        predicted_edge: Estimated advantage over the market price (0-1)
        confidence: Signal confidence (0-1)
        certainty: Sizing bucket
        features: Versioned feature set
        reasoning: Ordered human-readable rationale
        created_at: When the signal was generated
    """

    signal_id: str
    source_type: SourceType
    market_id: str
    question: str
    direction: Direction
    predicted_edge: float
    confidence: float
    certainty: Certainty
    features: FeatureSet
    reasoning: tuple[str, ...]
    created_at: datetime


@dataclass(frozen=True)
class CombinedSignal(AlphaSignal):
    """A merged signal with the origins that contributed and their trust weights.

    An origin dropped because of a direction conflict is absent from
    source_signals.
    """

    source_signals: dict[SourceType, AlphaSignal] = field(default_factory=dict)
    weights: dict[SourceType, float] = field(default_factory=dict)

    def origin(self, source_type: SourceType) -> AlphaSignal | None:
        return self.source_signals.get(source_type)


@dataclass(frozen=True)
class Rationale:
    source_type: SourceType
    edge: float
    confidence: float
    top_features: tuple[str, ...] = ()
    rejection_reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class Decision:
    """What to do with one evaluated signal. Created once, never edited."""

    decision_id: str
    signal_id: str
    market_id: str
    direction: Direction
    action: DecisionAction
    size_usdc: float | None
    risk_checks: RiskChecks
    rationale: Rationale
    created_at: datetime


_COMBINED_ADAPTER = TypeAdapter(CombinedSignal)


def dump_signal(signal: CombinedSignal) -> str:
    """Serialize a combined signal, including origin signals, to JSON."""
    return _COMBINED_ADAPTER.dump_json(signal).decode()


def load_signal(data: str | bytes) -> CombinedSignal:
    """Inverse of dump_signal. Unknown feature versions fail validation."""
    return _COMBINED_ADAPTER.validate_json(data)
