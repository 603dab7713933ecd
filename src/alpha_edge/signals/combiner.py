"""Meta-combiner: merges time-delay and mispricing signals with an online logistic model.

The combiner keeps two kinds of learned state:

- per-origin trust weights used to average edge and confidence, updated from
  realized outcomes when both origins contributed;
- coefficients of a small logistic regression over engineered features,
  trained by one SGD step per outcome and used as a confidence booster.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime

import aiosqlite
import numpy as np
from scipy.special import expit

from alpha_edge.common.types import Clock, utc_now
from alpha_edge.config import get_settings
from alpha_edge.signals.combiner_store import CombinerStateStore, CombinerStateV1
from alpha_edge.signals.models import (
    AlphaSignal,
    Certainty,
    CombinedFeaturesV1,
    CombinedSignal,
    Direction,
    SourceType,
)

logger = logging.getLogger(__name__)

FEATURE_KEYS = (
    "bias",
    "td_edge",
    "td_conf",
    "mp_edge",
    "mp_conf",
    "agreement",
    "edge_diff",
    "avg_edge",
    "avg_conf",
    "td_only",
    "mp_only",
    "both_signals",
    "edge_product",
    "conf_product",
)

FEATURE_LABELS = {
    "bias": "Base rate",
    "td_edge": "Time-delay edge",
    "td_conf": "Time-delay confidence",
    "mp_edge": "Mispricing edge",
    "mp_conf": "Mispricing confidence",
    "agreement": "Signal agreement",
    "edge_diff": "Edge difference",
    "avg_edge": "Average edge",
    "avg_conf": "Average confidence",
    "td_only": "Time-delay only",
    "mp_only": "Mispricing only",
    "both_signals": "Both signals present",
    "edge_product": "Edge product",
    "conf_product": "Confidence product",
}

ORIGINS = (SourceType.TIME_DELAY, SourceType.MISPRICING)
INITIAL_WEIGHTS = {SourceType.TIME_DELAY: 0.5, SourceType.MISPRICING: 0.5}
MIN_WEIGHT = 0.2
COEF_CLIP = 10.0
MAX_BUFFER = 1000
SAVE_EVERY = 50
SINGLE_SOURCE_DISCOUNT = 0.9
AGREEMENT_BOOST = 0.15
MODEL_BOOST = 0.05
MAX_CONFIDENCE = 0.95

_CERTAINTY_RANK = {
    Certainty.LOW: 0,
    Certainty.MEDIUM: 1,
    Certainty.HIGH: 2,
    Certainty.BREAKING_CONFIRMED: 3,
}


@dataclass(frozen=True)
class TrainingExample:
    features: np.ndarray
    outcome: int
    at: datetime


def _initial_coefficients() -> np.ndarray:
    coef = np.full(len(FEATURE_KEYS), 0.01)
    coef[0] = 0.0
    return coef


def _mean(*values: float | None) -> float:
    present = [v for v in values if v is not None]
    if not present:
        return 0.0
    return sum(present) / len(present)


def feature_vector(td: AlphaSignal | None, mp: AlphaSignal | None) -> np.ndarray:
    """Engineered features in FEATURE_KEYS order."""
    td_edge = td.predicted_edge if td else 0.0
    td_conf = td.confidence if td else 0.0
    mp_edge = mp.predicted_edge if mp else 0.0
    mp_conf = mp.confidence if mp else 0.0
    both = td is not None and mp is not None

    if both:
        agreement = 1.0 if td.direction is mp.direction else -1.0
        edge_diff = abs(td_edge - mp_edge)
    else:
        agreement = 0.0
        edge_diff = 0.0

    return np.array([
        1.0,
        td_edge,
        td_conf,
        mp_edge,
        mp_conf,
        agreement,
        edge_diff,
        _mean(td.predicted_edge if td else None, mp.predicted_edge if mp else None),
        _mean(td.confidence if td else None, mp.confidence if mp else None),
        1.0 if td is not None and mp is None else 0.0,
        1.0 if mp is not None and td is None else 0.0,
        1.0 if both else 0.0,
        td_edge * mp_edge,
        td_conf * mp_conf,
    ])


class MetaCombiner:
    """Combines per-market origin signals into one CombinedSignal.

    Call load() before trusting combine() output; until then the combiner
    runs on initial weights and `loaded` is False.
    """

    def __init__(
        self,
        store: CombinerStateStore | None = None,
        learning_rate: float | None = None,
        regularization: float | None = None,
        min_signals_for_combine: int = 1,
        clock: Clock = utc_now,
    ) -> None:
        settings = get_settings()
        self._store = store
        self.learning_rate = (
            learning_rate if learning_rate is not None else settings.combiner_learning_rate
        )
        self.regularization = (
            regularization if regularization is not None else settings.combiner_regularization
        )
        self.min_signals_for_combine = min_signals_for_combine
        self._clock = clock

        self._weights = dict(INITIAL_WEIGHTS)
        self._coef = _initial_coefficients()
        self._buffer: deque[TrainingExample] = deque(maxlen=MAX_BUFFER)
        self.training_count = 0
        self.loaded = False

    # --- persistence ---

    async def load(self) -> bool:
        """Restore the newest stored state. Returns True if one was found."""
        if self._store is None:
            self.loaded = True
            return False

        state = await self._store.load()
        self.loaded = True
        if state is None:
            logger.info("Combiner: no stored state, using defaults")
            return False

        self._weights = {SourceType(k): v for k, v in state.weights.items()}
        self._coef = np.array([state.coefficients.get(k, 0.0) for k in FEATURE_KEYS])
        self.training_count = state.training_count
        logger.info(
            "Combiner: state loaded (%d trainings, td=%.3f, mp=%.3f)",
            self.training_count,
            self._weights[SourceType.TIME_DELAY],
            self._weights[SourceType.MISPRICING],
        )
        return True

    def snapshot(self) -> CombinerStateV1:
        return CombinerStateV1(
            weights={k.value: v for k, v in self._weights.items()},
            coefficients=self.coefficients,
            training_count=self.training_count,
            updated_at=self._clock(),
        )

    async def save(self) -> None:
        if self._store is None:
            return
        await self._store.save(self.snapshot())

    # --- combining ---

    def predict(self, features: np.ndarray) -> float:
        return float(expit(self._coef @ features))

    def combine(
        self,
        time_delay: AlphaSignal | None = None,
        mispricing: AlphaSignal | None = None,
    ) -> CombinedSignal | None:
        """Merge the origin signals for one market.

        On a direction conflict the lower-confidence origin is dropped
        (time-delay on a tie) and does not appear in source_signals.
        """
        count = (time_delay is not None) + (mispricing is not None)
        if count < self.min_signals_for_combine or count == 0:
            return None
        if time_delay and mispricing and time_delay.market_id != mispricing.market_id:
            raise ValueError(
                f"cannot combine signals for different markets: "
                f"{time_delay.market_id} != {mispricing.market_id}"
            )

        conflict = False
        if time_delay and mispricing and time_delay.direction is not mispricing.direction:
            conflict = True
            if time_delay.confidence > mispricing.confidence:
                dropped, mispricing = mispricing, None
            else:
                dropped, time_delay = time_delay, None
            logger.debug(
                "Combiner: direction conflict on %s, dropped %s",
                dropped.market_id, dropped.source_type.value,
            )

        origins = {
            s.source_type: s for s in (time_delay, mispricing) if s is not None
        }
        edge, confidence = self._combined_metrics(origins)
        lead = next(iter(origins.values()))
        both = len(origins) == 2

        features = CombinedFeaturesV1(
            source_count=len(origins),
            weight_time_delay=self._weights[SourceType.TIME_DELAY],
            weight_mispricing=self._weights[SourceType.MISPRICING],
            agreement=(time_delay.direction is mispricing.direction) if both else None,
            time_delay=time_delay.features if time_delay else None,
            mispricing=mispricing.features if mispricing else None,
        )
        certainty = max(
            (s.certainty for s in origins.values()), key=_CERTAINTY_RANK.__getitem__,
        )

        return CombinedSignal(
            signal_id=uuid.uuid4().hex,
            source_type=SourceType.META,
            market_id=lead.market_id,
            question=lead.question,
            direction=lead.direction,
            predicted_edge=edge,
            confidence=confidence,
            certainty=certainty,
            features=features,
            reasoning=tuple(self._reasoning(time_delay, mispricing, edge, confidence, conflict)),
            created_at=self._clock(),
            source_signals=origins,
            weights=dict(self._weights),
        )

    def _combined_metrics(self, origins: dict[SourceType, AlphaSignal]) -> tuple[float, float]:
        if len(origins) == 1:
            (single,) = origins.values()
            return single.predicted_edge, single.confidence * SINGLE_SOURCE_DISCOUNT

        td = origins[SourceType.TIME_DELAY]
        mp = origins[SourceType.MISPRICING]

        w_td = self._weights[SourceType.TIME_DELAY]
        w_mp = self._weights[SourceType.MISPRICING]
        total = w_td + w_mp
        edge = (w_td * td.predicted_edge + w_mp * mp.predicted_edge) / total
        base = (w_td * td.confidence + w_mp * mp.confidence) / total

        boost = AGREEMENT_BOOST if td.direction is mp.direction else 0.0
        if self.predict(feature_vector(td, mp)) > 0.6:
            boost += MODEL_BOOST
        return edge, min(MAX_CONFIDENCE, base + boost)

    def _reasoning(
        self,
        td: AlphaSignal | None,
        mp: AlphaSignal | None,
        edge: float,
        confidence: float,
        conflict: bool,
    ) -> list[str]:
        reasons: list[str] = []
        if td and mp:
            reasons.append(f"Both origins (time-delay + mispricing) favour {td.direction.value.upper()}")
        elif conflict:
            kept = "time-delay" if td else "mispricing"
            reasons.append(f"Direction conflict resolved in favour of {kept}")
        elif td:
            reasons.append("Based on time-delay origin (news reaction)")
        else:
            reasons.append("Based on mispricing origin (market valuation)")

        if td:
            reasons.append(f"Time-delay: edge={td.predicted_edge:.1%}, conf={td.confidence:.0%}")
        if mp:
            reasons.append(f"Mispricing: edge={mp.predicted_edge:.1%}, conf={mp.confidence:.0%}")

        reasons.append(
            f"Origin weights: td={self._weights[SourceType.TIME_DELAY]:.0%}, "
            f"mp={self._weights[SourceType.MISPRICING]:.0%}"
        )
        reasons.append(f"Combined: edge={edge:.1%}, conf={confidence:.0%}")
        if self.training_count > 0:
            reasons.append(f"Model trained on {self.training_count} outcomes")
        return reasons

    # --- learning ---

    async def update_from_outcome(self, signal: CombinedSignal, outcome: int) -> float:
        """One online training step from a realized outcome (1 = YES won).

        Returns the model's prediction before the update. Every SAVE_EVERY
        updates the state is flushed through the store.
        """
        if outcome not in (0, 1):
            raise ValueError(f"outcome must be 0 or 1, got {outcome!r}")

        td = signal.origin(SourceType.TIME_DELAY)
        mp = signal.origin(SourceType.MISPRICING)
        x = feature_vector(td, mp)
        prediction = self.predict(x)

        gradient = (prediction - outcome) * x + self.regularization * self._coef
        self._coef = np.clip(self._coef - self.learning_rate * gradient, -COEF_CLIP, COEF_CLIP)

        if td is not None and mp is not None:
            self._update_weights(td, mp, outcome)

        self._buffer.append(TrainingExample(x, outcome, self._clock()))
        self.training_count += 1

        logger.debug(
            "Combiner update #%d: prediction=%.3f actual=%d",
            self.training_count, prediction, outcome,
        )

        if self.training_count % SAVE_EVERY == 0:
            try:
                await self.save()
            except (aiosqlite.Error, OSError):
                logger.exception("Combiner: failed to persist state")
        return prediction

    def _update_weights(self, td: AlphaSignal, mp: AlphaSignal, outcome: int) -> None:
        errors = {}
        for s in (td, mp):
            pred = s.confidence if s.direction is Direction.YES else 1 - s.confidence
            errors[s.source_type] = abs(pred - outcome)

        total_error = sum(errors.values()) + 0.001
        lr = self.learning_rate * 0.5

        for origin in ORIGINS:
            perf = 1 - errors[origin] / total_error
            self._weights[origin] = (1 - lr) * self._weights[origin] + lr * perf

        total = sum(self._weights.values())
        floored = {k: max(MIN_WEIGHT, v / total) for k, v in self._weights.items()}
        total = sum(floored.values())
        self._weights = {k: v / total for k, v in floored.items()}

    # --- diagnostics ---

    @property
    def coefficients(self) -> dict[str, float]:
        return {k: float(v) for k, v in zip(FEATURE_KEYS, self._coef)}

    @property
    def weights(self) -> dict[SourceType, float]:
        return dict(self._weights)

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def top_features(self, signal: CombinedSignal, n: int = 3) -> list[str]:
        """Features contributing most (|coef * value|) to the model's view of a signal."""
        x = feature_vector(
            signal.origin(SourceType.TIME_DELAY), signal.origin(SourceType.MISPRICING),
        )
        contributions = []
        for key, coef, value in zip(FEATURE_KEYS, self._coef, x):
            if key == "bias":
                continue
            contribution = abs(coef * value)
            if contribution > 0.001:
                contributions.append((contribution, key, coef))

        contributions.sort(reverse=True)
        return [
            f"{FEATURE_LABELS[key]} ({'+' if coef > 0 else '-'}{contribution:.3f})"
            for contribution, key, coef in contributions[:n]
        ]

    def stats(self) -> dict:
        ranked = sorted(self.coefficients.items(), key=lambda kv: abs(kv[1]), reverse=True)
        return {
            "training_count": self.training_count,
            "buffer_size": len(self._buffer),
            "loaded": self.loaded,
            "weights": {k.value: v for k, v in self._weights.items()},
            "top_coefficients": [
                {"name": FEATURE_LABELS[k], "value": v} for k, v in ranked[:5]
            ],
        }

    def reset(self) -> None:
        self._weights = dict(INITIAL_WEIGHTS)
        self._coef = _initial_coefficients()
        self._buffer.clear()
        self.training_count = 0
        logger.info("Combiner: reset to defaults")
