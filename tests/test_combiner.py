"""Tests for the meta-combiner and its state store."""

from __future__ import annotations

import aiosqlite
import pytest

from alpha_edge.errors import SchemaVersionError
from alpha_edge.signals.combiner import (
    AGREEMENT_BOOST,
    FEATURE_KEYS,
    SAVE_EVERY,
    SINGLE_SOURCE_DISCOUNT,
    MetaCombiner,
    feature_vector,
)
from alpha_edge.signals.combiner_store import CombinerStateStore, CombinerStateV1
from alpha_edge.signals.models import (
    Certainty,
    CombinedFeaturesV1,
    Direction,
    SourceType,
)

TD = SourceType.TIME_DELAY
MP = SourceType.MISPRICING


@pytest.fixture
def combiner(clock):
    return MetaCombiner(learning_rate=0.01, regularization=0.001, clock=clock)


class TestFeatureVector:
    def test_length_and_bias(self, make_signal):
        x = feature_vector(make_signal(TD), None)
        assert len(x) == len(FEATURE_KEYS)
        assert x[0] == 1.0

    def test_single_origin_flags(self, make_signal):
        x = dict(zip(FEATURE_KEYS, feature_vector(None, make_signal(MP))))
        assert x["mp_only"] == 1.0
        assert x["td_only"] == 0.0
        assert x["both_signals"] == 0.0
        assert x["agreement"] == 0.0

    def test_disagreement(self, make_signal):
        td = make_signal(TD, edge=0.10, direction=Direction.YES)
        mp = make_signal(MP, edge=0.04, direction=Direction.NO)
        x = dict(zip(FEATURE_KEYS, feature_vector(td, mp)))
        assert x["agreement"] == -1.0
        assert x["edge_diff"] == pytest.approx(0.06)
        assert x["edge_product"] == pytest.approx(0.004)


class TestCombine:
    def test_nothing_to_combine(self, combiner):
        assert combiner.combine() is None

    def test_single_origin_discounted(self, combiner, make_signal, now):
        td = make_signal(TD, edge=0.10, confidence=0.80, certainty=Certainty.HIGH)
        combined = combiner.combine(time_delay=td)

        assert combined is not None
        assert combined.source_type is SourceType.META
        assert combined.predicted_edge == pytest.approx(0.10)
        assert combined.confidence == pytest.approx(0.80 * SINGLE_SOURCE_DISCOUNT)
        assert combined.certainty is Certainty.HIGH
        assert set(combined.source_signals) == {TD}
        assert combined.created_at == now
        assert combined.reasoning[0] == "Based on time-delay origin (news reaction)"

    def test_agreeing_origins_boosted(self, combiner, make_signal):
        td = make_signal(TD, edge=0.10, confidence=0.80, certainty=Certainty.HIGH)
        mp = make_signal(MP, edge=0.05, confidence=0.60, certainty=Certainty.LOW)
        combined = combiner.combine(time_delay=td, mispricing=mp)

        assert combined.predicted_edge == pytest.approx(0.075)
        assert combined.confidence == pytest.approx(0.70 + AGREEMENT_BOOST)
        assert combined.certainty is Certainty.HIGH
        assert set(combined.source_signals) == {TD, MP}
        assert isinstance(combined.features, CombinedFeaturesV1)
        assert combined.features.source_count == 2
        assert combined.features.agreement is True

    def test_conflict_drops_weaker_origin(self, combiner, make_signal):
        td = make_signal(TD, direction=Direction.YES, confidence=0.80)
        mp = make_signal(MP, direction=Direction.NO, confidence=0.60)
        combined = combiner.combine(time_delay=td, mispricing=mp)

        assert combined.direction is Direction.YES
        assert set(combined.source_signals) == {TD}
        assert combined.origin(MP) is None
        assert combined.features.mispricing is None
        assert combined.reasoning[0] == "Direction conflict resolved in favour of time-delay"

    def test_conflict_tie_keeps_mispricing(self, combiner, make_signal):
        td = make_signal(TD, direction=Direction.YES, confidence=0.70)
        mp = make_signal(MP, direction=Direction.NO, edge=0.06, confidence=0.70)
        combined = combiner.combine(time_delay=td, mispricing=mp)

        assert combined.direction is Direction.NO
        assert set(combined.source_signals) == {MP}
        assert combined.signal_id != mp.signal_id
        assert combined.predicted_edge == pytest.approx(0.06)
        assert combined.confidence == pytest.approx(0.70 * SINGLE_SOURCE_DISCOUNT)

    def test_different_markets_rejected(self, combiner, make_signal):
        with pytest.raises(ValueError, match="different markets"):
            combiner.combine(
                time_delay=make_signal(TD, market_id="a"),
                mispricing=make_signal(MP, market_id="b"),
            )

    def test_min_signals(self, make_signal, clock):
        strict = MetaCombiner(min_signals_for_combine=2, clock=clock)
        assert strict.combine(time_delay=make_signal(TD)) is None

    def test_confidence_capped(self, combiner, make_signal):
        td = make_signal(TD, confidence=0.95)
        mp = make_signal(MP, confidence=0.95)
        assert combiner.combine(time_delay=td, mispricing=mp).confidence == pytest.approx(0.95)


class TestLearning:
    @pytest.mark.asyncio
    async def test_invalid_outcome(self, combiner, make_signal):
        combined = combiner.combine(time_delay=make_signal(TD))
        with pytest.raises(ValueError):
            await combiner.update_from_outcome(combined, 2)

    @pytest.mark.asyncio
    async def test_single_origin_updates_coefficients_only(self, combiner, make_signal):
        combined = combiner.combine(time_delay=make_signal(TD))
        before = combiner.coefficients

        prediction = await combiner.update_from_outcome(combined, 1)

        assert 0.0 < prediction < 1.0
        assert combiner.training_count == 1
        assert combiner.buffer_size == 1
        assert combiner.weights == {TD: 0.5, MP: 0.5}
        assert combiner.coefficients["td_edge"] > before["td_edge"]

    @pytest.mark.asyncio
    async def test_better_origin_gains_weight(self, combiner, make_signal):
        # time-delay says YES with 0.9, mispricing says YES with only 0.55
        td = make_signal(TD, confidence=0.90)
        mp = make_signal(MP, confidence=0.55)
        combined = combiner.combine(time_delay=td, mispricing=mp)

        for _ in range(20):
            await combiner.update_from_outcome(combined, 1)

        weights = combiner.weights
        assert weights[TD] > weights[MP]
        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights[MP] > 0.0

    @pytest.mark.asyncio
    async def test_periodic_save(self, tmp_db, make_signal, clock):
        store = CombinerStateStore(tmp_db)
        combiner = MetaCombiner(store=store, clock=clock)
        combined = combiner.combine(time_delay=make_signal(TD))

        for _ in range(SAVE_EVERY):
            await combiner.update_from_outcome(combined, 1)

        assert await store.history_count() == 1

    def test_top_features(self, combiner, make_signal):
        combined = combiner.combine(
            time_delay=make_signal(TD), mispricing=make_signal(MP, confidence=0.6),
        )
        top = combiner.top_features(combined)
        assert 0 < len(top) <= 3
        assert not any(label.startswith("Base rate") for label in top)

    @pytest.mark.asyncio
    async def test_reset(self, combiner, make_signal):
        combined = combiner.combine(time_delay=make_signal(TD))
        await combiner.update_from_outcome(combined, 0)
        combiner.reset()
        assert combiner.training_count == 0
        assert combiner.buffer_size == 0
        assert combiner.coefficients["bias"] == 0.0


class TestPersistence:
    @pytest.mark.asyncio
    async def test_load_without_state(self, tmp_db, clock):
        combiner = MetaCombiner(store=CombinerStateStore(tmp_db), clock=clock)
        assert await combiner.load() is False
        assert combiner.loaded is True

    @pytest.mark.asyncio
    async def test_save_and_restore(self, tmp_db, make_signal, clock):
        store = CombinerStateStore(tmp_db)
        first = MetaCombiner(store=store, clock=clock)
        combined = first.combine(
            time_delay=make_signal(TD, confidence=0.9), mispricing=make_signal(MP, confidence=0.55),
        )
        await first.update_from_outcome(combined, 1)
        await first.save()

        second = MetaCombiner(store=store, clock=clock)
        assert await second.load() is True
        assert second.training_count == 1
        assert second.weights == pytest.approx(first.weights)
        assert second.coefficients == pytest.approx(first.coefficients)

    @pytest.mark.asyncio
    async def test_newest_snapshot_wins(self, tmp_db, now):
        store = CombinerStateStore(tmp_db)
        for count in (1, 2, 3):
            await store.save(CombinerStateV1(
                weights={"time_delay": 0.5, "mispricing": 0.5},
                coefficients={},
                training_count=count,
                updated_at=now,
            ))
        state = await store.load()
        assert state.training_count == 3
        assert await store.history_count() == 3

    @pytest.mark.asyncio
    async def test_unknown_schema_version(self, tmp_db, now):
        store = CombinerStateStore(tmp_db)
        await store.save(CombinerStateV1(
            weights={"time_delay": 0.5, "mispricing": 0.5},
            coefficients={},
            updated_at=now,
        ))
        async with aiosqlite.connect(str(tmp_db)) as db:
            await db.execute("UPDATE meta_combiner_state SET schema_version = 99")
            await db.commit()

        with pytest.raises(SchemaVersionError):
            await store.load()
