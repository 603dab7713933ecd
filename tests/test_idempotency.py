"""Tests for idempotency keys."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from alpha_edge.execution.idempotency import (
    IdempotencyService,
    KeyStatus,
    make_key,
    normalize_side,
)


@pytest.fixture
def service(tmp_db, clock):
    return IdempotencyService(db_path=tmp_db, ttl=timedelta(hours=1), clock=clock)


class TestKeys:
    def test_key_format(self):
        assert make_key("d1", "m1", "yes", 10) == "d1:m1:BUY:10.00"
        assert make_key("d1", "m1", "SELL", 2.5) == "d1:m1:SELL:2.50"

    def test_colons_in_ids_stay_distinct(self):
        assert make_key("dec:A", "mkt", "BUY", 10) == "dec%3AA:mkt:BUY:10.00"
        assert make_key("dec", "A:mkt", "BUY", 10) == "dec:A%3Amkt:BUY:10.00"

    @pytest.mark.parametrize("side,expected", [
        ("buy", "BUY"), ("SELL", "SELL"), ("yes", "BUY"), (" no ", "SELL"),
    ])
    def test_normalize_side(self, side, expected):
        assert normalize_side(side) == expected

    def test_unknown_side(self):
        with pytest.raises(ValueError, match="Unknown order side"):
            normalize_side("hold")


class TestCheckOrCreate:
    @pytest.mark.asyncio
    async def test_first_call_claims_key(self, service):
        result = await service.check_or_create("d1", "m1", "yes", 10.0)
        assert result.exists is False
        assert result.key == "d1:m1:BUY:10.00"
        assert result.status is KeyStatus.PENDING

    @pytest.mark.asyncio
    async def test_second_call_sees_existing(self, service):
        await service.check_or_create("d1", "m1", "yes", 10.0)
        result = await service.check_or_create("d1", "m1", "BUY", 10.0)
        assert result.exists is True
        assert result.status is KeyStatus.PENDING

    @pytest.mark.asyncio
    async def test_ids_sharing_a_joined_form_are_different_orders(self, service):
        first = await service.check_or_create("dec:A", "mkt", "BUY", 10.0)
        second = await service.check_or_create("dec", "A:mkt", "BUY", 10.0)
        assert first.exists is False
        assert second.exists is False
        assert first.key != second.key
        assert (await service.get_stats())["pending"] == 2

    @pytest.mark.asyncio
    async def test_size_compared_at_cent_precision(self, service):
        await service.check_or_create("d1", "m1", "yes", 10.0)
        result = await service.check_or_create("d1", "m1", "yes", 10.001)
        assert result.exists is True
        pending = await service.get_pending_keys()
        assert [r.size_usdc for r in pending] == [10.0]

    @pytest.mark.asyncio
    async def test_concurrent_callers_get_one_claim(self, service):
        results = await asyncio.gather(
            *[service.check_or_create("d1", "m1", "yes", 10.0) for _ in range(5)]
        )
        assert sum(not r.exists for r in results) == 1
        assert {r.key for r in results} == {"d1:m1:BUY:10.00"}

    @pytest.mark.asyncio
    async def test_expired_key_can_be_reclaimed(self, service, clock):
        first = await service.check_or_create("d1", "m1", "yes", 10.0)
        await service.mark_completed(first.key, "exec-1")

        clock.advance(hours=2)
        again = await service.check_or_create("d1", "m1", "yes", 10.0)
        assert again.exists is False
        assert (await service.check(again.key)).status is KeyStatus.PENDING

    @pytest.mark.asyncio
    async def test_check_unknown_key(self, service):
        result = await service.check("nope")
        assert result.exists is False
        assert result.status is None


class TestTransitions:
    @pytest.mark.asyncio
    async def test_complete_once(self, service):
        key = (await service.check_or_create("d1", "m1", "yes", 10.0)).key
        assert await service.mark_completed(key, "exec-1") is True
        assert await service.mark_completed(key, "exec-2") is False
        assert await service.mark_failed(key, "late error") is False

        result = await service.check_or_create("d1", "m1", "yes", 10.0)
        assert result.exists is True
        assert result.status is KeyStatus.COMPLETED
        assert result.execution_id == "exec-1"

    @pytest.mark.asyncio
    async def test_failed_key_still_blocks(self, service):
        key = (await service.check_or_create("d1", "m1", "no", 5.0)).key
        assert await service.mark_failed(key, "venue rejected") is True
        result = await service.check_or_create("d1", "m1", "no", 5.0)
        assert result.exists is True
        assert result.status is KeyStatus.FAILED

    @pytest.mark.asyncio
    async def test_mark_unknown_key(self, service):
        assert await service.mark_completed("missing", "exec") is False


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_pending_oldest_first(self, service, clock):
        await service.check_or_create("d1", "m1", "yes", 10.0)
        clock.advance(minutes=1)
        await service.check_or_create("d2", "m2", "no", 5.0)
        done = (await service.check_or_create("d3", "m3", "yes", 1.0)).key
        await service.mark_completed(done, "exec")

        pending = await service.get_pending_keys()
        assert [p.decision_id for p in pending] == ["d1", "d2"]
        assert pending[1].side == "SELL"
        assert pending[0].expires_at - pending[0].created_at == timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_pending_excludes_expired(self, service, clock):
        await service.check_or_create("d1", "m1", "yes", 10.0)
        clock.advance(hours=2)
        assert await service.get_pending_keys() == []

    @pytest.mark.asyncio
    async def test_cleanup_mark_then_delete(self, service, clock):
        await service.check_or_create("d1", "m1", "yes", 10.0)
        await service.check_or_create("d2", "m2", "yes", 10.0)
        clock.advance(hours=2)
        await service.check_or_create("d3", "m3", "yes", 10.0)

        assert await service.cleanup(delete=False) == 2
        assert await service.cleanup(delete=False) == 0
        stats = await service.get_stats()
        assert stats == {"pending": 1, "completed": 0, "failed": 0, "expired": 2, "total": 3}

        assert await service.cleanup() == 2
        assert (await service.get_stats())["total"] == 1

    @pytest.mark.asyncio
    async def test_remove(self, service):
        key = (await service.check_or_create("d1", "m1", "yes", 10.0)).key
        assert await service.remove(key) is True
        assert await service.remove(key) is False
