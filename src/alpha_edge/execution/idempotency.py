"""Idempotency keys guarding order submission against duplicates.

Uniqueness is enforced on (decision_id, market_id, side, size_usdc) with the
size at cent precision. The key string encodes exactly that tuple, so a
concurrent caller racing on the same order gets an IntegrityError, re-queries
and sees exists=True.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path

import aiosqlite

from alpha_edge.common.types import Clock, from_iso, to_iso, utc_now
from alpha_edge.config import get_settings

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS idempotency_keys (
    key TEXT PRIMARY KEY,
    decision_id TEXT NOT NULL,
    market_id TEXT NOT NULL,
    side TEXT NOT NULL,
    size_usdc REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    execution_id TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    completed_at TEXT
);
"""

_CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_idempotency_status ON idempotency_keys(status, expires_at)",
    """CREATE UNIQUE INDEX IF NOT EXISTS idx_idempotency_order
       ON idempotency_keys(decision_id, market_id, side, size_usdc)""",
)

_SIDES = {"BUY": "BUY", "SELL": "SELL", "YES": "BUY", "NO": "SELL"}


class KeyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


def normalize_side(side: str) -> str:
    """BUY/SELL; yes maps to BUY and no to SELL."""
    try:
        return _SIDES[side.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown order side: {side!r}") from None


def _escape(part: str) -> str:
    return part.replace("%", "%25").replace(":", "%3A")


def make_key(decision_id: str, market_id: str, side: str, size_usdc: float) -> str:
    """decision:market:SIDE:size. Colons inside the ids are percent-escaped."""
    return f"{_escape(decision_id)}:{_escape(market_id)}:{normalize_side(side)}:{size_usdc:.2f}"


@dataclass(frozen=True)
class IdempotencyCheck:
    exists: bool
    key: str
    status: KeyStatus | None = None
    execution_id: str | None = None


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    decision_id: str
    market_id: str
    side: str
    size_usdc: float
    status: KeyStatus
    created_at: datetime
    expires_at: datetime
    execution_id: str | None = None
    error: str | None = None


def _record(row: aiosqlite.Row) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row["key"],
        decision_id=row["decision_id"],
        market_id=row["market_id"],
        side=row["side"],
        size_usdc=row["size_usdc"],
        status=KeyStatus(row["status"]),
        created_at=from_iso(row["created_at"]),
        expires_at=from_iso(row["expires_at"]),
        execution_id=row["execution_id"],
        error=row["error"],
    )


class IdempotencyService:
    """SQLite-backed key store with a fixed time-to-live."""

    def __init__(
        self,
        db_path: Path | None = None,
        ttl: timedelta | None = None,
        clock: Clock = utc_now,
    ) -> None:
        settings = get_settings()
        self._db_path = db_path or settings.db_path
        self._ttl = ttl or timedelta(hours=settings.idempotency_ttl_hours)
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def _ensure_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(_CREATE_TABLE)
            for statement in _CREATE_INDEXES:
                await db.execute(statement)
            await db.commit()

    @staticmethod
    async def _fetch(db: aiosqlite.Connection, key: str, now: datetime | None) -> aiosqlite.Row | None:
        if now is None:
            sql, params = "SELECT * FROM idempotency_keys WHERE key = ?", (key,)
        else:
            sql = "SELECT * FROM idempotency_keys WHERE key = ? AND expires_at > ?"
            params = (key, to_iso(now))
        async with db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def check_or_create(
        self, decision_id: str, market_id: str, side: str, size_usdc: float,
    ) -> IdempotencyCheck:
        """Claim the key for this order, or report that someone already has it."""
        key = make_key(decision_id, market_id, side, size_usdc)
        now = self._clock()
        await self._ensure_db()

        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            existing = await self._fetch(db, key, now)
            if existing is not None:
                logger.warning(
                    "Duplicate order blocked: %s (status=%s, execution=%s)",
                    key, existing["status"], existing["execution_id"],
                )
                return IdempotencyCheck(
                    True, key, KeyStatus(existing["status"]), existing["execution_id"],
                )

            try:
                await db.execute(
                    "DELETE FROM idempotency_keys WHERE key = ? AND expires_at <= ?",
                    (key, to_iso(now)),
                )
                await db.execute(
                    """INSERT INTO idempotency_keys
                       (key, decision_id, market_id, side, size_usdc, status,
                        created_at, expires_at)
                       VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)""",
                    (
                        key, decision_id, market_id, normalize_side(side), round(size_usdc, 2),
                        to_iso(now), to_iso(now + self._ttl),
                    ),
                )
                await db.commit()
            except sqlite3.IntegrityError:
                await db.rollback()
                raced = await self._fetch(db, key, None)
                logger.info("Idempotency key created concurrently: %s", key)
                return IdempotencyCheck(
                    True,
                    key,
                    KeyStatus(raced["status"]) if raced is not None else None,
                    raced["execution_id"] if raced is not None else None,
                )

        logger.info("Idempotency key created: %s", key)
        return IdempotencyCheck(False, key, KeyStatus.PENDING)

    async def check(self, key: str) -> IdempotencyCheck:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            row = await self._fetch(db, key, self._clock())
        if row is None:
            return IdempotencyCheck(False, key)
        return IdempotencyCheck(True, key, KeyStatus(row["status"]), row["execution_id"])

    async def _finish(self, key: str, status: KeyStatus, execution_id: str | None, error: str | None) -> bool:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                """UPDATE idempotency_keys
                   SET status = ?, execution_id = ?, error = ?, completed_at = ?
                   WHERE key = ? AND status = 'pending'""",
                (status.value, execution_id, error, to_iso(self._clock()), key),
            )
            await db.commit()
            updated = cursor.rowcount > 0

        if not updated:
            logger.warning("Key %s not pending, cannot mark %s", key, status.value)
        return updated

    async def mark_completed(self, key: str, execution_id: str) -> bool:
        """Move a pending key to completed. False if it was not pending."""
        updated = await self._finish(key, KeyStatus.COMPLETED, execution_id, None)
        if updated:
            logger.info("Key completed: %s (execution %s)", key, execution_id)
        return updated

    async def mark_failed(self, key: str, error: str) -> bool:
        updated = await self._finish(key, KeyStatus.FAILED, None, error)
        if updated:
            logger.info("Key failed: %s (%s)", key, error)
        return updated

    async def get_pending_keys(self) -> list[IdempotencyRecord]:
        """Non-expired pending keys, oldest first. Left over after a crash mid-submit."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """SELECT * FROM idempotency_keys
                   WHERE status = 'pending' AND expires_at > ?
                   ORDER BY created_at ASC""",
                (to_iso(self._clock()),),
            )
            rows = await cursor.fetchall()
        return [_record(r) for r in rows]

    async def cleanup(self, delete: bool = True) -> int:
        """Sweep expired keys; returns how many rows were affected."""
        await self._ensure_db()
        now = to_iso(self._clock())
        async with aiosqlite.connect(str(self._db_path)) as db:
            if delete:
                cursor = await db.execute(
                    "DELETE FROM idempotency_keys WHERE expires_at <= ?", (now,),
                )
            else:
                cursor = await db.execute(
                    """UPDATE idempotency_keys SET status = 'expired'
                       WHERE expires_at <= ? AND status != 'expired'""",
                    (now,),
                )
            await db.commit()
            count = cursor.rowcount

        if count:
            logger.info("Idempotency cleanup: %d keys %s", count, "deleted" if delete else "expired")
        return count

    async def get_stats(self) -> dict[str, int]:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                "SELECT status, COUNT(*) FROM idempotency_keys GROUP BY status",
            )
            rows = await cursor.fetchall()

        stats = {status.value: 0 for status in KeyStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(count for _, count in rows)
        return stats

    async def remove(self, key: str) -> bool:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute("DELETE FROM idempotency_keys WHERE key = ?", (key,))
            await db.commit()
            return cursor.rowcount > 0
