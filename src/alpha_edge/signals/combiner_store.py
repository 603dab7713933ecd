"""SQLite persistence for meta-combiner weights and coefficients."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Literal

import aiosqlite
from pydantic import BaseModel, Field

from alpha_edge.common.types import to_iso
from alpha_edge.config import get_settings
from alpha_edge.errors import SchemaVersionError

logger = logging.getLogger(__name__)

COMBINER_SCHEMA_VERSION = 1

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS meta_combiner_state (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    schema_version INTEGER NOT NULL,
    state TEXT NOT NULL,
    training_count INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class CombinerStateV1(BaseModel):
    """Learned combiner state. Weights are keyed by source type value."""

    schema_version: Literal[1] = 1
    weights: dict[str, float]
    coefficients: dict[str, float]
    training_count: int = Field(default=0, ge=0)
    updated_at: datetime


class CombinerStateStore:
    """Append-only history of combiner snapshots; the newest row wins."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or get_settings().db_path

    async def _ensure_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(_CREATE_TABLE)
            await db.commit()

    async def save(self, state: CombinerStateV1) -> None:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                """INSERT INTO meta_combiner_state
                   (schema_version, state, training_count, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (
                    state.schema_version,
                    state.model_dump_json(),
                    state.training_count,
                    to_iso(state.updated_at),
                ),
            )
            await db.commit()
        logger.debug("Combiner state saved (%d trainings)", state.training_count)

    async def load(self) -> CombinerStateV1 | None:
        """Newest stored state, or None when nothing was saved yet."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """SELECT schema_version, state FROM meta_combiner_state
                   ORDER BY id DESC LIMIT 1"""
            )
            row = await cursor.fetchone()

        if row is None:
            return None
        if row["schema_version"] != COMBINER_SCHEMA_VERSION:
            raise SchemaVersionError("meta_combiner_state", row["schema_version"])
        return CombinerStateV1.model_validate_json(row["state"])

    async def history_count(self) -> int:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute("SELECT COUNT(*) FROM meta_combiner_state")
            row = await cursor.fetchone()
            return row[0]
