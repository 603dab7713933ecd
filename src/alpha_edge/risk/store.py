"""SQLite persistence for the risk state singleton and its audit log."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import aiosqlite

from alpha_edge.common.types import from_iso, to_iso, utc_now
from alpha_edge.config import get_settings
from alpha_edge.errors import SchemaVersionError
from alpha_edge.risk.models import (
    RISK_STATE_SCHEMA_VERSION,
    Actor,
    AuditEntry,
    AuditEventType,
    ExecutionMode,
    RiskSettings,
    RiskState,
    TradeWindowV1,
)

logger = logging.getLogger(__name__)

_CREATE_RISK_STATE = """
CREATE TABLE IF NOT EXISTS risk_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    schema_version INTEGER NOT NULL,
    execution_mode TEXT NOT NULL,
    kill_switch_active INTEGER NOT NULL,
    kill_switch_reason TEXT,
    kill_switch_activated_at TEXT,
    daily_pnl REAL NOT NULL,
    daily_trades INTEGER NOT NULL,
    daily_wins INTEGER NOT NULL,
    daily_losses INTEGER NOT NULL,
    daily_date TEXT NOT NULL,
    high_water_mark REAL NOT NULL,
    drawdown REAL NOT NULL,
    consecutive_losses INTEGER NOT NULL,
    cooldown_until TEXT,
    risk_settings TEXT NOT NULL,
    recent_trades TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_CREATE_POSITIONS = """
CREATE TABLE IF NOT EXISTS risk_positions (
    market_id TEXT PRIMARY KEY,
    size_usdc REAL NOT NULL
);
"""

_CREATE_AUDIT = """
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    market_id TEXT,
    pnl_impact REAL,
    before_json TEXT,
    after_json TEXT,
    created_at TEXT NOT NULL
);
"""

_CREATE_AUDIT_INDEX = """
CREATE INDEX IF NOT EXISTS idx_audit_log_created_at ON audit_log(created_at);
"""


def _versioned(table: str, raw: str) -> dict:
    data = json.loads(raw)
    version = data.get("schema_version")
    if version != RISK_STATE_SCHEMA_VERSION:
        raise SchemaVersionError(table, version)
    return data


def _dump(value: dict[str, object] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


class RiskStateStore:
    """Durable storage for RiskState: a singleton row, normalized positions and an audit log."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or get_settings().db_path

    async def _ensure_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(_CREATE_RISK_STATE)
            await db.execute(_CREATE_POSITIONS)
            await db.execute(_CREATE_AUDIT)
            await db.execute(_CREATE_AUDIT_INDEX)
            await db.commit()

    async def commit(self, state: RiskState, *audits: AuditEntry) -> None:
        """Write the full snapshot and its audit rows in a single transaction."""
        await self._ensure_db()
        updated_at = state.updated_at or utc_now()
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                """INSERT INTO risk_state
                   (id, schema_version, execution_mode, kill_switch_active,
                    kill_switch_reason, kill_switch_activated_at,
                    daily_pnl, daily_trades, daily_wins, daily_losses, daily_date,
                    high_water_mark, drawdown, consecutive_losses, cooldown_until,
                    risk_settings, recent_trades, updated_at)
                   VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT (id) DO UPDATE SET
                    schema_version = excluded.schema_version,
                    execution_mode = excluded.execution_mode,
                    kill_switch_active = excluded.kill_switch_active,
                    kill_switch_reason = excluded.kill_switch_reason,
                    kill_switch_activated_at = excluded.kill_switch_activated_at,
                    daily_pnl = excluded.daily_pnl,
                    daily_trades = excluded.daily_trades,
                    daily_wins = excluded.daily_wins,
                    daily_losses = excluded.daily_losses,
                    daily_date = excluded.daily_date,
                    high_water_mark = excluded.high_water_mark,
                    drawdown = excluded.drawdown,
                    consecutive_losses = excluded.consecutive_losses,
                    cooldown_until = excluded.cooldown_until,
                    risk_settings = excluded.risk_settings,
                    recent_trades = excluded.recent_trades,
                    updated_at = excluded.updated_at""",
                (
                    RISK_STATE_SCHEMA_VERSION,
                    state.execution_mode.value,
                    int(state.kill_switch_active),
                    state.kill_switch_reason,
                    to_iso(state.kill_switch_activated_at) if state.kill_switch_activated_at else None,
                    state.daily_pnl,
                    state.daily_trades,
                    state.daily_wins,
                    state.daily_losses,
                    state.daily_date,
                    state.high_water_mark,
                    state.drawdown,
                    state.consecutive_losses,
                    to_iso(state.cooldown_until) if state.cooldown_until else None,
                    state.settings.model_dump_json(),
                    TradeWindowV1(trades=state.recent_trades).model_dump_json(),
                    to_iso(updated_at),
                ),
            )
            await db.execute("DELETE FROM risk_positions")
            await db.executemany(
                "INSERT INTO risk_positions (market_id, size_usdc) VALUES (?, ?)",
                list(state.positions.items()),
            )
            for audit in audits:
                await db.execute(
                    """INSERT INTO audit_log
                       (event_type, actor, action, market_id, pnl_impact,
                        before_json, after_json, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        audit.event_type.value,
                        audit.actor.value,
                        audit.action,
                        audit.market_id,
                        audit.pnl_impact,
                        _dump(audit.before),
                        _dump(audit.after),
                        to_iso(audit.created_at or updated_at),
                    ),
                )
            await db.commit()

    async def load(self) -> RiskState | None:
        """The stored snapshot, or None on first start.

        Raises SchemaVersionError when any stored part has an unknown version.
        """
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM risk_state WHERE id = 1")
            row = await cursor.fetchone()
            if row is None:
                return None
            cursor = await db.execute("SELECT market_id, size_usdc FROM risk_positions")
            position_rows = await cursor.fetchall()

        if row["schema_version"] != RISK_STATE_SCHEMA_VERSION:
            raise SchemaVersionError("risk_state", row["schema_version"])

        settings = RiskSettings.model_validate(_versioned("risk_settings", row["risk_settings"]))
        window = TradeWindowV1.model_validate(_versioned("recent_trades", row["recent_trades"]))

        return RiskState(
            daily_date=row["daily_date"],
            execution_mode=ExecutionMode(row["execution_mode"]),
            kill_switch_active=bool(row["kill_switch_active"]),
            kill_switch_reason=row["kill_switch_reason"],
            kill_switch_activated_at=from_iso(row["kill_switch_activated_at"]),
            daily_pnl=row["daily_pnl"],
            daily_trades=row["daily_trades"],
            daily_wins=row["daily_wins"],
            daily_losses=row["daily_losses"],
            high_water_mark=row["high_water_mark"],
            drawdown=row["drawdown"],
            recent_trades=list(window.trades),
            consecutive_losses=row["consecutive_losses"],
            cooldown_until=from_iso(row["cooldown_until"]),
            positions={r["market_id"]: r["size_usdc"] for r in position_rows},
            settings=settings,
            updated_at=from_iso(row["updated_at"]),
        )

    async def recent_audit(self, limit: int = 50) -> list[AuditEntry]:
        """Newest audit entries first."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,),
            )
            rows = await cursor.fetchall()
        return [
            AuditEntry(
                event_type=AuditEventType(r["event_type"]),
                actor=Actor(r["actor"]),
                action=r["action"],
                before=json.loads(r["before_json"]) if r["before_json"] else None,
                after=json.loads(r["after_json"]) if r["after_json"] else None,
                market_id=r["market_id"],
                pnl_impact=r["pnl_impact"],
                created_at=from_iso(r["created_at"]),
            )
            for r in rows
        ]
