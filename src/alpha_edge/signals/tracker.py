"""Decision and outcome log used for performance reporting and calibration."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path

import aiosqlite

from alpha_edge.common.types import from_iso, to_iso, utc_now
from alpha_edge.config import get_settings
from alpha_edge.risk.models import RiskChecks
from alpha_edge.signals.models import (
    CombinedSignal,
    Decision,
    DecisionAction,
    Direction,
    Rationale,
    SourceType,
    dump_signal,
    load_signal,
)

logger = logging.getLogger(__name__)

_CREATE_SIGNALS = """
CREATE TABLE IF NOT EXISTS signals (
    signal_id TEXT PRIMARY KEY,
    market_id TEXT NOT NULL,
    question TEXT,
    origins TEXT NOT NULL,
    direction TEXT NOT NULL,
    predicted_edge REAL NOT NULL,
    confidence REAL NOT NULL,
    certainty TEXT NOT NULL,
    market_prob REAL,
    model_prob REAL NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_CREATE_DECISIONS = """
CREATE TABLE IF NOT EXISTS decisions (
    decision_id TEXT PRIMARY KEY,
    signal_id TEXT NOT NULL REFERENCES signals(signal_id),
    market_id TEXT NOT NULL,
    direction TEXT NOT NULL,
    action TEXT NOT NULL,
    size_usdc REAL,
    risk_checks TEXT NOT NULL,
    rationale TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_CREATE_OUTCOMES = """
CREATE TABLE IF NOT EXISTS outcomes (
    decision_id TEXT PRIMARY KEY REFERENCES decisions(decision_id),
    market_id TEXT NOT NULL,
    outcome INTEGER NOT NULL,  -- 1 = YES won, 0 = NO won
    pnl REAL,
    resolved_at TEXT NOT NULL
);
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_decisions_market_id ON decisions(market_id);
"""


def _market_prob(signal: CombinedSignal) -> float | None:
    """Market-implied YES probability when the signal was generated."""
    features = signal.features
    mispricing = getattr(features, "mispricing", None)
    if mispricing is not None:
        return mispricing.implied_prob
    time_delay = getattr(features, "time_delay", None)
    if time_delay is not None:
        return time_delay.market_price_at_news
    return None


def _model_prob(signal: CombinedSignal) -> float:
    """The signal's confidence expressed as a YES probability."""
    if signal.direction is Direction.YES:
        return signal.confidence
    return 1 - signal.confidence


@dataclass(frozen=True)
class TrackedDecision:
    decision: Decision
    signal: CombinedSignal


class DecisionTracker:
    """Logs every decision with the signal that produced it, plus realized outcomes."""

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or get_settings().db_path

    async def _ensure_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(_CREATE_SIGNALS)
            await db.execute(_CREATE_DECISIONS)
            await db.execute(_CREATE_OUTCOMES)
            await db.execute(_CREATE_INDEX)
            await db.commit()

    async def log_decision(self, decision: Decision, signal: CombinedSignal) -> None:
        """Store a decision. The signal row is written once, however many decisions cite it."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            await db.execute(
                """INSERT OR IGNORE INTO signals
                   (signal_id, market_id, question, origins, direction,
                    predicted_edge, confidence, certainty, market_prob,
                    model_prob, payload, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    signal.signal_id,
                    signal.market_id,
                    signal.question,
                    ",".join(sorted(s.value for s in signal.source_signals)),
                    signal.direction.value,
                    signal.predicted_edge,
                    signal.confidence,
                    signal.certainty.value,
                    _market_prob(signal),
                    _model_prob(signal),
                    dump_signal(signal),
                    to_iso(signal.created_at),
                ),
            )
            await db.execute(
                """INSERT INTO decisions
                   (decision_id, signal_id, market_id, direction, action,
                    size_usdc, risk_checks, rationale, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    decision.decision_id,
                    decision.signal_id,
                    decision.market_id,
                    decision.direction.value,
                    decision.action.value,
                    decision.size_usdc,
                    json.dumps(asdict(decision.risk_checks)),
                    json.dumps(asdict(decision.rationale), default=str),
                    to_iso(decision.created_at),
                ),
            )
            await db.commit()
        logger.debug("Logged decision %s (%s) for %s", decision.decision_id, decision.action.value, decision.market_id)

    async def get_decision(self, decision_id: str) -> TrackedDecision | None:
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """SELECT d.*, s.payload FROM decisions d
                   JOIN signals s ON s.signal_id = d.signal_id
                   WHERE d.decision_id = ?""",
                (decision_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return None

        rationale = json.loads(row["rationale"])
        decision = Decision(
            decision_id=row["decision_id"],
            signal_id=row["signal_id"],
            market_id=row["market_id"],
            direction=Direction(row["direction"]),
            action=DecisionAction(row["action"]),
            size_usdc=row["size_usdc"],
            risk_checks=RiskChecks(**json.loads(row["risk_checks"])),
            rationale=Rationale(
                source_type=SourceType(rationale["source_type"]),
                edge=rationale["edge"],
                confidence=rationale["confidence"],
                top_features=tuple(rationale["top_features"]),
                rejection_reasons=tuple(rationale["rejection_reasons"]),
            ),
            created_at=from_iso(row["created_at"]),
        )
        return TrackedDecision(decision, load_signal(row["payload"]))

    async def backfill_outcome(
        self,
        decision_id: str,
        outcome: int,
        pnl: float | None = None,
        resolved_at: datetime | None = None,
    ) -> int:
        """Record the realized outcome of a decision.

        Args:
            decision_id: Decision the outcome belongs to
            outcome: 1 if YES won, 0 if NO won
            pnl: Realized P&L in USDC, if traded
            resolved_at: Resolution time (now if omitted)

        Returns:
            Number of rows written (0 if unknown or already resolved)
        """
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            cursor = await db.execute(
                """INSERT INTO outcomes (decision_id, market_id, outcome, pnl, resolved_at)
                   SELECT decision_id, market_id, ?, ?, ? FROM decisions WHERE decision_id = ?
                   ON CONFLICT (decision_id) DO NOTHING""",
                (outcome, pnl, to_iso(resolved_at or utc_now()), decision_id),
            )
            await db.commit()
            return cursor.rowcount

    async def get_calibration_data(
        self, source_type: SourceType | None = None,
    ) -> list[tuple[float, int]]:
        """(market-implied prob, outcome) pairs for resolved signals.

        With a source_type, only signals that origin contributed to.
        """
        await self._ensure_db()
        query = """SELECT DISTINCT s.signal_id, s.market_prob, o.outcome
                   FROM signals s
                   JOIN decisions d ON d.signal_id = s.signal_id
                   JOIN outcomes o ON o.decision_id = d.decision_id
                   WHERE s.market_prob IS NOT NULL"""
        params: tuple = ()
        if source_type is not None:
            query += " AND (',' || s.origins || ',') LIKE ?"
            params = (f"%,{source_type.value},%",)

        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [(row["market_prob"], row["outcome"]) for row in rows]

    async def get_performance_summary(self) -> dict:
        """Decision counts by action, win rate, realized P&L and Brier score."""
        await self._ensure_db()
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row

            cursor = await db.execute("SELECT COUNT(*) as total FROM signals")
            total_signals = (await cursor.fetchone())["total"]

            cursor = await db.execute(
                "SELECT action, COUNT(*) as n FROM decisions GROUP BY action"
            )
            by_action = {row["action"]: row["n"] for row in await cursor.fetchall()}

            cursor = await db.execute("SELECT COUNT(*) as resolved FROM outcomes")
            resolved = (await cursor.fetchone())["resolved"]

            cursor = await db.execute(
                """SELECT COUNT(*) as wins FROM outcomes o
                   JOIN decisions d ON d.decision_id = o.decision_id
                   WHERE (d.direction = 'yes' AND o.outcome = 1)
                      OR (d.direction = 'no' AND o.outcome = 0)"""
            )
            wins = (await cursor.fetchone())["wins"]

            cursor = await db.execute(
                "SELECT SUM(pnl) as total_pnl FROM outcomes WHERE pnl IS NOT NULL"
            )
            total_pnl = (await cursor.fetchone())["total_pnl"]

            cursor = await db.execute(
                "SELECT AVG(predicted_edge) as avg_edge FROM signals"
            )
            avg_edge = (await cursor.fetchone())["avg_edge"]

            cursor = await db.execute(
                """SELECT AVG((s.model_prob - o.outcome) * (s.model_prob - o.outcome)) as brier
                   FROM outcomes o
                   JOIN decisions d ON d.decision_id = o.decision_id
                   JOIN signals s ON s.signal_id = d.signal_id"""
            )
            brier = (await cursor.fetchone())["brier"]

            return {
                "total_signals": total_signals,
                "decisions": by_action,
                "resolved": resolved,
                "wins": wins,
                "win_rate": wins / resolved if resolved > 0 else None,
                "total_pnl": total_pnl or 0.0,
                "avg_edge": avg_edge,
                "brier_score": brier,
            }
