"""Risk state, settings and gate result models."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RISK_STATE_SCHEMA_VERSION = 1


class ExecutionMode(str, Enum):
    """paper simulates, shadow logs would-be orders, live submits to the venue."""

    PAPER = "paper"
    SHADOW = "shadow"
    LIVE = "live"


class Actor(str, Enum):
    """Who triggered a state change (recorded in the audit log)."""

    WEB = "web"
    TELEGRAM = "telegram"
    SYSTEM = "system"
    SCHEDULER = "scheduler"
    CLI = "cli"


class AuditEventType(str, Enum):
    TRADE = "trade"
    MODE_CHANGE = "mode_change"
    KILL_SWITCH = "kill_switch"
    SETTINGS = "settings"
    POSITION = "position"
    POSITION_SYNC = "position_sync"
    COOLDOWN = "cooldown"
    DAILY_RESET = "daily_reset"


class RiskSettings(BaseModel):
    """Tunable risk limits, persisted as versioned JSON."""

    model_config = ConfigDict(validate_assignment=True, extra="forbid")

    schema_version: Literal[1] = 1
    max_bet_usdc: float = Field(default=10.0, gt=0)
    risk_per_trade_percent: float = Field(default=2.0, gt=0, le=100)
    min_edge: float = Field(default=0.02, ge=0, le=1)
    min_alpha: float = Field(default=5.0, ge=0)
    min_volume_usd: float = Field(default=1000.0, ge=0)
    max_daily_loss: float = Field(default=100.0, gt=0)
    max_positions: int = Field(default=10, ge=0)
    max_per_market: float = Field(default=50.0, gt=0)


class TradeRecord(BaseModel):
    """One realized trade in the rolling window."""

    model_config = ConfigDict(frozen=True)

    pnl: float
    market_id: str
    size_usdc: float
    at: datetime


class TradeWindowV1(BaseModel):
    schema_version: Literal[1] = 1
    trades: list[TradeRecord] = Field(default_factory=list)


@dataclass
class RiskState:
    """Everything the risk state machine persists.

    Attributes:
        execution_mode: paper, shadow or live
        kill_switch_active: Highest-priority halt flag
        kill_switch_reason: Why the kill switch was activated
        kill_switch_activated_at: When it was activated
        daily_pnl: Realized P&L since the last daily reset
        daily_trades / daily_wins / daily_losses: Counters since reset
        daily_date: Local date (YYYY-MM-DD) the counters belong to
        high_water_mark: Running max of daily_pnl
        drawdown: high_water_mark - daily_pnl
        recent_trades: Rolling trade window, newest last
        consecutive_losses: Current losing streak
        cooldown_until: Trading paused until this time, if set
        positions: market_id -> open exposure in USDC
        settings: Tunable limits
    """

    daily_date: str
    execution_mode: ExecutionMode = ExecutionMode.PAPER
    kill_switch_active: bool = False
    kill_switch_reason: str | None = None
    kill_switch_activated_at: datetime | None = None
    daily_pnl: float = 0.0
    daily_trades: int = 0
    daily_wins: int = 0
    daily_losses: int = 0
    high_water_mark: float = 0.0
    drawdown: float = 0.0
    recent_trades: list[TradeRecord] = field(default_factory=list)
    consecutive_losses: int = 0
    cooldown_until: datetime | None = None
    positions: dict[str, float] = field(default_factory=dict)
    settings: RiskSettings = field(default_factory=RiskSettings)
    updated_at: datetime | None = None

    @property
    def open_positions(self) -> int:
        return len(self.positions)

    @property
    def total_exposure(self) -> float:
        return sum(self.positions.values())

    def copy(self) -> RiskState:
        return copy.deepcopy(self)

    def summary(self) -> dict[str, object]:
        """JSON-safe view used for audit before/after snapshots."""
        out: dict[str, object] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "recent_trades":
                out["recent_trade_count"] = len(value)
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, RiskSettings):
                value = value.model_dump()
            elif isinstance(value, dict):
                value = dict(value)
            out[f.name] = value
        return out


@dataclass(frozen=True)
class GateResult:
    """Outcome of can_trade(): allowed flag plus a human-readable reason."""

    allowed: bool
    reason: str


@dataclass(frozen=True)
class ModeChangeResult:
    success: bool
    message: str


@dataclass(frozen=True)
class RiskChecks:
    """The six named pre-trade checks attached to every decision."""

    daily_loss_ok: bool = True
    max_positions_ok: bool = True
    per_market_cap_ok: bool = True
    liquidity_ok: bool = True
    spread_ok: bool = True
    kill_switch_ok: bool = True

    @property
    def all_passed(self) -> bool:
        return all(getattr(self, f.name) for f in fields(self))

    def failed(self) -> list[str]:
        return [f.name for f in fields(self) if not getattr(self, f.name)]


@dataclass(frozen=True)
class RiskCheckResult:
    checks: RiskChecks
    passed: bool
    failed_reasons: list[str]


@dataclass(frozen=True)
class AuditEntry:
    """One append-only audit log row."""

    event_type: AuditEventType
    actor: Actor
    action: str
    before: dict[str, object] | None = None
    after: dict[str, object] | None = None
    market_id: str | None = None
    pnl_impact: float | None = None
    created_at: datetime | None = None
