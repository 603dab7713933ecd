"""Persistent risk state machine: kill switch, daily limits, drawdown and cooldown.

One instance per process, passed explicitly to whoever needs it. Every
mutator changes the in-memory state synchronously, then awaits a single
store commit (snapshot + audit rows). A failed commit is logged and the
in-memory state stays authoritative.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, tzinfo

import aiosqlite
from pydantic import ValidationError

from alpha_edge.common.types import Clock, utc_now
from alpha_edge.config import Settings, get_settings
from alpha_edge.errors import ConfigurationError
from alpha_edge.risk.models import (
    Actor,
    AuditEntry,
    AuditEventType,
    ExecutionMode,
    GateResult,
    ModeChangeResult,
    RiskSettings,
    RiskState,
    TradeRecord,
)
from alpha_edge.risk.store import RiskStateStore

logger = logging.getLogger(__name__)

MAX_RECENT_TRADES = 100
ROLLING_WINDOW = timedelta(minutes=15)
ROLLING_LOSS_FRACTION = 0.3
DRAWDOWN_FRACTION = 0.5


def seconds_until_midnight(now: datetime, tz: tzinfo | None = None) -> float:
    """Seconds from now until the next local midnight."""
    local = now.astimezone(tz)
    midnight = (local + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (midnight - local).total_seconds()


class RiskStateMachine:
    def __init__(
        self,
        store: RiskStateStore | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        tz: tzinfo | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._clock = clock
        self._tz = tz
        self._state = self._initial_state()
        self.loaded = False

    def _initial_state(self) -> RiskState:
        s = self._settings
        return RiskState(
            daily_date=self.today(),
            settings=RiskSettings(
                max_bet_usdc=s.max_bet_usdc,
                risk_per_trade_percent=s.risk_per_trade_percent,
                min_edge=s.min_edge,
                min_alpha=s.min_alpha,
                min_volume_usd=s.min_volume_usd,
                max_daily_loss=s.max_daily_loss,
                max_positions=s.max_positions,
                max_per_market=s.max_per_market,
            ),
        )

    def today(self) -> str:
        """Local calendar date the daily counters belong to."""
        return self._clock().astimezone(self._tz).date().isoformat()

    @property
    def state(self) -> RiskState:
        """A copy of the current state; mutate through the methods only."""
        return self._state.copy()

    @property
    def execution_mode(self) -> ExecutionMode:
        return self._state.execution_mode

    @property
    def kill_switch_active(self) -> bool:
        return self._state.kill_switch_active

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def tz(self) -> tzinfo | None:
        return self._tz

    # --- persistence ---

    def _audit(
        self,
        event_type: AuditEventType,
        actor: Actor,
        action: str,
        before: dict[str, object] | None,
        market_id: str | None = None,
        pnl_impact: float | None = None,
    ) -> AuditEntry:
        return AuditEntry(
            event_type=event_type,
            actor=actor,
            action=action,
            before=before,
            after=self._state.summary(),
            market_id=market_id,
            pnl_impact=pnl_impact,
            created_at=self._clock(),
        )

    async def _commit(self, *audits: AuditEntry) -> None:
        self._state.updated_at = self._clock()
        if self._store is None:
            return
        try:
            await self._store.commit(self._state.copy(), *audits)
        except (aiosqlite.Error, OSError):
            logger.exception("Failed to persist risk state (%d audit entries)", len(audits))

    async def load(self) -> RiskState:
        """Restore the last snapshot; roll the day over if it belongs to an earlier date."""
        if self._store is not None:
            stored = await self._store.load()
            if stored is None:
                logger.info("No stored risk state, starting fresh (%s mode)", self._state.execution_mode.value)
                await self._commit()
            else:
                self._state = stored
                logger.info(
                    "Risk state loaded: mode=%s daily_pnl=%.2f positions=%d",
                    stored.execution_mode.value, stored.daily_pnl, stored.open_positions,
                )
        if self._state.kill_switch_active:
            logger.warning("Kill switch was active at startup: %s", self._state.kill_switch_reason)

        if self._state.daily_date != self.today():
            await self.reset_daily(Actor.SYSTEM)

        self.loaded = True
        return self.state

    # --- gate ---

    def _rolling_loss(self, now: datetime) -> float:
        cutoff = now - ROLLING_WINDOW
        return -sum(t.pnl for t in self._state.recent_trades if t.at >= cutoff)

    def can_trade(self) -> GateResult:
        """First failing gate, in priority order; allowed only if all pass."""
        s = self._state
        limits = s.settings
        now = self._clock()

        if s.kill_switch_active:
            return GateResult(False, f"Kill switch active: {s.kill_switch_reason or 'manually activated'}")

        if s.execution_mode is ExecutionMode.LIVE and not self._settings.wallet_configured:
            return GateResult(False, "Live mode refused: wallet not configured")

        if s.daily_pnl <= -limits.max_daily_loss:
            return GateResult(False, f"Daily loss limit reached: {s.daily_pnl:.2f} USDC")

        if s.drawdown >= DRAWDOWN_FRACTION * limits.max_daily_loss:
            return GateResult(
                False,
                f"Intraday drawdown limit: {s.drawdown:.2f} >= "
                f"{DRAWDOWN_FRACTION * limits.max_daily_loss:.2f} USDC",
            )

        if s.cooldown_until is not None and now < s.cooldown_until:
            minutes = (s.cooldown_until - now).total_seconds() / 60
            return GateResult(False, f"Cooldown active: {minutes:.0f} min left")

        if s.consecutive_losses >= self._settings.max_consecutive_losses:
            return GateResult(False, f"Losing streak: {s.consecutive_losses} consecutive losses")

        rolling = self._rolling_loss(now)
        if rolling >= ROLLING_LOSS_FRACTION * limits.max_daily_loss:
            return GateResult(False, f"Rapid loss: {rolling:.2f} USDC in the last 15 min")

        if s.open_positions >= limits.max_positions:
            return GateResult(False, f"Max positions reached: {s.open_positions}/{limits.max_positions}")

        if s.execution_mode is ExecutionMode.PAPER:
            return GateResult(True, "OK (paper mode, trades are simulated)")
        return GateResult(True, "OK")

    # --- mutators ---

    async def set_execution_mode(self, mode: ExecutionMode, actor: Actor = Actor.CLI) -> ModeChangeResult:
        if mode is ExecutionMode.LIVE and not self._settings.wallet_configured:
            return ModeChangeResult(
                False,
                "Live mode refused: wallet not configured. "
                "Set WALLET_PRIVATE_KEY and WALLET_ADDRESS.",
            )

        old = self._state.execution_mode
        if old is mode:
            return ModeChangeResult(True, f"Already in {mode.value} mode")

        before = self._state.summary()
        self._state.execution_mode = mode
        logger.info("Execution mode %s -> %s (via %s)", old.value, mode.value, actor.value)
        await self._commit(
            self._audit(AuditEventType.MODE_CHANGE, actor, f"Mode {old.value} -> {mode.value}", before)
        )
        return ModeChangeResult(True, f"Execution mode changed: {old.value} -> {mode.value}")

    def _activate_kill_switch(self, reason: str, actor: Actor) -> AuditEntry | None:
        if self._state.kill_switch_active:
            return None
        before = self._state.summary()
        self._state.kill_switch_active = True
        self._state.kill_switch_reason = reason
        self._state.kill_switch_activated_at = self._clock()
        logger.warning("KILL SWITCH ACTIVATED: %s (via %s)", reason, actor.value)
        return self._audit(AuditEventType.KILL_SWITCH, actor, f"Kill switch activated: {reason}", before)

    async def activate_kill_switch(self, reason: str, actor: Actor = Actor.SYSTEM) -> bool:
        """Halt all trading. Returns False if it was already active."""
        entry = self._activate_kill_switch(reason, actor)
        if entry is None:
            return False
        await self._commit(entry)
        return True

    async def deactivate_kill_switch(self, actor: Actor = Actor.CLI) -> bool:
        if not self._state.kill_switch_active:
            return False
        before = self._state.summary()
        reason = self._state.kill_switch_reason
        self._state.kill_switch_active = False
        self._state.kill_switch_reason = None
        self._state.kill_switch_activated_at = None
        logger.info("Kill switch deactivated (was: %s, via %s)", reason, actor.value)
        await self._commit(
            self._audit(AuditEventType.KILL_SWITCH, actor, "Kill switch deactivated", before)
        )
        return True

    async def toggle_kill_switch(self, actor: Actor = Actor.CLI) -> bool:
        """Flip the kill switch; returns the new state."""
        if self._state.kill_switch_active:
            await self.deactivate_kill_switch(actor)
            return False
        await self.activate_kill_switch("Manually activated", actor)
        return True

    async def record_trade(
        self, pnl: float, market_id: str, size_usdc: float, actor: Actor = Actor.SYSTEM,
    ) -> None:
        """Book a realized trade and apply the automatic protections."""
        s = self._state
        limits = s.settings
        now = self._clock()
        before = s.summary()
        extra: list[AuditEntry] = []

        s.daily_pnl += pnl
        s.daily_trades += 1
        if pnl > 0:
            s.daily_wins += 1
            s.consecutive_losses = 0
        elif pnl < 0:
            s.daily_losses += 1
            s.consecutive_losses += 1

        s.recent_trades.append(TradeRecord(pnl=pnl, market_id=market_id, size_usdc=size_usdc, at=now))
        del s.recent_trades[:-MAX_RECENT_TRADES]

        s.high_water_mark = max(s.high_water_mark, s.daily_pnl)
        s.drawdown = s.high_water_mark - s.daily_pnl

        if market_id in s.positions:
            remaining = s.positions[market_id] - size_usdc
            if remaining <= 0:
                del s.positions[market_id]
            else:
                s.positions[market_id] = remaining

        trade_entry = self._audit(
            AuditEventType.TRADE, actor,
            f"Trade {market_id}: pnl={pnl:+.2f} size={size_usdc:.2f}",
            before, market_id=market_id, pnl_impact=pnl,
        )

        if pnl < 0 and s.consecutive_losses >= self._settings.max_consecutive_losses:
            cooldown_before = s.summary()
            s.cooldown_until = now + timedelta(minutes=self._settings.cooldown_minutes)
            logger.warning(
                "%d consecutive losses, cooldown until %s",
                s.consecutive_losses, s.cooldown_until.isoformat(),
            )
            extra.append(self._audit(
                AuditEventType.COOLDOWN, Actor.SYSTEM,
                f"Cooldown started after {s.consecutive_losses} consecutive losses",
                cooldown_before,
            ))

        if s.daily_pnl <= -limits.max_daily_loss:
            entry = self._activate_kill_switch(
                f"Daily loss limit reached: {s.daily_pnl:.2f} USDC", Actor.SYSTEM,
            )
            if entry is not None:
                extra.append(entry)
        elif s.drawdown >= DRAWDOWN_FRACTION * limits.max_daily_loss:
            entry = self._activate_kill_switch(
                f"Intraday drawdown limit reached: {s.drawdown:.2f} USDC", Actor.SYSTEM,
            )
            if entry is not None:
                extra.append(entry)

        logger.info(
            "Trade recorded: %s pnl=%+.2f daily_pnl=%.2f drawdown=%.2f streak=%d",
            market_id, pnl, s.daily_pnl, s.drawdown, s.consecutive_losses,
        )
        await self._commit(trade_entry, *extra)

    async def open_position(self, market_id: str, size_usdc: float, actor: Actor = Actor.SYSTEM) -> float:
        """Add exposure to a market; returns the new exposure."""
        if size_usdc <= 0:
            raise ValueError(f"size_usdc must be > 0, got {size_usdc}")
        before = self._state.summary()
        exposure = self._state.positions.get(market_id, 0.0) + size_usdc
        self._state.positions[market_id] = exposure
        await self._commit(self._audit(
            AuditEventType.POSITION, actor,
            f"Position opened {market_id}: +{size_usdc:.2f} (exposure {exposure:.2f})",
            before, market_id=market_id,
        ))
        return exposure

    async def close_position(self, market_id: str, actor: Actor = Actor.SYSTEM) -> float:
        """Drop a market's exposure; returns what was removed (0 if none)."""
        if market_id not in self._state.positions:
            return 0.0
        before = self._state.summary()
        exposure = self._state.positions.pop(market_id)
        await self._commit(self._audit(
            AuditEventType.POSITION, actor,
            f"Position closed {market_id}: -{exposure:.2f}",
            before, market_id=market_id,
        ))
        return exposure

    async def update_settings(self, actor: Actor = Actor.CLI, **changes: object) -> RiskSettings:
        """Validate and apply settings changes atomically.

        Raises:
            ConfigurationError: if any field is unknown or out of range.
        """
        current = self._state.settings
        try:
            updated = RiskSettings.model_validate({**current.model_dump(), **changes})
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid risk settings: {exc}") from exc

        if updated == current:
            return updated

        before = self._state.summary()
        self._state.settings = updated
        changed = ", ".join(f"{k}={v}" for k, v in sorted(changes.items()))
        logger.info("Risk settings updated: %s (via %s)", changed, actor.value)
        await self._commit(
            self._audit(AuditEventType.SETTINGS, actor, f"Settings updated: {changed}", before)
        )
        return updated

    async def reset_cooldown(self, actor: Actor = Actor.CLI) -> None:
        before = self._state.summary()
        self._state.cooldown_until = None
        self._state.consecutive_losses = 0
        logger.info("Cooldown reset (via %s)", actor.value)
        await self._commit(self._audit(AuditEventType.COOLDOWN, actor, "Cooldown reset", before))

    async def reset_daily(self, actor: Actor = Actor.SCHEDULER) -> None:
        """Zero the daily and intraday counters. The kill switch is left as is."""
        s = self._state
        before = s.summary()
        previous_pnl = s.daily_pnl
        previous_trades = s.daily_trades

        s.daily_pnl = 0.0
        s.daily_trades = 0
        s.daily_wins = 0
        s.daily_losses = 0
        s.daily_date = self.today()
        s.high_water_mark = 0.0
        s.drawdown = 0.0
        s.recent_trades = []
        s.consecutive_losses = 0
        s.cooldown_until = None

        logger.info(
            "Daily reset: pnl %.2f -> 0, trades %d -> 0 (kill switch %s)",
            previous_pnl, previous_trades, "ACTIVE" if s.kill_switch_active else "off",
        )
        await self._commit(self._audit(
            AuditEventType.DAILY_RESET, actor,
            f"Daily reset: pnl {previous_pnl:.2f} -> 0", before, pnl_impact=previous_pnl,
        ))

    async def sync_positions(self, venue_positions: dict[str, float], actor: Actor = Actor.SYSTEM) -> None:
        """Replace the position map with the venue's view."""
        before = self._state.summary()
        old_count = self._state.open_positions
        self._state.positions = {m: size for m, size in venue_positions.items() if size > 0}
        logger.info(
            "Positions synced: %d -> %d (exposure %.2f USDC)",
            old_count, self._state.open_positions, self._state.total_exposure,
        )
        await self._commit(self._audit(
            AuditEventType.POSITION_SYNC, actor,
            f"Positions synced from venue: {old_count} -> {self._state.open_positions}",
            before,
        ))

    async def recent_audit(self, limit: int = 50) -> list[AuditEntry]:
        if self._store is None:
            return []
        return await self._store.recent_audit(limit)

    # --- reporting ---

    def dashboard(self) -> dict:
        s = self._state
        limits = s.settings
        now = self._clock()
        win_rate = s.daily_wins / s.daily_trades * 100 if s.daily_trades else 0.0
        cooldown_active = s.cooldown_until is not None and now < s.cooldown_until
        gate = self.can_trade()

        return {
            "mode": s.execution_mode.value,
            "kill_switch": {
                "active": s.kill_switch_active,
                "reason": s.kill_switch_reason,
                "since": s.kill_switch_activated_at,
            },
            "daily": {
                "date": s.daily_date,
                "pnl": s.daily_pnl,
                "trades": s.daily_trades,
                "wins": s.daily_wins,
                "losses": s.daily_losses,
                "win_rate": win_rate,
            },
            "intraday": {
                "high_water_mark": s.high_water_mark,
                "drawdown": s.drawdown,
                "drawdown_limit": DRAWDOWN_FRACTION * limits.max_daily_loss,
                "consecutive_losses": s.consecutive_losses,
                "cooldown_until": s.cooldown_until if cooldown_active else None,
            },
            "positions": {
                "open": s.open_positions,
                "max": limits.max_positions,
                "total_exposure": s.total_exposure,
            },
            "limits": {
                "daily_loss_limit": limits.max_daily_loss,
                "daily_loss_remaining": limits.max_daily_loss + s.daily_pnl,
                "position_limit": limits.max_positions - s.open_positions,
            },
            "can_trade": {"allowed": gate.allowed, "reason": gate.reason},
        }


async def run_daily_reset(machine: RiskStateMachine) -> None:
    """Reset the machine's daily counters at every midnight in its zone. Runs until cancelled."""
    while True:
        delay = seconds_until_midnight(machine.clock(), machine.tz)
        logger.info("Next daily reset in %.0f minutes", delay / 60)
        await asyncio.sleep(delay)
        await machine.reset_daily(Actor.SCHEDULER)
