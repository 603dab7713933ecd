"""Top-level pipeline orchestrator.

Wires together: signal generation → combining → sizing → risk gates →
decision → idempotent execution, and feeds realized outcomes back into
the risk state, the combiner and the tracker.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import aiosqlite
import httpx
from rich.console import Console

from alpha_edge.common.types import Clock, utc_now
from alpha_edge.config import Settings, get_settings
from alpha_edge.errors import SubmissionError
from alpha_edge.events.models import SourceEvent
from alpha_edge.execution.idempotency import IdempotencyService, normalize_side
from alpha_edge.execution.positions import PositionSource, SyncResult, sync_positions_from_venue
from alpha_edge.markets.models import MarketSnapshot
from alpha_edge.markets.quality import market_quality
from alpha_edge.risk.gates import GateConfig, check_risk_gates
from alpha_edge.risk.machine import RiskStateMachine
from alpha_edge.risk.models import ExecutionMode
from alpha_edge.risk.sizing import PositionSizer
from alpha_edge.signals.combiner import MetaCombiner
from alpha_edge.signals.decisions import build_decision
from alpha_edge.signals.generator import TimeDelayGenerator
from alpha_edge.signals.mispricing import MispricingGenerator
from alpha_edge.signals.models import AlphaSignal, CombinedSignal, Decision, SourceType
from alpha_edge.signals.tracker import DecisionTracker

logger = logging.getLogger(__name__)
console = Console()


@dataclass(frozen=True)
class OrderRequest:
    decision_id: str
    market_id: str
    side: str
    size_usdc: float
    idempotency_key: str


class OrderSubmitter(Protocol):
    async def submit(self, order: OrderRequest) -> str:
        """Place the order; returns the venue execution id."""
        ...


class ExecutionStatus(str, Enum):
    SUBMITTED = "submitted"
    SIMULATED = "simulated"
    DUPLICATE = "duplicate"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionResult:
    status: ExecutionStatus
    message: str
    key: str | None = None
    execution_id: str | None = None


@dataclass(frozen=True)
class OutcomeResult:
    decision_id: str
    recorded_trade: bool
    combiner_prediction: float | None
    backfilled: int


class AlphaPipeline:
    """One risk state machine and one idempotency service, shared by everything here."""

    def __init__(
        self,
        machine: RiskStateMachine,
        idempotency: IdempotencyService,
        combiner: MetaCombiner | None = None,
        tracker: DecisionTracker | None = None,
        time_delay: TimeDelayGenerator | None = None,
        mispricing: MispricingGenerator | None = None,
        sizer: PositionSizer | None = None,
        position_source: PositionSource | None = None,
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self.machine = machine
        self.idempotency = idempotency
        self.combiner = combiner or MetaCombiner(clock=clock)
        self.tracker = tracker
        self.time_delay = time_delay or TimeDelayGenerator(clock=clock)
        self.mispricing = mispricing or MispricingGenerator(clock=clock)
        self.sizer = sizer or PositionSizer()
        self.position_source = position_source
        self.gate_config = GateConfig.from_settings(self.settings)
        self._clock = clock

    async def startup(self) -> SyncResult | None:
        """Restore state before any decision is accepted."""
        await self.machine.load()
        await self.combiner.load()

        if self.tracker is not None:
            pairs = await self.tracker.get_calibration_data(SourceType.MISPRICING)
            self.mispricing.load_calibration(pairs)

        sync = None
        if self.position_source is not None:
            sync = await sync_positions_from_venue(self.machine, self.position_source)
            if not sync.synced:
                console.print(f"  [yellow]Position sync failed: {sync.reason}[/yellow]")

        pending = await self.idempotency.get_pending_keys()
        for record in pending:
            logger.warning(
                "Pending order from a previous run: %s (created %s), reconcile with venue",
                record.key, record.created_at.isoformat(),
            )
        if pending:
            console.print(f"  [yellow]{len(pending)} pending idempotency key(s) need reconciliation[/yellow]")

        logger.info("Pipeline started in %s mode", self.machine.execution_mode.value)
        return sync

    async def shutdown(self) -> None:
        try:
            await self.combiner.save()
        except (aiosqlite.Error, OSError):
            logger.exception("Failed to flush combiner state on shutdown")

    def _combine(
        self, time_delay: list[AlphaSignal], mispricing: list[AlphaSignal],
    ) -> list[CombinedSignal]:
        by_market: dict[str, dict[SourceType, AlphaSignal]] = defaultdict(dict)
        # Inputs are sorted best edge first; keep the best signal per origin
        for signal in time_delay + mispricing:
            by_market[signal.market_id].setdefault(signal.source_type, signal)

        combined = []
        for origins in by_market.values():
            signal = self.combiner.combine(
                origins.get(SourceType.TIME_DELAY), origins.get(SourceType.MISPRICING),
            )
            if signal is not None:
                combined.append(signal)
        return combined

    async def evaluate(
        self,
        events: list[SourceEvent],
        markets: list[MarketSnapshot],
        prices_at_news: dict[str, float] | None = None,
        bankroll: float | None = None,
        volatility: dict[str, float] | None = None,
    ) -> list[Decision]:
        """One decision per combined signal, best edge first."""
        bankroll = bankroll if bankroll is not None else self.settings.bankroll_usdc
        volatility = volatility or {}
        markets_by_id = {m.market_id: m for m in markets}

        td_signals = self.time_delay.generate_signals(events, markets, prices_at_news)
        mp_signals = self.mispricing.generate_signals(markets)
        combined = self._combine(td_signals, mp_signals)
        combined.sort(key=lambda s: s.predicted_edge, reverse=True)

        # operator-tuned via update_settings
        min_edge = self.machine.state.settings.min_edge
        decisions: list[Decision] = []
        for signal in combined:
            quality = market_quality(
                markets_by_id[signal.market_id],
                volatility=volatility.get(signal.market_id, 0.0),
                min_liquidity=self.gate_config.min_liquidity,
                max_spread=self.gate_config.max_spread,
            )
            sizing = self.sizer.size_with_certainty(
                signal.certainty, signal.predicted_edge, signal.confidence, quality, bankroll,
                min_edge=min_edge,
            )
            risk = check_risk_gates(
                self.machine.state, sizing.size, signal.market_id, quality, self.gate_config,
            )
            decision = build_decision(
                signal,
                sizing,
                risk,
                self.machine.can_trade(),
                min_edge=min_edge,
                fees=self.sizer.config.fees,
                min_net_edge=self.sizer.config.min_net_edge,
                top_features=self.combiner.top_features(signal),
                clock=self._clock,
            )
            decisions.append(decision)

            if self.tracker is not None:
                try:
                    await self.tracker.log_decision(decision, signal)
                except (aiosqlite.Error, OSError):
                    logger.exception("Failed to log decision %s", decision.decision_id)

        logger.info(
            "Evaluated %d combined signals (%d time-delay, %d mispricing)",
            len(combined), len(td_signals), len(mp_signals),
        )
        return decisions

    async def execute(
        self, decision: Decision, submitter: OrderSubmitter | None = None,
    ) -> ExecutionResult:
        """Place a trade/high_conviction decision at most once."""
        if not decision.action.executable or not decision.size_usdc:
            return ExecutionResult(ExecutionStatus.SKIPPED, f"Action {decision.action.value} is not executable")

        gate = self.machine.can_trade()
        if not gate.allowed:
            logger.warning("Execution blocked for %s: %s", decision.decision_id, gate.reason)
            return ExecutionResult(ExecutionStatus.BLOCKED, gate.reason)

        side = normalize_side(decision.direction.value)
        check = await self.idempotency.check_or_create(
            decision.decision_id, decision.market_id, side, decision.size_usdc,
        )
        if check.exists:
            return ExecutionResult(
                ExecutionStatus.DUPLICATE,
                f"Order already {check.status.value if check.status else 'seen'}",
                key=check.key,
                execution_id=check.execution_id,
            )

        mode = self.machine.execution_mode
        if mode is ExecutionMode.PAPER:
            execution_id = f"paper-{uuid.uuid4().hex[:12]}"
            await self.idempotency.mark_completed(check.key, execution_id)
            await self.machine.open_position(decision.market_id, decision.size_usdc)
            console.print(
                f"  [cyan]PAPER[/cyan] {side} {decision.size_usdc:.2f} USDC on {decision.market_id}"
            )
            return ExecutionResult(ExecutionStatus.SIMULATED, "Paper trade simulated", check.key, execution_id)

        if mode is ExecutionMode.SHADOW:
            execution_id = f"shadow-{uuid.uuid4().hex[:12]}"
            await self.idempotency.mark_completed(check.key, execution_id)
            logger.info(
                "SHADOW order (not sent): %s %.2f USDC on %s",
                side, decision.size_usdc, decision.market_id,
            )
            return ExecutionResult(ExecutionStatus.SIMULATED, "Shadow order logged", check.key, execution_id)

        if submitter is None:
            await self.idempotency.mark_failed(check.key, "no order submitter configured")
            return ExecutionResult(ExecutionStatus.FAILED, "Live mode needs an order submitter", check.key)

        order = OrderRequest(
            decision_id=decision.decision_id,
            market_id=decision.market_id,
            side=side,
            size_usdc=decision.size_usdc,
            idempotency_key=check.key,
        )
        try:
            execution_id = await submitter.submit(order)
        except (SubmissionError, httpx.HTTPError) as exc:
            logger.error("Order submission failed for %s: %s", check.key, exc)
            await self.idempotency.mark_failed(check.key, str(exc))
            return ExecutionResult(ExecutionStatus.FAILED, f"Submission failed: {exc}", check.key)

        await self.idempotency.mark_completed(check.key, execution_id)
        await self.machine.open_position(decision.market_id, decision.size_usdc)
        logger.info("LIVE order %s placed: %s", execution_id, check.key)
        return ExecutionResult(ExecutionStatus.SUBMITTED, "Order submitted", check.key, execution_id)

    async def record_outcome(
        self, decision_id: str, outcome: int, pnl: float | None = None,
    ) -> OutcomeResult | None:
        """Feed a realized outcome to risk, the combiner and the tracker.

        Returns None when the decision is unknown (or there is no tracker).
        """
        if self.tracker is None:
            logger.warning("No tracker configured, cannot resolve decision %s", decision_id)
            return None
        tracked = await self.tracker.get_decision(decision_id)
        if tracked is None:
            logger.warning("Unknown decision %s, outcome ignored", decision_id)
            return None

        backfilled = await self.tracker.backfill_outcome(decision_id, outcome, pnl, self._clock())
        if not backfilled:
            logger.warning("Decision %s already resolved, outcome ignored", decision_id)
            return OutcomeResult(decision_id, False, None, 0)

        decision = tracked.decision
        recorded = False
        if pnl is not None and decision.action.executable and decision.size_usdc:
            await self.machine.record_trade(pnl, decision.market_id, decision.size_usdc)
            recorded = True

        prediction = await self.combiner.update_from_outcome(tracked.signal, outcome)
        return OutcomeResult(decision_id, recorded, prediction, backfilled)
