"""Turn a sized, gate-checked signal into a Decision."""

from __future__ import annotations

import uuid

from alpha_edge.common.types import Clock, utc_now
from alpha_edge.risk.models import GateResult, RiskCheckResult
from alpha_edge.risk.sizing import SizingResult, is_trade_viable
from alpha_edge.signals.models import (
    AlphaSignal,
    Certainty,
    Decision,
    DecisionAction,
    Rationale,
)

_CONVICTION = (Certainty.HIGH, Certainty.BREAKING_CONFIRMED)


def classify_action(
    signal: AlphaSignal,
    sizing: SizingResult,
    risk: RiskCheckResult,
    gate: GateResult,
    min_edge: float,
    fees: float,
    min_net_edge: float,
) -> tuple[DecisionAction, list[str]]:
    """Pick the action and collect rejection reasons.

    reject: size 0, a failed gate, or trading halted.
    high_conviction: high/breaking certainty and a viable net edge.
    trade: viable net edge.
    watch: edge above the minimum but eaten by costs.
    show: anything else.
    """
    reasons: list[str] = []
    if sizing.size <= 0:
        reasons.append(sizing.rejection_reason or "Size is zero")
    reasons.extend(risk.failed_reasons)
    if not gate.allowed:
        reasons.append(gate.reason)
    if reasons:
        return DecisionAction.REJECT, reasons

    viable, why = is_trade_viable(signal.predicted_edge, sizing.expected_slippage, fees, min_net_edge)
    if viable and signal.certainty in _CONVICTION:
        return DecisionAction.HIGH_CONVICTION, []
    if viable:
        return DecisionAction.TRADE, []
    if signal.predicted_edge >= min_edge:
        return DecisionAction.WATCH, [why]
    return DecisionAction.SHOW, [why]


def build_decision(
    signal: AlphaSignal,
    sizing: SizingResult,
    risk: RiskCheckResult,
    gate: GateResult,
    *,
    min_edge: float,
    fees: float,
    min_net_edge: float,
    top_features: list[str] | None = None,
    clock: Clock = utc_now,
) -> Decision:
    action, reasons = classify_action(signal, sizing, risk, gate, min_edge, fees, min_net_edge)
    return Decision(
        decision_id=uuid.uuid4().hex,
        signal_id=signal.signal_id,
        market_id=signal.market_id,
        direction=signal.direction,
        action=action,
        size_usdc=None if action is DecisionAction.REJECT else sizing.size,
        risk_checks=risk.checks,
        rationale=Rationale(
            source_type=signal.source_type,
            edge=signal.predicted_edge,
            confidence=signal.confidence,
            top_features=tuple(top_features or ()),
            rejection_reasons=tuple(reasons),
        ),
        created_at=clock(),
    )
