"""Pre-trade risk gates evaluated against the current risk state."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from alpha_edge.config import Settings
from alpha_edge.markets.models import MarketQuality
from alpha_edge.risk.models import RiskCheckResult, RiskChecks, RiskState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateConfig:
    """Market-quality thresholds. Exposure limits come from RiskState.settings."""

    min_liquidity: float = 0.3
    max_spread: float = 0.05

    @classmethod
    def from_settings(cls, settings: Settings) -> GateConfig:
        return cls(min_liquidity=settings.min_liquidity_score, max_spread=settings.max_spread)


def check_risk_gates(
    state: RiskState,
    size_usdc: float,
    market_id: str,
    quality: MarketQuality,
    config: GateConfig | None = None,
) -> RiskCheckResult:
    """Evaluate all six gates; never raises, failures are reported in the result."""
    config = config or GateConfig()
    limits = state.settings
    failed: list[str] = []

    kill_switch_ok = not state.kill_switch_active
    if not kill_switch_ok:
        failed.append(f"Kill switch active: {state.kill_switch_reason or 'no reason given'}")

    # Worst case: the whole stake is lost
    daily_loss_ok = state.daily_pnl - size_usdc >= -limits.max_daily_loss
    if not daily_loss_ok:
        failed.append(
            f"Daily loss limit: {state.daily_pnl:.2f} - {size_usdc:.2f} "
            f"< -{limits.max_daily_loss:.2f} USDC"
        )

    max_positions_ok = state.open_positions < limits.max_positions
    if not max_positions_ok:
        failed.append(f"Max positions reached: {state.open_positions}/{limits.max_positions}")

    exposure = state.positions.get(market_id, 0.0)
    per_market_cap_ok = exposure + size_usdc <= limits.max_per_market
    if not per_market_cap_ok:
        failed.append(
            f"Market cap reached: {exposure:.2f} + {size_usdc:.2f} "
            f"> {limits.max_per_market:.2f} USDC"
        )

    liquidity_ok = quality.liquidity_score >= config.min_liquidity
    if not liquidity_ok:
        failed.append(
            f"Liquidity too low: {quality.liquidity_score:.1%} (min {config.min_liquidity:.1%})"
        )

    spread_ok = quality.spread_proxy <= config.max_spread
    if not spread_ok:
        failed.append(f"Spread too high: {quality.spread_proxy:.2%} (max {config.max_spread:.2%})")

    checks = RiskChecks(
        daily_loss_ok=daily_loss_ok,
        max_positions_ok=max_positions_ok,
        per_market_cap_ok=per_market_cap_ok,
        liquidity_ok=liquidity_ok,
        spread_ok=spread_ok,
        kill_switch_ok=kill_switch_ok,
    )

    if failed:
        logger.warning(
            "Risk gates failed for %s (size=%.2f): %s", market_id, size_usdc, "; ".join(failed),
        )
    else:
        logger.debug("Risk gates passed for %s (size=%.2f)", market_id, size_usdc)

    return RiskCheckResult(checks=checks, passed=checks.all_passed, failed_reasons=failed)
