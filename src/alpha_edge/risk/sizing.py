"""Fractional Kelly position sizing with slippage and liquidity penalties."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from alpha_edge.config import Settings, get_settings
from alpha_edge.markets.models import MarketQuality
from alpha_edge.signals.models import Certainty

logger = logging.getLogger(__name__)

DEFAULT_FEES = 0.002
MAX_SLIPPAGE = 0.1
REDUCTION_FACTOR = 0.7


@dataclass(frozen=True)
class SlippageModel:
    base_slippage: float = 0.001
    size_impact: float = 0.0001  # per $1000
    liquidity_factor: float = 0.005
    volatility_factor: float = 0.002


@dataclass(frozen=True)
class SizingConfig:
    kelly_fraction: float = 0.25
    min_size: float = 1.0
    max_size: float = 100.0
    min_edge: float = 0.02
    min_confidence: float = 0.5
    fees: float = DEFAULT_FEES
    min_net_edge: float = 0.01

    @classmethod
    def from_settings(cls, settings: Settings) -> SizingConfig:
        return cls(
            kelly_fraction=settings.kelly_fraction,
            min_size=settings.min_size_usdc,
            max_size=settings.max_size_usdc,
            min_edge=settings.min_edge,
            min_confidence=settings.min_confidence,
            fees=settings.fees,
            min_net_edge=settings.min_net_edge,
        )


@dataclass
class SizingResult:
    """Position size in USDC plus the steps that produced it."""

    size: float
    reasoning: list[str] = field(default_factory=list)
    kelly_raw: float = 0.0
    kelly_adjusted: float = 0.0
    expected_slippage: float = 0.0
    # set whenever size is 0
    rejection_reason: str | None = None


@dataclass(frozen=True)
class ExpectedPnL:
    gross: float
    costs: float
    net: float


def _penalties(quality: MarketQuality, reasoning: list[str]) -> float:
    """Combined liquidity x volatility multiplier."""
    liquidity_mult = 1.0
    if quality.liquidity_score < 0.5:
        liquidity_mult = quality.liquidity_score / 0.5
        reasoning.append(
            f"Liquidity penalty: {liquidity_mult:.1%} (score {quality.liquidity_score:.1%})"
        )

    volatility_mult = 1.0
    if quality.volatility > 0.3:
        volatility_mult = max(0.5, 1 - (quality.volatility - 0.3))
        reasoning.append(
            f"Volatility penalty: {volatility_mult:.1%} (vol {quality.volatility:.1%})"
        )
    return liquidity_mult * volatility_mult


def _precheck(edge: float, confidence: float, config: SizingConfig) -> SizingResult | None:
    reason = None
    if edge < config.min_edge:
        reason = f"Edge too low: {edge:.2%} < {config.min_edge:.2%}"
    elif confidence < config.min_confidence:
        reason = f"Confidence too low: {confidence:.1%} < {config.min_confidence:.1%}"
    if reason is None:
        return None
    return SizingResult(0.0, [reason], rejection_reason=reason)


def _apply_caps(
    size: float, config: SizingConfig, reasoning: list[str],
) -> tuple[float, str | None]:
    """Clamp to [min_size, max_size]; below the minimum the size drops to 0 with a reason."""
    if size < config.min_size:
        reason = f"Size below minimum: {size:.2f} < {config.min_size} USDC"
        reasoning.append(reason)
        return 0.0, reason
    if size > config.max_size:
        reasoning.append(f"Size capped: {size:.2f} -> {config.max_size} USDC")
        return config.max_size, None
    reasoning.append(f"Final size: {size:.2f} USDC")
    return size, None


def estimate_slippage(
    size: float, quality: MarketQuality, model: SlippageModel | None = None,
) -> float:
    """Expected slippage fraction for a given order size, capped at 10%."""
    model = model or SlippageModel()
    slippage = model.base_slippage
    slippage += (size / 1000) * model.size_impact
    if quality.liquidity_score < 1:
        slippage += model.liquidity_factor * (1 - quality.liquidity_score)
    slippage += quality.volatility * model.volatility_factor
    slippage += quality.spread_proxy / 2
    return min(slippage, MAX_SLIPPAGE)


def calculate_effective_edge(raw_edge: float, slippage: float, fees: float = DEFAULT_FEES) -> float:
    return max(0.0, raw_edge - slippage - fees)


def calculate_expected_pnl(
    size: float, edge: float, slippage: float, fees: float = DEFAULT_FEES,
) -> ExpectedPnL:
    return ExpectedPnL(
        gross=size * edge,
        costs=size * (slippage + fees),
        net=size * calculate_effective_edge(edge, slippage, fees),
    )


def is_trade_viable(
    edge: float, slippage: float, fees: float = DEFAULT_FEES, min_net_edge: float = 0.01,
) -> tuple[bool, str]:
    """Whether the edge survives slippage and fees with at least min_net_edge left."""
    net = calculate_effective_edge(edge, slippage, fees)
    if net < min_net_edge:
        return False, (
            f"Net edge too low: {net:.2%} < {min_net_edge:.2%} "
            f"(slippage {slippage:.2%}, fees {fees:.2%})"
        )
    return True, f"Trade viable: net edge {net:.2%}"


def calculate_position_size(
    edge: float,
    confidence: float,
    bankroll: float,
    quality: MarketQuality,
    config: SizingConfig | None = None,
    slippage_model: SlippageModel | None = None,
) -> SizingResult:
    """Fractional Kelly size in USDC.

    Kelly for a binary market is approximated as edge * 2, then scaled by
    the Kelly fraction, confidence and the liquidity/volatility penalties.
    A size of 0 means no trade; the reasoning says why.
    """
    config = config or SizingConfig()
    rejected = _precheck(edge, confidence, config)
    if rejected is not None:
        return rejected

    reasoning: list[str] = []
    kelly_raw = edge * 2
    reasoning.append(f"Raw Kelly: {kelly_raw:.2%}")

    kelly_adjusted = kelly_raw * config.kelly_fraction * confidence
    reasoning.append(
        f"Kelly after fraction ({config.kelly_fraction:.0%}) "
        f"and confidence ({confidence:.1%}): {kelly_adjusted:.2%}"
    )

    size = bankroll * kelly_adjusted * _penalties(quality, reasoning)
    size, rejection = _apply_caps(size, config, reasoning)

    slippage = estimate_slippage(size, quality, slippage_model)
    reasoning.append(f"Expected slippage: {slippage:.3%}")

    return SizingResult(
        size=round(size, 2),
        reasoning=reasoning,
        kelly_raw=kelly_raw,
        kelly_adjusted=kelly_adjusted,
        expected_slippage=slippage,
        rejection_reason=rejection,
    )


def _reduce_until_viable(
    result: SizingResult,
    edge: float,
    quality: MarketQuality,
    config: SizingConfig,
    slippage_model: SlippageModel | None,
    max_iterations: int,
) -> SizingResult:
    for _ in range(max_iterations):
        if result.size <= 0:
            break
        slippage = estimate_slippage(result.size, quality, slippage_model)
        viable, reason = is_trade_viable(edge, slippage, config.fees, config.min_net_edge)
        if viable:
            break

        new_size = result.size * REDUCTION_FACTOR
        if new_size < config.min_size:
            result.size = 0.0
            result.rejection_reason = f"Not viable after slippage adjustment: {reason}"
            result.reasoning.append(result.rejection_reason)
            break
        result.size = round(new_size, 2)
        result.reasoning.append(f"Size reduced for slippage: {result.size:.2f} USDC")

    result.expected_slippage = estimate_slippage(result.size, quality, slippage_model)
    return result


def calculate_optimal_size(
    edge: float,
    confidence: float,
    bankroll: float,
    quality: MarketQuality,
    config: SizingConfig | None = None,
    slippage_model: SlippageModel | None = None,
    max_iterations: int = 5,
) -> SizingResult:
    """Kelly size, shrunk by 30% per step while slippage makes the trade unviable."""
    config = config or SizingConfig()
    result = calculate_position_size(edge, confidence, bankroll, quality, config, slippage_model)
    return _reduce_until_viable(result, edge, quality, config, slippage_model, max_iterations)


def calculate_breaking_size(
    edge: float,
    confidence: float,
    bankroll: float,
    quality: MarketQuality,
    config: SizingConfig | None = None,
    bankroll_fraction: float = 0.5,
    slippage_model: SlippageModel | None = None,
) -> SizingResult:
    """Size for breaking_confirmed signals: up to bankroll_fraction of bankroll.

    Kelly is bypassed; the edge/confidence minimums and the liquidity and
    volatility penalties still apply. The max_size cap is lifted to
    bankroll * bankroll_fraction.
    """
    config = config or SizingConfig()
    rejected = _precheck(edge, confidence, config)
    if rejected is not None:
        return rejected

    cap = bankroll * bankroll_fraction
    reasoning = [f"BREAKING CONFIRMED: target {bankroll_fraction:.0%} of bankroll ({cap:.2f} USDC)"]
    size = cap * _penalties(quality, reasoning)
    size, rejection = _apply_caps(size, replace(config, max_size=cap), reasoning)

    logger.warning(
        "Breaking-confirmed sizing: %.2f USDC of %.2f bankroll (edge=%.1f%%)",
        size, bankroll, edge * 100,
    )
    slippage = estimate_slippage(size, quality, slippage_model)
    reasoning.append(f"Expected slippage: {slippage:.3%}")
    return SizingResult(
        size=round(size, 2),
        reasoning=reasoning,
        kelly_raw=edge * 2,
        kelly_adjusted=bankroll_fraction,
        expected_slippage=slippage,
        rejection_reason=rejection,
    )


class PositionSizer:
    """Sizing entry point bound to one config, fee schedule and slippage model."""

    def __init__(
        self,
        config: SizingConfig | None = None,
        slippage_model: SlippageModel | None = None,
        breaking_bankroll_fraction: float | None = None,
    ) -> None:
        settings = get_settings()
        self.config = config or SizingConfig.from_settings(settings)
        self.slippage_model = slippage_model or SlippageModel()
        self.breaking_bankroll_fraction = (
            breaking_bankroll_fraction
            if breaking_bankroll_fraction is not None
            else settings.breaking_bankroll_fraction
        )

    def size(
        self, edge: float, confidence: float, quality: MarketQuality, bankroll: float,
    ) -> SizingResult:
        return calculate_optimal_size(
            edge, confidence, bankroll, quality, self.config, self.slippage_model,
        )

    def size_with_certainty(
        self,
        certainty: Certainty,
        edge: float,
        confidence: float,
        quality: MarketQuality,
        bankroll: float,
        min_edge: float | None = None,
    ) -> SizingResult:
        """Size by certainty level.

        low/medium: configured Kelly fraction; high: half Kelly;
        breaking_confirmed: up to half the bankroll. min_edge overrides the
        configured minimum, e.g. with the operator-tuned risk setting.
        """
        config = self.config
        if min_edge is not None:
            config = replace(config, min_edge=min_edge)

        if certainty is Certainty.BREAKING_CONFIRMED:
            result = calculate_breaking_size(
                edge, confidence, bankroll, quality, config,
                self.breaking_bankroll_fraction, self.slippage_model,
            )
            return _reduce_until_viable(
                result, edge, quality, config, self.slippage_model, 5,
            )

        if certainty is Certainty.HIGH:
            config = replace(config, kelly_fraction=0.5)
        result = calculate_optimal_size(
            edge, confidence, bankroll, quality, config, self.slippage_model,
        )
        result.reasoning.insert(0, f"Certainty {certainty.value}: Kelly fraction {config.kelly_fraction:.2f}")
        return result

    def viability(self, edge: float, size: float, quality: MarketQuality) -> tuple[bool, str]:
        slippage = estimate_slippage(size, quality, self.slippage_model)
        return is_trade_viable(edge, slippage, self.config.fees, self.config.min_net_edge)

    def expected_pnl(self, edge: float, size: float, quality: MarketQuality) -> ExpectedPnL:
        slippage = estimate_slippage(size, quality, self.slippage_model)
        return calculate_expected_pnl(size, edge, slippage, self.config.fees)
