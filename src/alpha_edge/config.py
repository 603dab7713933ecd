"""Application configuration via pydantic-settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # SQLite database path for risk state, idempotency keys and decisions
    db_path: Path = Path.home() / ".alpha-edge" / "alpha.db"

    # Bankroll used for sizing (USDC)
    bankroll_usdc: float = 1000.0

    # Kelly criterion fraction (0.25 = quarter-Kelly)
    kelly_fraction: float = 0.25

    # Sizing gates
    min_edge: float = 0.02
    min_confidence: float = 0.5
    min_size_usdc: float = 1.0
    max_size_usdc: float = 100.0

    # Venue fees and minimum edge left after slippage + fees
    fees: float = 0.002
    min_net_edge: float = 0.01

    # Share of bankroll a breaking_confirmed signal may take
    breaking_bankroll_fraction: float = 0.5

    # Time-delay generator thresholds
    min_source_count: int = 2
    max_news_age_minutes: float = 60.0
    min_match_confidence: float = 0.3
    max_price_move_since_news: float = 0.05
    min_source_reliability: float = 0.8

    # Mispricing generator thresholds
    mispricing_min_edge: float = 0.03
    mispricing_max_uncertainty: float = 0.15

    # Meta-combiner online learning
    combiner_learning_rate: float = 0.01
    combiner_regularization: float = 0.001

    # Risk state defaults (tunable at runtime, persisted after first load)
    max_bet_usdc: float = 10.0
    risk_per_trade_percent: float = 2.0
    min_alpha: float = 5.0
    min_volume_usd: float = 1000.0
    max_daily_loss: float = 100.0
    max_positions: int = 10
    max_per_market: float = 50.0

    # Market quality gates
    min_liquidity_score: float = 0.3
    max_spread: float = 0.05

    # Intraday protection
    cooldown_minutes: float = 15.0
    max_consecutive_losses: int = 3

    # Idempotency key lifetime
    idempotency_ttl_hours: float = 24.0

    # Wallet credentials (presence only is checked, live mode requires both)
    wallet_private_key: str = ""
    wallet_address: str = ""

    # Venue data API for position reconciliation
    venue_data_api_url: str = "https://data-api.polymarket.com"

    # HTTP request timeout seconds
    http_timeout: float = 30.0

    # Root log level for the CLI
    log_level: str = "INFO"

    @property
    def wallet_configured(self) -> bool:
        return bool(self.wallet_private_key and self.wallet_address)

    @field_validator("kelly_fraction", "breaking_bankroll_fraction")
    @classmethod
    def _fraction_in_range(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"fraction must be in (0, 1], got {v}")
        return v

    @field_validator("min_edge", "min_net_edge", "fees", "mispricing_min_edge")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"value must be >= 0, got {v}")
        return v

    @field_validator(
        "min_confidence", "min_match_confidence", "min_source_reliability",
        "min_liquidity_score",
    )
    @classmethod
    def _probability_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"value must be in [0, 1], got {v}")
        return v

    @field_validator("max_daily_loss", "idempotency_ttl_hours", "bankroll_usdc")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"value must be > 0, got {v}")
        return v


def get_settings() -> Settings:
    """Settings from the environment and .env, read fresh on every call."""
    return Settings()
