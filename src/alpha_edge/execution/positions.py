"""Reconcile the risk state's open positions with the venue after a restart."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from alpha_edge.common.http import HttpClient
from alpha_edge.config import get_settings
from alpha_edge.risk.machine import RiskStateMachine
from alpha_edge.risk.models import Actor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VenuePosition:
    market_id: str
    outcome: str
    shares: float
    avg_price: float
    question: str | None = None

    @property
    def exposure(self) -> float:
        """USDC invested: shares x average entry price."""
        return self.shares * self.avg_price


class PositionSource(Protocol):
    async def fetch_positions(self) -> list[VenuePosition]: ...


def raw_to_position(raw: dict) -> VenuePosition | None:
    """Convert a data API position dict; None when it has no market or no shares."""
    market_id = str(raw.get("conditionId") or raw.get("market") or "")
    try:
        shares = float(raw.get("size", 0) or 0)
        avg_price = float(raw.get("avgPrice", 0) or 0)
    except (TypeError, ValueError):
        logger.debug("Unparseable position for market %s: %r", market_id, raw)
        return None
    if not market_id or shares <= 0:
        return None
    return VenuePosition(
        market_id=market_id,
        outcome=str(raw.get("outcome", "")),
        shares=shares,
        avg_price=avg_price,
        question=raw.get("title"),
    )


class VenuePositionClient:
    """Reads the wallet's open positions from the venue data API."""

    def __init__(
        self,
        wallet_address: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.wallet_address = wallet_address if wallet_address is not None else settings.wallet_address
        self.base_url = base_url or settings.venue_data_api_url
        self._transport = transport

    async def fetch_positions(self) -> list[VenuePosition]:
        if not self.wallet_address:
            logger.info("No wallet address configured, venue has no positions for us")
            return []

        async with HttpClient(base_url=self.base_url, transport=self._transport) as client:
            resp = await client.get("/positions", params={"user": self.wallet_address})
            data = resp.json()

        positions = [p for p in (raw_to_position(raw) for raw in data or []) if p is not None]
        logger.info("Fetched %d open positions from venue", len(positions))
        return positions


@dataclass
class SyncResult:
    synced: bool
    reason: str | None = None
    open_positions: int = 0
    total_exposure: float = 0.0
    positions_per_market: dict[str, float] = field(default_factory=dict)


async def sync_positions_from_venue(
    machine: RiskStateMachine, source: PositionSource, actor: Actor = Actor.SYSTEM,
) -> SyncResult:
    """Replace the machine's positions with the venue's. On a fetch error nothing changes."""
    try:
        positions = await source.fetch_positions()
    except httpx.HTTPError as exc:
        logger.warning("Position sync failed, keeping stored positions: %s", exc)
        state = machine.state
        return SyncResult(
            synced=False,
            reason=f"Venue API error: {exc}",
            open_positions=state.open_positions,
            total_exposure=state.total_exposure,
            positions_per_market=dict(state.positions),
        )

    per_market: dict[str, float] = {}
    for position in positions:
        per_market[position.market_id] = per_market.get(position.market_id, 0.0) + position.exposure

    await machine.sync_positions(per_market, actor)
    state = machine.state
    return SyncResult(
        synced=True,
        open_positions=state.open_positions,
        total_exposure=state.total_exposure,
        positions_per_market=dict(state.positions),
    )
