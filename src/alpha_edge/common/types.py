"""Shared type aliases and clock helpers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import TypeAlias

# JSON-like dict
JsonDict: TypeAlias = dict[str, object]

# Injectable time source, must return an aware datetime
Clock: TypeAlias = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width ISO timestamp so lexical order matches time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(s: str | None) -> datetime | None:
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
