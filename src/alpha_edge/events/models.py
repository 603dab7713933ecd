"""Source event models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class SourceEvent:
    """A deduplicated news item with a per-source reliability score.

    Attributes:
        event_hash: Stable content hash assigned by the dedupe layer
        source_id: Feed identifier
        source_name: Outlet name; unique names count as independent sources
        title: Headline
        content: Body or summary text, if any
        reliability_score: 0-1 trust score for the source
        ingested_at: When the ingestion layer saw the item
        published_at: Publisher timestamp, if the feed provides one
    """

    event_hash: str
    source_id: str
    source_name: str
    title: str
    reliability_score: float
    ingested_at: datetime
    content: str | None = None
    url: str | None = None
    category: str | None = None
    keywords: tuple[str, ...] = field(default_factory=tuple)
    published_at: datetime | None = None

    @property
    def timestamp(self) -> datetime:
        return self.published_at or self.ingested_at

    @property
    def text(self) -> str:
        return f"{self.title} {self.content or ''}"
