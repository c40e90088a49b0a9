"""Cache entry model — immutable once written."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class CacheEntry(BaseModel):
    """Metadata for a committed cache entry.

    The bytes live in the blob store under ``digest``; the entry binds a
    cache key to exactly one digest and is never overwritten.
    """

    model_config = ConfigDict(frozen=True)

    key: str  # 64-hex cache key
    digest: str  # "sha256:<hex>" of the blob
    size_bytes: int
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
