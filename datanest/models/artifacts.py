"""Versioned artifact ("egg") models — immutable once registered."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ArtifactCandidate(BaseModel):
    """What a package step hands to the registry for registration."""

    model_config = ConfigDict(frozen=True)

    digest: str  # "sha256:<hex>"
    source_cache_key: str
    size_bytes: int = 0
    version: int | None = Field(default=None, ge=1)  # explicit version request
    override: bool = False


class ArtifactRecord(BaseModel):
    """A registered, immutable artifact version."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: int
    digest: str
    source_cache_key: str
    size_bytes: int = 0
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class RegistryRecord(BaseModel):
    """All versions registered under one name, oldest first."""

    model_config = ConfigDict(frozen=True)

    name: str
    versions: list[ArtifactRecord] = []

    @property
    def latest(self) -> ArtifactRecord | None:
        """The highest registered version, or None if nothing is registered."""
        return self.versions[-1] if self.versions else None
