"""Append-only artifact registry backed by SQLite.

The registry maps an artifact name to its ordered list of versions.

Design:
- Append-only: only ``register()`` writes; there is no update and no delete.
- Versions are allocated inside ``BEGIN IMMEDIATE`` so concurrent
  processes registering the same name never receive the same number.
- "latest" is the highest version; it moves in the same transaction that
  inserts the new row, so readers never observe a half-registered version.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing
from datetime import datetime
from pathlib import Path
from typing import Any

from datanest.core.errors import ArtifactNotFound, RegistryConflict
from datanest.models.artifacts import ArtifactCandidate, ArtifactRecord, RegistryRecord

logger = logging.getLogger(__name__)

LATEST = "latest"

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_ARTIFACTS = """
CREATE TABLE IF NOT EXISTS artifacts (
    name              TEXT    NOT NULL,
    version           INTEGER NOT NULL,
    digest            TEXT    NOT NULL,
    source_cache_key  TEXT    NOT NULL,
    size_bytes        INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT    NOT NULL,
    PRIMARY KEY (name, version)
);
"""

_SELECT = (
    "SELECT name, version, digest, source_cache_key, size_bytes, created_at "
    "FROM artifacts"
)


def parse_version_selector(selector: int | str | None) -> int | None:
    """Turn ``"latest"``, ``3``, ``"3"`` or ``"v3"`` into a version or None.

    None means "latest".
    """
    if selector is None:
        return None
    if isinstance(selector, int):
        version = selector
    else:
        text = selector.strip().lower()
        if text == LATEST:
            return None
        try:
            version = int(text.removeprefix("v"))
        except ValueError as exc:
            raise ValueError(f"Invalid version selector: {selector!r}") from exc
    if version < 1:
        raise ValueError(f"Versions start at 1, got {version}")
    return version


class Registry:
    """Versioned, append-only registry of packaged artifacts.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(_CREATE_ARTIFACTS)

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def register(self, name: str, candidate: ArtifactCandidate) -> ArtifactRecord:
        """Register ``candidate`` under ``name`` and return its record.

        - explicit version, same digest already there: existing record
        - explicit version, different digest: ``RegistryConflict`` unless
          ``candidate.override``, which registers under a new version and
          keeps the old one
        - explicit version below the latest and unused: ``RegistryConflict``
          unless overridden, since versions never go backwards
        - no version, latest has the same digest: latest, unchanged
        - otherwise: latest + 1
        """
        with self._lock, closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                record = self._register_locked(conn, name, candidate)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        return record

    def _register_locked(
        self, conn: sqlite3.Connection, name: str, candidate: ArtifactCandidate
    ) -> ArtifactRecord:
        latest = self._fetch_latest(conn, name)
        max_version = latest.version if latest else 0

        if candidate.version is not None:
            existing = self._fetch_version(conn, name, candidate.version)
            if existing is not None:
                if existing.digest == candidate.digest:
                    logger.info(
                        "%s v%d already registered with the same content",
                        name,
                        existing.version,
                    )
                    return existing
                if not candidate.override:
                    raise RegistryConflict(
                        f"{name} v{candidate.version} is already registered with "
                        f"digest {existing.digest}; refusing to register "
                        f"{candidate.digest} without override"
                    )
                new_version = max_version + 1
                logger.warning(
                    "Override: %s v%d kept, new content registered as v%d",
                    name,
                    candidate.version,
                    new_version,
                )
            elif candidate.version < max_version:
                if not candidate.override:
                    raise RegistryConflict(
                        f"{name} v{candidate.version} is below the latest version "
                        f"v{max_version}; versions never decrease"
                    )
                new_version = max_version + 1
            else:
                new_version = candidate.version
        else:
            if latest is not None and latest.digest == candidate.digest:
                logger.info("%s latest (v%d) already has this content", name, latest.version)
                return latest
            new_version = max_version + 1

        record = ArtifactRecord(
            name=name,
            version=new_version,
            digest=candidate.digest,
            source_cache_key=candidate.source_cache_key,
            size_bytes=candidate.size_bytes,
        )
        conn.execute(
            "INSERT INTO artifacts "
            "(name, version, digest, source_cache_key, size_bytes, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                record.name,
                record.version,
                record.digest,
                record.source_cache_key,
                record.size_bytes,
                record.created_at.isoformat(),
            ),
        )
        logger.info("Registered %s v%d (%s)", name, record.version, record.digest)
        return record

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get(self, name: str, version: int | str | None = LATEST) -> ArtifactRecord:
        """Return the record for ``name`` at ``version`` (or "latest").

        Raises ``ArtifactNotFound`` if nothing matches.
        """
        number = parse_version_selector(version)
        with closing(self._connect()) as conn:
            if number is None:
                record = self._fetch_latest(conn, name)
            else:
                record = self._fetch_version(conn, name, number)
        if record is None:
            label = LATEST if number is None else f"v{number}"
            raise ArtifactNotFound(f"No artifact {name} {label}")
        return record

    def latest(self, name: str) -> ArtifactRecord | None:
        """Return the latest record for ``name``, or None."""
        with closing(self._connect()) as conn:
            return self._fetch_latest(conn, name)

    def versions(self, name: str) -> list[ArtifactRecord]:
        """All versions of ``name``, oldest first."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"{_SELECT} WHERE name = ? ORDER BY version ASC", (name,)
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def record(self, name: str) -> RegistryRecord:
        return RegistryRecord(name=name, versions=self.versions(name))

    def names(self) -> list[str]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT DISTINCT name FROM artifacts ORDER BY name"
            ).fetchall()
        return [row[0] for row in rows]

    def export(self) -> dict[str, list[dict[str, Any]]]:
        """Registry metadata as ``name -> [{version, digest, ...}]``."""
        return {
            name: [
                {
                    "version": r.version,
                    "digest": r.digest,
                    "source_cache_key": r.source_cache_key,
                    "size_bytes": r.size_bytes,
                    "created_at": r.created_at.isoformat(),
                }
                for r in self.versions(name)
            ]
            for name in self.names()
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _fetch_latest(self, conn: sqlite3.Connection, name: str) -> ArtifactRecord | None:
        row = conn.execute(
            f"{_SELECT} WHERE name = ? ORDER BY version DESC LIMIT 1", (name,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def _fetch_version(
        self, conn: sqlite3.Connection, name: str, version: int
    ) -> ArtifactRecord | None:
        row = conn.execute(
            f"{_SELECT} WHERE name = ? AND version = ?", (name, version)
        ).fetchone()
        return self._row_to_record(row) if row else None

    @staticmethod
    def _row_to_record(row: tuple) -> ArtifactRecord:
        name, version, digest, source_cache_key, size_bytes, created_at = row
        return ArtifactRecord(
            name=name,
            version=version,
            digest=digest,
            source_cache_key=source_cache_key,
            size_bytes=size_bytes,
            created_at=datetime.fromisoformat(created_at),
        )
