"""Loader — the consumer read path for registered artifacts.

Reports call the loader; they never touch the orchestrator.  Resolution is
a registry lookup followed by a verified blob read, so it needs no
coordination between concurrent callers.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from datanest.core.cache_store import CacheStore
from datanest.core.errors import CacheCorruption
from datanest.core.registry import LATEST, Registry
from datanest.models.artifacts import ArtifactRecord

logger = logging.getLogger(__name__)


class Loader:
    """Resolves ``(name, version-or-"latest")`` to artifact bytes."""

    def __init__(self, registry: Registry, cache: CacheStore) -> None:
        self._registry = registry
        self._cache = cache

    def resolve_record(self, name: str, version: int | str = LATEST) -> ArtifactRecord:
        return self._registry.get(name, version)

    def resolve(self, name: str, version: int | str = LATEST) -> bytes:
        """Return the exact bytes registered as ``name`` at ``version``.

        Raises ``ArtifactNotFound`` for unknown pairs and
        ``CacheCorruption`` if the stored bytes no longer match the
        registered digest.
        """
        record = self._registry.get(name, version)
        try:
            data = self._cache.read_blob(record.digest)
        except CacheCorruption as exc:
            logger.error("%s v%d cannot be loaded: %s", name, record.version, exc)
            raise
        logger.debug("Resolved %s v%d (%d bytes)", name, record.version, len(data))
        return data

    def resolve_to_path(
        self, name: str, destination: Path, version: int | str = LATEST
    ) -> ArtifactRecord:
        """Write the resolved bytes to ``destination`` atomically."""
        record = self._registry.get(name, version)
        data = self._cache.read_blob(record.digest)

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, destination)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return record
