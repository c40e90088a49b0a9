"""Content-addressed, immutable blob store.

Storage layout: {base_path}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
Writes go to a temporary file in the same directory and are moved into
place with ``os.replace``, so a blob is either fully present or absent.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from datanest.core.errors import CacheCorruption
from datanest.core.hasher import content_digest, file_sha256, strip_digest

logger = logging.getLogger(__name__)


class BlobStore:
    """SHA-256 keyed, immutable blob store.

    Every blob is stored under its SHA-256 digest. Storing the same content
    twice is a no-op. The only removal path is ``discard_corrupt``, which
    deletes a blob that no longer matches its address.

    Parameters
    ----------
    base_path:
        Root directory for blob storage.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    def blob_path(self, digest: str) -> Path:
        """Compute the storage path for a digest.

        Layout: {base}/{sha256[0:2]}/{sha256[2:4]}/{sha256}.dat
        """
        hexdigest = strip_digest(digest)
        return self._base / hexdigest[:2] / hexdigest[2:4] / f"{hexdigest}.dat"

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(self, data: bytes) -> str:
        """Store bytes and return their ``sha256:<hex>`` digest."""
        digest = content_digest(data)
        path = self.blob_path(digest)

        if self.exists(digest):
            if not self.verify(digest):
                raise CacheCorruption(
                    f"Existing blob at {digest} failed integrity check",
                    digest=digest,
                )
            return digest

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Stored blob %s (%d bytes)", digest, len(data))
        return digest

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    def retrieve(self, digest: str) -> bytes:
        """Return the bytes stored under ``digest``, verifying them.

        Raises ``FileNotFoundError`` if absent and ``CacheCorruption`` if
        the stored bytes hash to something else.
        """
        path = self.blob_path(digest)
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {digest}")
        data = path.read_bytes()
        actual = content_digest(data)
        if actual != f"sha256:{strip_digest(digest)}":
            raise CacheCorruption(
                f"Blob {digest} is corrupt (contents hash to {actual})",
                digest=digest,
            )
        return data

    # ------------------------------------------------------------------
    # Check and verify
    # ------------------------------------------------------------------

    def exists(self, digest: str) -> bool:
        return self.blob_path(digest).exists()

    def verify(self, digest: str) -> bool:
        """Re-hash stored data and compare against the digest.

        Returns True if the stored bytes match the expected hash.
        """
        path = self.blob_path(digest)
        if not path.exists():
            return False
        return file_sha256(path) == f"sha256:{strip_digest(digest)}"

    def discard_corrupt(self, digest: str) -> bool:
        """Delete a blob only if it fails verification.

        Returns True when a corrupt blob was removed.
        """
        if self.exists(digest) and not self.verify(digest):
            self.blob_path(digest).unlink()
            logger.warning("Discarded corrupt blob %s", digest)
            return True
        return False
