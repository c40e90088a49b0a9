"""Cache store: cache key → committed blob, with single-flight commits.

Layout under the cache directory::

    blobs/{d[0:2]}/{d[2:4]}/{digest}.dat   content-addressed bytes
    entries/{k[0:2]}/{key}.json            CacheEntry metadata
    locks/{key}.lock                       flock targets for single-flight

An entry is written only while holding the per-key lock and only if no
entry exists yet, so a key is bound to exactly one digest for the life of
the store.  Concurrent callers (threads of one process, or separate
processes on the same host) for the same key serialize on the lock; the
first one computes and commits, the rest observe its entry.
"""

from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from datanest.core.blob_store import BlobStore
from datanest.core.context import StepContext
from datanest.core.errors import CacheCorruption
from datanest.models.cache import CacheEntry

logger = logging.getLogger(__name__)

_LOCK_POLL_SECONDS = 0.05


class CacheStore:
    """Content-addressed key → blob storage with atomic put-if-absent.

    Parameters
    ----------
    base_path:
        The cache directory.  Created if it does not exist.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self.blobs = BlobStore(self._base / "blobs")
        self._entries_dir = self._base / "entries"
        self._locks_dir = self._base / "locks"
        self._entries_dir.mkdir(parents=True, exist_ok=True)
        self._locks_dir.mkdir(parents=True, exist_ok=True)

        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        # Holders plus waiters per key; the lock is dropped when this reaches 0
        self._key_users: dict[str, int] = {}

    def _entry_path(self, key: str) -> Path:
        return self._entries_dir / key[:2] / f"{key}.json"

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def key_lock(self, key: str, context: StepContext | None = None) -> Iterator[None]:
        """Hold the exclusive single-flight lock for ``key``.

        A per-key thread lock serializes callers inside this process and an
        ``flock`` on ``locks/{key}.lock`` serializes separate processes.
        Both are polled, so a waiter still honours ``context``'s deadline
        and cancel signal.
        """
        context = context or StepContext()
        with self._guard:
            thread_lock = self._key_locks.setdefault(key, threading.Lock())
            self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            while not thread_lock.acquire(timeout=_LOCK_POLL_SECONDS):
                context.checkpoint()
            try:
                lock_path = self._locks_dir / f"{key}.lock"
                with lock_path.open("a") as fh:
                    while True:
                        try:
                            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                            break
                        except BlockingIOError:
                            context.sleep(_LOCK_POLL_SECONDS)
                    try:
                        yield
                    finally:
                        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            finally:
                thread_lock.release()
        finally:
            with self._guard:
                self._key_users[key] -= 1
                if not self._key_users[key]:
                    del self._key_users[key]
                    del self._key_locks[key]

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def contains(self, key: str) -> bool:
        """Whether an entry has been committed for ``key`` (unverified)."""
        return self._entry_path(key).exists()

    def get(self, key: str, *, verify: bool = True) -> CacheEntry | None:
        """Return the committed entry for ``key``, or None.

        With ``verify`` the blob is re-hashed; a mismatch raises
        ``CacheCorruption`` and is never repaired here.
        """
        path = self._entry_path(key)
        if not path.exists():
            return None
        try:
            entry = CacheEntry.model_validate_json(path.read_bytes())
        except ValidationError as exc:
            raise CacheCorruption(
                f"Cache entry {key} is unreadable: {exc}", key=key
            ) from exc
        if entry.key != key:
            raise CacheCorruption(
                f"Cache entry file for {key} records key {entry.key}", key=key
            )
        if verify and not self.blobs.verify(entry.digest):
            raise CacheCorruption(
                f"Cache entry {key} points at missing or corrupt blob {entry.digest}",
                key=key,
                digest=entry.digest,
            )
        return entry

    def read(self, key: str) -> bytes:
        """Return the verified bytes committed under ``key``."""
        entry = self.get(key, verify=False)
        if entry is None:
            raise KeyError(f"No cache entry for {key}")
        try:
            return self.read_blob(entry.digest)
        except CacheCorruption as exc:
            raise CacheCorruption(str(exc), key=key, digest=entry.digest) from exc

    def read_blob(self, digest: str) -> bytes:
        """Return the verified bytes stored under a content digest."""
        try:
            return self.blobs.retrieve(digest)
        except FileNotFoundError as exc:
            raise CacheCorruption(
                f"Blob {digest} is missing from the cache", digest=digest
            ) from exc

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def put_if_absent(
        self, key: str, blob: bytes, *, context: StepContext | None = None
    ) -> tuple[CacheEntry, bool]:
        """Commit ``blob`` under ``key`` unless an entry already exists.

        Returns ``(entry, was_new)``.  Exactly one concurrent caller writes;
        the others block on the key lock and receive the same entry.
        """
        return self.get_or_compute(key, lambda: blob, context=context)

    def get_or_compute(
        self,
        key: str,
        producer: Callable[[], bytes],
        *,
        context: StepContext | None = None,
    ) -> tuple[CacheEntry, bool]:
        """Return the entry for ``key``, running ``producer`` at most once.

        The key lock is held while ``producer`` runs, so racing callers
        wait for the first computation instead of repeating it.  If
        ``producer`` raises, nothing is committed and the error propagates.
        A caller waiting on the lock gives up with ``StepTimeout`` or
        ``RunCancelled`` as soon as ``context`` says so.
        """
        existing = self.get(key)
        if existing is not None:
            return existing, False

        with self.key_lock(key, context):
            existing = self.get(key)
            if existing is not None:
                logger.debug("Cache key %s committed by a concurrent caller", key[:12])
                return existing, False
            data = producer()
            return self._commit(key, data), True

    def _commit(self, key: str, data: bytes) -> CacheEntry:
        """Store the blob, then publish the entry with an atomic rename."""
        digest = self.blobs.store(data)
        entry = CacheEntry(key=key, digest=digest, size_bytes=len(data))

        path = self._entry_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(entry.model_dump_json().encode("utf-8"))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info("Committed cache entry %s -> %s", key[:12], digest)
        return entry

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def purge(self, key: str) -> bool:
        """Remove the entry for ``key`` so the next run rebuilds it.

        The referenced blob is deleted too when it fails verification; an
        intact blob stays, since other keys or registered artifacts may
        share it.  Returns True if an entry was removed.
        """
        with self.key_lock(key):
            path = self._entry_path(key)
            if not path.exists():
                return False
            try:
                entry = CacheEntry.model_validate_json(path.read_bytes())
            except ValidationError:
                entry = None
            path.unlink()
            if entry is not None:
                self.blobs.discard_corrupt(entry.digest)
        logger.warning("Purged cache entry %s", key)
        return True
