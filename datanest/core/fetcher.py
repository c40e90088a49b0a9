"""Fetcher — retrieves raw data from an external source into the cache.

Supported sources:

- ``http://`` and ``https://`` URLs, streamed with ``requests``
- ``file://`` URLs and plain paths, resolved against the project root

If the destination key is already committed no retrieval happens at all.
Transient failures (connection errors, timeouts, HTTP 429 and 5xx) are
retried with exponential backoff; a checksum mismatch is fatal at once.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import urlsplit
from urllib.request import url2pathname

import requests

from datanest.core.cache_store import CacheStore
from datanest.core.context import StepContext
from datanest.core.errors import ChecksumMismatch, NetworkError
from datanest.core.hasher import content_digest, derive_key, verify_checksum
from datanest.models.cache import CacheEntry

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 425, 429})
_CHUNK_SIZE = 64 * 1024


class Fetcher:
    """Idempotent source retrieval with bounded retries.

    Parameters
    ----------
    cache:
        Where fetched bytes are committed.
    project_root:
        Base directory for relative local sources.
    retries:
        How many times a transient failure is retried (attempts = retries + 1).
    backoff_seconds:
        Base delay; attempt ``n`` waits ``backoff_seconds * 2**n``.
    http_timeout:
        Per-request timeout, further capped by the step deadline.
    session:
        ``requests.Session`` to use; a new one is created if not provided.
    """

    def __init__(
        self,
        cache: CacheStore,
        *,
        project_root: Path,
        retries: int = 3,
        backoff_seconds: float = 0.5,
        http_timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self._cache = cache
        self._root = Path(project_root)
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.http_timeout = http_timeout
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        source: str,
        destination_key: str,
        *,
        checksum: str | None = None,
        context: StepContext | None = None,
    ) -> CacheEntry:
        """Retrieve ``source`` and commit it under ``destination_key``.

        Returns the existing entry without touching the source when the key
        is already committed.
        """
        context = context or StepContext()
        existing = self._cache.get(destination_key)
        if existing is not None:
            logger.info("Source %s already cached as %s", source, destination_key[:12])
            return existing

        def _produce() -> bytes:
            data = self._retrieve_with_retry(source, context)
            if checksum:
                self._verify(source, data, checksum)
            context.checkpoint()
            return data

        entry, _ = self._cache.get_or_compute(destination_key, _produce, context=context)
        return entry

    def probe(
        self,
        source: str,
        base_key: str,
        *,
        checksum: str | None = None,
        context: StepContext | None = None,
    ) -> tuple[CacheEntry, bool]:
        """Always retrieve ``source`` and key the result on its digest.

        Used for sources that may change silently behind a stable URL: the
        returned entry's key is derived from ``base_key`` and the fetched
        digest, so new bytes produce a new key.  Returns ``(entry, was_new)``.
        """
        context = context or StepContext()
        data = self._retrieve_with_retry(source, context)
        if checksum:
            self._verify(source, data, checksum)
        key = derive_key(base_key, content_digest(data))
        context.checkpoint()
        return self._cache.put_if_absent(key, data, context=context)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _retrieve_with_retry(self, source: str, context: StepContext) -> bytes:
        attempts = self.retries + 1
        for attempt in range(attempts):
            context.checkpoint()
            try:
                data = self._retrieve(source, context)
            except NetworkError as exc:
                if not exc.retryable or attempt == attempts - 1:
                    logger.error(
                        "Fetch of %s failed after %d attempt(s): %s",
                        source,
                        attempt + 1,
                        exc,
                    )
                    raise
                delay = self.backoff_seconds * (2 ** attempt)
                logger.warning(
                    "Fetch of %s failed (attempt %d/%d): %s; retrying in %.2fs",
                    source,
                    attempt + 1,
                    attempts,
                    exc,
                    delay,
                )
                context.sleep(delay)
                continue
            logger.info("Fetched %s (%d bytes)", source, len(data))
            return data
        raise AssertionError("unreachable")

    def _retrieve(self, source: str, context: StepContext) -> bytes:
        parts = urlsplit(source)
        if parts.scheme in ("http", "https"):
            return self._retrieve_http(source, context)
        if parts.scheme == "file":
            path = Path(url2pathname(parts.path))
        elif parts.scheme == "":
            path = Path(source)
        else:
            raise NetworkError(
                f"Unsupported source scheme {parts.scheme!r}: {source}",
                source=source,
                retryable=False,
            )

        if not path.is_absolute():
            path = self._root / path
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NetworkError(
                f"Source file not found: {path}", source=source, retryable=False
            ) from exc
        except OSError as exc:
            raise NetworkError(
                f"Cannot read {path}: {exc}", source=source, retryable=True
            ) from exc

    def _retrieve_http(self, source: str, context: StepContext) -> bytes:
        timeout = self.http_timeout
        remaining = context.remaining()
        if remaining is not None:
            timeout = min(timeout, max(remaining, 0.001))

        try:
            with self._session.get(source, stream=True, timeout=timeout) as resp:
                status = resp.status_code
                if status in _RETRYABLE_STATUS or status >= 500:
                    raise NetworkError(
                        f"HTTP {status} for {source}", source=source, retryable=True
                    )
                if status >= 400:
                    raise NetworkError(
                        f"HTTP {status} for {source}", source=source, retryable=False
                    )
                chunks: list[bytes] = []
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    context.checkpoint()
                    chunks.append(chunk)
                return b"".join(chunks)
        except (
            requests.ConnectionError,
            requests.Timeout,
            requests.exceptions.ChunkedEncodingError,
        ) as exc:
            raise NetworkError(
                f"Transient error fetching {source}: {exc}", source=source
            ) from exc
        except requests.RequestException as exc:
            raise NetworkError(
                f"Request for {source} failed: {exc}", source=source, retryable=False
            ) from exc

    @staticmethod
    def _verify(source: str, data: bytes, checksum: str) -> None:
        matches, actual = verify_checksum(data, checksum)
        if not matches:
            raise ChecksumMismatch(source, checksum, actual)
