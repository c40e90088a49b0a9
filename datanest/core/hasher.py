"""Canonical hashing helpers for cache keys and content addressing.

Cache keys are the SHA-256 of a canonical JSON document, so the same step
definition and the same upstream digests always hash to the same key,
independent of dict ordering or whitespace.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
from pathlib import Path
from typing import Any

_CHUNK_SIZE = 1024 * 1024
_HEX_RE = re.compile(r"[0-9a-f]+")


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes — deterministic, sorted, compact.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_digest(data: bytes) -> str:
    """Return the ``sha256:<hex>`` digest used for blobs and artifacts."""
    return f"sha256:{sha256_hex(data)}"


def strip_digest(digest: str) -> str:
    """Strip the ``sha256:`` prefix from a digest, if present."""
    return digest.removeprefix("sha256:")


def file_sha256(path: Path) -> str:
    """Hash a file in chunks and return its ``sha256:<hex>`` digest."""
    h = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def compute_cache_key(
    kind: str,
    *,
    script_hash: str = "",
    upstream: dict[str, str] | None = None,
    source: str = "",
    params: dict[str, Any] | None = None,
) -> str:
    """SHA-256 of canonical(kind, script hash, sorted upstream digests, source).

    ``upstream`` maps input name to the upstream output digest; it is sorted
    into (name, digest) pairs so declaration order does not leak into the
    key.  ``params`` holds any other step setting that changes the output.
    """
    payload = {
        "kind": kind,
        "script_hash": script_hash,
        "upstream": sorted((upstream or {}).items()),
        "source": source,
        "params": params or {},
    }
    return sha256_hex(canonical_json_bytes(payload))


def derive_key(base_key: str, digest: str) -> str:
    """Derive a new cache key from an existing key and a content digest."""
    return sha256_hex(canonical_json_bytes({"base": base_key, "digest": digest}))


def parse_checksum(checksum: str) -> tuple[str, str]:
    """Split ``<algo>:<hex>`` into its parts; a bare hex digest is SHA-256."""
    if ":" in checksum:
        algo, _, hexdigest = checksum.partition(":")
        return algo.lower(), hexdigest.lower()
    return "sha256", checksum.lower()


def validate_checksum(checksum: str) -> None:
    """Raise ``ValueError`` unless ``checksum`` is a complete, known digest."""
    algo, expected = parse_checksum(checksum)
    try:
        width = hashlib.new(algo).digest_size * 2
    except ValueError as exc:
        raise ValueError(f"unsupported checksum algorithm {algo!r}") from exc
    if not width:
        raise ValueError(f"unsupported checksum algorithm {algo!r}")
    if len(expected) != width or not _HEX_RE.fullmatch(expected):
        raise ValueError(f"{checksum!r} is not a {width}-character {algo} hex digest")


def verify_checksum(data: bytes, checksum: str) -> tuple[bool, str]:
    """Check ``data`` against a declared checksum.

    Returns ``(matches, actual)`` where ``actual`` is formatted the same way
    as the declared checksum so it can be shown next to it.
    """
    algo, expected = parse_checksum(checksum)
    try:
        actual = hashlib.new(algo, data).hexdigest()
    except ValueError as exc:
        raise ValueError(f"Unsupported checksum algorithm: {algo}") from exc
    return hmac.compare_digest(actual, expected), f"{algo}:{actual}"
