"""Tests for canonical hashing, cache keys and checksum verification."""

from __future__ import annotations

import hashlib

import pytest

from datanest.core.hasher import (
    canonical_json_bytes,
    compute_cache_key,
    content_digest,
    derive_key,
    file_sha256,
    parse_checksum,
    sha256_hex,
    strip_digest,
    validate_checksum,
    verify_checksum,
)


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json_bytes({"b": 1, "a": 2}) == canonical_json_bytes({"a": 2, "b": 1})

    def test_compact_separators(self):
        assert canonical_json_bytes({"a": [1, 2]}) == b'{"a":[1,2]}'


class TestDigests:
    def test_content_digest_prefix(self):
        assert content_digest(b"x") == f"sha256:{sha256_hex(b'x')}"

    def test_strip_digest(self):
        assert strip_digest("sha256:abc") == "abc"
        assert strip_digest("abc") == "abc"

    def test_file_sha256_matches_content_digest(self, tmp_dir):
        path = tmp_dir / "blob.bin"
        path.write_bytes(b"some bytes" * 1000)
        assert file_sha256(path) == content_digest(b"some bytes" * 1000)


class TestCacheKey:
    def test_deterministic(self):
        a = compute_cache_key("transform", script_hash="s", upstream={"raw": "sha256:1"})
        b = compute_cache_key("transform", script_hash="s", upstream={"raw": "sha256:1"})
        assert a == b
        assert len(a) == 64

    def test_upstream_order_independent(self):
        a = compute_cache_key("package", upstream={"x": "d1", "y": "d2"})
        b = compute_cache_key("package", upstream={"y": "d2", "x": "d1"})
        assert a == b

    @pytest.mark.parametrize(
        "change",
        [
            {"script_hash": "other"},
            {"upstream": {"raw": "sha256:2"}},
            {"source": "https://example.test/b.csv"},
            {"params": {"command": ["python3"]}},
        ],
    )
    def test_any_input_change_changes_key(self, change):
        base = {
            "script_hash": "s",
            "upstream": {"raw": "sha256:1"},
            "source": "",
            "params": {},
        }
        changed = {**base, **change}
        assert compute_cache_key("transform", **base) != compute_cache_key(
            "transform", **changed
        )

    def test_kind_is_part_of_key(self):
        assert compute_cache_key("fetch") != compute_cache_key("package")

    def test_derive_key_depends_on_digest(self):
        assert derive_key("k", "sha256:1") != derive_key("k", "sha256:2")
        assert derive_key("k", "sha256:1") == derive_key("k", "sha256:1")


class TestChecksum:
    def test_parse_prefixed(self):
        assert parse_checksum("MD5:ABCDEF") == ("md5", "abcdef")

    def test_parse_bare_hex_is_sha256(self):
        assert parse_checksum("abc") == ("sha256", "abc")

    def test_verify_match(self):
        expected = hashlib.sha256(b"data").hexdigest()
        assert verify_checksum(b"data", f"sha256:{expected}") == (True, f"sha256:{expected}")

    def test_verify_mismatch_reports_actual(self):
        matches, actual = verify_checksum(b"data", "md5:00")
        assert matches is False
        assert actual == f"md5:{hashlib.md5(b'data').hexdigest()}"

    def test_unknown_algorithm(self):
        with pytest.raises(ValueError, match="Unsupported checksum algorithm"):
            verify_checksum(b"data", "nope:00")

    def test_validate_accepts_full_digest(self):
        validate_checksum(hashlib.sha256(b"data").hexdigest().upper())
        validate_checksum(f"md5:{hashlib.md5(b'data').hexdigest()}")

    @pytest.mark.parametrize("checksum", ["sha256:abc", "md5:" + "z" * 32, "sha256:" + "\u00e9" * 64])
    def test_validate_rejects_malformed(self, checksum):
        with pytest.raises(ValueError, match="hex digest"):
            validate_checksum(checksum)

    @pytest.mark.parametrize("checksum", ["nope:00", "shake_128:00"])
    def test_validate_rejects_unknown_algorithm(self, checksum):
        with pytest.raises(ValueError, match="unsupported"):
            validate_checksum(checksum)
