"""Tests for canonical hashing and chained stage fingerprints."""

from __future__ import annotations

from pathlib import Path

from flotilla.core.hasher import (
    canonical_json_bytes,
    compute_fingerprint,
    content_digest,
    file_digest,
    sha256_hex,
)


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json_bytes({"b": 1, "a": 2}) == canonical_json_bytes({"a": 2, "b": 1})

    def test_compact(self):
        assert canonical_json_bytes({"a": [1, 2]}) == b'{"a":[1,2]}'

    def test_non_json_values_stringified(self):
        assert canonical_json_bytes({"p": Path("x")}) == b'{"p":"x"}'


class TestDigests:
    def test_sha256_hex(self):
        assert sha256_hex(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_content_digest_prefix(self):
        assert content_digest({"a": 1}).startswith("sha256:")

    def test_file_digest_matches_bytes(self, tmp_dir: Path):
        path = tmp_dir / "f.txt"
        path.write_bytes(b"hello")
        assert file_digest(str(path)) == sha256_hex(b"hello")


class TestComputeFingerprint:
    def test_deterministic(self):
        assert compute_fingerprint("a", {"x": 1}) == compute_fingerprint("a", {"x": 1})

    def test_inputs_change_fingerprint(self):
        assert compute_fingerprint("a", {"x": 1}) != compute_fingerprint("a", {"x": 2})

    def test_stage_name_changes_fingerprint(self):
        assert compute_fingerprint("a", {"x": 1}) != compute_fingerprint("b", {"x": 1})

    def test_dependency_fingerprint_chains(self):
        base = compute_fingerprint("b", {"x": 1}, {"a": "f1"})
        assert compute_fingerprint("b", {"x": 1}, {"a": "f2"}) != base

    def test_no_dependencies_equals_empty_mapping(self):
        assert compute_fingerprint("a", {}) == compute_fingerprint("a", {}, {})
