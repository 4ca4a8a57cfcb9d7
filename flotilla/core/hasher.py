"""Canonical hashing helpers for stage fingerprints and content digests.

Fingerprints are SHA-256 over canonical JSON so that the same declared
inputs always hash the same, regardless of key order.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes with sorted keys and no whitespace.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding

    Values that are not JSON-native are stringified.
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_digest(obj: Any) -> str:
    """Digest a JSON-serializable object in ``sha256:<hex>`` form."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def compute_fingerprint(
    stage: str,
    inputs: Mapping[str, Any],
    dependency_fingerprints: Mapping[str, str] | None = None,
) -> str:
    """SHA-256 of canonical(stage + inputs + direct dependency fingerprints).

    Folding in the dependency fingerprints chains the hashes: a change in
    any upstream stage changes every downstream fingerprint, so cache reuse
    stops at the first changed stage.
    """
    payload = {
        "stage": stage,
        "inputs": dict(inputs),
        "dependencies": dict(dependency_fingerprints or {}),
    }
    return sha256_hex(canonical_json_bytes(payload))


def file_digest(path: str, chunk_size: int = 65536) -> str:
    """Return the SHA-256 hex digest of a file's bytes, read in chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()
