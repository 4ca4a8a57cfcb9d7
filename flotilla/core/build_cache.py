"""Fingerprint-keyed build cache (write-once per fingerprint).

Recorded artifacts are never mutated.  Storing the same artifact under the
same fingerprint twice is a no-op; storing a different one raises
``CacheConflictError``.  Lookup only reports presence, it never computes.

On-disk layout of ``FileCacheStore``:
{base_path}/{fp[0:2]}/{fp[2:4]}/{fp}.json
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from flotilla.models.artifacts import Artifact

logger = logging.getLogger(__name__)


class CacheConflictError(RuntimeError):
    """Raised when a fingerprint is stored again with different content."""

    def __init__(self, fingerprint: str, existing: Artifact, incoming: Artifact) -> None:
        self.fingerprint = fingerprint
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"Fingerprint {fingerprint[:16]} already records {existing.digest}, "
            f"refusing to overwrite with {incoming.digest}"
        )


# ---------------------------------------------------------------------------
# Backing stores
# ---------------------------------------------------------------------------


@runtime_checkable
class CacheStore(Protocol):
    """Narrow interface to the cache's backing storage."""

    def get(self, fingerprint: str) -> Artifact | None:
        ...

    def put(self, fingerprint: str, artifact: Artifact) -> None:
        ...


class InMemoryCacheStore:
    """Process-local backing store."""

    def __init__(self) -> None:
        self._entries: dict[str, Artifact] = {}

    def get(self, fingerprint: str) -> Artifact | None:
        return self._entries.get(fingerprint)

    def put(self, fingerprint: str, artifact: Artifact) -> None:
        self._entries[fingerprint] = artifact

    def __len__(self) -> int:
        return len(self._entries)


class FileCacheStore:
    """Persistent backing store, one JSON file per fingerprint.

    Parameters
    ----------
    base_path:
        Root directory for cache entries.  Created if missing.
    """

    def __init__(self, base_path: Path) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    def _entry_path(self, fingerprint: str) -> Path:
        return self._base / fingerprint[:2] / fingerprint[2:4] / f"{fingerprint}.json"

    def get(self, fingerprint: str) -> Artifact | None:
        path = self._entry_path(fingerprint)
        if not path.exists():
            return None
        return Artifact.model_validate_json(path.read_text(encoding="utf-8"))

    def put(self, fingerprint: str, artifact: Artifact) -> None:
        path = self._entry_path(fingerprint)
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so concurrent readers never see a partial entry
        tmp = path.with_suffix(".tmp")
        tmp.write_text(artifact.model_dump_json(), encoding="utf-8")
        tmp.replace(path)

    def __len__(self) -> int:
        return sum(1 for _ in self._base.glob("*/*/*.json"))


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class BuildCache:
    """Write-once-per-fingerprint artifact cache.

    Safe under concurrent lookup/store: stores are serialised by a lock so
    that the check-then-write is atomic, lookups read without locking.

    Parameters
    ----------
    store:
        Backing storage.  Defaults to an in-memory store.
    """

    def __init__(self, store: CacheStore | None = None) -> None:
        self._store: CacheStore = store if store is not None else InMemoryCacheStore()
        self._lock = threading.Lock()

    def lookup(self, fingerprint: str) -> Artifact | None:
        """Return the artifact recorded for *fingerprint*, or None."""
        return self._store.get(fingerprint)

    def store(self, fingerprint: str, artifact: Artifact) -> None:
        """Record *artifact* under *fingerprint*.

        Raises
        ------
        CacheConflictError
            If a different artifact is already recorded for the fingerprint.
        """
        with self._lock:
            existing = self._store.get(fingerprint)
            if existing is not None:
                if existing.same_content(artifact):
                    return
                raise CacheConflictError(fingerprint, existing, artifact)
            self._store.put(fingerprint, artifact)
            logger.debug("Cached %s for fingerprint %s", artifact.digest, fingerprint[:16])

    def __contains__(self, fingerprint: object) -> bool:
        return isinstance(fingerprint, str) and self._store.get(fingerprint) is not None
