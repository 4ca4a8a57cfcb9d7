"""Build artifact models (immutable once recorded)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """Immutable reference to the output of one build stage.

    The ``digest`` identifies the produced content (an image digest or
    equivalent, ``sha256:<hex>``).  Two artifacts describe the same content
    when their digests match; timestamps and metadata are informational.
    """

    model_config = ConfigDict(frozen=True)

    digest: str  # "sha256:<hex>"
    stage: str
    fingerprint: str
    reference: str = ""  # e.g. "registry.local/app@sha256:..." when known
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    metadata: dict[str, Any] = {}

    def same_content(self, other: Artifact) -> bool:
        """Return True if *other* describes the same build output."""
        return self.digest == other.digest and self.fingerprint == other.fingerprint


class PublishedArtifact(BaseModel):
    """An artifact pushed to a registry under a release tag."""

    model_config = ConfigDict(frozen=True)

    artifact: Artifact
    tag: str
    repository: str = ""

    @property
    def image_ref(self) -> str:
        """Return ``repository:tag`` (or just the tag without a repository)."""
        return f"{self.repository}:{self.tag}" if self.repository else self.tag
