"""Release tag models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class TagKind(str, Enum):
    """The closed set of shapes a release tag can take."""

    LATEST = "latest"
    FEATURE = "feature"
    UNKNOWN = "unknown"


class ReleaseTag(BaseModel):
    """A release tag derived from a source-control ref.

    ``value`` is the string attached to published artifacts; ``ref`` is
    the ref it was derived from.
    """

    model_config = ConfigDict(frozen=True)

    value: str
    kind: TagKind
    ref: str = ""

    def __str__(self) -> str:
        return self.value
