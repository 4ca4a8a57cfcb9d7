"""Build graph models: stage definitions, per-stage results, run reports."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from flotilla.models.artifacts import Artifact, PublishedArtifact


class StageState(str, Enum):
    """Lifecycle of a build stage within a single build invocation."""

    PENDING = "pending"
    RUNNING = "running"
    CACHED = "cached"  # reused an artifact recorded under the same fingerprint
    BUILT = "built"
    FAILED = "failed"
    BLOCKED = "blocked"  # an upstream stage failed
    CANCELLED = "cancelled"


SUCCESS_STATES: frozenset[StageState] = frozenset({StageState.CACHED, StageState.BUILT})


class BuildStageDefinition(BaseModel):
    """A named unit of build work.

    ``inputs`` are the declared inputs hashed into the stage fingerprint
    (dockerfile target, source digests, build args, ...).  ``depends_on``
    encodes the DAG edges.  ``target`` marks a stage whose artifact is
    published even if other stages depend on it.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    depends_on: list[str] = []
    inputs: dict[str, Any] = {}
    target: bool = False


class BuildGraphDescriptor(BaseModel):
    """A declared set of build stages."""

    model_config = ConfigDict(frozen=True)

    stages: list[BuildStageDefinition]

    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]


class BuildRequest(BaseModel):
    """What a build backend receives for one stage."""

    model_config = ConfigDict(frozen=True)

    stage: str
    fingerprint: str
    inputs: dict[str, Any] = {}
    dependencies: dict[str, Artifact] = {}
    tag: str = ""


class StageResult(BaseModel):
    """Outcome of one stage in a build invocation."""

    model_config = ConfigDict(frozen=True)

    stage: str
    state: StageState
    fingerprint: str = ""
    artifact: Artifact | None = None
    error: str | None = None
    blocked_by: list[str] = []
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES


class BuildReport(BaseModel):
    """Per-stage result set of a build invocation.

    Never collapses into a single opaque failure: every stage appears with
    its own state and cause.
    """

    model_config = ConfigDict(frozen=True)

    tag: str = ""
    results: dict[str, StageResult]
    terminal_stages: list[str] = []
    published: list[PublishedArtifact] = []
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results.values())

    @property
    def artifacts(self) -> dict[str, Artifact]:
        """Artifacts of terminal stages that succeeded, keyed by stage."""
        return {
            name: self.results[name].artifact
            for name in self.terminal_stages
            if self.results[name].artifact is not None
        }

    def stages_in(self, *states: StageState) -> list[str]:
        return [name for name, r in self.results.items() if r.state in states]

    def raise_for_failure(self) -> None:
        """Raise ``BuildFailedError`` for the first failed stage, if any."""
        from flotilla.core.build_executor import BuildFailedError

        for name, result in self.results.items():
            if result.state in (StageState.FAILED, StageState.CANCELLED):
                raise BuildFailedError(name, result.error or result.state.value)
