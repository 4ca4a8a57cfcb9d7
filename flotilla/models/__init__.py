"""Flotilla data models (Pydantic v2, frozen value objects)."""

from flotilla.models.artifacts import Artifact, PublishedArtifact
from flotilla.models.builds import (
    BuildGraphDescriptor,
    BuildReport,
    BuildRequest,
    BuildStageDefinition,
    StageResult,
    StageState,
)
from flotilla.models.release import ReleaseTag, TagKind
from flotilla.models.services import (
    VALID_TRANSITIONS,
    DeploymentDescriptor,
    DeploymentReport,
    HealthOutcome,
    HealthProbe,
    HealthResult,
    InstanceHandle,
    ServiceSpec,
    ServiceState,
    ServiceStatus,
    ServiceTransition,
)

__all__ = [
    # release
    "ReleaseTag",
    "TagKind",
    # artifacts
    "Artifact",
    "PublishedArtifact",
    # builds
    "BuildStageDefinition",
    "BuildGraphDescriptor",
    "BuildRequest",
    "StageState",
    "StageResult",
    "BuildReport",
    # services
    "ServiceState",
    "VALID_TRANSITIONS",
    "HealthProbe",
    "ServiceSpec",
    "DeploymentDescriptor",
    "InstanceHandle",
    "ServiceTransition",
    "HealthOutcome",
    "HealthResult",
    "ServiceStatus",
    "DeploymentReport",
]
