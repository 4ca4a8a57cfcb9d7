"""Protocols for the external collaborators Flotilla drives.

Any object with the right method shapes satisfies these protocols; the
controller never reaches past them.  Implementations may raise from any
call; the executor and orchestrator record the failure against the stage
or service that made the call.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from flotilla.core.hasher import content_digest
from flotilla.models.artifacts import Artifact
from flotilla.models.builds import BuildRequest
from flotilla.models.services import HealthProbe, InstanceHandle, ServiceSpec


class RegistryError(RuntimeError):
    """Raised by registry backends when a push or pull fails."""


class RuntimeBackendError(RuntimeError):
    """Raised by runtime backends when an instance cannot be started or stopped."""


class BuildBackendError(RuntimeError):
    """Raised by build backends when a stage build fails."""


def spec_digest(spec: ServiceSpec) -> str:
    """Digest of a service spec, recorded with each instance to detect changes."""
    return content_digest(spec.model_dump(mode="json"))


@runtime_checkable
class BuildBackend(Protocol):
    """Builds one stage and returns the produced artifact."""

    async def build(self, request: BuildRequest) -> Artifact:
        ...


@runtime_checkable
class RegistryBackend(Protocol):
    """Publishes artifacts under a tag and resolves tags back to artifacts."""

    async def push(self, artifact: Artifact, tag: str) -> None:
        ...

    async def pull(self, tag: str) -> Artifact:
        ...


@runtime_checkable
class RuntimeBackend(Protocol):
    """Starts and stops service instances."""

    async def start_instance(self, spec: ServiceSpec) -> InstanceHandle:
        ...

    async def stop_instance(self, handle: InstanceHandle) -> None:
        ...

    async def find_instance(self, spec: ServiceSpec) -> InstanceHandle | None:
        """Return the instance an earlier run left for *spec*, if any.

        The handle carries ``metadata["running"]`` and
        ``metadata["spec_digest"]`` so callers can decide whether to keep it.
        """
        ...


@runtime_checkable
class ProbeRunner(Protocol):
    """Executes one health probe attempt; returns True on success."""

    async def run(self, probe: HealthProbe, handle: InstanceHandle | None = None) -> bool:
        ...


@runtime_checkable
class CredentialProvider(Protocol):
    """Opaque credential lookup, consulted only by registry backends."""

    def credential(self, name: str) -> str:
        ...
