"""In-process backend implementations.

Suitable for dry runs, CI smoke checks and tests; production deployments
provide Docker (or other) backends instead.
"""

from __future__ import annotations

import logging
import os
import uuid

from flotilla.backends.base import (
    CredentialProvider,
    RegistryError,
    RuntimeBackendError,
    spec_digest,
)
from flotilla.core.hasher import content_digest
from flotilla.models.artifacts import Artifact
from flotilla.models.builds import BuildRequest
from flotilla.models.services import InstanceHandle, ServiceSpec

logger = logging.getLogger(__name__)


class HashingBuildBackend:
    """Deterministic build backend that derives the artifact from the request.

    The digest is a pure function of stage name and fingerprint, so two
    builds of the same fingerprint always produce equal artifacts.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def build(self, request: BuildRequest) -> Artifact:
        self.calls.append(request.stage)
        digest = content_digest({"stage": request.stage, "fingerprint": request.fingerprint})
        return Artifact(
            digest=digest,
            stage=request.stage,
            fingerprint=request.fingerprint,
            metadata={"backend": "hashing"},
        )


class StaticCredentialProvider:
    """Credentials handed in explicitly as a mapping."""

    def __init__(self, credentials: dict[str, str] | None = None) -> None:
        self._credentials = dict(credentials or {})

    def credential(self, name: str) -> str:
        try:
            return self._credentials[name]
        except KeyError:
            raise RegistryError(f"No credential named {name!r}") from None


class EnvCredentialProvider:
    """Reads named credentials from an explicitly supplied environment mapping.

    Parameters
    ----------
    environ:
        The mapping to read from.  Defaults to ``os.environ``; callers that
        want isolation pass their own dict.
    """

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else dict(os.environ)

    def credential(self, name: str) -> str:
        value = self._environ.get(name, "")
        if not value:
            raise RegistryError(f"Credential {name!r} is not set")
        return value


class InMemoryRegistry:
    """Tag -> artifact map with optional credential check on push.

    Parameters
    ----------
    credentials:
        Provider consulted on push when *credential_name* is set.
    credential_name:
        Name of the credential required to push.
    """

    def __init__(
        self,
        credentials: CredentialProvider | None = None,
        credential_name: str | None = None,
    ) -> None:
        self._credentials = credentials
        self._credential_name = credential_name
        self._tags: dict[str, Artifact] = {}
        self.pushes: list[str] = []

    def _authenticate(self) -> None:
        if self._credential_name is None:
            return
        if self._credentials is None:
            raise RegistryError("Registry requires credentials but no provider was given")
        if not self._credentials.credential(self._credential_name):
            raise RegistryError(f"Empty credential {self._credential_name!r}")

    async def push(self, artifact: Artifact, tag: str) -> None:
        self._authenticate()
        self._tags[tag] = artifact
        self.pushes.append(tag)
        logger.info("Pushed %s as %s", artifact.digest, tag)

    async def pull(self, tag: str) -> Artifact:
        try:
            return self._tags[tag]
        except KeyError:
            raise RegistryError(f"Tag {tag!r} not found") from None

    @property
    def tags(self) -> dict[str, Artifact]:
        return dict(self._tags)


class InMemoryRuntime:
    """Runtime that only tracks which instances are "running".

    Parameters
    ----------
    failing:
        Service names whose start raises ``RuntimeBackendError``.
    """

    def __init__(self, failing: set[str] | None = None) -> None:
        self._failing = set(failing or ())
        self._running: dict[str, InstanceHandle] = {}
        self.started: list[str] = []
        self.stopped: list[str] = []

    async def start_instance(self, spec: ServiceSpec) -> InstanceHandle:
        if spec.name in self._failing:
            raise RuntimeBackendError(f"Failed to start {spec.name}")
        handle = InstanceHandle(
            service=spec.name,
            instance_id=uuid.uuid4().hex[:12],
            image=spec.image,
            metadata={"running": True, "spec_digest": spec_digest(spec)},
        )
        self._running[handle.instance_id] = handle
        self.started.append(spec.name)
        return handle

    async def stop_instance(self, handle: InstanceHandle) -> None:
        if self._running.pop(handle.instance_id, None) is None:
            raise RuntimeBackendError(f"Instance {handle.instance_id} is not running")
        self.stopped.append(handle.service)

    async def find_instance(self, spec: ServiceSpec) -> InstanceHandle | None:
        for handle in self._running.values():
            if handle.service == spec.name:
                return handle
        return None

    @property
    def running(self) -> list[str]:
        return [h.service for h in self._running.values()]
