"""External collaborator interfaces and their bundled implementations."""

from flotilla.backends.base import (
    BuildBackend,
    BuildBackendError,
    CredentialProvider,
    ProbeRunner,
    RegistryBackend,
    RegistryError,
    RuntimeBackend,
    RuntimeBackendError,
)
from flotilla.backends.docker import (
    DockerBuildBackend,
    DockerExecProbeRunner,
    DockerRegistry,
    DockerRuntime,
)
from flotilla.backends.local import (
    EnvCredentialProvider,
    HashingBuildBackend,
    InMemoryRegistry,
    InMemoryRuntime,
    StaticCredentialProvider,
)
from flotilla.backends.probes import DefaultProbeRunner

__all__ = [
    # protocols
    "BuildBackend",
    "RegistryBackend",
    "RuntimeBackend",
    "ProbeRunner",
    "CredentialProvider",
    # errors
    "BuildBackendError",
    "RegistryError",
    "RuntimeBackendError",
    # local
    "HashingBuildBackend",
    "InMemoryRegistry",
    "InMemoryRuntime",
    "StaticCredentialProvider",
    "EnvCredentialProvider",
    "DefaultProbeRunner",
    # docker
    "DockerBuildBackend",
    "DockerRegistry",
    "DockerRuntime",
    "DockerExecProbeRunner",
]
