"""Service deployment models: specs, probe descriptors, runtime states."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServiceState(str, Enum):
    """Runtime state of a service instance."""

    PENDING = "pending"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


# Valid state transitions, enforced by ServiceMachine.
# FAILED and STOPPED only leave via PENDING, i.e. a fresh deployment.
VALID_TRANSITIONS: dict[ServiceState, set[ServiceState]] = {
    ServiceState.PENDING: {ServiceState.STARTING},
    ServiceState.STARTING: {
        ServiceState.HEALTH_CHECKING,
        ServiceState.READY,
        ServiceState.FAILED,
    },
    ServiceState.HEALTH_CHECKING: {ServiceState.READY, ServiceState.FAILED},
    ServiceState.READY: {ServiceState.STOPPED, ServiceState.FAILED},
    ServiceState.FAILED: {ServiceState.STOPPED, ServiceState.PENDING},
    ServiceState.STOPPED: {ServiceState.PENDING},
}


class HealthProbe(BaseModel):
    """A bounded readiness check.

    Exactly one of ``command`` (success = exit status 0) or ``endpoint``
    (success = 2xx/3xx response) must be given.  Durations are seconds.
    """

    model_config = ConfigDict(frozen=True)

    command: list[str] | None = None
    endpoint: str | None = None
    interval: float = Field(default=5.0, ge=0)
    timeout: float = Field(default=5.0, gt=0)
    retries: int = Field(default=3, ge=1)
    start_period: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> HealthProbe:
        if bool(self.command) == bool(self.endpoint):
            raise ValueError("a health probe needs exactly one of 'command' or 'endpoint'")
        return self

    def describe(self) -> str:
        return " ".join(self.command) if self.command else str(self.endpoint)


class ServiceSpec(BaseModel):
    """Declarative definition of one service in a deployment."""

    model_config = ConfigDict(frozen=True)

    name: str
    image: str  # may contain ${VERSION}-style variables until rendered
    depends_on: list[str] = []
    healthcheck: HealthProbe | None = None
    environment: dict[str, str] = {}
    command: list[str] | None = None


class DeploymentDescriptor(BaseModel):
    """A declared set of services."""

    model_config = ConfigDict(frozen=True)

    services: list[ServiceSpec]

    def service_names(self) -> list[str]:
        return [s.name for s in self.services]


class InstanceHandle(BaseModel):
    """Opaque handle returned by a runtime backend for a started instance."""

    model_config = ConfigDict(frozen=True)

    service: str
    instance_id: str
    image: str = ""
    metadata: dict[str, Any] = {}


class ServiceTransition(BaseModel):
    """Records a single service state transition."""

    model_config = ConfigDict(frozen=True)

    service: str
    from_state: ServiceState
    to_state: ServiceState
    reason: str | None = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class HealthOutcome(str, Enum):
    READY = "ready"
    FAILED = "failed"


class HealthResult(BaseModel):
    """Terminal result of a health gate."""

    model_config = ConfigDict(frozen=True)

    service: str
    outcome: HealthOutcome
    attempts: int
    last_error: str | None = None

    @property
    def ready(self) -> bool:
        return self.outcome == HealthOutcome.READY


class ServiceStatus(BaseModel):
    """Per-service entry of a deployment report."""

    model_config = ConfigDict(frozen=True)

    name: str
    state: ServiceState
    image: str = ""
    error: str | None = None
    blocked_by: list[str] = []
    health: HealthResult | None = None

    @property
    def blocked(self) -> bool:
        return self.state == ServiceState.PENDING and bool(self.blocked_by)


class DeploymentReport(BaseModel):
    """Per-service result set of an orchestration run."""

    model_config = ConfigDict(frozen=True)

    services: dict[str, ServiceStatus]
    start_order: list[str] = []
    transitions: list[ServiceTransition] = []

    @property
    def succeeded(self) -> bool:
        return all(s.state == ServiceState.READY for s in self.services.values())

    @property
    def failed(self) -> list[str]:
        return [n for n, s in self.services.items() if s.state == ServiceState.FAILED]

    @property
    def blocked(self) -> list[str]:
        return [n for n, s in self.services.items() if s.blocked]

    @property
    def ready(self) -> list[str]:
        return [n for n, s in self.services.items() if s.state == ServiceState.READY]
