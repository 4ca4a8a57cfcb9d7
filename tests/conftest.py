"""Shared test fixtures for Flotilla."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from flotilla.backends.local import HashingBuildBackend, InMemoryRegistry, InMemoryRuntime
from flotilla.core.build_cache import BuildCache
from flotilla.core.build_executor import BuildGraphExecutor
from flotilla.core.health_gate import HealthGate
from flotilla.core.ref_tags import RefTagResolver
from flotilla.core.service_orchestrator import ServiceOrchestrator
from flotilla.models.builds import BuildStageDefinition
from flotilla.models.services import HealthProbe, InstanceHandle, ServiceSpec


class ScriptedProbeRunner:
    """Probe runner whose outcomes are scripted per service.

    ``outcomes[name]`` is a bool (every attempt) or a list consumed one
    attempt at a time; the last entry repeats.  Unscripted services pass.
    """

    def __init__(self, outcomes: dict[str, Any] | None = None) -> None:
        self.outcomes = dict(outcomes or {})
        self.calls: list[str] = []

    async def run(self, probe: HealthProbe, handle: InstanceHandle | None = None) -> bool:
        name = handle.service if handle is not None else probe.describe()
        self.calls.append(name)
        outcome = self.outcomes.get(name, True)
        if isinstance(outcome, list):
            return outcome.pop(0) if len(outcome) > 1 else outcome[0]
        return bool(outcome)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def resolver() -> RefTagResolver:
    return RefTagResolver()


@pytest.fixture
def build_backend() -> HashingBuildBackend:
    return HashingBuildBackend()


@pytest.fixture
def cache() -> BuildCache:
    return BuildCache()


@pytest.fixture
def executor(build_backend: HashingBuildBackend, cache: BuildCache) -> BuildGraphExecutor:
    return BuildGraphExecutor(build_backend, cache, max_parallel=2)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def runtime() -> InMemoryRuntime:
    return InMemoryRuntime()


@pytest.fixture
def probes() -> ScriptedProbeRunner:
    return ScriptedProbeRunner()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def health_gate(probes: ScriptedProbeRunner, sleep: RecordingSleep) -> HealthGate:
    return HealthGate(probes, sleep=sleep)


@pytest.fixture
def orchestrator(runtime: InMemoryRuntime, health_gate: HealthGate) -> ServiceOrchestrator:
    return ServiceOrchestrator(runtime, health_gate)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_stage() -> Callable[..., BuildStageDefinition]:
    """Factory fixture: build a BuildStageDefinition with sensible defaults."""

    def _factory(name: str, *depends_on: str, **inputs: Any) -> BuildStageDefinition:
        return BuildStageDefinition(
            name=name,
            depends_on=list(depends_on),
            inputs=inputs or {"source": f"{name}-v1"},
        )

    return _factory


@pytest.fixture
def make_service() -> Callable[..., ServiceSpec]:
    """Factory fixture: build a ServiceSpec, optionally with a command probe."""

    def _factory(
        name: str,
        *depends_on: str,
        probe: bool = False,
        retries: int = 3,
        image: str | None = None,
    ) -> ServiceSpec:
        healthcheck = (
            HealthProbe(command=["check", name], interval=1.0, timeout=1.0, retries=retries)
            if probe
            else None
        )
        return ServiceSpec(
            name=name,
            image=image or f"{name}:1",
            depends_on=list(depends_on),
            healthcheck=healthcheck,
        )

    return _factory


@pytest.fixture
def web_stack(make_service: Callable[..., ServiceSpec]) -> list[ServiceSpec]:
    """redis <- backend <- celery, with a health probe on backend."""
    return [
        make_service("redis"),
        make_service("backend", "redis", probe=True),
        make_service("celery", "backend"),
    ]
