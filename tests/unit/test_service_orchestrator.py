"""Tests for ServiceOrchestrator: ordering, health gating, blocking, stop rules."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

from flotilla.backends.base import RuntimeBackendError
from flotilla.backends.local import InMemoryRuntime
from flotilla.core.dependency_graph import CyclicDependencyError, UnknownDependencyError
from flotilla.core.health_gate import HealthGate
from flotilla.core.service_machine import StopRejectedError
from flotilla.core.service_orchestrator import ServiceOrchestrator
from flotilla.models.services import (
    DeploymentDescriptor,
    HealthProbe,
    InstanceHandle,
    ServiceSpec,
    ServiceState,
)


class HangingRuntime(InMemoryRuntime):
    async def start_instance(self, spec: ServiceSpec) -> InstanceHandle:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")


class HangingProbeRunner:
    async def run(self, probe: HealthProbe, handle: InstanceHandle | None = None) -> bool:
        await asyncio.Event().wait()
        return True


class FlakyStopRuntime(InMemoryRuntime):
    """Runtime whose first *failures* stop calls raise."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def stop_instance(self, handle: InstanceHandle) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeBackendError(f"cannot stop {handle.service}")
        await super().stop_instance(handle)


def _index(report, service: str, state: ServiceState) -> int:
    for i, t in enumerate(report.transitions):
        if t.service == service and t.to_state == state:
            return i
    raise AssertionError(f"{service} never reached {state.value}")


class TestValidation:
    def test_cycle_rejected_before_start(self, orchestrator: ServiceOrchestrator, runtime, make_service):
        services = [make_service("a", "b"), make_service("b", "a")]
        with pytest.raises(CyclicDependencyError):
            asyncio.run(orchestrator.start(services))
        assert runtime.started == []

    def test_unknown_dependency_rejected(self, orchestrator: ServiceOrchestrator, runtime, make_service):
        with pytest.raises(UnknownDependencyError):
            asyncio.run(orchestrator.start([make_service("a", "ghost")]))
        assert runtime.started == []

    def test_duplicate_names_rejected(self, make_service):
        with pytest.raises(ValueError, match="Duplicate"):
            ServiceOrchestrator.validate([make_service("a"), make_service("a")])


class TestStart:
    @pytest.mark.asyncio
    async def test_all_ready(self, orchestrator: ServiceOrchestrator, runtime, web_stack):
        report = await orchestrator.start(web_stack)
        assert report.succeeded
        assert report.ready == ["redis", "backend", "celery"]
        assert report.start_order == ["redis", "backend", "celery"]
        assert sorted(runtime.running) == ["backend", "celery", "redis"]

    @pytest.mark.asyncio
    async def test_accepts_descriptor(self, orchestrator: ServiceOrchestrator, web_stack):
        report = await orchestrator.start(DeploymentDescriptor(services=web_stack))
        assert report.succeeded

    @pytest.mark.asyncio
    async def test_dependent_waits_for_ready(self, orchestrator: ServiceOrchestrator, web_stack):
        report = await orchestrator.start(web_stack)
        assert _index(report, "backend", ServiceState.STARTING) > _index(report, "redis", ServiceState.READY)
        assert _index(report, "celery", ServiceState.STARTING) > _index(report, "backend", ServiceState.READY)

    @pytest.mark.asyncio
    async def test_probe_passes_through_health_checking(self, orchestrator: ServiceOrchestrator, web_stack):
        report = await orchestrator.start(web_stack)
        backend_states = [t.to_state for t in report.transitions if t.service == "backend"]
        assert backend_states == [
            ServiceState.STARTING, ServiceState.HEALTH_CHECKING, ServiceState.READY,
        ]
        redis_states = [t.to_state for t in report.transitions if t.service == "redis"]
        assert redis_states == [ServiceState.STARTING, ServiceState.READY]
        assert report.services["backend"].health.attempts == 1

    @pytest.mark.asyncio
    async def test_health_failure_blocks_dependents(
        self, orchestrator: ServiceOrchestrator, probes, runtime, web_stack
    ):
        probes.outcomes["backend"] = False
        report = await orchestrator.start(web_stack)

        backend = report.services["backend"]
        assert backend.state == ServiceState.FAILED
        assert backend.error.startswith("HealthCheckFailed")
        assert backend.health.attempts == 3

        celery = report.services["celery"]
        assert celery.state == ServiceState.PENDING
        assert celery.blocked
        assert celery.blocked_by == ["backend"]

        assert report.services["redis"].state == ServiceState.READY
        assert report.failed == ["backend"]
        assert report.blocked == ["celery"]
        assert not report.succeeded
        assert "celery" not in runtime.started

    @pytest.mark.asyncio
    async def test_runtime_failure_blocks_transitively(self, probes, web_stack):
        runtime = InMemoryRuntime(failing={"redis"})
        orchestrator = ServiceOrchestrator(runtime, HealthGate(probes))
        report = await orchestrator.start(web_stack)
        assert report.services["redis"].error.startswith("RuntimeBackendError")
        assert report.blocked == ["backend", "celery"]
        assert report.services["celery"].blocked_by == ["redis"]

    @pytest.mark.asyncio
    async def test_unrelated_branch_continues(self, orchestrator: ServiceOrchestrator, probes, make_service):
        probes.outcomes["db"] = False
        services = [
            make_service("db", probe=True, retries=1),
            make_service("api", "db"),
            make_service("cache"),
            make_service("worker", "cache"),
        ]
        report = await orchestrator.start(services)
        assert report.failed == ["db"]
        assert report.blocked == ["api"]
        assert report.services["worker"].state == ServiceState.READY

    @pytest.mark.asyncio
    async def test_start_timeout_fails_service(self, health_gate: HealthGate, make_service):
        orchestrator = ServiceOrchestrator(HangingRuntime(), health_gate, start_timeout=0.01)
        report = await orchestrator.start([make_service("slow"), make_service("after", "slow")])
        assert report.services["slow"].state == ServiceState.FAILED
        assert "timed out" in report.services["slow"].error
        assert report.blocked == ["after"]

    @pytest.mark.asyncio
    async def test_stream_yields_transitions(self, orchestrator: ServiceOrchestrator, web_stack):
        seen = [t async for t in orchestrator.stream(web_stack)]
        assert seen[0].service == "redis"
        assert seen[-1].service == "celery"
        assert seen[-1].to_state == ServiceState.READY

    @pytest.mark.asyncio
    async def test_cancel_stops_in_flight_instances(self, runtime, make_service):
        orchestrator = ServiceOrchestrator(runtime, HealthGate(HangingProbeRunner()))
        task = asyncio.create_task(orchestrator.start([make_service("svc", probe=True)]))
        for _ in range(20):
            await asyncio.sleep(0)
        assert orchestrator.states()["svc"] == ServiceState.HEALTH_CHECKING

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.states()["svc"] == ServiceState.STOPPED
        assert runtime.running == []
        assert runtime.stopped == ["svc"]


class TestRedeploy:
    @pytest.mark.asyncio
    async def test_unchanged_services_kept(self, orchestrator: ServiceOrchestrator, runtime, web_stack):
        await orchestrator.start(web_stack)
        report = await orchestrator.start(web_stack)
        assert report.succeeded
        assert runtime.started == ["redis", "backend", "celery"]
        assert runtime.stopped == []

    @pytest.mark.asyncio
    async def test_force_recreate_restarts_everything(
        self, orchestrator: ServiceOrchestrator, runtime, web_stack
    ):
        await orchestrator.start(web_stack)
        report = await orchestrator.start(web_stack, force_recreate=True)
        assert report.succeeded
        assert runtime.stopped == ["celery", "backend", "redis"]
        assert runtime.started == ["redis", "backend", "celery"] * 2

    @pytest.mark.asyncio
    async def test_changed_service_and_dependents_recreated(
        self, orchestrator: ServiceOrchestrator, runtime, web_stack
    ):
        await orchestrator.start(web_stack)
        updated = [
            web_stack[0],
            web_stack[1].model_copy(update={"image": "backend:2"}),
            web_stack[2],
        ]
        report = await orchestrator.start(updated)
        assert report.succeeded
        assert runtime.stopped == ["celery", "backend"]
        assert runtime.started[3:] == ["backend", "celery"]
        assert report.services["backend"].image == "backend:2"

    @pytest.mark.asyncio
    async def test_new_orchestrator_keeps_unchanged_instances(
        self, runtime, health_gate: HealthGate, web_stack
    ):
        await ServiceOrchestrator(runtime, health_gate).start(web_stack)
        report = await ServiceOrchestrator(runtime, health_gate).start(web_stack)
        assert report.succeeded
        assert runtime.started == ["redis", "backend", "celery"]
        assert runtime.stopped == []
        assert report.start_order == ["redis", "backend", "celery"]
        reasons = {t.reason for t in report.transitions if t.to_state == ServiceState.STARTING}
        assert reasons == {"already running"}

    @pytest.mark.asyncio
    async def test_new_orchestrator_force_recreate(self, runtime, health_gate: HealthGate, web_stack):
        await ServiceOrchestrator(runtime, health_gate).start(web_stack)
        report = await ServiceOrchestrator(runtime, health_gate).start(web_stack, force_recreate=True)
        assert report.succeeded
        assert runtime.stopped == ["celery", "backend", "redis"]
        assert runtime.started == ["redis", "backend", "celery"] * 2
        assert sorted(runtime.running) == ["backend", "celery", "redis"]

    @pytest.mark.asyncio
    async def test_new_orchestrator_recreates_changed_service(
        self, runtime, health_gate: HealthGate, web_stack
    ):
        await ServiceOrchestrator(runtime, health_gate).start(web_stack)
        updated = [web_stack[0], web_stack[1].model_copy(update={"image": "backend:2"}), web_stack[2]]
        report = await ServiceOrchestrator(runtime, health_gate).start(updated)
        assert report.succeeded
        assert runtime.stopped == ["celery", "backend"]
        assert runtime.started[3:] == ["backend", "celery"]
        assert sorted(runtime.running) == ["backend", "celery", "redis"]


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_rejected_while_dependent_active(
        self, orchestrator: ServiceOrchestrator, runtime, web_stack
    ):
        await orchestrator.start(web_stack)
        with pytest.raises(StopRejectedError) as exc_info:
            await orchestrator.stop("redis")
        assert "backend" in exc_info.value.dependents
        assert orchestrator.states()["redis"] == ServiceState.READY
        assert runtime.stopped == []

    @pytest.mark.asyncio
    async def test_stop_after_dependents(self, orchestrator: ServiceOrchestrator, runtime, web_stack):
        await orchestrator.start(web_stack)
        for name in ("celery", "backend", "redis"):
            await orchestrator.stop(name)
        assert runtime.stopped == ["celery", "backend", "redis"]
        assert set(orchestrator.states().values()) == {ServiceState.STOPPED}

    @pytest.mark.asyncio
    async def test_stop_all_reverse_start_order(self, orchestrator: ServiceOrchestrator, runtime, web_stack):
        await orchestrator.start(web_stack)
        stopped = await orchestrator.stop_all()
        assert stopped == ["celery", "backend", "redis"]
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_stop_all_includes_failed_instances(
        self, orchestrator: ServiceOrchestrator, probes, runtime, web_stack
    ):
        probes.outcomes["backend"] = False
        await orchestrator.start(web_stack)
        stopped = await orchestrator.stop_all()
        assert stopped == ["backend", "redis"]
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_stop_pending_is_noop(self, orchestrator: ServiceOrchestrator, probes, web_stack):
        probes.outcomes["backend"] = False
        await orchestrator.start(web_stack)
        await orchestrator.stop("celery")
        assert orchestrator.states()["celery"] == ServiceState.PENDING

    @pytest.mark.asyncio
    async def test_stop_unknown_service(self, orchestrator: ServiceOrchestrator, web_stack):
        await orchestrator.start(web_stack)
        with pytest.raises(KeyError):
            await orchestrator.stop("ghost")

    @pytest.mark.asyncio
    async def test_stop_rejected_while_failed_dependent_has_instance(
        self, orchestrator: ServiceOrchestrator, probes, runtime, web_stack
    ):
        probes.outcomes["backend"] = False
        await orchestrator.start(web_stack)
        assert orchestrator.states()["backend"] == ServiceState.FAILED

        with pytest.raises(StopRejectedError) as exc_info:
            await orchestrator.stop("redis")
        assert exc_info.value.dependents == ["backend"]
        assert orchestrator.states()["redis"] == ServiceState.READY
        assert sorted(runtime.running) == ["backend", "redis"]

        await orchestrator.stop("backend")
        await orchestrator.stop("redis")
        assert runtime.stopped == ["backend", "redis"]

    @pytest.mark.asyncio
    async def test_failed_stop_leaves_service_for_retry(self, health_gate: HealthGate, make_service):
        runtime = FlakyStopRuntime(failures=1)
        orchestrator = ServiceOrchestrator(runtime, health_gate)
        await orchestrator.start([make_service("redis")])

        with pytest.raises(RuntimeBackendError):
            await orchestrator.stop("redis")
        assert orchestrator.states()["redis"] == ServiceState.READY
        assert runtime.running == ["redis"]
        assert orchestrator.report().services["redis"].error.startswith("stop failed")

        assert await orchestrator.stop_all() == ["redis"]
        assert orchestrator.states()["redis"] == ServiceState.STOPPED
        assert runtime.running == []

    @pytest.mark.asyncio
    async def test_stop_while_health_checking_rejected(self, runtime, make_service):
        orchestrator = ServiceOrchestrator(runtime, HealthGate(HangingProbeRunner()))
        task = asyncio.create_task(orchestrator.start([make_service("svc", probe=True)]))
        for _ in range(20):
            await asyncio.sleep(0)
        assert orchestrator.states()["svc"] == ServiceState.HEALTH_CHECKING

        with pytest.raises(StopRejectedError, match="still health_checking") as exc_info:
            await orchestrator.stop("svc")
        assert exc_info.value.dependents == []
        assert "required by" not in str(exc_info.value)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert runtime.running == []
