"""Tests for ServiceMachine: transitions, dependency gating, stop rules."""

from __future__ import annotations

import pytest

from flotilla.core.dependency_graph import DependencyGraph
from flotilla.core.service_machine import (
    DependencyNotReadyError,
    InvalidTransitionError,
    ServiceMachine,
    StopRejectedError,
)
from flotilla.models.services import ServiceState


@pytest.fixture
def machine() -> ServiceMachine:
    return ServiceMachine(
        DependencyGraph({"redis": [], "backend": ["redis"], "celery": ["backend"]})
    )


async def _ready(machine: ServiceMachine, *names: str) -> None:
    for name in names:
        await machine.transition(name, ServiceState.STARTING)
        await machine.transition(name, ServiceState.READY)


class TestServiceMachine:
    def test_all_pending_initially(self, machine: ServiceMachine):
        assert set(machine.get_all_states().values()) == {ServiceState.PENDING}

    @pytest.mark.asyncio
    async def test_root_can_start(self, machine: ServiceMachine):
        record = await machine.transition("redis", ServiceState.STARTING)
        assert record.from_state == ServiceState.PENDING
        assert record.to_state == ServiceState.STARTING

    @pytest.mark.asyncio
    async def test_invalid_transition_rejected(self, machine: ServiceMachine):
        with pytest.raises(InvalidTransitionError):
            await machine.transition("redis", ServiceState.READY)

    @pytest.mark.asyncio
    async def test_dependency_must_be_ready(self, machine: ServiceMachine):
        await machine.transition("redis", ServiceState.STARTING)
        with pytest.raises(DependencyNotReadyError):
            await machine.transition("backend", ServiceState.STARTING)

    @pytest.mark.asyncio
    async def test_can_start_reports_reasons(self, machine: ServiceMachine):
        can, reasons = machine.can_start("backend")
        assert can is False
        assert reasons == ["redis is pending"]
        await _ready(machine, "redis")
        assert machine.can_start("backend") == (True, [])

    @pytest.mark.asyncio
    async def test_failed_ancestor_blocks_transitively(self, machine: ServiceMachine):
        await _ready(machine, "redis")
        await machine.transition("backend", ServiceState.STARTING)
        await machine.transition("backend", ServiceState.FAILED)
        assert machine.is_blocked("celery")
        assert machine.failed_ancestors("celery") == ["backend"]
        assert not machine.is_blocked("redis")

    @pytest.mark.asyncio
    async def test_stop_rejected_while_dependent_active(self, machine: ServiceMachine):
        await _ready(machine, "redis", "backend")
        can, _ = machine.can_stop("redis")
        assert can is False
        with pytest.raises(StopRejectedError) as exc_info:
            await machine.transition("redis", ServiceState.STOPPED)
        assert exc_info.value.dependents == ["backend"]
        assert machine.get_state("redis") == ServiceState.READY

    @pytest.mark.asyncio
    async def test_stop_allowed_after_dependents_stopped(self, machine: ServiceMachine):
        await _ready(machine, "redis", "backend")
        await machine.transition("backend", ServiceState.STOPPED)
        await machine.transition("redis", ServiceState.STOPPED)
        assert machine.get_state("redis") == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_history_and_listeners(self, machine: ServiceMachine):
        seen = []
        machine.add_listener(seen.append)
        await _ready(machine, "redis")
        assert [t.to_state for t in seen] == [ServiceState.STARTING, ServiceState.READY]
        assert machine.history == seen

        machine.remove_listener(seen.append)
        await machine.transition("redis", ServiceState.STOPPED)
        assert len(seen) == 2
        assert len(machine.history) == 3

    @pytest.mark.asyncio
    async def test_transition_reason_recorded(self, machine: ServiceMachine):
        record = await machine.transition("redis", ServiceState.STARTING, reason="deploy")
        assert record.reason == "deploy"

    @pytest.mark.asyncio
    async def test_failed_dependent_with_instance_blocks_stop(self):
        live = {"backend"}
        machine = ServiceMachine(
            DependencyGraph({"redis": [], "backend": ["redis"]}),
            has_instance=live.__contains__,
        )
        await _ready(machine, "redis")
        await machine.transition("backend", ServiceState.STARTING)
        await machine.transition("backend", ServiceState.FAILED)

        with pytest.raises(StopRejectedError):
            await machine.transition("redis", ServiceState.STOPPED)

        live.clear()
        await machine.transition("redis", ServiceState.STOPPED)
        assert machine.get_state("redis") == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_transition_after_runs_action_first(self, machine: ServiceMachine):
        await _ready(machine, "redis")
        seen = []

        async def action() -> None:
            seen.append(machine.get_state("redis"))

        await machine.transition_after("redis", ServiceState.STOPPED, action)
        assert seen == [ServiceState.READY]
        assert machine.get_state("redis") == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_transition_after_failed_action_keeps_state(self, machine: ServiceMachine):
        await _ready(machine, "redis")

        async def action() -> None:
            raise RuntimeError("runtime unavailable")

        with pytest.raises(RuntimeError):
            await machine.transition_after("redis", ServiceState.STOPPED, action)
        assert machine.get_state("redis") == ServiceState.READY
        assert machine.history[-1].to_state == ServiceState.READY

    @pytest.mark.asyncio
    async def test_transition_after_skips_action_when_rejected(self, machine: ServiceMachine):
        await _ready(machine, "redis", "backend")
        calls = []

        async def action() -> None:
            calls.append("stop")

        with pytest.raises(StopRejectedError):
            await machine.transition_after("redis", ServiceState.STOPPED, action)
        assert calls == []

    def test_stop_rejected_message_with_reason(self):
        error = StopRejectedError("svc", [], reason="it is still starting")
        assert str(error) == "Cannot stop 'svc': it is still starting"
        assert error.dependents == []
