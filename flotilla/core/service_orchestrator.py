"""Dependency-ordered service orchestrator.

Starts a set of services as asyncio tasks, one per service.  A service
enters STARTING only once every dependency is READY; with a health probe it
then passes through HEALTH_CHECKING and the HealthGate decides READY or
FAILED.  A failed dependency leaves all transitive dependents PENDING and
reported as blocked, while unrelated services carry on.

Stopping runs the other way round: a service is stopped only after all of
its dependents are down, and ``stop_all`` walks the reverse start order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Sequence

from flotilla.backends.base import RuntimeBackend, RuntimeBackendError, spec_digest
from flotilla.core.dependency_graph import DependencyGraph
from flotilla.core.health_gate import HealthGate
from flotilla.core.service_machine import (
    ACTIVE_STATES,
    ServiceMachine,
    StopRejectedError,
    TransitionListener,
)
from flotilla.models.services import (
    DeploymentDescriptor,
    DeploymentReport,
    HealthResult,
    InstanceHandle,
    ServiceSpec,
    ServiceState,
    ServiceStatus,
    ServiceTransition,
)

logger = logging.getLogger(__name__)


class ServiceOrchestrator:
    """Brings a deployment up and down in dependency order.

    Parameters
    ----------
    runtime:
        Backend that starts and stops instances.
    health_gate:
        Gate used for services that declare a probe.
    start_timeout:
        Seconds allowed for a single ``start_instance`` call.
    stop_timeout:
        Seconds allowed for a single ``stop_instance`` call.
    """

    def __init__(
        self,
        runtime: RuntimeBackend,
        health_gate: HealthGate | None = None,
        *,
        start_timeout: float | None = None,
        stop_timeout: float | None = None,
    ) -> None:
        self.runtime = runtime
        self.health_gate = health_gate or HealthGate()
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout

        self._machine: ServiceMachine | None = None
        self._specs: dict[str, ServiceSpec] = {}
        self._handles: dict[str, InstanceHandle] = {}
        self._errors: dict[str, str] = {}
        self._health: dict[str, HealthResult] = {}
        self._start_order: list[str] = []

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _as_specs(services: DeploymentDescriptor | Sequence[ServiceSpec]) -> list[ServiceSpec]:
        if isinstance(services, DeploymentDescriptor):
            return list(services.services)
        return list(services)

    @staticmethod
    def validate(services: DeploymentDescriptor | Sequence[ServiceSpec]) -> DependencyGraph:
        """Build the dependency graph, failing fast on structural errors.

        Raises ``UnknownDependencyError``, ``CyclicDependencyError`` or
        ``ValueError`` (duplicate names).  Nothing is started.
        """
        specs = ServiceOrchestrator._as_specs(services)
        names = [s.name for s in specs]
        if len(set(names)) != len(names):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate service names: {', '.join(duplicates)}")
        return DependencyGraph({s.name: s.depends_on for s in specs})

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        services: DeploymentDescriptor | Sequence[ServiceSpec],
        *,
        force_recreate: bool = False,
    ) -> DeploymentReport:
        """Start every service and return the per-service report."""
        async for _ in self.stream(services, force_recreate=force_recreate):
            pass
        return self.report()

    async def stream(
        self,
        services: DeploymentDescriptor | Sequence[ServiceSpec],
        *,
        force_recreate: bool = False,
    ) -> AsyncIterator[ServiceTransition]:
        """Start every service, yielding each state transition as it happens.

        Without *force_recreate*, services already READY with an identical
        spec are kept running; changed services and their dependents are
        recreated.
        """
        specs = self._as_specs(services)
        graph = self.validate(specs)

        queue: asyncio.Queue[ServiceTransition | None] = asyncio.Queue()
        runner = asyncio.create_task(
            self._deploy(specs, graph, force_recreate, queue.put_nowait),
            name="deploy",
        )
        runner.add_done_callback(lambda _task: queue.put_nowait(None))
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
            runner.result()
        finally:
            if not runner.done():
                runner.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await runner

    async def _deploy(
        self,
        specs: list[ServiceSpec],
        graph: DependencyGraph,
        force_recreate: bool,
        emit: TransitionListener,
    ) -> None:
        new_specs = {s.name: s for s in specs}
        keep = await self._retire_previous(new_specs, graph, force_recreate)

        machine = ServiceMachine(graph, has_instance=self._handles.__contains__)
        machine.add_listener(emit)
        self._machine = machine
        self._specs = new_specs
        self._errors = {}
        self._health = {n: h for n, h in self._health.items() if n in keep}
        self._start_order = [n for n in self._start_order if n in keep]

        for name in graph.nodes:
            if name in keep:
                await machine.transition(name, ServiceState.STARTING, reason="already running")
                await machine.transition(name, ServiceState.READY, reason="unchanged")

        settled: dict[str, asyncio.Event] = {name: asyncio.Event() for name in graph.nodes}
        for name in keep:
            settled[name].set()

        tasks = [
            asyncio.create_task(self._run_service(name, machine, settled), name=f"service:{name}")
            for name in graph.nodes
            if name not in keep
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        blocked = [n for n in graph.nodes if machine.is_blocked(n)]
        if blocked:
            logger.warning("Blocked by failed dependencies: %s", ", ".join(blocked))

    async def _retire_previous(
        self,
        new_specs: dict[str, ServiceSpec],
        graph: DependencyGraph,
        force_recreate: bool,
    ) -> set[str]:
        """Stop instances from an earlier deployment that must be replaced.

        Returns the names of instances kept running unchanged.
        """
        if self._machine is None:
            return await self._adopt_existing(new_specs, graph, force_recreate)

        old_states = self._machine.get_all_states()
        running = {n for n, s in old_states.items() if s == ServiceState.READY}
        changed = {
            n for n in running
            if n not in new_specs or new_specs[n] != self._specs.get(n)
        }
        replace = self._replacement(running, changed, graph, force_recreate)

        order = [n for n in reversed(self._start_order) if n in self._handles]
        for name in order:
            if name in replace or old_states.get(name) == ServiceState.FAILED:
                await self._stop_handle(name)

        return running - replace

    async def _adopt_existing(
        self,
        new_specs: dict[str, ServiceSpec],
        graph: DependencyGraph,
        force_recreate: bool,
    ) -> set[str]:
        """Pick up instances an earlier process left behind in the runtime.

        Running instances whose recorded spec digest matches are kept unless
        *force_recreate*; every other instance found is removed so the
        service can start afresh.
        """
        found: dict[str, InstanceHandle] = {}
        for name in graph.nodes:
            try:
                handle = await self.runtime.find_instance(new_specs[name])
            except RuntimeBackendError as exc:
                logger.warning("Could not look up an existing %s instance: %s", name, exc)
                continue
            if handle is not None:
                found[name] = handle
        if not found:
            return set()

        running = {n for n, h in found.items() if h.metadata.get("running", True)}
        changed = {
            n for n in running
            if found[n].metadata.get("spec_digest") != spec_digest(new_specs[n])
        }
        # A dependency that has to start afresh takes its dependents with it.
        changed |= set(graph.nodes) - running
        replace = self._replacement(running, changed, graph, force_recreate)
        keep = running - replace

        self._handles.update(found)
        for name in graph.reverse_order():
            if name in found and name not in keep:
                await self._stop_handle(name)
        self._start_order = [n for n in graph.nodes if n in keep]
        if keep:
            logger.info("Keeping running instances: %s", ", ".join(self._start_order))
        return keep

    @staticmethod
    def _replacement(
        running: set[str],
        changed: set[str],
        graph: DependencyGraph,
        force_recreate: bool,
    ) -> set[str]:
        """Running services to recreate: everything, or the changed ones and their dependents."""
        if force_recreate:
            return set(running)
        replace = set(changed)
        for name in changed:
            if name in graph:
                replace.update(graph.get_dependents(name))
        return replace & running

    async def _run_service(
        self,
        name: str,
        machine: ServiceMachine,
        settled: dict[str, asyncio.Event],
    ) -> None:
        spec = self._specs[name]
        try:
            for dep in spec.depends_on:
                await settled[dep].wait()

            can_start, reasons = machine.can_start(name)
            if not can_start:
                logger.info("%s stays pending: %s", name, "; ".join(reasons))
                return

            await machine.transition(name, ServiceState.STARTING)
            self._start_order.append(name)
            try:
                handle = await asyncio.wait_for(
                    self.runtime.start_instance(spec), timeout=self.start_timeout
                )
            except asyncio.TimeoutError:
                await self._fail(machine, name, f"start timed out after {self.start_timeout}s")
                return
            except Exception as exc:  # noqa: BLE001
                await self._fail(machine, name, f"{type(exc).__name__}: {exc}")
                return
            self._handles[name] = handle

            if spec.healthcheck is None:
                await machine.transition(name, ServiceState.READY)
                return

            await machine.transition(name, ServiceState.HEALTH_CHECKING)
            result = await self.health_gate.await_ready(name, spec.healthcheck, handle)
            self._health[name] = result
            if result.ready:
                await machine.transition(name, ServiceState.READY)
            else:
                await self._fail(
                    machine, name,
                    f"HealthCheckFailed: {result.last_error or 'unhealthy'}",
                )
        except asyncio.CancelledError:
            await self._abandon(machine, name)
            raise
        finally:
            settled[name].set()

    async def _fail(self, machine: ServiceMachine, name: str, error: str) -> None:
        self._errors[name] = error
        logger.error("%s failed: %s", name, error)
        await machine.transition(name, ServiceState.FAILED, reason=error)

    async def _abandon(self, machine: ServiceMachine, name: str) -> None:
        """Settle a cancelled service: FAILED, then STOPPED once its instance is gone."""
        if machine.get_state(name) not in ACTIVE_STATES:
            return
        await self._fail(machine, name, "cancelled")
        if name not in self._handles:
            return
        try:
            await machine.transition_after(
                name, ServiceState.STOPPED, lambda: self._stop_handle(name), reason="cancelled"
            )
        except (RuntimeBackendError, asyncio.TimeoutError) as exc:
            # Left FAILED with its handle, so stop_all picks it up later.
            logger.error("Could not stop cancelled %s: %s", name, exc)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def _stop_handle(self, name: str) -> None:
        handle = self._handles.get(name)
        if handle is None:
            return
        await asyncio.wait_for(self.runtime.stop_instance(handle), timeout=self.stop_timeout)
        del self._handles[name]

    async def stop(self, name: str) -> None:
        """Stop one service.

        The instance is removed while the state machine lock is held and the
        service is marked STOPPED only once that succeeded.  If the runtime
        fails to stop it, the state is left as it was so ``stop_all`` can
        try again.

        Raises
        ------
        StopRejectedError
            If *name* is still starting, or any dependent of *name* still
            has a live instance.
        KeyError
            If *name* is not part of the current deployment.
        """
        if self._machine is None or name not in self._specs:
            raise KeyError(name)
        machine = self._machine
        state = machine.get_state(name)
        if state in (ServiceState.PENDING, ServiceState.STOPPED):
            return
        if state == ServiceState.FAILED and name not in self._handles:
            return
        if state not in (ServiceState.READY, ServiceState.FAILED):
            raise StopRejectedError(name, [], reason=f"it is still {state.value}")

        active = machine.active_dependents(name)
        if active:
            raise StopRejectedError(name, active)

        try:
            await machine.transition_after(
                name, ServiceState.STOPPED, lambda: self._stop_handle(name)
            )
        except asyncio.TimeoutError:
            self._errors[name] = f"stop timed out after {self.stop_timeout}s"
            logger.error("Could not stop %s: %s", name, self._errors[name])
            raise
        except RuntimeBackendError as exc:
            self._errors[name] = f"stop failed: {exc}"
            logger.error("Could not stop %s: %s", name, exc)
            raise
        logger.info("Stopped %s", name)

    async def stop_all(self) -> list[str]:
        """Stop every live service, dependents first.  Returns the stop order."""
        if self._machine is None:
            return []
        order = list(reversed(self._start_order))
        order += [n for n in reversed(self._machine.graph.nodes) if n not in order]
        stopped: list[str] = []
        for name in order:
            state = self._machine.get_state(name)
            if state == ServiceState.READY or (
                state == ServiceState.FAILED and name in self._handles
            ):
                await self.stop(name)
                stopped.append(name)
        return stopped

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def states(self) -> dict[str, ServiceState]:
        return self._machine.get_all_states() if self._machine else {}

    def report(self) -> DeploymentReport:
        """Per-service result set: ready, failed with cause, or blocked."""
        if self._machine is None:
            return DeploymentReport(services={})
        machine = self._machine
        services: dict[str, ServiceStatus] = {}
        for name in machine.graph.nodes:
            state = machine.get_state(name)
            blocked_by = machine.failed_ancestors(name) if state == ServiceState.PENDING else []
            services[name] = ServiceStatus(
                name=name,
                state=state,
                image=self._specs[name].image,
                error=self._errors.get(name),
                blocked_by=blocked_by,
                health=self._health.get(name),
            )
        return DeploymentReport(
            services=services,
            start_order=list(self._start_order),
            transitions=machine.history,
        )
