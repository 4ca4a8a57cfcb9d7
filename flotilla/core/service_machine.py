"""Per-service state machine with dependency checking.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Dependencies READY before a service enters STARTING
- A service is stopped only after every dependent is down
- Every transition recorded, serialised behind one lock
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from flotilla.core.dependency_graph import DependencyGraph
from flotilla.models.services import (
    VALID_TRANSITIONS,
    ServiceState,
    ServiceTransition,
)

logger = logging.getLogger(__name__)

# States in which an instance exists and may be serving.
ACTIVE_STATES: frozenset[ServiceState] = frozenset({
    ServiceState.STARTING,
    ServiceState.HEALTH_CHECKING,
    ServiceState.READY,
})


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class DependencyNotReadyError(RuntimeError):
    """Raised when a service cannot start because a dependency is not READY."""


class StopRejectedError(RuntimeError):
    """Raised when stopping a service that still has active dependents.

    *reason* replaces the default message when the service itself is not
    in a stoppable state.
    """

    def __init__(self, service: str, dependents: list[str], *, reason: str | None = None) -> None:
        self.service = service
        self.dependents = dependents
        detail = reason or f"still required by {', '.join(dependents)}"
        super().__init__(f"Cannot stop {service!r}: {detail}")


TransitionListener = Callable[[ServiceTransition], None]
InstanceCheck = Callable[[str], bool]


class ServiceMachine:
    """Tracks service states over a dependency graph.

    Parameters
    ----------
    graph:
        Service dependency graph (already validated).
    has_instance:
        Reports whether a service still owns a live instance.  A FAILED
        service with a live instance counts as active for stop checks.
    """

    def __init__(self, graph: DependencyGraph, has_instance: InstanceCheck | None = None) -> None:
        self._graph = graph
        self._has_instance = has_instance or (lambda _name: False)
        self._states: dict[str, ServiceState] = {n: ServiceState.PENDING for n in graph.nodes}
        self._history: list[ServiceTransition] = []
        self._listeners: list[TransitionListener] = []
        self._lock = asyncio.Lock()

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def get_state(self, name: str) -> ServiceState:
        return self._states[name]

    def get_all_states(self) -> dict[str, ServiceState]:
        """Return a snapshot of all service states."""
        return dict(self._states)

    @property
    def history(self) -> list[ServiceTransition]:
        return list(self._history)

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    async def transition(
        self, name: str, target: ServiceState, *, reason: str | None = None
    ) -> ServiceTransition:
        """Move *name* to *target*, validating the transition.

        Validates:
        1. The transition is allowed by VALID_TRANSITIONS.
        2. If target is STARTING, every dependency is READY.
        3. If target is STOPPED, no dependent is still active.
        """
        async with self._lock:
            return self._apply(name, target, reason)

    async def transition_after(
        self,
        name: str,
        target: ServiceState,
        action: Callable[[], Awaitable[None]],
        *,
        reason: str | None = None,
    ) -> ServiceTransition:
        """Validate, run *action*, then move *name* to *target*, all under the lock.

        If *action* raises, the state is left unchanged.
        """
        async with self._lock:
            self._check(name, target)
            await action()
            return self._apply(name, target, reason)

    def _check(self, name: str, target: ServiceState) -> None:
        current = self._states[name]
        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition {name} from {current.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        if target == ServiceState.STARTING:
            reasons = self.get_blocking_reasons(name)
            if reasons:
                raise DependencyNotReadyError(
                    f"Cannot start {name}: {'; '.join(reasons)}"
                )

        if target == ServiceState.STOPPED:
            active = self.active_dependents(name)
            if active:
                raise StopRejectedError(name, active)

    def _apply(self, name: str, target: ServiceState, reason: str | None) -> ServiceTransition:
        self._check(name, target)
        current = self._states[name]
        record = ServiceTransition(
            service=name, from_state=current, to_state=target, reason=reason
        )
        self._states[name] = target
        self._history.append(record)
        logger.debug("%s: %s -> %s", name, current.value, target.value)
        for listener in list(self._listeners):
            listener(record)
        return record

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_blocking_reasons(self, name: str) -> list[str]:
        """Return human-readable reasons why *name* may not start yet."""
        reasons = []
        for dep in self._graph.get_dependencies(name):
            state = self._states[dep]
            if state != ServiceState.READY:
                reasons.append(f"{dep} is {state.value}")
        return reasons

    def can_start(self, name: str) -> tuple[bool, list[str]]:
        """Check if a service can transition to STARTING."""
        current = self._states[name]
        if current != ServiceState.PENDING:
            return False, [f"{name} is currently {current.value}, not pending"]
        reasons = self.get_blocking_reasons(name)
        return not reasons, reasons

    def failed_ancestors(self, name: str) -> list[str]:
        """Transitive dependencies of *name* that are FAILED."""
        return [
            dep for dep in self._graph.get_ancestors(name)
            if self._states[dep] == ServiceState.FAILED
        ]

    def is_blocked(self, name: str) -> bool:
        """True when *name* is PENDING behind a failed dependency."""
        return self._states[name] == ServiceState.PENDING and bool(self.failed_ancestors(name))

    def active_dependents(self, name: str) -> list[str]:
        """Transitive dependents of *name* that still have a live instance."""
        return [
            dep for dep in self._graph.get_dependents(name)
            if self._states[dep] in ACTIVE_STATES
            or (self._states[dep] == ServiceState.FAILED and self._has_instance(dep))
        ]

    def can_stop(self, name: str) -> tuple[bool, list[str]]:
        """Check if *name* can be stopped now."""
        if self._states[name] not in (ServiceState.READY, ServiceState.FAILED):
            return False, [f"{name} is {self._states[name].value}"]
        active = self.active_dependents(name)
        return not active, [f"{d} is {self._states[d].value}" for d in active]
