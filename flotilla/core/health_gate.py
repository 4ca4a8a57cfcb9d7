"""Bounded health gate.

State machine::

    Pending --(start_period elapses)--> Probing --first success--> Ready
                                           |
                                           +--retries consecutive failures--> Failed

Each attempt must finish within ``probe.timeout``; a timeout or an
exception counts as a failed attempt.  Attempts are spaced by
``probe.interval``.  There is no retry beyond ``probe.retries``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from flotilla.backends.base import ProbeRunner
from flotilla.backends.probes import DefaultProbeRunner
from flotilla.models.services import HealthOutcome, HealthProbe, HealthResult, InstanceHandle

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class HealthCheckFailedError(RuntimeError):
    """Raised by ``require_ready`` when a service never became healthy."""

    def __init__(self, service: str, result: HealthResult | None = None) -> None:
        self.service = service
        self.result = result
        detail = ""
        if result is not None:
            detail = f" after {result.attempts} attempt(s)"
            if result.last_error:
                detail += f": {result.last_error}"
        super().__init__(f"Health check for {service!r} failed{detail}")


class HealthGate:
    """Polls a probe until success or exhausted retries.

    Parameters
    ----------
    runner:
        Executes a single probe attempt.
    sleep:
        Awaitable sleep used for the start period and between attempts;
        injectable so tests need not wait in real time.
    """

    def __init__(
        self,
        runner: ProbeRunner | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.runner = runner or DefaultProbeRunner()
        self._sleep = sleep

    async def await_ready(
        self,
        service: str,
        probe: HealthProbe,
        handle: InstanceHandle | None = None,
    ) -> HealthResult:
        """Gate on *probe*; returns a READY or FAILED result, never raises."""
        if probe.start_period > 0:
            logger.debug("%s: waiting %.1fs start period", service, probe.start_period)
            await self._sleep(probe.start_period)

        last_error: str | None = None
        for attempt in range(1, probe.retries + 1):
            try:
                ok = await asyncio.wait_for(
                    self.runner.run(probe, handle), timeout=probe.timeout
                )
                if not ok:
                    last_error = f"probe '{probe.describe()}' reported unhealthy"
            except asyncio.TimeoutError:
                ok = False
                last_error = f"probe timed out after {probe.timeout}s"
            except Exception as exc:  # noqa: BLE001
                ok = False
                last_error = f"{type(exc).__name__}: {exc}"

            if ok:
                logger.info("%s healthy after %d attempt(s)", service, attempt)
                return HealthResult(service=service, outcome=HealthOutcome.READY, attempts=attempt)

            logger.info(
                "%s health attempt %d/%d failed: %s",
                service, attempt, probe.retries, last_error,
            )
            if attempt < probe.retries and probe.interval > 0:
                await self._sleep(probe.interval)

        logger.warning("%s failed its health check", service)
        return HealthResult(
            service=service,
            outcome=HealthOutcome.FAILED,
            attempts=probe.retries,
            last_error=last_error,
        )

    async def require_ready(
        self,
        service: str,
        probe: HealthProbe,
        handle: InstanceHandle | None = None,
    ) -> HealthResult:
        """Like ``await_ready`` but raises ``HealthCheckFailedError`` on failure."""
        result = await self.await_ready(service, probe, handle)
        if not result.ready:
            raise HealthCheckFailedError(service, result)
        return result
