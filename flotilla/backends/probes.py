"""Default health probe runner.

Command probes succeed when the process exits 0; endpoint probes succeed on
any 2xx/3xx response.  Per-attempt timeouts are enforced by the caller
(``HealthGate``); a cancelled command probe kills its child process.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from flotilla.models.services import HealthProbe, InstanceHandle

logger = logging.getLogger(__name__)


class DefaultProbeRunner:
    """Runs probes on the controller host."""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    async def run(self, probe: HealthProbe, handle: InstanceHandle | None = None) -> bool:
        if probe.endpoint:
            return await self._check_endpoint(probe)
        return await self._check_command(probe)

    async def _check_endpoint(self, probe: HealthProbe) -> bool:
        try:
            if self._client is not None:
                response = await self._client.get(probe.endpoint, timeout=probe.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(probe.endpoint, timeout=probe.timeout)
        except httpx.HTTPError as exc:
            logger.debug("Endpoint probe %s failed: %s", probe.endpoint, exc)
            return False
        return response.status_code < 400

    async def _check_command(self, probe: HealthProbe) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                *probe.command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            logger.debug("Command probe %s could not start: %s", probe.describe(), exc)
            return False
        try:
            return await process.wait() == 0
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise
