"""Docker CLI backends.

Drives ``docker build``, ``docker push/pull``, ``docker run/stop`` and
``docker exec`` through ``asyncio.create_subprocess_exec``.  Each call
honours a timeout and kills the child process when it expires or when the
awaiting task is cancelled.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from flotilla.backends.base import (
    BuildBackendError,
    CredentialProvider,
    ProbeRunner,
    RegistryError,
    RuntimeBackendError,
    spec_digest,
)
from flotilla.backends.probes import DefaultProbeRunner
from flotilla.models.artifacts import Artifact
from flotilla.models.builds import BuildRequest
from flotilla.models.services import HealthProbe, InstanceHandle, ServiceSpec

logger = logging.getLogger(__name__)

SPEC_LABEL = "flotilla.spec"


async def run_docker(
    args: list[str],
    *,
    timeout: float | None = None,
    stdin: bytes | None = None,
    error_cls: type[Exception] = RuntimeError,
    docker_bin: str = "docker",
) -> str:
    """Run a docker subcommand and return its stripped stdout.

    Raises *error_cls* on a non-zero exit, a missing binary or a timeout.
    """
    cmd = [docker_bin, *args]
    logger.debug("Running: %s", " ".join(cmd))
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise error_cls(f"{docker_bin} executable not found") from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(stdin), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise error_cls(f"'{' '.join(cmd[:3])}' timed out after {timeout} seconds") from None
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    if process.returncode != 0:
        detail = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
        raise error_cls(f"'{' '.join(cmd[:3])}' failed: {detail}")
    return stdout.decode(errors="replace").strip()


class DockerBuildBackend:
    """Builds each stage as a ``--target`` of one multi-stage Dockerfile.

    The stage's ``inputs`` may override ``target``, ``dockerfile`` and
    ``context``; ``build_args`` entries become ``--build-arg`` flags.

    Parameters
    ----------
    context:
        Default build context directory.
    repository:
        Local image repository name used to tag stage images.
    dockerfile:
        Default Dockerfile path, relative to the context.
    """

    def __init__(
        self,
        context: Path,
        repository: str,
        dockerfile: str = "Dockerfile",
        timeout: float | None = None,
    ) -> None:
        self.context = Path(context)
        self.repository = repository
        self.dockerfile = dockerfile
        self.timeout = timeout

    def build_command(self, request: BuildRequest) -> list[str]:
        inputs = request.inputs
        context = Path(inputs.get("context", self.context))
        dockerfile = inputs.get("dockerfile", self.dockerfile)
        image = f"{self.repository}:{request.stage}-{request.fingerprint[:12]}"
        cmd = [
            "build",
            "--progress=plain",
            "--target", str(inputs.get("target", request.stage)),
            "-t", image,
            "-f", str(context / dockerfile),
        ]
        for key, value in sorted(inputs.get("build_args", {}).items()):
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(str(context))
        return cmd

    async def build(self, request: BuildRequest) -> Artifact:
        cmd = self.build_command(request)
        image = cmd[cmd.index("-t") + 1]
        logger.info("Building stage %s as %s", request.stage, image)
        await run_docker(cmd, timeout=self.timeout, error_cls=BuildBackendError)
        image_id = await run_docker(
            ["image", "inspect", "--format", "{{.Id}}", image],
            timeout=self.timeout,
            error_cls=BuildBackendError,
        )
        return Artifact(
            digest=image_id,
            stage=request.stage,
            fingerprint=request.fingerprint,
            reference=image,
            metadata={"backend": "docker"},
        )


class DockerRegistry:
    """Pushes and pulls through the docker CLI.

    Logs in once, lazily, with the password fetched from the credential
    provider.  Login is skipped when no username is configured.
    """

    def __init__(
        self,
        registry: str = "",
        username: str = "",
        credentials: CredentialProvider | None = None,
        password_credential: str = "REGISTRY_PASSWORD",
        timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.username = username
        self._credentials = credentials
        self._password_credential = password_credential
        self.timeout = timeout
        self._logged_in = False
        self._login_lock = asyncio.Lock()

    async def _login(self) -> None:
        if self._logged_in or not self.username:
            return
        async with self._login_lock:
            if self._logged_in:
                return
            if self._credentials is None:
                raise RegistryError("Registry login requires a credential provider")
            password = self._credentials.credential(self._password_credential)
            args = ["login", "--username", self.username, "--password-stdin"]
            if self.registry:
                args.append(self.registry)
            await run_docker(
                args, stdin=password.encode(), timeout=self.timeout, error_cls=RegistryError
            )
            self._logged_in = True

    async def push(self, artifact: Artifact, tag: str) -> None:
        await self._login()
        source = artifact.reference or artifact.digest
        await run_docker(["tag", source, tag], timeout=self.timeout, error_cls=RegistryError)
        await run_docker(["push", tag], timeout=self.timeout, error_cls=RegistryError)
        logger.info("Pushed %s", tag)

    async def pull(self, tag: str) -> Artifact:
        await self._login()
        await run_docker(["pull", tag], timeout=self.timeout, error_cls=RegistryError)
        image_id = await run_docker(
            ["image", "inspect", "--format", "{{.Id}}", tag],
            timeout=self.timeout,
            error_cls=RegistryError,
        )
        return Artifact(digest=image_id, stage="", fingerprint="", reference=tag)


class DockerRuntime:
    """Runs each service as a detached container named ``<project>_<service>``.

    Containers are labelled with the digest of their spec, so a later run can
    tell an unchanged container from a stale one.
    """

    def __init__(
        self,
        project: str = "flotilla",
        network: str | None = None,
        stop_timeout: int = 10,
        timeout: float | None = 120.0,
    ) -> None:
        self.project = project
        self.network = network
        self.stop_timeout = stop_timeout
        self.timeout = timeout

    def container_name(self, service: str) -> str:
        return f"{self.project}_{service}"

    def run_command(self, spec: ServiceSpec) -> list[str]:
        cmd = [
            "run", "-d", "--name", self.container_name(spec.name),
            "--label", f"{SPEC_LABEL}={spec_digest(spec)}",
        ]
        if self.network:
            cmd.extend(["--network", self.network, "--network-alias", spec.name])
        for key, value in sorted(spec.environment.items()):
            cmd.extend(["-e", f"{key}={value}"])
        cmd.append(spec.image)
        if spec.command:
            cmd.extend(spec.command)
        return cmd

    async def start_instance(self, spec: ServiceSpec) -> InstanceHandle:
        container_id = await run_docker(
            self.run_command(spec), timeout=self.timeout, error_cls=RuntimeBackendError
        )
        logger.info("Started %s (%s)", spec.name, container_id[:12])
        return InstanceHandle(
            service=spec.name,
            instance_id=container_id,
            image=spec.image,
            metadata={"running": True, "spec_digest": spec_digest(spec)},
        )

    async def stop_instance(self, handle: InstanceHandle) -> None:
        await run_docker(
            ["stop", "-t", str(self.stop_timeout), handle.instance_id],
            timeout=self.timeout,
            error_cls=RuntimeBackendError,
        )
        await run_docker(
            ["rm", handle.instance_id], timeout=self.timeout, error_cls=RuntimeBackendError
        )
        logger.info("Stopped %s (%s)", handle.service, handle.instance_id[:12])

    def ps_command(self, service: str) -> list[str]:
        return [
            "ps", "-a", "--no-trunc",
            "--filter", f"name=^/{self.container_name(service)}$",
            "--format", '{{.ID}} {{.State}} {{.Label "%s"}}' % SPEC_LABEL,
        ]

    async def find_instance(self, spec: ServiceSpec) -> InstanceHandle | None:
        output = await run_docker(
            self.ps_command(spec.name), timeout=self.timeout, error_cls=RuntimeBackendError
        )
        lines = output.splitlines()
        if not lines:
            return None
        container_id, state, *label = lines[0].split()
        logger.debug("Found existing %s container %s (%s)", spec.name, container_id[:12], state)
        return InstanceHandle(
            service=spec.name,
            instance_id=container_id,
            metadata={"running": state == "running", "spec_digest": label[0] if label else ""},
        )


class DockerExecProbeRunner:
    """Runs command probes inside the service container via ``docker exec``.

    Endpoint probes are delegated to *http_runner*.
    """

    def __init__(self, http_runner: ProbeRunner | None = None) -> None:
        self._http = http_runner or DefaultProbeRunner()

    async def run(self, probe: HealthProbe, handle: InstanceHandle | None = None) -> bool:
        if probe.endpoint or handle is None:
            return await self._http.run(probe, handle)
        try:
            await run_docker(
                ["exec", handle.instance_id, *probe.command],
                timeout=probe.timeout,
                error_cls=RuntimeBackendError,
            )
        except RuntimeBackendError as exc:
            logger.debug("Probe for %s failed: %s", handle.service, exc)
            return False
        return True
