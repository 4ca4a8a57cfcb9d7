"""``flotilla deploy DESCRIPTOR``: start services in dependency order.

Each service starts only once its dependencies are READY; a failed
dependency leaves its dependents pending and reported as blocked.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console

from flotilla.backends import (
    DefaultProbeRunner,
    DockerExecProbeRunner,
    DockerRuntime,
    InMemoryRuntime,
)
from flotilla.backends.base import ProbeRunner, RuntimeBackend
from flotilla.cli import EXIT_DEPLOY_FAILED, EXIT_INVALID_DESCRIPTOR, EXIT_OK
from flotilla.config import FlotillaSettings
from flotilla.core.health_gate import HealthGate
from flotilla.core.ref_tags import RefTagResolver
from flotilla.core.release import ReleaseController
from flotilla.core.service_orchestrator import ServiceOrchestrator
from flotilla.descriptors import load_deployment
from flotilla.monitor.renderer import ReportRenderer

console = Console()


class RuntimeChoice(str, Enum):
    memory = "memory"
    docker = "docker"


def _runtime(
    choice: RuntimeChoice, settings: FlotillaSettings
) -> tuple[RuntimeBackend, ProbeRunner]:
    if choice == RuntimeChoice.docker:
        runtime = DockerRuntime(
            project=settings.project_name,
            network=settings.network,
            timeout=settings.start_timeout_seconds,
        )
        return runtime, DockerExecProbeRunner()
    return InMemoryRuntime(), DefaultProbeRunner()


def deploy_cmd(
    ctx: typer.Context,
    descriptor: Path = typer.Argument(..., help="Deployment descriptor (YAML or JSON)."),
    tag: str = typer.Option(None, "--tag", "-t", help="Release tag substituted for VERSION."),
    ref: str = typer.Option(None, "--ref", "-r", help="Git ref to resolve into the tag."),
    force_recreate: bool = typer.Option(
        False, "--force-recreate", help="Recreate services even if unchanged."
    ),
    runtime: RuntimeChoice = typer.Option(
        RuntimeChoice.memory, "--runtime", help="Runtime backend."
    ),
) -> None:
    """Start every service in DESCRIPTOR and report the per-service outcome."""
    settings: FlotillaSettings = ctx.obj or FlotillaSettings()
    renderer = ReportRenderer(console=console)

    try:
        deployment = load_deployment(descriptor)
        ServiceOrchestrator.validate(deployment)
    except ValueError as exc:
        # DescriptorError, cycles, unknown and duplicate services
        console.print(f"[bold red]Invalid deployment:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_INVALID_DESCRIPTOR)

    resolver = RefTagResolver(settings.primary_branch, settings.feature_prefix)
    if tag is None and ref is not None:
        tag = resolver.resolve(ref).value

    instance_runtime, probes = _runtime(runtime, settings)
    orchestrator = ServiceOrchestrator(
        instance_runtime,
        HealthGate(probes),
        start_timeout=settings.start_timeout_seconds,
        stop_timeout=settings.stop_timeout_seconds,
    )
    controller = ReleaseController(resolver, orchestrator=orchestrator)
    console.print(f"[bold cyan]Deploying {descriptor}[/bold cyan] [dim](VERSION={tag or 'unset'})[/dim]")

    report = asyncio.run(
        controller.deploy(
            deployment,
            tag,
            force_recreate=force_recreate,
            listener=lambda transition: console.print(renderer.transition_line(transition)),
        )
    )

    console.print()
    renderer.print_deployment(report)
    if not report.succeeded:
        raise typer.Exit(code=EXIT_DEPLOY_FAILED)
    raise typer.Exit(code=EXIT_OK)
