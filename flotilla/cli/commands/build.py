"""``flotilla build GRAPH``: build a stage graph and publish its targets.

Stages whose fingerprint is already cached are reused; only changed stages
and their dependents are rebuilt.  Terminal artifacts are pushed under the
release tag resolved from ``--ref``.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from pathlib import Path

import typer
from rich.console import Console

from flotilla.backends import (
    DockerBuildBackend,
    DockerRegistry,
    EnvCredentialProvider,
    HashingBuildBackend,
    InMemoryRegistry,
)
from flotilla.backends.base import BuildBackend, RegistryBackend
from flotilla.cli import EXIT_BUILD_FAILED, EXIT_INVALID_DESCRIPTOR, EXIT_OK
from flotilla.config import FlotillaSettings
from flotilla.core.build_cache import BuildCache, FileCacheStore
from flotilla.core.build_executor import BuildGraphExecutor
from flotilla.core.ref_tags import RefTagResolver
from flotilla.core.release import ReleaseController
from flotilla.descriptors import load_build_graph
from flotilla.monitor.renderer import ReportRenderer

console = Console()


class BuildBackendChoice(str, Enum):
    hash = "hash"
    docker = "docker"


def _backends(
    choice: BuildBackendChoice, graph_path: Path, settings: FlotillaSettings
) -> tuple[BuildBackend, RegistryBackend]:
    if choice == BuildBackendChoice.docker:
        backend = DockerBuildBackend(
            context=graph_path.parent,
            repository=settings.registry or settings.project_name,
            timeout=settings.build_timeout_seconds,
        )
        registry = DockerRegistry(
            registry=settings.registry.split("/", 1)[0],
            username=settings.registry_username,
            credentials=EnvCredentialProvider(),
            password_credential=settings.registry_password_env,
        )
        return backend, registry
    # Dry run: deterministic artifacts, tags recorded in memory.
    return HashingBuildBackend(), InMemoryRegistry()


def build_cmd(
    ctx: typer.Context,
    graph: Path = typer.Argument(..., help="Build graph descriptor (YAML or JSON)."),
    ref: str = typer.Option("", "--ref", "-r", help="Git ref the build is for."),
    cache_dir: Path = typer.Option(
        None, "--cache-dir", help="Cache directory (default: FLOTILLA_CACHE_PATH)."
    ),
    push: bool = typer.Option(
        True, "--push/--no-push", help="Publish terminal artifacts under the release tag."
    ),
    backend: BuildBackendChoice = typer.Option(
        BuildBackendChoice.hash, "--backend", "-b", help="Build backend."
    ),
) -> None:
    """Build every stage of GRAPH and report the per-stage outcome."""
    settings: FlotillaSettings = ctx.obj or FlotillaSettings()
    renderer = ReportRenderer(console=console)

    try:
        descriptor = load_build_graph(graph)
        BuildGraphExecutor.plan(descriptor)
    except ValueError as exc:
        # DescriptorError, cycles, unknown and duplicate stages
        console.print(f"[bold red]Invalid build graph:[/bold red] {exc}")
        raise typer.Exit(code=EXIT_INVALID_DESCRIPTOR)

    build_backend, registry = _backends(backend, graph, settings)
    executor = BuildGraphExecutor(
        build_backend,
        BuildCache(FileCacheStore(cache_dir or settings.cache_path)),
        max_parallel=settings.max_parallel_builds,
        stage_timeout=settings.build_timeout_seconds,
    )
    controller = ReleaseController(
        RefTagResolver(settings.primary_branch, settings.feature_prefix),
        executor,
        registry,
        repository=settings.registry,
    )
    tag = controller.resolve_tag(ref)
    console.print(f"[bold cyan]Building {graph} as {tag.value}[/bold cyan] [dim]({tag.kind.value})[/dim]")

    report = asyncio.run(
        controller.build(
            descriptor,
            tag=tag.value,
            push=push,
            listener=lambda result: console.print(renderer.stage_line(result)),
        )
    )

    console.print()
    renderer.print_build(report)
    if not report.succeeded:
        raise typer.Exit(code=EXIT_BUILD_FAILED)
    raise typer.Exit(code=EXIT_OK)
