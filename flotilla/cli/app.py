"""Main Typer application: loads settings and registers all CLI commands.

Entry point: ``flotilla`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import typer

from flotilla.cli.commands.build import build_cmd
from flotilla.cli.commands.deploy import deploy_cmd
from flotilla.cli.commands.resolve_tag import resolve_tag_cmd
from flotilla.config import FlotillaSettings, configure_logging

app = typer.Typer(
    name="flotilla",
    help="Flotilla: release tagging, cached graph builds and health-gated deploys.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_level: str = typer.Option(
        None, "--log-level", help="Override FLOTILLA_LOG_LEVEL for this invocation."
    ),
) -> None:
    """Load settings and install the Rich log handler."""
    settings = FlotillaSettings()
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


# Register subcommands
app.command(name="resolve-tag", help="Print the release tag for a git ref.")(resolve_tag_cmd)
app.command(name="build", help="Build a stage graph, reusing cached stages.")(build_cmd)
app.command(name="deploy", help="Start services in dependency order behind health gates.")(deploy_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
