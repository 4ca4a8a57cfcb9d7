"""``flotilla resolve-tag REF``: print the release tag for a git ref."""

from __future__ import annotations

import typer

from flotilla.config import FlotillaSettings
from flotilla.core.ref_tags import RefTagResolver


def resolve_tag_cmd(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Branch name or full ref, e.g. refs/heads/main."),
    primary_branch: str = typer.Option(
        None, "--primary-branch", help="Branch published as 'latest'."
    ),
    feature_prefix: str = typer.Option(
        None, "--feature-prefix", help="Prefix marking feature branches."
    ),
) -> None:
    """Resolve REF to its release tag and print it plainly for scripting."""
    settings: FlotillaSettings = ctx.obj or FlotillaSettings()
    resolver = RefTagResolver(
        primary_branch=primary_branch or settings.primary_branch,
        feature_prefix=feature_prefix or settings.feature_prefix,
    )
    typer.echo(resolver.resolve(ref).value)
