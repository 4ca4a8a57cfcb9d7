"""Rich terminal renderer for build and deployment reports.

Color scheme
------------
- green     : BUILT, CACHED, READY
- red       : FAILED
- yellow    : RUNNING, STARTING, HEALTH_CHECKING
- dim       : PENDING, STOPPED
- bold red  : BLOCKED
- magenta   : CANCELLED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from flotilla.models.builds import BuildReport, StageResult, StageState
from flotilla.models.services import (
    DeploymentReport,
    ServiceState,
    ServiceStatus,
    ServiceTransition,
)


# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_STAGE_STYLES: dict[StageState, str] = {
    StageState.PENDING: "dim",
    StageState.RUNNING: "bold yellow",
    StageState.CACHED: "green",
    StageState.BUILT: "bold green",
    StageState.FAILED: "bold red",
    StageState.BLOCKED: "bold red",
    StageState.CANCELLED: "bold magenta",
}

_SERVICE_STYLES: dict[ServiceState, str] = {
    ServiceState.PENDING: "dim",
    ServiceState.STARTING: "yellow",
    ServiceState.HEALTH_CHECKING: "bold yellow",
    ServiceState.READY: "bold green",
    ServiceState.FAILED: "bold red",
    ServiceState.STOPPED: "dim",
}


def _styled(value: str, style: str) -> str:
    return f"[{style}]{value}[/{style}]" if style else value


class ReportRenderer:
    """Renders build and deployment reports as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def render_build(self, report: BuildReport) -> Panel:
        """Render a BuildReport as a Panel holding a per-stage table."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=16)
        table.add_column("State", min_width=10, justify="center")
        table.add_column("Fingerprint", min_width=14)
        table.add_column("Details", min_width=20)

        for i, (name, result) in enumerate(report.results.items()):
            style = _STAGE_STYLES.get(result.state, "")
            label = f"{name} *" if name in report.terminal_stages else name
            table.add_row(
                str(i),
                _styled(label, style),
                _styled(result.state.value.upper(), style),
                f"[dim]{result.fingerprint[:12]}[/dim]",
                self._stage_details(result),
            )

        counts = {
            state: len(report.stages_in(state))
            for state in (StageState.BUILT, StageState.CACHED, StageState.FAILED, StageState.BLOCKED)
        }
        summary_parts = [f"[bold]Tag:[/bold] {report.tag or '-'}"]
        summary_parts += [
            f"[bold]{state.value.capitalize()}:[/bold] {count}" for state, count in counts.items()
        ]
        if report.published:
            summary_parts.append(f"[bold]Published:[/bold] {len(report.published)}")
        summary = "  |  ".join(summary_parts)

        lines: list[Text | Table] = [table, Text(""), Text.from_markup(summary)]
        for published in report.published:
            lines.append(Text.from_markup(
                f"[green]pushed[/green] {published.image_ref} "
                f"[dim]{published.artifact.digest}[/dim]"
            ))

        return Panel(
            Group(*lines),
            title="[bold]Build[/bold]",
            border_style="green" if report.succeeded else "red",
            padding=(1, 2),
        )

    @staticmethod
    def _stage_details(result: StageResult) -> str:
        if result.error:
            return f"[red]{escape(result.error)}[/red]"
        if result.blocked_by:
            return f"[red]blocked by {', '.join(result.blocked_by)}[/red]"
        if result.artifact is not None:
            duration = f" ({result.duration_seconds:.1f}s)" if result.duration_seconds else ""
            return f"{result.artifact.digest[:19]}{duration}"
        return "[dim]-[/dim]"

    def stage_line(self, result: StageResult) -> str:
        """One-line markup for a stage progress event."""
        style = _STAGE_STYLES.get(result.state, "")
        return f"{_styled(result.state.value.upper(), style)} {result.stage}"

    def print_build(self, report: BuildReport) -> None:
        self.console.print(self.render_build(report))

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def render_deployment(self, report: DeploymentReport) -> Panel:
        """Render a DeploymentReport as a Panel holding a per-service table."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Service", min_width=10)
        table.add_column("State", min_width=12, justify="center")
        table.add_column("Image", min_width=16)
        table.add_column("Details", min_width=16)

        for name, status in report.services.items():
            style = "bold red" if status.blocked else _SERVICE_STYLES.get(status.state, "")
            state = "BLOCKED" if status.blocked else status.state.value.upper()
            table.add_row(
                _styled(name, style),
                _styled(state, style),
                escape(status.image),
                self._service_details(status),
            )

        summary = "  |  ".join([
            f"[bold]Ready:[/bold] {len(report.ready)}/{len(report.services)}",
            f"[bold]Failed:[/bold] {len(report.failed)}",
            f"[bold]Blocked:[/bold] {len(report.blocked)}",
            f"[bold]Start order:[/bold] {' -> '.join(report.start_order) or '-'}",
        ])

        return Panel(
            Group(table, Text(""), Text.from_markup(summary)),
            title="[bold]Deployment[/bold]",
            border_style="green" if report.succeeded else "red",
            padding=(1, 2),
        )

    @staticmethod
    def _service_details(status: ServiceStatus) -> str:
        if status.error:
            return f"[red]{escape(status.error)}[/red]"
        if status.blocked:
            return f"[red]blocked by {', '.join(status.blocked_by)}[/red]"
        if status.health is not None:
            return f"[dim]healthy after {status.health.attempts} probe(s)[/dim]"
        return "[dim]-[/dim]"

    def transition_line(self, transition: ServiceTransition) -> str:
        """One-line markup for a service state change."""
        style = _SERVICE_STYLES.get(transition.to_state, "")
        line = (
            f"{transition.service}: {transition.from_state.value} -> "
            f"{_styled(transition.to_state.value, style)}"
        )
        if transition.reason:
            line += f" [dim]({escape(transition.reason)})[/dim]"
        return line

    def print_deployment(self, report: DeploymentReport) -> None:
        self.console.print(self.render_deployment(report))
