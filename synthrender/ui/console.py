"""Rich-powered console views for the command line."""

from __future__ import annotations

from typing import Iterable, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..services.cleanup import SweepReport
from ..services.synthemes import Syntheme, SynthemeRegistry


class SynthemeOverview:
    """Render the loaded synthemes as a table."""

    def __init__(self, registry: SynthemeRegistry, *, console: Optional[Console] = None) -> None:
        self._registry = registry
        self._console = console or Console()

    def run(self, *, plain: bool = False) -> None:
        console = self._console
        synthemes = list(self._registry)
        if plain:
            for syntheme in synthemes:
                console.print(syntheme.name, markup=False, highlight=False)
            return

        console.rule("[bold magenta]Synthemes")
        if not synthemes:
            console.print(
                Panel(
                    "No synthemes are loaded.",
                    border_style="yellow",
                    box=box.ROUNDED,
                )
            )
            return
        console.print(self.build_table(synthemes))

    @staticmethod
    def build_table(synthemes: Iterable[Syntheme]) -> Table:
        table = Table(box=box.ROUNDED, expand=True, header_style="bold cyan")
        table.add_column("Name", style="bold")
        table.add_column("Accepts")
        table.add_column("Output", style="green")
        table.add_column("Timeout", justify="right")
        table.add_column("Description", style="dim")
        for syntheme in synthemes:
            accepts = ", ".join(syntheme.accepts) if syntheme.accepts else "any"
            timeout = f"{syntheme.timeout_seconds:g}s" if syntheme.timeout_seconds else "default"
            table.add_row(
                syntheme.name,
                accepts,
                f"{syntheme.output_extension} ({syntheme.output_content_type})",
                timeout,
                Text(syntheme.description),
            )
        return table


def render_sweep_report(report: SweepReport, *, console: Optional[Console] = None) -> None:
    console = console or Console()
    metrics = Table.grid(padding=(0, 1))
    metrics.add_column(style="dim")
    metrics.add_column(justify="right", style="bold")
    metrics.add_row("Evicted jobs", str(report.evicted_jobs))
    metrics.add_row("Deleted artifacts", str(report.deleted_artifacts))
    metrics.add_row("Deleted uploads", str(report.deleted_uploads))
    metrics.add_row("Reclaimed orphans", str(report.reclaimed_orphans))
    metrics.add_row("Expired upload sessions", str(report.expired_sessions))
    metrics.add_row("Errors", str(report.errors))
    border = "red" if report.errors else "magenta"
    console.print(Panel(metrics, title="Retention sweep", border_style=border, box=box.ROUNDED))


__all__ = ["SynthemeOverview", "render_sweep_report"]
