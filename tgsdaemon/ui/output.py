"""
Terminal rendering for check results and settings.
Kept apart from cli.py so the command functions stay linear.
"""

from typing import Any, Dict, List, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tgsdaemon.core.configs import SessionConfig
from tgsdaemon.daemon.diagnostics import Diagnostic
from tgsdaemon.daemon.protocol import ResultEnvelope

console = Console()
err_console = Console(stderr=True)


def render_diagnostics(path: str, diagnostics: Sequence[Diagnostic], text: str) -> None:
    """
    Print diagnostics compiler-style: path:line:col: severity: message.

    The offending source line is echoed underneath with the range marked.
    """
    lines = text.split("\n")
    for diagnostic in diagnostics:
        line_no = diagnostic.line + 1
        col_no = diagnostic.start_column + 1
        console.print(
            f"[bold]{escape(path)}:{line_no}:{col_no}:[/bold] "
            f"[red]{diagnostic.severity}:[/red] {escape(diagnostic.message)}",
            highlight=False,
        )
        if diagnostic.line < len(lines) and lines[diagnostic.line].strip():
            source = lines[diagnostic.line].rstrip("\r")
            width = max(diagnostic.end_column - diagnostic.start_column, 1)
            console.print(f"    {source}", highlight=False, markup=False)
            console.print(" " * (4 + diagnostic.start_column) + "[red]" + "^" * width + "[/red]")


def render_success(path: str, result: ResultEnvelope) -> None:
    counts = []
    for name in ("schemas", "enums", "imports"):
        value = getattr(result, name)
        if value is not None:
            counts.append(f"{value} {name}")
    suffix = f" ({', '.join(counts)})" if counts else ""
    console.print(f"[green]✓[/green] {escape(path)}{suffix}", highlight=False)


def render_failure(path: str, error: Exception) -> None:
    """A request that never got a result: one generic line, no traceback."""
    err_console.print(f"[bold]{escape(path)}:[/bold] [red]error:[/red] {escape(str(error))}", highlight=False)


def render_summary(checked: int, failed: List[str]) -> None:
    if failed:
        console.print(f"\n[red]{len(failed)} of {checked} file(s) with errors[/red]")
    else:
        console.print(f"\n[green]{checked} file(s) OK[/green]")


def render_settings(config: SessionConfig, source: str) -> None:
    table = Table(title=f"Typegen daemon settings ({source})")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("executable", config.executable)
    table.add_row("command", " ".join(config.command))
    table.add_row("startup_timeout", f"{config.startup_timeout:g}s")
    table.add_row("terminate_timeout", f"{config.terminate_timeout:g}s")
    table.add_row("policy", config.policy)
    table.add_row("log_level", config.log_level)
    console.print(table)


def render_stats(stats: Dict[str, Any]) -> None:
    table = Table(title="Session statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for name, value in stats.items():
        if isinstance(value, float):
            value = f"{value:.2f}"
        table.add_row(name, str(value))
    console.print(table)
