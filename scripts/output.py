"""
scripts/output.py — Console rendering and logging setup for the CLIs.

Status lines and banners go to a rich Console; operational messages go
through the standard logging module, configured once per entry point.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

console = Console()

SYMBOLS = {
    "passed": "[green]✓[/green]",
    "failed": "[red]✗[/red]",
    "timed_out": "[red]⏱[/red]",
    "satisfied": "[green]•[/green]",
    "done": "[green]✓[/green]",
    "warn": "[yellow]![/yellow]",
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def banner(title: str, out: Console | None = None, style: str = "bold blue") -> None:
    (out or console).print(Panel.fit(title, style=style))


def status_line(kind: str, text: str, out: Console | None = None) -> None:
    (out or console).print(f"  {SYMBOLS.get(kind, kind)} {escape(text)}")


def print_settings(rows: list[tuple[str, str]], out: Console | None = None) -> None:
    """Print the recognized configuration options with their effective values."""
    table = Table(title="Configuration", show_header=True, header_style="bold")
    table.add_column("option")
    table.add_column("value")
    for name, value in rows:
        table.add_row(name, value)
    (out or console).print(table)
