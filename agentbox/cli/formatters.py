"""CLI formatters — risk colors and table building."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text


def get_console(no_color: bool = False) -> Console:
    """Get a Rich Console, optionally with color disabled."""
    return Console(no_color=no_color)


def risk_text(level: str) -> Text:
    """Map a risk level to colored text."""
    styles = {
        "low": "green",
        "medium": "yellow",
        "high": "red",
        "critical": "bold red",
    }
    return Text(level.upper(), style=styles.get(level, "dim"))


def build_table(title: str, columns: list[str], rows: list[list[Any]]) -> Table:
    """Build a Rich table with standard styling."""
    table = Table(title=title, show_header=True, header_style="bold")
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v) for v in row))
    return table
