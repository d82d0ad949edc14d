"""Console output for the knowledge-bootstrap CLI.

Backed by a ``rich`` console. Color is used only when stdout is a terminal and
neither ``NO_COLOR`` nor ``--no-color`` is set.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Sequence


def _use_color(no_color: bool) -> bool:
    if no_color or os.environ.get("NO_COLOR"):
        return False
    return sys.stdout.isatty()


class CLIRenderer:
    def __init__(self, *, no_color: bool = False) -> None:
        color = _use_color(no_color)
        self._console = Console(
            no_color=not color,
            color_system="auto" if color else None,
            highlight=False,
            soft_wrap=True,
        )

    def _line(self, text: str, style: str | None = None) -> None:
        self._console.print(text, style=style, markup=False)

    def heading(self, text: str) -> None:
        self._line(text, "bold")

    def section(self, title: str) -> None:
        self._console.print()
        self._line(title, "bold")

    def text(self, line: str) -> None:
        self._line(line)

    def kv(self, key: str, value: object) -> None:
        self._line(f"{key}: {value}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._line(f"  {prefix}{entry}")

    def warning(self, text: str) -> None:
        self._line(f"  Warning: {text}", "yellow")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print ``rows`` padded or cut to ``headers``; an empty row set prints nothing."""

        if not rows:
            return
        width = len(headers)
        table = Table(title=title, title_justify="left", show_edge=False, pad_edge=False)
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            cells = [str(cell) for cell in row[:width]]
            table.add_row(*cells, *([""] * (width - len(cells))))
        self._console.print(table)


def create_renderer(*, no_color: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color)


__all__ = ["CLIRenderer", "create_renderer"]
