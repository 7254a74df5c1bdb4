from __future__ import annotations

from typing import Protocol

from rich.console import Console


class OutputSink(Protocol):
    """Destination for the visible stream of Kaggle CLI invocation output."""

    def line(self, text: str) -> None: ...

    def write(self, text: str) -> None: ...


class ConsoleSink:
    """Writes invocation output to a rich console (stderr by default)."""

    def __init__(self, console: Console | None = None):
        self.console = console if console is not None else Console(
            stderr=True, highlight=False
        )

    def line(self, text: str) -> None:
        self.console.print(text, markup=False)

    def write(self, text: str) -> None:
        if text:
            self.console.print(text, end="" if text.endswith("\n") else "\n", markup=False)


class NullSink:
    def line(self, text: str) -> None:
        return None

    def write(self, text: str) -> None:
        return None
