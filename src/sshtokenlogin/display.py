"""Shared rich console utilities for user-facing status output.

Everything here goes to stderr: stdout carries the remote session output.
"""

from __future__ import annotations

from rich.console import Console
from rich.text import Text

_console = Console(stderr=True, markup=False, highlight=False)


def print_banner(text: str) -> None:
    # Server banners are free text; keep them verbatim.
    _console.print(Text(text.rstrip("\n")))


def print_notice(message: str) -> None:
    _console.print(Text(message, style="cyan"))


def print_warning(message: str) -> None:
    _console.print(Text(message, style="yellow"))


def print_error(message: str) -> None:
    _console.print(Text(message, style="bold red"))
