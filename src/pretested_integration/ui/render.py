"""Output rendering for the pretested CLI.

File: src/pretested_integration/ui/render.py
Last updated: 2026-10-18

Purpose
- Print command results to stdout and diagnostics to stderr, so a CI step can
  capture ``pretested next`` output directly.

What should be included in this file
- CLIRenderer with the handful of line shapes the commands need.
- Rendering of classified integration failures, including conflicted paths.

Functional requirements
- Colour only on a terminal; ``NO_COLOR`` and ``--no-color`` disable it.
- Notes appear only in verbose mode and never on stdout.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

from pretested_integration.domain.errors import MergeConflict

if TYPE_CHECKING:
    from pretested_integration.domain.errors import IntegrationError

_GREEN = "32"
_RED = "31"


def _color_allowed(no_color_flag: bool, stream: TextIO) -> bool:
    if no_color_flag or os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(stream, "isatty") and stream.isatty()


class CLIRenderer:
    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._no_color = no_color

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def ok(self, label: str) -> None:
        print(f"  {self._paint('OK', _GREEN, sys.stdout)}  {label}")

    def note(self, message: str) -> None:
        """Informational stderr line, shown only with ``--verbose``."""
        if self.verbose:
            print(message, file=sys.stderr)

    def error(self, message: str) -> None:
        print(f"{self._paint('error', _RED, sys.stderr)}: {message}", file=sys.stderr)

    def integration_error(self, exc: IntegrationError) -> None:
        """Report a classified failure so operators can tell code problems from outages."""
        self.error(f"{exc.kind.value}: {exc.message}")
        if isinstance(exc, MergeConflict):
            for path in exc.conflicts:
                print(f"  conflict: {path}", file=sys.stderr)
        if exc.retryable:
            print("  (environment failure; safe to retry)", file=sys.stderr)

    def _paint(self, text: str, code: str, stream: TextIO) -> str:
        if not _color_allowed(self._no_color, stream):
            return text
        return f"\x1b[{code}m{text}\x1b[0m"


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
