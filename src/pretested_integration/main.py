"""Executable CLI entrypoint for ``pretested_integration``.

Exit codes let a CI job tell "this change cannot be integrated" apart from
"the infrastructure is broken":

====  ====================================================================
0     success, or nothing to integrate
1     integration rejected: merge conflict or the integration branch moved
2     configuration or usage error
3     repository unreachable, unknown branch or invalid revision (retry)
4     internal error
====  ====================================================================
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    INTEGRATION_REJECTED = 1
    CONFIG_ERROR = 2
    REPOSITORY_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m pretested_integration`` and the ``pretested`` script."""
    try:
        from pretested_integration.ui.cli import run_cli

        return _as_exit_status(run_cli(argv))
    except SystemExit as exc:
        return _as_exit_status(exc.code)
    except BaseException as exc:  # noqa: BLE001 - last line of defence at the process boundary
        code = exit_code_for(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map an exception, or the first classified one in its cause chain, to an exit code."""
    routes = _routes()
    for item in _cause_chain(exc):
        for types, code in routes:
            if isinstance(item, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _routes() -> tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...]:
    from pretested_integration.config import ConfigLoadError, ConfigValidationError
    from pretested_integration.domain.errors import (
        IntegrationAdvanceConflict,
        InvalidRevision,
        MergeConflict,
        RepositoryUnavailable,
    )

    # Order matters: config errors are ValueErrors too.
    return (
        ((MergeConflict, IntegrationAdvanceConflict), ExitCode.INTEGRATION_REJECTED),
        ((RepositoryUnavailable, InvalidRevision), ExitCode.REPOSITORY_ERROR),
        ((ConfigLoadError, ConfigValidationError), ExitCode.CONFIG_ERROR),
        ((FileNotFoundError, NotADirectoryError, PermissionError, ValueError), ExitCode.CONFIG_ERROR),
    )


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _as_exit_status(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in {code.value for code in ExitCode}:
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
