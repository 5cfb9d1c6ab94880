"""Executable CLI entrypoint for ``sprintloom``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    """Process exit codes shared by every command."""

    SUCCESS = 0
    GATE_FAILURE = 1
    CONFIG_ERROR = 2
    WORKER_ERROR = 3
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m sprintloom`` and the console script.

    Errors that escape the command router are mapped onto ``ExitCode``; only
    unexpected ones print a traceback.
    """

    try:
        from sprintloom.ui.cli import run_cli

        return _coerce_exit_code(run_cli(argv))
    except SystemExit as exc:
        # argparse exits with 2 on usage errors, which is CONFIG_ERROR already.
        return _coerce_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.INTERNAL_ERROR)
    except Exception as exc:  # noqa: BLE001 - process boundary
        exit_code = exit_code_for(exc)
        if exit_code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            _write_stderr(f"error: {str(exc).strip() or type(exc).__name__}")
        return int(exit_code)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Exit code for an uncaught error, looking through its cause chain."""

    from sprintloom.domain.errors import (
        ConfigurationError,
        QualityGateFailure,
        WorkerInvocationError,
        WorkspaceBusy,
    )

    for item in _causes(exc):
        if isinstance(item, (ConfigurationError, FileNotFoundError, NotADirectoryError)):
            return ExitCode.CONFIG_ERROR
        if isinstance(item, WorkerInvocationError):
            return ExitCode.WORKER_ERROR
        if isinstance(item, (QualityGateFailure, WorkspaceBusy)):
            return ExitCode.GATE_FAILURE
    return ExitCode.INTERNAL_ERROR


def _causes(exc: BaseException) -> Iterator[BaseException]:
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


def _coerce_exit_code(raw_code: object) -> int:
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, int):
        known = {int(code) for code in ExitCode}
        return raw_code if raw_code in known else int(ExitCode.INTERNAL_ERROR)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
