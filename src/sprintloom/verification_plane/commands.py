"""
sprintloom — subprocess runner shared by the worker and the command-driven gates

File: src/sprintloom/verification_plane/commands.py

Purpose
- Run one argv asynchronously with optional stdin, extra environment and a deadline.
- Capture stdout/stderr as text with normalized newlines, clipped from the front so
  the end of the output (where failures are reported) survives.

Behavior
- A missing executable is reported as ``CommandOutcome.error``, not raised.
- On timeout or task cancellation the child is killed and reaped before returning
  or re-raising.
"""

from __future__ import annotations

import asyncio
import os
import time
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

MAX_CAPTURED_CHARS = 200_000


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "argv", tuple(self.argv))
        if not self.argv or not all(isinstance(item, str) and item for item in self.argv):
            raise ValueError("CommandSpec.argv must contain non-empty strings")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("CommandSpec.timeout_seconds must be > 0 when provided")


@dataclass(frozen=True, slots=True)
class CommandOutcome:
    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    @property
    def combined_output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


async def run_command(
    spec: CommandSpec, *, max_output_chars: int | None = MAX_CAPTURED_CHARS
) -> CommandOutcome:
    """Run ``spec``; the process is killed on timeout or cancellation."""

    started = time.monotonic()

    def outcome(
        exit_code: int | None,
        raw: tuple[bytes, bytes] = (b"", b""),
        *,
        error: str | None = None,
        timed_out: bool = False,
    ) -> CommandOutcome:
        stdout, stderr = (_clip_front(_decode(part), max_output_chars) for part in raw)
        return CommandOutcome(
            argv=spec.argv,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=max(int((time.monotonic() - started) * 1000), 0),
            timed_out=timed_out,
            error=error,
        )

    env = {**os.environ, **spec.env} if spec.env else None
    stdin_mode = asyncio.subprocess.DEVNULL if spec.stdin_text is None else asyncio.subprocess.PIPE
    try:
        process = await asyncio.create_subprocess_exec(
            *spec.argv,
            cwd=spec.cwd,
            env=env,
            stdin=stdin_mode,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return outcome(None, error=str(exc))

    stdin = spec.stdin_text.encode("utf-8") if spec.stdin_text is not None else None
    try:
        raw = await asyncio.wait_for(process.communicate(stdin), timeout=spec.timeout_seconds)
    except TimeoutError:
        raw = await _kill_and_reap(process)
        return outcome(
            None,
            raw,
            error=f"command timed out after {spec.timeout_seconds:.3f}s",
            timed_out=True,
        )
    except asyncio.CancelledError:
        await _kill_and_reap(process)
        raise
    return outcome(process.returncode, raw)


def output_tail(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[-limit:]


async def _kill_and_reap(process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
    with suppress(ProcessLookupError):
        process.kill()
    return await process.communicate()


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").replace("\r\n", "\n").replace("\r", "\n")


def _clip_front(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    return f"...[truncated {len(text) - max_chars} chars]\n{text[-max_chars:]}"


__all__ = ["CommandOutcome", "CommandSpec", "output_tail", "run_command"]
