"""
sprintloom — unit tests for the subprocess worker adapter

File: tests/unit/synthesis_plane/test_command_worker.py

Purpose
- Validate argv templating, stdin context delivery and failure classification.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import pytest

from sprintloom.domain.errors import ConfigurationError, WorkerInvocationError, WorkerTimeout
from sprintloom.domain.models import Phase
from sprintloom.synthesis_plane.command_worker import CommandWorker, render_argv
from sprintloom.synthesis_plane.contract import WorkerContext

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from sprintloom.domain.models import Sprint

    SprintFactory = Callable[..., Sprint]

ECHO_FIRST_LINE = "import sys; print(sys.stdin.readline().strip()); print(sys.argv[1:])"


def _context(sprint_factory: SprintFactory) -> WorkerContext:
    return WorkerContext(
        sprint=sprint_factory(7, goal="Ship search"),
        phase=Phase.CODE_REVIEW,
        role="reviewer",
        max_turns=12,
    )


def test_render_argv_fills_placeholders(sprint_factory: SprintFactory) -> None:
    argv = render_argv(
        ["agent", "--role={role}", "--turns", "{max_turns}", "{sprint_id}:{phase}", "{workspace}"],
        _context(sprint_factory),
        "reviewer",
    )

    assert argv == ("agent", "--role=reviewer", "--turns", "12", "7:CODE_REVIEW", "")


def test_render_argv_rejects_unknown_placeholders(sprint_factory: SprintFactory) -> None:
    with pytest.raises(ConfigurationError, match="not a valid template"):
        render_argv(["agent", "{model}"], _context(sprint_factory), "reviewer")


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="must not be empty"):
        CommandWorker([])


async def test_context_is_piped_on_stdin(tmp_path: Path, sprint_factory: SprintFactory) -> None:
    worker = CommandWorker(
        [sys.executable, "-c", ECHO_FIRST_LINE, "{role}", "{phase}"], cwd=tmp_path
    )

    result = await worker.invoke("reviewer", _context(sprint_factory))

    assert result.success
    assert result.error is None
    assert result.raw_output.splitlines() == [
        "# Sprint 7: Ship search",
        "['reviewer', 'CODE_REVIEW']",
    ]
    # Artifacts are only collected from an attached workspace.
    assert result.artifacts == ()


async def test_non_zero_exit_is_an_unsuccessful_result(
    tmp_path: Path, sprint_factory: SprintFactory
) -> None:
    script = "import sys; sys.stderr.write('lint exploded\\n'); sys.exit(4)"
    worker = CommandWorker([sys.executable, "-c", script], cwd=tmp_path)

    result = await worker.invoke("reviewer", _context(sprint_factory))

    assert not result.success
    assert result.error == "worker exited with status 4: lint exploded"
    assert "lint exploded" in result.raw_output


async def test_missing_executable_raises_invocation_error(
    tmp_path: Path, sprint_factory: SprintFactory
) -> None:
    worker = CommandWorker([str(tmp_path / "no-such-worker")], cwd=tmp_path)

    with pytest.raises(WorkerInvocationError, match="could not start") as excinfo:
        await worker.invoke("reviewer", _context(sprint_factory))

    assert excinfo.value.role == "reviewer"
    assert not isinstance(excinfo.value, WorkerTimeout)


async def test_slow_worker_raises_timeout(tmp_path: Path, sprint_factory: SprintFactory) -> None:
    worker = CommandWorker(
        [sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, timeout_seconds=0.2
    )

    with pytest.raises(WorkerTimeout, match="exceeded 0.2s for sprint 7"):
        await worker.invoke("reviewer", _context(sprint_factory))


async def test_extra_environment_reaches_the_worker(
    tmp_path: Path, sprint_factory: SprintFactory
) -> None:
    worker = CommandWorker(
        [sys.executable, "-c", "import os; print(os.environ['SPRINTLOOM_TEST_MARKER'])"],
        cwd=tmp_path,
        env={"SPRINTLOOM_TEST_MARKER": "present"},
    )

    result = await worker.invoke("reviewer", _context(sprint_factory))

    assert result.raw_output.strip() == "present"
