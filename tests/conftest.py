"""Shared fixtures: sprint factories, seeded progress stores and throwaway git repositories."""

from __future__ import annotations

import os
import subprocess
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from sprintloom.domain.models import Phase, Sprint, Task, WorkflowType
from sprintloom.persistence.progress_store import ProgressStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class StepClock:
    """Deterministic clock that advances one second per call."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self._current = start

    def __call__(self) -> datetime:
        value = self._current
        self._current = value + timedelta(seconds=1)
        return value


def build_sprint(
    sprint_id: int,
    *,
    goal: str | None = None,
    status: Phase = Phase.PENDING,
    workflow_type: WorkflowType = WorkflowType.IMPLEMENTATION,
    dependencies: tuple[int, ...] = (),
    tasks: tuple[Task, ...] | None = None,
    **overrides: Any,
) -> Sprint:
    return Sprint(
        id=sprint_id,
        goal=goal or f"Deliver increment {sprint_id}",
        status=status,
        workflow_type=workflow_type,
        dependencies=dependencies,
        tasks=(
            tasks
            if tasks is not None
            else (Task(id=f"task-{sprint_id}-1", title=f"Implement part {sprint_id}"),)
        ),
        last_updated=FIXED_NOW,
        **overrides,
    )


def git(repo_root: Path, *args: str) -> str:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    completed = subprocess.run(
        ["git", *args],
        cwd=repo_root,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if completed.returncode != 0:
        raise AssertionError(
            f"git {' '.join(args)} failed ({completed.returncode}): {completed.stderr.strip()}"
        )
    return completed.stdout


@pytest.fixture
def clock() -> StepClock:
    return StepClock()


@pytest.fixture
def sprint_factory() -> Callable[..., Sprint]:
    return build_sprint


@pytest.fixture
def make_store(tmp_path: Path, clock: StepClock) -> Callable[..., ProgressStore]:
    """Create a progress store seeded with ``sprints`` under ``tmp_path``."""

    def _make(*sprints: Sprint, name: str = "demo") -> ProgressStore:
        store = ProgressStore(tmp_path / ".sprintloom" / "SPRINTS.yml", now_fn=clock)
        store.initialize(name, sprints)
        return store

    return _make


@pytest.fixture
def git_repo(tmp_path: Path) -> Iterator[Path]:
    """A repository on ``main`` with one commit and an ignored ``.sprintloom/`` state dir."""

    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    git(repo_root, "init", "--quiet")
    git(repo_root, "checkout", "--quiet", "-B", "main")
    git(repo_root, "config", "user.name", "Sprintloom Tests")
    git(repo_root, "config", "user.email", "tests@example.invalid")
    git(repo_root, "config", "commit.gpgsign", "false")
    (repo_root / "README.md").write_text("# demo\n", encoding="utf-8")
    (repo_root / ".gitignore").write_text(".sprintloom/\n", encoding="utf-8")
    git(repo_root, "add", "--all")
    git(repo_root, "commit", "--quiet", "-m", "initial commit")
    yield repo_root


@pytest.fixture
def git_cmd() -> Callable[..., str]:
    return git
