"""
sprintloom — end-to-end sprint runs over a real git repository

File: tests/integration/test_orchestrator_git.py

Purpose
- Drive the orchestration service through sandboxed sprint runs with scripted
  and subprocess workers.
- Verify integration-branch merges, merge-conflict reporting, blocking with a
  failure report, rollback discarding the sandbox and refusing a live merge.
"""

from __future__ import annotations

import asyncio
import json
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from sprintloom.config.loader import load_config
from sprintloom.control_plane.service import OperationStatus, OrchestrationService
from sprintloom.domain.errors import WorkspaceBusy
from sprintloom.domain.models import Phase, WorkflowType
from sprintloom.integration_plane.workspace_manager import WorkspaceKind
from sprintloom.persistence.progress_store import ProgressStore
from sprintloom.synthesis_plane.contract import WorkerResult

if TYPE_CHECKING:
    from collections.abc import Callable

    from sprintloom.domain.models import Sprint
    from sprintloom.synthesis_plane.contract import WorkerContext, WorkerInvoker

    SprintFactory = Callable[..., Sprint]

pytestmark = pytest.mark.integration


class WorkspaceWriter:
    """Writes one file per phase into the sandbox; optionally fails for some sprints."""

    def __init__(
        self,
        *,
        shared_file: bool = False,
        failing: frozenset[int] = frozenset(),
    ) -> None:
        self._shared_file = shared_file
        self._failing = failing
        self.calls: list[tuple[int, Phase, str]] = []

    async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
        sprint_id = context.sprint.id
        self.calls.append((sprint_id, context.phase, role))
        await asyncio.sleep(0)
        if sprint_id in self._failing:
            return WorkerResult(success=False, raw_output="boom", error="tests are red")
        assert context.workspace is not None
        name = "shared.txt" if self._shared_file else f"sprint{sprint_id}.txt"
        target = context.workspace.path / name
        with target.open("a", encoding="utf-8") as handle:
            handle.write(f"{sprint_id}:{context.phase.value}\n")
        return WorkerResult(success=True, raw_output=f"wrote {name}")


def _seed(
    repo_root: Path, *sprints: Sprint, overrides: dict[str, object] | None = None
) -> dict[str, Any]:
    config = load_config(repo_root=repo_root, cli_overrides=overrides, environ={})
    ProgressStore(Path(config["paths"]["progress_file"])).initialize("demo", sprints)
    return config


def _service(
    repo_root: Path, config: dict[str, Any], worker: WorkerInvoker | None = None
) -> OrchestrationService:
    return OrchestrationService(config, repo_root=repo_root, worker=worker)


def test_single_sprint_runs_to_done_and_merges(
    git_repo: Path, git_cmd: Callable[..., str], sprint_factory: SprintFactory
) -> None:
    config = _seed(git_repo, sprint_factory(1))
    worker = WorkspaceWriter()
    service = _service(git_repo, config, worker)

    result = service.run_sprint(1)

    assert result.status is OperationStatus.SUCCESS
    sprint = result.data["sprint"]
    assert sprint["outcome"] == "done"
    assert sprint["merged"] is True
    assert sprint["worker_invocations"] == 7
    merged = (git_repo / "sprint1.txt").read_text(encoding="utf-8").splitlines()
    assert merged[0] == "1:WRITE_UNIT_TESTS"
    assert merged[-1] == "1:COMPLETE"
    assert service.store.get(1).status is Phase.DONE
    assert service.list_workspaces().data["workspaces"] == []
    assert git_cmd(git_repo, "status", "--porcelain").strip() == ""


def test_independent_sprints_run_in_parallel_sandboxes(
    git_repo: Path, sprint_factory: SprintFactory
) -> None:
    config = _seed(
        git_repo,
        sprint_factory(1, workflow_type=WorkflowType.DOCUMENTATION),
        sprint_factory(2, workflow_type=WorkflowType.DOCUMENTATION),
        sprint_factory(3, workflow_type=WorkflowType.DOCUMENTATION, dependencies=(1, 2)),
    )
    worker = WorkspaceWriter()
    service = _service(git_repo, config, worker)

    result = service.run_all(parallel=True, concurrency=2)

    assert result.ok, result.message
    assert result.message == "3/3 sprint(s) done"
    assert [item["sprint_id"] for item in result.data["results"]] == [1, 2, 3]
    assert result.data["peak_concurrency"] == 2
    for sprint_id in (1, 2, 3):
        assert (git_repo / f"sprint{sprint_id}.txt").is_file()
    # Sprint 3 only starts once both of its dependencies are done.
    first_sprint3_call = next(i for i, call in enumerate(worker.calls) if call[0] == 3)
    assert {call[0] for call in worker.calls[:first_sprint3_call]} == {1, 2}


def test_merge_conflict_is_reported_and_sandbox_kept(
    git_repo: Path, sprint_factory: SprintFactory
) -> None:
    config = _seed(
        git_repo,
        sprint_factory(1, workflow_type=WorkflowType.DOCUMENTATION),
        sprint_factory(2, workflow_type=WorkflowType.DOCUMENTATION),
    )
    service = _service(git_repo, config, WorkspaceWriter(shared_file=True))

    result = service.run_all(parallel=True, concurrency=2)

    assert result.ok
    conflicted = [item for item in result.data["results"] if item["merge_conflict"]]
    assert len(conflicted) == 1
    assert conflicted[0]["merge_conflict"] == ["shared.txt"]
    assert conflicted[0]["status"] == "DONE"
    workspaces = service.list_workspaces().data["workspaces"]
    assert [item["name"] for item in workspaces] == [f"sprint-{conflicted[0]['sprint_id']}"]


def test_failing_worker_blocks_with_report_and_rollback_discards_sandbox(
    git_repo: Path, sprint_factory: SprintFactory
) -> None:
    config = _seed(git_repo, sprint_factory(1))
    service = _service(git_repo, config, WorkspaceWriter(failing=frozenset({1})))

    result = service.run_sprint(1)

    assert result.status is OperationStatus.GATE_FAILURE
    assert result.error_kind == "worker"
    blocked = service.store.get(1)
    assert blocked.status is Phase.BLOCKED
    assert blocked.blocked_phase is Phase.WRITE_UNIT_TESTS
    assert blocked.retry_count == 3
    report = json.loads(Path(blocked.failure_report or "").read_text(encoding="utf-8"))
    assert report["phase"] == "WRITE_UNIT_TESTS"
    assert [attempt["kind"] for attempt in report["attempts"]] == ["worker"] * 3
    assert service.list_workspaces().data["workspaces"][0]["name"] == "sprint-1"

    rolled_back = service.rollback(1)

    assert rolled_back.ok, rolled_back.message
    assert service.store.get(1).status is Phase.PENDING
    assert service.store.get(1).retry_count == 0
    assert service.list_workspaces().data["workspaces"] == []


def test_rollback_is_refused_while_the_sandbox_is_merging(
    git_repo: Path, sprint_factory: SprintFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    config = _seed(git_repo, sprint_factory(1, status=Phase.CODE_REVIEW))
    service = _service(git_repo, config, WorkspaceWriter())
    manager = service.workspace_manager()
    handle = manager.create(WorkspaceKind.SPRINT, 1)
    (handle.path / "sprint1.txt").write_text("1:CODE_REVIEW\n", encoding="utf-8")

    entered = threading.Event()
    release = threading.Event()
    real_merge = manager.git.merge_no_ff

    def blocking_merge(*args: Any, **kwargs: Any) -> Any:
        entered.set()
        assert release.wait(timeout=10)
        return real_merge(*args, **kwargs)

    monkeypatch.setattr(manager.git, "merge_no_ff", blocking_merge)
    before = service.store.get(1)

    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(manager.merge, handle)
        try:
            assert entered.wait(timeout=10)
            assert manager.is_merging(handle)

            with pytest.raises(WorkspaceBusy):
                service.orchestrator().rollback(1, Phase.PENDING)
            refused = service.rollback(1)

            assert refused.status is OperationStatus.FATAL
            assert refused.error_kind == "busy"
            assert service.store.get(1) == before
        finally:
            release.set()
        future.result(timeout=30)

    assert (git_repo / "sprint1.txt").is_file()
    assert manager.list() == ()


def test_command_worker_artifacts_pass_through_gates(
    git_repo: Path, sprint_factory: SprintFactory
) -> None:
    script = (
        "import pathlib, sys; "
        "pathlib.Path('notes.yml').write_text('phase: ' + sys.argv[1] + '\\n'); "
        "print(sys.stdin.readline().strip())"
    )
    config = _seed(
        git_repo,
        sprint_factory(1, workflow_type=WorkflowType.DOCUMENTATION),
        overrides={"worker.command": [sys.executable, "-c", script, "{phase}"]},
    )
    service = _service(git_repo, config)

    result = service.run_sprint(1)

    assert result.ok, result.message
    assert result.data["sprint"]["merged"] is True
    assert (git_repo / "notes.yml").read_text(encoding="utf-8") == "phase: COMPLETE\n"
