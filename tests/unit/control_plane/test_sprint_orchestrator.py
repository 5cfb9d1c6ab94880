"""
sprintloom — unit tests for the sprint orchestrator

File: tests/unit/control_plane/test_sprint_orchestrator.py

Purpose
- Drive the phase state machine with a scripted worker and in-memory gates.

What this test file should cover
- Retry accounting: worker failures, timeouts and gate failures count alike.
- Blocking writes a bounded failure report and is persisted before returning.
- Environment failures block immediately; runaway pipelines are fatal.
- Cancellation, resuming from the persisted phase, rollback guards and
  dependency-ordered parallel scheduling.
- Unexpected worker or workspace exceptions never escape a parallel run.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from sprintloom.control_plane.controller import (
    FailureKind,
    RunOutcome,
    SprintOrchestrator,
)
from sprintloom.domain.errors import (
    ConfigurationError,
    RunawayPipelineError,
    WorkerInvocationError,
    WorkspaceBusy,
)
from sprintloom.domain.models import PHASE_ORDER, Phase, WorkflowType
from sprintloom.persistence.progress_store import ProgressStore
from sprintloom.synthesis_plane.context_builder import ContextBuilder
from sprintloom.synthesis_plane.contract import WorkerContext, WorkerResult
from sprintloom.verification_plane.artifacts import Artifact
from sprintloom.verification_plane.pipeline import (
    GateResult,
    Issue,
    QualityGatePipeline,
    Severity,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from sprintloom.domain.models import Sprint

    SprintFactory = Callable[..., Sprint]
    StoreFactory = Callable[..., ProgressStore]

ALWAYS = 1_000


class ScriptedWorker:
    """Succeeds unless a failure budget is set for ``(sprint_id, phase)``."""

    def __init__(
        self,
        failures: dict[tuple[int, Phase], int] | None = None,
        *,
        delay: float = 0.0,
    ) -> None:
        self.failures = dict(failures or {})
        self.delay = delay
        self.calls: list[tuple[int, Phase, str]] = []
        self.active = 0
        self.peak = 0

    async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
        key = (context.sprint.id, context.phase)
        self.calls.append((context.sprint.id, context.phase, role))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        remaining = self.failures.get(key, 0)
        if remaining:
            self.failures[key] = remaining - 1
            return WorkerResult(success=False, raw_output="Traceback: boom", error=f"{role} failed")
        return WorkerResult(success=True, raw_output=f"{role} finished")

    def phases_for(self, sprint_id: int) -> list[Phase]:
        return [phase for sid, phase, _ in self.calls if sid == sprint_id]


class PhaseGate:
    """Emits ``issue`` for ``failures`` checks of artifacts in ``phase``."""

    name = "phase_gate"

    def __init__(self, phase: Phase, issue: Issue, failures: int = ALWAYS) -> None:
        self.phase = phase
        self.issue = issue
        self.failures = failures

    def check(self, artifact: Artifact) -> GateResult:
        if artifact.phase is self.phase and self.failures > 0:
            self.failures -= 1
            return GateResult.from_issues(self.name, [self.issue])
        return GateResult.from_issues(self.name, [])


def _orchestrator(
    store: ProgressStore,
    worker: Any,
    tmp_path: Path,
    *,
    pipelines: dict[Phase, QualityGatePipeline] | None = None,
    **kwargs: Any,
) -> SprintOrchestrator:
    return SprintOrchestrator(
        store,
        worker,
        pipelines or {},
        ContextBuilder(tmp_path),
        failure_dir=tmp_path / "failures",
        **kwargs,
    )


def _pipeline_for(phase: Phase, issue: Issue, failures: int = ALWAYS) -> dict[Phase, Any]:
    return {phase: QualityGatePipeline([PhaseGate(phase, issue, failures)], write_back=False)}


async def test_sprint_runs_every_phase_to_done(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    worker = ScriptedWorker()

    result = await _orchestrator(store, worker, tmp_path).run_sprint(1)

    assert result.outcome is RunOutcome.DONE
    assert result.status is Phase.DONE
    assert result.phases_completed == PHASE_ORDER[:-1]
    assert result.worker_invocations == 7
    assert worker.phases_for(1) == list(PHASE_ORDER[1:-1])
    persisted = store.get(1)
    assert persisted.is_done
    assert persisted.completed_at is not None
    assert persisted.started is not None


async def test_documentation_workflow_only_runs_its_phases(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1, workflow_type=WorkflowType.DOCUMENTATION))
    worker = ScriptedWorker()

    result = await _orchestrator(store, worker, tmp_path).run_sprint(1)

    assert result.succeeded
    assert [role for _, _, role in worker.calls] == ["doc-writer", "doc-reviewer", "health-check"]


async def test_three_worker_failures_block_with_report(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    worker = ScriptedWorker({(1, Phase.WRITE_CODE): ALWAYS})

    result = await _orchestrator(store, worker, tmp_path, max_retries=3).run_sprint(1)

    assert result.outcome is RunOutcome.BLOCKED
    assert result.status is Phase.BLOCKED
    assert result.retry_count == 3
    assert result.failure_kind is FailureKind.WORKER
    assert worker.phases_for(1).count(Phase.WRITE_CODE) == 3

    persisted = store.get(1)
    assert persisted.is_blocked
    assert persisted.blocked_phase is Phase.WRITE_CODE
    assert persisted.retry_count == 3
    report_path = Path(persisted.failure_report or "")
    assert report_path == tmp_path / "failures" / "sprint-1" / "WRITE_CODE.json"
    assert result.failure_report == str(report_path)

    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["retry_count"] == 3
    assert report["phase_label"] == "WriteCode"
    assert report["failure_kind"] == "worker"
    assert report["hard_failure"] is False
    assert [attempt["attempt"] for attempt in report["attempts"]] == [1, 2, 3]
    assert report["output_tail"] == "Traceback: boom"


async def test_blocked_and_done_sprints_are_not_rerun(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1), sprint_factory(2, status=Phase.DONE))
    failing = ScriptedWorker({(1, Phase.WRITE_UNIT_TESTS): ALWAYS})
    await _orchestrator(store, failing, tmp_path, max_retries=2).run_sprint(1)

    worker = ScriptedWorker()
    orchestrator = _orchestrator(store, worker, tmp_path)
    blocked = await orchestrator.run_sprint(1)
    done = await orchestrator.run_sprint(2)

    assert blocked.outcome is RunOutcome.BLOCKED
    assert blocked.failure_report is not None
    assert "blocked at WRITE_UNIT_TESTS" in blocked.message
    assert done.outcome is RunOutcome.DONE
    assert done.message == "already done"
    assert worker.calls == []


async def test_retry_budget_resets_after_a_phase_passes(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    worker = ScriptedWorker({(1, Phase.WRITE_CODE): 2, (1, Phase.CODE_REVIEW): 2})

    result = await _orchestrator(store, worker, tmp_path, max_retries=3).run_sprint(1)

    assert result.outcome is RunOutcome.DONE
    assert result.retry_count == 0
    assert result.worker_invocations == 11


async def test_gate_failures_count_toward_retries(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    issue = Issue(severity=Severity.HIGH, category="schema_violation", message="bad status")
    orchestrator = _orchestrator(
        store,
        ScriptedWorker(),
        tmp_path,
        pipelines=_pipeline_for(Phase.CODE_REVIEW, issue),
        max_retries=2,
    )

    result = await orchestrator.run_sprint(1)

    assert result.outcome is RunOutcome.BLOCKED
    assert result.failure_kind is FailureKind.GATE
    report = json.loads(Path(result.failure_report or "").read_text(encoding="utf-8"))
    assert report["failure_kind"] == "gate"
    assert report["issues"][0]["category"] == "schema_violation"


async def test_environment_failure_blocks_without_retry(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    issue = Issue(severity=Severity.CRITICAL, category="environment", message="port 3010 closed")
    worker = ScriptedWorker()
    orchestrator = _orchestrator(
        store,
        worker,
        tmp_path,
        pipelines=_pipeline_for(Phase.RUN_E2E_TESTS, issue),
        max_retries=3,
    )

    result = await orchestrator.run_sprint(1)

    assert result.outcome is RunOutcome.BLOCKED
    assert result.retry_count == 1
    assert worker.phases_for(1).count(Phase.RUN_E2E_TESTS) == 1
    report = json.loads(Path(result.failure_report or "").read_text(encoding="utf-8"))
    assert report["hard_failure"] is True


async def test_worker_timeout_and_raised_errors_count_as_worker_failures(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    class StuckThenBroken:
        def __init__(self) -> None:
            self.calls = 0

        async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
            self.calls += 1
            if self.calls == 1:
                await asyncio.sleep(10)
            raise WorkerInvocationError("adapter crashed", role=role)

    store = make_store(sprint_factory(1))
    orchestrator = _orchestrator(
        store, StuckThenBroken(), tmp_path, max_retries=2, worker_timeout_seconds=0.05
    )

    result = await orchestrator.run_sprint(1)

    assert result.outcome is RunOutcome.BLOCKED
    assert result.failure_kind is FailureKind.WORKER
    report = json.loads(Path(result.failure_report or "").read_text(encoding="utf-8"))
    assert "timed out" in report["attempts"][0]["message"]
    assert report["attempts"][1]["message"] == "adapter crashed"


async def test_runaway_pipeline_is_fatal(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    orchestrator = _orchestrator(store, ScriptedWorker(), tmp_path, max_iterations=3)

    with pytest.raises(RunawayPipelineError):
        await orchestrator.run_sprint(1)

    schedule = await orchestrator.run_parallel([1])
    (fatal,) = schedule.results
    assert fatal.outcome is RunOutcome.FATAL
    assert fatal.fatal_kind == "runaway"


async def test_cancellation_stops_between_steps(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    holder: dict[str, SprintOrchestrator] = {}

    class CancellingWorker:
        async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
            holder["orchestrator"].cancel()
            await asyncio.sleep(10)
            return WorkerResult(success=True)

    orchestrator = _orchestrator(store, CancellingWorker(), tmp_path)
    holder["orchestrator"] = orchestrator

    result = await orchestrator.run_sprint(1)

    assert result.outcome is RunOutcome.CANCELLED
    assert store.get(1).status is Phase.WRITE_UNIT_TESTS
    assert store.get(1).retry_count == 0
    assert orchestrator.cancel_token.is_cancelled


async def test_unexpected_worker_exception_counts_as_a_worker_failure(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    class CrashingWorker(ScriptedWorker):
        async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
            if context.sprint.id == 1:
                self.calls.append((context.sprint.id, context.phase, role))
                raise RuntimeError("adapter crashed")
            return await super().invoke(role, context)

    store = make_store(sprint_factory(1), sprint_factory(2))
    worker = CrashingWorker(delay=0.005)
    orchestrator = _orchestrator(store, worker, tmp_path, max_retries=2)

    schedule = await orchestrator.run_parallel(concurrency=2)

    crashed = schedule.result_for(1)
    assert crashed is not None
    assert crashed.outcome is RunOutcome.BLOCKED
    assert crashed.failure_kind is FailureKind.WORKER
    assert store.get(1).retry_count == 2
    report = json.loads(Path(crashed.failure_report or "").read_text(encoding="utf-8"))
    assert [attempt["message"] for attempt in report["attempts"]] == [
        "RuntimeError: adapter crashed",
        "RuntimeError: adapter crashed",
    ]
    sibling = schedule.result_for(2)
    assert sibling is not None
    assert sibling.outcome is RunOutcome.DONE
    assert worker.phases_for(2) == list(PHASE_ORDER[1:-1])


async def test_workspace_error_is_fatal_for_that_sprint_only(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    class CollidingWorkspaces:
        def find(self, kind: Any, key: int) -> None:
            return None

        def create(self, kind: Any, key: int) -> None:
            if key == 1:
                raise FileExistsError("workspace directory already exists: sprint-1")
            return None

    store = make_store(
        sprint_factory(1, workflow_type=WorkflowType.DOCUMENTATION),
        sprint_factory(2, workflow_type=WorkflowType.DOCUMENTATION),
    )
    worker = ScriptedWorker(delay=0.005)
    orchestrator = _orchestrator(store, worker, tmp_path, workspaces=CollidingWorkspaces())

    schedule = await orchestrator.run_parallel(concurrency=2)

    fatal = schedule.result_for(1)
    assert fatal is not None
    assert fatal.outcome is RunOutcome.FATAL
    assert fatal.fatal_kind == "io"
    assert "FileExistsError" in fatal.message
    assert store.get(1).status is Phase.WRITE_CODE
    assert store.get(1).retry_count == 0
    assert worker.phases_for(1) == []
    done = schedule.result_for(2)
    assert done is not None
    assert done.outcome is RunOutcome.DONE


async def test_resumed_run_skips_phases_that_already_passed(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    holder: dict[str, SprintOrchestrator] = {}

    class InterruptedWorker(ScriptedWorker):
        async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
            if context.phase is Phase.CODE_REVIEW:
                self.calls.append((context.sprint.id, context.phase, role))
                holder["orchestrator"].cancel()
                await asyncio.sleep(10)
            return await super().invoke(role, context)

    first_worker = InterruptedWorker()
    holder["orchestrator"] = _orchestrator(store, first_worker, tmp_path)
    interrupted = await holder["orchestrator"].run_sprint(1)

    assert interrupted.outcome is RunOutcome.CANCELLED
    assert store.get(1).status is Phase.CODE_REVIEW

    reopened = ProgressStore(store.path)
    second_worker = ScriptedWorker()
    resumed = await _orchestrator(reopened, second_worker, tmp_path).run_sprint(1)

    assert resumed.outcome is RunOutcome.DONE
    assert first_worker.phases_for(1) == [
        Phase.WRITE_UNIT_TESTS,
        Phase.WRITE_CODE,
        Phase.CODE_REVIEW,
    ]
    assert second_worker.phases_for(1) == [
        Phase.CODE_REVIEW,
        Phase.RUN_UNIT_TESTS,
        Phase.WRITE_E2E_TESTS,
        Phase.RUN_E2E_TESTS,
        Phase.COMPLETE,
    ]
    assert ProgressStore(store.path).get(1).is_done


async def test_failure_report_counts_attempts_from_an_earlier_run(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1, status=Phase.WRITE_CODE, retry_count=2))
    worker = ScriptedWorker({(1, Phase.WRITE_CODE): ALWAYS})

    result = await _orchestrator(store, worker, tmp_path, max_retries=3).run_sprint(1)

    assert result.outcome is RunOutcome.BLOCKED
    assert worker.phases_for(1) == [Phase.WRITE_CODE]
    report = json.loads(Path(result.failure_report or "").read_text(encoding="utf-8"))
    assert report["retry_count"] == 3
    assert report["prior_attempts_unrecorded"] == 2
    assert [attempt["attempt"] for attempt in report["attempts"]] == [3]


def test_rollback_validates_target_and_resets(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(
        sprint_factory(1, status=Phase.CODE_REVIEW),
        sprint_factory(2, workflow_type=WorkflowType.DOCUMENTATION),
    )
    orchestrator = _orchestrator(store, ScriptedWorker(), tmp_path)
    sprint = store.get(1)
    stamp = sprint.last_updated
    store.commit(sprint.failed(now=stamp).blocked(failure_report="r.json", now=stamp))

    rolled = orchestrator.rollback(1, "WRITE_CODE")

    assert rolled.status is Phase.WRITE_CODE
    assert rolled.retry_count == 0
    assert rolled.failure_report is None
    assert store.get(1) == rolled
    with pytest.raises(ConfigurationError, match="not part of the DOCUMENTATION workflow"):
        orchestrator.rollback(2, Phase.RUN_UNIT_TESTS)
    with pytest.raises(ConfigurationError, match="BLOCKED"):
        orchestrator.rollback(1, Phase.BLOCKED)
    with pytest.raises(ValueError):
        orchestrator.rollback(1, "NOT_A_PHASE")


async def test_rollback_refuses_an_executing_sprint(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    release = asyncio.Event()
    started = asyncio.Event()

    class GatedWorker:
        async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
            started.set()
            await release.wait()
            return WorkerResult(success=True)

    orchestrator = _orchestrator(store, GatedWorker(), tmp_path)
    task = asyncio.create_task(orchestrator.run_sprint(1))
    await asyncio.wait_for(started.wait(), timeout=5)

    assert orchestrator.is_executing(1)
    with pytest.raises(WorkspaceBusy):
        orchestrator.rollback(1, Phase.PENDING)

    release.set()
    result = await asyncio.wait_for(task, timeout=5)
    assert result.succeeded
    assert not orchestrator.is_executing(1)


async def test_run_parallel_respects_dependencies_and_concurrency(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(
        sprint_factory(1),
        sprint_factory(2, dependencies=(1,)),
        sprint_factory(3, dependencies=(1,)),
        sprint_factory(4, dependencies=(2, 3)),
        sprint_factory(5),
    )
    worker = ScriptedWorker(delay=0.005)

    schedule = await _orchestrator(store, worker, tmp_path).run_parallel(concurrency=2)

    assert [result.sprint_id for result in schedule.results] == [1, 2, 3, 4, 5]
    assert schedule.succeeded
    assert schedule.skipped == ()
    assert schedule.peak_concurrency == 2
    assert worker.peak <= 2

    order = [sprint_id for sprint_id, _, _ in worker.calls]
    first_of = {sprint_id: order.index(sprint_id) for sprint_id in (1, 2, 3, 4)}
    last_of = {
        sprint_id: len(order) - 1 - order[::-1].index(sprint_id) for sprint_id in (1, 2, 3, 4)
    }
    assert first_of[2] > last_of[1]
    assert first_of[3] > last_of[1]
    assert first_of[4] > max(last_of[2], last_of[3])


async def test_dependents_of_blocked_sprint_are_skipped(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1), sprint_factory(2, dependencies=(1,)), sprint_factory(3))
    worker = ScriptedWorker({(1, Phase.WRITE_CODE): ALWAYS})

    schedule = await _orchestrator(store, worker, tmp_path, max_retries=1).run_parallel(
        concurrency=3
    )

    assert [result.sprint_id for result in schedule.results] == [1, 3]
    assert schedule.result_for(1).outcome is RunOutcome.BLOCKED
    assert schedule.skipped == (2,)
    assert not schedule.succeeded
    assert worker.phases_for(2) == []


async def test_run_parallel_rejects_unknown_ids(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    orchestrator = _orchestrator(make_store(sprint_factory(1)), ScriptedWorker(), tmp_path)
    with pytest.raises(ConfigurationError, match="unknown sprint id"):
        await orchestrator.run_parallel([1, 9])


async def test_run_all_sequential_follows_topological_order(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(
        sprint_factory(3),
        sprint_factory(1, dependencies=(3,)),
        sprint_factory(2),
    )
    worker = ScriptedWorker()

    schedule = await _orchestrator(store, worker, tmp_path).run_all()

    assert [result.sprint_id for result in schedule.results] == [2, 3, 1]
    assert schedule.peak_concurrency == 1
    assert all(sprint.is_done for sprint in store.sprints())


def test_constructor_rejects_non_positive_limits(
    make_store: StoreFactory, sprint_factory: SprintFactory, tmp_path: Path
) -> None:
    store = make_store(sprint_factory(1))
    with pytest.raises(ConfigurationError):
        _orchestrator(store, ScriptedWorker(), tmp_path, max_retries=0)
    with pytest.raises(ConfigurationError):
        _orchestrator(store, ScriptedWorker(), tmp_path, max_iterations=0)
