"""
sprintloom — sprint orchestrator

File: src/sprintloom/control_plane/controller.py

Purpose
- Drive sprints through their workflow phases: invoke the phase worker, gate
  the artifact, then advance, retry or block. Schedule independent sprints
  concurrently in dependency order.

Invariants
- One phase advancement per loop iteration; the loop is bounded by
  ``max_iterations`` and exceeding it raises ``RunawayPipelineError``.
- A sprint record is committed only after its gate result is known; every
  transition is persisted before the next step starts.
- A sprint's phases never run concurrently with themselves (per-sprint lock).
- Worker failures, worker timeouts and gate failures count identically toward
  ``retry_count``; reaching ``max_retries`` blocks the sprint and writes a
  failure report. A critical ``environment`` issue blocks immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from sprintloom.constants import (
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    FAILURES_DIR,
)
from sprintloom.control_plane.failure_reports import (
    MAX_OUTPUT_TAIL_CHARS,
    AttemptRecord,
    FailureReport,
    write_failure_report,
)
from sprintloom.control_plane.scheduler import Scheduler
from sprintloom.control_plane.workflow import next_phase, phase_spec, workflow_phases
from sprintloom.domain.errors import (
    ConfigurationError,
    MergeConflict,
    ResourceExhaustion,
    RunawayPipelineError,
    WorkerInvocationError,
    WorkspaceBusy,
)
from sprintloom.domain.models import Phase, Sprint, utc_now
from sprintloom.integration_plane.git_engine import GitEngineError
from sprintloom.integration_plane.workspace_manager import WorkspaceKind
from sprintloom.observability.logging import correlation_scope
from sprintloom.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    KeyedLocks,
    run_with_timeout,
)
from sprintloom.verification_plane.artifacts import Artifact
from sprintloom.verification_plane.commands import output_tail
from sprintloom.verification_plane.pipeline import QualityReport, Severity

if TYPE_CHECKING:
    from sprintloom.control_plane.workflow import PhaseSpec
    from sprintloom.integration_plane.workspace_manager import WorkspaceHandle, WorkspaceManager
    from sprintloom.persistence.progress_store import ProgressStore
    from sprintloom.synthesis_plane.context_builder import ContextBuilder
    from sprintloom.synthesis_plane.contract import WorkerInvoker
    from sprintloom.verification_plane.pipeline import QualityGatePipeline

_ENVIRONMENT_CATEGORY: Final[str] = "environment"


class RunOutcome(StrEnum):
    DONE = "done"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    FATAL = "fatal"


class FailureKind(StrEnum):
    WORKER = "worker"
    GATE = "gate"


@dataclass(frozen=True, slots=True)
class SprintRunResult:
    """Normalized result of one ``run_sprint`` call."""

    sprint_id: int
    outcome: RunOutcome
    status: Phase
    retry_count: int = 0
    phases_completed: tuple[Phase, ...] = ()
    worker_invocations: int = 0
    failure_report: str | None = None
    failure_kind: FailureKind | None = None
    merged: bool = False
    merge_conflict: tuple[str, ...] | None = None
    fatal_kind: str | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome is RunOutcome.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "sprint_id": self.sprint_id,
            "outcome": self.outcome.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "phases_completed": [phase.value for phase in self.phases_completed],
            "worker_invocations": self.worker_invocations,
            "failure_report": self.failure_report,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "merged": self.merged,
            "merge_conflict": list(self.merge_conflict) if self.merge_conflict else None,
            "fatal_kind": self.fatal_kind,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class ScheduleResult:
    """Outcome of ``run_parallel`` / ``run_all``."""

    results: tuple[SprintRunResult, ...] = ()
    skipped: tuple[int, ...] = ()
    peak_concurrency: int = 0

    @property
    def succeeded(self) -> bool:
        return all(result.succeeded for result in self.results)

    def result_for(self, sprint_id: int) -> SprintRunResult | None:
        for result in self.results:
            if result.sprint_id == sprint_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "skipped": list(self.skipped),
            "peak_concurrency": self.peak_concurrency,
        }


@dataclass(slots=True)
class _PhaseAttempt:
    passed: bool
    kind: FailureKind | None = None
    message: str = ""
    report: QualityReport | None = None
    raw_output: str = ""
    hard_failure: bool = False


@dataclass(slots=True)
class _RunState:
    phases_completed: list[Phase] = field(default_factory=list)
    attempts: list[AttemptRecord] = field(default_factory=list)
    worker_invocations: int = 0


class SprintOrchestrator:
    """Phase state machine plus dependency-aware multi-sprint scheduling."""

    def __init__(
        self,
        store: ProgressStore,
        worker: WorkerInvoker,
        pipelines: Mapping[Phase, QualityGatePipeline],
        context_builder: ContextBuilder,
        *,
        workspaces: WorkspaceManager | None = None,
        failure_dir: Path = Path(FAILURES_DIR),
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        worker_timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
        auto_fix: bool = True,
        auto_merge: bool = True,
        cancel_token: CancellationToken | None = None,
        now_fn: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_iterations <= 0:
            raise ConfigurationError("orchestrator.max_iterations must be > 0")
        if max_retries <= 0:
            raise ConfigurationError("orchestrator.max_retries must be > 0")
        self._store = store
        self._worker = worker
        self._pipelines = dict(pipelines)
        self._context_builder = context_builder
        self._workspaces = workspaces
        self._failure_dir = Path(failure_dir)
        self._max_iterations = max_iterations
        self._max_retries = max_retries
        self._worker_timeout = worker_timeout_seconds
        self._auto_fix = auto_fix
        self._auto_merge = auto_merge
        self._cancel_token = cancel_token if cancel_token is not None else CancellationToken()
        self._now_fn = now_fn if now_fn is not None else utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._locks: KeyedLocks[int] = KeyedLocks()

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    @property
    def store(self) -> ProgressStore:
        return self._store

    def is_executing(self, sprint_id: int) -> bool:
        return self._locks.is_locked(sprint_id)

    def cancel(self) -> None:
        self._cancel_token.cancel()

    # -- single sprint -----------------------------------------------------

    async def run_sprint(self, sprint_id: int) -> SprintRunResult:
        """Run one sprint until it is ``DONE`` or ``BLOCKED``.

        Raises ``ConfigurationError`` for unknown ids, ``RunawayPipelineError``
        when the iteration ceiling is hit and ``ResourceExhaustion`` when no
        workspace can be allocated. Every other phase-level error is folded
        into the retry/block decision.
        """

        sprint = self._store.get(sprint_id)
        if sprint.is_done:
            return self._result(sprint, RunOutcome.DONE, _RunState(), message="already done")
        if sprint.is_blocked:
            return self._blocked_result(sprint, _RunState())

        async with self._locks.get(sprint_id):
            with correlation_scope(sprint_id=str(sprint_id)):
                return await self._run_locked(sprint_id)

    async def _run_locked(self, sprint_id: int) -> SprintRunResult:
        state = _RunState()
        workspace: WorkspaceHandle | None = None
        iterations = 0
        while True:
            sprint = self._store.get(sprint_id)
            if sprint.is_done:
                return await self._finish_done(sprint, state, workspace)
            if sprint.is_blocked:
                return self._blocked_result(sprint, state)
            if self._cancel_token.is_cancelled:
                return self._cancelled_result(sprint, state)

            iterations += 1
            if iterations > self._max_iterations:
                self._logger.error(
                    "sprint_runaway_pipeline",
                    sprint_id=sprint_id,
                    max_iterations=self._max_iterations,
                )
                raise RunawayPipelineError(sprint_id, self._max_iterations)

            spec = _phase_spec_or_none(sprint)
            if spec is None or not spec.has_worker:
                await self._advance(sprint, state)
                continue

            if workspace is None:
                workspace = await self._acquire_workspace(sprint)

            try:
                attempt = await self._attempt_phase(sprint, spec, workspace, state)
            except asyncio.CancelledError:
                if not self._cancel_token.is_cancelled:
                    raise
                return self._cancelled_result(self._store.get(sprint_id), state)

            if attempt.passed:
                await self._advance(sprint, state)
            else:
                await self._record_failure(sprint, attempt, state)

    async def _attempt_phase(
        self,
        sprint: Sprint,
        spec: PhaseSpec,
        workspace: WorkspaceHandle | None,
        state: _RunState,
    ) -> _PhaseAttempt:
        role = spec.role or ""
        try:
            context = self._context_builder.build(
                sprint,
                sprint.status,
                role=role,
                max_turns=spec.max_turns,
                workspace=workspace,
            )
        except Exception as exc:  # noqa: BLE001 - counted like a worker failure
            return self._crashed_attempt(sprint, role, "worker_context_failed", exc)
        state.worker_invocations += 1
        try:
            result = await run_with_timeout(
                self._worker.invoke(role, context),
                self._worker_timeout,
                self._cancel_token,
            )
        except TimeoutError as exc:
            message = str(exc) or f"worker {role!r} exceeded {self._worker_timeout:g}s"
            return _PhaseAttempt(passed=False, kind=FailureKind.WORKER, message=message)
        except WorkerInvocationError as exc:
            return _PhaseAttempt(passed=False, kind=FailureKind.WORKER, message=str(exc))
        except Exception as exc:  # noqa: BLE001 - worker adapters may raise anything
            return self._crashed_attempt(sprint, role, "worker_invocation_crashed", exc)

        if not result.success:
            return _PhaseAttempt(
                passed=False,
                kind=FailureKind.WORKER,
                message=result.error or f"worker {role!r} reported failure",
                raw_output=result.raw_output,
            )

        self._cancel_token.raise_if_cancelled()
        pipeline = self._pipelines.get(sprint.status)
        if pipeline is None:
            return _PhaseAttempt(passed=True, raw_output=result.raw_output)

        artifact = Artifact(
            sprint_id=sprint.id,
            phase=sprint.status,
            workspace=workspace,
            documents=result.artifacts,
            raw_output=result.raw_output,
        )
        report = await pipeline.run(artifact, fix=self._auto_fix)
        if report.passed:
            return _PhaseAttempt(passed=True, report=report, raw_output=result.raw_output)
        hard = any(
            issue.severity is Severity.CRITICAL and issue.category == _ENVIRONMENT_CATEGORY
            for issue in report.issues
        )
        return _PhaseAttempt(
            passed=False,
            kind=FailureKind.GATE,
            message=report.summary(),
            report=report,
            raw_output=result.raw_output,
            hard_failure=hard,
        )

    def _crashed_attempt(
        self, sprint: Sprint, role: str, event: str, exc: Exception
    ) -> _PhaseAttempt:
        self._logger.warning(
            event,
            sprint_id=sprint.id,
            phase=sprint.status.value,
            role=role,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _PhaseAttempt(
            passed=False,
            kind=FailureKind.WORKER,
            message=f"{type(exc).__name__}: {exc}",
        )

    async def _advance(self, sprint: Sprint, state: _RunState) -> None:
        target = next_phase(sprint.workflow_type, sprint.status)
        updated = sprint.advanced(target, now=self._now_fn())
        await self._store.commit_async(updated)
        state.phases_completed.append(sprint.status)
        state.attempts.clear()
        self._logger.info(
            "sprint_phase_advanced",
            sprint_id=sprint.id,
            from_phase=sprint.status.value,
            to_phase=target.value,
        )

    async def _record_failure(
        self, sprint: Sprint, attempt: _PhaseAttempt, state: _RunState
    ) -> None:
        now = self._now_fn()
        failed = sprint.failed(now=now)
        state.attempts.append(
            AttemptRecord(
                attempt=failed.retry_count,
                kind=(attempt.kind or FailureKind.GATE).value,
                message=attempt.message,
                issues=(
                    tuple(issue.to_dict() for issue in attempt.report.issues)
                    if attempt.report is not None
                    else ()
                ),
                output_tail=output_tail(attempt.raw_output, MAX_OUTPUT_TAIL_CHARS),
            )
        )
        self._logger.warning(
            "sprint_phase_failed",
            sprint_id=sprint.id,
            phase=sprint.status.value,
            kind=(attempt.kind or FailureKind.GATE).value,
            retry_count=failed.retry_count,
            max_retries=self._max_retries,
            reason=attempt.message,
        )

        if not attempt.hard_failure and failed.retry_count < self._max_retries:
            await self._store.commit_async(failed)
            return

        report_path = await asyncio.to_thread(
            write_failure_report,
            self._failure_dir,
            FailureReport(
                sprint_id=sprint.id,
                phase=sprint.status.value,
                retry_count=failed.retry_count,
                created_at=now,
                attempts=tuple(state.attempts),
                extra={
                    "phase_label": sprint.status.label,
                    "workflow_type": sprint.workflow_type.value,
                    "failure_kind": (attempt.kind or FailureKind.GATE).value,
                    "hard_failure": attempt.hard_failure,
                },
            ),
        )
        await self._store.commit_async(failed.blocked(failure_report=str(report_path), now=now))
        self._logger.error(
            "sprint_blocked",
            sprint_id=sprint.id,
            phase=sprint.status.value,
            retry_count=failed.retry_count,
            failure_report=str(report_path),
        )

    async def _acquire_workspace(self, sprint: Sprint) -> WorkspaceHandle | None:
        manager = self._workspaces
        if manager is None:
            return None
        existing = manager.find(WorkspaceKind.SPRINT, sprint.id)
        if existing is not None:
            self._logger.debug("workspace_reattached", sprint_id=sprint.id, workspace=existing.name)
            return existing
        return await asyncio.to_thread(manager.create, WorkspaceKind.SPRINT, sprint.id)

    async def _finish_done(
        self, sprint: Sprint, state: _RunState, workspace: WorkspaceHandle | None
    ) -> SprintRunResult:
        self._logger.info("sprint_done", sprint_id=sprint.id, phases=len(state.phases_completed))
        if not self._auto_merge or self._workspaces is None:
            return self._result(sprint, RunOutcome.DONE, state)
        handle = workspace or self._workspaces.find(WorkspaceKind.SPRINT, sprint.id)
        if handle is None:
            return self._result(sprint, RunOutcome.DONE, state)
        try:
            await asyncio.to_thread(
                self._workspaces.merge,
                handle,
                message=f"sprint {sprint.id}: {sprint.goal}",
            )
        except MergeConflict as exc:
            self._logger.warning(
                "sprint_merge_conflict",
                sprint_id=sprint.id,
                workspace=handle.name,
                paths=list(exc.paths),
            )
            return self._result(
                sprint,
                RunOutcome.DONE,
                state,
                merge_conflict=exc.paths,
                message=str(exc),
            )
        return self._result(sprint, RunOutcome.DONE, state, merged=True)

    # -- scheduling --------------------------------------------------------

    async def run_parallel(
        self,
        sprint_ids: Collection[int] | None = None,
        concurrency: int = 1,
    ) -> ScheduleResult:
        """Run eligible sprints concurrently, bounded by ``concurrency``.

        The dependency graph is validated before anything starts. After each
        sprint finishes a new scheduling pass picks up newly eligible sprints.
        """

        sprints = self._store.sprints()
        scheduler = Scheduler(sprints)
        only = self._requested_ids(sprints, sprint_ids)
        semaphore = BoundedSemaphore(concurrency)

        running: dict[int, asyncio.Task[SprintRunResult]] = {}
        results: dict[int, SprintRunResult] = {}
        try:
            while True:
                if not self._cancel_token.is_cancelled:
                    statuses = {sprint.id: sprint.status for sprint in self._store.sprints()}
                    eligible = scheduler.eligible(
                        statuses, exclude={*running, *results}, only=only
                    )
                    for sprint_id in eligible:
                        running[sprint_id] = asyncio.create_task(
                            self._run_with_permit(sprint_id, semaphore),
                            name=f"sprint-{sprint_id}",
                        )
                    if eligible:
                        self._logger.debug("scheduler_pass", started=list(eligible))
                if not running:
                    break
                done, _ = await asyncio.wait(
                    running.values(), return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    finished = next(key for key, value in running.items() if value is task)
                    del running[finished]
                    results[finished] = task.result()
        except BaseException:
            for task in running.values():
                task.cancel()
            await asyncio.gather(*running.values(), return_exceptions=True)
            raise

        ordered = tuple(results[sprint_id] for sprint_id in scheduler.order if sprint_id in results)
        final = {sprint.id: sprint for sprint in self._store.sprints()}
        skipped = tuple(
            sprint_id
            for sprint_id in scheduler.order
            if sprint_id not in results
            and (only is None or sprint_id in only)
            and final[sprint_id].is_runnable
        )
        if skipped:
            self._logger.warning("sprints_not_scheduled", sprint_ids=list(skipped))
        return ScheduleResult(results=ordered, skipped=skipped, peak_concurrency=semaphore.peak)

    async def _run_with_permit(
        self, sprint_id: int, semaphore: BoundedSemaphore
    ) -> SprintRunResult:
        async with semaphore.permit():
            return await self._run_contained(sprint_id)

    async def _run_contained(self, sprint_id: int) -> SprintRunResult:
        # A fatal error ends this sprint only; the rest of the schedule continues.
        try:
            return await self.run_sprint(sprint_id)
        except (RunawayPipelineError, ResourceExhaustion) as exc:
            sprint = self._store.get(sprint_id)
            self._logger.error("sprint_fatal", sprint_id=sprint_id, error=str(exc))
            kind = "runaway" if isinstance(exc, RunawayPipelineError) else "resource"
            return self._result(
                sprint, RunOutcome.FATAL, _RunState(), fatal_kind=kind, message=str(exc)
            )
        except ConfigurationError:
            raise
        except Exception as exc:  # noqa: BLE001 - siblings keep running
            sprint = self._store.get(sprint_id)
            kind = _fatal_kind(exc)
            self._logger.error(
                "sprint_fatal",
                sprint_id=sprint_id,
                error_kind=kind,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._result(
                sprint,
                RunOutcome.FATAL,
                _RunState(),
                fatal_kind=kind,
                message=f"{type(exc).__name__}: {exc}",
            )

    async def run_all(self, *, parallel: bool = False, concurrency: int = 1) -> ScheduleResult:
        """Run every runnable sprint; sequentially in topological order unless ``parallel``."""

        if parallel:
            return await self.run_parallel(None, concurrency)

        scheduler = Scheduler(self._store.sprints())
        results: list[SprintRunResult] = []
        attempted: set[int] = set()
        while not self._cancel_token.is_cancelled:
            statuses = {sprint.id: sprint.status for sprint in self._store.sprints()}
            eligible = scheduler.eligible(statuses, exclude=attempted)
            if not eligible:
                break
            sprint_id = eligible[0]
            attempted.add(sprint_id)
            results.append(await self._run_contained(sprint_id))

        final = {sprint.id: sprint for sprint in self._store.sprints()}
        skipped = tuple(
            sprint_id
            for sprint_id in scheduler.order
            if sprint_id not in attempted and final[sprint_id].is_runnable
        )
        return ScheduleResult(
            results=tuple(results), skipped=skipped, peak_concurrency=min(len(results), 1)
        )

    # -- rollback ----------------------------------------------------------

    def rollback(self, sprint_id: int, target_phase: Phase | str) -> Sprint:
        """Reset a sprint to ``target_phase`` and discard its live workspace."""

        sprint = self._store.get(sprint_id)
        target = Phase(target_phase)
        if target is Phase.BLOCKED:
            raise ConfigurationError("rollback target must not be BLOCKED")
        if target not in workflow_phases(sprint.workflow_type):
            raise ConfigurationError(
                f"{target.value} is not part of the {sprint.workflow_type.value} workflow"
            )
        if self.is_executing(sprint_id):
            raise WorkspaceBusy(f"sprint-{sprint_id}")

        if self._workspaces is not None:
            handle = self._workspaces.find(WorkspaceKind.SPRINT, sprint_id)
            if handle is not None:
                if self._workspaces.is_merging(handle):
                    raise WorkspaceBusy(handle.name)
                self._workspaces.delete(handle)

        updated = sprint.rolled_back(target, now=self._now_fn())
        self._store.commit(updated)
        self._logger.info(
            "sprint_rolled_back",
            sprint_id=sprint_id,
            from_phase=sprint.status.value,
            to_phase=target.value,
        )
        return updated

    # -- helpers -----------------------------------------------------------

    def _requested_ids(
        self, sprints: Collection[Sprint], sprint_ids: Collection[int] | None
    ) -> frozenset[int] | None:
        if sprint_ids is None:
            return None
        known = {sprint.id for sprint in sprints}
        unknown = sorted(set(sprint_ids) - known)
        if unknown:
            raise ConfigurationError(f"unknown sprint id(s): {unknown}")
        return frozenset(sprint_ids)

    def _blocked_result(self, sprint: Sprint, state: _RunState) -> SprintRunResult:
        blocked_phase = sprint.blocked_phase.value if sprint.blocked_phase else "unknown phase"
        return self._result(
            sprint,
            RunOutcome.BLOCKED,
            state,
            failure_report=sprint.failure_report,
            failure_kind=_last_failure_kind(state),
            message=f"sprint {sprint.id} is blocked at {blocked_phase}",
        )

    def _cancelled_result(self, sprint: Sprint, state: _RunState) -> SprintRunResult:
        self._logger.warning("sprint_run_cancelled", sprint_id=sprint.id, phase=sprint.status.value)
        return self._result(sprint, RunOutcome.CANCELLED, state, message="cancelled")

    def _result(
        self,
        sprint: Sprint,
        outcome: RunOutcome,
        state: _RunState,
        **kwargs: Any,
    ) -> SprintRunResult:
        return SprintRunResult(
            sprint_id=sprint.id,
            outcome=outcome,
            status=sprint.status,
            retry_count=sprint.retry_count,
            phases_completed=tuple(state.phases_completed),
            worker_invocations=state.worker_invocations,
            **kwargs,
        )


def _phase_spec_or_none(sprint: Sprint) -> PhaseSpec | None:
    try:
        return phase_spec(sprint.workflow_type, sprint.status)
    except KeyError:
        return None


def _last_failure_kind(state: _RunState) -> FailureKind | None:
    if not state.attempts:
        return None
    return FailureKind(state.attempts[-1].kind)


def _fatal_kind(exc: Exception) -> str:
    if isinstance(exc, WorkspaceBusy):
        return "busy"
    if isinstance(exc, (GitEngineError, OSError)):
        return "io"
    return "internal"


__all__ = [
    "FailureKind",
    "RunOutcome",
    "ScheduleResult",
    "SprintOrchestrator",
    "SprintRunResult",
]
