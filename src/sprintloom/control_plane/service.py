"""
sprintloom — operational surface

File: src/sprintloom/control_plane/service.py

Purpose
- Assemble the store, workspace manager, worker, gate pipelines and
  orchestrator from an effective config mapping.
- Expose each operation as a call returning an ``OperationResult`` whose
  ``status`` is ``success``, ``gate_failure`` or ``fatal``.

Error mapping
- ``ConfigurationError``: fatal, kind ``config``.
- ``ResourceExhaustion`` / ``RunawayPipelineError``: fatal, kind ``resource`` /
  ``runaway``.
- ``WorkspaceBusy``: fatal, kind ``busy``.
- Git or filesystem failures: fatal, kind ``io``.
- A blocked sprint: gate failure, kind ``gate`` or ``worker`` depending on the
  last failed attempt.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from sprintloom.control_plane.controller import (
    FailureKind,
    RunOutcome,
    ScheduleResult,
    SprintOrchestrator,
    SprintRunResult,
)
from sprintloom.domain.errors import (
    ConfigurationError,
    ResourceExhaustion,
    RunawayPipelineError,
    SprintloomError,
    WorkspaceBusy,
)
from sprintloom.domain.models import Phase, normalize_phase_name
from sprintloom.integration_plane.git_engine import GitEngineError
from sprintloom.integration_plane.workspace_manager import WorkspaceKind, WorkspaceManager
from sprintloom.persistence.progress_store import ProgressStore
from sprintloom.synthesis_plane.command_worker import CommandWorker
from sprintloom.synthesis_plane.context_builder import ContextBuilder
from sprintloom.utils.concurrency import CancellationToken
from sprintloom.verification_plane.artifacts import Artifact
from sprintloom.verification_plane.gates import (
    OutputShapeGate,
    SchemaGate,
    build_phase_pipelines,
)
from sprintloom.verification_plane.pipeline import QualityGatePipeline

if TYPE_CHECKING:
    from sprintloom.synthesis_plane.contract import WorkerInvoker

T = TypeVar("T")


class OperationStatus(StrEnum):
    SUCCESS = "success"
    GATE_FAILURE = "gate_failure"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Uniform result of a service operation."""

    operation: str
    status: OperationStatus
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is OperationStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "status": self.status.value,
            "message": self.message,
            "error_kind": self.error_kind,
            "data": self.data,
        }


class OrchestrationService:
    """Config-driven facade over the orchestrator, workspaces and gates.

    Collaborators are created lazily so read-only operations (``status``,
    ``validate``) work outside a git checkout and without a worker command.
    """

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        repo_root: Path,
        worker: WorkerInvoker | None = None,
        workspaces: WorkspaceManager | None = None,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._repo_root = Path(repo_root).resolve()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._cancel_token = cancel_token if cancel_token is not None else CancellationToken()
        self._store = ProgressStore(_config_path(config, "paths", "progress_file"))
        self._worker = worker
        self._workspaces = workspaces
        self._orchestrator: SprintOrchestrator | None = None

    @property
    def store(self) -> ProgressStore:
        return self._store

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    def workspace_manager(self) -> WorkspaceManager:
        if self._workspaces is None:
            section = self._config["workspaces"]
            self._workspaces = WorkspaceManager(
                self._repo_root,
                section["root"],
                integration_branch=section["integration_branch"],
                branch_prefix=section["branch_prefix"],
                base_port=section["base_port"],
                port_stride=section["port_stride"],
                max_port_probes=section["max_port_probes"],
                service_files=section["service_files"],
            )
        return self._workspaces

    def orchestrator(self) -> SprintOrchestrator:
        if self._orchestrator is None:
            settings = self._config["orchestrator"]
            workspaces = self.workspace_manager()
            worker = self._worker
            if worker is None:
                worker = CommandWorker(
                    self._config["worker"]["command"],
                    git=workspaces.git,
                    cwd=self._repo_root,
                    timeout_seconds=settings["worker_timeout_seconds"],
                )
            self._orchestrator = SprintOrchestrator(
                self._store,
                worker,
                build_phase_pipelines(self._config),
                ContextBuilder(_config_path(self._config, "paths", "documents_root")),
                workspaces=workspaces,
                failure_dir=_config_path(self._config, "paths", "failure_dir"),
                max_iterations=settings["max_iterations"],
                max_retries=settings["max_retries"],
                worker_timeout_seconds=settings["worker_timeout_seconds"],
                auto_fix=settings["auto_fix"],
                auto_merge=settings["auto_merge"],
                cancel_token=self._cancel_token,
            )
        return self._orchestrator

    # -- operations --------------------------------------------------------

    def run_sprint(self, sprint_id: int) -> OperationResult:
        return self._guard(
            "run_sprint",
            lambda: _sprint_result(
                "run_sprint", self._run(self.orchestrator().run_sprint(sprint_id))
            ),
        )

    def run_all(
        self, *, parallel: bool = False, concurrency: int | None = None
    ) -> OperationResult:
        limit = concurrency or self._config["orchestrator"]["concurrency"]

        def operation() -> OperationResult:
            schedule = self._run(self.orchestrator().run_all(parallel=parallel, concurrency=limit))
            return _schedule_result("run_all", schedule)

        return self._guard("run_all", operation)

    def run_selected(
        self, sprint_ids: Iterable[int], *, concurrency: int | None = None
    ) -> OperationResult:
        limit = concurrency or self._config["orchestrator"]["concurrency"]
        ids = tuple(sprint_ids)

        def operation() -> OperationResult:
            schedule = self._run(self.orchestrator().run_parallel(ids, limit))
            return _schedule_result("run_parallel", schedule)

        return self._guard("run_parallel", operation)

    def rollback(
        self, sprint_id: int, target_phase: Phase | str = Phase.PENDING
    ) -> OperationResult:
        def operation() -> OperationResult:
            phase = _parse_phase(target_phase)
            sprint = self.orchestrator().rollback(sprint_id, phase)
            return OperationResult(
                operation="rollback",
                status=OperationStatus.SUCCESS,
                message=f"sprint {sprint.id} rolled back to {sprint.status.value}",
                data={"sprint": sprint.to_dict()},
            )

        return self._guard("rollback", operation)

    def list_workspaces(self) -> OperationResult:
        def operation() -> OperationResult:
            handles = self.workspace_manager().list()
            return OperationResult(
                operation="list_workspaces",
                status=OperationStatus.SUCCESS,
                message=f"{len(handles)} workspace(s)",
                data={"workspaces": [handle.to_dict() for handle in handles]},
            )

        return self._guard("list_workspaces", operation)

    def prune_workspaces(self) -> OperationResult:
        def operation() -> OperationResult:
            manager = self.workspace_manager()
            live = {sprint.id for sprint in self._sprints_if_present() if not sprint.is_done}
            protected = [
                handle
                for handle in manager.list()
                if handle.kind is WorkspaceKind.SPRINT and handle.key in live
            ]
            removed = manager.prune(protected)
            return OperationResult(
                operation="prune_workspaces",
                status=OperationStatus.SUCCESS,
                message=f"removed {len(removed)} workspace(s)",
                data={"removed": [handle.name for handle in removed]},
            )

        return self._guard("prune_workspaces", operation)

    def delete_workspace(self, name: str) -> OperationResult:
        def operation() -> OperationResult:
            removed = self.workspace_manager().delete(name)
            return OperationResult(
                operation="delete_workspace",
                status=OperationStatus.SUCCESS,
                message=f"deleted {name}" if removed else f"{name} was already gone",
                data={"name": name, "removed": removed},
            )

        return self._guard("delete_workspace", operation)

    def init_project(self, name: str, *, description: str | None = None) -> OperationResult:
        def operation() -> OperationResult:
            try:
                if description is None:
                    document = self._store.initialize(name)
                else:
                    document = self._store.initialize(name, description=description)
            except FileExistsError as exc:
                raise ConfigurationError(str(exc)) from exc
            return OperationResult(
                operation="init",
                status=OperationStatus.SUCCESS,
                message=f"created {self._store.path}",
                data={"project": document.project.to_dict()},
            )

        return self._guard("init", operation)

    def status(self) -> OperationResult:
        def operation() -> OperationResult:
            if not self._store.exists():
                return OperationResult(
                    operation="status",
                    status=OperationStatus.SUCCESS,
                    message=f"no progress file at {self._store.path}",
                    data={"progress_file": self._store.path.as_posix(), "sprints": []},
                )
            document = self._store.load()
            counts: dict[str, int] = {}
            for sprint in document.sprints:
                counts[sprint.status.value] = counts.get(sprint.status.value, 0) + 1
            return OperationResult(
                operation="status",
                status=OperationStatus.SUCCESS,
                message=f"{len(document.sprints)} sprint(s)",
                data={
                    "progress_file": self._store.path.as_posix(),
                    "project": document.project.to_dict(),
                    "counts": counts,
                    "sprints": [
                        {
                            "id": sprint.id,
                            "goal": sprint.goal,
                            "status": sprint.status.value,
                            "workflow_type": sprint.workflow_type.value,
                            "retry_count": sprint.retry_count,
                            "dependencies": list(sprint.dependencies),
                            "blocked_phase": (
                                sprint.blocked_phase.value if sprint.blocked_phase else None
                            ),
                            "failure_report": sprint.failure_report,
                        }
                        for sprint in document.sprints
                    ],
                },
            )

        return self._guard("status", operation)

    def validate(self, paths: Iterable[str | Path], *, fix: bool = False) -> OperationResult:
        """Run the schema and output-shape gates against files on disk."""

        def operation() -> OperationResult:
            resolved = [_resolve_under(self._repo_root, path) for path in paths]
            missing = [path.as_posix() for path in resolved if not path.is_file()]
            if missing:
                raise ConfigurationError(f"no such file(s): {', '.join(missing)}")
            artifact = Artifact.from_paths(resolved, root=self._repo_root)
            pipeline = QualityGatePipeline([SchemaGate(), OutputShapeGate()], write_back=fix)
            report = self._run(pipeline.run(artifact, fix=fix))
            return OperationResult(
                operation="validate",
                status=OperationStatus.SUCCESS if report.passed else OperationStatus.GATE_FAILURE,
                message=report.summary(),
                data={"report": report.to_dict()},
                error_kind=None if report.passed else FailureKind.GATE.value,
            )

        return self._guard("validate", operation)

    # -- helpers -----------------------------------------------------------

    def _run(self, coroutine: Coroutine[Any, Any, T]) -> T:
        return asyncio.run(coroutine)

    def _sprints_if_present(self) -> tuple[Any, ...]:
        if not self._store.exists():
            return ()
        return self._store.sprints()

    def _guard(self, operation: str, call: Callable[[], OperationResult]) -> OperationResult:
        try:
            result = call()
        except ConfigurationError as exc:
            return self._fatal(operation, "config", exc)
        except WorkspaceBusy as exc:
            return self._fatal(operation, "busy", exc)
        except RunawayPipelineError as exc:
            return self._fatal(operation, "runaway", exc)
        except ResourceExhaustion as exc:
            return self._fatal(operation, "resource", exc)
        except (GitEngineError, OSError) as exc:
            return self._fatal(operation, "io", exc)
        except SprintloomError as exc:
            return self._fatal(operation, "internal", exc)
        self._logger.info(
            "operation_finished",
            operation=operation,
            status=result.status.value,
            error_kind=result.error_kind,
        )
        return result

    def _fatal(self, operation: str, kind: str, exc: BaseException) -> OperationResult:
        self._logger.error(
            "operation_failed", operation=operation, error_kind=kind, error=str(exc)
        )
        return OperationResult(
            operation=operation,
            status=OperationStatus.FATAL,
            message=str(exc),
            error_kind=kind,
        )


def _sprint_result(operation: str, result: SprintRunResult) -> OperationResult:
    status, kind = _classify(result)
    return OperationResult(
        operation=operation,
        status=status,
        message=result.message or f"sprint {result.sprint_id}: {result.outcome.value}",
        data={"sprint": result.to_dict()},
        error_kind=kind,
    )


def _schedule_result(operation: str, schedule: ScheduleResult) -> OperationResult:
    status = OperationStatus.SUCCESS
    kind: str | None = None
    for result in schedule.results:
        result_status, result_kind = _classify(result)
        if result_status is OperationStatus.FATAL:
            status, kind = result_status, result_kind
            break
        if result_status is OperationStatus.GATE_FAILURE and status is OperationStatus.SUCCESS:
            status, kind = result_status, result_kind
    done = sum(1 for result in schedule.results if result.succeeded)
    message = f"{done}/{len(schedule.results)} sprint(s) done"
    if schedule.skipped:
        message += f"; not scheduled: {', '.join(str(item) for item in schedule.skipped)}"
    return OperationResult(
        operation=operation,
        status=status,
        message=message,
        data=schedule.to_dict(),
        error_kind=kind,
    )


def _classify(result: SprintRunResult) -> tuple[OperationStatus, str | None]:
    if result.outcome is RunOutcome.DONE:
        return OperationStatus.SUCCESS, None
    if result.outcome is RunOutcome.BLOCKED:
        kind = result.failure_kind or FailureKind.GATE
        return OperationStatus.GATE_FAILURE, kind.value
    if result.outcome is RunOutcome.CANCELLED:
        return OperationStatus.FATAL, "cancelled"
    return OperationStatus.FATAL, result.fatal_kind or "internal"


def _parse_phase(value: Phase | str) -> Phase:
    if isinstance(value, Phase):
        return value
    phase = normalize_phase_name(value)
    if phase is None:
        allowed = ", ".join(phase.value for phase in Phase)
        raise ConfigurationError(f"unknown phase {value!r} (expected one of: {allowed})")
    return phase


def _config_path(config: Mapping[str, Any], section: str, key: str) -> Path:
    return Path(config[section][key])


def _resolve_under(root: Path, raw: str | Path) -> Path:
    candidate = Path(raw).expanduser()
    return candidate if candidate.is_absolute() else root / candidate


__all__ = ["OperationResult", "OperationStatus", "OrchestrationService"]
