"""Control plane: workflows, scheduling, the sprint orchestrator and its service facade."""

from sprintloom.control_plane.controller import (
    FailureKind,
    RunOutcome,
    ScheduleResult,
    SprintOrchestrator,
    SprintRunResult,
)
from sprintloom.control_plane.failure_reports import (
    AttemptRecord,
    FailureReport,
    failure_report_path,
    write_failure_report,
)
from sprintloom.control_plane.scheduler import Scheduler, topological_order
from sprintloom.control_plane.service import (
    OperationResult,
    OperationStatus,
    OrchestrationService,
)
from sprintloom.control_plane.workflow import (
    WORKFLOWS,
    PhaseSpec,
    next_phase,
    phase_spec,
    workflow_phases,
)

__all__ = [
    "WORKFLOWS",
    "AttemptRecord",
    "FailureKind",
    "FailureReport",
    "OperationResult",
    "OperationStatus",
    "OrchestrationService",
    "PhaseSpec",
    "RunOutcome",
    "ScheduleResult",
    "Scheduler",
    "SprintOrchestrator",
    "SprintRunResult",
    "failure_report_path",
    "next_phase",
    "phase_spec",
    "topological_order",
    "workflow_phases",
]
