"""Domain layer: sprint/task models and the shared error taxonomy."""

from __future__ import annotations

from sprintloom.domain.errors import (
    ConfigurationError,
    DependencyCycleError,
    GateTimeout,
    MergeConflict,
    PortRangeExhausted,
    QualityGateFailure,
    ResourceExhaustion,
    RunawayPipelineError,
    SprintloomError,
    WorkerInvocationError,
    WorkerTimeout,
    WorkspaceBusy,
)
from sprintloom.domain.models import (
    PHASE_ORDER,
    IntegrationPoints,
    Phase,
    Priority,
    ProgressDocument,
    ProjectInfo,
    Sprint,
    Task,
    TaskStatus,
    WorkflowType,
)

__all__ = [
    "PHASE_ORDER",
    "ConfigurationError",
    "DependencyCycleError",
    "GateTimeout",
    "IntegrationPoints",
    "MergeConflict",
    "Phase",
    "PortRangeExhausted",
    "Priority",
    "ProgressDocument",
    "ProjectInfo",
    "QualityGateFailure",
    "ResourceExhaustion",
    "RunawayPipelineError",
    "Sprint",
    "SprintloomError",
    "Task",
    "TaskStatus",
    "WorkerInvocationError",
    "WorkerTimeout",
    "WorkflowType",
    "WorkspaceBusy",
]
