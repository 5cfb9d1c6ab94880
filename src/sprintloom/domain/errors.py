"""
sprintloom — error taxonomy

File: src/sprintloom/domain/errors.py

Purpose
- One exception hierarchy shared by the orchestrator, workspace manager and gates.

Propagation policy
- Phase-level errors (worker, gate, timeout) are converted into retry/block
  decisions inside the orchestrator and never unwind past ``run_sprint``.
- ``ConfigurationError`` and unrecoverable I/O errors propagate as fatal.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sprintloom.verification_plane.pipeline import QualityReport


class SprintloomError(Exception):
    """Base error for all sprintloom failures."""


class ConfigurationError(SprintloomError, ValueError):
    """Fatal: invalid config, malformed progress store, or cyclic/unknown dependencies."""


class DependencyCycleError(ConfigurationError):
    """Raised before scheduling when the sprint dependency graph has a cycle."""

    def __init__(self, cycle: Sequence[int]) -> None:
        self.cycle = tuple(cycle)
        rendered = " -> ".join(str(item) for item in self.cycle)
        super().__init__(f"sprint dependency cycle detected: {rendered}")


class WorkerInvocationError(SprintloomError):
    """Recoverable: the external worker could not complete the request."""

    def __init__(self, message: str, *, role: str | None = None) -> None:
        self.role = role
        super().__init__(message)


class WorkerTimeout(WorkerInvocationError, TimeoutError):
    """The worker did not return within the configured timeout."""


class QualityGateFailure(SprintloomError):
    """Recoverable: a produced artifact failed its quality gates."""

    def __init__(self, report: QualityReport) -> None:
        self.report = report
        super().__init__(report.summary())

    @property
    def auto_fixable(self) -> bool:
        return any(issue.auto_fixable for issue in self.report.issues)


class GateTimeout(SprintloomError, TimeoutError):
    """A gate exhausted its polling or execution budget."""

    def __init__(self, gate: str, timeout_seconds: float, detail: str = "") -> None:
        self.gate = gate
        self.timeout_seconds = timeout_seconds
        message = f"gate {gate!r} timed out after {timeout_seconds:g}s"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ResourceExhaustion(SprintloomError):
    """Requires operator action; never retried automatically."""


class PortRangeExhausted(ResourceExhaustion):
    """No non-overlapping port block could be found for a workspace."""

    def __init__(self, key: int, attempts: int, detail: str = "") -> None:
        self.key = key
        self.attempts = attempts
        message = f"no free port block for key {key} after {attempts} probe(s)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MergeConflict(SprintloomError):
    """Recoverable: integrating a workspace branch conflicts with the integration tip."""

    def __init__(self, branch: str, paths: Sequence[str]) -> None:
        self.branch = branch
        self.paths = tuple(paths)
        listed = ", ".join(self.paths) if self.paths else "(unknown paths)"
        super().__init__(f"merge conflict integrating {branch}: {listed}")


class WorkspaceBusy(SprintloomError):
    """The workspace is mid-merge (or its sprint is executing)."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"workspace busy: {name}")


class RunawayPipelineError(SprintloomError):
    """The per-sprint iteration ceiling was reached."""

    def __init__(self, sprint_id: int, max_iterations: int) -> None:
        self.sprint_id = sprint_id
        self.max_iterations = max_iterations
        super().__init__(
            f"runaway pipeline: sprint {sprint_id} exceeded {max_iterations} iterations"
        )


__all__ = [
    "ConfigurationError",
    "DependencyCycleError",
    "GateTimeout",
    "MergeConflict",
    "PortRangeExhausted",
    "QualityGateFailure",
    "ResourceExhaustion",
    "RunawayPipelineError",
    "SprintloomError",
    "WorkerInvocationError",
    "WorkerTimeout",
    "WorkspaceBusy",
]
