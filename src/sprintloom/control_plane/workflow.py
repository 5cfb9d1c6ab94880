"""
sprintloom — workflow definitions

File: src/sprintloom/control_plane/workflow.py

Purpose
- Bind each workflow type to its ordered subsequence of the linear phase graph,
  with the worker role and max-turn budget of every worker phase.

Invariants
- Every workflow starts with ``PENDING`` and ends with ``COMPLETE -> DONE``.
- Phases appear in the same relative order as ``PHASE_ORDER``.
- ``PENDING`` and ``DONE`` have no worker.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Final

from sprintloom.domain.models import Phase, WorkflowType, phase_index


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    phase: Phase
    role: str | None = None
    max_turns: int = 0

    @property
    def has_worker(self) -> bool:
        return self.role is not None


def _workflow(*steps: tuple[Phase, str, int]) -> tuple[PhaseSpec, ...]:
    specs = (
        PhaseSpec(Phase.PENDING),
        *(PhaseSpec(phase, role, turns) for phase, role, turns in steps),
        PhaseSpec(Phase.DONE),
    )
    indices = [phase_index(spec.phase) for spec in specs]
    if indices != sorted(set(indices)):
        raise ValueError(f"workflow phases out of order: {[spec.phase for spec in specs]}")
    if specs[-2].phase is not Phase.COMPLETE:
        raise ValueError("workflow must end with COMPLETE -> DONE")
    return specs


WORKFLOWS: Final[Mapping[WorkflowType, tuple[PhaseSpec, ...]]] = MappingProxyType(
    {
        WorkflowType.IMPLEMENTATION: _workflow(
            (Phase.WRITE_UNIT_TESTS, "test-writer", 6),
            (Phase.WRITE_CODE, "code-implementer", 10),
            (Phase.CODE_REVIEW, "reviewer", 5),
            (Phase.RUN_UNIT_TESTS, "unit-test-runner", 5),
            (Phase.WRITE_E2E_TESTS, "e2e-writer", 6),
            (Phase.RUN_E2E_TESTS, "e2e-test-runner", 5),
            (Phase.COMPLETE, "health-check", 5),
        ),
        WorkflowType.DOCUMENTATION: _workflow(
            (Phase.WRITE_CODE, "doc-writer", 8),
            (Phase.CODE_REVIEW, "doc-reviewer", 5),
            (Phase.COMPLETE, "health-check", 5),
        ),
        WorkflowType.TEST: _workflow(
            (Phase.WRITE_CODE, "test-implementer", 8),
            (Phase.CODE_REVIEW, "reviewer", 5),
            (Phase.RUN_UNIT_TESTS, "unit-test-runner", 5),
            (Phase.COMPLETE, "health-check", 5),
        ),
        WorkflowType.INFRASTRUCTURE: _workflow(
            (Phase.WRITE_CODE, "infra-implementer", 10),
            (Phase.CODE_REVIEW, "reviewer", 5),
            (Phase.WRITE_E2E_TESTS, "integration-test-writer", 6),
            (Phase.RUN_E2E_TESTS, "integration-test-runner", 5),
            (Phase.COMPLETE, "health-check", 5),
        ),
        WorkflowType.REFACTOR: _workflow(
            (Phase.WRITE_UNIT_TESTS, "test-verifier", 5),
            (Phase.WRITE_CODE, "refactor-implementer", 10),
            (Phase.CODE_REVIEW, "reviewer", 5),
            (Phase.RUN_UNIT_TESTS, "unit-test-runner", 5),
            (Phase.COMPLETE, "health-check", 5),
        ),
    }
)


def workflow_phases(workflow: WorkflowType) -> tuple[Phase, ...]:
    return tuple(spec.phase for spec in WORKFLOWS[workflow])


def phase_spec(workflow: WorkflowType, phase: Phase) -> PhaseSpec:
    for spec in WORKFLOWS[workflow]:
        if spec.phase is phase:
            return spec
    raise KeyError(f"{phase.value} is not part of the {workflow.value} workflow")


def next_phase(workflow: WorkflowType, current: Phase) -> Phase:
    """The phase after ``current``; raises for ``DONE`` and ``BLOCKED``."""

    if current is Phase.BLOCKED:
        raise ValueError("a blocked sprint has no next phase")
    specs = WORKFLOWS[workflow]
    for index, spec in enumerate(specs[:-1]):
        if spec.phase is current:
            return specs[index + 1].phase
    if current is Phase.DONE:
        raise ValueError("DONE is terminal")
    # A phase outside the workflow (e.g. migrated data) resumes at the next phase that is in it.
    current_index = phase_index(current)
    for spec in specs:
        if phase_index(spec.phase) > current_index:
            return spec.phase
    raise ValueError(f"no phase follows {current.value} in {workflow.value}")


__all__ = ["WORKFLOWS", "PhaseSpec", "next_phase", "phase_spec", "workflow_phases"]
