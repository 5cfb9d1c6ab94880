"""
sprintloom — worker invocation contract

File: src/sprintloom/synthesis_plane/contract.py

Purpose
- Narrow boundary between the orchestrator and whatever external worker
  produces phase artifacts.

Contract
- ``await invoker.invoke(role, context) -> WorkerResult``.
- Failure is a non-success result or a raised ``WorkerInvocationError``; the
  orchestrator counts both exactly like a failing gate.
- Adapters own every vendor-specific detail; the core never inspects
  ``raw_output`` beyond handing it to the gates.
- Prompts are rendered from strict Jinja templates; an unknown placeholder raises.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from jinja2 import Environment, StrictUndefined

from sprintloom.verification_plane.artifacts import ArtifactDocument

if TYPE_CHECKING:
    from sprintloom.domain.models import Phase, Sprint
    from sprintloom.integration_plane.workspace_manager import WorkspaceHandle

# Prompt text is plain markdown; nothing is HTML-escaped.
_TEMPLATES = Environment(autoescape=False, undefined=StrictUndefined)

_SECTIONS = {
    name: _TEMPLATES.from_string(source)
    for name, source in {
        "header": "# Sprint {{ sprint.id }}: {{ sprint.goal }}",
        "phase": (
            "# Phase\n"
            "- phase: {{ phase.value }}\n"
            "- role: {{ role }}\n"
            "- max_turns: {{ max_turns }}\n"
            "- workflow: {{ sprint.workflow_type.value }}\n"
            "- total_effort: {{ sprint.total_effort }}\n"
            "- max_effort: {{ sprint.max_effort }}"
        ),
        "workspace": (
            "# Workspace\n"
            "- path: {{ workspace.path.as_posix() }}\n"
            "- branch: {{ workspace.branch }}\n"
            "- ports: {{ workspace.port_block.base }}-{{ workspace.port_block.last }}"
        ),
        "deliverables": (
            "# Deliverables{% for item in sprint.deliverables %}\n- {{ item }}{% endfor %}"
        ),
        "tasks": (
            "# Tasks{% for task in sprint.tasks %}\n"
            "- [{{ task.status.value }}] {{ task.id }}: {{ task.title }} "
            "({{ task.effort }}, {{ task.priority.value }})"
            "{% if task.description %}\n  {{ task.description }}{% endif %}"
            "{% for item in task.acceptance_criteria %}\n  - acceptance: {{ item }}{% endfor %}"
            "{% endfor %}"
        ),
        "integration": (
            "# Integration Points{% for label, values in points %}\n"
            "- {{ label }}: {{ values | join(', ') }}{% endfor %}"
        ),
        "document": (
            "# Document: {{ document.name }}\n"
            "{% if document.missing %}(missing){% else %}{{ document.content.rstrip() }}"
            "{% if document.truncated %}\n(truncated){% endif %}{% endif %}"
        ),
    }.items()
}


@dataclass(frozen=True, slots=True)
class ContextDocument:
    """Supporting document referenced by a sprint's tasks."""

    name: str
    content: str
    truncated: bool = False
    missing: bool = False


@dataclass(frozen=True, slots=True)
class WorkerContext:
    sprint: Sprint
    phase: Phase
    role: str
    max_turns: int
    workspace: WorkspaceHandle | None = None
    documents: tuple[ContextDocument, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "documents", tuple(self.documents))
        if not self.role.strip():
            raise ValueError("WorkerContext.role must not be empty")
        if self.max_turns < 1:
            raise ValueError("WorkerContext.max_turns must be >= 1")

    def render(self) -> str:
        """Markdown prompt body piped to the worker."""

        sprint = self.sprint
        sections = [
            _SECTIONS["header"].render(sprint=sprint),
            _SECTIONS["phase"].render(
                sprint=sprint, phase=self.phase, role=self.role, max_turns=self.max_turns
            ),
        ]
        if self.workspace is not None:
            sections.append(_SECTIONS["workspace"].render(workspace=self.workspace))
        if sprint.deliverables:
            sections.append(_SECTIONS["deliverables"].render(sprint=sprint))
        if sprint.tasks:
            sections.append(_SECTIONS["tasks"].render(sprint=sprint))
        points = sprint.integration_points
        if not points.is_empty:
            labelled = [
                (label, getattr(points, label))
                for label in ("modifies", "creates", "tests_existing", "patterns")
                if getattr(points, label)
            ]
            sections.append(_SECTIONS["integration"].render(points=labelled))
        sections.extend(
            _SECTIONS["document"].render(document=document) for document in self.documents
        )
        return "\n\n".join(sections) + "\n"


@dataclass(frozen=True, slots=True)
class WorkerResult:
    success: bool
    artifacts: tuple[ArtifactDocument, ...] = ()
    raw_output: str = ""
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "artifacts", tuple(self.artifacts))


@runtime_checkable
class WorkerInvoker(Protocol):
    async def invoke(self, role: str, context: WorkerContext) -> WorkerResult: ...


__all__ = ["ContextDocument", "WorkerContext", "WorkerInvoker", "WorkerResult"]
