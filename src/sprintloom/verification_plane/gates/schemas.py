"""JSON Schemas for documents the orchestrator itself owns."""

from __future__ import annotations

from typing import Any, Final

from sprintloom.domain.models import Phase, Priority, TaskStatus, WorkflowType

_TEXT: Final[dict[str, Any]] = {"type": "string", "minLength": 1}
_TEXT_LIST: Final[dict[str, Any]] = {"type": "array", "items": _TEXT}
_TIMESTAMP: Final[dict[str, Any]] = {"type": ["string", "null"]}

TASK_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["id", "title"],
    "properties": {
        "id": _TEXT,
        "title": _TEXT,
        "description": {"type": ["string", "null"]},
        "type": {"type": ["string", "null"]},
        "acceptance_criteria": _TEXT_LIST,
        "status": {"enum": [status.value for status in TaskStatus]},
        "effort": _TEXT,
        "priority": {"enum": [priority.value for priority in Priority]},
        "doc_reference": {"type": ["string", "null"]},
        "docs": _TEXT_LIST,
        "feature": _TEXT,
        "business_rules": _TEXT_LIST,
        "integration_notes": {"type": ["string", "null"]},
        "test_specification": {"type": ["string", "null"]},
        "git_commit": {"type": ["string", "null"]},
    },
}

SPRINT_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["id", "goal", "status"],
    "properties": {
        "id": {"type": "integer", "minimum": 1},
        "goal": _TEXT,
        "status": {"enum": [phase.value for phase in Phase]},
        "workflow_type": {"enum": [workflow.value for workflow in WorkflowType]},
        "retry_count": {"type": "integer", "minimum": 0},
        "duration": {"type": ["string", "null"]},
        "total_effort": _TEXT,
        "max_effort": _TEXT,
        "started": _TIMESTAMP,
        "last_updated": _TIMESTAMP,
        "completed_at": _TIMESTAMP,
        "deliverables": _TEXT_LIST,
        "tasks": {"type": "array", "items": TASK_SCHEMA},
        "dependencies": {
            "type": "array",
            "uniqueItems": True,
            "items": {"type": "integer", "minimum": 1},
        },
        "integration_points": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                name: _TEXT_LIST for name in ("modifies", "creates", "tests_existing", "patterns")
            },
        },
        "must_complete_first": {"type": "boolean"},
        "blocked_phase": {
            "enum": [phase.value for phase in Phase if phase is not Phase.BLOCKED] + [None]
        },
        "failure_report": {"type": ["string", "null"]},
    },
}

PROGRESS_DOCUMENT_SCHEMA: Final[dict[str, Any]] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "sprintloom progress document",
    "type": "object",
    "additionalProperties": False,
    "required": ["project", "sprints"],
    "properties": {
        "project": {
            "type": "object",
            "additionalProperties": False,
            "required": ["name"],
            "properties": {
                "name": _TEXT,
                "version": {"type": ["string", "number"]},
                "description": _TEXT,
                "total_sprints": {"type": "integer", "minimum": 0},
                "current_sprint": {"type": ["integer", "null"]},
                "last_updated": _TIMESTAMP,
            },
        },
        "sprints": {"type": "array", "items": SPRINT_SCHEMA},
    },
}

__all__ = ["PROGRESS_DOCUMENT_SCHEMA", "SPRINT_SCHEMA", "TASK_SCHEMA"]
