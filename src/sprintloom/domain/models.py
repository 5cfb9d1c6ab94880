"""Dataclass domain models with strict validation and canonical serialization.

The progress document is the single source of truth for sprint state. Every
model validates itself in ``__post_init__`` and exposes ``to_dict``/``from_dict``
producing the on-disk (SCREAMING_SNAKE_CASE) representation.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import NoReturn, TypeVar

from sprintloom.domain.errors import ConfigurationError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=StrEnum)

_MAX_TEXT = 16384
_MAX_COLLECTION = 512

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_WORD = re.compile(r"[^A-Za-z0-9]+")
_E2E = re.compile(r"e2e", re.IGNORECASE)


class Phase(StrEnum):
    PENDING = "PENDING"
    WRITE_UNIT_TESTS = "WRITE_UNIT_TESTS"
    WRITE_CODE = "WRITE_CODE"
    CODE_REVIEW = "CODE_REVIEW"
    RUN_UNIT_TESTS = "RUN_UNIT_TESTS"
    WRITE_E2E_TESTS = "WRITE_E2E_TESTS"
    RUN_E2E_TESTS = "RUN_E2E_TESTS"
    COMPLETE = "COMPLETE"
    DONE = "DONE"
    BLOCKED = "BLOCKED"

    @property
    def label(self) -> str:
        """CamelCase display name (``WRITE_CODE`` -> ``WriteCode``)."""
        return "".join(part.capitalize() for part in self.value.split("_")).replace("E2e", "E2E")


# Linear phase graph; BLOCKED is out-of-band.
PHASE_ORDER: tuple[Phase, ...] = (
    Phase.PENDING,
    Phase.WRITE_UNIT_TESTS,
    Phase.WRITE_CODE,
    Phase.CODE_REVIEW,
    Phase.RUN_UNIT_TESTS,
    Phase.WRITE_E2E_TESTS,
    Phase.RUN_E2E_TESTS,
    Phase.COMPLETE,
    Phase.DONE,
)

# Fix phases from older progress files fold back into the phase they repaired.
LEGACY_PHASE_ALIASES: Mapping[str, Phase] = {
    "REVIEW_FIX": Phase.CODE_REVIEW,
    "UNIT_FIX": Phase.RUN_UNIT_TESTS,
    "E2E_FIX": Phase.RUN_E2E_TESTS,
}


class WorkflowType(StrEnum):
    IMPLEMENTATION = "IMPLEMENTATION"
    DOCUMENTATION = "DOCUMENTATION"
    TEST = "TEST"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    REFACTOR = "REFACTOR"


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMMITTED = "COMMITTED"
    REVIEWED = "REVIEWED"
    TESTED = "TESTED"
    DONE = "DONE"


class Priority(StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


def phase_index(phase: Phase) -> int:
    """Position of ``phase`` in the linear graph; BLOCKED has no position."""
    if phase is Phase.BLOCKED:
        raise ValueError("BLOCKED is not part of the linear phase graph")
    return PHASE_ORDER.index(phase)


def normalize_phase_name(value: str) -> Phase | None:
    """Map ``WriteCode``/``write-code``/``WRITE_CODE`` and legacy fix names to a Phase."""
    text = value.strip()
    if not text:
        return None
    snake = _CAMEL_BOUNDARY.sub(r"\1_\2", _E2E.sub("E2e", text))
    candidate = _NON_WORD.sub("_", snake).strip("_").upper()
    if candidate in LEGACY_PHASE_ALIASES:
        return LEGACY_PHASE_ALIASES[candidate]
    try:
        return Phase(candidate)
    except ValueError:
        return None


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _fail(path: str, message: str) -> NoReturn:
    raise ConfigurationError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_optional_str(value: object, path: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, path)


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        text = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _as_optional_datetime(value: object, path: str) -> datetime | None:
    if value is None:
        return None
    return _as_datetime(value, path)


def _datetime_to_iso8601z(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(item.value for item in enum_type)
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        if len(value) > _MAX_COLLECTION:
            _fail(path, f"too many items (>{_MAX_COLLECTION})")
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_str_tuple(value: object, path: str) -> tuple[str, ...]:
    return tuple(
        _as_str(item, f"{path}[{index}]") for index, item in enumerate(_as_sequence(value, path))
    )


def _as_int_tuple(value: object, path: str, *, unique: bool = True) -> tuple[int, ...]:
    parsed = tuple(
        _as_int(item, f"{path}[{index}]", minimum=1)
        for index, item in enumerate(_as_sequence(value, path))
    )
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _put_optional(out: dict[str, JSONValue], key: str, value: JSONValue) -> None:
    if value is None or value == [] or value == {}:
        return
    out[key] = value


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

_TASK_FIELDS_REQUIRED = {"id", "title"}
_TASK_FIELDS_OPTIONAL = {
    "description",
    "type",
    "acceptance_criteria",
    "status",
    "effort",
    "priority",
    "doc_reference",
    "docs",
    "feature",
    "business_rules",
    "integration_notes",
    "test_specification",
    "git_commit",
}


@dataclass(frozen=True, slots=True)
class Task:
    """One unit of work inside a sprint; has no lifecycle of its own."""

    id: str
    title: str
    description: str | None = None
    type: str | None = None
    acceptance_criteria: tuple[str, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    effort: str = "4h"
    priority: Priority = Priority.MEDIUM
    doc_reference: str | None = None
    docs: tuple[str, ...] = ()
    feature: str = "core"
    business_rules: tuple[str, ...] = ()
    integration_notes: str | None = None
    test_specification: str | None = None
    git_commit: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_str(self.id, "Task.id", max_len=128))
        object.__setattr__(self, "title", _as_str(self.title, "Task.title", max_len=512))
        object.__setattr__(self, "status", _as_enum(TaskStatus, self.status, "Task.status"))
        object.__setattr__(self, "priority", _as_enum(Priority, self.priority, "Task.priority"))
        object.__setattr__(
            self,
            "acceptance_criteria",
            _as_str_tuple(self.acceptance_criteria, "Task.acceptance_criteria"),
        )
        object.__setattr__(self, "docs", _as_str_tuple(self.docs, "Task.docs"))
        object.__setattr__(
            self, "business_rules", _as_str_tuple(self.business_rules, "Task.business_rules")
        )

    def referenced_documents(self) -> tuple[str, ...]:
        refs: list[str] = []
        for ref in (self.doc_reference, *self.docs):
            if ref and ref not in refs:
                refs.append(ref)
        return tuple(refs)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {"id": self.id, "title": self.title}
        _put_optional(out, "description", self.description)
        _put_optional(out, "type", self.type)
        _put_optional(out, "acceptance_criteria", list(self.acceptance_criteria))
        out["status"] = self.status.value
        out["effort"] = self.effort
        out["priority"] = self.priority.value
        _put_optional(out, "doc_reference", self.doc_reference)
        _put_optional(out, "docs", list(self.docs))
        out["feature"] = self.feature
        _put_optional(out, "business_rules", list(self.business_rules))
        _put_optional(out, "integration_notes", self.integration_notes)
        _put_optional(out, "test_specification", self.test_specification)
        _put_optional(out, "git_commit", self.git_commit)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, path: str = "Task") -> Task:
        parsed = _expect_object(
            data, path, required=_TASK_FIELDS_REQUIRED, optional=_TASK_FIELDS_OPTIONAL
        )
        return cls(
            id=_as_str(parsed["id"], f"{path}.id"),
            title=_as_str(parsed["title"], f"{path}.title"),
            description=_as_optional_str(parsed.get("description"), f"{path}.description"),
            type=_as_optional_str(parsed.get("type"), f"{path}.type"),
            acceptance_criteria=_as_str_tuple(
                parsed.get("acceptance_criteria", ()), f"{path}.acceptance_criteria"
            ),
            status=_as_enum(
                TaskStatus, parsed.get("status", TaskStatus.PENDING.value), f"{path}.status"
            ),
            effort=_as_str(parsed.get("effort", "4h"), f"{path}.effort"),
            priority=_as_enum(
                Priority, parsed.get("priority", Priority.MEDIUM.value), f"{path}.priority"
            ),
            doc_reference=_as_optional_str(parsed.get("doc_reference"), f"{path}.doc_reference"),
            docs=_as_str_tuple(parsed.get("docs", ()), f"{path}.docs"),
            feature=_as_str(parsed.get("feature", "core"), f"{path}.feature"),
            business_rules=_as_str_tuple(
                parsed.get("business_rules", ()), f"{path}.business_rules"
            ),
            integration_notes=_as_optional_str(
                parsed.get("integration_notes"), f"{path}.integration_notes"
            ),
            test_specification=_as_optional_str(
                parsed.get("test_specification"), f"{path}.test_specification"
            ),
            git_commit=_as_optional_str(parsed.get("git_commit"), f"{path}.git_commit"),
        )


@dataclass(frozen=True, slots=True)
class IntegrationPoints:
    """Files and patterns a sprint is expected to touch."""

    modifies: tuple[str, ...] = ()
    creates: tuple[str, ...] = ()
    tests_existing: tuple[str, ...] = ()
    patterns: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.modifies or self.creates or self.tests_existing or self.patterns)

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {}
        for name in ("modifies", "creates", "tests_existing", "patterns"):
            _put_optional(out, name, list(getattr(self, name)))
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, path: str) -> IntegrationPoints:
        names = {"modifies", "creates", "tests_existing", "patterns"}
        parsed = _expect_object(data, path, required=set(), optional=names)
        values = {name: _as_str_tuple(parsed.get(name, ()), f"{path}.{name}") for name in names}
        return cls(**values)


_SPRINT_FIELDS_REQUIRED = {"id", "goal", "status"}
_SPRINT_FIELDS_OPTIONAL = {
    "workflow_type",
    "retry_count",
    "duration",
    "total_effort",
    "max_effort",
    "started",
    "last_updated",
    "completed_at",
    "deliverables",
    "tasks",
    "dependencies",
    "integration_points",
    "must_complete_first",
    "blocked_phase",
    "failure_report",
}


@dataclass(frozen=True, slots=True)
class Sprint:
    """One sprint record, owned by the orchestrator.

    Instances are immutable; the transition helpers (``advanced``, ``failed``,
    ``blocked``, ``rolled_back``) return new records so a step can be committed
    to the store before it becomes visible in memory.
    """

    id: int
    goal: str
    status: Phase = Phase.PENDING
    workflow_type: WorkflowType = WorkflowType.IMPLEMENTATION
    retry_count: int = 0
    duration: str | None = None
    total_effort: str = "0h"
    max_effort: str = "0h"
    started: datetime | None = None
    last_updated: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    deliverables: tuple[str, ...] = ()
    tasks: tuple[Task, ...] = ()
    dependencies: tuple[int, ...] = ()
    integration_points: IntegrationPoints = field(default_factory=IntegrationPoints)
    must_complete_first: bool = False
    blocked_phase: Phase | None = None
    failure_report: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _as_int(self.id, "Sprint.id", minimum=1))
        object.__setattr__(self, "goal", _as_str(self.goal, "Sprint.goal"))
        object.__setattr__(self, "status", _as_enum(Phase, self.status, "Sprint.status"))
        object.__setattr__(
            self,
            "workflow_type",
            _as_enum(WorkflowType, self.workflow_type, "Sprint.workflow_type"),
        )
        object.__setattr__(
            self, "retry_count", _as_int(self.retry_count, "Sprint.retry_count", minimum=0)
        )
        object.__setattr__(self, "tasks", tuple(self.tasks))
        for index, task in enumerate(self.tasks):
            if not isinstance(task, Task):
                _fail(f"Sprint.tasks[{index}]", "must be Task")
        task_ids = [task.id for task in self.tasks]
        if len(set(task_ids)) != len(task_ids):
            _fail("Sprint.tasks", "contains duplicate task ids")
        object.__setattr__(
            self, "dependencies", _as_int_tuple(self.dependencies, "Sprint.dependencies")
        )
        if self.id in self.dependencies:
            _fail("Sprint.dependencies", "sprint cannot depend on itself")
        object.__setattr__(
            self, "deliverables", _as_str_tuple(self.deliverables, "Sprint.deliverables")
        )
        object.__setattr__(
            self, "last_updated", _as_datetime(self.last_updated, "Sprint.last_updated")
        )
        object.__setattr__(self, "started", _as_optional_datetime(self.started, "Sprint.started"))
        object.__setattr__(
            self, "completed_at", _as_optional_datetime(self.completed_at, "Sprint.completed_at")
        )
        if self.blocked_phase is not None:
            blocked_phase = _as_enum(Phase, self.blocked_phase, "Sprint.blocked_phase")
            if blocked_phase is Phase.BLOCKED:
                _fail("Sprint.blocked_phase", "must name the phase that failed")
            object.__setattr__(self, "blocked_phase", blocked_phase)

    @property
    def is_done(self) -> bool:
        return self.status is Phase.DONE

    @property
    def is_blocked(self) -> bool:
        return self.status is Phase.BLOCKED

    @property
    def is_runnable(self) -> bool:
        return self.status not in (Phase.DONE, Phase.BLOCKED)

    # -- transitions -------------------------------------------------------

    def advanced(self, next_phase: Phase, *, now: datetime) -> Sprint:
        if next_phase is Phase.BLOCKED:
            raise ValueError("use blocked() to block a sprint")
        if self.status is Phase.BLOCKED or phase_index(next_phase) <= phase_index(self.status):
            raise ValueError(f"cannot advance sprint {self.id} from {self.status} to {next_phase}")
        return dataclasses.replace(
            self,
            status=next_phase,
            retry_count=0,
            last_updated=now,
            started=self.started if self.started is not None else now,
            completed_at=now if next_phase is Phase.DONE else self.completed_at,
            blocked_phase=None,
            failure_report=None,
        )

    def failed(self, *, now: datetime) -> Sprint:
        return dataclasses.replace(self, retry_count=self.retry_count + 1, last_updated=now)

    def blocked(self, *, failure_report: str | None, now: datetime) -> Sprint:
        return dataclasses.replace(
            self,
            status=Phase.BLOCKED,
            last_updated=now,
            blocked_phase=self.status if self.status is not Phase.BLOCKED else self.blocked_phase,
            failure_report=failure_report,
        )

    def rolled_back(self, target: Phase, *, now: datetime) -> Sprint:
        if target is Phase.BLOCKED:
            raise ValueError("cannot roll back to BLOCKED")
        reset_to_start = target is Phase.PENDING
        tasks = (
            tuple(dataclasses.replace(task, status=TaskStatus.PENDING) for task in self.tasks)
            if reset_to_start
            else self.tasks
        )
        return dataclasses.replace(
            self,
            status=target,
            retry_count=0,
            last_updated=now,
            started=None if reset_to_start else self.started,
            completed_at=self.completed_at if target is Phase.DONE else None,
            tasks=tasks,
            blocked_phase=None,
            failure_report=None,
        )

    # -- serialization -----------------------------------------------------

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "id": self.id,
            "goal": self.goal,
            "status": self.status.value,
            "workflow_type": self.workflow_type.value,
            "retry_count": self.retry_count,
        }
        _put_optional(out, "duration", self.duration)
        out["total_effort"] = self.total_effort
        out["max_effort"] = self.max_effort
        _put_optional(
            out, "started", _datetime_to_iso8601z(self.started) if self.started else None
        )
        out["last_updated"] = _datetime_to_iso8601z(self.last_updated)
        _put_optional(
            out,
            "completed_at",
            _datetime_to_iso8601z(self.completed_at) if self.completed_at else None,
        )
        _put_optional(out, "deliverables", list(self.deliverables))
        out["tasks"] = [task.to_dict() for task in self.tasks]
        out["dependencies"] = list(self.dependencies)
        _put_optional(out, "integration_points", self.integration_points.to_dict())
        if self.must_complete_first:
            out["must_complete_first"] = True
        _put_optional(
            out, "blocked_phase", self.blocked_phase.value if self.blocked_phase else None
        )
        _put_optional(out, "failure_report", self.failure_report)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, path: str = "Sprint") -> Sprint:
        parsed = _expect_object(
            data, path, required=_SPRINT_FIELDS_REQUIRED, optional=_SPRINT_FIELDS_OPTIONAL
        )
        tasks = tuple(
            Task.from_dict(
                _expect_mapping(item, f"{path}.tasks[{index}]"), path=f"{path}.tasks[{index}]"
            )
            for index, item in enumerate(_as_sequence(parsed.get("tasks", ()), f"{path}.tasks"))
        )
        raw_points = parsed.get("integration_points")
        points = (
            IntegrationPoints()
            if raw_points is None
            else IntegrationPoints.from_dict(
                _expect_mapping(raw_points, f"{path}.integration_points"),
                path=f"{path}.integration_points",
            )
        )
        blocked_raw = parsed.get("blocked_phase")
        return cls(
            id=_as_int(parsed["id"], f"{path}.id", minimum=1),
            goal=_as_str(parsed["goal"], f"{path}.goal"),
            status=_as_enum(Phase, parsed["status"], f"{path}.status"),
            workflow_type=_as_enum(
                WorkflowType,
                parsed.get("workflow_type", WorkflowType.IMPLEMENTATION.value),
                f"{path}.workflow_type",
            ),
            retry_count=_as_int(parsed.get("retry_count", 0), f"{path}.retry_count", minimum=0),
            duration=_as_optional_str(parsed.get("duration"), f"{path}.duration"),
            total_effort=_as_str(parsed.get("total_effort", "0h"), f"{path}.total_effort"),
            max_effort=_as_str(parsed.get("max_effort", "0h"), f"{path}.max_effort"),
            started=_as_optional_datetime(parsed.get("started"), f"{path}.started"),
            last_updated=_as_datetime(
                parsed.get("last_updated", utc_now()), f"{path}.last_updated"
            ),
            completed_at=_as_optional_datetime(parsed.get("completed_at"), f"{path}.completed_at"),
            deliverables=_as_str_tuple(parsed.get("deliverables", ()), f"{path}.deliverables"),
            tasks=tasks,
            dependencies=_as_int_tuple(parsed.get("dependencies", ()), f"{path}.dependencies"),
            integration_points=points,
            must_complete_first=_as_bool(
                parsed.get("must_complete_first", False), f"{path}.must_complete_first"
            ),
            blocked_phase=(
                None
                if blocked_raw is None
                else _as_enum(Phase, blocked_raw, f"{path}.blocked_phase")
            ),
            failure_report=_as_optional_str(parsed.get("failure_report"), f"{path}.failure_report"),
        )


def _expect_mapping(value: object, path: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    return value


@dataclass(frozen=True, slots=True)
class ProjectInfo:
    name: str
    version: str = "0.1.0"
    description: str = "sprintloom project"
    total_sprints: int = 0
    current_sprint: int | None = None
    last_updated: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _as_str(self.name, "project.name"))
        object.__setattr__(
            self, "total_sprints", _as_int(self.total_sprints, "project.total_sprints", minimum=0)
        )
        object.__setattr__(
            self, "last_updated", _as_datetime(self.last_updated, "project.last_updated")
        )

    def to_dict(self) -> dict[str, JSONValue]:
        out: dict[str, JSONValue] = {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "total_sprints": self.total_sprints,
        }
        _put_optional(out, "current_sprint", self.current_sprint)
        out["last_updated"] = _datetime_to_iso8601z(self.last_updated)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProjectInfo:
        parsed = _expect_object(
            data,
            "project",
            required={"name"},
            optional={"version", "description", "total_sprints", "current_sprint", "last_updated"},
        )
        current = parsed.get("current_sprint")
        return cls(
            name=_as_str(parsed["name"], "project.name"),
            version=_as_str(str(parsed.get("version", "0.1.0")), "project.version"),
            description=_as_str(
                parsed.get("description", "sprintloom project"), "project.description"
            ),
            total_sprints=_as_int(parsed.get("total_sprints", 0), "project.total_sprints"),
            current_sprint=None if current is None else _as_int(current, "project.current_sprint"),
            last_updated=_as_datetime(
                parsed.get("last_updated", utc_now()), "project.last_updated"
            ),
        )


@dataclass(frozen=True, slots=True)
class ProgressDocument:
    """Project metadata plus the ordered sprint collection."""

    project: ProjectInfo
    sprints: tuple[Sprint, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "sprints", tuple(self.sprints))
        ids = [sprint.id for sprint in self.sprints]
        if len(set(ids)) != len(ids):
            _fail("sprints", "contains duplicate sprint ids")

    def sprint(self, sprint_id: int) -> Sprint:
        for sprint in self.sprints:
            if sprint.id == sprint_id:
                return sprint
        raise KeyError(sprint_id)

    def with_sprint(self, updated: Sprint, *, now: datetime) -> ProgressDocument:
        """Return a copy with ``updated`` replacing the sprint of the same id."""
        replaced = False
        sprints: list[Sprint] = []
        for sprint in self.sprints:
            if sprint.id == updated.id:
                sprints.append(updated)
                replaced = True
            else:
                sprints.append(sprint)
        if not replaced:
            raise KeyError(updated.id)
        project = dataclasses.replace(
            self.project,
            total_sprints=len(sprints),
            current_sprint=updated.id,
            last_updated=now,
        )
        return ProgressDocument(project=project, sprints=tuple(sprints))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "project": self.project.to_dict(),
            "sprints": [sprint.to_dict() for sprint in self.sprints],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ProgressDocument:
        parsed = _expect_object(data, "<root>", required={"project", "sprints"})
        project = ProjectInfo.from_dict(_expect_mapping(parsed["project"], "project"))
        sprints = tuple(
            Sprint.from_dict(_expect_mapping(item, f"sprints[{index}]"), path=f"sprints[{index}]")
            for index, item in enumerate(_as_sequence(parsed["sprints"], "sprints"))
        )
        return cls(project=project, sprints=sprints)


# ---------------------------------------------------------------------------
# Legacy migration
# ---------------------------------------------------------------------------


def migrate_progress_payload(
    data: Mapping[str, object], *, now: datetime
) -> tuple[dict[str, object], tuple[str, ...]]:
    """Rewrite legacy fields into the current shape, reporting every change made.

    Unknown fields are left in place so ``ProgressDocument.from_dict`` rejects
    them; only recognised legacy forms are migrated.
    """

    notes: list[str] = []
    payload = dict(data)
    raw_sprints = payload.get("sprints")
    if not isinstance(raw_sprints, list):
        return payload, ()

    migrated_sprints: list[object] = []
    for index, raw in enumerate(raw_sprints):
        if not isinstance(raw, Mapping):
            migrated_sprints.append(raw)
            continue
        migrated_sprints.append(_migrate_sprint(dict(raw), f"sprints[{index}]", now, notes))
    payload["sprints"] = migrated_sprints
    return payload, tuple(notes)


def _migrate_sprint(
    sprint: dict[str, object], path: str, now: datetime, notes: list[str]
) -> dict[str, object]:
    if "blocked_count" in sprint:
        legacy = sprint.pop("blocked_count")
        if "retry_count" not in sprint:
            sprint["retry_count"] = legacy if legacy is not None else 0
        notes.append(f"{path}.blocked_count -> retry_count")

    status = sprint.get("status")
    if isinstance(status, str) and status not in Phase.__members__:
        normalized = normalize_phase_name(status)
        if normalized is not None:
            sprint["status"] = normalized.value
            notes.append(f"{path}.status {status} -> {normalized.value}")

    dependencies = sprint.get("dependencies")
    if isinstance(dependencies, list):
        converted: list[object] = []
        for dep in dependencies:
            if isinstance(dep, str) and dep.strip().isdigit():
                converted.append(int(dep.strip()))
                notes.append(f"{path}.dependencies {dep!r} -> {int(dep.strip())}")
            else:
                converted.append(dep)
        sprint["dependencies"] = converted

    if sprint.get("last_updated") is None:
        sprint["last_updated"] = _datetime_to_iso8601z(now)
        notes.append(f"{path}.last_updated filled")
    status_value = sprint.get("status")
    if status_value not in (Phase.PENDING.value, None) and sprint.get("started") is None:
        sprint["started"] = sprint["last_updated"]
        notes.append(f"{path}.started filled")
    if status_value == Phase.DONE.value and sprint.get("completed_at") is None:
        sprint["completed_at"] = sprint["last_updated"]
        notes.append(f"{path}.completed_at filled")

    tasks = sprint.get("tasks")
    if isinstance(tasks, list):
        sprint_id = sprint.get("id")
        migrated_tasks: list[object] = []
        for task_index, task in enumerate(tasks, start=1):
            if isinstance(task, Mapping) and not task.get("id"):
                task = {**task, "id": f"task-{sprint_id}-{task_index}"}
                notes.append(f"{path}.tasks[{task_index - 1}].id assigned")
            migrated_tasks.append(task)
        sprint["tasks"] = migrated_tasks
    return sprint


__all__ = [
    "LEGACY_PHASE_ALIASES",
    "PHASE_ORDER",
    "IntegrationPoints",
    "JSONValue",
    "Phase",
    "Priority",
    "ProgressDocument",
    "ProjectInfo",
    "Sprint",
    "Task",
    "TaskStatus",
    "WorkflowType",
    "migrate_progress_payload",
    "normalize_phase_name",
    "phase_index",
    "utc_now",
]
