"""
sprintloom — configuration schema and validation.

File: src/sprintloom/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys so typos never silently fall back to defaults.
- Provide deterministic deep-merge and redaction helpers for the loader and CLI.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from sprintloom.constants import (
    DEFAULT_BASE_PORT,
    DEFAULT_CONCURRENCY,
    DEFAULT_INTEGRATION_BRANCH,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MAX_PORT_PROBES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PORT_STRIDE,
    DEFAULT_READINESS_POLL_INTERVAL_SECONDS,
    DEFAULT_READINESS_TIMEOUT_SECONDS,
    DEFAULT_REGRESSION_TIMEOUT_SECONDS,
    DEFAULT_SERVICE_FILES,
    DEFAULT_WORK_BRANCH_PREFIX,
    DEFAULT_WORKER_TIMEOUT_SECONDS,
    FAILURES_DIR,
    LOGS_DIR,
    MAX_PORT,
    PROGRESS_FILE,
    WORKSPACES_DIR,
)
from sprintloom.domain.errors import ConfigurationError

_PORT_OFFSET_PATTERN = re.compile(r"^\+(\d+)$")
_BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials"}
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("workspaces", "root"),
    ("paths", "progress_file"),
    ("paths", "failure_dir"),
    ("paths", "documents_root"),
    ("observability", "log_dir"),
)


class OrchestratorSection(TypedDict):
    max_iterations: int
    max_retries: int
    concurrency: int
    auto_fix: bool
    auto_merge: bool
    worker_timeout_seconds: float


class WorkspacesSection(TypedDict):
    root: str
    base_port: int
    port_stride: int
    max_port_probes: int
    integration_branch: str
    branch_prefix: str
    service_files: list[str]


class GatesSection(TypedDict):
    readiness_timeout_seconds: float
    readiness_poll_interval_seconds: float
    readiness_ports: list[int | str]
    readiness_commands: list[str]
    regression_command: list[str]
    regression_timeout_seconds: float


class WorkerSection(TypedDict):
    command: list[str]


class PathsSection(TypedDict):
    progress_file: str
    failure_dir: str
    documents_root: str


class ObservabilitySection(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stderr: bool
    redact_secrets: bool


class SprintloomConfig(TypedDict):
    orchestrator: OrchestratorSection
    workspaces: WorkspacesSection
    gates: GatesSection
    worker: WorkerSection
    paths: PathsSection
    observability: ObservabilitySection


DEFAULT_CONFIG: Final[SprintloomConfig] = {
    "orchestrator": {
        "max_iterations": DEFAULT_MAX_ITERATIONS,
        "max_retries": DEFAULT_MAX_RETRIES,
        "concurrency": DEFAULT_CONCURRENCY,
        "auto_fix": True,
        "auto_merge": True,
        "worker_timeout_seconds": DEFAULT_WORKER_TIMEOUT_SECONDS,
    },
    "workspaces": {
        "root": WORKSPACES_DIR.as_posix(),
        "base_port": DEFAULT_BASE_PORT,
        "port_stride": DEFAULT_PORT_STRIDE,
        "max_port_probes": DEFAULT_MAX_PORT_PROBES,
        "integration_branch": DEFAULT_INTEGRATION_BRANCH,
        "branch_prefix": DEFAULT_WORK_BRANCH_PREFIX,
        "service_files": list(DEFAULT_SERVICE_FILES),
    },
    "gates": {
        "readiness_timeout_seconds": DEFAULT_READINESS_TIMEOUT_SECONDS,
        "readiness_poll_interval_seconds": DEFAULT_READINESS_POLL_INTERVAL_SECONDS,
        "readiness_ports": [],
        "readiness_commands": [],
        "regression_command": [],
        "regression_timeout_seconds": DEFAULT_REGRESSION_TIMEOUT_SECONDS,
    },
    "worker": {
        "command": [],
    },
    "paths": {
        "progress_file": PROGRESS_FILE.as_posix(),
        "failure_dir": FAILURES_DIR.as_posix(),
        "documents_root": ".",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": LOGS_DIR.as_posix(),
        "log_to_stderr": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ConfigurationError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> dict[str, Any]:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(dict(DEFAULT_CONFIG))


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a complete config and return structured issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTION_VALIDATORS), "", issues)
    _require_keys(root, set(_SECTION_VALIDATORS), "", issues)

    out: dict[str, Any] = {}
    for key, validator in _SECTION_VALIDATORS.items():
        raw = root.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)

    _validate_cross_fields(out, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted copy suitable for logs and ``sprintloom config`` output."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


# ---------------------------------------------------------------------------
# Section validators
# ---------------------------------------------------------------------------


def _validate_orchestrator(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["orchestrator"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("max_iterations", "max_retries", "concurrency"):
        if key in payload:
            _put(out, key, _as_int(payload[key], _join(path, key), issues, minimum=1))
    for key in ("auto_fix", "auto_merge"):
        if key in payload:
            _put(out, key, _as_bool(payload[key], _join(path, key), issues))
    if "worker_timeout_seconds" in payload:
        _put(
            out,
            "worker_timeout_seconds",
            _as_float(
                payload["worker_timeout_seconds"],
                _join(path, "worker_timeout_seconds"),
                issues,
                exclusive_minimum=0.0,
            ),
        )
    return out


def _validate_workspaces(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["workspaces"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "root" in payload:
        _put(out, "root", _as_path_text(payload["root"], _join(path, "root"), issues))
    if "base_port" in payload:
        base_port = _as_int(payload["base_port"], _join(path, "base_port"), issues, minimum=1)
        if base_port is not None and base_port > MAX_PORT:
            issues.add(_join(path, "base_port"), f"must be <= {MAX_PORT}")
            base_port = None
        _put(out, "base_port", base_port)
    if "port_stride" in payload:
        _put(
            out,
            "port_stride",
            _as_int(payload["port_stride"], _join(path, "port_stride"), issues, minimum=1),
        )
    if "max_port_probes" in payload:
        _put(
            out,
            "max_port_probes",
            _as_int(payload["max_port_probes"], _join(path, "max_port_probes"), issues, minimum=0),
        )
    for key in ("integration_branch", "branch_prefix"):
        if key in payload:
            _put(out, key, _as_branch(payload[key], _join(path, key), issues))
    if "service_files" in payload:
        _put(
            out,
            "service_files",
            _as_str_list(payload["service_files"], _join(path, "service_files"), issues),
        )
    return out


def _validate_gates(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["gates"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in (
        "readiness_timeout_seconds",
        "readiness_poll_interval_seconds",
        "regression_timeout_seconds",
    ):
        if key in payload:
            _put(
                out,
                key,
                _as_float(payload[key], _join(path, key), issues, exclusive_minimum=0.0),
            )
    if "readiness_ports" in payload:
        _put(
            out,
            "readiness_ports",
            _as_port_list(payload["readiness_ports"], _join(path, "readiness_ports"), issues),
        )
    for key in ("readiness_commands", "regression_command"):
        if key in payload:
            _put(out, key, _as_str_list(payload[key], _join(path, key), issues))
    return out


def _validate_worker(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["worker"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "command" in payload:
        _put(out, "command", _as_str_list(payload["command"], _join(path, "command"), issues))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["paths"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(allowed):
        if key in payload:
            _put(out, key, _as_path_text(payload[key], _join(path, key), issues))
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = set(DEFAULT_CONFIG["observability"])
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        _put(
            out,
            "log_level",
            _as_enum(
                payload["log_level"],
                _join(path, "log_level"),
                issues,
                allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
            ),
        )
    if "log_dir" in payload:
        _put(out, "log_dir", _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues))
    for key in ("log_to_stderr", "redact_secrets"):
        if key in payload:
            _put(out, key, _as_bool(payload[key], _join(path, key), issues))
    return out


_SECTION_VALIDATORS: Final[
    dict[str, Callable[[Mapping[str, object], str, _IssueCollector], dict[str, Any]]]
] = {
    "orchestrator": _validate_orchestrator,
    "workspaces": _validate_workspaces,
    "gates": _validate_gates,
    "worker": _validate_worker,
    "paths": _validate_paths,
    "observability": _validate_observability,
}


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    workspaces = config.get("workspaces")
    if isinstance(workspaces, Mapping):
        base_port = workspaces.get("base_port")
        stride = workspaces.get("port_stride")
        if isinstance(base_port, int) and isinstance(stride, int) and base_port + stride > MAX_PORT:
            issues.add("workspaces.port_stride", "first port block exceeds the TCP port range")

    gates = config.get("gates")
    if isinstance(gates, Mapping):
        timeout = gates.get("readiness_timeout_seconds")
        interval = gates.get("readiness_poll_interval_seconds")
        if isinstance(timeout, float) and isinstance(interval, float) and interval > timeout:
            issues.add(
                "gates.readiness_poll_interval_seconds",
                "must not exceed readiness_timeout_seconds",
            )
        stride = workspaces.get("port_stride") if isinstance(workspaces, Mapping) else None
        for index, port in enumerate(gates.get("readiness_ports") or ()):
            if not isinstance(port, str) or not isinstance(stride, int):
                continue
            match = _PORT_OFFSET_PATTERN.fullmatch(port)
            if match is not None and int(match.group(1)) >= stride:
                issues.add(
                    f"gates.readiness_ports[{index}]",
                    f"offset must be < workspaces.port_stride ({stride})",
                )


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def _put(out: dict[str, Any], key: str, value: object) -> None:
    if value is not None:
        out[key] = value


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_branch(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if ".." in parsed or parsed.startswith("-") or not _BRANCH_PATTERN.fullmatch(parsed):
        issues.add(path, f"invalid git branch component: {parsed!r}")
        return None
    return parsed.strip("/")


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    exclusive_minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if exclusive_minimum is not None and parsed <= exclusive_minimum:
        issues.add(path, f"must be > {exclusive_minimum:g}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    parsed = parsed.upper()
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_port_list(value: object, path: str, issues: _IssueCollector) -> list[int | str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[int | str] = []
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        if isinstance(item, str) and item.strip().isdigit():
            item = int(item.strip())
        if isinstance(item, int) and not isinstance(item, bool):
            if not 1 <= item <= MAX_PORT:
                issues.add(item_path, f"port must be within 1..{MAX_PORT}")
                continue
            out.append(item)
        elif isinstance(item, str) and _PORT_OFFSET_PATTERN.fullmatch(item.strip()):
            out.append(item.strip())
        else:
            issues.add(item_path, "expected a port number or a '+N' workspace offset")
    return out


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _looks_sensitive_key(key: str) -> bool:
    tokens = {token for token in re.split(r"[^a-z0-9]+", key.lower()) if token}
    return bool(tokens & _SENSITIVE_KEY_TOKENS)


__all__ = [
    "DEFAULT_CONFIG",
    "PATH_FIELDS",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "GatesSection",
    "ObservabilitySection",
    "OrchestratorSection",
    "PathsSection",
    "SprintloomConfig",
    "WorkerSection",
    "WorkspacesSection",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "redact_config",
    "validate_config",
]
