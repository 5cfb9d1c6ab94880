"""
sprintloom — structured logging

File: src/sprintloom/observability/logging.py

Purpose
- Send stdlib records and ``structlog`` events to one JSON-lines sink.
- Producers hand records to a background listener through a bounded queue and
  never block; overflow is counted, not raised.
- Sprint/phase correlation fields and secret redaction are applied when a
  record is rendered.

Line shape
``{"event": ..., "level": "INFO", "logger": ..., "timestamp": ...Z,
"sprint_id": ..., "phase": ..., "fields": {...}}``; keys are sorted.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
DEFAULT_LOGGER_NAME: Final[str] = "sprintloom"

_SECRET_KEY_HINTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_SECRETS: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (
        re.compile(
            r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)"
            r"\b(\s*[:=]\s*)[^\s,;]+"
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"\bsk-(?:ant-)?[A-Za-z0-9_-]{12,}\b"), REDACTED),
)

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "correlation"}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "sprintloom_correlation", default=()
)

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    log_dir: Path | str = Path(".sprintloom/logs")
    logger_name: str = DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "sprintloom.jsonl"
    log_to_stderr: bool = False
    redactor: LogRedactor | None = None

    def validated(self) -> tuple[int, str, int]:
        """``(queue_size, log_filename, numeric_level)``; raises ``ValueError``."""

        if isinstance(self.queue_size, bool) or not isinstance(self.queue_size, int):
            raise ValueError("queue_size must be an integer")
        if self.queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        filename = self.log_filename.strip()
        if not filename:
            raise ValueError("log_filename must not be empty")
        if Path(filename).name != filename:
            raise ValueError("log_filename must not include path separators")
        return self.queue_size, filename, _numeric_level(self.level)


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | int | None) -> Iterator[None]:
    """Bind correlation fields (``sprint_id``, ``phase``) for records logged in scope.

    ``None`` unbinds a field inherited from an outer scope.
    """

    state = get_correlation_context()
    for raw_key, value in fields.items():
        key = raw_key.strip()
        if not key:
            raise ValueError("correlation key must not be empty")
        if value is None:
            state.pop(key, None)
        else:
            state[key] = str(value)
    token = _correlation.set(tuple(state.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and inline credentials in strings."""

    if isinstance(value, str):
        for pattern, replacement in _INLINE_SECRETS:
            value = pattern.sub(replacement, value)
        return value
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(hint in lowered for hint in _SECRET_KEY_HINTS)


def _no_redaction(value: JSONValue) -> JSONValue:
    return value


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _record_fields(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    record: logging.LogRecord = event_dict["_record"]
    event_dict["timestamp"] = (
        datetime.fromtimestamp(record.created, tz=UTC)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
    event_dict["level"] = record.levelname
    event_dict["logger"] = record.name
    correlation = getattr(record, "correlation", None)
    if isinstance(correlation, Mapping):
        event_dict.update(correlation)
    extras = {
        key: _to_json(value)
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
    }
    if extras:
        event_dict["fields"] = extras
    return event_dict


def _redaction_processor(redactor: LogRedactor) -> Callable[..., MutableMapping[str, Any]]:
    def redact(
        _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event = redactor(_to_json(event_dict.get("event")))
        event_dict["event"] = event if isinstance(event, str) else json.dumps(event)
        if "fields" in event_dict:
            event_dict["fields"] = redactor(event_dict["fields"])
        return event_dict

    return redact


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _to_json(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return repr(value)


def _formatter(redactor: LogRedactor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[_record_fields],
        processors=[
            _redaction_processor(redactor),
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False
            ),
        ],
    )


def configure_structlog() -> None:
    """Turn ``structlog`` calls into stdlib records: ``event`` plus ``extra`` fields."""

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


# ---------------------------------------------------------------------------
# Queue plumbing
# ---------------------------------------------------------------------------


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Never blocks the caller; records that do not fit are counted and dropped."""

    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> Any:
        # The listener runs on another thread, outside this context.
        context = get_correlation_context()
        if context:
            record.correlation = context
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


@dataclass(eq=False)
class StructuredLoggingHandle:
    logger: logging.Logger
    log_path: Path
    _queue: queue.Queue[Any]
    _queue_handler: _CorrelatingQueueHandler
    _listener: logging.handlers.QueueListener
    _sinks: tuple[logging.Handler, ...]
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _closed: bool = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


# ---------------------------------------------------------------------------
# Setup / teardown
# ---------------------------------------------------------------------------


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    log_dir: Path | str | None = None,
    logger_name: str = DEFAULT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Configure logging from the ``[observability]`` config section.

    Keys used: ``log_level``, ``log_dir``, ``log_to_stderr`` and ``redact_secrets``.
    """

    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    directory = log_dir if log_dir is not None else section.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            log_dir=directory if isinstance(directory, (Path, str)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stderr=bool(section.get("log_to_stderr", False)),
            redactor=None if section.get("redact_secrets", True) else _no_redaction,
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install the queue-backed JSON-lines sink on ``config.logger_name``.

    Any previously active setup is shut down first.
    """

    global _active
    queue_size, filename, level = config.validated()
    previous = get_active_logging_handle()
    if previous is not None:
        shutdown_logging(previous)

    log_path = Path(config.log_dir) / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _formatter(config.redactor or default_log_redactor)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stderr:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(config.logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)
    configure_structlog()

    handle = StructuredLoggingHandle(
        logger=logger,
        log_path=log_path,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _listener=listener,
        _sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
    _register_atexit()
    return handle


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    resolved = handle or get_active_logging_handle()
    if resolved is not None:
        resolved.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None, *, timeout_seconds: float = 2.0
) -> None:
    """Drain the queue, stop the listener and close every sink."""

    global _active
    resolved = handle or get_active_logging_handle()
    if resolved is None:
        return
    resolved.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is resolved:
            _active = None


def _register_atexit() -> None:
    global _atexit_registered
    if not _atexit_registered:
        atexit.register(shutdown_logging)
        _atexit_registered = True


def _numeric_level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    parsed = logging.getLevelName(value.strip().upper())
    if isinstance(parsed, int):
        return parsed
    raise ValueError(f"unsupported logging level {value!r}")


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
