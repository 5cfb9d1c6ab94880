"""
sprintloom — unit tests for observability logging

File: tests/unit/observability/test_structured_logging.py

Purpose
- Validate JSON-lines logging with redaction, correlation metadata and queue-backed delivery.

What this test file should cover
- JSON line validity and redaction guarantees.
- ``structlog`` events landing in the same sink as stdlib records.
- Correlation field propagation.
- Multi-threaded logging stability and queue drain on shutdown.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from dataclasses import replace
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from sprintloom.observability.logging import (
    LoggingConfig,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"sprintloom.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_stdlib_records_are_redacted_and_carry_correlation(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(log_dir=tmp_path, logger_name=logger_name))
    logger = logging.getLogger(logger_name)

    with correlation_scope(sprint_id=3, phase="WRITE_CODE"):
        logger.info(
            "payload token=tok-FAKE and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    (first,) = _read_json_lines(handle.log_path)
    assert first["sprint_id"] == "3"
    assert first["phase"] == "WRITE_CODE"
    assert first["level"] == "INFO"
    assert first["fields"] == {"nested": {"password": "***REDACTED***", "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_structlog_events_share_the_sink(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(LoggingConfig(log_dir=tmp_path, logger_name=logger_name))
    log = structlog.get_logger(f"{logger_name}.orchestrator")

    log.info("sprint_blocked", sprint_id=4, retry_count=3, api_token="abc123")
    log.debug("below_threshold")

    shutdown_logging(handle)

    (event,) = _read_json_lines(handle.log_path)
    assert event["event"] == "sprint_blocked"
    assert event["logger"] == f"{logger_name}.orchestrator"
    fields = event["fields"]
    assert isinstance(fields, dict)
    assert fields["sprint_id"] == 4
    assert fields["retry_count"] == 3
    assert fields["api_token"] == "***REDACTED***"


def test_setup_logging_uses_observability_section(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_logging(
        {"log_level": "DEBUG", "log_dir": str(tmp_path / "logs"), "redact_secrets": False},
        logger_name=logger_name,
    )

    logging.getLogger(logger_name).debug("hello", extra={"token": "t-123"})
    shutdown_logging()

    assert handle.log_path == tmp_path / "logs" / "sprintloom.jsonl"
    content = handle.log_path.read_text(encoding="utf-8")
    # Redaction was switched off explicitly.
    assert "t-123" in content
    assert get_active_logging_handle() is None


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(log_dir=tmp_path, logger_name=logger_name, queue_size=4096)
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        for i in range(per_thread):
            logger.info(
                f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
            )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert "event" in parsed
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(log_dir=tmp_path, logger_name=logger_name, queue_size=10_000)
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected
    assert handle.is_shutdown


def test_correlation_scope_nests_and_restores() -> None:
    with correlation_scope(sprint_id=1):
        with correlation_scope(phase="CODE_REVIEW"):
            assert get_correlation_context() == {"sprint_id": "1", "phase": "CODE_REVIEW"}
        with correlation_scope(sprint_id=None):
            assert get_correlation_context() == {}
        assert get_correlation_context() == {"sprint_id": "1"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError, match="must not be empty"), correlation_scope(**{" ": "x"}):
        pass


def test_default_redactor_masks_bearer_tokens() -> None:
    redacted = default_log_redactor({"note": "sent Bearer abc.def upstream", "ok": 1})

    assert redacted == {"note": "sent Bearer ***REDACTED*** upstream", "ok": 1}


@pytest.mark.parametrize(
    ("config", "message"),
    [
        (LoggingConfig(queue_size=0), "queue_size"),
        (LoggingConfig(log_filename="nested/file.jsonl"), "path separators"),
        (LoggingConfig(level="CHATTY"), "unsupported logging level"),
    ],
)
def test_invalid_logging_config_is_rejected(
    tmp_path: Path, config: LoggingConfig, message: str
) -> None:
    with pytest.raises(ValueError, match=message):
        setup_structured_logging(replace(config, log_dir=tmp_path, logger_name=_logger_name()))
