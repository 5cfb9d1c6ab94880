"""
sprintloom — bounded failure reports

File: src/sprintloom/control_plane/failure_reports.py

Purpose
- Persist one JSON report per (sprint, phase) when a sprint is blocked.

Bounds
- At most ``MAX_REPORT_ISSUES`` issues and the last ``MAX_OUTPUT_TAIL_CHARS``
  characters of worker output; the rendered file never exceeds
  ``MAX_REPORT_BYTES``.
- Written via atomic replace at ``<failure_dir>/sprint-<id>/<PHASE>.json``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Final

from sprintloom.utils.fs import atomic_write
from sprintloom.verification_plane.commands import output_tail

MAX_REPORT_ISSUES: Final[int] = 50
MAX_OUTPUT_TAIL_CHARS: Final[int] = 4_000
MAX_ATTEMPTS: Final[int] = 10
MAX_MESSAGE_CHARS: Final[int] = 1_000
MAX_REPORT_BYTES: Final[int] = 256 * 1024


@dataclass(frozen=True, slots=True)
class AttemptRecord:
    """Outcome of one phase attempt that counted toward the retry budget."""

    attempt: int
    kind: str
    message: str
    issues: tuple[dict[str, Any], ...] = ()
    output_tail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt": self.attempt,
            "kind": self.kind,
            "message": _clip(self.message, MAX_MESSAGE_CHARS),
            "issue_count": len(self.issues),
        }


@dataclass(frozen=True, slots=True)
class FailureReport:
    sprint_id: int
    phase: str
    retry_count: int
    created_at: datetime
    attempts: tuple[AttemptRecord, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def prior_attempts_unrecorded(self) -> int:
        """Failures counted in ``retry_count`` by an earlier, interrupted run."""

        return max(0, self.retry_count - len(self.attempts))

    def to_dict(self) -> dict[str, Any]:
        last = self.attempts[-1] if self.attempts else None
        issues = [
            {**issue, "message": _clip(str(issue.get("message", "")), MAX_MESSAGE_CHARS)}
            for issue in (last.issues if last is not None else ())[:MAX_REPORT_ISSUES]
        ]
        return {
            "sprint_id": self.sprint_id,
            "phase": self.phase,
            "retry_count": self.retry_count,
            "prior_attempts_unrecorded": self.prior_attempts_unrecorded,
            "created_at": self.created_at.isoformat(),
            "attempts": [attempt.to_dict() for attempt in self.attempts[-MAX_ATTEMPTS:]],
            "issues": issues,
            "issues_truncated": last is not None and len(last.issues) > MAX_REPORT_ISSUES,
            "output_tail": output_tail(last.output_tail, MAX_OUTPUT_TAIL_CHARS) if last else "",
            **self.extra,
        }


def failure_report_path(failure_dir: Path, sprint_id: int, phase: str) -> Path:
    return Path(failure_dir) / f"sprint-{sprint_id}" / f"{phase}.json"


def render_failure_report(report: FailureReport) -> str:
    payload = report.to_dict()
    rendered = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    # Shrink the largest fields until the byte bound holds.
    while len(rendered.encode("utf-8")) > MAX_REPORT_BYTES:
        if payload["issues"]:
            payload["issues"] = payload["issues"][: len(payload["issues"]) // 2]
            payload["issues_truncated"] = True
        elif payload["output_tail"]:
            payload["output_tail"] = payload["output_tail"][len(payload["output_tail"]) // 2 :]
        elif payload["attempts"]:
            payload["attempts"] = payload["attempts"][1:]
        else:
            break
        rendered = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    return rendered + "\n"


def write_failure_report(failure_dir: Path, report: FailureReport) -> Path:
    path = failure_report_path(failure_dir, report.sprint_id, report.phase)
    atomic_write(path, render_failure_report(report))
    return path


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


__all__ = [
    "MAX_OUTPUT_TAIL_CHARS",
    "MAX_REPORT_BYTES",
    "MAX_REPORT_ISSUES",
    "AttemptRecord",
    "FailureReport",
    "failure_report_path",
    "render_failure_report",
    "write_failure_report",
]
