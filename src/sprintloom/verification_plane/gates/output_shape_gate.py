"""
sprintloom — output-shape gate

File: src/sprintloom/verification_plane/gates/output_shape_gate.py

Purpose
- Catch the ways worker-written structured documents drift from their
  canonical on-disk shape, and repair the mechanical ones.

Detections
- ``code_fence``: markdown fences around the document (high, fixable).
- ``leading_prose``: narrative text before the data (high, fixable).
- ``status_case``: CamelCase phase values such as ``WriteCode`` (medium,
  fixable, normalized to ``WRITE_CODE``).
- ``legacy_key``: ``sprint_id:`` keys (high, fixable, renamed to ``id:``).
- ``premature_completion``: the artifact's own sprint reported ``DONE`` before
  the pipeline got there (low).
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Final

import yaml

from sprintloom.domain.models import Phase, normalize_phase_name
from sprintloom.verification_plane.artifacts import Artifact, ArtifactDocument
from sprintloom.verification_plane.gates.extraction import (
    extract_structured,
    has_code_fence,
    leading_prose,
    strip_leading_prose,
)
from sprintloom.verification_plane.pipeline import GateResult, Issue, Severity

_STATUS_LINE_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<prefix>\s*(?:-\s+)?(?:status|blocked_phase)\s*:\s*)"
    r"(?P<quote>[\"']?)(?P<value>[A-Za-z][A-Za-z0-9]*)(?P=quote)(?P<suffix>\s*(?:#.*)?)$",
    re.MULTILINE,
)
_LEGACY_KEY_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<prefix>\s*(?:-\s+)?)sprint_id(?P<suffix>\s*:)", re.MULTILINE
)
_DONE_IN_OUTPUT_RE: Final[re.Pattern[str]] = re.compile(
    r"^\s*(?:-\s+)?status\s*:\s*[\"']?DONE[\"']?\s*$", re.MULTILINE
)
_COMPLETION_PHASES: Final[frozenset[Phase]] = frozenset({Phase.COMPLETE, Phase.DONE})


class OutputShapeGate:
    name = "output_shape"

    def check(self, artifact: Artifact) -> GateResult:
        issues: list[Issue] = []
        for document in artifact.structured_documents():
            issues.extend(self._check_document(artifact, document))
        if self._premature(artifact) and _DONE_IN_OUTPUT_RE.search(artifact.raw_output):
            issues.append(
                Issue(
                    severity=Severity.LOW,
                    category="premature_completion",
                    message=(
                        f"worker output reports DONE during {artifact.phase}; "
                        "completion is decided by the orchestrator"
                    ),
                )
            )
        return GateResult.from_issues(self.name, issues)

    def fix(self, artifact: Artifact, issue: Issue) -> Artifact:
        if issue.document is None:
            return artifact
        document = artifact.document(issue.document)
        if document is None:
            return artifact

        content = document.content
        if issue.category == "code_fence":
            content = extract_structured(content) or content
        elif issue.category == "leading_prose":
            content = strip_leading_prose(content)
        elif issue.category == "status_case":
            content = _STATUS_LINE_RE.sub(_normalize_status_match, content)
        elif issue.category == "legacy_key":
            content = _LEGACY_KEY_RE.sub(r"\g<prefix>id\g<suffix>", content)
        else:
            return artifact
        return artifact.with_document(document.with_content(content))

    def _check_document(self, artifact: Artifact, document: ArtifactDocument) -> list[Issue]:
        issues: list[Issue] = []
        content = document.content
        if has_code_fence(content):
            issues.append(
                _issue(
                    Severity.HIGH,
                    "code_fence",
                    f"{document.name}: structured data is wrapped in markdown code fences",
                    document,
                )
            )
        else:
            prose = leading_prose(content)
            if prose:
                first = prose.splitlines()[0][:80]
                issues.append(
                    _issue(
                        Severity.HIGH,
                        "leading_prose",
                        f"{document.name}: narrative text precedes structured data ({first!r})",
                        document,
                    )
                )

        camel = sorted(
            {
                match.group("value")
                for match in _STATUS_LINE_RE.finditer(content)
                if _camel_status(match.group("value")) is not None
            }
        )
        if camel:
            issues.append(
                _issue(
                    Severity.MEDIUM,
                    "status_case",
                    f"{document.name}: status values must be SCREAMING_SNAKE_CASE: "
                    + ", ".join(camel),
                    document,
                )
            )

        if _LEGACY_KEY_RE.search(content):
            issues.append(
                _issue(
                    Severity.HIGH,
                    "legacy_key",
                    f"{document.name}: legacy 'sprint_id' key; use 'id'",
                    document,
                )
            )

        if self._premature(artifact) and _reports_done(content, artifact.sprint_id):
            issues.append(
                Issue(
                    severity=Severity.LOW,
                    category="premature_completion",
                    message=(
                        f"{document.name}: sprint {artifact.sprint_id} marked DONE "
                        f"during {artifact.phase}"
                    ),
                    document=document.name,
                )
            )
        return issues

    @staticmethod
    def _premature(artifact: Artifact) -> bool:
        return artifact.phase is not None and artifact.phase not in _COMPLETION_PHASES


def _issue(
    severity: Severity, category: str, message: str, document: ArtifactDocument
) -> Issue:
    return Issue(
        severity=severity,
        category=category,
        message=message,
        auto_fixable=True,
        document=document.name,
    )


def _camel_status(value: str) -> Phase | None:
    if value == value.upper():
        return None
    return normalize_phase_name(value)


def _normalize_status_match(match: re.Match[str]) -> str:
    phase = _camel_status(match.group("value"))
    if phase is None:
        return match.group(0)
    quote = match.group("quote")
    return f"{match.group('prefix')}{quote}{phase.value}{quote}{match.group('suffix')}"


def _reports_done(content: str, sprint_id: int | None) -> bool:
    if sprint_id is None:
        return False
    try:
        payload = yaml.safe_load(extract_structured(content) or content)
    except yaml.YAMLError:
        return False

    candidates: list[object] = []
    if isinstance(payload, Mapping):
        sprints = payload.get("sprints")
        candidates = list(sprints) if isinstance(sprints, list) else [payload]
    elif isinstance(payload, list):
        candidates = payload
    for entry in candidates:
        if not isinstance(entry, Mapping):
            continue
        if entry.get("id", entry.get("sprint_id")) != sprint_id:
            continue
        status = entry.get("status")
        if isinstance(status, str) and normalize_phase_name(status) is Phase.DONE:
            return True
    return False


__all__ = ["OutputShapeGate"]
