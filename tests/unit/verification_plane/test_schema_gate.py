"""
sprintloom — unit tests for the structural/schema gate

File: tests/unit/verification_plane/test_schema_gate.py

Purpose
- Validate parse failures (critical) and JSON Schema violations (high) per document.
"""

from __future__ import annotations

from sprintloom.verification_plane.artifacts import Artifact, ArtifactDocument
from sprintloom.verification_plane.gates.schema_gate import SchemaGate
from sprintloom.verification_plane.pipeline import Severity

VALID_PROGRESS = """\
project:
  name: demo
  last_updated: 2026-03-01T12:00:00Z
sprints:
- id: 1
  goal: Build the parser
  status: WRITE_CODE
  started: 2026-03-01T12:00:00Z
  dependencies: []
"""


def _artifact(*documents: ArtifactDocument) -> Artifact:
    return Artifact(sprint_id=1, documents=documents)


def test_valid_progress_document_passes() -> None:
    result = SchemaGate().check(_artifact(ArtifactDocument("SPRINTS.yml", VALID_PROGRESS)))
    assert result.passed
    assert result.issues == ()


def test_schema_violations_are_high_and_not_fixable() -> None:
    broken = VALID_PROGRESS.replace("WRITE_CODE", "SHIPPING").replace("id: 1", "id: 0")

    result = SchemaGate().check(_artifact(ArtifactDocument("docs/SPRINTS.yml", broken)))

    assert not result.passed
    assert {issue.category for issue in result.issues} == {"schema_violation"}
    assert all(issue.severity is Severity.HIGH for issue in result.issues)
    assert all(not issue.auto_fixable for issue in result.issues)
    assert any("sprints/0/status" in issue.message for issue in result.issues)
    assert any("sprints/0/id" in issue.message for issue in result.issues)


def test_unbound_documents_only_need_to_parse() -> None:
    gate = SchemaGate()
    result = gate.check(
        _artifact(
            ArtifactDocument("notes.yml", "anything: [1, 2]\n"),
            ArtifactDocument("data.json", '{"ok": true}'),
            ArtifactDocument("README.md", "```not data", structured=False),
        )
    )
    assert result.passed


def test_parse_error_is_critical_and_fixable_when_recoverable() -> None:
    fenced = f"Updated:\n```yaml\n{VALID_PROGRESS}```\n"
    gate = SchemaGate()
    artifact = _artifact(ArtifactDocument("SPRINTS.yml", fenced))

    (issue,) = gate.check(artifact).issues

    assert issue.severity is Severity.CRITICAL
    assert issue.category == "parse_error"
    assert issue.auto_fixable

    fixed = gate.fix(artifact, issue)
    assert fixed.document("SPRINTS.yml").content == VALID_PROGRESS
    assert gate.check(fixed).passed


def test_unrecoverable_parse_error_is_not_fixable() -> None:
    result = SchemaGate().check(_artifact(ArtifactDocument("broken.json", "{not json")))
    (issue,) = result.issues
    assert issue.category == "parse_error"
    assert not issue.auto_fixable


def test_custom_bindings_select_by_basename() -> None:
    schema = {"type": "object", "required": ["name"]}
    gate = SchemaGate([("*.manifest.json", schema)])

    result = gate.check(_artifact(ArtifactDocument("out/app.manifest.json", "{}")))

    assert gate.patterns == ("*.manifest.json",)
    (issue,) = result.issues
    assert issue.category == "schema_violation"
    assert "'name' is a required property" in issue.message
