"""
sprintloom — structural/schema gate

File: src/sprintloom/verification_plane/gates/schema_gate.py

Purpose
- Every structured document in an artifact must parse as YAML or JSON.
- Documents whose name matches a registered pattern must conform to the bound
  JSON Schema (Draft 2020-12).

Severities
- Parse failure: critical (halts the pipeline). Auto-fixable when the text is
  recoverable by stripping markdown fences or leading prose.
- Schema violation: high, one issue per violation, not auto-fixable.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from fnmatch import fnmatch
from pathlib import PurePosixPath
from typing import Any, Final

import yaml
from jsonschema import Draft202012Validator

from sprintloom.verification_plane.artifacts import Artifact, ArtifactDocument
from sprintloom.verification_plane.gates.extraction import extract_structured
from sprintloom.verification_plane.gates.schemas import PROGRESS_DOCUMENT_SCHEMA
from sprintloom.verification_plane.pipeline import GateResult, Issue, Severity

DEFAULT_SCHEMA_BINDINGS: Final[tuple[tuple[str, Mapping[str, Any]], ...]] = (
    ("*SPRINTS.yml", PROGRESS_DOCUMENT_SCHEMA),
)

_MAX_VIOLATIONS_PER_DOCUMENT: Final[int] = 20


class DocumentParseError(ValueError):
    """Raised when a structured document is neither valid YAML nor JSON."""


def parse_structured(document: ArtifactDocument) -> Any:
    """Parse ``document`` as JSON (``.json``) or YAML (everything else)."""

    if PurePosixPath(document.name).suffix.lower() == ".json":
        try:
            return json.loads(document.content)
        except json.JSONDecodeError as exc:
            raise DocumentParseError(f"invalid JSON: {exc}") from exc
    try:
        return yaml.safe_load(document.content)
    except yaml.YAMLError as exc:
        raise DocumentParseError(f"invalid YAML: {_first_line(str(exc))}") from exc


def to_json_compatible(value: Any) -> Any:
    """YAML timestamps become ISO strings so JSON Schema sees on-disk types."""

    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [to_json_compatible(item) for item in value]
    return value


class SchemaGate:
    name = "schema"

    def __init__(
        self,
        bindings: Sequence[tuple[str, Mapping[str, Any]]] = DEFAULT_SCHEMA_BINDINGS,
    ) -> None:
        self._validators: tuple[tuple[str, Draft202012Validator], ...] = tuple(
            (pattern, _compile(schema)) for pattern, schema in bindings
        )

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(pattern for pattern, _ in self._validators)

    def check(self, artifact: Artifact) -> GateResult:
        issues: list[Issue] = []
        for document in artifact.structured_documents():
            try:
                payload = parse_structured(document)
            except DocumentParseError as exc:
                issues.append(
                    Issue(
                        severity=Severity.CRITICAL,
                        category="parse_error",
                        message=f"{document.name}: {exc}",
                        auto_fixable=_recoverable(document),
                        document=document.name,
                    )
                )
                continue

            validator = self._validator_for(document.name)
            if validator is None:
                continue
            violations = sorted(
                validator.iter_errors(to_json_compatible(payload)),
                key=lambda error: [str(part) for part in error.absolute_path],
            )
            for error in violations[:_MAX_VIOLATIONS_PER_DOCUMENT]:
                location = "/".join(str(part) for part in error.absolute_path) or "<root>"
                issues.append(
                    Issue(
                        severity=Severity.HIGH,
                        category="schema_violation",
                        message=f"{document.name}:{location}: {error.message}",
                        document=document.name,
                    )
                )
        return GateResult.from_issues(self.name, issues)

    def fix(self, artifact: Artifact, issue: Issue) -> Artifact:
        if issue.category != "parse_error" or issue.document is None:
            return artifact
        document = artifact.document(issue.document)
        if document is None:
            return artifact
        extracted = extract_structured(document.content)
        if extracted is None:
            return artifact
        return artifact.with_document(document.with_content(extracted))

    def _validator_for(self, name: str) -> Draft202012Validator | None:
        basename = PurePosixPath(name).name
        for pattern, validator in self._validators:
            if fnmatch(name, pattern) or fnmatch(basename, pattern):
                return validator
        return None


def _compile(schema: Mapping[str, Any]) -> Draft202012Validator:
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def _recoverable(document: ArtifactDocument) -> bool:
    extracted = extract_structured(document.content)
    if extracted is None:
        return False
    try:
        parse_structured(document.with_content(extracted))
    except DocumentParseError:
        return False
    return True


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else text


__all__ = [
    "DEFAULT_SCHEMA_BINDINGS",
    "DocumentParseError",
    "SchemaGate",
    "parse_structured",
    "to_json_compatible",
]
