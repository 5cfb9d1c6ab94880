"""
sprintloom — unit tests for the quality gate pipeline

File: tests/unit/verification_plane/test_quality_pipeline.py

Purpose
- Validate gate ordering, critical halt, error conversion and the bounded auto-fix pass.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from sprintloom.verification_plane.artifacts import Artifact, ArtifactDocument
from sprintloom.verification_plane.pipeline import (
    GateResult,
    Issue,
    QualityGatePipeline,
    QualityReport,
    Severity,
)

if TYPE_CHECKING:
    from pathlib import Path


class RecordingGate:
    """Gate that returns scripted issues and records every call."""

    def __init__(self, name: str, *passes: list[Issue], calls: list[str]) -> None:
        self.name = name
        self._passes = list(passes)
        self._calls = calls

    def check(self, artifact: Artifact) -> GateResult:
        self._calls.append(self.name)
        issues = self._passes.pop(0) if self._passes else []
        return GateResult.from_issues(self.name, issues)


class UppercaseFixGate:
    """Flags lowercase documents and upper-cases them when asked to fix."""

    name = "upper"

    def __init__(self) -> None:
        self.fixed: list[str] = []

    async def check(self, artifact: Artifact) -> GateResult:
        await asyncio.sleep(0)
        issues = [
            Issue(
                severity=Severity.HIGH,
                category="lowercase",
                message=f"{document.name} is not upper case",
                auto_fixable=True,
                document=document.name,
            )
            for document in artifact.documents
            if document.content != document.content.upper()
        ]
        return GateResult.from_issues(self.name, issues)

    def fix(self, artifact: Artifact, issue: Issue) -> Artifact:
        self.fixed.append(issue.document or "")
        document = artifact.document(issue.document or "")
        assert document is not None
        return artifact.with_document(document.with_content(document.content.upper()))


class ExplodingGate:
    def __init__(self, name: str, exc: Exception) -> None:
        self.name = name
        self._exc = exc

    def check(self, artifact: Artifact) -> GateResult:
        raise self._exc


class VerdictGate:
    """Reports its own verdict, optionally alongside non-blocking issues."""

    def __init__(self, name: str, *, passed: bool, issues: tuple[Issue, ...] = ()) -> None:
        self.name = name
        self._passed = passed
        self._issues = issues

    def check(self, artifact: Artifact) -> GateResult:
        return GateResult(gate=self.name, passed=self._passed, issues=self._issues)


class OneShotFixGate:
    """Raises one fixable issue until ``fix`` has been applied."""

    name = "oneshot"

    def __init__(self, severity: Severity) -> None:
        self.severity = severity
        self.fix_calls = 0
        self.check_calls = 0

    def check(self, artifact: Artifact) -> GateResult:
        self.check_calls += 1
        if self.fix_calls:
            return GateResult.from_issues(self.name, [])
        issue = Issue(
            severity=self.severity, category="spacing", message="odd spacing", auto_fixable=True
        )
        return GateResult.from_issues(self.name, [issue])

    def fix(self, artifact: Artifact, issue: Issue) -> Artifact:
        self.fix_calls += 1
        return artifact


def _issue(severity: Severity, category: str = "shape") -> Issue:
    return Issue(severity=severity, category=category, message=f"{category} problem")


async def test_gates_run_in_order_and_accumulate_issues() -> None:
    calls: list[str] = []
    pipeline = QualityGatePipeline(
        [
            RecordingGate("first", [_issue(Severity.LOW)], calls=calls),
            RecordingGate("second", [_issue(Severity.MEDIUM)], calls=calls),
        ]
    )

    report = await pipeline.run(Artifact(sprint_id=1))

    assert calls == ["first", "second"]
    assert report.passed
    assert [issue.gate for issue in report.issues] == ["first", "second"]
    assert report.summary() == "quality gates passed with 2 warning(s)"


async def test_critical_issue_halts_remaining_gates() -> None:
    calls: list[str] = []
    pipeline = QualityGatePipeline(
        [
            RecordingGate("schema", [_issue(Severity.CRITICAL, "parse_error")], calls=calls),
            RecordingGate("shape", [], calls=calls),
        ]
    )

    report = await pipeline.run(Artifact(sprint_id=1))

    assert calls == ["schema"]
    assert report.halted_by == "schema"
    assert not report.passed
    assert "halted by schema" in report.summary()


async def test_high_issue_fails_without_halting() -> None:
    calls: list[str] = []
    pipeline = QualityGatePipeline(
        [
            RecordingGate("a", [_issue(Severity.HIGH)], calls=calls),
            RecordingGate("b", [], calls=calls),
        ]
    )

    report = await pipeline.run(Artifact())

    assert calls == ["a", "b"]
    assert not report.halted
    assert not report.passed
    assert len(report.blocking_issues) == 1


@pytest.mark.parametrize(
    ("exc", "category"),
    [(RuntimeError("boom"), "gate_error"), (TimeoutError("slow"), "timeout")],
)
async def test_gate_exception_becomes_critical_issue(exc: Exception, category: str) -> None:
    calls: list[str] = []
    pipeline = QualityGatePipeline(
        [ExplodingGate("broken", exc), RecordingGate("after", [], calls=calls)]
    )

    report = await pipeline.run(Artifact())

    assert calls == []
    assert report.halted_by == "broken"
    (issue,) = report.issues
    assert issue.severity is Severity.CRITICAL
    assert issue.category == category
    assert issue.gate == "broken"


async def test_auto_fix_applies_each_issue_once_and_reruns_once(tmp_path: Path) -> None:
    source = tmp_path / "notes.yml"
    source.write_text("status: done\n", encoding="utf-8")
    artifact = Artifact.from_paths([source], root=tmp_path)
    gate = UppercaseFixGate()
    calls: list[str] = []
    pipeline = QualityGatePipeline([gate, RecordingGate("tail", [], [], calls=calls)])

    report = await pipeline.run(artifact, fix=True)

    assert report.passed
    assert report.passes == 2
    assert gate.fixed == ["notes.yml"]
    assert [fix.category for fix in report.fixes_applied] == ["lowercase"]
    assert calls == ["tail", "tail"]
    assert source.read_text(encoding="utf-8") == "STATUS: DONE\n"
    assert report.artifact.documents[0].content == "STATUS: DONE\n"


async def test_auto_fix_respects_write_back_flag(tmp_path: Path) -> None:
    source = tmp_path / "notes.yml"
    source.write_text("draft\n", encoding="utf-8")
    pipeline = QualityGatePipeline([UppercaseFixGate()], write_back=False)

    report = await pipeline.run(Artifact.from_paths([source], root=tmp_path), fix=True)

    assert report.passed
    assert source.read_text(encoding="utf-8") == "draft\n"


async def test_without_fix_flag_there_is_a_single_pass() -> None:
    gate = UppercaseFixGate()
    artifact = Artifact(documents=(ArtifactDocument(name="a.yml", content="lower"),))

    report = await QualityGatePipeline([gate]).run(artifact)

    assert report.passes == 1
    assert gate.fixed == []
    assert not report.passed


async def test_gate_verdict_fails_report_without_blocking_issues() -> None:
    calls: list[str] = []
    pipeline = QualityGatePipeline(
        [
            VerdictGate("says_no", passed=False),
            RecordingGate("after", [], calls=calls),
        ]
    )

    report = await pipeline.run(Artifact(sprint_id=3))

    assert calls == ["after"]
    assert not report.halted
    assert [result.passed for result in report.gate_results] == [False, True]
    assert report.failed_gates == ("says_no",)
    assert not report.passed
    assert report.summary() == (
        "quality gates failed: gate(s) reported failure without issues: says_no"
    )


async def test_gate_verdict_with_only_warnings_still_fails() -> None:
    pipeline = QualityGatePipeline(
        [VerdictGate("picky", passed=False, issues=(_issue(Severity.MEDIUM),))]
    )

    report = await pipeline.run(Artifact())

    assert not report.blocking_issues
    assert not report.passed
    assert report.issues[0].gate == "picky"


async def test_blocking_issue_overrides_a_passing_verdict() -> None:
    pipeline = QualityGatePipeline(
        [VerdictGate("lenient", passed=True, issues=(_issue(Severity.HIGH),))]
    )

    report = await pipeline.run(Artifact())

    assert report.failed_gates == ("lenient",)
    assert not report.passed


async def test_single_medium_fixable_issue_is_fixed_once_in_two_passes() -> None:
    gate = OneShotFixGate(Severity.MEDIUM)

    report = await QualityGatePipeline([gate]).run(Artifact(sprint_id=1), fix=True)

    assert gate.fix_calls == 1
    assert gate.check_calls == 2
    assert report.passes == 2
    assert [fix.category for fix in report.fixes_applied] == ["spacing"]
    assert report.issues == ()
    assert report.passed


def test_duplicate_gate_names_are_rejected() -> None:
    with pytest.raises(ValueError, match="unique"):
        QualityGatePipeline([RecordingGate("x", calls=[]), RecordingGate("x", calls=[])])


def test_report_summary_truncates_issue_list() -> None:
    issues = tuple(
        Issue(severity=Severity.HIGH, category=f"c{n}", message="bad", gate="g") for n in range(7)
    )
    summary = QualityReport(issues=issues).summary()
    assert summary.startswith("quality gates failed: [high] g/c0: bad")
    assert summary.endswith("(+2 more)")
