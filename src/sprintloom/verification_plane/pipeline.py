"""
sprintloom — quality gate pipeline

File: src/sprintloom/verification_plane/pipeline.py

Purpose
- Run an ordered sequence of independent gates against one produced artifact.

Normative behavior
- Gates execute strictly in registration order.
- The first ``critical`` issue halts the run; remaining gates are skipped and a
  partial report is returned.
- Non-critical issues from every executed gate accumulate into one report.
- A gate that raises becomes a critical ``gate_error`` issue (``timeout`` when
  the exception is a ``TimeoutError``).
- ``fix=True``: every ``auto_fixable`` issue from the first pass is handed to
  the gate that raised it exactly once, then the whole sequence re-runs exactly
  once. The re-run happens only when a fixable issue existed.
- A gate's own ``passed=False`` fails the report even when its issues are all
  non-blocking. A halted run never passes.
- Otherwise a report passes when no critical or high issue is left unresolved.
"""

from __future__ import annotations

import dataclasses
import inspect
import time
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final, Protocol, TypeVar, runtime_checkable

import structlog

from sprintloom.utils.fs import atomic_write
from sprintloom.verification_plane.artifacts import Artifact

T = TypeVar("T")

_MAX_SUMMARY_ISSUES: Final[int] = 5


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def is_blocking(self) -> bool:
        return self in (Severity.CRITICAL, Severity.HIGH)


_SEVERITY_RANK: Final[dict[Severity, int]] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 1,
    Severity.MEDIUM: 2,
    Severity.LOW: 3,
}


@dataclass(frozen=True, slots=True)
class Issue:
    """One finding produced by a gate."""

    severity: Severity
    category: str
    message: str
    auto_fixable: bool = False
    gate: str = ""
    document: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "severity", Severity(self.severity))
        if not self.category.strip():
            raise ValueError("Issue.category must not be empty")
        if not self.message.strip():
            raise ValueError("Issue.message must not be empty")

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "category": self.category,
            "message": self.message,
            "auto_fixable": self.auto_fixable,
            "gate": self.gate,
            "document": self.document,
        }


@dataclass(frozen=True, slots=True)
class GateResult:
    gate: str
    passed: bool
    issues: tuple[Issue, ...] = ()
    duration_ms: int = 0

    @classmethod
    def from_issues(
        cls, gate: str, issues: Sequence[Issue], *, passed: bool = True
    ) -> GateResult:
        """Stamp ``issues`` with the gate name; a blocking issue always fails the gate."""

        stamped = tuple(
            issue if issue.gate else dataclasses.replace(issue, gate=gate) for issue in issues
        )
        return cls(
            gate=gate,
            passed=passed and not any(issue.severity.is_blocking for issue in stamped),
            issues=stamped,
        )

    @property
    def has_critical(self) -> bool:
        return any(issue.severity is Severity.CRITICAL for issue in self.issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate": self.gate,
            "passed": self.passed,
            "issues": [issue.to_dict() for issue in self.issues],
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True, slots=True)
class AppliedFix:
    gate: str
    category: str
    document: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"gate": self.gate, "category": self.category, "document": self.document}


@dataclass(frozen=True, slots=True)
class QualityReport:
    """Outcome of one pipeline run (including the optional auto-fix pass)."""

    issues: tuple[Issue, ...] = ()
    gate_results: tuple[GateResult, ...] = ()
    halted_by: str | None = None
    passes: int = 1
    fixes_applied: tuple[AppliedFix, ...] = ()
    artifact: Artifact = field(default_factory=Artifact)

    @property
    def blocking_issues(self) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.issues if issue.severity.is_blocking)

    @property
    def failed_gates(self) -> tuple[str, ...]:
        return tuple(result.gate for result in self.gate_results if not result.passed)

    @property
    def passed(self) -> bool:
        return self.halted_by is None and not self.blocking_issues and not self.failed_gates

    @property
    def halted(self) -> bool:
        return self.halted_by is not None

    def summary(self) -> str:
        if self.passed:
            warnings = len(self.issues)
            return "quality gates passed" + (f" with {warnings} warning(s)" if warnings else "")
        ordered = sorted(self.issues, key=lambda issue: issue.severity.rank)
        shown = "; ".join(
            f"[{issue.severity.value}] {issue.gate or '?'}/{issue.category}: {issue.message}"
            for issue in ordered[:_MAX_SUMMARY_ISSUES]
        )
        extra = len(ordered) - _MAX_SUMMARY_ISSUES
        if extra > 0:
            shown = f"{shown}; (+{extra} more)"
        if not shown:
            shown = f"gate(s) reported failure without issues: {', '.join(self.failed_gates)}"
        prefix = f"halted by {self.halted_by}: " if self.halted_by else ""
        return f"quality gates failed: {prefix}{shown}"

    def to_dict(self, *, max_issues: int | None = None) -> dict[str, Any]:
        issues = self.issues if max_issues is None else self.issues[:max_issues]
        return {
            "passed": self.passed,
            "halted_by": self.halted_by,
            "passes": self.passes,
            "issue_count": len(self.issues),
            "issues": [issue.to_dict() for issue in issues],
            "gates": [result.to_dict() for result in self.gate_results],
            "fixes_applied": [fix.to_dict() for fix in self.fixes_applied],
        }


@runtime_checkable
class QualityGate(Protocol):
    """Gate capability: ``check`` may be sync or async; ``fix`` is optional."""

    name: str

    def check(self, artifact: Artifact) -> GateResult | Awaitable[GateResult]: ...


@dataclass(frozen=True, slots=True)
class _PassResult:
    issues: tuple[Issue, ...]
    gate_results: tuple[GateResult, ...]
    halted_by: str | None


class QualityGatePipeline:
    """Ordered gate runner with critical-halt and one bounded auto-fix pass."""

    def __init__(
        self,
        gates: Sequence[QualityGate] = (),
        *,
        write_back: bool = True,
        logger: Any | None = None,
    ) -> None:
        names = [gate.name for gate in gates]
        if len(set(names)) != len(names):
            raise ValueError(f"gate names must be unique: {names}")
        self._gates = tuple(gates)
        self._write_back = write_back
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def gates(self) -> tuple[QualityGate, ...]:
        return self._gates

    @property
    def gate_names(self) -> tuple[str, ...]:
        return tuple(gate.name for gate in self._gates)

    async def run(self, artifact: Artifact, *, fix: bool = False) -> QualityReport:
        first = await self._run_once(artifact)
        fixable = [issue for issue in first.issues if issue.auto_fixable]
        if not fix or not fixable:
            return self._report(first, artifact=artifact, passes=1)

        current = artifact
        applied: list[AppliedFix] = []
        for issue in fixable:
            gate = self._gate_named(issue.gate)
            fixer = getattr(gate, "fix", None) if gate is not None else None
            if fixer is None:
                continue
            try:
                current = await _resolve(fixer(current, issue))
            except Exception as exc:  # noqa: BLE001
                self._logger.warning(
                    "quality_gate_fix_failed",
                    gate=issue.gate,
                    category=issue.category,
                    error=str(exc),
                )
                continue
            applied.append(
                AppliedFix(gate=issue.gate, category=issue.category, document=issue.document)
            )

        if self._write_back:
            for document in current.changed_documents(artifact):
                if document.source is not None:
                    atomic_write(document.source, document.content)
                    self._logger.info(
                        "quality_gate_document_rewritten",
                        document=document.name,
                        path=str(document.source),
                    )

        second = await self._run_once(current)
        return self._report(second, artifact=current, passes=2, fixes=tuple(applied))

    async def _run_once(self, artifact: Artifact) -> _PassResult:
        issues: list[Issue] = []
        results: list[GateResult] = []
        halted_by: str | None = None
        for gate in self._gates:
            started_ns = time.monotonic_ns()
            try:
                result = await _resolve(gate.check(artifact))
            except Exception as exc:  # noqa: BLE001
                category = "timeout" if isinstance(exc, TimeoutError) else "gate_error"
                result = GateResult.from_issues(
                    gate.name,
                    [
                        Issue(
                            severity=Severity.CRITICAL,
                            category=category,
                            message=f"{type(exc).__name__}: {exc}",
                        )
                    ],
                )
            else:
                result = GateResult.from_issues(gate.name, result.issues, passed=result.passed)
            result = dataclasses.replace(
                result, duration_ms=max(0, (time.monotonic_ns() - started_ns) // 1_000_000)
            )
            results.append(result)
            issues.extend(result.issues)
            if result.has_critical:
                halted_by = gate.name
                self._logger.info(
                    "quality_gate_halted",
                    gate=gate.name,
                    sprint_id=artifact.sprint_id,
                    skipped=[item.name for item in self._gates[len(results) :]],
                )
                break
        return _PassResult(issues=tuple(issues), gate_results=tuple(results), halted_by=halted_by)

    def _gate_named(self, name: str) -> QualityGate | None:
        for gate in self._gates:
            if gate.name == name:
                return gate
        return None

    def _report(
        self,
        result: _PassResult,
        *,
        artifact: Artifact,
        passes: int,
        fixes: tuple[AppliedFix, ...] = (),
    ) -> QualityReport:
        report = QualityReport(
            issues=result.issues,
            gate_results=result.gate_results,
            halted_by=result.halted_by,
            passes=passes,
            fixes_applied=fixes,
            artifact=artifact,
        )
        self._logger.debug(
            "quality_gate_report",
            sprint_id=artifact.sprint_id,
            passed=report.passed,
            passes=passes,
            issues=len(report.issues),
            fixes=len(fixes),
        )
        return report


async def _resolve(value: T | Awaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value


__all__ = [
    "AppliedFix",
    "GateResult",
    "Issue",
    "QualityGate",
    "QualityGatePipeline",
    "QualityReport",
    "Severity",
]
