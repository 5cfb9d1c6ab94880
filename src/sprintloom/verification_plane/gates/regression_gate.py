"""
sprintloom — regression gate

File: src/sprintloom/verification_plane/gates/regression_gate.py

Purpose
- Re-run a previously passing verification suite inside the artifact's
  workspace and block on any failure.

Policy
- Strict: every failure blocks the phase, including failures that predate the
  current sprint's changes.
- One high ``regression`` issue per failing test identifier parsed from
  pytest, cargo or jest output; otherwise one issue carrying the output tail.
- A suite that exceeds its timeout is a critical ``timeout`` issue.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Any, Final

import structlog

from sprintloom.constants import DEFAULT_REGRESSION_TIMEOUT_SECONDS
from sprintloom.verification_plane.artifacts import Artifact
from sprintloom.verification_plane.commands import CommandSpec, output_tail, run_command
from sprintloom.verification_plane.pipeline import GateResult, Issue, Severity

_OUTPUT_TAIL_CHARS: Final[int] = 2_000
_MAX_FAILURE_ISSUES: Final[int] = 50

_FAILURE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    # pytest short test summary
    re.compile(r"^(?:FAILED|ERROR)\s+(?P<test>\S+::\S+|\S+\.py)"),
    # cargo test
    re.compile(r"^test\s+(?P<test>\S+)\s+\.\.\.\s+FAILED\s*$"),
    # jest suite and test headers
    re.compile(r"^\s*FAIL\s+(?P<test>\S+)"),
    re.compile(r"^\s*●\s+(?P<test>.+?)\s*$"),
)


def parse_failing_tests(output: str) -> tuple[str, ...]:
    """Failing test identifiers in order of first appearance."""

    found: list[str] = []
    for line in output.splitlines():
        for pattern in _FAILURE_PATTERNS:
            match = pattern.match(line)
            if match is None:
                continue
            test = match.group("test").strip()
            if test and test not in found:
                found.append(test)
            break
    return tuple(found)


class RegressionGate:
    name = "regression"

    def __init__(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float = DEFAULT_REGRESSION_TIMEOUT_SECONDS,
        logger: Any | None = None,
    ) -> None:
        if not command:
            raise ValueError("regression command must not be empty")
        self._command = tuple(command)
        self._timeout = timeout_seconds
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    async def check(self, artifact: Artifact) -> GateResult:
        outcome = await run_command(
            CommandSpec(
                argv=self._command,
                cwd=artifact.workspace_path,
                timeout_seconds=self._timeout,
            )
        )
        self._logger.info(
            "regression_suite_finished",
            sprint_id=artifact.sprint_id,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            duration_ms=outcome.duration_ms,
        )
        if outcome.succeeded:
            return GateResult.from_issues(self.name, [])

        tail = output_tail(outcome.combined_output, _OUTPUT_TAIL_CHARS)
        if outcome.timed_out:
            return GateResult.from_issues(
                self.name,
                [
                    Issue(
                        severity=Severity.CRITICAL,
                        category="timeout",
                        message=f"regression suite exceeded {self._timeout:g}s\n{tail}".rstrip(),
                    )
                ],
            )
        if outcome.error is not None:
            return GateResult.from_issues(
                self.name,
                [
                    Issue(
                        severity=Severity.HIGH,
                        category="regression",
                        message=f"regression suite could not start: {outcome.error}",
                    )
                ],
            )

        failing = parse_failing_tests(outcome.combined_output)
        if not failing:
            return GateResult.from_issues(
                self.name,
                [
                    Issue(
                        severity=Severity.HIGH,
                        category="regression",
                        message=(
                            f"regression suite failed (exit {outcome.exit_code})\n{tail}"
                        ).rstrip(),
                    )
                ],
            )
        issues = [
            Issue(
                severity=Severity.HIGH,
                category="regression",
                message=f"previously passing test failed: {test}",
            )
            for test in failing[:_MAX_FAILURE_ISSUES]
        ]
        return GateResult.from_issues(self.name, issues)


__all__ = ["RegressionGate", "parse_failing_tests"]
