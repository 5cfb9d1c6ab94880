"""
sprintloom — environment readiness gate

File: src/sprintloom/verification_plane/gates/readiness_gate.py

Purpose
- Poll TCP ports and probe commands until all report healthy or a bounded
  timeout expires.

Behavior
- Ports are absolute numbers or ``+N`` offsets into the artifact's workspace
  port block.
- Command probes run inside the workspace; exit code 0 means healthy.
- On expiry a single critical, non-fixable ``environment`` issue lists every
  probe still unhealthy. It is never retried by the auto-fix pass.
"""

from __future__ import annotations

import asyncio
import re
import shlex
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Final

import structlog

from sprintloom.constants import (
    DEFAULT_READINESS_POLL_INTERVAL_SECONDS,
    DEFAULT_READINESS_TIMEOUT_SECONDS,
)
from sprintloom.verification_plane.artifacts import Artifact
from sprintloom.verification_plane.commands import CommandSpec, run_command
from sprintloom.verification_plane.pipeline import GateResult, Issue, Severity

_OFFSET_RE: Final[re.Pattern[str]] = re.compile(r"^\+(\d+)$")
_CONNECT_TIMEOUT_SECONDS: Final[float] = 1.0

TcpProbe = Callable[[str, int], Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class _Probe:
    label: str
    port: int | None = None
    argv: tuple[str, ...] = ()
    error: str | None = None


async def tcp_port_open(host: str, port: int) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=_CONNECT_TIMEOUT_SECONDS
        )
    except (OSError, TimeoutError):
        return False
    writer.close()
    with suppress(OSError):
        await writer.wait_closed()
    return True


class ReadinessGate:
    name = "readiness"

    def __init__(
        self,
        *,
        ports: Sequence[int | str] = (),
        commands: Sequence[str] = (),
        host: str = "127.0.0.1",
        timeout_seconds: float = DEFAULT_READINESS_TIMEOUT_SECONDS,
        poll_interval_seconds: float = DEFAULT_READINESS_POLL_INTERVAL_SECONDS,
        tcp_probe: TcpProbe | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], float] | None = None,
        logger: Any | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._ports = tuple(ports)
        self._commands = tuple(shlex.split(command) for command in commands)
        if any(not argv for argv in self._commands):
            raise ValueError("readiness commands must not be empty")
        self._host = host
        self._timeout = timeout_seconds
        self._interval = poll_interval_seconds
        self._tcp_probe = tcp_probe if tcp_probe is not None else tcp_port_open
        self._sleep = sleep if sleep is not None else asyncio.sleep
        self._clock = clock if clock is not None else time.monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def has_probes(self) -> bool:
        return bool(self._ports or self._commands)

    async def check(self, artifact: Artifact) -> GateResult:
        probes = self._resolve(artifact)
        if not probes:
            return GateResult.from_issues(self.name, [])

        deadline = self._clock() + self._timeout
        pending = [probe for probe in probes if probe.error is None]
        unresolved = [probe for probe in probes if probe.error is not None]
        attempts = 0
        while True:
            attempts += 1
            results = await asyncio.gather(*(self._healthy(probe, artifact) for probe in pending))
            pending = [probe for probe, ok in zip(pending, results, strict=True) if not ok]
            if not pending and not unresolved:
                self._logger.debug(
                    "readiness_probes_healthy", sprint_id=artifact.sprint_id, attempts=attempts
                )
                return GateResult.from_issues(self.name, [])
            remaining = deadline - self._clock()
            if remaining <= 0 or not pending:
                break
            await self._sleep(min(self._interval, remaining))

        unhealthy = [
            f"{probe.label} ({probe.error})" if probe.error else probe.label
            for probe in [*unresolved, *pending]
        ]
        self._logger.warning(
            "readiness_probes_expired",
            sprint_id=artifact.sprint_id,
            unhealthy=unhealthy,
            timeout_seconds=self._timeout,
        )
        return GateResult.from_issues(
            self.name,
            [
                Issue(
                    severity=Severity.CRITICAL,
                    category="environment",
                    message=(
                        f"environment not ready after {self._timeout:g}s; unhealthy probes: "
                        + ", ".join(unhealthy)
                    ),
                )
            ],
        )

    def _resolve(self, artifact: Artifact) -> list[_Probe]:
        probes: list[_Probe] = []
        workspace = artifact.workspace
        for raw in self._ports:
            if isinstance(raw, int):
                probes.append(_Probe(label=f"tcp:{self._host}:{raw}", port=raw))
                continue
            match = _OFFSET_RE.fullmatch(raw.strip())
            if match is None:
                probes.append(_Probe(label=f"tcp:{raw}", error="invalid port"))
                continue
            if workspace is None:
                probes.append(_Probe(label=f"tcp:{raw}", error="no workspace port block"))
                continue
            try:
                port = workspace.port(int(match.group(1)))
            except ValueError as exc:
                probes.append(_Probe(label=f"tcp:{raw}", error=str(exc)))
                continue
            probes.append(_Probe(label=f"tcp:{self._host}:{port}", port=port))
        for argv in self._commands:
            probes.append(_Probe(label=f"cmd:{shlex.join(argv)}", argv=argv))
        return probes

    async def _healthy(self, probe: _Probe, artifact: Artifact) -> bool:
        if probe.port is not None:
            return await self._tcp_probe(self._host, probe.port)
        outcome = await run_command(
            CommandSpec(
                argv=probe.argv,
                cwd=artifact.workspace_path,
                timeout_seconds=max(self._interval, _CONNECT_TIMEOUT_SECONDS),
            ),
            max_output_chars=4_000,
        )
        return outcome.succeeded


__all__ = ["ReadinessGate", "TcpProbe", "tcp_port_open"]
