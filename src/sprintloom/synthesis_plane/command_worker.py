"""
sprintloom — subprocess worker adapter

File: src/sprintloom/synthesis_plane/command_worker.py

Purpose
- Run a configured command as the phase worker.

Behavior
- ``argv`` entries may use ``{role}``, ``{max_turns}``, ``{sprint_id}``,
  ``{phase}`` and ``{workspace}`` placeholders.
- The rendered context is piped on stdin; the process runs inside the
  workspace when one is attached.
- Exit code 0 is success. Structured files the worker created or modified in
  the workspace become artifact documents.
- A command that cannot start raises ``WorkerInvocationError``; exceeding the
  timeout raises ``WorkerTimeout``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from sprintloom.constants import DEFAULT_WORKER_TIMEOUT_SECONDS, WORKSPACE_METADATA_FILE
from sprintloom.domain.errors import ConfigurationError, WorkerInvocationError, WorkerTimeout
from sprintloom.synthesis_plane.contract import WorkerContext, WorkerResult
from sprintloom.verification_plane.artifacts import ArtifactDocument, is_structured_name
from sprintloom.verification_plane.commands import CommandSpec, output_tail, run_command

if TYPE_CHECKING:
    from sprintloom.integration_plane.git_engine import GitEngine

PLACEHOLDERS: Final[tuple[str, ...]] = ("role", "max_turns", "sprint_id", "phase", "workspace")
_ERROR_TAIL_CHARS: Final[int] = 500


def render_argv(template: Sequence[str], context: WorkerContext, role: str) -> tuple[str, ...]:
    workspace = context.workspace.path.as_posix() if context.workspace is not None else ""
    values = {
        "role": role,
        "max_turns": str(context.max_turns),
        "sprint_id": str(context.sprint.id),
        "phase": context.phase.value,
        "workspace": workspace,
    }
    rendered: list[str] = []
    for item in template:
        try:
            rendered.append(item.format(**values))
        except (KeyError, IndexError, ValueError) as exc:
            allowed = ", ".join(f"{{{name}}}" for name in PLACEHOLDERS)
            raise ConfigurationError(
                f"worker.command entry {item!r} is not a valid template (allowed: {allowed})"
            ) from exc
    return tuple(rendered)


class CommandWorker:
    def __init__(
        self,
        command: Sequence[str],
        *,
        git: GitEngine | None = None,
        cwd: Path | None = None,
        timeout_seconds: float = DEFAULT_WORKER_TIMEOUT_SECONDS,
        env: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        if not command:
            raise ConfigurationError("worker.command must not be empty")
        self._command = tuple(command)
        self._git = git
        self._cwd = cwd
        self._timeout = timeout_seconds
        self._env = dict(env or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def command(self) -> tuple[str, ...]:
        return self._command

    async def invoke(self, role: str, context: WorkerContext) -> WorkerResult:
        argv = render_argv(self._command, context, role)
        workspace_dir = context.workspace.path if context.workspace is not None else None
        self._logger.info(
            "worker_invoked",
            sprint_id=context.sprint.id,
            phase=context.phase.value,
            role=role,
            max_turns=context.max_turns,
        )
        outcome = await run_command(
            CommandSpec(
                argv=argv,
                cwd=workspace_dir or self._cwd,
                env=self._env,
                stdin_text=context.render(),
                timeout_seconds=self._timeout,
            )
        )
        if outcome.timed_out:
            raise WorkerTimeout(
                f"worker {role!r} exceeded {self._timeout:g}s for sprint {context.sprint.id}",
                role=role,
            )
        if outcome.error is not None:
            raise WorkerInvocationError(
                f"worker {role!r} could not start: {outcome.error}", role=role
            )

        if not outcome.succeeded:
            tail = output_tail(outcome.stderr or outcome.stdout, _ERROR_TAIL_CHARS).strip()
            self._logger.warning(
                "worker_failed",
                sprint_id=context.sprint.id,
                phase=context.phase.value,
                role=role,
                exit_code=outcome.exit_code,
            )
            return WorkerResult(
                success=False,
                raw_output=outcome.combined_output,
                error=f"worker exited with status {outcome.exit_code}: {tail}".rstrip(": "),
            )

        artifacts = await self._collect_artifacts(context)
        self._logger.info(
            "worker_succeeded",
            sprint_id=context.sprint.id,
            phase=context.phase.value,
            role=role,
            documents=[document.name for document in artifacts],
            duration_ms=outcome.duration_ms,
        )
        return WorkerResult(success=True, artifacts=artifacts, raw_output=outcome.combined_output)

    async def _collect_artifacts(self, context: WorkerContext) -> tuple[ArtifactDocument, ...]:
        handle = context.workspace
        if handle is None or self._git is None:
            return ()
        changed = await asyncio.to_thread(self._git.changed_paths, handle.path)
        skipped = {WORKSPACE_METADATA_FILE, *handle.service_files}
        documents: list[ArtifactDocument] = []
        for name in sorted(set(changed)):
            if name in skipped or not is_structured_name(name):
                continue
            path = handle.path / name
            if not path.is_file():
                continue
            documents.append(
                ArtifactDocument(
                    name=name,
                    content=path.read_text(encoding="utf-8", errors="replace"),
                    source=path,
                )
            )
        return tuple(documents)


__all__ = ["PLACEHOLDERS", "CommandWorker", "render_argv"]
