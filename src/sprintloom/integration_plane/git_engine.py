"""Deterministic git CLI wrapper used by the workspace manager."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sprintloom.domain.errors import MergeConflict, SprintloomError

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

_BRANCH_RE = re.compile(r"^[A-Za-z0-9._/-]+$")


class GitEngineError(SprintloomError, RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class WorktreeRecord:
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    branch_ref: str | None
    head: str | None = None

    @property
    def branch(self) -> str | None:
        if self.branch_ref and self.branch_ref.startswith("refs/heads/"):
            return self.branch_ref.removeprefix("refs/heads/")
        return None


@dataclass(frozen=True, slots=True)
class MergeResult:
    source: str
    target: str
    target_head: str


class GitEngine:
    """Thin, side-effect-explicit wrapper around the ``git`` executable."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        integration_branch: str = "main",
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).resolve()
        self.integration_branch = integration_branch
        self._env_overrides = dict(env_overrides or {})

    # -- queries -----------------------------------------------------------

    def is_repository(self) -> bool:
        return self._run_git(["rev-parse", "--git-dir"], check=False).returncode == 0

    def branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    def has_changes(self, worktree: Path) -> bool:
        output = self._run_git(["status", "--porcelain"], cwd=worktree).stdout
        return bool(output.strip())

    def changed_paths(self, worktree: Path) -> tuple[str, ...]:
        """Paths with uncommitted changes (including untracked files) in ``worktree``."""
        output = self._run_git(
            ["status", "--porcelain", "--untracked-files=all"], cwd=worktree
        ).stdout
        paths: list[str] = []
        for line in output.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            paths.append(path.strip().strip('"'))
        return tuple(paths)

    def worktree_records(self) -> tuple[WorktreeRecord, ...]:
        result = self._run_git(["worktree", "list", "--porcelain"])
        records: list[WorktreeRecord] = []

        path_value: Path | None = None
        branch_ref: str | None = None
        head: str | None = None
        for line in [*result.stdout.splitlines(), ""]:
            if not line.strip():
                if path_value is not None:
                    records.append(
                        WorktreeRecord(path=path_value, branch_ref=branch_ref, head=head)
                    )
                path_value = None
                branch_ref = None
                head = None
                continue

            key, _, value = line.partition(" ")
            if key == "worktree":
                path_value = Path(value.strip()).expanduser().resolve(strict=False)
            elif key == "branch":
                branch_ref = value.strip()
            elif key == "HEAD":
                head = value.strip()

        records.sort(key=lambda record: record.path.as_posix())
        return tuple(records)

    # -- mutations ---------------------------------------------------------

    def add_worktree(self, branch: str, path: Path, *, base: str | None = None) -> None:
        """Create ``branch`` from ``base`` (default: integration tip) checked out at ``path``."""
        self._validate_branch_name(branch)
        start = base if base is not None else self.integration_branch
        if not self.branch_exists(start):
            raise GitEngineError(f"Branch does not exist: {start}")
        if self.branch_exists(branch):
            raise GitEngineError(f"Branch already exists: {branch}")
        self._run_git(["worktree", "add", "--quiet", "-b", branch, str(path), start])

    def remove_worktree(self, path: Path) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)], check=False)

    def prune_worktrees(self) -> None:
        self._run_git(["worktree", "prune"], check=False)

    def delete_branch(self, branch: str) -> bool:
        if not self.branch_exists(branch):
            return False
        self._run_git(["branch", "-D", branch])
        return True

    def commit_all(
        self,
        worktree: Path,
        message: str,
        *,
        exclude: Sequence[str] = (),
    ) -> str | None:
        """Stage and commit everything in ``worktree`` except ``exclude``; ``None`` if clean."""
        title = message.strip()
        if not title:
            raise GitEngineError("Commit message cannot be empty.")

        self._ensure_identity()
        self._run_git(["add", "--all"], cwd=worktree)
        for path in exclude:
            self._run_git(["reset", "--quiet", "HEAD", "--", path], cwd=worktree, check=False)
        staged = self._run_git(["diff", "--cached", "--name-only"], cwd=worktree).stdout
        if not staged.strip():
            return None
        self._run_git(["commit", "--no-gpg-sign", "--quiet", "-m", title], cwd=worktree)
        return self._run_git(["rev-parse", "HEAD"], cwd=worktree).stdout.strip()

    def merge_no_ff(self, source_branch: str, *, message: str | None = None) -> MergeResult:
        """Merge ``source_branch`` into the integration branch with ``--no-ff``.

        On conflict the merge is aborted, the integration branch is left at its
        previous tip and ``MergeConflict`` names the conflicting paths.
        """

        target = self.integration_branch
        for branch in (source_branch, target):
            if not self.branch_exists(branch):
                raise GitEngineError(f"Branch does not exist: {branch}")

        self._ensure_identity()
        merge_message = message or f"Merge {source_branch} into {target}"
        with self._temporary_worktree(target) as worktree:
            result = self._run_git(
                ["merge", "--no-ff", "--no-gpg-sign", "-m", merge_message, source_branch],
                cwd=worktree,
                check=False,
            )
            if result.returncode != 0:
                conflict_output = self._run_git(
                    ["diff", "--name-only", "--diff-filter=U"],
                    cwd=worktree,
                    check=False,
                ).stdout
                conflicts = [line.strip() for line in conflict_output.splitlines() if line.strip()]
                self._run_git(["merge", "--abort"], cwd=worktree, check=False)
                if not conflicts:
                    raise GitCommandError(
                        command=("git", "merge", "--no-ff", source_branch),
                        returncode=result.returncode,
                        stdout=result.stdout,
                        stderr=result.stderr,
                    )
                raise MergeConflict(source_branch, conflicts)

        return MergeResult(
            source=source_branch,
            target=target,
            target_head=self.rev_parse(target),
        )

    # -- internals ---------------------------------------------------------

    def _ensure_identity(self) -> None:
        if self._run_git(["config", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", "sprintloom"])
        if self._run_git(["config", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", "sprintloom@example.invalid"])

    def _validate_branch_name(self, branch: str) -> None:
        if (
            not branch
            or branch.startswith(("-", "/"))
            or branch.endswith(("/", ".lock"))
            or ".." in branch
            or "//" in branch
            or _BRANCH_RE.fullmatch(branch) is None
        ):
            raise GitEngineError(f"unsafe branch name: {branch!r}")

    @contextmanager
    def _temporary_worktree(self, branch: str) -> Iterator[Path]:
        existing = self._existing_worktree_for_branch(branch)
        if existing is not None:
            yield existing
            return

        temp_path = Path(tempfile.mkdtemp(prefix="sprintloom-git-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", str(temp_path), branch])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        branch_ref = f"refs/heads/{branch}"
        for record in self.worktree_records():
            if record.branch_ref == branch_ref:
                return record.path
        return None

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            input=input_text,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = [
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "MergeResult",
    "WorktreeRecord",
]
