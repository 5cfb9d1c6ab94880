"""Git-worktree-backed workspace lifecycle management."""

from __future__ import annotations

import json
import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from sprintloom.constants import (
    DEFAULT_BASE_PORT,
    DEFAULT_INTEGRATION_BRANCH,
    DEFAULT_MAX_PORT_PROBES,
    DEFAULT_PORT_STRIDE,
    DEFAULT_SERVICE_FILES,
    DEFAULT_WORK_BRANCH_PREFIX,
    WORKSPACE_METADATA_FILE,
    WORKSPACES_DIR,
)
from sprintloom.domain.errors import MergeConflict, WorkspaceBusy
from sprintloom.integration_plane.git_engine import GitEngine, GitEngineError, MergeResult
from sprintloom.integration_plane.port_allocator import PortAllocator, PortBlock
from sprintloom.integration_plane.service_ports import rewrite_service_files
from sprintloom.utils.fs import atomic_write, safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

_LABEL_STRIP = re.compile(r"[^a-z0-9]+")
_MAX_LABEL_LEN = 40


class WorkspaceKind(StrEnum):
    SPRINT = "sprint"
    BUGFIX = "bugfix"
    MANUAL = "manual"


@dataclass(frozen=True, slots=True)
class WorkspaceHandle:
    """
    Live sandbox descriptor returned by the manager.

    Required fields:
    - kind, key, name (slug)
    - branch, path
    - port_base, port_block_size
    - created_at
    """

    kind: WorkspaceKind
    key: int
    name: str
    branch: str
    path: Path
    port_base: int
    port_block_size: int
    created_at: datetime
    label: str | None = None
    service_files: tuple[str, ...] = ()

    @property
    def port_block(self) -> PortBlock:
        return PortBlock(base=self.port_base, size=self.port_block_size)

    def port(self, offset: int) -> int:
        return self.port_block.port(offset)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "name": self.name,
            "branch": self.branch,
            "path": self.path.as_posix(),
            "port_base": self.port_base,
            "port_block_size": self.port_block_size,
            "created_at": self.created_at.isoformat(),
            "label": self.label,
            "service_files": list(self.service_files),
        }


class WorkspaceManager:
    """Create, merge, delete and enumerate isolated sprint sandboxes.

    Each handle owns a ``git worktree`` on its own branch plus a port block.
    The registry and the port table are guarded by one ``RLock``. Worktree
    creation and merges into the integration branch are serialized by their
    own locks, so ``list()`` and ``is_merging()`` stay responsive while git runs.
    """

    def __init__(
        self,
        repo_root: str | Path,
        workspace_root: str | Path | None = None,
        *,
        integration_branch: str = DEFAULT_INTEGRATION_BRANCH,
        branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        base_port: int = DEFAULT_BASE_PORT,
        port_stride: int = DEFAULT_PORT_STRIDE,
        max_port_probes: int = DEFAULT_MAX_PORT_PROBES,
        service_files: Sequence[str] = DEFAULT_SERVICE_FILES,
        now_fn: Callable[[], datetime] | None = None,
        env_overrides: Mapping[str, str] | None = None,
        logger: Any | None = None,
    ) -> None:
        resolved_repo = Path(repo_root).expanduser().resolve(strict=True)
        if not resolved_repo.is_dir():
            raise NotADirectoryError(f"{resolved_repo} is not a directory")

        if workspace_root is None:
            resolved_workspace_root = resolved_repo.joinpath(*WORKSPACES_DIR.parts)
        else:
            candidate_root = Path(workspace_root).expanduser()
            resolved_workspace_root = (
                candidate_root.resolve(strict=False)
                if candidate_root.is_absolute()
                else (resolved_repo / candidate_root).resolve(strict=False)
            )

        self._repo_root = resolved_repo
        self._workspace_root = resolved_workspace_root
        self._branch_prefix = branch_prefix.strip("/")
        self._service_files = tuple(service_files)
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._git = GitEngine(
            resolved_repo,
            integration_branch=integration_branch,
            env_overrides=env_overrides,
        )
        self._ports = PortAllocator(
            base_port=base_port,
            stride=port_stride,
            max_probes=max_port_probes,
        )
        self._lock = threading.RLock()
        self._integration_lock = threading.Lock()
        self._worktree_lock = threading.Lock()
        self._handles: dict[str, WorkspaceHandle] = {}
        self._merging: set[str] = set()
        self._creating: set[str] = set()
        self._rehydrate()

    @property
    def repo_root(self) -> Path:
        return self._repo_root

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    @property
    def integration_branch(self) -> str:
        return self._git.integration_branch

    @property
    def git(self) -> GitEngine:
        return self._git

    @property
    def ports(self) -> PortAllocator:
        return self._ports

    # -- create ------------------------------------------------------------

    def create(
        self,
        kind: WorkspaceKind | str,
        key: int,
        *,
        label: str | None = None,
    ) -> WorkspaceHandle:
        """Branch from the integration tip and register one sandbox for ``(kind, key)``."""

        workspace_kind = WorkspaceKind(kind)
        if isinstance(key, bool) or not isinstance(key, int) or key < 0:
            raise ValueError("workspace key must be a non-negative integer")
        name = workspace_slug(workspace_kind, key, label)
        branch = f"{self._branch_prefix}/{name}" if self._branch_prefix else name
        workspace_dir = self._workspace_root / name

        # Only the name and port reservation happen under the lock; git runs outside it.
        with self._lock:
            if name in self._handles or name in self._creating:
                raise FileExistsError(f"workspace already registered: {name}")
            if workspace_dir.exists() or workspace_dir.is_symlink():
                raise FileExistsError(f"workspace directory already exists: {workspace_dir}")
            block = self._ports.reserve(name, key)
            self._creating.add(name)

        worktree_added = False
        try:
            with self._worktree_lock:
                if self._git.branch_exists(branch):
                    raise FileExistsError(f"workspace branch already exists: {branch}")
                self._workspace_root.mkdir(parents=True, exist_ok=True)
                self._git.add_worktree(branch, workspace_dir)
                worktree_added = True
            rewrites = rewrite_service_files(
                self._repo_root, workspace_dir, block, self._service_files, key=key
            )
            handle = WorkspaceHandle(
                kind=workspace_kind,
                key=key,
                name=name,
                branch=branch,
                path=workspace_dir.resolve(strict=False),
                port_base=block.base,
                port_block_size=block.size,
                created_at=_ensure_aware_utc(self._now_fn()),
                label=label,
                service_files=tuple(item.name for item in rewrites),
            )
            self._write_metadata(handle)
        except BaseException:
            if worktree_added:
                self._remove_worktree_and_branch(workspace_dir, branch)
            with self._lock:
                self._creating.discard(name)
                self._ports.release(name)
            raise

        with self._lock:
            self._creating.discard(name)
            self._handles[name] = handle

        self._logger.info(
            "workspace_created",
            workspace=name,
            branch=branch,
            path=str(handle.path),
            port_base=handle.port_base,
            port_block_size=handle.port_block_size,
        )
        return handle

    # -- lookup ------------------------------------------------------------

    def get(self, name: str) -> WorkspaceHandle | None:
        with self._lock:
            return self._handles.get(name)

    def find(self, kind: WorkspaceKind | str, key: int) -> WorkspaceHandle | None:
        """Return the live handle for ``(kind, key)`` whatever its label."""
        workspace_kind = WorkspaceKind(kind)
        with self._lock:
            for handle in self._handles.values():
                if handle.kind is workspace_kind and handle.key == key:
                    return handle
        return None

    def list(self) -> tuple[WorkspaceHandle, ...]:
        """Read-only snapshot of all known handles, sorted by path."""
        with self._lock:
            handles = list(self._handles.values())
        handles.sort(key=lambda handle: handle.path.as_posix())
        return tuple(handles)

    def is_merging(self, handle: WorkspaceHandle | str) -> bool:
        name = handle if isinstance(handle, str) else handle.name
        with self._lock:
            return name in self._merging

    # -- merge -------------------------------------------------------------

    def merge(self, handle: WorkspaceHandle, *, message: str | None = None) -> MergeResult:
        """Commit outstanding work and ``--no-ff`` merge it into the integration branch.

        On success the handle is deleted. On conflict the merge is aborted, the
        handle is left untouched and ``MergeConflict`` is raised.
        """

        with self._lock:
            current = self._handles.get(handle.name)
            if current is None:
                raise KeyError(f"unknown workspace: {handle.name}")
            if current.name in self._merging:
                raise WorkspaceBusy(current.name)
            self._merging.add(current.name)

        try:
            with self._integration_lock:
                commit = self._git.commit_all(
                    current.path,
                    message or f"{current.name}: work from {current.branch}",
                    exclude=(WORKSPACE_METADATA_FILE, *current.service_files),
                )
                self._logger.debug(
                    "workspace_committed",
                    workspace=current.name,
                    commit=commit,
                )
                result = self._git.merge_no_ff(current.branch)
        except MergeConflict as exc:
            self._logger.warning(
                "workspace_merge_conflict",
                workspace=current.name,
                branch=current.branch,
                paths=list(exc.paths),
            )
            raise
        finally:
            with self._lock:
                self._merging.discard(current.name)

        self._logger.info(
            "workspace_merged",
            workspace=current.name,
            branch=current.branch,
            target=result.target,
            target_head=result.target_head,
        )
        self.delete(current)
        return result

    # -- delete / prune ----------------------------------------------------

    def delete(self, handle: WorkspaceHandle | str) -> bool:
        """Remove a handle, its worktree and its branch; ``False`` if already gone."""

        name = handle if isinstance(handle, str) else handle.name
        with self._lock:
            if name in self._merging:
                raise WorkspaceBusy(name)
            current = self._handles.pop(name, None)
            if current is None and isinstance(handle, WorkspaceHandle):
                current = handle
            if current is None:
                return False

            existed = current.path.exists() or self._git.branch_exists(current.branch)
            self._remove_worktree_and_branch(current.path, current.branch)
            self._ports.release(current.name)

        if existed:
            self._logger.info("workspace_deleted", workspace=current.name, branch=current.branch)
        return existed

    def prune(
        self,
        protected: Iterable[WorkspaceHandle | str] = (),
    ) -> tuple[WorkspaceHandle, ...]:
        """Drop handles whose branch or worktree vanished; never touch ``protected``."""

        protected_names = {item if isinstance(item, str) else item.name for item in protected}
        removed: list[WorkspaceHandle] = []
        with self._lock:
            for handle in self.list():
                if handle.name in protected_names or handle.name in self._merging:
                    continue
                if self._git.branch_exists(handle.branch) and handle.path.is_dir():
                    continue
                self.delete(handle)
                removed.append(handle)
            self._git.prune_worktrees()

        if removed:
            self._logger.info(
                "workspaces_pruned",
                removed=[handle.name for handle in removed],
                protected=sorted(protected_names),
            )
        return tuple(removed)

    # -- internals ---------------------------------------------------------

    def _remove_worktree_and_branch(self, workspace_dir: Path, branch: str) -> None:
        managed = _managed_path(workspace_dir)
        if not _is_relative_to(managed, self._workspace_root.resolve(strict=False)):
            raise ValueError(f"workspace path is outside workspace root: {managed}")
        self._git.remove_worktree(managed)
        if managed.exists() or managed.is_symlink():
            safe_delete(managed, self._workspace_root)
        self._git.prune_worktrees()
        try:
            self._git.delete_branch(branch)
        except GitEngineError as exc:
            self._logger.warning("workspace_branch_delete_failed", branch=branch, error=str(exc))

    def _write_metadata(self, handle: WorkspaceHandle) -> None:
        payload = handle.to_dict()
        atomic_write(
            handle.path / WORKSPACE_METADATA_FILE,
            json.dumps(payload, sort_keys=True, indent=2) + "\n",
        )

    def _read_metadata(self, workspace_dir: Path) -> WorkspaceHandle | None:
        metadata_path = workspace_dir / WORKSPACE_METADATA_FILE
        if not metadata_path.is_file() or metadata_path.is_symlink():
            return None
        try:
            raw = json.loads(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        if not isinstance(raw, dict):
            return None
        try:
            label = raw.get("label")
            service_files = raw.get("service_files") or []
            return WorkspaceHandle(
                kind=WorkspaceKind(raw["kind"]),
                key=int(raw["key"]),
                name=str(raw["name"]),
                branch=str(raw["branch"]),
                path=workspace_dir.resolve(strict=False),
                port_base=int(raw["port_base"]),
                port_block_size=int(raw["port_block_size"]),
                created_at=_ensure_aware_utc(datetime.fromisoformat(str(raw["created_at"]))),
                label=str(label) if label is not None else None,
                service_files=tuple(str(item) for item in service_files),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def _rehydrate(self) -> None:
        if not self._git.is_repository():
            return
        root = self._workspace_root.resolve(strict=False)
        for record in self._git.worktree_records():
            if not _is_relative_to(record.path, root) or record.path == root:
                continue
            handle = self._read_metadata(record.path)
            if handle is None:
                self._logger.warning("workspace_metadata_missing", path=str(record.path))
                continue
            if record.branch is not None and record.branch != handle.branch:
                self._logger.warning(
                    "workspace_branch_mismatch",
                    workspace=handle.name,
                    recorded=handle.branch,
                    actual=record.branch,
                )
                continue
            if not self._ports.reserve_exact(handle.name, handle.port_block):
                self._logger.warning(
                    "workspace_port_block_conflict",
                    workspace=handle.name,
                    port_base=handle.port_base,
                )
                continue
            self._handles[handle.name] = handle


def workspace_slug(kind: WorkspaceKind | str, key: int, label: str | None = None) -> str:
    """``<kind>-<key>[-<slugified label>]``."""

    slug = f"{WorkspaceKind(kind).value}-{key}"
    if label:
        cleaned = _LABEL_STRIP.sub("-", label.lower()).strip("-")[:_MAX_LABEL_LEN].rstrip("-")
        if cleaned:
            slug = f"{slug}-{cleaned}"
    return slug


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _managed_path(path: Path) -> Path:
    parent = path.parent.resolve(strict=False)
    return parent / path.name


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = ["WorkspaceHandle", "WorkspaceKind", "WorkspaceManager", "workspace_slug"]
