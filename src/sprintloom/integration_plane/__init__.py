"""Workspace isolation: git worktrees, port blocks and integration merges."""

from __future__ import annotations

from sprintloom.integration_plane.git_engine import (
    GitCommandError,
    GitEngine,
    GitEngineError,
    MergeResult,
    WorktreeRecord,
)
from sprintloom.integration_plane.port_allocator import PortAllocator, PortBlock
from sprintloom.integration_plane.service_ports import (
    PortRemapper,
    ServiceFileRewrite,
    rewrite_service_files,
)
from sprintloom.integration_plane.workspace_manager import (
    WorkspaceHandle,
    WorkspaceKind,
    WorkspaceManager,
    workspace_slug,
)

__all__ = [
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "MergeResult",
    "PortAllocator",
    "PortBlock",
    "PortRemapper",
    "ServiceFileRewrite",
    "WorkspaceHandle",
    "WorkspaceKind",
    "WorkspaceManager",
    "WorktreeRecord",
    "rewrite_service_files",
    "workspace_slug",
]
