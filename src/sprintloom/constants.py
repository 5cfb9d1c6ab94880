"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git branch names.
DEFAULT_INTEGRATION_BRANCH: Final[str] = "main"
DEFAULT_WORK_BRANCH_PREFIX: Final[str] = "work"

# Default runtime paths (relative to the repository root unless overridden by config).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".sprintloom")
WORKSPACES_DIR: Final[PurePosixPath] = STATE_DIR / "workspaces"
FAILURES_DIR: Final[PurePosixPath] = STATE_DIR / "failures"
LOGS_DIR: Final[PurePosixPath] = STATE_DIR / "logs"
PROGRESS_FILE: Final[PurePosixPath] = STATE_DIR / "SPRINTS.yml"
WORKSPACE_METADATA_FILE: Final[str] = ".sprintloom-workspace.json"

# Orchestrator policy defaults.
DEFAULT_MAX_ITERATIONS: Final[int] = 50
DEFAULT_MAX_RETRIES: Final[int] = 3
DEFAULT_CONCURRENCY: Final[int] = 2
DEFAULT_WORKER_TIMEOUT_SECONDS: Final[float] = 1800.0

# Port allocation defaults.
DEFAULT_BASE_PORT: Final[int] = 3000
DEFAULT_PORT_STRIDE: Final[int] = 10
DEFAULT_MAX_PORT_PROBES: Final[int] = 16
MAX_PORT: Final[int] = 65535

# Gate defaults.
DEFAULT_READINESS_TIMEOUT_SECONDS: Final[float] = 60.0
DEFAULT_READINESS_POLL_INTERVAL_SECONDS: Final[float] = 1.0
DEFAULT_REGRESSION_TIMEOUT_SECONDS: Final[float] = 900.0

# Service definition files copied into new workspaces with rewritten ports.
DEFAULT_SERVICE_FILES: Final[tuple[str, ...]] = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yaml",
    ".env",
)

__all__ = [
    "DEFAULT_BASE_PORT",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_INTEGRATION_BRANCH",
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_MAX_PORT_PROBES",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_PORT_STRIDE",
    "DEFAULT_READINESS_POLL_INTERVAL_SECONDS",
    "DEFAULT_READINESS_TIMEOUT_SECONDS",
    "DEFAULT_REGRESSION_TIMEOUT_SECONDS",
    "DEFAULT_SERVICE_FILES",
    "DEFAULT_WORKER_TIMEOUT_SECONDS",
    "DEFAULT_WORK_BRANCH_PREFIX",
    "FAILURES_DIR",
    "LOGS_DIR",
    "MAX_PORT",
    "PROGRESS_FILE",
    "STATE_DIR",
    "WORKSPACES_DIR",
    "WORKSPACE_METADATA_FILE",
]
