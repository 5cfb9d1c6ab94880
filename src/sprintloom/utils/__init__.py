"""Shared utilities (filesystem, concurrency)."""

from __future__ import annotations

from sprintloom.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    KeyedLocks,
    run_with_timeout,
)
from sprintloom.utils.fs import atomic_write, is_within, read_text_bounded, safe_delete

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "KeyedLocks",
    "atomic_write",
    "is_within",
    "read_text_bounded",
    "run_with_timeout",
    "safe_delete",
]
