"""
sprintloom — filesystem utilities

File: src/sprintloom/utils/fs.py

Purpose
- Crash-safe replacement of the progress file, failure reports and fixed artifacts.
- Root-confined deletion of workspace directories.
- Bounded reads of worker context documents.

Invariants
- A reader sees either the old or the new content of an ``atomic_write`` target.
- ``safe_delete`` never removes anything outside, or equal to, its root and never
  follows a symlink.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Write ``data`` to a sibling temp file, fsync it, then ``os.replace`` the target."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    directory = target.parent.resolve(strict=True)
    payload = data.encode(encoding) if isinstance(data, str) else data

    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(temp_name)
        raise
    _sync_directory(directory)


def read_text_bounded(path: PathLike, limit: int, *, encoding: str = "utf-8") -> tuple[str, bool]:
    """Read at most ``limit`` characters; return ``(text, truncated)``."""

    if limit <= 0:
        raise ValueError("limit must be > 0")
    with Path(path).open("r", encoding=encoding, errors="replace") as handle:
        text = handle.read(limit + 1)
    return text[:limit], len(text) > limit


def is_within(child: PathLike, root: PathLike) -> bool:
    """``True`` when ``child`` exists and resolves to a path under the directory ``root``."""

    try:
        resolved_root = Path(root).resolve(strict=True)
        resolved_child = Path(child).resolve(strict=True)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return resolved_root.is_dir() and resolved_child.is_relative_to(resolved_root)


def safe_delete(path: PathLike, root: PathLike) -> None:
    """Remove a file, directory tree or symlink that lives strictly below ``root``."""

    resolved_root = Path(root).resolve(strict=True)
    if not resolved_root.is_dir():
        raise NotADirectoryError(f"{resolved_root} is not a directory")

    target = Path(path)
    # Resolve the parent only, so a symlink is judged by where it sits, not where it points.
    location = target.parent.resolve(strict=True) / target.name
    if location == resolved_root or not location.is_relative_to(resolved_root):
        raise ValueError(f"refusing to delete path outside workspace root: {target}")

    if target.is_symlink():
        target.unlink()
    elif not target.resolve(strict=True).is_relative_to(resolved_root):
        raise ValueError(f"refusing to delete path outside workspace root: {target}")
    elif target.is_dir():
        shutil.rmtree(target)
    else:
        target.unlink()


def _sync_directory(directory: Path) -> None:
    # Persists the rename; unsupported on Windows and some filesystems.
    if os.name == "nt":
        return
    try:
        dir_fd = os.open(directory, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    except OSError:
        return
    try:
        with contextlib.suppress(OSError):
            os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


__all__ = ["atomic_write", "is_within", "read_text_bounded", "safe_delete"]
