"""
sprintloom — unit tests for filesystem helpers

File: tests/unit/utils/test_fs_utils.py

Purpose
- Validate atomic writes, bounded reads and root-confined deletion.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from sprintloom.utils.fs import atomic_write, is_within, read_text_bounded, safe_delete

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "state" / "nested" / "SPRINTS.yml"

    atomic_write(target, "first\n")
    atomic_write(target, b"second\n")

    assert target.read_text(encoding="utf-8") == "second\n"
    assert sorted(os.listdir(target.parent)) == ["SPRINTS.yml"]


def test_read_text_bounded_reports_truncation(tmp_path: Path) -> None:
    path = tmp_path / "doc.md"
    path.write_text("abcdef", encoding="utf-8")

    assert read_text_bounded(path, 6) == ("abcdef", False)
    assert read_text_bounded(path, 4) == ("abcd", True)
    with pytest.raises(ValueError, match="limit"):
        read_text_bounded(path, 0)


def test_is_within(tmp_path: Path) -> None:
    inner = tmp_path / "root" / "file.txt"
    inner.parent.mkdir()
    inner.write_text("x", encoding="utf-8")

    assert is_within(inner, tmp_path / "root")
    assert not is_within(tmp_path, tmp_path / "root")
    assert not is_within(tmp_path / "root" / "absent", tmp_path / "root")


def test_safe_delete_removes_files_and_directories_under_root(tmp_path: Path) -> None:
    root = tmp_path / "workspaces"
    (root / "sprint-1" / "src").mkdir(parents=True)
    (root / "sprint-1" / "src" / "app.py").write_text("pass\n", encoding="utf-8")
    (root / "notes.txt").write_text("x", encoding="utf-8")

    safe_delete(root / "sprint-1", root)
    safe_delete(root / "notes.txt", root)

    assert list(root.iterdir()) == []


def test_safe_delete_refuses_paths_outside_root(tmp_path: Path) -> None:
    root = tmp_path / "workspaces"
    root.mkdir()
    outside = tmp_path / "keep.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError, match="outside workspace root"):
        safe_delete(root / ".." / "keep.txt", root)
    with pytest.raises(ValueError, match="outside workspace root"):
        safe_delete(root, root)

    assert outside.exists()


def test_safe_delete_unlinks_symlinks_without_following(tmp_path: Path) -> None:
    root = tmp_path / "workspaces"
    root.mkdir()
    target = tmp_path / "precious"
    target.mkdir()
    (target / "data.txt").write_text("keep", encoding="utf-8")
    link = root / "link"
    link.symlink_to(target, target_is_directory=True)

    safe_delete(link, root)

    assert not link.exists()
    assert (target / "data.txt").read_text(encoding="utf-8") == "keep"
