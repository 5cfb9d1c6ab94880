"""
sprintloom — package root

File: src/sprintloom/__init__.py

Purpose
- Drive a project through gated sprint phases executed by external workers,
  each sprint isolated in its own worktree/branch/port sandbox.

Import boundary
- No side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
