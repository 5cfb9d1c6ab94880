"""Persistence layer for sprint progress."""

from __future__ import annotations

from sprintloom.persistence.progress_store import (
    ProgressStore,
    parse_progress_text,
    render_progress_document,
)

__all__ = ["ProgressStore", "parse_progress_text", "render_progress_document"]
