"""
sprintloom — progress store

File: src/sprintloom/persistence/progress_store.py

Purpose
- Persist the project metadata and ordered sprint collection as one YAML document.

Functional requirements
- Every save is an atomic replace (temp file + fsync + ``os.replace``); never an in-place patch.
- Writes are keyed per sprint: a commit replaces exactly one sprint record in the
  current document, and the aggregate save is serialized by a single lock.
- Loading validates strictly; recognised legacy fields are migrated and reported,
  anything else is rejected with ``ConfigurationError``.
- Save followed by load round-trips losslessly.
"""

from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from sprintloom.domain.errors import ConfigurationError
from sprintloom.domain.models import (
    ProgressDocument,
    ProjectInfo,
    Sprint,
    migrate_progress_payload,
    utc_now,
)
from sprintloom.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime


class ProgressStore:
    """YAML-backed, single-writer store for sprint progress."""

    def __init__(
        self,
        path: str | Path,
        *,
        now_fn: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self._path = Path(path).expanduser()
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()
        self._document: ProgressDocument | None = None
        self._migration_notes: tuple[str, ...] = ()
        self._save_count = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def migration_notes(self) -> tuple[str, ...]:
        return self._migration_notes

    @property
    def save_count(self) -> int:
        return self._save_count

    def exists(self) -> bool:
        return self._path.is_file()

    def initialize(
        self,
        project_name: str,
        sprints: Iterable[Sprint] = (),
        *,
        description: str = "sprintloom project",
    ) -> ProgressDocument:
        """Create a new progress file; refuses to overwrite an existing one."""

        with self._lock:
            if self.exists():
                raise FileExistsError(f"progress file already exists: {self._path}")
            sprint_tuple = tuple(sprints)
            document = ProgressDocument(
                project=ProjectInfo(
                    name=project_name,
                    description=description,
                    total_sprints=len(sprint_tuple),
                    last_updated=self._now_fn(),
                ),
                sprints=sprint_tuple,
            )
            self._write(document)
            return document

    def load(self) -> ProgressDocument:
        """(Re)load the document from disk, replacing any cached copy."""

        with self._lock:
            if not self.exists():
                raise ConfigurationError(f"progress file not found: {self._path}")
            raw_text = self._path.read_text(encoding="utf-8")
            document, notes = parse_progress_text(raw_text, now=self._now_fn(), source=self._path)
            self._document = document
            self._migration_notes = notes
            if notes:
                self._logger.info(
                    "progress_store_migrated",
                    path=str(self._path),
                    migrations=list(notes),
                )
            return document

    def document(self) -> ProgressDocument:
        with self._lock:
            if self._document is None:
                return self.load()
            return self._document

    def sprints(self) -> tuple[Sprint, ...]:
        return self.document().sprints

    def get(self, sprint_id: int) -> Sprint:
        try:
            return self.document().sprint(sprint_id)
        except KeyError:
            raise ConfigurationError(f"unknown sprint id: {sprint_id}") from None

    def commit(self, sprint: Sprint) -> ProgressDocument:
        """Replace one sprint record and durably save the aggregate document."""

        with self._lock:
            current = self.document()
            try:
                updated = current.with_sprint(sprint, now=self._now_fn())
            except KeyError:
                raise ConfigurationError(f"unknown sprint id: {sprint.id}") from None
            self._write(updated)
            self._logger.debug(
                "progress_store_committed",
                sprint_id=sprint.id,
                status=sprint.status.value,
                retry_count=sprint.retry_count,
            )
            return updated

    async def commit_async(self, sprint: Sprint) -> ProgressDocument:
        return await asyncio.to_thread(self.commit, sprint)

    def save(self, document: ProgressDocument) -> None:
        with self._lock:
            self._write(document)

    def _write(self, document: ProgressDocument) -> None:
        atomic_write(self._path, render_progress_document(document))
        self._document = document
        self._save_count += 1


def render_progress_document(document: ProgressDocument) -> str:
    """Serialize ``document`` as block-style YAML preserving sprint order."""

    return yaml.safe_dump(
        document.to_dict(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=100,
    )


def parse_progress_text(
    text: str,
    *,
    now: datetime,
    source: Path | str = "<string>",
) -> tuple[ProgressDocument, tuple[str, ...]]:
    """Parse YAML progress text into a validated document plus migration notes."""

    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(f"progress document root must be a mapping: {source}")

    migrated, notes = migrate_progress_payload(payload, now=now)
    try:
        document = ProgressDocument.from_dict(migrated)
    except ConfigurationError as exc:
        raise ConfigurationError(f"malformed progress document {source}: {exc}") from exc
    return document, notes


__all__ = ["ProgressStore", "parse_progress_text", "render_progress_document"]
