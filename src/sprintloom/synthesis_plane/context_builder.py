"""Materialize the worker context for one sprint phase.

Referenced documents come from the sprint's tasks (``doc_reference`` and
``docs``). They are read relative to the documents root, bounded in size, and
never followed outside that root.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Final

import structlog

from sprintloom.synthesis_plane.contract import ContextDocument, WorkerContext
from sprintloom.utils.fs import is_within, read_text_bounded

if TYPE_CHECKING:
    from sprintloom.domain.models import Phase, Sprint
    from sprintloom.integration_plane.workspace_manager import WorkspaceHandle

DEFAULT_MAX_DOCUMENT_CHARS: Final[int] = 20_000
DEFAULT_MAX_DOCUMENTS: Final[int] = 16


class ContextBuilder:
    def __init__(
        self,
        documents_root: Path,
        *,
        max_document_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
        max_documents: int = DEFAULT_MAX_DOCUMENTS,
        logger: Any | None = None,
    ) -> None:
        if max_document_chars <= 0:
            raise ValueError("max_document_chars must be > 0")
        self._root = Path(documents_root).resolve()
        self._max_chars = max_document_chars
        self._max_documents = max_documents
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def documents_root(self) -> Path:
        return self._root

    def referenced_documents(self, sprint: Sprint) -> tuple[str, ...]:
        refs: list[str] = []
        for task in sprint.tasks:
            for ref in task.referenced_documents():
                if ref not in refs:
                    refs.append(ref)
        return tuple(refs)

    def build(
        self,
        sprint: Sprint,
        phase: Phase,
        *,
        role: str,
        max_turns: int,
        workspace: WorkspaceHandle | None = None,
    ) -> WorkerContext:
        refs = self.referenced_documents(sprint)
        if len(refs) > self._max_documents:
            self._logger.warning(
                "worker_context_documents_capped",
                sprint_id=sprint.id,
                referenced=len(refs),
                kept=self._max_documents,
            )
            refs = refs[: self._max_documents]
        return WorkerContext(
            sprint=sprint,
            phase=phase,
            role=role,
            max_turns=max_turns,
            workspace=workspace,
            documents=tuple(self._load(sprint.id, ref) for ref in refs),
        )

    def _load(self, sprint_id: int, ref: str) -> ContextDocument:
        path = self._resolve(ref)
        if path is None or not path.is_file():
            self._logger.warning("worker_context_document_missing", sprint_id=sprint_id, ref=ref)
            return ContextDocument(name=ref, content="", missing=True)
        text, truncated = read_text_bounded(path, self._max_chars)
        return ContextDocument(name=ref, content=text, truncated=truncated)

    def _resolve(self, ref: str) -> Path | None:
        # Anchors such as ``docs/API.md#orders`` name a section of a file.
        relative = ref.split("#", 1)[0].strip()
        pure = PurePosixPath(relative)
        if not relative or pure.is_absolute() or ".." in pure.parts:
            return None
        candidate = self._root / pure
        if not is_within(candidate, self._root):
            return None
        return candidate.resolve()


__all__ = ["DEFAULT_MAX_DOCUMENT_CHARS", "DEFAULT_MAX_DOCUMENTS", "ContextBuilder"]
