"""Artifact bundle handed to quality gates.

A phase produces one ``Artifact``: the worker's raw output plus any structured
documents it wrote. Gates check the whole bundle once per phase; fixers return
a new bundle with rewritten documents.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sprintloom.domain.models import Phase
    from sprintloom.integration_plane.workspace_manager import WorkspaceHandle

STRUCTURED_SUFFIXES = frozenset({".yml", ".yaml", ".json"})


@dataclass(frozen=True, slots=True)
class ArtifactDocument:
    """Named document content; ``source`` is where fixed content is written back."""

    name: str
    content: str
    structured: bool = True
    source: Path | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("ArtifactDocument.name must not be empty")

    def with_content(self, content: str) -> ArtifactDocument:
        return dataclasses.replace(self, content=content)


@dataclass(frozen=True, slots=True)
class Artifact:
    sprint_id: int | None = None
    phase: Phase | None = None
    workspace: WorkspaceHandle | None = None
    documents: tuple[ArtifactDocument, ...] = ()
    raw_output: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "documents", tuple(self.documents))
        names = [document.name for document in self.documents]
        if len(set(names)) != len(names):
            raise ValueError("Artifact.documents contains duplicate names")

    @property
    def workspace_path(self) -> Path | None:
        return self.workspace.path if self.workspace is not None else None

    def structured_documents(self) -> tuple[ArtifactDocument, ...]:
        return tuple(document for document in self.documents if document.structured)

    def document(self, name: str) -> ArtifactDocument | None:
        for document in self.documents:
            if document.name == name:
                return document
        return None

    def with_document(self, updated: ArtifactDocument) -> Artifact:
        """Replace the document of the same name, or append it."""
        documents = list(self.documents)
        for index, document in enumerate(documents):
            if document.name == updated.name:
                documents[index] = updated
                break
        else:
            documents.append(updated)
        return dataclasses.replace(self, documents=tuple(documents))

    def changed_documents(self, original: Artifact) -> tuple[ArtifactDocument, ...]:
        changed: list[ArtifactDocument] = []
        for document in self.documents:
            before = original.document(document.name)
            if before is None or before.content != document.content:
                changed.append(document)
        return tuple(changed)

    @classmethod
    def from_paths(cls, paths: Iterable[str | Path], *, root: Path | None = None) -> Artifact:
        """Load files from disk as documents, named relative to ``root`` when possible."""
        documents: list[ArtifactDocument] = []
        for raw in paths:
            path = Path(raw)
            name = path.as_posix()
            if root is not None:
                try:
                    name = path.resolve().relative_to(root.resolve()).as_posix()
                except ValueError:
                    name = path.as_posix()
            documents.append(
                ArtifactDocument(
                    name=name,
                    content=path.read_text(encoding="utf-8"),
                    structured=is_structured_name(name),
                    source=path,
                )
            )
        return cls(documents=tuple(documents))


def is_structured_name(name: str) -> bool:
    return Path(name).suffix.lower() in STRUCTURED_SUFFIXES


__all__ = ["STRUCTURED_SUFFIXES", "Artifact", "ArtifactDocument", "is_structured_name"]
