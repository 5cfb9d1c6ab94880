"""Synthesis plane: the worker invocation contract and its shipped adapters."""

from sprintloom.synthesis_plane.command_worker import CommandWorker, render_argv
from sprintloom.synthesis_plane.context_builder import ContextBuilder
from sprintloom.synthesis_plane.contract import (
    ContextDocument,
    WorkerContext,
    WorkerInvoker,
    WorkerResult,
)

__all__ = [
    "CommandWorker",
    "ContextBuilder",
    "ContextDocument",
    "WorkerContext",
    "WorkerInvoker",
    "WorkerResult",
    "render_argv",
]
