"""Verification plane: artifacts, subprocess execution and the quality gate pipeline."""

from sprintloom.verification_plane.artifacts import Artifact, ArtifactDocument
from sprintloom.verification_plane.commands import CommandOutcome, CommandSpec, run_command
from sprintloom.verification_plane.pipeline import (
    AppliedFix,
    GateResult,
    Issue,
    QualityGate,
    QualityGatePipeline,
    QualityReport,
    Severity,
)

__all__ = [
    "AppliedFix",
    "Artifact",
    "ArtifactDocument",
    "CommandOutcome",
    "CommandSpec",
    "GateResult",
    "Issue",
    "QualityGate",
    "QualityGatePipeline",
    "QualityReport",
    "Severity",
    "run_command",
]
