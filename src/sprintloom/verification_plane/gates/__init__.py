"""Canonical quality gates and per-phase gate sets."""

from sprintloom.verification_plane.gates.output_shape_gate import OutputShapeGate
from sprintloom.verification_plane.gates.phase_sets import (
    READINESS_PHASES,
    REGRESSION_PHASES,
    WORKER_PHASES,
    build_phase_pipelines,
)
from sprintloom.verification_plane.gates.readiness_gate import ReadinessGate, tcp_port_open
from sprintloom.verification_plane.gates.regression_gate import (
    RegressionGate,
    parse_failing_tests,
)
from sprintloom.verification_plane.gates.schema_gate import (
    DEFAULT_SCHEMA_BINDINGS,
    DocumentParseError,
    SchemaGate,
    parse_structured,
)

__all__ = [
    "DEFAULT_SCHEMA_BINDINGS",
    "DocumentParseError",
    "OutputShapeGate",
    "READINESS_PHASES",
    "REGRESSION_PHASES",
    "ReadinessGate",
    "RegressionGate",
    "SchemaGate",
    "WORKER_PHASES",
    "build_phase_pipelines",
    "parse_failing_tests",
    "parse_structured",
    "tcp_port_open",
]
