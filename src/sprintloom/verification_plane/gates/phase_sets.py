"""Per-phase gate pipelines built from the ``[gates]`` config section."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final

from sprintloom.domain.models import PHASE_ORDER, Phase
from sprintloom.verification_plane.gates.output_shape_gate import OutputShapeGate
from sprintloom.verification_plane.gates.readiness_gate import ReadinessGate
from sprintloom.verification_plane.gates.regression_gate import RegressionGate
from sprintloom.verification_plane.gates.schema_gate import SchemaGate
from sprintloom.verification_plane.pipeline import QualityGate, QualityGatePipeline

READINESS_PHASES: Final[frozenset[Phase]] = frozenset({Phase.RUN_E2E_TESTS, Phase.COMPLETE})
REGRESSION_PHASES: Final[frozenset[Phase]] = frozenset(
    {Phase.RUN_UNIT_TESTS, Phase.RUN_E2E_TESTS, Phase.COMPLETE}
)
WORKER_PHASES: Final[tuple[Phase, ...]] = tuple(
    phase for phase in PHASE_ORDER if phase not in (Phase.PENDING, Phase.DONE)
)


def build_phase_pipelines(
    config: Mapping[str, Any],
    *,
    logger: Any | None = None,
) -> dict[Phase, QualityGatePipeline]:
    """Map every worker phase to its gate pipeline.

    Schema and output-shape gates guard every phase. Readiness and regression
    gates are added only where probes or a suite command are configured.
    """

    gates_config = config.get("gates", {})
    schema = SchemaGate()
    shape = OutputShapeGate()
    readiness = ReadinessGate(
        ports=gates_config.get("readiness_ports", ()),
        commands=gates_config.get("readiness_commands", ()),
        timeout_seconds=gates_config.get("readiness_timeout_seconds", 60.0),
        poll_interval_seconds=gates_config.get("readiness_poll_interval_seconds", 1.0),
        logger=logger,
    )
    regression_command = tuple(gates_config.get("regression_command", ()))
    regression = (
        RegressionGate(
            regression_command,
            timeout_seconds=gates_config.get("regression_timeout_seconds", 900.0),
            logger=logger,
        )
        if regression_command
        else None
    )

    pipelines: dict[Phase, QualityGatePipeline] = {}
    for phase in WORKER_PHASES:
        gates: list[QualityGate] = [schema, shape]
        if phase in READINESS_PHASES and readiness.has_probes:
            gates.append(readiness)
        if phase in REGRESSION_PHASES and regression is not None:
            gates.append(regression)
        pipelines[phase] = QualityGatePipeline(gates, logger=logger)
    return pipelines


__all__ = ["READINESS_PHASES", "REGRESSION_PHASES", "WORKER_PHASES", "build_phase_pipelines"]
