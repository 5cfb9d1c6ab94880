"""Per-phase gate set construction."""

from __future__ import annotations

from sprintloom.domain.models import Phase
from sprintloom.verification_plane.gates.phase_sets import WORKER_PHASES, build_phase_pipelines


def test_every_worker_phase_gets_schema_and_shape_gates() -> None:
    pipelines = build_phase_pipelines({})

    assert set(pipelines) == set(WORKER_PHASES)
    assert Phase.PENDING not in pipelines
    assert Phase.DONE not in pipelines
    for pipeline in pipelines.values():
        assert pipeline.gate_names == ("schema", "output_shape")


def test_readiness_and_regression_are_added_where_configured() -> None:
    pipelines = build_phase_pipelines(
        {
            "gates": {
                "readiness_ports": ["+0"],
                "readiness_timeout_seconds": 5.0,
                "readiness_poll_interval_seconds": 0.5,
                "regression_command": ["pytest", "-q"],
            }
        }
    )

    assert pipelines[Phase.WRITE_CODE].gate_names == ("schema", "output_shape")
    assert pipelines[Phase.RUN_UNIT_TESTS].gate_names == ("schema", "output_shape", "regression")
    for phase in (Phase.RUN_E2E_TESTS, Phase.COMPLETE):
        assert pipelines[phase].gate_names == (
            "schema",
            "output_shape",
            "readiness",
            "regression",
        )
