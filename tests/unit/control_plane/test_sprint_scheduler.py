"""
sprintloom — unit tests for dependency-aware sprint scheduling

File: tests/unit/control_plane/test_sprint_scheduler.py

Purpose
- Validate deterministic topological ordering, eligibility and graph validation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from sprintloom.control_plane.scheduler import Scheduler, topological_order
from sprintloom.domain.errors import ConfigurationError, DependencyCycleError
from sprintloom.domain.models import Phase

if TYPE_CHECKING:
    from collections.abc import Callable

    from sprintloom.domain.models import Sprint

    SprintFactory = Callable[..., Sprint]


def _diamond(sprint_factory: SprintFactory) -> list[Sprint]:
    return [
        sprint_factory(4, dependencies=(2, 3)),
        sprint_factory(3, dependencies=(1,)),
        sprint_factory(2, dependencies=(1,)),
        sprint_factory(1),
    ]


def test_order_is_topological_and_breaks_ties_by_id(sprint_factory: SprintFactory) -> None:
    scheduler = Scheduler(_diamond(sprint_factory))

    assert scheduler.order == (1, 2, 3, 4)
    assert scheduler.dependencies(4) == frozenset({2, 3})
    assert scheduler.dependents(1) == frozenset({2, 3})


def test_eligibility_follows_completed_dependencies(sprint_factory: SprintFactory) -> None:
    scheduler = Scheduler(_diamond(sprint_factory))
    statuses = dict.fromkeys((1, 2, 3, 4), Phase.PENDING)

    assert scheduler.eligible(statuses) == (1,)

    statuses[1] = Phase.DONE
    assert scheduler.eligible(statuses) == (2, 3)

    statuses[2] = Phase.DONE
    statuses[3] = Phase.WRITE_CODE
    assert scheduler.eligible(statuses) == (3,)

    statuses[3] = Phase.DONE
    assert scheduler.eligible(statuses) == (4,)


def test_blocked_dependency_starves_dependents(sprint_factory: SprintFactory) -> None:
    scheduler = Scheduler(_diamond(sprint_factory))
    statuses = {1: Phase.DONE, 2: Phase.BLOCKED, 3: Phase.DONE, 4: Phase.PENDING}

    assert scheduler.eligible(statuses) == ()


def test_eligible_honours_exclude_and_only(sprint_factory: SprintFactory) -> None:
    scheduler = Scheduler(_diamond(sprint_factory))
    statuses = {1: Phase.DONE, 2: Phase.PENDING, 3: Phase.PENDING, 4: Phase.PENDING}

    assert scheduler.eligible(statuses, exclude={2}) == (3,)
    assert scheduler.eligible(statuses, only={3, 4}) == (3,)


def test_cycle_is_rejected_with_path(sprint_factory: SprintFactory) -> None:
    sprints = [
        sprint_factory(1, dependencies=(3,)),
        sprint_factory(2, dependencies=(1,)),
        sprint_factory(3, dependencies=(2,)),
        sprint_factory(4),
    ]

    with pytest.raises(DependencyCycleError) as excinfo:
        Scheduler(sprints)

    cycle = excinfo.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {1, 2, 3}
    assert str(excinfo.value).startswith("sprint dependency cycle detected: ")
    assert isinstance(excinfo.value, ConfigurationError)


def test_unknown_dependency_is_configuration_error(sprint_factory: SprintFactory) -> None:
    with pytest.raises(ConfigurationError, match="unknown sprint id 7"):
        topological_order([sprint_factory(1, dependencies=(7,))])
