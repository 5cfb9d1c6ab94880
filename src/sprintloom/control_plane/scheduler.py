"""Deterministic dependency-aware sprint selection."""

from __future__ import annotations

from heapq import heapify, heappop, heappush
from typing import TYPE_CHECKING

from sprintloom.domain.errors import ConfigurationError, DependencyCycleError
from sprintloom.domain.models import Phase

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping, Sequence

    from sprintloom.domain.models import Sprint


class Scheduler:
    """Topological sprint ordering with eligibility by completed dependencies.

    The graph is validated once at construction: an unknown dependency id or a
    cycle raises before any sprint could be started.
    """

    __slots__ = ("_children", "_ids", "_order", "_parents")

    def __init__(self, sprints: Sequence[Sprint]) -> None:
        self._ids = tuple(sprint.id for sprint in sprints)
        self._parents, self._children = _build_dependency_maps(sprints)
        self._order = _topological_order(self._ids, self._parents, self._children)

    @property
    def order(self) -> tuple[int, ...]:
        return self._order

    def dependencies(self, sprint_id: int) -> frozenset[int]:
        return frozenset(self._parents[sprint_id])

    def dependents(self, sprint_id: int) -> frozenset[int]:
        return frozenset(self._children[sprint_id])

    def eligible(
        self,
        statuses: Mapping[int, Phase],
        *,
        exclude: Collection[int] = (),
        only: Collection[int] | None = None,
    ) -> tuple[int, ...]:
        """Runnable sprints whose every dependency is ``DONE``, in topological order."""

        selected: list[int] = []
        for sprint_id in self._order:
            if sprint_id in exclude or (only is not None and sprint_id not in only):
                continue
            if statuses[sprint_id] in (Phase.DONE, Phase.BLOCKED):
                continue
            if all(statuses[parent] is Phase.DONE for parent in self._parents[sprint_id]):
                selected.append(sprint_id)
        return tuple(selected)


def topological_order(sprints: Sequence[Sprint]) -> tuple[int, ...]:
    """Convenience wrapper around :class:`Scheduler`."""

    return Scheduler(sprints).order


def _build_dependency_maps(
    sprints: Sequence[Sprint],
) -> tuple[dict[int, set[int]], dict[int, set[int]]]:
    known = {sprint.id for sprint in sprints}
    parents: dict[int, set[int]] = {sprint.id: set() for sprint in sprints}
    children: dict[int, set[int]] = {sprint.id: set() for sprint in sprints}
    for sprint in sprints:
        for dependency in sprint.dependencies:
            if dependency not in known:
                raise ConfigurationError(
                    f"sprint {sprint.id} depends on unknown sprint id {dependency}"
                )
            parents[sprint.id].add(dependency)
            children[dependency].add(sprint.id)
    return parents, children


def _topological_order(
    ids: Sequence[int],
    parents: Mapping[int, set[int]],
    children: Mapping[int, set[int]],
) -> tuple[int, ...]:
    indegree = {sprint_id: len(parents[sprint_id]) for sprint_id in ids}
    ready = [sprint_id for sprint_id, degree in indegree.items() if degree == 0]
    heapify(ready)

    ordered: list[int] = []
    while ready:
        sprint_id = heappop(ready)
        ordered.append(sprint_id)
        for child in sorted(children[sprint_id]):
            indegree[child] -= 1
            if indegree[child] == 0:
                heappush(ready, child)

    if len(ordered) != len(ids):
        remaining = {sprint_id for sprint_id in ids if indegree[sprint_id] > 0}
        raise DependencyCycleError(_find_cycle(remaining, parents))
    return tuple(ordered)


def _find_cycle(remaining: set[int], parents: Mapping[int, set[int]]) -> tuple[int, ...]:
    # Every node left after Kahn's pass has a parent that is also left.
    cursor = min(remaining)
    path: list[int] = []
    position: dict[int, int] = {}
    while cursor not in position:
        position[cursor] = len(path)
        path.append(cursor)
        cursor = min(parent for parent in parents[cursor] if parent in remaining)
    cycle = path[position[cursor] :]
    cycle.reverse()
    return (*cycle, cycle[0])


__all__ = ["Scheduler", "topological_order"]
