"""
sprintloom — unit tests for port block allocation

File: tests/unit/integration_plane/test_port_allocator.py

Purpose
- Validate that live workspaces never receive overlapping port blocks.

What this test file should cover
- Preferred block placement and forward probing on collision.
- Exhaustion after ``max_probes`` and at the top of the port space.
- Release makes a block reusable; reservations are idempotent per owner.
"""

from __future__ import annotations

import threading

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from sprintloom.domain.errors import PortRangeExhausted
from sprintloom.integration_plane.port_allocator import PortAllocator, PortBlock


def test_port_block_geometry() -> None:
    block = PortBlock(base=3010, size=10)
    assert block.end == 3020
    assert block.last == 3019
    assert list(block.ports())[:2] == [3010, 3011]
    assert block.port(3) == 3013
    assert block.contains(3019)
    assert not block.contains(3020)
    assert block.overlaps(PortBlock(base=3015, size=10))
    assert not block.overlaps(PortBlock(base=3020, size=10))
    with pytest.raises(ValueError):
        block.port(10)
    with pytest.raises(ValueError):
        PortBlock(base=0, size=10)


def test_reserve_prefers_key_block_and_is_idempotent() -> None:
    allocator = PortAllocator(base_port=3000, stride=10)

    first = allocator.reserve("ws-1", 1)
    again = allocator.reserve("ws-1", 7)

    assert first == PortBlock(base=3010, size=10)
    assert again == first
    assert allocator.block_of("ws-1") == first


def test_reserve_probes_forward_on_collision() -> None:
    allocator = PortAllocator(base_port=3000, stride=10, max_probes=4)
    allocator.reserve("ws-a", 2)

    block = allocator.reserve("ws-b", 2)

    assert block.base == 3030
    assert [owner for owner, _ in allocator.live_blocks()] == ["ws-a", "ws-b"]


def test_reserve_fails_after_max_probes() -> None:
    allocator = PortAllocator(base_port=3000, stride=10, max_probes=2)
    for owner, key in (("a", 0), ("b", 1), ("c", 2)):
        allocator.reserve(owner, key)

    with pytest.raises(PortRangeExhausted) as excinfo:
        allocator.reserve("d", 0)

    assert excinfo.value.attempts == 3
    assert allocator.block_of("d") is None


def test_reserve_stops_at_top_of_port_space() -> None:
    allocator = PortAllocator(base_port=65500, stride=10, max_probes=10, max_port=65535)
    allocator.reserve("a", 2)
    with pytest.raises(PortRangeExhausted):
        allocator.reserve("b", 2)


def test_release_allows_reuse() -> None:
    allocator = PortAllocator(base_port=3000, stride=10, max_probes=0)
    block = allocator.reserve("old", 5)

    assert allocator.release("old") == block
    assert allocator.release("old") is None
    assert allocator.reserve("new", 5) == block


def test_reserve_exact_rejects_collisions() -> None:
    allocator = PortAllocator(base_port=3000, stride=10)
    allocator.reserve("a", 1)

    assert not allocator.reserve_exact("b", PortBlock(base=3015, size=10))
    assert allocator.reserve_exact("c", PortBlock(base=3020, size=10))
    assert allocator.reserve_exact("c", PortBlock(base=3020, size=10))
    assert allocator.reserve("d", 2).base == 3030


@settings(max_examples=60, deadline=None)
@given(
    keys=st.lists(st.integers(min_value=0, max_value=12), min_size=1, max_size=20),
    releases=st.sets(st.integers(min_value=0, max_value=19)),
)
def test_live_blocks_never_overlap(keys: list[int], releases: set[int]) -> None:
    allocator = PortAllocator(base_port=4000, stride=7, max_probes=40)
    for index, key in enumerate(keys):
        allocator.reserve(f"ws-{index}", key)
        if index in releases:
            allocator.release(f"ws-{index // 2}")

    live = [block for _, block in allocator.live_blocks()]
    for position, block in enumerate(live):
        for other in live[position + 1 :]:
            assert not block.overlaps(other)


def test_concurrent_reservations_are_disjoint() -> None:
    allocator = PortAllocator(base_port=5000, stride=10, max_probes=64)
    barrier = threading.Barrier(8)
    results: dict[str, PortBlock] = {}

    def _reserve(owner: str) -> None:
        barrier.wait()
        results[owner] = allocator.reserve(owner, 0)

    threads = [threading.Thread(target=_reserve, args=(f"ws-{n}",)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    bases = sorted(block.base for block in results.values())
    assert bases == [5000 + 10 * n for n in range(8)]
