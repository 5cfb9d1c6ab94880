"""
sprintloom — port allocator

File: src/sprintloom/integration_plane/port_allocator.py

Purpose
- Hand out non-overlapping TCP port blocks to live workspaces.

Functional requirements
- A workspace with key ``k`` prefers the block starting at ``base_port + k * stride``.
- On collision with any live block, probe forward by incrementing the key at most
  ``max_probes`` times, then fail with ``PortRangeExhausted``.
- Reservations live in an arena (slot list + free list) indexed by owner name; the
  table is guarded by a lock so concurrent creators never observe a torn state.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from sprintloom.constants import (
    DEFAULT_BASE_PORT,
    DEFAULT_MAX_PORT_PROBES,
    DEFAULT_PORT_STRIDE,
    MAX_PORT,
)
from sprintloom.domain.errors import PortRangeExhausted


@dataclass(frozen=True, slots=True)
class PortBlock:
    """Half-open port interval ``[base, base + size)``."""

    base: int
    size: int

    def __post_init__(self) -> None:
        if isinstance(self.base, bool) or not isinstance(self.base, int) or self.base < 1:
            raise ValueError("PortBlock.base must be a positive integer")
        if isinstance(self.size, bool) or not isinstance(self.size, int) or self.size < 1:
            raise ValueError("PortBlock.size must be a positive integer")

    @property
    def end(self) -> int:
        return self.base + self.size

    @property
    def last(self) -> int:
        return self.end - 1

    def ports(self) -> range:
        return range(self.base, self.end)

    def port(self, offset: int) -> int:
        if not 0 <= offset < self.size:
            raise ValueError(f"port offset {offset} outside block of size {self.size}")
        return self.base + offset

    def contains(self, port: int) -> bool:
        return self.base <= port < self.end

    def overlaps(self, other: PortBlock) -> bool:
        return self.base < other.end and other.base < self.end


@dataclass(frozen=True, slots=True)
class _Reservation:
    owner: str
    key: int
    block: PortBlock


class PortAllocator:
    """Lock-guarded arena of live port reservations."""

    def __init__(
        self,
        *,
        base_port: int = DEFAULT_BASE_PORT,
        stride: int = DEFAULT_PORT_STRIDE,
        max_probes: int = DEFAULT_MAX_PORT_PROBES,
        max_port: int = MAX_PORT,
    ) -> None:
        if base_port < 1 or base_port > max_port:
            raise ValueError("base_port must be within 1..max_port")
        if stride < 1:
            raise ValueError("stride must be >= 1")
        if max_probes < 0:
            raise ValueError("max_probes must be >= 0")
        self._base_port = base_port
        self._stride = stride
        self._max_probes = max_probes
        self._max_port = max_port
        self._lock = threading.RLock()
        self._arena: list[_Reservation | None] = []
        self._free_slots: list[int] = []
        self._index: dict[str, int] = {}

    @property
    def block_size(self) -> int:
        return self._stride

    def block_for_key(self, key: int) -> PortBlock:
        return PortBlock(base=self._base_port + key * self._stride, size=self._stride)

    def reserve(self, owner: str, key: int) -> PortBlock:
        """Reserve the first free block at or after ``key``; idempotent per owner."""

        if key < 0:
            raise ValueError("key must be >= 0")
        with self._lock:
            existing = self._lookup(owner)
            if existing is not None:
                return existing.block

            attempts = 0
            for probe_key in range(key, key + self._max_probes + 1):
                attempts += 1
                candidate = self.block_for_key(probe_key)
                if candidate.last > self._max_port:
                    break
                if self._collides(candidate) is None:
                    self._store(_Reservation(owner=owner, key=probe_key, block=candidate))
                    return candidate

            raise PortRangeExhausted(
                key,
                attempts,
                f"{self._live_count()} live block(s) of size {self._stride}",
            )

    def reserve_exact(self, owner: str, block: PortBlock) -> bool:
        """Re-reserve a known block (registry rehydration); ``False`` on collision."""

        with self._lock:
            existing = self._lookup(owner)
            if existing is not None:
                return existing.block == block
            if self._collides(block) is not None:
                return False
            key = (block.base - self._base_port) // self._stride
            self._store(_Reservation(owner=owner, key=key, block=block))
            return True

    def release(self, owner: str) -> PortBlock | None:
        with self._lock:
            slot = self._index.pop(owner, None)
            if slot is None:
                return None
            reservation = self._arena[slot]
            self._arena[slot] = None
            self._free_slots.append(slot)
            return reservation.block if reservation is not None else None

    def block_of(self, owner: str) -> PortBlock | None:
        with self._lock:
            reservation = self._lookup(owner)
            return reservation.block if reservation is not None else None

    def live_blocks(self) -> tuple[tuple[str, PortBlock], ...]:
        with self._lock:
            live = [(item.owner, item.block) for item in self._arena if item is not None]
        live.sort(key=lambda pair: pair[1].base)
        return tuple(live)

    def _lookup(self, owner: str) -> _Reservation | None:
        slot = self._index.get(owner)
        return None if slot is None else self._arena[slot]

    def _collides(self, candidate: PortBlock) -> _Reservation | None:
        for reservation in self._arena:
            if reservation is not None and reservation.block.overlaps(candidate):
                return reservation
        return None

    def _store(self, reservation: _Reservation) -> None:
        if self._free_slots:
            slot = self._free_slots.pop()
            self._arena[slot] = reservation
        else:
            slot = len(self._arena)
            self._arena.append(reservation)
        self._index[reservation.owner] = slot

    def _live_count(self) -> int:
        return len(self._index)


__all__ = ["PortAllocator", "PortBlock"]
