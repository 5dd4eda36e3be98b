"""Vector clocks for ordering events across servers."""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterator, Mapping
from typing import Any

from .codec import hash_str


class Relation(enum.Enum):
    """How two vector clocks are ordered relative to each other."""

    EQUAL = "Equal"
    BEFORE = "Before"
    AFTER = "After"
    CONCURRENT = "Concurrent"


class VectorClock:
    """A map from server keys to event counters."""

    __slots__ = ("_map",)

    def __init__(self, counts: Mapping[Any, int] | None = None) -> None:
        self._map: dict[Any, int] = dict(counts or {})

    def inc(self, server: Any) -> VectorClock:
        """Increment the counter for a server and return a snapshot."""
        self._map[server] = self._map.get(server, 0) + 1
        return self.__copy__()

    def happened_before(self, other: VectorClock) -> bool:
        """True when every counter is <= the other's and at least one is smaller."""
        strictly_less = False
        for server, a in self._map.items():
            b = other._map.get(server, 0)
            if a > b:
                return False
            strictly_less = strictly_less or a < b
        for server, b in other._map.items():
            a = self._map.get(server, 0)
            if a > b:
                return False
            strictly_less = strictly_less or a < b
        return strictly_less

    def equals(self, other: VectorClock) -> bool:
        """True when both clocks hold the same servers with the same counters."""
        return self._map == other._map

    def relation(self, other: VectorClock) -> Relation:
        if self.equals(other):
            return Relation.EQUAL
        if self.happened_before(other):
            return Relation.BEFORE
        if other.happened_before(self):
            return Relation.AFTER
        return Relation.CONCURRENT

    def merge_with(self, other: VectorClock) -> None:
        """Take the larger counter for every server in the other clock."""
        for server, b in other._map.items():
            if self._map.get(server, 0) < b:
                self._map[server] = b
            else:
                self._map.setdefault(server, 0)

    def learn_from(self, other: VectorClock) -> None:
        """Add servers that are missing here, keeping existing counters."""
        for server, b in other._map.items():
            self._map.setdefault(server, b)

    def __copy__(self) -> VectorClock:
        return VectorClock(self._map)

    def __getitem__(self, server: Any) -> int:
        return self._map.get(server, 0)

    def __contains__(self, server: object) -> bool:
        return server in self._map

    def __iter__(self) -> Iterator[Any]:
        return iter(sorted(self._map))

    def __len__(self) -> int:
        return len(self._map)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VectorClock):
            return NotImplemented
        return self.relation(other) is Relation.EQUAL

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._map.items())))

    def __lt__(self, other: VectorClock) -> bool:
        if not isinstance(other, VectorClock):
            return NotImplemented
        return self.relation(other) is Relation.BEFORE

    def __le__(self, other: VectorClock) -> bool:
        if not isinstance(other, VectorClock):
            return NotImplemented
        return self.relation(other) in (Relation.BEFORE, Relation.EQUAL)

    def __gt__(self, other: VectorClock) -> bool:
        if not isinstance(other, VectorClock):
            return NotImplemented
        return self.relation(other) is Relation.AFTER

    def __ge__(self, other: VectorClock) -> bool:
        if not isinstance(other, VectorClock):
            return NotImplemented
        return self.relation(other) in (Relation.AFTER, Relation.EQUAL)

    def __repr__(self) -> str:
        items = ", ".join(f"{k!r}: {v}" for k, v in sorted(self._map.items()))
        return f"VectorClock({{{items}}})"


class ServerVectorClock:
    """A thread-safe vector clock owned by one server."""

    def __init__(self, server_address: str) -> None:
        self.server = hash_str(server_address)
        self._clock = VectorClock()
        self._lock = threading.Lock()

    def inc(self) -> VectorClock:
        with self._lock:
            return self._clock.inc(self.server)

    def happened_before(self, other: VectorClock) -> bool:
        with self._lock:
            return self._clock.happened_before(other)

    def equals(self, other: VectorClock) -> bool:
        with self._lock:
            return self._clock.equals(other)

    def relation(self, other: VectorClock) -> Relation:
        with self._lock:
            return self._clock.relation(other)

    def merge_with(self, other: VectorClock) -> None:
        with self._lock:
            self._clock.merge_with(other)

    def learn_from(self, other: VectorClock) -> None:
        with self._lock:
            self._clock.learn_from(other)

    def to_clock(self) -> VectorClock:
        """Return a snapshot of the current clock."""
        with self._lock:
            return self._clock.__copy__()