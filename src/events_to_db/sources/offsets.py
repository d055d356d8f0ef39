"""Immutable per-source offset map used as resume cursor and lag reference."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

# Offsets are zero-based: the first event of a source has offset 0.
OFFSET_ZERO = 0


class OffsetMap(Mapping[str, int]):
    """Mapping ``source -> highest offset observed`` for that source.

    Instances never change after construction; every operation that makes
    progress returns a new map. A source that is absent has seen no events,
    which :meth:`get` reports as ``OFFSET_ZERO - 1``.
    """

    __slots__ = ("_offsets",)

    def __init__(self, offsets: Mapping[str, int] | None = None) -> None:
        checked: dict[str, int] = {}
        for source, offset in (offsets or {}).items():
            offset = int(offset)
            if offset < OFFSET_ZERO:
                msg = f"Offset for source '{source}' must be >= {OFFSET_ZERO}, got {offset}"
                raise ValueError(msg)
            checked[str(source)] = offset
        self._offsets = checked

    @classmethod
    def empty(cls) -> OffsetMap:
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OffsetMap:
        return cls({k: int(v) for k, v in data.items()})

    # -- Mapping ---------------------------------------------------------------

    def __getitem__(self, source: str) -> int:
        return self._offsets[source]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._offsets))

    def __len__(self) -> int:
        return len(self._offsets)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, OffsetMap):
            return self._offsets == other._offsets
        if isinstance(other, Mapping):
            return self._offsets == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._offsets.items()))

    def __repr__(self) -> str:
        inner = ", ".join(f"{s}: {self._offsets[s]}" for s in self)
        return f"OffsetMap({{{inner}}})"

    def get(self, source: str, default: int = OFFSET_ZERO - 1) -> int:  # type: ignore[override]
        return self._offsets.get(source, default)

    # -- Progress --------------------------------------------------------------

    @property
    def size(self) -> int:
        """Number of events covered by this map across all sources."""
        return sum(offset - OFFSET_ZERO + 1 for offset in self._offsets.values())

    def contains(self, source: str, offset: int) -> bool:
        """True if the event at *offset* of *source* is already covered."""
        return offset <= self.get(source)

    def advance(self, source: str, offset: int) -> OffsetMap:
        """Return a map with *source* moved to *offset*, never backwards."""
        if offset <= self.get(source):
            return self
        return OffsetMap({**self._offsets, source: offset})

    def merge(self, other: Mapping[str, int]) -> OffsetMap:
        """Union of both maps, keeping the highest offset per source.

        Returns ``self`` when *other* is already covered.
        """
        merged = self
        for source, offset in other.items():
            merged = merged.advance(source, offset)
        return merged

    def behind(self, other: Mapping[str, int]) -> dict[str, int]:
        """Per-source count of events in ``self`` not accounted for in *other*."""
        result: dict[str, int] = {}
        for source, offset in self._offsets.items():
            missing = offset - other.get(source, OFFSET_ZERO - 1)
            if missing > 0:
                result[source] = missing
        return dict(sorted(result.items()))

    def size_delta(self, other: Mapping[str, int]) -> int:
        """Total number of events needed for *other* to catch up with ``self``."""
        return sum(self.behind(other).values())

    def to_dict(self) -> dict[str, int]:
        return {source: self._offsets[source] for source in self}
