from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping

from cubestream.errors import ConsistencyError


@dataclass(frozen=True, slots=True)
class PartitionOffsetRange:
    partition: int
    start_offset: int  # inclusive
    end_offset: int  # exclusive

    def __post_init__(self):
        if self.start_offset < 0:
            raise ConsistencyError(
                f"partition {self.partition}: negative start offset {self.start_offset}"
            )
        if self.start_offset > self.end_offset:
            raise ConsistencyError(
                f"partition {self.partition}: start offset {self.start_offset} "
                f"is after end offset {self.end_offset}"
            )

    @property
    def size(self) -> int:
        return self.end_offset - self.start_offset

    def contains(self, offset: int) -> bool:
        return self.start_offset <= offset < self.end_offset


@dataclass(frozen=True, slots=True)
class SegmentOffsets:
    """Consumption range of one segment, one entry per partition sorted by partition id."""

    ranges: tuple[PartitionOffsetRange, ...]

    def __post_init__(self):
        ordered = tuple(sorted(self.ranges, key=lambda r: r.partition))
        seen: set[int] = set()
        for r in ordered:
            if r.partition in seen:
                raise ConsistencyError(f"partition {r.partition} listed twice in segment offsets")
            seen.add(r.partition)
        object.__setattr__(self, "ranges", ordered)

    @classmethod
    def of(cls, ranges: Iterable[PartitionOffsetRange]) -> SegmentOffsets:
        return cls(tuple(ranges))

    @classmethod
    def from_bounds(cls, starts: Mapping[int, int], ends: Mapping[int, int]) -> SegmentOffsets:
        if set(starts) != set(ends):
            raise ConsistencyError(
                f"start partitions {sorted(starts)} do not match end partitions {sorted(ends)}"
            )
        return cls(tuple(PartitionOffsetRange(p, starts[p], ends[p]) for p in starts))

    def __iter__(self) -> Iterator[PartitionOffsetRange]:
        return iter(self.ranges)

    def __len__(self) -> int:
        return len(self.ranges)

    @property
    def partitions(self) -> frozenset[int]:
        return frozenset(r.partition for r in self.ranges)

    def get(self, partition: int) -> PartitionOffsetRange | None:
        for r in self.ranges:
            if r.partition == partition:
                return r
        return None

    def starts(self) -> dict[int, int]:
        return {r.partition: r.start_offset for r in self.ranges}

    def ends(self) -> dict[int, int]:
        return {r.partition: r.end_offset for r in self.ranges}

    @property
    def total_messages(self) -> int:
        return sum(r.size for r in self.ranges)

    @property
    def is_empty(self) -> bool:
        return self.total_messages == 0

    def to_json(self) -> str:
        return json.dumps(
            [[r.partition, r.start_offset, r.end_offset] for r in self.ranges],
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> SegmentOffsets:
        try:
            items = json.loads(raw)
            return cls(tuple(PartitionOffsetRange(int(p), int(s), int(e)) for p, s, e in items))
        except (TypeError, ValueError) as e:
            raise ConsistencyError(f"malformed segment offsets: {raw!r}") from e


@dataclass(frozen=True, slots=True)
class SegmentTimeRange:
    start_ms: int
    end_ms: int  # exclusive

    def __post_init__(self):
        if self.start_ms > self.end_ms:
            raise ConsistencyError(
                f"time range start {self.start_ms} is after end {self.end_ms}"
            )

    @classmethod
    def from_min_max(cls, min_ts_ms: int, max_ts_ms: int) -> SegmentTimeRange:
        return cls(start_ms=min_ts_ms, end_ms=max_ts_ms + 1)

    @classmethod
    def union(cls, ranges: Iterable[SegmentTimeRange]) -> SegmentTimeRange | None:
        ranges = list(ranges)
        if not ranges:
            return None
        return cls(
            start_ms=min(r.start_ms for r in ranges),
            end_ms=max(r.end_ms for r in ranges),
        )
