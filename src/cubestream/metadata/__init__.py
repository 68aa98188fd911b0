from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Sequence

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cubestream.config import Config
from cubestream.errors import ConfigurationError, ConsistencyError
from cubestream.jobs.state import BuildState, check_can_run, check_transition
from cubestream.logger import log
from cubestream.models import Segment, SegmentMergeSource, StreamingSource
from cubestream.offsets.store import (
    load_many_segment_offsets,
    load_segment_offsets,
    replace_segment_offsets,
)
from cubestream.offsets.types import PartitionOffsetRange, SegmentOffsets, SegmentTimeRange
from cubestream.source import SourceConfig

# build states in which a segment holds committed offsets
OFFSETS_COMMITTED_STATES = (
    BuildState.MATERIALIZE.value,
    BuildState.FINALIZE_TIME_RANGE.value,
    BuildState.DONE.value,
)


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _consumption_order(a: SegmentInfo, b: SegmentInfo) -> int:
    # compares the first partition both segments consumed
    if a.offsets is None or b.offsets is None:
        return 0
    shared = a.offsets.partitions & b.offsets.partitions
    if not shared:
        return 0
    p = min(shared)
    return a.offsets.get(p).start_offset - b.offsets.get(p).start_offset


@dataclass(frozen=True)
class SegmentInfo:
    id: str
    cube_name: str
    source_identity: str
    name: str | None
    status: str
    build_state: BuildState
    failed_state: BuildState | None
    last_error: str | None
    offsets: SegmentOffsets | None
    time_range: SegmentTimeRange | None
    input_records: int | None
    rejected_records: int | None
    materialized: bool

    @classmethod
    def from_model(cls, seg: Segment, offsets: SegmentOffsets | None) -> SegmentInfo:
        time_range = None
        if seg.time_range_start is not None and seg.time_range_end is not None:
            time_range = SegmentTimeRange(seg.time_range_start, seg.time_range_end)
        return cls(
            id=seg.id,
            cube_name=seg.cube_name,
            source_identity=seg.source_identity,
            name=seg.name,
            status=seg.status,
            build_state=BuildState(seg.build_state),
            failed_state=BuildState(seg.failed_state) if seg.failed_state else None,
            last_error=seg.last_error,
            offsets=offsets,
            time_range=time_range,
            input_records=seg.input_records,
            rejected_records=seg.rejected_records,
            materialized=seg.materialized_at is not None,
        )


@dataclass(frozen=True)
class MaterializeStats:
    input_records: int
    rejected_records: int
    input_bytes: int
    rows_written: int


class SegmentMetadataStore:
    """Segment metadata: offsets, time range, build state and merge lineage.

    Every commit runs in its own transaction so a step's result and the state it
    moves the segment to become visible together.
    """

    def __init__(self, config: Config):
        assert config.async_session_factory is not None
        self.config = config

    # sources

    async def register_source(self, source: SourceConfig) -> None:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                row = await session.get(StreamingSource, source.identity)
                if row is None:
                    row = StreamingSource(identity=source.identity)
                    session.add(row)
                row.topic = source.topic
                row.bootstrap_servers = source.bootstrap_servers
                row.parser_name = source.parser_name
                row.parser_properties = dict(source.parser_properties)
                row.columns = [c.to_dict() for c in source.columns]
                row.timeout_ms = source.timeout_ms

    async def get_source(self, identity: str) -> SourceConfig:
        async with self.config.async_session_factory() as session:
            row = await session.get(StreamingSource, identity)
            if row is None:
                raise ConfigurationError(f"no streaming source registered as {identity}")
            return SourceConfig.from_model(row)

    # segments

    async def create_segment(
        self,
        cube_name: str,
        source_identity: str,
        *,
        segment_id: str | None = None,
        name: str | None = None,
        requested: SegmentOffsets | None = None,
    ) -> str:
        segment_id = segment_id or str(uuid.uuid4())
        async with self.config.async_session_factory() as session:
            async with session.begin():
                session.add(
                    Segment(
                        id=segment_id,
                        cube_name=cube_name,
                        source_identity=source_identity,
                        name=name,
                        status="NEW",
                        build_state=BuildState.PENDING.value,
                    )
                )
                await session.flush()
                if requested is not None:
                    # explicit ranges are kept until the seek step replaces them
                    await replace_segment_offsets(session, segment_id, requested)
        log.info("segment created", segment=segment_id, cube=cube_name, source=source_identity)
        return segment_id

    async def create_merged_segment(
        self, cube_name: str, source_segment_ids: Sequence[str], *, name: str | None = None
    ) -> str:
        if len(source_segment_ids) < 2:
            raise ConsistencyError("a merge needs at least two segments")
        segment_id = str(uuid.uuid4())
        async with self.config.async_session_factory() as session:
            async with session.begin():
                sources = (
                    await session.execute(select(Segment).where(Segment.id.in_(source_segment_ids)))
                ).scalars().all()
                if len(sources) != len(set(source_segment_ids)):
                    raise ConfigurationError(f"unknown segments in {list(source_segment_ids)}")
                identities = {s.source_identity for s in sources}
                if len(identities) != 1:
                    raise ConsistencyError(f"cannot merge segments of different sources: {sorted(identities)}")
                not_ready = [s.id for s in sources if s.status != "READY"]
                if not_ready:
                    raise ConsistencyError(f"segments {not_ready} are not READY")
                session.add(
                    Segment(
                        id=segment_id,
                        cube_name=cube_name,
                        source_identity=identities.pop(),
                        name=name,
                        status="NEW",
                        build_state=BuildState.PENDING.value,
                    )
                )
                await session.flush()
                session.add_all(
                    [
                        SegmentMergeSource(merged_segment_id=segment_id, source_segment_id=sid)
                        for sid in source_segment_ids
                    ]
                )
        log.info("merged segment created", segment=segment_id, sources=list(source_segment_ids))
        return segment_id

    async def _load(self, session: AsyncSession, segment_id: str, *, for_update: bool = False) -> Segment:
        stmt = select(Segment).where(Segment.id == segment_id)
        if for_update:
            stmt = stmt.with_for_update()
        seg = (await session.execute(stmt)).scalar_one_or_none()
        if seg is None:
            raise ConfigurationError(f"segment {segment_id} not found")
        return seg

    async def get_segment(self, segment_id: str) -> SegmentInfo:
        async with self.config.async_session_factory() as session:
            seg = await self._load(session, segment_id)
            offsets = await load_segment_offsets(session, segment_id)
            return SegmentInfo.from_model(seg, offsets)

    async def prior_segment_offsets(self, segment_id: str) -> SegmentOffsets | None:
        """End of the lineage this segment continues.

        Every segment of the same cube and source whose offsets are committed counts,
        finished or still building, so a new build never overlaps one in flight.
        Each partition continues from the furthest end any of them reached.
        """
        async with self.config.async_session_factory() as session:
            seg = await self._load(session, segment_id)
            lineage_ids = (
                await session.execute(
                    select(Segment.id).where(
                        Segment.cube_name == seg.cube_name,
                        Segment.source_identity == seg.source_identity,
                        Segment.status.in_(("NEW", "READY")),
                        or_(
                            Segment.build_state.in_(OFFSETS_COMMITTED_STATES),
                            and_(
                                Segment.build_state == BuildState.FAILED.value,
                                Segment.failed_state.in_(OFFSETS_COMMITTED_STATES),
                            ),
                        ),
                        Segment.id != segment_id,
                    )
                )
            ).scalars().all()
            candidates = await load_many_segment_offsets(session, list(lineage_ids))
        if not candidates:
            return None
        furthest: dict[int, PartitionOffsetRange] = {}
        for offsets in candidates.values():
            for rng in offsets:
                current = furthest.get(rng.partition)
                if current is None or rng.end_offset > current.end_offset:
                    furthest[rng.partition] = rng
        return SegmentOffsets.of(furthest.values())

    async def merging_segments(self, merged_segment_id: str) -> list[SegmentInfo]:
        async with self.config.async_session_factory() as session:
            source_ids = (
                await session.execute(
                    select(SegmentMergeSource.source_segment_id).where(
                        SegmentMergeSource.merged_segment_id == merged_segment_id
                    )
                )
            ).scalars().all()
            if not source_ids:
                raise ConsistencyError(f"segment {merged_segment_id} has no merge sources")
            rows = (
                await session.execute(
                    select(Segment).where(Segment.id.in_(source_ids)).order_by(Segment.created_at, Segment.id)
                )
            ).scalars().all()
            offsets = await load_many_segment_offsets(session, list(source_ids))
        infos = [SegmentInfo.from_model(s, offsets.get(s.id)) for s in rows]
        # stable, so creation order decides between segments sharing no partition
        return sorted(infos, key=cmp_to_key(_consumption_order))

    # state transitions

    async def begin_step(self, segment_id: str, step: BuildState, job_id: str) -> SegmentInfo:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, segment_id, for_update=True)
                current = BuildState(seg.build_state)
                failed = BuildState(seg.failed_state) if seg.failed_state else None
                check_can_run(step, current, failed)
                seg.build_state = step.value
                seg.failed_state = None
                seg.last_job_id = job_id
                offsets = await load_segment_offsets(session, segment_id)
                info = SegmentInfo.from_model(seg, offsets)
        return info

    async def commit_offsets(
        self,
        segment_id: str,
        offsets: SegmentOffsets,
        next_state: BuildState = BuildState.MATERIALIZE,
    ) -> None:
        check_transition(BuildState.SEEK_OFFSETS, next_state)
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, segment_id, for_update=True)
                if seg.materialized_at is not None:
                    raise ConsistencyError(
                        f"segment {segment_id} is already materialized, its offsets are frozen"
                    )
                await replace_segment_offsets(session, segment_id, offsets)
                seg.build_state = next_state.value
        log.info(
            "segment offsets committed",
            segment=segment_id,
            next_state=next_state.value,
            messages=offsets.total_messages,
        )

    async def commit_materialized(self, segment_id: str, stats: MaterializeStats) -> None:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, segment_id, for_update=True)
                seg.input_records = stats.input_records
                seg.rejected_records = stats.rejected_records
                seg.input_bytes = stats.input_bytes
                seg.materialized_at = utc_now()
                seg.build_state = BuildState.FINALIZE_TIME_RANGE.value

    async def commit_time_range(
        self,
        segment_id: str,
        time_range: SegmentTimeRange | None,
        next_state: BuildState = BuildState.DONE,
    ) -> None:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, segment_id, for_update=True)
                if time_range is not None:
                    seg.time_range_start = time_range.start_ms
                    seg.time_range_end = time_range.end_ms
                seg.build_state = next_state.value
                if next_state == BuildState.DONE:
                    seg.status = "READY"
        log.info(
            "segment time range committed",
            segment=segment_id,
            start=None if time_range is None else time_range.start_ms,
            end=None if time_range is None else time_range.end_ms,
        )

    async def commit_merge(
        self,
        merged_segment_id: str,
        offsets: SegmentOffsets,
        time_range: SegmentTimeRange | None,
        source_segment_ids: Sequence[str],
    ) -> None:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, merged_segment_id, for_update=True)
                await replace_segment_offsets(session, merged_segment_id, offsets)
                if time_range is not None:
                    seg.time_range_start = time_range.start_ms
                    seg.time_range_end = time_range.end_ms
                seg.input_records = offsets.total_messages
                seg.build_state = BuildState.DONE.value
                seg.status = "READY"
                await session.execute(
                    update(Segment)
                    .where(Segment.id.in_(list(source_segment_ids)))
                    .values(status="MERGED")
                )
        log.info("merged segment committed", segment=merged_segment_id, sources=list(source_segment_ids))

    async def discard(self, segment_id: str, reason: str) -> None:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, segment_id, for_update=True)
                seg.status = "DISCARDED"
                seg.build_state = BuildState.DISCARDED.value
                seg.last_error = reason
        log.info("segment discarded", segment=segment_id, reason=reason)

    async def mark_failed(self, segment_id: str, step: BuildState, error: BaseException) -> None:
        async with self.config.async_session_factory() as session:
            async with session.begin():
                seg = await self._load(session, segment_id, for_update=True)
                seg.build_state = BuildState.FAILED.value
                seg.failed_state = step.value
                seg.last_error = f"{type(error).__name__}: {error}"
