from __future__ import annotations

from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cubestream.models import SegmentPartitionOffset
from cubestream.offsets.types import PartitionOffsetRange, SegmentOffsets


async def load_segment_offsets(session: AsyncSession, segment_id: str) -> SegmentOffsets | None:
    rows = (
        await session.execute(
            select(SegmentPartitionOffset)
            .where(SegmentPartitionOffset.segment_id == segment_id)
            .order_by(SegmentPartitionOffset.partition_number)
        )
    ).scalars().all()
    if not rows:
        return None
    return SegmentOffsets.of(
        PartitionOffsetRange(r.partition_number, r.start_offset, r.end_offset) for r in rows
    )


async def load_many_segment_offsets(
    session: AsyncSession, segment_ids: Sequence[str]
) -> dict[str, SegmentOffsets]:
    if not segment_ids:
        return {}
    rows = (
        await session.execute(
            select(SegmentPartitionOffset)
            .where(SegmentPartitionOffset.segment_id.in_(segment_ids))
            .order_by(SegmentPartitionOffset.segment_id, SegmentPartitionOffset.partition_number)
        )
    ).scalars().all()
    grouped: dict[str, list[PartitionOffsetRange]] = {}
    for r in rows:
        grouped.setdefault(r.segment_id, []).append(
            PartitionOffsetRange(r.partition_number, r.start_offset, r.end_offset)
        )
    return {sid: SegmentOffsets.of(ranges) for sid, ranges in grouped.items()}


async def replace_segment_offsets(
    session: AsyncSession, segment_id: str, offsets: SegmentOffsets
) -> None:
    """Overwrite, never append: re-seeking a segment leaves exactly one row per partition."""
    await session.execute(
        delete(SegmentPartitionOffset).where(SegmentPartitionOffset.segment_id == segment_id)
    )
    session.add_all(
        [
            SegmentPartitionOffset(
                segment_id=segment_id,
                partition_number=r.partition,
                start_offset=r.start_offset,
                end_offset=r.end_offset,
            )
            for r in offsets
        ]
    )
    await session.flush()
