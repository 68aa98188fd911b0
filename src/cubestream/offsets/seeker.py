from __future__ import annotations

from cubestream.config import Config
from cubestream.errors import ConfigurationError, ConsistencyError
from cubestream.logger import log
from cubestream.offsets.types import PartitionOffsetRange, SegmentOffsets
from cubestream.source import SourceClient


class OffsetSeeker:
    """Works out the next consumption range of a segment from live watermarks.

    Start offsets continue the prior segment of the lineage, else come from an
    explicitly requested range, else from the earliest offset still available.
    End offsets are a requested watermark or the high watermark at call time.
    """

    def __init__(self, config: Config, client: SourceClient):
        self.config = config
        self.client = client

    async def seek(
        self,
        source_identity: str,
        prior: SegmentOffsets | None = None,
        requested: SegmentOffsets | None = None,
    ) -> SegmentOffsets:
        partitions = await self.client.list_partitions()
        if prior is not None:
            self.check_partition_set(source_identity, prior.partitions, frozenset(partitions))

        ranges: list[PartitionOffsetRange] = []
        for p in sorted(partitions):
            low = await self.client.low_watermark(p)
            high = await self.client.high_watermark(p)

            prior_range = prior.get(p) if prior is not None else None
            requested_range = requested.get(p) if requested is not None else None

            if prior_range is not None:
                start = prior_range.end_offset
            elif requested_range is not None:
                start = requested_range.start_offset
            else:
                start = low

            end = requested_range.end_offset if requested_range is not None else high
            if end > high:
                log.warning(
                    "requested end offset beyond high watermark, clamping",
                    source=source_identity, partition=p, requested=end, high=high,
                )
                end = high

            if start < low:
                # retention already dropped part of the range, those offsets can never be read
                if self.config.RETENTION_GAP_POLICY != "skip":
                    raise ConsistencyError(
                        f"source {source_identity} partition {p}: offsets [{start}, {low}) "
                        f"expired before they were consumed"
                    )
                log.warning(
                    "skipping expired offsets, the lineage has a gap",
                    source=source_identity, partition=p, start=start, low=low,
                )
                start = min(low, end)

            # raises ConsistencyError on start > end
            ranges.append(PartitionOffsetRange(p, start, end))

        offsets = SegmentOffsets.of(ranges)
        log.info(
            "seeked segment offsets",
            source=source_identity,
            partitions=len(offsets),
            messages=offsets.total_messages,
        )
        return offsets

    def check_partition_set(
        self,
        source_identity: str,
        prior_partitions: frozenset[int],
        current_partitions: frozenset[int],
    ) -> None:
        added = current_partitions - prior_partitions
        removed = prior_partitions - current_partitions
        if removed:
            raise ConfigurationError(
                f"source {source_identity}: partitions {sorted(removed)} disappeared since the prior segment"
            )
        if added:
            if self.config.PARTITION_CHANGE_POLICY == "allow_added":
                log.warning(
                    "new partitions start from their earliest offset",
                    source=source_identity, added=sorted(added),
                )
                return
            raise ConfigurationError(
                f"source {source_identity}: partitions {sorted(added)} were added since the prior segment"
            )
