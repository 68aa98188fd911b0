from __future__ import annotations

import asyncio
from contextlib import aclosing

from cubestream.config import Config
from cubestream.errors import ConfigurationError, ConsistencyError, DataError, RejectionThresholdExceeded
from cubestream.jobs import JobContext, StepResult
from cubestream.jobs.constants import ARG_OUTPUT, ARG_SEGMENT_OFFSETS, STEP_SAVE_SOURCE_DATA
from cubestream.jobs.segment_step import SegmentStep
from cubestream.jobs.state import BuildState
from cubestream.logger import log
from cubestream.metadata import MaterializeStats, SegmentInfo, SegmentMetadataStore
from cubestream.offsets.types import PartitionOffsetRange
from cubestream.parsers import get_streaming_parser
from cubestream.parsers.base import ColumnRef, ParsedRow, StreamingParser
from cubestream.source import SourceClient, SourceClientFactory
from cubestream.staging import (
    OFFSET_COLUMN,
    PARTITION_COLUMN,
    TIMESTAMP_COLUMN,
    StagedPartition,
    StagingManifest,
    clear_manifest,
    commit_manifest,
    encode_parquet,
    partition_path,
    remove_stale_files,
    rows_to_table,
    timestamp_bounds,
    write_partition_file,
)

RESERVED_COLUMNS = {PARTITION_COLUMN, OFFSET_COLUMN, TIMESTAMP_COLUMN}


class FlatTableStep(SegmentStep):
    """Reads every committed partition range and stages it as the segment's flat table.

    One parquet file per partition, written to a fixed path so a retry overwrites the
    previous attempt. The manifest is written last and is what makes the output
    visible to the time range step and to table scans.
    """

    name = STEP_SAVE_SOURCE_DATA
    state = BuildState.MATERIALIZE

    def __init__(self, config: Config, metadata: SegmentMetadataStore, client_factory: SourceClientFactory):
        super().__init__(config, metadata)
        self.client_factory = client_factory

    async def run(self, ctx: JobContext, segment: SegmentInfo) -> StepResult:
        offsets = segment.offsets
        if offsets is None:
            raise ConsistencyError(f"segment {segment.id} has no committed offsets to materialize")
        passed = ctx.params.get(ARG_SEGMENT_OFFSETS)
        if passed and passed != offsets.to_json():
            raise ConsistencyError(
                f"segment {segment.id}: offsets in job params differ from committed offsets"
            )

        source = await self.metadata.get_source(segment.source_identity)
        columns = source.columns
        if not columns:
            raise ConfigurationError(f"source {source.identity} has no columns configured")
        clashing = RESERVED_COLUMNS & {c.name for c in columns}
        if clashing:
            raise ConfigurationError(f"source {source.identity} uses reserved column names {sorted(clashing)}")
        # resolved once, shared by every partition worker
        parser = get_streaming_parser(source.parser_name, source.parser_properties, columns)

        table_dir = self.output_dir(ctx, segment)
        store = self.config.store
        await clear_manifest(store, table_dir)

        client = self.client_factory(source)
        semaphore = asyncio.Semaphore(self.config.MATERIALIZE_CONCURRENCY)

        async def _bounded(rng: PartitionOffsetRange) -> StagedPartition:
            async with semaphore:
                return await materialize_partition(
                    client, parser, columns, rng, partition_path(table_dir, rng.partition), self.config
                )

        tasks = [asyncio.create_task(_bounded(rng)) for rng in offsets]
        try:
            staged = await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            await client.close()

        read = sum(p.messages_read for p in staged)
        rejected = sum(p.rejected for p in staged)
        ceiling = self.config.MAX_REJECTION_RATE
        if ceiling is not None and read > 0 and rejected / read > ceiling:
            raise RejectionThresholdExceeded(rejected, read, ceiling)

        await remove_stale_files(store, table_dir, keep={p.path for p in staged})
        manifest = StagingManifest(
            job_id=ctx.job_id,
            segment_id=segment.id,
            columns=[c.to_dict() for c in columns],
            segment_offsets=offsets.to_json(),
            partitions=list(staged),
        )
        await commit_manifest(store, table_dir, manifest)

        stats = MaterializeStats(
            input_records=read,
            rejected_records=rejected,
            input_bytes=sum(p.bytes_read for p in staged),
            rows_written=manifest.total_rows,
        )
        await self.metadata.commit_materialized(segment.id, stats)
        return StepResult(
            state=BuildState.FINALIZE_TIME_RANGE,
            output={ARG_OUTPUT: table_dir},
            stats={
                "input_records": stats.input_records,
                "rejected_records": stats.rejected_records,
                "rows_written": stats.rows_written,
                "input_bytes": stats.input_bytes,
            },
        )


async def materialize_partition(
    client: SourceClient,
    parser: StreamingParser,
    columns: tuple[ColumnRef, ...],
    rng: PartitionOffsetRange,
    path: str,
    config: Config,
) -> StagedPartition:
    rows: list[tuple[int, ParsedRow]] = []
    read = rejected = bytes_read = 0
    last_offset = -1

    if rng.size:
        low = await client.low_watermark(rng.partition)
        if rng.start_offset < low:
            raise ConsistencyError(
                f"partition {rng.partition}: offsets [{rng.start_offset}, {low}) expired before materialization"
            )

    async with aclosing(client.read(rng.partition, rng.start_offset, rng.end_offset)) as messages:
        async for msg in messages:
            if msg.offset >= rng.end_offset:
                break
            if msg.offset < rng.start_offset:
                continue
            if msg.offset <= last_offset:
                raise ConsistencyError(
                    f"partition {rng.partition}: offset {msg.offset} arrived after {last_offset}"
                )
            last_offset = msg.offset
            read += 1
            bytes_read += len(msg.payload)
            try:
                row = parser.parse(msg.payload)
            except DataError as e:
                rejected += 1
                log.debug("message rejected", partition=rng.partition, offset=msg.offset, reason=str(e))
                continue
            if row.timestamp_ms is None and msg.timestamp_ms is not None:
                row = ParsedRow(values=row.values, timestamp_ms=msg.timestamp_ms)
            rows.append((msg.offset, row))

    table = rows_to_table(columns, rng.partition, rows)
    data = encode_parquet(table, config.PARQUET_COMPRESSION)
    await write_partition_file(config.store, path, data)
    min_ts, max_ts = timestamp_bounds(table)

    if rejected:
        log.warning("partition had rejected messages", partition=rng.partition, rejected=rejected, read=read)
    log.info(
        "partition materialized",
        partition=rng.partition,
        start=rng.start_offset,
        end=rng.end_offset,
        rows=len(rows),
    )
    return StagedPartition(
        partition=rng.partition,
        path=path,
        start_offset=rng.start_offset,
        end_offset=rng.end_offset,
        messages_read=read,
        rows=len(rows),
        rejected=rejected,
        bytes_read=bytes_read,
        file_bytes=len(data),
        min_timestamp_ms=min_ts,
        max_timestamp_ms=max_ts,
    )
