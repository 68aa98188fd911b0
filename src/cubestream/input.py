from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import AsyncIterator

from cubestream.config import Config
from cubestream.jobs import ChainedJob
from cubestream.jobs.constants import (
    ARG_CUBE_NAME,
    ARG_JOB_ID,
    ARG_JOB_NAME,
    ARG_OUTPUT,
    ARG_SEGMENT_ID,
    save_data_job_name,
)
from cubestream.jobs.flat_table_step import FlatTableStep
from cubestream.jobs.merge_offset_step import MergeOffsetStep
from cubestream.jobs.seek_offset_step import SeekOffsetStep
from cubestream.jobs.segment_step import SegmentStep
from cubestream.jobs.update_time_range_step import UpdateTimeRangeStep
from cubestream.metadata import SegmentMetadataStore
from cubestream.parsers import get_streaming_parser
from cubestream.source import SourceClientFactory, SourceConfig
from cubestream.staging import flat_table_dir, read_manifest, read_partition_table


@dataclass(frozen=True)
class FreshBuild:
    segment_id: str


@dataclass(frozen=True)
class MergeBuild:
    segment_id: str


BuildTrigger = FreshBuild | MergeBuild


class StreamTableInputFormat:
    """Column-schema driven row decoder for one streaming source.

    ``parse_mapper_input`` turns a raw payload into the flat table's string values;
    ``scan`` yields the rows of a committed staged flat table in partition then
    offset order, so consumers read both the same way whichever parser built them.
    """

    def __init__(self, config: Config, source: SourceConfig):
        self.config = config
        self.source = source
        self.columns = source.columns
        self.parser = get_streaming_parser(source.parser_name, source.parser_properties, source.columns)

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def parse_mapper_input(self, payload: bytes) -> list[str | None]:
        return list(self.parser.parse(payload).values)

    async def scan(self, table_dir: str) -> AsyncIterator[list[str | None]]:
        manifest = await read_manifest(self.config.store, table_dir)
        names = self.column_names
        for staged in sorted(manifest.partitions, key=lambda p: p.partition):
            if staged.rows == 0:
                continue
            table = await read_partition_table(self.config.store, staged.path)
            for record in table.select(names).to_pylist():
                yield [record[n] for n in names]


class StreamingInput:
    """Entry point for cube builds over a streaming source.

    A fresh build seeks, materializes and finalizes the time range; a merge build
    only merges the offsets (and time ranges) of the segments it replaces.
    """

    def __init__(self, config: Config, metadata: SegmentMetadataStore, client_factory: SourceClientFactory):
        self.config = config
        self.metadata = metadata
        self.client_factory = client_factory

    async def create_job(self, trigger: BuildTrigger, job_id: str | None = None) -> ChainedJob:
        segment = await self.metadata.get_segment(trigger.segment_id)
        job_id = job_id or str(uuid.uuid4())
        params = {
            ARG_CUBE_NAME: segment.cube_name,
            ARG_SEGMENT_ID: segment.id,
            ARG_JOB_ID: job_id,
        }

        match trigger:
            case FreshBuild():
                params[ARG_OUTPUT] = flat_table_dir(self.config, job_id, segment.cube_name, segment.id)
                params[ARG_JOB_NAME] = save_data_job_name(segment.cube_name)
                job = ChainedJob(job_id, f"BUILD {segment.cube_name} {segment.id}", params)
                self.add_flat_table_steps(job)
                job.add_task(UpdateTimeRangeStep(self.config, self.metadata))
            case MergeBuild():
                job = ChainedJob(job_id, f"MERGE {segment.cube_name} {segment.id}", params)
                job.add_task(MergeOffsetStep(self.config, self.metadata))
        return job

    def add_flat_table_steps(self, job: ChainedJob) -> None:
        job.add_task(SeekOffsetStep(self.config, self.metadata, self.client_factory))
        job.add_task(FlatTableStep(self.config, self.metadata, self.client_factory))

    def step(self, name: str) -> SegmentStep:
        """A single step, for schedulers that invoke steps one at a time."""
        match name:
            case "seek":
                return SeekOffsetStep(self.config, self.metadata, self.client_factory)
            case "materialize":
                return FlatTableStep(self.config, self.metadata, self.client_factory)
            case "finalize":
                return UpdateTimeRangeStep(self.config, self.metadata)
            case "merge":
                return MergeOffsetStep(self.config, self.metadata)
        raise ValueError(f"unknown step: {name}")

    async def table_input_format(self, source_identity: str) -> StreamTableInputFormat:
        source = await self.metadata.get_source(source_identity)
        return StreamTableInputFormat(self.config, source)


STEP_NAMES = ("seek", "materialize", "finalize", "merge")
