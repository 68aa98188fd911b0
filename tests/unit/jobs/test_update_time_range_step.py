import obstore as obs
import pytest

from cubestream.errors import ConsistencyError
from cubestream.jobs import JobContext
from cubestream.jobs.constants import ARG_OUTPUT, ARG_SEGMENT_ID
from cubestream.jobs.flat_table_step import FlatTableStep
from cubestream.jobs.seek_offset_step import SeekOffsetStep
from cubestream.jobs.state import BuildState
from cubestream.jobs.update_time_range_step import UpdateTimeRangeStep
from cubestream.offsets.types import SegmentTimeRange
from cubestream.staging import StagingManifest, commit_manifest, manifest_path
from tests.utils.seed import BASE_TS_MS, fill_orders, order_payload

OUT = "jobs/job-1/orders_cube/seg/flat_table"


def ctx_for(segment_id: str) -> JobContext:
    return JobContext(job_id="job-1", params={ARG_SEGMENT_ID: segment_id, ARG_OUTPUT: OUT})


@pytest.fixture
def materialized_segment(config, metadata, client_factory, segment_factory):
    async def _build() -> str:
        segment_id = await segment_factory()
        await SeekOffsetStep(config, metadata, client_factory).execute(ctx_for(segment_id))
        await FlatTableStep(config, metadata, client_factory).execute(ctx_for(segment_id))
        return segment_id

    return _build


@pytest.mark.asyncio
async def test_time_range_spans_all_partitions(config, metadata, source_client, materialized_segment):
    source_client.add_partition(1)
    fill_orders(source_client, 0, 100, malformed_every=50)
    fill_orders(source_client, 1, 10, ts_start_ms=BASE_TS_MS - 60_000)
    segment_id = await materialized_segment()

    result = await UpdateTimeRangeStep(config, metadata).execute(ctx_for(segment_id))

    expected = SegmentTimeRange(BASE_TS_MS - 60_000, BASE_TS_MS + 99_000 + 1)
    assert result.state == BuildState.DONE
    assert result.stats == {"start_ms": expected.start_ms, "end_ms": expected.end_ms}
    seg = await metadata.get_segment(segment_id)
    assert seg.time_range == expected
    assert seg.status == "READY"
    assert seg.build_state == BuildState.DONE


@pytest.mark.asyncio
async def test_no_timestamps_leaves_range_unset(config, metadata, source_client, materialized_segment):
    source_client.produce(0, order_payload(1, None))
    segment_id = await materialized_segment()

    result = await UpdateTimeRangeStep(config, metadata).execute(ctx_for(segment_id))

    assert result.stats == {}
    seg = await metadata.get_segment(segment_id)
    assert seg.time_range is None
    assert seg.status == "READY"


@pytest.mark.asyncio
async def test_manifest_from_other_offsets_rejected(config, metadata, source_client, materialized_segment):
    fill_orders(source_client, 0, 10)
    segment_id = await materialized_segment()
    await commit_manifest(config.store, OUT, StagingManifest("job-0", segment_id, [], "[[0,0,3]]", []))

    with pytest.raises(ConsistencyError, match="different offsets"):
        await UpdateTimeRangeStep(config, metadata).execute(ctx_for(segment_id))

    seg = await metadata.get_segment(segment_id)
    assert seg.build_state == BuildState.FAILED
    assert seg.failed_state == BuildState.FINALIZE_TIME_RANGE
    assert seg.time_range is None


@pytest.mark.asyncio
async def test_missing_manifest_rejected(config, metadata, source_client, materialized_segment):
    fill_orders(source_client, 0, 10)
    segment_id = await materialized_segment()
    await obs.delete_async(config.store, manifest_path(OUT))

    with pytest.raises(ConsistencyError, match="no committed flat table"):
        await UpdateTimeRangeStep(config, metadata).execute(ctx_for(segment_id))
