import json

from cubestream.jobs.state import BuildState
from cubestream.metadata import MaterializeStats, SegmentMetadataStore
from cubestream.offsets.types import SegmentOffsets, SegmentTimeRange
from cubestream.parsers.base import ColumnRef
from cubestream.source import SourceConfig
from tests.utils.source import FakeSourceClient

SOURCE_ID = "DEFAULT.ORDERS"
BASE_TS_MS = 1_700_000_000_000  # 2023-11-14T22:13:20Z

ORDER_COLUMNS = (
    ColumnRef("id", "bigint"),
    ColumnRef("amount", "double"),
    ColumnRef("user_country"),
    ColumnRef("timestamp", "bigint"),
    ColumnRef("day_start", "date"),
)


def order_source(identity: str = SOURCE_ID, **properties) -> SourceConfig:
    return SourceConfig(
        identity=identity,
        topic="orders",
        bootstrap_servers="localhost:9092",
        parser_name="json",
        parser_properties=properties,
        columns=ORDER_COLUMNS,
    )


def order_payload(order_id: int, ts_ms: int | None) -> bytes:
    body = {"id": order_id, "amount": order_id * 1.5, "user": {"country": "NL"}}
    if ts_ms is not None:
        body["timestamp"] = ts_ms
    return json.dumps(body).encode()


def fill_orders(
    client: FakeSourceClient,
    partition: int,
    count: int,
    *,
    ts_start_ms: int = BASE_TS_MS,
    ts_step_ms: int = 1000,
    malformed_every: int | None = None,
) -> None:
    """Append ``count`` orders; with ``malformed_every=n`` every n-th offset (from 5) is garbage."""
    for _ in range(count):
        offset = client.next_offset(partition)
        if malformed_every and offset % malformed_every == 5:
            client.produce(partition, b"{not json")
            continue
        ts = ts_start_ms + offset * ts_step_ms
        client.produce(partition, order_payload(offset, ts))


async def make_ready_segment(
    metadata: SegmentMetadataStore,
    cube_name: str,
    source_identity: str,
    offsets: SegmentOffsets,
    time_range: SegmentTimeRange | None = None,
) -> str:
    """Walk a segment through the commit sequence of a fresh build without reading any data."""
    segment_id = await metadata.create_segment(cube_name, source_identity, requested=offsets)
    await metadata.commit_offsets(segment_id, offsets, BuildState.MATERIALIZE)
    await metadata.commit_materialized(
        segment_id,
        MaterializeStats(
            input_records=offsets.total_messages,
            rejected_records=0,
            input_bytes=0,
            rows_written=offsets.total_messages,
        ),
    )
    await metadata.commit_time_range(segment_id, time_range, BuildState.DONE)
    return segment_id
