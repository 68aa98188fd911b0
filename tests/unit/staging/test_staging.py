from unittest.mock import MagicMock

import pytest
from obstore.store import MemoryStore

from cubestream.errors import ConsistencyError
from cubestream.parsers.base import ColumnRef, ParsedRow
from cubestream.staging import (
    OFFSET_COLUMN,
    PARTITION_COLUMN,
    TIMESTAMP_COLUMN,
    StagedPartition,
    StagingManifest,
    clear_manifest,
    commit_manifest,
    encode_parquet,
    flat_table_dir,
    list_paths,
    manifest_path,
    partition_path,
    read_manifest,
    read_partition_table,
    remove_stale_files,
    rows_to_table,
    timestamp_bounds,
    write_partition_file,
)

COLUMNS = (ColumnRef("id"), ColumnRef("amount"))


def staged(partition: int, path: str, rows: int = 2) -> StagedPartition:
    return StagedPartition(
        partition=partition,
        path=path,
        start_offset=0,
        end_offset=rows,
        messages_read=rows,
        rows=rows,
        rejected=0,
        bytes_read=10 * rows,
        file_bytes=123,
        min_timestamp_ms=1_000,
        max_timestamp_ms=2_000,
    )


def test_paths_are_deterministic():
    cfg = MagicMock()
    cfg.STAGING_PREFIX = "/jobs/"
    table_dir = flat_table_dir(cfg, "job-1", "orders_cube", "seg-1")
    assert table_dir == "jobs/job-1/orders_cube/seg-1/flat_table"
    assert partition_path(table_dir, 3) == f"{table_dir}/partition=3.parquet"
    assert manifest_path(table_dir + "/") == f"{table_dir}/_manifest.json"


def test_rows_to_table_appends_bookkeeping_columns():
    rows = [
        (10, ParsedRow(values=("1", "2.5"), timestamp_ms=5_000)),
        (12, ParsedRow(values=("2", None), timestamp_ms=None)),
        (11, ParsedRow(values=("3", "1.0"), timestamp_ms=3_000)),
    ]
    table = rows_to_table(COLUMNS, 4, rows)
    assert table.column_names == ["id", "amount", PARTITION_COLUMN, OFFSET_COLUMN, TIMESTAMP_COLUMN]
    assert table.column("amount").to_pylist() == ["2.5", None, "1.0"]
    assert table.column(PARTITION_COLUMN).to_pylist() == [4, 4, 4]
    assert table.column(OFFSET_COLUMN).to_pylist() == [10, 12, 11]
    assert timestamp_bounds(table) == (3_000, 5_000)


def test_timestamp_bounds_of_empty_table():
    assert timestamp_bounds(rows_to_table(COLUMNS, 0, [])) == (None, None)


def test_encoding_is_byte_identical_for_same_rows():
    rows = [(i, ParsedRow(values=(str(i), "x"), timestamp_ms=i)) for i in range(50)]
    a = encode_parquet(rows_to_table(COLUMNS, 0, rows))
    b = encode_parquet(rows_to_table(COLUMNS, 0, rows))
    assert a == b


def test_manifest_json_round_trip():
    manifest = StagingManifest(
        job_id="job-1",
        segment_id="seg-1",
        columns=[c.to_dict() for c in COLUMNS],
        segment_offsets="[[0,0,2],[1,0,3]]",
        partitions=[staged(0, "d/partition=0.parquet"), staged(1, "d/partition=1.parquet", rows=3)],
    )
    restored = StagingManifest.from_bytes(manifest.to_bytes())
    assert restored == manifest
    assert restored.total_rows == 5
    assert restored.total_rejected == 0


@pytest.mark.asyncio
async def test_read_manifest_missing_is_consistency_error():
    store = MemoryStore()
    with pytest.raises(ConsistencyError, match="no committed flat table"):
        await read_manifest(store, "jobs/j/c/s/flat_table")


@pytest.mark.asyncio
async def test_commit_then_clear_manifest():
    store = MemoryStore()
    table_dir = "jobs/j/c/s/flat_table"
    manifest = StagingManifest("j", "s", [], "[]", [])
    await commit_manifest(store, table_dir, manifest)
    assert await read_manifest(store, table_dir) == manifest

    await clear_manifest(store, table_dir)
    assert await list_paths(store, table_dir) == []
    # clearing twice is fine
    await clear_manifest(store, table_dir)


@pytest.mark.asyncio
async def test_partition_file_overwritten_and_stale_files_removed():
    store = MemoryStore()
    table_dir = "jobs/j/c/s/flat_table"
    table = rows_to_table(COLUMNS, 0, [(0, ParsedRow(values=("1", "1"), timestamp_ms=1))])
    path0 = partition_path(table_dir, 0)
    await write_partition_file(store, path0, b"garbage from a failed attempt")
    await write_partition_file(store, path0, encode_parquet(table))
    await write_partition_file(store, partition_path(table_dir, 9), b"left over")

    await remove_stale_files(store, table_dir, keep={path0})

    assert await list_paths(store, table_dir) == [path0]
    restored = await read_partition_table(store, path0)
    assert restored.column("id").to_pylist() == ["1"]
