from __future__ import annotations

import io
import json
from dataclasses import asdict, dataclass, field
from typing import Sequence

import obstore as obs
import pyarrow as pa
import pyarrow.compute as pc
import pyarrow.parquet as pq

from cubestream.config import Config, ObjectStore
from cubestream.errors import ConsistencyError
from cubestream.parsers.base import ColumnRef, ParsedRow

MANIFEST_NAME = "_manifest.json"

# bookkeeping columns appended after the flat table columns
PARTITION_COLUMN = "__partition"
OFFSET_COLUMN = "__offset"
TIMESTAMP_COLUMN = "__timestamp_ms"


def flat_table_dir(config: Config, job_id: str, cube_name: str, segment_id: str) -> str:
    prefix = config.STAGING_PREFIX.strip("/")
    return f"{prefix}/{job_id}/{cube_name}/{segment_id}/flat_table"


def partition_path(table_dir: str, partition: int) -> str:
    return f"{table_dir.rstrip('/')}/partition={partition}.parquet"


def manifest_path(table_dir: str) -> str:
    return f"{table_dir.rstrip('/')}/{MANIFEST_NAME}"


def staging_schema(columns: Sequence[ColumnRef]) -> pa.Schema:
    fields = [pa.field(c.name, pa.string()) for c in columns]
    fields += [
        pa.field(PARTITION_COLUMN, pa.int32(), nullable=False),
        pa.field(OFFSET_COLUMN, pa.int64(), nullable=False),
        pa.field(TIMESTAMP_COLUMN, pa.int64()),
    ]
    return pa.schema(fields)


def rows_to_table(
    columns: Sequence[ColumnRef],
    partition: int,
    rows: Sequence[tuple[int, ParsedRow]],
) -> pa.Table:
    data: dict[str, list] = {c.name: [] for c in columns}
    offsets: list[int] = []
    timestamps: list[int | None] = []
    for offset, row in rows:
        for col, value in zip(columns, row.values):
            data[col.name].append(value)
        offsets.append(offset)
        timestamps.append(row.timestamp_ms)
    data[PARTITION_COLUMN] = [partition] * len(rows)
    data[OFFSET_COLUMN] = offsets
    data[TIMESTAMP_COLUMN] = timestamps
    return pa.Table.from_pydict(data, schema=staging_schema(columns))


def encode_parquet(table: pa.Table, compression: str = "zstd") -> bytes:
    sink = io.BytesIO()
    pq.write_table(
        table,
        sink,
        compression=compression,
        use_dictionary=True,
        write_statistics=True,
    )
    return sink.getvalue()


def timestamp_bounds(table: pa.Table) -> tuple[int | None, int | None]:
    if table.num_rows == 0:
        return None, None
    bounds = pc.min_max(table.column(TIMESTAMP_COLUMN))
    return bounds["min"].as_py(), bounds["max"].as_py()


@dataclass(frozen=True)
class StagedPartition:
    partition: int
    path: str
    start_offset: int
    end_offset: int
    messages_read: int
    rows: int
    rejected: int
    bytes_read: int
    file_bytes: int
    min_timestamp_ms: int | None
    max_timestamp_ms: int | None


@dataclass(frozen=True)
class StagingManifest:
    job_id: str
    segment_id: str
    columns: list[dict[str, str]]
    segment_offsets: str
    partitions: list[StagedPartition] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(p.rows for p in self.partitions)

    @property
    def total_rejected(self) -> int:
        return sum(p.rejected for p in self.partitions)

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), sort_keys=True, separators=(",", ":")).encode()

    @classmethod
    def from_bytes(cls, raw: bytes) -> StagingManifest:
        data = json.loads(raw)
        return cls(
            job_id=data["job_id"],
            segment_id=data["segment_id"],
            columns=data["columns"],
            segment_offsets=data["segment_offsets"],
            partitions=[StagedPartition(**p) for p in data["partitions"]],
        )


async def list_paths(store: ObjectStore, prefix: str) -> list[str]:
    stream = obs.list(store, prefix=prefix)
    metas = await stream.collect_async()
    return [m["path"] for m in metas]


async def clear_manifest(store: ObjectStore, table_dir: str) -> None:
    """Withdraw a previous attempt's commit marker before rewriting its files."""
    path = manifest_path(table_dir)
    if path in await list_paths(store, table_dir):
        await obs.delete_async(store, path)


async def remove_stale_files(store: ObjectStore, table_dir: str, keep: set[str]) -> None:
    stale = [p for p in await list_paths(store, table_dir) if p not in keep]
    if stale:
        await obs.delete_async(store, stale)


async def write_partition_file(store: ObjectStore, path: str, data: bytes) -> None:
    # a single put overwrites in place, retries never append
    await store.put_async(path, data)


async def commit_manifest(store: ObjectStore, table_dir: str, manifest: StagingManifest) -> None:
    await store.put_async(manifest_path(table_dir), manifest.to_bytes())


async def read_manifest(store: ObjectStore, table_dir: str) -> StagingManifest:
    try:
        result = await store.get_async(manifest_path(table_dir))
    except FileNotFoundError:
        raise ConsistencyError(f"no committed flat table under {table_dir}") from None
    return StagingManifest.from_bytes(bytes(result.bytes()))


async def read_partition_table(store: ObjectStore, path: str) -> pa.Table:
    result = await store.get_async(path)
    return pq.read_table(io.BytesIO(bytes(result.bytes())))
