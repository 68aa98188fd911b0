from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Protocol

from cubestream.parsers.base import ColumnRef


@dataclass(frozen=True, slots=True)
class RawMessage:
    partition: int
    offset: int
    payload: bytes
    timestamp_ms: int | None = None


@dataclass(frozen=True)
class SourceConfig:
    identity: str
    topic: str
    bootstrap_servers: str
    parser_name: str = "json"
    parser_properties: dict[str, Any] = field(default_factory=dict)
    columns: tuple[ColumnRef, ...] = ()
    timeout_ms: int | None = None

    @classmethod
    def from_model(cls, model) -> SourceConfig:
        return cls(
            identity=model.identity,
            topic=model.topic,
            bootstrap_servers=model.bootstrap_servers,
            parser_name=model.parser_name,
            parser_properties=dict(model.parser_properties or {}),
            columns=tuple(ColumnRef.from_dict(c) for c in model.columns or ()),
            timeout_ms=model.timeout_ms,
        )


class SourceClient(Protocol):
    """Live view of one streaming source.

    ``read`` yields messages with offsets in ``[start_offset, end_offset)`` in
    offset order and must raise ``TransientSourceError`` if it cannot reach
    ``end_offset``.
    """

    async def list_partitions(self) -> set[int]: ...

    async def low_watermark(self, partition: int) -> int: ...

    async def high_watermark(self, partition: int) -> int: ...

    def read(self, partition: int, start_offset: int, end_offset: int) -> AsyncIterator[RawMessage]: ...

    async def close(self) -> None: ...


SourceClientFactory = Callable[[SourceConfig], SourceClient]
