from __future__ import annotations

import csv
from typing import Any, Mapping, Sequence

from cubestream.errors import DataError
from cubestream.parsers import register_parser
from cubestream.parsers.base import ColumnRef, ParsedRow, StreamingParser


@register_parser("delimited", "csv")
class DelimitedStreamParser(StreamingParser):
    name = "delimited"

    def __init__(self, columns: Sequence[ColumnRef], properties: Mapping[str, Any] | None = None):
        super().__init__(columns, properties)
        self.separator: str = self.properties.get("separator", ",")
        self.quotechar: str = self.properties.get("quotechar", '"')
        self.encoding: str = self.properties.get("encoding", "utf-8")
        self.null_value: str | None = self.properties.get("nullValue")
        # derived time columns are filled from the timestamp, not read from the line
        self.positional = [i for i, c in enumerate(self.columns) if not c.is_derived_time]
        names = [c.name.lower() for c in self.columns]
        ts_name = (self.ts_column or "").lower()
        self.ts_index = names.index(ts_name) if ts_name in names else None
        if len(self.separator) != 1:
            raise ValueError(f"separator must be a single character, got {self.separator!r}")

    def parse(self, payload: bytes) -> ParsedRow:
        try:
            line = payload.decode(self.encoding).rstrip("\r\n")
        except UnicodeDecodeError as e:
            raise DataError(f"payload is not {self.encoding} text: {e}") from e
        try:
            fields = next(csv.reader([line], delimiter=self.separator, quotechar=self.quotechar, strict=True))
        except (csv.Error, StopIteration) as e:
            raise DataError(f"cannot split line: {e}") from e
        if len(fields) != len(self.positional):
            raise DataError(f"expected {len(self.positional)} fields, got {len(fields)}")

        values: list[str | None] = [None] * len(self.columns)
        for index, field in zip(self.positional, fields):
            values[index] = None if field == self.null_value else field

        timestamp_ms = None
        if self.ts_index is not None:
            timestamp_ms = self._timestamp(values[self.ts_index])
        return self._with_derived(values, timestamp_ms)
