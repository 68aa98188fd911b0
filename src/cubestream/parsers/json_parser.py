from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

from cubestream.errors import DataError
from cubestream.parsers import register_parser
from cubestream.parsers.base import ColumnRef, ParsedRow, StreamingParser, to_text

_MISSING = object()


@register_parser("json", "timed_json")
class JsonStreamParser(StreamingParser):
    """Flattens a JSON object into the flat table columns.

    Column names are matched case-insensitively. A column the top level does not
    carry is resolved as a path through nested objects by splitting its name on
    ``separator`` (default ``_``), so ``user_id`` finds ``{"user": {"id": ...}}``.
    """

    name = "json"

    def __init__(self, columns: Sequence[ColumnRef], properties: Mapping[str, Any] | None = None):
        super().__init__(columns, properties)
        self.separator: str = self.properties.get("separator", "_")
        self.encoding: str = self.properties.get("encoding", "utf-8")

    def parse(self, payload: bytes) -> ParsedRow:
        try:
            root = json.loads(payload.decode(self.encoding))
        except (UnicodeDecodeError, ValueError, RecursionError) as e:
            raise DataError(f"payload is not valid json: {e}") from e
        if not isinstance(root, dict):
            raise DataError(f"expected a json object, got {type(root).__name__}")

        lowered = _lower_keys(root)
        timestamp_ms = None
        if self.ts_column:
            raw_ts = self._lookup(lowered, self.ts_column)
            timestamp_ms = self._timestamp(None if raw_ts is _MISSING else raw_ts)

        values: list[str | None] = []
        for col in self.columns:
            value = self._lookup(lowered, col.name)
            values.append(None if value is _MISSING else to_text(value))
        return self._with_derived(values, timestamp_ms)

    def _lookup(self, obj: dict[str, Any], column: str) -> Any:
        key = column.lower()
        if key in obj:
            return obj[key]
        if not self.separator or self.separator not in key:
            return _MISSING
        node: Any = obj
        for part in key.split(self.separator):
            if not isinstance(node, dict) or part not in node:
                return _MISSING
            node = node[part]
        return node


def _lower_keys(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in obj.items()}
    return obj
