from __future__ import annotations

import datetime as dt
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from cubestream.errors import DataError

DERIVED_TIME_COLUMNS = (
    "year_start",
    "quarter_start",
    "month_start",
    "week_start",
    "day_start",
    "hour_start",
    "minute_start",
)

# datetime.min and datetime.max, in epoch millis
MIN_TIMESTAMP_MS = -62_135_596_800_000
MAX_TIMESTAMP_MS = 253_402_300_799_999


@dataclass(frozen=True, slots=True)
class ColumnRef:
    name: str
    datatype: str = "varchar"

    @property
    def is_derived_time(self) -> bool:
        return self.name.lower() in DERIVED_TIME_COLUMNS

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | str) -> ColumnRef:
        if isinstance(raw, str):
            return cls(name=raw)
        return cls(name=str(raw["name"]), datatype=str(raw.get("datatype", "varchar")))

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "datatype": self.datatype}


@dataclass(frozen=True, slots=True)
class ParsedRow:
    values: tuple[str | None, ...]
    timestamp_ms: int | None = None


def _epoch_ms(value: Any) -> int:
    return int(float(value))


def _epoch_s(value: Any) -> int:
    return int(float(value) * 1000)


def _iso8601(value: Any) -> int:
    parsed = dt.datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return int(parsed.timestamp() * 1000)


TIMESTAMP_PARSERS: dict[str, Callable[[Any], int]] = {
    "epoch_ms": _epoch_ms,
    "epoch_s": _epoch_s,
    "iso8601": _iso8601,
}


def timestamp_parser(name: str, pattern: str | None = None) -> Callable[[Any], int]:
    if name == "pattern":
        if not pattern:
            raise ValueError("tsParser=pattern requires tsPattern")

        def _pattern(value: Any) -> int:
            parsed = dt.datetime.strptime(str(value), pattern)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=dt.UTC)
            return int(parsed.timestamp() * 1000)

        return _pattern
    try:
        return TIMESTAMP_PARSERS[name]
    except KeyError:
        raise ValueError(f"unknown timestamp parser: {name}") from None


def derived_time_value(column: str, timestamp_ms: int) -> str:
    """Start of the period ``column`` names, formatted the way cube partition columns expect."""
    t = dt.datetime.fromtimestamp(timestamp_ms / 1000, tz=dt.UTC)
    match column.lower():
        case "year_start":
            start = t.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
        case "quarter_start":
            start = t.replace(month=(t.month - 1) // 3 * 3 + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
        case "month_start":
            start = t.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        case "week_start":
            # weeks start on sunday
            day = t - dt.timedelta(days=(t.weekday() + 1) % 7)
            start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        case "day_start":
            start = t.replace(hour=0, minute=0, second=0, microsecond=0)
        case "hour_start":
            return t.replace(minute=0, second=0, microsecond=0).strftime("%Y-%m-%d %H:%M:%S")
        case "minute_start":
            return t.replace(second=0, microsecond=0).strftime("%Y-%m-%d %H:%M:%S")
        case _:
            raise ValueError(f"not a derived time column: {column}")
    return start.strftime("%Y-%m-%d")


class StreamingParser(ABC):
    """Decodes one message payload into a row of the configured columns.

    Implementations must be pure functions of (payload, columns, properties) so one
    instance can be shared by every partition worker of a job. A payload that cannot
    be decoded raises ``DataError``.
    """

    name: str = ""

    def __init__(self, columns: Sequence[ColumnRef], properties: Mapping[str, Any] | None = None):
        self.columns: tuple[ColumnRef, ...] = tuple(columns)
        self.properties: dict[str, Any] = dict(properties or {})
        self.ts_column: str | None = self.properties.get("tsColName", "timestamp")
        self.parse_timestamp = timestamp_parser(
            self.properties.get("tsParser", "epoch_ms"), self.properties.get("tsPattern")
        )

    @abstractmethod
    def parse(self, payload: bytes) -> ParsedRow: ...

    def _timestamp(self, raw: Any) -> int | None:
        if raw is None or raw == "":
            return None
        try:
            timestamp_ms = self.parse_timestamp(raw)
        except (TypeError, ValueError, OverflowError) as e:
            raise DataError(f"bad timestamp {raw!r} in column {self.ts_column}") from e
        if not MIN_TIMESTAMP_MS <= timestamp_ms <= MAX_TIMESTAMP_MS:
            raise DataError(f"timestamp {raw!r} in column {self.ts_column} is out of range")
        return timestamp_ms

    def _with_derived(self, values: list[str | None], timestamp_ms: int | None) -> ParsedRow:
        for i, col in enumerate(self.columns):
            if col.is_derived_time and values[i] is None and timestamp_ms is not None:
                try:
                    values[i] = derived_time_value(col.name, timestamp_ms)
                except (ValueError, OverflowError, OSError) as e:
                    raise DataError(f"cannot derive {col.name} from timestamp {timestamp_ms}") from e
        return ParsedRow(values=tuple(values), timestamp_ms=timestamp_ms)


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return str(value)
