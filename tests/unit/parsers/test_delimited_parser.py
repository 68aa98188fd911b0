import pytest

from cubestream.errors import DataError
from cubestream.parsers import get_streaming_parser
from cubestream.parsers.base import ColumnRef
from cubestream.parsers.delimited import DelimitedStreamParser

TS = 1_700_000_000_000

COLUMNS = (ColumnRef("id"), ColumnRef("name"), ColumnRef("timestamp"), ColumnRef("day_start"))


def test_positional_fields_and_derived_column():
    parser = DelimitedStreamParser(COLUMNS)
    row = parser.parse(f"1,widget,{TS}\n".encode())
    assert row.values == ("1", "widget", str(TS), "2023-11-14")
    assert row.timestamp_ms == TS


def test_quoted_field_with_separator():
    parser = DelimitedStreamParser(COLUMNS)
    row = parser.parse(f'2,"big, red",{TS}'.encode())
    assert row.values[1] == "big, red"


def test_custom_separator_and_null_value():
    parser = DelimitedStreamParser(COLUMNS, {"separator": "|", "nullValue": "\\N"})
    row = parser.parse(b"3|\\N|")
    assert row.values == ("3", None, "", None)
    assert row.timestamp_ms is None


def test_field_count_mismatch_is_data_error():
    parser = DelimitedStreamParser(COLUMNS)
    with pytest.raises(DataError, match="expected 3 fields"):
        parser.parse(b"1,2")


def test_no_timestamp_column():
    parser = DelimitedStreamParser((ColumnRef("a"), ColumnRef("b")))
    row = parser.parse(b"x,y")
    assert row.values == ("x", "y")
    assert row.timestamp_ms is None


def test_csv_alias_and_bad_separator():
    assert isinstance(get_streaming_parser("csv", {}, COLUMNS), DelimitedStreamParser)
    with pytest.raises(ValueError):
        DelimitedStreamParser(COLUMNS, {"separator": "::"})
