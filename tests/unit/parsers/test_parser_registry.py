import pytest

from cubestream.errors import ConfigurationError
from cubestream.parsers import get_streaming_parser, register_parser, registered_parsers
from cubestream.parsers.base import ColumnRef, ParsedRow, StreamingParser


class UpperParser(StreamingParser):
    def parse(self, payload: bytes) -> ParsedRow:
        return ParsedRow(values=(payload.decode().upper(),))


def test_builtin_parsers_registered():
    assert {"json", "timed_json", "delimited", "csv"} <= set(registered_parsers())


def test_unknown_parser_is_configuration_error():
    with pytest.raises(ConfigurationError, match="unknown parser"):
        get_streaming_parser("avro-ish", {}, [ColumnRef("a")])


def test_bad_properties_are_configuration_error():
    with pytest.raises(ConfigurationError, match="cannot initialise"):
        get_streaming_parser("json", {"tsParser": "sundial"}, [ColumnRef("a")])


def test_pattern_parser_needs_pattern():
    with pytest.raises(ConfigurationError):
        get_streaming_parser("json", {"tsParser": "pattern"}, [ColumnRef("a")])


def test_registered_parser_resolved_case_insensitively():
    register_parser("upper_test")(UpperParser)
    parser = get_streaming_parser("UPPER_TEST", None, [ColumnRef("a")])
    assert parser.parse(b"abc").values == ("ABC",)


def test_name_cannot_be_taken_twice():
    register_parser("upper_twice")(UpperParser)
    # registering the same class again is harmless
    register_parser("upper_twice")(UpperParser)

    class Other(UpperParser):
        pass

    with pytest.raises(ValueError, match="already registered"):
        register_parser("upper_twice")(Other)
