from __future__ import annotations

from importlib.metadata import entry_points
from typing import Any, Callable, Mapping, Sequence

from cubestream.errors import ConfigurationError
from cubestream.logger import log
from cubestream.parsers.base import ColumnRef, ParsedRow, StreamingParser

ENTRY_POINT_GROUP = "cubestream.parsers"

ParserConstructor = Callable[[Sequence[ColumnRef], Mapping[str, Any]], StreamingParser]

_registry: dict[str, ParserConstructor] = {}


def register_parser(*names: str):
    """Class decorator adding a parser to the registry under one or more names."""

    def _register(ctor):
        for name in names:
            key = name.lower()
            existing = _registry.get(key)
            if existing is not None and existing is not ctor:
                raise ValueError(f"parser name {name!r} already registered to {existing!r}")
            _registry[key] = ctor
        return ctor

    return _register


def _load_entry_point(name: str) -> ParserConstructor | None:
    for ep in entry_points(group=ENTRY_POINT_GROUP):
        if ep.name.lower() == name:
            ctor = ep.load()
            _registry[name] = ctor
            log.info("loaded parser from entry point", parser=name, target=ep.value)
            return ctor
    return None


def registered_parsers() -> list[str]:
    return sorted(_registry)


def get_streaming_parser(
    name: str,
    properties: Mapping[str, Any] | None,
    columns: Sequence[ColumnRef],
) -> StreamingParser:
    key = (name or "").lower()
    ctor = _registry.get(key) or _load_entry_point(key)
    if ctor is None:
        raise ConfigurationError(
            f"unknown parser {name!r}, registered: {', '.join(registered_parsers())}"
        )
    try:
        return ctor(columns, dict(properties or {}))
    except (TypeError, ValueError, KeyError) as e:
        raise ConfigurationError(f"cannot initialise parser {name!r}: {e}") from e


# built-in parsers register themselves on import
from cubestream.parsers import delimited, json_parser  # noqa: E402,F401

__all__ = [
    "ColumnRef",
    "ParsedRow",
    "StreamingParser",
    "get_streaming_parser",
    "register_parser",
    "registered_parsers",
]
