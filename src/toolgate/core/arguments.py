"""
Toolgate Argument Lookup

Typed view over a tool call's input. Policies address arguments by
dotted / indexed paths (``user.email``, ``recipients[0]``, ``items.2.id``)
and the engine needs to tell an absent argument apart from one that is
present but not a string. ``ToolInput.lookup`` returns an
``ArgumentValue`` tagged with its ``ArgumentType`` for exactly that.

Trusted-data policies additionally use ``[*]`` wildcards to address every
element of an array (``emails[*].from``); ``resolve_all`` expands those.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

WILDCARD = "*"

_SEGMENT = re.compile(
    r"""
    \[\s*(?P<quote>["'])(?P<quoted>(?:(?!(?P=quote)).)*)(?P=quote)\s*\]  # ["key"]
    | \[(?P<index>[^\]]*)\]                                               # [0] or [*]
    | (?P<name>[^.\[\]]+)                                                 # plain name
    """,
    re.VERBOSE,
)


class ArgumentType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    NULL = "null"
    OBJECT = "object"
    ARRAY = "array"
    ABSENT = "absent"


@dataclass(frozen=True)
class ArgumentValue:
    """A looked-up argument with its type tag."""

    type: ArgumentType
    value: Any = None

    @property
    def is_absent(self) -> bool:
        return self.type is ArgumentType.ABSENT

    @property
    def is_string(self) -> bool:
        return self.type is ArgumentType.STRING

    @classmethod
    def of(cls, value: Any) -> ArgumentValue:
        return cls(type=type_of(value), value=value)


ABSENT = ArgumentValue(ArgumentType.ABSENT)


def type_of(value: Any) -> ArgumentType:
    """Map a decoded JSON value to its ArgumentType."""
    # bool first: it is a subclass of int
    if isinstance(value, bool):
        return ArgumentType.BOOLEAN
    if isinstance(value, (int, float)):
        return ArgumentType.NUMBER
    if isinstance(value, str):
        return ArgumentType.STRING
    if value is None:
        return ArgumentType.NULL
    if isinstance(value, Mapping):
        return ArgumentType.OBJECT
    if isinstance(value, Sequence):
        return ArgumentType.ARRAY
    return ArgumentType.OBJECT


def parse_path(path: str) -> list[str]:
    """Split a path into segments.

    >>> parse_path('a.b[0]["c.d"][*]')
    ['a', 'b', '0', 'c.d', '*']
    """
    segments: list[str] = []
    for match in _SEGMENT.finditer(path):
        if match.group("quoted") is not None:
            segments.append(match.group("quoted"))
        elif match.group("index") is not None:
            segments.append(match.group("index").strip())
        else:
            segments.append(match.group("name"))
    return segments


def _step(container: Any, segment: str) -> ArgumentValue:
    if isinstance(container, Mapping):
        if segment in container:
            return ArgumentValue.of(container[segment])
        return ABSENT
    if isinstance(container, Sequence) and not isinstance(container, (str, bytes)):
        try:
            index = int(segment)
        except ValueError:
            return ABSENT
        if 0 <= index < len(container):
            return ArgumentValue.of(container[index])
        return ABSENT
    return ABSENT


def lookup(data: Any, path: str) -> ArgumentValue:
    """Resolve a single path against ``data``.

    A mapping key equal to the whole path wins over path splitting,
    so ``{"a.b": 1}`` resolves ``a.b`` to 1.
    """
    if isinstance(data, Mapping) and path in data:
        return ArgumentValue.of(data[path])

    segments = parse_path(path)
    if not segments:
        return ABSENT

    current = ArgumentValue.of(data)
    for segment in segments:
        current = _step(current.value, segment)
        if current.is_absent:
            return ABSENT
    return current


def resolve_all(data: Any, path: str) -> list[ArgumentValue]:
    """Resolve a path that may contain ``[*]`` wildcards.

    Returns every present value the path reaches. A wildcard applied
    to something that is not an array yields nothing, as does an
    empty array.
    """
    if WILDCARD not in parse_path(path):
        found = lookup(data, path)
        return [] if found.is_absent else [found]

    frontier: list[Any] = [data]
    for segment in parse_path(path):
        next_frontier: list[Any] = []
        for item in frontier:
            if segment == WILDCARD:
                if isinstance(item, Sequence) and not isinstance(item, (str, bytes, Mapping)):
                    next_frontier.extend(item)
                continue
            stepped = _step(item, segment)
            if not stepped.is_absent:
                next_frontier.append(stepped.value)
        frontier = next_frontier
    return [ArgumentValue.of(v) for v in frontier]


class ToolInput:
    """Read-only typed wrapper around a tool call's argument mapping."""

    def __init__(self, arguments: Mapping[str, Any] | None = None):
        self._arguments = dict(arguments or {})

    def lookup(self, path: str) -> ArgumentValue:
        return lookup(self._arguments, path)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and not self.lookup(path).is_absent

    def keys(self) -> list[str]:
        return list(self._arguments.keys())

    def as_dict(self) -> dict[str, Any]:
        return dict(self._arguments)
