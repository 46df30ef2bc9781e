"""Restricted JSONPath evaluation.

Supported syntax: root ``$``, dotted properties, ``[n]`` indexes (negative
counts from the end), ``[*]`` / ``.*`` wildcards, ``[start:end]`` slices and
``['key']`` / ``["key"]`` / ``[key]`` bracket keys. A property applied to a
list maps over its elements, so ``$.items[*].id`` collects every id.

A miss anywhere yields ``None``; only malformed paths raise.
"""

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any

from testflow_engine.utils.exceptions import PathSyntaxError


class SegmentKind(str, Enum):
    PROPERTY = "property"
    INDEX = "index"
    WILDCARD = "wildcard"
    SLICE = "slice"


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    key: str | None = None
    index: int | None = None
    start: int | None = None
    end: int | None = None


def evaluate(path: str, data: Any) -> Any:
    segments = compile_path(path)
    current = data
    for segment in segments:
        if current is None:
            return None
        current = _apply(segment, current)
    return current


@lru_cache(maxsize=1024)
def compile_path(path: str) -> tuple[Segment, ...]:
    if not isinstance(path, str):
        raise PathSyntaxError(f"Path must be a string, got {type(path).__name__}")
    text = path.strip()
    if text.startswith("$"):
        text = text[1:]
    segments: list[Segment] = []
    pos = 0
    while pos < len(text):
        char = text[pos]
        if char == ".":
            pos += 1
            if pos < len(text) and text[pos] == "*":
                segments.append(Segment(SegmentKind.WILDCARD))
                pos += 1
                continue
            pos = _read_property(text, pos, segments)
        elif char == "[":
            pos = _read_bracket(path, text, pos, segments)
        else:
            pos = _read_property(text, pos, segments)
    return tuple(segments)


def _read_property(text: str, pos: int, segments: list[Segment]) -> int:
    start = pos
    while pos < len(text) and text[pos] not in ".[":
        if text[pos] == "]":
            raise PathSyntaxError(f"Unexpected ']' at position {pos} in '{text}'")
        pos += 1
    name = text[start:pos].strip()
    if name:
        segments.append(Segment(SegmentKind.PROPERTY, key=name))
    return pos


def _read_bracket(path: str, text: str, pos: int, segments: list[Segment]) -> int:
    pos += 1
    if pos < len(text) and text[pos] in "'\"":
        quote = text[pos]
        close = text.find(quote, pos + 1)
        if close == -1:
            raise PathSyntaxError(f"Unterminated quoted key in path '{path}'")
        key = text[pos + 1:close]
        pos = close + 1
        if pos >= len(text) or text[pos] != "]":
            raise PathSyntaxError(f"Expected ']' after quoted key in path '{path}'")
        segments.append(Segment(SegmentKind.PROPERTY, key=key))
        return pos + 1

    close = text.find("]", pos)
    if close == -1:
        raise PathSyntaxError(f"Unterminated bracket in path '{path}'")
    body = text[pos:close].strip()
    if "[" in body:
        raise PathSyntaxError(f"Nested bracket in path '{path}'")
    segments.append(_parse_bracket_body(body, path))
    return close + 1


def _parse_bracket_body(body: str, path: str) -> Segment:
    if body == "*":
        return Segment(SegmentKind.WILDCARD)
    if ":" in body:
        start_text, _, end_text = body.partition(":")
        try:
            start = int(start_text) if start_text.strip() else None
            end = int(end_text) if end_text.strip() else None
        except ValueError:
            raise PathSyntaxError(f"Invalid slice '[{body}]' in path '{path}'")
        return Segment(SegmentKind.SLICE, start=start, end=end)
    if body.lstrip("-").isdigit():
        return Segment(SegmentKind.INDEX, index=int(body))
    if not body:
        raise PathSyntaxError(f"Empty brackets in path '{path}'")
    return Segment(SegmentKind.PROPERTY, key=body)


def _apply(segment: Segment, current: Any) -> Any:
    if segment.kind == SegmentKind.PROPERTY:
        if isinstance(current, dict):
            return current.get(segment.key)
        if isinstance(current, list):
            return [item.get(segment.key) if isinstance(item, dict) else None for item in current]
        return None

    if segment.kind == SegmentKind.INDEX:
        if isinstance(current, list):
            if -len(current) <= segment.index < len(current):
                return current[segment.index]
            return None
        if isinstance(current, dict):
            return current.get(str(segment.index))
        return None

    if segment.kind == SegmentKind.WILDCARD:
        if isinstance(current, list):
            return current
        if isinstance(current, dict):
            return list(current.values())
        return None

    if segment.kind == SegmentKind.SLICE:
        if isinstance(current, list):
            return current[segment.start:segment.end]
        return None

    return None
