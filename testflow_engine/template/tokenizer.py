"""Locate ``{{source:expr}}`` and ``{{{source:expr}}}`` spans inside text."""

import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

_SPAN_RE = re.compile(r"\{\{\{([^{}]+?)\}\}\}|\{\{([^{}]+?)\}\}")


class TemplateSource(str, Enum):
    RES = "res"
    PROC = "proc"
    PARAM = "param"
    ENV = "env"
    FUNC = "func"


_SOURCE_ALIASES: dict[str, TemplateSource] = {
    "res": TemplateSource.RES,
    "response": TemplateSource.RES,
    "proc": TemplateSource.PROC,
    "process": TemplateSource.PROC,
    "transform": TemplateSource.PROC,
    "param": TemplateSource.PARAM,
    "parameter": TemplateSource.PARAM,
    "var": TemplateSource.PARAM,
    "env": TemplateSource.ENV,
    "environment": TemplateSource.ENV,
    "func": TemplateSource.FUNC,
    "function": TemplateSource.FUNC,
}


@dataclass(frozen=True)
class TemplateSpan:
    start: int
    end: int
    raw: str
    source: TemplateSource
    expression: str
    preserve_type: bool


def normalize_source(name: str) -> TemplateSource | None:
    return _SOURCE_ALIASES.get(name.strip().lower())


@lru_cache(maxsize=2048)
def find_spans(text: str) -> tuple[TemplateSpan, ...]:
    """Return every well-formed template span in *text*, in order.

    Spans with an unknown source tag are not templates and are skipped.
    """
    spans: list[TemplateSpan] = []
    for match in _SPAN_RE.finditer(text):
        preserve_type = match.group(1) is not None
        body = match.group(1) if preserve_type else match.group(2)
        source_name, sep, expression = body.partition(":")
        if not sep or not expression.strip():
            continue
        source = normalize_source(source_name)
        if source is None:
            continue
        spans.append(TemplateSpan(
            start=match.start(),
            end=match.end(),
            raw=match.group(0),
            source=source,
            expression=expression.strip(),
            preserve_type=preserve_type,
        ))
    return tuple(spans)


def is_single_span(text: str) -> TemplateSpan | None:
    """The span covering the whole of *text*, if there is exactly one."""
    spans = find_spans(text)
    if len(spans) == 1 and spans[0].start == 0 and spans[0].end == len(text):
        return spans[0]
    return None
