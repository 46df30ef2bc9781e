"""Template resolution against a run's accumulated state.

``{{source:expr}}`` splices the stringified value into the surrounding text;
``{{{source:expr}}}`` keeps the native type. Structures are walked
recursively and only string leaves are scanned (see :func:`resolve`); raw JSON
text is handled by :func:`resolve_json_text`, which substitutes before parsing
so that a quoted triple-brace span turns into a bare number, object or array.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from testflow_engine.query.jsonpath import evaluate as query_path
from testflow_engine.template.functions import DEFAULT_FUNCTIONS, TemplateFunction
from testflow_engine.template.tokenizer import TemplateSource, TemplateSpan, find_spans, is_single_span
from testflow_engine.utils.exceptions import ExpressionSyntaxError, ResolutionError
from testflow_engine.utils.values import stringify

logger = logging.getLogger(__name__)

_ALIAS_RE = re.compile(r"[^.\[]+")


@dataclass
class TemplateContext:
    responses: dict[str, Any] = field(default_factory=dict)
    transformations: dict[str, dict[str, Any]] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, Any] = field(default_factory=dict)
    parameter_defaults: dict[str, Any] = field(default_factory=dict)
    environment_defaults: dict[str, Any] = field(default_factory=dict)
    functions: dict[str, TemplateFunction] = field(default_factory=dict)

    def function(self, name: str) -> TemplateFunction | None:
        return self.functions.get(name) or DEFAULT_FUNCTIONS.get(name)


def resolve(raw: Any, context: TemplateContext) -> Any:
    if isinstance(raw, dict):
        return {key: resolve(value, context) for key, value in raw.items()}
    if isinstance(raw, list):
        return [resolve(item, context) for item in raw]
    if isinstance(raw, str):
        return resolve_string(raw, context)
    return raw


def resolve_string(text: str, context: TemplateContext) -> Any:
    spans = find_spans(text)
    if not spans:
        return text

    # A lone triple-brace span yields the value itself
    whole = is_single_span(text)
    if whole is not None and whole.preserve_type:
        return lookup(whole.source, whole.expression, context)

    parts: list[str] = []
    pos = 0
    for span in spans:
        parts.append(text[pos:span.start])
        parts.append(_render_inline(span, context))
        pos = span.end
    parts.append(text[pos:])
    return "".join(parts)


def _render_inline(span: TemplateSpan, context: TemplateContext) -> str:
    try:
        value = lookup(span.source, span.expression, context)
    except ResolutionError as e:
        if span.preserve_type:
            raise
        logger.debug("Leaving %s unresolved: %s", span.raw, e)
        return span.raw
    if span.preserve_type and isinstance(value, str):
        return value
    return stringify(value)


def resolve_json_text(text: str, context: TemplateContext) -> str:
    """Substitute templates inside raw JSON text, before it is parsed.

    Inside a string literal values are JSON-escaped. A triple-brace span that
    fills a whole string literal (``"{{{param:n}}}"``) replaces the quotes too.
    Outside string literals a triple-brace span becomes JSON text and a
    double-brace span becomes its plain string form.
    """
    spans = find_spans(text)
    if not spans:
        return text

    parts: list[str] = []
    pos = 0
    in_string = False
    for span in spans:
        segment = text[pos:span.start]
        in_string = _string_state_after(segment, in_string)
        expression = _unescape(span.expression) if in_string else span.expression
        wrapped = (
            in_string
            and span.preserve_type
            and segment.endswith('"')
            and not segment.endswith('\\"')
            and text[span.end:span.end + 1] == '"'
        )

        try:
            value = lookup(span.source, expression, context)
        except ResolutionError as e:
            if span.preserve_type:
                raise
            logger.debug("Leaving %s unresolved: %s", span.raw, e)
            parts.append(segment)
            parts.append(span.raw)
            pos = span.end
            continue

        if wrapped:
            parts.append(segment[:-1])
            parts.append(json.dumps(value, default=str))
            pos = span.end + 1
            in_string = False
            continue

        parts.append(segment)
        if in_string:
            inline = value if isinstance(value, str) else stringify(value)
            parts.append(json.dumps(inline, ensure_ascii=False)[1:-1])
        elif span.preserve_type:
            parts.append(json.dumps(value, default=str))
        else:
            parts.append(stringify(value))
        pos = span.end
    parts.append(text[pos:])
    return "".join(parts)


def resolve_body(body: Any, context: TemplateContext) -> Any:
    """Resolve a request body given as a structure or as raw JSON text."""
    if not isinstance(body, str):
        return resolve(body, context)
    resolved = resolve_json_text(body, context)
    try:
        return json.loads(resolved)
    except ValueError:
        return resolved


def _string_state_after(segment: str, in_string: bool) -> bool:
    escaped = False
    for char in segment:
        if escaped:
            escaped = False
        elif char == "\\" and in_string:
            escaped = True
        elif char == '"':
            in_string = not in_string
    return in_string


def _unescape(expression: str) -> str:
    if "\\" not in expression:
        return expression
    try:
        return json.loads(f'"{expression}"')
    except ValueError:
        return expression


# ── Source handlers ─────────────────────────────────────────────────


def lookup(source: TemplateSource, expression: str, context: TemplateContext) -> Any:
    return _HANDLERS[source](expression, context)


def _from_response(expression: str, context: TemplateContext) -> Any:
    key, sep, path = expression.partition(".")
    if key not in context.responses:
        available = ", ".join(context.responses) or "none"
        raise ResolutionError(f"Response data not found for: {key}. Available keys: {available}")
    data = context.responses[key]
    if not sep or path.strip() in ("", "$"):
        return data
    return _query(path, data)


def _from_transformation(expression: str, context: TemplateContext) -> Any:
    key, _, remainder = expression.partition(".")
    if remainder.startswith("$"):
        remainder = remainder[1:].lstrip(".")
    match = _ALIAS_RE.match(remainder)
    if not match:
        raise ResolutionError(
            f"Invalid transformation template: {expression}. Format should be stepId-endpointIndex.$.alias.path"
        )
    if key not in context.transformations:
        available = ", ".join(context.transformations) or "none"
        raise ResolutionError(f"Transformation data not found for: {key}. Available keys: {available}")
    aliases = context.transformations[key]
    alias, path = match.group(0), remainder[match.end():]
    if alias not in aliases:
        available = ", ".join(aliases) or "none"
        raise ResolutionError(f"Transformation alias not found: {alias} for step {key}. Available aliases: {available}")
    value = aliases[alias]
    if path:
        return _query("$" + path, value)
    return value


def _from_parameter(expression: str, context: TemplateContext) -> Any:
    if expression in context.parameters:
        return context.parameters[expression]
    if expression in context.parameter_defaults:
        return context.parameter_defaults[expression]
    raise ResolutionError(f"Parameter not found: {expression}")


def _from_environment(expression: str, context: TemplateContext) -> Any:
    if expression in context.environment:
        return context.environment[expression]
    if expression in context.environment_defaults:
        return context.environment_defaults[expression]
    raise ResolutionError(f"Environment variable not found: {expression}")


def _from_function(expression: str, context: TemplateContext) -> Any:
    name, sep, rest = expression.partition("(")
    name = name.strip()
    if not sep or not rest.rstrip().endswith(")") or not name.replace("_", "").isalnum():
        raise ResolutionError(f"Invalid function template format: {expression}")
    fn = context.function(name)
    if fn is None:
        raise ResolutionError(f"Function not found: {name}")
    args = [_parse_argument(arg) for arg in split_arguments(rest.rstrip()[:-1])]
    try:
        return fn(*args)
    except (TypeError, ValueError) as e:
        raise ResolutionError(f"Function {name} failed: {e}") from e


def _query(path: str, data: Any) -> Any:
    try:
        return query_path(path, data)
    except ExpressionSyntaxError as e:
        raise ResolutionError(str(e)) from e


def split_arguments(text: str) -> list[str]:
    """Split a call's argument list on top-level commas."""
    if not text.strip():
        return []
    args: list[str] = []
    depth = 0
    quote: str | None = None
    current: list[str] = []
    for char in text:
        if quote:
            current.append(char)
            if char == quote:
                quote = None
            continue
        if char in "'\"":
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
        elif char == "," and depth == 0:
            args.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    args.append("".join(current).strip())
    return args


def _parse_argument(arg: str) -> Any:
    try:
        return json.loads(arg)
    except ValueError:
        if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in "'\"":
            return arg[1:-1]
        return arg


_HANDLERS = {
    TemplateSource.RES: _from_response,
    TemplateSource.PROC: _from_transformation,
    TemplateSource.PARAM: _from_parameter,
    TemplateSource.ENV: _from_environment,
    TemplateSource.FUNC: _from_function,
}


# ── Reference extraction ────────────────────────────────────────────


def extract_references(template: Any) -> list[TemplateSpan]:
    """Return every template span found in the string leaves of *template*."""
    found: list[TemplateSpan] = []
    _collect(template, found)
    return found


def _collect(template: Any, found: list[TemplateSpan]) -> None:
    if isinstance(template, dict):
        for value in template.values():
            _collect(value, found)
    elif isinstance(template, list):
        for item in template:
            _collect(item, found)
    elif isinstance(template, str):
        found.extend(find_spans(template))
