"""Pipe-based transformation language.

``source | fn1(args) | fn2(args)`` where *source* is a ``$`` path, a named
collection (a top-level key of the input) or ``data`` for the whole input.
Each stage receives the previous stage's output. Arguments are expressions
(see :mod:`testflow_engine.transform.expressions`); ``key: value`` arguments
are keywords, and an argument may itself be a pipeline evaluated per element:
``map(total: $.price | mul(2))``.

Syntax errors fail the whole transformation. Failures while evaluating a
single element degrade to ``None`` for that element.
"""

import functools
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from testflow_engine.query.jsonpath import evaluate as query_path
from testflow_engine.template.renderer import TemplateContext, split_arguments
from testflow_engine.transform import expressions
from testflow_engine.transform.expressions import Identifier, ListExpr, Literal, PathRef
from testflow_engine.utils import values as v
from testflow_engine.utils.exceptions import ExpressionSyntaxError, FlowEngineError, TransformationError

logger = logging.getLogger(__name__)

_STAGE_RE = re.compile(r"^([A-Za-z_]\w*)\s*(?:\((.*)\))?$", re.DOTALL)
_KEYWORD_RE = re.compile(r"^([A-Za-z_]\w*)\s*:(.*)$", re.DOTALL)

# Errors that degrade a single element to None
_ELEMENT_ERRORS = (FlowEngineError, TypeError, ValueError, KeyError, AttributeError, IndexError)


@dataclass(frozen=True)
class Argument:
    name: str | None
    text: str
    node: Any


@dataclass(frozen=True)
class Stage:
    name: str
    args: tuple[Argument, ...]


@dataclass(frozen=True)
class Pipeline:
    source: Any
    stages: tuple[Stage, ...]


# ── Compilation ─────────────────────────────────────────────────────


def split_stages(expression: str) -> list[str]:
    """Split on top-level single ``|``, ignoring quotes, brackets and ``||``."""
    stages: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None
    i = 0
    while i < len(expression):
        char = expression[i]
        if quote:
            current.append(char)
            if char == "\\" and i + 1 < len(expression):
                current.append(expression[i + 1])
                i += 2
                continue
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
            current.append(char)
        elif char in "([{":
            depth += 1
            current.append(char)
        elif char in ")]}":
            depth -= 1
            if depth < 0:
                raise ExpressionSyntaxError(f"Unbalanced '{char}' in '{expression}'")
            current.append(char)
        elif char == "|" and expression.startswith("||", i):
            current.append("||")
            i += 2
            continue
        elif char == "|" and depth == 0:
            stages.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1
    if quote:
        raise ExpressionSyntaxError(f"Unterminated string in '{expression}'")
    if depth != 0:
        raise ExpressionSyntaxError(f"Unbalanced brackets in '{expression}'")
    stages.append("".join(current).strip())
    return stages


@functools.lru_cache(maxsize=512)
def compile_pipeline(expression: str) -> Pipeline:
    segments = split_stages(expression)
    if not segments[0]:
        raise ExpressionSyntaxError(f"Missing source in '{expression}'")
    source = expressions.parse(segments[0])
    stages = tuple(_compile_stage(segment, expression) for segment in segments[1:])
    return Pipeline(source, stages)


def _compile_stage(segment: str, expression: str) -> Stage:
    match = _STAGE_RE.match(segment)
    if not match:
        raise ExpressionSyntaxError(f"Invalid pipeline stage '{segment}' in '{expression}'")
    name, arg_text = match.group(1), match.group(2)
    if name not in PIPELINE_FUNCTIONS:
        raise ExpressionSyntaxError(f"Unknown pipeline function '{name}' in '{expression}'")
    args = tuple(_compile_argument(raw) for raw in split_arguments(arg_text or ""))
    return Stage(name, args)


def _compile_argument(raw: str) -> Argument:
    name = None
    keyword = _KEYWORD_RE.match(raw)
    if keyword:
        name, raw = keyword.group(1), keyword.group(2).strip()
    if not raw:
        raise ExpressionSyntaxError(f"Empty argument value for '{name}'")
    if len(split_stages(raw)) > 1:
        return Argument(name, raw, compile_pipeline(raw))
    return Argument(name, raw, expressions.parse(raw))


# ── Execution ───────────────────────────────────────────────────────


def run(
    expression: str,
    data: Any,
    context: TemplateContext | None = None,
    alias: str | None = None,
) -> Any:
    try:
        pipeline = compile_pipeline(expression.strip())
    except ExpressionSyntaxError as e:
        raise TransformationError(alias, str(e)) from e
    try:
        return execute(pipeline, data, context)
    except ExpressionSyntaxError as e:
        # Field arguments given as strings are only parsed while the stage runs
        raise TransformationError(alias, str(e)) from e


def execute(pipeline: Pipeline, data: Any, context: TemplateContext | None = None) -> Any:
    current = _resolve_source(pipeline.source, data, context)
    for stage in pipeline.stages:
        call = StageCall(stage, data, context)
        current = PIPELINE_FUNCTIONS[stage.name](current, call)
    return current


def _resolve_source(node: Any, data: Any, context: TemplateContext | None) -> Any:
    if isinstance(node, Identifier) and len(node.parts) == 1:
        name = node.parts[0]
        if isinstance(data, dict) and name in data:
            return data[name]
        if name == "data":
            return data
        return None
    return expressions.evaluate(node, data, context)


class StageCall:
    """Arguments of one stage, evaluated on demand."""

    def __init__(self, stage: Stage, root: Any, context: TemplateContext | None) -> None:
        self.stage = stage
        self.root = root
        self.context = context

    @property
    def positional(self) -> list[Argument]:
        return [arg for arg in self.stage.args if arg.name is None]

    @property
    def keywords(self) -> list[Argument]:
        return [arg for arg in self.stage.args if arg.name is not None]

    def arg(self, position: int, name: str | None = None) -> Argument | None:
        if name is not None:
            for arg in self.stage.args:
                if arg.name == name:
                    return arg
        positional = self.positional
        return positional[position] if position < len(positional) else None

    def eval(self, argument: Argument, current: Any) -> Any:
        if isinstance(argument.node, Pipeline):
            return execute(argument.node, current, self.context)
        return expressions.evaluate(argument.node, current, self.context)

    def eval_each(self, argument: Argument, current: Any) -> Any:
        try:
            return self.eval(argument, current)
        except _ELEMENT_ERRORS as e:
            logger.debug("%s(%s) failed for element: %s", self.stage.name, argument.text, e)
            return None

    def value(self, position: int, name: str | None = None, default: Any = None) -> Any:
        argument = self.arg(position, name)
        if argument is None:
            return default
        return self.eval(argument, self.root)

    def field(self, position: int, name: str | None = None) -> str | None:
        """An argument naming a field: bare identifier, ``$`` path or string."""
        argument = self.arg(position, name)
        if argument is None:
            return None
        return _field_name(argument.node, self)

    def fields(self) -> list[str]:
        names: list[str] = []
        for argument in self.positional:
            if isinstance(argument.node, ListExpr):
                names.extend(_field_name(item, self) for item in argument.node.items)
            else:
                names.append(_field_name(argument.node, self))
        return [name for name in names if name]


def _field_name(node: Any, call: StageCall) -> str | None:
    if isinstance(node, Identifier):
        return ".".join(node.parts)
    if isinstance(node, PathRef):
        return node.path
    if isinstance(node, Literal):
        return None if node.value is None else v.stringify(node.value)
    value = expressions.evaluate(node, call.root, call.context)
    return None if value is None else v.stringify(value)


def _field_value(item: Any, field: str) -> Any:
    path = field if field.startswith("$") else f"$.{field}"
    return query_path(path, item)


# ── Stage functions ─────────────────────────────────────────────────


def _where(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    condition = call.arg(0)
    if condition is None:
        return list(data)
    return [item for item in data if v.truthy(call.eval_each(condition, item))]


def _map(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    if call.keywords and not call.positional:
        return [_assign(item, call) for item in data]
    transformer = call.arg(0)
    if transformer is None:
        return list(data)
    return [call.eval_each(transformer, item) for item in data]


def _assign(item: Any, call: StageCall) -> dict:
    return {arg.name: call.eval_each(arg, item) for arg in call.keywords}


def _transform(data: Any, call: StageCall) -> Any:
    if isinstance(data, list):
        return _map(data, call)
    if not call.keywords:
        return data
    return _assign(data, call)


def _group(data: Any, call: StageCall) -> dict:
    if not isinstance(data, list):
        return {}
    field = call.field(0, "by")
    groups: dict[str, list] = {}
    for item in data:
        key = _field_value(item, field) if field else item
        groups.setdefault(v.stringify(key) if key is not None else "null", []).append(item)
    return groups


def _count(data: Any, call: StageCall) -> int:
    return len(data) if isinstance(data, list) else 0


def _sum(data: Any, call: StageCall) -> int | float:
    if not isinstance(data, list):
        return 0
    field = call.field(0, "field")
    total: int | float = 0
    for item in data:
        number = v.to_number(_field_value(item, field) if field else item)
        if number is not None:
            total += number
    return total


def _sort_compare(desc: bool) -> Callable[[Any, Any], int]:
    def compare(a: Any, b: Any) -> int:
        if a is None and b is None:
            return 0
        if a is None:
            return 1 if desc else -1
        if b is None:
            return -1 if desc else 1
        num_a, num_b = v.to_number(a), v.to_number(b)
        if num_a is not None and num_b is not None:
            result = (num_a > num_b) - (num_a < num_b)
        else:
            str_a, str_b = v.stringify(a), v.stringify(b)
            result = (str_a > str_b) - (str_a < str_b)
        return -result if desc else result
    return compare


def _sort(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    field = call.field(0, "by")
    desc_arg = call.arg(1, "desc")
    desc = bool(desc_arg and v.truthy(call.eval(desc_arg, call.root)))
    keyed = [(_field_value(item, field) if field else item, item) for item in data]
    compare = _sort_compare(desc)
    keyed.sort(key=functools.cmp_to_key(lambda x, y: compare(x[0], y[0])))
    return [item for _, item in keyed]


def _take(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    count = v.to_number(call.value(0, "n"))
    return data if count is None else data[:max(int(count), 0)]


def _skip(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    count = v.to_number(call.value(0, "n"))
    return data if count is None else data[max(int(count), 0):]


def _first(data: Any, call: StageCall) -> Any:
    return data[0] if isinstance(data, list) and data else None


def _last(data: Any, call: StageCall) -> Any:
    return data[-1] if isinstance(data, list) and data else None


def _at(data: Any, call: StageCall) -> Any:
    if not isinstance(data, list):
        return None
    index = v.to_number(call.value(0, "index"))
    if index is None:
        return None
    index = int(index // 1)
    return data[index] if -len(data) <= index < len(data) else None


def _flatten(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    depth = v.to_number(call.value(0, "depth", 1))
    if depth is None or depth <= 0:
        return data
    return _flatten_list(data, int(depth))


def _flatten_list(items: list, depth: int) -> list:
    result: list = []
    for item in items:
        if isinstance(item, list) and depth > 0:
            result.extend(_flatten_list(item, depth - 1))
        else:
            result.append(item)
    return result


def _join(data: Any, call: StageCall) -> list:
    if not isinstance(data, list):
        return []
    other = call.value(0, "other")
    on = call.field(1, "on")
    if not isinstance(other, list) or not on:
        return list(data)
    left_key, _, right_key = on.partition("=")
    left_key = left_key.strip()
    right_key = right_key.strip() or left_key
    joined = []
    for item in data:
        if not isinstance(item, dict):
            joined.append(item)
            continue
        key = _field_value(item, left_key)
        match = next(
            (o for o in other if isinstance(o, dict) and key is not None and v.loose_equal(_field_value(o, right_key), key)),
            None,
        )
        joined.append({**item, **match} if match else dict(item))
    return joined


def _pick(data: Any, call: StageCall) -> Any:
    keys = call.fields()
    if isinstance(data, list):
        return [{k: item[k] for k in keys if k in item} for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return {k: data[k] for k in keys if k in data}
    return {}


def _omit(data: Any, call: StageCall) -> Any:
    keys = set(call.fields())
    if isinstance(data, list):
        return [{k: val for k, val in item.items() if k not in keys} for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        return {k: val for k, val in data.items() if k not in keys}
    return {}


def _get(data: Any, call: StageCall) -> Any:
    path = call.field(0, "path")
    if path is None:
        return data
    return _field_value(data, path)


def _arithmetic(op: str) -> Callable[[Any, StageCall], Any]:
    def stage(data: Any, call: StageCall) -> Any:
        if not v.is_number(data):
            logger.debug("%s(): operand is not a number: %r", op, data)
            return None
        operand = call.value(0)
        if not v.is_number(operand):
            logger.debug("%s(): argument is not a number: %r", op, operand)
            return None
        return expressions.apply_operator(op, data, operand)
    return stage


def _cast(convert: Callable[[Any, Any], Any], over_lists: bool = True) -> Callable[[Any, StageCall], Any]:
    def stage(data: Any, call: StageCall) -> Any:
        default = call.value(0, "default")
        if over_lists and isinstance(data, list):
            return [convert(item, default) for item in data]
        return convert(data, default)
    return stage


PipelineFunction = Callable[[Any, StageCall], Any]

PIPELINE_FUNCTIONS: dict[str, PipelineFunction] = {
    "where": _where,
    "select": _where,
    "map": _map,
    "transform": _transform,
    "group": _group,
    "count": _count,
    "sum": _sum,
    "sort": _sort,
    "take": _take,
    "skip": _skip,
    "first": _first,
    "last": _last,
    "at": _at,
    "flatten": _flatten,
    "join": _join,
    "pick": _pick,
    "omit": _omit,
    "get": _get,
    "add": _arithmetic("+"),
    "sub": _arithmetic("-"),
    "mul": _arithmetic("*"),
    "div": _arithmetic("/"),
    "mod": _arithmetic("%"),
    "int": _cast(v.to_int),
    "float": _cast(v.to_float),
    "string": _cast(v.to_string),
    "bool": _cast(v.to_bool, over_lists=False),
}


def register_pipeline_function(name: str, fn: PipelineFunction) -> None:
    if name in PIPELINE_FUNCTIONS:
        raise ValueError(f"Pipeline function already registered: {name}")
    PIPELINE_FUNCTIONS[name] = fn
