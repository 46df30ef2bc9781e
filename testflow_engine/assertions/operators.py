"""One handler per :class:`AssertionOperator`; ``handler(actual, expected) -> bool``."""

import json
from collections.abc import Callable
from typing import Any

from testflow_engine.models.assertion import AssertionOperator
from testflow_engine.utils import values as v

OperatorHandler = Callable[[Any, Any], bool]


def _as_list(expected: Any) -> list | None:
    if isinstance(expected, list):
        return expected
    if isinstance(expected, str):
        text = expected.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                return None
            return parsed if isinstance(parsed, list) else None
        if "," in text:
            return [part.strip() for part in text.split(",")]
    return None


def _includes(items: list, value: Any) -> bool:
    return any(v.loose_equal(item, value) for item in items)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return expected is not None and v.stringify(expected) in actual
    if isinstance(actual, list):
        return _includes(actual, expected)
    if isinstance(actual, dict):
        return isinstance(expected, str) and expected in actual
    return False


def _not_contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (str, list, dict)):
        return not _contains(actual, expected)
    return True


def _compare(check: Callable[[float, float], bool]) -> OperatorHandler:
    def handler(actual: Any, expected: Any) -> bool:
        a, b = v.to_number(actual), v.to_number(expected)
        if a is None or b is None:
            return False
        return check(a, b)
    return handler


def _range(actual: Any, expected: Any) -> tuple[float, float, float] | None:
    bounds = _as_list(expected)
    number = v.to_number(actual)
    if number is None or bounds is None or len(bounds) != 2:
        return None
    low, high = v.to_number(bounds[0]), v.to_number(bounds[1])
    if low is None or high is None:
        return None
    return number, low, high


def _between(actual: Any, expected: Any) -> bool:
    bounds = _range(actual, expected)
    return bounds is not None and bounds[1] <= bounds[0] <= bounds[2]


def _not_between(actual: Any, expected: Any) -> bool:
    bounds = _range(actual, expected)
    return bounds is not None and (bounds[0] < bounds[1] or bounds[0] > bounds[2])


def _length(check: Callable[[int, float], bool]) -> OperatorHandler:
    def handler(actual: Any, expected: Any) -> bool:
        size = v.length_of(actual)
        target = v.to_number(expected)
        if size is None or target is None:
            return False
        return check(size, target)
    return handler


def _set_check(check: Callable[[list, list], bool]) -> OperatorHandler:
    def handler(actual: Any, expected: Any) -> bool:
        items = _as_list(expected)
        if not isinstance(actual, list) or items is None:
            return False
        return check(actual, items)
    return handler


def _one_of(actual: Any, expected: Any) -> bool:
    items = _as_list(expected)
    return items is not None and _includes(items, actual)


def _not_one_of(actual: Any, expected: Any) -> bool:
    items = _as_list(expected)
    return items is not None and not _includes(items, actual)


def _starts_with(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and expected is not None and actual.startswith(v.stringify(expected))


def _ends_with(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and expected is not None and actual.endswith(v.stringify(expected))


def _matches_regex(actual: Any, expected: Any) -> bool:
    return isinstance(actual, str) and isinstance(expected, str) and v.safe_search(expected, actual)


def _is_type(actual: Any, expected: Any) -> bool:
    return isinstance(expected, str) and v.type_name(actual) == expected.strip().lower()


OPERATORS: dict[AssertionOperator, OperatorHandler] = {
    AssertionOperator.EQUALS: v.loose_equal,
    AssertionOperator.NOT_EQUALS: lambda actual, expected: not v.loose_equal(actual, expected),
    AssertionOperator.CONTAINS: _contains,
    AssertionOperator.NOT_CONTAINS: _not_contains,
    AssertionOperator.EXISTS: lambda actual, expected: actual is not None,
    AssertionOperator.GREATER_THAN: _compare(lambda a, b: a > b),
    AssertionOperator.LESS_THAN: _compare(lambda a, b: a < b),
    AssertionOperator.GREATER_THAN_OR_EQUAL: _compare(lambda a, b: a >= b),
    AssertionOperator.LESS_THAN_OR_EQUAL: _compare(lambda a, b: a <= b),
    AssertionOperator.STARTS_WITH: _starts_with,
    AssertionOperator.ENDS_WITH: _ends_with,
    AssertionOperator.MATCHES_REGEX: _matches_regex,
    AssertionOperator.IS_EMPTY: lambda actual, expected: v.is_empty(actual),
    AssertionOperator.IS_NOT_EMPTY: lambda actual, expected: not v.is_empty(actual),
    AssertionOperator.BETWEEN: _between,
    AssertionOperator.NOT_BETWEEN: _not_between,
    AssertionOperator.HAS_LENGTH: _length(lambda size, n: size == n),
    AssertionOperator.LENGTH_GREATER_THAN: _length(lambda size, n: size > n),
    AssertionOperator.LENGTH_LESS_THAN: _length(lambda size, n: size < n),
    AssertionOperator.CONTAINS_ALL: _set_check(lambda actual, items: all(_includes(actual, i) for i in items)),
    AssertionOperator.CONTAINS_ANY: _set_check(lambda actual, items: any(_includes(actual, i) for i in items)),
    AssertionOperator.NOT_CONTAINS_ANY: _set_check(lambda actual, items: not any(_includes(actual, i) for i in items)),
    AssertionOperator.ONE_OF: _one_of,
    AssertionOperator.NOT_ONE_OF: _not_one_of,
    AssertionOperator.IS_TYPE: _is_type,
    AssertionOperator.IS_NULL: lambda actual, expected: actual is None,
    AssertionOperator.IS_NOT_NULL: lambda actual, expected: actual is not None,
}


def get_operator(operator: AssertionOperator) -> OperatorHandler:
    return OPERATORS[AssertionOperator(operator)]
