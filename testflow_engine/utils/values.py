"""Helpers shared by the expression, pipeline and assertion layers.

JSON values arrive as plain Python objects (dict, list, str, int, float, bool,
None). ``None`` doubles as "absent": a path that misses and a JSON ``null``
both evaluate to it.
"""

import json
import math
import re
from typing import Any

_NUMERIC_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> int | float | None:
    """Numeric coercion; ``None`` when the value has no numeric reading."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and math.isnan(value):
            return None
        return value
    if isinstance(value, str) and _NUMERIC_RE.match(value):
        number = float(value)
        return int(number) if number.is_integer() and "." not in value and "e" not in value.lower() else number
    return None


def deep_equal(left: Any, right: Any) -> bool:
    """Structural equality that keeps booleans and numbers apart."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        return left == right
    if isinstance(left, dict) and isinstance(right, dict):
        if left.keys() != right.keys():
            return False
        return all(deep_equal(left[k], right[k]) for k in left)
    if isinstance(left, list) and isinstance(right, list):
        if len(left) != len(right):
            return False
        return all(deep_equal(a, b) for a, b in zip(left, right))
    if type(left) is not type(right):
        return False
    return left == right


def loose_equal(left: Any, right: Any) -> bool:
    """Deep equality, except a number and a numeric string compare by value."""
    if (is_number(left) and isinstance(right, str)) or (isinstance(left, str) and is_number(right)):
        a, b = to_number(left), to_number(right)
        return a is not None and b is not None and a == b
    return deep_equal(left, right)


def stringify(value: Any) -> str:
    """Render a value the way it appears when spliced into text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return False


def length_of(value: Any) -> int | None:
    if isinstance(value, (str, list, dict)):
        return len(value)
    return None


# ── Casts ───────────────────────────────────────────────────────────


def to_int(value: Any, default: Any = None) -> Any:
    if isinstance(value, bool):
        return int(value)
    number = to_number(value)
    if number is None:
        return default
    return int(number)


def to_float(value: Any, default: Any = None) -> Any:
    if isinstance(value, bool):
        return float(value)
    number = to_number(value)
    if number is None:
        return default
    return float(number)


def to_string(value: Any, default: Any = None) -> Any:
    if value is None:
        return default
    return stringify(value)


def to_bool(value: Any, default: Any = None) -> Any:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1", "on"):
            return True
        if lowered in ("false", "no", "0", "off", ""):
            return False
        return default
    if is_number(value):
        return value != 0
    return bool(value)


def truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


# ── Regex guard ─────────────────────────────────────────────────────

_LOOKAROUND_RE = re.compile(r"\(\?<?[=!]")
_BACKREF_RE = re.compile(r"\\[1-9]|\(\?P=")
_OPEN_BRACE_RE = re.compile(r"\{\d*,\}")
_NESTED_QUANTIFIER_RE = re.compile(r"\([^()]*[+*}][^()]*\)\s*[+*{]")

MAX_PATTERN_LENGTH = 500


def is_safe_regex(pattern: str) -> bool:
    """Reject pattern shapes prone to catastrophic backtracking."""
    if not isinstance(pattern, str) or len(pattern) > MAX_PATTERN_LENGTH:
        return False
    if _LOOKAROUND_RE.search(pattern) or _BACKREF_RE.search(pattern):
        return False
    if _OPEN_BRACE_RE.search(pattern) or _NESTED_QUANTIFIER_RE.search(pattern):
        return False
    try:
        re.compile(pattern)
    except re.error:
        return False
    return True


def safe_search(pattern: str, text: Any) -> bool:
    if text is None or not is_safe_regex(pattern):
        return False
    return re.search(pattern, stringify(text)) is not None
