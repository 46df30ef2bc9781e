"""Boolean/value expression language used by ``where``, ``map`` and friends.

Grammar, loosest binding first::

    or      := and (("||" | "or") and)*
    and     := compare (("&&" | "and") compare)*
    compare := additive (OP additive)*     OP: == != > < >= <= contains
                                               startswith endswith matches in notin
    additive       := multiplicative (("+" | "-") multiplicative)*
    multiplicative := unary (("*" | "/" | "%") unary)*
    unary   := ("!" | "not" | "-") unary | primary
    primary := literal | $path | identifier | call | template | "(" or ")" | "[" list "]"

Operands are evaluated against the *current element*: ``$`` paths query it
and bare identifiers look up its keys (``item`` names the element itself).
Missing data never raises; it evaluates to ``None`` and comparisons involving
it are false.
"""

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from testflow_engine.query.jsonpath import compile_path
from testflow_engine.query.jsonpath import evaluate as query_path
from testflow_engine.template.renderer import TemplateContext, lookup, resolve_string
from testflow_engine.template.tokenizer import find_spans
from testflow_engine.utils.exceptions import ExpressionSyntaxError, ResolutionError
from testflow_engine.utils import values as v

# ── AST ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class PathRef:
    path: str


@dataclass(frozen=True)
class Identifier:
    parts: tuple[str, ...]


@dataclass(frozen=True)
class TemplateRef:
    raw: str
    inline: bool


@dataclass(frozen=True)
class ListExpr:
    items: tuple


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Logical:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple


# ── Lexer ───────────────────────────────────────────────────────────

_WORD_OPERATORS = {
    "contains": "contains",
    "startswith": "startswith",
    "endswith": "endswith",
    "matches": "matches",
    "in": "in",
    "notin": "notin",
    "and": "&&",
    "or": "||",
    "not": "!",
}

_KEYWORDS = {"true": True, "false": False, "null": None}

_SYMBOLS = ("||", "&&", "==", "!=", ">=", "<=", ">", "<", "!", "+", "-", "*", "/", "%", "(", ")", "[", "]", ",")

_COMPARISON_OPS = {"==", "!=", ">", "<", ">=", "<=", "contains", "startswith", "endswith", "matches", "in", "notin"}

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'", "/": "/"}


@dataclass(frozen=True)
class Token:
    kind: str  # number, string, path, template, ident, op, eof
    value: Any
    pos: int


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    length = len(text)
    while pos < length:
        char = text[pos]
        if char.isspace():
            pos += 1
        elif char in "'\"":
            value, pos_end = _read_string(text, pos)
            tokens.append(Token("string", value, pos))
            pos = pos_end
        elif char == "{" and text.startswith("{{", pos):
            close = text.find("}}}" if text.startswith("{{{", pos) else "}}", pos)
            if close == -1:
                raise ExpressionSyntaxError(f"Unterminated template at position {pos} in '{text}'")
            end = close + (3 if text.startswith("{{{", pos) else 2)
            tokens.append(Token("template", text[pos:end], pos))
            pos = end
        elif char == "$":
            end = _scan_path(text, pos)
            tokens.append(Token("path", text[pos:end], pos))
            pos = end
        elif char.isdigit() or (char == "." and pos + 1 < length and text[pos + 1].isdigit()):
            end = pos
            while end < length and (text[end].isdigit() or text[end] == "."):
                end += 1
            if end < length and text[end] in "eE":
                exp_end = end + 1
                if exp_end < length and text[exp_end] in "+-":
                    exp_end += 1
                if exp_end < length and text[exp_end].isdigit():
                    end = exp_end
                    while end < length and text[end].isdigit():
                        end += 1
            raw = text[pos:end]
            try:
                number = float(raw) if any(c in raw for c in ".eE") else int(raw)
            except ValueError:
                raise ExpressionSyntaxError(f"Invalid number '{raw}' in '{text}'")
            tokens.append(Token("number", number, pos))
            pos = end
        elif char.isalpha() or char == "_":
            end = pos
            while end < length and (text[end].isalnum() or text[end] in "_."):
                end += 1
            word = text[pos:end].rstrip(".")
            end = pos + len(word)
            lowered = word.lower()
            if lowered in _WORD_OPERATORS:
                tokens.append(Token("op", _WORD_OPERATORS[lowered], pos))
            elif lowered in _KEYWORDS:
                tokens.append(Token("literal", _KEYWORDS[lowered], pos))
            else:
                tokens.append(Token("ident", word, pos))
            pos = end
        else:
            for symbol in _SYMBOLS:
                if text.startswith(symbol, pos):
                    tokens.append(Token("op", symbol, pos))
                    pos += len(symbol)
                    break
            else:
                raise ExpressionSyntaxError(f"Unexpected character '{char}' at position {pos} in '{text}'")
    tokens.append(Token("eof", None, length))
    return tokens


def _read_string(text: str, pos: int) -> tuple[str, int]:
    quote = text[pos]
    chars: list[str] = []
    i = pos + 1
    while i < len(text):
        char = text[i]
        if char == "\\" and i + 1 < len(text):
            chars.append(_ESCAPES.get(text[i + 1], text[i + 1]))
            i += 2
            continue
        if char == quote:
            return "".join(chars), i + 1
        chars.append(char)
        i += 1
    raise ExpressionSyntaxError(f"Unterminated string starting at position {pos} in '{text}'")


def _scan_path(text: str, pos: int) -> int:
    end = pos + 1
    while end < len(text):
        char = text[end]
        if char.isalnum() or char in "_.$" or (char == "*" and text[end - 1] == "."):
            end += 1
        elif char == "[":
            depth = 0
            quote = None
            while end < len(text):
                c = text[end]
                if quote:
                    if c == quote:
                        quote = None
                elif c in "'\"":
                    quote = c
                elif c == "[":
                    depth += 1
                elif c == "]":
                    depth -= 1
                    if depth == 0:
                        break
                end += 1
            if end >= len(text):
                raise ExpressionSyntaxError(f"Unterminated bracket in path at position {pos} in '{text}'")
            end += 1
        else:
            break
    return end


# ── Parser ──────────────────────────────────────────────────────────


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def match_op(self, *ops: str) -> str | None:
        token = self.peek()
        if token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def expect_op(self, op: str) -> None:
        if self.match_op(op) is None:
            token = self.peek()
            found = "end of expression" if token.kind == "eof" else repr(token.value)
            raise ExpressionSyntaxError(f"Expected '{op}' but found {found} in '{self.text}'")

    def parse(self) -> Any:
        if self.peek().kind == "eof":
            raise ExpressionSyntaxError("Empty expression")
        node = self.parse_or()
        if self.peek().kind != "eof":
            token = self.peek()
            raise ExpressionSyntaxError(f"Unexpected token {token.value!r} at position {token.pos} in '{self.text}'")
        return node

    def parse_or(self) -> Any:
        node = self.parse_and()
        while self.match_op("||"):
            node = Logical("||", node, self.parse_and())
        return node

    def parse_and(self) -> Any:
        node = self.parse_compare()
        while self.match_op("&&"):
            node = Logical("&&", node, self.parse_compare())
        return node

    def parse_compare(self) -> Any:
        node = self.parse_additive()
        while True:
            op = self.match_op(*_COMPARISON_OPS)
            if op is None:
                return node
            node = Binary(op, node, self.parse_additive())

    def parse_additive(self) -> Any:
        node = self.parse_multiplicative()
        while True:
            op = self.match_op("+", "-")
            if op is None:
                return node
            node = Binary(op, node, self.parse_multiplicative())

    def parse_multiplicative(self) -> Any:
        node = self.parse_unary()
        while True:
            op = self.match_op("*", "/", "%")
            if op is None:
                return node
            node = Binary(op, node, self.parse_unary())

    def parse_unary(self) -> Any:
        op = self.match_op("!", "-")
        if op is not None:
            return Unary(op, self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Any:
        token = self.advance()
        if token.kind in ("number", "literal"):
            return Literal(token.value)
        if token.kind == "string":
            if find_spans(token.value):
                return TemplateRef(token.value, inline=True)
            return Literal(token.value)
        if token.kind == "template":
            if not find_spans(token.value):
                raise ExpressionSyntaxError(f"Invalid template {token.value} in '{self.text}'")
            return TemplateRef(token.value, inline=False)
        if token.kind == "path":
            try:
                compile_path(token.value)
            except ExpressionSyntaxError as e:
                raise ExpressionSyntaxError(f"{e} in '{self.text}'") from e
            return PathRef(token.value)
        if token.kind == "ident":
            if self.match_op("("):
                return self.parse_call(token)
            return Identifier(tuple(token.value.split(".")))
        if token.kind == "op" and token.value == "(":
            node = self.parse_or()
            self.expect_op(")")
            return node
        if token.kind == "op" and token.value == "[":
            items = []
            if not self.match_op("]"):
                items.append(self.parse_or())
                while self.match_op(","):
                    items.append(self.parse_or())
                self.expect_op("]")
            return ListExpr(tuple(items))
        found = "end of expression" if token.kind == "eof" else repr(token.value)
        raise ExpressionSyntaxError(f"Unexpected {found} at position {token.pos} in '{self.text}'")

    def parse_call(self, token: Token) -> Call:
        name = token.value.lower()
        if name not in FUNCTIONS and name not in _QUANTIFIERS:
            raise ExpressionSyntaxError(f"Unknown function '{token.value}' in '{self.text}'")
        args = []
        if not self.match_op(")"):
            args.append(self.parse_or())
            while self.match_op(","):
                args.append(self.parse_or())
            self.expect_op(")")
        if name in _QUANTIFIERS and len(args) != 2:
            raise ExpressionSyntaxError(f"{name}() takes a list and a condition in '{self.text}'")
        return Call(name, tuple(args))


@lru_cache(maxsize=1024)
def parse(expression: str) -> Any:
    return _Parser(expression).parse()


# ── Evaluation ──────────────────────────────────────────────────────


def evaluate(node: Any, current: Any, context: TemplateContext | None = None) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, PathRef):
        return query_path(node.path, current)
    if isinstance(node, Identifier):
        return _lookup_identifier(node.parts, current)
    if isinstance(node, TemplateRef):
        return _resolve_template(node, context)
    if isinstance(node, ListExpr):
        return [evaluate(item, current, context) for item in node.items]
    if isinstance(node, Logical):
        left = v.truthy(evaluate(node.left, current, context))
        if node.op == "&&":
            return left and v.truthy(evaluate(node.right, current, context))
        return left or v.truthy(evaluate(node.right, current, context))
    if isinstance(node, Unary):
        operand = evaluate(node.operand, current, context)
        if node.op == "!":
            return not v.truthy(operand)
        number = v.to_number(operand)
        return -number if number is not None else None
    if isinstance(node, Binary):
        left = evaluate(node.left, current, context)
        right = evaluate(node.right, current, context)
        return _BINARY[node.op](left, right)
    if isinstance(node, Call):
        if node.name in _QUANTIFIERS:
            return _quantify(node, current, context)
        args = [evaluate(arg, current, context) for arg in node.args]
        try:
            return FUNCTIONS[node.name](*args)
        except (TypeError, ValueError, OverflowError, ZeroDivisionError):
            return None
    raise ExpressionSyntaxError(f"Cannot evaluate node {node!r}")


def evaluate_expression(expression: str, current: Any, context: TemplateContext | None = None) -> Any:
    return evaluate(parse(expression), current, context)


def evaluate_condition(expression: str, current: Any, context: TemplateContext | None = None) -> bool:
    return v.truthy(evaluate_expression(expression, current, context))


def _lookup_identifier(parts: tuple[str, ...], current: Any) -> Any:
    if parts[0] == "item" and not (isinstance(current, dict) and "item" in current):
        value = current
        parts = parts[1:]
    else:
        value = current
    for part in parts:
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, list) and part.lstrip("-").isdigit():
            index = int(part)
            value = value[index] if -len(value) <= index < len(value) else None
        else:
            return None
    return value


def _resolve_template(node: TemplateRef, context: TemplateContext | None) -> Any:
    if context is None:
        return node.raw if node.inline else None
    if node.inline:
        return resolve_string(node.raw, context)
    span = find_spans(node.raw)[0]
    try:
        return lookup(span.source, span.expression, context)
    except ResolutionError:
        return None


def _quantify(node: Call, current: Any, context: TemplateContext | None) -> bool:
    items = evaluate(node.args[0], current, context)
    if not isinstance(items, list):
        return False
    condition = node.args[1]
    results = (v.truthy(evaluate(condition, item, context)) for item in items)
    return any(results) if node.name == "any" else all(results)


# ── Operators ───────────────────────────────────────────────────────


def _equals(left: Any, right: Any) -> bool:
    if v.is_number(left) or v.is_number(right):
        a, b = v.to_number(left), v.to_number(right)
        if a is not None and b is not None:
            return a == b
    return v.deep_equal(left, right)


def _ordered(compare):
    def op(left: Any, right: Any) -> bool:
        a, b = v.to_number(left), v.to_number(right)
        if a is None or b is None:
            return False
        return compare(a, b)
    return op


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return right is not None and v.stringify(right) in left
    if isinstance(left, list):
        return any(v.loose_equal(item, right) for item in left)
    if isinstance(left, dict):
        return isinstance(right, str) and right in left
    return False


def _starts_with(left: Any, right: Any) -> bool:
    if left is None or right is None or isinstance(left, (list, dict)):
        return False
    return v.stringify(left).startswith(v.stringify(right))


def _ends_with(left: Any, right: Any) -> bool:
    if left is None or right is None or isinstance(left, (list, dict)):
        return False
    return v.stringify(left).endswith(v.stringify(right))


def _matches(left: Any, right: Any) -> bool:
    if not isinstance(right, str):
        return False
    return v.safe_search(right, left)


def _member(left: Any, right: Any) -> bool:
    return _contains(right, left)


def _add(left: Any, right: Any) -> Any:
    if isinstance(left, list) and isinstance(right, list):
        return left + right
    if isinstance(left, str) or isinstance(right, str):
        if left is None or right is None:
            return None
        return v.stringify(left) + v.stringify(right)
    return _arithmetic(lambda a, b: a + b)(left, right)


def _arithmetic(fn):
    def op(left: Any, right: Any) -> Any:
        a, b = v.to_number(left), v.to_number(right)
        if a is None or b is None:
            return None
        try:
            result = fn(a, b)
        except (ZeroDivisionError, OverflowError, ValueError):
            return None
        if isinstance(result, float) and (math.isnan(result) or math.isinf(result)):
            return None
        return result
    return op


def _divide(a, b):
    result = a / b
    return int(result) if isinstance(result, float) and result.is_integer() and isinstance(a, int) and isinstance(b, int) else result


_BINARY = {
    "==": _equals,
    "!=": lambda left, right: not _equals(left, right),
    ">": _ordered(lambda a, b: a > b),
    "<": _ordered(lambda a, b: a < b),
    ">=": _ordered(lambda a, b: a >= b),
    "<=": _ordered(lambda a, b: a <= b),
    "contains": _contains,
    "startswith": _starts_with,
    "endswith": _ends_with,
    "matches": _matches,
    "in": _member,
    "notin": lambda left, right: not _member(left, right),
    "+": _add,
    "-": _arithmetic(lambda a, b: a - b),
    "*": _arithmetic(lambda a, b: a * b),
    "/": _arithmetic(_divide),
    "%": _arithmetic(lambda a, b: math.fmod(a, b) if isinstance(a, float) or isinstance(b, float) else int(math.fmod(a, b))),
}


def apply_operator(op: str, left: Any, right: Any) -> Any:
    return _BINARY[op](left, right)


# ── Functions ───────────────────────────────────────────────────────

_QUANTIFIERS = {"any", "all"}


def _numeric(fn):
    def call(value: Any, *rest: Any) -> Any:
        number = v.to_number(value)
        if number is None:
            return None
        return fn(number, *rest)
    return call


def _round(number, digits=0):
    digits = int(v.to_number(digits) or 0)
    # Half away from zero, not banker's rounding
    factor = 10 ** digits
    rounded = math.floor(abs(number) * factor + 0.5) / factor
    rounded = math.copysign(rounded, number)
    return int(rounded) if digits == 0 else rounded


def _extreme(pick):
    def call(*args: Any) -> Any:
        items = args[0] if len(args) == 1 and isinstance(args[0], list) else list(args)
        numbers = [n for n in (v.to_number(item) for item in items) if n is not None]
        return pick(numbers) if numbers else None
    return call


FUNCTIONS = {
    "exists": lambda value=None: value is not None,
    "isnull": lambda value=None: value is None,
    "empty": lambda value=None: v.is_empty(value),
    "notempty": lambda value=None: not v.is_empty(value),
    "length": lambda value=None: v.length_of(value),
    "int": lambda value=None, default=None: v.to_int(value, default),
    "float": lambda value=None, default=None: v.to_float(value, default),
    "string": lambda value=None, default=None: v.to_string(value, default),
    "bool": lambda value=None, default=None: v.to_bool(value, default),
    "abs": _numeric(abs),
    "round": _numeric(_round),
    "ceil": _numeric(math.ceil),
    "floor": _numeric(math.floor),
    "min": _extreme(min),
    "max": _extreme(max),
    "pow": lambda base, exponent: _arithmetic(lambda a, b: a ** b)(base, exponent),
}
