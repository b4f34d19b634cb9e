"""
Sandboxed expression evaluation for custom checks.

Conditions, formulas and math expressions are written with {field}
placeholders, e.g. ``{total_excl_vat} + {vat_total}`` or
``{currency} != "AED" && {fx_rate} > 0``. They are tokenized and parsed
into a small tree and evaluated against a record; nothing is ever handed
to eval().

Supported syntax:
- literals: numbers, single/double-quoted strings, true, false, null
- field references: {field} or {nested.field}
- arithmetic: + - * / % and unary minus
- comparison: == != === !== < <= > >= (also =, ≠, ≤, ≥)
- boolean: && || ! (also and, or, not) and parentheses
"""

import math
import re
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Optional, Union

from .context import get_field_value

Number = Union[int, float]


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""


# ============================================================================
# Tokenizer
# ============================================================================

_NUMBER = re.compile(r"(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")

# Longest operators first so that "<=" is not read as "<" then "="
_OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||",
    "≤", "≥", "≠", "<", ">", "=", "!", "+", "-", "*", "/", "%", "(", ")",
)

_OPERATOR_ALIASES = {
    "=": "==",
    "≠": "!=",
    "≤": "<=",
    "≥": ">=",
    "and": "&&",
    "or": "||",
    "not": "!",
}

_KEYWORD_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
}

_STRING_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'", "/": "/"}

Token = tuple[str, Any]


def _read_string(source: str, start: int) -> tuple[str, int]:
    quote = source[start]
    chars: list[str] = []
    i = start + 1
    while i < len(source):
        ch = source[i]
        if ch == "\\" and i + 1 < len(source):
            chars.append(_STRING_ESCAPES.get(source[i + 1], source[i + 1]))
            i += 2
            continue
        if ch == quote:
            return "".join(chars), i + 1
        chars.append(ch)
        i += 1
    raise ExpressionError(f"Unterminated string literal at position {start}")


def tokenize(source: str) -> list[Token]:
    """Split an expression into (kind, value) tokens."""
    tokens: list[Token] = []
    i = 0
    while i < len(source):
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        if ch == "{":
            end = source.find("}", i)
            if end == -1:
                raise ExpressionError(f"Unclosed field reference at position {i}")
            name = source[i + 1:end].strip()
            if not name:
                raise ExpressionError(f"Empty field reference at position {i}")
            tokens.append(("field", name))
            i = end + 1
            continue
        if ch in "\"'":
            text, i = _read_string(source, i)
            tokens.append(("literal", text))
            continue
        match = _NUMBER.match(source, i)
        if match:
            text = match.group(0)
            value: Number = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(("literal", value))
            i = match.end()
            continue
        match = _NAME.match(source, i)
        if match:
            word = match.group(0)
            if word in _KEYWORD_LITERALS:
                tokens.append(("literal", _KEYWORD_LITERALS[word]))
            elif word in _OPERATOR_ALIASES:
                tokens.append(("op", _OPERATOR_ALIASES[word]))
            else:
                raise ExpressionError(f"Unknown identifier {word!r}; reference fields as {{{word}}}")
            i = match.end()
            continue
        for op in _OPERATORS:
            if source.startswith(op, i):
                tokens.append(("op", _OPERATOR_ALIASES.get(op, op)))
                i += len(op)
                break
        else:
            raise ExpressionError(f"Unexpected character {ch!r} at position {i}")
    return tokens


# ============================================================================
# Parser
# ============================================================================
#
# Nodes are plain tuples:
#   ("lit", value) ("field", name) ("neg", node) ("not", node)
#   ("and", left, right) ("or", left, right) ("bin", op, left, right)

_COMPARISON_OPS = {"==", "!=", "===", "!==", "<", "<=", ">", ">="}

MAX_NESTING_DEPTH = 64


class _Parser:
    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, *ops: str) -> Optional[str]:
        token = self.peek()
        if token is not None and token[0] == "op" and token[1] in ops:
            self.pos += 1
            return token[1]
        return None

    def parse(self) -> tuple:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise ExpressionError(f"Unexpected token {self.peek()[1]!r}")
        return node

    def parse_or(self) -> tuple:
        node = self.parse_and()
        while self.accept("||"):
            node = ("or", node, self.parse_and())
        return node

    def parse_and(self) -> tuple:
        node = self.parse_not()
        while self.accept("&&"):
            node = ("and", node, self.parse_not())
        return node

    def descend(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise ExpressionError(f"Expression nested deeper than {MAX_NESTING_DEPTH} levels")

    def parse_not(self) -> tuple:
        if self.accept("!"):
            self.descend()
            node = ("not", self.parse_not())
            self.depth -= 1
            return node
        return self.parse_comparison()

    def parse_comparison(self) -> tuple:
        node = self.parse_additive()
        op = self.accept(*_COMPARISON_OPS)
        if op:
            node = ("bin", op, node, self.parse_additive())
            if self.accept(*_COMPARISON_OPS):
                raise ExpressionError("Chained comparisons are not supported")
        return node

    def parse_additive(self) -> tuple:
        node = self.parse_term()
        while True:
            op = self.accept("+", "-")
            if not op:
                return node
            node = ("bin", op, node, self.parse_term())

    def parse_term(self) -> tuple:
        node = self.parse_unary()
        while True:
            op = self.accept("*", "/", "%")
            if not op:
                return node
            node = ("bin", op, node, self.parse_unary())

    def parse_unary(self) -> tuple:
        op = self.accept("-", "+", "!")
        if not op:
            return self.parse_primary()
        self.descend()
        node = self.parse_unary()
        self.depth -= 1
        if op == "-":
            return ("neg", node)
        if op == "!":
            return ("not", node)
        return node

    def parse_primary(self) -> tuple:
        token = self.peek()
        if token is None:
            raise ExpressionError("Unexpected end of expression")
        self.pos += 1
        kind, value = token
        if kind == "literal":
            return ("lit", value)
        if kind == "field":
            return ("field", value)
        if kind == "op" and value == "(":
            self.descend()
            node = self.parse_or()
            self.depth -= 1
            if not self.accept(")"):
                raise ExpressionError("Missing closing parenthesis")
            return node
        raise ExpressionError(f"Unexpected token {value!r}")


# ============================================================================
# Evaluation
# ============================================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> Number:
    if isinstance(value, bool):
        return int(value)
    if _is_number(value):
        return value
    raise ExpressionError(f"Expected a number, got {value!r}")


def _coerce_numeric_string(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return value
    return value


def _display(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _loose_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if _is_number(left) or _is_number(right):
        left, right = _coerce_numeric_string(left), _coerce_numeric_string(right)
    return left == right


def _strict_equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return _loose_equal(left, right)
    if op == "!=":
        return not _loose_equal(left, right)
    if op == "===":
        return _strict_equal(left, right)
    if op == "!==":
        return not _strict_equal(left, right)

    if left is None or right is None:
        raise ExpressionError(f"Cannot order-compare null with {op}")
    if isinstance(left, str) and isinstance(right, str):
        pass
    else:
        left = _as_number(_coerce_numeric_string(left))
        right = _as_number(_coerce_numeric_string(right))
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return _display(left) + _display(right)
    a, b = _as_number(left), _as_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        raise ExpressionError("Division by zero")
    if op == "/":
        return a / b
    return math.fmod(a, b)


def _evaluate(node: tuple, resolve: Callable[[str], Any]) -> Any:
    kind = node[0]
    if kind == "lit":
        return node[1]
    if kind == "field":
        return resolve(node[1])
    if kind == "neg":
        return -_as_number(_evaluate(node[1], resolve))
    if kind == "not":
        return not _evaluate(node[1], resolve)
    if kind == "and":
        left = _evaluate(node[1], resolve)
        return _evaluate(node[2], resolve) if left else left
    if kind == "or":
        left = _evaluate(node[1], resolve)
        return left if left else _evaluate(node[2], resolve)
    op, left_node, right_node = node[1], node[2], node[3]
    left = _evaluate(left_node, resolve)
    right = _evaluate(right_node, resolve)
    if op in _COMPARISON_OPS:
        return _compare(op, left, right)
    return _arithmetic(op, left, right)


def _collect_fields(node: tuple, out: list[str]) -> None:
    if node[0] == "field":
        if node[1] not in out:
            out.append(node[1])
        return
    for child in node[1:]:
        if isinstance(child, tuple):
            _collect_fields(child, out)


class Expression:
    """A parsed expression, reusable across records."""

    def __init__(self, source: str) -> None:
        self.source = source
        fields: list[str] = []
        try:
            self._tree = _Parser(tokenize(source)).parse()
            _collect_fields(self._tree, fields)
        except RecursionError:
            raise ExpressionError("Expression is too deeply nested") from None
        self.fields: tuple[str, ...] = tuple(fields)

    def evaluate(self, resolve: Callable[[str], Any]) -> Any:
        """Evaluate with field values supplied by ``resolve(field_name)``."""
        try:
            return _evaluate(self._tree, resolve)
        except RecursionError:
            raise ExpressionError("Expression is too deeply nested") from None

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


@lru_cache(maxsize=512)
def compile_expression(source: str) -> Expression:
    """Parse an expression once; raises ExpressionError on bad syntax."""
    return Expression(source)


# ============================================================================
# Record-level Helpers
# ============================================================================

def evaluate_formula(formula: str, record: Any) -> Any:
    """
    Evaluate a boolean/any-valued formula against a record.

    Field values are bound as-is: strings stay strings, missing values
    become null, numbers stay numbers. Raises ExpressionError on failure.
    """
    expression = compile_expression(formula)
    return expression.evaluate(lambda name: get_field_value(record, name))


def evaluate_condition(condition: Optional[str], record: Any) -> bool:
    """
    Evaluate an optional gating condition.

    A blank condition, or one that fails to parse or evaluate, counts as
    true so that the rule still runs.
    """
    if condition is None or not condition.strip():
        return True
    try:
        return bool(evaluate_formula(condition, record))
    except ExpressionError:
        return True


class _MissingOperand(Exception):
    pass


def _numeric_operand(record: Any, name: str) -> Number:
    value = get_field_value(record, name)
    if value is None or isinstance(value, bool):
        raise _MissingOperand(name)
    try:
        number = float(value if _is_number(value) else str(value).strip())
    except (ValueError, OverflowError):
        raise _MissingOperand(name) from None
    if not math.isfinite(number):
        raise _MissingOperand(name)
    return number


def evaluate_numeric(expression: str, record: Any) -> Optional[float]:
    """
    Evaluate an arithmetic expression to a number.

    Returns None when a referenced field is missing or non-numeric, when
    evaluation fails, or when the result is not a finite number.
    """
    try:
        compiled = compile_expression(expression)
        result = compiled.evaluate(lambda name: _numeric_operand(record, name))
    except (ExpressionError, _MissingOperand):
        return None
    if not _is_number(result) or not math.isfinite(result):
        return None
    return float(result)
