"""Expression evaluation for ``${{ ... }}`` templates and ``if`` conditions.

Resolves expressions against a :class:`ContextSnapshot`. The language is the
GitHub Actions expression language:

    - Literals: ``null``, ``true``, ``false``, numbers (incl. hex/exponent),
      single-quoted strings (``''`` escapes a quote)
    - Context access: ``github.ref``, ``needs.build.outputs['image']``
    - Object filters: ``needs.*.result``
    - Operators: ``!``, ``<``, ``<=``, ``>``, ``>=``, ``==``, ``!=``, ``&&``, ``||``
    - Functions: contains, startsWith, endsWith, format, join, toJSON,
      fromJSON, hashFiles, success, failure, cancelled, always

Evaluation is pure: the same expression against the same snapshot always
yields the same value. Parsed expressions are cached by source text.

Key exports:
    ExpressionEvaluator: evaluate(), evaluate_condition(), render()
    ValueKind, kind_of: value tagging used by the coercion rules
    uses_status_function: whether an ``if`` already calls a status function
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from gantry.errors import ErrorKind, EvaluationError
from gantry.pipeline.context import ContextSnapshot, freeze, thaw

if TYPE_CHECKING:
    from gantry.pipeline.hashing import FileHasher

logger = logging.getLogger("gantry.pipeline.expressions")

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})


# ── Value kinds and coercion ─────────────────────────────────────────────────


class ValueKind(str, Enum):
    NULL = "null"
    BOOLEAN = "boolean"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def kind_of(value: Any) -> ValueKind:
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, Mapping):
        return ValueKind.OBJECT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    return ValueKind.STRING


_NUMERIC_RE = re.compile(
    r"^\s*[-+]?(?:0x[0-9a-f]+|(?:\d+\.?\d*|\.\d+)(?:e[-+]?\d+)?)\s*$", re.IGNORECASE
)


def _looks_numeric(text: str) -> bool:
    return bool(_NUMERIC_RE.match(text))


def _parse_number(text: str) -> float:
    text = text.strip()
    if not text:
        return 0.0
    if not _looks_numeric(text):
        return math.nan
    sign = -1.0 if text.startswith("-") else 1.0
    body = text.lstrip("+-")
    if body.lower().startswith("0x"):
        return sign * float(int(body, 16))
    return sign * float(body)


def to_number(value: Any) -> float:
    """Numeric coercion: null→0, bools→1/0, strings parsed, arrays/objects→NaN."""
    match kind_of(value):
        case ValueKind.NULL:
            return 0.0
        case ValueKind.BOOLEAN:
            return 1.0 if value else 0.0
        case ValueKind.NUMBER:
            return float(value)
        case ValueKind.STRING:
            return _parse_number(str(value))
        case _:
            return math.nan


def to_string(value: Any) -> str:
    match kind_of(value):
        case ValueKind.NULL:
            return ""
        case ValueKind.BOOLEAN:
            return "true" if value else "false"
        case ValueKind.NUMBER:
            return _format_number(float(value))
        case ValueKind.ARRAY:
            return "Array"
        case ValueKind.OBJECT:
            return "Object"
        case _:
            return str(value)


def _format_number(number: float) -> str:
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "Infinity" if number > 0 else "-Infinity"
    if number.is_integer():
        return str(int(number))
    return repr(number)


def truthy(value: Any) -> bool:
    """Falsy values: false, 0, -0, NaN, empty string, null."""
    match kind_of(value):
        case ValueKind.NULL:
            return False
        case ValueKind.BOOLEAN:
            return bool(value)
        case ValueKind.NUMBER:
            number = float(value)
            return not (number == 0 or math.isnan(number))
        case ValueKind.STRING:
            return value != ""
        case _:
            return True


def loose_equals(left: Any, right: Any) -> bool:
    left_kind, right_kind = kind_of(left), kind_of(right)
    if left_kind == right_kind:
        match left_kind:
            case ValueKind.NULL:
                return True
            case ValueKind.STRING:
                if _looks_numeric(left) and _looks_numeric(right):
                    return _parse_number(left) == _parse_number(right)
                return left.casefold() == right.casefold()
            case ValueKind.ARRAY | ValueKind.OBJECT:
                return left is right
            case _:
                return to_number(left) == to_number(right)
    if ValueKind.ARRAY in (left_kind, right_kind) or ValueKind.OBJECT in (left_kind, right_kind):
        return False
    return to_number(left) == to_number(right)


def _compare(left: Any, right: Any) -> int | None:
    """Three-way comparison; None when the operands are incomparable (NaN)."""
    if kind_of(left) == ValueKind.STRING and kind_of(right) == ValueKind.STRING:
        if not (_looks_numeric(left) and _looks_numeric(right)):
            a, b = left.casefold(), right.casefold()
            return (a > b) - (a < b)
    a_num, b_num = to_number(left), to_number(right)
    if math.isnan(a_num) or math.isnan(b_num):
        return None
    return (a_num > b_num) - (a_num < b_num)


# ── AST ──────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ContextRef:
    name: str


@dataclass(frozen=True)
class Member:
    target: Any
    name: str


@dataclass(frozen=True)
class Index:
    target: Any
    key: Any


@dataclass(frozen=True)
class Wildcard:
    target: Any


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple


class _FilteredArray(tuple):
    """Result of an object filter; property access maps over its elements."""


# ── Tokenizer / Parser ───────────────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?(?:0x[0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?))
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>&&|\|\||==|!=|<=|>=|[<>!()\[\].,*])
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)

_COMPARISON_OPS = ("<=", ">=", "<", ">")


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise EvaluationError(
                ErrorKind.INVALID_SYNTAX,
                f"unexpected character {source[pos]!r} at position {pos} in '{source}'",
                expression=source,
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser; one method per precedence level."""

    def __init__(self, source: str):
        self._source = source
        self._tokens = _tokenize(source)
        self._pos = 0

    def parse(self) -> Any:
        if not self._tokens:
            self._fail("empty expression")
        node = self._or()
        if self._peek() is not None:
            self._fail(f"unexpected token '{self._peek().text}'")
        return node

    # ── Token helpers ────────────────────────────────────────────────────────

    def _peek(self) -> _Token | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _accept(self, text: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "op" and token.text == text:
            self._pos += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            token = self._peek()
            found = f"'{token.text}'" if token else "end of expression"
            self._fail(f"expected '{text}', found {found}")

    def _fail(self, message: str) -> None:
        raise EvaluationError(
            ErrorKind.INVALID_SYNTAX, f"{message} in '{self._source}'", expression=self._source
        )

    # ── Grammar ──────────────────────────────────────────────────────────────

    def _or(self) -> Any:
        node = self._and()
        while self._accept("||"):
            node = Binary("||", node, self._and())
        return node

    def _and(self) -> Any:
        node = self._equality()
        while self._accept("&&"):
            node = Binary("&&", node, self._equality())
        return node

    def _equality(self) -> Any:
        node = self._comparison()
        while True:
            for op in ("==", "!="):
                if self._accept(op):
                    node = Binary(op, node, self._comparison())
                    break
            else:
                return node

    def _comparison(self) -> Any:
        node = self._unary()
        while True:
            for op in _COMPARISON_OPS:
                if self._accept(op):
                    node = Binary(op, node, self._unary())
                    break
            else:
                return node

    def _unary(self) -> Any:
        if self._accept("!"):
            return Not(self._unary())
        return self._postfix()

    def _postfix(self) -> Any:
        node = self._primary()
        while True:
            if self._accept("."):
                if self._accept("*"):
                    node = Wildcard(node)
                    continue
                token = self._peek()
                if token is None or token.kind != "ident":
                    self._fail("expected property name after '.'")
                self._pos += 1
                node = Member(node, token.text)
            elif self._accept("["):
                if self._accept("*"):
                    self._expect("]")
                    node = Wildcard(node)
                    continue
                key = self._or()
                self._expect("]")
                node = Index(node, key)
            else:
                return node

    def _primary(self) -> Any:
        token = self._peek()
        if token is None:
            self._fail("unexpected end of expression")
        self._pos += 1
        match token.kind:
            case "number":
                return Literal(_parse_number(token.text))
            case "string":
                return Literal(token.text[1:-1].replace("''", "'"))
            case "ident":
                if token.text == "null":
                    return Literal(None)
                if token.text == "true":
                    return Literal(True)
                if token.text == "false":
                    return Literal(False)
                if self._accept("("):
                    return Call(token.text, self._arguments())
                return ContextRef(token.text)
            case "op" if token.text == "(":
                node = self._or()
                self._expect(")")
                return node
        self._fail(f"unexpected token '{token.text}'")

    def _arguments(self) -> tuple:
        args = []
        if self._accept(")"):
            return ()
        while True:
            args.append(self._or())
            if self._accept(")"):
                return tuple(args)
            self._expect(",")
            # Trailing comma before the closing paren
            if self._accept(")"):
                return tuple(args)


@lru_cache(maxsize=1024)
def parse_expression(source: str) -> Any:
    """Parse an expression (without ``${{ }}``) into an immutable AST."""
    return _Parser(source).parse()


def uses_status_function(source: str) -> bool:
    """True if the expression calls success/failure/cancelled/always."""
    return _contains_status_call(parse_expression(source))


def _contains_status_call(node: Any) -> bool:
    match node:
        case Call(name=name, args=args):
            if name.lower() in STATUS_FUNCTIONS:
                return True
            return any(_contains_status_call(a) for a in args)
        case Member(target=target) | Wildcard(target=target):
            return _contains_status_call(target)
        case Index(target=target, key=key):
            return _contains_status_call(target) or _contains_status_call(key)
        case Not(operand=operand):
            return _contains_status_call(operand)
        case Binary(left=left, right=right):
            return _contains_status_call(left) or _contains_status_call(right)
    return False


# ── Template scanning ────────────────────────────────────────────────────────


def split_template(text: str) -> list[tuple[bool, str]]:
    """Split text into (is_expression, fragment) pairs.

    Quoted strings inside ``${{ }}`` may contain ``}}``.
    """
    parts: list[tuple[bool, str]] = []
    pos = 0
    while True:
        start = text.find("${{", pos)
        if start < 0:
            if pos < len(text):
                parts.append((False, text[pos:]))
            return parts
        if start > pos:
            parts.append((False, text[pos:start]))
        cursor = start + 3
        in_string = False
        while cursor < len(text):
            char = text[cursor]
            if char == "'":
                in_string = not in_string
            elif not in_string and text.startswith("}}", cursor):
                break
            cursor += 1
        else:
            raise EvaluationError(
                ErrorKind.INVALID_SYNTAX, f"unterminated '${{{{' in '{text}'", expression=text
            )
        parts.append((True, text[start + 3 : cursor].strip()))
        pos = cursor + 2


def has_template(value: Any) -> bool:
    return isinstance(value, str) and "${{" in value


# ── Evaluator ────────────────────────────────────────────────────────────────


class ExpressionEvaluator:
    """Evaluates expressions and renders templates against snapshots.

    Usage::

        evaluator = ExpressionEvaluator(file_hasher=WorkspaceFileHasher(root))
        evaluator.evaluate("github.ref == 'refs/heads/main'", snapshot)
        evaluator.render("img-${{ matrix.os }}", snapshot)
        evaluator.evaluate_condition("needs.build.outputs.deploy", snapshot)
    """

    def __init__(self, *, file_hasher: FileHasher | None = None):
        self._file_hasher = file_hasher

    def evaluate(self, expression: str, snapshot: ContextSnapshot, *, required: bool = False) -> Any:
        """Evaluate a bare expression.

        Raises:
            EvaluationError: on syntax errors, unknown functions, arity
                mismatches, malformed JSON, or (``required=True``) a null result.
        """
        node = parse_expression(expression)
        value = _Evaluation(snapshot, self._file_hasher, expression).eval(node)
        if isinstance(value, _FilteredArray):
            value = tuple(value)
        if required and value is None:
            raise EvaluationError(
                ErrorKind.UNDEFINED_REFERENCE,
                f"'{expression}' evaluated to null",
                expression=expression,
            )
        return value

    def evaluate_condition(self, condition: str | bool | None, snapshot: ContextSnapshot) -> bool:
        """Evaluate a job/step ``if``.

        An absent condition means ``success()``. A condition that calls no
        status function is evaluated as ``success() && (<condition>)``.
        Mixed text such as ``if: deploy ${{ x }}`` renders to a non-empty
        string and is therefore truthy.
        """
        if condition is None:
            return truthy(self.evaluate("success()", snapshot))
        if isinstance(condition, bool):
            expression = "true" if condition else "false"
        else:
            expression = str(condition).strip()
            if "${{" in expression:
                parts = split_template(expression)
                if not (len(parts) == 1 and parts[0][0]):
                    rendered = self._render_string(expression, snapshot, False)
                    return truthy(self.evaluate("success()", snapshot)) and truthy(rendered)
                expression = parts[0][1]
        if not uses_status_function(expression):
            expression = f"success() && ({expression})"
        return truthy(self.evaluate(expression, snapshot))

    def render(self, value: Any, snapshot: ContextSnapshot, *, required: bool = False) -> Any:
        """Render templates in a value.

        - Strings with ``${{ }}`` are evaluated; a string that is exactly one
          expression keeps the result's type, mixed text becomes a string.
        - Dicts and lists are rendered recursively; other values pass through.
        """
        if isinstance(value, str):
            return self._render_string(value, snapshot, required)
        if isinstance(value, Mapping):
            return {k: self.render(v, snapshot, required=required) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render(item, snapshot, required=required) for item in value]
        return value

    def _render_string(self, text: str, snapshot: ContextSnapshot, required: bool) -> Any:
        if "${{" not in text:
            return text
        parts = split_template(text)
        if len(parts) == 1 and parts[0][0]:
            return thaw(self.evaluate(parts[0][1], snapshot, required=required))
        rendered = []
        for is_expr, fragment in parts:
            if is_expr:
                rendered.append(to_string(self.evaluate(fragment, snapshot, required=required)))
            else:
                rendered.append(fragment)
        return "".join(rendered)


# ── Evaluation ───────────────────────────────────────────────────────────────


class _Evaluation:
    """One evaluation pass over an AST against a fixed snapshot."""

    def __init__(self, snapshot: ContextSnapshot, file_hasher: FileHasher | None, source: str):
        self._snapshot = snapshot
        self._file_hasher = file_hasher
        self._source = source

    def eval(self, node: Any) -> Any:
        match node:
            case Literal(value=value):
                return value
            case ContextRef(name=name):
                return _get_property(self._snapshot, name)
            case Member(target=target, name=name):
                return _member(self.eval(target), name)
            case Index(target=target, key=key):
                return _index(self.eval(target), self.eval(key))
            case Wildcard(target=target):
                return _wildcard(self.eval(target))
            case Not(operand=operand):
                return not truthy(self.eval(operand))
            case Binary(op="&&", left=left, right=right):
                value = self.eval(left)
                return self.eval(right) if truthy(value) else value
            case Binary(op="||", left=left, right=right):
                value = self.eval(left)
                return value if truthy(value) else self.eval(right)
            case Binary(op=op, left=left, right=right):
                return _binary(op, self.eval(left), self.eval(right))
            case Call(name=name, args=args):
                return self._call(name, args)
        raise EvaluationError(ErrorKind.INVALID_SYNTAX, f"cannot evaluate '{self._source}'")

    def _call(self, name: str, args: tuple) -> Any:
        key = name.lower()
        spec = _FUNCTIONS.get(key)
        if spec is None:
            raise EvaluationError(
                ErrorKind.UNKNOWN_FUNCTION, f"unknown function '{name}'", expression=self._source
            )
        low, high = spec
        if not low <= len(args) <= high:
            expected = str(low) if low == high else f"{low}-{high if high < _MANY else 'n'}"
            raise EvaluationError(
                ErrorKind.ARITY_MISMATCH,
                f"{name}() takes {expected} argument(s), got {len(args)}",
                expression=self._source,
            )
        status = self._snapshot.status
        match key:
            case "success":
                return status.succeeded and not status.cancelled
            case "failure":
                return status.failed
            case "cancelled":
                return status.cancelled
            case "always":
                return True
        values = [self.eval(a) for a in args]
        match key:
            case "contains":
                return _contains(values[0], values[1])
            case "startswith":
                return to_string(values[0]).casefold().startswith(to_string(values[1]).casefold())
            case "endswith":
                return to_string(values[0]).casefold().endswith(to_string(values[1]).casefold())
            case "format":
                return _format(to_string(values[0]), values[1:], self._source)
            case "join":
                return _join(values[0], to_string(values[1]) if len(values) > 1 else ",")
            case "tojson":
                return json.dumps(thaw(values[0]), indent=2)
            case "fromjson":
                return _from_json(to_string(values[0]), self._source)
            case "hashfiles":
                return self._hash_files([to_string(v) for v in values])
        raise EvaluationError(ErrorKind.UNKNOWN_FUNCTION, f"unknown function '{name}'")

    def _hash_files(self, patterns: list[str]) -> str:
        if self._file_hasher is None:
            raise EvaluationError(
                ErrorKind.UNKNOWN_FUNCTION,
                "hashFiles() is unavailable without a file hasher",
                expression=self._source,
            )
        digests = sorted(self._file_hasher.hash_files(patterns).values())
        if not digests:
            return ""
        combined = hashlib.sha256()
        for digest in digests:
            combined.update(bytes.fromhex(digest))
        return combined.hexdigest()


_MANY = 255

_FUNCTIONS: dict[str, tuple[int, int]] = {
    "contains": (2, 2),
    "startswith": (2, 2),
    "endswith": (2, 2),
    "format": (1, _MANY),
    "join": (1, 2),
    "tojson": (1, 1),
    "fromjson": (1, 1),
    "hashfiles": (1, _MANY),
    "success": (0, 0),
    "failure": (0, 0),
    "cancelled": (0, 0),
    "always": (0, 0),
}


def _get_property(obj: Any, name: str) -> Any:
    """Case-insensitive property lookup; missing → None."""
    if isinstance(obj, ContextSnapshot):
        if name in obj:
            return obj[name]
        lowered = name.lower()
        for key in obj.keys():
            if key.lower() == lowered:
                return obj[key]
        return None
    if isinstance(obj, Mapping):
        if name in obj:
            return obj[name]
        lowered = name.lower()
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() == lowered:
                return value
    return None


def _member(target: Any, name: str) -> Any:
    if isinstance(target, _FilteredArray):
        return _FilteredArray(
            value for value in (_get_property(item, name) for item in target) if value is not None
        )
    return _get_property(target, name)


def _index(target: Any, key: Any) -> Any:
    if isinstance(target, _FilteredArray):
        return _FilteredArray(
            value for value in (_index(item, key) for item in target) if value is not None
        )
    if isinstance(target, Mapping):
        return _get_property(target, to_string(key))
    if isinstance(target, (list, tuple)):
        number = to_number(key)
        if math.isnan(number) or not number.is_integer():
            return None
        position = int(number)
        if 0 <= position < len(target):
            return target[position]
    return None


def _wildcard(target: Any) -> _FilteredArray:
    if isinstance(target, _FilteredArray):
        items: list[Any] = []
        for item in target:
            items.extend(_wildcard(item))
        return _FilteredArray(items)
    if isinstance(target, Mapping):
        return _FilteredArray(target.values())
    if isinstance(target, (list, tuple)):
        return _FilteredArray(target)
    return _FilteredArray()


def _binary(op: str, left: Any, right: Any) -> bool:
    match op:
        case "==":
            return loose_equals(left, right)
        case "!=":
            return not loose_equals(left, right)
    result = _compare(left, right)
    if result is None:
        return False
    match op:
        case "<":
            return result < 0
        case "<=":
            return result <= 0
        case ">":
            return result > 0
        case ">=":
            return result >= 0
    raise EvaluationError(ErrorKind.INVALID_SYNTAX, f"unknown operator '{op}'")


def _contains(search: Any, item: Any) -> bool:
    if kind_of(search) == ValueKind.ARRAY:
        return any(loose_equals(element, item) for element in search)
    return to_string(item).casefold() in to_string(search).casefold()


def _join(value: Any, separator: str) -> str:
    if kind_of(value) == ValueKind.ARRAY:
        return separator.join(to_string(v) for v in value)
    return to_string(value)


def _from_json(text: str, source: str) -> Any:
    try:
        return freeze(json.loads(text))
    except json.JSONDecodeError as e:
        raise EvaluationError(
            ErrorKind.MALFORMED_JSON, f"fromJSON: {e.msg} in {text!r}", expression=source
        ) from e


def _format(template: str, args: list[Any], source: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(template):
        char = template[i]
        if char == "{":
            if template.startswith("{{", i):
                out.append("{")
                i += 2
                continue
            end = template.find("}", i)
            token = template[i + 1 : end] if end > 0 else ""
            if end < 0 or not token.isdigit():
                raise EvaluationError(
                    ErrorKind.INVALID_SYNTAX,
                    f"format: invalid placeholder at position {i} in {template!r}",
                    expression=source,
                )
            index = int(token)
            if index >= len(args):
                raise EvaluationError(
                    ErrorKind.ARITY_MISMATCH,
                    f"format: placeholder {{{index}}} has no argument "
                    f"({len(args)} supplied)",
                    expression=source,
                )
            out.append(to_string(args[index]))
            i = end + 1
        elif char == "}":
            if template.startswith("}}", i):
                out.append("}")
                i += 2
                continue
            raise EvaluationError(
                ErrorKind.INVALID_SYNTAX,
                f"format: unmatched '}}' at position {i} in {template!r}",
                expression=source,
            )
        else:
            out.append(char)
            i += 1
    return "".join(out)
