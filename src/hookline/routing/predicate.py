"""Restricted predicate language over CanonicalEvent.data.

Predicates are conjunctions of clauses. A clause compares one dotted field
path against a literal; there are no function calls, no arithmetic and no
attribute access, so evaluation is bounded by the number of clauses.

Text form (YAML ``when:``):
    amount >= 100 and status == 'paid'
    currency in ['usd', 'eur'] and exists(customer)

Structured form:
    [{"field": "amount", "op": "gte", "value": 100}]

Evaluation never raises: a missing field or a type mismatch makes the
clause false.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_MISSING = object()

_PATH_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_0-9][A-Za-z0-9_]*)*$")

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>==|!=|<=|>=|<|>)
      | (?P<punct>[\[\](),])
      | (?P<word>[A-Za-z_][A-Za-z0-9_.]*)
    )
    """,
    re.VERBOSE,
)

MAX_CLAUSES = 32


class PredicateError(ValueError):
    """Raised when a predicate expression cannot be parsed."""


class Operator(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    EXISTS = "exists"


_SYMBOLS = {
    "==": Operator.EQ,
    "!=": Operator.NE,
    "<": Operator.LT,
    "<=": Operator.LTE,
    ">": Operator.GT,
    ">=": Operator.GTE,
}


class Clause(BaseModel):
    """One comparison of a data field against a literal."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    field: str
    op: Operator = Operator.EQ
    value: Any = None

    @field_validator("field")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not _PATH_RE.match(value):
            raise ValueError(f"invalid field path: {value!r}")
        return value

    def evaluate(self, data: dict[str, Any]) -> bool:
        actual = resolve_path(data, self.field)
        if self.op == Operator.EXISTS:
            return actual is not _MISSING and actual is not None
        if actual is _MISSING:
            return False
        if self.op == Operator.EQ:
            return _equal(actual, self.value)
        if self.op == Operator.NE:
            return not _equal(actual, self.value)
        if self.op == Operator.IN:
            if not isinstance(self.value, list | tuple):
                return False
            return any(_equal(actual, v) for v in self.value)
        return _compare(actual, self.op, self.value)


class Predicate(BaseModel):
    """Conjunction of clauses. An empty predicate matches everything."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    clauses: tuple[Clause, ...] = Field(default=(), max_length=MAX_CLAUSES)
    source_text: str | None = None

    def evaluate(self, data: dict[str, Any]) -> bool:
        return all(clause.evaluate(data) for clause in self.clauses)


def resolve_path(data: Any, path: str) -> Any:
    """Walk a dotted path through nested dicts (and list indexes)."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _equal(actual: Any, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        return bool(actual == expected)
    if type(actual) is not type(expected) and not (actual is None or expected is None):
        return False
    return bool(actual == expected)


def _compare(actual: Any, op: Operator, expected: Any) -> bool:
    if _is_number(actual) and _is_number(expected):
        pass
    elif isinstance(actual, str) and isinstance(expected, str):
        pass
    else:
        return False
    if op == Operator.LT:
        return bool(actual < expected)
    if op == Operator.LTE:
        return bool(actual <= expected)
    if op == Operator.GT:
        return bool(actual > expected)
    if op == Operator.GTE:
        return bool(actual >= expected)
    return False


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise PredicateError(f"unexpected input at offset {pos}: {text[pos:pos + 10]!r}")
        kind = match.lastgroup or ""
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


def _literal(kind: str, raw: str) -> Any:
    if kind == "string":
        body = raw[1:-1]
        return re.sub(r"\\(.)", r"\1", body)
    if kind == "number":
        return float(raw) if "." in raw else int(raw)
    if kind == "word":
        lowered = raw.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        if lowered in ("null", "none"):
            return None
    raise PredicateError(f"expected a literal, got {raw!r}")


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self._tokens = tokens
        self._pos = 0

    def _peek(self) -> tuple[str, str] | None:
        return self._tokens[self._pos] if self._pos < len(self._tokens) else None

    def _next(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise PredicateError("unexpected end of expression")
        self._pos += 1
        return token

    def _expect(self, value: str) -> None:
        _, raw = self._next()
        if raw != value:
            raise PredicateError(f"expected {value!r}, got {raw!r}")

    def parse(self) -> list[Clause]:
        clauses = [self._clause()]
        while self._peek() is not None:
            kind, raw = self._next()
            if kind != "word" or raw.lower() != "and":
                raise PredicateError(f"expected 'and', got {raw!r}")
            clauses.append(self._clause())
        if len(clauses) > MAX_CLAUSES:
            raise PredicateError(f"too many clauses (max {MAX_CLAUSES})")
        return clauses

    def _clause(self) -> Clause:
        kind, raw = self._next()
        if kind != "word":
            raise PredicateError(f"expected a field name, got {raw!r}")

        if raw.lower() == "exists":
            self._expect("(")
            _, path = self._next()
            self._expect(")")
            return Clause(field=path, op=Operator.EXISTS)

        kind_op, raw_op = self._next()
        if kind_op == "op":
            value_kind, value_raw = self._next()
            return Clause(field=raw, op=_SYMBOLS[raw_op], value=_literal(value_kind, value_raw))
        if kind_op == "word" and raw_op.lower() == "in":
            return Clause(field=raw, op=Operator.IN, value=self._list())
        raise PredicateError(f"expected an operator after {raw!r}, got {raw_op!r}")

    def _list(self) -> list[Any]:
        self._expect("[")
        values: list[Any] = []
        while True:
            kind, raw = self._next()
            if raw == "]" and not values:
                return values
            values.append(_literal(kind, raw))
            _, sep = self._next()
            if sep == "]":
                return values
            if sep != ",":
                raise PredicateError(f"expected ',' or ']', got {sep!r}")


def parse_predicate(text: str) -> Predicate:
    """Parse the text form into a Predicate.

    Raises:
        PredicateError: On any syntax error.
    """
    if not text or not text.strip():
        return Predicate()
    try:
        clauses = _Parser(_tokenize(text)).parse()
    except ValueError as e:
        if isinstance(e, PredicateError):
            raise
        raise PredicateError(str(e)) from e
    return Predicate(clauses=tuple(clauses), source_text=text.strip())
