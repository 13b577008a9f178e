"""
Minimal PromQL abstract syntax tree with deterministic rendering.

Expressions are built with ordinary Python operators::

    total = selector("trace_duration_welford_count", matchers)
    count = call("clamp_min", total - total.shifted(w), 0)

and rendered with ``str(expr)``. Rendering is canonical (matchers sorted,
numbers in shortest round-trip form, durations in their largest exact unit,
every nested binary operation parenthesized) so identical inputs always
render to byte-identical strings. The same tree is produced by the
reference evaluator's parser.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional, Tuple, Union

from tracescore.core.durations import format_duration
from tracescore.data.schema import LabelMatcher

ARITHMETIC_OPS = ("+", "-", "*", "/", "%", "^")
COMPARISON_OPS = ("==", "!=", ">", "<", ">=", "<=")
SET_OPS = ("and", "or", "unless")
AGGREGATIONS = ("sum", "avg", "min", "max", "count")

Operand = Union["Expr", float, int]


def format_number(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def format_string(value: str) -> str:
    return json.dumps(value)


def _wrap(value: Operand) -> "Expr":
    if isinstance(value, Expr):
        return value
    return Number(float(value))


class Expr:
    """Base class for expression nodes."""

    def render(self) -> str:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()

    def _binary(self, op: str, other: Operand, reverse: bool = False) -> "Binary":
        other = _wrap(other)
        if reverse:
            return Binary(op, other, self)
        return Binary(op, self, other)

    def __add__(self, other: Operand) -> "Binary":
        return self._binary("+", other)

    def __radd__(self, other: Operand) -> "Binary":
        return self._binary("+", other, reverse=True)

    def __sub__(self, other: Operand) -> "Binary":
        return self._binary("-", other)

    def __rsub__(self, other: Operand) -> "Binary":
        return self._binary("-", other, reverse=True)

    def __mul__(self, other: Operand) -> "Binary":
        return self._binary("*", other)

    def __rmul__(self, other: Operand) -> "Binary":
        return self._binary("*", other, reverse=True)

    def __truediv__(self, other: Operand) -> "Binary":
        return self._binary("/", other)

    def __rtruediv__(self, other: Operand) -> "Binary":
        return self._binary("/", other, reverse=True)

    def __pow__(self, other: Operand) -> "Binary":
        return self._binary("^", other)

    def __neg__(self) -> "Unary":
        return Unary("-", self)

    def gt(self, other: Operand, return_bool: bool = False) -> "Binary":
        return Binary(">", self, _wrap(other), return_bool)

    def or_(self, other: "Expr") -> "Binary":
        return Binary("or", self, other)


@dataclass(frozen=True, eq=True)
class Number(Expr):
    value: float

    def render(self) -> str:
        return format_number(self.value)


@dataclass(frozen=True, eq=True)
class StringLiteral(Expr):
    value: str

    def render(self) -> str:
        return format_string(self.value)


@dataclass(frozen=True, eq=True)
class Selector(Expr):
    metric: Optional[str]
    matchers: Tuple[LabelMatcher, ...] = ()
    range: Optional[timedelta] = None
    offset: Optional[timedelta] = None

    def over(self, window: timedelta) -> "Selector":
        return Selector(self.metric, self.matchers, window, self.offset)

    def shifted(self, offset: timedelta) -> "Selector":
        return Selector(self.metric, self.matchers, self.range, offset)

    def render(self) -> str:
        ordered = sorted(self.matchers, key=lambda m: (m.name, m.op.value, m.value))
        body = ",".join(f"{m.name}{m.op.value}{format_string(m.value)}" for m in ordered)
        out = self.metric or ""
        if body or not out:
            out += "{" + body + "}"
        if self.range is not None:
            out += f"[{format_duration(self.range)}]"
        if self.offset is not None:
            out += f" offset {format_duration(self.offset)}"
        return out


@dataclass(frozen=True, eq=True)
class Call(Expr):
    func: str
    args: Tuple[Expr, ...] = ()

    def render(self) -> str:
        return f"{self.func}(" + ", ".join(a.render() for a in self.args) + ")"


@dataclass(frozen=True, eq=True)
class Unary(Expr):
    op: str
    operand: Expr

    def render(self) -> str:
        inner = self.operand.render()
        if isinstance(self.operand, (Binary, Unary)):
            inner = f"({inner})"
        return f"{self.op}{inner}"


@dataclass(frozen=True, eq=True)
class Binary(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    return_bool: bool = False

    def render(self) -> str:
        lhs = self.lhs.render()
        rhs = self.rhs.render()
        if isinstance(self.lhs, (Binary, Unary)):
            lhs = f"({lhs})"
        if isinstance(self.rhs, (Binary, Unary)):
            rhs = f"({rhs})"
        op = f"{self.op} bool" if self.return_bool else self.op
        return f"{lhs} {op} {rhs}"


@dataclass(frozen=True, eq=True)
class Aggregate(Expr):
    op: str
    expr: Expr
    by: Tuple[str, ...] = ()
    without: bool = False

    def render(self) -> str:
        if not self.by and not self.without:
            return f"{self.op}({self.expr.render()})"
        keyword = "without" if self.without else "by"
        return f"{self.op} {keyword} ({', '.join(self.by)}) ({self.expr.render()})"


def selector(
    metric: Optional[str],
    matchers: Iterable[LabelMatcher] = (),
    range_: Optional[timedelta] = None,
    offset: Optional[timedelta] = None,
) -> Selector:
    return Selector(metric, tuple(matchers), range_, offset)


def call(func: str, *args: Operand) -> Call:
    return Call(func, tuple(_wrap(a) for a in args))
