"""
Reference evaluator for the PromQL subset emitted by the generator.

It exists to check the generated expressions against the streaming engine:
samples are stored in an in-memory SeriesStore and queries are parsed and
evaluated with Prometheus semantics for

- instant and range selectors with label matchers and ``offset``
  (ranges select the left-open interval ``(t - range, t]``)
- ``count/sum/avg/min/max/stdvar/stddev_over_time``
- ``sqrt``, ``abs``, ``clamp_min``, ``clamp_max``, ``histogram_quantile``
- arithmetic, comparisons (filtering or ``bool``) and ``and/or/unless``
  with one-to-one label matching (the metric name is ignored)
- ``sum/avg/min/max/count`` aggregation with ``by``/``without``

Numbers are computed independently of the streaming accumulators
(exact ``math.fsum`` sums and two-pass variance).
"""

from __future__ import annotations

import bisect
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from tracescore.core.durations import parse_duration
from tracescore.core.exceptions import QueryEvaluationError, QueryParseError
from tracescore.data.schema import LabelMatcher, MatchOp

from .promql import (
    AGGREGATIONS,
    ARITHMETIC_OPS,
    COMPARISON_OPS,
    SET_OPS,
    Aggregate,
    Binary,
    Call,
    Expr,
    Number,
    Selector,
    StringLiteral,
    Unary,
)

logger = logging.getLogger(__name__)

NAME_LABEL = "__name__"
DEFAULT_LOOKBACK = 300.0

LabelSet = Tuple[Tuple[str, str], ...]


def _label_set(labels: Mapping[str, str]) -> LabelSet:
    return tuple(sorted(labels.items()))


@dataclass(frozen=True)
class Element:
    """One sample of an instant vector."""

    labels: LabelSet
    value: float

    @property
    def label_dict(self) -> Dict[str, str]:
        return dict(self.labels)

    def without_name(self) -> LabelSet:
        return tuple(item for item in self.labels if item[0] != NAME_LABEL)


@dataclass(frozen=True)
class RangeSeries:
    labels: LabelSet
    points: Tuple[Tuple[float, float], ...]


InstantVector = List[Element]
Value = Union[float, str, InstantVector, List[RangeSeries]]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class SeriesStore:
    """
    Thread-safe in-memory time series keyed by full label set.

    Writing a sample at an existing timestamp replaces it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._times: Dict[LabelSet, List[float]] = {}
        self._values: Dict[LabelSet, List[float]] = {}

    def add(self, name: str, labels: Mapping[str, str], timestamp: float, value: float) -> None:
        key = _label_set({**labels, NAME_LABEL: name})
        with self._lock:
            times = self._times.setdefault(key, [])
            values = self._values.setdefault(key, [])
            i = bisect.bisect_left(times, timestamp)
            if i < len(times) and times[i] == timestamp:
                values[i] = float(value)
            else:
                times.insert(i, float(timestamp))
                values.insert(i, float(value))

    def select(
        self, metric: Optional[str], matchers: Sequence[LabelMatcher], start: Optional[float], end: float
    ) -> List[RangeSeries]:
        """Samples in ``(start, end]`` (``start=None`` means unbounded) of every matching series."""
        out: List[RangeSeries] = []
        with self._lock:
            for key, times in self._times.items():
                labels = dict(key)
                if metric is not None and labels.get(NAME_LABEL) != metric:
                    continue
                if not all(m.matches(labels) for m in matchers):
                    continue
                hi = bisect.bisect_right(times, end)
                lo = 0 if start is None else bisect.bisect_right(times, start)
                if lo >= hi:
                    continue
                values = self._values[key]
                out.append(RangeSeries(key, tuple(zip(times[lo:hi], values[lo:hi]))))
        return out

    def prune(self, before: float) -> int:
        """Drop samples at or before ``before``; returns how many were removed."""
        removed = 0
        with self._lock:
            for key in list(self._times):
                times = self._times[key]
                cut = bisect.bisect_right(times, before)
                if cut:
                    removed += cut
                    del times[:cut]
                    del self._values[key][:cut]
                if not times:
                    del self._times[key]
                    del self._values[key]
        return removed

    def series_count(self) -> int:
        with self._lock:
            return len(self._times)

    def label_sets(self, metric: Optional[str] = None) -> List[Dict[str, str]]:
        with self._lock:
            keys = list(self._times)
        return [dict(k) for k in keys if metric is None or dict(k).get(NAME_LABEL) == metric]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<duration>\d+(?:ms|[smhdw])(?:\d+(?:ms|[smhdw]))*(?![a-zA-Z0-9_:]))
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|(?:[Ii]nf|NaN)(?![a-zA-Z0-9_:]))
  | (?P<string>"(?:[^"\\]|\\.)*")
  | (?P<ident>[a-zA-Z_:][a-zA-Z0-9_:]*)
  | (?P<op>=~|!~|!=|==|<=|>=|[-+*/%^(){}\[\],=<>])
    """,
    re.VERBOSE,
)

_MATCH_OPS = {"=": MatchOp.EQ, "!=": MatchOp.NE, "=~": MatchOp.RE, "!~": MatchOp.NRE}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(query: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(query):
        match = _TOKEN_RE.match(query, pos)
        if match is None:
            raise QueryParseError(f"unexpected character {query[pos]!r} at {pos}")
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(_Token("eof", "", pos))
    return tokens


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", lambda m: {"n": "\n", "t": "\t"}.get(m.group(1), m.group(1)), body)


class _Parser:
    def __init__(self, query: str):
        self.query = query
        self.tokens = _tokenize(query)
        self.i = 0

    @property
    def tok(self) -> _Token:
        return self.tokens[self.i]

    def _next(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def _accept(self, text: str) -> bool:
        if self.tok.kind in ("op", "ident") and self.tok.text == text:
            self.i += 1
            return True
        return False

    def _expect(self, text: str) -> None:
        if not self._accept(text):
            raise QueryParseError(f"expected {text!r} at {self.tok.pos}, got {self.tok.text!r}")

    def parse(self) -> Expr:
        expr = self._or()
        if self.tok.kind != "eof":
            raise QueryParseError(f"unexpected {self.tok.text!r} at {self.tok.pos}")
        return expr

    def _or(self) -> Expr:
        lhs = self._and()
        while self._accept("or"):
            lhs = Binary("or", lhs, self._and())
        return lhs

    def _and(self) -> Expr:
        lhs = self._comparison()
        while self.tok.kind == "ident" and self.tok.text in ("and", "unless"):
            op = self._next().text
            lhs = Binary(op, lhs, self._comparison())
        return lhs

    def _comparison(self) -> Expr:
        lhs = self._additive()
        while self.tok.kind == "op" and self.tok.text in COMPARISON_OPS:
            op = self._next().text
            return_bool = self._accept("bool")
            lhs = Binary(op, lhs, self._additive(), return_bool)
        return lhs

    def _additive(self) -> Expr:
        lhs = self._multiplicative()
        while self.tok.kind == "op" and self.tok.text in ("+", "-"):
            op = self._next().text
            lhs = Binary(op, lhs, self._multiplicative())
        return lhs

    def _multiplicative(self) -> Expr:
        lhs = self._unary()
        while self.tok.kind == "op" and self.tok.text in ("*", "/", "%"):
            op = self._next().text
            lhs = Binary(op, lhs, self._unary())
        return lhs

    def _unary(self) -> Expr:
        if self.tok.kind == "op" and self.tok.text in ("-", "+"):
            op = self._next().text
            operand = self._unary()
            return Unary("-", operand) if op == "-" else operand
        return self._power()

    def _power(self) -> Expr:
        base = self._postfix()
        if self._accept("^"):
            return Binary("^", base, self._unary())
        return base

    def _postfix(self) -> Expr:
        expr = self._primary()
        if self.tok.kind == "op" and self.tok.text == "[":
            if not isinstance(expr, Selector) or expr.range is not None:
                raise QueryParseError(f"range only applies to a vector selector at {self.tok.pos}")
            self._next()
            expr = Selector(expr.metric, expr.matchers, self._duration(), expr.offset)
            self._expect("]")
        if self._accept("offset"):
            if not isinstance(expr, Selector):
                raise QueryParseError("offset only applies to a vector selector")
            expr = Selector(expr.metric, expr.matchers, expr.range, self._duration())
        return expr

    def _duration(self):
        tok = self._next()
        if tok.kind not in ("duration", "number"):
            raise QueryParseError(f"expected duration at {tok.pos}, got {tok.text!r}")
        try:
            return parse_duration(tok.text if tok.kind == "duration" else f"{tok.text}s")
        except ValueError as e:
            raise QueryParseError(str(e)) from e

    def _primary(self) -> Expr:
        tok = self.tok
        if tok.kind == "number":
            self._next()
            return Number(float(tok.text))
        if tok.kind == "string":
            self._next()
            return StringLiteral(_unquote(tok.text))
        if tok.kind == "op" and tok.text == "(":
            self._next()
            expr = self._or()
            self._expect(")")
            return expr
        if tok.kind == "op" and tok.text == "{":
            return Selector(None, self._matchers())
        if tok.kind == "ident":
            self._next()
            nxt = self.tok
            if tok.text in AGGREGATIONS and (
                (nxt.kind == "op" and nxt.text == "(") or nxt.text in ("by", "without")
            ):
                return self._aggregation(tok.text)
            if nxt.kind == "op" and nxt.text == "(":
                return Call(tok.text, self._args())
            matchers: Tuple[LabelMatcher, ...] = ()
            if nxt.kind == "op" and nxt.text == "{":
                matchers = self._matchers()
            return Selector(tok.text, matchers)
        raise QueryParseError(f"unexpected {tok.text!r} at {tok.pos}")

    def _args(self) -> Tuple[Expr, ...]:
        self._expect("(")
        args: List[Expr] = []
        if not self._accept(")"):
            args.append(self._or())
            while self._accept(","):
                args.append(self._or())
            self._expect(")")
        return tuple(args)

    def _matchers(self) -> Tuple[LabelMatcher, ...]:
        self._expect("{")
        matchers: List[LabelMatcher] = []
        while not self._accept("}"):
            name = self._next()
            # "inf" lexes as a number but is a valid label name
            if name.kind != "ident" and not (name.kind == "number" and name.text.isalpha()):
                raise QueryParseError(f"expected label name at {name.pos}")
            op = self._next()
            if op.text not in _MATCH_OPS:
                raise QueryParseError(f"expected matcher operator at {op.pos}")
            value = self._next()
            if value.kind != "string":
                raise QueryParseError(f"expected label value string at {value.pos}")
            matchers.append(LabelMatcher(name=name.text, op=_MATCH_OPS[op.text], value=_unquote(value.text)))
            if not self._accept(","):
                self._expect("}")
                break
        return tuple(matchers)

    def _grouping(self) -> Tuple[Tuple[str, ...], bool]:
        without = self.tok.text == "without"
        self._next()
        self._expect("(")
        labels: List[str] = []
        while not self._accept(")"):
            tok = self._next()
            if tok.kind != "ident":
                raise QueryParseError(f"expected label name at {tok.pos}")
            labels.append(tok.text)
            if not self._accept(","):
                self._expect(")")
                break
        return tuple(labels), without

    def _aggregation(self, op: str) -> Aggregate:
        by: Tuple[str, ...] = ()
        without = False
        if self.tok.text in ("by", "without"):
            by, without = self._grouping()
        args = self._args()
        if len(args) != 1:
            raise QueryParseError(f"{op} takes exactly one argument")
        if self.tok.text in ("by", "without"):
            by, without = self._grouping()
        return Aggregate(op, args[0], by, without)


def parse_query(query: str) -> Expr:
    """Parse a query string into an expression tree."""
    return _Parser(query).parse()


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _arith(op: str, a: float, b: float) -> float:
    try:
        if op == "+":
            return a + b
        if op == "-":
            return a - b
        if op == "*":
            return a * b
        if op == "/":
            if b == 0.0:
                if a == 0.0 or math.isnan(a):
                    return math.nan
                return math.copysign(math.inf, a) * math.copysign(1.0, b)
            return a / b
        if op == "%":
            if b == 0.0:
                return math.nan
            return math.fmod(a, b)
        if op == "^":
            return math.pow(a, b)
    except OverflowError:
        return math.inf
    except ValueError:
        return math.nan
    raise QueryEvaluationError(f"unknown operator {op!r}")


def _compare(op: str, a: float, b: float) -> bool:
    return {
        "==": a == b,
        "!=": a != b,
        ">": a > b,
        "<": a < b,
        ">=": a >= b,
        "<=": a <= b,
    }[op]


def _two_pass_variance(values: Sequence[float]) -> float:
    n = len(values)
    mean = math.fsum(values) / n
    return math.fsum((v - mean) ** 2 for v in values) / n


_OVER_TIME: Dict[str, Callable[[Sequence[float]], float]] = {
    "count_over_time": lambda vs: float(len(vs)),
    "sum_over_time": math.fsum,
    "avg_over_time": lambda vs: math.fsum(vs) / len(vs),
    "min_over_time": min,
    "max_over_time": max,
    "stdvar_over_time": _two_pass_variance,
    "stddev_over_time": lambda vs: math.sqrt(_two_pass_variance(vs)),
}


def _clamp_min(v: float, bound: float) -> float:
    return v if math.isnan(v) else max(v, bound)


def _clamp_max(v: float, bound: float) -> float:
    return v if math.isnan(v) else min(v, bound)


def _histogram_quantile(q: float, buckets: List[Tuple[float, float]]) -> float:
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf
    buckets = sorted(buckets)
    if len(buckets) < 2 or not math.isinf(buckets[-1][0]):
        return math.nan

    # cumulative counts must be monotone; repair like Prometheus does
    fixed: List[Tuple[float, float]] = []
    running = 0.0
    for bound, count in buckets:
        running = max(running, count)
        fixed.append((bound, running))
    buckets = fixed

    observations = buckets[-1][1]
    if observations == 0:
        return math.nan
    rank = q * observations
    b = bisect.bisect_left([count for _, count in buckets], rank)
    if b == len(buckets) - 1:
        return buckets[-2][0]
    if b == 0 and buckets[0][0] <= 0:
        return buckets[0][0]

    bucket_start = 0.0
    bucket_end = buckets[b][0]
    count = buckets[b][1]
    if b > 0:
        bucket_start = buckets[b - 1][0]
        count -= buckets[b - 1][1]
        rank -= buckets[b - 1][1]
    if count == 0:
        return bucket_end
    return bucket_start + (bucket_end - bucket_start) * (rank / count)


class Evaluator:
    """
    Evaluates PromQL-subset queries against a SeriesStore.

    Args:
        store: Source of raw series
        lookback: Staleness window for instant selectors in seconds
            (None looks back without limit)
    """

    def __init__(self, store: SeriesStore, lookback: Optional[float] = DEFAULT_LOOKBACK):
        self.store = store
        self.lookback = lookback

    def instant(self, query: Union[str, Expr], at: float) -> Union[float, InstantVector]:
        expr = parse_query(query) if isinstance(query, str) else query
        value = self._eval(expr, float(at))
        if isinstance(value, (float, list)) and not (
            isinstance(value, list) and value and isinstance(value[0], RangeSeries)
        ):
            return value
        raise QueryEvaluationError("query must evaluate to a scalar or instant vector")

    def vector(self, query: Union[str, Expr], at: float) -> Dict[LabelSet, float]:
        """Instant query returning ``{labels without __name__: value}``."""
        value = self.instant(query, at)
        if isinstance(value, float):
            return {(): value}
        return {e.without_name(): e.value for e in value}

    def range(
        self, query: Union[str, Expr], start: float, end: float, step: float
    ) -> Dict[LabelSet, List[Tuple[float, float]]]:
        """Range query; non-finite points are omitted."""
        if step <= 0:
            raise QueryEvaluationError("step must be positive")
        expr = parse_query(query) if isinstance(query, str) else query
        out: Dict[LabelSet, List[Tuple[float, float]]] = {}
        steps = int(math.floor((end - start) / step + 1e-9))
        for k in range(steps + 1):
            t = start + k * step
            for labels, value in self.vector(expr, t).items():
                if math.isfinite(value):
                    out.setdefault(labels, []).append((t, value))
        return out

    def evaluate_rules(self, rules: Iterable[Tuple[str, Union[str, Expr]]], at: float) -> None:
        """Evaluate recording rules in order, writing results back at ``at``."""
        for record, query in rules:
            value = self.instant(query, at)
            if isinstance(value, float):
                self.store.add(record, {}, at, value)
                continue
            for element in value:
                self.store.add(record, dict(element.without_name()), at, element.value)

    # -- node evaluation ---------------------------------------------------

    def _eval(self, expr: Expr, at: float) -> Value:
        if isinstance(expr, Number):
            return expr.value
        if isinstance(expr, StringLiteral):
            return expr.value
        if isinstance(expr, Selector):
            return self._select(expr, at)
        if isinstance(expr, Call):
            return self._call(expr, at)
        if isinstance(expr, Unary):
            operand = self._eval(expr.operand, at)
            if isinstance(operand, float):
                return -operand
            return [Element(e.without_name(), -e.value) for e in self._instant(operand)]
        if isinstance(expr, Binary):
            return self._binary(expr, at)
        if isinstance(expr, Aggregate):
            return self._aggregate(expr, at)
        raise QueryEvaluationError(f"unsupported expression {expr!r}")

    def _select(self, sel: Selector, at: float) -> Value:
        end = at - (sel.offset.total_seconds() if sel.offset is not None else 0.0)
        if sel.range is not None:
            return self.store.select(sel.metric, sel.matchers, end - sel.range.total_seconds(), end)

        start = None if self.lookback is None else end - self.lookback
        return [
            Element(series.labels, series.points[-1][1])
            for series in self.store.select(sel.metric, sel.matchers, start, end)
        ]

    @staticmethod
    def _instant(value: Value) -> InstantVector:
        if not isinstance(value, list) or (value and not isinstance(value[0], Element)):
            raise QueryEvaluationError("expected an instant vector")
        return value

    def _scalar(self, value: Value) -> float:
        if not isinstance(value, float):
            raise QueryEvaluationError("expected a scalar")
        return value

    def _call(self, node: Call, at: float) -> Value:
        func = node.func
        args = [self._eval(a, at) for a in node.args]

        if func in _OVER_TIME:
            if len(args) != 1 or not isinstance(args[0], list) or (
                args[0] and not isinstance(args[0][0], RangeSeries)
            ):
                raise QueryEvaluationError(f"{func} expects a range vector")
            fn = _OVER_TIME[func]
            return [
                Element(
                    tuple(item for item in s.labels if item[0] != NAME_LABEL),
                    float(fn([v for _, v in s.points])),
                )
                for s in args[0]
            ]

        if func in ("sqrt", "abs"):
            if len(args) != 1:
                raise QueryEvaluationError(f"{func} takes one argument")
            fn = (lambda v: math.sqrt(v) if v >= 0 else math.nan) if func == "sqrt" else abs
            return [Element(e.without_name(), fn(e.value)) for e in self._instant(args[0])]

        if func in ("clamp_min", "clamp_max"):
            if len(args) != 2:
                raise QueryEvaluationError(f"{func} takes two arguments")
            bound = self._scalar(args[1])
            fn = _clamp_min if func == "clamp_min" else _clamp_max
            return [Element(e.without_name(), fn(e.value, bound)) for e in self._instant(args[0])]

        if func == "histogram_quantile":
            if len(args) != 2:
                raise QueryEvaluationError("histogram_quantile takes two arguments")
            q = self._scalar(args[0])
            groups: Dict[LabelSet, List[Tuple[float, float]]] = {}
            for e in self._instant(args[1]):
                labels = dict(e.without_name())
                le = labels.pop("le", None)
                if le is None:
                    continue
                try:
                    bound = float(le)
                except ValueError:
                    continue
                groups.setdefault(_label_set(labels), []).append((bound, e.value))
            return [Element(labels, _histogram_quantile(q, b)) for labels, b in groups.items()]

        raise QueryEvaluationError(f"unsupported function {func!r}")

    def _binary(self, node: Binary, at: float) -> Value:
        lhs = self._eval(node.lhs, at)
        rhs = self._eval(node.rhs, at)
        op = node.op

        if op in SET_OPS:
            return self._set_op(op, self._instant(lhs), self._instant(rhs))

        if isinstance(lhs, float) and isinstance(rhs, float):
            if op in COMPARISON_OPS:
                if not node.return_bool:
                    raise QueryEvaluationError("comparisons between scalars must use bool")
                return 1.0 if _compare(op, lhs, rhs) else 0.0
            return _arith(op, lhs, rhs)

        if isinstance(lhs, float) or isinstance(rhs, float):
            return self._vector_scalar(node, lhs, rhs)

        return self._vector_vector(node, self._instant(lhs), self._instant(rhs))

    def _vector_scalar(self, node: Binary, lhs: Value, rhs: Value) -> InstantVector:
        scalar_left = isinstance(lhs, float)
        vector = self._instant(rhs if scalar_left else lhs)
        scalar = lhs if scalar_left else rhs
        out: InstantVector = []
        for e in vector:
            a, b = (scalar, e.value) if scalar_left else (e.value, scalar)
            if node.op in COMPARISON_OPS:
                keep = _compare(node.op, a, b)
                if node.return_bool:
                    out.append(Element(e.without_name(), 1.0 if keep else 0.0))
                elif keep:
                    out.append(e)
            elif node.op in ARITHMETIC_OPS:
                out.append(Element(e.without_name(), _arith(node.op, a, b)))
            else:
                raise QueryEvaluationError(f"unsupported operator {node.op!r}")
        return out

    @staticmethod
    def _signatures(vector: InstantVector, side: str) -> Dict[LabelSet, Element]:
        index: Dict[LabelSet, Element] = {}
        for e in vector:
            sig = e.without_name()
            if sig in index:
                raise QueryEvaluationError(
                    f"many-to-many matching not allowed: duplicate series on the {side} side"
                )
            index[sig] = e
        return index

    def _vector_vector(self, node: Binary, lhs: InstantVector, rhs: InstantVector) -> InstantVector:
        left = self._signatures(lhs, "left")
        right = self._signatures(rhs, "right")
        out: InstantVector = []
        for sig, le in left.items():
            re_ = right.get(sig)
            if re_ is None:
                continue
            if node.op in COMPARISON_OPS:
                keep = _compare(node.op, le.value, re_.value)
                if node.return_bool:
                    out.append(Element(sig, 1.0 if keep else 0.0))
                elif keep:
                    out.append(le)
            elif node.op in ARITHMETIC_OPS:
                out.append(Element(sig, _arith(node.op, le.value, re_.value)))
            else:
                raise QueryEvaluationError(f"unsupported operator {node.op!r}")
        return out

    @staticmethod
    def _set_op(op: str, lhs: InstantVector, rhs: InstantVector) -> InstantVector:
        right_sigs = {e.without_name() for e in rhs}
        if op == "and":
            return [e for e in lhs if e.without_name() in right_sigs]
        if op == "unless":
            return [e for e in lhs if e.without_name() not in right_sigs]
        left_sigs = {e.without_name() for e in lhs}
        return list(lhs) + [e for e in rhs if e.without_name() not in left_sigs]

    def _aggregate(self, node: Aggregate, at: float) -> InstantVector:
        vector = self._instant(self._eval(node.expr, at))
        groups: Dict[LabelSet, List[float]] = {}
        for e in vector:
            labels = dict(e.without_name())
            if node.without:
                key = _label_set({k: v for k, v in labels.items() if k not in node.by})
            else:
                key = _label_set({k: v for k, v in labels.items() if k in node.by})
            groups.setdefault(key, []).append(e.value)

        reducers: Dict[str, Callable[[List[float]], float]] = {
            "sum": math.fsum,
            "avg": lambda vs: math.fsum(vs) / len(vs),
            "min": min,
            "max": max,
            "count": lambda vs: float(len(vs)),
        }
        reduce = reducers.get(node.op)
        if reduce is None:
            raise QueryEvaluationError(f"unsupported aggregation {node.op!r}")
        return [Element(key, float(reduce(values))) for key, values in groups.items()]
