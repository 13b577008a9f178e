"""
Welford expression generator.

Produces PromQL that recomputes, from the published cumulative state, what
the streaming engine computes incrementally. With ``A`` the cumulative
Welford state ``W`` ago (``offset``) and ``AB`` the state now, the window
holds

- count ``n = n_AB - n_A``
- mean ``m_A + (m_AB - m_A) * n_AB / n``
- m2 ``(M_AB - M_A) - (m_AB - m_A)^2 * n_AB * n_A / n``, divided by ``n``
  (or ``n - 1 > 0`` for the sample variance, so single observations stay
  undefined)
- quantiles from the cumulative ``_bucket`` counters via ``histogram_quantile``
  over the counter increase inside the window
- representative, ceiling and score combined exactly as AnomalyScorer does;
  Student's t bounds use ``normal + scale / (df - shift)`` fitted per quantile

Every expression is also emitted as a chain of recording rules so operators
can recreate the score purely from recorded series.

Tolerance against the streaming engine, for batch ends aligned to the
immediate bin width:
- count is exact
- mean agrees to about ``eps * n_total / n`` relative, where ``n_total`` is
  the number of samples published since the process started
- variance agrees to about ``eps * M2_total / n`` absolute, from cancelling
  the cumulative m2; scores inherit these errors through their inputs
- Student's t multipliers agree to the fit's ``max_error`` relative
- quantile-based values agree to within the histogram buckets holding the
  quantile
- a reference window whose end is not on a reference bin boundary starts
  at the boundary after ``end - W`` in the engine, so it is shorter than
  the PromQL window by ``ceil(end / w) * w - end``
"""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, model_validator

from tracescore.anomaly.numeric import normal_quantile, students_t_approximation
from tracescore.core.config import Ceiling, Distribution, Representative, ScoringConfig
from tracescore.core.durations import Duration, format_duration
from tracescore.core.exceptions import ExpressionError
from tracescore.data.schema import OPERATION_LABEL, SERVICE_LABEL, GraphType, LabelMatcher, MatchOp

from .naming import bucket_metric, rule_name, welford_metric
from .promql import Expr, Selector, call, selector


class WelfordParams(BaseModel):
    """
    Request for a set of Welford expressions.

    Fields:
    - metric: graph type whose raw samples are aggregated
    - service / operation: shortcuts for equality matchers
    - labels: additional equality matchers
    - label_selectors: arbitrary matchers (regex, negation)
    - immediate / reference: horizon windows
    - q: quantile target (quantile and confidence-bound modes)
    - scoring: how the score combines the horizons
    """

    metric: GraphType
    service: Optional[str] = None
    operation: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    label_selectors: Tuple[LabelMatcher, ...] = ()
    immediate: Duration = Field(timedelta(minutes=5))
    reference: Duration = Field(timedelta(days=7))
    q: float = Field(0.99, gt=0.0, lt=1.0)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)

    @model_validator(mode="after")
    def _check_windows(self) -> "WelfordParams":
        if self.immediate <= timedelta(0) or self.reference <= timedelta(0):
            raise ValueError("horizon windows must be positive")
        if self.immediate > self.reference:
            raise ValueError("immediate window must not exceed the reference window")
        return self

    def matchers(self) -> Tuple[LabelMatcher, ...]:
        found: Dict[Tuple[str, str, str], LabelMatcher] = {}
        eq = dict(self.labels)
        if self.service is not None:
            eq[SERVICE_LABEL] = self.service
        if self.operation is not None:
            eq[OPERATION_LABEL] = self.operation
        for name, value in eq.items():
            m = LabelMatcher(name=name, op=MatchOp.EQ, value=value)
            found[(m.name, m.op.value, m.value)] = m
        for m in self.label_selectors:
            found[(m.name, m.op.value, m.value)] = m
        return tuple(found[k] for k in sorted(found))


class HorizonExprs(BaseModel):
    """Expressions for one horizon window."""

    window: str
    count: str
    mean: str
    m2: str
    variance: str
    stddev: str
    low: str
    high: str
    quantile: Optional[str] = None


class RecordingRule(BaseModel):
    record: str
    expr: str


class WelfordExprs(BaseModel):
    """
    Generated expressions.

    ``rules`` is ordered: every rule only references rules recorded before it.
    """

    immediate: HorizonExprs
    reference: HorizonExprs
    representative: str
    ceiling: str
    score: str
    rules: List[RecordingRule]


class _Primitives:
    """The four windowed inputs every derived expression is built from."""

    def __init__(self, count: Expr, mean: Expr, m2: Expr, quantile: Optional[Expr]):
        self.count = count
        self.mean = mean
        self.m2 = m2
        self.quantile = quantile


def _multiplier(count: Expr, scoring: ScoringConfig, q: float) -> Union[Expr, float]:
    """Confidence bound multiplier; Student's t uses a closed-form fit in ``count - 1``."""
    if scoring.distribution == Distribution.STUDENTS_T:
        t = students_t_approximation(q)
        return t.normal + t.scale / ((count - 1).gt(0) - t.shift)
    return normal_quantile(q)


class _Derived:
    def __init__(self, prim: _Primitives, scoring: ScoringConfig, q: float):
        self.prim = prim
        self.count = prim.count
        self.mean = prim.mean
        m2 = call("clamp_min", prim.m2, 0)
        if scoring.ddof == 0:
            self.variance = m2 / prim.count
        else:
            self.variance = m2 / (prim.count - scoring.ddof).gt(0)
        self.stddev = call("sqrt", self.variance)
        self.multiplier = _multiplier(prim.count, scoring, q)

    def margin(self) -> Expr:
        return self.multiplier * self.stddev / call("sqrt", self.count)

    def low(self) -> Expr:
        return call("clamp_min", self.mean - self.margin(), 0)

    def high(self) -> Expr:
        return self.mean + self.margin()


class ExpressionGenerator:
    """
    Translates WelfordParams into PromQL strings.

    Pure and deterministic; never reads engine state.
    """

    def generate(self, params: WelfordParams) -> WelfordExprs:
        metric = params.metric
        scoring = params.scoring
        matchers = params.matchers()
        q = params.q
        windows = (params.immediate, params.reference)

        self._check_modes(metric, scoring)

        inline = {w: _Derived(self._inline(params, matchers, w), scoring, q) for w in windows}
        imm, ref = inline[params.immediate], inline[params.reference]

        rules: List[Tuple[str, Expr]] = []
        recorded: Dict[timedelta, _Derived] = {}
        for w in windows:
            prim = inline[w].prim
            names = self._primitive_rule_names(metric, w)
            for name, expr in zip(names, (prim.count, prim.mean, prim.m2, prim.quantile)):
                if expr is not None:
                    rules.append((name, expr))
            recorded[w] = _Derived(
                _Primitives(
                    count=selector(names[0], matchers),
                    mean=selector(names[1], matchers),
                    m2=selector(names[2], matchers),
                    quantile=selector(names[3], matchers) if prim.quantile is not None else None,
                ),
                scoring,
                q,
            )

        wi = format_duration(params.immediate)
        wr = format_duration(params.reference)
        rep_name = rule_name(metric, "representative", wi)
        ceil_name = rule_name(metric, "ceiling", wr)
        score_name = rule_name(metric, "score", wi, wr)
        rules.append((rep_name, self._representative(recorded[params.immediate], scoring)))
        rules.append((ceil_name, self._ceiling(recorded[params.reference], scoring)))
        rules.append(
            (score_name, self._score(selector(rep_name, matchers), selector(ceil_name, matchers), scoring))
        )

        representative = self._representative(imm, scoring)
        ceiling = self._ceiling(ref, scoring)

        seen = set()
        unique_rules = []
        for name, expr in rules:
            if name in seen:
                continue
            seen.add(name)
            unique_rules.append(RecordingRule(record=name, expr=str(expr)))

        return WelfordExprs(
            immediate=self._horizon_exprs(params.immediate, imm),
            reference=self._horizon_exprs(params.reference, ref),
            representative=str(representative),
            ceiling=str(ceiling),
            score=str(self._score(representative, ceiling, scoring)),
            rules=unique_rules,
        )

    @staticmethod
    def _check_modes(metric: GraphType, scoring: ScoringConfig) -> None:
        uses_quantile = (
            scoring.representative == Representative.QUANTILE or scoring.ceiling == Ceiling.QUANTILE
        )
        if uses_quantile and not metric.is_duration_like:
            raise ExpressionError(f"quantile scoring needs a duration-like metric, not '{metric.value}'")
        if scoring.ddof not in (0, 1):
            raise ExpressionError(f"unsupported ddof {scoring.ddof}")

    @staticmethod
    def _inline(params: WelfordParams, matchers: Tuple[LabelMatcher, ...], window: timedelta) -> _Primitives:
        metric = params.metric

        def now(field: str) -> Selector:
            return selector(welford_metric(metric, field), matchers)

        def before(field: str) -> Expr:
            # a series younger than the window has no point at the offset
            # and starts from the empty state
            return now(field).shifted(window).or_(now(field) * 0)

        count = call("clamp_min", now("count") - before("count"), 0)
        nonempty = count.gt(0)
        mean_step = now("mean") - before("mean")
        mean = before("mean") + mean_step * now("count") / nonempty
        m2 = (now("m2") - before("m2")) - mean_step ** 2 * now("count") * before("count") / nonempty

        quantile = None
        if metric.is_duration_like:
            buckets = selector(bucket_metric(metric), matchers)
            increase = buckets - buckets.shifted(window).or_(buckets * 0)
            quantile = call("histogram_quantile", params.q, increase)
        return _Primitives(count=count, mean=mean, m2=m2, quantile=quantile)

    @staticmethod
    def _primitive_rule_names(metric: GraphType, window: timedelta) -> Tuple[str, str, str, str]:
        w = format_duration(window)
        return (
            rule_name(metric, "count", w),
            rule_name(metric, "mean", w),
            rule_name(metric, "m2", w),
            rule_name(metric, "quantile", w),
        )

    @staticmethod
    def _representative(d: _Derived, scoring: ScoringConfig) -> Expr:
        if scoring.representative == Representative.MEAN:
            return d.mean
        if scoring.representative == Representative.QUANTILE:
            if d.prim.quantile is None:
                raise ExpressionError("no histogram for quantile representative")
            return d.prim.quantile
        return d.low()

    @staticmethod
    def _ceiling(d: _Derived, scoring: ScoringConfig) -> Expr:
        if scoring.ceiling == Ceiling.STDDEV:
            base = d.mean + scoring.stddev_factor * d.stddev
        elif scoring.ceiling == Ceiling.QUANTILE:
            if d.prim.quantile is None:
                raise ExpressionError("no histogram for quantile ceiling")
            base = d.prim.quantile
        else:
            base = d.high()
        if scoring.offset:
            base = base + scoring.offset
        return base

    @staticmethod
    def _score(representative: Expr, ceiling: Expr, scoring: ScoringConfig) -> Expr:
        return call(
            "clamp_min",
            representative / call("clamp_min", ceiling, scoring.ceiling_floor),
            1,
        )

    @staticmethod
    def _horizon_exprs(window: timedelta, d: _Derived) -> HorizonExprs:
        return HorizonExprs(
            window=format_duration(window),
            count=str(d.count),
            m2=str(d.prim.m2),
            mean=str(d.mean),
            variance=str(d.variance),
            stddev=str(d.stddev),
            low=str(d.low()),
            high=str(d.high()),
            quantile=str(d.prim.quantile) if d.prim.quantile is not None else None,
        )
