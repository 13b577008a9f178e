"""
Expressions over the series the daemon publishes for itself.

Where the Welford generator recomputes statistics from the cumulative state,
these read the streaming results directly:

- count / mean / stddev / quantile: ``trace_<graph>_<stat>{horizon=...}``
- ci: confidence bounds of the mean from the published count, mean and stddev
- score: ``trace_<graph>_score{immediate=..., reference=...}``, for one
  operation or service, or combined over the operations of each service

Combining scores:
    ``sum by (service_name) (clamp_min(score - 1, 0)) / clamp_min(n, 1) ^ c + 1``
with ``n`` the number of scored operations of the service. ``c = 0`` adds
up the operations' excess over 1, ``c = 1`` averages it.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from tracescore.anomaly.numeric import normal_quantile, students_t_approximation
from tracescore.anomaly.schema import Horizon
from tracescore.core.config import Distribution
from tracescore.core.durations import Duration, format_duration
from tracescore.data.schema import OPERATION_LABEL, SERVICE_LABEL, GraphType, LabelMatcher, MatchOp

from .naming import HORIZON_LABEL, IMMEDIATE_LABEL, QUANTILE_LABEL, REFERENCE_LABEL, score_metric, stat_metric
from .promql import Aggregate, Expr, call, selector


class Aggregation(str, Enum):
    COUNT = "count"
    MEAN = "mean"
    STDDEV = "stddev"
    QUANTILE = "quantile"
    CI = "ci"
    SCORE = "score"


class ObjectLevel(str, Enum):
    """Operation-level series carry an operation name, service-level ones do not."""

    OPERATION = "operation"
    SERVICE = "service"


class PrecalculatedParams(BaseModel):
    """
    Request for an expression over published results.

    Fields:
    - metric / aggr: which published statistic
    - level: operation- or service-level series
    - service / operation: equality filters; unset selects every object
    - label_selectors: additional matchers
    - horizon: horizon of count, mean, stddev, quantile and ci
    - immediate / reference: windows naming the score series
    - q / distribution: quantile label and confidence bound multiplier
    - combine: combination factor in [0, 1]; scores the services by
      combining their operations' scores
    """

    metric: GraphType
    aggr: Aggregation
    level: ObjectLevel = ObjectLevel.OPERATION
    service: Optional[str] = None
    operation: Optional[str] = None
    label_selectors: Tuple[LabelMatcher, ...] = ()
    horizon: Horizon = Horizon.IMMEDIATE
    immediate: Duration = Field(timedelta(minutes=5))
    reference: Duration = Field(timedelta(days=7))
    q: float = Field(0.99, gt=0.0, lt=1.0)
    distribution: Distribution = Distribution.NORMAL
    combine: Optional[float] = Field(None, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check(self) -> "PrecalculatedParams":
        if self.level == ObjectLevel.SERVICE and self.operation is not None:
            raise ValueError("service-level series have no operation")
        if self.combine is not None:
            if self.aggr != Aggregation.SCORE:
                raise ValueError("only scores can be combined")
            if self.level != ObjectLevel.SERVICE:
                raise ValueError("scores are combined per service")
        if self.aggr == Aggregation.QUANTILE and not self.metric.is_duration_like:
            raise ValueError(f"no published quantile for '{self.metric.value}'")
        return self

    def matchers(self) -> Tuple[LabelMatcher, ...]:
        found = []
        if self.service is not None:
            found.append(LabelMatcher(name=SERVICE_LABEL, value=self.service))
        if self.operation is not None:
            found.append(LabelMatcher(name=OPERATION_LABEL, value=self.operation))
        elif self.level == ObjectLevel.OPERATION or self.combine is not None:
            found.append(LabelMatcher(name=OPERATION_LABEL, op=MatchOp.NE, value=""))
        else:
            found.append(LabelMatcher(name=OPERATION_LABEL, value=""))
        found.extend(self.label_selectors)
        return tuple(found)


class PrecalculatedExprs(BaseModel):
    """``expr`` is the requested value; ci also fills in the bounds (``expr`` is the margin)."""

    expr: str
    low: Optional[str] = None
    high: Optional[str] = None


class PrecalculatedBuilder:
    """Builds PrecalculatedExprs; pure, like the Welford generator."""

    def build(self, params: PrecalculatedParams) -> PrecalculatedExprs:
        if params.aggr == Aggregation.SCORE:
            return PrecalculatedExprs(expr=str(self._score(params)))
        if params.aggr == Aggregation.CI:
            mean = self._stat(params, "mean")
            margin = self._margin(params)
            return PrecalculatedExprs(
                expr=str(margin),
                low=str(call("clamp_min", mean - margin, 0)),
                high=str(mean + margin),
            )
        return PrecalculatedExprs(expr=str(self._stat(params, params.aggr.value)))

    @staticmethod
    def _stat(params: PrecalculatedParams, stat: str) -> Expr:
        matchers = params.matchers() + (LabelMatcher(name=HORIZON_LABEL, value=params.horizon.value),)
        if stat == Aggregation.QUANTILE.value:
            matchers += (LabelMatcher(name=QUANTILE_LABEL, value=repr(params.q)),)
        return selector(stat_metric(params.metric, stat), matchers)

    def _margin(self, params: PrecalculatedParams) -> Expr:
        count = self._stat(params, "count")
        if params.distribution == Distribution.STUDENTS_T:
            t = students_t_approximation(params.q)
            multiplier = t.normal + t.scale / ((count - 1).gt(0) - t.shift)
        else:
            multiplier = normal_quantile(params.q)
        return multiplier * self._stat(params, "stddev") / call("sqrt", count)

    @staticmethod
    def _score(params: PrecalculatedParams) -> Expr:
        matchers = params.matchers() + (
            LabelMatcher(name=IMMEDIATE_LABEL, value=format_duration(params.immediate)),
            LabelMatcher(name=REFERENCE_LABEL, value=format_duration(params.reference)),
        )
        score = selector(score_metric(params.metric), matchers)
        if params.combine is None:
            return call("clamp_min", score, 1)

        by = (SERVICE_LABEL,)
        excess = Aggregate("sum", call("clamp_min", score - 1, 0), by)
        operations = call("clamp_min", Aggregate("count", score, by), 1)
        return excess / operations ** params.combine + 1
