"""
Online accumulators for one metric key and horizon.

RunningStats keeps exact running mean/variance with Welford's recurrence and
combines partial results with the parallel-variance formula. IntervalState
pairs it with an optional quantile sketch for duration-like metrics.

Nothing here ever removes a sample; windows are enforced by rotating whole
IntervalStates (see engine.HorizonState).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from tracescore.core.exceptions import UndefinedStatisticError

from .numeric import sqrt
from .schema import BaselineStats
from .sketch import QuantileSketch


@dataclass
class RunningStats:
    """
    Welford running mean/variance.

    ``mean`` and ``sum_sq_diff`` carry no meaning while ``count == 0``; the
    derived statistics raise UndefinedStatisticError instead of returning a
    default that could pass for a measurement.
    """

    count: int = 0
    mean: float = 0.0
    sum_sq_diff: float = 0.0

    @property
    def is_empty(self) -> bool:
        return self.count == 0

    def update(self, value: float) -> None:
        value = float(value)
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        delta2 = value - self.mean
        self.sum_sq_diff += delta * delta2

    @staticmethod
    def merge(a: "RunningStats", b: "RunningStats") -> "RunningStats":
        """Parallel-variance combination; commutative, and empty inputs are the identity."""
        if a.count == 0:
            return b.copy()
        if b.count == 0:
            return a.copy()

        count = a.count + b.count
        delta = b.mean - a.mean
        mean = (a.count * a.mean + b.count * b.mean) / count
        sum_sq_diff = a.sum_sq_diff + b.sum_sq_diff + delta * delta * (a.count * b.count) / count
        return RunningStats(count=count, mean=mean, sum_sq_diff=sum_sq_diff)

    def average(self) -> float:
        if self.count == 0:
            raise UndefinedStatisticError("mean of an empty accumulator")
        return self.mean

    def variance(self, ddof: int = 0) -> float:
        if self.count <= ddof:
            raise UndefinedStatisticError(
                f"variance needs more than {ddof} observation(s), have {self.count}"
            )
        # clamp tiny negative rounding residue
        return max(self.sum_sq_diff, 0.0) / (self.count - ddof)

    def stddev(self, ddof: int = 0) -> float:
        return sqrt(self.variance(ddof))

    def summary(self, ddof: int = 0) -> BaselineStats:
        return BaselineStats(
            mean=self.average(),
            std=self.stddev(ddof),
            count=self.count,
            method="welford",
        )

    def copy(self) -> "RunningStats":
        return RunningStats(count=self.count, mean=self.mean, sum_sq_diff=self.sum_sq_diff)


@dataclass
class IntervalState:
    """
    Statistics of one metric key over one horizon (or one bin of it).

    The sketch is present only for duration-like graph types.
    """

    stats: RunningStats = field(default_factory=RunningStats)
    sketch: Optional[QuantileSketch] = None

    @classmethod
    def create(cls, with_sketch: bool, compression: float = 100.0) -> "IntervalState":
        return cls(
            stats=RunningStats(),
            sketch=QuantileSketch(compression=compression) if with_sketch else None,
        )

    @property
    def count(self) -> int:
        return self.stats.count

    @property
    def is_empty(self) -> bool:
        return self.stats.is_empty

    def record(self, value: float) -> None:
        self.stats.update(value)
        if self.sketch is not None:
            self.sketch.ingest(value)

    def merge(self, other: "IntervalState") -> "IntervalState":
        if self.sketch is None:
            sketch = other.sketch.copy() if other.sketch is not None else None
        elif other.sketch is None:
            sketch = self.sketch.copy()
        else:
            sketch = self.sketch.merge(other.sketch)
        return IntervalState(stats=RunningStats.merge(self.stats, other.stats), sketch=sketch)

    def reset(self) -> None:
        self.stats = RunningStats()
        if self.sketch is not None:
            self.sketch = QuantileSketch(compression=self.sketch.compression)

    def copy(self) -> "IntervalState":
        return IntervalState(
            stats=self.stats.copy(),
            sketch=self.sketch.copy() if self.sketch is not None else None,
        )
