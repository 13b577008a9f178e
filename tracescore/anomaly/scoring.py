"""
Anomaly score computation.

A score compares a representative statistic of the immediate horizon with
a "normal ceiling" derived from the reference horizon:

    score = max(1, representative / max(ceiling + offset, ceiling_floor))

A score of 1 means the immediate horizon lies within the reference's normal
range; larger values are the multiplicative factor by which it exceeds it.
The score is monotone non-decreasing in the representative value.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from tracescore.core.config import Ceiling, Distribution, Representative, ScoringConfig
from tracescore.core.exceptions import UndefinedStatisticError

from .baselines import IntervalState, RunningStats
from .numeric import normal_quantile, sqrt, students_t_quantile
from .schema import AnomalyScore


@dataclass
class AnomalyScorer:
    """
    Pure scorer over two IntervalStates.

    Notes:
    - quantile is required for the quantile and confidence-interval modes.
    - Zero-count horizons and undefined statistics yield a defined=False
      score, never a numeric zero or NaN.
    """

    scoring: ScoringConfig = field(default_factory=ScoringConfig)

    def evaluate(
        self,
        immediate: IntervalState,
        reference: IntervalState,
        quantile: Optional[float] = None,
    ) -> AnomalyScore:
        counts = {"immediate_count": immediate.count, "reference_count": reference.count}
        if immediate.count == 0 or reference.count == 0:
            return AnomalyScore.insufficient("insufficient data", **counts)

        try:
            representative = self.representative(immediate, quantile)
            ceiling = self.ceiling(reference, quantile)
        except UndefinedStatisticError as e:
            return AnomalyScore.insufficient(str(e), **counts)

        divisor = max(ceiling, self.scoring.ceiling_floor)
        value = max(1.0, representative / divisor)
        if not math.isfinite(value):
            return AnomalyScore.insufficient("score is not finite", **counts)

        return AnomalyScore(
            value=value,
            defined=True,
            immediate_value=representative,
            reference_ceiling=ceiling,
            **counts,
        )

    def representative(self, immediate: IntervalState, quantile: Optional[float]) -> float:
        mode = self.scoring.representative
        stats = immediate.stats
        if mode == Representative.MEAN:
            return stats.average()
        if mode == Representative.QUANTILE:
            return self._sketch_quantile(immediate, quantile)
        if mode == Representative.CI_LOWER:
            return max(0.0, stats.average() - self._margin(stats, quantile))
        raise ValueError(f"Unknown representative: {mode}")

    def ceiling(self, reference: IntervalState, quantile: Optional[float]) -> float:
        mode = self.scoring.ceiling
        stats = reference.stats
        if mode == Ceiling.STDDEV:
            base = stats.average() + self.scoring.stddev_factor * stats.stddev(self.scoring.ddof)
        elif mode == Ceiling.QUANTILE:
            base = self._sketch_quantile(reference, quantile)
        elif mode == Ceiling.CI_UPPER:
            base = stats.average() + self._margin(stats, quantile)
        else:
            raise ValueError(f"Unknown ceiling: {mode}")
        return base + self.scoring.offset

    def _margin(self, stats: RunningStats, quantile: Optional[float]) -> float:
        return self.multiplier(quantile, stats.count) * stats.stddev(self.scoring.ddof) / sqrt(stats.count)

    def multiplier(self, quantile: Optional[float], count: int) -> float:
        """Quantile of the bound's distribution for a mean over ``count`` observations."""
        if quantile is None:
            raise ValueError("confidence bounds require a quantile")
        if self.scoring.distribution == Distribution.STUDENTS_T:
            if count < 2:
                raise UndefinedStatisticError(
                    f"Student's t bound needs at least 2 observations, have {count}"
                )
            return students_t_quantile(quantile, count - 1)
        return normal_quantile(quantile)

    @staticmethod
    def _sketch_quantile(state: IntervalState, quantile: Optional[float]) -> float:
        if quantile is None:
            raise ValueError("quantile scoring requires a quantile")
        if state.sketch is None:
            raise UndefinedStatisticError("no quantile sketch for this metric")
        return state.sketch.quantile(quantile)
