"""
Mergeable t-digest quantile sketch for duration-like metrics.

Points are buffered and periodically merged into a sorted list of weighted
centroids whose sizes are bounded by the k1 scale function, so centroids
near the tails stay small (accurate extreme quantiles) while the middle is
summarized coarsely. Memory is bounded by the compression parameter no
matter how many points are ingested.
"""

from __future__ import annotations

import bisect
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from tracescore.core.exceptions import UndefinedStatisticError


@dataclass(frozen=True)
class Centroid:
    mean: float
    weight: float


@dataclass
class QuantileSketch:
    """
    t-digest sketch.

    Invariants:
    - total_weight equals the summed weight of everything ingested
    - centroids are sorted by mean
    - quantile() is monotone non-decreasing in q and bracketed by min/max
    """

    compression: float = 100.0
    _centroids: List[Centroid] = field(default_factory=list)
    _buffer: List[Centroid] = field(default_factory=list)
    _total_weight: float = 0.0
    _min: float = math.inf
    _max: float = -math.inf

    @property
    def total_weight(self) -> float:
        return self._total_weight

    @property
    def is_empty(self) -> bool:
        return self._total_weight == 0.0

    @property
    def min(self) -> float:
        if self.is_empty:
            raise UndefinedStatisticError("min of an empty sketch")
        return self._min

    @property
    def max(self) -> float:
        if self.is_empty:
            raise UndefinedStatisticError("max of an empty sketch")
        return self._max

    def _buffer_limit(self) -> int:
        return max(16, int(5 * self.compression))

    def ingest(self, value: float, weight: float = 1.0) -> None:
        value = float(value)
        weight = float(weight)
        if not math.isfinite(value):
            raise ValueError(f"cannot ingest non-finite value {value}")
        if not (math.isfinite(weight) and weight > 0.0):
            raise ValueError(f"weight must be positive and finite, got {weight}")

        self._buffer.append(Centroid(value, weight))
        self._total_weight += weight
        self._min = min(self._min, value)
        self._max = max(self._max, value)
        if len(self._buffer) >= self._buffer_limit():
            self._compress()

    def merge(self, other: "QuantileSketch") -> "QuantileSketch":
        """Return a new sketch summarizing both inputs; an empty side is the identity."""
        if other.is_empty:
            return self.copy()
        if self.is_empty and other.compression == self.compression:
            return other.copy()

        result = QuantileSketch(compression=self.compression)
        result._total_weight = self._total_weight + other._total_weight
        result._min = min(self._min, other._min)
        result._max = max(self._max, other._max)
        result._centroids = result._merge_sorted(
            self._centroids + self._buffer + other._centroids + other._buffer
        )
        return result

    def quantile(self, q: float) -> float:
        """
        Estimate the value at quantile ``q``.

        The estimate interpolates linearly through the knots
        ``(0, min), (center_i, mean_i)..., (total, max)`` where ``center_i`` is
        the cumulative weight at the middle of centroid ``i``.

        Raises:
            UndefinedStatisticError: If the sketch is empty
            ValueError: If q is outside [0, 1]
        """
        if not 0.0 <= q <= 1.0:
            raise ValueError(f"quantile must be in [0, 1], got {q}")
        if self.is_empty:
            raise UndefinedStatisticError("quantile of an empty sketch")

        self._compress()
        xs, ys = self._knots()
        target = q * self._total_weight

        i = bisect.bisect_right(xs, target)
        if i >= len(xs):
            return ys[-1]
        x0, y0 = xs[i - 1], ys[i - 1]
        x1, y1 = xs[i], ys[i]
        if x1 == x0:
            return y1
        estimate = y0 + (y1 - y0) * (target - x0) / (x1 - x0)
        return min(max(estimate, y0), y1)

    def centroids(self) -> Tuple[Centroid, ...]:
        self._compress()
        return tuple(self._centroids)

    def copy(self) -> "QuantileSketch":
        return QuantileSketch(
            compression=self.compression,
            _centroids=list(self._centroids),
            _buffer=list(self._buffer),
            _total_weight=self._total_weight,
            _min=self._min,
            _max=self._max,
        )

    def to_state(self) -> Dict[str, Any]:
        """Raw state, buffer included, for bit-exact serialization."""
        return {
            "compression": self.compression,
            "centroids": [(c.mean, c.weight) for c in self._centroids],
            "buffer": [(c.mean, c.weight) for c in self._buffer],
            "total_weight": self._total_weight,
            "min": self._min,
            "max": self._max,
        }

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "QuantileSketch":
        return cls(
            compression=float(state["compression"]),
            _centroids=[Centroid(float(m), float(w)) for m, w in state["centroids"]],
            _buffer=[Centroid(float(m), float(w)) for m, w in state["buffer"]],
            _total_weight=float(state["total_weight"]),
            _min=float(state["min"]),
            _max=float(state["max"]),
        )

    def _knots(self) -> Tuple[List[float], List[float]]:
        xs = [0.0]
        ys = [self._min]
        cumulative = 0.0
        for c in self._centroids:
            xs.append(cumulative + c.weight / 2.0)
            # rounding in the weighted means can step outside [min, max] by an ulp
            ys.append(min(max(c.mean, ys[-1]), self._max))
            cumulative += c.weight
        xs.append(self._total_weight)
        ys.append(self._max)
        return xs, ys

    def _compress(self) -> None:
        if not self._buffer:
            return
        self._centroids = self._merge_sorted(self._centroids + self._buffer)
        self._buffer = []

    def _merge_sorted(self, points: Sequence[Centroid]) -> List[Centroid]:
        points = sorted(points, key=lambda c: c.mean)
        if not points:
            return []
        total = sum(c.weight for c in points)

        merged: List[Centroid] = []
        cur_mean, cur_weight = points[0].mean, points[0].weight
        weight_so_far = 0.0
        q_limit = self._q_limit(0.0)
        for p in points[1:]:
            if (weight_so_far + cur_weight + p.weight) / total <= q_limit:
                cur_weight += p.weight
                cur_mean += (p.mean - cur_mean) * p.weight / cur_weight
            else:
                merged.append(Centroid(cur_mean, cur_weight))
                weight_so_far += cur_weight
                q_limit = self._q_limit(weight_so_far / total)
                cur_mean, cur_weight = p.mean, p.weight
        merged.append(Centroid(cur_mean, cur_weight))
        return merged

    def _q_limit(self, q0: float) -> float:
        # k1 scale: k(q) = delta / (2 pi) * asin(2q - 1), one unit of k per centroid
        k = self.compression / (2.0 * math.pi) * math.asin(2.0 * min(max(q0, 0.0), 1.0) - 1.0) + 1.0
        if k >= self.compression / 4.0:
            return 1.0
        return (math.sin(k * 2.0 * math.pi / self.compression) + 1.0) / 2.0
