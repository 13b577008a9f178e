"""
Numeric utilities shared by the scorer and the expression generator.

Everything precision-sensitive goes through this narrow interface so the
rest of the engine does not care how it is computed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from functools import lru_cache
from statistics import NormalDist

import numpy as np
from scipy import stats

_STANDARD_NORMAL = NormalDist()


def sqrt(value: float) -> float:
    """Correctly rounded IEEE-754 square root."""
    return math.sqrt(value)


def _check_quantile(q: float) -> None:
    if not 0.0 < q < 1.0:
        raise ValueError(f"quantile must be in (0, 1), got {q}")


def normal_quantile(q: float) -> float:
    """Inverse CDF of the standard normal distribution (``z`` for a one-sided bound)."""
    _check_quantile(q)
    return _STANDARD_NORMAL.inv_cdf(q)


def students_t_quantile(q: float, df: float) -> float:
    """Inverse CDF of Student's t distribution with ``df`` degrees of freedom."""
    _check_quantile(q)
    if not df > 0:
        raise ValueError(f"degrees of freedom must be positive, got {df}")
    return float(stats.t.ppf(q, df))


@dataclass(frozen=True)
class StudentsTApproximation:
    """
    ``t(q, df) ~= normal + scale / (df - shift)`` for a fixed ``q``.

    Exact for ``df = shift + 1`` and as ``df`` grows; ``max_error`` is the
    largest relative error over the fitted degrees of freedom.
    """

    q: float
    normal: float
    scale: float
    shift: float
    max_error: float
    max_df: int

    def __call__(self, df: float) -> float:
        return self.normal + self.scale / (df - self.shift)


@lru_cache(maxsize=64)
def students_t_approximation(q: float, max_df: int = 100, resolution: int = 5000) -> StudentsTApproximation:
    """
    Fit the shift minimizing the worst relative error for ``df = 1..max_df``.

    Shifts are searched on a ``1 / resolution`` grid over ``[0, 1)``.
    """
    normal = normal_quantile(q)
    if normal == 0.0:
        # the median of t is 0 for every df
        return StudentsTApproximation(q, 0.0, 0.0, 0.0, 0.0, max_df)

    dfs = np.arange(1, max_df + 1, dtype=float)
    target = stats.t.ppf(q, dfs)
    shifts = np.arange(resolution, dtype=float) / resolution
    scales = stats.t.ppf(q, shifts + 1.0) - normal
    fitted = normal + scales[:, None] / (dfs[None, :] - shifts[:, None])
    errors = np.max(np.abs((fitted - target[None, :]) / target[None, :]), axis=1)
    best = int(np.argmin(errors))
    return StudentsTApproximation(
        q=q,
        normal=normal,
        scale=float(scales[best]),
        shift=float(shifts[best]),
        max_error=float(errors[best]),
        max_df=max_df,
    )


def isclose_relative(a: float, b: float, rel_tol: float = 1e-6, abs_tol: float = 0.0) -> bool:
    """Relative closeness used to compare the streaming and recomputed statistics."""
    if math.isnan(a) or math.isnan(b):
        return False
    return math.isclose(a, b, rel_tol=rel_tol, abs_tol=abs_tol)
