"""
Schema definitions for anomaly scoring.

Scores are explainable: every defined score carries the representative
value and ceiling it was computed from, and an undefined score says why.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Horizon(str, Enum):
    """The two time windows compared to produce a score."""

    IMMEDIATE = "immediate"
    REFERENCE = "reference"


class BaselineStats(BaseModel):
    """
    Summary statistics of one accumulator.

    Fields:
    - mean: central tendency
    - std: dispersion
    - count: number of observations
    - method: accumulator that produced the summary
    """

    mean: float
    std: float
    count: int
    method: str


class AnomalyScore(BaseModel):
    """
    Anomaly score for one metric key.

    Fields:
    - value: multiplicative factor (>= 1); None when not defined
    - defined: False when either horizon lacks data ("no verdict")
    - reason: why the score is undefined
    - immediate_value: representative statistic of the immediate horizon
    - reference_ceiling: normal ceiling derived from the reference horizon
    - immediate_count / reference_count: observations behind each side
    """

    value: Optional[float] = None
    defined: bool = False
    reason: Optional[str] = None
    immediate_value: Optional[float] = None
    reference_ceiling: Optional[float] = None
    immediate_count: int = 0
    reference_count: int = 0

    @classmethod
    def insufficient(cls, reason: str, immediate_count: int = 0, reference_count: int = 0) -> "AnomalyScore":
        return cls(
            defined=False,
            reason=reason,
            immediate_count=immediate_count,
            reference_count=reference_count,
        )

    @property
    def is_anomalous(self) -> bool:
        return self.defined and self.value is not None and self.value > 1.0
