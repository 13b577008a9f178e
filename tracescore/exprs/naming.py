"""
Names of the series written for, and read by, the expression generator.

Cumulative inputs, one point per distinct sample timestamp and one per tick:
- ``trace_<graph>_welford_{count,mean,m2}``: Welford state of every sample
  seen so far
- ``trace_<graph>_bucket{le=...}``: cumulative histogram counters (duration-like)

Streaming results:
- ``trace_<graph>_<stat>{horizon=...}``: count, mean, stddev, quantile
- ``trace_<graph>_score{immediate=..., reference=...}``
"""

from __future__ import annotations

from tracescore.data.schema import GraphType

BUCKET_LABEL = "le"
HORIZON_LABEL = "horizon"
QUANTILE_LABEL = "quantile"
IMMEDIATE_LABEL = "immediate"
REFERENCE_LABEL = "reference"

WELFORD_FIELDS = ("count", "mean", "m2")


def metric_prefix(graph: GraphType) -> str:
    return f"trace_{GraphType(graph).value}"


def welford_metric(graph: GraphType, field: str) -> str:
    if field not in WELFORD_FIELDS:
        raise ValueError(f"unknown Welford field {field!r}")
    return f"{metric_prefix(graph)}_welford_{field}"


def bucket_metric(graph: GraphType) -> str:
    return f"{metric_prefix(graph)}_bucket"


def stat_metric(graph: GraphType, stat: str) -> str:
    return f"{metric_prefix(graph)}_{stat}"


def score_metric(graph: GraphType) -> str:
    return f"{metric_prefix(graph)}_score"


def rule_name(graph: GraphType, stat: str, *windows: str) -> str:
    """Recording rule name, e.g. ``trace_duration:count_5m``."""
    suffix = "_".join((stat,) + windows)
    return f"{metric_prefix(graph)}:{suffix}"


def format_le(bound: float) -> str:
    """``le`` label value in Prometheus' float formatting."""
    if bound == float("inf"):
        return "+Inf"
    return repr(float(bound))
