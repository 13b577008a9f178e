"""
Example graph data for ``GET /graph/example``.

Evaluates the generated count / mean / low / high expressions of one
horizon as a range query against the in-process series store and scales
the values to display units. No rendering happens here.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional

from tracescore.core.config import MonitorConfig
from tracescore.core.durations import format_duration, parse_duration
from tracescore.data.schema import OPERATION_LABEL, GraphType, LabelMatcher, MatchOp
from tracescore.exprs.evaluator import Evaluator, SeriesStore
from tracescore.exprs.welford import ExpressionGenerator, WelfordParams

GRAPH_STEPS = 200
DISPLAY_SCALE: Dict[GraphType, float] = {
    GraphType.DURATION: 1e-6,
    GraphType.BUSY: 1e-9,
}
DISPLAY_UNIT: Dict[GraphType, str] = {
    GraphType.DURATION: "s",
    GraphType.BUSY: "s",
    GraphType.CALL_RATE: "calls/s",
    GraphType.ERROR_RATE: "ratio",
}
GRAPH_LINES = ("count", "mean", "low", "high")


class GraphRequestError(ValueError):
    """Invalid graph query parameters."""


def parse_time(value: str) -> float:
    """Epoch seconds or an ISO 8601 timestamp (naive values are UTC)."""
    try:
        return float(value)
    except ValueError:
        pass
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise GraphRequestError(f"invalid time {value!r}") from e
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def _one(params: Mapping[str, List[str]], name: str) -> Optional[str]:
    values = params.get(name)
    return values[-1] if values else None


def example_graph(
    params: Mapping[str, List[str]],
    config: MonitorConfig,
    series: SeriesStore,
    generator: Optional[ExpressionGenerator] = None,
    now: Optional[float] = None,
) -> Dict[str, object]:
    """
    Build graph data from query parameters.

    Parameters (as parsed by ``urllib.parse.parse_qs``):
        type: duration | busy | call_rate | error_rate (required)
        service, operation: series filter; without an operation the
            service-level series is used
        duration: horizon window of the plotted statistics (default 5m)
        q: quantile target (default 0.99)
        from, to: time range; ``to`` defaults to now
        interval: range length when ``from`` is absent (default 1d)
    """
    raw_type = _one(params, "type")
    if raw_type is None:
        raise GraphRequestError("missing required parameter 'type'")
    try:
        graph = GraphType(raw_type)
    except ValueError as e:
        raise GraphRequestError(f"unknown graph type {raw_type!r}") from e

    try:
        window = parse_duration(_one(params, "duration") or "5m")
        interval = parse_duration(_one(params, "interval") or "1d")
        q = float(_one(params, "q") or "0.99")
    except ValueError as e:
        raise GraphRequestError(str(e)) from e
    if window <= timedelta(0) or interval <= timedelta(0):
        raise GraphRequestError("duration and interval must be positive")

    to_raw = _one(params, "to")
    end = parse_time(to_raw) if to_raw else (time.time() if now is None else now)
    from_raw = _one(params, "from")
    start = parse_time(from_raw) if from_raw else end - interval.total_seconds()
    if end <= start:
        raise GraphRequestError("'from' must be before 'to'")

    operation = _one(params, "operation")
    selectors = ()
    if operation is None:
        selectors = (LabelMatcher(name=OPERATION_LABEL, op=MatchOp.EQ, value=""),)
    reference = max(window, config.horizons_for(graph).reference.window)

    # raises pydantic.ValidationError for an out-of-range q
    welford = WelfordParams(
        metric=graph,
        service=_one(params, "service"),
        operation=operation,
        label_selectors=selectors,
        immediate=window,
        reference=reference,
        q=q,
        scoring=config.scoring_for(graph),
    )
    exprs = (generator or ExpressionGenerator()).generate(welford).immediate

    step = (end - start) / GRAPH_STEPS
    scale = DISPLAY_SCALE.get(graph, 1.0)
    evaluator = Evaluator(series)
    lines: Dict[str, List[Dict[str, object]]] = {}
    for name in GRAPH_LINES:
        result = evaluator.range(getattr(exprs, name), start, end, step)
        factor = 1.0 if name == "count" else scale
        lines[name] = [
            {"labels": dict(labels), "points": [[t, v * factor] for t, v in points]}
            for labels, points in sorted(result.items())
        ]

    return {
        "type": graph.value,
        "window": format_duration(window),
        "from": start,
        "to": end,
        "step": step,
        "unit": DISPLAY_UNIT[graph],
        "expressions": {name: getattr(exprs, name) for name in GRAPH_LINES},
        "series": lines,
    }
