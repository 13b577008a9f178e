"""
Canonical internal schema for spans and metric samples.

This module defines the standardized representation of a finished span as
read from a trace source, the metric keys that identify one monitored
series, and the samples derived from spans.

Design rationale:
- Minimal span fields (only what the anomaly engine consumes)
- All timestamps in UTC; samples carry epoch seconds
- MetricKey is immutable and hashable so it can key sharded state
- Label matchers follow Prometheus semantics (an absent label equals "")
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

SERVICE_LABEL = "service_name"
OPERATION_LABEL = "operation_name"


class GraphType(str, Enum):
    """
    Kinds of per-service/operation metrics derived from spans.

    duration and busy are measured in time units and carry quantile
    sketches; call_rate and error_rate are per-bin rates.
    """
    DURATION = "duration"
    BUSY = "busy"
    CALL_RATE = "call_rate"
    ERROR_RATE = "error_rate"

    @property
    def is_duration_like(self) -> bool:
        return self in (GraphType.DURATION, GraphType.BUSY)


class MatchOp(str, Enum):
    """Prometheus label matching operators."""
    EQ = "="
    NE = "!="
    RE = "=~"
    NRE = "!~"


class LabelMatcher(BaseModel):
    """
    A single label matcher, e.g. ``service_name=~"api-.*"``.

    Regex matchers are fully anchored, as in PromQL. A missing label is
    treated as the empty string.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    op: MatchOp = MatchOp.EQ
    value: str = ""

    def matches(self, labels: Mapping[str, str]) -> bool:
        actual = labels.get(self.name, "")
        if self.op == MatchOp.EQ:
            return actual == self.value
        if self.op == MatchOp.NE:
            return actual != self.value
        matched = re.fullmatch(self.value, actual) is not None
        return matched if self.op == MatchOp.RE else not matched


@functools.total_ordering
@dataclass(frozen=True)
class MetricKey:
    """
    Identifies one monitored series.

    Equality and ordering are by field tuple; a service-level key has
    ``operation=None`` and sorts before the operation-level keys of the
    same service.
    """

    graph: GraphType
    service: str
    operation: Optional[str] = None
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "graph", GraphType(self.graph))
        object.__setattr__(self, "labels", tuple(sorted(tuple(item) for item in self.labels)))

    def _order(self) -> Tuple[Any, ...]:
        return (
            self.graph.value,
            self.service,
            self.operation is not None,
            self.operation or "",
            self.labels,
        )

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, MetricKey):
            return NotImplemented
        return self._order() < other._order()

    def prometheus_labels(self) -> Dict[str, str]:
        labels = dict(self.labels)
        labels[SERVICE_LABEL] = self.service
        if self.operation is not None:
            labels[OPERATION_LABEL] = self.operation
        return labels

    def to_dict(self) -> Dict[str, Any]:
        return {
            "graph": self.graph.value,
            "service": self.service,
            "operation": self.operation,
            "labels": [list(item) for item in self.labels],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MetricKey":
        return cls(
            graph=GraphType(data["graph"]),
            service=data["service"],
            operation=data.get("operation"),
            labels=tuple(tuple(item) for item in data.get("labels", ())),
        )


@dataclass(frozen=True)
class Sample:
    """One observation of a metric key at an epoch-seconds timestamp."""

    key: MetricKey
    timestamp: float
    value: float


class Span(BaseModel):
    """
    Canonical representation of a finished span.

    Attributes:
        trace_id: Trace identifier
        span_id: Span identifier
        service: Emitting service name
        operation: Operation (span) name
        start_time: Span start (UTC)
        duration_us: Span duration in microseconds
        error: True when the span is flagged as failed
        busy_ns: Time actively spent in the span, when instrumented
        tags: Remaining span tags
    """

    trace_id: str
    span_id: str
    service: str = Field(..., min_length=1)
    operation: str = Field(..., min_length=1)
    start_time: datetime
    duration_us: int = Field(..., ge=0)
    error: bool = False
    busy_ns: Optional[int] = Field(None, ge=0)
    tags: Dict[str, Any] = Field(default_factory=dict)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(microseconds=self.duration_us)

    @property
    def end_timestamp(self) -> float:
        return to_epoch_seconds(self.end_time)


def to_epoch_seconds(ts: Any) -> float:
    """Convert a datetime (naive values are taken as UTC) or number to epoch seconds."""
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.timestamp()
    return float(ts)
