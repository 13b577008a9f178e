"""
Span to metric-sample aggregation.

Turns finished spans into the samples recorded by the StateStore and
published as raw series:

- duration (microseconds) and busy (nanoseconds): one sample per span, at
  the span's end time
- call_rate (calls per second) and error_rate (failed / total): one sample
  per closed rate bin that saw at least one span, at the bin's end time

Every span contributes to a service-level key (no operation) and to an
operation-level key.

Design:
- Rate bins are left-open ``(start, end]`` and aligned to the epoch, like
  the StateStore's horizon bins
- A rate bin closes once the processed time passes its end; spans for a
  closed bin are counted as late and dropped
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from tracescore.data.schema import GraphType, MetricKey, Sample, Span

logger = logging.getLogger(__name__)


class AggregationError(Exception):
    """Raised when aggregation is misconfigured."""
    pass


def align_timestamp_to_window(ts: float, window_size_seconds: float) -> float:
    """
    End of the left-open window ``(end - w, end]`` containing ``ts``.

    Example with a 30s window:
    - 10:00:12 -> 10:00:30
    - 10:00:30 -> 10:00:30 (already aligned)
    """
    return math.ceil(ts / window_size_seconds) * window_size_seconds


def span_keys(span: Span, graph: GraphType) -> Tuple[MetricKey, MetricKey]:
    """Service-level and operation-level keys a span contributes to."""
    return (
        MetricKey(graph=graph, service=span.service),
        MetricKey(graph=graph, service=span.service, operation=span.operation),
    )


@dataclass
class _RateBin:
    calls: int = 0
    errors: int = 0


class SpanAggregator:
    """
    Stateful span -> sample converter used by the ingestion worker.

    Args:
        rate_bin_width: Width of the call/error rate bins in seconds
    """

    def __init__(self, rate_bin_width: float = 30.0):
        if rate_bin_width <= 0:
            raise AggregationError("Rate bin width must be positive")
        self.rate_bin_width = float(rate_bin_width)
        self._bins: Dict[Tuple[Tuple[str, Optional[str]], float], _RateBin] = {}
        self._closed_until: Optional[float] = None
        self.late_spans = 0

    def span_samples(self, span: Span) -> List[Sample]:
        """Duration and busy samples of one span."""
        ts = span.end_timestamp
        samples = [Sample(key, ts, float(span.duration_us)) for key in span_keys(span, GraphType.DURATION)]
        if span.busy_ns is not None:
            samples.extend(Sample(key, ts, float(span.busy_ns)) for key in span_keys(span, GraphType.BUSY))
        return samples

    def add(self, span: Span) -> List[Sample]:
        """Account one span; returns its per-span samples."""
        end = align_timestamp_to_window(span.end_timestamp, self.rate_bin_width)
        if self._closed_until is not None and end <= self._closed_until:
            self.late_spans += 1
            logger.warning(
                f"Late span {span.span_id} ({span.service}/{span.operation}) for a closed rate bin; dropped"
            )
        else:
            for target in ((span.service, None), (span.service, span.operation)):
                rate_bin = self._bins.setdefault((target, end), _RateBin())
                rate_bin.calls += 1
                rate_bin.errors += int(span.error)
        return self.span_samples(span)

    def close(self, until: float) -> List[Sample]:
        """
        Close every rate bin ending at or before ``until``.

        Returns call_rate and error_rate samples for the closed bins.
        """
        closed_until = math.floor(until / self.rate_bin_width) * self.rate_bin_width
        if self._closed_until is not None and closed_until <= self._closed_until:
            return []

        samples: List[Sample] = []
        due = [k for k in self._bins if k[1] <= closed_until]
        due.sort(key=lambda k: (k[1], k[0][0], k[0][1] is not None, k[0][1] or ""))
        for (target, end) in due:
            rate_bin = self._bins.pop((target, end))
            service, operation = target
            samples.append(
                Sample(
                    MetricKey(graph=GraphType.CALL_RATE, service=service, operation=operation),
                    end,
                    rate_bin.calls / self.rate_bin_width,
                )
            )
            samples.append(
                Sample(
                    MetricKey(graph=GraphType.ERROR_RATE, service=service, operation=operation),
                    end,
                    rate_bin.errors / rate_bin.calls,
                )
            )
        self._closed_until = closed_until
        return samples

    def process(self, spans: Iterable[Span], until: float) -> List[Sample]:
        """Add a batch of spans, close bins up to ``until``; samples ordered by time."""
        samples: List[Sample] = []
        for span in spans:
            samples.extend(self.add(span))
        samples.extend(self.close(until))
        samples.sort(key=lambda s: (s.timestamp, s.key))
        return samples
