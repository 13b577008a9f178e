"""
Publishing of raw and computed series.

The SamplePublisher turns engine inputs and outputs into named, labelled
samples and hands them to a MetricSink in batches:

- the cumulative Welford state of every key, ``trace_<graph>_welford_{count,mean,m2}``,
  at each distinct sample timestamp and on every tick
- for duration-like graphs, the cumulative histogram counters
  ``trace_<graph>_bucket{le=...}`` alongside it
- on every tick, per key and horizon: count, mean, stddev and (duration-like)
  the sketch quantile; plus the anomaly score when it is defined

The cumulative series are what the generated PromQL reads; the computed
series are the streaming engine's own answer.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Tuple

from tracescore.anomaly.baselines import RunningStats
from tracescore.anomaly.engine import StateStore
from tracescore.anomaly.schema import Horizon
from tracescore.anomaly.scoring import AnomalyScorer
from tracescore.core.config import MonitorConfig
from tracescore.core.durations import format_duration
from tracescore.core.exceptions import UndefinedStatisticError
from tracescore.data.schema import MetricKey, Sample
from tracescore.exprs.evaluator import SeriesStore
from tracescore.exprs.naming import (
    BUCKET_LABEL,
    HORIZON_LABEL,
    IMMEDIATE_LABEL,
    QUANTILE_LABEL,
    REFERENCE_LABEL,
    bucket_metric,
    format_le,
    score_metric,
    stat_metric,
    welford_metric,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSample:
    name: str
    labels: Tuple[Tuple[str, str], ...]
    timestamp: float
    value: float


@dataclass
class MetricBatch:
    samples: List[MetricSample] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.samples)


class MetricSink(ABC):
    """Destination for published batches."""

    @abstractmethod
    def write(self, batch: MetricBatch) -> None:
        pass


class InMemorySeriesSink(MetricSink):
    """
    Keeps published series in a SeriesStore.

    Backs the graph endpoint and the equivalence tests.
    """

    def __init__(self, store: Optional[SeriesStore] = None):
        self.store = store or SeriesStore()

    def write(self, batch: MetricBatch) -> None:
        for sample in batch.samples:
            self.store.add(sample.name, dict(sample.labels), sample.timestamp, sample.value)

    def prune(self, before: float) -> int:
        removed = self.store.prune(before)
        if removed:
            logger.debug(f"Pruned {removed} samples older than {before}")
        return removed


class LoggingSink(MetricSink):
    """Logs batch sizes (and every sample at DEBUG)."""

    def write(self, batch: MetricBatch) -> None:
        logger.info(f"Publishing batch of {len(batch)} samples")
        if logger.isEnabledFor(logging.DEBUG):
            for s in batch.samples:
                logger.debug(f"{s.name}{dict(s.labels)} {s.value} @{s.timestamp}")


class _Cumulative:
    """Process-lifetime Welford state and bucket counters of one key."""

    def __init__(self, bounds: Tuple[float, ...]):
        self.stats = RunningStats()
        self.bounds = bounds
        self.buckets = [0] * (len(bounds) + 1) if bounds else []

    def record(self, value: float) -> None:
        self.stats.update(value)
        if not self.bounds:
            return
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.buckets[i] += 1
        self.buckets[-1] += 1


class SamplePublisher:
    """
    Converts samples and engine state into batches for a sink.

    Every key's cumulative Welford state (and, duration-like, its bucket
    counters) is published once per distinct sample timestamp, after all
    samples at that timestamp, and again on every tick. Two samples sharing
    a timestamp therefore never overwrite each other, and the latest point
    of every cumulative series stays inside the query lookback as long as
    ticks are closer together than the lookback.

    The state lives for the life of the process; a restart resets it.
    """

    def __init__(self, sink: MetricSink, max_batch_size: int = 500):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.sink = sink
        self.max_batch_size = max_batch_size
        self._lock = threading.Lock()
        self._cumulative: Dict[MetricKey, _Cumulative] = {}

    def raw_samples(self, samples: Iterable[Sample], config: MonitorConfig) -> List[MetricSample]:
        """Cumulative points for ``samples``, which must be newer than any published before."""
        out: List[MetricSample] = []
        ordered = sorted(samples, key=lambda s: s.timestamp)
        with self._lock:
            for timestamp, group in groupby(ordered, key=lambda s: s.timestamp):
                touched: Dict[MetricKey, _Cumulative] = {}
                for sample in group:
                    cumulative = self._cumulative_for(sample.key, config.buckets_for(sample.key.graph))
                    cumulative.record(sample.value)
                    touched[sample.key] = cumulative
                for key in sorted(touched):
                    out.extend(_cumulative_points(key, touched[key], timestamp))
        return out

    def tick_samples(self, at: float) -> List[MetricSample]:
        """The current cumulative points of every key seen so far, stamped ``at``."""
        out: List[MetricSample] = []
        with self._lock:
            for key in sorted(self._cumulative):
                out.extend(_cumulative_points(key, self._cumulative[key], at))
        return out

    def _cumulative_for(self, key: MetricKey, bounds: Tuple[float, ...]) -> _Cumulative:
        entry = self._cumulative.get(key)
        if entry is None:
            entry = _Cumulative(bounds)
            self._cumulative[key] = entry
        elif entry.bounds != bounds:
            logger.warning(f"Histogram bounds changed for {key}; bucket counters restart")
            entry.bounds = bounds
            entry.buckets = [0] * (len(bounds) + 1) if bounds else []
        return entry

    def computed_samples(self, store: StateStore, at: float) -> List[MetricSample]:
        """Streaming statistics and scores of every monitored key, ending at ``at``."""
        config = store.config
        out: List[MetricSample] = []
        for key in store.keys():
            if not config.monitors(key):
                continue
            labels = key.prometheus_labels()
            scoring = config.scoring_for(key.graph)
            horizons = config.horizons_for(key.graph)
            immediate, reference = store.intervals(key, at)
            for horizon, state in ((Horizon.IMMEDIATE, immediate), (Horizon.REFERENCE, reference)):
                if state.is_empty:
                    continue
                hl = {**labels, HORIZON_LABEL: horizon.value}
                stats = state.stats
                out.append(MetricSample(stat_metric(key.graph, "count"), _labels(hl), at, float(stats.count)))
                out.append(MetricSample(stat_metric(key.graph, "mean"), _labels(hl), at, stats.average()))
                try:
                    out.append(
                        MetricSample(stat_metric(key.graph, "stddev"), _labels(hl), at, stats.stddev(scoring.ddof))
                    )
                except UndefinedStatisticError:
                    pass
                if state.sketch is not None and not state.sketch.is_empty:
                    ql = {**hl, QUANTILE_LABEL: repr(config.quantile)}
                    out.append(
                        MetricSample(
                            stat_metric(key.graph, "quantile"), _labels(ql), at, state.sketch.quantile(config.quantile)
                        )
                    )

            score = AnomalyScorer(scoring).evaluate(immediate, reference, quantile=config.quantile)
            if score.defined:
                sl = {
                    **labels,
                    IMMEDIATE_LABEL: format_duration(horizons.immediate.window),
                    REFERENCE_LABEL: format_duration(horizons.reference.window),
                }
                out.append(MetricSample(score_metric(key.graph), _labels(sl), at, score.value))
        return out

    def publish(self, samples: List[MetricSample]) -> int:
        """Write ``samples`` in batches of at most ``max_batch_size``; returns batches written."""
        batches = 0
        for start in range(0, len(samples), self.max_batch_size):
            self.sink.write(MetricBatch(samples[start:start + self.max_batch_size]))
            batches += 1
        return batches


def _labels(labels: Dict[str, str]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted(labels.items()))


def _cumulative_points(key: MetricKey, cumulative: _Cumulative, timestamp: float) -> List[MetricSample]:
    labels = key.prometheus_labels()
    plain = _labels(labels)
    stats = cumulative.stats
    out = [
        MetricSample(welford_metric(key.graph, "count"), plain, timestamp, float(stats.count)),
        MetricSample(welford_metric(key.graph, "mean"), plain, timestamp, stats.mean),
        MetricSample(welford_metric(key.graph, "m2"), plain, timestamp, stats.sum_sq_diff),
    ]
    if cumulative.bounds:
        for bound, count in zip(cumulative.bounds + (float("inf"),), cumulative.buckets):
            out.append(
                MetricSample(
                    bucket_metric(key.graph),
                    _labels({**labels, BUCKET_LABEL: format_le(bound)}),
                    timestamp,
                    float(count),
                )
            )
    return out
