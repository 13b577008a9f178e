"""
Daemon wiring: the active monitor config and the background ingestion loop.

ConfigHolder owns the one active MonitorConfig. The HTTP handlers replace it,
the ingestion worker reads it once per batch, and a replacement that fails
validation leaves the previous config in effect.

IngestionWorker polls the span source on a fixed cadence, a configurable
delay behind the wall clock so late-finishing spans are still picked up.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from tracescore.anomaly.engine import StateStore
from tracescore.anomaly.snapshot import read_snapshot, write_snapshot
from tracescore.core.config import MonitorConfig
from tracescore.core.exceptions import ConfigValidationError, SpanIngestionError
from tracescore.core.validator import DEFAULT_LABEL_SCHEMA, ConfigValidator, LabelSchema, violations_from_pydantic
from tracescore.data.aggregation import SpanAggregator
from tracescore.data.ingestion import SpanSource
from tracescore.metrics import InMemorySeriesSink, SamplePublisher

logger = logging.getLogger(__name__)


def align_down(timestamp: float, alignment: float) -> float:
    """Largest multiple of ``alignment`` not after ``timestamp``."""
    return math.floor(timestamp / alignment) * alignment


class ConfigHolder:
    """
    Atomically replaced reference to an immutable MonitorConfig.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        schema: LabelSchema = DEFAULT_LABEL_SCHEMA,
        validator: Optional[ConfigValidator] = None,
    ):
        self.schema = schema
        self.validator = validator or ConfigValidator()
        config = config or MonitorConfig()
        self.validator.validate(config, schema)
        self._config = config
        self._lock = threading.Lock()

    def get(self) -> MonitorConfig:
        return self._config

    def replace(self, config: MonitorConfig) -> MonitorConfig:
        """
        Validate and activate ``config``.

        Raises:
            ConfigValidationError: Listing every violation; the previous
                config stays active
        """
        self.validator.validate(config, self.schema)
        with self._lock:
            previous = self._config
            self._config = config
        logger.info("Monitor config replaced")
        return previous

    def replace_from_dict(self, data: Mapping[str, Any]) -> MonitorConfig:
        """Parse, validate and activate a config given as plain data."""
        try:
            config = MonitorConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigValidationError(violations_from_pydantic(e)) from e
        self.replace(config)
        return config


@dataclass
class BatchStats:
    start: float
    end: float
    spans: int = 0
    samples: int = 0
    recorded: int = 0
    dropped: int = 0
    published: int = 0


class IngestionWorker:
    """
    Background ingestion loop.

    Each batch:
    1. reads the active config once and applies it to the store
    2. fetches spans that ended in ``(last_end, end]``, where ``end`` is
       ``now - query_delay`` rounded down to the config's batch alignment
    3. aggregates them into samples and records the monitored ones
    4. advances every horizon, then publishes the cumulative series and the
       computed statistics and scores as of the batch end
    5. writes a snapshot when one is due
    """

    def __init__(
        self,
        source: SpanSource,
        store: StateStore,
        holder: ConfigHolder,
        publisher: SamplePublisher,
        query_interval: float = 30.0,
        query_delay: float = 30.0,
        snapshot_path: Optional[Path] = None,
        snapshot_interval: float = 300.0,
        series_retention: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.source = source
        self.store = store
        self.holder = holder
        self.publisher = publisher
        self.query_interval = query_interval
        self.query_delay = query_delay
        self.snapshot_path = Path(snapshot_path) if snapshot_path is not None else None
        self.snapshot_interval = snapshot_interval
        self.series_retention = series_retention
        self.clock = clock

        self._aggregator: Optional[SpanAggregator] = None
        self._processed_until: Optional[float] = None
        self._last_snapshot: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def restore(self) -> int:
        """
        Load the durable snapshot, if any.

        Raises:
            SnapshotDecodeError: If a snapshot exists but is corrupt or of an
                unknown version; starting empty would hide the gap
        """
        if self.snapshot_path is None:
            return 0
        entries = read_snapshot(self.snapshot_path)
        if entries is None:
            return 0
        self.store.restore(entries)
        return len(entries)

    def save_snapshot(self) -> None:
        if self.snapshot_path is None:
            return
        write_snapshot(self.snapshot_path, self.store.snapshot())

    def _aggregator_for(self, config: MonitorConfig) -> SpanAggregator:
        width = config.rate_bin_width.total_seconds()
        if self._aggregator is None or self._aggregator.rate_bin_width != width:
            if self._aggregator is not None:
                logger.info(f"Rate bin width changed to {width}s; open rate bins discarded")
            self._aggregator = SpanAggregator(rate_bin_width=width)
        return self._aggregator

    def run_once(self, now: Optional[float] = None) -> BatchStats:
        """Process one batch ending ``query_delay`` seconds before ``now``."""
        now = self.clock() if now is None else now
        config = self.holder.get()
        end = align_down(now - self.query_delay, config.batch_alignment())
        start = self._processed_until if self._processed_until is not None else end - self.query_interval
        stats = BatchStats(start=start, end=end)
        if end <= start:
            return stats

        if self.store.config is not config:
            self.store.apply_config(config)

        spans = self.source.fetch(start, end)
        samples = self._aggregator_for(config).process(spans, end)
        monitored = [s for s in samples if config.monitors(s.key)]
        for sample in monitored:
            if self.store.record(sample.key, sample.timestamp, sample.value):
                stats.recorded += 1
            else:
                stats.dropped += 1
        self.store.advance(end)

        published = self.publisher.raw_samples(monitored, config)
        published.extend(self.publisher.tick_samples(end))
        published.extend(self.publisher.computed_samples(self.store, end))
        self.publisher.publish(published)

        if self.series_retention is not None and isinstance(self.publisher.sink, InMemorySeriesSink):
            self.publisher.sink.prune(end - self.series_retention)

        self._processed_until = end
        stats.spans = len(spans)
        stats.samples = len(samples)
        stats.published = len(published)
        logger.info(
            f"Batch ({start:.0f}, {end:.0f}]: {stats.spans} spans, {stats.recorded} samples recorded, "
            f"{stats.dropped} dropped, {stats.published} published"
        )

        if self.snapshot_path is not None:
            if self._last_snapshot is None:
                self._last_snapshot = now
            elif now - self._last_snapshot >= self.snapshot_interval:
                self.save_snapshot()
                self._last_snapshot = now
        return stats

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except SpanIngestionError as e:
                logger.error(f"Span source failed; retrying next interval: {e}")
            except Exception:
                logger.exception("Ingestion batch failed; retrying next interval")
            self._stop.wait(self.query_interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="ingestion-worker", daemon=True)
        self._thread.start()
        logger.info("Ingestion worker started")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.save_snapshot()
        logger.info("Ingestion worker stopped")
