"""
Unit tests for the config holder and the ingestion worker.
"""

import time
from datetime import timedelta

import pytest
from pydantic import ValidationError

from tracescore.anomaly.engine import StateStore
from tracescore.anomaly.schema import Horizon
from tracescore.core.config import GraphHorizons, HorizonConfig, MetricSelector, MonitorConfig, Settings
from tracescore.core.exceptions import ConfigValidationError, SnapshotDecodeError, SpanIngestionError
from tracescore.daemon import ConfigHolder, IngestionWorker, align_down
from tracescore.data.ingestion import SpanSource, StaticSpanSource
from tracescore.data.schema import GraphType, LabelMatcher, MetricKey
from tracescore.metrics import InMemorySeriesSink, SamplePublisher

T0 = 1_699_999_200.0


def _unknown_label_config():
    selector = MetricSelector(graph=GraphType.DURATION, matchers=(LabelMatcher(name="cluster", value="eu"),))
    return MonitorConfig(metrics=(selector,))


class TestConfigHolder:
    """Test atomic config replacement."""

    def test_initial_config_is_validated(self):
        with pytest.raises(ConfigValidationError):
            ConfigHolder(_unknown_label_config())

    def test_replace(self, small_config):
        holder = ConfigHolder()
        previous = holder.replace(small_config)

        assert previous == MonitorConfig()
        assert holder.get() is small_config

    def test_rejected_config_keeps_previous(self, small_config):
        holder = ConfigHolder(small_config)

        with pytest.raises(ConfigValidationError) as exc:
            holder.replace(_unknown_label_config())
        assert exc.value.violations[0].path == "metrics.0.matchers.0"
        assert holder.get() is small_config

    def test_replace_from_dict(self):
        holder = ConfigHolder()
        config = holder.replace_from_dict({"quantile": 0.95, "metrics": [{"graph": "duration"}]})

        assert holder.get() is config
        assert config.quantile == 0.95

    def test_replace_from_dict_parse_error(self):
        holder = ConfigHolder()
        before = holder.get()

        with pytest.raises(ConfigValidationError) as exc:
            holder.replace_from_dict({"quantile": "high", "sketch_compression": 1})
        assert [v.path for v in exc.value.violations] == ["quantile"]
        assert holder.get() is before


def _worker(spans, config, **kwargs):
    store = StateStore(config, shard_count=4)
    holder = ConfigHolder(config)
    publisher = SamplePublisher(InMemorySeriesSink())
    kwargs.setdefault("query_interval", 200.0)
    kwargs.setdefault("query_delay", 0.0)
    return IngestionWorker(StaticSpanSource(spans), store, holder, publisher, **kwargs)


class TestIngestionWorker:
    """Test batch processing end to end through the worker."""

    def test_run_once_records_and_publishes(self, sample_spans, small_config):
        worker = _worker(sample_spans, small_config)
        stats = worker.run_once(now=T0 + 120)

        assert (stats.start, stats.end) == (T0 - 80, T0 + 120)
        assert stats.spans == 20
        # 40 duration, 20 busy and 4 closed rate bins x 4 targets x 2 graphs
        assert stats.samples == 92
        assert stats.recorded == 92
        assert stats.dropped == 0

        keys = worker.store.keys()
        assert MetricKey(graph=GraphType.BUSY, service="checkout") in keys
        assert MetricKey(graph=GraphType.BUSY, service="api") not in keys
        assert MetricKey(graph=GraphType.ERROR_RATE, service="api", operation="GET /users") in keys

        series = worker.publisher.sink.store
        assert series.label_sets("trace_duration_welford_count")
        assert series.label_sets("trace_duration_count")

    def test_batches_are_contiguous(self, sample_spans, small_config):
        worker = _worker(sample_spans, small_config)
        worker.run_once(now=T0 + 60)
        stats = worker.run_once(now=T0 + 120)

        assert stats.start == T0 + 60
        assert stats.spans == 8
        assert worker.run_once(now=T0 + 120).spans == 0

    def test_only_monitored_series_recorded(self, sample_spans, small_config):
        selector = MetricSelector(graph=GraphType.DURATION, matchers=(LabelMatcher(name="service_name", value="api"),))
        config = small_config.model_copy(update={"metrics": (selector,)})
        worker = _worker(sample_spans, config)
        worker.run_once(now=T0 + 120)

        assert worker.store.keys() == [
            MetricKey(graph=GraphType.DURATION, service="api"),
            MetricKey(graph=GraphType.DURATION, service="api", operation="GET /users"),
        ]

    def test_config_applied_at_batch_boundary(self, sample_spans, small_config):
        worker = _worker(sample_spans, small_config)
        worker.run_once(now=T0 + 60)

        horizons = GraphHorizons(
            immediate=HorizonConfig(window="1m", bin_width="20s"),
            reference=HorizonConfig(window="10m", bin_width="1m"),
        )
        new_config = small_config.model_copy(update={"horizons": {g: horizons for g in GraphType}})
        worker.holder.replace(new_config)
        assert worker.store.config is small_config

        worker.run_once(now=T0 + 120)
        assert worker.store.config is new_config

    def test_snapshot_round_trip(self, sample_spans, small_config, tmp_path):
        path = tmp_path / "state" / "snapshot.json"
        worker = _worker(sample_spans, small_config, snapshot_path=path)
        worker.run_once(now=T0 + 120)
        worker.save_snapshot()

        restored = _worker([], small_config, snapshot_path=path)
        assert restored.restore() == len(worker.store)
        key = MetricKey(graph=GraphType.DURATION, service="api")
        assert restored.store.interval(key, Horizon.REFERENCE, T0 + 120).count == worker.store.interval(
            key, Horizon.REFERENCE, T0 + 120
        ).count

    def test_snapshot_written_when_due(self, sample_spans, small_config, tmp_path):
        path = tmp_path / "snapshot.json"
        worker = _worker(sample_spans, small_config, snapshot_path=path, snapshot_interval=60.0)

        worker.run_once(now=T0 + 60)
        assert not path.exists()
        worker.run_once(now=T0 + 120)
        assert path.exists()

    def test_missing_snapshot_is_cold_start(self, small_config, tmp_path):
        worker = _worker([], small_config, snapshot_path=tmp_path / "none.json")
        assert worker.restore() == 0

    def test_corrupt_snapshot_is_fatal(self, small_config, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text("{not a snapshot")
        worker = _worker([], small_config, snapshot_path=path)

        with pytest.raises(SnapshotDecodeError):
            worker.restore()

    def test_batch_end_is_bin_aligned(self, sample_spans, small_config):
        worker = _worker(sample_spans, small_config)
        stats = worker.run_once(now=T0 + 137)

        # 10s immediate bins and 30s rate bins
        assert stats.end == T0 + 120
        score = worker.publisher.sink.store.select("trace_duration_score", [], None, T0 + 200)
        assert {t for s in score for t, _ in s.points} == {T0 + 120}

    def test_idle_batches_republish_cumulative_state(self, sample_spans, small_config):
        worker = _worker(sample_spans, small_config)
        worker.run_once(now=T0 + 120)
        worker.run_once(now=T0 + 300)
        worker.run_once(now=T0 + 480)

        matchers = [LabelMatcher(name="service_name", value="api"), LabelMatcher(name="operation_name", value="")]
        series = worker.publisher.sink.store.select("trace_duration_welford_count", matchers, None, T0 + 480)
        points = dict(series[0].points)
        assert points[T0 + 300] == points[T0 + 480] == 10.0

    def test_series_retention_prunes_sink(self, sample_spans, small_config):
        worker = _worker(sample_spans, small_config, series_retention=30.0)
        worker.run_once(now=T0 + 120)

        points = worker.publisher.sink.store.select("trace_duration_welford_count", [], None, T0 + 120)
        assert min(t for s in points for t, _ in s.points) > T0 + 90


class FailingSource(SpanSource):
    def __init__(self):
        self.calls = 0

    def fetch(self, start, end):
        self.calls += 1
        raise SpanIngestionError("source unavailable")


def test_worker_loop_survives_source_errors(small_config):
    source = FailingSource()
    store = StateStore(small_config)
    worker = IngestionWorker(
        source,
        store,
        ConfigHolder(small_config),
        SamplePublisher(InMemorySeriesSink()),
        query_interval=0.01,
        query_delay=0.0,
    )

    worker.start()
    deadline = time.time() + 5
    while source.calls < 2 and time.time() < deadline:
        time.sleep(0.01)
    worker.stop(timeout=5)

    assert source.calls >= 2


class BrokenSource(SpanSource):
    """Raises an unexpected error on the first fetch only."""

    def __init__(self):
        self.calls = 0

    def fetch(self, start, end):
        self.calls += 1
        if self.calls == 1:
            raise ValueError("malformed span payload")
        return []


def test_worker_loop_survives_unexpected_errors(small_config, caplog):
    source = BrokenSource()
    worker = IngestionWorker(
        source,
        StateStore(small_config),
        ConfigHolder(small_config),
        SamplePublisher(InMemorySeriesSink()),
        query_interval=0.01,
        query_delay=0.0,
    )

    with caplog.at_level("ERROR", logger="tracescore.daemon"):
        worker.start()
        deadline = time.time() + 5
        while source.calls < 2 and time.time() < deadline:
            time.sleep(0.01)
        alive = worker._thread is not None and worker._thread.is_alive()
        worker.stop(timeout=5)

    assert source.calls >= 2
    assert alive
    assert any(r.exc_info and isinstance(r.exc_info[1], ValueError) for r in caplog.records)


class TestBatchAlignment:
    """Test batch end alignment and the polling cadence limit."""

    def test_alignment_covers_every_bin_width(self, small_config):
        assert small_config.batch_alignment() == 30.0
        assert small_config.model_copy(update={"rate_bin_width": timedelta(seconds=45)}).batch_alignment() == 90.0

    def test_align_down(self):
        assert align_down(T0 + 137, 30.0) == T0 + 120
        assert align_down(T0 + 120, 30.0) == T0 + 120

    def test_cadence_must_stay_within_lookback(self, tmp_path):
        assert Settings(query_interval=240.0, logs_dir=tmp_path).query_interval == 240.0
        with pytest.raises(ValidationError, match="lookback"):
            Settings(query_interval=270.0, logs_dir=tmp_path)
