"""
Application configuration for the trace anomaly-score engine.

Two layers live here:

- Settings: process-level settings with environment overrides (log level,
  snapshot location, polling cadence, bind address).
- MonitorConfig: the runtime monitor configuration (which series are
  scored, horizon geometry, quantile target, scoring coefficients). It is
  immutable and replaced as a whole, never edited in place.

All scoring coefficients are configurable to avoid hard-coded "magic numbers".
"""

from __future__ import annotations

import json
import math
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tracescore.core.durations import Duration
from tracescore.data.schema import GraphType, LabelMatcher, MetricKey

# Prometheus' default instant-query lookback
SERIES_LOOKBACK_SECONDS = 300.0


class HorizonConfig(BaseModel):
	"""
	Geometry of one horizon.

	Notes:
	- window: length of time aggregated into the horizon's statistics.
	- bin_width: rotation granularity; the window slides by whole bins.
	- retention: how far back the evaluated window may slide (reference
	  horizon only); defaults to the window itself.
	"""

	model_config = ConfigDict(frozen=True)

	window: Duration
	bin_width: Duration
	retention: Optional[Duration] = None

	@property
	def window_seconds(self) -> float:
		return self.window.total_seconds()

	@property
	def bin_seconds(self) -> float:
		return self.bin_width.total_seconds()

	@property
	def num_bins(self) -> int:
		return max(1, round(self.window / self.bin_width))

	@property
	def retained_bins(self) -> int:
		if self.retention is None:
			return self.num_bins
		return max(self.num_bins, round(self.retention / self.bin_width))


class GraphHorizons(BaseModel):
	"""
	Immediate and reference horizons for one graph type.

	Rationale:
	- 5m immediate in 30s bins reacts within a minute of a regression.
	- 7d reference in 15m bins covers a full weekly traffic cycle.
	"""

	model_config = ConfigDict(frozen=True)

	immediate: HorizonConfig = HorizonConfig(window="5m", bin_width="30s")
	reference: HorizonConfig = HorizonConfig(window="7d", bin_width="15m")


class Representative(str, Enum):
	"""Statistic taken from the immediate horizon."""

	MEAN = "mean"
	QUANTILE = "quantile"
	CI_LOWER = "ci_lower"


class Ceiling(str, Enum):
	"""How the reference horizon's normal ceiling is derived."""

	STDDEV = "stddev"
	QUANTILE = "quantile"
	CI_UPPER = "ci_upper"


class Distribution(str, Enum):
	"""Sampling distribution of the mean behind the confidence bounds."""

	NORMAL = "normal"
	STUDENTS_T = "students_t"


class ScoringConfig(BaseModel):
	"""
	Anomaly score calibration.

	Notes:
	- representative: immediate statistic (mean, sketch quantile, or the
	  lower confidence bound of the mean).
	- ceiling: reference "normal ceiling" (mean + stddev_factor * stddev,
	  sketch quantile, or the upper confidence bound of the mean).
	- offset: added to the ceiling before dividing.
	- ceiling_floor: lower bound for the ceiling to avoid division by tiny values.
	- ddof: variance divisor correction (0 = population, 1 = sample).
	- distribution: normal quantile, or Student's t with count - 1 degrees
	  of freedom, for the confidence bound multiplier.
	"""

	model_config = ConfigDict(frozen=True)

	representative: Representative = Representative.MEAN
	ceiling: Ceiling = Ceiling.STDDEV
	stddev_factor: float = Field(3.0, description="Standard deviations above the reference mean")
	offset: float = Field(0.0, description="Constant added to the ceiling")
	ceiling_floor: float = Field(1e-9, description="Smallest ceiling used as a divisor")
	ddof: int = Field(0, description="Delta degrees of freedom for the variance divisor")
	distribution: Distribution = Field(Distribution.NORMAL, description="Confidence bound distribution")


def _exponential_buckets(start: float, factor: float, count: int) -> Tuple[float, ...]:
	return tuple(start * factor**i for i in range(count))


DEFAULT_BUCKETS: Dict[GraphType, Tuple[float, ...]] = {
	# microseconds: 100us .. ~105s
	GraphType.DURATION: _exponential_buckets(100.0, 2.0, 21),
	# nanoseconds: 100us .. ~105s
	GraphType.BUSY: _exponential_buckets(100_000.0, 2.0, 21),
}


class MetricSelector(BaseModel):
	"""A monitored graph type restricted by Prometheus-style label matchers."""

	model_config = ConfigDict(frozen=True)

	graph: GraphType
	matchers: Tuple[LabelMatcher, ...] = ()

	def matches(self, key: MetricKey) -> bool:
		if key.graph != self.graph:
			return False
		labels = key.prometheus_labels()
		return all(m.matches(labels) for m in self.matchers)


class MonitorConfig(BaseModel):
	"""
	Runtime monitor configuration.

	Owned by the daemon and swapped atomically; an ingestion batch observes
	exactly one MonitorConfig from start to finish.
	"""

	model_config = ConfigDict(frozen=True)

	metrics: Tuple[MetricSelector, ...] = Field(
		default_factory=lambda: tuple(MetricSelector(graph=g) for g in GraphType)
	)
	horizons: Dict[GraphType, GraphHorizons] = Field(
		default_factory=lambda: {g: GraphHorizons() for g in GraphType}
	)
	quantile: float = Field(0.99, description="Quantile target for duration-like metrics")
	scoring: Dict[GraphType, ScoringConfig] = Field(
		default_factory=lambda: {g: ScoringConfig() for g in GraphType}
	)
	histogram_buckets: Dict[GraphType, Tuple[float, ...]] = Field(
		default_factory=lambda: dict(DEFAULT_BUCKETS)
	)
	sketch_compression: int = Field(100, description="t-digest compression parameter")
	rate_bin_width: Duration = Field(timedelta(seconds=30), description="Bin width for call and error rates")

	def horizons_for(self, graph: GraphType) -> GraphHorizons:
		return self.horizons.get(graph) or GraphHorizons()

	def scoring_for(self, graph: GraphType) -> ScoringConfig:
		return self.scoring.get(graph) or ScoringConfig()

	def buckets_for(self, graph: GraphType) -> Tuple[float, ...]:
		if not graph.is_duration_like:
			return ()
		return self.histogram_buckets.get(graph) or DEFAULT_BUCKETS[graph]

	def monitors(self, key: MetricKey) -> bool:
		return any(selector.matches(key) for selector in self.metrics)

	def batch_alignment(self) -> float:
		"""
		Seconds every ingestion batch end is a multiple of.

		The least common multiple of the immediate bin widths and the rate bin
		width, so a batch only ever closes whole bins.
		"""
		widths = [self.horizons_for(g).immediate.bin_width for g in GraphType]
		widths.append(self.rate_bin_width)
		millis = [max(1, round(w / timedelta(milliseconds=1))) for w in widths]
		return math.lcm(*millis) / 1000.0


def load_monitor_config(path: Union[str, Path]) -> MonitorConfig:
	"""
	Load a MonitorConfig from a JSON or YAML file.

	The file is only parsed here; callers validate it against the label
	schema before activating it.
	"""
	path = Path(path)
	text = path.read_text(encoding="utf-8")
	if path.suffix.lower() in {".yaml", ".yml"}:
		data = yaml.safe_load(text) or {}
	else:
		data = json.loads(text)
	return MonitorConfig.model_validate(data)


class Settings(BaseSettings):
	"""
	Process settings with environment overrides (``TRACESCORE_*``).
	"""

	model_config = SettingsConfigDict(
		env_prefix="TRACESCORE_", env_file=".env", env_nested_delimiter="__", extra="ignore"
	)

	log_level: str = Field("INFO", description="Default logging level")
	logs_dir: Path = Field(Path("logs"), description="Directory for log files")
	log_max_bytes: int = Field(10 * 1024 * 1024, ge=0, description="Rotate log files at this size (0 disables rotation)")
	log_backup_count: int = Field(5, ge=0, description="Rotated log files kept")

	host: str = Field("0.0.0.0", description="HTTP bind address")
	port: int = Field(8080, description="HTTP bind port")

	trace_file: Optional[Path] = Field(None, description="Jaeger JSON/NDJSON span export to poll")
	monitor_config_file: Optional[Path] = Field(None, description="Initial monitor config (JSON/YAML)")

	snapshot_path: Optional[Path] = Field(Path("state/snapshot.json"), description="Durable state snapshot")
	snapshot_interval: float = Field(300.0, gt=0.0, description="Seconds between snapshots")

	query_interval: float = Field(30.0, gt=0.0, description="Seconds between span source polls")
	query_delay: float = Field(30.0, ge=0.0, description="Processing delay behind wall clock")

	shard_count: int = Field(16, ge=1, description="Lock shards in the state store")
	max_batch_size: int = Field(500, ge=1, description="Samples per published batch")
	series_retention: Duration = Field(timedelta(days=8), description="History kept by the in-memory series store")

	monitor: MonitorConfig = MonitorConfig()

	@model_validator(mode="after")
	def _check_cadence(self) -> "Settings":
		# cumulative series are re-published once per batch and must stay
		# visible to instant queries in between
		gap = self.query_interval + self.monitor.batch_alignment()
		if gap >= SERIES_LOOKBACK_SECONDS:
			raise ValueError(
				f"query_interval plus batch alignment ({gap:g}s) must stay below the "
				f"{SERIES_LOOKBACK_SECONDS:g}s query lookback"
			)
		return self

	def model_post_init(self, __context: object) -> None:
		self.logs_dir.mkdir(parents=True, exist_ok=True)


settings = Settings()
