"""
Streaming anomaly engine state.

The StateStore maps every MetricKey to one HorizonState per horizon. A
HorizonState is a ring of bins (one IntervalState each) keyed by bin index;
bin ``i`` covers the half-open interval ``(i * w, (i + 1) * w]`` in epoch
seconds, which matches the left-open range selection of PromQL. A horizon's
statistics are the merge of the bins inside its window, so the window
slides by whole bins and ages out without per-sample expiry.

Concurrency:
- Keys are partitioned over lock shards by hash; updates to one key are
  serialized, different shards never contend.
- snapshot() copies one shard at a time, so ingestion is stalled for at
  most the time needed to copy a single shard.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from tracescore.core.config import HorizonConfig, MonitorConfig
from tracescore.data.schema import MetricKey, to_epoch_seconds

from .baselines import IntervalState
from .schema import AnomalyScore, Horizon
from .scoring import AnomalyScorer

logger = logging.getLogger(__name__)


def bin_index(timestamp: float, bin_seconds: float) -> int:
    """Index of the bin ``(i * w, (i + 1) * w]`` containing ``timestamp``."""
    return math.ceil(timestamp / bin_seconds) - 1


@dataclass
class HorizonState:
    """
    Rotating bins for one metric key over one horizon.

    Notes:
    - head is the newest bin index seen; bins older than the retention
      are pruned as the head advances.
    - Samples older than the retained span are dropped and counted.
    """

    config: HorizonConfig
    with_sketch: bool = False
    compression: float = 100.0
    bins: Dict[int, IntervalState] = field(default_factory=dict)
    head: Optional[int] = None
    dropped: int = 0

    def compatible_with(self, config: HorizonConfig) -> bool:
        return self.config.bin_width == config.bin_width

    def record(self, timestamp: float, value: float) -> bool:
        idx = bin_index(timestamp, self.config.bin_seconds)
        if self.head is None or idx > self.head:
            self.head = idx
            self._prune()
        elif idx <= self.head - self.config.retained_bins:
            self.dropped += 1
            return False

        state = self.bins.get(idx)
        if state is None:
            state = IntervalState.create(self.with_sketch, self.compression)
            self.bins[idx] = state
        state.record(value)
        return True

    def advance(self, timestamp: float) -> None:
        idx = bin_index(timestamp, self.config.bin_seconds)
        if self.head is None or idx > self.head:
            self.head = idx
            self._prune()

    def interval(self, end: Optional[float] = None) -> IntervalState:
        """Merged state of the window ending at ``end`` (default: the newest bin)."""
        result = IntervalState.create(self.with_sketch, self.compression)
        if end is None:
            if self.head is None:
                return result
            last = self.head
        else:
            last = bin_index(end, self.config.bin_seconds)
        first = last - self.config.num_bins + 1

        for idx in sorted(self.bins):
            if first <= idx <= last:
                result = result.merge(self.bins[idx])
        return result

    @property
    def is_empty(self) -> bool:
        return all(state.is_empty for state in self.bins.values())

    def copy(self) -> "HorizonState":
        return HorizonState(
            config=self.config,
            with_sketch=self.with_sketch,
            compression=self.compression,
            bins={idx: state.copy() for idx, state in self.bins.items()},
            head=self.head,
            dropped=self.dropped,
        )

    def _prune(self) -> None:
        cutoff = self.head - self.config.retained_bins
        for idx in [i for i in self.bins if i <= cutoff]:
            del self.bins[idx]


@dataclass
class KeyState:
    immediate: HorizonState
    reference: HorizonState

    def horizon(self, horizon: Horizon) -> HorizonState:
        return self.immediate if horizon == Horizon.IMMEDIATE else self.reference

    def copy(self) -> "KeyState":
        return KeyState(immediate=self.immediate.copy(), reference=self.reference.copy())


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: Dict[MetricKey, KeyState] = field(default_factory=dict)


class StateStore:
    """
    Sharded map from MetricKey to per-horizon state.

    The store is passed explicitly to the ingestion worker and the HTTP
    handlers; record() and evaluate() are safe to call from any thread.

    The active MonitorConfig is swapped with apply_config() at ingestion
    batch boundaries; record() and evaluate() read that single reference.
    """

    def __init__(self, config: Optional[MonitorConfig] = None, shard_count: int = 16):
        if shard_count < 1:
            raise ValueError("shard_count must be >= 1")
        self._config = config or MonitorConfig()
        self._shards: List[_Shard] = [_Shard() for _ in range(shard_count)]

    @property
    def config(self) -> MonitorConfig:
        return self._config

    def _shard(self, key: MetricKey) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def _new_key_state(self, key: MetricKey, config: MonitorConfig) -> KeyState:
        horizons = config.horizons_for(key.graph)
        with_sketch = key.graph.is_duration_like
        compression = float(config.sketch_compression)
        return KeyState(
            immediate=HorizonState(horizons.immediate, with_sketch, compression),
            reference=HorizonState(horizons.reference, with_sketch, compression),
        )

    def record(self, key: MetricKey, timestamp: object, value: float) -> bool:
        """
        Record one sample for ``key`` in both horizons.

        Returns False when the sample is too old for both horizons.
        """
        config = self._config
        ts = to_epoch_seconds(timestamp)
        shard = self._shard(key)
        with shard.lock:
            state = shard.entries.get(key)
            if state is None:
                state = self._new_key_state(key, config)
                shard.entries[key] = state
                logger.debug("Created state for %s", key)
            accepted_immediate = state.immediate.record(ts, value)
            accepted_reference = state.reference.record(ts, value)
        return accepted_immediate or accepted_reference

    def advance(self, timestamp: object) -> None:
        """Move every horizon forward to ``timestamp`` so idle windows age out."""
        ts = to_epoch_seconds(timestamp)
        for shard in self._shards:
            with shard.lock:
                for state in shard.entries.values():
                    state.immediate.advance(ts)
                    state.reference.advance(ts)

    def interval(
        self, key: MetricKey, horizon: Horizon, at: Optional[object] = None
    ) -> IntervalState:
        end = to_epoch_seconds(at) if at is not None else None
        shard = self._shard(key)
        with shard.lock:
            state = shard.entries.get(key)
            if state is None:
                return IntervalState.create(key.graph.is_duration_like)
            return state.horizon(horizon).interval(end)

    def intervals(self, key: MetricKey, at: Optional[object] = None) -> Tuple[IntervalState, IntervalState]:
        """Immediate and reference state of ``key``, read under a single lock acquisition."""
        end = to_epoch_seconds(at) if at is not None else None
        shard = self._shard(key)
        with shard.lock:
            state = shard.entries.get(key)
            if state is None:
                empty = IntervalState.create(key.graph.is_duration_like)
                return empty, empty.copy()
            return state.immediate.interval(end), state.reference.interval(end)

    def evaluate(self, key: MetricKey, at: Optional[object] = None) -> AnomalyScore:
        """Score ``key`` with the windows ending at ``at`` (default: newest bins)."""
        config = self._config
        immediate, reference = self.intervals(key, at)
        scorer = AnomalyScorer(config.scoring_for(key.graph))
        return scorer.evaluate(immediate, reference, quantile=config.quantile)

    def keys(self) -> List[MetricKey]:
        keys: List[MetricKey] = []
        for shard in self._shards:
            with shard.lock:
                keys.extend(shard.entries)
        return sorted(keys)

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, MetricKey):
            return False
        shard = self._shard(key)
        with shard.lock:
            return key in shard.entries

    def apply_config(self, config: MonitorConfig) -> None:
        """
        Activate a new config.

        Horizons whose bin width changed are reset; other horizons keep
        their bins and pick up the new window and retention. State of keys
        no longer monitored is retained until restart.
        """
        reset = 0
        for shard in self._shards:
            with shard.lock:
                for key, state in shard.entries.items():
                    horizons = config.horizons_for(key.graph)
                    fresh = self._new_key_state(key, config)
                    if state.immediate.compatible_with(horizons.immediate):
                        state.immediate.config = horizons.immediate
                    else:
                        state.immediate = fresh.immediate
                        reset += 1
                    if state.reference.compatible_with(horizons.reference):
                        state.reference.config = horizons.reference
                    else:
                        state.reference = fresh.reference
                        reset += 1
        self._config = config
        if reset:
            logger.info("Config applied; reset %d horizon(s) with a changed bin width", reset)

    def snapshot(self) -> Dict[MetricKey, KeyState]:
        """Point-in-time copy, taken one shard at a time."""
        entries: Dict[MetricKey, KeyState] = {}
        for shard in self._shards:
            with shard.lock:
                for key, state in shard.entries.items():
                    entries[key] = state.copy()
        return entries

    @classmethod
    def from_snapshot(
        cls, entries: Dict[MetricKey, KeyState], config: Optional[MonitorConfig] = None, shard_count: int = 16
    ) -> "StateStore":
        store = cls(config, shard_count=shard_count)
        store.restore(entries)
        return store

    def restore(self, entries: Dict[MetricKey, KeyState]) -> None:
        """Replace the store's contents with decoded snapshot entries."""
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()
        for key, state in entries.items():
            shard = self._shard(key)
            with shard.lock:
                shard.entries[key] = state.copy()
        logger.info("Restored state for %d metric key(s)", len(entries))
        self.apply_config(self._config)
