"""
Anomaly module: streaming statistics and anomaly scoring.

Implements Welford accumulators, t-digest sketches, rotating horizon state,
the sharded state store with its snapshot codec, and the anomaly scorer.
"""

from .baselines import IntervalState, RunningStats
from .engine import HorizonState, KeyState, StateStore, bin_index
from .schema import AnomalyScore, BaselineStats, Horizon
from .scoring import AnomalyScorer
from .sketch import Centroid, QuantileSketch
from .snapshot import decode_snapshot, encode_snapshot, read_snapshot, write_snapshot

__all__ = [
	"AnomalyScore",
	"AnomalyScorer",
	"BaselineStats",
	"Centroid",
	"Horizon",
	"HorizonState",
	"IntervalState",
	"KeyState",
	"QuantileSketch",
	"RunningStats",
	"StateStore",
	"bin_index",
	"decode_snapshot",
	"encode_snapshot",
	"read_snapshot",
	"write_snapshot",
]
