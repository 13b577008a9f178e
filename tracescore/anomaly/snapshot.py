"""
Durable snapshot codec for the StateStore.

The snapshot is a versioned JSON document. Every float is stored as its
``float.hex()`` representation so counts, means and squared-difference sums
round-trip bit-identically. A corrupt or version-mismatched snapshot raises
SnapshotDecodeError; callers treat that as fatal at startup rather than
silently starting from empty state.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from tracescore.core.config import HorizonConfig
from tracescore.core.exceptions import SnapshotDecodeError
from tracescore.data.schema import MetricKey

from .baselines import IntervalState, RunningStats
from .engine import HorizonState, KeyState
from .sketch import QuantileSketch

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "tracescore-state"
SNAPSHOT_VERSION = 1


def _f(value: float) -> str:
    return float(value).hex()


def _unf(value: Any) -> float:
    if not isinstance(value, str):
        raise TypeError(f"expected hex float string, got {type(value).__name__}")
    return float.fromhex(value)


def _encode_interval(state: IntervalState) -> Dict[str, Any]:
    sketch = None
    if state.sketch is not None:
        raw = state.sketch.to_state()
        sketch = {
            "compression": _f(raw["compression"]),
            "centroids": [[_f(m), _f(w)] for m, w in raw["centroids"]],
            "buffer": [[_f(m), _f(w)] for m, w in raw["buffer"]],
            "total_weight": _f(raw["total_weight"]),
            "min": _f(raw["min"]),
            "max": _f(raw["max"]),
        }
    return {
        "stats": {
            "count": state.stats.count,
            "mean": _f(state.stats.mean),
            "sum_sq_diff": _f(state.stats.sum_sq_diff),
        },
        "sketch": sketch,
    }


def _decode_interval(data: Dict[str, Any]) -> IntervalState:
    stats = data["stats"]
    count = stats["count"]
    if not isinstance(count, int) or count < 0:
        raise ValueError(f"invalid count {count!r}")
    running = RunningStats(count=count, mean=_unf(stats["mean"]), sum_sq_diff=_unf(stats["sum_sq_diff"]))

    sketch = None
    raw = data.get("sketch")
    if raw is not None:
        sketch = QuantileSketch.from_state(
            {
                "compression": _unf(raw["compression"]),
                "centroids": [(_unf(m), _unf(w)) for m, w in raw["centroids"]],
                "buffer": [(_unf(m), _unf(w)) for m, w in raw["buffer"]],
                "total_weight": _unf(raw["total_weight"]),
                "min": _unf(raw["min"]),
                "max": _unf(raw["max"]),
            }
        )
    return IntervalState(stats=running, sketch=sketch)


def _encode_horizon(state: HorizonState) -> Dict[str, Any]:
    return {
        "config": state.config.model_dump(mode="json"),
        "with_sketch": state.with_sketch,
        "compression": _f(state.compression),
        "head": state.head,
        "dropped": state.dropped,
        "bins": [
            {"index": idx, **_encode_interval(state.bins[idx])} for idx in sorted(state.bins)
        ],
    }


def _decode_horizon(data: Dict[str, Any]) -> HorizonState:
    bins = {}
    for item in data["bins"]:
        idx = item["index"]
        if not isinstance(idx, int):
            raise ValueError(f"invalid bin index {idx!r}")
        bins[idx] = _decode_interval(item)
    head = data["head"]
    if head is not None and not isinstance(head, int):
        raise ValueError(f"invalid head {head!r}")
    return HorizonState(
        config=HorizonConfig.model_validate(data["config"]),
        with_sketch=bool(data["with_sketch"]),
        compression=_unf(data["compression"]),
        bins=bins,
        head=head,
        dropped=int(data["dropped"]),
    )


def encode_snapshot(entries: Dict[MetricKey, KeyState]) -> bytes:
    """Serialize a StateStore snapshot (as returned by StateStore.snapshot())."""
    document = {
        "format": SNAPSHOT_FORMAT,
        "version": SNAPSHOT_VERSION,
        "entries": [
            {
                "key": key.to_dict(),
                "immediate": _encode_horizon(entries[key].immediate),
                "reference": _encode_horizon(entries[key].reference),
            }
            for key in sorted(entries)
        ],
    }
    return json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")


def decode_snapshot(data: bytes) -> Dict[MetricKey, KeyState]:
    """
    Deserialize a snapshot.

    Raises:
        SnapshotDecodeError: If the document is corrupt or of another version
    """
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SnapshotDecodeError(f"snapshot is not valid JSON: {e}") from e

    if not isinstance(document, dict) or document.get("format") != SNAPSHOT_FORMAT:
        raise SnapshotDecodeError("not a state snapshot")
    version = document.get("version")
    if version != SNAPSHOT_VERSION:
        raise SnapshotDecodeError(
            f"unsupported snapshot version {version!r} (expected {SNAPSHOT_VERSION})"
        )

    entries: Dict[MetricKey, KeyState] = {}
    try:
        for item in document["entries"]:
            key = MetricKey.from_dict(item["key"])
            entries[key] = KeyState(
                immediate=_decode_horizon(item["immediate"]),
                reference=_decode_horizon(item["reference"]),
            )
    except (AttributeError, KeyError, TypeError, ValueError, ValidationError) as e:
        raise SnapshotDecodeError(f"corrupt snapshot entry: {e}") from e
    return entries


def write_snapshot(path: Union[str, Path], entries: Dict[MetricKey, KeyState]) -> None:
    """Atomically write a snapshot file (temp file + rename)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = encode_snapshot(entries)
    fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except OSError:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    logger.debug("Wrote snapshot with %d key(s) to %s", len(entries), path)


def read_snapshot(path: Union[str, Path]) -> Optional[Dict[MetricKey, KeyState]]:
    """
    Read a snapshot file.

    Returns None when the file does not exist (cold start). A file that
    exists but cannot be decoded raises SnapshotDecodeError.
    """
    path = Path(path)
    if not path.exists():
        logger.info("No snapshot at %s; starting with empty state", path)
        return None
    try:
        data = path.read_bytes()
    except OSError as e:
        raise SnapshotDecodeError(f"cannot read snapshot {path}: {e}") from e
    return decode_snapshot(data)
