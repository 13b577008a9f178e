"""
Unit tests for the snapshot codec and file helpers.
"""

import json

import pytest

from tracescore.anomaly.engine import StateStore
from tracescore.anomaly.schema import Horizon
from tracescore.anomaly.snapshot import (
    SNAPSHOT_VERSION,
    decode_snapshot,
    encode_snapshot,
    read_snapshot,
    write_snapshot,
)
from tracescore.core.exceptions import SnapshotDecodeError
from tracescore.data.schema import GraphType, MetricKey

T0 = 1_699_999_200.0


@pytest.fixture
def populated(store):
    keys = [
        MetricKey(graph=GraphType.DURATION, service="api", operation="GET /users"),
        MetricKey(graph=GraphType.CALL_RATE, service="api"),
    ]
    for i in range(40):
        for key in keys:
            store.record(key, T0 + 7.3 * i, 0.1 * i + 1.0 / 3.0)
    return store


class TestSnapshotCodec:
    """Test bit-exact round trips and corrupt input handling."""

    def test_round_trip_is_bit_exact(self, populated):
        entries = populated.snapshot()
        decoded = decode_snapshot(encode_snapshot(entries))

        assert set(decoded) == set(entries)
        for key, state in entries.items():
            for horizon in Horizon:
                before = state.horizon(horizon)
                after = decoded[key].horizon(horizon)
                assert after.head == before.head
                assert sorted(after.bins) == sorted(before.bins)
                for idx, interval in before.bins.items():
                    restored = after.bins[idx]
                    assert restored.stats.count == interval.stats.count
                    assert restored.stats.mean.hex() == interval.stats.mean.hex()
                    assert restored.stats.sum_sq_diff.hex() == interval.stats.sum_sq_diff.hex()
                    if interval.sketch is None:
                        assert restored.sketch is None
                    else:
                        assert restored.sketch.to_state() == interval.sketch.to_state()

    def test_encoding_is_deterministic(self, populated):
        entries = populated.snapshot()

        assert encode_snapshot(entries) == encode_snapshot(decode_snapshot(encode_snapshot(entries)))

    def test_empty_store(self):
        assert decode_snapshot(encode_snapshot({})) == {}

    @pytest.mark.parametrize(
        "payload",
        [
            b"not json",
            b"[]",
            json.dumps({"format": "something-else", "version": 1}).encode(),
            json.dumps({"format": "tracescore-state", "version": SNAPSHOT_VERSION + 1}).encode(),
            json.dumps({"format": "tracescore-state", "version": SNAPSHOT_VERSION}).encode(),
            json.dumps(
                {"format": "tracescore-state", "version": SNAPSHOT_VERSION, "entries": [{"key": {}}]}
            ).encode(),
        ],
    )
    def test_corrupt_snapshot_raises(self, payload):
        with pytest.raises(SnapshotDecodeError):
            decode_snapshot(payload)

    def test_tampered_float_raises(self, populated):
        document = json.loads(encode_snapshot(populated.snapshot()))
        document["entries"][0]["immediate"]["bins"][0]["stats"]["mean"] = 1.5

        with pytest.raises(SnapshotDecodeError):
            decode_snapshot(json.dumps(document).encode())


class TestSnapshotFiles:
    """Test the file helpers."""

    def test_missing_file_is_cold_start(self, tmp_path):
        assert read_snapshot(tmp_path / "absent.json") is None

    def test_write_then_read(self, tmp_path, populated, small_config):
        path = tmp_path / "state" / "snapshot.json"
        write_snapshot(path, populated.snapshot())

        restored = StateStore(small_config)
        restored.restore(read_snapshot(path))
        assert restored.keys() == populated.keys()
        assert list(path.parent.iterdir()) == [path]

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "snapshot.json"
        path.write_text("{broken")

        with pytest.raises(SnapshotDecodeError):
            read_snapshot(path)
