"""
Integration tests for the HTTP endpoints.

Starts a real server on an ephemeral port and talks to it over HTTP.
"""

import json
import threading
import urllib.error
import urllib.request

import pytest

from backend.main import ServerContext, TraceScoreServer
from tracescore.anomaly.engine import StateStore
from tracescore.daemon import ConfigHolder

pytestmark = pytest.mark.integration


@pytest.fixture
def server():
    context = ServerContext(holder=ConfigHolder(), store=StateStore())
    httpd = TraceScoreServer(("127.0.0.1", 0), context)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{httpd.server_address[1]}", context
    httpd.shutdown()
    httpd.server_close()


def _request(url, method="GET", body=None):
    data = None
    if body is not None:
        data = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    req = urllib.request.Request(url, data=data, method=method, headers={"Content-Type": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=5) as resp:
            return resp.status, resp.headers, resp.read()
    except urllib.error.HTTPError as e:
        return e.code, e.headers, e.read()


def _json(url, method="GET", body=None):
    status, _, payload = _request(url, method, body)
    return status, json.loads(payload)


def test_health(server):
    base, _ = server
    assert _json(base + "/health") == (200, {"status": "ok", "keys": 0})


def test_unknown_path(server):
    base, _ = server
    assert _json(base + "/nope") == (404, {"detail": "Not found"})
    assert _json(base + "/nope", "POST", {}) == (404, {"detail": "Not found"})


def test_options_preflight(server):
    base, _ = server
    status, headers, _ = _request(base + "/config", "OPTIONS")
    assert status == 204
    assert headers["Access-Control-Allow-Origin"] == "*"


class TestConfigEndpoint:
    """Test reading and replacing the monitor config."""

    def test_get_config(self, server):
        base, _ = server
        status, body = _json(base + "/config")

        assert status == 200
        assert body["quantile"] == 0.99
        assert body["horizons"]["duration"]["immediate"]["window"] == "5m"

    def test_replace_config(self, server):
        base, context = server
        status, body = _json(base + "/config", "POST", {"quantile": 0.95, "metrics": [{"graph": "busy"}]})

        assert status == 200
        assert body["success"] is True
        assert context.holder.get().quantile == 0.95
        assert _json(base + "/config")[1]["metrics"] == [{"graph": "busy", "matchers": []}]

    def test_rejected_config_keeps_previous(self, server):
        base, context = server
        before = context.holder.get()
        bad = {"metrics": [{"graph": "duration", "matchers": [{"name": "cluster", "value": "eu"}]}], "quantile": 2}

        status, body = _json(base + "/config", "POST", bad)

        assert status == 422
        assert body["success"] is False
        assert sorted(v["path"] for v in body["violations"]) == ["metrics.0.matchers.0", "quantile"]
        assert context.holder.get() is before

    def test_unparseable_config(self, server):
        base, _ = server
        status, body = _json(base + "/config", "POST", {"horizons": {"duration": {"immediate": {"window": "5x"}}}})
        assert status == 422
        assert body["violations"]

    def test_non_object_body(self, server):
        base, _ = server
        assert _json(base + "/config", "POST", [1, 2])[0] == 400
        assert _json(base + "/config", "POST", b"{broken")[0] == 400


class TestWelfordEndpoint:
    """Test expression generation over HTTP."""

    def test_generate(self, server):
        base, _ = server
        status, body = _json(
            base + "/expr/welford",
            "POST",
            {"metric": "duration", "service": "api", "immediate": "5m", "reference": "1h"},
        )

        assert status == 200
        counter = 'trace_duration_welford_count{service_name="api"}'
        assert body["immediate"]["count"] == f"clamp_min({counter} - ({counter} offset 5m or ({counter} * 0)), 0)"
        assert body["score"].startswith("clamp_min(")
        assert body["rules"][-1]["record"] == "trace_duration:score_5m_1h"

    def test_invalid_params(self, server):
        base, _ = server
        status, body = _json(base + "/expr/welford", "POST", {"metric": "latency"})
        assert status == 422
        assert body["violations"][0]["path"] == "metric"

    def test_quantile_mode_on_rate(self, server):
        base, _ = server
        status, body = _json(
            base + "/expr/welford",
            "POST",
            {"metric": "call_rate", "scoring": {"representative": "quantile"}},
        )
        assert status == 400
        assert "duration-like" in body["detail"]


class TestPrecalculatedEndpoint:
    """Test expressions over published results."""

    def test_build(self, server):
        base, _ = server
        status, body = _json(
            base + "/expr/precalculated",
            "POST",
            {"metric": "duration", "aggr": "mean", "service": "api", "horizon": "reference"},
        )

        assert status == 200
        assert body == {
            "expr": 'trace_duration_mean{horizon="reference",operation_name!="",service_name="api"}',
            "low": None,
            "high": None,
        }

    def test_confidence_interval(self, server):
        base, _ = server
        status, body = _json(base + "/expr/precalculated", "POST", {"metric": "busy", "aggr": "ci"})

        assert status == 200
        assert body["low"].startswith("clamp_min(")
        assert body["high"].startswith("trace_busy_mean{")

    def test_invalid_params(self, server):
        base, _ = server
        status, body = _json(
            base + "/expr/precalculated",
            "POST",
            {"metric": "duration", "aggr": "mean", "combine": 0.5},
        )
        assert status == 422
        assert body["violations"]

    def test_non_object_body(self, server):
        base, _ = server
        assert _json(base + "/expr/precalculated", "POST", ["duration"])[0] == 400


class TestSchemaEndpoint:
    def test_json(self, server):
        base, _ = server
        status, body = _json(base + "/prometheus-schema")

        assert status == 200
        assert body["module"] == "tracescore"
        assert len(body["groups"]) == 4

    def test_yaml(self, server):
        base, _ = server
        status, headers, payload = _request(base + "/prometheus-schema?format=yaml")

        assert status == 200
        assert headers["Content-Type"] == "application/yaml"
        assert payload.decode("utf-8").startswith("groups:")

    def test_unknown_format(self, server):
        base, _ = server
        assert _json(base + "/prometheus-schema?format=xml")[0] == 400


class TestGraphEndpoint:
    def test_graph(self, server):
        base, _ = server
        status, body = _json(base + "/graph/example?type=duration&service=api&interval=1h")

        assert status == 200
        assert body["unit"] == "s"
        assert body["series"]["mean"] == []

    def test_missing_type(self, server):
        base, _ = server
        status, body = _json(base + "/graph/example")
        assert status == 400
        assert "type" in body["detail"]

    def test_invalid_quantile(self, server):
        base, _ = server
        assert _json(base + "/graph/example?type=busy&q=2")[0] == 422
