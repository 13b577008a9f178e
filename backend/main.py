"""
HTTP front end for the trace anomaly-score daemon.

Serves the monitor configuration, expression generation, the Prometheus
schema and example graph data, and runs the ingestion worker alongside.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from dotenv import load_dotenv
from pydantic import ValidationError

from backend.graph import GraphRequestError, example_graph
from tracescore.anomaly.engine import StateStore
from tracescore.core.config import MonitorConfig, Settings, load_monitor_config
from tracescore.core.exceptions import ConfigValidationError, ExpressionError
from tracescore.core.logging_config import setup_logging
from tracescore.core.validator import violations_from_pydantic
from tracescore.daemon import ConfigHolder, IngestionWorker
from tracescore.data.ingestion import JSONSpanSource
from tracescore.exprs.precalculated import PrecalculatedBuilder, PrecalculatedParams
from tracescore.exprs.schema import build_schema
from tracescore.exprs.welford import ExpressionGenerator, WelfordParams
from tracescore.metrics import InMemorySeriesSink, SamplePublisher

load_dotenv()

logger = logging.getLogger("backend")


@dataclass
class ServerContext:
    """Shared state of one server: handlers and the worker use the same objects."""

    holder: ConfigHolder
    store: StateStore
    sink: InMemorySeriesSink = field(default_factory=InMemorySeriesSink)
    generator: ExpressionGenerator = field(default_factory=ExpressionGenerator)
    precalculated: PrecalculatedBuilder = field(default_factory=PrecalculatedBuilder)


class TraceScoreServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, context: ServerContext):
        super().__init__(address, BackendHandler)
        self.context = context


def _violations_payload(violations: List[object]) -> List[Dict[str, object]]:
    return [v.model_dump() if hasattr(v, "model_dump") else {"message": str(v)} for v in violations]


class BackendHandler(BaseHTTPRequestHandler):
    server_version = "TraceScore/1.0"

    @property
    def context(self) -> ServerContext:
        return self.server.context

    def log_message(self, format: str, *args) -> None:
        logger.debug("%s - %s", self.address_string(), format % args)

    def _send_body(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _send_json(self, status: int, payload: object) -> None:
        self._send_body(status, json.dumps(payload).encode("utf-8"), "application/json")

    def _read_json(self) -> Optional[object]:
        length = int(self.headers.get("Content-Length", "0"))
        if length <= 0:
            return None
        data = self.rfile.read(length)
        try:
            return json.loads(data.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Allow-Headers", "Content-Type")
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.end_headers()

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        params = parse_qs(url.query)

        if url.path == "/health":
            self._send_json(200, {"status": "ok", "keys": len(self.context.store)})
            return

        if url.path == "/config":
            self._send_json(200, self.context.holder.get().model_dump(mode="json"))
            return

        if url.path == "/prometheus-schema":
            self._handle_schema(params)
            return

        if url.path == "/graph/example":
            self._handle_graph(params)
            return

        self._send_json(404, {"detail": "Not found"})

    def do_POST(self) -> None:
        url = urlsplit(self.path)

        if url.path == "/config":
            self._handle_config()
            return

        if url.path == "/expr/welford":
            self._handle_welford()
            return

        if url.path == "/expr/precalculated":
            self._handle_precalculated()
            return

        self._send_json(404, {"detail": "Not found"})

    def _handle_config(self) -> None:
        payload = self._read_json()
        if not isinstance(payload, dict):
            self._send_json(400, {"detail": "Expected a JSON object"})
            return
        try:
            config = self.context.holder.replace_from_dict(payload)
        except ConfigValidationError as e:
            logger.warning("Rejected config with %d violation(s)", len(e.violations))
            self._send_json(
                422,
                {"success": False, "detail": str(e), "violations": _violations_payload(e.violations)},
            )
            return
        self._send_json(200, {"success": True, "config": config.model_dump(mode="json")})

    def _handle_welford(self) -> None:
        payload = self._read_json()
        if not isinstance(payload, dict):
            self._send_json(400, {"detail": "Expected a JSON object"})
            return
        try:
            params = WelfordParams.model_validate(payload)
            exprs = self.context.generator.generate(params)
        except ValidationError as e:
            self._send_json(
                422, {"detail": "Invalid parameters", "violations": _violations_payload(violations_from_pydantic(e))}
            )
            return
        except ExpressionError as e:
            self._send_json(400, {"detail": str(e)})
            return
        self._send_json(200, exprs.model_dump(mode="json"))

    def _handle_precalculated(self) -> None:
        payload = self._read_json()
        if not isinstance(payload, dict):
            self._send_json(400, {"detail": "Expected a JSON object"})
            return
        try:
            params = PrecalculatedParams.model_validate(payload)
        except ValidationError as e:
            self._send_json(
                422, {"detail": "Invalid parameters", "violations": _violations_payload(violations_from_pydantic(e))}
            )
            return
        self._send_json(200, self.context.precalculated.build(params).model_dump(mode="json"))

    def _handle_schema(self, params: Dict[str, List[str]]) -> None:
        schema = build_schema(self.context.holder.get(), self.context.generator)
        fmt = (params.get("format") or ["json"])[-1].lower()
        if fmt in ("yaml", "yml"):
            self._send_body(200, schema.to_rule_file().encode("utf-8"), "application/yaml")
            return
        if fmt != "json":
            self._send_json(400, {"detail": f"Unknown format {fmt!r}"})
            return
        self._send_json(200, schema.model_dump(mode="json"))

    def _handle_graph(self, params: Dict[str, List[str]]) -> None:
        try:
            data = example_graph(
                params, self.context.holder.get(), self.context.sink.store, self.context.generator
            )
        except GraphRequestError as e:
            self._send_json(400, {"detail": str(e)})
            return
        except ValidationError as e:
            self._send_json(
                422, {"detail": "Invalid parameters", "violations": _violations_payload(violations_from_pydantic(e))}
            )
            return
        except ExpressionError as e:
            self._send_json(400, {"detail": str(e)})
            return
        self._send_json(200, data)


def build_context(settings: Settings) -> ServerContext:
    config: MonitorConfig = settings.monitor
    if settings.monitor_config_file is not None:
        config = load_monitor_config(settings.monitor_config_file)
    holder = ConfigHolder(config)
    store = StateStore(config, shard_count=settings.shard_count)
    return ServerContext(holder=holder, store=store)


def build_worker(settings: Settings, context: ServerContext) -> Optional[IngestionWorker]:
    if settings.trace_file is None:
        logger.warning("No trace file configured; ingestion disabled")
        return None
    worker = IngestionWorker(
        source=JSONSpanSource(settings.trace_file),
        store=context.store,
        holder=context.holder,
        publisher=SamplePublisher(context.sink, max_batch_size=settings.max_batch_size),
        query_interval=settings.query_interval,
        query_delay=settings.query_delay,
        snapshot_path=settings.snapshot_path,
        snapshot_interval=settings.snapshot_interval,
        series_retention=settings.series_retention.total_seconds(),
    )
    # a corrupt snapshot is fatal here rather than silently starting empty
    restored = worker.restore()
    logger.info("Restored %d metric key(s) from snapshot", restored)
    return worker


def run(host: str, port: int, settings: Settings) -> None:
    context = build_context(settings)
    worker = build_worker(settings, context)
    server = TraceScoreServer((host, port), context)
    logger.info("Starting backend server on %s:%s", host, port)
    if worker is not None:
        worker.start()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        server.server_close()
        if worker is not None:
            worker.stop(timeout=10.0)


def main() -> None:
    settings = Settings()
    parser = argparse.ArgumentParser(description="Trace anomaly-score daemon")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--config", type=Path, default=None, help="Monitor config file (JSON or YAML)")
    parser.add_argument("--trace-file", type=Path, default=None, help="Jaeger JSON/NDJSON export to poll")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args()

    updates = {}
    if args.config is not None:
        updates["monitor_config_file"] = args.config
    if args.trace_file is not None:
        updates["trace_file"] = args.trace_file
    if updates:
        settings = settings.model_copy(update=updates)

    setup_logging(level=args.log_level, config=settings)
    run(args.host, args.port, settings)


if __name__ == "__main__":
    main()
