"""
Jaeger span parsing.

Converts spans from the Jaeger JSON export (``GET /api/traces`` or the
UI's "Download JSON") into canonical Span objects.

Design:
- Tags are flattened from ``[{"key", "type", "value"}]`` into a dict
- The service comes from the span's own ``process`` or, in trace exports,
  from the trace-level ``processes`` table via ``processID``
- ``error=true`` or ``otel.status_code=ERROR`` marks a failed span
- ``busy_ns`` (as emitted by tracing-opentelemetry) is kept when present
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

from pydantic import ValidationError

from tracescore.core.exceptions import SpanIngestionError
from tracescore.data.schema import Span

logger = logging.getLogger(__name__)

ERROR_TAGS = ("error",)
STATUS_TAGS = ("otel.status_code", "status.code")
BUSY_TAG = "busy_ns"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _flatten_tags(tags: Optional[List[Mapping[str, Any]]]) -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for tag in tags or ():
        key = tag.get("key")
        if key is None:
            continue
        value = tag.get("value")
        kind = str(tag.get("type", "")).lower()
        if kind == "int64" and value is not None:
            value = int(value)
        elif kind == "float64" and value is not None:
            value = float(value)
        elif kind == "bool" and isinstance(value, str):
            value = value.lower() == "true"
        flat[key] = value
    return flat


def _is_error(tags: Mapping[str, Any]) -> bool:
    for key in ERROR_TAGS:
        value = tags.get(key)
        if value is True or (isinstance(value, str) and value.lower() == "true"):
            return True
    for key in STATUS_TAGS:
        value = tags.get(key)
        if isinstance(value, str) and value.upper() == "ERROR":
            return True
        if value == 2:
            return True
    return False


def parse_jaeger_span(
    raw: Mapping[str, Any],
    processes: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Span:
    """
    Parse one Jaeger span.

    Args:
        raw: Span object as exported by Jaeger
        processes: Trace-level ``processes`` table, if the export has one

    Returns:
        Canonical Span

    Raises:
        SpanIngestionError: If required fields are missing or malformed
    """
    try:
        process = raw.get("process")
        if process is None and processes is not None:
            process = processes.get(raw.get("processID", ""))
        if process is None:
            raise SpanIngestionError(f"span {raw.get('spanID')} has no process")

        tags = _flatten_tags(raw.get("tags"))
        busy = tags.pop(BUSY_TAG, None)
        start_us = int(raw["startTime"])

        return Span(
            trace_id=str(raw["traceID"]),
            span_id=str(raw["spanID"]),
            service=process["serviceName"],
            operation=raw["operationName"],
            start_time=EPOCH + timedelta(microseconds=start_us),
            duration_us=int(raw["duration"]),
            error=_is_error(tags),
            busy_ns=int(busy) if busy is not None else None,
            tags=tags,
        )
    except SpanIngestionError:
        raise
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        raise SpanIngestionError(f"malformed span {raw.get('spanID')!r}: {e}") from e


def parse_jaeger_trace(trace: Mapping[str, Any]) -> Iterator[Span]:
    """
    Parse every span of one exported trace.

    Malformed spans are logged and skipped so one bad span doesn't drop
    the rest of the trace.
    """
    processes = trace.get("processes") or {}
    for raw in trace.get("spans") or ():
        try:
            yield parse_jaeger_span(raw, processes)
        except SpanIngestionError as e:
            logger.warning(f"Skipping span in trace {trace.get('traceID')}: {e}")
