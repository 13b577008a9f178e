"""
Data module: span ingestion, parsing and aggregation into metric samples.

Pipeline:

    Jaeger JSON / NDJSON export
        ↓
    Ingestion (tracescore/data/ingestion.py) → raw span objects
        ↓
    Parsing (tracescore/data/parsers.py) → Span
        ↓
    Aggregation (tracescore/data/aggregation.py) → Sample
        ↓
    StateStore.record / SamplePublisher
"""

from tracescore.data.aggregation import SpanAggregator, align_timestamp_to_window, span_keys
from tracescore.data.ingestion import JSONSpanSource, SpanSource, StaticSpanSource
from tracescore.data.parsers import parse_jaeger_span, parse_jaeger_trace
from tracescore.data.schema import (
    OPERATION_LABEL,
    SERVICE_LABEL,
    GraphType,
    LabelMatcher,
    MatchOp,
    MetricKey,
    Sample,
    Span,
)

__all__ = [
    # Schema
    "GraphType",
    "LabelMatcher",
    "MatchOp",
    "MetricKey",
    "Sample",
    "Span",
    "SERVICE_LABEL",
    "OPERATION_LABEL",

    # Ingestion
    "SpanSource",
    "JSONSpanSource",
    "StaticSpanSource",

    # Parsing
    "parse_jaeger_span",
    "parse_jaeger_trace",

    # Aggregation
    "SpanAggregator",
    "align_timestamp_to_window",
    "span_keys",
]
