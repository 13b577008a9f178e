"""
Core module: Configuration, logging, validation and exception handling.
"""

from .exceptions import (
    ConfigurationError,
    ConfigValidationError,
    ExpressionError,
    QueryEvaluationError,
    QueryParseError,
    SnapshotDecodeError,
    SpanIngestionError,
    TraceScoreError,
    UndefinedStatisticError,
)
from .config import (
    Ceiling,
    GraphHorizons,
    HorizonConfig,
    MetricSelector,
    MonitorConfig,
    Representative,
    ScoringConfig,
    Settings,
    load_monitor_config,
    settings,
)
from .durations import Duration, format_duration, parse_duration

__all__ = [
    "Ceiling",
    "GraphHorizons",
    "HorizonConfig",
    "MetricSelector",
    "MonitorConfig",
    "Representative",
    "ScoringConfig",
    "Settings",
    "load_monitor_config",
    "settings",
    "Duration",
    "format_duration",
    "parse_duration",
    "TraceScoreError",
    "UndefinedStatisticError",
    "ConfigurationError",
    "ConfigValidationError",
    "SnapshotDecodeError",
    "ExpressionError",
    "QueryParseError",
    "QueryEvaluationError",
    "SpanIngestionError",
]
