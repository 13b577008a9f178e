"""
Custom exceptions for the trace anomaly-score engine.

These exceptions provide clear error semantics across the system.
Use them to distinguish between missing data, invalid configuration,
corrupt durable state and malformed query expressions.
"""

from typing import List, Optional


class TraceScoreError(Exception):
    """Base exception for all engine failures."""
    pass


class UndefinedStatisticError(TraceScoreError):
    """Raised when a statistic is requested from an accumulator with no observations."""
    pass


class ConfigurationError(TraceScoreError):
    """Raised when configuration is invalid or missing."""
    pass


class ConfigValidationError(ConfigurationError):
    """
    Raised when a monitor configuration is rejected.

    Carries every violation found so a caller can fix the configuration
    in a single round trip.
    """

    def __init__(self, violations: List[object], message: Optional[str] = None):
        self.violations = list(violations)
        if message is None:
            message = f"configuration rejected with {len(self.violations)} violation(s)"
        super().__init__(message)


class SnapshotDecodeError(TraceScoreError):
    """Raised when a durable state snapshot is corrupt or has an unknown version."""
    pass


class ExpressionError(TraceScoreError):
    """Raised when a query expression cannot be generated."""
    pass


class QueryParseError(ExpressionError):
    """Raised when a query string is outside the supported PromQL subset."""
    pass


class QueryEvaluationError(ExpressionError):
    """Raised when a parsed query cannot be evaluated (type mismatch, bad arguments)."""
    pass


class SpanIngestionError(TraceScoreError):
    """Raised when spans cannot be read from a trace source."""
    pass
