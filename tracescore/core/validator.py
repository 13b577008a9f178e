"""
Monitor configuration validation.

Checks a MonitorConfig against the label schema supplied by the trace
source before the daemon accepts it. Validation is a pure check: nothing is
activated or mutated here, and every violation found is reported so a
caller can fix a configuration in one round trip.
"""

from __future__ import annotations

import math
import re
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, Field, ValidationError

from tracescore.data.schema import OPERATION_LABEL, SERVICE_LABEL, MatchOp

from .config import Ceiling, HorizonConfig, MonitorConfig, Representative
from .durations import duration_ms
from .exceptions import ConfigValidationError


class LabelType(str, Enum):
    """Value types a label may carry."""

    STRING = "string"
    INT = "int"
    BOOL = "bool"


class LabelSchema(BaseModel):
    """Label names (and their value types) available on every span-derived series."""

    labels: Dict[str, LabelType] = Field(default_factory=dict)


DEFAULT_LABEL_SCHEMA = LabelSchema(
    labels={SERVICE_LABEL: LabelType.STRING, OPERATION_LABEL: LabelType.STRING}
)


class Violation(BaseModel):
    """A single configuration problem, addressed by a dotted path."""

    path: str
    message: str


_INT_RE = re.compile(r"-?\d+")


def violations_from_pydantic(exc: ValidationError) -> List[Violation]:
    """Flatten a pydantic parse error into violations."""
    return [
        Violation(path=".".join(str(part) for part in err["loc"]) or "<root>", message=err["msg"])
        for err in exc.errors()
    ]


class ConfigValidator:
    """
    Validates monitor configurations against a label schema.

    Usage:
        validator = ConfigValidator()
        validator.validate(config, schema)  # raises ConfigValidationError
    """

    def validate(self, config: MonitorConfig, schema: LabelSchema = DEFAULT_LABEL_SCHEMA) -> None:
        violations = self.collect_violations(config, schema)
        if violations:
            raise ConfigValidationError(violations)

    def collect_violations(
        self, config: MonitorConfig, schema: LabelSchema = DEFAULT_LABEL_SCHEMA
    ) -> List[Violation]:
        violations: List[Violation] = []
        self._check_selectors(config, schema, violations)
        self._check_horizons(config, violations)
        self._check_quantile(config, violations)
        self._check_scoring(config, violations)
        self._check_buckets(config, violations)

        if not 10 <= config.sketch_compression <= 10_000:
            violations.append(
                Violation(path="sketch_compression", message="must be between 10 and 10000")
            )
        if duration_ms(config.rate_bin_width) <= 0:
            violations.append(Violation(path="rate_bin_width", message="must be positive"))
        return violations

    def _check_selectors(
        self, config: MonitorConfig, schema: LabelSchema, violations: List[Violation]
    ) -> None:
        for i, selector in enumerate(config.metrics):
            for j, matcher in enumerate(selector.matchers):
                path = f"metrics.{i}.matchers.{j}"
                label_type = schema.labels.get(matcher.name)
                if label_type is None:
                    violations.append(
                        Violation(path=path, message=f"unknown label '{matcher.name}'")
                    )
                    continue

                if matcher.op in (MatchOp.RE, MatchOp.NRE):
                    try:
                        re.compile(matcher.value)
                    except re.error as e:
                        violations.append(
                            Violation(path=path, message=f"invalid regex '{matcher.value}': {e}")
                        )
                    continue

                if matcher.value == "":
                    continue
                if label_type == LabelType.INT and not _INT_RE.fullmatch(matcher.value):
                    violations.append(
                        Violation(
                            path=path,
                            message=f"label '{matcher.name}' is an int, got '{matcher.value}'",
                        )
                    )
                elif label_type == LabelType.BOOL and matcher.value not in ("true", "false"):
                    violations.append(
                        Violation(
                            path=path,
                            message=f"label '{matcher.name}' is a bool, got '{matcher.value}'",
                        )
                    )

    def _check_horizons(self, config: MonitorConfig, violations: List[Violation]) -> None:
        for graph, horizons in config.horizons.items():
            base = f"horizons.{graph.value}"
            self._check_horizon(f"{base}.immediate", horizons.immediate, violations)
            self._check_horizon(f"{base}.reference", horizons.reference, violations)

            if horizons.immediate.retention is not None:
                violations.append(
                    Violation(
                        path=f"{base}.immediate.retention",
                        message="retention only applies to the reference horizon",
                    )
                )
            if horizons.immediate.window > horizons.reference.window:
                violations.append(
                    Violation(
                        path=base,
                        message="immediate window must not exceed the reference window",
                    )
                )

    def _check_horizon(self, path: str, horizon: HorizonConfig, violations: List[Violation]) -> None:
        window = duration_ms(horizon.window)
        bin_width = duration_ms(horizon.bin_width)
        if window <= 0:
            violations.append(Violation(path=f"{path}.window", message="must be positive"))
        if bin_width <= 0:
            violations.append(Violation(path=f"{path}.bin_width", message="must be positive"))
        if window <= 0 or bin_width <= 0:
            return

        if bin_width > window or window % bin_width != 0:
            violations.append(
                Violation(path=f"{path}.bin_width", message="must evenly divide the window")
            )
        if horizon.retention is not None:
            retention = duration_ms(horizon.retention)
            if retention < window:
                violations.append(
                    Violation(path=f"{path}.retention", message="must be at least the window")
                )
            elif retention % bin_width != 0:
                violations.append(
                    Violation(path=f"{path}.retention", message="must be a multiple of bin_width")
                )

    def _check_quantile(self, config: MonitorConfig, violations: List[Violation]) -> None:
        q = config.quantile
        if not (math.isfinite(q) and 0.0 < q < 1.0):
            violations.append(Violation(path="quantile", message="must be in the open interval (0, 1)"))

    def _check_scoring(self, config: MonitorConfig, violations: List[Violation]) -> None:
        for graph, scoring in config.scoring.items():
            path = f"scoring.{graph.value}"
            if not (math.isfinite(scoring.stddev_factor) and scoring.stddev_factor >= 0.0):
                violations.append(
                    Violation(path=f"{path}.stddev_factor", message="must be finite and >= 0")
                )
            if not (math.isfinite(scoring.offset) and scoring.offset >= 0.0):
                violations.append(Violation(path=f"{path}.offset", message="must be finite and >= 0"))
            if not (math.isfinite(scoring.ceiling_floor) and scoring.ceiling_floor > 0.0):
                violations.append(
                    Violation(path=f"{path}.ceiling_floor", message="must be finite and > 0")
                )
            if scoring.ddof not in (0, 1):
                violations.append(Violation(path=f"{path}.ddof", message="must be 0 or 1"))

            if not graph.is_duration_like:
                if scoring.representative == Representative.QUANTILE:
                    violations.append(
                        Violation(
                            path=f"{path}.representative",
                            message=f"quantile requires a duration-like graph, not '{graph.value}'",
                        )
                    )
                if scoring.ceiling == Ceiling.QUANTILE:
                    violations.append(
                        Violation(
                            path=f"{path}.ceiling",
                            message=f"quantile requires a duration-like graph, not '{graph.value}'",
                        )
                    )

    def _check_buckets(self, config: MonitorConfig, violations: List[Violation]) -> None:
        for graph, bounds in config.histogram_buckets.items():
            path = f"histogram_buckets.{graph.value}"
            if not graph.is_duration_like:
                violations.append(
                    Violation(path=path, message=f"'{graph.value}' does not carry a histogram")
                )
                continue
            if not bounds:
                violations.append(Violation(path=path, message="must not be empty"))
                continue
            if any(not math.isfinite(b) or b <= 0.0 for b in bounds):
                violations.append(Violation(path=path, message="bounds must be finite and positive"))
            if any(b >= c for b, c in zip(bounds, bounds[1:])):
                violations.append(Violation(path=path, message="bounds must be strictly increasing"))
