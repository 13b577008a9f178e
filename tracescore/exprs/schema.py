"""
Description of the series the daemon publishes and of the recording-rule
groups implied by the active monitor configuration.

Served by ``GET /prometheus-schema`` as JSON, or as a Prometheus rule file
when YAML is requested.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

from tracescore.core.config import MonitorConfig
from tracescore.core.durations import format_duration
from tracescore.data.schema import OPERATION_LABEL, SERVICE_LABEL, GraphType

from .naming import (
    BUCKET_LABEL,
    HORIZON_LABEL,
    IMMEDIATE_LABEL,
    QUANTILE_LABEL,
    REFERENCE_LABEL,
    WELFORD_FIELDS,
    bucket_metric,
    score_metric,
    stat_metric,
    welford_metric,
)
from .welford import ExpressionGenerator, RecordingRule, WelfordParams

SCHEMA_MODULE = "tracescore"
SCHEMA_VERSION = "1.0.0"

UNITS: Dict[GraphType, str] = {
    GraphType.DURATION: "microseconds",
    GraphType.BUSY: "nanoseconds",
    GraphType.CALL_RATE: "calls per second",
    GraphType.ERROR_RATE: "ratio",
}


class MetricKind(str, Enum):
    GAUGE = "gauge"
    COUNTER = "counter"


class MetricDescriptor(BaseModel):
    name: str
    kind: MetricKind
    unit: Optional[str] = None
    labels: List[str]
    help: str


class RuleGroup(BaseModel):
    name: str
    interval: Optional[str] = None
    rules: List[RecordingRule]


class PrometheusSchema(BaseModel):
    module: str = SCHEMA_MODULE
    version: str = SCHEMA_VERSION
    metrics: List[MetricDescriptor] = Field(default_factory=list)
    groups: List[RuleGroup] = Field(default_factory=list)

    def to_rule_file(self) -> str:
        """Render the rule groups in Prometheus rule-file YAML."""
        document = {
            "groups": [
                {
                    "name": g.name,
                    **({"interval": g.interval} if g.interval else {}),
                    "rules": [{"record": r.record, "expr": r.expr} for r in g.rules],
                }
                for g in self.groups
            ]
        }
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def _metric_descriptors(graph: GraphType) -> List[MetricDescriptor]:
    unit = UNITS[graph]
    base = [SERVICE_LABEL, OPERATION_LABEL]
    out = [
        MetricDescriptor(
            name=welford_metric(graph, field),
            kind=MetricKind.COUNTER if field == "count" else MetricKind.GAUGE,
            unit=unit if field == "mean" else None,
            labels=base,
            help=f"Cumulative Welford {field} of every {graph.value} observation",
        )
        for field in WELFORD_FIELDS
    ]
    if graph.is_duration_like:
        out.append(
            MetricDescriptor(
                name=bucket_metric(graph),
                kind=MetricKind.COUNTER,
                unit=unit,
                labels=base + [BUCKET_LABEL],
                help=f"Cumulative {graph.value} histogram buckets",
            )
        )
    for stat in ("count", "mean", "stddev"):
        out.append(
            MetricDescriptor(
                name=stat_metric(graph, stat),
                kind=MetricKind.GAUGE,
                unit=None if stat == "count" else unit,
                labels=base + [HORIZON_LABEL],
                help=f"Streaming {stat} per horizon",
            )
        )
    if graph.is_duration_like:
        out.append(
            MetricDescriptor(
                name=stat_metric(graph, "quantile"),
                kind=MetricKind.GAUGE,
                unit=unit,
                labels=base + [HORIZON_LABEL, QUANTILE_LABEL],
                help="Sketch quantile per horizon",
            )
        )
    out.append(
        MetricDescriptor(
            name=score_metric(graph),
            kind=MetricKind.GAUGE,
            labels=base + [IMMEDIATE_LABEL, REFERENCE_LABEL],
            help="Anomaly score (1 = normal)",
        )
    )
    return out


def build_schema(config: MonitorConfig, generator: Optional[ExpressionGenerator] = None) -> PrometheusSchema:
    """
    Describe the published series and one rule group per monitored selector.

    The group interval is the immediate horizon's bin width, so recorded
    series refresh as often as the streaming engine rotates.
    """
    generator = generator or ExpressionGenerator()
    graphs: Tuple[GraphType, ...] = tuple(g for g in GraphType if any(s.graph == g for s in config.metrics))

    schema = PrometheusSchema()
    for graph in graphs:
        schema.metrics.extend(_metric_descriptors(graph))

    for index, selector in enumerate(config.metrics):
        horizons = config.horizons_for(selector.graph)
        params = WelfordParams(
            metric=selector.graph,
            label_selectors=selector.matchers,
            immediate=horizons.immediate.window,
            reference=horizons.reference.window,
            q=config.quantile,
            scoring=config.scoring_for(selector.graph),
        )
        exprs = generator.generate(params)
        schema.groups.append(
            RuleGroup(
                name=f"{SCHEMA_MODULE}-{selector.graph.value}-{index}",
                interval=format_duration(horizons.immediate.bin_width),
                rules=exprs.rules,
            )
        )
    return schema
