"""
Unit tests for the published Prometheus schema.
"""

import yaml

from tracescore.core.config import MetricSelector, MonitorConfig
from tracescore.data.schema import GraphType, LabelMatcher, MatchOp
from tracescore.exprs.schema import SCHEMA_MODULE, build_schema


class TestBuildSchema:
    """Test metric descriptors and rule groups."""

    def test_default_config(self):
        schema = build_schema(MonitorConfig())

        assert schema.module == SCHEMA_MODULE
        names = [m.name for m in schema.metrics]
        assert "trace_duration_bucket" in names
        assert "trace_busy_quantile" in names
        assert "trace_call_rate_bucket" not in names
        assert "trace_error_rate_quantile" not in names
        assert len(names) == 7 + 7 + 5 + 5
        assert [g.name for g in schema.groups] == [
            "tracescore-duration-0",
            "tracescore-busy-1",
            "tracescore-call_rate-2",
            "tracescore-error_rate-3",
        ]
        assert {g.interval for g in schema.groups} == {"30s"}

    def test_units(self):
        metrics = {m.name: m for m in build_schema(MonitorConfig()).metrics}

        assert metrics["trace_duration_welford_mean"].unit == "microseconds"
        assert metrics["trace_duration_welford_m2"].unit is None
        assert metrics["trace_duration_welford_count"].kind == "counter"
        assert metrics["trace_busy_welford_mean"].unit == "nanoseconds"
        assert metrics["trace_duration_count"].unit is None
        assert metrics["trace_duration_bucket"].kind == "counter"
        assert metrics["trace_error_rate_score"].labels == [
            "service_name",
            "operation_name",
            "immediate",
            "reference",
        ]

    def test_selector_matchers_reach_rules(self):
        selector = MetricSelector(
            graph=GraphType.DURATION,
            matchers=(LabelMatcher(name="service_name", op=MatchOp.RE, value="api-.*"),),
        )
        schema = build_schema(MonitorConfig(metrics=(selector,)))

        assert {m.name.split("_")[1] for m in schema.metrics} == {"duration"}
        assert len(schema.groups) == 1
        assert all('service_name=~"api-.*"' in r.expr for r in schema.groups[0].rules)

    def test_rule_file(self):
        document = yaml.safe_load(build_schema(MonitorConfig()).to_rule_file())

        group = document["groups"][0]
        assert list(group) == ["name", "interval", "rules"]
        assert group["rules"][0]["record"] == "trace_duration:count_5m"
        assert group["rules"][-1]["record"] == "trace_duration:score_5m_1w"
        counter = "trace_duration_welford_count"
        assert group["rules"][0]["expr"].startswith(f"clamp_min({counter} - ({counter} offset 5m")
