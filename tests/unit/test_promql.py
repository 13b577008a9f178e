"""
Unit tests for PromQL rendering.
"""

from datetime import timedelta

import pytest

from tracescore.data.schema import LabelMatcher, MatchOp
from tracescore.exprs.promql import Aggregate, call, format_number, selector


def _raw():
    return selector(
        "trace_duration_sample",
        [
            LabelMatcher(name="service_name", value="api"),
            LabelMatcher(name="operation_name", op=MatchOp.RE, value="GET .*"),
        ],
    )


@pytest.mark.parametrize(
    "value,expected",
    [
        (1.0, "1"),
        (0.5, "0.5"),
        (-3, "-3"),
        (1e-9, "1e-09"),
        (float("inf"), "+Inf"),
        (float("-inf"), "-Inf"),
        (float("nan"), "NaN"),
    ],
)
def test_format_number(value, expected):
    assert format_number(value) == expected


def test_selector_sorts_matchers_and_escapes_values():
    rendered = str(_raw())
    assert rendered == 'trace_duration_sample{operation_name=~"GET .*",service_name="api"}'

    quoted = selector("m", [LabelMatcher(name="a", value='say "hi"')])
    assert str(quoted) == 'm{a="say \\"hi\\""}'


def test_selector_range_and_offset():
    raw = _raw()
    assert str(raw.over(timedelta(minutes=5))).endswith("}[5m]")
    assert str(raw.shifted(timedelta(days=7))).endswith("} offset 1w")
    assert str(selector(None)) == "{}"


def test_nested_binary_operations_are_parenthesized():
    count = call("count_over_time", _raw().over(timedelta(minutes=1)))
    expr = (count + 1) * 2

    assert str(expr).startswith("(count_over_time(")
    assert str(expr).endswith("[1m]) + 1) * 2")
    assert str(2 - count).startswith("2 - count_over_time(")


def test_comparison_and_set_operators():
    a = selector("a")
    assert str(a.gt(0)) == "a > 0"
    assert str(a.gt(0, return_bool=True)) == "a > bool 0"
    assert str(a.or_(a * 0)) == "a or (a * 0)"
    assert str(-(a + 1)) == "-(a + 1)"


def test_aggregation():
    a = selector("a")
    assert str(Aggregate("sum", a)) == "sum(a)"
    assert str(Aggregate("max", a, by=("service_name",))) == "max by (service_name) (a)"
    assert str(Aggregate("avg", a, by=("le",), without=True)) == "avg without (le) (a)"


def test_rendering_is_deterministic():
    def build():
        raw = _raw().over(timedelta(minutes=5))
        return call("clamp_min", call("sum_over_time", raw) / call("count_over_time", raw), 1)

    assert str(build()) == str(build())
    assert build() == build()
