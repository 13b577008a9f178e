"""
Unit tests for the reference query evaluator.
"""

import math
from datetime import timedelta

import pytest

from tracescore.core.exceptions import QueryEvaluationError, QueryParseError
from tracescore.data.schema import LabelMatcher, MatchOp
from tracescore.exprs.evaluator import Evaluator, SeriesStore, parse_query
from tracescore.exprs.promql import Aggregate, Binary, Call, Number, Selector, Unary

API = (("service_name", "api"),)
WEB = (("service_name", "web"),)


@pytest.fixture
def series():
    store = SeriesStore()
    for t, v in [(10, 1.0), (20, 2.0), (30, 3.0), (40, 4.0), (50, 10.0)]:
        store.add("latency", {"service_name": "api"}, t, v)
    for t, v in [(20, 5.0), (40, 7.0)]:
        store.add("latency", {"service_name": "web"}, t, v)
    return store


class TestSeriesStore:
    """Test storage, selection and pruning."""

    def test_select_is_left_open(self, series):
        selected = series.select("latency", [LabelMatcher(name="service_name", value="api")], 20, 40)
        assert len(selected) == 1
        assert selected[0].points == ((30.0, 3.0), (40.0, 4.0))

    def test_same_timestamp_replaces(self):
        store = SeriesStore()
        store.add("m", {}, 5, 1.0)
        store.add("m", {}, 5, 2.0)
        assert store.select("m", [], None, 10)[0].points == ((5.0, 2.0),)

    def test_prune(self, series):
        assert series.prune(20) == 3
        assert series.select("latency", [], None, 20) == []
        assert series.series_count() == 2
        series.prune(100)
        assert series.series_count() == 0

    def test_label_sets(self, series):
        series.add("other", {"a": "b"}, 1, 1.0)
        assert {ls["service_name"] for ls in series.label_sets("latency")} == {"api", "web"}
        assert len(series.label_sets()) == 3


class TestParser:
    """Test precedence and syntax coverage."""

    def test_precedence(self):
        expr = parse_query("a + b * c ^ 2")
        assert isinstance(expr, Binary) and expr.op == "+"
        assert expr.rhs == Binary("*", Selector("b"), Binary("^", Selector("c"), Number(2.0)))

    def test_comparison_binds_looser_than_arithmetic(self):
        expr = parse_query("a - 1 > bool 0 or b")
        assert expr.op == "or"
        assert expr.lhs == Binary(">", Binary("-", Selector("a"), Number(1.0)), Number(0.0), True)

    def test_unary_minus(self):
        assert parse_query("-a") == Unary("-", Selector("a"))
        assert parse_query("+1") == Number(1.0)

    def test_selector_with_range_and_offset(self):
        expr = parse_query('count_over_time(m{a="x", b=~"y.*"}[1h30m] offset 5m)')
        sel = expr.args[0]
        assert expr == Call("count_over_time", (sel,))
        assert sel.matchers == (
            LabelMatcher(name="a", value="x"),
            LabelMatcher(name="b", op=MatchOp.RE, value="y.*"),
        )
        assert sel.range == timedelta(minutes=90)
        assert sel.offset == timedelta(minutes=5)

    def test_recording_rule_names(self):
        assert parse_query('trace_duration:count_5m{service_name="api"}').metric == "trace_duration:count_5m"

    def test_special_numbers(self):
        assert parse_query("+Inf") == Number(math.inf)
        assert parse_query("1e-09") == Number(1e-09)
        assert math.isnan(parse_query("NaN").value)

    def test_aggregation_grouping_either_side(self):
        assert parse_query("sum by (a) (m)") == Aggregate("sum", Selector("m"), ("a",))
        assert parse_query("max(m) without (le)") == Aggregate("max", Selector("m"), ("le",), True)

    def test_string_escapes(self):
        sel = parse_query('m{a="say \\"hi\\""}')
        assert sel.matchers[0].value == 'say "hi"'

    @pytest.mark.parametrize(
        "query",
        ["", "a +", "m{a=1}", "sum(a, b)", "(a", "a[5m][5m]", "1[5m]", "m{a=\"x\"", "a $ b", "rate(a) offset 5m"],
    )
    def test_parse_errors(self, query):
        with pytest.raises(QueryParseError):
            parse_query(query)


class TestEvaluator:
    """Test evaluation semantics."""

    def test_instant_selector_uses_latest_sample_in_lookback(self, series):
        ev = Evaluator(series, lookback=15)
        assert ev.vector("latency", 45) == {API: 4.0, WEB: 7.0}
        assert ev.vector("latency", 60) == {API: 10.0}

    def test_unlimited_lookback(self, series):
        assert Evaluator(series, lookback=None).vector("latency", 1000) == {API: 10.0, WEB: 7.0}

    def test_over_time_functions(self, series):
        ev = Evaluator(series)
        query = 'count_over_time(latency{service_name="api"}[30s])'
        assert ev.vector(query, 50) == {API: 3.0}
        assert ev.vector(query.replace("count", "sum"), 50) == {API: 17.0}
        assert ev.vector(query.replace("count", "max"), 40) == {API: 4.0}

        var = ev.vector(query.replace("count", "stdvar"), 40)[API]
        assert var == pytest.approx(2.0 / 3.0)
        assert ev.vector(query.replace("count", "stddev"), 40)[API] == pytest.approx(math.sqrt(2.0 / 3.0))

    def test_offset(self, series):
        ev = Evaluator(series)
        assert ev.vector('sum_over_time(latency{service_name="api"}[20s] offset 20s)', 50) == {API: 5.0}

    def test_vector_arithmetic_matches_on_labels(self, series):
        ev = Evaluator(series)
        mean = "sum_over_time(latency[1m]) / count_over_time(latency[1m])"
        assert ev.vector(mean, 50) == {API: 4.0, WEB: 6.0}

    def test_comparison_filters(self, series):
        ev = Evaluator(series, lookback=None)
        assert ev.vector("latency > 8", 50) == {API: 10.0}
        assert ev.vector("latency > bool 8", 50) == {API: 1.0, WEB: 0.0}
        assert ev.vector("count_over_time(latency[1m]) - 2 > 0", 50) == {API: 3.0}

    def test_set_operations(self, series):
        ev = Evaluator(series, lookback=None)
        assert ev.vector('latency{service_name="api"} or latency * 0', 50) == {API: 10.0, WEB: 0.0}
        assert ev.vector('latency and latency{service_name="web"}', 50) == {WEB: 7.0}
        assert ev.vector('latency unless latency{service_name="web"}', 50) == {API: 10.0}

    def test_division_by_zero(self, series):
        ev = Evaluator(series, lookback=None)
        assert ev.vector("latency / 0", 50)[API] == math.inf
        assert math.isnan(ev.vector("(latency - latency) / 0", 50)[API])

    def test_clamp_and_sqrt(self, series):
        ev = Evaluator(series, lookback=None)
        assert ev.vector("clamp_min(latency, 8)", 50) == {API: 10.0, WEB: 8.0}
        assert ev.vector("clamp_max(latency, 8)", 50) == {API: 8.0, WEB: 7.0}
        assert math.isnan(ev.vector("sqrt(-latency)", 50)[WEB])

    def test_scalar_arithmetic(self, series):
        ev = Evaluator(series)
        assert ev.instant("2 ^ 3 - 1", 0) == 7.0
        assert ev.instant("5 > bool 3", 0) == 1.0
        with pytest.raises(QueryEvaluationError):
            ev.instant("5 > 3", 0)

    def test_aggregation(self, series):
        ev = Evaluator(series, lookback=None)
        assert ev.vector("sum(latency)", 50) == {(): 17.0}
        assert ev.vector("count by (service_name) (latency)", 50) == {API: 1.0, WEB: 1.0}

    def test_type_errors(self, series):
        ev = Evaluator(series)
        with pytest.raises(QueryEvaluationError):
            ev.instant("latency[5m]", 50)
        with pytest.raises(QueryEvaluationError):
            ev.instant("count_over_time(latency)", 50)
        with pytest.raises(QueryEvaluationError):
            ev.instant("rate(latency[5m])", 50)

    def test_many_to_many_rejected(self):
        store = SeriesStore()
        store.add("a", {"x": "1"}, 1, 1.0)
        store.add("b", {"x": "1"}, 1, 1.0)
        with pytest.raises(QueryEvaluationError):
            Evaluator(store).instant('{x="1"} + {x="1"}', 1)

    def test_range_query_skips_missing_points(self, series):
        points = Evaluator(series, lookback=5).range('latency{service_name="web"}', 10, 50, 10)
        assert points == {WEB: [(20.0, 5.0), (40.0, 7.0)]}

    def test_evaluate_rules_writes_back(self, series):
        ev = Evaluator(series)
        ev.evaluate_rules(
            [
                ("job:count_1m", "count_over_time(latency[1m])"),
                ("job:double", "job:count_1m * 2"),
            ],
            50,
        )
        assert ev.vector("job:double", 50) == {API: 10.0, WEB: 4.0}


class TestHistogramQuantile:
    """Test bucket interpolation."""

    @pytest.fixture
    def buckets(self):
        store = SeriesStore()
        for le, count in [("1.0", 10.0), ("2.0", 30.0), ("4.0", 40.0), ("+Inf", 40.0)]:
            store.add("h_bucket", {"le": le, "service_name": "api"}, 100, count)
        return store

    def test_interpolates_within_bucket(self, buckets):
        ev = Evaluator(buckets)
        assert ev.vector("histogram_quantile(0.5, h_bucket)", 100) == {API: pytest.approx(1.5)}
        assert ev.vector("histogram_quantile(0.1, h_bucket)", 100) == {API: pytest.approx(0.4)}

    def test_top_bucket_returns_highest_finite_bound(self, buckets):
        buckets.add("h_bucket", {"le": "+Inf", "service_name": "api"}, 100, 50.0)
        assert Evaluator(buckets).vector("histogram_quantile(0.99, h_bucket)", 100) == {API: 4.0}

    def test_out_of_range_and_empty(self, buckets):
        ev = Evaluator(buckets)
        assert ev.vector("histogram_quantile(-1, h_bucket)", 100) == {API: -math.inf}
        assert ev.vector("histogram_quantile(2, h_bucket)", 100) == {API: math.inf}
        empty = ev.vector("histogram_quantile(0.5, h_bucket * 0)", 100)
        assert math.isnan(empty[API])

    def test_non_monotone_counts_repaired(self):
        store = SeriesStore()
        for le, count in [("1.0", 10.0), ("2.0", 8.0), ("+Inf", 20.0)]:
            store.add("h_bucket", {"le": le}, 1, count)
        value = Evaluator(store).vector("histogram_quantile(0.25, h_bucket)", 1)[()]
        assert value == pytest.approx(0.5)
