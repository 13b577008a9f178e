"""
Unit tests for the numeric utilities.
"""

import math

import pytest

from tracescore.anomaly.numeric import (
    isclose_relative,
    normal_quantile,
    sqrt,
    students_t_approximation,
    students_t_quantile,
)


def test_sqrt_is_correctly_rounded():
    assert sqrt(2.0) == math.sqrt(2.0)
    assert sqrt(0.0) == 0.0
    assert sqrt(0.25) == 0.5


@pytest.mark.parametrize(
    "q,z",
    [(0.5, 0.0), (0.8413447460685429, 1.0), (0.975, 1.959963984540054), (0.99, 2.3263478740408408)],
)
def test_normal_quantile(q, z):
    assert normal_quantile(q) == pytest.approx(z, abs=1e-9)


def test_normal_quantile_is_symmetric():
    assert normal_quantile(0.1) == pytest.approx(-normal_quantile(0.9))


@pytest.mark.parametrize("q", [0.0, 1.0, -0.5, 1.5])
def test_normal_quantile_out_of_range(q):
    with pytest.raises(ValueError):
        normal_quantile(q)


def test_isclose_relative():
    assert isclose_relative(1.0, 1.0 + 1e-9)
    assert not isclose_relative(1.0, 1.001)
    assert isclose_relative(0.0, 1e-12, abs_tol=1e-9)
    assert not isclose_relative(float("nan"), float("nan"))


@pytest.mark.parametrize(
    "q,df,t",
    [(0.95, 3, 2.353363435), (0.95, 4, 2.131846786), (0.99, 1, 31.82051595), (0.975, 10, 2.228138852)],
)
def test_students_t_quantile(q, df, t):
    assert students_t_quantile(q, df) == pytest.approx(t, rel=1e-6)


def test_students_t_approaches_normal():
    assert students_t_quantile(0.99, 1e7) == pytest.approx(normal_quantile(0.99), rel=1e-6)


@pytest.mark.parametrize("df", [0, -1.0])
def test_students_t_needs_positive_df(df):
    with pytest.raises(ValueError):
        students_t_quantile(0.95, df)


class TestStudentsTApproximation:
    """Test the closed-form fit used inside PromQL."""

    @pytest.mark.parametrize("q", [0.9, 0.95, 0.99])
    def test_error_bounded_over_fitted_range(self, q):
        approx = students_t_approximation(q)

        assert 0.0 <= approx.shift < 1.0
        assert approx.max_error < 0.15
        for df in range(1, approx.max_df + 1):
            exact = students_t_quantile(q, df)
            assert abs(approx(df) - exact) <= approx.max_error * exact + 1e-12

    def test_exact_at_shift_plus_one_and_in_the_limit(self):
        approx = students_t_approximation(0.95)

        assert approx(approx.shift + 1) == pytest.approx(students_t_quantile(0.95, approx.shift + 1), rel=1e-12)
        assert approx(1e9) == pytest.approx(normal_quantile(0.95), rel=1e-6)

    def test_median_is_zero(self):
        approx = students_t_approximation(0.5)
        assert approx(1) == 0.0
        assert approx.max_error == 0.0

    def test_fit_is_cached(self):
        assert students_t_approximation(0.99) is students_t_approximation(0.99)
