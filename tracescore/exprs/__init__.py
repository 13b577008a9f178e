"""
PromQL generation for the streaming statistics, plus a reference evaluator.
"""

from .evaluator import Evaluator, SeriesStore, parse_query
from .precalculated import PrecalculatedBuilder, PrecalculatedExprs, PrecalculatedParams
from .promql import Expr, call, selector
from .schema import PrometheusSchema, build_schema
from .welford import ExpressionGenerator, HorizonExprs, RecordingRule, WelfordExprs, WelfordParams

__all__ = [
	"Evaluator",
	"Expr",
	"ExpressionGenerator",
	"HorizonExprs",
	"PrecalculatedBuilder",
	"PrecalculatedExprs",
	"PrecalculatedParams",
	"PrometheusSchema",
	"RecordingRule",
	"SeriesStore",
	"WelfordExprs",
	"WelfordParams",
	"build_schema",
	"call",
	"parse_query",
	"selector",
]
