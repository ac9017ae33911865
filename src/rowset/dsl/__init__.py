"""
Rowset DSL - analytical row-set evaluation (Python Embedded Version)

Three engines over one Row Model:
- grouping: GROUP BY / HAVING / ROLLUP / CUBE / GROUPING SETS
- window: ranking, distribution, offset and frame functions
- recursive: anchor + frontier iteration to a fixed point

Category Theory:
- Pipeline is a Monad with bind/fmap/pure
- Steps are Kleisli arrows: Relation -> Result[Relation, EvaluationError]
- Error propagation via Result monad (Ok/Err)

Example:
    result = (
        Pipeline.from_relation(sales)
        .group_by(Rollup(["region", "product"]), [AggregateExpr.sum("amount")])
        .order_by("region", "product")
        .run(Context())
    )
"""

# Category theory foundations
from .catpy import (
    Functor, Applicative, Monad,
    Result, Ok, Err,
    ErrorKind, EvaluationError, EvaluationResult,
    eval_ok, eval_err, error_from_exception,
)

# Row Model
from .rows import (
    FieldType, Field, Schema, Row, Relation, SortKey, EvaluationStats,
    AGGREGATED, grouping_equal, sql_equals, compare_nullable, sort_rows,
    ensure_relation, infer_schema,
)

# Engines
from .aggregates import AggregateKind, AggregateExpr, AggregateAccumulator
from .grouping import (
    GroupingSpec, Simple, Rollup, Cube, Sets,
    GroupedRow, GroupedRelation, GroupingEngine, evaluate_grouping,
)
from .window import (
    FrameUnit, BoundKind, FrameBound, Frame, WindowSpec, WindowKind, WindowExpr,
    WindowEngine, evaluate_window,
)
from .recursive import (
    RecursionState, RecursiveSpec, RecursiveEvaluator, evaluate_recursive,
)
from .parallel import CancellationToken

# Core pipeline types
from .core import (
    Pipeline, Context, Step, Source,
    relation, value, recursive,
)

__all__ = [
    # Category Theory (from catpy)
    "Functor",
    "Applicative",
    "Monad",
    "Result",
    "Ok",
    "Err",
    "ErrorKind",
    "EvaluationError",
    "EvaluationResult",
    "eval_ok",
    "eval_err",
    "error_from_exception",
    # Row Model
    "FieldType",
    "Field",
    "Schema",
    "Row",
    "Relation",
    "SortKey",
    "EvaluationStats",
    "AGGREGATED",
    "grouping_equal",
    "sql_equals",
    "compare_nullable",
    "sort_rows",
    "ensure_relation",
    "infer_schema",
    # Aggregation
    "AggregateKind",
    "AggregateExpr",
    "AggregateAccumulator",
    "GroupingSpec",
    "Simple",
    "Rollup",
    "Cube",
    "Sets",
    "GroupedRow",
    "GroupedRelation",
    "GroupingEngine",
    "evaluate_grouping",
    # Windows
    "FrameUnit",
    "BoundKind",
    "FrameBound",
    "Frame",
    "WindowSpec",
    "WindowKind",
    "WindowExpr",
    "WindowEngine",
    "evaluate_window",
    # Recursion
    "RecursionState",
    "RecursiveSpec",
    "RecursiveEvaluator",
    "evaluate_recursive",
    "CancellationToken",
    # Pipeline
    "Pipeline",
    "Context",
    "Step",
    "Source",
    "relation",
    "value",
    "recursive",
]
