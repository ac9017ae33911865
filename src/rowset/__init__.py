"""
Rowset - embeddable analytical row-set evaluator

Grouped aggregation with ROLLUP/CUBE/GROUPING SETS, window functions over
ordered partitions, and fixed-point evaluation of recursive row sets, over
in-memory relations that convert to and from PyArrow tables.
"""

__version__ = "0.1.0"

from .config import EvaluatorConfig
from .rowset_exceptions import (
    RowsetError,
    ValidationError,
    TypeMismatchError,
    RecursionLimitExceeded,
    EvaluationCancelled,
    ExpressionError,
    InternalInvariantViolation,
)
from .dsl import *  # noqa: F401,F403
from .dsl import __all__ as _dsl_all

__all__ = [
    "EvaluatorConfig",
    "RowsetError",
    "ValidationError",
    "TypeMismatchError",
    "RecursionLimitExceeded",
    "EvaluationCancelled",
    "ExpressionError",
    "InternalInvariantViolation",
] + list(_dsl_all)
