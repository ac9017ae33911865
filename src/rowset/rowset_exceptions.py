"""
Rowset Exception Hierarchy

Contains all exception classes raised inside the evaluation engines.

Engines never let these escape their public ``evaluate()`` methods: each one
is converted into an ``EvaluationError`` value (see ``dsl.catpy``) whose
``kind`` is taken from the exception class.
"""

from typing import Any, Optional


class RowsetError(Exception):
    """
    Base exception for all row-set evaluation failures.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "internal"


class ValidationError(RowsetError):
    """
    Raised when a request is malformed: unknown columns, duplicate grouping
    columns, aggregate/type mismatches, invalid frame bounds.

    Always raised before the first row is processed.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "validation"


class TypeMismatchError(RowsetError):
    """
    Raised when a runtime value does not match its declared field type.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "type_mismatch"

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Any = None, row_index: Optional[int] = None):
        super().__init__(message)
        self.field = field
        self.value = value
        self.row_index = row_index


class RecursionLimitExceeded(RowsetError):
    """
    Raised when a recursive evaluation is still producing rows at the
    configured recursion ceiling.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "recursion_limit"

    def __init__(self, depth: int, frontier_size: int, trigger_row: Any = None):
        super().__init__(
            f"Maximum recursion {depth} has been exhausted before statement completion "
            f"({frontier_size} row(s) past the ceiling)"
        )
        self.depth = depth
        self.frontier_size = frontier_size
        self.trigger_row = trigger_row


class EvaluationCancelled(RowsetError):
    """
    Raised when a cooperative cancellation signal is observed.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "cancelled"


class ExpressionError(RowsetError):
    """
    Raised when a caller-supplied callable (aggregate argument, HAVING
    predicate, recursive step) fails.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "expression"


class InternalInvariantViolation(RowsetError):
    """
    Raised when an engine detects that one of its own invariants is broken.

    Never used for user mistakes; those are ``ValidationError``.

    ::: This is-in-layer Utility-Layer.
    ::: This is a exception.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind = "internal"


__all__ = [
    "RowsetError",
    "ValidationError",
    "TypeMismatchError",
    "RecursionLimitExceeded",
    "EvaluationCancelled",
    "ExpressionError",
    "InternalInvariantViolation",
]
