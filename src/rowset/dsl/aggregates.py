"""
Aggregate expressions and accumulators.

An AggregateExpr describes one aggregate column (kind, argument, DISTINCT,
alias). Binding it against a Schema validates the argument and yields the
extractor plus the output Field. An AggregateAccumulator folds values for one
group (or one window frame) and is finalized exactly once.

Dispatch over the aggregate kind is a closed if/elif over AggregateKind.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from .rows import (
    Field, FieldType, Row, Schema, compare_values, grouping_value, guard_expression,
)
from ..rowset_exceptions import (
    InternalInvariantViolation, TypeMismatchError, ValidationError,
)


class AggregateKind(str, Enum):
    """Closed set of aggregate functions.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    STRING_AGG = "string_agg"
    STDEV = "stdev"
    STDEVP = "stdevp"
    VAR = "var"
    VARP = "varp"

    @property
    def numeric_only(self) -> bool:
        return self in _NUMERIC_KINDS


_NUMERIC_KINDS = frozenset({
    AggregateKind.SUM, AggregateKind.AVG, AggregateKind.STDEV,
    AggregateKind.STDEVP, AggregateKind.VAR, AggregateKind.VARP,
})

Argument = Union[str, Callable[[Row], Any], None]


@dataclass(frozen=True)
class BoundAggregate:
    """An AggregateExpr resolved against a concrete schema."""
    expr: "AggregateExpr"
    extract: Optional[Callable[[Row], Any]]  # None means COUNT(*)
    output: Field

    def accumulator(self) -> "AggregateAccumulator":
        return AggregateAccumulator(self.expr.kind, self.expr.distinct,
                                    count_rows=self.extract is None,
                                    separator=self.expr.separator)


@dataclass(frozen=True)
class AggregateExpr:
    """One aggregate column of a grouping or window evaluation.

    ``argument`` is a column name, a callable over the Row, or None for
    ``COUNT(*)``. ``result_type`` declares the output type of a callable
    argument; column arguments derive it from the column.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind: AggregateKind
    argument: Argument = None
    alias: Optional[str] = None
    distinct: bool = False
    separator: str = ","
    result_type: Optional[FieldType] = None

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def count(cls, argument: Argument = None, alias: str = None,
              distinct: bool = False) -> "AggregateExpr":
        """COUNT(*) when argument is None, otherwise COUNT([DISTINCT] argument)."""
        return cls(AggregateKind.COUNT, argument, alias, distinct)

    @classmethod
    def sum(cls, argument: Argument, alias: str = None, distinct: bool = False,
            result_type: FieldType = None) -> "AggregateExpr":
        return cls(AggregateKind.SUM, argument, alias, distinct, result_type=result_type)

    @classmethod
    def avg(cls, argument: Argument, alias: str = None, distinct: bool = False) -> "AggregateExpr":
        return cls(AggregateKind.AVG, argument, alias, distinct)

    @classmethod
    def min(cls, argument: Argument, alias: str = None,
            result_type: FieldType = None) -> "AggregateExpr":
        return cls(AggregateKind.MIN, argument, alias, result_type=result_type)

    @classmethod
    def max(cls, argument: Argument, alias: str = None,
            result_type: FieldType = None) -> "AggregateExpr":
        return cls(AggregateKind.MAX, argument, alias, result_type=result_type)

    @classmethod
    def string_agg(cls, argument: Argument, separator: str = ",", alias: str = None,
                   distinct: bool = False) -> "AggregateExpr":
        return cls(AggregateKind.STRING_AGG, argument, alias, distinct, separator)

    @classmethod
    def stdev(cls, argument: Argument, alias: str = None) -> "AggregateExpr":
        return cls(AggregateKind.STDEV, argument, alias)

    @classmethod
    def stdevp(cls, argument: Argument, alias: str = None) -> "AggregateExpr":
        return cls(AggregateKind.STDEVP, argument, alias)

    @classmethod
    def var(cls, argument: Argument, alias: str = None) -> "AggregateExpr":
        return cls(AggregateKind.VAR, argument, alias)

    @classmethod
    def varp(cls, argument: Argument, alias: str = None) -> "AggregateExpr":
        return cls(AggregateKind.VARP, argument, alias)

    # -------------------------------------------------------------------------
    # Binding
    # -------------------------------------------------------------------------

    @property
    def name(self) -> str:
        """Output column name."""
        if self.alias:
            return self.alias
        if self.argument is None:
            return self.kind.value
        if isinstance(self.argument, str):
            prefix = f"{self.kind.value}_distinct" if self.distinct else self.kind.value
            return f"{prefix}_{self.argument}"
        return f"{self.kind.value}_expr"

    def bind(self, schema: Schema) -> BoundAggregate:
        """Validate against ``schema``; raises ValidationError before any row is read."""
        kind = self.kind
        if self.argument is None:
            if kind is not AggregateKind.COUNT:
                raise ValidationError(f"{kind.value.upper()} requires an argument")
            if self.distinct:
                raise ValidationError("COUNT(DISTINCT *) is not valid")
            return BoundAggregate(self, None, Field(name=self.name, type=FieldType.INTEGER,
                                                    nullable=False))

        if isinstance(self.argument, str):
            source = schema.field(self.argument)
            position = schema.position(self.argument)
            if kind.numeric_only and not source.type.numeric:
                raise ValidationError(
                    f"{kind.value.upper()} over non-numeric column {source.name} "
                    f"({source.type.value})"
                )
            if kind in (AggregateKind.MIN, AggregateKind.MAX, AggregateKind.STRING_AGG) \
                    and not source.type.orderable:
                raise ValidationError(
                    f"{kind.value.upper()} over unorderable column {source.name}"
                )
            if self.distinct and not source.type.orderable:
                raise ValidationError(f"DISTINCT over unorderable column {source.name}")
            extract = lambda row, _p=position: row[_p]
            argument_type = source.type
        elif callable(self.argument):
            extract = guard_expression(self.argument, f"{kind.value.upper()} argument")
            argument_type = self.result_type or FieldType.DECIMAL
        else:
            raise ValidationError(f"Aggregate argument must be a column name or callable, "
                                  f"got {type(self.argument).__name__}")

        return BoundAggregate(self, extract, Field(name=self.name,
                                                   type=self._output_type(argument_type)))

    def _output_type(self, argument_type: FieldType) -> FieldType:
        kind = self.kind
        if kind is AggregateKind.COUNT:
            return FieldType.INTEGER
        if kind is AggregateKind.STRING_AGG:
            return FieldType.TEXT
        if kind in (AggregateKind.SUM, AggregateKind.MIN, AggregateKind.MAX):
            return argument_type
        return FieldType.DECIMAL


def _add_numbers(total: Any, value: Any) -> Any:
    """Add two DECIMAL-column values; a float meeting a Decimal is promoted."""
    if isinstance(total, Decimal) and isinstance(value, float):
        value = Decimal(str(value))
    elif isinstance(total, float) and isinstance(value, Decimal):
        total = Decimal(str(total))
    return total + value


class AggregateAccumulator:
    """Per-group fold state for one aggregate.

    Mutable while the group is folded; ``finalize()`` freezes it and any
    further ``add()`` is an internal invariant violation. ``value()`` peeks at
    the running result without freezing, which incremental window frames use.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a accumulator.
    ::: This is-in-process Main-Process.
    ::: This is stateful.
    """
    __slots__ = ("kind", "distinct", "count_rows", "separator", "count",
                 "total", "extreme", "parts", "mean", "m2", "seen", "_final")

    _UNSET = object()

    def __init__(self, kind: AggregateKind, distinct: bool = False,
                 count_rows: bool = False, separator: str = ","):
        self.kind = kind
        self.distinct = distinct
        self.count_rows = count_rows
        self.separator = separator
        self.count = 0
        self.total: Any = None
        self.extreme: Any = None
        self.parts: List[str] = []
        self.mean = 0.0
        self.m2 = 0.0
        self.seen = set() if distinct else None
        self._final: Any = self._UNSET

    @property
    def finalized(self) -> bool:
        return self._final is not self._UNSET

    def add(self, value: Any) -> None:
        if self._final is not self._UNSET:
            raise InternalInvariantViolation(
                f"{self.kind.value} accumulator received a value after finalization"
            )
        if self.count_rows:
            self.count += 1
            return
        if value is None:
            return
        if self.seen is not None:
            key = grouping_value(value)
            if key in self.seen:
                return
            self.seen.add(key)

        kind = self.kind
        self.count += 1
        if kind is AggregateKind.COUNT:
            return
        if kind is AggregateKind.STRING_AGG:
            self.parts.append(value if isinstance(value, str) else str(value))
            return
        if kind in (AggregateKind.MIN, AggregateKind.MAX):
            if self.extreme is None:
                self.extreme = value
            else:
                result = compare_values(value, self.extreme)
                if (kind is AggregateKind.MIN and result < 0) or \
                        (kind is AggregateKind.MAX and result > 0):
                    self.extreme = value
            return

        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise TypeMismatchError(
                f"{kind.value.upper()} received non-numeric value {value!r}", value=value
            )
        if kind in (AggregateKind.SUM, AggregateKind.AVG):
            self.total = value if self.total is None else _add_numbers(self.total, value)
            return

        # Welford update for the variance family
        x = float(value)
        delta = x - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (x - self.mean)

    def value(self) -> Any:
        """Current result without finalizing."""
        if self._final is not self._UNSET:
            return self._final
        kind = self.kind
        if kind is AggregateKind.COUNT:
            return self.count
        if self.count == 0:
            return None
        if kind is AggregateKind.SUM:
            return self.total
        if kind is AggregateKind.AVG:
            return self.total / self.count
        if kind in (AggregateKind.MIN, AggregateKind.MAX):
            return self.extreme
        if kind is AggregateKind.STRING_AGG:
            return self.separator.join(self.parts)
        if kind in (AggregateKind.VAR, AggregateKind.STDEV):
            if self.count < 2:
                return None
            variance = self.m2 / (self.count - 1)
        else:
            variance = self.m2 / self.count
        if kind in (AggregateKind.STDEV, AggregateKind.STDEVP):
            return math.sqrt(variance)
        return variance

    def finalize(self) -> Any:
        if self._final is self._UNSET:
            self._final = self.value()
        return self._final


def fold(bound: BoundAggregate, rows) -> Any:
    """Aggregate ``rows`` in one pass and return the finalized value."""
    acc = bound.accumulator()
    extract = bound.extract
    for row in rows:
        acc.add(None if extract is None else extract(row))
    return acc.finalize()
