"""
Grouping & Aggregation Engine.

Evaluates GROUP BY with ROLLUP, CUBE and GROUPING SETS:

1. The GroupingSpec is expanded into an ordered list of grouping levels
   (column subsets). Repeated levels are evaluated once.
2. For each level every row is folded into an insertion-ordered mapping
   GroupKey -> accumulators. Grouping columns outside the level hold the
   AGGREGATED marker, never NULL, so a NULL group and a rolled-away column
   stay distinct.
3. Accumulators are finalized into one row per group per level, levels are
   concatenated in level order, and HAVING filters the finalized rows.

Each output row carries its grouping bitset, read back through
``GROUPING(col)`` and ``GROUPING_ID(cols...)``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from itertools import combinations
from typing import (
    Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union,
)

from .aggregates import AggregateExpr, BoundAggregate
from .catpy import EvaluationResult, error_from_exception, eval_ok
from .parallel import CancellationToken, check_cancelled, run_partitions
from .rows import (
    AGGREGATED, EvaluationStats, Field, FieldType, Relation, Row, Schema,
    guard_expression, make_group_key, validate_rows,
)
from ..config import EvaluatorConfig
from ..logging_config import configure_logger_for_debug_trace
from ..rowset_exceptions import InternalInvariantViolation, ValidationError

logger = configure_logger_for_debug_trace(__name__)

# Upper bound on expanded grouping levels for one request
MAX_GROUPING_SETS = 4096

Level = Tuple[str, ...]


# =============================================================================
# Grouping specifications
# =============================================================================

def _unique_columns(columns: Iterable[str], what: str) -> Tuple[str, ...]:
    columns = tuple(columns)
    seen = set()
    for column in columns:
        if not isinstance(column, str) or not column:
            raise ValidationError(f"{what}: column names must be non-empty strings")
        if column in seen:
            raise ValidationError(f"{what}: duplicate column {column}")
        seen.add(column)
    return columns


class GroupingSpec:
    """Base class for the four grouping forms.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @property
    def columns(self) -> Tuple[str, ...]:
        """Every grouping column, in first-mention order."""
        raise NotImplementedError

    def raw_levels(self) -> List[Level]:
        raise NotImplementedError

    def levels(self) -> List[Level]:
        """Expanded, de-duplicated grouping levels in evaluation order.

        Each level lists its columns in ``columns`` order; two levels naming
        the same subset are the same level.
        """
        order = {c: i for i, c in enumerate(self.columns)}
        seen = set()
        levels = []
        for level in self.raw_levels():
            key = frozenset(level)
            if key in seen:
                continue
            seen.add(key)
            levels.append(tuple(sorted(level, key=order.__getitem__)))
        if len(levels) > MAX_GROUPING_SETS:
            raise ValidationError(
                f"Grouping expands to {len(levels)} levels, limit is {MAX_GROUPING_SETS}"
            )
        return levels


@dataclass(frozen=True, init=False)
class Simple(GroupingSpec):
    """Plain GROUP BY; no columns means one global group."""
    group_columns: Tuple[str, ...]

    def __init__(self, columns: Sequence[str] = ()):
        object.__setattr__(self, "group_columns", _unique_columns(columns, "GROUP BY"))

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.group_columns

    def raw_levels(self) -> List[Level]:
        return [self.group_columns]


@dataclass(frozen=True, init=False)
class Rollup(GroupingSpec):
    """ROLLUP(c1..cn): levels [c1..cn], [c1..cn-1], ..., []."""
    group_columns: Tuple[str, ...]

    def __init__(self, columns: Sequence[str]):
        columns = _unique_columns(columns, "ROLLUP")
        if not columns:
            raise ValidationError("ROLLUP requires at least one column")
        object.__setattr__(self, "group_columns", columns)

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.group_columns

    def raw_levels(self) -> List[Level]:
        cols = self.group_columns
        return [cols[:n] for n in range(len(cols), -1, -1)]


@dataclass(frozen=True, init=False)
class Cube(GroupingSpec):
    """CUBE(c1..cn): all 2^n subsets, largest first."""
    group_columns: Tuple[str, ...]

    def __init__(self, columns: Sequence[str]):
        columns = _unique_columns(columns, "CUBE")
        if not columns:
            raise ValidationError("CUBE requires at least one column")
        if 2 ** len(columns) > MAX_GROUPING_SETS:
            raise ValidationError(
                f"CUBE over {len(columns)} columns exceeds {MAX_GROUPING_SETS} grouping sets"
            )
        object.__setattr__(self, "group_columns", columns)

    @property
    def columns(self) -> Tuple[str, ...]:
        return self.group_columns

    def raw_levels(self) -> List[Level]:
        cols = self.group_columns
        levels = []
        for size in range(len(cols), -1, -1):
            levels.extend(combinations(cols, size))
        return levels


@dataclass(frozen=True, init=False)
class Sets(GroupingSpec):
    """GROUPING SETS((...), (...), ()): explicit list of levels."""
    sets: Tuple[Tuple[str, ...], ...]

    def __init__(self, sets: Sequence[Sequence[str]]):
        sets = tuple(_unique_columns(s, "GROUPING SETS") for s in sets)
        if not sets:
            raise ValidationError("GROUPING SETS requires at least one set")
        object.__setattr__(self, "sets", sets)

    @property
    def columns(self) -> Tuple[str, ...]:
        ordered: Dict[str, None] = {}
        for s in self.sets:
            for column in s:
                ordered.setdefault(column, None)
        return tuple(ordered)

    def raw_levels(self) -> List[Level]:
        return list(self.sets)


def as_grouping_spec(spec: Union[GroupingSpec, Sequence[str], str]) -> GroupingSpec:
    """Accept a GroupingSpec, a column name or a list of columns (plain GROUP BY)."""
    if isinstance(spec, GroupingSpec):
        return spec
    if isinstance(spec, str):
        return Simple([spec])
    return Simple(spec)


# =============================================================================
# Grouped output
# =============================================================================

class GroupedRow(Row):
    """A finalized group row that can answer GROUPING() and GROUPING_ID().

    ``grouping_bits`` has one bit per grouping column, the first column in
    the most significant position; a set bit means the column was rolled away
    in this row's level.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    __slots__ = ("_grouping_bits", "_grouping_columns")

    def __init__(self, schema: Schema, values: Iterable[Any], grouping_bits: int,
                 grouping_columns: Tuple[str, ...]):
        super().__init__(schema, values)
        object.__setattr__(self, "_grouping_bits", grouping_bits)
        object.__setattr__(self, "_grouping_columns", grouping_columns)

    @property
    def grouping_bits(self) -> int:
        return self._grouping_bits

    def grouping(self, column: str) -> int:
        """1 if ``column`` is aggregated away in this row, else 0."""
        try:
            index = self._grouping_columns.index(column)
        except ValueError:
            raise ValidationError(f"GROUPING({column}): not a grouping column") from None
        shift = len(self._grouping_columns) - 1 - index
        return (self._grouping_bits >> shift) & 1

    def grouping_id(self, *columns: str) -> int:
        """GROUPING_ID over ``columns`` (all grouping columns when omitted)."""
        columns = columns or self._grouping_columns
        result = 0
        for column in columns:
            result = (result << 1) | self.grouping(column)
        return result


class GroupedRelation(Relation):
    """Relation produced by the grouping engine.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    def __init__(self, schema: Schema, rows: Sequence[GroupedRow],
                 grouping_columns: Tuple[str, ...], levels: Sequence[Level], **kwargs):
        super().__init__(schema, rows, **kwargs)
        self.grouping_columns = grouping_columns
        self.levels = tuple(levels)

    @property
    def grouping_ids(self) -> List[int]:
        """The per-row grouping marker bitsets, in row order."""
        return [row.grouping_bits for row in self.rows]

    def grouping(self, row_index: int, column: str) -> int:
        return self.rows[row_index].grouping(column)

    def grouping_id(self, row_index: int, *columns: str) -> int:
        return self.rows[row_index].grouping_id(*columns)

    def with_grouping_id_column(self, name: str = "grouping_id") -> Relation:
        """Plain relation with the marker bitset as an extra INTEGER column."""
        schema = self.schema.extend(Field(name=name, type=FieldType.INTEGER, nullable=False))
        return Relation(schema, (row.extend(schema, (row.grouping_bits,)) for row in self.rows),
                        ordered=self.ordered, warnings=self.warnings, stats=self.stats)


# =============================================================================
# Engine
# =============================================================================

HavingPredicate = Callable[[GroupedRow], Any]


class GroupingEngine:
    """Evaluates a GroupingSpec with aggregates and HAVING over a relation.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a engine.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    step_name = "group_by"

    def __init__(self, config: Optional[EvaluatorConfig] = None):
        self.config = config or EvaluatorConfig()

    def evaluate(self, relation: Relation, spec: Union[GroupingSpec, Sequence[str], str],
                 aggregates: Sequence[AggregateExpr] = (),
                 having: Optional[HavingPredicate] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 ) -> EvaluationResult[GroupedRelation]:
        """Group ``relation``; returns Ok(GroupedRelation) or Err(EvaluationError)."""
        try:
            return eval_ok(self._evaluate(relation, as_grouping_spec(spec),
                                          list(aggregates), having, cancel_token))
        except Exception as exc:
            logger.debug(f"[group_by] failed: {type(exc).__name__}: {exc}")
            return error_from_exception(self.step_name, exc)

    def _evaluate(self, relation: Relation, spec: GroupingSpec,
                  aggregates: List[AggregateExpr], having: Optional[HavingPredicate],
                  cancel_token: Optional[CancellationToken]) -> GroupedRelation:
        start_time = time.perf_counter()
        schema = relation.schema

        # Validation happens before any row is processed
        grouping_columns = spec.columns
        levels = spec.levels()
        for column in grouping_columns:
            f = schema.field(column)
            if not f.type.orderable:
                raise ValidationError(f"Cannot group by {column} of type {f.type.value}")
        bound = [agg.bind(schema) for agg in aggregates]
        out_schema = self._output_schema(schema, grouping_columns, bound)
        guarded_having = guard_expression(having, "HAVING predicate") if having else None

        if self.config.validate_types:
            validate_rows(schema, relation.rows)

        positions = [schema.position(c) for c in grouping_columns]

        def fold_level(level_index: int) -> List[GroupedRow]:
            return self._fold_level(relation.rows, levels[level_index], grouping_columns,
                                    positions, bound, out_schema, cancel_token)

        per_level = run_partitions(fold_level, list(range(len(levels))), self.config,
                                   cancel_token, label="grouping level")
        rows = [row for level_rows in per_level for row in level_rows]

        if guarded_having is not None:
            check_cancelled(cancel_token, "HAVING")
            rows = [row for row in rows if guarded_having(row)]

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        stats = EvaluationStats(engine="grouping", rows_in=len(relation), rows_out=len(rows),
                                levels=len(levels), elapsed_ms=elapsed_ms)
        logger.debug(f"[group_by] {len(relation)} rows -> {len(rows)} rows over "
                     f"{len(levels)} level(s) in {elapsed_ms:.1f}ms")
        return GroupedRelation(out_schema, rows, grouping_columns, levels, stats=stats)

    @staticmethod
    def _output_schema(schema: Schema, grouping_columns: Tuple[str, ...],
                       bound: List[BoundAggregate]) -> Schema:
        fields = [
            # Rolled-away columns surface as NULL, so every key column is nullable
            Field(name=c, type=schema.field(c).type, nullable=True)
            for c in grouping_columns
        ]
        fields.extend(b.output for b in bound)
        names = [f.name for f in fields]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate output column(s): {', '.join(duplicates)}")
        return Schema(fields=tuple(fields))

    @staticmethod
    def _fold_level(rows: Sequence[Row], level: Level, grouping_columns: Tuple[str, ...],
                    positions: List[int], bound: List[BoundAggregate], out_schema: Schema,
                    cancel_token: Optional[CancellationToken]) -> List[GroupedRow]:
        check_cancelled(cancel_token, "grouping level")
        in_level = set(level)
        key_positions = [p if c in in_level else None
                         for c, p in zip(grouping_columns, positions)]
        width = len(grouping_columns)
        bits = 0
        for index, column in enumerate(grouping_columns):
            if column not in in_level:
                bits |= 1 << (width - 1 - index)

        # GroupKey -> (representative key values, accumulators), insertion ordered
        groups: Dict[Tuple[Any, ...], Tuple[Tuple[Any, ...], list]] = {}
        for row in rows:
            raw = tuple(AGGREGATED if p is None else row[p] for p in key_positions)
            key = make_group_key(raw)
            entry = groups.get(key)
            if entry is None:
                entry = (raw, [b.accumulator() for b in bound])
                groups[key] = entry
            for b, acc in zip(bound, entry[1]):
                acc.add(None if b.extract is None else b.extract(row))

        # The grand-total level yields one row even over empty input
        if not level and not groups:
            groups[()] = (tuple(AGGREGATED for _ in grouping_columns),
                          [b.accumulator() for b in bound])

        output = []
        for raw, accumulators in groups.values():
            if len(raw) != width:
                raise InternalInvariantViolation(
                    f"Group key of width {len(raw)} in a level of width {width}"
                )
            values = tuple(None if v is AGGREGATED else v for v in raw)
            values += tuple(acc.finalize() for acc in accumulators)
            output.append(GroupedRow(out_schema, values, bits, grouping_columns))
        return output


def evaluate_grouping(relation: Relation, spec: Union[GroupingSpec, Sequence[str], str],
                      aggregates: Sequence[AggregateExpr] = (),
                      having: Optional[HavingPredicate] = None,
                      config: Optional[EvaluatorConfig] = None,
                      cancel_token: Optional[CancellationToken] = None,
                      ) -> EvaluationResult[GroupedRelation]:
    """Functional entry point for ``GroupingEngine(config).evaluate(...)``."""
    return GroupingEngine(config).evaluate(relation, spec, aggregates, having, cancel_token)
