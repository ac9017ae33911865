"""
Window Function Engine.

Annotates every input row with one value per window expression without
collapsing rows:

1. Rows are partitioned by PARTITION BY (grouping equality, so NULLs share a
   partition). No PARTITION BY means one partition.
2. Each partition is stable-sorted by ORDER BY; ties keep input order and
   are reported as warnings for order-sensitive functions.
3. Ranking, distribution and offset functions walk the sorted partition.
   Frame functions resolve a [lo, hi) row range per row under ROWS, RANGE
   or GROUPS units and fold it, incrementally while the frame only grows.

Partitions are independent and may run on the worker pool; values are
written back by original row index so output keeps input order.
"""

from __future__ import annotations

import time
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field as dataclass_field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from functools import cmp_to_key
from typing import (
    Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union,
)

from .aggregates import AggregateExpr, BoundAggregate
from .catpy import EvaluationResult, error_from_exception, eval_ok
from .parallel import CancellationToken, check_cancelled, run_partitions
from .rows import (
    EvaluationStats, Field, FieldType, Relation, Row, Schema, SortKey,
    guard_expression, make_group_key, resolve_sort_keys, row_comparator, validate_rows,
)
from ..config import EvaluatorConfig
from ..logging_config import configure_logger_for_debug_trace
from ..rowset_exceptions import TypeMismatchError, ValidationError

logger = configure_logger_for_debug_trace(__name__)


# =============================================================================
# Frames
# =============================================================================

class FrameUnit(str, Enum):
    ROWS = "rows"
    RANGE = "range"
    GROUPS = "groups"


class BoundKind(str, Enum):
    UNBOUNDED_PRECEDING = "unbounded_preceding"
    PRECEDING = "preceding"
    CURRENT_ROW = "current_row"
    FOLLOWING = "following"
    UNBOUNDED_FOLLOWING = "unbounded_following"


_BOUND_RANK = {
    BoundKind.UNBOUNDED_PRECEDING: 0,
    BoundKind.PRECEDING: 1,
    BoundKind.CURRENT_ROW: 2,
    BoundKind.FOLLOWING: 3,
    BoundKind.UNBOUNDED_FOLLOWING: 4,
}


@dataclass(frozen=True)
class FrameBound:
    """One end of a frame.

    ``offset`` is a row or peer-group count for ROWS and GROUPS, and a value
    distance (number, or timedelta for timestamps) for RANGE.
    """
    kind: BoundKind
    offset: Any = None

    @classmethod
    def unbounded_preceding(cls) -> "FrameBound":
        return cls(BoundKind.UNBOUNDED_PRECEDING)

    @classmethod
    def preceding(cls, offset: Any) -> "FrameBound":
        return cls(BoundKind.PRECEDING, offset)

    @classmethod
    def current_row(cls) -> "FrameBound":
        return cls(BoundKind.CURRENT_ROW)

    @classmethod
    def following(cls, offset: Any) -> "FrameBound":
        return cls(BoundKind.FOLLOWING, offset)

    @classmethod
    def unbounded_following(cls) -> "FrameBound":
        return cls(BoundKind.UNBOUNDED_FOLLOWING)

    @property
    def has_offset(self) -> bool:
        return self.kind in (BoundKind.PRECEDING, BoundKind.FOLLOWING)

    def __str__(self) -> str:
        label = self.kind.value.replace("_", " ").upper()
        return f"{self.offset} {label}" if self.has_offset else label


@dataclass(frozen=True)
class Frame:
    """ROWS | RANGE | GROUPS BETWEEN start AND end.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    unit: FrameUnit = FrameUnit.ROWS
    start: FrameBound = FrameBound(BoundKind.UNBOUNDED_PRECEDING)
    end: FrameBound = FrameBound(BoundKind.CURRENT_ROW)

    @classmethod
    def rows(cls, start: FrameBound, end: FrameBound = FrameBound(BoundKind.CURRENT_ROW)) -> "Frame":
        return cls(FrameUnit.ROWS, start, end)

    @classmethod
    def range(cls, start: FrameBound, end: FrameBound = FrameBound(BoundKind.CURRENT_ROW)) -> "Frame":
        return cls(FrameUnit.RANGE, start, end)

    @classmethod
    def groups(cls, start: FrameBound, end: FrameBound = FrameBound(BoundKind.CURRENT_ROW)) -> "Frame":
        return cls(FrameUnit.GROUPS, start, end)

    @property
    def has_offsets(self) -> bool:
        return self.start.has_offset or self.end.has_offset

    def validate(self) -> None:
        start, end = self.start, self.end
        if start.kind is BoundKind.UNBOUNDED_FOLLOWING:
            raise ValidationError("Frame start cannot be UNBOUNDED FOLLOWING")
        if end.kind is BoundKind.UNBOUNDED_PRECEDING:
            raise ValidationError("Frame end cannot be UNBOUNDED PRECEDING")
        for bound in (start, end):
            if not bound.has_offset:
                continue
            offset = bound.offset
            if self.unit is FrameUnit.RANGE:
                valid = isinstance(offset, timedelta) or (
                    isinstance(offset, (int, float, Decimal)) and not isinstance(offset, bool))
                negative = valid and offset < (timedelta(0) if isinstance(offset, timedelta) else 0)
            else:
                valid = isinstance(offset, int) and not isinstance(offset, bool)
                negative = valid and offset < 0
            if not valid:
                raise ValidationError(f"Invalid {self.unit.value.upper()} frame offset {offset!r}")
            if negative:
                raise ValidationError(f"Frame offset must be non-negative, got {offset!r}")
        if start.has_offset and end.has_offset \
                and isinstance(start.offset, timedelta) != isinstance(end.offset, timedelta):
            raise ValidationError(
                f"Frame offsets {start.offset!r} and {end.offset!r} are of different kinds"
            )
        if _BOUND_RANK[start.kind] > _BOUND_RANK[end.kind]:
            raise ValidationError(f"Frame start {start} lies after frame end {end}")
        if start.kind is end.kind is BoundKind.PRECEDING and start.offset < end.offset:
            raise ValidationError(f"Frame start {start} lies after frame end {end}")
        if start.kind is end.kind is BoundKind.FOLLOWING and start.offset > end.offset:
            raise ValidationError(f"Frame start {start} lies after frame end {end}")

    def __str__(self) -> str:
        return f"{self.unit.value.upper()} BETWEEN {self.start} AND {self.end}"


# Implicit frames
DEFAULT_ORDERED_FRAME = Frame(FrameUnit.RANGE, FrameBound.unbounded_preceding(), FrameBound.current_row())
WHOLE_PARTITION_FRAME = Frame(FrameUnit.ROWS, FrameBound.unbounded_preceding(),
                              FrameBound.unbounded_following())


@dataclass(frozen=True)
class WindowSpec:
    """PARTITION BY / ORDER BY / frame of a window.

    ``order_by`` items are SortKeys or column names (``"-col"`` descending).

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    partition_by: Tuple[str, ...] = ()
    order_by: Tuple[SortKey, ...] = ()
    frame: Optional[Frame] = None

    def __post_init__(self):
        partition_by = (self.partition_by,) if isinstance(self.partition_by, str) else self.partition_by
        order_by = (self.order_by,) if isinstance(self.order_by, (str, SortKey)) else self.order_by
        object.__setattr__(self, "partition_by", tuple(partition_by))
        object.__setattr__(self, "order_by", tuple(SortKey.parse(k) for k in order_by))


# =============================================================================
# Window expressions
# =============================================================================

class WindowKind(str, Enum):
    ROW_NUMBER = "row_number"
    RANK = "rank"
    DENSE_RANK = "dense_rank"
    NTILE = "ntile"
    PERCENT_RANK = "percent_rank"
    CUME_DIST = "cume_dist"
    LAG = "lag"
    LEAD = "lead"
    FIRST_VALUE = "first_value"
    LAST_VALUE = "last_value"
    FRAME_AGGREGATE = "frame_aggregate"


_RANKING = frozenset({WindowKind.ROW_NUMBER, WindowKind.RANK, WindowKind.DENSE_RANK,
                      WindowKind.NTILE, WindowKind.PERCENT_RANK, WindowKind.CUME_DIST})
_OFFSET = frozenset({WindowKind.LAG, WindowKind.LEAD})
_FRAMED = frozenset({WindowKind.FIRST_VALUE, WindowKind.LAST_VALUE, WindowKind.FRAME_AGGREGATE})
# Results that change when tied rows swap places
_ORDER_SENSITIVE = frozenset({WindowKind.ROW_NUMBER, WindowKind.NTILE, WindowKind.LAG,
                              WindowKind.LEAD, WindowKind.FIRST_VALUE, WindowKind.LAST_VALUE})

WindowRef = Union[WindowSpec, str, None]


@dataclass(frozen=True)
class WindowExpr:
    """One window function call: kind, arguments and the window it runs over.

    ``over`` is a WindowSpec or the name of a window passed to ``evaluate``.
    ``argument`` is a column name or a callable over the Row.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    kind: WindowKind
    over: WindowRef = None
    alias: Optional[str] = None
    argument: Union[str, Callable[[Row], Any], None] = None
    offset: int = 1
    default: Any = None
    buckets: int = 0
    aggregate: Optional[AggregateExpr] = None
    result_type: Optional[FieldType] = None

    @classmethod
    def row_number(cls, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.ROW_NUMBER, over, alias)

    @classmethod
    def rank(cls, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.RANK, over, alias)

    @classmethod
    def dense_rank(cls, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.DENSE_RANK, over, alias)

    @classmethod
    def ntile(cls, buckets: int, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.NTILE, over, alias, buckets=buckets)

    @classmethod
    def percent_rank(cls, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.PERCENT_RANK, over, alias)

    @classmethod
    def cume_dist(cls, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.CUME_DIST, over, alias)

    @classmethod
    def lag(cls, argument, offset: int = 1, default: Any = None, over: WindowRef = None,
            alias: str = None) -> "WindowExpr":
        return cls(WindowKind.LAG, over, alias, argument, offset, default)

    @classmethod
    def lead(cls, argument, offset: int = 1, default: Any = None, over: WindowRef = None,
             alias: str = None) -> "WindowExpr":
        return cls(WindowKind.LEAD, over, alias, argument, offset, default)

    @classmethod
    def first_value(cls, argument, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.FIRST_VALUE, over, alias, argument)

    @classmethod
    def last_value(cls, argument, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        return cls(WindowKind.LAST_VALUE, over, alias, argument)

    @classmethod
    def of(cls, aggregate: AggregateExpr, over: WindowRef = None, alias: str = None) -> "WindowExpr":
        """A frame aggregate: ``SUM(x) OVER (...)`` and friends."""
        return cls(WindowKind.FRAME_AGGREGATE, over, alias or aggregate.name, aggregate=aggregate)

    @property
    def name(self) -> str:
        if self.alias:
            return self.alias
        if self.kind is WindowKind.FRAME_AGGREGATE and self.aggregate is not None:
            return self.aggregate.name
        if isinstance(self.argument, str):
            return f"{self.kind.value}_{self.argument}"
        return self.kind.value


WindowItem = Union[WindowExpr, Tuple[WindowSpec, WindowExpr]]


@dataclass
class _Resolved:
    """A WindowExpr validated against a schema."""
    expr: WindowExpr
    spec: WindowSpec
    frame: Optional[Frame]
    output: Field
    extract: Optional[Callable[[Row], Any]] = None
    bound: Optional[BoundAggregate] = None
    implicit_last_value: bool = False


@dataclass
class _PartitionResult:
    indices: List[int]
    values: Dict[int, List[Any]]
    tied: bool = False


@dataclass
class _SpecGroup:
    """Expressions sharing one PARTITION BY / ORDER BY."""
    spec: WindowSpec
    members: List[int] = dataclass_field(default_factory=list)


# =============================================================================
# Engine
# =============================================================================

class WindowEngine:
    """Evaluates window expressions over a relation.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a engine.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    step_name = "window"

    def __init__(self, config: Optional[EvaluatorConfig] = None):
        self.config = config or EvaluatorConfig()

    def evaluate(self, relation: Relation, exprs: Sequence[WindowItem],
                 named_windows: Optional[Mapping[str, WindowSpec]] = None,
                 cancel_token: Optional[CancellationToken] = None) -> EvaluationResult[Relation]:
        """Annotate ``relation``; returns Ok(Relation) or Err(EvaluationError)."""
        try:
            return eval_ok(self._evaluate(relation, exprs, named_windows or {}, cancel_token))
        except Exception as exc:
            logger.debug(f"[window] failed: {type(exc).__name__}: {exc}")
            return error_from_exception(self.step_name, exc)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _resolve(self, schema: Schema, item: WindowItem,
                 named_windows: Mapping[str, WindowSpec]) -> _Resolved:
        if isinstance(item, tuple):
            spec, expr = item
        else:
            expr, spec = item, item.over
        if isinstance(spec, str):
            if spec not in named_windows:
                raise ValidationError(f"Unknown window name: {spec}")
            spec = named_windows[spec]
        if spec is None:
            spec = WindowSpec()

        kind = expr.kind
        for column in spec.partition_by:
            if not schema.field(column).type.orderable:
                raise ValidationError(f"Cannot partition by unorderable column {column}")
        resolved_keys = resolve_sort_keys(schema, spec.order_by)

        if kind in _RANKING or kind in _OFFSET:
            if not spec.order_by:
                raise ValidationError(f"{kind.value.upper()} requires ORDER BY")
            if spec.frame is not None:
                raise ValidationError(f"{kind.value.upper()} does not accept a frame")
        if kind is WindowKind.NTILE and (not isinstance(expr.buckets, int)
                                         or isinstance(expr.buckets, bool) or expr.buckets <= 0):
            raise ValidationError(f"NTILE requires a positive bucket count, got {expr.buckets!r}")
        if kind in _OFFSET and (not isinstance(expr.offset, int) or isinstance(expr.offset, bool)
                                or expr.offset < 0):
            raise ValidationError(f"{kind.value.upper()} offset must be a non-negative integer")

        frame = None
        implicit_last_value = False
        if kind in _FRAMED:
            frame = spec.frame
            if frame is None:
                if not spec.order_by:
                    frame = WHOLE_PARTITION_FRAME
                elif kind is WindowKind.LAST_VALUE and self.config.last_value_full_partition:
                    frame = WHOLE_PARTITION_FRAME
                else:
                    frame = DEFAULT_ORDERED_FRAME
                    implicit_last_value = kind is WindowKind.LAST_VALUE
            else:
                frame.validate()
                if frame.unit is FrameUnit.RANGE:
                    if len(resolved_keys) != 1:
                        raise ValidationError(
                            f"RANGE frame requires exactly one ORDER BY column, "
                            f"got {len(resolved_keys)}"
                        )
                    if frame.has_offsets:
                        key_type = schema.fields[resolved_keys[0][0]].type
                        self._check_range_offsets(frame, key_type)
                if frame.unit is FrameUnit.GROUPS and not spec.order_by:
                    raise ValidationError("GROUPS frame requires ORDER BY")

        extract = None
        bound = None
        if kind is WindowKind.FRAME_AGGREGATE:
            if expr.aggregate is None:
                raise ValidationError("Frame aggregate requires an AggregateExpr")
            bound = expr.aggregate.bind(schema)
            output = Field(name=expr.name, type=bound.output.type)
        elif kind in _RANKING:
            rank_type = FieldType.DECIMAL if kind in (WindowKind.PERCENT_RANK,
                                                      WindowKind.CUME_DIST) else FieldType.INTEGER
            output = Field(name=expr.name, type=rank_type, nullable=False)
        else:
            if expr.argument is None:
                raise ValidationError(f"{kind.value.upper()} requires an argument")
            if isinstance(expr.argument, str):
                position = schema.position(expr.argument)
                extract = lambda row, _p=position: row[_p]
                value_type = schema.fields[position].type
            elif callable(expr.argument):
                extract = guard_expression(expr.argument, f"{kind.value.upper()} argument")
                value_type = expr.result_type or FieldType.DECIMAL
            else:
                raise ValidationError(f"{kind.value.upper()} argument must be a column or callable")
            output = Field(name=expr.name, type=value_type)

        return _Resolved(expr, spec, frame, output, extract, bound, implicit_last_value)

    @staticmethod
    def _check_range_offsets(frame: Frame, key_type: FieldType) -> None:
        for bound in (frame.start, frame.end):
            if not bound.has_offset:
                continue
            if key_type is FieldType.TIMESTAMP:
                if not isinstance(bound.offset, timedelta):
                    raise ValidationError("RANGE offset over a timestamp must be a timedelta")
            elif key_type.numeric:
                if isinstance(bound.offset, timedelta):
                    raise ValidationError("RANGE offset over a number must be numeric")
            else:
                raise ValidationError(
                    f"RANGE offset requires a numeric or timestamp ORDER BY, got {key_type.value}"
                )

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def _evaluate(self, relation: Relation, items: Sequence[WindowItem],
                  named_windows: Mapping[str, WindowSpec],
                  cancel_token: Optional[CancellationToken]) -> Relation:
        start_time = time.perf_counter()
        schema = relation.schema
        resolved = [self._resolve(schema, item, named_windows) for item in items]

        names = schema.names + [r.output.name for r in resolved]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate output column(s): {', '.join(duplicates)}")
        out_schema = schema.extend(*(r.output for r in resolved))

        if self.config.validate_types:
            validate_rows(schema, relation.rows)

        rows = relation.rows
        columns: List[List[Any]] = [[None] * len(rows) for _ in resolved]
        warnings: List[str] = []
        partition_count = 0

        groups: Dict[Tuple[Tuple[str, ...], Tuple[SortKey, ...]], _SpecGroup] = {}
        for index, r in enumerate(resolved):
            key = (r.spec.partition_by, r.spec.order_by)
            groups.setdefault(key, _SpecGroup(r.spec)).members.append(index)

        for group in groups.values():
            partitions = self._partition(rows, schema, group.spec)
            partition_count += len(partitions)
            resolved_keys = resolve_sort_keys(schema, group.spec.order_by)
            members = [(i, resolved[i]) for i in group.members]

            def run(indices: List[int]) -> _PartitionResult:
                return self._evaluate_partition(rows, indices, resolved_keys, members)

            results = run_partitions(run, partitions, self.config, cancel_token,
                                     label="window partition")
            tied = False
            for result in results:
                tied = tied or result.tied
                for member, values in result.values.items():
                    column = columns[member]
                    for original, value in zip(result.indices, values):
                        column[original] = value

            if tied:
                order_cols = ", ".join(k.column for k in group.spec.order_by)
                for i, r in members:
                    if r.expr.kind in _ORDER_SENSITIVE or (
                            r.frame is not None and r.frame.unit is FrameUnit.ROWS
                            and r.frame != WHOLE_PARTITION_FRAME):
                        warnings.append(
                            f"{r.output.name}: ORDER BY ({order_cols}) has ties; "
                            f"{r.expr.kind.value.upper()} over tied rows follows input order"
                        )
            for i, r in members:
                if r.implicit_last_value:
                    warnings.append(
                        f"{r.output.name}: LAST_VALUE with ORDER BY and no frame uses "
                        f"{DEFAULT_ORDERED_FRAME} and returns the current row's last peer"
                    )

        check_cancelled(cancel_token, "window output")
        out_rows = [row.extend(out_schema, [column[i] for column in columns])
                    for i, row in enumerate(rows)]
        for warning in warnings:
            logger.warning(f"[window] {warning}")

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        stats = EvaluationStats(engine="window", rows_in=len(rows), rows_out=len(out_rows),
                                partitions=partition_count, elapsed_ms=elapsed_ms)
        logger.debug(f"[window] {len(resolved)} expression(s) over {partition_count} "
                     f"partition(s), {len(rows)} rows in {elapsed_ms:.1f}ms")
        return Relation(out_schema, out_rows, ordered=relation.ordered,
                        warnings=relation.warnings + tuple(warnings), stats=stats)

    @staticmethod
    def _partition(rows: Sequence[Row], schema: Schema, spec: WindowSpec) -> List[List[int]]:
        if not spec.partition_by:
            return [list(range(len(rows)))] if rows else []
        positions = [schema.position(c) for c in spec.partition_by]
        partitions: Dict[Tuple[Any, ...], List[int]] = {}
        for index, row in enumerate(rows):
            key = make_group_key(row[p] for p in positions)
            partitions.setdefault(key, []).append(index)
        return list(partitions.values())

    def _evaluate_partition(self, rows: Sequence[Row], indices: List[int],
                            resolved_keys, members) -> _PartitionResult:
        if resolved_keys:
            compare = row_comparator(resolved_keys)
            indices = sorted(indices, key=cmp_to_key(lambda a, b: compare(rows[a], rows[b])))
        ordered = [rows[i] for i in indices]
        n = len(ordered)

        # Peer groups: consecutive rows equal on every ORDER BY key
        key_positions = [p for p, _ in resolved_keys]
        peer_group = [0] * n
        group_bounds: List[List[int]] = []
        previous = None
        for i, row in enumerate(ordered):
            current = make_group_key(row[p] for p in key_positions)
            if i == 0 or current != previous:
                group_bounds.append([i, i])
            else:
                group_bounds[-1][1] = i
            peer_group[i] = len(group_bounds) - 1
            previous = current
        tied = bool(key_positions) and len(group_bounds) < n

        values: Dict[int, List[Any]] = {}
        for member, r in members:
            kind = r.expr.kind
            if kind in _RANKING:
                values[member] = self._ranking(kind, r.expr.buckets, n, peer_group, group_bounds)
            elif kind in _OFFSET:
                step = -r.expr.offset if kind is WindowKind.LAG else r.expr.offset
                extracted = [r.extract(row) for row in ordered]
                values[member] = [
                    extracted[i + step] if 0 <= i + step < n else r.expr.default
                    for i in range(n)
                ]
            else:
                values[member] = self._framed(r, ordered, resolved_keys, peer_group, group_bounds)
        return _PartitionResult(indices, values, tied)

    @staticmethod
    def _ranking(kind: WindowKind, buckets: int, n: int, peer_group: List[int],
                 group_bounds: List[List[int]]) -> List[Any]:
        if kind is WindowKind.ROW_NUMBER:
            return [i + 1 for i in range(n)]
        if kind is WindowKind.RANK:
            return [group_bounds[peer_group[i]][0] + 1 for i in range(n)]
        if kind is WindowKind.DENSE_RANK:
            return [peer_group[i] + 1 for i in range(n)]
        if kind is WindowKind.PERCENT_RANK:
            if n <= 1:
                return [0.0] * n
            return [group_bounds[peer_group[i]][0] / (n - 1) for i in range(n)]
        if kind is WindowKind.CUME_DIST:
            return [(group_bounds[peer_group[i]][1] + 1) / n for i in range(n)]
        # NTILE: the first n % buckets buckets take one extra row
        small, remainder = divmod(n, buckets)
        large_rows = remainder * (small + 1)
        result = []
        for i in range(n):
            if i < large_rows:
                result.append(i // (small + 1) + 1)
            else:
                result.append(remainder + (i - large_rows) // small + 1)
        return result

    def _framed(self, r: _Resolved, ordered: List[Row], resolved_keys,
                peer_group: List[int], group_bounds: List[List[int]]) -> List[Any]:
        n = len(ordered)
        frame = r.frame
        bounds = _FrameResolver(frame, ordered, resolved_keys, peer_group, group_bounds)
        kind = r.expr.kind

        if kind in (WindowKind.FIRST_VALUE, WindowKind.LAST_VALUE):
            extracted = [r.extract(row) for row in ordered]
            result = []
            for i in range(n):
                lo, hi = bounds.resolve(i)
                if lo >= hi:
                    result.append(None)
                else:
                    result.append(extracted[lo] if kind is WindowKind.FIRST_VALUE else extracted[hi - 1])
            return result

        bound = r.bound
        extract = bound.extract
        inputs = [None if extract is None else extract(row) for row in ordered]
        result = []
        acc = None
        prev_lo = prev_hi = 0
        for i in range(n):
            lo, hi = bounds.resolve(i)
            if hi < lo:
                hi = lo
            if acc is not None and lo == prev_lo and hi >= prev_hi:
                for j in range(prev_hi, hi):
                    acc.add(inputs[j])
            else:
                acc = bound.accumulator()
                for j in range(lo, hi):
                    acc.add(inputs[j])
            prev_lo, prev_hi = lo, hi
            result.append(acc.value())
        if acc is not None:
            acc.finalize()
        return result


class _FrameResolver:
    """Maps a current row index to its [lo, hi) frame within a sorted partition."""

    def __init__(self, frame: Frame, ordered: List[Row], resolved_keys,
                 peer_group: List[int], group_bounds: List[List[int]]):
        self.frame = frame
        self.n = len(ordered)
        self.peer_group = peer_group
        self.group_bounds = group_bounds
        self.keys: List[Any] = []
        self.descending = False
        if frame.unit is FrameUnit.RANGE and frame.has_offsets:
            position, sort_key = resolved_keys[0]
            self.keys = [row[position] for row in ordered]
            self.descending = sort_key.descending
            non_null = [i for i, k in enumerate(self.keys) if k is not None]
            self.first = non_null[0] if non_null else self.n
            self.values = [self.keys[i] for i in non_null]
            self.ascending_values = self.values[::-1] if self.descending else self.values

    def resolve(self, i: int) -> Tuple[int, int]:
        lo = self._start(i)
        hi = self._end(i)
        return max(lo, 0), min(hi, self.n)

    def _start(self, i: int) -> int:
        bound = self.frame.start
        kind = bound.kind
        if kind is BoundKind.UNBOUNDED_PRECEDING:
            return 0
        unit = self.frame.unit
        if unit is FrameUnit.ROWS:
            if kind is BoundKind.CURRENT_ROW:
                return i
            return i - bound.offset if kind is BoundKind.PRECEDING else i + bound.offset
        if unit is FrameUnit.GROUPS or kind is BoundKind.CURRENT_ROW:
            return self._group_start(i, bound)
        return self._range_start(i, bound)

    def _end(self, i: int) -> int:
        bound = self.frame.end
        kind = bound.kind
        if kind is BoundKind.UNBOUNDED_FOLLOWING:
            return self.n
        unit = self.frame.unit
        if unit is FrameUnit.ROWS:
            if kind is BoundKind.CURRENT_ROW:
                return i + 1
            return i - bound.offset + 1 if kind is BoundKind.PRECEDING else i + bound.offset + 1
        if unit is FrameUnit.GROUPS or kind is BoundKind.CURRENT_ROW:
            return self._group_end(i, bound)
        return self._range_end(i, bound)

    # Peer groups (RANGE CURRENT ROW and GROUPS offsets)

    def _group_start(self, i: int, bound: FrameBound) -> int:
        g = self.peer_group[i]
        if bound.kind is BoundKind.PRECEDING:
            g -= bound.offset
            return self.group_bounds[max(g, 0)][0]
        if bound.kind is BoundKind.FOLLOWING:
            g += bound.offset
            return self.n if g >= len(self.group_bounds) else self.group_bounds[g][0]
        return self.group_bounds[g][0]

    def _group_end(self, i: int, bound: FrameBound) -> int:
        g = self.peer_group[i]
        if bound.kind is BoundKind.PRECEDING:
            g -= bound.offset
            return 0 if g < 0 else self.group_bounds[g][1] + 1
        if bound.kind is BoundKind.FOLLOWING:
            g += bound.offset
            return self.group_bounds[min(g, len(self.group_bounds) - 1)][1] + 1
        return self.group_bounds[g][1] + 1

    # Value distances (RANGE with offsets)

    def _target(self, i: int, bound: FrameBound) -> Any:
        value = self.keys[i]
        backwards = (bound.kind is BoundKind.PRECEDING) != self.descending
        try:
            return value - bound.offset if backwards else value + bound.offset
        except TypeError:
            raise TypeMismatchError(
                f"Cannot apply RANGE offset {bound.offset!r} to {value!r}", value=value
            ) from None

    def _first_at_or_after(self, target: Any) -> int:
        if self.descending:
            return self.first + len(self.values) - bisect_right(self.ascending_values, target)
        return self.first + bisect_left(self.values, target)

    def _first_after(self, target: Any) -> int:
        if self.descending:
            return self.first + len(self.values) - bisect_left(self.ascending_values, target)
        return self.first + bisect_right(self.values, target)

    def _range_start(self, i: int, bound: FrameBound) -> int:
        if self.keys[i] is None:
            # NULL keys frame over their NULL peers
            return self._group_start(i, FrameBound.current_row())
        return self._first_at_or_after(self._target(i, bound))

    def _range_end(self, i: int, bound: FrameBound) -> int:
        if self.keys[i] is None:
            return self._group_end(i, FrameBound.current_row())
        return self._first_after(self._target(i, bound))


def evaluate_window(relation: Relation, exprs: Sequence[WindowItem],
                    named_windows: Optional[Mapping[str, WindowSpec]] = None,
                    config: Optional[EvaluatorConfig] = None,
                    cancel_token: Optional[CancellationToken] = None) -> EvaluationResult[Relation]:
    """Functional entry point for ``WindowEngine(config).evaluate(...)``."""
    return WindowEngine(config).evaluate(relation, exprs, named_windows, cancel_token)
