"""
Pipeline composition over Relations.

A Pipeline is a lazy chain: one Source produces a Relation, and Steps
transform it in the documented logical order (WHERE -> GROUP BY -> HAVING ->
window functions -> SELECT -> ORDER BY). Nothing runs until ``run()``.

Every Source and Step returns a Result, so the first failure short-circuits
the chain. The cancellation token in the Context is checked between steps.

Example:
    pipeline = (
        Pipeline.from_relation(employees)
        .filter(lambda row: row["salary"] is not None)
        .group_by(Rollup(["dept", "title"]), [AggregateExpr.sum("salary")])
        .window([WindowExpr.rank(WindowSpec(order_by=["-sum_salary"]))])
        .order_by("dept", "title")
    )
    result = pipeline.run(Context())  # Result[Relation, EvaluationError]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Tuple,
    TypeVar, Union,
)

import pyarrow as pa

from .aggregates import AggregateExpr
from .catpy import EvaluationResult, Monad, error_from_exception, eval_ok
from .grouping import GroupingEngine, GroupingSpec, HavingPredicate
from .parallel import CancellationToken, check_cancelled
from .recursive import RecursiveEvaluator, RecursiveSpec
from .rows import (
    Field, Relation, Row, Schema, SortKey, ensure_relation, guard_expression, sort_rows,
)
from .window import WindowEngine, WindowItem, WindowSpec
from ..config import EvaluatorConfig
from ..rowset_exceptions import ValidationError

T = TypeVar("T")
U = TypeVar("U")


__all__ = [
    "Context",
    "Source", "RelationSource", "ValueSource", "RecursiveSource",
    "Step", "ComposedStep", "FilterStep", "SelectStep", "OrderByStep",
    "LimitStep", "OffsetStep", "GroupByStep", "WindowStep",
    "Pipeline", "BoundPipeline",
    "relation", "value", "recursive",
]


# =============================================================================
# Pipeline Context
# =============================================================================

@dataclass
class Context:
    """Execution context for pipelines.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a context.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    config: EvaluatorConfig = field(default_factory=EvaluatorConfig)
    params: Dict[str, Any] = field(default_factory=dict)
    cancel_token: Optional[CancellationToken] = None

    def with_params(self, **kwargs) -> "Context":
        """Create a new context with additional params."""
        return Context(
            config=self.config,
            params={**self.params, **kwargs},
            cancel_token=self.cancel_token,
        )


# =============================================================================
# Sources
# =============================================================================

class Source(ABC, Generic[T]):
    """
    Abstract base for pipeline data sources.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a source.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @abstractmethod
    def execute(self, ctx: Context) -> EvaluationResult[T]:
        """Execute the source and return data wrapped in Result."""
        pass


@dataclass
class RelationSource(Source[Relation]):
    """A Relation, Arrow table or list of dicts.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a source.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    data: Union[Relation, pa.Table, List[Dict[str, Any]]]
    schema: Optional[Schema] = None

    def execute(self, ctx: Context) -> EvaluationResult[Relation]:
        try:
            return eval_ok(ensure_relation(self.data, self.schema))
        except Exception as e:
            return error_from_exception("source", e)


@dataclass
class ValueSource(Source[T], Generic[T]):
    """Literal value source.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a source.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    value: T

    def execute(self, ctx: Context) -> EvaluationResult[T]:
        return eval_ok(self.value)


@dataclass
class RecursiveSource(Source[Relation]):
    """Rows of a recursive (hierarchical) query.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a source.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    spec: RecursiveSpec

    def execute(self, ctx: Context) -> EvaluationResult[Relation]:
        return RecursiveEvaluator(ctx.config).evaluate(self.spec, ctx.cancel_token)


# =============================================================================
# Step - Kleisli Arrow for Pipeline
# =============================================================================

class Step(ABC, Generic[T, U]):
    """
    A step in a pipeline - a Kleisli arrow: T -> Result[U, EvaluationError]

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @abstractmethod
    def execute(self, data: T, ctx: Context) -> EvaluationResult[U]:
        """Transform input data and return result."""
        pass

    def _resolve_param(self, value: Any, ctx: Context) -> Any:
        """Resolve {param} placeholders from context."""
        if not isinstance(value, str):
            return value
        if value.startswith("{") and value.endswith("}"):
            param_name = value[1:-1]
            if param_name not in ctx.params:
                raise ValidationError(f"Missing pipeline parameter: {param_name}")
            return ctx.params[param_name]
        return value

    def __rshift__(self, other: "Step[U, Any]") -> "ComposedStep":
        """Compose steps: step1 >> step2"""
        return ComposedStep(self, other)


@dataclass
class ComposedStep(Step[T, Any]):
    """Composition of two steps (Kleisli composition).

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    first: Step
    second: Step

    def execute(self, data: T, ctx: Context) -> EvaluationResult[Any]:
        result = self.first.execute(data, ctx)
        if result.is_err():
            return result
        return self.second.execute(result.unwrap(), ctx)


@dataclass
class FilterStep(Step[Relation, Relation]):
    """Keep rows whose predicate is true; NULL (None) counts as false.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    predicate: Callable[[Row], Any]
    condition: Optional[Callable[[], bool]] = None  # when/unless condition

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        if self.condition is not None and not self.condition():
            return eval_ok(data)
        try:
            predicate = guard_expression(self.predicate, "filter predicate")
            return eval_ok(data.with_rows(row for row in data.rows if predicate(row)))
        except Exception as e:
            return error_from_exception("filter", e)


@dataclass
class SelectStep(Step[Relation, Relation]):
    """Project and rename columns.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    fields: Dict[str, str]  # output_name -> source_name

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        try:
            source = data.schema
            positions = [source.position(src) for src in self.fields.values()]
            schema = Schema(fields=tuple(
                Field(name=out, type=source.fields[p].type, nullable=source.fields[p].nullable)
                for out, p in zip(self.fields, positions)
            ))
            rows = [Row(schema, (row[p] for p in positions)) for row in data.rows]
            return eval_ok(Relation(schema, rows, ordered=data.ordered,
                                    warnings=data.warnings, stats=data.stats))
        except Exception as e:
            return error_from_exception("select", e)


@dataclass
class OrderByStep(Step[Relation, Relation]):
    """Final multi-key sort; ties keep their current order.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    keys: Tuple[SortKey, ...]

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        try:
            return eval_ok(data.with_rows(sort_rows(data.rows, data.schema, self.keys),
                                          ordered=True))
        except Exception as e:
            return error_from_exception("order_by", e)


@dataclass
class LimitStep(Step[Relation, Relation]):
    """Keep the first N rows.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    count: Union[int, str]

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        try:
            count = _non_negative(self._resolve_param(self.count, ctx), "LIMIT")
            return eval_ok(data.with_rows(data.rows[:count]))
        except Exception as e:
            return error_from_exception("limit", e)


@dataclass
class OffsetStep(Step[Relation, Relation]):
    """Skip the first N rows.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    count: Union[int, str]

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        try:
            count = _non_negative(self._resolve_param(self.count, ctx), "OFFSET")
            return eval_ok(data.with_rows(data.rows[count:]))
        except Exception as e:
            return error_from_exception("offset", e)


def _non_negative(count: Any, what: str) -> int:
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ValidationError(f"{what} must be a non-negative integer, got {count!r}")
    return count


@dataclass
class GroupByStep(Step[Relation, Relation]):
    """GROUP BY / ROLLUP / CUBE / GROUPING SETS with aggregates and HAVING.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    spec: Union[GroupingSpec, Sequence[str], str]
    aggregates: Sequence[AggregateExpr] = ()
    having: Optional[HavingPredicate] = None

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        return GroupingEngine(ctx.config).evaluate(data, self.spec, self.aggregates,
                                                   self.having, ctx.cancel_token)


@dataclass
class WindowStep(Step[Relation, Relation]):
    """Window functions over the current relation.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a step.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    exprs: Sequence[WindowItem]
    named_windows: Optional[Mapping[str, WindowSpec]] = None

    def execute(self, data: Relation, ctx: Context) -> EvaluationResult[Relation]:
        return WindowEngine(ctx.config).evaluate(data, self.exprs, self.named_windows,
                                                 ctx.cancel_token)


# =============================================================================
# Pipeline
# =============================================================================

@dataclass
class Pipeline(Monad[T], Generic[T]):
    """
    A monadic, composable, lazy relation pipeline.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a monad.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    _source: Source[Any]
    _steps: List[Step] = field(default_factory=list)

    # -------------------------------------------------------------------------
    # Monad Implementation
    # -------------------------------------------------------------------------

    @classmethod
    def pure(cls, value: U) -> "Pipeline[U]":
        """Lift a value into a pipeline (Applicative.pure)."""
        return cls(_source=ValueSource(value))

    def bind(self, f: Callable[[T], "Pipeline[U]"]) -> "BoundPipeline[T, U]":
        """Chain a function that returns a pipeline (Monad.bind)."""
        return BoundPipeline(self, f)

    def _add_step(self, step: Step) -> "Pipeline":
        """Add a step to the pipeline and return a new pipeline."""
        return Pipeline(_source=self._source, _steps=self._steps + [step])

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_source(cls, source: Source[T]) -> "Pipeline[T]":
        """Create pipeline from a custom Source."""
        return cls(_source=source)

    @classmethod
    def from_relation(cls, data: Union[Relation, pa.Table, List[Dict[str, Any]]],
                      schema: Optional[Schema] = None) -> "Pipeline[Relation]":
        """Create pipeline from a Relation, Arrow table or list of dicts."""
        return cls(_source=RelationSource(data, schema))

    @classmethod
    def from_value(cls, value: T) -> "Pipeline[T]":
        """Create pipeline from literal value."""
        return cls(_source=ValueSource(value))

    @classmethod
    def from_recursive(cls, spec: RecursiveSpec) -> "Pipeline[Relation]":
        """Create pipeline from a recursive query."""
        return cls(_source=RecursiveSource(spec))

    # -------------------------------------------------------------------------
    # Transformation Methods (fluent API using Steps)
    # -------------------------------------------------------------------------

    def filter(self, predicate: Callable[[Row], Any],
               when: Optional[Callable[[], bool]] = None) -> "Pipeline":
        """Keep rows matching predicate."""
        return self._add_step(FilterStep(predicate, when))

    def group_by(self, spec: Union[GroupingSpec, Sequence[str], str],
                 aggregates: Sequence[AggregateExpr] = (),
                 having: Optional[HavingPredicate] = None) -> "Pipeline":
        """Group rows and compute aggregates."""
        return self._add_step(GroupByStep(spec, tuple(aggregates), having))

    def window(self, exprs: Sequence[WindowItem],
               named_windows: Optional[Mapping[str, WindowSpec]] = None) -> "Pipeline":
        """Annotate rows with window function values."""
        return self._add_step(WindowStep(tuple(exprs), named_windows))

    def select(self, *fields: str, **renames: str) -> "Pipeline":
        """Select and optionally rename fields (``new_name="source"``)."""
        field_map = {f: f for f in fields}
        field_map.update(renames)
        return self._add_step(SelectStep(field_map))

    def order_by(self, *keys: Union[str, SortKey]) -> "Pipeline":
        """Sort by one or more keys. Prefix a column with - for descending."""
        return self._add_step(OrderByStep(tuple(SortKey.parse(k) for k in keys)))

    def limit(self, count: Union[int, str]) -> "Pipeline":
        """Limit number of results."""
        return self._add_step(LimitStep(count))

    def offset(self, count: Union[int, str]) -> "Pipeline":
        """Skip first N results."""
        return self._add_step(OffsetStep(count))

    def __rshift__(self, step: Step) -> "Pipeline":
        """Syntactic sugar: pipeline >> step"""
        return self._add_step(step)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run(self, ctx: Optional[Context] = None) -> EvaluationResult[T]:
        """
        Execute the pipeline and return Result.

        Errors short-circuit using Result monad semantics; a cancelled token
        yields Err(kind=CANCELLED) and no partial relation.
        """
        ctx = ctx or Context()
        try:
            check_cancelled(ctx.cancel_token, "pipeline source")
        except Exception as e:
            return error_from_exception("pipeline", e)

        source_result = self._source.execute(ctx)
        if source_result.is_err():
            return source_result

        current = source_result.unwrap()
        for step in self._steps:
            try:
                check_cancelled(ctx.cancel_token, type(step).__name__)
            except Exception as e:
                return error_from_exception("pipeline", e)
            result = step.execute(current, ctx)
            if result.is_err():
                return result
            current = result.unwrap()

        return eval_ok(current)

    def to_arrow(self, ctx: Optional[Context] = None) -> EvaluationResult[pa.Table]:
        """Run and convert the resulting Relation to a PyArrow table."""
        return self.run(ctx).fmap(lambda data: data.to_arrow())

    def execute(self, ctx: Optional[Context] = None) -> Dict[str, Any]:
        """Execute and return formatted output dict."""
        return _format_output(self.run(ctx))


class BoundPipeline(Generic[T, U]):
    """
    A pipeline created by monadic bind.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a monad.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    def __init__(self, source_pipeline: Pipeline[T], continuation: Callable[[T], Pipeline[U]]):
        self.source_pipeline = source_pipeline
        self.continuation = continuation

    def bind(self, f: Callable[[U], Pipeline[Any]]) -> "BoundPipeline[U, Any]":
        return BoundPipeline(self, f)

    def run(self, ctx: Optional[Context] = None) -> EvaluationResult[U]:
        ctx = ctx or Context()
        result = self.source_pipeline.run(ctx)
        if result.is_err():
            return result
        try:
            next_pipeline = guard_expression(self.continuation, "pipeline continuation")(
                result.unwrap())
        except Exception as e:
            return error_from_exception("bind", e)
        return next_pipeline.run(ctx)

    def execute(self, ctx: Optional[Context] = None) -> Dict[str, Any]:
        return _format_output(self.run(ctx))


def _format_output(result: EvaluationResult[Any]) -> Dict[str, Any]:
    if result.is_err():
        return {
            "success": False,
            "error": str(result.error),
            "kind": result.error.kind.value,
        }

    data = result.unwrap()
    output: Dict[str, Any] = {"success": True}
    if isinstance(data, Relation):
        output["results"] = data.to_pylist()
        output["count"] = len(data)
        if data.warnings:
            output["warnings"] = list(data.warnings)
    elif isinstance(data, list):
        output["results"] = data
        output["count"] = len(data)
    else:
        output["result"] = data
    return output


# =============================================================================
# Source builders
# =============================================================================

def relation(data: Union[Relation, pa.Table, List[Dict[str, Any]]],
             schema: Optional[Schema] = None) -> Pipeline:
    """Create a pipeline from relation data."""
    return Pipeline.from_relation(data, schema)


def value(data: Any) -> Pipeline:
    """Create a pipeline from a literal value."""
    return Pipeline.from_value(data)


def recursive(spec: RecursiveSpec) -> Pipeline:
    """Create a pipeline from a recursive query."""
    return Pipeline.from_recursive(spec)
