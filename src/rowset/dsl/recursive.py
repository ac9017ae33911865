"""
Recursive Hierarchical Query Evaluator.

Fixed-point evaluation of a self-referential row set (a recursive CTE):

    Idle -> Anchoring -> Iterating -> (Converged | DepthExceeded) -> Done

The anchor runs once and seeds the frontier at level 0. Each iteration hands
the current frontier to the recursive step and the rows it returns become
the next frontier, tagged with the iteration number. Evaluation converges
when a step returns no rows. If the step still returns rows once
``max_recursion`` iterations have run, RecursionLimitExceeded is raised naming
the first row past the ceiling.

Rows are never de-duplicated (UNION ALL); cycles are bounded only by the
recursion ceiling.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional, Union

from .catpy import EvaluationResult, error_from_exception, eval_ok
from .parallel import CancellationToken, check_cancelled, run_partitions
from .rows import (
    EvaluationStats, Field, FieldType, Relation, Row, RowInput, Schema,
    ensure_relation, guard_expression, validate_rows,
)
from ..config import EvaluatorConfig, MAX_RECURSION_CEILING
from ..logging_config import configure_logger_for_debug_trace
from ..rowset_exceptions import (
    RecursionLimitExceeded, TypeMismatchError, ValidationError,
)

logger = configure_logger_for_debug_trace(__name__)


class RecursionState(str, Enum):
    IDLE = "idle"
    ANCHORING = "anchoring"
    ITERATING = "iterating"
    CONVERGED = "converged"
    DEPTH_EXCEEDED = "depth_exceeded"
    DONE = "done"


StepResult = Union[Relation, Iterable[RowInput]]


@dataclass(frozen=True)
class RecursiveSpec:
    """Anchor and recursive member of a hierarchical query.

    Exactly one of ``step`` (whole frontier in, new rows out) and
    ``row_step`` (one frontier row in, its children out) must be given.
    The frontier handed to either carries the level column; returned rows
    use the anchor's columns and get their level assigned.

    ``max_recursion`` overrides the configured ceiling; 0 means no ceiling.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    anchor: Union[Relation, Callable[[], Any]]
    step: Optional[Callable[[Relation], StepResult]] = None
    row_step: Optional[Callable[[Row], Iterable[RowInput]]] = None
    max_recursion: Optional[int] = None
    level_column: str = "level"


class _Run:
    """State of one evaluate() call."""

    def __init__(self):
        self.state = RecursionState.IDLE
        self.iterations = 0

    def transition(self, state: RecursionState) -> None:
        logger.debug(f"[recursive] {self.state.value} -> {state.value}")
        self.state = state


class RecursiveEvaluator:
    """Runs a RecursiveSpec to its fixed point.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a engine.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    step_name = "recursive"

    def __init__(self, config: Optional[EvaluatorConfig] = None):
        self.config = config or EvaluatorConfig()

    def evaluate(self, spec: RecursiveSpec,
                 cancel_token: Optional[CancellationToken] = None) -> EvaluationResult[Relation]:
        """Returns Ok(Relation) with a level column, or Err(EvaluationError)."""
        try:
            return eval_ok(self._evaluate(spec, cancel_token))
        except Exception as exc:
            logger.debug(f"[recursive] failed: {type(exc).__name__}: {exc}")
            return error_from_exception(self.step_name, exc)

    def _ceiling(self, spec: RecursiveSpec) -> int:
        ceiling = self.config.max_recursion if spec.max_recursion is None else spec.max_recursion
        if isinstance(ceiling, bool) or not isinstance(ceiling, int) \
                or not 0 <= ceiling <= MAX_RECURSION_CEILING:
            raise ValidationError(
                f"max_recursion must be an integer in 0..{MAX_RECURSION_CEILING}, got {ceiling!r}"
            )
        return ceiling

    def _evaluate(self, spec: RecursiveSpec,
                  cancel_token: Optional[CancellationToken]) -> Relation:
        start_time = time.perf_counter()
        if (spec.step is None) == (spec.row_step is None):
            raise ValidationError("RecursiveSpec needs exactly one of step or row_step")
        ceiling = self._ceiling(spec)
        run = _Run()

        run.transition(RecursionState.ANCHORING)
        check_cancelled(cancel_token, "anchor")
        anchor = spec.anchor
        if callable(anchor):
            anchor = guard_expression(anchor, "anchor query")()
        anchor = ensure_relation(anchor)
        base = anchor.schema
        if base.has(spec.level_column):
            raise ValidationError(
                f"Anchor already has a column named {spec.level_column}; "
                f"choose another level_column"
            )
        schema = base.extend(Field(name=spec.level_column, type=FieldType.INTEGER, nullable=False))
        if self.config.validate_types:
            validate_rows(base, anchor.rows)

        frontier = [Row(schema, row.values + (0,)) for row in anchor.rows]
        result: List[Row] = list(frontier)

        run.transition(RecursionState.ITERATING)
        while True:
            check_cancelled(cancel_token, f"recursive iteration {run.iterations + 1}")
            if not frontier:
                run.transition(RecursionState.CONVERGED)
                break

            level = run.iterations + 1
            produced = self._step(spec, Relation(schema, frontier), base, cancel_token)
            frontier = [Row(schema, row.values + (level,)) for row in produced]
            if ceiling and level > ceiling and frontier:
                run.transition(RecursionState.DEPTH_EXCEEDED)
                logger.warning(
                    f"[recursive] ceiling {ceiling} exhausted; iteration {level} produced "
                    f"{len(frontier)} row(s), first: {frontier[0]!r}"
                )
                raise RecursionLimitExceeded(ceiling, len(frontier), frontier[0])
            run.iterations = level
            result.extend(frontier)
            logger.debug(f"[recursive] iteration {level}: {len(frontier)} new row(s)")

        run.transition(RecursionState.DONE)
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        stats = EvaluationStats(engine="recursive", rows_in=len(anchor), rows_out=len(result),
                                iterations=run.iterations,
                                final_state=RecursionState.CONVERGED.value,
                                elapsed_ms=elapsed_ms)
        logger.debug(f"[recursive] converged after {run.iterations} iteration(s), "
                     f"{len(result)} rows in {elapsed_ms:.1f}ms")
        return Relation(schema, result, stats=stats)

    def _step(self, spec: RecursiveSpec, frontier: Relation, base: Schema,
              cancel_token: Optional[CancellationToken]) -> List[Row]:
        if spec.step is not None:
            produced = guard_expression(spec.step, "recursive step")(frontier)
            rows = self._coerce(produced, base)
        else:
            row_step = guard_expression(spec.row_step, "recursive row step")

            def expand(row: Row) -> List[Row]:
                return self._coerce(row_step(row), base)

            per_row = run_partitions(expand, list(frontier.rows), self.config,
                                     cancel_token, label="frontier row")
            rows = [row for children in per_row for row in children]
        if self.config.validate_types:
            validate_rows(base, rows)
        return rows

    @staticmethod
    def _coerce(produced: Optional[StepResult], base: Schema) -> List[Row]:
        if produced is None:
            return []
        if isinstance(produced, Relation):
            if produced.schema.names != base.names:
                raise TypeMismatchError(
                    f"Recursive step returned columns {produced.schema.names}, "
                    f"anchor has {base.names}"
                )
            return [Row(base, row.values) for row in produced.rows]
        rows = []
        for item in produced:
            if isinstance(item, Row):
                if item.schema.names != base.names:
                    raise TypeMismatchError(
                        f"Recursive step returned columns {item.schema.names}, "
                        f"anchor has {base.names}"
                    )
                rows.append(Row(base, item.values))
            elif isinstance(item, dict):
                rows.append(Row(base, (item.get(name) for name in base.names)))
            else:
                rows.append(Row(base, item))
        return rows


def evaluate_recursive(spec: RecursiveSpec, config: Optional[EvaluatorConfig] = None,
                       cancel_token: Optional[CancellationToken] = None) -> EvaluationResult[Relation]:
    """Functional entry point for ``RecursiveEvaluator(config).evaluate(spec)``."""
    return RecursiveEvaluator(config).evaluate(spec, cancel_token)
