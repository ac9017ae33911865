"""
Tests for aggregate expressions and accumulators.
"""

from decimal import Decimal

import pytest

from rowset import InternalInvariantViolation, TypeMismatchError, ValidationError
from rowset.dsl.aggregates import (
    AggregateAccumulator, AggregateExpr, AggregateKind, fold,
)
from rowset.dsl.rows import FieldType


def accumulate(kind, values, distinct=False, **kwargs):
    acc = AggregateAccumulator(kind, distinct, **kwargs)
    for v in values:
        acc.add(v)
    return acc.finalize()


class TestAccumulators:

    def test_count_star_counts_nulls(self):
        assert accumulate(AggregateKind.COUNT, [1, None, None], count_rows=True) == 3

    def test_count_skips_nulls(self):
        assert accumulate(AggregateKind.COUNT, [1, None, 2]) == 2

    def test_count_distinct(self):
        assert accumulate(AggregateKind.COUNT, ["a", "b", "a", None], distinct=True) == 2

    def test_sum_avg_skip_nulls(self):
        assert accumulate(AggregateKind.SUM, [1, None, 2]) == 3
        assert accumulate(AggregateKind.AVG, [1, None, 2]) == 1.5

    def test_sum_of_nothing_is_null(self):
        assert accumulate(AggregateKind.SUM, [None, None]) is None
        assert accumulate(AggregateKind.COUNT, []) == 0

    def test_decimal_sum(self):
        assert accumulate(AggregateKind.SUM, [Decimal("1.10"), Decimal("2.20")]) == Decimal("3.30")

    def test_mixed_float_and_decimal(self):
        assert accumulate(AggregateKind.SUM, [1.5, Decimal("2")]) == Decimal("3.5")
        assert accumulate(AggregateKind.SUM, [Decimal("2"), 0.1, 1]) == Decimal("3.1")
        assert accumulate(AggregateKind.AVG, [1.5, Decimal("2.5")]) == Decimal("2")

    def test_min_max(self):
        assert accumulate(AggregateKind.MIN, [3, None, 1, 2]) == 1
        assert accumulate(AggregateKind.MAX, ["b", "c", "a"]) == "c"

    def test_string_agg(self):
        assert accumulate(AggregateKind.STRING_AGG, ["a", None, "b"], separator=";") == "a;b"
        assert accumulate(AggregateKind.STRING_AGG, ["x", "x", "y"], distinct=True) == "x,y"

    def test_variance_family(self):
        values = [1, 2, 3, 4]
        assert accumulate(AggregateKind.VAR, values) == pytest.approx(5 / 3)
        assert accumulate(AggregateKind.VARP, values) == pytest.approx(1.25)
        assert accumulate(AggregateKind.STDEVP, values) == pytest.approx(1.25 ** 0.5)

    def test_sample_variance_of_one_value_is_null(self):
        assert accumulate(AggregateKind.STDEV, [5]) is None
        assert accumulate(AggregateKind.VARP, [5]) == 0.0

    def test_add_after_finalize_is_internal_violation(self):
        acc = AggregateAccumulator(AggregateKind.SUM)
        acc.add(1)
        acc.finalize()
        with pytest.raises(InternalInvariantViolation):
            acc.add(2)

    def test_value_peeks_without_finalizing(self):
        acc = AggregateAccumulator(AggregateKind.SUM)
        acc.add(1)
        assert acc.value() == 1
        acc.add(2)
        assert acc.value() == 3
        assert not acc.finalized

    def test_sum_rejects_text_at_runtime(self):
        with pytest.raises(TypeMismatchError):
            accumulate(AggregateKind.SUM, [1, "2"])


class TestAggregateExpr:

    def test_default_names(self):
        assert AggregateExpr.count().name == "count"
        assert AggregateExpr.sum("salary").name == "sum_salary"
        assert AggregateExpr.count("title", distinct=True).name == "count_distinct_title"
        assert AggregateExpr.avg("salary", alias="avg_pay").name == "avg_pay"

    def test_sum_over_text_is_validation_error(self, employee_schema):
        with pytest.raises(ValidationError):
            AggregateExpr.sum("name").bind(employee_schema)

    def test_count_distinct_star_rejected(self, employee_schema):
        with pytest.raises(ValidationError):
            AggregateExpr(AggregateKind.COUNT, None, distinct=True).bind(employee_schema)

    def test_output_types(self, employee_schema):
        assert AggregateExpr.count().bind(employee_schema).output.type is FieldType.INTEGER
        assert AggregateExpr.sum("salary").bind(employee_schema).output.type is FieldType.INTEGER
        assert AggregateExpr.avg("salary").bind(employee_schema).output.type is FieldType.DECIMAL
        assert AggregateExpr.max("name").bind(employee_schema).output.type is FieldType.TEXT

    def test_fold_with_callable_argument(self, employees):
        bound = AggregateExpr.sum(lambda row: (row["salary"] or 0) * 2).bind(employees.schema)
        assert fold(bound, employees.rows) == 2 * (100 + 90 + 120 + 80 + 70)
