"""
Tests for the Row Model: schemas, rows, relations, ordering and grouping equality.
"""

import math
from datetime import date, datetime
from decimal import Decimal

import pyarrow as pa
import pytest

from rowset import TypeMismatchError, ValidationError
from rowset.dsl.rows import (
    AGGREGATED, Field, FieldType, Relation, Row, Schema, SortKey,
    compare_nullable, grouping_equal, guard_expression, infer_schema,
    make_group_key, sort_rows, sql_equals,
)
from rowset.rowset_exceptions import ExpressionError


class TestFieldType:

    def test_integer_rejects_bool(self):
        assert FieldType.INTEGER.accepts(3)
        assert not FieldType.INTEGER.accepts(True)

    def test_decimal_accepts_numbers(self):
        assert FieldType.DECIMAL.accepts(1)
        assert FieldType.DECIMAL.accepts(1.5)
        assert FieldType.DECIMAL.accepts(Decimal("2.25"))
        assert not FieldType.DECIMAL.accepts("1.5")

    def test_timestamp_accepts_dates(self):
        assert FieldType.TIMESTAMP.accepts(date(2024, 1, 1))
        assert FieldType.TIMESTAMP.accepts(datetime(2024, 1, 1, 12))

    def test_binary_is_not_orderable(self):
        assert not FieldType.BINARY.orderable
        assert FieldType.TEXT.orderable

    def test_infer(self):
        assert FieldType.infer(True) is FieldType.BOOLEAN
        assert FieldType.infer(1) is FieldType.INTEGER
        assert FieldType.infer(b"x") is FieldType.BINARY
        assert FieldType.infer(None) is None


class TestSchema:

    def test_positions(self, employee_schema):
        assert employee_schema.position("salary") == 3
        assert employee_schema.names == ["dept", "title", "name", "salary", "bonus"]

    def test_unknown_column(self, employee_schema):
        with pytest.raises(ValidationError):
            employee_schema.position("missing")

    def test_duplicate_names_rejected(self):
        with pytest.raises(ValidationError):
            Schema.of(("a", FieldType.TEXT), ("a", FieldType.INTEGER))

    def test_extend_and_project(self, employee_schema):
        extended = employee_schema.extend(Field(name="rank", type=FieldType.INTEGER))
        assert extended.names[-1] == "rank"
        assert employee_schema.project(["salary", "dept"]).names == ["salary", "dept"]

    def test_schema_is_frozen(self, employee_schema):
        with pytest.raises(Exception):
            employee_schema.fields = ()


class TestRow:

    def test_access_by_position_and_name(self, employees):
        row = employees[0]
        assert row[0] == "eng"
        assert row["salary"] == 100
        assert row.get("missing", 7) == 7

    def test_immutable(self, employees):
        with pytest.raises(AttributeError):
            employees[0].foo = 1

    def test_arity_mismatch(self, employee_schema):
        with pytest.raises(TypeMismatchError):
            Row(employee_schema, ("eng",))

    def test_as_dict(self, employees):
        assert employees[4].as_dict() == {
            "dept": "ops", "title": None, "name": "eve", "salary": None, "bonus": None,
        }


class TestRelation:

    def test_type_validation(self, employee_schema):
        with pytest.raises(TypeMismatchError) as info:
            Relation.from_rows(employee_schema, [("eng", "dev", "ann", "lots", None)])
        assert info.value.field == "salary"
        assert info.value.row_index == 0

    def test_non_nullable(self, employee_schema):
        with pytest.raises(TypeMismatchError):
            Relation.from_rows(employee_schema, [("eng", "dev", None, 1, None)])

    def test_from_pylist_infers_schema(self):
        rel = Relation.from_pylist([
            {"k": "a", "v": 1},
            {"k": None, "v": 2.5},
        ])
        assert rel.schema.field("k").nullable
        assert rel.schema.field("v").type is FieldType.DECIMAL
        assert not rel.schema.field("v").nullable

    def test_infer_rejects_mixed_types(self):
        with pytest.raises(TypeMismatchError):
            infer_schema([{"x": 1}, {"x": "one"}])

    def test_arrow_round_trip_keeps_nulls(self, employees):
        table = employees.to_arrow()
        assert isinstance(table, pa.Table)
        assert table.num_rows == 6
        assert table.column("salary").null_count == 1
        back = Relation.from_arrow(table)
        assert back.column("salary") == employees.column("salary")
        assert back.schema.field("salary").type is FieldType.INTEGER

    def test_with_rows_keeps_schema(self, employees):
        subset = employees.with_rows(employees.rows[:2])
        assert subset.schema == employees.schema
        assert len(subset) == 2


class TestOrdering:

    def test_nulls_sort_lowest_by_default(self):
        assert compare_nullable(None, 1) < 0
        assert compare_nullable(None, 1, descending=True) > 0

    def test_explicit_null_placement(self):
        assert compare_nullable(None, 1, nulls_first=False) > 0
        assert compare_nullable(None, 1, descending=True, nulls_first=True) < 0

    def test_sort_key_parse(self):
        assert SortKey.parse("-salary") == SortKey("salary", descending=True)
        assert SortKey.parse("salary").nulls_placed_first

    def test_stable_multi_key_sort(self, employees):
        ordered = sort_rows(employees.rows, employees.schema, ["dept", "-salary"])
        assert [r["name"] for r in ordered] == ["fay", "cat", "ann", "bob", "dan", "eve"]

    def test_sort_rejects_binary(self):
        schema = Schema.of(("blob", FieldType.BINARY))
        rel = Relation.from_rows(schema, [(b"a",), (b"b",)])
        with pytest.raises(ValidationError):
            sort_rows(rel.rows, schema, ["blob"])


class TestGroupingEquality:

    def test_null_groups_with_null(self):
        assert grouping_equal((None, "a"), (None, "a"))

    def test_scalar_null_is_unknown(self):
        assert sql_equals(None, None) is None
        assert sql_equals(1, 1) is True

    def test_aggregated_is_not_null(self):
        assert not grouping_equal((AGGREGATED,), (None,))
        assert grouping_equal((AGGREGATED,), (AGGREGATED,))

    def test_nan_groups_with_nan(self):
        assert make_group_key([math.nan]) == make_group_key([float("nan")])


class TestGuardExpression:

    def test_wraps_caller_failures(self):
        guarded = guard_expression(lambda row: 1 / 0, "test expr")
        with pytest.raises(ExpressionError) as info:
            guarded(None)
        assert isinstance(info.value.__cause__, ZeroDivisionError)

    def test_passes_rowset_errors_through(self):
        def fail(row):
            raise ValidationError("bad")
        with pytest.raises(ValidationError):
            guard_expression(fail, "test expr")(None)
