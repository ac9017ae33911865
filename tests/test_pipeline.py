"""
Tests for Pipeline composition and the Context it runs in.
"""

import pyarrow as pa
import pytest

from rowset.dsl import (
    AggregateExpr, CancellationToken, Context, ErrorKind, Ok, Pipeline, RecursiveSpec,
    Relation, Rollup, WindowExpr, WindowSpec, relation, recursive, value,
)
from rowset.dsl.core import FilterStep, LimitStep, OrderByStep
from rowset.dsl.rows import SortKey


@pytest.fixture
def ctx(config):
    return Context(config=config)


def ranked_departments(employees):
    return (
        Pipeline.from_relation(employees)
        .filter(lambda row: row["salary"] is not None)
        .group_by(Rollup(["dept"]), [AggregateExpr.sum("salary", alias="total")])
        .window([WindowExpr.rank(WindowSpec(order_by=["-total"]), alias="rnk")])
    )


class TestPipelineChain:

    def test_logical_order(self, employees, ctx):
        out = ranked_departments(employees).order_by("rnk").run(ctx).unwrap()
        assert [(r["dept"], r["total"], r["rnk"]) for r in out] == [
            (None, 460, 1), ("eng", 310, 2), ("ops", 80, 3), (None, 70, 4),
        ]
        assert out.ordered

    def test_select_limit_offset(self, employees, ctx):
        out = (
            ranked_departments(employees)
            .order_by("rnk")
            .offset(1)
            .limit(2)
            .select("dept", pay="total")
            .run(ctx)
            .unwrap()
        )
        assert out.schema.names == ["dept", "pay"]
        assert out.to_pylist() == [{"dept": "eng", "pay": 310}, {"dept": "ops", "pay": 80}]

    def test_order_by_descending_with_nulls(self, employees, ctx):
        out = relation(employees).order_by("-salary", "name").run(ctx).unwrap()
        assert out.column("name") == ["cat", "ann", "bob", "dan", "fay", "eve"]

    def test_order_by_is_stable(self, employees, ctx):
        out = relation(employees).order_by(SortKey("dept", nulls_first=False)).run(ctx).unwrap()
        assert out.column("name") == ["ann", "bob", "cat", "dan", "eve", "fay"]

    def test_filter_treats_null_as_false(self, employees, ctx):
        out = relation(employees).filter(lambda row: row["bonus"] and row["bonus"] > 4).run(ctx)
        assert out.unwrap().column("name") == ["ann", "cat", "dan"]

    def test_conditional_filter(self, employees, ctx):
        out = relation(employees).filter(lambda row: False, when=lambda: False).run(ctx)
        assert len(out.unwrap()) == 6

    def test_source_from_dicts(self, ctx):
        out = relation([{"k": "a", "v": 1}, {"k": "a", "v": 2}]).group_by(
            "k", [AggregateExpr.sum("v")]).run(ctx).unwrap()
        assert out.to_pylist() == [{"k": "a", "sum_v": 3}]

    def test_source_from_arrow(self, ctx):
        table = pa.table({"k": ["x", "y", "x"], "v": [1, 2, 3]})
        out = relation(table).group_by(["k"], [AggregateExpr.max("v")]).to_arrow(ctx).unwrap()
        assert isinstance(out, pa.Table)
        assert out.column("max_v").to_pylist() == [3, 2]

    def test_steps_compose_with_rshift(self, employees, ctx):
        step = FilterStep(lambda row: row["dept"] == "eng") >> OrderByStep((SortKey("name"),))
        pipeline = relation(employees) >> step >> LimitStep(1)
        assert pipeline.run(ctx).unwrap().column("name") == ["ann"]


class TestRecursiveSource:

    def test_filter_on_level(self, tree_edges, ctx):
        def children(frontier):
            parents = {row["node"] for row in frontier}
            return [row.values for row in tree_edges if row["parent"] in parents]

        anchor = tree_edges.with_rows(row for row in tree_edges if row["parent"] is None)
        out = (
            recursive(RecursiveSpec(anchor=anchor, step=children))
            .filter(lambda row: row["level"] == 1)
            .order_by("-node")
            .run(ctx)
            .unwrap()
        )
        assert out.column("node") == ["C2", "C1"]

    def test_recursion_limit_short_circuits(self, cycle_edges, ctx):
        def children(frontier):
            parents = {row["node"] for row in frontier}
            return [row.values for row in cycle_edges if row["parent"] in parents]

        anchor = cycle_edges.with_rows(row for row in cycle_edges if row["node"] == "a")
        output = recursive(RecursiveSpec(anchor, children)).limit(1).execute(ctx)
        assert output["success"] is False
        assert output["kind"] == "recursion_limit"


class TestContext:

    def test_limit_from_params(self, employees, ctx):
        pipeline = relation(employees).limit("{top}")
        assert len(pipeline.run(ctx.with_params(top=2)).unwrap()) == 2

    def test_missing_param_is_validation_error(self, employees, ctx):
        result = relation(employees).limit("{top}").run(ctx)
        assert result.error.kind is ErrorKind.VALIDATION

    def test_negative_limit(self, employees, ctx):
        assert relation(employees).limit(-1).run(ctx).error.kind is ErrorKind.VALIDATION

    def test_cancelled_before_source(self, employees, config):
        token = CancellationToken()
        token.cancel("user")
        result = relation(employees).run(Context(config=config, cancel_token=token))
        assert result.error.kind is ErrorKind.CANCELLED

    def test_cancelled_between_steps(self, employees, config):
        token = CancellationToken()
        seen = []

        def predicate(row):
            seen.append(row["name"])
            token.cancel("enough")
            return True

        pipeline = relation(employees).filter(predicate).order_by("name")
        result = pipeline.run(Context(config=config, cancel_token=token))
        assert result.error.kind is ErrorKind.CANCELLED
        assert len(seen) == 6


class TestOutput:

    def test_execute_success(self, employees, ctx):
        output = relation(employees).limit(2).execute(ctx)
        assert output["success"] is True
        assert output["count"] == 2
        assert output["results"][0]["name"] == "ann"

    def test_execute_reports_warnings(self, employees, ctx):
        output = relation(employees).window(
            [WindowExpr.row_number(WindowSpec(order_by=["dept"]))]).execute(ctx)
        assert output["success"] is True
        assert any("ties" in w for w in output["warnings"])

    def test_execute_error(self, employees, ctx):
        output = relation(employees).group_by("missing").execute(ctx)
        assert output == {
            "success": False,
            "error": output["error"],
            "kind": "validation",
        }
        assert output["error"].startswith("[group_by:validation]")

    def test_value_pipeline(self, ctx):
        assert value(41).run(ctx) == Ok(41)

    def test_bind(self, employees, ctx):
        def top_dept(grouped: Relation):
            best = max(grouped, key=lambda row: row["sum_salary"] or 0)
            return relation(employees).filter(lambda row: row["dept"] == best["dept"])

        bound = relation(employees).group_by("dept", [AggregateExpr.sum("salary")]).bind(top_dept)
        assert bound.run(ctx).unwrap().column("name") == ["ann", "bob", "cat"]
