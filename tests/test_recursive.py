"""
Tests for recursive (fixed-point) evaluation.
"""

import pytest

from rowset import EvaluatorConfig
from rowset.dsl.catpy import ErrorKind
from rowset.dsl.parallel import CancellationToken
from rowset.dsl.recursive import RecursiveEvaluator, RecursiveSpec, evaluate_recursive
from rowset.dsl.rows import FieldType, Relation, Schema


def children_of(edges):
    """Recursive step: rows whose parent is in the frontier."""
    def step(frontier):
        parents = {row["node"] for row in frontier}
        return [(row["node"], row["parent"]) for row in edges if row["parent"] in parents]
    return step


def roots(edges, *names):
    return edges.with_rows(row for row in edges if row["node"] in names)


class TestConvergence:

    def test_tree_converges_in_two_iterations(self, tree_edges, config):
        spec = RecursiveSpec(anchor=roots(tree_edges, "R"), step=children_of(tree_edges))
        out = RecursiveEvaluator(config).evaluate(spec).unwrap()
        assert out.stats.iterations == 2
        assert out.stats.final_state == "converged"
        assert [(r["node"], r["level"]) for r in out] == [("R", 0), ("C1", 1), ("C2", 1)]

    def test_level_column_is_appended(self, tree_edges, config):
        spec = RecursiveSpec(anchor=roots(tree_edges, "R"), step=children_of(tree_edges),
                             level_column="depth")
        out = RecursiveEvaluator(config).evaluate(spec).unwrap()
        assert out.schema.names == ["node", "parent", "depth"]
        assert out.schema.field("depth").type is FieldType.INTEGER

    def test_empty_anchor(self, tree_edges, config):
        spec = RecursiveSpec(anchor=roots(tree_edges), step=children_of(tree_edges))
        out = RecursiveEvaluator(config).evaluate(spec).unwrap()
        assert len(out) == 0
        assert out.stats.iterations == 0

    def test_anchor_callable(self, tree_edges, config):
        spec = RecursiveSpec(anchor=lambda: roots(tree_edges, "R"), step=children_of(tree_edges))
        assert len(RecursiveEvaluator(config).evaluate(spec).unwrap()) == 3

    def test_row_step_fans_out_in_frontier_order(self, tree_edges, parallel_config):
        def kids(row):
            return [r.values for r in tree_edges if r["parent"] == row["node"]]
        spec = RecursiveSpec(anchor=roots(tree_edges, "R"), row_step=kids)
        out = RecursiveEvaluator(parallel_config).evaluate(spec).unwrap()
        assert out.column("node") == ["R", "C1", "C2"]

    def test_frontier_carries_level_for_paths(self, config):
        schema = Schema.of(("n", FieldType.INTEGER, False), ("path", FieldType.TEXT, False))
        anchor = Relation.from_rows(schema, [(1, "1")])

        def step(frontier):
            return [
                {"n": row["n"] + 1, "path": f"{row['path']}/{row['n'] + 1}"}
                for row in frontier if row["level"] < 3
            ]
        out = RecursiveEvaluator(config).evaluate(RecursiveSpec(anchor, step)).unwrap()
        assert out.column("path") == ["1", "1/2", "1/2/3", "1/2/3/4"]
        assert out.column("level") == [0, 1, 2, 3]

    def test_no_deduplication(self, config):
        schema = Schema.of(("n", FieldType.INTEGER, False))
        anchor = Relation.from_rows(schema, [(1,)])
        step = lambda frontier: [(1,), (1,)] if len(frontier) == 1 else []
        out = RecursiveEvaluator(config).evaluate(RecursiveSpec(anchor, step)).unwrap()
        assert out.column("n") == [1, 1, 1]


class TestRecursionLimit:

    def test_cycle_hits_default_ceiling(self, cycle_edges, config):
        spec = RecursiveSpec(anchor=roots(cycle_edges, "a"), step=children_of(cycle_edges))
        result = RecursiveEvaluator(config).evaluate(spec)
        assert result.is_err()
        error = result.error
        assert error.kind is ErrorKind.RECURSION_LIMIT
        assert error.details["depth"] == 100
        assert error.details["frontier_size"] == 1
        assert error.details["trigger_row"]["level"] == 101

    def test_spec_ceiling_overrides_config(self, cycle_edges, config):
        spec = RecursiveSpec(anchor=roots(cycle_edges, "a"), step=children_of(cycle_edges),
                             max_recursion=5)
        error = RecursiveEvaluator(config).evaluate(spec).error
        assert error.details["depth"] == 5

    def test_ceiling_counts_iterations(self, config):
        schema = Schema.of(("n", FieldType.INTEGER, False))
        anchor = Relation.from_rows(schema, [(0,)])
        step = lambda frontier: [(row["n"] + 1,) for row in frontier if row["n"] < 3]
        out = evaluate_recursive(RecursiveSpec(anchor, step, max_recursion=3), config).unwrap()
        assert out.column("level") == [0, 1, 2, 3]
        error = evaluate_recursive(RecursiveSpec(anchor, step, max_recursion=2), config).error
        assert error.kind is ErrorKind.RECURSION_LIMIT
        assert error.details["depth"] == 2
        assert error.details["trigger_row"]["n"] == 3

    def test_hundred_recursions_fit_the_default_ceiling(self, config):
        schema = Schema.of(("n", FieldType.INTEGER, False))
        anchor = Relation.from_rows(schema, [(1,)])
        step = lambda frontier: [(row["n"] + 1,) for row in frontier if row["n"] < 101]
        out = RecursiveEvaluator(config).evaluate(RecursiveSpec(anchor, step)).unwrap()
        assert len(out) == 101
        assert out.column("level")[-1] == 100

    def test_zero_means_unlimited(self, config):
        schema = Schema.of(("n", FieldType.INTEGER, False))
        anchor = Relation.from_rows(schema, [(0,)])
        step = lambda frontier: [(row["n"] + 1,) for row in frontier if row["n"] < 250]
        out = evaluate_recursive(RecursiveSpec(anchor, step, max_recursion=0), config).unwrap()
        assert len(out) == 251

    @pytest.mark.parametrize("ceiling", [-1, 40000, 1.5])
    def test_invalid_ceiling(self, tree_edges, config, ceiling):
        spec = RecursiveSpec(anchor=tree_edges, step=children_of(tree_edges), max_recursion=ceiling)
        assert RecursiveEvaluator(config).evaluate(spec).error.kind is ErrorKind.VALIDATION

    def test_config_ceiling(self, cycle_edges):
        config = EvaluatorConfig.for_testing(max_recursion=10)
        spec = RecursiveSpec(anchor=roots(cycle_edges, "a"), step=children_of(cycle_edges))
        assert RecursiveEvaluator(config).evaluate(spec).error.details["depth"] == 10


class TestRecursiveErrors:

    def test_needs_exactly_one_step(self, tree_edges, config):
        spec = RecursiveSpec(anchor=tree_edges)
        assert RecursiveEvaluator(config).evaluate(spec).error.kind is ErrorKind.VALIDATION

    def test_level_column_clash(self, config):
        schema = Schema.of(("level", FieldType.INTEGER))
        spec = RecursiveSpec(anchor=Relation.from_rows(schema, [(1,)]), step=lambda f: [])
        assert RecursiveEvaluator(config).evaluate(spec).error.kind is ErrorKind.VALIDATION

    def test_failing_step_is_expression_error(self, tree_edges, config):
        spec = RecursiveSpec(anchor=tree_edges, step=lambda frontier: 1 / 0)
        assert RecursiveEvaluator(config).evaluate(spec).error.kind is ErrorKind.EXPRESSION

    def test_step_rows_are_type_checked(self, tree_edges, config):
        spec = RecursiveSpec(anchor=roots(tree_edges, "R"), step=lambda frontier: [(42, None)])
        assert RecursiveEvaluator(config).evaluate(spec).error.kind is ErrorKind.TYPE_MISMATCH

    def test_step_with_wrong_arity(self, tree_edges, config):
        spec = RecursiveSpec(anchor=roots(tree_edges, "R"), step=lambda frontier: [("x",)])
        assert RecursiveEvaluator(config).evaluate(spec).error.kind is ErrorKind.TYPE_MISMATCH

    def test_cancellation_returns_no_rows(self, cycle_edges, config):
        token = CancellationToken()
        calls = []

        def step(frontier):
            calls.append(len(frontier))
            if len(calls) == 3:
                token.cancel("test")
            return children_of(cycle_edges)(frontier)

        spec = RecursiveSpec(anchor=roots(cycle_edges, "a"), step=step, max_recursion=0)
        result = RecursiveEvaluator(config).evaluate(spec, cancel_token=token)
        assert result.error.kind is ErrorKind.CANCELLED
        assert len(calls) == 3
