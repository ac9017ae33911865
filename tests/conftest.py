"""
Shared pytest fixtures for the row-set evaluator tests.

Provides a deterministic config, an employee relation with NULLs in both
grouping and measure columns, a small tree and a cyclic graph for
recursive evaluation.
"""

import pytest

from rowset import EvaluatorConfig
from rowset.dsl.rows import FieldType, Relation, Schema


@pytest.fixture
def config():
    """Inline (no worker pool) configuration with the default ceiling."""
    return EvaluatorConfig.for_testing()


@pytest.fixture
def parallel_config():
    """Configuration that dispatches every multi-unit call to the worker pool."""
    return EvaluatorConfig.for_testing(max_workers=4)


@pytest.fixture
def employee_schema():
    return Schema.of(
        ("dept", FieldType.TEXT),
        ("title", FieldType.TEXT),
        ("name", FieldType.TEXT, False),
        ("salary", FieldType.INTEGER),
        ("bonus", FieldType.DECIMAL),
    )


@pytest.fixture
def employees(employee_schema):
    """
    Six employees.

    ``ops`` has a NULL title and ``fay`` a NULL dept, so NULL groups appear
    alongside rolled-away columns in ROLLUP/CUBE output.
    """
    return Relation.from_rows(employee_schema, [
        ("eng", "dev", "ann", 100, 10.0),
        ("eng", "dev", "bob", 90, None),
        ("eng", "lead", "cat", 120, 20.0),
        ("ops", "dev", "dan", 80, 5.0),
        ("ops", None, "eve", None, None),
        (None, "dev", "fay", 70, 1.0),
    ])


@pytest.fixture
def tree_edges():
    """Root R with two childless children C1 and C2."""
    schema = Schema.of(("node", FieldType.TEXT, False), ("parent", FieldType.TEXT))
    return Relation.from_rows(schema, [("R", None), ("C1", "R"), ("C2", "R")])


@pytest.fixture
def cycle_edges():
    """a -> b -> c -> a."""
    schema = Schema.of(("node", FieldType.TEXT, False), ("parent", FieldType.TEXT))
    return Relation.from_rows(schema, [("a", "c"), ("b", "a"), ("c", "b")])
