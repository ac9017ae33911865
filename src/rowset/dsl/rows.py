"""
Row Model - typed tuples, schemas and relations.

This module is the foundation every engine builds on:

- FieldType / Field / Schema: the declared shape of a relation
- Row: an immutable, fixed-arity tuple bound to a Schema
- Relation: a Schema plus an ordered or unordered sequence of Rows
- NULL-aware ordering (SortKey, compare_nullable, sort_rows)
- Grouping equality (NULL groups with NULL) and the AGGREGATED sentinel used
  for columns that a grouping level rolls away

Relations convert to and from PyArrow tables at the boundary, in the same way
pipeline data moves between Arrow tables and lists of dicts.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import cmp_to_key
from typing import (
    Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional,
    Sequence, Tuple, Union,
)

import pyarrow as pa
from pydantic import BaseModel, ConfigDict, PrivateAttr

from ..rowset_exceptions import (
    ExpressionError, RowsetError, TypeMismatchError, ValidationError,
)


# =============================================================================
# Field Types
# =============================================================================

class FieldType(str, Enum):
    """Semantic type of a field.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    INTEGER = "integer"
    DECIMAL = "decimal"
    TEXT = "text"
    TIMESTAMP = "timestamp"
    BOOLEAN = "boolean"
    BINARY = "binary"  # large object, not orderable

    @property
    def orderable(self) -> bool:
        return self is not FieldType.BINARY

    @property
    def numeric(self) -> bool:
        return self in (FieldType.INTEGER, FieldType.DECIMAL)

    def accepts(self, value: Any) -> bool:
        """Check a non-NULL Python value against this type."""
        if value is None:
            return True
        if self is FieldType.INTEGER:
            return isinstance(value, int) and not isinstance(value, bool)
        if self is FieldType.DECIMAL:
            return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)
        if self is FieldType.TEXT:
            return isinstance(value, str)
        if self is FieldType.TIMESTAMP:
            return isinstance(value, date)
        if self is FieldType.BOOLEAN:
            return isinstance(value, bool)
        if self is FieldType.BINARY:
            return isinstance(value, (bytes, bytearray, memoryview))
        return False

    @classmethod
    def infer(cls, value: Any) -> Optional["FieldType"]:
        """Infer a field type from a Python value (None for NULL or unknown)."""
        if value is None:
            return None
        if isinstance(value, bool):
            return cls.BOOLEAN
        if isinstance(value, int):
            return cls.INTEGER
        if isinstance(value, (float, Decimal)):
            return cls.DECIMAL
        if isinstance(value, str):
            return cls.TEXT
        if isinstance(value, (datetime, date)):
            return cls.TIMESTAMP
        if isinstance(value, (bytes, bytearray, memoryview)):
            return cls.BINARY
        return None

    @classmethod
    def from_arrow(cls, dtype: pa.DataType) -> "FieldType":
        """Map an Arrow data type onto a field type."""
        if pa.types.is_boolean(dtype):
            return cls.BOOLEAN
        if pa.types.is_integer(dtype):
            return cls.INTEGER
        if pa.types.is_floating(dtype) or pa.types.is_decimal(dtype):
            return cls.DECIMAL
        if pa.types.is_string(dtype) or pa.types.is_large_string(dtype) or pa.types.is_null(dtype):
            return cls.TEXT
        if pa.types.is_timestamp(dtype) or pa.types.is_date(dtype):
            return cls.TIMESTAMP
        if pa.types.is_binary(dtype) or pa.types.is_large_binary(dtype):
            return cls.BINARY
        raise ValidationError(f"Unsupported Arrow type: {dtype}")

    def to_arrow(self) -> Optional[pa.DataType]:
        """Arrow type for this field; None lets Arrow infer from the values."""
        if self is FieldType.INTEGER:
            return pa.int64()
        if self is FieldType.TEXT:
            return pa.string()
        if self is FieldType.BOOLEAN:
            return pa.bool_()
        if self is FieldType.BINARY:
            return pa.binary()
        # DECIMAL may hold float or Decimal, TIMESTAMP may hold date or datetime
        return None


# =============================================================================
# Field / Schema
# =============================================================================

class Field(BaseModel):
    """A named, typed column of a relation."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: FieldType
    nullable: bool = True


class Schema(BaseModel):
    """Ordered list of Fields.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    model_config = ConfigDict(frozen=True)

    fields: Tuple[Field, ...] = ()

    _positions: Dict[str, int] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        positions = {}
        for index, f in enumerate(self.fields):
            if f.name in positions:
                raise ValidationError(f"Duplicate field name in schema: {f.name}")
            positions[f.name] = index
        self._positions = positions

    @classmethod
    def of(cls, *fields: Union[Field, Tuple[str, FieldType], Tuple[str, FieldType, bool]]) -> "Schema":
        """Build a schema from Field objects or (name, type[, nullable]) tuples."""
        built = []
        for f in fields:
            if isinstance(f, Field):
                built.append(f)
            elif len(f) == 2:
                built.append(Field(name=f[0], type=f[1]))
            else:
                built.append(Field(name=f[0], type=f[1], nullable=f[2]))
        return cls(fields=tuple(built))

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    @property
    def arity(self) -> int:
        return len(self.fields)

    def has(self, name: str) -> bool:
        return name in self._positions

    def position(self, name: str) -> int:
        """Index of a field, raising ValidationError for unknown names."""
        try:
            return self._positions[name]
        except KeyError:
            raise ValidationError(f"Unknown column: {name}") from None

    def field(self, name: str) -> Field:
        return self.fields[self.position(name)]

    def extend(self, *fields: Field) -> "Schema":
        return Schema(fields=self.fields + tuple(fields))

    def project(self, names: Sequence[str]) -> "Schema":
        return Schema(fields=tuple(self.field(n) for n in names))

    def to_arrow(self) -> pa.Schema:
        return pa.schema([
            pa.field(f.name, f.type.to_arrow() or pa.null(), nullable=f.nullable)
            for f in self.fields
        ])

    @classmethod
    def from_arrow(cls, schema: pa.Schema) -> "Schema":
        return cls(fields=tuple(
            Field(name=f.name, type=FieldType.from_arrow(f.type), nullable=f.nullable)
            for f in schema
        ))


# =============================================================================
# Row
# =============================================================================

class Row:
    """An immutable, fixed-arity tuple of values matching a Schema.

    Values are read by position (``row[0]``) or by column name
    (``row["salary"]``). NULL is ``None``.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    __slots__ = ("_schema", "_values")

    def __init__(self, schema: Schema, values: Iterable[Any]):
        values = tuple(values)
        if len(values) != schema.arity:
            raise TypeMismatchError(
                f"Row has {len(values)} value(s), schema expects {schema.arity}"
            )
        object.__setattr__(self, "_schema", schema)
        object.__setattr__(self, "_values", values)

    def __setattr__(self, name, value):
        raise AttributeError("Row is immutable")

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def values(self) -> Tuple[Any, ...]:
        return self._values

    def __getitem__(self, key: Union[int, slice, str]) -> Any:
        if isinstance(key, str):
            return self._values[self._schema.position(key)]
        return self._values[key]

    def get(self, name: str, default: Any = None) -> Any:
        if not self._schema.has(name):
            return default
        return self._values[self._schema.position(name)]

    def as_dict(self) -> Dict[str, Any]:
        return dict(zip(self._schema.names, self._values))

    def extend(self, schema: Schema, extra: Sequence[Any]) -> "Row":
        """New row over ``schema`` holding these values followed by ``extra``."""
        return Row(schema, self._values + tuple(extra))

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Row):
            return self._values == other._values and self._schema.names == other._schema.names
        if isinstance(other, tuple):
            return self._values == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._values)

    def __repr__(self) -> str:
        inner = ", ".join(f"{n}={v!r}" for n, v in zip(self._schema.names, self._values))
        return f"Row({inner})"


# =============================================================================
# Grouping equality
# =============================================================================

class _AggregatedAway:
    """Marker for a grouping column that the current level rolls away."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "AGGREGATED"

    def __reduce__(self):
        return (_AggregatedAway, ())


AGGREGATED = _AggregatedAway()


class _NaNKey:
    """Stands in for every float NaN so that NaN groups with NaN."""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _NaNKey)

    def __hash__(self) -> int:
        return hash("NaN")

    def __repr__(self) -> str:
        return "NaN"


_NAN_KEY = _NaNKey()


def grouping_value(value: Any) -> Any:
    """Normalize one value for grouping equality."""
    if isinstance(value, float) and math.isnan(value):
        return _NAN_KEY
    return value


def make_group_key(values: Iterable[Any]) -> Tuple[Any, ...]:
    """Build a hashable GroupKey; equal keys mean the same group."""
    return tuple(grouping_value(v) for v in values)


def grouping_equal(left: Sequence[Any], right: Sequence[Any]) -> bool:
    """GROUP BY equality: NULL equals NULL, AGGREGATED equals only itself."""
    return len(left) == len(right) and make_group_key(left) == make_group_key(right)


def sql_equals(left: Any, right: Any) -> Optional[bool]:
    """Scalar comparison: any NULL operand yields UNKNOWN (None)."""
    if left is None or right is None:
        return None
    return left == right


# =============================================================================
# Ordering
# =============================================================================

@dataclass(frozen=True)
class SortKey:
    """One ORDER BY item.

    ``nulls_first`` of None keeps the default placement: NULL sorts lowest,
    so it comes first ascending and last descending.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    column: str
    descending: bool = False
    nulls_first: Optional[bool] = None

    @classmethod
    def parse(cls, spec: Union[str, "SortKey"]) -> "SortKey":
        """Accept a SortKey or a column name; prefix with - for descending."""
        if isinstance(spec, SortKey):
            return spec
        if spec.startswith("-"):
            return cls(spec[1:], descending=True)
        return cls(spec)

    @property
    def nulls_placed_first(self) -> bool:
        if self.nulls_first is None:
            return not self.descending
        return self.nulls_first


def compare_values(left: Any, right: Any) -> int:
    """Three-way comparison of two non-NULL values."""
    try:
        return (left > right) - (left < right)
    except TypeError:
        raise TypeMismatchError(
            f"Cannot compare {type(left).__name__} with {type(right).__name__}",
            value=right,
        ) from None


def compare_nullable(left: Any, right: Any, descending: bool = False,
                     nulls_first: Optional[bool] = None) -> int:
    """Three-way comparison honoring direction and NULL placement."""
    if nulls_first is None:
        nulls_first = not descending
    if left is None and right is None:
        return 0
    if left is None:
        return -1 if nulls_first else 1
    if right is None:
        return 1 if nulls_first else -1
    result = compare_values(left, right)
    return -result if descending else result


def resolve_sort_keys(schema: Schema, keys: Sequence[Union[str, SortKey]]) -> List[Tuple[int, SortKey]]:
    """Validate ORDER BY items against a schema."""
    resolved = []
    for spec in keys:
        key = SortKey.parse(spec)
        f = schema.field(key.column)
        if not f.type.orderable:
            raise ValidationError(f"Column {key.column} of type {f.type.value} is not orderable")
        resolved.append((schema.position(key.column), key))
    return resolved


def row_comparator(resolved: Sequence[Tuple[int, SortKey]]) -> Callable[[Row, Row], int]:
    """Build a multi-key comparator from resolved sort keys."""
    def compare(left: Row, right: Row) -> int:
        for position, key in resolved:
            result = compare_nullable(left[position], right[position],
                                      key.descending, key.nulls_placed_first)
            if result:
                return result
        return 0
    return compare


def sort_rows(rows: Sequence[Row], schema: Schema,
              keys: Sequence[Union[str, SortKey]]) -> List[Row]:
    """Stable sort: rows tied on every key keep their input order."""
    resolved = resolve_sort_keys(schema, keys)
    if not resolved:
        return list(rows)
    return sorted(rows, key=cmp_to_key(row_comparator(resolved)))


# =============================================================================
# Evaluation statistics
# =============================================================================

class EvaluationStats(BaseModel):
    """Summary attached to every relation an engine produces."""
    model_config = ConfigDict(frozen=True)

    engine: str
    rows_in: int = 0
    rows_out: int = 0
    levels: int = 0
    partitions: int = 0
    iterations: int = 0
    final_state: Optional[str] = None
    elapsed_ms: float = 0.0


# =============================================================================
# Relation
# =============================================================================

RowInput = Union[Row, Sequence[Any], Mapping[str, Any]]


def _coerce_row(schema: Schema, item: RowInput) -> Row:
    if isinstance(item, Row):
        if item.schema is schema or item.schema.names == schema.names:
            return item if item.schema is schema else Row(schema, item.values)
        raise TypeMismatchError(
            f"Row columns {item.schema.names} do not match schema {schema.names}"
        )
    if isinstance(item, Mapping):
        return Row(schema, (item.get(name) for name in schema.names))
    return Row(schema, item)


def validate_rows(schema: Schema, rows: Sequence[Row]) -> None:
    """Check every value against its declared field type and nullability."""
    fields = schema.fields
    for index, row in enumerate(rows):
        for f, value in zip(fields, row.values):
            if value is None:
                if not f.nullable:
                    raise TypeMismatchError(
                        f"NULL in non-nullable column {f.name} at row {index}",
                        field=f.name, value=None, row_index=index,
                    )
            elif not f.type.accepts(value):
                raise TypeMismatchError(
                    f"Value {value!r} in column {f.name} at row {index} "
                    f"is not of type {f.type.value}",
                    field=f.name, value=value, row_index=index,
                )


class Relation:
    """A Schema plus a sequence of Rows.

    ``ordered`` records whether the row order is meaningful (an ORDER BY was
    applied). ``warnings`` carries semantic notes produced while computing the
    relation; ``stats`` the engine's EvaluationStats.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    def __init__(self, schema: Schema, rows: Iterable[RowInput] = (), *,
                 ordered: bool = False, warnings: Sequence[str] = (),
                 stats: Optional[EvaluationStats] = None, validate: bool = False):
        self.schema = schema
        self.rows: Tuple[Row, ...] = tuple(_coerce_row(schema, r) for r in rows)
        self.ordered = ordered
        self.warnings: Tuple[str, ...] = tuple(warnings)
        self.stats = stats
        if validate:
            validate_rows(schema, self.rows)

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_rows(cls, schema: Schema, rows: Iterable[RowInput], ordered: bool = False) -> "Relation":
        """Build a relation and validate every value against the schema."""
        return cls(schema, rows, ordered=ordered, validate=True)

    @classmethod
    def from_pylist(cls, records: Sequence[Mapping[str, Any]],
                    schema: Optional[Schema] = None) -> "Relation":
        """Build a relation from a list of dicts, inferring the schema if needed."""
        if schema is None:
            schema = infer_schema(records)
        return cls(schema, records, validate=True)

    @classmethod
    def from_arrow(cls, table: pa.Table) -> "Relation":
        """Build a relation from a PyArrow table."""
        schema = Schema.from_arrow(table.schema)
        return cls(schema, table.to_pylist(), validate=True)

    # -------------------------------------------------------------------------
    # Conversions
    # -------------------------------------------------------------------------

    def to_arrow(self) -> pa.Table:
        if not self.schema.fields:
            return pa.table({})
        columns = {}
        for position, f in enumerate(self.schema.fields):
            values = [row[position] for row in self.rows]
            columns[f.name] = pa.array(values, type=f.type.to_arrow())
        return pa.table(columns)

    def to_pylist(self) -> List[Dict[str, Any]]:
        return [row.as_dict() for row in self.rows]

    def column(self, name: str) -> List[Any]:
        position = self.schema.position(name)
        return [row[position] for row in self.rows]

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def with_rows(self, rows: Iterable[RowInput], ordered: Optional[bool] = None) -> "Relation":
        return Relation(self.schema, rows,
                        ordered=self.ordered if ordered is None else ordered,
                        warnings=self.warnings, stats=self.stats)

    def with_warnings(self, *warnings: str) -> "Relation":
        return Relation(self.schema, self.rows, ordered=self.ordered,
                        warnings=self.warnings + tuple(warnings), stats=self.stats)

    def with_stats(self, stats: EvaluationStats) -> "Relation":
        return Relation(self.schema, self.rows, ordered=self.ordered,
                        warnings=self.warnings, stats=stats)

    @property
    def num_rows(self) -> int:
        return len(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __getitem__(self, index: int) -> Row:
        return self.rows[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Relation):
            return NotImplemented
        return self.schema == other.schema and self.rows == other.rows

    def __repr__(self) -> str:
        return f"Relation({self.schema.names}, {len(self.rows)} rows)"


def infer_schema(records: Sequence[Mapping[str, Any]]) -> Schema:
    """Infer a schema from dict records: first non-NULL value decides the type."""
    names: List[str] = []
    types: Dict[str, Optional[FieldType]] = {}
    nullable: Dict[str, bool] = {}
    for record in records:
        for name in record:
            if name not in types:
                names.append(name)
                types[name] = None
                nullable[name] = False
    for record in records:
        for name in names:
            value = record.get(name)
            if value is None:
                nullable[name] = True
                continue
            inferred = FieldType.infer(value)
            if inferred is None:
                raise TypeMismatchError(f"Cannot infer a type for {value!r} in column {name}",
                                        field=name, value=value)
            current = types[name]
            if current is None:
                types[name] = inferred
            elif current is not inferred:
                if {current, inferred} == {FieldType.INTEGER, FieldType.DECIMAL}:
                    types[name] = FieldType.DECIMAL
                else:
                    raise TypeMismatchError(
                        f"Column {name} mixes {current.value} and {inferred.value} values",
                        field=name, value=value,
                    )
    return Schema(fields=tuple(
        Field(name=n, type=types[n] or FieldType.TEXT, nullable=nullable[n] or types[n] is None)
        for n in names
    ))


def ensure_relation(data: Union[Relation, pa.Table, Sequence[Mapping[str, Any]]],
                    schema: Optional[Schema] = None) -> Relation:
    """Ensure data is a Relation."""
    if isinstance(data, Relation):
        return data
    if isinstance(data, pa.Table):
        return Relation.from_arrow(data)
    return Relation.from_pylist(list(data), schema)


# =============================================================================
# Caller expressions
# =============================================================================

def guard_expression(fn: Callable[..., Any], label: str) -> Callable[..., Any]:
    """Wrap a caller-supplied callable so its failures surface as ExpressionError."""
    def guarded(*args: Any) -> Any:
        try:
            return fn(*args)
        except RowsetError:
            raise
        except Exception as exc:
            raise ExpressionError(f"{label} raised {type(exc).__name__}: {exc}") from exc
    return guarded
