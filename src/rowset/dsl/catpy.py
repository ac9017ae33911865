"""
catpy.py: Category-theory-inspired programming foundations for the evaluators.

This module provides the core typeclasses and types used throughout the engines:
- Core typeclasses: Functor, Applicative, Monad
- Concrete instance: Result (Ok/Err)
- The EvaluationError value every engine returns instead of raising
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Mapping,
    Optional,
    TypeVar,
)
from abc import ABC, abstractmethod

from ..rowset_exceptions import RowsetError

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E")

# ---------------------------------------------------------------------------
# Core typeclasses
# ---------------------------------------------------------------------------

class Functor(ABC, Generic[T]):
    """
    A structure that supports mapping a function over the values it contains.

    Laws (for all f: a->b, g: b->c):
      1) Identity:     fmap(id)      == id
      2) Composition:  fmap(g)∘fmap(f) == fmap(g∘f)

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a type-class.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @abstractmethod
    def fmap(self, f: Callable[[T], U]) -> "Functor[U]":
        """Map a pure function over the structure."""
        raise NotImplementedError

    # Convenience alias
    def map(self, f: Callable[[T], U]) -> "Functor[U]":
        return self.fmap(f)


class Applicative(Functor[T], ABC):
    """
    A Functor that can lift pure values and apply wrapped functions.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a type-class.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @classmethod
    @abstractmethod
    def pure(cls, x: U) -> "Applicative[U]":
        """Lift a value into the applicative context."""
        raise NotImplementedError

    @abstractmethod
    def ap(self: "Applicative[Callable[[T], U]]", x: "Applicative[T]") -> "Applicative[U]":
        """Apply a wrapped function to a wrapped value."""
        raise NotImplementedError


class Monad(Applicative[T], ABC):
    """
    A structure that supports flattening/sequencing (bind).

    Laws (for all x and functions f: a -> m b, g: b -> m c):
      1) Left identity:  pure(x).bind(f) == f(x)
      2) Right identity: m.bind(pure)    == m
      3) Associativity:  m.bind(f).bind(g) == m.bind(lambda x: f(x).bind(g))

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a type-class.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @abstractmethod
    def bind(self, f: Callable[[T], "Monad[U]"]) -> "Monad[U]":
        """Chain a function that returns a wrapped value (aka flatMap)."""
        raise NotImplementedError

    def fmap(self, f: Callable[[T], U]) -> "Monad[U]":  # type: ignore[override]
        return self.bind(lambda a: self.__class__.pure(f(a)))  # type: ignore[misc]

    def ap(self: "Monad[Callable[[T], U]]", x: "Monad[T]") -> "Monad[U]":  # type: ignore[override]
        return self.bind(lambda f: x.bind(lambda a: self.__class__.pure(f(a))))  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

class Result(Monad[T], ABC, Generic[T, E]):
    """
    Tagged union for success or failure with an error value.
    - Ok(value)
    - Err(error)

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a monad.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    @classmethod
    def pure(cls, x: U) -> "Result[U, E]":  # type: ignore[override]
        return Ok(x)

    def is_ok(self) -> bool:
        return isinstance(self, Ok)

    def is_err(self) -> bool:
        return isinstance(self, Err)

    def unwrap(self) -> T:
        """Get the value or raise if Err."""
        if isinstance(self, Ok):
            return self.value
        raise ValueError(f"Cannot unwrap Err: {self}")

    def unwrap_or(self, default: T) -> T:
        """Get the value or return default if Err."""
        if isinstance(self, Ok):
            return self.value
        return default

    def map_err(self, f: Callable[[E], E]) -> "Result[T, E]":
        """Map a function over the error value."""
        if isinstance(self, Err):
            return Err(f(self.error))
        return self


@dataclass(frozen=True)
class Ok(Result[T, E]):
    """Represents a successful result.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a monad.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    value: T

    def bind(self, f: Callable[[T], Result[U, E]]) -> Result[U, E]:
        return f(self.value)

    def fmap(self, f: Callable[[T], U]) -> Result[U, E]:  # type: ignore[override]
        return Ok(f(self.value))

    def ap(self, x: Result[T, E]) -> Result[U, E]:  # type: ignore[override]
        if callable(self.value):
            if isinstance(x, Ok):
                return Ok(self.value(x.value))  # type: ignore[misc]
            return x  # Err propagates
        raise TypeError("Ok.ap expects an Ok(function).")

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True)
class Err(Result[Any, E]):
    """Represents a failed result with error information.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a monad.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """
    error: E

    def bind(self, f: Callable[[Any], Result[U, E]]) -> Result[U, E]:
        return self  # type: ignore[return-value]

    def fmap(self, f: Callable[[Any], U]) -> Result[U, E]:  # type: ignore[override]
        return self  # type: ignore[return-value]

    def ap(self, x: Result[Any, E]) -> Result[Any, E]:  # type: ignore[override]
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# ---------------------------------------------------------------------------
# Evaluation Error Type
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    """Failure classes reported by the engines.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    """
    VALIDATION = "validation"
    TYPE_MISMATCH = "type_mismatch"
    RECURSION_LIMIT = "recursion_limit"
    CANCELLED = "cancelled"
    EXPRESSION = "expression"
    INTERNAL = "internal"


@dataclass(frozen=True)
class EvaluationError:
    """Error that occurred during an evaluation call.

    ::: This is-in-layer Domain-Specific-Language-Layer.
    ::: This is a value-object.
    """
    step: str
    kind: ErrorKind
    message: str
    cause: Optional[Exception] = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.step}:{self.kind.value}] {self.message}"


# Type alias for evaluation results
EvaluationResult = Result[T, EvaluationError]


def eval_ok(value: T) -> EvaluationResult[T]:
    """Create a successful evaluation result."""
    return Ok(value)


def eval_err(step: str, kind: ErrorKind, message: str,
             cause: Exception = None, **details: Any) -> EvaluationResult[Any]:
    """Create a failed evaluation result."""
    return Err(EvaluationError(step, kind, message, cause, details))


def error_from_exception(step: str, exc: Exception) -> EvaluationResult[Any]:
    """Convert an exception caught at an engine boundary into an Err value.

    Typed ``RowsetError`` subclasses keep their kind; anything else escaped
    the engine itself and is reported as an internal invariant violation.
    """
    if isinstance(exc, RowsetError):
        kind = ErrorKind(exc.kind)
        details: Dict[str, Any] = {}
        for attr in ("field", "value", "row_index", "depth", "frontier_size", "trigger_row"):
            if hasattr(exc, attr):
                details[attr] = getattr(exc, attr)
        return Err(EvaluationError(step, kind, str(exc), exc, details))
    return Err(EvaluationError(
        step, ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}", exc, {}
    ))
