"""Structured error types for bind-time and run-time failures."""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class Span:
    """Half-open source range attached to instructions and diagnostics."""

    start: int
    end: int

    def __str__(self) -> str:
        return f"[{self.start}, {self.end})"


class StackJaxError(Exception):
    """Base class for structured stackjax errors."""

    kind: ClassVar[str] = "error"

    def __init__(self, message: str, *, span: Span | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.span = span

    def __str__(self) -> str:
        if self.span is None:
            return self.message
        return f"{self.message} at span {self.span}"


class BindError(StackJaxError):
    """Failure while classifying or checking a binding."""


class StackRuntimeError(StackJaxError):
    """Generic failure while running a bound function."""


class ShapeMismatch(StackRuntimeError):
    """Incompatible shapes in concatenation, broadcast or reshape."""

    kind = "shape_mismatch"


class StackSignatureMismatch(BindError, StackRuntimeError):
    """Insufficient stack depth or modifier arity mismatch."""

    kind = "stack_signature_mismatch"


class AmbiguousSignature(BindError):
    """Constant/function classification could not be resolved at bind time."""

    kind = "ambiguous_signature"


class InvalidInversion(BindError, StackRuntimeError):
    """Under or invert applied to a function that has no inverse in context."""

    kind = "invalid_inversion"


class IndexOutOfBounds(StackRuntimeError):
    """Take, drop or index beyond the available length without a fill."""

    kind = "index_out_of_bounds"


class TypeMismatch(StackRuntimeError):
    """Value-kind misuse, such as unboxing a non-box."""

    kind = "type_mismatch"


def classify_runtime_exception(err: Exception) -> StackRuntimeError:
    """Best-effort mapping of foreign (JAX/Python) exceptions onto typed errors."""
    if isinstance(err, StackRuntimeError):
        return err
    message = str(err)
    lowered = message.lower()

    bounds_markers = (
        "out of bounds",
        "out-of-bounds",
        "out of range",
        "index out",
    )
    if isinstance(err, IndexError) or any(marker in lowered for marker in bounds_markers):
        return IndexOutOfBounds(message)

    shape_markers = (
        "shape",
        "rank",
        "broadcast",
        "axis",
        "reshape",
        "dimension",
    )
    if any(marker in lowered for marker in shape_markers):
        return ShapeMismatch(message)

    type_markers = (
        "type",
        "dtype",
        "integer",
        "number",
        "callable",
        "must be",
    )
    if isinstance(err, TypeError) or any(marker in lowered for marker in type_markers):
        return TypeMismatch(message)

    return StackRuntimeError(message)
