"""Runtime value model: numeric, character, boxed and function values."""

from __future__ import annotations

import itertools
import math
import numbers
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Final, Union

import jax
import jax.numpy as jnp

from .errors import IndexOutOfBounds, ShapeMismatch, TypeMismatch

if TYPE_CHECKING:
    from .function import Function

_ENABLE_X64: Final[bool] = os.environ.get("STACKJAX_ENABLE_X64", "1") != "0"
if _ENABLE_X64:
    jax.config.update("jax_enable_x64", True)

NUMERIC_DTYPE: Final = jnp.float64 if _ENABLE_X64 else jnp.float32
CHAR_DTYPE: Final = jnp.int32


class ValueKind(str, Enum):
    NUMBER = "number"
    CHARACTER = "character"
    BOX = "box"
    FUNCTION = "function"


@dataclass(frozen=True)
class ValueInfo:
    kind: ValueKind
    shape: tuple[int, ...]
    rank: int
    depth: int


def _shape_size(shape: Sequence[int]) -> int:
    size = 1
    for dim in shape:
        size *= int(dim)
    return size


def _normalize_shape(shape: Sequence[int], *, where: str) -> tuple[int, ...]:
    dims: list[int] = []
    for dim in shape:
        if isinstance(dim, bool) or not isinstance(dim, numbers.Integral):
            raise TypeMismatch(f"{where} shape dimensions must be integers, got {dim!r}")
        if dim < 0:
            raise ShapeMismatch(f"{where} shape dimensions must be non-negative, got {tuple(shape)}")
        dims.append(int(dim))
    return tuple(dims)


def format_shape(shape: Sequence[int]) -> str:
    return "[" + " × ".join(str(d) for d in shape) + "]"


class _FlatArray:
    """Shared shape/buffer behavior of numeric and character arrays."""

    shape: tuple[int, ...]
    data: jnp.ndarray
    kind: ClassVar[ValueKind]
    dtype: ClassVar[object]

    def _validate(self) -> None:
        shape = _normalize_shape(self.shape, where=type(self).__name__)
        data = jnp.ravel(jnp.asarray(self.data, dtype=self.dtype))
        if int(data.shape[0]) != _shape_size(shape):
            raise ShapeMismatch(
                f"{type(self).__name__} shape {format_shape(shape)} needs "
                f"{_shape_size(shape)} elements, buffer has {int(data.shape[0])}"
            )
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "data", data)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def row_count(self) -> int:
        return self.shape[0] if self.shape else 1

    @property
    def row_len(self) -> int:
        return _shape_size(self.shape[1:])

    @property
    def flat_len(self) -> int:
        return int(self.data.shape[0])

    def to_jax(self) -> jnp.ndarray:
        return jnp.reshape(self.data, self.shape)

    @classmethod
    def from_jax(cls, arr):
        arr = jnp.asarray(arr, dtype=cls.dtype)
        return cls(tuple(int(d) for d in arr.shape), jnp.ravel(arr))

    def tolist(self):
        return self.to_jax().tolist()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, (NumericArray, CharacterArray, BoxedValue, FunctionReference)):
            return NotImplemented
        return matches(self, other)

    def __hash__(self) -> int:
        return hash((self.kind, self.shape, tuple(self.data.tolist())))


@dataclass(frozen=True, eq=False)
class NumericArray(_FlatArray):
    """Array of numbers with a flat row-major buffer."""

    shape: tuple[int, ...]
    data: jnp.ndarray = field(repr=False)
    kind: ClassVar[ValueKind] = ValueKind.NUMBER
    dtype: ClassVar[object] = NUMERIC_DTYPE

    def __post_init__(self) -> None:
        self._validate()

    def __repr__(self) -> str:
        return f"NumericArray(shape={self.shape}, data={self.data.tolist()})"


@dataclass(frozen=True, eq=False)
class CharacterArray(_FlatArray):
    """Array of characters stored as Unicode code points."""

    shape: tuple[int, ...]
    data: jnp.ndarray = field(repr=False)
    kind: ClassVar[ValueKind] = ValueKind.CHARACTER
    dtype: ClassVar[object] = CHAR_DTYPE

    def __post_init__(self) -> None:
        self._validate()

    def __repr__(self) -> str:
        return f"CharacterArray(shape={self.shape}, text={self.text()!r})"

    def text(self) -> str:
        return "".join(chr(int(cp)) for cp in self.data.tolist())

    def tolist(self):
        nested = self.to_jax().tolist()

        def convert(item):
            if isinstance(item, list):
                return [convert(x) for x in item]
            return chr(int(item))

        return convert(nested)


@dataclass(frozen=True, eq=False)
class BoxedValue:
    """Array of boxes; a rank-0 instance wraps exactly one inner value."""

    shape: tuple[int, ...]
    items: tuple["Value", ...]
    kind: ClassVar[ValueKind] = ValueKind.BOX

    def __post_init__(self) -> None:
        shape = _normalize_shape(self.shape, where="BoxedValue")
        items = tuple(self.items)
        if len(items) != _shape_size(shape):
            raise ShapeMismatch(
                f"BoxedValue shape {format_shape(shape)} needs {_shape_size(shape)} items, got {len(items)}"
            )
        for idx, item in enumerate(items):
            validate_value(item, where=f"box item {idx}")
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "items", items)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def row_count(self) -> int:
        return self.shape[0] if self.shape else 1

    @property
    def row_len(self) -> int:
        return _shape_size(self.shape[1:])

    @property
    def flat_len(self) -> int:
        return len(self.items)

    @property
    def inner(self) -> "Value":
        if self.shape:
            raise TypeMismatch(f"Cannot unbox an array of {self.flat_len} boxes")
        return self.items[0]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, (NumericArray, CharacterArray, BoxedValue, FunctionReference)):
            return NotImplemented
        return matches(self, other)

    def __hash__(self) -> int:
        return hash((self.kind, self.shape, self.items))


@dataclass(frozen=True, eq=False)
class FunctionReference:
    """A function pushed onto the stack as a value."""

    function: "Function"
    kind: ClassVar[ValueKind] = ValueKind.FUNCTION

    shape: ClassVar[tuple[int, ...]] = ()
    rank: ClassVar[int] = 0
    row_count: ClassVar[int] = 1
    row_len: ClassVar[int] = 1
    flat_len: ClassVar[int] = 1

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, (NumericArray, CharacterArray, BoxedValue, FunctionReference)):
            return NotImplemented
        return matches(self, other)

    def __hash__(self) -> int:
        return hash((self.kind, id(self.function)))


Value = Union[NumericArray, CharacterArray, BoxedValue, FunctionReference]
ArrayValue = Union[NumericArray, CharacterArray, BoxedValue]

_VALUE_TYPES: Final = (NumericArray, CharacterArray, BoxedValue, FunctionReference)


def is_value(value: object) -> bool:
    return isinstance(value, _VALUE_TYPES)


def validate_value(value: object, *, where: str = "value") -> None:
    if not isinstance(value, _VALUE_TYPES):
        raise TypeMismatch(f"{where} has unsupported runtime type {type(value).__name__}")


def type_name(value: "Value") -> str:
    if isinstance(value, NumericArray):
        return "number" if value.rank == 0 else "number array"
    if isinstance(value, CharacterArray):
        return "character" if value.rank == 0 else "string" if value.rank == 1 else "character array"
    if isinstance(value, BoxedValue):
        return "box" if value.rank == 0 else "box array"
    if isinstance(value, FunctionReference):
        return "function"
    raise TypeMismatch(f"Unsupported runtime type {type(value).__name__}")


# Construction


def array(shape: Sequence[int], buffer) -> NumericArray | CharacterArray:
    """Build an array from a shape and a flat row-major buffer."""
    if isinstance(buffer, str):
        return CharacterArray(tuple(shape), jnp.asarray([ord(ch) for ch in buffer], dtype=CHAR_DTYPE))
    return NumericArray(tuple(shape), jnp.asarray(buffer, dtype=NUMERIC_DTYPE))


def scalar(x) -> NumericArray | CharacterArray:
    if isinstance(x, str):
        if len(x) != 1:
            raise TypeMismatch("Character scalar must contain exactly one codepoint")
        return CharacterArray((), jnp.asarray([ord(x)], dtype=CHAR_DTYPE))
    if not isinstance(x, numbers.Real):
        raise TypeMismatch(f"Cannot build a numeric scalar from {type(x).__name__}")
    return NumericArray((), jnp.asarray([x], dtype=NUMERIC_DTYPE))


def chars(text: str) -> CharacterArray:
    return CharacterArray((len(text),), jnp.asarray([ord(ch) for ch in text], dtype=CHAR_DTYPE))


def as_value(obj) -> "Value":
    """Convert nested Python data (numbers, strings, lists, JAX arrays) into a value."""
    if isinstance(obj, _VALUE_TYPES):
        return obj
    if isinstance(obj, str):
        return chars(obj)
    if isinstance(obj, numbers.Number) and not isinstance(obj, numbers.Real):
        raise TypeMismatch("Complex numbers are not supported")
    if isinstance(obj, numbers.Real):
        return scalar(obj)
    if isinstance(obj, (list, tuple)):
        if any(isinstance(item, (str,) + _VALUE_TYPES) for item in obj):
            return from_rows([as_value(item) for item in obj], where="as_value")
        return NumericArray.from_jax(jnp.asarray(obj, dtype=NUMERIC_DTYPE))
    if hasattr(obj, "shape") and hasattr(obj, "dtype"):
        return NumericArray.from_jax(obj)
    raise TypeMismatch(f"Cannot convert {type(obj).__name__} to a value")


def box(value: "Value") -> BoxedValue:
    validate_value(value, where="box")
    return BoxedValue((), (value,))


def unbox(value: "Value") -> "Value":
    if isinstance(value, BoxedValue):
        return value.inner
    if isinstance(value, (NumericArray, CharacterArray, FunctionReference)):
        raise TypeMismatch(f"Cannot unbox a {type_name(value)}")
    raise TypeMismatch(f"Unsupported runtime type {type(value).__name__}")


# Introspection


def shape_of(value: "Value") -> tuple[int, ...]:
    return tuple(value.shape)


def rank_of(value: "Value") -> int:
    return len(value.shape)


def depth_of(value: "Value") -> int:
    if isinstance(value, BoxedValue):
        if not value.items:
            return 1
        return 1 + max(depth_of(item) for item in value.items)
    if isinstance(value, (NumericArray, CharacterArray)):
        return 0 if value.rank == 0 else 1
    if isinstance(value, FunctionReference):
        return 0
    raise TypeMismatch(f"Unsupported runtime type {type(value).__name__}")


def kind_of(value: "Value") -> ValueKind:
    validate_value(value)
    return value.kind


def value_info(value: "Value") -> ValueInfo:
    shape = shape_of(value)
    return ValueInfo(kind=kind_of(value), shape=shape, rank=len(shape), depth=depth_of(value))


def matches(left: "Value", right: "Value") -> bool:
    if type(left) is not type(right):
        return False
    if isinstance(left, FunctionReference):
        return left.function is right.function or left.function == right.function
    if tuple(left.shape) != tuple(right.shape):
        return False
    if isinstance(left, BoxedValue):
        return all(matches(a, b) for a, b in zip(left.items, right.items, strict=True))
    return bool(jnp.array_equal(left.data, right.data, equal_nan=True))


def is_truthy(value: "Value", *, where: str) -> bool:
    if not isinstance(value, NumericArray) or value.rank != 0:
        raise TypeMismatch(f"{where} condition must be a scalar number, got {type_name(value)}")
    scalar_value = float(value.data[0])
    if scalar_value not in (0.0, 1.0):
        raise TypeMismatch(f"{where} condition must be 0 or 1, got {scalar_value:g}")
    return scalar_value == 1.0


# Leading-axis access


def require_array(value: "Value", *, where: str) -> None:
    if isinstance(value, FunctionReference):
        raise TypeMismatch(f"{where} is not defined for functions")
    validate_value(value, where=where)


def row(value: "Value", index: int) -> "Value":
    require_array(value, where="Row access")
    if value.rank == 0:
        raise ShapeMismatch("Cannot index into a scalar")
    count = value.shape[0]
    if index < -count or index >= count:
        raise IndexOutOfBounds(f"Index {index} is out of bounds for length {count}")
    if index < 0:
        index += count
    row_len = value.row_len
    row_shape = value.shape[1:]
    if isinstance(value, BoxedValue):
        return BoxedValue(row_shape, value.items[index * row_len : (index + 1) * row_len])
    return type(value)(row_shape, value.data[index * row_len : (index + 1) * row_len])


def rows(value: "Value") -> list["Value"]:
    require_array(value, where="Row iteration")
    if value.rank == 0:
        return [value]
    return [row(value, i) for i in range(value.shape[0])]


def slice_rows(value: "Value", start: int, stop: int) -> "Value":
    require_array(value, where="Slicing")
    if value.rank == 0:
        raise ShapeMismatch("Cannot slice a scalar")
    count = value.shape[0]
    start = max(0, min(start, count))
    stop = max(start, min(stop, count))
    row_len = value.row_len
    shape = (stop - start, *value.shape[1:])
    if isinstance(value, BoxedValue):
        return BoxedValue(shape, value.items[start * row_len : stop * row_len])
    return type(value)(shape, value.data[start * row_len : stop * row_len])


def empty_like_rows(template: "Value | None" = None) -> "Value":
    if template is None:
        return NumericArray((0,), jnp.asarray([], dtype=NUMERIC_DTYPE))
    if isinstance(template, NumericArray):
        return NumericArray((0, *template.shape), jnp.asarray([], dtype=NUMERIC_DTYPE))
    if isinstance(template, CharacterArray):
        return CharacterArray((0, *template.shape), jnp.asarray([], dtype=CHAR_DTYPE))
    if isinstance(template, BoxedValue):
        return BoxedValue((0, *template.shape), ())
    raise TypeMismatch(f"Cannot build an empty array of {type_name(template)}")


def from_rows(items: Sequence["Value"], *, where: str = "array", fill: "Value | None" = None) -> "Value":
    """Stack same-shaped, same-kind rows along a new leading axis.

    With a fill value, rows of equal rank but different shapes are padded to
    their common maximal shape first.
    """
    if not items:
        return empty_like_rows()
    first = items[0]
    for item in items:
        validate_value(item, where=where)
        if isinstance(item, FunctionReference):
            raise TypeMismatch(f"{where} cannot contain functions; box them first")
        if type(item) is not type(first):
            raise TypeMismatch(f"{where} cannot mix {type_name(first)} and {type_name(item)} rows")
    if any(item.shape != first.shape for item in items):
        if fill is None or any(item.rank != first.rank for item in items):
            mismatched = next(item for item in items if item.shape != first.shape)
            raise ShapeMismatch(
                f"{where} rows must have matching shapes, got {format_shape(first.shape)} "
                f"and {format_shape(mismatched.shape)}"
            )
        target = tuple(max(dims) for dims in zip(*(item.shape for item in items)))
        items = [pad_to_shape(item, target, fill, where=where) for item in items]
        first = items[0]
    shape = (len(items), *first.shape)
    if isinstance(first, BoxedValue):
        return BoxedValue(shape, tuple(itertools.chain.from_iterable(item.items for item in items)))
    return type(first)(shape, jnp.concatenate([item.data for item in items]))


# Fill padding


def fill_element(template: "Value", fill: "Value", *, where: str):
    if isinstance(template, BoxedValue):
        return fill.inner if isinstance(fill, BoxedValue) and fill.rank == 0 else fill
    if type(fill) is not type(template) or fill.rank != 0:
        raise TypeMismatch(f"{where} fill value {type_name(fill)} does not fit a {type_name(template)}")
    return fill.data[0]


def pad_to_shape(value: "Value", target: Sequence[int], fill: "Value", *, where: str) -> "Value":
    """Pad every axis at the end up to ``target`` using a scalar fill value."""
    target = tuple(int(d) for d in target)
    if len(target) != value.rank or any(t < s for t, s in zip(target, value.shape)):
        raise ShapeMismatch(f"{where} cannot pad {format_shape(value.shape)} to {format_shape(target)}")
    if target == value.shape:
        return value
    fill_elem = fill_element(value, fill, where=where)
    if isinstance(value, BoxedValue):
        padded: list[Value] = []
        for index in itertools.product(*(range(d) for d in target)):
            if all(i < s for i, s in zip(index, value.shape)):
                flat = 0
                for i, s in zip(index, value.shape):
                    flat = flat * s + i
                padded.append(value.items[flat])
            else:
                padded.append(fill_elem)
        return BoxedValue(target, tuple(padded))
    widths = [(0, t - s) for t, s in zip(target, value.shape)]
    arr = jnp.pad(value.to_jax(), widths, mode="constant", constant_values=fill_elem)
    return type(value).from_jax(arr)


def fill_rows(template: "Value", count: int, fill: "Value", *, where: str) -> "Value":
    """Build ``count`` rows shaped like the rows of ``template`` from a fill value."""
    row_shape = template.shape[1:] if template.rank else ()
    if isinstance(template, BoxedValue):
        elem = fill_element(template, fill, where=where)
        return BoxedValue((count, *row_shape), (elem,) * (count * _shape_size(row_shape)))
    elem = fill_element(template, fill, where=where)
    arr = jnp.full((count, *row_shape), elem, dtype=template.dtype)
    return type(template).from_jax(arr)


# Structural operations


def promote_to_rows(value: "Value") -> "Value":
    if value.rank == 0:
        if isinstance(value, BoxedValue):
            return BoxedValue((1,), value.items)
        return type(value)((1,), value.data)
    return value


def join(left: "Value", right: "Value", *, fill: "Value | None" = None) -> "Value":
    """Concatenate ``left``'s rows followed by ``right``'s rows."""
    require_array(left, where="Join")
    require_array(right, where="Join")
    if type(left) is not type(right):
        raise TypeMismatch(f"Cannot join {type_name(left)} and {type_name(right)}")

    if left.rank == right.rank + 1 and right.rank > 0:
        right = from_rows([right])
    elif right.rank == left.rank + 1 and left.rank > 0:
        left = from_rows([left])
    else:
        left = promote_to_rows(left)
        right = promote_to_rows(right)

    if left.rank != right.rank:
        raise ShapeMismatch(
            f"Cannot join arrays of shapes {format_shape(left.shape)} and {format_shape(right.shape)}"
        )
    if left.shape[1:] != right.shape[1:]:
        if fill is None:
            raise ShapeMismatch(
                f"Cannot join arrays of shapes {format_shape(left.shape)} and {format_shape(right.shape)}"
            )
        cell = tuple(max(a, b) for a, b in zip(left.shape[1:], right.shape[1:]))
        left = pad_to_shape(left, (left.shape[0], *cell), fill, where="Join")
        right = pad_to_shape(right, (right.shape[0], *cell), fill, where="Join")

    shape = (left.shape[0] + right.shape[0], *left.shape[1:])
    if isinstance(left, BoxedValue):
        return BoxedValue(shape, left.items + right.items)
    return type(left)(shape, jnp.concatenate((left.data, right.data)))


def couple(left: "Value", right: "Value", *, fill: "Value | None" = None) -> "Value":
    require_array(left, where="Couple")
    require_array(right, where="Couple")
    if left.shape != right.shape and fill is not None and left.rank == right.rank and type(left) is type(right):
        target = tuple(max(a, b) for a, b in zip(left.shape, right.shape))
        left = pad_to_shape(left, target, fill, where="Couple")
        right = pad_to_shape(right, target, fill, where="Couple")
    return from_rows([left, right], where="Couple")


def reverse(value: "Value") -> "Value":
    require_array(value, where="Reverse")
    if value.rank == 0 or value.shape[0] == 0:
        return value
    if isinstance(value, BoxedValue):
        return from_rows(list(reversed(rows(value))), where="Reverse")
    return type(value).from_jax(jnp.flip(value.to_jax(), axis=0))


def as_integer(value: "Value", *, where: str) -> int:
    if not isinstance(value, NumericArray) or value.rank != 0:
        raise TypeMismatch(f"{where} expects a scalar integer, got {type_name(value)}")
    real = float(value.data[0])
    if not math.isfinite(real) or not real.is_integer():
        raise TypeMismatch(f"{where} expects an integer, got {real:g}")
    return int(real)


def as_integers(value: "Value", *, where: str) -> list[int]:
    if not isinstance(value, NumericArray) or value.rank > 1:
        raise TypeMismatch(f"{where} expects an integer or a list of integers, got {type_name(value)}")
    out: list[int] = []
    for real in value.data.tolist():
        if not math.isfinite(real) or not float(real).is_integer():
            raise TypeMismatch(f"{where} expects integers, got {real:g}")
        out.append(int(real))
    return out


def as_naturals(value: "Value", *, where: str) -> list[int]:
    ints = as_integers(value, where=where)
    if any(n < 0 for n in ints):
        raise TypeMismatch(f"{where} expects natural numbers, got {ints}")
    return ints
