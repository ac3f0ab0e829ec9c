"""Structural array primitives: indexing, slicing, sorting and reshaping."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

import jax.numpy as jnp

from .errors import IndexOutOfBounds, ShapeMismatch, TypeMismatch
from .values import (
    NUMERIC_DTYPE,
    BoxedValue,
    CharacterArray,
    FunctionReference,
    NumericArray,
    Value,
    as_integers,
    as_naturals,
    empty_like_rows,
    fill_element,
    format_shape,
    from_rows,
    matches,
    promote_to_rows,
    require_array,
    row,
    rows,
    scalar,
    type_name,
)


@dataclass(frozen=True)
class AxisSpan:
    """Region of one axis kept by take/drop, plus fill padding around it."""

    axis: int
    start: int
    stop: int
    pad_before: int = 0
    pad_after: int = 0

    @property
    def kept(self) -> int:
        return self.stop - self.start

    @property
    def length(self) -> int:
        return self.pad_before + self.kept + self.pad_after


# Index-grid helpers. Boxes have no jnp buffer, so structural transforms run on
# a grid of flat item positions and gather the items afterwards; -1 marks fill.


def _index_grid(value: Value) -> jnp.ndarray:
    return jnp.reshape(jnp.arange(value.flat_len, dtype=jnp.int32), value.shape)


def _gather(value: Value, grid: jnp.ndarray, fill_elem=None) -> Value:
    shape = tuple(int(d) for d in grid.shape)
    if isinstance(value, BoxedValue):
        flat = [int(i) for i in jnp.ravel(grid).tolist()]
        return BoxedValue(shape, tuple(fill_elem if i < 0 else value.items[i] for i in flat))
    if isinstance(value, (NumericArray, CharacterArray)):
        if value.flat_len == 0:
            elem = 0 if fill_elem is None else fill_elem
            return type(value).from_jax(jnp.full(shape, elem, dtype=value.dtype))
        picked = value.data[jnp.maximum(grid, 0)]
        if fill_elem is not None:
            picked = jnp.where(grid < 0, fill_elem, picked)
        return type(value).from_jax(picked)
    raise TypeMismatch(f"Cannot restructure a {type_name(value)}")


def _structural(value: Value, fn) -> Value:
    """Apply an index-only jnp transform to any array value."""
    if isinstance(value, (NumericArray, CharacterArray)):
        return type(value).from_jax(fn(value.to_jax()))
    if isinstance(value, BoxedValue):
        return _gather(value, fn(_index_grid(value)))
    raise TypeMismatch(f"Cannot restructure a {type_name(value)}")


def _pad_axis(value: Value, axis: int, before: int, after: int, fill: Value, *, where: str) -> Value:
    if before == 0 and after == 0:
        return value
    elem = fill_element(value, fill, where=where)
    widths = [(0, 0)] * value.rank
    widths[axis] = (before, after)
    grid = jnp.pad(_index_grid(value), widths, mode="constant", constant_values=-1)
    return _gather(value, grid, elem)


def _region_shape(shape: Sequence[int], slices: Sequence[slice]) -> tuple[int, ...]:
    out = list(shape)
    for axis, sl in enumerate(slices):
        out[axis] = len(range(*sl.indices(shape[axis])))
    return tuple(out)


def region(value: Value, slices: Sequence[slice]) -> Value:
    return _structural(value, lambda arr: arr[tuple(slices)])


def write_region(original: Value, slices: Sequence[slice], replacement: Value, *, where: str) -> Value:
    """Return ``original`` with the region selected by ``slices`` replaced."""
    require_array(replacement, where=where)
    if type(original) is not type(replacement):
        raise TypeMismatch(f"{where} cannot put a {type_name(replacement)} back into a {type_name(original)}")
    expected = _region_shape(original.shape, slices)
    if replacement.shape != expected:
        raise ShapeMismatch(
            f"{where} expected a replacement of shape {format_shape(expected)}, "
            f"got {format_shape(replacement.shape)}"
        )
    key = tuple(slices)
    if isinstance(original, BoxedValue):
        positions = [int(i) for i in jnp.ravel(_index_grid(original)[key]).tolist()]
        items = list(original.items)
        for pos, item in zip(positions, replacement.items):
            items[pos] = item
        return BoxedValue(original.shape, tuple(items))
    updated = original.to_jax().at[key].set(replacement.to_jax())
    return type(original).from_jax(updated)


# Introspection


def length(value: Value) -> NumericArray:
    require_array(value, where="Length")
    return scalar(value.row_count)


def shape(value: Value) -> NumericArray:
    require_array(value, where="Shape")
    return NumericArray((value.rank,), jnp.asarray(value.shape, dtype=NUMERIC_DTYPE))


def match(a: Value, b: Value) -> NumericArray:
    return scalar(1.0 if matches(a, b) else 0.0)


def range_of(value: Value) -> NumericArray:
    if isinstance(value, NumericArray) and value.rank == 0:
        (n,) = as_naturals(value, where="Range")
        return NumericArray((n,), jnp.arange(n, dtype=NUMERIC_DTYPE))
    dims = as_naturals(value, where="Range")
    grids = jnp.indices(tuple(dims), dtype=NUMERIC_DTYPE)
    return NumericArray.from_jax(jnp.moveaxis(grids, 0, -1))


# Leading-axis selection


def first(value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="First")
    if value.rank == 0:
        return value
    if value.shape[0] == 0:
        if fill is None:
            raise IndexOutOfBounds("Cannot take the first row of an empty array")
        return _fill_cell(value, fill, where="First")
    return row(value, 0)


def last(value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="Last")
    if value.rank == 0:
        return value
    if value.shape[0] == 0:
        if fill is None:
            raise IndexOutOfBounds("Cannot take the last row of an empty array")
        return _fill_cell(value, fill, where="Last")
    return row(value, -1)


def _fill_cell(template: Value, fill: Value, *, where: str) -> Value:
    elem = fill_element(template, fill, where=where)
    cell_shape = template.shape[1:]
    if isinstance(template, BoxedValue):
        return BoxedValue(cell_shape, (elem,) * math.prod(cell_shape))
    return type(template).from_jax(jnp.full(cell_shape, elem, dtype=template.dtype))


def deshape(value: Value) -> Value:
    require_array(value, where="Deshape")
    return _structural(value, jnp.ravel)


def transpose(value: Value) -> Value:
    require_array(value, where="Transpose")
    if value.rank < 2:
        return value
    return _structural(value, lambda arr: jnp.moveaxis(arr, 0, -1))


def inv_transpose(value: Value) -> Value:
    require_array(value, where="Transpose")
    if value.rank < 2:
        return value
    return _structural(value, lambda arr: jnp.moveaxis(arr, -1, 0))


# Sorting and classification


def _sort_key(value: Value):
    if isinstance(value, NumericArray):
        return (0, value.shape, tuple(value.data.tolist()))
    if isinstance(value, CharacterArray):
        return (1, value.shape, tuple(value.data.tolist()))
    if isinstance(value, BoxedValue):
        return (2, value.shape, tuple(_sort_key(item) for item in value.items))
    if isinstance(value, FunctionReference):
        raise TypeMismatch("Functions cannot be compared")
    raise TypeMismatch(f"Unsupported runtime type {type(value).__name__}")


def _grade(value: Value, *, reverse: bool, where: str) -> NumericArray:
    require_array(value, where=where)
    if value.rank == 0:
        raise ShapeMismatch(f"{where} expects an array, got a scalar")
    keys = [_sort_key(r) for r in rows(value)]
    order = sorted(range(len(keys)), key=keys.__getitem__, reverse=reverse)
    return NumericArray((len(order),), jnp.asarray(order, dtype=NUMERIC_DTYPE))


def rise(value: Value) -> NumericArray:
    return _grade(value, reverse=False, where="Rise")


def fall(value: Value) -> NumericArray:
    return _grade(value, reverse=True, where="Fall")


def classify(value: Value) -> NumericArray:
    require_array(value, where="Classify")
    if value.rank == 0:
        raise ShapeMismatch("Classify expects an array, got a scalar")
    seen: dict[object, int] = {}
    classes = [seen.setdefault(_sort_key(r), len(seen)) for r in rows(value)]
    return NumericArray((len(classes),), jnp.asarray(classes, dtype=NUMERIC_DTYPE))


def deduplicate(value: Value) -> Value:
    require_array(value, where="Deduplicate")
    if value.rank == 0:
        return value
    seen: set[object] = set()
    kept: list[int] = []
    for i, r in enumerate(rows(value)):
        key = _sort_key(r)
        if key not in seen:
            seen.add(key)
            kept.append(i)
    return _structural(value, lambda arr: arr[jnp.asarray(kept, dtype=jnp.int32)])


# Bits and parsing


def _natural_grid(value: Value, *, where: str) -> jnp.ndarray:
    if not isinstance(value, NumericArray):
        raise TypeMismatch(f"{where} expects natural numbers, got {type_name(value)}")
    for real in value.data.tolist():
        if not math.isfinite(real) or not float(real).is_integer() or real < 0:
            raise TypeMismatch(f"{where} expects natural numbers, got {real:g}")
    return value.to_jax()


def bits(value: Value) -> NumericArray:
    grid = _natural_grid(value, where="Bits")
    ints = [int(n) for n in value.data.tolist()]
    width = max((n.bit_length() for n in ints), default=0)
    weights = 2.0 ** jnp.arange(width, dtype=NUMERIC_DTYPE)
    out = jnp.mod(jnp.floor(grid[..., None] / weights), 2)
    return NumericArray.from_jax(out)


def inv_bits(value: Value) -> NumericArray:
    if not isinstance(value, NumericArray):
        raise TypeMismatch(f"Inverse bits expects a number array, got {type_name(value)}")
    if value.rank == 0:
        raise ShapeMismatch("Inverse bits expects an array of bits, got a scalar")
    arr = value.to_jax()
    weights = 2.0 ** jnp.arange(arr.shape[-1], dtype=NUMERIC_DTYPE)
    return NumericArray.from_jax(jnp.sum(arr * weights, axis=-1))


def parse_num(value: Value) -> NumericArray:
    if not isinstance(value, CharacterArray) or value.rank > 1:
        raise TypeMismatch(f"Parse expects a string, got {type_name(value)}")
    text = value.text().strip().replace("¯", "-")
    try:
        return scalar(float(text))
    except ValueError:
        raise TypeMismatch(f"Cannot parse {value.text()!r} as a number") from None


# Take / drop


def _axis_counts(counts: Value, value: Value, *, where: str) -> list[int]:
    ns = as_integers(counts, where=where)
    if len(ns) > value.rank:
        raise ShapeMismatch(f"{where} got {len(ns)} counts for an array of rank {value.rank}")
    return ns


def take_spans(counts: Value, value: Value, *, fill: Value | None = None) -> list[AxisSpan]:
    """Per-axis spans kept by ``take``; padding only when a fill is active."""
    spans: list[AxisSpan] = []
    for axis, n in enumerate(_axis_counts(counts, value, where="Take")):
        size = value.shape[axis]
        want = abs(n)
        if want > size and fill is None:
            raise IndexOutOfBounds(f"Cannot take {n} rows from an axis of length {size}")
        missing = max(0, want - size)
        if n >= 0:
            spans.append(AxisSpan(axis, 0, min(want, size), pad_after=missing))
        else:
            spans.append(AxisSpan(axis, max(0, size - want), size, pad_before=missing))
    return spans


def drop_spans(counts: Value, value: Value, *, fill: Value | None = None) -> list[AxisSpan]:
    spans: list[AxisSpan] = []
    for axis, n in enumerate(_axis_counts(counts, value, where="Drop")):
        size = value.shape[axis]
        if abs(n) > size and fill is None:
            raise IndexOutOfBounds(f"Cannot drop {n} rows from an axis of length {size}")
        if n >= 0:
            spans.append(AxisSpan(axis, min(n, size), size))
        else:
            spans.append(AxisSpan(axis, 0, max(0, size + n)))
    return spans


def span_slices(spans: Sequence[AxisSpan], rank: int) -> tuple[slice, ...]:
    slices = [slice(None)] * rank
    for span in spans:
        slices[span.axis] = slice(span.start, span.stop)
    return tuple(slices)


def apply_spans(value: Value, spans: Sequence[AxisSpan], *, fill: Value | None = None) -> Value:
    out = region(value, span_slices(spans, value.rank))
    for span in spans:
        if span.pad_before or span.pad_after:
            out = _pad_axis(out, span.axis, span.pad_before, span.pad_after, fill, where="Take")
    return out


def take(counts: Value, value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="Take")
    value = promote_to_rows(value)
    return apply_spans(value, take_spans(counts, value, fill=fill), fill=fill)


def drop(counts: Value, value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="Drop")
    value = promote_to_rows(value)
    return apply_spans(value, drop_spans(counts, value, fill=fill))


# Keep


def keep_counts(mask: Value, value: Value, *, fill: Value | None = None) -> list[int]:
    """Replication count for every row of ``value``."""
    count = value.row_count
    if isinstance(mask, NumericArray) and mask.rank == 0:
        return as_naturals(mask, where="Keep") * count
    counts = as_naturals(mask, where="Keep")
    if len(counts) < count and fill is not None:
        (extra,) = as_naturals(fill, where="Keep fill")
        counts = counts + [extra] * (count - len(counts))
    if len(counts) != count:
        raise ShapeMismatch(f"Keep mask of length {len(counts)} does not match {count} rows")
    return counts


def keep(mask: Value, value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="Keep")
    value = promote_to_rows(value)
    counts = keep_counts(mask, value, fill=fill)
    picked = [i for i, n in enumerate(counts) for _ in range(n)]
    return _structural(value, lambda arr: arr[jnp.asarray(picked, dtype=jnp.int32)])


# Reshape / rotate


def reshape(shape_value: Value, value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="Reshape")
    if isinstance(shape_value, NumericArray) and shape_value.rank == 0:
        (n,) = as_naturals(shape_value, where="Reshape")
        if n == 0:
            return empty_like_rows(value)
        return from_rows([value] * n, where="Reshape")
    dims = tuple(as_naturals(shape_value, where="Reshape"))
    target = math.prod(dims)
    available = value.flat_len
    if target <= available:
        grid = jnp.arange(target, dtype=jnp.int32)
        return _gather(value, jnp.reshape(grid, dims))
    if fill is not None:
        grid = jnp.arange(target, dtype=jnp.int32)
        grid = jnp.where(grid < available, grid, -1)
        return _gather(value, jnp.reshape(grid, dims), fill_element(value, fill, where="Reshape"))
    if available == 0:
        raise ShapeMismatch(f"Cannot reshape an empty array to {format_shape(dims)}")
    grid = jnp.arange(target, dtype=jnp.int32) % available
    return _gather(value, jnp.reshape(grid, dims))


def reshape_to(value: Value, dims: Sequence[int], *, where: str) -> Value:
    """Reshape keeping every element; the element counts must agree."""
    dims = tuple(dims)
    if value.flat_len != math.prod(dims):
        raise ShapeMismatch(
            f"{where} cannot reshape {format_shape(value.shape)} to {format_shape(dims)}"
        )
    return _structural(value, lambda arr: jnp.reshape(arr, dims))


def rotate(counts: Value, value: Value) -> Value:
    require_array(value, where="Rotate")
    if value.rank == 0:
        return value
    ns = _axis_counts(counts, value, where="Rotate")
    axes = tuple(range(len(ns)))
    shifts = tuple(-n for n in ns)
    return _structural(value, lambda arr: jnp.roll(arr, shifts, axis=axes))


# Pick / select


def pick_index(index: Value, value: Value) -> tuple[int, ...]:
    """Normalized (non-negative) multi-axis index for ``pick``."""
    require_array(value, where="Pick")
    ns = as_integers(index, where="Pick")
    if len(ns) > value.rank:
        raise ShapeMismatch(f"Pick index of length {len(ns)} is too long for rank {value.rank}")
    out: list[int] = []
    for axis, i in enumerate(ns):
        size = value.shape[axis]
        if i < -size or i >= size:
            raise IndexOutOfBounds(f"Index {i} is out of bounds for length {size}")
        out.append(i + size if i < 0 else i)
    return tuple(out)


def pick(index: Value, value: Value, *, fill: Value | None = None) -> Value:
    try:
        key = pick_index(index, value)
    except IndexOutOfBounds:
        if fill is None:
            raise
        ns = as_integers(index, where="Pick")
        cell_shape = value.shape[len(ns) :]
        elem = fill_element(value, fill, where="Pick")
        if isinstance(value, BoxedValue):
            return BoxedValue(cell_shape, (elem,) * math.prod(cell_shape))
        return type(value).from_jax(jnp.full(cell_shape, elem, dtype=value.dtype))
    return region(value, key)


def select(indices: Value, value: Value, *, fill: Value | None = None) -> Value:
    require_array(value, where="Select")
    if not isinstance(indices, NumericArray):
        raise TypeMismatch(f"Select expects integer indices, got {type_name(indices)}")
    value = promote_to_rows(value)
    size = value.shape[0]
    flat = as_integers(NumericArray((indices.flat_len,), indices.data), where="Select")
    for i in flat:
        if (i < -size or i >= size) and fill is None:
            raise IndexOutOfBounds(f"Index {i} is out of bounds for length {size}")
    grid = _index_grid(value)
    cell = grid.shape[1:]
    picked = [
        grid[i % size] if -size <= i < size else jnp.full(cell, -1, dtype=jnp.int32)
        for i in flat
    ]
    stacked = jnp.stack(picked) if picked else jnp.zeros((0, *cell), dtype=jnp.int32)
    out = jnp.reshape(stacked, (*indices.shape, *cell))
    elem = fill_element(value, fill, where="Select") if fill is not None else None
    return _gather(value, out, elem)


def replace_rows(original: Value, positions: Sequence[int], replacement: Value, *, where: str) -> Value:
    """Put the rows of ``replacement`` back at ``positions`` of ``original``."""
    require_array(replacement, where=where)
    new_rows = rows(replacement)
    if len(new_rows) != len(positions):
        raise ShapeMismatch(f"{where} expected {len(positions)} rows, got {len(new_rows)}")
    old_rows = rows(original)
    for pos, new in zip(positions, new_rows):
        old_rows[pos] = new
    if not old_rows:
        return original
    return from_rows(old_rows, where=where)
