"""Element-wise (pervasive) arithmetic and comparison on top of JAX."""

from __future__ import annotations

import logging
import os
from typing import Callable, Final

import jax
import jax.numpy as jnp

from .errors import ShapeMismatch, TypeMismatch
from .values import (
    CHAR_DTYPE,
    NUMERIC_DTYPE,
    BoxedValue,
    CharacterArray,
    FunctionReference,
    NumericArray,
    Value,
    format_shape,
    pad_to_shape,
    type_name,
)

logger = logging.getLogger(__name__)

_USE_JITTED_KERNELS: Final[bool] = os.environ.get("STACKJAX_DISABLE_JITTED_KERNELS", "0") != "1"


def _sign(x: jnp.ndarray) -> jnp.ndarray:
    return jnp.sign(x)


def _not(x: jnp.ndarray) -> jnp.ndarray:
    return 1 - x


def _round(x: jnp.ndarray) -> jnp.ndarray:
    # Half away from zero, as opposed to jnp.round's half-to-even.
    return jnp.sign(x) * jnp.floor(jnp.abs(x) + 0.5)


UNARY_KERNELS: Final[dict[str, Callable[[jnp.ndarray], jnp.ndarray]]] = {
    "not": _not,
    "sign": _sign,
    "neg": lambda x: -x,
    "abs": lambda x: jnp.abs(x),
    "sqrt": lambda x: jnp.sqrt(x),
    "sin": lambda x: jnp.sin(x),
    "cos": lambda x: jnp.cos(x),
    "asin": lambda x: jnp.arcsin(x),
    "acos": lambda x: jnp.arccos(x),
    "floor": lambda x: jnp.floor(x),
    "ceil": lambda x: jnp.ceil(x),
    "round": _round,
}


def _as_flag(x: jnp.ndarray) -> jnp.ndarray:
    return x.astype(NUMERIC_DTYPE)


def _mod(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    return jnp.mod(b, a)


def _log(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    return jnp.log(b) / jnp.log(a)


# ``a`` is the top of the stack, ``b`` the value below it: ``sub`` computes b - a.
BINARY_KERNELS: Final[dict[str, Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]]] = {
    "eq": lambda a, b: _as_flag(b == a),
    "ne": lambda a, b: _as_flag(b != a),
    "lt": lambda a, b: _as_flag(b < a),
    "le": lambda a, b: _as_flag(b <= a),
    "gt": lambda a, b: _as_flag(b > a),
    "ge": lambda a, b: _as_flag(b >= a),
    "add": lambda a, b: b + a,
    "sub": lambda a, b: b - a,
    "mul": lambda a, b: b * a,
    "div": lambda a, b: b / a,
    "mod": _mod,
    "pow": lambda a, b: b**a,
    "log": _log,
    "min": lambda a, b: jnp.minimum(a, b),
    "max": lambda a, b: jnp.maximum(a, b),
    "atan": lambda a, b: jnp.arctan2(a, b),
}

_COMPARISONS: Final[frozenset[str]] = frozenset({"eq", "ne", "lt", "le", "gt", "ge"})

_JITTED_UNARY: dict[str, Callable[[jnp.ndarray], jnp.ndarray]] = {}
_JITTED_BINARY: dict[str, Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]] = {}


def _unary_kernel(op: str) -> Callable[[jnp.ndarray], jnp.ndarray]:
    if not _USE_JITTED_KERNELS:
        return UNARY_KERNELS[op]
    fn = _JITTED_UNARY.get(op)
    if fn is None:
        fn = jax.jit(UNARY_KERNELS[op])
        _JITTED_UNARY[op] = fn
    return fn


def _binary_kernel(op: str) -> Callable[[jnp.ndarray, jnp.ndarray], jnp.ndarray]:
    if not _USE_JITTED_KERNELS:
        return BINARY_KERNELS[op]
    fn = _JITTED_BINARY.get(op)
    if fn is None:
        fn = jax.jit(BINARY_KERNELS[op])
        _JITTED_BINARY[op] = fn
    return fn


def unary(op: str, value: Value) -> Value:
    if op not in UNARY_KERNELS:
        raise TypeMismatch(f"Unknown pervasive operation {op!r}")
    if isinstance(value, NumericArray):
        return NumericArray.from_jax(_unary_kernel(op)(value.to_jax()))
    if isinstance(value, (CharacterArray, BoxedValue, FunctionReference)):
        raise TypeMismatch(f"Cannot apply {op} to a {type_name(value)}")
    raise TypeMismatch(f"Unsupported runtime type {type(value).__name__}")


def _broadcast_pair(a: Value, b: Value, *, op: str, fill: Value | None) -> tuple[Value, Value]:
    try:
        jnp.broadcast_shapes(a.shape, b.shape)
        return a, b
    except ValueError:
        pass
    if fill is not None and a.rank == b.rank:
        target = tuple(max(x, y) for x, y in zip(a.shape, b.shape))
        logger.debug("padding %s operands to %s with fill", op, target)
        return (
            pad_to_shape(a, target, fill, where=op),
            pad_to_shape(b, target, fill, where=op),
        )
    raise ShapeMismatch(f"Shapes {format_shape(b.shape)} and {format_shape(a.shape)} do not match for {op}")


def _numeric(value: NumericArray | CharacterArray) -> jnp.ndarray:
    return value.to_jax().astype(NUMERIC_DTYPE)


def _chars_from(arr: jnp.ndarray) -> CharacterArray:
    return CharacterArray.from_jax(jnp.round(arr).astype(CHAR_DTYPE))


def binary(op: str, a: Value, b: Value, *, fill: Value | None = None) -> Value:
    """Apply ``b op a`` element-wise, where ``a`` was on top of the stack."""
    if op not in BINARY_KERNELS:
        raise TypeMismatch(f"Unknown pervasive operation {op!r}")
    for value in (a, b):
        if isinstance(value, (BoxedValue, FunctionReference)):
            raise TypeMismatch(f"Cannot apply {op} to a {type_name(value)}")
        if not isinstance(value, (NumericArray, CharacterArray)):
            raise TypeMismatch(f"Unsupported runtime type {type(value).__name__}")

    a, b = _broadcast_pair(a, b, op=op, fill=fill)
    kernel = _binary_kernel(op)

    if isinstance(a, NumericArray) and isinstance(b, NumericArray):
        return NumericArray.from_jax(kernel(a.to_jax(), b.to_jax()))

    if isinstance(a, CharacterArray) and isinstance(b, CharacterArray):
        if op in _COMPARISONS or op == "sub":
            return NumericArray.from_jax(kernel(_numeric(a), _numeric(b)))
        if op in ("min", "max"):
            return _chars_from(kernel(_numeric(a), _numeric(b)))
        raise TypeMismatch(f"Cannot {op} two characters")

    # One character operand, one number.
    if op == "add":
        return _chars_from(kernel(_numeric(a), _numeric(b)))
    if op == "sub" and isinstance(b, CharacterArray):
        return _chars_from(kernel(_numeric(a), _numeric(b)))
    if op in ("eq", "ne"):
        shape = jnp.broadcast_shapes(a.shape, b.shape)
        flag = 0.0 if op == "eq" else 1.0
        return NumericArray.from_jax(jnp.full(shape, flag, dtype=NUMERIC_DTYPE))
    raise TypeMismatch(f"Cannot {op} a {type_name(b)} and a {type_name(a)}")
