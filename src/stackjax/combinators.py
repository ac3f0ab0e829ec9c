"""Modifiers: signature derivation and runtime rules for higher-order functions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Final

import jax.numpy as jnp

from .errors import IndexOutOfBounds, ShapeMismatch, Span, StackJaxError, StackSignatureMismatch
from .instructions import Modifier
from .primitives import Primitive
from .signature import Signature
from .values import (
    NUMERIC_DTYPE,
    NumericArray,
    Value,
    as_naturals,
    chars,
    empty_like_rows,
    fill_rows,
    from_rows,
    is_truthy,
    row,
    rows,
)

if TYPE_CHECKING:
    from .function import Function
    from .machine import Machine

logger = logging.getLogger(__name__)

__all__ = ["Modifier", "instruction_signature", "modifier_signature", "operand_count", "run_modifier"]

_UNARY: Final[frozenset[Modifier]] = frozenset(
    {
        Modifier.DIP,
        Modifier.GAP,
        Modifier.BOTH,
        Modifier.DISTRIBUTE,
        Modifier.ROWS,
        Modifier.FOLD,
        Modifier.REDUCE,
        Modifier.SCAN,
        Modifier.REPEAT,
        Modifier.INVERT,
    }
)
_BINARY: Final[frozenset[Modifier]] = frozenset({Modifier.IF, Modifier.TRY, Modifier.UNDER, Modifier.FILL})
_VARIADIC: Final[frozenset[Modifier]] = frozenset({Modifier.FORK, Modifier.BRACKET})

_REDUCE_IDENTITIES: Final[dict[Primitive, float]] = {
    Primitive.ADD: 0.0,
    Primitive.SUB: 0.0,
    Primitive.MUL: 1.0,
    Primitive.DIV: 1.0,
    Primitive.MIN: float("inf"),
    Primitive.MAX: float("-inf"),
}


def operand_count(modifier: Modifier) -> int | None:
    """Number of function operands, or None for fork/bracket (one or more)."""
    if modifier in _UNARY:
        return 1
    if modifier in _BINARY:
        return 2
    if modifier in _VARIADIC:
        return None
    raise StackSignatureMismatch(f"Unknown modifier {modifier}")


def _check_operands(modifier: Modifier, operands: Sequence["Function"], span: Span | None) -> None:
    from .function import Function

    expected = operand_count(modifier)
    if expected is None:
        if not operands:
            raise StackSignatureMismatch(f"{modifier} needs at least one function", span=span)
    elif len(operands) != expected:
        raise StackSignatureMismatch(
            f"{modifier} takes {expected} function{'s' if expected != 1 else ''}, got {len(operands)}",
            span=span,
        )
    for operand in operands:
        if not isinstance(operand, Function):
            raise StackSignatureMismatch(f"{modifier} operand {operand!r} is not a bound function", span=span)


def modifier_signature(modifier: Modifier, operands: Sequence["Function"], *, span: Span | None = None) -> Signature:
    """Derive the signature of ``modifier`` applied to bound ``operands``."""
    modifier = Modifier.resolve(modifier)
    _check_operands(modifier, operands, span)
    sigs = [operand.signature for operand in operands]

    if modifier is Modifier.DIP:
        (f,) = sigs
        return Signature(f.args + 1, f.outputs + 1)
    if modifier is Modifier.GAP:
        (f,) = sigs
        return Signature(f.args + 1, f.outputs)
    if modifier is Modifier.BOTH:
        (f,) = sigs
        return Signature(f.args * 2, f.outputs * 2)
    if modifier in (Modifier.FORK, Modifier.BRACKET):
        return Signature(sum(s.args for s in sigs), sum(s.outputs for s in sigs))
    if modifier is Modifier.DISTRIBUTE:
        (f,) = sigs
        if f.outputs != 1 or f.args < 1:
            raise StackSignatureMismatch(f"distribute needs a function with at least 1 argument and 1 output, got {f}", span=span)
        return Signature(f.args, 1)
    if modifier is Modifier.ROWS:
        (f,) = sigs
        if f.args < 1:
            raise StackSignatureMismatch(f"rows needs a function with at least 1 argument, got {f}", span=span)
        return f
    if modifier is Modifier.FOLD:
        (f,) = sigs
        if f.args <= f.outputs:
            raise StackSignatureMismatch(f"fold needs more arguments than accumulators, got {f}", span=span)
        return f
    if modifier in (Modifier.REDUCE, Modifier.SCAN):
        (f,) = sigs
        if f != Signature(2, 1):
            raise StackSignatureMismatch(f"{modifier} needs a |2.1 function, got {f}", span=span)
        return Signature(1, 1)
    if modifier is Modifier.REPEAT:
        (f,) = sigs
        if f.args != f.outputs:
            raise StackSignatureMismatch(f"repeat needs a function with as many outputs as arguments, got {f}", span=span)
        return Signature(f.args + 1, f.outputs)
    if modifier is Modifier.IF:
        # Branch signature only; the condition on top is counted by instruction_signature.
        true_sig, false_sig = sigs
        if true_sig.outputs != false_sig.outputs:
            raise StackSignatureMismatch(
                f"if branches must have the same number of outputs, got {true_sig} and {false_sig}", span=span
            )
        return Signature(max(true_sig.args, false_sig.args), true_sig.outputs)
    if modifier is Modifier.TRY:
        f, handler = sigs
        if handler.outputs != f.outputs or handler.args > f.args + 1:
            raise StackSignatureMismatch(
                f"try handler {handler} does not fit the protected function {f}", span=span
            )
        return f
    if modifier is Modifier.FILL:
        fill_sig, g = sigs
        if fill_sig.outputs != 1:
            raise StackSignatureMismatch(f"fill value function must have 1 output, got {fill_sig}", span=span)
        return Signature(fill_sig.args + g.args, g.outputs)
    if modifier is Modifier.UNDER:
        from .under import under_signature

        return under_signature(operands[0], operands[1])
    if modifier is Modifier.INVERT:
        from .under import invert

        return invert(operands[0]).signature
    raise StackSignatureMismatch(f"Unknown modifier {modifier}", span=span)


def instruction_signature(modifier: Modifier, operands: Sequence["Function"], *, span: Span | None = None) -> Signature:
    """Stack effect of a ``Modify`` instruction.

    This is the modifier's signature plus, for ``if``, the condition popped
    from the top of the stack before the chosen branch runs.
    """
    modifier = Modifier.resolve(modifier)
    derived = modifier_signature(modifier, operands, span=span)
    if modifier is Modifier.IF:
        return Signature(derived.args + 1, derived.outputs)
    return derived


# Runtime


def run_modifier(machine: "Machine", modifier: Modifier, operands: Sequence["Function"]) -> None:
    """Run a modifier on the machine's stack.

    On failure the stack is put back exactly as it was when the modifier
    started and the error propagates; ``try`` is the only modifier that
    recovers.
    """
    runner = _RUNNERS.get(modifier)
    if runner is None:
        raise StackSignatureMismatch(f"Unknown modifier {modifier}")
    logger.debug("modifier %s with %d operand(s), depth %d", modifier, len(operands), len(machine.stack))
    snapshot = machine.snapshot()
    try:
        runner(machine, *operands)
    except StackJaxError:
        machine.restore(snapshot)
        raise


def _dip(machine: "Machine", f: "Function") -> None:
    hidden = machine.pop(where="dip")
    machine.run_function(f)
    machine.push(hidden)


def _gap(machine: "Machine", f: "Function") -> None:
    machine.pop(where="gap")
    machine.run_function(f)


def _both(machine: "Machine", f: "Function") -> None:
    args = machine.pop_n(f.args * 2, where="both")
    top_out = machine.invoke(f, args[: f.args])
    next_out = machine.invoke(f, args[f.args :])
    machine.push_all(next_out)
    machine.push_all(top_out)


def _fork(machine: "Machine", *branches: "Function") -> None:
    shared = machine.pop_n(sum(b.args for b in branches), where="fork")
    results = [machine.invoke(branch, shared[: branch.args]) for branch in branches]
    for outputs in reversed(results):
        machine.push_all(outputs)


def _bracket(machine: "Machine", *branches: "Function") -> None:
    args = machine.pop_n(sum(b.args for b in branches), where="bracket")
    results = []
    offset = 0
    for branch in branches:
        results.append(machine.invoke(branch, args[offset : offset + branch.args]))
        offset += branch.args
    for outputs in reversed(results):
        machine.push_all(outputs)


def _row_count(values: Sequence[Value], *, where: str) -> int | None:
    counts = {v.shape[0] for v in values if v.rank > 0}
    if not counts:
        return None
    if len(counts) > 1:
        raise ShapeMismatch(f"{where} arguments have different lengths {sorted(counts)}")
    return counts.pop()


def _row_or_self(value: Value, index: int) -> Value:
    return row(value, index) if value.rank > 0 else value


def _assemble(machine: "Machine", items: list[Value], *, where: str) -> Value:
    if not items:
        return empty_like_rows()
    return from_rows(items, where=where, fill=machine.fill_value)


def _distribute(machine: "Machine", f: "Function") -> None:
    args = machine.pop_n(f.args, where="distribute")
    distributed, shared = args[0], args[1:]
    if distributed.rank == 0:
        machine.push_all(machine.invoke(f, [distributed, *shared]))
        return
    outputs = [machine.invoke(f, [item, *shared])[0] for item in rows(distributed)]
    machine.push(_assemble(machine, outputs, where="distribute"))


def _rows(machine: "Machine", f: "Function") -> None:
    args = machine.pop_n(f.args, where="rows")
    count = _row_count(args, where="rows")
    if count is None:
        machine.push_all(machine.invoke(f, args))
        return
    columns: list[list[Value]] = [[] for _ in range(f.outputs)]
    for i in range(count):
        outputs = machine.invoke(f, [_row_or_self(arg, i) for arg in args])
        for column, value in zip(columns, outputs):
            column.append(value)
    machine.push_all(_assemble(machine, column, where="rows") for column in columns)


def _fold(machine: "Machine", f: "Function") -> None:
    iterated = machine.pop_n(f.args - f.outputs, where="fold")
    accumulators = machine.pop_n(f.outputs, where="fold")
    count = _row_count(iterated, where="fold")
    for i in range(1 if count is None else count):
        outputs = machine.invoke(f, [*(_row_or_self(v, i) for v in iterated), *accumulators])
        accumulators = list(reversed(outputs))
    machine.push_all(reversed(accumulators))


def _reduce(machine: "Machine", f: "Function") -> None:
    value = machine.pop(where="reduce")
    if value.rank == 0:
        machine.push(value)
        return
    items = rows(value)
    if not items:
        machine.push(_reduce_identity(machine, f, value))
        return
    acc = items[0]
    for item in items[1:]:
        (acc,) = machine.invoke(f, [item, acc])
    machine.push(acc)


def _reduce_identity(machine: "Machine", f: "Function", value: Value) -> Value:
    fill = machine.fill_value
    if fill is not None:
        return row(fill_rows(value, 1, fill, where="reduce"), 0)
    identity = _REDUCE_IDENTITIES.get(f.as_primitive())
    if identity is None or not isinstance(value, NumericArray):
        raise IndexOutOfBounds(f"Cannot reduce an empty array with {f}")
    return NumericArray.from_jax(jnp.full(value.shape[1:], identity, dtype=NUMERIC_DTYPE))


def _scan(machine: "Machine", f: "Function") -> None:
    value = machine.pop(where="scan")
    if value.rank == 0 or value.shape[0] == 0:
        machine.push(value)
        return
    items = rows(value)
    acc = items[0]
    prefixes = [acc]
    for item in items[1:]:
        (acc,) = machine.invoke(f, [item, acc])
        prefixes.append(acc)
    machine.push(_assemble(machine, prefixes, where="scan"))


def _repeat(machine: "Machine", f: "Function") -> None:
    (count,) = as_naturals(machine.pop(where="repeat"), where="repeat count")
    for _ in range(count):
        machine.run_function(f)


def _if(machine: "Machine", true_branch: "Function", false_branch: "Function") -> None:
    condition = machine.pop(where="if")
    branch = true_branch if is_truthy(condition, where="if") else false_branch
    # The chosen branch only sees the values it needs; any excess stays put.
    machine.run_function(branch)


def _try(machine: "Machine", f: "Function", handler: "Function") -> None:
    snapshot = machine.snapshot()
    try:
        machine.run_function(f)
    except StackJaxError as err:
        machine.restore(snapshot)
        logger.debug("try caught %s: %s", err.kind, err)
        args = machine.pop_n(f.args, where="try")
        # The message sits beneath the arguments; a handler taking one extra value sees it.
        candidates = [*args, chars(str(err))]
        machine.push_all(machine.invoke(handler, candidates[: handler.args]))


def _under(machine: "Machine", f: "Function", g: "Function") -> None:
    from .under import run_under

    run_under(machine, f, g)


def _invert(machine: "Machine", f: "Function") -> None:
    from .under import invert

    machine.run_function(invert(f))


def _fill(machine: "Machine", fill_fn: "Function", g: "Function") -> None:
    args = machine.pop_n(fill_fn.args, where="fill")
    (value,) = machine.invoke(fill_fn, args)
    with machine.fill_scope(value):
        machine.run_function(g)


_RUNNERS: Final[dict[Modifier, Callable[..., None]]] = {
    Modifier.DIP: _dip,
    Modifier.GAP: _gap,
    Modifier.BOTH: _both,
    Modifier.FORK: _fork,
    Modifier.BRACKET: _bracket,
    Modifier.DISTRIBUTE: _distribute,
    Modifier.ROWS: _rows,
    Modifier.FOLD: _fold,
    Modifier.REDUCE: _reduce,
    Modifier.SCAN: _scan,
    Modifier.REPEAT: _repeat,
    Modifier.IF: _if,
    Modifier.TRY: _try,
    Modifier.UNDER: _under,
    Modifier.INVERT: _invert,
    Modifier.FILL: _fill,
}
