"""Under and invert.

``under(F, G)`` compiles ``F`` into invertible steps. Running a step forward
pushes its :class:`InversionContext` onto an explicit :class:`ContextStack`;
after ``G`` runs, the inverse steps run in reverse order and pop those
contexts innermost first.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, ClassVar, Final, TypeVar, Union

import jax.numpy as jnp

from . import arrays, pervade
from .arrays import AxisSpan
from .errors import InvalidInversion, ShapeMismatch, StackJaxError, classify_runtime_exception
from .function import Function, FunctionId
from .instructions import Call, Instr, Modifier, Modify, Prim, Push
from .primitives import Primitive
from .signature import Signature
from .values import (
    NUMERIC_DTYPE,
    FunctionReference,
    NumericArray,
    Value,
    as_integers,
    box,
    format_shape,
    promote_to_rows,
    reverse,
    scalar,
    unbox,
)

if TYPE_CHECKING:
    from .machine import Machine

logger = logging.getLogger(__name__)


# Inversion contexts


@dataclass(frozen=True)
class InversionContext:
    """Data captured by a forward step and consumed by its inverse."""


@dataclass(frozen=True)
class TakeContext(InversionContext):
    original: Value
    spans: tuple[AxisSpan, ...]
    promoted: bool = False


@dataclass(frozen=True)
class DropContext(InversionContext):
    original: Value
    spans: tuple[AxisSpan, ...]
    promoted: bool = False


@dataclass(frozen=True)
class KeepContext(InversionContext):
    original: Value
    positions: tuple[int, ...]
    promoted: bool = False


@dataclass(frozen=True)
class ReshapeContext(InversionContext):
    original: Value


@dataclass(frozen=True)
class ShapeContext(InversionContext):
    shape: tuple[int, ...]


@dataclass(frozen=True)
class PickContext(InversionContext):
    original: Value
    index: tuple[int, ...]


@dataclass(frozen=True)
class BoxContext(InversionContext):
    boxed: bool


@dataclass(frozen=True)
class RotateContext(InversionContext):
    counts: tuple[int, ...]


@dataclass(frozen=True)
class DipContext(InversionContext):
    inner_contexts: int


@dataclass(frozen=True)
class ArithmeticContext(InversionContext):
    primitive: Primitive
    operand: Value


C = TypeVar("C", bound=InversionContext)


class ContextStack:
    """LIFO of inversion contexts owned by one under evaluation."""

    def __init__(self) -> None:
        self._items: list[InversionContext] = []

    def __len__(self) -> int:
        return len(self._items)

    def push(self, context: InversionContext) -> None:
        self._items.append(context)

    def pop(self, kind: type[C]) -> C:
        if not self._items:
            raise InvalidInversion(f"Missing {kind.__name__} for inversion")
        context = self._items.pop()
        if not isinstance(context, kind):
            raise InvalidInversion(f"Expected {kind.__name__}, found {type(context).__name__}")
        return context


# Steps

_MONADIC_UNDER: Final[frozenset[Primitive]] = frozenset(
    {
        Primitive.IDENTITY,
        Primitive.REVERSE,
        Primitive.DESHAPE,
        Primitive.TRANSPOSE,
        Primitive.INV_TRANSPOSE,
        Primitive.FIRST,
        Primitive.LAST,
        Primitive.BOX,
        Primitive.UNBOX,
        Primitive.NEG,
        Primitive.NOT,
        Primitive.SQRT,
    }
)
_DYADIC_UNDER: Final[frozenset[Primitive]] = frozenset(
    {
        Primitive.TAKE,
        Primitive.DROP,
        Primitive.KEEP,
        Primitive.RESHAPE,
        Primitive.ROTATE,
        Primitive.PICK,
        Primitive.ADD,
        Primitive.SUB,
        Primitive.MUL,
        Primitive.DIV,
    }
)
_ARITHMETIC_INVERSES: Final[dict[Primitive, str]] = {
    Primitive.ADD: "sub",
    Primitive.SUB: "add",
    Primitive.MUL: "div",
    Primitive.DIV: "mul",
}


@dataclass(frozen=True)
class PrimStep:
    """A primitive; dyadic ones take their operand from a fused push when bound."""

    primitive: Primitive
    operand: Value | None = None

    @property
    def forward_signature(self) -> Signature:
        if self.primitive is Primitive.FLIP:
            return Signature(2, 2)
        if self.primitive in _DYADIC_UNDER and self.operand is None:
            return Signature(2, 1)
        return Signature(1, 1)

    @property
    def inverse_signature(self) -> Signature:
        if self.primitive is Primitive.FLIP:
            return Signature(2, 2)
        return Signature(1, 1)

    def forward(self, machine: "Machine", contexts: ContextStack) -> None:
        prim = self.primitive
        if prim is Primitive.FLIP:
            machine.push_all(machine.pop_n(2, where="flip"))
            return
        if prim in _MONADIC_UNDER:
            value = machine.pop(where=str(prim))
            result, context = _forward_monadic(prim, value, fill=machine.fill_value)
        else:
            if self.operand is None:
                operand, value = machine.pop_n(2, where=str(prim))
            else:
                operand, value = self.operand, machine.pop(where=str(prim))
            result, context = _forward_dyadic(prim, operand, value, fill=machine.fill_value)
        machine.push(result)
        if context is not None:
            contexts.push(context)

    def inverse(self, machine: "Machine", contexts: ContextStack) -> None:
        prim = self.primitive
        if prim is Primitive.FLIP:
            machine.push_all(machine.pop_n(2, where="flip"))
            return
        replacement = machine.pop(where=f"inverse of {prim}")
        if prim in _MONADIC_UNDER:
            machine.push(_inverse_monadic(prim, replacement, contexts))
        else:
            machine.push(_inverse_dyadic(prim, replacement, contexts))


@dataclass(frozen=True)
class PushStep:
    value: Value

    forward_signature: ClassVar[Signature] = Signature(0, 1)
    inverse_signature: ClassVar[Signature] = Signature(1, 0)

    def forward(self, machine: "Machine", contexts: ContextStack) -> None:
        machine.push(self.value)

    def inverse(self, machine: "Machine", contexts: ContextStack) -> None:
        machine.pop(where="inverse of push")


@dataclass(frozen=True)
class CallStep:
    function: Function
    steps: tuple["Step", ...]

    @property
    def forward_signature(self) -> Signature:
        return _forward_signature(self.steps)

    @property
    def inverse_signature(self) -> Signature:
        return _inverse_signature(self.steps)

    def forward(self, machine: "Machine", contexts: ContextStack) -> None:
        for step in self.steps:
            step.forward(machine, contexts)

    def inverse(self, machine: "Machine", contexts: ContextStack) -> None:
        for step in reversed(self.steps):
            step.inverse(machine, contexts)


@dataclass(frozen=True)
class DipStep:
    steps: tuple["Step", ...]

    @property
    def forward_signature(self) -> Signature:
        inner = _forward_signature(self.steps)
        return Signature(inner.args + 1, inner.outputs + 1)

    @property
    def inverse_signature(self) -> Signature:
        inner = _inverse_signature(self.steps)
        return Signature(inner.args + 1, inner.outputs + 1)

    def forward(self, machine: "Machine", contexts: ContextStack) -> None:
        hidden = machine.pop(where="dip")
        before = len(contexts)
        for step in self.steps:
            step.forward(machine, contexts)
        machine.push(hidden)
        contexts.push(DipContext(len(contexts) - before))

    def inverse(self, machine: "Machine", contexts: ContextStack) -> None:
        context = contexts.pop(DipContext)
        hidden = machine.pop(where="inverse of dip")
        before = len(contexts)
        for step in reversed(self.steps):
            step.inverse(machine, contexts)
        if before - len(contexts) != context.inner_contexts:
            raise InvalidInversion("dip inverse consumed the wrong number of contexts")
        machine.push(hidden)


Step = Union[PrimStep, PushStep, CallStep, DipStep]


def _forward_signature(steps: Sequence[Step]) -> Signature:
    sig = Signature(0, 0)
    for step in steps:
        sig = step.forward_signature.compose(sig)
    return sig


def _inverse_signature(steps: Sequence[Step]) -> Signature:
    sig = Signature(0, 0)
    for step in reversed(steps):
        sig = step.inverse_signature.compose(sig)
    return sig


def compile_steps(instrs: Sequence[Instr]) -> tuple[Step, ...]:
    """Split a resolved body into invertible steps or raise InvalidInversion."""
    steps: list[Step] = []
    index = 0
    while index < len(instrs):
        instr = instrs[index]
        nxt = instrs[index + 1] if index + 1 < len(instrs) else None
        if isinstance(instr, Push) and isinstance(nxt, Prim):
            if nxt.primitive in _DYADIC_UNDER:
                steps.append(PrimStep(nxt.primitive, instr.value))
                index += 2
                continue
            if nxt.primitive is Primitive.CALL and isinstance(instr.value, FunctionReference):
                steps.append(_call_step(instr.value.function))
                index += 2
                continue
        if isinstance(instr, Push):
            steps.append(PushStep(instr.value))
        elif isinstance(instr, Prim) and (
            instr.primitive in _MONADIC_UNDER
            or instr.primitive in _DYADIC_UNDER
            or instr.primitive is Primitive.FLIP
        ):
            steps.append(PrimStep(instr.primitive))
        elif isinstance(instr, Call):
            steps.append(_call_step(instr.function))
        elif isinstance(instr, Modify) and instr.modifier is Modifier.DIP:
            steps.append(DipStep(compile_function(instr.operands[0])))
        else:
            raise InvalidInversion(f"{instr} cannot be inverted under", span=getattr(instr, "span", None))
        index += 1
    return tuple(steps)


def _call_step(function: Function) -> CallStep:
    return CallStep(function, compile_function(function))


@lru_cache(maxsize=256)
def compile_function(function: Function) -> tuple[Step, ...]:
    if function.recursive:
        raise InvalidInversion(f"Recursive function {function} cannot be inverted under")
    return compile_steps(function.instrs)


# Per-primitive forward and inverse rules


def _forward_monadic(prim: Primitive, value: Value, *, fill: Value | None):
    if prim is Primitive.IDENTITY:
        return value, None
    if prim is Primitive.REVERSE:
        return reverse(value), None
    if prim is Primitive.DESHAPE:
        return arrays.deshape(value), ShapeContext(value.shape)
    if prim is Primitive.TRANSPOSE:
        return arrays.transpose(value), None
    if prim is Primitive.INV_TRANSPOSE:
        return arrays.inv_transpose(value), None
    if prim is Primitive.FIRST:
        index = () if value.rank == 0 else (0,)
        return arrays.first(value), PickContext(value, index)
    if prim is Primitive.LAST:
        index = () if value.rank == 0 else (value.shape[0] - 1,)
        return arrays.last(value), PickContext(value, index)
    if prim is Primitive.BOX:
        return box(value), BoxContext(True)
    if prim is Primitive.UNBOX:
        return unbox(value), BoxContext(False)
    if prim in (Primitive.NEG, Primitive.NOT, Primitive.SQRT):
        return pervade.unary(prim.value, value), None
    raise InvalidInversion(f"{prim} cannot be inverted under")


def _inverse_monadic(prim: Primitive, replacement: Value, contexts: ContextStack) -> Value:
    if prim is Primitive.IDENTITY:
        return replacement
    if prim is Primitive.REVERSE:
        return reverse(replacement)
    if prim is Primitive.DESHAPE:
        context = contexts.pop(ShapeContext)
        return arrays.reshape_to(replacement, context.shape, where="Under deshape")
    if prim is Primitive.TRANSPOSE:
        return arrays.inv_transpose(replacement)
    if prim is Primitive.INV_TRANSPOSE:
        return arrays.transpose(replacement)
    if prim in (Primitive.FIRST, Primitive.LAST):
        context = contexts.pop(PickContext)
        return _put_cell(context.original, context.index, replacement, where=f"Under {prim}")
    if prim in (Primitive.BOX, Primitive.UNBOX):
        context = contexts.pop(BoxContext)
        return unbox(replacement) if context.boxed else box(replacement)
    if prim in (Primitive.NEG, Primitive.NOT):
        return pervade.unary(prim.value, replacement)
    if prim is Primitive.SQRT:
        return pervade.binary("mul", replacement, replacement)
    raise InvalidInversion(f"{prim} cannot be inverted under")


def _forward_dyadic(prim: Primitive, operand: Value, value: Value, *, fill: Value | None):
    if prim in (Primitive.TAKE, Primitive.DROP, Primitive.KEEP):
        # Scalars act as one row; the inverse turns them back into scalars.
        promoted = value.rank == 0
        value = promote_to_rows(value)
    if prim is Primitive.TAKE:
        spans = tuple(arrays.take_spans(operand, value, fill=fill))
        return arrays.apply_spans(value, spans, fill=fill), TakeContext(value, spans, promoted)
    if prim is Primitive.DROP:
        spans = tuple(arrays.drop_spans(operand, value, fill=fill))
        return arrays.apply_spans(value, spans), DropContext(value, spans, promoted)
    if prim is Primitive.KEEP:
        counts = arrays.keep_counts(operand, value, fill=fill)
        if any(count > 1 for count in counts):
            raise InvalidInversion("Keep can only be inverted with a boolean mask")
        positions = tuple(i for i, count in enumerate(counts) if count)
        return arrays.keep(operand, value, fill=fill), KeepContext(value, positions, promoted)
    if prim is Primitive.RESHAPE:
        return arrays.reshape(operand, value, fill=fill), ReshapeContext(value)
    if prim is Primitive.ROTATE:
        counts = tuple(as_integers(operand, where="Rotate"))
        return arrays.rotate(operand, value), RotateContext(counts)
    if prim is Primitive.PICK:
        index = arrays.pick_index(operand, value)
        return arrays.region(value, index), PickContext(value, index)
    if prim in _ARITHMETIC_INVERSES:
        return pervade.binary(prim.value, operand, value, fill=fill), ArithmeticContext(prim, operand)
    raise InvalidInversion(f"{prim} cannot be inverted under")


def _demote(value: Value, promoted: bool, *, where: str) -> Value:
    return arrays.reshape_to(value, (), where=where) if promoted else value


def _inverse_dyadic(prim: Primitive, replacement: Value, contexts: ContextStack) -> Value:
    if prim is Primitive.TAKE:
        context = contexts.pop(TakeContext)
        restored = _restore_spans(context.original, context.spans, replacement, where="Under take")
        return _demote(restored, context.promoted, where="Under take")
    if prim is Primitive.DROP:
        context = contexts.pop(DropContext)
        restored = _restore_spans(context.original, context.spans, replacement, where="Under drop")
        return _demote(restored, context.promoted, where="Under drop")
    if prim is Primitive.KEEP:
        context = contexts.pop(KeepContext)
        restored = arrays.replace_rows(context.original, context.positions, replacement, where="Under keep")
        return _demote(restored, context.promoted, where="Under keep")
    if prim is Primitive.RESHAPE:
        context = contexts.pop(ReshapeContext)
        return arrays.reshape_to(replacement, context.original.shape, where="Under reshape")
    if prim is Primitive.ROTATE:
        context = contexts.pop(RotateContext)
        counts = NumericArray((len(context.counts),), jnp.asarray([-n for n in context.counts], dtype=NUMERIC_DTYPE))
        return arrays.rotate(counts, replacement)
    if prim is Primitive.PICK:
        context = contexts.pop(PickContext)
        return _put_cell(context.original, context.index, replacement, where="Under pick")
    if prim in _ARITHMETIC_INVERSES:
        context = contexts.pop(ArithmeticContext)
        return pervade.binary(_ARITHMETIC_INVERSES[prim], context.operand, replacement)
    raise InvalidInversion(f"{prim} cannot be inverted under")


def _put_cell(original: Value, index: tuple[int, ...], replacement: Value, *, where: str) -> Value:
    cell_shape = original.shape[len(index) :]
    if replacement.shape != cell_shape:
        raise ShapeMismatch(
            f"{where} expected a replacement of shape {format_shape(cell_shape)}, "
            f"got {format_shape(replacement.shape)}"
        )
    slices = tuple(slice(i, i + 1) for i in index)
    expanded = arrays.reshape_to(replacement, (1,) * len(index) + cell_shape, where=where)
    return arrays.write_region(original, slices, expanded, where=where)


def _restore_spans(original: Value, spans: Sequence[AxisSpan], replacement: Value, *, where: str) -> Value:
    """Write a (possibly modified) take/drop result back, axis by axis."""
    if replacement.rank != original.rank:
        raise ShapeMismatch(
            f"{where} expected a replacement of rank {original.rank}, got {format_shape(replacement.shape)}"
        )
    inner = [slice(None)] * replacement.rank
    for span in spans:
        if replacement.shape[span.axis] != span.length:
            raise ShapeMismatch(
                f"{where} expected {span.length} rows on axis {span.axis}, got {replacement.shape[span.axis]}"
            )
        # Fill padding added by the forward take is discarded.
        inner[span.axis] = slice(span.pad_before, span.pad_before + span.kept)
    stripped = arrays.region(replacement, inner)
    return arrays.write_region(original, arrays.span_slices(spans, original.rank), stripped, where=where)


# Public entry points


def under_signature(f: Function, g: Function) -> Signature:
    steps = compile_function(f)
    sig = g.signature.compose(_forward_signature(steps))
    for step in reversed(steps):
        sig = step.inverse_signature.compose(sig)
    return sig


def run_under(machine: "Machine", f: Function, g: Function) -> None:
    steps = compile_function(f)
    contexts = ContextStack()
    try:
        for step in steps:
            step.forward(machine, contexts)
        logger.debug("under: %d forward step(s), %d context(s)", len(steps), len(contexts))
        machine.run_function(g)
        for step in reversed(steps):
            step.inverse(machine, contexts)
    except StackJaxError:
        raise
    except Exception as err:
        raise classify_runtime_exception(err) from err
    if len(contexts):
        raise InvalidInversion(f"{len(contexts)} inversion context(s) left unused")


_SELF_INVERSE: Final[frozenset[Primitive]] = frozenset(
    {Primitive.IDENTITY, Primitive.REVERSE, Primitive.NEG, Primitive.NOT, Primitive.FLIP}
)
_INVERSE_PAIRS: Final[dict[Primitive, Primitive]] = {
    Primitive.TRANSPOSE: Primitive.INV_TRANSPOSE,
    Primitive.INV_TRANSPOSE: Primitive.TRANSPOSE,
    Primitive.BOX: Primitive.UNBOX,
    Primitive.UNBOX: Primitive.BOX,
    Primitive.BITS: Primitive.INV_BITS,
    Primitive.INV_BITS: Primitive.BITS,
    Primitive.SIN: Primitive.ASIN,
    Primitive.ASIN: Primitive.SIN,
    Primitive.COS: Primitive.ACOS,
    Primitive.ACOS: Primitive.COS,
}
_BOUND_INVERSES: Final[dict[Primitive, Primitive]] = {
    Primitive.ADD: Primitive.SUB,
    Primitive.SUB: Primitive.ADD,
    Primitive.MUL: Primitive.DIV,
    Primitive.DIV: Primitive.MUL,
}


def _invert_bound(value: Value, prim: Primitive) -> list[Instr] | None:
    if prim in _BOUND_INVERSES:
        return [Push(value), Prim(_BOUND_INVERSES[prim])]
    if prim is Primitive.CALL and isinstance(value, FunctionReference):
        return [Call(invert(value.function))]
    if not isinstance(value, NumericArray):
        return None
    if prim is Primitive.POW:
        return [Push(pervade.binary("div", value, scalar(1.0))), Prim(Primitive.POW)]
    if prim is Primitive.LOG:
        return [Push(value), Prim(Primitive.FLIP), Prim(Primitive.POW)]
    if prim is Primitive.ROTATE:
        return [Push(pervade.unary("neg", value)), Prim(Primitive.ROTATE)]
    return None


@lru_cache(maxsize=256)
def invert(function: Function) -> Function:
    """Instruction-level inverse of ``function`` (no context)."""
    if function.recursive:
        raise InvalidInversion(f"Recursive function {function} has no inverse")
    instrs = function.instrs
    groups: list[list[Instr]] = []
    index = 0
    while index < len(instrs):
        instr = instrs[index]
        nxt = instrs[index + 1] if index + 1 < len(instrs) else None
        if isinstance(instr, Push) and isinstance(nxt, Prim):
            group = _invert_bound(instr.value, nxt.primitive)
            if group is not None:
                groups.append(group)
                index += 2
                continue
        if isinstance(instr, Prim) and instr.primitive in _SELF_INVERSE:
            groups.append([Prim(instr.primitive)])
        elif isinstance(instr, Prim) and instr.primitive in _INVERSE_PAIRS:
            groups.append([Prim(_INVERSE_PAIRS[instr.primitive])])
        elif isinstance(instr, Prim) and instr.primitive is Primitive.SQRT:
            groups.append([Prim(Primitive.DUP), Prim(Primitive.MUL)])
        elif isinstance(instr, Call):
            groups.append([Call(invert(instr.function))])
        elif isinstance(instr, Modify) and instr.modifier is Modifier.DIP:
            groups.append([Modify(Modifier.DIP, (invert(instr.operands[0]),))])
        elif isinstance(instr, Modify) and instr.modifier is Modifier.INVERT:
            groups.append([Call(instr.operands[0])])
        else:
            raise InvalidInversion(f"{instr} has no inverse", span=getattr(instr, "span", None))
        index += 1
    inverse = [instr for group in reversed(groups) for instr in group]
    return Function.inferred(inverse, FunctionId.anonymous())
