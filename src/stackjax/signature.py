"""Stack signatures and static signature inference over instruction sequences."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import AmbiguousSignature, StackSignatureMismatch

if TYPE_CHECKING:
    from .instructions import Instr


@dataclass(frozen=True, order=True)
class Signature:
    """How many values a function pops (``args``) and pushes (``outputs``)."""

    args: int
    outputs: int

    def __post_init__(self) -> None:
        if self.args < 0 or self.outputs < 0:
            raise StackSignatureMismatch(f"Signature counts must be natural, got {self.args}.{self.outputs}")

    def __str__(self) -> str:
        return f"|{self.args}.{self.outputs}"

    @classmethod
    def parse(cls, text: "str | Signature | tuple[int, int]") -> "Signature":
        if isinstance(text, Signature):
            return text
        if isinstance(text, tuple):
            return cls(*text)
        body = text.strip().lstrip("|")
        args, _, outputs = body.partition(".")
        return cls(int(args), int(outputs or 1))

    @property
    def delta(self) -> int:
        return self.outputs - self.args

    def is_compatible_with(self, other: "Signature") -> bool:
        return self.delta == other.delta

    def is_superset_of(self, other: "Signature") -> bool:
        return self.is_compatible_with(other) and self.args >= other.args

    def is_subset_of(self, other: "Signature") -> bool:
        return self.is_compatible_with(other) and self.args <= other.args

    def max_with(self, other: "Signature") -> "Signature":
        return Signature(max(self.args, other.args), max(self.outputs, other.outputs))

    def compose(self, other: "Signature") -> "Signature":
        """Signature of running ``other`` first and then ``self``."""
        return Signature(
            other.args + max(0, self.args - other.outputs),
            max(0, other.outputs - self.args) + self.outputs,
        )


class _Simulation:
    """Symbolic stack depth walk; depth may go negative (the deficit)."""

    def __init__(self) -> None:
        self.depth = 0
        self.lowest = 0
        self.marks: list[int] = []

    def apply(self, sig: Signature, *, where: str) -> None:
        after_pop = self.depth - sig.args
        if self.marks and after_pop < self.marks[-1]:
            raise StackSignatureMismatch(f"{where} consumes values from outside its array literal")
        self.lowest = min(self.lowest, after_pop)
        self.depth = after_pop + sig.outputs

    def begin_array(self) -> None:
        self.marks.append(self.depth)

    def end_array(self) -> None:
        if not self.marks:
            raise StackSignatureMismatch("Array end without a matching array start")
        self.depth = self.marks.pop() + 1

    def result(self) -> Signature:
        if self.marks:
            raise StackSignatureMismatch("Array start without a matching array end")
        return Signature(-self.lowest, self.depth - self.lowest)


def instrs_signature(instrs: Sequence["Instr"]) -> Signature:
    """Infer the signature of a resolved instruction sequence."""
    from .combinators import instruction_signature
    from .instructions import BeginArray, Call, Effect, EndArray, Modify, Prim, Push, Ref
    from .primitives import Primitive, signature_of
    from .values import FunctionReference

    sim = _Simulation()
    skip_call = False
    for index, instr in enumerate(instrs):
        if skip_call:
            skip_call = False
            continue
        if isinstance(instr, Push):
            nxt = instrs[index + 1] if index + 1 < len(instrs) else None
            if (
                isinstance(instr.value, FunctionReference)
                and isinstance(nxt, Prim)
                and nxt.primitive is Primitive.CALL
            ):
                sim.apply(instr.value.function.signature, where=str(instr.value.function))
                skip_call = True
                continue
            sim.apply(Signature(0, 1), where="push")
        elif isinstance(instr, Prim):
            if instr.primitive is Primitive.CALL:
                raise AmbiguousSignature("Cannot infer the signature of a dynamic call", span=instr.span)
            sim.apply(signature_of(instr.primitive), where=str(instr.primitive))
        elif isinstance(instr, Call):
            sim.apply(instr.function.signature, where=str(instr.function))
        elif isinstance(instr, Modify):
            sim.apply(instruction_signature(instr.modifier, instr.operands, span=instr.span), where=str(instr.modifier))
        elif isinstance(instr, Effect):
            sim.apply(instr.signature, where=instr.name)
        elif isinstance(instr, BeginArray):
            sim.begin_array()
        elif isinstance(instr, EndArray):
            sim.end_array()
        elif isinstance(instr, Ref):
            raise AmbiguousSignature(f"Unresolved reference {instr.name!r}", span=instr.span)
        else:
            raise StackSignatureMismatch(f"Unknown instruction {instr!r}")
    return sim.result()
