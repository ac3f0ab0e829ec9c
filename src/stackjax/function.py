"""Bound functions: an immutable instruction sequence plus its signature."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Final

from .errors import Span
from .instructions import Instr, Prim, Push
from .primitives import Primitive, signature_of
from .signature import Signature, instrs_signature
from .values import Value


@dataclass(frozen=True)
class FunctionId:
    """Where a function came from. ``kind`` is one of the ``*_KIND`` names."""

    kind: str
    name: str | None = None
    span: Span | None = None
    parts: tuple["FunctionId", ...] = ()

    @classmethod
    def named(cls, name: str) -> "FunctionId":
        return cls(NAMED_KIND, name=name)

    @classmethod
    def anonymous(cls, span: Span | None = None) -> "FunctionId":
        return cls(ANONYMOUS_KIND, span=span)

    @classmethod
    def primitive(cls, prim: Primitive) -> "FunctionId":
        return cls(PRIMITIVE_KIND, name=prim.value)

    def compose(self, other: "FunctionId") -> "FunctionId":
        left = self.parts if self.kind == COMPOSED_KIND else (self,)
        right = other.parts if other.kind == COMPOSED_KIND else (other,)
        return FunctionId(COMPOSED_KIND, parts=left + right)

    def __str__(self) -> str:
        if self.kind == NAMED_KIND:
            return f"`{self.name}`"
        if self.kind == ANONYMOUS_KIND:
            return "fn" if self.span is None else f"fn from {self.span}"
        if self.kind == PRIMITIVE_KIND:
            return str(self.name)
        if self.kind == COMPOSED_KIND:
            return "[" + ", ".join(str(part) for part in self.parts) + "]"
        return self.kind


NAMED_KIND: Final = "named"
ANONYMOUS_KIND: Final = "anonymous"
PRIMITIVE_KIND: Final = "primitive"
CONSTANT_KIND: Final = "constant"
MAIN_KIND: Final = "main"
COMPOSED_KIND: Final = "composed"

CONSTANT_ID: Final = FunctionId(CONSTANT_KIND)
MAIN_ID: Final = FunctionId(MAIN_KIND)


@dataclass(frozen=True)
class Function:
    instrs: tuple[Instr, ...]
    signature: Signature
    id: FunctionId = field(default_factory=FunctionId.anonymous)
    # Declared but not statically verified (contains a dynamic call).
    checked_at_call: bool = field(default=False, compare=False)
    # Self-referencing binding; its body is filled in once binding finishes.
    recursive: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "instrs", tuple(self.instrs))
        object.__setattr__(self, "signature", Signature.parse(self.signature))

    # A recursive body is completed after creation, so it compares by identity.
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Function):
            return NotImplemented
        if self.recursive or other.recursive:
            return self is other
        return (self.instrs, self.signature, self.id) == (other.instrs, other.signature, other.id)

    def __hash__(self) -> int:
        if self.recursive:
            return hash(id(self))
        return hash((self.instrs, self.signature, self.id))

    @classmethod
    def inferred(cls, instrs: Sequence[Instr], id: FunctionId | None = None) -> "Function":
        instrs = tuple(instrs)
        return cls(instrs, instrs_signature(instrs), id or FunctionId.anonymous())

    @classmethod
    def constant(cls, value: Value) -> "Function":
        return cls((Push(value),), Signature(0, 1), CONSTANT_ID)

    @classmethod
    def from_primitive(cls, prim: "Primitive | str") -> "Function":
        prim = Primitive.resolve(prim)
        return cls((Prim(prim),), signature_of(prim), FunctionId.primitive(prim))

    @staticmethod
    def compose(a: "Function", b: "Function") -> "Function":
        """Function that runs ``b`` and then ``a``."""
        return Function(
            b.instrs + a.instrs,
            a.signature.compose(b.signature),
            a.id.compose(b.id),
        )

    @property
    def args(self) -> int:
        return self.signature.args

    @property
    def outputs(self) -> int:
        return self.signature.outputs

    def is_constant(self) -> bool:
        return len(self.instrs) == 1 and isinstance(self.instrs[0], Push)

    def as_constant(self) -> Value | None:
        if self.is_constant():
            return self.instrs[0].value
        return None

    def as_primitive(self) -> Primitive | None:
        if len(self.instrs) == 1 and isinstance(self.instrs[0], Prim):
            return self.instrs[0].primitive
        return None

    def format_inner(self) -> str:
        return " ".join(str(instr) for instr in self.instrs)

    def __str__(self) -> str:
        if self.id.kind == NAMED_KIND:
            return str(self.id.name)
        prim = self.as_primitive()
        if prim is not None:
            return str(prim)
        return f"({self.format_inner()})"
