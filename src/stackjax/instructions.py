"""Instruction nodes for raw (pre-bind) and resolved function bodies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union

from .errors import Span, TypeMismatch
from .primitives import Primitive
from .signature import Signature
from .values import FunctionReference, Value, as_value

if TYPE_CHECKING:
    from .function import Function


class Modifier(str, Enum):
    DIP = "dip"
    GAP = "gap"
    BOTH = "both"
    FORK = "fork"
    BRACKET = "bracket"
    DISTRIBUTE = "distribute"
    ROWS = "rows"
    FOLD = "fold"
    REDUCE = "reduce"
    SCAN = "scan"
    REPEAT = "repeat"
    IF = "if"
    TRY = "try"
    UNDER = "under"
    INVERT = "invert"
    FILL = "fill"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def resolve(cls, name: "Modifier | str") -> "Modifier":
        if isinstance(name, Modifier):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            raise TypeMismatch(f"Unknown modifier {name!r}") from None


@dataclass(frozen=True)
class Push:
    value: Value
    span: Span | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        from .function import Function

        value = self.value
        if isinstance(value, Function):
            value = FunctionReference(value)
        object.__setattr__(self, "value", as_value(value))

    def __str__(self) -> str:
        if isinstance(self.value, FunctionReference):
            return f"({self.value.function})"
        return repr(self.value)


@dataclass(frozen=True)
class Prim:
    primitive: Primitive
    span: Span | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "primitive", Primitive.resolve(self.primitive))

    def __str__(self) -> str:
        return str(self.primitive)


@dataclass(frozen=True)
class Ref:
    """Reference to another binding, replaced by Push or Call at bind time."""

    name: str
    span: Span | None = field(default=None, compare=False)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, eq=False)
class Call:
    """Call of a bound function, compared by identity so recursive bodies stay hashable."""

    function: "Function"
    span: Span | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Call):
            return NotImplemented
        return self.function is other.function

    def __hash__(self) -> int:
        return hash(id(self.function))

    def __str__(self) -> str:
        return str(self.function)


@dataclass(frozen=True)
class Modify:
    """Modifier application. Operands are raw bodies, refs, or bound functions."""

    modifier: Modifier
    operands: tuple
    span: Span | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "modifier", Modifier.resolve(self.modifier))
        operands = []
        for operand in self.operands:
            if isinstance(operand, list):
                operand = tuple(operand)
            operands.append(operand)
        object.__setattr__(self, "operands", tuple(operands))

    def __str__(self) -> str:
        parts = []
        for operand in self.operands:
            body = " ".join(map(str, operand)) if isinstance(operand, tuple) else str(operand)
            parts.append(f"({body})")
        return f"{self.modifier}{''.join(parts)}"


@dataclass(frozen=True)
class BeginArray:
    span: Span | None = field(default=None, compare=False)

    def __str__(self) -> str:
        return "["


@dataclass(frozen=True)
class EndArray:
    span: Span | None = field(default=None, compare=False)

    def __str__(self) -> str:
        return "]"


@dataclass(frozen=True)
class Effect:
    """Opaque call into the host's side-effect hook."""

    name: str
    signature: Signature
    span: Span | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "signature", Signature.parse(self.signature))

    def __str__(self) -> str:
        return f"&{self.name}"


Instr = Union[Push, Prim, Ref, Call, Modify, BeginArray, EndArray, Effect]


def prim(name: "Primitive | str", *, span: Span | None = None) -> Prim:
    return Prim(Primitive.resolve(name), span=span)


def push(value, *, span: Span | None = None) -> Push:
    return Push(value, span=span)
