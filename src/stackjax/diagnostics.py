"""Non-fatal advice about bound bodies.

Diagnostics never stop execution; they flag code that works but is likely
not what the author meant.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Final

from .errors import Span
from .function import ANONYMOUS_KIND, Function
from .instructions import Instr, Modifier, Modify, Prim, Push
from .primitives import Primitive
from .values import FunctionReference


class Severity(str, Enum):
    ADVICE = "advice"
    STYLE = "style"
    WARNING = "warning"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Diagnostic:
    message: str
    severity: Severity
    span: Span | None = None

    def __str__(self) -> str:
        where = "" if self.span is None else f" at {self.span}"
        return f"{self.severity}: {self.message}{where}"


_CANCELLING_PAIRS: Final = frozenset(
    {
        (Primitive.REVERSE, Primitive.REVERSE),
        (Primitive.FLIP, Primitive.FLIP),
        (Primitive.NEG, Primitive.NEG),
        (Primitive.NOT, Primitive.NOT),
        (Primitive.BOX, Primitive.UNBOX),
        (Primitive.UNBOX, Primitive.BOX),
        (Primitive.TRANSPOSE, Primitive.INV_TRANSPOSE),
        (Primitive.INV_TRANSPOSE, Primitive.TRANSPOSE),
    }
)

_SINGLE_OPERAND_WRAPPERS: Final = frozenset({Modifier.DIP, Modifier.GAP, Modifier.BOTH})
_BRANCHING: Final = frozenset({Modifier.FORK, Modifier.BRACKET})

Body = Sequence[Instr]


def _body_of(operand: object) -> Body | None:
    """Instructions of a modifier operand worth inspecting, if any."""
    if isinstance(operand, tuple):
        return operand
    if isinstance(operand, Function) and operand.id.kind == ANONYMOUS_KIND:
        return operand.instrs
    return None


def _is_empty(operand: object) -> bool:
    if isinstance(operand, tuple):
        return not operand
    if isinstance(operand, Function):
        return not operand.instrs
    return False


def _is_identity(operand: object) -> bool:
    body = operand.instrs if isinstance(operand, Function) else operand
    if not isinstance(body, tuple):
        return False
    return not body or (len(body) == 1 and isinstance(body[0], Prim) and body[0].primitive is Primitive.IDENTITY)


def _prim(instr: Instr | None) -> Primitive | None:
    return instr.primitive if isinstance(instr, Prim) else None


def _check_modifier(instr: Modify) -> Iterator[Diagnostic]:
    modifier, operands = instr.modifier, instr.operands
    if modifier in _SINGLE_OPERAND_WRAPPERS and operands and _is_empty(operands[0]):
        yield Diagnostic(f"{modifier} of an empty function does nothing", Severity.STYLE, instr.span)
    if modifier is Modifier.UNDER and len(operands) == 2 and _is_identity(operands[1]):
        yield Diagnostic("under with an identity inner function is just the outer function", Severity.STYLE, instr.span)
    if modifier in _BRANCHING and len(operands) == 1:
        yield Diagnostic(f"{modifier} with a single branch can be written without it", Severity.STYLE, instr.span)


def _walk(body: Body) -> Iterator[Diagnostic]:
    for index, instr in enumerate(body):
        following = body[index + 1] if index + 1 < len(body) else None
        current = _prim(instr)
        after = _prim(following)

        if current is Primitive.IDENTITY and len(body) > 1:
            yield Diagnostic("Redundant identity", Severity.STYLE, instr.span)
        if current is not None and (current, after) in _CANCELLING_PAIRS:
            yield Diagnostic(f"{current} followed by {after} cancels out", Severity.ADVICE, instr.span)
        if current is Primitive.DUP and after is Primitive.POP:
            yield Diagnostic("dup followed by pop has no effect", Severity.ADVICE, instr.span)
        if isinstance(instr, Push):
            if isinstance(instr.value, FunctionReference) and after is Primitive.CALL:
                yield Diagnostic(
                    f"Pushing {instr.value.function} only to call it; call it directly",
                    Severity.ADVICE,
                    instr.span,
                )
            elif after is Primitive.POP:
                yield Diagnostic("Value is pushed and immediately popped", Severity.WARNING, instr.span)
        if isinstance(instr, Modify):
            yield from _check_modifier(instr)
            for operand in instr.operands:
                inner = _body_of(operand)
                if inner is not None:
                    yield from _walk(inner)


def collect_diagnostics(body: "Function | Iterable[Instr]") -> list[Diagnostic]:
    """Walk a body, including anonymous modifier operands, and report diagnostics."""
    instrs = body.instrs if isinstance(body, Function) else tuple(body)
    return list(_walk(instrs))
