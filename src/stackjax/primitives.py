"""Primitive identifiers, their fixed signatures and their implementations."""

from __future__ import annotations

from enum import Enum
from typing import Callable, Final

from . import arrays, pervade
from .errors import StackSignatureMismatch, TypeMismatch
from .signature import Signature
from .values import Value, box, couple, join, reverse, type_name, unbox


class Primitive(str, Enum):
    # Stack
    IDENTITY = "identity"
    DUP = "dup"
    OVER = "over"
    FLIP = "flip"
    POP = "pop"
    # Monadic pervasive
    NOT = "not"
    SIGN = "sign"
    NEG = "neg"
    ABS = "abs"
    SQRT = "sqrt"
    SIN = "sin"
    COS = "cos"
    ASIN = "asin"
    ACOS = "acos"
    FLOOR = "floor"
    CEIL = "ceil"
    ROUND = "round"
    # Dyadic pervasive
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    MOD = "mod"
    POW = "pow"
    LOG = "log"
    MIN = "min"
    MAX = "max"
    ATAN = "atan"
    # Monadic array
    LEN = "len"
    SHAPE = "shape"
    RANGE = "range"
    FIRST = "first"
    LAST = "last"
    REVERSE = "reverse"
    DESHAPE = "deshape"
    TRANSPOSE = "transpose"
    INV_TRANSPOSE = "inv_transpose"
    RISE = "rise"
    FALL = "fall"
    CLASSIFY = "classify"
    DEDUPLICATE = "deduplicate"
    BOX = "box"
    UNBOX = "unbox"
    BITS = "bits"
    INV_BITS = "inv_bits"
    PARSE_NUM = "parse_num"
    # Dyadic array
    JOIN = "join"
    COUPLE = "couple"
    TAKE = "take"
    DROP = "drop"
    KEEP = "keep"
    RESHAPE = "reshape"
    ROTATE = "rotate"
    PICK = "pick"
    SELECT = "select"
    MATCH = "match"
    # Dynamic
    CALL = "call"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def resolve(cls, name: "Primitive | str") -> "Primitive":
        if isinstance(name, Primitive):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            raise TypeMismatch(f"Unknown primitive {name!r}") from None


_MONADIC: Final[dict[Primitive, Callable[[Value, Value | None], Value]]] = {
    Primitive.LEN: lambda a, fill: arrays.length(a),
    Primitive.SHAPE: lambda a, fill: arrays.shape(a),
    Primitive.RANGE: lambda a, fill: arrays.range_of(a),
    Primitive.FIRST: lambda a, fill: arrays.first(a, fill=fill),
    Primitive.LAST: lambda a, fill: arrays.last(a, fill=fill),
    Primitive.REVERSE: lambda a, fill: reverse(a),
    Primitive.DESHAPE: lambda a, fill: arrays.deshape(a),
    Primitive.TRANSPOSE: lambda a, fill: arrays.transpose(a),
    Primitive.INV_TRANSPOSE: lambda a, fill: arrays.inv_transpose(a),
    Primitive.RISE: lambda a, fill: arrays.rise(a),
    Primitive.FALL: lambda a, fill: arrays.fall(a),
    Primitive.CLASSIFY: lambda a, fill: arrays.classify(a),
    Primitive.DEDUPLICATE: lambda a, fill: arrays.deduplicate(a),
    Primitive.BOX: lambda a, fill: box(a),
    Primitive.UNBOX: lambda a, fill: unbox(a),
    Primitive.BITS: lambda a, fill: arrays.bits(a),
    Primitive.INV_BITS: lambda a, fill: arrays.inv_bits(a),
    Primitive.PARSE_NUM: lambda a, fill: arrays.parse_num(a),
}

# ``a`` is the top of the stack, ``b`` the value under it.
_DYADIC: Final[dict[Primitive, Callable[[Value, Value, Value | None], Value]]] = {
    Primitive.JOIN: lambda a, b, fill: join(a, b, fill=fill),
    Primitive.COUPLE: lambda a, b, fill: couple(a, b, fill=fill),
    Primitive.TAKE: lambda a, b, fill: arrays.take(a, b, fill=fill),
    Primitive.DROP: lambda a, b, fill: arrays.drop(a, b, fill=fill),
    Primitive.KEEP: lambda a, b, fill: arrays.keep(a, b, fill=fill),
    Primitive.RESHAPE: lambda a, b, fill: arrays.reshape(a, b, fill=fill),
    Primitive.ROTATE: lambda a, b, fill: arrays.rotate(a, b),
    Primitive.PICK: lambda a, b, fill: arrays.pick(a, b, fill=fill),
    Primitive.SELECT: lambda a, b, fill: arrays.select(a, b, fill=fill),
    Primitive.MATCH: lambda a, b, fill: arrays.match(a, b),
}

PERVASIVE_MONADIC: Final[frozenset[Primitive]] = frozenset(
    Primitive(op) for op in pervade.UNARY_KERNELS
)
PERVASIVE_DYADIC: Final[frozenset[Primitive]] = frozenset(
    Primitive(op) for op in pervade.BINARY_KERNELS
)

_STACK_SIGNATURES: Final[dict[Primitive, Signature]] = {
    Primitive.IDENTITY: Signature(1, 1),
    Primitive.DUP: Signature(1, 2),
    Primitive.OVER: Signature(2, 3),
    Primitive.FLIP: Signature(2, 2),
    Primitive.POP: Signature(1, 0),
}

PRIMITIVE_SIGNATURES: Final[dict[Primitive, Signature]] = {
    **_STACK_SIGNATURES,
    **{prim: Signature(1, 1) for prim in PERVASIVE_MONADIC},
    **{prim: Signature(2, 1) for prim in PERVASIVE_DYADIC},
    **{prim: Signature(1, 1) for prim in _MONADIC},
    **{prim: Signature(2, 1) for prim in _DYADIC},
}


def is_dynamic(prim: Primitive) -> bool:
    return prim is Primitive.CALL


def signature_of(prim: Primitive) -> Signature:
    sig = PRIMITIVE_SIGNATURES.get(prim)
    if sig is None:
        raise StackSignatureMismatch(f"Primitive {prim} has no static signature")
    return sig


def apply_primitive(prim: Primitive, args: list[Value], *, fill: Value | None = None) -> list[Value]:
    """Run a non-dynamic primitive.

    ``args`` are ordered top of stack first; the result is in push order.
    """
    if prim is Primitive.IDENTITY:
        return [args[0]]
    if prim is Primitive.DUP:
        return [args[0], args[0]]
    if prim is Primitive.OVER:
        a, b = args
        return [b, a, b]
    if prim is Primitive.FLIP:
        a, b = args
        return [a, b]
    if prim is Primitive.POP:
        return []
    if prim in PERVASIVE_MONADIC:
        return [pervade.unary(prim.value, args[0])]
    if prim in PERVASIVE_DYADIC:
        return [pervade.binary(prim.value, args[0], args[1], fill=fill)]
    monadic = _MONADIC.get(prim)
    if monadic is not None:
        return [monadic(args[0], fill)]
    dyadic = _DYADIC.get(prim)
    if dyadic is not None:
        return [dyadic(args[0], args[1], fill)]
    raise TypeMismatch(f"Primitive {prim} cannot be applied to {', '.join(type_name(v) for v in args)}")
