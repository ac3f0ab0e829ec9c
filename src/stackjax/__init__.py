"""stackjax public API."""

import logging

from .errors import (
    AmbiguousSignature,
    BindError,
    IndexOutOfBounds,
    InvalidInversion,
    ShapeMismatch,
    Span,
    StackJaxError,
    StackRuntimeError,
    StackSignatureMismatch,
    TypeMismatch,
)
from .values import (
    BoxedValue,
    CharacterArray,
    FunctionReference,
    NumericArray,
    Value,
    ValueInfo,
    ValueKind,
    array,
    as_value,
    box,
    chars,
    scalar,
    unbox,
    value_info,
)
from .signature import Signature, instrs_signature
from .primitives import Primitive, apply_primitive, signature_of
from .instructions import BeginArray, Call, Effect, EndArray, Instr, Modifier, Modify, Prim, Push, Ref, prim, push
from .function import Function, FunctionId
from .machine import EffectHandler, Machine, call
from .combinators import instruction_signature, modifier_signature
from .under import invert, under_signature
from .diagnostics import Diagnostic, Severity, collect_diagnostics
from .binding import Binding, BindingKind, BindResult, Environment, RunResult, bind, run

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "AmbiguousSignature",
    "BeginArray",
    "BindError",
    "BindResult",
    "Binding",
    "BindingKind",
    "BoxedValue",
    "Call",
    "CharacterArray",
    "Diagnostic",
    "Effect",
    "EffectHandler",
    "EndArray",
    "Environment",
    "Function",
    "FunctionId",
    "FunctionReference",
    "IndexOutOfBounds",
    "Instr",
    "InvalidInversion",
    "Machine",
    "Modifier",
    "Modify",
    "NumericArray",
    "Prim",
    "Primitive",
    "Push",
    "Ref",
    "RunResult",
    "Severity",
    "ShapeMismatch",
    "Signature",
    "Span",
    "StackJaxError",
    "StackRuntimeError",
    "StackSignatureMismatch",
    "TypeMismatch",
    "Value",
    "ValueInfo",
    "ValueKind",
    "apply_primitive",
    "array",
    "as_value",
    "bind",
    "box",
    "call",
    "chars",
    "collect_diagnostics",
    "instrs_signature",
    "instruction_signature",
    "invert",
    "modifier_signature",
    "prim",
    "push",
    "run",
    "scalar",
    "signature_of",
    "unbox",
    "under_signature",
    "value_info",
]
