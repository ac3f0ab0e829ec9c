"""Binding: resolves names, infers signatures and produces immutable functions.

Binding runs in two phases. Classification resolves every ``Ref`` against
the environment (constants become pushes, functions become calls) and binds
raw modifier operands. Simulation then infers the body's signature and checks
it against the declared one, if any.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .diagnostics import Diagnostic, collect_diagnostics
from .errors import AmbiguousSignature, StackSignatureMismatch
from .function import MAIN_ID, Function, FunctionId
from .instructions import Call, Instr, Modify, Prim, Push, Ref
from .machine import EffectHandler, Machine
from .primitives import Primitive
from .signature import Signature, instrs_signature
from .values import FunctionReference, Value

logger = logging.getLogger(__name__)


class BindingKind(str, Enum):
    CONSTANT = "constant"
    FUNCTION = "function"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Binding:
    name: str | None
    kind: BindingKind
    function: Function

    @property
    def value(self) -> Value | None:
        if self.kind is BindingKind.CONSTANT:
            return self.function.as_constant()
        return None

    @property
    def signature(self) -> Signature:
        return self.function.signature


@dataclass(frozen=True)
class BindResult:
    binding: Binding
    function: Function
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class RunResult:
    stack: list[Value]
    diagnostics: tuple[Diagnostic, ...] = field(default=())


class Environment(MutableMapping[str, Binding]):
    """Name to binding map shared by successive ``bind`` calls."""

    def __init__(self, bindings: Mapping[str, Binding] | None = None) -> None:
        self._bindings: dict[str, Binding] = dict(bindings or {})

    def __getitem__(self, name: str) -> Binding:
        return self._bindings[name]

    def __setitem__(self, name: str, binding: Binding) -> None:
        if not isinstance(binding, Binding):
            raise TypeError(f"Environment values must be Binding, got {type(binding).__name__}")
        self._bindings[name] = binding

    def __delitem__(self, name: str) -> None:
        del self._bindings[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._bindings)

    def __len__(self) -> int:
        return len(self._bindings)

    def __repr__(self) -> str:
        return f"Environment({sorted(self._bindings)!r})"

    def bind(self, name: str, instrs: Iterable[Instr], signature=None) -> BindResult:
        return bind(instrs, signature, name=name, env=self)

    def function(self, name: str) -> Function:
        return self[name].function


class _Resolver:
    """Classification phase state for one binding."""

    def __init__(self, env: Mapping[str, Binding], name: str | None, self_function: Function | None) -> None:
        self.env = env
        self.name = name
        self.self_function = self_function
        self.recursive = False

    def resolve_ref(self, ref: Ref) -> Instr:
        if self.name is not None and ref.name == self.name:
            if self.self_function is None:
                raise AmbiguousSignature(
                    f"Recursive binding {ref.name!r} needs a declared signature", span=ref.span
                )
            self.recursive = True
            return Call(self.self_function, span=ref.span)
        binding = self.env.get(ref.name)
        if binding is None:
            raise AmbiguousSignature(f"Unknown name {ref.name!r}", span=ref.span)
        if binding.kind is BindingKind.CONSTANT:
            return Push(binding.value, span=ref.span)
        return Call(binding.function, span=ref.span)

    def resolve_operand(self, operand: object, span) -> Function:
        if isinstance(operand, Function):
            return operand
        if isinstance(operand, Ref):
            resolved = self.resolve_ref(operand)
            if isinstance(resolved, Call):
                return resolved.function
            return Function.constant(resolved.value)
        if isinstance(operand, Prim):
            return Function.from_primitive(operand.primitive)
        if isinstance(operand, (tuple, list)):
            body = self.resolve_body(operand)
            return Function.inferred(body, FunctionId.anonymous(span))
        raise StackSignatureMismatch(f"Cannot bind modifier operand {operand!r}", span=span)

    def resolve_body(self, instrs: Sequence[Instr]) -> tuple[Instr, ...]:
        resolved: list[Instr] = []
        for instr in instrs:
            if isinstance(instr, Ref):
                instr = self.resolve_ref(instr)
            elif isinstance(instr, Modify):
                operands = tuple(self.resolve_operand(operand, instr.span) for operand in instr.operands)
                instr = Modify(instr.modifier, operands, span=instr.span)
            elif isinstance(instr, Prim) and instr.primitive is Primitive.CALL and resolved:
                previous = resolved[-1]
                if isinstance(previous, Push) and isinstance(previous.value, FunctionReference):
                    resolved[-1] = Call(previous.value.function, span=previous.span)
                    continue
            resolved.append(instr)
        return tuple(resolved)


def _classify_single_push(
    body: tuple[Instr, ...], declared: Signature | None, id: FunctionId
) -> tuple[BindingKind, Function] | None:
    """A body that is one push is either a constant or an alias of a pushed function."""
    if len(body) != 1 or not isinstance(body[0], Push):
        return None
    value = body[0].value
    if not isinstance(value, FunctionReference):
        if declared is not None and declared != Signature(0, 1):
            raise StackSignatureMismatch(f"Constant {id} was declared {declared} but is |0.1", span=body[0].span)
        return BindingKind.CONSTANT, Function(body, Signature(0, 1), id)
    target = value.function
    if declared == Signature(0, 1):
        return BindingKind.CONSTANT, Function(body, Signature(0, 1), id)
    if declared is not None and declared == target.signature:
        return BindingKind.FUNCTION, Function((Call(target, span=body[0].span),), target.signature, id)
    raise AmbiguousSignature(
        f"Binding {id} pushes a function; declare |0.1 to keep it as a value "
        f"or {target.signature} to alias it",
        span=body[0].span,
    )


def bind(instrs: Iterable[Instr], signature=None, *, name: str | None = None, env: Environment | None = None) -> BindResult:
    """Bind a raw body into an immutable function.

    When ``name`` and ``env`` are given the result is recorded in ``env``.
    """
    raw = tuple(instrs)
    declared = None if signature is None else Signature.parse(signature)
    lookup: Mapping[str, Binding] = env if env is not None else {}
    id = FunctionId.named(name) if name is not None else FunctionId.anonymous()

    # Recursive bodies call a placeholder that becomes the bound function.
    placeholder = Function((), declared, id, recursive=True) if declared is not None else None
    resolver = _Resolver(lookup, name, placeholder)
    body = resolver.resolve_body(raw)

    single = _classify_single_push(body, declared, id)
    if single is not None:
        kind, function = single
    else:
        kind = BindingKind.FUNCTION
        checked_at_call = False
        try:
            inferred = instrs_signature(body)
        except AmbiguousSignature:
            if declared is None:
                raise
            # Dynamic call: trust the declaration and check it when the function runs.
            inferred = declared
            checked_at_call = True
        if declared is not None and inferred != declared:
            raise StackSignatureMismatch(f"{id} was declared {declared} but its body is {inferred}")
        if resolver.recursive:
            function = placeholder
            object.__setattr__(function, "instrs", body)
            object.__setattr__(function, "checked_at_call", checked_at_call)
        else:
            function = Function(body, inferred, id, checked_at_call=checked_at_call)

    diagnostics = tuple(collect_diagnostics(raw))
    binding = Binding(name, kind, function)
    if name is not None and env is not None:
        env[name] = binding
    logger.debug("bound %s as %s %s", id, kind, function.signature)
    return BindResult(binding, function, diagnostics)


def run(
    instrs: Iterable[Instr],
    stack: Iterable[Value] = (),
    *,
    env: Environment | None = None,
    effects: EffectHandler | None = None,
) -> RunResult:
    """Bind ``instrs`` as a program body and run it on ``stack``."""
    raw = tuple(instrs)
    resolver = _Resolver(env if env is not None else {}, None, None)
    body = resolver.resolve_body(raw)
    try:
        signature = instrs_signature(body)
    except AmbiguousSignature:
        # Top-level bodies may make dynamic calls; they run unchecked.
        signature = Signature(0, 0)
    function = Function(body, signature, MAIN_ID)
    diagnostics = tuple(collect_diagnostics(raw))
    for diagnostic in diagnostics:
        logger.info("%s", diagnostic)
    result = Machine(effects=effects).call(function, stack)
    return RunResult(result, diagnostics)
