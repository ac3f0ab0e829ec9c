"""Stack machine: executes bound functions against a data stack."""

from __future__ import annotations

import contextlib
import logging
import os
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Final

from .errors import StackJaxError, StackRuntimeError, StackSignatureMismatch, TypeMismatch, classify_runtime_exception
from .function import Function
from .instructions import BeginArray, Call, Effect, EndArray, Instr, Modify, Prim, Push, Ref
from .primitives import Primitive, apply_primitive, signature_of
from .values import FunctionReference, Value, from_rows, type_name, validate_value

logger = logging.getLogger(__name__)

MAX_CALL_DEPTH: Final[int] = max(1, int(os.environ.get("STACKJAX_MAX_CALL_DEPTH", "128")))

EffectHandler = Callable[[str, Sequence[Value]], Iterable[Value]]


def _with_span(err: StackJaxError, instr: Instr) -> StackJaxError:
    if err.span is None and getattr(instr, "span", None) is not None:
        err.span = instr.span
    return err


@dataclass(frozen=True)
class Snapshot:
    stack: tuple[Value, ...]
    array_marks: int


class Machine:
    """One data stack, one fill stack and an optional effect hook.

    The stack is a list ordered bottom first; ``stack[-1]`` is the top.
    """

    def __init__(self, effects: EffectHandler | None = None, *, max_call_depth: int = MAX_CALL_DEPTH) -> None:
        self.stack: list[Value] = []
        self.effects = effects
        self.max_call_depth = max_call_depth
        self._fills: list[Value | None] = []
        self._array_marks: list[int] = []
        self._call_depth = 0

    # Stack access

    def push(self, value: Value) -> None:
        validate_value(value, where="Pushed value")
        self.stack.append(value)

    def push_all(self, values: Iterable[Value]) -> None:
        """Push values in order; the last one ends up on top."""
        for value in values:
            self.push(value)

    def pop(self, *, where: str = "pop") -> Value:
        if not self.stack:
            raise StackSignatureMismatch(f"{where} needs a value but the stack is empty")
        return self.stack.pop()

    def pop_n(self, count: int, *, where: str) -> list[Value]:
        """Pop ``count`` values, returned top of stack first."""
        if len(self.stack) < count:
            raise StackSignatureMismatch(
                f"{where} needs {count} value{'s' if count != 1 else ''}, stack has {len(self.stack)}"
            )
        if count == 0:
            return []
        taken = self.stack[-count:]
        del self.stack[-count:]
        taken.reverse()
        return taken

    def snapshot(self) -> "Snapshot":
        # Values are immutable, a shallow copy is a full snapshot.
        return Snapshot(tuple(self.stack), len(self._array_marks))

    def restore(self, snapshot: "Snapshot") -> None:
        self.stack[:] = snapshot.stack
        del self._array_marks[snapshot.array_marks :]

    # Fill state

    @property
    def fill_value(self) -> Value | None:
        return self._fills[-1] if self._fills else None

    @contextlib.contextmanager
    def fill_scope(self, value: Value | None) -> Iterator[None]:
        if value is not None:
            validate_value(value, where="Fill value")
        self._fills.append(value)
        logger.debug("fill scope entered (depth %d)", len(self._fills))
        try:
            yield
        finally:
            self._fills.pop()
            logger.debug("fill scope left (depth %d)", len(self._fills))

    # Execution

    def call(self, function: Function, stack: Iterable[Value] | None = None) -> list[Value]:
        """Run ``function`` and return the resulting stack, bottom first.

        When ``stack`` is given it replaces the machine's current stack.
        """
        if stack is not None:
            self.stack = [value for value in stack]
            for value in self.stack:
                validate_value(value, where="Initial stack value")
        self.run_function(function)
        return list(self.stack)

    def run_function(self, function: Function) -> None:
        if len(self.stack) < function.args:
            raise StackSignatureMismatch(
                f"{function} expects {function.args} argument{'s' if function.args != 1 else ''}, "
                f"stack has {len(self.stack)}"
            )
        if self._call_depth >= self.max_call_depth:
            raise StackRuntimeError(f"Maximum call depth of {self.max_call_depth} exceeded in {function}")
        before = len(self.stack)
        self._call_depth += 1
        try:
            self.execute(function.instrs)
        finally:
            self._call_depth -= 1
        if function.checked_at_call:
            delta = len(self.stack) - before
            if delta != function.signature.delta:
                raise StackSignatureMismatch(
                    f"{function} was declared {function.signature} but changed the stack by {delta:+d}"
                )

    def invoke(self, function: Function, args: Sequence[Value]) -> list[Value]:
        """Run ``function`` on explicit arguments (top first) and return its outputs in push order."""
        base = len(self.stack)
        self.push_all(reversed(args))
        self.run_function(function)
        if len(self.stack) < base:
            raise StackSignatureMismatch(f"{function} consumed more than the {len(args)} values it was given")
        outputs = self.stack[base:]
        del self.stack[base:]
        return outputs

    def execute(self, instrs: Sequence[Instr]) -> None:
        for instr in instrs:
            try:
                self._step(instr)
            except StackJaxError as err:
                raise _with_span(err, instr)

    def _step(self, instr: Instr) -> None:
        if isinstance(instr, Push):
            self.push(instr.value)
        elif isinstance(instr, Prim):
            self._primitive(instr.primitive)
        elif isinstance(instr, Call):
            self.run_function(instr.function)
        elif isinstance(instr, Modify):
            from .combinators import run_modifier

            run_modifier(self, instr.modifier, instr.operands)
        elif isinstance(instr, BeginArray):
            self._array_marks.append(len(self.stack))
        elif isinstance(instr, EndArray):
            self._end_array()
        elif isinstance(instr, Effect):
            self._effect(instr)
        elif isinstance(instr, Ref):
            raise StackSignatureMismatch(f"Unresolved reference {instr.name!r}; bind the function first")
        else:
            raise TypeMismatch(f"Unknown instruction {instr!r}")

    def _primitive(self, prim: Primitive) -> None:
        if prim is Primitive.CALL:
            target = self.pop(where="call")
            if not isinstance(target, FunctionReference):
                raise TypeMismatch(f"call expects a function, got {type_name(target)}")
            self.run_function(target.function)
            return
        sig = signature_of(prim)
        args = self.pop_n(sig.args, where=str(prim))
        try:
            outputs = apply_primitive(prim, args, fill=self.fill_value)
        except StackJaxError:
            raise
        except Exception as err:
            raise classify_runtime_exception(err) from err
        self.push_all(outputs)

    def _end_array(self) -> None:
        if not self._array_marks:
            raise StackSignatureMismatch("Array end without a matching array start")
        mark = self._array_marks.pop()
        if len(self.stack) < mark:
            raise StackSignatureMismatch("Array literal consumed values from outside its brackets")
        items = self.stack[mark:]
        del self.stack[mark:]
        # The value pushed last is row 0.
        items.reverse()
        self.push(from_rows(items, where="Array literal", fill=self.fill_value))

    def _effect(self, instr: Effect) -> None:
        if self.effects is None:
            raise StackRuntimeError(f"No effect handler installed for {instr.name!r}")
        args = self.pop_n(instr.signature.args, where=instr.name)
        try:
            results = list(self.effects(instr.name, args))
        except StackJaxError:
            raise
        except Exception as err:
            raise classify_runtime_exception(err) from err
        if len(results) != instr.signature.outputs:
            raise StackSignatureMismatch(
                f"Effect {instr.name!r} was declared {instr.signature} but returned {len(results)} values"
            )
        logger.debug("effect %s returned %d values", instr.name, len(results))
        self.push_all(results)


def call(function: Function, stack: Iterable[Value] = (), *, effects: EffectHandler | None = None) -> list[Value]:
    """Run a bound function on a fresh machine and return the resulting stack."""
    return Machine(effects=effects).call(function, stack)
