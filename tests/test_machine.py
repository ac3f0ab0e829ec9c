from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _plain(stack):
    return [value.tolist() for value in stack]


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for stack machine tests")
class StackMachineTests(unittest.TestCase):
    def test_arithmetic_uses_value_below_top_as_left_operand(self) -> None:
        from stackjax import Function, call, prim, push

        self.assertEqual(_plain(call(Function.inferred([push(1), push(2), prim("add")]))), [3])
        self.assertEqual(_plain(call(Function.inferred([push(5), push(3), prim("sub")]))), [2])
        self.assertEqual(_plain(call(Function.inferred([push(6), push(3), prim("div")]))), [2])

    def test_stack_primitives(self) -> None:
        from stackjax import Function, call, scalar

        start = [scalar(1), scalar(2)]
        self.assertEqual(_plain(call(Function.from_primitive("dup"), start)), [1, 2, 2])
        self.assertEqual(_plain(call(Function.from_primitive("over"), start)), [1, 2, 1])
        self.assertEqual(_plain(call(Function.from_primitive("flip"), start)), [2, 1])
        self.assertEqual(_plain(call(Function.from_primitive("pop"), start)), [1])
        self.assertEqual(_plain(call(Function.from_primitive("identity"), start)), [1, 2])

    def test_call_does_not_mutate_the_input_stack(self) -> None:
        from stackjax import Function, call, scalar

        start = [scalar(1), scalar(2)]
        call(Function.from_primitive("add"), start)
        self.assertEqual(_plain(start), [1, 2])

    def test_insufficient_stack_depth(self) -> None:
        from stackjax import Function, StackSignatureMismatch, call, scalar

        with self.assertRaises(StackSignatureMismatch):
            call(Function.from_primitive("add"), [scalar(1)])

    def test_array_literal_puts_top_value_first(self) -> None:
        from stackjax import BeginArray, EndArray, Function, call, push

        literal = Function.inferred([BeginArray(), push(1), push(2), push(3), EndArray()])
        self.assertEqual(_plain(call(literal)), [[3, 2, 1]])

    def test_array_literal_rows_must_agree(self) -> None:
        from stackjax import BeginArray, EndArray, Function, ShapeMismatch, call, push

        ragged = Function.inferred([BeginArray(), push([1, 2]), push([3]), EndArray()])
        with self.assertRaises(ShapeMismatch):
            call(ragged)

    def test_dynamic_call_of_pushed_function(self) -> None:
        from stackjax import Function, Signature, TypeMismatch, call, prim, push, scalar

        add = Function.from_primitive("add")
        dynamic = Function((push(add), prim("call")), Signature(2, 1))
        self.assertEqual(_plain(call(dynamic, [scalar(2), scalar(3)])), [5])

        not_a_function = Function((push(1), prim("call")), Signature(0, 0))
        with self.assertRaises(TypeMismatch):
            call(not_a_function)

    def test_errors_carry_the_failing_instruction_span(self) -> None:
        from stackjax import Function, Span, TypeMismatch, call, prim, push

        body = Function.inferred([push(1, span=Span(0, 1)), prim("unbox", span=Span(2, 7))])
        with self.assertRaises(TypeMismatch) as ctx:
            call(body)
        self.assertEqual(ctx.exception.span, Span(2, 7))
        self.assertIn("[2, 7)", str(ctx.exception))

    def test_max_call_depth(self) -> None:
        from stackjax import Call, Function, Machine, StackRuntimeError, scalar

        inner = Function.from_primitive("neg")
        for _ in range(3):
            inner = Function.inferred([Call(inner)])

        with self.assertRaises(StackRuntimeError):
            Machine(max_call_depth=3).call(inner, [scalar(1)])
        self.assertEqual(_plain(Machine(max_call_depth=4).call(inner, [scalar(1)])), [-1])

    def test_unresolved_reference_cannot_run(self) -> None:
        from stackjax import Function, Ref, Signature, StackSignatureMismatch, call

        with self.assertRaises(StackSignatureMismatch):
            call(Function((Ref("x"),), Signature(0, 1)))


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for effect tests")
class EffectTests(unittest.TestCase):
    def test_effect_handler_receives_arguments_top_first(self) -> None:
        from stackjax import Effect, Function, call, chars, scalar

        seen = []

        def handler(name, args):
            seen.append((name, [arg.tolist() for arg in args]))
            return [chars(name)]

        body = Function.inferred([Effect("tag", "|2.1")])
        out = call(body, [scalar(1), scalar(2)], effects=handler)

        self.assertEqual(seen, [("tag", [2, 1])])
        self.assertEqual(len(out), 1)
        self.assertEqual(out[0].text(), "tag")

    def test_effect_output_count_is_checked(self) -> None:
        from stackjax import Effect, Function, StackSignatureMismatch, call, scalar

        body = Function.inferred([Effect("twice", "|1.2")])
        with self.assertRaises(StackSignatureMismatch):
            call(body, [scalar(1)], effects=lambda name, args: list(args))

    def test_missing_effect_handler(self) -> None:
        from stackjax import Effect, Function, StackRuntimeError, call, scalar

        with self.assertRaises(StackRuntimeError):
            call(Function.inferred([Effect("log", "|1.0")]), [scalar(1)])

    def test_foreign_handler_errors_are_classified(self) -> None:
        from stackjax import Effect, Function, IndexOutOfBounds, call, scalar

        def handler(name, args):
            raise IndexError("list index out of range")

        with self.assertRaises(IndexOutOfBounds):
            call(Function.inferred([Effect("get", "|1.1")]), [scalar(1)], effects=handler)


class ErrorClassificationTests(unittest.TestCase):
    @unittest.skipUnless(JAX_AVAILABLE, "jax is required to import stackjax")
    def test_foreign_exceptions_map_to_typed_errors(self) -> None:
        from stackjax import IndexOutOfBounds, ShapeMismatch, StackRuntimeError, TypeMismatch
        from stackjax.errors import classify_runtime_exception

        self.assertIsInstance(classify_runtime_exception(IndexError("oops")), IndexOutOfBounds)
        self.assertIsInstance(
            classify_runtime_exception(ValueError("Incompatible shapes for broadcasting")), ShapeMismatch
        )
        self.assertIsInstance(classify_runtime_exception(TypeError("bad operand")), TypeMismatch)
        self.assertIs(type(classify_runtime_exception(RuntimeError("boom"))), StackRuntimeError)

    @unittest.skipUnless(JAX_AVAILABLE, "jax is required to import stackjax")
    def test_indexing_messages_are_not_all_bounds_errors(self) -> None:
        from stackjax import IndexOutOfBounds, ShapeMismatch, TypeMismatch
        from stackjax.errors import classify_runtime_exception

        self.assertIsInstance(classify_runtime_exception(ValueError("Incompatible shapes for indexing")), ShapeMismatch)
        self.assertIsInstance(classify_runtime_exception(TypeError("Indexer must be an integer")), TypeMismatch)
        self.assertIsInstance(classify_runtime_exception(ValueError("index 5 is out of range")), IndexOutOfBounds)
        self.assertIsInstance(
            classify_runtime_exception(ValueError("index 3 is out of bounds for axis 0 with size 2")), IndexOutOfBounds
        )

    @unittest.skipUnless(JAX_AVAILABLE, "jax is required to import stackjax")
    def test_error_hierarchy(self) -> None:
        from stackjax import (
            AmbiguousSignature,
            BindError,
            InvalidInversion,
            StackRuntimeError,
            StackSignatureMismatch,
        )

        self.assertTrue(issubclass(StackSignatureMismatch, BindError))
        self.assertTrue(issubclass(StackSignatureMismatch, StackRuntimeError))
        self.assertTrue(issubclass(InvalidInversion, BindError))
        self.assertFalse(issubclass(AmbiguousSignature, StackRuntimeError))
        self.assertEqual(StackSignatureMismatch.kind, "stack_signature_mismatch")


if __name__ == "__main__":
    unittest.main()
