from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _plain(stack):
    return [value.tolist() for value in stack]


def _under(inner, outer, stack):
    from stackjax import Function, Modify, call

    return call(Function.inferred([Modify("under", (inner, outer))]), stack)


def _body(*instrs):
    from stackjax import Function

    return Function.inferred(list(instrs))


def _fn(name):
    from stackjax import Function

    return Function.from_primitive(name)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for under tests")
class UnderTests(unittest.TestCase):
    def test_under_take_writes_prefix_back(self) -> None:
        from stackjax import as_value, prim, push

        out = _under(_body(push(2), prim("take")), _fn("neg"), [as_value([1, 2, 3, 4])])
        self.assertEqual(_plain(out), [[-1, -2, 3, 4]])

    def test_under_take_with_count_from_stack(self) -> None:
        from stackjax import as_value, scalar

        out = _under(_fn("take"), _fn("neg"), [as_value([1, 2, 3, 4]), scalar(2)])
        self.assertEqual(_plain(out), [[-1, -2, 3, 4]])

    def test_under_drop(self) -> None:
        from stackjax import as_value, prim, push

        out = _under(_body(push(1), prim("drop")), _fn("neg"), [as_value([1, 2, 3, 4])])
        self.assertEqual(_plain(out), [[1, -2, -3, -4]])

    def test_under_take_per_axis(self) -> None:
        from stackjax import as_value, prim, push

        out = _under(_body(push([1, 2]), prim("take")), _fn("neg"), [as_value([[1, 2, 3], [4, 5, 6]])])
        self.assertEqual(_plain(out), [[[-1, -2, 3], [4, 5, 6]]])

    def test_under_take_beyond_length_uses_fill(self) -> None:
        from stackjax import Function, IndexOutOfBounds, Modify, as_value, call, prim, push, scalar

        take_six = _body(push(6), prim("take"))
        inner = Function.inferred([Modify("under", (take_six, _fn("neg")))])
        filled = Function.inferred([Modify("fill", (Function.constant(scalar(0)), inner))])
        self.assertEqual(_plain(call(filled, [as_value([1, 2, 3, 4])])), [[-1, -2, -3, -4]])

        with self.assertRaises(IndexOutOfBounds):
            call(inner, [as_value([1, 2, 3, 4])])

    def test_under_first_and_pick(self) -> None:
        from stackjax import as_value, prim, push

        grid = as_value([[1, 2], [3, 4]])
        times_ten = _body(push(10), prim("mul"))
        self.assertEqual(_plain(_under(_fn("first"), times_ten, [grid])), [[[10, 20], [3, 4]]])
        self.assertEqual(
            _plain(_under(_body(push([1, 0]), prim("pick")), times_ten, [grid])),
            [[[1, 2], [30, 4]]],
        )

    def test_under_keep_boolean_mask(self) -> None:
        from stackjax import as_value, prim, push

        out = _under(_body(push([1, 0, 1]), prim("keep")), _fn("neg"), [as_value([1, 2, 3])])
        self.assertEqual(_plain(out), [[-1, 2, -3]])

    def test_under_keep_rejects_replicating_masks(self) -> None:
        from stackjax import InvalidInversion, as_value, prim, push

        with self.assertRaises(InvalidInversion):
            _under(_body(push([2, 0, 1]), prim("keep")), _fn("neg"), [as_value([1, 2, 3])])

    def test_under_reshape(self) -> None:
        from stackjax import ShapeMismatch, as_value, prim, push

        to_square = _body(push([2, 2]), prim("reshape"))
        out = _under(to_square, _fn("transpose"), [as_value([1, 2, 3, 4])])
        self.assertEqual(_plain(out), [[1, 3, 2, 4]])

        with self.assertRaises(ShapeMismatch):
            _under(to_square, _body(push(1), prim("take")), [as_value([1, 2, 3, 4])])

    def test_under_arithmetic(self) -> None:
        from stackjax import prim, push, scalar

        add_one = _body(push(1), prim("add"))
        times_two = _body(push(2), prim("mul"))
        self.assertEqual(_plain(_under(add_one, times_two, [scalar(4)])), [9])

    def test_under_dip_inverts_the_hidden_step(self) -> None:
        from stackjax import Modify, prim, push, scalar

        dip_add = _body(Modify("dip", (_body(push(1), prim("add")),)))
        out = _under(dip_add, _body(push(10), prim("mul")), [scalar(1), scalar(2)])
        self.assertEqual(_plain(out), [1, 20])

    def test_under_sub_function_call(self) -> None:
        from stackjax import Call, as_value, prim, push

        take_two = _body(push(2), prim("take"))
        out = _under(_body(Call(take_two)), _fn("neg"), [as_value([1, 2, 3])])
        self.assertEqual(_plain(out), [[-1, -2, 3]])

    def test_under_identity_round_trips(self) -> None:
        from stackjax import Modify, as_value, box, prim, push
        from stackjax.values import matches

        matrix = as_value([[1, 2], [3, 4], [5, 6]])
        cases = {
            "take": _body(push(2), prim("take")),
            "drop": _body(push(1), prim("drop")),
            "take_negative": _body(push(-1), prim("take")),
            "reverse": _fn("reverse"),
            "deshape": _fn("deshape"),
            "transpose": _fn("transpose"),
            "first": _fn("first"),
            "last": _fn("last"),
            "box": _fn("box"),
            "rotate": _body(push(1), prim("rotate")),
            "pick": _body(push([1, 1]), prim("pick")),
            "keep": _body(push([1, 0, 1]), prim("keep")),
            "add": _body(push(3), prim("add")),
            "mul": _body(push(2), prim("mul")),
            "neg": _fn("neg"),
            "composite": _body(prim("reverse"), push(2), prim("take"), prim("first")),
            "dip": _body(Modify("dip", (_fn("reverse"),))),
        }
        identity = _fn("identity")
        for name, inner in cases.items():
            with self.subTest(name=name):
                stack = [box(as_value([7])), matrix] if name == "dip" else [matrix]
                out = _under(inner, identity, stack)
                self.assertEqual(len(out), len(stack))
                for got, expected in zip(out, stack):
                    self.assertTrue(matches(got, expected), msg=f"{name}: {got!r}")

    def test_under_scalar_round_trips_keep_rank(self) -> None:
        from stackjax import prim, push, scalar
        from stackjax.values import matches

        cases = {
            "take": _body(push(1), prim("take")),
            "drop": _body(push(0), prim("drop")),
            "keep": _body(push(1), prim("keep")),
        }
        identity = _fn("identity")
        for name, inner in cases.items():
            with self.subTest(name=name):
                (out,) = _under(inner, identity, [scalar(5)])
                self.assertEqual(out.shape, ())
                self.assertTrue(matches(out, scalar(5)), msg=f"{name}: {out!r}")

        (negated,) = _under(_body(push(1), prim("take")), _fn("neg"), [scalar(5)])
        self.assertEqual(negated.shape, ())
        self.assertEqual(negated.tolist(), -5)

    def test_under_keep_with_mask_extended_by_fill(self) -> None:
        from stackjax import Function, Modify, as_value, call, prim, push, scalar

        keep_mask = _body(push([1, 0]), prim("keep"))
        inner = Function.inferred([Modify("under", (keep_mask, _fn("neg")))])
        filled = Function.inferred([Modify("fill", (Function.constant(scalar(1)), inner))])
        self.assertEqual(_plain(call(filled, [as_value([1, 2, 3, 4])])), [[-1, 2, -3, -4]])

    def test_non_invertible_function_fails_at_bind_time(self) -> None:
        from stackjax import Function, InvalidInversion, Modify

        with self.assertRaises(InvalidInversion):
            Function.inferred([Modify("under", (_fn("rise"), _fn("neg")))])

    def test_contexts_are_popped_innermost_first(self) -> None:
        from stackjax import as_value, prim, push

        # drop 1 then take 2: the take context must be undone before the drop context.
        inner = _body(push(1), prim("drop"), push(2), prim("take"))
        out = _under(inner, _fn("neg"), [as_value([1, 2, 3, 4])])
        self.assertEqual(_plain(out), [[1, -2, -3, 4]])


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for invert tests")
class InvertTests(unittest.TestCase):
    def _round_trip(self, function, value):
        from stackjax import call, invert

        (forward,) = call(function, [value])
        (back,) = call(invert(function), [forward])
        return back

    def test_instruction_level_round_trips(self) -> None:
        import jax.numpy as jnp

        from stackjax import as_value, prim, push, scalar

        cases = [
            ("add_reverse", _body(push(3), prim("add"), prim("reverse")), as_value([1, 2, 3])),
            ("sub", _body(push(2), prim("sub")), scalar(5)),
            ("div", _body(push(4), prim("div")), scalar(2)),
            ("pow", _body(push(2), prim("pow")), scalar(3)),
            ("log", _body(push(2), prim("log")), scalar(8)),
            ("rotate", _body(push(1), prim("rotate")), as_value([1, 2, 3])),
            ("transpose", _fn("transpose"), as_value([[1, 2, 3], [4, 5, 6]])),
            ("bits", _fn("bits"), scalar(5)),
            ("sqrt", _fn("sqrt"), scalar(9)),
            ("not", _fn("not"), as_value([0, 1])),
        ]
        for name, function, value in cases:
            with self.subTest(name=name):
                back = self._round_trip(function, value)
                self.assertEqual(back.shape, value.shape)
                self.assertTrue(bool(jnp.allclose(back.to_jax(), value.to_jax())), msg=name)

    def test_box_round_trip(self) -> None:
        from stackjax import as_value
        from stackjax.values import matches

        value = as_value([1, 2])
        self.assertTrue(matches(self._round_trip(_fn("box"), value), value))

    def test_invert_of_dip_and_nested_invert(self) -> None:
        from stackjax import Modify, call, invert, prim, push, scalar

        dip_add = _body(Modify("dip", (_body(push(1), prim("add")),)))
        self.assertEqual(_plain(call(invert(dip_add), [scalar(5), scalar(0)])), [4, 0])

        twice_inverted = _body(Modify("invert", (_body(push(1), prim("add")),)))
        self.assertEqual(_plain(call(invert(twice_inverted), [scalar(5)])), [6])

    def test_non_invertible(self) -> None:
        from stackjax import InvalidInversion, invert

        with self.assertRaises(InvalidInversion):
            invert(_fn("rise"))
        with self.assertRaises(InvalidInversion):
            invert(_fn("dup"))


if __name__ == "__main__":
    unittest.main()
