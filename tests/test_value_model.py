from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for value-model tests")
class ValueConstructionTests(unittest.TestCase):
    def test_array_requires_matching_buffer_length(self) -> None:
        from stackjax import ShapeMismatch, array

        value = array((2, 3), list(range(6)))
        self.assertEqual(value.shape, (2, 3))
        self.assertEqual(value.tolist(), [[0, 1, 2], [3, 4, 5]])

        with self.assertRaises(ShapeMismatch):
            array((2, 2), [1, 2, 3])

    def test_scalar_and_character_constructors(self) -> None:
        from stackjax import CharacterArray, TypeMismatch, chars, scalar

        self.assertEqual(scalar(4).shape, ())
        self.assertIsInstance(scalar("a"), CharacterArray)
        self.assertEqual(chars("hi").text(), "hi")
        self.assertEqual(chars("hi").shape, (2,))

        with self.assertRaises(TypeMismatch):
            scalar("ab")

    def test_value_info_covers_every_kind(self) -> None:
        from stackjax import Function, FunctionReference, ValueKind, as_value, box, chars, value_info

        self.assertEqual(value_info(as_value(3)).kind, ValueKind.NUMBER)
        self.assertEqual(value_info(chars("ab")).kind, ValueKind.CHARACTER)
        self.assertEqual(value_info(chars("ab")).rank, 1)

        boxed = value_info(box(as_value([1, 2])))
        self.assertEqual(boxed.kind, ValueKind.BOX)
        self.assertEqual(boxed.rank, 0)
        self.assertEqual(boxed.depth, 2)

        ref = value_info(FunctionReference(Function.from_primitive("neg")))
        self.assertEqual(ref.kind, ValueKind.FUNCTION)
        self.assertEqual(ref.shape, ())

    def test_validate_value_rejects_foreign_objects(self) -> None:
        from stackjax import TypeMismatch
        from stackjax.values import validate_value

        with self.assertRaises(TypeMismatch):
            validate_value(object(), where="test")


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for value-model tests")
class LeadingAxisTests(unittest.TestCase):
    def test_row_and_slice_access(self) -> None:
        from stackjax import IndexOutOfBounds, as_value
        from stackjax.values import row, slice_rows

        value = as_value([[1, 2], [3, 4], [5, 6]])
        self.assertEqual(row(value, 1).tolist(), [3, 4])
        self.assertEqual(row(value, -1).tolist(), [5, 6])
        self.assertEqual(slice_rows(value, 1, 3).shape, (2, 2))

        with self.assertRaises(IndexOutOfBounds):
            row(value, 3)

    def test_reverse_keeps_empty_arrays_intact(self) -> None:
        from stackjax import array, as_value, chars
        from stackjax.values import reverse

        empty = array((0, 3), [])
        self.assertEqual(reverse(empty).shape, (0, 3))
        self.assertEqual(reverse(as_value([1, 2, 3])).tolist(), [3, 2, 1])
        self.assertEqual(reverse(chars("abc")).text(), "cba")
        self.assertEqual(reverse(as_value(7)).tolist(), 7)

    def test_join_concatenates_leading_axis(self) -> None:
        from stackjax import as_value, scalar
        from stackjax.values import join

        self.assertEqual(join(as_value([1, 2]), as_value([3])).tolist(), [1, 2, 3])
        self.assertEqual(join(scalar(1), scalar(2)).tolist(), [1, 2])
        self.assertEqual(join(as_value([[1, 2]]), as_value([3, 4])).tolist(), [[1, 2], [3, 4]])

    def test_join_rejects_mismatched_trailing_shapes_without_fill(self) -> None:
        from stackjax import ShapeMismatch, TypeMismatch, as_value, chars, scalar
        from stackjax.values import join

        with self.assertRaises(ShapeMismatch):
            join(as_value([[1, 2]]), as_value([[1, 2, 3]]))
        padded = join(as_value([[1, 2]]), as_value([[1, 2, 3]]), fill=scalar(0))
        self.assertEqual(padded.tolist(), [[1, 2, 0], [1, 2, 3]])

        with self.assertRaises(TypeMismatch):
            join(chars("ab"), as_value([1]))

    def test_from_rows_pads_only_with_fill(self) -> None:
        from stackjax import ShapeMismatch, as_value, scalar
        from stackjax.values import from_rows

        rows = [as_value([1, 2]), as_value([3])]
        with self.assertRaises(ShapeMismatch):
            from_rows(rows)
        self.assertEqual(from_rows(rows, fill=scalar(9)).tolist(), [[1, 2], [3, 9]])

    def test_box_and_unbox(self) -> None:
        from stackjax import BoxedValue, TypeMismatch, as_value, box, scalar, unbox
        from stackjax.values import matches

        inner = as_value([1, 2])
        self.assertTrue(matches(unbox(box(inner)), inner))

        with self.assertRaises(TypeMismatch):
            unbox(inner)
        with self.assertRaises(TypeMismatch):
            unbox(BoxedValue((2,), (scalar(1), scalar(2))))

    def test_matches_is_structural_and_kind_aware(self) -> None:
        from stackjax import as_value, chars
        from stackjax.values import matches

        self.assertTrue(matches(as_value([1, 2]), as_value([1, 2])))
        self.assertFalse(matches(as_value([1, 2]), as_value([[1, 2]])))
        self.assertFalse(matches(chars("a"), as_value([97])))


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for pervasive kernel tests")
class PervasiveTests(unittest.TestCase):
    def test_scalar_and_array_broadcasting(self) -> None:
        from stackjax import as_value, scalar
        from stackjax import pervade

        self.assertEqual(pervade.binary("add", scalar(1), as_value([1, 2, 3])).tolist(), [2, 3, 4])
        # ``a`` is the top of the stack: sub computes b - a.
        out = pervade.binary("sub", as_value([1, 1]), as_value([[5, 6], [7, 8]]))
        self.assertEqual(out.tolist(), [[4, 5], [6, 7]])

    def test_incompatible_shapes_need_fill(self) -> None:
        from stackjax import ShapeMismatch, as_value, scalar
        from stackjax import pervade

        with self.assertRaises(ShapeMismatch):
            pervade.binary("add", as_value([1, 2, 3]), as_value([1, 2]))
        filled = pervade.binary("add", as_value([1, 2, 3]), as_value([1, 2]), fill=scalar(0))
        self.assertEqual(filled.tolist(), [2, 4, 3])

    def test_character_arithmetic(self) -> None:
        from stackjax import CharacterArray, NumericArray, TypeMismatch, chars, scalar
        from stackjax import pervade

        shifted = pervade.binary("add", scalar(1), scalar("a"))
        self.assertIsInstance(shifted, CharacterArray)
        self.assertEqual(shifted.text(), "b")

        gap = pervade.binary("sub", scalar("a"), scalar("c"))
        self.assertIsInstance(gap, NumericArray)
        self.assertEqual(gap.tolist(), 2)

        self.assertEqual(pervade.binary("sub", scalar(1), chars("bc")).text(), "ab")
        self.assertEqual(pervade.binary("lt", chars("b"), chars("a")).tolist(), 1)

        with self.assertRaises(TypeMismatch):
            pervade.binary("mul", scalar(2), chars("a"))
        with self.assertRaises(TypeMismatch):
            pervade.binary("lt", scalar(1), scalar("a"))
        with self.assertRaises(TypeMismatch):
            pervade.unary("neg", chars("a"))

    def test_boxes_are_not_pervasive(self) -> None:
        from stackjax import TypeMismatch, as_value, box, scalar
        from stackjax import pervade

        with self.assertRaises(TypeMismatch):
            pervade.binary("add", scalar(1), box(as_value([1])))

    def test_round_and_mod_conventions(self) -> None:
        from stackjax import as_value, scalar
        from stackjax import pervade

        self.assertEqual(pervade.unary("round", as_value([0.5, -0.5, 1.5, 2.4])).tolist(), [1, -1, 2, 2])
        self.assertEqual(pervade.binary("mod", scalar(3), as_value([7, -1])).tolist(), [1, 2])


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for array primitive tests")
class ArrayPrimitiveTests(unittest.TestCase):
    def test_take_and_drop(self) -> None:
        from stackjax import IndexOutOfBounds, as_value, scalar
        from stackjax import arrays

        value = as_value([1, 2, 3, 4])
        self.assertEqual(arrays.take(scalar(2), value).tolist(), [1, 2])
        self.assertEqual(arrays.take(scalar(-2), value).tolist(), [3, 4])
        self.assertEqual(arrays.take(scalar(6), value, fill=scalar(0)).tolist(), [1, 2, 3, 4, 0, 0])
        self.assertEqual(arrays.drop(scalar(1), value).tolist(), [2, 3, 4])
        self.assertEqual(arrays.drop(scalar(-1), value).tolist(), [1, 2, 3])

        with self.assertRaises(IndexOutOfBounds):
            arrays.take(scalar(6), value)
        with self.assertRaises(IndexOutOfBounds):
            arrays.drop(scalar(5), value)

    def test_take_with_one_count_per_axis(self) -> None:
        from stackjax import as_value
        from stackjax import arrays

        value = as_value([[1, 2, 3], [4, 5, 6]])
        self.assertEqual(arrays.take(as_value([1, 2]), value).tolist(), [[1, 2]])

    def test_keep_with_counts_and_fill(self) -> None:
        from stackjax import ShapeMismatch, as_value, scalar
        from stackjax import arrays

        value = as_value([7, 8, 9])
        self.assertEqual(arrays.keep(as_value([1, 0, 2]), value).tolist(), [7, 9, 9])
        self.assertEqual(arrays.keep(as_value([1, 0]), value, fill=scalar(1)).tolist(), [7, 9])

        with self.assertRaises(ShapeMismatch):
            arrays.keep(as_value([1, 0]), value)

    def test_reshape_cycles_or_fills(self) -> None:
        from stackjax import as_value, scalar
        from stackjax import arrays

        value = as_value([1, 2, 3])
        self.assertEqual(arrays.reshape(as_value([2, 2]), value).tolist(), [[1, 2], [3, 1]])
        self.assertEqual(arrays.reshape(as_value([2, 2]), value, fill=scalar(0)).tolist(), [[1, 2], [3, 0]])
        self.assertEqual(arrays.reshape(scalar(3), scalar(5)).tolist(), [5, 5, 5])

    def test_rotate_pick_and_select(self) -> None:
        from stackjax import IndexOutOfBounds, as_value, scalar
        from stackjax import arrays

        self.assertEqual(arrays.rotate(scalar(1), as_value([1, 2, 3])).tolist(), [2, 3, 1])

        grid = as_value([[1, 2], [3, 4]])
        self.assertEqual(arrays.pick(as_value([1, 0]), grid).tolist(), 3)
        with self.assertRaises(IndexOutOfBounds):
            arrays.pick(as_value([2, 0]), grid)

        self.assertEqual(arrays.select(as_value([2, 0]), as_value([10, 20, 30])).tolist(), [30, 10])

    def test_range_grades_and_classification(self) -> None:
        from stackjax import as_value, scalar
        from stackjax import arrays

        self.assertEqual(arrays.range_of(scalar(4)).tolist(), [0, 1, 2, 3])
        self.assertEqual(arrays.range_of(as_value([2, 2])).shape, (2, 2, 2))
        self.assertEqual(arrays.rise(as_value([3, 1, 2])).tolist(), [1, 2, 0])
        self.assertEqual(arrays.fall(as_value([3, 1, 2])).tolist(), [0, 2, 1])
        self.assertEqual(arrays.classify(as_value([5, 3, 5])).tolist(), [0, 1, 0])
        self.assertEqual(arrays.deduplicate(as_value([5, 3, 5])).tolist(), [5, 3])

    def test_bits_parse_and_transpose(self) -> None:
        from stackjax import as_value, chars, scalar
        from stackjax import arrays

        self.assertEqual(arrays.bits(scalar(5)).tolist(), [1, 0, 1])
        self.assertEqual(arrays.inv_bits(as_value([1, 0, 1])).tolist(), 5)
        self.assertEqual(arrays.parse_num(chars("¯2.5")).tolist(), -2.5)

        matrix = as_value([[1, 2, 3], [4, 5, 6]])
        self.assertEqual(arrays.transpose(matrix).tolist(), [[1, 4], [2, 5], [3, 6]])
        self.assertEqual(arrays.deshape(matrix).tolist(), [1, 2, 3, 4, 5, 6])

    def test_first_of_empty_needs_fill(self) -> None:
        from stackjax import IndexOutOfBounds, array, scalar
        from stackjax import arrays

        empty = array((0,), [])
        with self.assertRaises(IndexOutOfBounds):
            arrays.first(empty)
        self.assertEqual(arrays.first(empty, fill=scalar(0)).tolist(), 0)

    def test_boxes_are_restructured_by_index(self) -> None:
        from stackjax import as_value, box, scalar
        from stackjax import arrays
        from stackjax.values import from_rows, matches, unbox

        boxes = from_rows([box(as_value([1])), box(as_value([2, 3])), box(scalar(4))])
        taken = arrays.take(scalar(-2), boxes)
        self.assertEqual(taken.shape, (2,))
        self.assertTrue(matches(unbox(arrays.first(taken)), as_value([2, 3])))


if __name__ == "__main__":
    unittest.main()
