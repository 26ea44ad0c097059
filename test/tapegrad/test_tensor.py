import io
from unittest import TestCase

import numpy as np

from tapegrad.config_schema import GraphConfig
from tapegrad.errors import (
    InvalidViewError,
    ReleasedBufferError,
    ShapeError,
)
from tapegrad.store import TensorStore
from tapegrad.tensor import ViewSpec, infer_shape, unbroadcast


class TestViewSpec(TestCase):
    def test_narrow(self):
        spec = ViewSpec.build("narrow", (4, 6), dim=1, start=2, length=3)
        assert spec.shape == (4, 3)
        arr = np.arange(24).reshape(4, 6)
        np.testing.assert_array_equal(spec.apply(arr, np), arr[:, 2:5])

    def test_narrow_negative_dim(self):
        spec = ViewSpec.build("narrow", (4, 6), dim=-1, start=0, length=6)
        assert spec.params == (1, 0, 6)

    def test_narrow_out_of_bounds(self):
        with self.assertRaises(InvalidViewError):
            ViewSpec.build("narrow", (4, 6), dim=0, start=3, length=2)
        with self.assertRaises(InvalidViewError):
            ViewSpec.build("narrow", (4, 6), dim=2, start=0, length=1)
        with self.assertRaises(InvalidViewError):
            ViewSpec.build("narrow", (4, 6), dim=0, start=-1, length=1)

    def test_invalid_view_is_a_shape_error(self):
        with self.assertRaises(ShapeError):
            ViewSpec.build("narrow", (2, 2), dim=0, start=0, length=3)

    def test_transpose_and_permute(self):
        arr = np.arange(24).reshape(2, 3, 4)
        spec = ViewSpec.build("transpose", arr.shape, dim0=0, dim1=2)
        assert spec.shape == (4, 3, 2)
        np.testing.assert_array_equal(spec.apply(arr, np), np.swapaxes(arr, 0, 2))

        spec = ViewSpec.build("permute", arr.shape, dims=(1, 2, 0))
        assert spec.shape == (3, 4, 2)
        np.testing.assert_array_equal(spec.apply(arr, np), arr.transpose(1, 2, 0))

        with self.assertRaises(InvalidViewError):
            ViewSpec.build("permute", arr.shape, dims=(0, 0, 1))

    def test_expand(self):
        arr = np.arange(3).reshape(1, 3)
        spec = ViewSpec.build("expand", arr.shape, shape=(2, 4, 3))
        assert spec.shape == (2, 4, 3)
        out = spec.apply(arr, np)
        assert out.shape == (2, 4, 3)
        np.testing.assert_array_equal(out[1, 2], [0, 1, 2])

        with self.assertRaises(InvalidViewError):
            ViewSpec.build("expand", (2, 3), shape=(4, 3))

    def test_unknown_op(self):
        with self.assertRaises(InvalidViewError):
            ViewSpec.build("unfold", (2, 3))


class TestInferShape(TestCase):
    def test_single_inferred_dim(self):
        assert infer_shape((2, -1), 12) == (2, 6)
        assert infer_shape((3, 4), 12) == (3, 4)

    def test_two_inferred_dims(self):
        with self.assertRaises(InvalidViewError):
            infer_shape((-1, -1), 12)

    def test_size_mismatch(self):
        with self.assertRaises(InvalidViewError):
            infer_shape((5, -1), 12)
        with self.assertRaises(InvalidViewError):
            infer_shape((5, 2), 12)


class TestUnbroadcast(TestCase):
    def test_leading_and_unit_dims(self):
        grad = np.ones((4, 3, 2))
        np.testing.assert_array_equal(unbroadcast(grad, (3, 2)), np.full((3, 2), 4.0))
        np.testing.assert_array_equal(
            unbroadcast(grad, (1, 3, 1)), np.full((1, 3, 1), 8.0)
        )

    def test_same_shape_is_unchanged(self):
        grad = np.ones((2, 2))
        assert unbroadcast(grad, (2, 2)) is grad


class TestTensor(TestCase):
    def setUp(self) -> None:
        self.store = TensorStore(GraphConfig(seed=0))

    def test_gradient_is_lazy_and_zeroed(self):
        t = self.store.create((2, 3))
        assert not t.has_grad
        np.testing.assert_array_equal(t.grad, np.zeros((2, 3)))
        assert t.has_grad

    def test_accumulate_grad_adds(self):
        t = self.store.create((2, 2))
        t.accumulate_grad(np.ones((2, 2), dtype=np.float32))
        t.accumulate_grad(np.ones((2, 2), dtype=np.float32))
        np.testing.assert_array_equal(t.grad, np.full((2, 2), 2.0))

    def test_accumulate_grad_shape_mismatch(self):
        t = self.store.create((2, 2))
        with self.assertRaises(ShapeError):
            t.accumulate_grad(np.ones((2, 3), dtype=np.float32))
        # the buffer keeps the shape of the weight
        assert t.grad.shape == (2, 2)

    def test_accumulate_grad_skipped_without_requires_grad(self):
        t = self.store.create((2, 2), requires_grad=False)
        t.accumulate_grad(np.ones((2, 2), dtype=np.float32))
        assert not t.has_grad

    def test_view_gradient_routes_to_parent(self):
        parent = self.store.create((4, 3))
        view = self.store.view(parent, "narrow", dim=0, start=1, length=2)
        view.accumulate_grad(np.ones((2, 3), dtype=np.float32))
        expected = np.zeros((4, 3))
        expected[1:3] = 1.0
        np.testing.assert_array_equal(parent.grad, expected)

    def test_transposed_view_gradient(self):
        parent = self.store.create((2, 3))
        view = self.store.view(parent, "transpose")
        grad = np.arange(6, dtype=np.float32).reshape(3, 2)
        view.accumulate_grad(grad)
        np.testing.assert_array_equal(parent.grad, grad.T)

    def test_released_weight_raises(self):
        t = self.store.create((2, 2))
        t.dispose()
        assert t.is_released
        with self.assertRaises(ReleasedBufferError):
            _ = t.weight

    def test_save_load(self):
        data = np.arange(6, dtype=np.float32).reshape(2, 3)
        src = self.store.from_array(data)
        stream = io.BytesIO()
        src.save(stream)
        assert stream.getvalue() == data.astype("<f4").tobytes()

        dst = self.store.create((2, 3))
        stream.seek(0)
        dst.load(stream)
        np.testing.assert_array_equal(dst.to_numpy(), data)

    def test_load_short_stream(self):
        dst = self.store.create((2, 3))
        with self.assertRaises(ShapeError):
            dst.load(io.BytesIO(b"\x00" * 20))

    def test_set_weight_shape_mismatch(self):
        t = self.store.create((2, 3))
        with self.assertRaises(ShapeError):
            t.set_weight(np.zeros((3, 2)))
