from unittest import TestCase

import numpy as np
import torch
import torch.nn.functional as F

from tapegrad.config_schema import GraphConfig
from tapegrad.errors import (
    AliasingError,
    GraphError,
    InvalidViewError,
    NullOperandError,
    ShapeError,
)
from tapegrad.graph import ComputeGraph
from tapegrad.store import TensorStore


def run_backward(build, arrays):
    """
    Run ``build`` on fresh leaves holding ``arrays``, seed the output with a random upstream
    gradient and replay the tape.

    Returns:
        Tuple: (forward value, upstream gradient, gradient of every leaf)
    """
    store = TensorStore(GraphConfig(seed=0))
    with ComputeGraph(store) as graph:
        inputs = [graph.tensor_from(a) for a in arrays]
        out = build(graph, *inputs)
        value = out.to_numpy().copy()
        upstream = (
            np.random.RandomState(7).standard_normal(out.shape).astype(np.float32)
        )
        out.accumulate_grad(upstream)
        graph.backward()
        grads = [t.grad_to_numpy().copy() for t in inputs]
    return value, upstream, grads


def numerical_grads(build, arrays, upstream, eps=1e-2):
    """Central differences of ``sum(build(arrays) * upstream)``."""

    def f(values):
        store = TensorStore(GraphConfig(seed=0))
        with ComputeGraph(store, needs_backprop=False) as graph:
            out = build(graph, *[graph.tensor_from(v) for v in values])
            return float((out.to_numpy().astype(np.float64) * upstream).sum())

    grads = []
    for i, arr in enumerate(arrays):
        grad = np.zeros(arr.shape)
        for idx in np.ndindex(*arr.shape):
            plus = [a.copy() for a in arrays]
            minus = [a.copy() for a in arrays]
            plus[i][idx] += eps
            minus[i][idx] -= eps
            grad[idx] = (f(plus) - f(minus)) / (2 * eps)
        grads.append(grad)
    return grads


def away_from_zero(*shape):
    """Values with magnitude in [0.1, 1], so kinks at zero are never crossed."""
    magnitude = np.random.uniform(0.1, 1.0, shape)
    return magnitude * np.random.choice([-1.0, 1.0], shape)


class GradientCheckCase(TestCase):
    def assert_gradients(self, build, *arrays):
        _, upstream, analytic = run_backward(build, arrays)
        numeric = numerical_grads(build, arrays, upstream)
        for a, n in zip(analytic, numeric):
            np.testing.assert_allclose(a, n, rtol=1e-2, atol=1e-3)


class TestElementwiseGradients(GradientCheckCase):
    def test_add(self):
        self.assert_gradients(
            lambda g, a, b: g.add(a, b), np.random.randn(3, 4), np.random.randn(3, 4)
        )

    def test_add_skips_operand_gradient(self):
        _, upstream, (ga, gb) = run_backward(
            lambda g, a, b: g.add(a, b, b_grad=False),
            (np.random.randn(2, 3), np.random.randn(2, 3)),
        )
        np.testing.assert_allclose(ga, upstream)
        np.testing.assert_array_equal(gb, np.zeros((2, 3)))

    def test_add_many_operands(self):
        self.assert_gradients(
            lambda g, a, b, c: g.add(a, b, c),
            np.random.randn(2, 3),
            np.random.randn(2, 3),
            np.random.randn(2, 3),
        )
        value, upstream, grads = run_backward(
            lambda g, a, b, c, d: g.add(a, b, c, d, a_grad=False),
            [np.full((2, 2), float(i)) for i in range(4)],
        )
        np.testing.assert_array_equal(value, np.full((2, 2), 6.0))
        np.testing.assert_array_equal(grads[0], np.zeros((2, 2)))
        for grad in grads[1:]:
            np.testing.assert_allclose(grad, upstream)

    def test_add_mul(self):
        self.assert_gradients(
            lambda g, a, b: g.add_mul(a, b, 0.5),
            np.random.randn(3, 4),
            np.random.randn(3, 4),
        )

    def test_mul_scalar(self):
        self.assert_gradients(lambda g, w: g.mul_scalar(w, -3.0), np.random.randn(2, 5))

    def test_elt_mul(self):
        self.assert_gradients(
            lambda g, a, b: g.elt_mul(a, b), np.random.randn(3, 4), np.random.randn(3, 4)
        )

    def test_elt_mul_mul_add(self):
        self.assert_gradients(
            lambda g, a, b, c, d: g.elt_mul_mul_add(a, b, c, d),
            *[np.random.randn(2, 3) for _ in range(4)],
        )

    def test_same_tensor_twice(self):
        # d(x * x)/dx = 2x
        x = np.random.randn(2, 3)
        _, upstream, (gx,) = run_backward(lambda g, a: g.elt_mul(a, a), (x,))
        np.testing.assert_allclose(gx, 2 * x * upstream, rtol=1e-5, atol=1e-6)


class TestMatrixGradients(GradientCheckCase):
    def test_affine(self):
        self.assert_gradients(
            lambda g, x, w, b: g.affine(x, w, b),
            np.random.randn(4, 3),
            np.random.randn(3, 5),
            np.random.randn(1, 5),
        )

    def test_affine_flat_bias(self):
        self.assert_gradients(
            lambda g, x, w, b: g.affine(x, w, b),
            np.random.randn(2, 3),
            np.random.randn(3, 2),
            np.random.randn(2),
        )

    def test_mul(self):
        self.assert_gradients(
            lambda g, a, b: g.mul(a, b), np.random.randn(3, 4), np.random.randn(4, 2)
        )

    def test_mul_add(self):
        self.assert_gradients(
            lambda g, a, b, c: g.mul_add(a, b, c),
            np.random.randn(3, 4),
            np.random.randn(4, 2),
            np.random.randn(3, 2),
        )

    def test_mul_add_addend_shape(self):
        with ComputeGraph(TensorStore()) as g:
            a, b = g.create_tensor((3, 4)), g.create_tensor((4, 2))
            with self.assertRaises(ShapeError):
                g.mul_add(a, b, g.create_tensor((1, 2)))

    def test_mul_batch(self):
        self.assert_gradients(
            lambda g, a, b: g.mul_batch(a, b, alpha=0.5),
            np.random.randn(2, 3, 4),
            np.random.randn(2, 4, 2),
        )

    def test_mul_batch_matches_torch(self):
        a = np.random.randn(3, 2, 4).astype(np.float32)
        b = np.random.randn(3, 4, 5).astype(np.float32)
        value, upstream, (ga, gb) = run_backward(
            lambda g, x, y: g.mul_batch(x, y, alpha=0.25), (a, b)
        )

        a_t = torch.tensor(a, requires_grad=True)
        b_t = torch.tensor(b, requires_grad=True)
        out_t = torch.bmm(a_t, b_t) * 0.25
        out_t.backward(torch.tensor(upstream))

        np.testing.assert_allclose(value, out_t.detach().numpy(), rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(ga, a_t.grad.numpy(), rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(gb, b_t.grad.numpy(), rtol=1e-5, atol=1e-6)

    def test_shape_errors(self):
        with ComputeGraph(TensorStore()) as g:
            x = g.create_tensor((4, 3))
            w = g.create_tensor((4, 5))
            with self.assertRaises(ShapeError):
                g.mul(x, w)
            with self.assertRaises(ShapeError):
                g.affine(x, g.create_tensor((3, 5)), g.create_tensor((1, 4)))
            with self.assertRaises(ShapeError):
                g.mul_batch(g.create_tensor((2, 3, 4)), g.create_tensor((3, 4, 2)))
            with self.assertRaises(ShapeError):
                g.mul_batch(x, w)


class TestActivationGradients(GradientCheckCase):
    def test_sigmoid(self):
        self.assert_gradients(lambda g, w: g.sigmoid(w), np.random.randn(3, 4))

    def test_sigmoid_large_inputs(self):
        with ComputeGraph(TensorStore()) as g:
            out = g.sigmoid(g.tensor_from(np.array([[-1000.0, 0.0, 1000.0]])))
            np.testing.assert_allclose(out.to_numpy(), [[0.0, 0.5, 1.0]], atol=1e-6)

    def test_tanh(self):
        self.assert_gradients(lambda g, w: g.tanh(w), np.random.randn(3, 4))

    def test_relu(self):
        self.assert_gradients(lambda g, w: g.relu(w), away_from_zero(3, 4))

    def test_add_tanh(self):
        self.assert_gradients(
            lambda g, a, b: g.add_tanh(a, b), np.random.randn(2, 3), np.random.randn(2, 3)
        )

    def test_add_tanh_three_operands(self):
        self.assert_gradients(
            lambda g, a, b, c: g.add_tanh(a, b, c),
            np.random.randn(2, 3),
            np.random.randn(2, 3),
            np.random.randn(2, 3),
        )

    def test_softmax(self):
        self.assert_gradients(lambda g, w: g.softmax(w), np.random.randn(3, 5))

    def test_softmax_in_place(self):
        self.assert_gradients(lambda g, w: g.softmax(w, in_place=True), np.random.randn(3, 5))


class TestSoftmax(TestCase):
    def setUp(self) -> None:
        self.store = TensorStore()

    def test_rows_sum_to_one(self):
        with ComputeGraph(self.store) as g:
            out = g.softmax(g.tensor_from(np.random.randn(4, 7) * 5))
            np.testing.assert_allclose(out.to_numpy().sum(axis=-1), np.ones(4), rtol=1e-5)

    def test_shift_invariant(self):
        x = np.random.randn(3, 6)
        with ComputeGraph(self.store) as g:
            a = g.softmax(g.tensor_from(x)).to_numpy()
            b = g.softmax(g.tensor_from(x + 1000.0)).to_numpy()
            np.testing.assert_allclose(a, b, rtol=1e-3, atol=1e-6)
            assert np.all(np.isfinite(b))

    def test_matches_torch(self):
        x = np.random.randn(2, 3, 5).astype(np.float32)
        value, upstream, (gx,) = run_backward(lambda g, w: g.softmax(w), (x,))

        x_t = torch.tensor(x, requires_grad=True)
        out_t = torch.softmax(x_t, dim=-1)
        out_t.backward(torch.tensor(upstream))

        np.testing.assert_allclose(value, out_t.detach().numpy(), rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(gx, x_t.grad.numpy(), rtol=1e-4, atol=1e-6)

    def test_in_place_shares_storage(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(2, 3))
            buf = x.weight
            out = g.softmax(x, in_place=True)
            assert out.weight is buf

    def test_in_place_on_viewed_tensor(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(4, 3))
            g.peek_row(x, 0)
            with self.assertRaises(AliasingError):
                g.softmax(x, in_place=True)

    def test_in_place_on_held_tensor(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(2, 3))
            # tanh keeps its output for the backward pass
            y = g.tanh(x)
            with self.assertRaises(AliasingError):
                g.softmax(y, in_place=True)

    def test_in_place_after_permute_leaves_held_input_intact(self):
        x = np.random.randn(2, 1, 3).astype(np.float32)
        upstream = np.random.randn(1, 2, 3).astype(np.float32)
        with ComputeGraph(self.store) as g:
            x_t = g.tensor_from(x)
            y = g.tanh(x_t)
            before = y.to_numpy().copy()
            # moving only a size-1 dim keeps the same memory layout
            probs = g.softmax(g.permute(y, 1, 0, 2), in_place=True)
            np.testing.assert_array_equal(y.to_numpy(), before)
            value = probs.to_numpy().copy()
            probs.accumulate_grad(upstream)
            g.backward()
            grad = x_t.grad_to_numpy().copy()

        x_torch = torch.tensor(x, requires_grad=True)
        out_torch = torch.softmax(torch.tanh(x_torch).permute(1, 0, 2), dim=-1)
        out_torch.backward(torch.tensor(upstream))
        np.testing.assert_allclose(value, out_torch.detach().numpy(), rtol=1e-5, atol=1e-6)
        np.testing.assert_allclose(grad, x_torch.grad.numpy(), rtol=1e-4, atol=1e-6)

    def test_without_gradients(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(2, 3))
            for in_place in (False, True):
                out = g.softmax(g.mul_scalar(x, 1.0), in_place=in_place, run_gradients=False)
                assert not out.requires_grad
            assert len(g.tape) == 2

    def test_in_place_dropout_after_in_place_softmax(self):
        with ComputeGraph(self.store) as g:
            probs = g.softmax(g.tensor_from(np.random.randn(4, 3)), in_place=True)
            with self.assertRaises(AliasingError):
                g.dropout(probs, 1, 0.5, in_place=True)


class TestNormalization(GradientCheckCase):
    def test_layer_norm(self):
        self.assert_gradients(
            lambda g, x, a, b: g.layer_norm(x, a, b, eps=1e-5),
            np.random.randn(3, 6),
            np.random.randn(1, 6),
            np.random.randn(1, 6),
        )

    def test_add_layer_norm(self):
        self.assert_gradients(
            lambda g, x, y, a, b: g.add_layer_norm(x, y, a, b, eps=1e-5),
            np.random.randn(3, 4),
            np.random.randn(3, 4),
            np.random.randn(1, 4),
            np.random.randn(1, 4),
        )

    def test_layer_norm_matches_torch(self):
        x = np.random.randn(5, 8).astype(np.float32)
        alpha = np.random.randn(1, 8).astype(np.float32)
        beta = np.random.randn(1, 8).astype(np.float32)
        value, upstream, (gx, ga, gb) = run_backward(
            lambda g, s, a, b: g.layer_norm(s, a, b, eps=1e-5), (x, alpha, beta)
        )

        x_t = torch.tensor(x, requires_grad=True)
        a_t = torch.tensor(alpha.reshape(-1), requires_grad=True)
        b_t = torch.tensor(beta.reshape(-1), requires_grad=True)
        out_t = F.layer_norm(x_t, (8,), a_t, b_t, eps=1e-5)
        out_t.backward(torch.tensor(upstream))

        np.testing.assert_allclose(value, out_t.detach().numpy(), rtol=1e-4, atol=1e-5)
        np.testing.assert_allclose(gx, x_t.grad.numpy(), rtol=1e-3, atol=1e-4)
        np.testing.assert_allclose(ga.reshape(-1), a_t.grad.numpy(), rtol=1e-4, atol=1e-5)
        np.testing.assert_allclose(gb.reshape(-1), b_t.grad.numpy(), rtol=1e-4, atol=1e-5)

    def test_rows_are_normalized(self):
        store = TensorStore()
        with ComputeGraph(store) as g:
            x = g.tensor_from(np.random.randn(4, 16) * 3 + 2)
            alpha = g.create_tensor((1, 16), fill_value=1.0)
            beta = g.create_tensor((1, 16))
            out = g.layer_norm(x, alpha, beta).to_numpy()
            np.testing.assert_allclose(out.mean(axis=-1), np.zeros(4), atol=1e-5)
            np.testing.assert_allclose(out.std(axis=-1), np.ones(4), rtol=1e-4)

    def test_parameter_shape_mismatch(self):
        with ComputeGraph(TensorStore()) as g:
            x = g.create_tensor((2, 4))
            with self.assertRaises(ShapeError):
                g.layer_norm(x, g.create_tensor((1, 3)), g.create_tensor((1, 4)))


class TestDropout(TestCase):
    def setUp(self) -> None:
        self.store = TensorStore(GraphConfig(seed=3))

    def test_zero_probability_is_identity(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(4, 3))
            assert g.dropout(x, 2, 0.0) is x
            assert len(g.tape) == 0

    def test_without_backprop_is_identity(self):
        with ComputeGraph(self.store, needs_backprop=False) as g:
            x = g.tensor_from(np.random.randn(4, 3))
            assert g.dropout(x, 2, 0.5) is x

    def test_probability_one_zeroes_everything(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(4, 3))
            out = g.dropout(x, 2, 1.0)
            np.testing.assert_array_equal(out.to_numpy(), np.zeros((4, 3)))
            out.accumulate_grad(np.ones((4, 3), dtype=np.float32))
            g.backward()
            np.testing.assert_array_equal(x.grad_to_numpy(), np.zeros((4, 3)))

    def test_mask_is_shared_across_the_batch(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((6, 50)))
            out = g.dropout(x, 2, 0.5).to_numpy()
            assert set(np.unique(out)) <= {0.0, 2.0}
            np.testing.assert_array_equal(out[:3], out[3:])
            # with 150 samples both outcomes occur
            assert 0.0 in out and 2.0 in out

    def test_gradient_is_masked(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((4, 8)))
            out = g.dropout(x, 1, 0.25)
            mask = out.to_numpy().copy()
            upstream = np.random.randn(4, 8).astype(np.float32)
            out.accumulate_grad(upstream)
            g.backward()
            np.testing.assert_allclose(x.grad_to_numpy(), upstream * mask, rtol=1e-6)

    def test_in_place(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((4, 8)))
            buf = x.weight
            out = g.dropout(x, 1, 0.5, in_place=True)
            assert out.weight is buf
            mask = out.to_numpy().copy()
            out.accumulate_grad(np.ones((4, 8), dtype=np.float32))
            g.backward()
            np.testing.assert_allclose(x.grad_to_numpy(), mask)

    def test_invalid_arguments(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((6, 2)))
            with self.assertRaises(ValueError):
                g.dropout(x, 2, 1.5)
            with self.assertRaises(ValueError):
                g.dropout(x, 2, -0.1)
            with self.assertRaises(ShapeError):
                g.dropout(x, 4, 0.5)


class TestMovementGradients(GradientCheckCase):
    def test_concat_rows(self):
        self.assert_gradients(
            lambda g, a, b: g.concat_rows([a, b]),
            np.random.randn(2, 3),
            np.random.randn(4, 3),
        )

    def test_concat_columns(self):
        self.assert_gradients(
            lambda g, a, b, c: g.concat_columns(a, b, c),
            np.random.randn(2, 1),
            np.random.randn(2, 3),
            np.random.randn(2, 2),
        )

    def test_split_columns(self):
        def build(g, w):
            left, right = g.split_columns(w, 1, 3)
            return g.concat_columns(g.mul_scalar(right, 2.0), left)

        self.assert_gradients(build, np.random.randn(3, 4))

    def test_split_rows(self):
        def build(g, w):
            top, bottom = g.split_rows(w, 2, 1)
            return g.concat_rows([bottom, g.tanh(top)])

        self.assert_gradients(build, np.random.randn(3, 2))

    def test_overlapping_views_accumulate(self):
        def build(g, w):
            return g.add(g.peek_row(w, 0, 2), g.peek_row(w, 1, 2))

        self.assert_gradients(build, np.random.randn(3, 4))
        _, _, (grad,) = run_backward(build, (np.random.randn(3, 4),))
        assert grad.shape == (3, 4)

    def test_transpose(self):
        self.assert_gradients(
            lambda g, w: g.mul_scalar(g.transpose(w), 3.0), np.random.randn(2, 5)
        )

    def test_transpose_batch(self):
        self.assert_gradients(
            lambda g, w: g.transpose_batch(w, 2), np.random.randn(6, 3)
        )

    def test_permute(self):
        self.assert_gradients(
            lambda g, w: g.permute(w, 2, 0, 1), np.random.randn(2, 3, 4)
        )

    def test_view_of_owned_tensor(self):
        self.assert_gradients(
            lambda g, w: g.mul_scalar(g.view(w, 3, -1), 1.5), np.random.randn(2, 6)
        )

    def test_view_of_view_copies(self):
        self.assert_gradients(
            lambda g, w: g.view(g.transpose(w), -1, 2), np.random.randn(2, 6)
        )

    def test_expand(self):
        self.assert_gradients(
            lambda g, w, x: g.elt_mul(g.expand(w, 3, 4), x),
            np.random.randn(1, 4),
            np.random.randn(3, 4),
        )

    def test_repeat_rows(self):
        self.assert_gradients(lambda g, w: g.repeat_rows(w, 3), np.random.randn(2, 3))

    def test_masked_fill(self):
        mask = np.array([[1.0, 0.0, 0.0, 1.0]])
        self.assert_gradients(
            lambda g, w: g.masked_fill(
                w, g.tensor_from(mask, requires_grad=False), -5.0
            ),
            np.random.randn(3, 4),
        )


class TestMovement(TestCase):
    def setUp(self) -> None:
        self.store = TensorStore()

    def test_transpose_batch_reorders_rows(self):
        seq_len, batch_size = 3, 2
        x = np.arange(12, dtype=np.float32).reshape(6, 2)
        with ComputeGraph(self.store) as g:
            out = g.transpose_batch(g.tensor_from(x), batch_size).to_numpy()
        for s in range(seq_len):
            for b in range(batch_size):
                np.testing.assert_array_equal(out[b * seq_len + s], x[s * batch_size + b])

    def test_transpose_batch_single_batch(self):
        x = np.random.randn(4, 3).astype(np.float32)
        with ComputeGraph(self.store) as g:
            x_t = g.tensor_from(x)
            out = g.transpose_batch(x_t, 1)
            np.testing.assert_array_equal(out.to_numpy(), x)
            assert not np.shares_memory(out.weight, x_t.weight)

    def test_copying_movements_own_their_storage(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(2, 1, 3))
            row = g.tensor_from(np.random.randn(1, 4))
            outputs = [
                g.permute(x, 1, 0, 2),
                g.permute(row, 1, 0),
                g.transpose_batch(row, 1),
                g.transpose_batch(g.tensor_from(np.random.randn(3, 2)), 3),
                g.view(g.transpose(row), -1),
                g.repeat_rows(row, 1),
                g.repeat_rows(row, 3),
            ]
            for out in outputs:
                assert out.weight.flags.owndata
                assert not out.is_view
                for source in (x, row):
                    assert not np.shares_memory(out.weight, source.weight)

    def test_repeat_rows_values(self):
        x = np.random.randn(2, 3).astype(np.float32)
        with ComputeGraph(self.store) as g:
            out = g.repeat_rows(g.tensor_from(x), 3).to_numpy().copy()
        np.testing.assert_array_equal(out, np.tile(x, (3, 1)))

    def test_movements_without_gradients(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.random.randn(3, 2))
            peeked = g.peek_row(x, 1, run_gradients=False)
            repeated = g.repeat_rows(x, 2, run_gradients=False)
            assert not peeked.requires_grad
            assert not repeated.requires_grad
            assert len(g.tape) == 0
            peeked.accumulate_grad(np.ones((1, 2), dtype=np.float32))
            assert not x.has_grad

    def test_split_then_concat_round_trip(self):
        x = np.random.randn(4, 6).astype(np.float32)
        with ComputeGraph(self.store) as g:
            parts = g.split_columns(g.tensor_from(x), 2, 1, 3)
            assert [p.shape for p in parts] == [(4, 2), (4, 1), (4, 3)]
            np.testing.assert_array_equal(g.concat_columns(*parts).to_numpy(), x)

    def test_split_sizes_must_cover_extent(self):
        with ComputeGraph(self.store) as g:
            x = g.create_tensor((4, 6))
            with self.assertRaises(ShapeError):
                g.split_columns(x, 2, 2)
            with self.assertRaises(ShapeError):
                g.split_rows(x, 3, 3)

    def test_concat_single_operand(self):
        with ComputeGraph(self.store) as g:
            x = g.create_tensor((2, 2))
            assert g.concat_columns(x) is x
            assert g.concat_rows([x]) is x

    def test_concat_shape_mismatch(self):
        with ComputeGraph(self.store) as g:
            with self.assertRaises(ShapeError):
                g.concat_rows([g.create_tensor((2, 3)), g.create_tensor((2, 4))])
            with self.assertRaises(NullOperandError):
                g.concat_rows([])

    def test_view_aliases_storage(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.arange(6).reshape(2, 3))
            v = g.view(x, -1)
            assert v.shape == (6,)
            assert v.is_view
            with self.assertRaises(InvalidViewError):
                g.view(x, -1, -1)
            with self.assertRaises(InvalidViewError):
                g.view(x, 4, 2)

    def test_peek_row_bounds(self):
        with ComputeGraph(self.store) as g:
            x = g.create_tensor((3, 2))
            assert g.peek_row(x, 1, 2).shape == (2, 2)
            with self.assertRaises(InvalidViewError):
                g.peek_row(x, 2, 2)

    def test_masked_fill_values(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((2, 3)))
            mask = g.tensor_from(np.array([[0, 1, 0]]), requires_grad=False)
            out = g.masked_fill(x, mask).to_numpy()
            np.testing.assert_array_equal(out[:, 0], [1.0, 1.0])
            np.testing.assert_array_equal(out[:, 1], [-1e9, -1e9])
            with self.assertRaises(ShapeError):
                g.masked_fill(x, g.create_tensor((2, 2)))

    def test_argmax(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.array([[0.1, 0.7, 0.2], [0.9, 0.0, 0.1]]))
            assert g.argmax(x) == [1, 0]
            assert g.argmax(x, dim=0) == [1, 0, 0]

    def test_position_matrix(self):
        with ComputeGraph(self.store) as g:
            pe = g.build_position_matrix(5, 4)
            assert not pe.requires_grad
            values = pe.to_numpy()
            np.testing.assert_allclose(values[0], [0.0, 1.0, 0.0, 1.0], atol=1e-7)
            np.testing.assert_allclose(
                values[3, 2], np.sin(3 / 10000 ** (2 / 4)), rtol=1e-6
            )


class TestLosses(GradientCheckCase):
    def test_mse_loss(self):
        self.assert_gradients(
            lambda g, p, t: g.mse_loss(p, t), np.random.randn(3, 2), np.random.randn(3, 2)
        )

    def test_mse_value(self):
        pred = np.random.randn(4, 3)
        target = np.random.randn(4, 3)
        with ComputeGraph(TensorStore()) as g:
            loss = g.mse_loss(g.tensor_from(pred), g.tensor_from(target))
            assert loss.shape == (1,)
            np.testing.assert_allclose(
                loss.to_numpy()[0], ((pred - target) ** 2).mean(), rtol=1e-5
            )

    def test_cross_entropy(self):
        targets = [2, 0, 1]
        self.assert_gradients(
            lambda g, x: g.cross_entropy(x, targets), np.random.randn(3, 4)
        )

    def test_cross_entropy_matches_torch(self):
        logits = np.random.randn(5, 6).astype(np.float32)
        targets = [1, 0, 5, 0, 3]

        for pad_idx in (None, 0):
            value, upstream, (grad,) = run_backward(
                lambda g, x: g.cross_entropy(x, targets, pad_idx=pad_idx), (logits,)
            )
            logits_t = torch.tensor(logits, requires_grad=True)
            loss_t = F.cross_entropy(
                logits_t,
                torch.tensor(targets),
                ignore_index=-100 if pad_idx is None else pad_idx,
            )
            (loss_t * float(upstream[0])).backward()

            np.testing.assert_allclose(value[0], loss_t.item(), rtol=1e-5)
            np.testing.assert_allclose(grad, logits_t.grad.numpy(), rtol=1e-4, atol=1e-6)

    def test_cross_entropy_all_padding(self):
        with ComputeGraph(TensorStore()) as g:
            loss = g.cross_entropy(g.tensor_from(np.random.randn(2, 3)), [0, 0], pad_idx=0)
            assert loss.to_numpy()[0] == 0.0

    def test_cross_entropy_target_count(self):
        with ComputeGraph(TensorStore()) as g:
            with self.assertRaises(ShapeError):
                g.cross_entropy(g.create_tensor((3, 4)), [0, 1])


class TestComputeGraph(TestCase):
    def setUp(self) -> None:
        self.store = TensorStore(GraphConfig(seed=0))

    def test_null_operand(self):
        with ComputeGraph(self.store) as g:
            x = g.create_tensor((2, 2))
            with self.assertRaises(NullOperandError):
                g.add(x, None)
            with self.assertRaises(NullOperandError):
                g.affine(x, None, x)
            # nothing was recorded for the failed calls
            assert len(g.tape) == 0

    def test_shape_mismatch(self):
        with ComputeGraph(self.store) as g:
            with self.assertRaises(ShapeError):
                g.add(g.create_tensor((2, 2)), g.create_tensor((2, 3)))

    def test_disposed_graph_rejects_ops(self):
        g = ComputeGraph(self.store)
        x = g.create_tensor((2, 2))
        g.dispose()
        with self.assertRaises(GraphError):
            g.tanh(x)

    def test_needs_backprop_false_records_nothing(self):
        with ComputeGraph(self.store, needs_backprop=False) as g:
            x = g.tensor_from(np.random.randn(2, 3))
            g.tanh(g.mul_scalar(x, 2.0))
            assert len(g.tape) == 0

    def test_constants_are_not_recorded(self):
        with ComputeGraph(self.store) as g:
            a = g.tensor_from(np.ones((2, 2)), requires_grad=False)
            b = g.tensor_from(np.ones((2, 2)), requires_grad=False)
            out = g.add(a, b)
            assert not out.requires_grad
            assert len(g.tape) == 0

    def test_backward_seeds_loss(self):
        w = self.store.create((3, 2), name="w", trainable=True)
        x = np.random.randn(4, 3)
        with ComputeGraph(self.store) as g:
            out = g.mul(g.tensor_from(x), w)
            loss = g.mse_loss(out, g.create_tensor((4, 2)))
            expected = 2.0 / 8 * x.T @ out.to_numpy()
            g.backward(loss)
            assert len(g.tape) == 0
        np.testing.assert_allclose(w.grad_to_numpy(), expected, rtol=1e-4, atol=1e-6)

    def test_gradients_accumulate_across_passes(self):
        w = self.store.create((2, 2), trainable=True)
        for _ in range(2):
            with ComputeGraph(self.store) as g:
                out = g.mul_scalar(w, 3.0)
                out.accumulate_grad(np.ones((2, 2), dtype=np.float32))
                g.backward()
        np.testing.assert_allclose(w.grad_to_numpy(), np.full((2, 2), 6.0))

    def test_run_top_backward(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((2, 2)))
            mid = g.mul_scalar(x, 2.0)
            top = g.mul_scalar(mid, 3.0)
            top.accumulate_grad(np.ones((2, 2), dtype=np.float32))

            assert g.run_top_backward()
            np.testing.assert_allclose(mid.grad_to_numpy(), np.full((2, 2), 3.0))
            assert not x.has_grad
            assert len(g.tape) == 1

            g.backward()
            np.testing.assert_allclose(x.grad_to_numpy(), np.full((2, 2), 6.0))
            assert not g.run_top_backward()

    def test_outputs_are_disposed_after_backward(self):
        with ComputeGraph(self.store) as g:
            x = g.tensor_from(np.ones((2, 2)))
            out = g.tanh(x)
            out.accumulate_grad(np.ones((2, 2), dtype=np.float32))
            g.backward()
            assert out.is_released
            assert not x.is_released

    def test_root_dispose_releases_created_tensors(self):
        param = self.store.create((2, 2), trainable=True)
        g = ComputeGraph(self.store)
        x = g.tensor_from(np.ones((2, 2)))
        y = g.add(x, param)
        g.dispose()
        assert x.is_released and y.is_released
        assert not param.is_released
        assert param._holds == 0
        assert self.store.pooled_buffers == 0

    def test_unreplayed_records_release_holds(self):
        param = self.store.create((2, 2), trainable=True)
        with ComputeGraph(self.store) as g:
            g.elt_mul(g.tensor_from(np.ones((2, 2))), param)
            assert param._holds == 1
        assert param._holds == 0

    def test_get_parameters(self):
        a = self.store.create((2, 2), name="a", trainable=True)
        b = self.store.create((2, 2), name="b", trainable=True)
        with ComputeGraph(self.store) as g:
            assert g.get_parameters() == [a, b]

    def test_to_dot(self):
        store = TensorStore(GraphConfig(visualize=True))
        with ComputeGraph(store) as g:
            a = g.tensor_from(np.ones((2, 2)), name="a")
            b = g.tensor_from(np.ones((2, 2)), name="b")
            out = g.add(a, b)
            assert out.name.endswith(".Add")
            assert out.name == f"{store.hash_name('a', 'b')}.Add"
            dot = g.to_dot()
        assert dot.startswith('digraph "root" {')
        assert f'"a" -> "{out.name}" [label="Add"];' in dot
        assert f'"b" -> "{out.name}" [label="Add"];' in dot

    def test_names_empty_without_visualize(self):
        with ComputeGraph(self.store) as g:
            out = g.tanh(g.create_tensor((2, 2), name="x"))
            assert out.name == ""
            assert g.to_dot() == 'digraph "root" {\n}'
