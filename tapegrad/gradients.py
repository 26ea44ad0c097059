"""
Gradient rules, one per `OpKind`.

Each rule reads the output gradient of its record and accumulates the gradient with respect to
every input into that input's gradient buffer. Rules never overwrite an input gradient, since
several records (or several views of the same tensor) may contribute to it.
"""

import logging

from tapegrad.tape import BackwardRecord, OpKind, register_gradient
from tapegrad.tensor import unbroadcast

logger = logging.getLogger(__name__)


def _accumulate(tensor, grad, enabled: bool = True) -> None:
    if tensor is not None and enabled:
        tensor.accumulate_grad(grad)


def _output_grad(record: BackwardRecord):
    # in-place outputs share their input's weight, so their gradient is detached first
    if record.params.get("in_place"):
        return record.output.detach_grad()
    return record.output.grad


########### Elementwise ###########
@register_gradient(OpKind.ADD)
def add_backward(record: BackwardRecord) -> None:
    a, b, *more = record.inputs
    g = record.output.grad
    _accumulate(a, g, record.params.get("a_grad", True))
    _accumulate(b, g, record.params.get("b_grad", True))
    for t in more:
        _accumulate(t, g)


@register_gradient(OpKind.ADD_MUL)
def add_mul_backward(record: BackwardRecord) -> None:
    r"""
    Backward of $y = a + b \cdot v$ for a scalar $v$.
    """
    a, b = record.inputs
    g = record.output.grad
    _accumulate(a, g, record.params.get("a_grad", True))
    _accumulate(b, g * record.params["v"], record.params.get("b_grad", True))


@register_gradient(OpKind.MUL_SCALAR)
def mul_scalar_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    w.accumulate_grad(record.output.grad * record.params["v"])


@register_gradient(OpKind.ELT_MUL)
def elt_mul_backward(record: BackwardRecord) -> None:
    r"""
    $$
    \frac{\partial L}{\partial a} = b \odot g, \quad \frac{\partial L}{\partial b} = a \odot g
    $$
    """
    a, b = record.inputs
    g = record.output.grad
    a.accumulate_grad(b.weight * g)
    b.accumulate_grad(a.weight * g)


@register_gradient(OpKind.ELT_MUL_MUL_ADD)
def elt_mul_mul_add_backward(record: BackwardRecord) -> None:
    a, b, c, d = record.inputs
    g = record.output.grad
    a.accumulate_grad(b.weight * g)
    b.accumulate_grad(a.weight * g)
    c.accumulate_grad(d.weight * g)
    d.accumulate_grad(c.weight * g)


########### Matrix products ###########
@register_gradient(OpKind.AFFINE)
def affine_backward(record: BackwardRecord) -> None:
    r"""
    Backward of $y = xW + b$ with the bias broadcast over rows.

    $$
    \frac{\partial L}{\partial x} = g W^T, \quad
    \frac{\partial L}{\partial W} = x^T g, \quad
    \frac{\partial L}{\partial b} = \sum_{\text{rows}} g
    $$
    """
    x, w, bias = record.inputs
    g = record.output.grad
    x.accumulate_grad(g @ w.weight.T)
    w.accumulate_grad(x.weight.T @ g)
    bias.accumulate_grad(unbroadcast(g, bias.shape))


@register_gradient(OpKind.MATMUL)
def matmul_backward(record: BackwardRecord) -> None:
    a, b = record.inputs
    g = record.output.grad
    a.accumulate_grad(g @ b.weight.T)
    b.accumulate_grad(a.weight.T @ g)


@register_gradient(OpKind.MUL_ADD)
def mul_add_backward(record: BackwardRecord) -> None:
    r"""
    Backward of $y = a b + c$.
    """
    a, b, c = record.inputs
    g = record.output.grad
    a.accumulate_grad(g @ b.weight.T)
    b.accumulate_grad(a.weight.T @ g)
    c.accumulate_grad(g)


@register_gradient(OpKind.MUL_BATCH)
def mul_batch_backward(record: BackwardRecord) -> None:
    r"""
    Backward of $y_i = \alpha \, a_i b_i$ for every batch slice $i$.

    The scale applies to both operand gradients:
    $$
    \frac{\partial L}{\partial a_i} = \alpha \, g_i b_i^T, \quad
    \frac{\partial L}{\partial b_i} = \alpha \, a_i^T g_i
    $$
    """
    a, b = record.inputs
    xp = record.output.xp
    g = record.output.grad
    alpha = record.params.get("alpha", 1.0)
    a.accumulate_grad(alpha * xp.matmul(g, xp.swapaxes(b.weight, -1, -2)))
    b.accumulate_grad(alpha * xp.matmul(xp.swapaxes(a.weight, -1, -2), g))


########### Activations ###########
@register_gradient(OpKind.SIGMOID)
def sigmoid_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    y = record.output.weight
    w.accumulate_grad(record.output.grad * y * (1.0 - y))


@register_gradient(OpKind.TANH)
def tanh_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    y = record.output.weight
    w.accumulate_grad(record.output.grad * (1.0 - y * y))


@register_gradient(OpKind.RELU)
def relu_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    y = record.output.weight
    w.accumulate_grad(record.output.grad * (y > 0))


@register_gradient(OpKind.ADD_TANH)
def add_tanh_backward(record: BackwardRecord) -> None:
    y = record.output.weight
    dx = record.output.grad * (1.0 - y * y)
    for t in record.inputs:
        t.accumulate_grad(dx)


@register_gradient(OpKind.SOFTMAX)
def softmax_backward(record: BackwardRecord) -> None:
    r"""
    Softmax Jacobian contraction over the last axis.

    $$
    \frac{\partial L}{\partial x} = y \odot \left(g - \sum_j g_j y_j\right)
    $$
    """
    (w,) = record.inputs
    y = record.output.weight
    g = _output_grad(record)
    w.accumulate_grad(y * (g - (g * y).sum(axis=-1, keepdims=True)))


########### Normalization ###########
def _layer_norm_input_grad(x, g, alpha, mean, rstd):
    r"""
    $$
    \hat{x} = (x - \mu) \cdot r, \quad \hat{g} = g \odot \alpha, \quad
    \frac{\partial L}{\partial x} = r \left(\hat{g} - \overline{\hat{g}}
        - \hat{x} \cdot \overline{\hat{g} \odot \hat{x}}\right)
    $$
    where $r = 1 / \sqrt{\sigma^2 + \epsilon}$ and the bars are row means.
    """
    x_hat = (x - mean) * rstd
    g_hat = g * alpha
    dx = rstd * (
        g_hat
        - g_hat.mean(axis=-1, keepdims=True)
        - x_hat * (g_hat * x_hat).mean(axis=-1, keepdims=True)
    )
    return dx, x_hat


@register_gradient(OpKind.LAYER_NORM)
def layer_norm_backward(record: BackwardRecord) -> None:
    src, alpha, beta = record.inputs
    mean, rstd = record.saved
    g = record.output.grad
    dx, x_hat = _layer_norm_input_grad(src.weight, g, alpha.weight, mean, rstd)
    src.accumulate_grad(dx)
    alpha.accumulate_grad(unbroadcast(g * x_hat, alpha.shape))
    beta.accumulate_grad(unbroadcast(g, beta.shape))


@register_gradient(OpKind.ADD_LAYER_NORM)
def add_layer_norm_backward(record: BackwardRecord) -> None:
    a, b, alpha, beta = record.inputs
    mean, rstd = record.saved
    g = record.output.grad
    # the sum is recomputed here rather than kept alive since the forward pass
    dx, x_hat = _layer_norm_input_grad(
        a.weight + b.weight, g, alpha.weight, mean, rstd
    )
    a.accumulate_grad(dx)
    b.accumulate_grad(dx)
    alpha.accumulate_grad(unbroadcast(g * x_hat, alpha.shape))
    beta.accumulate_grad(unbroadcast(g, beta.shape))


@register_gradient(OpKind.DROPOUT)
def dropout_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    (mask,) = record.saved
    w.accumulate_grad(_output_grad(record) * mask)


########### Movement ###########
@register_gradient(OpKind.CONCAT)
def concat_backward(record: BackwardRecord) -> None:
    g = record.output.grad
    axis = record.params["axis"]
    offset = 0
    for tensor in record.inputs:
        length = tensor.shape[axis]
        index = [slice(None)] * g.ndim
        index[axis] = slice(offset, offset + length)
        tensor.accumulate_grad(g[tuple(index)])
        offset += length


@register_gradient(OpKind.PERMUTE)
def permute_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    dims = record.params["dims"]
    inverse = [0] * len(dims)
    for i, d in enumerate(dims):
        inverse[d] = i
    w.accumulate_grad(record.output.grad.transpose(inverse))


@register_gradient(OpKind.RESHAPE)
def reshape_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    w.accumulate_grad(record.output.grad.reshape(w.shape))


@register_gradient(OpKind.TRANSPOSE_BATCH)
def transpose_batch_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    batch_size = record.params["batch_size"]
    seq_len = w.rows // batch_size
    g = record.output.grad.reshape(batch_size, seq_len, w.columns)
    w.accumulate_grad(g.transpose(1, 0, 2).reshape(w.shape))


@register_gradient(OpKind.EXPAND)
def expand_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    w.accumulate_grad(unbroadcast(record.output.grad, w.shape))


@register_gradient(OpKind.REPEAT_ROWS)
def repeat_rows_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    n = record.params["n"]
    w.accumulate_grad(record.output.grad.reshape((n,) + w.shape).sum(axis=0))


@register_gradient(OpKind.MASKED_FILL)
def masked_fill_backward(record: BackwardRecord) -> None:
    (w,) = record.inputs
    (keep,) = record.saved
    w.accumulate_grad(record.output.grad * keep)


########### Losses ###########
@register_gradient(OpKind.MSE_LOSS)
def mse_loss_backward(record: BackwardRecord) -> None:
    r"""
    $$
    L = \frac{1}{N} \sum (p - t)^2, \quad \frac{\partial L}{\partial p} = \frac{2}{N} (p - t)
    $$
    """
    pred, target = record.inputs
    diff = pred.weight - target.weight
    scale = record.output.grad.sum() * (2.0 / diff.size)
    pred.accumulate_grad(diff * scale)
    target.accumulate_grad(-diff * scale)


@register_gradient(OpKind.CROSS_ENTROPY)
def cross_entropy_backward(record: BackwardRecord) -> None:
    (logits,) = record.inputs
    probs, targets, valid = record.saved
    xp = record.output.xp
    count = record.params["count"]
    grad = probs.copy()
    grad[xp.arange(grad.shape[0]), targets] -= 1.0
    grad *= valid[:, None]
    grad *= record.output.grad.sum() / count
    logits.accumulate_grad(grad)
