"""
Initialization methods for weights of the neural network
"""

from typing import Callable, Dict, Sequence, Tuple

from tapegrad.tensor import Tensor


def xavier_uniform(tensor: Tensor) -> Tensor:
    r"""
    Applies in-place Xavier Uniform Initialization to the given tensor.

    This method initializes the weights of a neural network using the Xavier (Glorot)
    uniform initialization technique, as described in this paper:
    https://proceedings.mlr.press/v9/glorot10a/glorot10a.pdf

    The limits for the uniform distribution are computed using the fan-in and fan-out
    of the given tensor:
    $$
    \text{limit} = \sqrt{\frac{6}{\text{fan\_in} + \text{fan\_out}}}
    $$

    Args:
        tensor (Tensor): The tensor to be initialized.

    Returns:
        Tensor: The same tensor after in-place initialization.

    Examples:
        >>> from tapegrad.store import TensorStore
        >>> store = TensorStore()
        >>> w = store.create((3, 4), init="zero")
        >>> w = xavier_uniform(w)
    """
    fan_in, fan_out = compute_fans(tensor.shape)
    limit = (6.0 / (fan_in + fan_out)) ** 0.5
    tensor.weight[...] = tensor.backend.uniform(-limit, limit, tensor.shape)
    return tensor


def xavier_normal(tensor: Tensor) -> Tensor:
    r"""
    Applies in-place Xavier Normal Initialization.

    $$
    \sigma = \sqrt{\frac{2}{\text{fan\_in} + \text{fan\_out}}}
    $$
    """
    fan_in, fan_out = compute_fans(tensor.shape)
    std = (2.0 / (fan_in + fan_out)) ** 0.5
    tensor.weight[...] = tensor.backend.normal(0.0, std, tensor.shape)
    return tensor


def zeros(tensor: Tensor) -> Tensor:
    tensor.weight.fill(0)
    return tensor


def constant(tensor: Tensor, value: float) -> Tensor:
    tensor.weight.fill(value)
    return tensor


def compute_fans(shape: Sequence[int]) -> Tuple[int, int]:
    r"""
    Computes the fan-in and fan-out for a weight of the given shape.

    The weight is assumed to have the shape ``(input_size, output_size, additional_dimensions...)``
    and any trailing dimensions scale both counts:
    $$
    \begin{align}
    \text{fan\_in} &= \text{shape}[0] \times \prod_{i=2}^{n} \text{shape}[i] \\
    \text{fan\_out} &= \text{shape}[-1] \times \prod_{i=2}^{n} \text{shape}[i]
    \end{align}
    $$

    Args:
        shape (Sequence[int]): Shape with at least 2 dimensions.

    Returns:
        Tuple[int, int]: (fan_in, fan_out)

    Raises:
        ValueError: If the shape has fewer than 2 dimensions.

    Examples:
        >>> compute_fans((5, 10))
        (5, 10)
        >>> compute_fans((16, 3, 3, 3))
        (144, 27)
    """
    if len(shape) < 2:
        raise ValueError("Tensor must have at least 2 dimensions")

    receptive_field_size = 1
    for s in shape[2:]:
        receptive_field_size *= s

    return shape[0] * receptive_field_size, shape[-1] * receptive_field_size


INITIALIZERS: Dict[str, Callable[[Tensor], Tensor]] = {
    "uniform": xavier_uniform,
    "normal": xavier_normal,
    "zero": zeros,
}
