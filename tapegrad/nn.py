import logging
import math
from abc import abstractmethod
from typing import IO, Any, Dict, Optional

import numpy

from tapegrad.graph import ComputeGraph
from tapegrad.store import TensorStore
from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)


class Module:
    """
    Base class for layers built on a `ComputeGraph`.

    Parameters are created once in the module's `TensorStore`; every forward pass receives the
    graph to record into. Assigning a `Tensor` or a `Module` attribute registers it, so parameter
    enumeration and persistence follow declaration order.

    Attributes:
        _parameters (Dict[str, Tensor]): Trainable tensors of this module.
        _modules (Dict[str, Module]): Submodules.
        _states (Dict[str, Any]): Other attributes.
    """

    def __init__(self, *args, **kwargs) -> None:
        self._parameters: Dict[str, Tensor] = {}
        self._modules: Dict[str, "Module"] = {}
        self._states: Dict[str, Any] = {}
        self._is_training: Optional[bool] = None

    @abstractmethod
    def forward(self, graph: ComputeGraph, *args: Any, **kwargs: Any) -> Tensor:
        raise NotImplementedError

    def __call__(self, *args: Any, **kwargs: Any) -> Tensor:
        return self.forward(*args, **kwargs)

    def __setattr__(self, name: str, value: Any) -> None:
        """
        Register submodules and parameters automatically.

        Note:
            Private attributes (names starting with '_') are set normally.
        """
        if name.startswith("_"):
            super().__setattr__(name, value)
            return

        if isinstance(value, Module):
            self._modules[name] = value
        elif isinstance(value, Tensor):
            self._parameters[name] = value
        else:
            self._states[name] = value
            super().__setattr__(name, value)

    def __getattr__(self, name: str) -> Any:
        if name in self._parameters:
            return self._parameters[name]
        if name in self._modules:
            return self._modules[name]
        if name in self._states:
            return self._states[name]
        raise AttributeError(
            f"Module {self.__class__.__name__} has no attribute {name}"
        )

    @property
    def parameters(self) -> Dict[str, Tensor]:
        """
        Flattened dictionary of the parameters of this module and its submodules,
        in declaration order.

        .. code-block:: json

            {
                "weight": "Tensor",
                "submodule1.weight": "Tensor"
            }
        """
        out = dict(self._parameters)
        for sub_name, module in self._modules.items():
            for k, v in module.parameters.items():
                out[f"{sub_name}.{k}"] = v
        return out

    def zero_grad(self) -> None:
        for p in self.parameters.values():
            p.zero_grad()

    def num_parameters(self) -> int:
        return sum(p.size for p in self.parameters.values())

    def train(self) -> None:
        for module in self._modules.values():
            module.train()
        self._is_training = True

    def eval(self) -> None:
        for module in self._modules.values():
            module.eval()
        self._is_training = False

    def save(self, stream: IO[bytes]) -> None:
        """Write every parameter to ``stream`` in declaration order."""
        for name, p in self.parameters.items():
            logger.debug(f"Saving {name} {p.shape}")
            p.save(stream)

    def load(self, stream: IO[bytes]) -> None:
        """Read every parameter from ``stream`` in the order `save` wrote them."""
        for name, p in self.parameters.items():
            logger.debug(f"Loading {name} {p.shape}")
            p.load(stream)


class AffineLayer(Module):
    def __init__(
        self, store: TensorStore, name: str, input_size: int, output_size: int
    ) -> None:
        """
        Fully connected layer computing ``x @ weight + bias``.

        Args:
            store (TensorStore): Store the parameters are created in.
            name (str): Prefix of the parameter names.
            input_size (int): Number of input features.
            output_size (int): Number of output features.
        """
        super().__init__()
        self.weight = store.create(
            (input_size, output_size), name=f"{name}.weight", trainable=True
        )
        self.bias = store.create(
            (1, output_size), name=f"{name}.bias", trainable=True, init="zero"
        )

    def forward(self, graph: ComputeGraph, x: Tensor) -> Tensor:
        return graph.affine(x, self.weight, self.bias)


class LayerNormalization(Module):
    def __init__(self, store: TensorStore, name: str, dim: int) -> None:
        """
        Layer normalization with a learnable scale (initialized to 1) and shift (initialized to 0).
        """
        super().__init__()
        self.alpha = store.create(
            (1, dim), name=f"{name}.alpha", trainable=True, fill_value=1.0
        )
        self.beta = store.create(
            (1, dim), name=f"{name}.beta", trainable=True, fill_value=0.0
        )

    def forward(self, graph: ComputeGraph, x: Tensor) -> Tensor:
        return graph.layer_norm(x, self.alpha, self.beta)

    def add_norm(self, graph: ComputeGraph, a: Tensor, b: Tensor) -> Tensor:
        """Normalize ``a + b``."""
        return graph.add_layer_norm(a, b, self.alpha, self.beta)


class MultiHeadAttention(Module):
    """
    Pre-norm multi-head self attention with a residual connection.

    Paper: https://arxiv.org/abs/1706.03762

    Inputs are laid out as [batch * seq_len, hidden_dim] with all rows of one sequence adjacent.
    The attention body runs in a named subgraph; the residual sum is recorded on the caller's
    graph so that the returned tensor outlives the subgraph.
    """

    def __init__(
        self,
        store: TensorStore,
        name: str,
        num_heads: int,
        hidden_dim: int,
        dropout_prob: float = 0.0,
    ) -> None:
        super().__init__()
        if hidden_dim % num_heads != 0:
            raise ValueError(
                f"hidden_dim {hidden_dim} must be divisible by num_heads {num_heads}"
            )
        self.name = name
        self.num_heads = num_heads
        self.hidden_dim = hidden_dim
        self.head_dim = hidden_dim // num_heads
        self.dropout_prob = dropout_prob
        self.layer_norm = LayerNormalization(store, f"{name}.norm", hidden_dim)
        self.q_proj = AffineLayer(store, f"{name}.q", hidden_dim, hidden_dim)
        self.k_proj = AffineLayer(store, f"{name}.k", hidden_dim, hidden_dim)
        self.v_proj = AffineLayer(store, f"{name}.v", hidden_dim, hidden_dim)
        self.out_proj = AffineLayer(store, f"{name}.out", hidden_dim, hidden_dim)

    def _split_heads(self, g: ComputeGraph, t: Tensor, batch_size: int) -> Tensor:
        seq_len = t.rows // batch_size
        t = g.view(t, batch_size, seq_len, self.num_heads, self.head_dim)
        t = g.permute(t, 0, 2, 1, 3)
        return g.view(t, batch_size * self.num_heads, seq_len, self.head_dim)

    def forward(
        self,
        graph: ComputeGraph,
        x: Tensor,
        batch_size: int,
        key_mask: Optional[Any] = None,
    ) -> Tensor:
        """
        Args:
            graph (ComputeGraph): Graph to record into.
            x (Tensor): Input of shape (batch_size * seq_len, hidden_dim).
            batch_size (int): Number of sequences in ``x``.
            key_mask (Optional[Any]): Array of shape (batch_size, seq_len), non-zero at key
                positions that must not be attended to.

        Returns:
            Tensor: ``x`` plus the attention output, same shape as ``x``.
        """
        seq_len = x.rows // batch_size
        with graph.create_subgraph(self.name) as g:
            normed = self.layer_norm(g, x)
            q = self._split_heads(g, self.q_proj(g, normed), batch_size)
            k = self._split_heads(g, self.k_proj(g, normed), batch_size)
            v = self._split_heads(g, self.v_proj(g, normed), batch_size)

            scores = g.mul_batch(
                q, g.permute(k, 0, 2, 1), alpha=1.0 / math.sqrt(self.head_dim)
            )
            if key_mask is not None:
                host_mask = numpy.asarray(g.store.backend.to_host(key_mask))
                host_mask = numpy.repeat(host_mask, self.num_heads, axis=0)[:, None, :]
                mask = g.tensor_from(host_mask, requires_grad=False)
                scores = g.masked_fill(scores, mask)

            probs = g.softmax(scores, in_place=True)
            probs = g.dropout(probs, batch_size, self.dropout_prob)
            context = g.mul_batch(probs, v)

            context = g.view(
                context, batch_size, self.num_heads, seq_len, self.head_dim
            )
            context = g.permute(context, 0, 2, 1, 3)
            context = g.view(context, batch_size * seq_len, self.hidden_dim)
            out = self.out_proj(g, context)
            out = g.dropout(out, batch_size, self.dropout_prob)

            return graph.add(x, out)
