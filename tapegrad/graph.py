import logging
import math
import weakref
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy

from tapegrad import gradients  # noqa: F401  registers the gradient rules
from tapegrad.errors import GraphError, NullOperandError, ShapeError
from tapegrad.store import TensorStore
from tapegrad.tape import BackwardRecord, OpKind, Tape
from tapegrad.tensor import Tensor, ViewSpec, infer_shape

logger = logging.getLogger(__name__)


class ComputeGraph:
    """
    Records differentiable operations on tensors of a `TensorStore`.

    Every operation computes its forward result immediately and, when backprop is enabled,
    appends a `BackwardRecord` to the tape. `backward()` replays the tape in reverse recording
    order, accumulating gradients into the operands.

    Lifetime: tensors produced by a graph are bound to it. A record that reads an operand's weight
    during backward "holds" that operand: the operand is unbound, so disposing a subgraph does not
    release its weight, and its storage is protected from reuse until the record has run. After a
    record runs its output is disposed.

    Examples:
        >>> store = TensorStore()
        >>> w = store.create((3, 2), name="w", trainable=True)
        >>> with ComputeGraph(store) as graph:
        ...     x = graph.tensor_from(numpy.ones((4, 3)))
        ...     loss = graph.mse_loss(graph.mul(x, w), graph.create_tensor((4, 2)))
        ...     graph.backward(loss)
        >>> w.grad.shape
        (3, 2)
    """

    def __init__(
        self,
        store: Optional[TensorStore] = None,
        needs_backprop: Optional[bool] = None,
        visualize: Optional[bool] = None,
        name: str = "root",
        parent: Optional["ComputeGraph"] = None,
    ) -> None:
        """
        Args:
            store (Optional[TensorStore]): Allocator shared by the graph and its subgraphs.
            needs_backprop (Optional[bool]): Record backward entries. Defaults to the store config.
            visualize (Optional[bool]): Hash tensor names and record edges for `to_dot()`.
                Defaults to the store config.
            name (str): Name of this graph.
            parent (Optional[ComputeGraph]): Set for subgraphs, see `create_subgraph`.
        """
        self.store = store or TensorStore()
        config = self.store.config
        self.needs_backprop = (
            config.needs_backprop if needs_backprop is None else needs_backprop
        )
        self.visualize = config.visualize if visualize is None else visualize
        self.name = name
        self.parent = parent
        if parent is None:
            self.root = self
            self.tape = Tape(config.tape_capacity)
            self._created: "weakref.WeakSet[Tensor]" = weakref.WeakSet()
            self._edges: List[Tuple[str, str, str]] = []
        else:
            self.root = parent.root
            self.tape = parent.tape
        self._bound: "weakref.WeakSet[Tensor]" = weakref.WeakSet()
        self._disposed = False

    @property
    def xp(self) -> Any:
        return self.store.xp

    @property
    def is_subgraph(self) -> bool:
        return self.parent is not None

    def __enter__(self) -> "ComputeGraph":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.dispose()

    ########### Lifetime ###########
    def create_subgraph(self, name: str) -> "ComputeGraph":
        """
        Create a named scope sharing this graph's tape and store with its own bound-tensor set.
        """
        return ComputeGraph(
            self.store,
            needs_backprop=self.needs_backprop,
            visualize=self.visualize,
            name=f"{self.name}.{name}",
            parent=self,
        )

    def bind(self, tensor: Tensor) -> None:
        tensor._binder = self
        self._bound.add(tensor)

    def unbind(self, tensor: Tensor) -> None:
        """Stop tracking ``tensor``, so disposing this graph leaves its weight alone."""
        self._bound.discard(tensor)
        if tensor._binder is self:
            tensor._binder = None

    @property
    def bound_tensors(self) -> List[Tensor]:
        return list(self._bound)

    def _hold(self, tensor: Tensor) -> None:
        owner = tensor.storage_owner
        for t in (tensor, owner):
            if t._binder is not None:
                t._binder.unbind(t)
        owner._holds += 1

    def dispose(self) -> None:
        """
        Dispose this graph.

        A subgraph releases the weights of the tensors still bound to it. The root graph clears
        the shared tape, disposes every tensor created by it or its subgraphs, and empties the
        store's buffer pool.
        """
        if self._disposed:
            return
        self._disposed = True
        if self.is_subgraph:
            bound = list(self._bound)
            for tensor in bound:
                self.store.release_weight(tensor)
            self._bound.clear()
            logger.debug(f"Disposed subgraph {self.name}, released {len(bound)} weights")
            return

        pending = self.tape.discard()
        created = list(self._created)
        for tensor in created:
            tensor.dispose()
        self._created.clear()
        self._bound.clear()
        self.store.reset()
        logger.info(
            f"Disposed graph {self.name}: {len(created)} tensors, "
            f"{pending} unreplayed tape entries"
        )

    ########### Backward ###########
    def backward(self, loss: Optional[Tensor] = None) -> None:
        """
        Replay the tape from the last recorded entry to the first, then clear it.

        Args:
            loss (Optional[Tensor]): When given, its gradient is seeded with ones first.
        """
        if loss is not None:
            loss.accumulate_grad(self.xp.ones(loss.shape, dtype=numpy.float32))
        self.tape.backward()

    def run_top_backward(self) -> bool:
        """Run and pop only the most recent tape entry."""
        return self.tape.run_top_only()

    def get_parameters(self) -> List[Tensor]:
        """Every trainable tensor of the store, in creation order."""
        return self.store.parameters()

    ########### Helpers ###########
    def _check_operands(self, op: str, **operands: Any) -> None:
        if self._disposed:
            raise GraphError(f"{op}: graph {self.name} was disposed")
        for name, tensor in operands.items():
            if tensor is None:
                raise NullOperandError(f"{op}: operand {name!r} is missing")

    @staticmethod
    def _check_same_shape(op: str, a: Tensor, b: Tensor) -> None:
        if a.shape != b.shape:
            raise ShapeError(f"{op}: shapes {a.shape} and {b.shape} do not match")

    def _name(self, op: str, *inputs: Tensor) -> str:
        hashed = self.store.hash_name(
            *(t.name for t in inputs), enabled=self.visualize
        )
        return f"{hashed}.{op}" if hashed else ""

    def _register(self, output: Tensor, op: str, inputs: Sequence[Tensor]) -> Tensor:
        self.bind(output)
        self.root._created.add(output)
        if self.visualize:
            for tensor in inputs:
                self.root._edges.append((tensor.name, output.name, op))
        return output

    def _output(
        self, arr: Any, op: str, inputs: Sequence[Tensor], requires_grad: bool = True
    ) -> Tensor:
        output = self.store.wrap(
            arr,
            name=self._name(op, *inputs),
            requires_grad=requires_grad and any(t.requires_grad for t in inputs),
        )
        return self._register(output, op, inputs)

    def _record(
        self,
        kind: OpKind,
        inputs: Sequence[Optional[Tensor]],
        output: Tensor,
        params: Optional[Dict[str, Any]] = None,
        saved: Sequence[Any] = (),
        held: Sequence[Tensor] = (),
    ) -> None:
        if not self.needs_backprop or not output.requires_grad:
            return
        for tensor in held:
            self._hold(tensor)
        self.tape.record(
            BackwardRecord(
                kind=kind,
                inputs=tuple(inputs),
                output=output,
                params=dict(params or {}),
                saved=tuple(saved),
                held=tuple(held),
            )
        )

    ########### Tensors ###########
    def create_tensor(
        self,
        shape: Sequence[int],
        name: str = "",
        init: str = "zero",
        fill_value: Optional[float] = None,
        requires_grad: bool = True,
    ) -> Tensor:
        """Create a non-trainable tensor bound to this graph."""
        tensor = self.store.create(
            shape,
            name=name,
            init=init,
            fill_value=fill_value,
            requires_grad=requires_grad,
        )
        return self._register(tensor, "Create", ())

    def tensor_from(self, data: Any, name: str = "", requires_grad: bool = True) -> Tensor:
        """Copy host or device data into a new tensor bound to this graph."""
        tensor = self.store.from_array(data, name=name, requires_grad=requires_grad)
        return self._register(tensor, "Create", ())

    def build_position_matrix(self, rows: int, columns: int) -> Tensor:
        r"""
        Sinusoidal position embeddings as a constant tensor.

        $$
        PE_{(pos, 2i)} = \sin\left(\frac{pos}{10000^{2i/d}}\right), \quad
        PE_{(pos, 2i+1)} = \cos\left(\frac{pos}{10000^{2i/d}}\right)
        $$
        """
        position = numpy.arange(rows, dtype=numpy.float64)[:, None]
        div_term = numpy.exp(
            numpy.arange(0, columns, 2, dtype=numpy.float64)
            * -(math.log(10000.0) / columns)
        )
        pe = numpy.zeros((rows, columns), dtype=numpy.float64)
        pe[:, 0::2] = numpy.sin(position * div_term)
        pe[:, 1::2] = numpy.cos(position * div_term[: columns // 2])
        return self.tensor_from(pe, name="PositionMatrix", requires_grad=False)

    ########### Elementwise ###########
    def add(
        self,
        a: Tensor,
        b: Tensor,
        *more: Tensor,
        a_grad: bool = True,
        b_grad: bool = True,
    ) -> Tensor:
        """
        Elementwise sum of two or more tensors of the same shape.

        Args:
            a (Tensor): First operand.
            b (Tensor): Second operand.
            *more (Tensor): Further operands, summed in order.
            a_grad (bool): Whether ``a`` receives a gradient.
            b_grad (bool): Whether ``b`` receives a gradient.

        Returns:
            Tensor: The sum.
        """
        operands = (a, b) + more
        self._check_operands(
            "Add", **{f"w{i + 1}": t for i, t in enumerate(operands)}
        )
        for other in operands[1:]:
            self._check_same_shape("Add", a, other)
        res = self.xp.add(a.weight, b.weight, out=self.store.empty(a.shape))
        for t in more:
            res += t.weight
        out = self._output(res, "Add", operands)
        self._record(OpKind.ADD, operands, out, {"a_grad": a_grad, "b_grad": b_grad})
        return out

    def add_mul(
        self,
        a: Tensor,
        b: Tensor,
        v: float,
        a_grad: bool = True,
        b_grad: bool = True,
    ) -> Tensor:
        """Computes ``a + b * v``."""
        self._check_operands("AddMul", a=a, b=b)
        self._check_same_shape("AddMul", a, b)
        res = self.xp.multiply(b.weight, v, out=self.store.empty(b.shape))
        res += a.weight
        out = self._output(res, "AddMul", (a, b))
        self._record(
            OpKind.ADD_MUL, (a, b), out, {"v": v, "a_grad": a_grad, "b_grad": b_grad}
        )
        return out

    def mul_scalar(self, w: Tensor, v: float) -> Tensor:
        self._check_operands("MulScalar", w=w)
        res = self.xp.multiply(w.weight, v, out=self.store.empty(w.shape))
        out = self._output(res, "MulScalar", (w,))
        self._record(OpKind.MUL_SCALAR, (w,), out, {"v": v})
        return out

    def elt_mul(self, a: Tensor, b: Tensor) -> Tensor:
        """
        Elementwise product. Both operands are held until the backward record runs.
        """
        self._check_operands("EltMul", a=a, b=b)
        self._check_same_shape("EltMul", a, b)
        res = self.xp.multiply(a.weight, b.weight, out=self.store.empty(a.shape))
        out = self._output(res, "EltMul", (a, b))
        self._record(OpKind.ELT_MUL, (a, b), out, held=(a, b))
        return out

    def elt_mul_mul_add(self, a: Tensor, b: Tensor, c: Tensor, d: Tensor) -> Tensor:
        """Computes ``a * b + c * d`` elementwise."""
        self._check_operands("EltMulMulAdd", a=a, b=b, c=c, d=d)
        for other in (b, c, d):
            self._check_same_shape("EltMulMulAdd", a, other)
        res = self.xp.multiply(a.weight, b.weight, out=self.store.empty(a.shape))
        res += c.weight * d.weight
        out = self._output(res, "EltMulMulAdd", (a, b, c, d))
        self._record(OpKind.ELT_MUL_MUL_ADD, (a, b, c, d), out, held=(a, b, c, d))
        return out

    ########### Matrix products ###########
    def affine(self, x: Tensor, w: Tensor, bias: Tensor) -> Tensor:
        """
        Computes ``x @ w + bias`` with the bias broadcast across rows.

        Args:
            x (Tensor): Input of shape (rows, in_features).
            w (Tensor): Weight of shape (in_features, out_features).
            bias (Tensor): Bias with ``out_features`` elements, shape (1, out) or (out,).

        Returns:
            Tensor: Output of shape (rows, out_features).

        Raises:
            NullOperandError: If any operand is missing.
            ShapeError: If the shapes are incompatible.
        """
        self._check_operands("Affine", x=x, w=w, bias=bias)
        if x.ndim != 2 or w.ndim != 2 or x.columns != w.rows:
            raise ShapeError(f"Affine: cannot multiply {x.shape} by {w.shape}")
        if bias.size != w.columns:
            raise ShapeError(
                f"Affine: bias of shape {bias.shape} does not match {w.columns} outputs"
            )
        res = self.xp.matmul(
            x.weight, w.weight, out=self.store.empty((x.rows, w.columns))
        )
        res += bias.weight.reshape(1, -1)
        out = self._output(res, "Affine", (x, w, bias))
        self._record(OpKind.AFFINE, (x, w, bias), out, held=(x, w))
        return out

    def mul(self, a: Tensor, b: Tensor) -> Tensor:
        """2-D matrix product."""
        self._check_operands("Mul", a=a, b=b)
        if a.ndim != 2 or b.ndim != 2 or a.columns != b.rows:
            raise ShapeError(f"Mul: cannot multiply {a.shape} by {b.shape}")
        res = self.xp.matmul(a.weight, b.weight, out=self.store.empty((a.rows, b.columns)))
        out = self._output(res, "Mul", (a, b))
        self._record(OpKind.MATMUL, (a, b), out, held=(a, b))
        return out

    def mul_add(self, a: Tensor, b: Tensor, c: Tensor) -> Tensor:
        """Computes the 2-D matrix product ``a @ b`` plus ``c`` of the result's shape."""
        self._check_operands("MulAdd", a=a, b=b, c=c)
        if a.ndim != 2 or b.ndim != 2 or a.columns != b.rows:
            raise ShapeError(f"MulAdd: cannot multiply {a.shape} by {b.shape}")
        if c.shape != (a.rows, b.columns):
            raise ShapeError(
                f"MulAdd: addend {c.shape} does not match product {(a.rows, b.columns)}"
            )
        res = self.xp.matmul(a.weight, b.weight, out=self.store.empty((a.rows, b.columns)))
        res += c.weight
        out = self._output(res, "MulAdd", (a, b, c))
        self._record(OpKind.MUL_ADD, (a, b, c), out, held=(a, b))
        return out

    def mul_batch(self, a: Tensor, b: Tensor, alpha: float = 1.0) -> Tensor:
        r"""
        Independent matrix products for every slice of two [batch, rows, cols] tensors.

        $$
        y_i = \alpha \, a_i b_i
        $$

        Raises:
            ShapeError: If the operands are not 3-D or their batch or inner sizes differ.
        """
        self._check_operands("MulBatch", a=a, b=b)
        if (
            a.ndim != 3
            or b.ndim != 3
            or a.shape[0] != b.shape[0]
            or a.shape[2] != b.shape[1]
        ):
            raise ShapeError(f"MulBatch: cannot multiply {a.shape} by {b.shape}")
        res = self.xp.matmul(
            a.weight,
            b.weight,
            out=self.store.empty((a.shape[0], a.shape[1], b.shape[2])),
        )
        if alpha != 1.0:
            res *= alpha
        out = self._output(res, "MulBatch", (a, b))
        self._record(OpKind.MUL_BATCH, (a, b), out, {"alpha": alpha}, held=(a, b))
        return out

    ########### Activations ###########
    def sigmoid(self, w: Tensor) -> Tensor:
        self._check_operands("Sigmoid", w=w)
        # exp(-log(1 + exp(-x))) avoids overflow for large negative inputs
        res = self.xp.exp(-self.xp.logaddexp(0, -w.weight)).astype(numpy.float32)
        out = self._output(res, "Sigmoid", (w,))
        self._record(OpKind.SIGMOID, (w,), out, held=(out,))
        return out

    def tanh(self, w: Tensor) -> Tensor:
        self._check_operands("Tanh", w=w)
        res = self.xp.tanh(w.weight, out=self.store.empty(w.shape))
        out = self._output(res, "Tanh", (w,))
        self._record(OpKind.TANH, (w,), out, held=(out,))
        return out

    def relu(self, w: Tensor) -> Tensor:
        self._check_operands("Relu", w=w)
        res = self.xp.maximum(w.weight, 0, out=self.store.empty(w.shape))
        out = self._output(res, "Relu", (w,))
        self._record(OpKind.RELU, (w,), out, held=(out,))
        return out

    def add_tanh(self, a: Tensor, b: Tensor, *more: Tensor) -> Tensor:
        """Computes ``tanh(a + b + ...)`` without recording the intermediate sum."""
        operands = (a, b) + more
        self._check_operands(
            "AddTanh", **{f"w{i + 1}": t for i, t in enumerate(operands)}
        )
        for other in operands[1:]:
            self._check_same_shape("AddTanh", a, other)
        res = self.xp.add(a.weight, b.weight, out=self.store.empty(a.shape))
        for t in more:
            res += t.weight
        self.xp.tanh(res, out=res)
        out = self._output(res, "AddTanh", operands)
        self._record(OpKind.ADD_TANH, operands, out, held=(out,))
        return out

    def softmax(
        self, w: Tensor, in_place: bool = False, run_gradients: bool = True
    ) -> Tensor:
        r"""
        Row softmax over the last axis, stabilized by subtracting the row maximum.

        Args:
            w (Tensor): Scores.
            in_place (bool): Write the probabilities into ``w``'s storage. ``w`` must be
                exclusively owned: no live views or aliases and no pending backward holds.
            run_gradients (bool): When False nothing is recorded and no gradient reaches ``w``.

        Returns:
            Tensor: The probabilities.

        Raises:
            AliasingError: If ``in_place`` is set and ``w`` is not exclusively owned.
        """
        self._check_operands("Softmax", w=w)
        name = self._name("Softmax", w)
        if in_place:
            out = self.store.alias_in_place(w, name=name)
            out.requires_grad = out.requires_grad and run_gradients
            self.store.backend.softmax(out.weight, out=out.weight)
            self._register(out, "Softmax", (w,))
        else:
            out = self._output(
                self.store.backend.softmax(w.weight),
                "Softmax",
                (w,),
                requires_grad=run_gradients,
            )
        self._record(OpKind.SOFTMAX, (w,), out, {"in_place": in_place}, held=(out,))
        return out

    ########### Normalization ###########
    def _normalize(self, x: Any, alpha: Tensor, beta: Tensor, eps: float):
        mean = x.mean(axis=-1, keepdims=True)
        var = ((x - mean) ** 2).mean(axis=-1, keepdims=True)
        rstd = 1.0 / self.xp.sqrt(var + eps)
        res = (x - mean) * rstd
        res *= alpha.weight.reshape(1, -1)
        res += beta.weight.reshape(1, -1)
        return res, mean, rstd

    def _check_norm_params(self, op: str, src: Tensor, alpha: Tensor, beta: Tensor) -> None:
        if alpha.size != src.columns or beta.size != src.columns:
            raise ShapeError(
                f"{op}: scale {alpha.shape} and shift {beta.shape} must have "
                f"{src.columns} elements"
            )

    def layer_norm(
        self,
        src: Tensor,
        alpha: Tensor,
        beta: Tensor,
        eps: Optional[float] = None,
    ) -> Tensor:
        r"""
        Normalize every row to zero mean and unit variance, then scale and shift per column.

        $$
        y = \frac{x - \mu}{\sqrt{\sigma^2 + \epsilon}} \odot \alpha + \beta
        $$

        Args:
            src (Tensor): Input of shape (rows, columns).
            alpha (Tensor): Per-column scale with ``columns`` elements.
            beta (Tensor): Per-column shift with ``columns`` elements.
            eps (Optional[float]): Defaults to the store's ``layer_norm_eps``.

        Returns:
            Tensor: The normalized tensor.
        """
        self._check_operands("LayerNorm", src=src, alpha=alpha, beta=beta)
        self._check_norm_params("LayerNorm", src, alpha, beta)
        eps = self.store.config.layer_norm_eps if eps is None else eps
        res, mean, rstd = self._normalize(src.weight, alpha, beta, eps)
        out = self._output(res, "LayerNorm", (src, alpha, beta))
        self._record(
            OpKind.LAYER_NORM,
            (src, alpha, beta),
            out,
            saved=(mean, rstd),
            held=(src, alpha),
        )
        return out

    def add_layer_norm(
        self,
        a: Tensor,
        b: Tensor,
        alpha: Tensor,
        beta: Tensor,
        eps: Optional[float] = None,
    ) -> Tensor:
        """
        Layer normalization of ``a + b``. The sum is never stored as a tensor of the graph.
        """
        self._check_operands("AddLayerNorm", a=a, b=b, alpha=alpha, beta=beta)
        self._check_same_shape("AddLayerNorm", a, b)
        self._check_norm_params("AddLayerNorm", a, alpha, beta)
        eps = self.store.config.layer_norm_eps if eps is None else eps
        res, mean, rstd = self._normalize(a.weight + b.weight, alpha, beta, eps)
        out = self._output(res, "AddLayerNorm", (a, b, alpha, beta))
        self._record(
            OpKind.ADD_LAYER_NORM,
            (a, b, alpha, beta),
            out,
            saved=(mean, rstd),
            held=(a, b, alpha),
        )
        return out

    def dropout(
        self, w: Tensor, batch_size: int, p: float, in_place: bool = False
    ) -> Tensor:
        """
        Inverted dropout.

        The mask is sampled for ``rows / batch_size`` rows, repeated ``batch_size`` times along
        the rows and scaled by ``1 / (1 - p)``, so evaluation needs no rescaling. Returns ``w``
        itself when ``p`` is 0 or the graph does not record backward entries.

        Args:
            w (Tensor): Input; leading dims are flattened into rows.
            batch_size (int): Number of row blocks sharing one mask.
            p (float): Drop probability in [0, 1].
            in_place (bool): Multiply into ``w``'s storage. ``w`` must be exclusively owned.

        Returns:
            Tensor: The masked tensor.
        """
        self._check_operands("Dropout", w=w)
        if not 0.0 <= p <= 1.0:
            raise ValueError(f"Dropout probability must be in [0, 1], got {p}")
        if p == 0.0 or not self.needs_backprop:
            return w
        rows = w.size // w.columns
        if batch_size <= 0 or rows % batch_size != 0:
            raise ShapeError(
                f"Dropout: {rows} rows cannot be split into batches of {batch_size}"
            )
        if p == 1.0:
            mask = self.xp.zeros(w.shape, dtype=numpy.float32)
        else:
            block = self.store.backend.bernoulli((rows // batch_size, w.columns), 1.0 - p)
            block *= 1.0 / (1.0 - p)
            mask = self.xp.tile(block, (batch_size, 1)).reshape(w.shape)

        name = self._name("Dropout", w)
        if in_place:
            out = self.store.alias_in_place(w, name=name)
            self.xp.multiply(out.weight, mask, out=out.weight)
            self._register(out, "Dropout", (w,))
        else:
            res = self.xp.multiply(w.weight, mask, out=self.store.empty(w.shape))
            out = self._output(res, "Dropout", (w,))
        self._record(OpKind.DROPOUT, (w,), out, {"in_place": in_place}, saved=(mask,))
        return out

    ########### Concatenation and splitting ###########
    def _concat(self, op: str, tensors: Sequence[Tensor], axis: int) -> Tensor:
        if len(tensors) == 0:
            raise NullOperandError(f"{op}: no tensors given")
        self._check_operands(op, **{f"tensors[{i}]": t for i, t in enumerate(tensors)})
        if len(tensors) == 1:
            return tensors[0]
        first = tensors[0]
        for t in tensors[1:]:
            other_dims = [s for i, s in enumerate(t.shape) if i != axis % t.ndim]
            first_dims = [s for i, s in enumerate(first.shape) if i != axis % first.ndim]
            if t.ndim != first.ndim or other_dims != first_dims:
                raise ShapeError(
                    f"{op}: cannot concatenate {first.shape} with {t.shape} on axis {axis}"
                )
        res = self.xp.concatenate([t.weight for t in tensors], axis=axis)
        out = self._output(res, op, tensors)
        self._record(OpKind.CONCAT, tensors, out, {"axis": axis})
        return out

    def concat_rows(self, tensors: Sequence[Tensor]) -> Tensor:
        return self._concat("ConcatRows", list(tensors), axis=0)

    def concat_columns(self, *tensors: Tensor) -> Tensor:
        return self._concat("ConcatColumns", list(tensors), axis=-1)

    def _split(self, op: str, w: Tensor, dim: int, sizes: Sequence[int]) -> List[Tensor]:
        self._check_operands(op, w=w)
        if sum(sizes) != w.shape[dim]:
            raise ShapeError(
                f"{op}: sizes {tuple(sizes)} do not add up to extent {w.shape[dim]}"
            )
        outputs = []
        start = 0
        for size in sizes:
            view = self.store.view(
                w, "narrow", name=self._name(op, w), dim=dim, start=start, length=size
            )
            outputs.append(self._register(view, op, (w,)))
            start += size
        return outputs

    def split_columns(self, w: Tensor, *sizes: int) -> List[Tensor]:
        """Split along the last dim into narrow views; gradients flow through the aliases."""
        return self._split("SplitColumns", w, w.ndim - 1, sizes)

    def split_rows(self, w: Tensor, *sizes: int) -> List[Tensor]:
        return self._split("SplitRows", w, 0, sizes)

    ########### Movement ###########
    def transpose(self, w: Tensor, dim0: int = 0, dim1: int = 1) -> Tensor:
        """Swap two dims as an alias view."""
        self._check_operands("Transpose", w=w)
        view = self.store.view(
            w, "transpose", name=self._name("Transpose", w), dim0=dim0, dim1=dim1
        )
        return self._register(view, "Transpose", (w,))

    def transpose_batch(self, w: Tensor, batch_size: int) -> Tensor:
        """
        Reorder rows laid out as [seq, batch] into [batch, seq].
        """
        self._check_operands("TransposeBatch", w=w)
        if w.ndim != 2 or batch_size <= 0 or w.rows % batch_size != 0:
            raise ShapeError(
                f"TransposeBatch: {w.shape} cannot be split into batches of {batch_size}"
            )
        seq_len = w.rows // batch_size
        res = self.store.empty(w.shape)
        res.reshape(batch_size, seq_len, w.columns)[...] = w.weight.reshape(
            seq_len, batch_size, w.columns
        ).transpose(1, 0, 2)
        out = self._output(res, "TransposeBatch", (w,))
        self._record(OpKind.TRANSPOSE_BATCH, (w,), out, {"batch_size": batch_size})
        return out

    def permute(self, w: Tensor, *dims: int) -> Tensor:
        """Reorder dims into a new contiguous tensor."""
        self._check_operands("Permute", w=w)
        spec = ViewSpec.build("permute", w.shape, dims=dims)
        res = self.store.empty(tuple(w.shape[d] for d in spec.params))
        res[...] = w.weight.transpose(spec.params)
        out = self._output(res, "Permute", (w,))
        self._record(OpKind.PERMUTE, (w,), out, {"dims": spec.params})
        return out

    def view(self, w: Tensor, *dims: int) -> Tensor:
        """
        Reshape with at most one ``-1`` dim inferred.

        A tensor owning contiguous storage is viewed without a copy; any other tensor is copied.

        Raises:
            InvalidViewError: If more than one -1 is given or the sizes do not match.
        """
        self._check_operands("View", w=w)
        name = self._name("View", w)
        if not w.is_view and w.weight.flags.c_contiguous:
            view = self.store.view(w, "reshape", name=name, shape=dims)
            return self._register(view, "View", (w,))
        shape = infer_shape(dims, w.size)
        res = self.store.empty(shape)
        res[...] = w.weight.reshape(shape)
        out = self._output(res, "View", (w,))
        self._record(OpKind.RESHAPE, (w,), out)
        return out

    def expand(self, w: Tensor, *dims: int) -> Tensor:
        """
        Broadcast size-1 dims as a read-only view. Gradients are summed back into ``w``.
        """
        self._check_operands("Expand", w=w)
        view = self.store.view(w, "expand", name=self._name("Expand", w), shape=dims)
        self._register(view, "Expand", (w,))
        self._record(OpKind.EXPAND, (w,), view)
        return view

    def peek_row(
        self, w: Tensor, ix: int, num: int = 1, run_gradients: bool = True
    ) -> Tensor:
        """
        Rows ``[ix, ix + num)`` as an alias view. With ``run_gradients`` False, gradients written
        to the view are dropped instead of reaching ``w``.
        """
        self._check_operands("PeekRow", w=w)
        view = self.store.view(
            w, "narrow", name=self._name("PeekRow", w), dim=0, start=ix, length=num
        )
        view.requires_grad = view.requires_grad and run_gradients
        return self._register(view, "PeekRow", (w,))

    def repeat_rows(self, w: Tensor, n: int, run_gradients: bool = True) -> Tensor:
        """Stack ``n`` copies of ``w`` along the rows."""
        self._check_operands("RepeatRows", w=w)
        res = self.store.empty((w.shape[0] * n,) + w.shape[1:])
        res.reshape((n,) + w.shape)[...] = w.weight
        out = self._output(res, "RepeatRows", (w,), requires_grad=run_gradients)
        self._record(OpKind.REPEAT_ROWS, (w,), out, {"n": n})
        return out

    def masked_fill(self, w: Tensor, mask: Tensor, value: float = -1e9) -> Tensor:
        """
        Replace positions where ``mask`` is non-zero with ``value``.

        ``mask`` may broadcast to ``w``'s shape. No gradient flows into masked positions or into
        the mask.
        """
        self._check_operands("MaskedFill", w=w, mask=mask)
        try:
            mask_arr = self.xp.broadcast_to(mask.weight, w.shape)
        except ValueError as e:
            raise ShapeError(
                f"MaskedFill: mask {mask.shape} does not broadcast to {w.shape}"
            ) from e
        res = self.store.backend.masked_fill(w.weight, mask_arr, value)
        keep = (mask_arr == 0).astype(numpy.float32)
        out = self._output(res, "MaskedFill", (w,))
        self._record(OpKind.MASKED_FILL, (w,), out, saved=(keep,))
        return out

    def argmax(self, w: Tensor, dim: int = -1) -> List[int]:
        """Indices of the maxima along ``dim`` as a host list. Not differentiable."""
        self._check_operands("Argmax", w=w)
        return self.store.backend.to_host(self.xp.argmax(w.weight, axis=dim)).tolist()

    ########### Losses ###########
    def mse_loss(self, pred: Tensor, target: Tensor) -> Tensor:
        """
        Mean squared error as a tensor of shape (1,).
        """
        self._check_operands("MSELoss", pred=pred, target=target)
        self._check_same_shape("MSELoss", pred, target)
        diff = pred.weight - target.weight
        res = (diff * diff).mean().reshape(1).astype(numpy.float32)
        out = self._output(res, "MSELoss", (pred, target))
        self._record(OpKind.MSE_LOSS, (pred, target), out, held=(pred, target))
        return out

    def cross_entropy(
        self, logits: Tensor, targets: Sequence[int], pad_idx: Optional[int] = None
    ) -> Tensor:
        r"""
        Mean negative log likelihood of ``targets`` under the row softmax of ``logits``.

        $$
        L = -\frac{1}{N} \sum_{i \notin \text{pad}} \log \text{softmax}(x_i)_{t_i}
        $$

        Args:
            logits (Tensor): Scores of shape (rows, classes).
            targets (Sequence[int]): One class index per row.
            pad_idx (Optional[int]): Rows whose target equals this index are ignored.

        Returns:
            Tensor: The loss as a tensor of shape (1,).
        """
        self._check_operands("CrossEntropy", logits=logits)
        if logits.ndim != 2 or len(targets) != logits.rows:
            raise ShapeError(
                f"CrossEntropy: {len(targets)} targets for logits of shape {logits.shape}"
            )
        xp = self.xp
        targets_arr = xp.asarray(numpy.asarray(targets, dtype=numpy.int64))
        x = logits.weight.astype(numpy.float64)
        shifted = x - x.max(axis=-1, keepdims=True)
        log_sum = xp.log(xp.exp(shifted).sum(axis=-1))
        rows = xp.arange(logits.rows)
        nll = log_sum - shifted[rows, targets_arr]
        if pad_idx is None:
            valid = xp.ones(logits.rows, dtype=numpy.float32)
        else:
            valid = (targets_arr != pad_idx).astype(numpy.float32)
        count = max(int(valid.sum()), 1)
        res = ((nll * valid).sum() / count).reshape(1).astype(numpy.float32)
        probs = self.store.backend.softmax(logits.weight)
        out = self._output(res, "CrossEntropy", (logits,))
        self._record(
            OpKind.CROSS_ENTROPY,
            (logits,),
            out,
            {"count": count},
            saved=(probs, targets_arr, valid),
        )
        return out

    ########### Visualization ###########
    def to_dot(self) -> str:
        """
        Render the recorded edges in Graphviz dot format. Edges are only recorded when
        ``visualize`` is enabled.
        """
        lines = [f'digraph "{self.root.name}" {{']
        for src, dst, op in self.root._edges:
            lines.append(f'  "{src}" -> "{dst}" [label="{op}"];')
        lines.append("}")
        return "\n".join(lines)
