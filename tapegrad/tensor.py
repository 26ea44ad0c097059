import logging
from dataclasses import dataclass
from typing import IO, TYPE_CHECKING, Any, Optional, Sequence, Tuple

import numpy

from tapegrad.errors import InvalidViewError, ReleasedBufferError, ShapeError

if TYPE_CHECKING:
    from tapegrad.backend import Backend
    from tapegrad.store import TensorStore

logger = logging.getLogger(__name__)

VIEW_OPS = ("narrow", "transpose", "permute", "expand", "reshape")


@dataclass(frozen=True)
class ViewSpec:
    """
    Immutable description of how a view is derived from its parent.

    The same spec is applied to the parent's weight when the view is created and to the
    parent's gradient whenever the view's gradient is requested, so gradient writes through a
    view land in the owning tensor's gradient buffer.
    """

    op: str
    params: Tuple[Any, ...]
    shape: Tuple[int, ...]

    @classmethod
    def build(cls, op: str, source_shape: Tuple[int, ...], **params: Any) -> "ViewSpec":
        """
        Validate view parameters against the source shape.

        Args:
            op (str): One of "narrow", "transpose", "permute", "expand", "reshape".
            source_shape (Tuple[int, ...]): Shape of the tensor being viewed.
            **params: Op specific parameters.
                narrow: ``dim``, ``start``, ``length``.
                transpose: ``dim0`` (default 0), ``dim1`` (default 1).
                permute: ``dims``.
                expand and reshape: ``shape``.

        Returns:
            ViewSpec: The validated spec.

        Raises:
            InvalidViewError: If the parameters fall outside the source extents.
        """
        ndim = len(source_shape)
        if op == "narrow":
            dim = _normalize_dim(params["dim"], ndim)
            start, length = int(params["start"]), int(params["length"])
            if start < 0 or length <= 0 or start + length > source_shape[dim]:
                raise InvalidViewError(
                    f"Cannot narrow dim {dim} of shape {source_shape} "
                    f"to [{start}, {start + length})"
                )
            shape = list(source_shape)
            shape[dim] = length
            return cls(op, (dim, start, length), tuple(shape))

        if op == "transpose":
            dim0 = _normalize_dim(params.get("dim0", 0), ndim)
            dim1 = _normalize_dim(params.get("dim1", 1), ndim)
            shape = list(source_shape)
            shape[dim0], shape[dim1] = shape[dim1], shape[dim0]
            return cls(op, (dim0, dim1), tuple(shape))

        if op == "permute":
            dims = tuple(_normalize_dim(d, ndim) for d in params["dims"])
            if sorted(dims) != list(range(ndim)):
                raise InvalidViewError(
                    f"{dims} is not a permutation of the dims of shape {source_shape}"
                )
            return cls(op, dims, tuple(source_shape[d] for d in dims))

        if op == "expand":
            target = tuple(int(s) for s in params["shape"])
            if len(target) < ndim:
                raise InvalidViewError(
                    f"Cannot expand shape {source_shape} to fewer dims {target}"
                )
            padded = (1,) * (len(target) - ndim) + tuple(source_shape)
            resolved = []
            for src, dst in zip(padded, target):
                if dst == -1:
                    dst = src
                if src != dst and src != 1:
                    raise InvalidViewError(
                        f"Cannot expand shape {source_shape} to {target}"
                    )
                resolved.append(dst)
            return cls(op, padded, tuple(resolved))

        if op == "reshape":
            target = infer_shape(params["shape"], int(numpy.prod(source_shape)))
            return cls(op, target, target)

        raise InvalidViewError(f"Unknown view op {op!r}, expected one of {VIEW_OPS}")

    def apply(self, arr: Any, xp: Any) -> Any:
        if self.op == "narrow":
            dim, start, length = self.params
            index = [slice(None)] * arr.ndim
            index[dim] = slice(start, start + length)
            return arr[tuple(index)]
        if self.op == "transpose":
            return xp.swapaxes(arr, *self.params)
        if self.op == "permute":
            return arr.transpose(self.params)
        if self.op == "expand":
            return xp.broadcast_to(arr.reshape(self.params), self.shape)
        return arr.reshape(self.shape)


def _normalize_dim(dim: int, ndim: int) -> int:
    if not -ndim <= dim < ndim:
        raise InvalidViewError(f"Dim {dim} out of range for {ndim} dims")
    return dim % ndim


def infer_shape(shape: Sequence[int], size: int) -> Tuple[int, ...]:
    """
    Resolve a single ``-1`` in ``shape`` so that the product equals ``size``.

    Raises:
        InvalidViewError: If more than one -1 is given or the sizes are incompatible.
    """
    shape = tuple(int(s) for s in shape)
    if shape.count(-1) > 1:
        raise InvalidViewError("Only one dimension can be inferred (-1)")
    known = 1
    for s in shape:
        if s != -1:
            known *= s
    if -1 in shape:
        if known == 0 or size % known != 0:
            raise InvalidViewError(f"Cannot view {size} elements as {shape}")
        shape = tuple(size // known if s == -1 else s for s in shape)
    elif known != size:
        raise InvalidViewError(f"Cannot view {size} elements as {shape}")
    return shape


def unbroadcast(grad_arr: Any, to_shape: Tuple[int, ...]) -> Any:
    """
    Sum out broadcasted dimensions so that grad_arr can match to_shape.
    Essentially the inverse of numpy's broadcasting.

    Args:
        grad_arr (np.ndarray): Gradient array to unbroadcast.
        to_shape (Tuple[int, ...]): Shape to unbroadcast to.

    Returns:
        np.ndarray: Unbroadcasted gradient array.
    """
    if grad_arr.shape == to_shape:
        return grad_arr

    # Sum across extra leading dims first
    while grad_arr.ndim > len(to_shape):
        grad_arr = grad_arr.sum(axis=0)

    # Then across dims that were 1 in the original shape
    for dim, size in enumerate(to_shape):
        if size == 1 and grad_arr.shape[dim] != 1:
            grad_arr = grad_arr.sum(axis=dim, keepdims=True)

    return grad_arr


class Tensor:
    """
    Handle over a weight buffer and a lazily allocated gradient buffer on one backend.

    Tensors are created through a `TensorStore` (directly or via a `ComputeGraph`), never
    constructed by hand. A tensor either owns its storage or aliases another tensor's storage:
    views (``_view`` set) alias both the weight and the gradient of their parent, while the
    outputs of in-place operations alias only the weight and keep their own gradient.
    """

    def __init__(
        self,
        store: "TensorStore",
        weight: Any,
        name: str = "",
        trainable: bool = False,
        requires_grad: bool = True,
        alias_of: Optional["Tensor"] = None,
        view: Optional[ViewSpec] = None,
    ):
        self.store = store
        self.shape: Tuple[int, ...] = tuple(weight.shape)
        self.name = name
        self.trainable = trainable
        self.requires_grad = requires_grad
        self._weight = weight
        self._grad: Optional[Any] = None
        self._alias_of = alias_of
        self._view = view
        # live tensors aliasing this one's storage
        self._alias_count = 0
        # pending backward records that still read this storage
        self._holds = 0
        self._binder = None
        self._disposed = False

    @property
    def backend(self) -> "Backend":
        return self.store.backend

    @property
    def xp(self) -> Any:
        return self.store.backend.xp

    @property
    def device(self) -> str:
        return self.store.backend.name

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def size(self) -> int:
        return int(numpy.prod(self.shape))

    @property
    def rows(self) -> int:
        return self.shape[0]

    @property
    def columns(self) -> int:
        return self.shape[-1]

    @property
    def is_view(self) -> bool:
        return self._view is not None

    @property
    def is_released(self) -> bool:
        return self._weight is None

    @property
    def storage_owner(self) -> "Tensor":
        """The tensor at the root of this tensor's alias chain."""
        t = self
        while t._alias_of is not None:
            t = t._alias_of
        return t

    @property
    def weight(self) -> Any:
        if self._weight is None:
            raise ReleasedBufferError(
                f"Weight of tensor {self.name or hex(id(self))} {self.shape} was released"
            )
        return self._weight

    def _grad_owner(self) -> "Tensor":
        t = self
        while t._view is not None and t._view.op != "expand":
            t = t._alias_of
        return t

    @property
    def grad(self) -> Any:
        """
        The gradient buffer, allocated zero-filled on first access.

        For views this is an alias into the owner's gradient, so ``+=`` through it accumulates
        into the owner.
        """
        if self._view is not None and self._view.op != "expand":
            return self._view.apply(self._alias_of.grad, self.xp)
        if self._grad is None:
            self._grad = self.store.zeros(self.shape)
        return self._grad

    @property
    def has_grad(self) -> bool:
        return self._grad_owner()._grad is not None

    def accumulate_grad(self, grad: Any) -> None:
        """
        Add ``grad`` into this tensor's gradient.

        Raises:
            ShapeError: If ``grad`` does not match this tensor's shape exactly.
        """
        if not self.requires_grad:
            return
        if tuple(grad.shape) != self.shape:
            raise ShapeError(
                f"Gradient of shape {tuple(grad.shape)} cannot accumulate into tensor "
                f"{self.name or hex(id(self))} of shape {self.shape}"
            )
        target = self.grad
        target += grad

    def detach_grad(self) -> Optional[Any]:
        """Take this tensor's own gradient buffer, leaving it unallocated."""
        grad, self._grad = self._grad, None
        return grad

    def zero_grad(self) -> None:
        if self._grad is not None:
            self._grad.fill(0)

    def set_weight(self, data: Any) -> None:
        data = self.xp.asarray(data, dtype=numpy.float32)
        if tuple(data.shape) != self.shape:
            raise ShapeError(f"Cannot set weight of shape {data.shape} into {self.shape}")
        self.weight[...] = data

    def to_numpy(self) -> numpy.ndarray:
        return self.backend.to_host(self.weight)

    def grad_to_numpy(self) -> numpy.ndarray:
        return self.backend.to_host(self.grad)

    def save(self, stream: IO[bytes]) -> None:
        """
        Write the weight as raw little-endian float32 values in C order.
        """
        host = numpy.ascontiguousarray(self.to_numpy(), dtype="<f4")
        stream.write(host.tobytes(order="C"))

    def load(self, stream: IO[bytes]) -> None:
        """
        Read exactly ``size`` little-endian float32 values into the weight.

        Raises:
            ShapeError: If the stream ends before the whole tensor has been read.
        """
        nbytes = self.size * 4
        data = stream.read(nbytes)
        if len(data) < nbytes:
            raise ShapeError(
                f"Stream ended after {len(data)} of {nbytes} bytes while loading "
                f"tensor {self.name!r} of shape {self.shape}"
            )
        host = numpy.frombuffer(data, dtype="<f4").reshape(self.shape)
        self.set_weight(host)

    def dispose(self) -> None:
        self.store.release(self)

    def __repr__(self) -> str:
        state = "released" if self.is_released else self.device
        return f"Tensor(name={self.name!r}, shape={self.shape}, {state})"
