import hashlib
import itertools
import logging
import threading
import weakref
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy

from tapegrad import init as initializers
from tapegrad.backend import DTYPE, Backend, get_backend
from tapegrad.config_schema import GraphConfig
from tapegrad.errors import AliasingError, InvalidViewError, NullOperandError
from tapegrad.tensor import Tensor, ViewSpec

logger = logging.getLogger(__name__)


def _pool_key(shape: Sequence[int], dtype: Any) -> Tuple[Tuple[int, ...], numpy.dtype]:
    # numpy.float32 and numpy.dtype("float32") compare equal but hash differently
    return tuple(int(s) for s in shape), numpy.dtype(dtype)


class TensorStore:
    """
    Allocator and context object for tensors.

    The store owns every weight and gradient buffer it hands out and recycles released buffers
    through a pool keyed by (shape, dtype). Graphs hold usage registrations into a store, never
    ownership, so a store can be reset between batches independently of any graph.

    Examples:
        >>> store = TensorStore(GraphConfig(seed=0))
        >>> w = store.create((4, 8), name="w", trainable=True)
        >>> x = store.view(w, "narrow", dim=0, start=1, length=2)
        >>> x.shape
        (2, 8)
    """

    def __init__(
        self, config: Optional[GraphConfig] = None, backend: Optional[Backend] = None
    ) -> None:
        self.config = config or GraphConfig()
        self.backend = backend or get_backend(
            self.config.device, self.config.device_id, self.config.seed
        )
        self._pool: Dict[Tuple[Tuple[int, ...], Any], List[Any]] = defaultdict(list)
        self._lock = threading.Lock()
        self._parameters: "weakref.WeakValueDictionary[int, Tensor]" = (
            weakref.WeakValueDictionary()
        )
        self._ids = itertools.count()
        self.stats: Counter = Counter()

    @property
    def xp(self) -> Any:
        return self.backend.xp

    @property
    def kernels(self) -> Dict[str, Any]:
        """Kernel templates of the backend (empty on CPU)."""
        return getattr(self.backend, "kernels", {})

    ########### Buffers ###########
    def empty(self, shape: Sequence[int]) -> Any:
        """Uninitialized float32 buffer, taken from the pool when one of the same shape is free."""
        key = _pool_key(shape, DTYPE)
        with self._lock:
            bucket = self._pool.get(key)
            if bucket:
                self.stats["reuses"] += 1
                return bucket.pop()
            self.stats["allocations"] += 1
        return self.backend.empty(tuple(shape))

    def zeros(self, shape: Sequence[int]) -> Any:
        arr = self.empty(shape)
        arr.fill(0)
        return arr

    def _recycle(self, arr: Any) -> None:
        # only buffers that own their memory can be handed out again
        if arr is None or not arr.flags.owndata or not arr.flags.c_contiguous:
            return
        with self._lock:
            self._pool[_pool_key(arr.shape, arr.dtype)].append(arr)
            self.stats["releases"] += 1

    @property
    def pooled_buffers(self) -> int:
        with self._lock:
            return sum(len(b) for b in self._pool.values())

    ########### Tensors ###########
    def create(
        self,
        shape: Sequence[int],
        name: str = "",
        trainable: bool = False,
        init: Optional[str] = None,
        fill_value: Optional[float] = None,
        requires_grad: bool = True,
        device: Optional[str] = None,
    ) -> Tensor:
        """
        Allocate a tensor and initialize its weight.

        Args:
            shape (Sequence[int]): Shape of the tensor.
            name (str): Human readable identity, used for visualization.
            trainable (bool): Whether `parameters()` enumerates this tensor.
            init (Optional[str]): "uniform", "normal" or "zero". Defaults to the configured
                policy for trainable tensors and "zero" otherwise.
            fill_value (Optional[float]): Constant fill, overrides ``init``.
            requires_grad (bool): Whether gradients are accumulated into this tensor.
            device (Optional[str]): Expected placement. A store allocates on its own backend
                only, so this must be None, "auto" or the backend name.

        Returns:
            Tensor: The new tensor.

        Raises:
            ValueError: If ``device`` names another backend than the store's.
        """
        shape = tuple(int(s) for s in shape)
        if device not in (None, "auto", self.backend.name):
            raise ValueError(
                f"Store allocates on {self.backend.name!r}, cannot create a tensor on {device!r}"
            )
        tensor = Tensor(
            self,
            self.empty(shape),
            name=name,
            trainable=trainable,
            requires_grad=requires_grad,
        )
        if fill_value is not None:
            initializers.constant(tensor, fill_value)
        else:
            policy = init or (self.config.init if trainable else "zero")
            if policy not in initializers.INITIALIZERS:
                raise ValueError(f"Unknown init policy {policy!r}")
            initializers.INITIALIZERS[policy](tensor)
        if trainable:
            self._parameters[next(self._ids)] = tensor
        return tensor

    def from_array(
        self,
        data: Any,
        name: str = "",
        trainable: bool = False,
        requires_grad: bool = True,
    ) -> Tensor:
        """Create a tensor holding a float32 copy of ``data``."""
        arr = self.backend.asarray(data)
        buf = self.empty(arr.shape)
        buf[...] = arr
        tensor = Tensor(
            self, buf, name=name, trainable=trainable, requires_grad=requires_grad
        )
        if trainable:
            self._parameters[next(self._ids)] = tensor
        return tensor

    def wrap(self, arr: Any, name: str = "", requires_grad: bool = True) -> Tensor:
        """
        Hand ownership of a freshly computed array to a new tensor.

        Raises:
            AliasingError: If ``arr`` does not own its memory. Such an array shares storage
                with another buffer, so the new tensor could not be exclusively owned.
        """
        if arr.dtype != DTYPE:
            arr = arr.astype(DTYPE)
        if not arr.flags.owndata:
            raise AliasingError(
                f"Cannot take ownership of an array of shape {tuple(arr.shape)} that views "
                f"another buffer"
            )
        return Tensor(self, arr, name=name, requires_grad=requires_grad)

    def view(self, tensor: Tensor, op: str, name: str = "", **params: Any) -> Tensor:
        """
        Build an O(1) view over ``tensor``'s storage.

        Args:
            tensor (Tensor): The tensor to view.
            op (str): "narrow", "transpose", "permute", "expand" or "reshape".
            name (str): Name of the view.
            **params: See `ViewSpec.build`.

        Returns:
            Tensor: A tensor aliasing ``tensor``'s weight and gradient.

        Raises:
            InvalidViewError: If the bounds exceed the source extents, the source is an expanded
                view, or a reshape is requested on a tensor that does not own its storage.
        """
        if tensor is None:
            raise NullOperandError("Cannot view a missing tensor")
        if tensor.is_view and tensor._view.op == "expand":
            raise InvalidViewError("Views of expanded tensors are not supported")
        if op == "reshape" and tensor.is_view:
            raise InvalidViewError("reshape requires a tensor that owns its storage")
        spec = ViewSpec.build(op, tensor.shape, **params)
        weight = spec.apply(tensor.weight, self.xp)
        view = Tensor(
            self,
            weight,
            name=name,
            requires_grad=tensor.requires_grad,
            alias_of=tensor,
            view=spec,
        )
        tensor._alias_count += 1
        return view

    def alias_in_place(self, tensor: Tensor, name: str = "") -> Tensor:
        """
        Create a tensor sharing ``tensor``'s weight storage for an in-place result.

        Raises:
            AliasingError: If ``tensor`` is a view, already has live aliases, or its storage is
                still needed by a pending backward record.
        """
        if tensor.is_view:
            raise AliasingError(
                f"Cannot run an in-place operation on view {tensor.name or tensor.shape}"
            )
        if tensor._alias_count > 0 or tensor.storage_owner._holds > 0:
            raise AliasingError(
                f"Tensor {tensor.name or tensor.shape} is not exclusively owned: "
                f"{tensor._alias_count} live aliases, "
                f"{tensor.storage_owner._holds} pending backward holds"
            )
        out = Tensor(
            self,
            tensor.weight,
            name=name,
            requires_grad=tensor.requires_grad,
            alias_of=tensor,
        )
        tensor._alias_count += 1
        return out

    def release(self, tensor: Tensor) -> None:
        """
        Dispose a tensor: release its weight and gradient.

        Buffers go back to the pool only when no live alias or pending backward hold can still
        reach them.
        """
        if tensor._disposed:
            return
        tensor._disposed = True
        self._drop_weight(tensor)
        grad, tensor._grad = tensor._grad, None
        self._recycle(grad)
        if tensor._alias_of is not None:
            tensor._alias_of._alias_count -= 1
        self.stats["disposed"] += 1

    def release_weight(self, tensor: Tensor) -> None:
        """
        Release only the weight, keeping the gradient for the pending backward pass.

        Storage still read by a pending backward record is left untouched.
        """
        if tensor.storage_owner._holds > 0:
            return
        self._drop_weight(tensor)

    def _drop_weight(self, tensor: Tensor) -> None:
        weight, tensor._weight = tensor._weight, None
        if weight is None:
            return
        if tensor._alias_of is None and tensor._alias_count == 0 and tensor._holds == 0:
            self._recycle(weight)

    def parameters(self) -> List[Tensor]:
        """Trainable tensors in creation order."""
        return [t for _, t in sorted(self._parameters.items()) if not t.is_released]

    def hash_name(self, *names: str, enabled: Optional[bool] = None) -> str:
        """
        Structural name derived from input names; empty unless visualization is enabled.
        """
        if not (self.config.visualize if enabled is None else enabled):
            return ""
        digest = hashlib.sha256("_".join(names).encode("utf-8")).hexdigest()
        return digest.upper()

    def reset(self) -> None:
        """Drop every pooled buffer."""
        with self._lock:
            pooled = sum(len(b) for b in self._pool.values())
            self._pool.clear()
        logger.debug(f"Tensor store reset, dropped {pooled} pooled buffers")
