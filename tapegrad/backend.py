"""
Array backends. Every graph operation is written once against ``backend.xp`` (numpy or cupy),
so the same catalog runs on either device. The few primitives that benefit from a hand-written
device kernel (row softmax and masked fill) go through the backend so the GPU implementation can
use specialized kernels from the kernel cache.
"""

import logging
from abc import abstractmethod
from typing import Any, Optional, Sequence, Tuple

import numpy

from tapegrad.errors import AllocationError
from tapegrad.kernels.compiler import CupyCompiler, KernelCompiler
from tapegrad.kernels.sources import MATH_HEADER, MATH_HEADER_SOURCE, build_templates
from tapegrad.kernels.template import KernelConfig

logger = logging.getLogger(__name__)

DTYPE = numpy.float32


class Backend:
    """
    Capability interface shared by the CPU and GPU backends.

    Attributes:
        name (str): Device tag stored on every tensor ("cpu" or "cuda").
        xp: The numpy-compatible array module.
        random: A seeded ``RandomState`` from ``xp.random``.
    """

    name: str = ""

    def __init__(self, xp: Any, seed: Optional[int] = None) -> None:
        self.xp = xp
        self.random = xp.random.RandomState(seed)

    def empty(self, shape: Tuple[int, ...]) -> Any:
        try:
            return self.xp.empty(shape, dtype=DTYPE)
        except MemoryError as e:
            raise AllocationError(f"Failed to allocate buffer of shape {shape}") from e

    def asarray(self, data: Any) -> Any:
        return self.xp.asarray(data, dtype=DTYPE)

    @abstractmethod
    def to_host(self, arr: Any) -> numpy.ndarray:
        raise NotImplementedError

    def uniform(self, low: float, high: float, shape: Sequence[int]) -> Any:
        return self.random.uniform(low, high, size=tuple(shape)).astype(DTYPE)

    def normal(self, mean: float, std: float, shape: Sequence[int]) -> Any:
        return self.random.normal(mean, std, size=tuple(shape)).astype(DTYPE)

    def bernoulli(self, shape: Sequence[int], prob: float) -> Any:
        """
        Sample a 0/1 mask where each element is 1 with probability ``prob``.
        """
        return (self.random.random_sample(tuple(shape)) < prob).astype(DTYPE)

    @abstractmethod
    def softmax(self, x: Any, out: Optional[Any] = None) -> Any:
        raise NotImplementedError

    @abstractmethod
    def masked_fill(
        self, x: Any, mask: Any, value: float, out: Optional[Any] = None
    ) -> Any:
        raise NotImplementedError


class CpuBackend(Backend):
    name = "cpu"

    def __init__(self, seed: Optional[int] = None) -> None:
        super().__init__(numpy, seed)

    def to_host(self, arr: Any) -> numpy.ndarray:
        return numpy.asarray(arr)

    def softmax(self, x: Any, out: Optional[Any] = None) -> Any:
        r"""
        Row softmax over the last axis.

        $$
        \text{softmax}(x_i) = \frac{e^{x_i - \max(x)}}{\sum_j e^{x_j - \max(x)}}
        $$

        The row sum is accumulated in float64 and the result is cast back to float32.

        Args:
            x (np.ndarray): Input scores.
            out (np.ndarray, optional): Destination buffer, may be ``x`` itself.

        Returns:
            np.ndarray: The probabilities.
        """
        shifted = x.astype(numpy.float64) - x.max(axis=-1, keepdims=True)
        exps = numpy.exp(shifted)
        probs = exps / exps.sum(axis=-1, keepdims=True)
        if out is None:
            return probs.astype(DTYPE)
        out[...] = probs
        return out

    def masked_fill(
        self, x: Any, mask: Any, value: float, out: Optional[Any] = None
    ) -> Any:
        filled = numpy.where(mask != 0, DTYPE(value), x).astype(DTYPE, copy=False)
        if out is None:
            return filled
        out[...] = filled
        return out


class GpuBackend(Backend):
    """
    cupy backend. Softmax and masked fill launch kernels specialized through `KernelTemplate`,
    so each (dtype, block size) combination is compiled once per process.
    """

    name = "cuda"
    block_size = 256

    def __init__(
        self,
        device_id: int = 0,
        seed: Optional[int] = None,
        compiler: Optional[KernelCompiler] = None,
    ) -> None:
        import cupy

        self.device = cupy.cuda.Device(device_id)
        self.device.use()
        super().__init__(cupy, seed)
        self.compiler = compiler or CupyCompiler()
        self.compiler.register_header(MATH_HEADER, MATH_HEADER_SOURCE)
        self.kernels = build_templates()

    def empty(self, shape: Tuple[int, ...]) -> Any:
        try:
            return self.xp.empty(shape, dtype=DTYPE)
        except self.xp.cuda.memory.OutOfMemoryError as e:
            raise AllocationError(
                f"Device out of memory allocating buffer of shape {shape}"
            ) from e

    def to_host(self, arr: Any) -> numpy.ndarray:
        return self.xp.asnumpy(arr)

    def _kernel(self, name: str, **config: Any) -> Any:
        module = self.kernels[name].compile(
            self.compiler, KernelConfig(BLOCK_SIZE=self.block_size, **config)
        )
        return module.get_function(name)

    def softmax(self, x: Any, out: Optional[Any] = None) -> Any:
        x = self.xp.ascontiguousarray(x, dtype=DTYPE)
        if out is None:
            out = self.xp.empty_like(x)
        cols = x.shape[-1]
        rows = x.size // cols
        kernel = self._kernel("softmax_rows", T="float", ACC="double")
        kernel((rows,), (self.block_size,), (x, out, numpy.int32(cols)))
        return out

    def masked_fill(
        self, x: Any, mask: Any, value: float, out: Optional[Any] = None
    ) -> Any:
        x = self.xp.ascontiguousarray(x, dtype=DTYPE)
        mask = self.xp.ascontiguousarray(
            self.xp.broadcast_to(mask, x.shape), dtype=DTYPE
        )
        if out is None:
            out = self.xp.empty_like(x)
        n = x.size
        blocks = (n + self.block_size - 1) // self.block_size
        kernel = self._kernel("masked_fill", T="float")
        kernel(
            (blocks,),
            (self.block_size,),
            (x, mask, out, numpy.float32(value), numpy.int64(n)),
        )
        return out


def get_backend(
    device: str = "cpu", device_id: int = 0, seed: Optional[int] = None
) -> Backend:
    """
    Select a backend at construction time.

    Args:
        device (str): "cpu", "cuda", or "auto" (cuda when a device is visible, otherwise cpu).
        device_id (int): CUDA device ordinal.
        seed (Optional[int]): Seed for the backend's random state.

    Returns:
        Backend: The selected backend.
    """
    if device == "cpu":
        return CpuBackend(seed)
    if device == "cuda":
        return GpuBackend(device_id, seed)
    if device == "auto":
        try:
            import cupy

            available = cupy.cuda.runtime.getDeviceCount() > 0
        except Exception:
            available = False
        if not available:
            logger.info("No CUDA device available, falling back to the CPU backend")
            return CpuBackend(seed)
        return GpuBackend(device_id, seed)
    raise ValueError(f"Unknown device {device!r}")
