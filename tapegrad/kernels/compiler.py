import logging
import threading
from abc import abstractmethod
from typing import Any, Dict, Sequence, Tuple

logger = logging.getLogger(__name__)


class KernelCompiler:
    """
    Base class for turning rendered kernel source into a device-loadable artifact.

    Subclasses implement `_build`. The base class resolves named headers, which are
    prepended to the source in the order requested, and counts how many times it was
    asked to compile.
    """

    def __init__(self) -> None:
        self._headers: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.compile_calls = 0

    def register_header(self, name: str, source: str) -> None:
        self._headers[name] = source

    def compile(self, source: str, headers: Sequence[str] = ()) -> Any:
        """
        Compile ``source`` with the given registered headers.

        Args:
            source (str): Fully specialized kernel source.
            headers (Sequence[str]): Names of headers previously registered.

        Returns:
            Any: The compiled artifact.

        Raises:
            KeyError: If a header name was never registered.
        """
        unknown = [h for h in headers if h not in self._headers]
        if unknown:
            raise KeyError(f"Unregistered kernel headers: {', '.join(unknown)}")

        full_source = "".join(self._headers[h] + "\n" for h in headers) + source
        with self._lock:
            self.compile_calls += 1
        logger.debug(f"Building kernel source ({len(full_source)} chars)")
        return self._build(full_source)

    @abstractmethod
    def _build(self, source: str) -> Any:
        raise NotImplementedError


class CupyCompiler(KernelCompiler):
    """Compiles CUDA C source with NVRTC through `cupy.RawModule`."""

    def __init__(self, options: Tuple[str, ...] = ("--std=c++14",)) -> None:
        super().__init__()
        self.options = options

    def _build(self, source: str) -> Any:
        import cupy

        module = cupy.RawModule(code=source, options=self.options, backend="nvrtc")
        # compile eagerly so that the cached artifact is ready to launch
        module.compile()
        return module
