import logging
import threading
from collections.abc import Mapping
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from tapegrad.errors import ConfigMismatchError

logger = logging.getLogger(__name__)


class KernelConfig(Mapping):
    """
    Immutable set of named values that selects one specialization of a kernel template.

    Two configs with the same items are equal and hash alike no matter the order in which
    they were given, so they can key the compiled-artifact cache directly.

    Examples:
        >>> cfg = KernelConfig(T="float", BLOCK_SIZE=256)
        >>> cfg.apply_to_template("...")
        '#define BLOCK_SIZE 256\\n#define T float\\n...'
    """

    def __init__(self, values: Optional[Mapping] = None, **kwargs: Any) -> None:
        merged: Dict[str, Any] = dict(values or {})
        merged.update(kwargs)
        self._items: Tuple[Tuple[str, Any], ...] = tuple(sorted(merged.items()))
        self._lookup = dict(self._items)

    def __getitem__(self, key: str) -> Any:
        return self._lookup[key]

    def __iter__(self) -> Iterator[str]:
        return (k for k, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return hash(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, KernelConfig):
            return self._items == other._items
        if isinstance(other, Mapping):
            return self._lookup == dict(other)
        return NotImplemented

    def __repr__(self) -> str:
        body = ", ".join(f"{k}={v!r}" for k, v in self._items)
        return f"KernelConfig({body})"

    def apply_to_template(self, template_code: str) -> str:
        """
        Render the template by prepending one ``#define NAME VALUE`` line per item.

        Args:
            template_code (str): Kernel source that refers to the config names as macros.

        Returns:
            str: The specialized source.
        """
        defines = "".join(f"#define {k} {v}\n" for k, v in self._items)
        return defines + template_code


class KernelTemplate:
    """
    A parametrized device kernel whose compiled specializations are memoized by config.

    The cache never evicts: the number of distinct specializations a model asks for is
    bounded by its architecture.
    """

    def __init__(self, template_code: str, *required_headers: str) -> None:
        """
        Declare a kernel template.

        Args:
            template_code (str): Kernel source referring to config values as macros.
            *required_headers (str): Names of headers registered on the compiler.
        """
        self.template_code = template_code
        self.required_headers: List[str] = list(required_headers)
        self.required_config_args: set = set()
        self._cache: Dict[KernelConfig, Any] = {}
        self._lock = threading.Lock()

    def add_config_args(self, *names: str) -> "KernelTemplate":
        self.required_config_args.update(names)
        return self

    def add_headers(self, *headers: str) -> "KernelTemplate":
        self.required_headers.extend(headers)
        return self

    @property
    def compiled_count(self) -> int:
        """Number of distinct specializations compiled so far."""
        return len(self._cache)

    def _validate(self, config: KernelConfig) -> None:
        # Exact key-set equality keeps two semantically identical configs from
        # producing two cache entries.
        keys = set(config)
        missing = self.required_config_args - keys
        extra = keys - self.required_config_args
        required = ", ".join(sorted(self.required_config_args))
        if missing:
            raise ConfigMismatchError(
                f"All config arguments must be provided. Missing: "
                f"{', '.join(sorted(missing))}. Required: {required}"
            )
        if extra:
            raise ConfigMismatchError(
                f"Config provides unnecessary arguments: {', '.join(sorted(extra))}. "
                f"Required: {required}"
            )

    def compile(self, compiler: Any, config: Union[KernelConfig, Mapping]) -> Any:
        """
        Return the compiled artifact for ``config``, compiling it on first request.

        Args:
            compiler (KernelCompiler): Compiler used on a cache miss.
            config (Union[KernelConfig, Mapping]): The specialization to build.

        Returns:
            Any: Whatever the compiler produces (a loaded module for the cupy compiler).

        Raises:
            ConfigMismatchError: If the config keys differ from the declared ones.
        """
        if not isinstance(config, KernelConfig):
            config = KernelConfig(config)
        self._validate(config)

        cached = self._cache.get(config)
        if cached is not None:
            return cached

        with self._lock:
            # another thread may have compiled it while we waited
            cached = self._cache.get(config)
            if cached is not None:
                return cached
            logger.info(f"Compiling kernel specialization {config}")
            source = config.apply_to_template(self.template_code)
            artifact = compiler.compile(source, self.required_headers)
            self._cache[config] = artifact
            return artifact

    def cached_configs(self) -> Iterable[KernelConfig]:
        return tuple(self._cache)
