"""
This module contains the schema for configuring a tensor store and the graphs built on it.
It's optional to use, every field has a sensible default.
"""

import os
from dataclasses import dataclass
from typing import Optional

_DEVICES = ("cpu", "cuda", "auto")
_INIT_POLICIES = ("uniform", "normal", "zero")


@dataclass
class GraphConfig:
    """
    Configuration shared by a `TensorStore` and every graph created on top of it.
    """

    # "cpu" uses numpy, "cuda" requires cupy, "auto" uses cuda when a device is present
    device: str = "cpu"
    device_id: int = 0
    # Default weight initialization for `TensorStore.create`
    init: str = "uniform"
    seed: Optional[int] = None
    # Number of backward records a single tape can hold before overflowing
    tape_capacity: int = 1_024_000
    # When True, tensors get structural hash names and graphs record edges for `to_dot()`
    visualize: bool = False
    needs_backprop: bool = True
    layer_norm_eps: float = 1e-9

    def __post_init__(self) -> None:
        if self.device not in _DEVICES:
            raise ValueError(f"device must be one of {_DEVICES}, got {self.device!r}")
        if self.init not in _INIT_POLICIES:
            raise ValueError(
                f"init must be one of {_INIT_POLICIES}, got {self.init!r}"
            )
        if self.tape_capacity <= 0:
            raise ValueError("tape_capacity must be positive")
        if self.layer_norm_eps <= 0:
            raise ValueError("layer_norm_eps must be positive")

    @classmethod
    def from_env(cls, **overrides) -> "GraphConfig":
        """
        Build a config from environment variables, with keyword overrides taking precedence.

        Recognized variables: ``TAPEGRAD_DEVICE``, ``TAPEGRAD_SEED`` and ``TAPEGRAD_VISUALIZE``.

        Returns:
            GraphConfig: The resulting configuration.
        """
        values = {}
        if os.getenv("TAPEGRAD_DEVICE"):
            values["device"] = os.environ["TAPEGRAD_DEVICE"]
        if os.getenv("TAPEGRAD_SEED"):
            values["seed"] = int(os.environ["TAPEGRAD_SEED"])
        if os.getenv("TAPEGRAD_VISUALIZE"):
            values["visualize"] = os.environ["TAPEGRAD_VISUALIZE"].lower() in (
                "1",
                "true",
                "yes",
            )
        values.update(overrides)
        return cls(**values)
