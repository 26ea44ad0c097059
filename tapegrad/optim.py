import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, Union

from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)


class Optimizer:
    """
    Base Optimizer Class.

    Usage Example:

    .. code-block:: python

        optimizer = Adam(graph.get_parameters(), lr=0.01, max_grad_norm=5.0)
        for inputs, targets in dataset:
            optimizer.zero_grad()
            with ComputeGraph(store) as graph:
                loss = graph.mse_loss(model(graph, inputs), targets)
                graph.backward(loss)
            optimizer.step()
    """

    def __init__(
        self,
        model_parameters: Union[Dict[str, Tensor], Iterable[Tensor]],
        lr: float,
        **kwargs: Any,
    ) -> None:
        """
        Args:
            model_parameters (Union[Dict[str, Tensor], Iterable[Tensor]]): Named parameters
                (e.g. `Module.parameters`) or the list returned by `ComputeGraph.get_parameters()`.
            lr (float): The learning rate.
            **kwargs: Additional hyperparameters, e.g. ``max_grad_norm``.
        """
        self._states: Dict[str, Any] = defaultdict(dict)
        self._hyperparams: Dict[str, Any] = {"lr": lr}
        if isinstance(model_parameters, dict):
            self.model_parameters = dict(model_parameters)
        else:
            self.model_parameters = {
                str(i): p for i, p in enumerate(model_parameters)
            }
        self._states["timestep"] = 0
        for k, v in kwargs.items():
            self._hyperparams[k] = v

    @property
    def lr(self) -> float:
        return self._hyperparams["lr"]

    @lr.setter
    def lr(self, value: float) -> None:
        self._hyperparams["lr"] = value

    @property
    def timestep(self) -> int:
        return self._states.get("timestep", 0)

    @timestep.setter
    def timestep(self, value: int) -> None:
        self._states["timestep"] = value

    def _clip_grad_norm(self, max_norm: float, norm_type: float = 2.0) -> float:
        r"""
        Scale the gradients of all parameters in-place so that their norm is at most max_norm.

        Implements Section 10.11.1 "Clipping Gradients" in the Deep Learning Book by Goodfellow et al.

        $$
        \frac{\text{max\_norm} \cdot g}{\|g\|_n}
        $$

        Returns:
            float: The total norm before clipping.
        """
        total_norm = 0.0
        for param in self.model_parameters.values():
            if param.has_grad:
                total_norm += float((abs(param.grad) ** norm_type).sum())
        total_norm = total_norm ** (1.0 / norm_type)

        if total_norm > max_norm:
            scale_factor = max_norm / (total_norm + 1e-10)
            for param in self.model_parameters.values():
                if param.has_grad:
                    grad = param.grad
                    grad *= scale_factor
        return total_norm

    def zero_grad(self) -> None:
        """
        Set the gradients of all optimized tensors to zero.
        """
        for param in self.model_parameters.values():
            param.zero_grad()

    def step(self) -> None:
        """
        Advance the timestep and clip gradients when ``max_grad_norm`` is set.
        Subclasses apply the update afterwards.
        """
        self.timestep += 1
        if "max_grad_norm" in self._hyperparams:
            self._clip_grad_norm(self._hyperparams["max_grad_norm"], norm_type=2.0)


class SGD(Optimizer):
    """
    Stochastic Gradient Descent (SGD) Optimizer with optional momentum.
    """

    def __init__(
        self, model_parameters: Any, lr: float, momentum: float = 0.0, **kwargs: Any
    ) -> None:
        super(SGD, self).__init__(model_parameters, lr=lr, **kwargs)
        self._hyperparams["momentum"] = momentum

    def step(self) -> None:
        super().step()
        momentum = self._hyperparams["momentum"]
        for name, param in self.model_parameters.items():
            if not param.has_grad:
                continue
            update = param.grad
            if momentum:
                velocity = self._states["velocity"].get(name)
                if velocity is None:
                    velocity = param.xp.zeros_like(param.grad)
                velocity = momentum * velocity + param.grad
                self._states["velocity"][name] = velocity
                update = velocity
            param.weight[...] -= self.lr * update


class Adam(Optimizer):
    """
    Adam Optimizer.

    Implements stochastic gradient descent with first and second order momentum.
    Paper: https://arxiv.org/abs/1412.6980
    """

    def __init__(
        self,
        model_parameters: Any,
        lr: float,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-7,
        **kwargs: Any,
    ) -> None:
        super(Adam, self).__init__(model_parameters, lr=lr, **kwargs)
        # These notations are based on the same notations in the paper linked above
        self._hyperparams["beta1"] = beta1
        self._hyperparams["beta2"] = beta2
        self._hyperparams["epsilon"] = epsilon

    def step(self) -> None:
        r"""
        $$
        m_t = \beta_1 m_{t-1} + (1 - \beta_1) g, \quad
        v_t = \beta_2 v_{t-1} + (1 - \beta_2) g^2, \quad
        \theta_t = \theta_{t-1} - \text{lr} \frac{\hat{m}_t}{\sqrt{\hat{v}_t} + \epsilon}
        $$
        """
        super().step()
        beta1 = self._hyperparams["beta1"]
        beta2 = self._hyperparams["beta2"]
        eps = self._hyperparams["epsilon"]
        t = self.timestep
        for name, param in self.model_parameters.items():
            if not param.has_grad:
                continue
            xp = param.xp
            grad = param.grad
            m = self._states["m"].get(name)
            v = self._states["v"].get(name)
            if m is None:
                m = xp.zeros_like(grad)
                v = xp.zeros_like(grad)
            m = beta1 * m + (1 - beta1) * grad
            v = beta2 * v + (1 - beta2) * grad**2
            self._states["m"][name] = m
            self._states["v"][name] = v

            m_hat = m / (1 - beta1**t)
            v_hat = v / (1 - beta2**t)
            param.weight[...] -= self.lr * m_hat / (xp.sqrt(v_hat) + eps)
