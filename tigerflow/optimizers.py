# tigerflow/optimizers.py

from __future__ import annotations

from typing import Dict, List, Tuple

import torch


class Optimizer:
    """
    Update rule applied by Layer.update_weights().

    Responsibilities:
      - Accept ``optimizer(gradient, weights, parallelize)`` with the
        batch-averaged gradient and mutate ``weights`` in place.
      - Keep one torch.optim instance per weight buffer, so moment and step
        state never leak between buffers.

    Gradients come from the layer kernels, not autograd: the merged gradient is
    attached as ``weights.grad`` for the duration of one ``step()``.
    """

    def __init__(self) -> None:
        self._state: Dict[int, Tuple[torch.Tensor, torch.optim.Optimizer]] = {}

    def __call__(self, gradient: torch.Tensor, weights: torch.Tensor, parallelize: bool) -> None:
        optimizer = self._optimizer_for(weights)
        weights.grad = gradient.detach().reshape(weights.shape).to(weights.dtype)
        try:
            optimizer.step()
        finally:
            weights.grad = None

    def build(self, params: List[torch.Tensor]) -> torch.optim.Optimizer:
        raise NotImplementedError

    def reset(self) -> None:
        self._state.clear()

    def _optimizer_for(self, weights: torch.Tensor) -> torch.optim.Optimizer:
        entry = self._state.get(id(weights))
        # The weights reference is kept so a recycled id() never aliases state.
        if entry is None or entry[0] is not weights:
            entry = (weights, self.build([weights]))
            self._state[id(weights)] = entry
        return entry[1]


class GradientDescent(Optimizer):
    """w -= alpha * (dW + lambda * w)"""

    def __init__(self, alpha: float = 0.01, lambda_: float = 0.0) -> None:
        super().__init__()
        self.alpha = alpha
        self.lambda_ = lambda_

    def build(self, params: List[torch.Tensor]) -> torch.optim.Optimizer:
        return torch.optim.SGD(params, lr=self.alpha, weight_decay=self.lambda_)


class Momentum(Optimizer):
    def __init__(self, alpha: float = 0.01, lambda_: float = 0.0, mu: float = 0.9) -> None:
        super().__init__()
        self.alpha = alpha
        self.lambda_ = lambda_
        self.mu = mu

    def build(self, params: List[torch.Tensor]) -> torch.optim.Optimizer:
        return torch.optim.SGD(params, lr=self.alpha, momentum=self.mu, weight_decay=self.lambda_)


class Adagrad(Optimizer):
    def __init__(self, alpha: float = 0.01, eps: float = 1e-8) -> None:
        super().__init__()
        self.alpha = alpha
        self.eps = eps

    def build(self, params: List[torch.Tensor]) -> torch.optim.Optimizer:
        return torch.optim.Adagrad(params, lr=self.alpha, eps=self.eps)


class RMSprop(Optimizer):
    # mu is the decay of the squared-gradient average (torch calls it alpha).
    def __init__(self, alpha: float = 0.0001, mu: float = 0.99, eps: float = 1e-8) -> None:
        super().__init__()
        self.alpha = alpha
        self.mu = mu
        self.eps = eps

    def build(self, params: List[torch.Tensor]) -> torch.optim.Optimizer:
        return torch.optim.RMSprop(params, lr=self.alpha, alpha=self.mu, eps=self.eps)


class Adam(Optimizer):
    """Adam with bias correction tracked per buffer."""

    def __init__(self, alpha: float = 0.001, b1: float = 0.9, b2: float = 0.999, eps: float = 1e-8) -> None:
        super().__init__()
        self.alpha = alpha
        self.b1 = b1
        self.b2 = b2
        self.eps = eps

    def build(self, params: List[torch.Tensor]) -> torch.optim.Optimizer:
        return torch.optim.Adam(params, lr=self.alpha, betas=(self.b1, self.b2), eps=self.eps)


_REGISTRY = {
    "sgd": GradientDescent,
    "momentum": Momentum,
    "adagrad": Adagrad,
    "rmsprop": RMSprop,
    "adam": Adam,
}


def build_optimizer(name: str, lr: float) -> Optimizer:
    """Construct an optimizer by name with learning rate ``lr``."""
    key = name.lower()
    if key not in _REGISTRY:
        raise ValueError(f"Unknown optimizer {name!r}; expected one of {sorted(_REGISTRY)}")
    return _REGISTRY[key](alpha=lr)
