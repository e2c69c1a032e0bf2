# tigerflow/weight_init.py

from __future__ import annotations

import math
from typing import Callable

import torch
from torch.nn import init as nn_init

InitFn = Callable[[torch.Tensor, int, int], None]


def xavier(scale: float = 6.0) -> InitFn:
    """Uniform in +/- sqrt(scale / (fan_in + fan_out))."""

    def _init(buffer: torch.Tensor, fan_in: int, fan_out: int) -> None:
        bound = math.sqrt(scale / float(max(1, fan_in + fan_out)))
        with torch.no_grad():
            nn_init.uniform_(buffer, a=-bound, b=bound)

    return _init


def lecun(scale: float = 1.0) -> InitFn:
    """Uniform in +/- scale / sqrt(fan_in)."""

    def _init(buffer: torch.Tensor, fan_in: int, fan_out: int) -> None:
        del fan_out
        bound = scale / math.sqrt(float(max(1, fan_in)))
        with torch.no_grad():
            nn_init.uniform_(buffer, a=-bound, b=bound)

    return _init


def he(scale: float = 2.0) -> InitFn:
    """Gaussian with sigma = sqrt(scale / fan_in)."""

    def _init(buffer: torch.Tensor, fan_in: int, fan_out: int) -> None:
        del fan_out
        sigma = math.sqrt(scale / float(max(1, fan_in)))
        with torch.no_grad():
            nn_init.normal_(buffer, mean=0.0, std=sigma)

    return _init


def gaussian(sigma: float = 1.0) -> InitFn:
    def _init(buffer: torch.Tensor, fan_in: int, fan_out: int) -> None:
        del fan_in, fan_out
        with torch.no_grad():
            nn_init.normal_(buffer, mean=0.0, std=sigma)

    return _init


def constant(value: float = 0.0) -> InitFn:
    def _init(buffer: torch.Tensor, fan_in: int, fan_out: int) -> None:
        del fan_in, fan_out
        with torch.no_grad():
            nn_init.constant_(buffer, value)

    return _init
