# tigerflow/losses.py

from __future__ import annotations

from typing import Dict, List, Sequence, Union

import torch

Rows = List[torch.Tensor]


class Loss:
    """Per-sample loss with an explicit derivative w.r.t. the output row."""

    name = "loss"

    def f(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def df(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError


class MeanSquaredError(Loss):
    name = "mse"

    def f(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        return ((y - t) ** 2).mean()

    def df(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        return 2.0 * (y - t) / float(y.numel())


class AbsoluteError(Loss):
    name = "absolute"

    def f(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        return (y - t).abs().mean()

    def df(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        return torch.sign(y - t) / float(y.numel())


class CrossEntropy(Loss):
    """Softmax cross-entropy on raw scores; targets are one-hot rows or a class index."""

    name = "cross_entropy"

    @staticmethod
    def _one_hot(y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        if t.numel() == 1 and y.numel() > 1:
            hot = torch.zeros_like(y)
            hot[int(t.reshape(-1)[0].item())] = 1.0
            return hot
        return t.to(y.dtype)

    def f(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        target = self._one_hot(y, t)
        return -(target * torch.log_softmax(y, dim=-1)).sum()

    def df(self, y: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        target = self._one_hot(y, t)
        return torch.softmax(y, dim=-1) * target.sum() - target


mse = MeanSquaredError()
absolute = AbsoluteError()
cross_entropy = CrossEntropy()

LOSSES: Dict[str, Loss] = {loss.name: loss for loss in (mse, absolute, cross_entropy)}


def get_loss(name: Union[str, Loss]) -> Loss:
    if isinstance(name, Loss):
        return name
    if name not in LOSSES:
        raise ValueError(f"Unknown loss {name!r}; expected one of {sorted(LOSSES)}")
    return LOSSES[name]


def _rows(batch: Union[torch.Tensor, Sequence[torch.Tensor]]) -> Rows:
    if isinstance(batch, torch.Tensor):
        if batch.dim() <= 1:
            return [batch.reshape(-1)]
        return list(batch.reshape(batch.shape[0], -1).unbind(0))
    return [torch.as_tensor(row).reshape(-1) for row in batch]


def value(
    loss: Union[str, Loss],
    outputs: Union[torch.Tensor, Sequence[torch.Tensor]],
    targets: Union[torch.Tensor, Sequence[torch.Tensor]],
) -> float:
    """Mean per-sample loss over a batch."""
    fn = get_loss(loss)
    ys, ts = _rows(outputs), _rows(targets)
    if len(ys) != len(ts):
        raise ValueError(f"Got {len(ys)} outputs but {len(ts)} targets.")
    total = sum(float(fn.f(y, t).item()) for y, t in zip(ys, ts))
    return total / float(len(ys))


def gradient(
    loss: Union[str, Loss],
    outputs: Union[torch.Tensor, Sequence[torch.Tensor]],
    targets: Union[torch.Tensor, Sequence[torch.Tensor]],
) -> Rows:
    """Per-sample gradient rows of ``loss`` ready for Graph.backward()."""
    fn = get_loss(loss)
    ys, ts = _rows(outputs), _rows(targets)
    if len(ys) != len(ts):
        raise ValueError(f"Got {len(ys)} outputs but {len(ts)} targets.")
    return [fn.df(y, t.to(y.dtype)) for y, t in zip(ys, ts)]
