# tigerflow/signal.py

from __future__ import annotations

import enum
import logging
import random
from typing import TYPE_CHECKING, List, NamedTuple, Optional, Sequence

import torch

if TYPE_CHECKING:
    from .core import Layer

logger = logging.getLogger(__name__)

_ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ012345"


def make_id(length: int = 8) -> str:
    """Random identifier drawn from a 32 character alphabet."""
    return "".join(random.choice(_ID_ALPHABET) for _ in range(length))


class ChannelType(enum.Enum):
    """Kind of content carried by a signal."""

    DATA = "data"
    WEIGHT = "weight"
    BIAS = "bias"


def is_trainable_weight(kind: ChannelType) -> bool:
    return kind in (ChannelType.WEIGHT, ChannelType.BIAS)


def channel_order(has_bias: bool) -> List[ChannelType]:
    """Input channel layout of a parametric layer: data, weight and optionally bias."""
    if has_bias:
        return [ChannelType.DATA, ChannelType.WEIGHT, ChannelType.BIAS]
    return [ChannelType.DATA, ChannelType.WEIGHT]


class Dim3(NamedTuple):
    """Width x height x depth of one slot. A size of 0 means 'not known yet'."""

    width: int = 0
    height: int = 0
    depth: int = 0

    def size(self) -> int:
        return int(self.width) * int(self.height) * int(self.depth)

    def __str__(self) -> str:
        return f"{self.width}x{self.height}x{self.depth}"


class Signal:
    """
    Shared data edge between layers.

    Responsibilities:
      - Hold one value row and one gradient row per sample of the current batch
        (weight and bias signals hold a single parameter row).
      - Grow capacity lazily when a larger batch arrives; never shrink.
      - Sum gradient contributions from every consumer.

    Identity is object identity: two signals with equal contents are distinct.
    """

    def __init__(
        self,
        producer: Optional["Layer"],
        shape: Dim3,
        kind: ChannelType = ChannelType.DATA,
        dtype: torch.dtype = torch.float32,
        name: Optional[str] = None,
    ) -> None:
        self.producer = producer
        self.shape = Dim3(*shape)
        self.kind = kind
        self.dtype = dtype
        self.name = name or make_id()
        self.consumers: List["Layer"] = []
        size = self.shape.size()
        self.value: List[torch.Tensor] = [torch.zeros(size, dtype=dtype)]
        self.gradient: List[torch.Tensor] = [torch.zeros(size, dtype=dtype)]
        # Rows in use for the current batch; capacity is len(self.gradient).
        self.active = 1

    def __repr__(self) -> str:
        owner = self.producer.name if self.producer is not None else None
        return (
            f"Signal({self.name!r}, kind={self.kind.value}, shape={self.shape}, "
            f"producer={owner!r}, active={self.active})"
        )

    # --- Views ---------------------------------------------------------------

    @property
    def is_parameter(self) -> bool:
        return is_trainable_weight(self.kind)

    @property
    def samples(self) -> List[torch.Tensor]:
        """Value rows in use; the single parameter row for weight/bias signals."""
        if self.is_parameter:
            return self.value[:1]
        return self.value[: self.active]

    @property
    def gradients(self) -> List[torch.Tensor]:
        return self.gradient[: self.active]

    @property
    def weights(self) -> torch.Tensor:
        return self.value[0]

    @property
    def capacity(self) -> int:
        return len(self.gradient)

    # --- Sizing --------------------------------------------------------------

    def resize(self, sample_count: int) -> None:
        """
        Make room for ``sample_count`` samples.

        New value rows copy row 0; new gradient rows start at zero. Capacity
        never shrinks: a smaller batch only lowers ``active``.
        """
        if sample_count < 1:
            raise ValueError(f"sample_count must be >= 1, got {sample_count}")
        grown = False
        if not self.is_parameter:
            template = self.value[0]
            while len(self.value) < sample_count:
                self.value.append(template.clone())
                grown = True
        template = self.gradient[0]
        while len(self.gradient) < sample_count:
            self.gradient.append(torch.zeros_like(template))
            grown = True
        if grown:
            logger.debug("signal %s grew to %d rows", self.name, sample_count)
        self.active = sample_count

    # --- Gradients -----------------------------------------------------------

    def clear_gradients(self) -> None:
        for row in self.gradient:
            row.zero_()

    def accumulate(self, rows: Sequence[torch.Tensor]) -> None:
        """Add per-sample contributions into the gradient rows."""
        if len(rows) > self.capacity:
            self.resize(len(rows))
        for dst, src in zip(self.gradient, rows):
            dst.add_(src.reshape(-1).to(dtype=dst.dtype))

    def merge_gradients(self) -> torch.Tensor:
        """Sum of the active gradient rows as a single vector."""
        merged = self.gradient[0].clone()
        for row in self.gradient[1 : self.active]:
            merged.add_(row)
        return merged

    # --- Bulk writes ---------------------------------------------------------

    def set_samples(self, rows: Sequence[torch.Tensor]) -> None:
        if not rows:
            raise ValueError(f"Signal {self.name} requires at least one sample.")
        size = self.shape.size()
        if self.is_parameter:
            self.value[0].copy_(torch.as_tensor(rows[0], dtype=self.dtype).reshape(size))
            return
        self.resize(len(rows))
        for dst, src in zip(self.value, rows):
            dst.copy_(torch.as_tensor(src, dtype=self.dtype).reshape(size))

    def set_gradients(self, rows: Sequence[torch.Tensor]) -> None:
        if not rows:
            raise ValueError(f"Signal {self.name} requires at least one gradient row.")
        size = self.shape.size()
        self.resize(len(rows))
        for dst, src in zip(self.gradient, rows):
            dst.copy_(torch.as_tensor(src, dtype=self.dtype).reshape(size))
