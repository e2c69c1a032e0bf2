# tigerflow/layers.py

from __future__ import annotations

import enum
import math
from typing import List, Optional, Union

import torch
import torch.nn.functional as F
from torch.nn import grad as nn_grad

from . import weight_init
from .core import Layer, Phase, Position, Rows
from .errors import BackendAllocationFailure, ShapeMismatch, describe
from .signal import ChannelType, Dim3, channel_order

DATA = ChannelType.DATA


class BackendType(enum.Enum):
    INTERNAL = "internal"
    AVX = "avx"
    NNPACK = "nnpack"
    LIBDNN = "libdnn"
    OPENCL = "opencl"


SUPPORTED_BACKENDS = (BackendType.INTERNAL,)


def _allocate_backend(layer: Layer, backend: Union[str, BackendType]) -> BackendType:
    try:
        resolved = BackendType(backend)
    except ValueError as exc:
        raise BackendAllocationFailure(f"Unknown backend {backend!r} for {describe(layer)}.") from exc
    if resolved not in SUPPORTED_BACKENDS:
        raise BackendAllocationFailure(
            f"Backend {resolved.value!r} is not supported for {describe(layer)}; "
            f"available: {[b.value for b in SUPPORTED_BACKENDS]}."
        )
    return resolved


def _stack(rows: Rows) -> torch.Tensor:
    return torch.stack(list(rows), dim=0)


def _write(rows: Rows, values: torch.Tensor) -> None:
    for row, value in zip(rows, values):
        row.copy_(value.reshape(-1))


class _ShapedLayer(Layer):
    """Single data in/out layer whose shape may be inferred from its producer."""

    def __init__(self, name: str, shape: Optional[Dim3], num_inputs: int = 1) -> None:
        super().__init__(name, [DATA] * num_inputs, [DATA])
        self.shape = Dim3(*shape) if shape is not None else Dim3()

    def set_input_shape(self, shape: Dim3) -> None:
        self.shape = Dim3(*shape)

    def input_dimensions(self) -> List[Dim3]:
        return [self.shape] * self.input_channels

    def output_dimensions(self) -> List[Dim3]:
        return [self.shape]

    def stencil_input(self, pos: Position) -> List[Position]:
        return [tuple(pos)]

    def stencil_weight(self, pos: Position) -> List[Position]:
        return []

    def stencil_bias(self, pos: Position) -> Optional[Position]:
        return None


class InputLayer(_ShapedLayer):
    """Root of a network: copies externally supplied samples onto its output."""

    def __init__(self, shape: Dim3, name: str = "input") -> None:
        super().__init__(name, shape)
        self.trainable = False

    def set_input_shape(self, shape: Dim3) -> None:
        Layer.set_input_shape(self, shape)

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        for dst, src in zip(out_data[0], in_data[0]):
            dst.copy_(src)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        for dst, src in zip(in_grad[0], out_grad[0]):
            dst.copy_(src)


class IdentityLayer(_ShapedLayer):
    def __init__(self, shape: Optional[Dim3] = None, name: str = "identity") -> None:
        super().__init__(name, shape)
        self.trainable = False

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        for dst, src in zip(out_data[0], in_data[0]):
            dst.copy_(src)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        for dst, src in zip(in_grad[0], out_grad[0]):
            dst.copy_(src)


class ActivationLayer(_ShapedLayer):
    """Element-wise nonlinearity; the derivative is taken from the output."""

    KINDS = ("relu", "tanh", "sigmoid", "identity")

    def __init__(self, shape: Optional[Dim3] = None, kind: str = "relu", name: Optional[str] = None) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unsupported activation {kind!r}; expected one of {self.KINDS}")
        super().__init__(name or kind, shape)
        self.kind = kind
        self.trainable = False

    def _apply(self, x: torch.Tensor) -> torch.Tensor:
        if self.kind == "relu":
            return torch.relu(x)
        if self.kind == "tanh":
            return torch.tanh(x)
        if self.kind == "sigmoid":
            return torch.sigmoid(x)
        return x

    def _derivative(self, y: torch.Tensor) -> torch.Tensor:
        if self.kind == "relu":
            return (y > 0).to(y.dtype)
        if self.kind == "tanh":
            return 1.0 - y * y
        if self.kind == "sigmoid":
            return y * (1.0 - y)
        return torch.ones_like(y)

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        _write(out_data[0], self._apply(_stack(in_data[0])))

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        y = _stack(out_data[0])
        _write(in_grad[0], _stack(out_grad[0]) * self._derivative(y))


class AddLayer(_ShapedLayer):
    """Element-wise sum of ``num_inputs`` data inputs of equal shape."""

    def __init__(self, shape: Optional[Dim3] = None, num_inputs: int = 2, name: str = "add") -> None:
        if num_inputs < 1:
            raise ValueError("num_inputs must be >= 1")
        super().__init__(name, shape, num_inputs=num_inputs)
        self.trainable = False

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        total = _stack(in_data[0]).clone()
        for rows in in_data[1:]:
            total.add_(_stack(rows))
        _write(out_data[0], total)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        for grads in in_grad:
            for dst, src in zip(grads, out_grad[0]):
                dst.copy_(src)


class FullyConnectedLayer(Layer):
    """
    Dense layer: y = x W + b with W stored row-major as [in_dim, out_dim].
    """

    def __init__(
        self,
        in_dim: int,
        out_dim: int,
        has_bias: bool = True,
        backend: Union[str, BackendType] = BackendType.INTERNAL,
        name: str = "fully_connected",
    ) -> None:
        super().__init__(name, channel_order(has_bias), [DATA])
        if in_dim < 1 or out_dim < 1:
            raise ValueError("in_dim and out_dim must be >= 1")
        self.in_dim = int(in_dim)
        self.out_dim = int(out_dim)
        self.has_bias = has_bias
        self.backend = _allocate_backend(self, backend)
        self.weight_init = weight_init.xavier()
        self.bias_init = weight_init.constant(0.0)

    def input_dimensions(self) -> List[Dim3]:
        dims = [Dim3(self.in_dim, 1, 1), Dim3(self.in_dim, self.out_dim, 1)]
        if self.has_bias:
            dims.append(Dim3(self.out_dim, 1, 1))
        return dims

    def output_dimensions(self) -> List[Dim3]:
        return [Dim3(self.out_dim, 1, 1)]

    def fan_in_size(self) -> int:
        return self.in_dim

    def fan_out_size(self) -> int:
        return self.out_dim

    def _weight(self, in_data: List[Rows]) -> torch.Tensor:
        return in_data[1][0].view(self.in_dim, self.out_dim)

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        x = _stack(in_data[0])
        y = x @ self._weight(in_data)
        if self.has_bias:
            y = y + in_data[2][0]
        _write(out_data[0], y)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        x = _stack(in_data[0])
        dy = _stack(out_grad[0])
        _write(in_grad[0], dy @ self._weight(in_data).t())
        for sample, dst in enumerate(in_grad[1]):
            dst.add_(torch.outer(x[sample], dy[sample]).reshape(-1))
        if self.has_bias:
            for sample, dst in enumerate(in_grad[2]):
                dst.add_(dy[sample])

    def stencil_input(self, pos: Position) -> List[Position]:
        return [(c, 0, 0) for c in range(self.in_dim)]

    def stencil_weight(self, pos: Position) -> List[Position]:
        return [(c, pos[0], 0) for c in range(self.in_dim)]

    def stencil_bias(self, pos: Position) -> Optional[Position]:
        return (pos[0], 0, 0) if self.has_bias else None


class AveragePoolLayer(Layer):
    """Non-overlapping mean over pool_size x pool_size windows, per channel."""

    def __init__(
        self,
        width: int,
        height: int,
        depth: int,
        pool_size: int,
        has_bias: bool = False,
        name: str = "average_pool",
    ) -> None:
        in_types = [DATA, ChannelType.BIAS] if has_bias else [DATA]
        super().__init__(name, in_types, [DATA])
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        if width % pool_size != 0 or height % pool_size != 0:
            raise ShapeMismatch(
                f"Map size {width}x{height} of {describe(self)} must be divisible by pool size {pool_size}."
            )
        self.in_shape = Dim3(width, height, depth)
        self.pool_size = int(pool_size)
        self.has_bias = has_bias
        self.out_shape = Dim3(width // pool_size, height // pool_size, depth)
        if has_bias:
            self.bias_init = weight_init.constant(0.0)

    def input_dimensions(self) -> List[Dim3]:
        dims = [self.in_shape]
        if self.has_bias:
            dims.append(Dim3(1, 1, self.in_shape.depth))
        return dims

    def output_dimensions(self) -> List[Dim3]:
        return [self.out_shape]

    def fan_in_size(self) -> int:
        return self.pool_size * self.pool_size

    def fan_out_size(self) -> int:
        return 1

    def _maps(self, rows: Rows, shape: Dim3) -> torch.Tensor:
        return _stack(rows).view(-1, shape.depth, shape.height, shape.width)

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        y = F.avg_pool2d(self._maps(in_data[0], self.in_shape), self.pool_size)
        if self.has_bias:
            y = y + in_data[1][0].view(1, -1, 1, 1)
        _write(out_data[0], y)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        k = self.pool_size
        dy = self._maps(out_grad[0], self.out_shape)
        dx = dy.repeat_interleave(k, dim=2).repeat_interleave(k, dim=3) / float(k * k)
        _write(in_grad[0], dx)
        if self.has_bias:
            per_channel = dy.sum(dim=(2, 3))
            for sample, dst in enumerate(in_grad[1]):
                dst.add_(per_channel[sample])

    def stencil_input(self, pos: Position) -> List[Position]:
        x, y, c = pos
        k = self.pool_size
        return [(x * k + i, y * k + j, c) for j in range(k) for i in range(k)]

    def stencil_weight(self, pos: Position) -> List[Position]:
        return []

    def stencil_bias(self, pos: Position) -> Optional[Position]:
        return (0, 0, pos[2]) if self.has_bias else None


class BatchNormLayer(_ShapedLayer):
    """
    Per-channel batch normalization without learned scale/shift.

    Training passes normalize with batch statistics; post() folds them into
    running statistics, which Phase.TEST passes use instead.
    """

    def __init__(
        self,
        shape: Optional[Dim3] = None,
        momentum: float = 0.999,
        eps: float = 1e-5,
        name: str = "batch_norm",
    ) -> None:
        super().__init__(name, shape)
        self.momentum = float(momentum)
        self.eps = float(eps)
        self.running_mean: Optional[torch.Tensor] = None
        self.running_variance: Optional[torch.Tensor] = None
        self._batch_mean: Optional[torch.Tensor] = None
        self._batch_variance: Optional[torch.Tensor] = None
        self._stddev: Optional[torch.Tensor] = None

    def _channels(self, rows: Rows) -> torch.Tensor:
        # [N, C, H*W]
        return _stack(rows).view(-1, self.shape.depth, self.shape.width * self.shape.height)

    def _ensure_running(self, like: torch.Tensor) -> None:
        if self.running_mean is None or self.running_mean.numel() != self.shape.depth:
            self.running_mean = torch.zeros(self.shape.depth, dtype=like.dtype)
            self.running_variance = torch.ones(self.shape.depth, dtype=like.dtype)

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        x = self._channels(in_data[0])
        self._ensure_running(x)
        if self.phase is Phase.TRAIN:
            mean = x.mean(dim=(0, 2))
            variance = x.var(dim=(0, 2), unbiased=False)
            self._batch_mean = mean
            self._batch_variance = variance
        else:
            mean = self.running_mean
            variance = self.running_variance
        self._stddev = torch.sqrt(variance + self.eps)
        y = (x - mean.view(1, -1, 1)) / self._stddev.view(1, -1, 1)
        _write(out_data[0], y)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        if self._stddev is None:
            raise RuntimeError(f"{describe(self)} must run forward before backward.")
        dy = self._channels(out_grad[0])
        stddev = self._stddev.view(1, -1, 1)
        if self.phase is Phase.TRAIN:
            y = self._channels(out_data[0])
            mean_dy = dy.mean(dim=(0, 2), keepdim=True)
            mean_dy_y = (dy * y).mean(dim=(0, 2), keepdim=True)
            dx = (dy - mean_dy - y * mean_dy_y) / stddev
        else:
            dx = dy / stddev
        _write(in_grad[0], dx)

    def post(self) -> None:
        if self.phase is not Phase.TRAIN or self._batch_mean is None:
            return
        m = self.momentum
        self.running_mean = m * self.running_mean + (1.0 - m) * self._batch_mean
        self.running_variance = m * self.running_variance + (1.0 - m) * self._batch_variance


class DeconvolutionLayer(Layer):
    """
    Transposed 2-D convolution.

    Weights are laid out as out_channels x in_channels maps of
    window_height x window_width. With padding="same" the full output is
    cropped around the window center to in * stride.
    """

    def __init__(
        self,
        in_width: int,
        in_height: int,
        window_width: int,
        window_height: int,
        in_channels: int,
        out_channels: int,
        padding: str = "valid",
        has_bias: bool = True,
        w_stride: int = 1,
        h_stride: int = 1,
        backend: Union[str, BackendType] = BackendType.INTERNAL,
        name: str = "deconvolution",
    ) -> None:
        super().__init__(name, channel_order(has_bias), [DATA])
        if padding not in ("valid", "same"):
            raise ValueError("padding must be 'valid' or 'same'")
        self.in_shape = Dim3(in_width, in_height, in_channels)
        self.window = Dim3(window_width, window_height, in_channels * out_channels)
        self.out_channels = int(out_channels)
        self.padding = padding
        self.has_bias = has_bias
        self.w_stride = int(w_stride)
        self.h_stride = int(h_stride)
        self.out_shape = Dim3(
            self.out_length(in_width, window_width, self.w_stride),
            self.out_length(in_height, window_height, self.h_stride),
            out_channels,
        )
        self.out_unpadded = Dim3(
            self.out_unpadded_length(in_width, window_width, self.w_stride, padding),
            self.out_unpadded_length(in_height, window_height, self.h_stride, padding),
            out_channels,
        )
        self.backend = _allocate_backend(self, backend)
        self.weight_init = weight_init.xavier()
        self.bias_init = weight_init.constant(0.0)

    @staticmethod
    def out_length(in_length: int, window_size: int, stride: int) -> int:
        return int(math.ceil(float(in_length) * stride + window_size - 1))

    @staticmethod
    def out_unpadded_length(in_length: int, window_size: int, stride: int, padding: str) -> int:
        if padding == "same":
            return int(math.ceil(float(in_length) * stride))
        return int(math.ceil(float(in_length) * stride + window_size - 1))

    def input_dimensions(self) -> List[Dim3]:
        dims = [self.in_shape, self.window]
        if self.has_bias:
            dims.append(Dim3(1, 1, self.out_channels))
        return dims

    def output_dimensions(self) -> List[Dim3]:
        return [self.out_unpadded]

    def fan_in_size(self) -> int:
        return self.window.width * self.window.height * self.in_shape.depth

    def fan_out_size(self) -> int:
        return (self.window.width * self.w_stride) * (self.window.height * self.h_stride) * self.out_channels

    def _kernel(self, in_data: List[Rows]) -> torch.Tensor:
        # conv_transpose2d expects [in_channels, out_channels, kH, kW]
        w = in_data[1][0].view(self.out_channels, self.in_shape.depth, self.window.height, self.window.width)
        return w.transpose(0, 1)

    def _crop(self) -> tuple:
        if self.padding == "valid":
            return 0, 0
        return self.window.height // 2, self.window.width // 2

    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        x = _stack(in_data[0]).view(-1, self.in_shape.depth, self.in_shape.height, self.in_shape.width)
        full = F.conv_transpose2d(
            x,
            self._kernel(in_data),
            stride=(self.h_stride, self.w_stride),
            output_padding=(self.h_stride - 1, self.w_stride - 1),
        )
        top, left = self._crop()
        y = full[:, :, top : top + self.out_unpadded.height, left : left + self.out_unpadded.width]
        if self.has_bias:
            y = y + in_data[2][0].view(1, -1, 1, 1)
        _write(out_data[0], y)

    def backward_propagation(self, in_data, out_data, out_grad, in_grad) -> None:
        dy = _stack(out_grad[0]).view(-1, self.out_channels, self.out_unpadded.height, self.out_unpadded.width)
        top, left = self._crop()
        full = dy.new_zeros(dy.shape[0], self.out_channels, self.out_shape.height, self.out_shape.width)
        full[:, :, top : top + self.out_unpadded.height, left : left + self.out_unpadded.width] = dy
        kernel = self._kernel(in_data)
        stride = (self.h_stride, self.w_stride)
        _write(in_grad[0], F.conv2d(full, kernel, stride=stride))

        x = _stack(in_data[0]).view(-1, self.in_shape.depth, self.in_shape.height, self.in_shape.width)
        for sample, dst in enumerate(in_grad[1]):
            dw = nn_grad.conv2d_weight(full[sample : sample + 1], kernel.shape, x[sample : sample + 1], stride=stride)
            dst.add_(dw.transpose(0, 1).reshape(-1))
        if self.has_bias:
            per_channel = dy.sum(dim=(2, 3))
            for sample, dst in enumerate(in_grad[2]):
                dst.add_(per_channel[sample])
