# tigerflow/core.py

from __future__ import annotations

import abc
import enum
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Tuple,
    Union,
)

import torch

from .errors import ConnectionConflict, ShapeMismatch, UnsupportedOperation, describe
from .signal import ChannelType, Dim3, Signal, is_trainable_weight

logger = logging.getLogger(__name__)

# Parameter buffers at least this large are flagged for a parallel optimizer update.
PARALLEL_THRESHOLD = 512

Rows = List[torch.Tensor]
InitFn = Callable[[torch.Tensor, int, int], None]
OptimizerFn = Callable[[torch.Tensor, torch.Tensor, bool], None]
EventListener = Callable[[Dict[str, Any]], None]
Position = Tuple[int, int, int]


class Phase(enum.Enum):
    TRAIN = "train"
    TEST = "test"


@dataclass
class Neuron:
    """Connectivity of one output position: which inputs, weights and bias feed it."""

    position: Position
    inputs: List[Position] = field(default_factory=list)
    weights: List[Position] = field(default_factory=list)
    bias: Optional[Position] = None


def as_rows(data: Union[torch.Tensor, Sequence[torch.Tensor]]) -> Rows:
    """
    Normalise a batch into per-sample rows.

    A tensor is split along its first dimension (a 1-D tensor is one sample);
    a sequence is taken as rows already.
    """
    if isinstance(data, torch.Tensor):
        if data.dim() <= 1:
            return [data.reshape(-1)]
        return list(data.reshape(data.shape[0], -1).unbind(0))
    return [torch.as_tensor(row).reshape(-1) for row in data]


class Layer(abc.ABC):
    """
    Computation node of the graph.

    Responsibilities:
      - Declare ordered input/output slots with a channel kind each.
      - Report per-slot dimensions and compute forward/backward over sample rows.
      - Own (shared) its signals; track producer/consumer adjacency.
      - Drive its own setup, initialization and weight-update lifecycle.

    Subclasses implement input_dimensions(), output_dimensions(),
    forward_propagation() and backward_propagation().
    """

    def __init__(
        self,
        name: str,
        in_types: Sequence[ChannelType],
        out_types: Sequence[ChannelType],
    ) -> None:
        self.name = name
        self.id = -1
        self.in_types: List[ChannelType] = list(in_types)
        self.out_types: List[ChannelType] = list(out_types)
        self.inputs: List[Optional[Signal]] = [None] * len(self.in_types)
        self.outputs: List[Optional[Signal]] = [None] * len(self.out_types)
        self.trainable = True
        self.initialized = False
        self.visited = False
        self.parallelize = True
        self.phase = Phase.TRAIN
        self.visible = False
        self.dtype = torch.float32
        self.children: List["Layer"] = []
        self.dependencies: List["Layer"] = []
        self.weight_init: Optional[InitFn] = None
        self.bias_init: Optional[InitFn] = None
        self.on_expand: Optional[Callable[["Layer", List["Layer"]], None]] = None
        self.on_hide: Optional[Callable[["Layer"], None]] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, id={self.id})"

    def __rshift__(self, other: "Layer") -> "Layer":
        connect(self, other)
        return other

    @property
    def input_channels(self) -> int:
        return len(self.in_types)

    @property
    def output_channels(self) -> int:
        return len(self.out_types)

    # --- Plugin contract -----------------------------------------------------

    @abc.abstractmethod
    def input_dimensions(self) -> List[Dim3]:
        """Shape expected on each input slot."""

    @abc.abstractmethod
    def output_dimensions(self) -> List[Dim3]:
        """Shape produced on each output slot."""

    @abc.abstractmethod
    def forward_propagation(self, in_data: List[Rows], out_data: List[Rows]) -> None:
        """Read ``in_data`` and write ``out_data`` in place, one row per sample."""

    @abc.abstractmethod
    def backward_propagation(
        self,
        in_data: List[Rows],
        out_data: List[Rows],
        out_grad: List[Rows],
        in_grad: List[Rows],
    ) -> None:
        """Write upstream gradients into the (zeroed) rows of ``in_grad``."""

    def set_input_shape(self, shape: Dim3) -> None:
        raise UnsupportedOperation(
            f"Can't set shape of {describe(self)}: shape inference is not applicable for this layer."
        )

    def fan_in_size(self) -> int:
        return self.input_dimensions()[0].width

    def fan_out_size(self) -> int:
        return self.output_dimensions()[0].width

    def post(self) -> None:
        """Hook run after each weight update."""

    def set_phase(self, phase: Phase) -> None:
        self.phase = phase

    def stencil_input(self, pos: Position) -> List[Position]:
        raise UnsupportedOperation(f"{describe(self)} does not expose input stencils.")

    def stencil_weight(self, pos: Position) -> List[Position]:
        raise UnsupportedOperation(f"{describe(self)} does not expose weight stencils.")

    def stencil_bias(self, pos: Position) -> Optional[Position]:
        raise UnsupportedOperation(f"{describe(self)} does not expose bias stencils.")

    def neuron(self, pos: Position) -> Neuron:
        return Neuron(
            position=tuple(pos),
            inputs=self.stencil_input(pos),
            weights=self.stencil_weight(pos),
            bias=self.stencil_bias(pos),
        )

    # --- Introspection -------------------------------------------------------

    def input_size(self) -> Dim3:
        return self.input_dimensions()[0]

    def output_size(self) -> Dim3:
        return self.output_dimensions()[0]

    def input_data_size(self) -> int:
        return sum(dim.size() for dim in self.input_dimensions())

    def output_data_size(self) -> int:
        return sum(dim.size() for dim in self.output_dimensions())

    def aspect(self) -> float:
        dim = self.output_size()
        return dim.width / float(max(1, dim.height))

    def input(self, index: int) -> Signal:
        signal = self.inputs[index]
        if signal is None:
            raise RuntimeError(f"Input slot {index} of {describe(self)} is not allocated; call setup() first.")
        return signal

    def output(self, index: int) -> Signal:
        signal = self.outputs[index]
        if signal is None:
            raise RuntimeError(f"Output slot {index} of {describe(self)} is not allocated; call setup() first.")
        return signal

    def input_weights(self) -> List[torch.Tensor]:
        return [
            self.input(i).weights
            for i, kind in enumerate(self.in_types)
            if is_trainable_weight(kind)
        ]

    def output_weights(self) -> List[torch.Tensor]:
        return [
            self.output(i).weights
            for i, kind in enumerate(self.out_types)
            if is_trainable_weight(kind)
        ]

    def input_gradients(self) -> List[Rows]:
        return [
            self.input(i).gradients
            for i, kind in enumerate(self.in_types)
            if is_trainable_weight(kind)
        ]

    def output_gradients(self) -> List[Rows]:
        return [
            self.output(i).gradients
            for i, kind in enumerate(self.out_types)
            if is_trainable_weight(kind)
        ]

    def input_layers(self) -> List["Layer"]:
        return [s.producer for s in self.inputs if s is not None and s.producer is not None]

    def output_layers(self) -> List["Layer"]:
        layers: List[Layer] = []
        for signal in self.outputs:
            if signal is None:
                continue
            for consumer in signal.consumers:
                if consumer not in layers:
                    layers.append(consumer)
        return layers

    def is_root(self) -> bool:
        return not self.dependencies

    def is_leaf(self) -> bool:
        return not self.children

    def has_children(self) -> bool:
        return bool(self.children)

    def visited_dependencies(self) -> bool:
        return all(layer.visited for layer in self.dependencies)

    def visited_children(self) -> bool:
        return all(layer.visited for layer in self.children)

    @property
    def is_ready(self) -> bool:
        return (
            self.initialized
            and all(s is not None for s in self.inputs)
            and all(s is not None for s in self.outputs)
        )

    # --- Visualization hooks -------------------------------------------------

    def expand(self) -> None:
        for child in self.children:
            child.visible = True
        if self.on_expand is not None:
            self.on_expand(self, list(self.children))

    def hide(self) -> None:
        self.visible = False
        if self.on_hide is not None:
            self.on_hide(self)

    # --- Wiring --------------------------------------------------------------

    def add_child(self, layer: "Layer") -> None:
        if layer not in self.children:
            self.children.append(layer)
        if self not in layer.dependencies:
            layer.dependencies.append(self)

    def set_input_signal(self, index: int, signal: Signal) -> None:
        """Attach an existing signal (e.g. a weight shared with another layer) to an input slot."""
        expected = self.input_dimensions()[index]
        if expected.size() != signal.shape.size():
            raise ShapeMismatch(
                f"Cannot attach {signal!r} ({signal.shape.size()} elements) to input {index} of "
                f"{describe(self)} expecting {expected} ({expected.size()} elements)."
            )
        self._bind_input(index, signal)

    def _bind_input(self, index: int, signal: Signal) -> None:
        existing = self.inputs[index]
        if existing is signal:
            return
        if existing is not None:
            placeholder = existing.producer is None and all(c is self for c in existing.consumers)
            if not placeholder:
                owner = existing.producer.name if existing.producer is not None else "a shared signal"
                raise ConnectionConflict(
                    f"Input {index} of {describe(self)} is already bound to {owner}; "
                    f"refusing to rebind it to {signal!r}."
                )
            if self in existing.consumers:
                existing.consumers.remove(self)
        if signal.kind is not self.in_types[index]:
            raise ConnectionConflict(
                f"Input {index} of {describe(self)} carries {self.in_types[index].value} "
                f"but {signal!r} carries {signal.kind.value}."
            )
        self.inputs[index] = signal
        if self not in signal.consumers:
            signal.consumers.append(self)

    # --- Setup state machine -------------------------------------------------

    def setup(self, reset_weight: bool = False) -> None:
        """
        Validate wiring, allocate missing signals and (re)initialize weights.

        Existing signals are never reallocated. Nothing is allocated when the
        declared dimensions disagree with the wiring.
        """
        in_dims = self.input_dimensions()
        out_dims = self.output_dimensions()
        if len(in_dims) != self.input_channels or len(out_dims) != self.output_channels:
            raise ShapeMismatch(
                f"Connection mismatch at setup of {describe(self)}: declares {len(in_dims)} input / "
                f"{len(out_dims)} output dimensions for {self.input_channels} input / "
                f"{self.output_channels} output channels."
            )
        root = self.is_root()
        for index, kind in enumerate(self.in_types):
            signal = self.inputs[index]
            if kind is ChannelType.DATA and not root and (signal is None or signal.producer is None):
                raise ShapeMismatch(
                    f"Input {index} of {describe(self)} is not connected while other inputs are."
                )
            if signal is not None and signal.shape.size() != in_dims[index].size():
                raise ShapeMismatch(
                    f"Input {index} of {describe(self)} holds {signal.shape.size()} elements, "
                    f"declared {in_dims[index]}."
                )
        for index, dim in enumerate(list(in_dims) + list(out_dims)):
            if dim.size() == 0:
                raise ShapeMismatch(f"Slot {index} of {describe(self)} has an unresolved shape {dim}.")

        for index, kind in enumerate(self.out_types):
            if self.outputs[index] is None:
                self.outputs[index] = Signal(self, out_dims[index], kind, dtype=self.dtype)
                logger.debug("allocated output %d of %s (%s)", index, describe(self), out_dims[index])
        for index, kind in enumerate(self.in_types):
            if self.inputs[index] is None:
                signal = Signal(None, in_dims[index], kind, dtype=self.dtype)
                self.inputs[index] = signal
                signal.consumers.append(self)
                logger.debug("allocated input %d of %s (%s)", index, describe(self), kind.value)

        if reset_weight or not self.initialized:
            self.initialize_weights()

    def _ensure_output(self, index: int) -> Signal:
        """Allocate output ``index`` alone; wiring must not depend on the other slots being bound."""
        signal = self.outputs[index]
        if signal is not None:
            return signal
        dim = self.output_dimensions()[index]
        if dim.size() == 0:
            raise ShapeMismatch(f"Output {index} of {describe(self)} has an unresolved shape {dim}.")
        signal = Signal(self, dim, self.out_types[index], dtype=self.dtype)
        self.outputs[index] = signal
        logger.debug("allocated output %d of %s (%s)", index, describe(self), dim)
        return signal

    def initialize_weights(self) -> None:
        if not self.trainable:
            self.initialized = True
            return
        for index, kind in enumerate(self.in_types):
            if kind is ChannelType.WEIGHT and self.weight_init is not None:
                self.weight_init(self.input(index).weights, self.fan_in_size(), self.fan_out_size())
            elif kind is ChannelType.BIAS and self.bias_init is not None:
                self.bias_init(self.input(index).weights, self.fan_in_size(), self.fan_out_size())
        self.initialized = True

    # --- Sample bookkeeping --------------------------------------------------

    def set_sample_count(self, sample_count: int) -> None:
        """Grow (never shrink) every connected signal to hold ``sample_count`` samples."""
        for signal in self.inputs:
            if signal is not None:
                signal.resize(sample_count)
        for signal in self.outputs:
            if signal is not None:
                signal.resize(sample_count)

    def set_input_data(self, data: Sequence[Union[torch.Tensor, Sequence[torch.Tensor]]]) -> None:
        """Write one batch per data-kind input slot, in slot order."""
        slots = [i for i, kind in enumerate(self.in_types) if kind is ChannelType.DATA]
        if len(data) > len(slots):
            raise ValueError(f"{describe(self)} has {len(slots)} data inputs, got {len(data)} batches.")
        for index, batch in zip(slots, data):
            signal = self.input(index)
            signal.set_samples(as_rows(batch))
            signal.clear_gradients()

    def set_output_gradients(self, grads: Sequence[Union[torch.Tensor, Sequence[torch.Tensor]]]) -> None:
        """Overwrite the gradient rows of each data-kind output slot, in slot order."""
        slots = [i for i, kind in enumerate(self.out_types) if kind is ChannelType.DATA]
        if len(grads) > len(slots):
            raise ValueError(f"{describe(self)} has {len(slots)} data outputs, got {len(grads)} gradients.")
        for index, batch in zip(slots, grads):
            self.output(index).set_gradients(as_rows(batch))

    def output_data(self) -> List[Rows]:
        """Sample rows of data-kind outputs; weight/bias outputs are internal state."""
        return [
            self.output(i).samples
            for i, kind in enumerate(self.out_types)
            if kind is ChannelType.DATA
        ]

    def clear_gradients(self) -> None:
        for signal in self.inputs:
            if signal is not None:
                signal.clear_gradients()

    # --- Passes --------------------------------------------------------------

    def forward(self) -> None:
        data_slots = [i for i, kind in enumerate(self.in_types) if kind is ChannelType.DATA]
        first = self.input(data_slots[0]) if data_slots else self.input(0)
        self.set_sample_count(len(first.samples))
        in_data = [self.input(i).samples for i in range(self.input_channels)]
        for index in range(self.output_channels):
            self.output(index).clear_gradients()
        out_data = [self.output(i).samples for i in range(self.output_channels)]
        self.forward_propagation(in_data, out_data)

    def backward(self) -> None:
        in_data = [self.input(i).samples for i in range(self.input_channels)]
        out_data = [self.output(i).samples for i in range(self.output_channels)]
        out_grad = [self.output(i).gradients for i in range(self.output_channels)]
        in_grad = [
            [torch.zeros_like(row) for row in self.input(i).gradients]
            for i in range(self.input_channels)
        ]
        self.backward_propagation(in_data, out_data, out_grad, in_grad)
        for index, rows in enumerate(in_grad):
            self.input(index).accumulate(rows)

    def forward_with(self, inputs: Sequence[Union[torch.Tensor, Sequence[torch.Tensor]]]) -> List[Rows]:
        """Run this layer alone on ``inputs`` (one batch per data input) and return its outputs."""
        self.setup(False)
        self.set_input_data(inputs)
        self.forward()
        return self.output_data()

    def backward_with(self, out_grads: Sequence[Union[torch.Tensor, Sequence[torch.Tensor]]]) -> List[Rows]:
        """Backpropagate ``out_grads`` through this layer alone; returns every input's gradient rows."""
        self.setup(False)
        self.clear_gradients()
        self.set_output_gradients(out_grads)
        self.backward()
        return [[row.clone() for row in self.input(i).gradients] for i in range(self.input_channels)]

    # --- Weight update -------------------------------------------------------

    def update_weights(
        self,
        optimizer: OptimizerFn,
        batch_size: int,
        updated: Optional[Set[Signal]] = None,
    ) -> None:
        """
        Apply ``optimizer`` to every weight/bias input using the batch-averaged gradient.

        ``updated`` collects signals already stepped in this round so a weight
        shared by several layers is stepped once.
        """
        if not self.trainable:
            return
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        scale = 1.0 / float(batch_size)
        for index, kind in enumerate(self.in_types):
            if not is_trainable_weight(kind):
                continue
            signal = self.input(index)
            if updated is not None:
                if signal in updated:
                    continue
                updated.add(signal)
            target = signal.weights
            diff = signal.merge_gradients().mul_(scale)
            parallelize = target.numel() >= PARALLEL_THRESHOLD
            optimizer(diff, target, parallelize)
        self.clear_gradients()
        self.post()

    def has_same_weights(self, other: "Layer", eps: float) -> bool:
        mine = self.input_weights()
        theirs = other.input_weights()
        if len(mine) != len(theirs):
            return False
        for a, b in zip(mine, theirs):
            if a.numel() != b.numel():
                return False
            if a.numel() and float((a.reshape(-1) - b.reshape(-1)).abs().max().item()) > eps:
                return False
        return True


def _reaches(start: Layer, target: Layer) -> bool:
    stack = [start]
    seen: Set[int] = set()
    while stack:
        layer = stack.pop()
        if layer is target:
            return True
        if id(layer) in seen:
            continue
        seen.add(id(layer))
        stack.extend(layer.children)
    return False


def connect(head: Layer, tail: Layer, head_index: int = 0, tail_index: int = 0) -> Signal:
    """
    Wire output ``head_index`` of ``head`` into input ``tail_index`` of ``tail``.

    The same signal object is aliased into both slots. Connecting the same
    pair twice is a no-op; binding a different producer to a filled slot
    raises ConnectionConflict.
    """
    if _reaches(tail, head):
        raise ConnectionConflict(
            f"Connecting {describe(head)} -> {describe(tail)} would create a cycle."
        )
    out_dim = head.output_dimensions()[head_index]
    in_dim = tail.input_dimensions()[tail_index]
    if in_dim.size() == 0:
        tail.set_input_shape(out_dim)
        in_dim = tail.input_dimensions()[tail_index]
    if out_dim.size() != in_dim.size():
        raise ShapeMismatch(
            f"Output {head_index} of {describe(head)} ({out_dim}) does not match "
            f"input {tail_index} of {describe(tail)} ({in_dim})."
        )
    signal = head._ensure_output(head_index)
    tail._bind_input(tail_index, signal)
    head.add_child(tail)
    logger.debug("connected %s[%d] -> %s[%d]", head.name, head_index, tail.name, tail_index)
    return signal


LayerKey = Union[str, Layer]
BatchLike = Union[torch.Tensor, Sequence[torch.Tensor], Sequence[Union[torch.Tensor, Sequence[torch.Tensor]]]]


class Graph:
    """
    Container for layers and their connectivity.

    Responsibilities:
      - Own layers, assign ids and wire them together.
      - Cache forward/backward execution orders, invalidated on rewiring.
      - Run forward and backward passes with pass-scoped visited flags.
      - Coordinate batched weight updates across layers sharing weights.
      - Notify listeners of pass and layer events.
    """

    def __init__(self) -> None:
        self.layers: "OrderedDict[str, Layer]" = OrderedDict()
        self._next_id = 0
        self._structure_dirty = True
        self._forward_order: List[Layer] = []
        self._backward_order: List[Layer] = []
        self._listeners: List[EventListener] = []
        self._pass_index = 0

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers.values())

    def __len__(self) -> int:
        return len(self.layers)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Layer):
            return self.layers.get(item.name) is item
        return item in self.layers

    # --- Construction APIs ---

    def add(self, *layers: Layer) -> None:
        """
        Register one or more layers with the graph, assigning ids.
        """
        for layer in layers:
            if layer in self:
                continue
            if layer.name in self.layers:
                raise ConnectionConflict(f"Duplicate layer name {layer.name!r}")
            layer.id = self._next_id
            self._next_id += 1
            self.layers[layer.name] = layer
        self._structure_dirty = True

    def connect(self, head: LayerKey, tail: LayerKey, head_index: int = 0, tail_index: int = 0) -> Signal:
        """
        Connect head[head_index] -> tail[tail_index]; unknown layers are added first.
        """
        head_layer = self._coerce(head, add=True)
        tail_layer = self._coerce(tail, add=True)
        signal = connect(head_layer, tail_layer, head_index, tail_index)
        self._structure_dirty = True
        return signal

    def chain(self, *layers: Layer) -> Layer:
        """Connect each layer's first output to the next layer's first input; returns the last."""
        for head, tail in zip(layers, layers[1:]):
            self.connect(head, tail)
        return layers[-1]

    def tie(self, source: LayerKey, source_index: int, target: LayerKey, target_index: int) -> Signal:
        """
        Share the weight/bias signal of ``source`` input ``source_index`` with ``target``.
        """
        src = self._coerce(source, add=True)
        dst = self._coerce(target, add=True)
        if not is_trainable_weight(src.in_types[source_index]):
            raise ConnectionConflict(f"Input {source_index} of {describe(src)} is not a weight or bias slot.")
        src.setup(False)
        signal = src.input(source_index)
        dst.set_input_signal(target_index, signal)
        self._structure_dirty = True
        return signal

    def layer(self, name: str) -> Layer:
        if name not in self.layers:
            raise KeyError(f"Graph has no layer named {name!r}")
        return self.layers[name]

    def roots(self) -> List[Layer]:
        return [layer for layer in self if layer.is_root()]

    def leaves(self) -> List[Layer]:
        return [layer for layer in self if layer.is_leaf()]

    def parameters(self) -> List[Signal]:
        """Unique weight/bias signals, in layer order."""
        seen: List[Signal] = []
        for layer in self:
            for index, kind in enumerate(layer.in_types):
                signal = layer.inputs[index]
                if signal is None or not is_trainable_weight(kind):
                    continue
                if not any(signal is s for s in seen):
                    seen.append(signal)
        return seen

    def named_signals(self) -> Iterable[Tuple[str, Signal]]:
        for layer in self:
            for index, signal in enumerate(layer.inputs):
                if signal is not None:
                    yield f"{layer.name}.in{index}", signal
            for index, signal in enumerate(layer.outputs):
                if signal is not None:
                    yield f"{layer.name}.out{index}", signal

    # --- Events ---

    def register_event_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_event_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(payload)

    # --- Scheduling ---

    def forward_order(self) -> List[Layer]:
        self._ensure_structure()
        return list(self._forward_order)

    def backward_order(self) -> List[Layer]:
        self._ensure_structure()
        return list(self._backward_order)

    def reset_visited(self) -> None:
        for layer in self:
            layer.visited = False

    def _ensure_structure(self) -> None:
        if not self._structure_dirty:
            return
        for layer in self:
            for neighbor in layer.children + layer.dependencies:
                if neighbor not in self:
                    raise ValueError(
                        f"{describe(layer)} is wired to {describe(neighbor)}, which is not part of the graph."
                    )
        self._forward_order = self._schedule(forward=True)
        self._backward_order = self._schedule(forward=False)
        self._structure_dirty = False
        logger.debug("scheduled %d layers: %s", len(self._forward_order), [l.name for l in self._forward_order])

    def _schedule(self, forward: bool) -> List[Layer]:
        self.reset_visited()
        if forward:
            queue = deque(self.roots())
        else:
            queue = deque(self.leaves())
        order: List[Layer] = []
        while queue:
            layer = queue.popleft()
            if layer.visited:
                continue
            ready = layer.visited_dependencies() if forward else layer.visited_children()
            if not ready:
                # Re-queued by its last unvisited neighbor.
                continue
            layer.visited = True
            order.append(layer)
            queue.extend(layer.children if forward else layer.dependencies)
        self.reset_visited()
        if len(order) != len(self.layers):
            stuck = [layer.name for layer in self if layer not in order]
            raise ConnectionConflict(f"Graph contains a cycle through layers {stuck}.")
        return order

    # --- Passes ---

    def setup(self, reset_weights: bool = False) -> None:
        """Set up every layer in dependency order."""
        self._ensure_structure()
        for layer in self._forward_order:
            layer.setup(reset_weights)

    def set_phase(self, phase: Phase) -> None:
        for layer in self:
            layer.set_phase(phase)

    def forward(self, inputs: Optional[Mapping[LayerKey, BatchLike]] = None) -> Dict[str, torch.Tensor]:
        """
        Run one forward pass.

        Args:
          inputs: Mapping from root layer (or its name) to its batch: a tensor
            [N, ...] or a list of sample rows for a single data input, or a
            list of such batches for a layer with several data inputs.

        Returns:
          Mapping "<leaf>.out" (and "<leaf>.out<k>" for further data outputs) to
          a stacked [N, size] tensor.
        """
        self._ensure_structure()
        for layer in self._forward_order:
            if not layer.is_ready:
                layer.setup(False)
        self.reset_visited()
        self._pass_index += 1
        self._emit({"event": "pass_start", "pass": "forward", "index": self._pass_index})
        if inputs:
            for key, batch in inputs.items():
                layer = self._coerce(key)
                layer.set_input_data(self._split_batches(layer, batch))
        for position, layer in enumerate(self._forward_order):
            if not layer.visited_dependencies():
                raise RuntimeError(f"{describe(layer)} scheduled before its dependencies.")
            layer.forward()
            layer.visited = True
            self._emit(
                {"event": "layer_forward", "pass": "forward", "index": self._pass_index,
                 "layer": layer.name, "id": layer.id, "order": position}
            )
        self._emit({"event": "pass_end", "pass": "forward", "index": self._pass_index})
        return self.outputs()

    def backward(self, output_grads: Optional[Mapping[LayerKey, BatchLike]] = None) -> None:
        """
        Run one backward pass; ``output_grads`` maps leaf layers to their output gradients.
        """
        self._ensure_structure()
        self.reset_visited()
        self._pass_index += 1
        self._emit({"event": "pass_start", "pass": "backward", "index": self._pass_index})
        if output_grads:
            for key, batch in output_grads.items():
                layer = self._coerce(key)
                layer.set_output_gradients(self._split_batches(layer, batch, outputs=True))
        for position, layer in enumerate(self._backward_order):
            if not layer.visited_children():
                raise RuntimeError(f"{describe(layer)} scheduled before its children.")
            layer.backward()
            layer.visited = True
            self._emit(
                {"event": "layer_backward", "pass": "backward", "index": self._pass_index,
                 "layer": layer.name, "id": layer.id, "order": position}
            )
        self._emit({"event": "pass_end", "pass": "backward", "index": self._pass_index})

    def update_weights(self, optimizer: OptimizerFn, batch_size: int) -> None:
        """Step every trainable layer; shared weights are stepped once."""
        self._ensure_structure()
        updated: Set[Signal] = set()
        for layer in self._forward_order:
            layer.update_weights(optimizer, batch_size, updated)
        self._emit({"event": "weights_updated", "batch_size": batch_size, "signals": len(updated)})

    def outputs(self) -> Dict[str, torch.Tensor]:
        results: Dict[str, torch.Tensor] = {}
        for layer in self.leaves():
            for k, rows in enumerate(layer.output_data()):
                key = f"{layer.name}.out" if k == 0 else f"{layer.name}.out{k}"
                results[key] = torch.stack(rows, dim=0)
        return results

    # --- Internal helpers ---

    def _coerce(self, key: LayerKey, add: bool = False) -> Layer:
        if isinstance(key, Layer):
            if key not in self:
                if not add:
                    raise KeyError(f"{describe(key)} is not part of the graph.")
                self.add(key)
            return key
        return self.layer(key)

    @staticmethod
    def _split_batches(layer: Layer, batch: BatchLike, outputs: bool = False) -> List[Any]:
        kinds = layer.out_types if outputs else layer.in_types
        data_slots = sum(1 for kind in kinds if kind is ChannelType.DATA)
        if isinstance(batch, torch.Tensor) or data_slots <= 1:
            return [batch]
        return list(batch)
