# tigerflow/persistence.py

"""
Snapshot and restore of layer buffers.

A NeuralState holds the weight/bias buffers of one layer together with their
gradients and the layer's output responses. States are written as JSON
(``.json``), HDF5 (``.h5`` / ``.hdf5``, requires h5py) or a torch archive
(any other suffix).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Union

import torch

from .core import Graph, Layer
from .errors import ShapeMismatch, describe
from .signal import ChannelType, Signal

try:
    import h5py  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    h5py = None  # type: ignore

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
Knowledge = List[torch.Tensor]

_HDF5_SUFFIXES = (".h5", ".hdf5")


@dataclass
class NeuralState:
    name: str = ""
    weights: Knowledge = field(default_factory=list)
    weight_changes: Knowledge = field(default_factory=list)
    bias_weights: Knowledge = field(default_factory=list)
    bias_weight_changes: Knowledge = field(default_factory=list)
    responses: Knowledge = field(default_factory=list)
    response_changes: Knowledge = field(default_factory=list)
    bias_responses: Knowledge = field(default_factory=list)
    bias_response_changes: Knowledge = field(default_factory=list)

    @classmethod
    def buffer_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name != "name"]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name}
        for key in self.buffer_names():
            out[key] = [t.detach().cpu().tolist() for t in getattr(self, key)]
        return out

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "NeuralState":
        kwargs: Dict[str, Any] = {"name": str(payload.get("name", ""))}
        for key in cls.buffer_names():
            kwargs[key] = [torch.tensor(row, dtype=torch.float32) for row in payload.get(key, [])]
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Layer <-> state
# ---------------------------------------------------------------------------

def _slots(layer: Layer, outputs: bool, kind: ChannelType) -> List[Signal]:
    kinds = layer.out_types if outputs else layer.in_types
    signals = layer.outputs if outputs else layer.inputs
    return [s for k, s in zip(kinds, signals) if k is kind and s is not None]


def _concat(rows: List[torch.Tensor]) -> torch.Tensor:
    if not rows:
        return torch.zeros(0)
    return torch.cat([row.reshape(-1) for row in rows]).clone()


def layer_state(layer: Layer) -> NeuralState:
    """
    Capture ``layer``'s buffers.

    Weights and bias weights are the parameter rows of weight/bias inputs and
    their changes the merged gradients. Responses are the data outputs
    (all active samples concatenated) and bias responses any weight/bias
    outputs the layer produces.
    """
    weight_inputs = _slots(layer, False, ChannelType.WEIGHT)
    bias_inputs = _slots(layer, False, ChannelType.BIAS)
    data_outputs = _slots(layer, True, ChannelType.DATA)
    param_outputs = _slots(layer, True, ChannelType.WEIGHT) + _slots(layer, True, ChannelType.BIAS)
    return NeuralState(
        name=layer.name,
        weights=[s.weights.clone() for s in weight_inputs],
        weight_changes=[s.merge_gradients() for s in weight_inputs],
        bias_weights=[s.weights.clone() for s in bias_inputs],
        bias_weight_changes=[s.merge_gradients() for s in bias_inputs],
        responses=[_concat(s.samples) for s in data_outputs],
        response_changes=[_concat(s.gradients) for s in data_outputs],
        bias_responses=[s.weights.clone() for s in param_outputs],
        bias_response_changes=[s.merge_gradients() for s in param_outputs],
    )


def apply_state(layer: Layer, state: NeuralState) -> None:
    """
    Restore weight and bias weights from ``state`` into ``layer``.

    Every buffer is validated before any is written; on mismatch nothing
    changes and ShapeMismatch is raised. Responses are captured for
    inspection only and are not written back.
    """
    layer.setup(False)
    weight_inputs = _slots(layer, False, ChannelType.WEIGHT)
    bias_inputs = _slots(layer, False, ChannelType.BIAS)
    pairs = []
    for label, signals, buffers in (
        ("weights", weight_inputs, state.weights),
        ("bias_weights", bias_inputs, state.bias_weights),
    ):
        if len(signals) != len(buffers):
            raise ShapeMismatch(
                f"State {state.name!r} has {len(buffers)} {label} buffers; "
                f"{describe(layer)} has {len(signals)}."
            )
        for signal, buffer in zip(signals, buffers):
            if buffer.numel() != signal.weights.numel():
                raise ShapeMismatch(
                    f"State {state.name!r} {label} buffer holds {buffer.numel()} values; "
                    f"{describe(layer)} expects {signal.weights.numel()}."
                )
            pairs.append((signal, buffer))
    with torch.no_grad():
        for signal, buffer in pairs:
            signal.weights.copy_(buffer.reshape(-1).to(signal.dtype))
    layer.initialized = True


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def _require_h5py() -> None:
    if h5py is None:
        raise RuntimeError("h5py is required to read or write HDF5 states. Install h5py or use .json / .pt.")


def _write_h5_state(group: Any, state: NeuralState) -> None:
    group.attrs["name"] = state.name
    for key in NeuralState.buffer_names():
        sub = group.create_group(key)
        for index, tensor in enumerate(getattr(state, key)):
            sub.create_dataset(str(index), data=tensor.detach().cpu().numpy())


def _read_h5_state(group: Any) -> NeuralState:
    kwargs: Dict[str, Any] = {"name": str(group.attrs.get("name", ""))}
    for key in NeuralState.buffer_names():
        rows: Knowledge = []
        if key in group:
            sub = group[key]
            for index in sorted(sub.keys(), key=int):
                rows.append(torch.from_numpy(sub[index][...]).float())
        kwargs[key] = rows
    return NeuralState(**kwargs)


def write_neural_state(path: PathLike, state: NeuralState) -> None:
    target = Path(path)
    suffix = target.suffix.lower()
    if suffix == ".json":
        with target.open("w", encoding="utf-8") as handle:
            json.dump({"neuralstate": state.to_dict()}, handle)
    elif suffix in _HDF5_SUFFIXES:
        _require_h5py()
        with h5py.File(target, "w") as handle:
            _write_h5_state(handle.create_group("neuralstate"), state)
    else:
        torch.save({"neuralstate": state.to_dict()}, target)
    logger.debug("wrote neural state %r to %s", state.name, target)


def read_neural_state(path: PathLike) -> NeuralState:
    source = Path(path)
    suffix = source.suffix.lower()
    if suffix == ".json":
        with source.open("r", encoding="utf-8") as handle:
            return NeuralState.from_dict(json.load(handle)["neuralstate"])
    if suffix in _HDF5_SUFFIXES:
        _require_h5py()
        with h5py.File(source, "r") as handle:
            return _read_h5_state(handle["neuralstate"])
    return NeuralState.from_dict(torch.load(source)["neuralstate"])


def save_graph_state(graph: Graph, path: PathLike) -> None:
    """Write one NeuralState per layer, keyed by layer name."""
    target = Path(path)
    states = {layer.name: layer_state(layer) for layer in graph}
    suffix = target.suffix.lower()
    if suffix == ".json":
        with target.open("w", encoding="utf-8") as handle:
            json.dump({name: s.to_dict() for name, s in states.items()}, handle)
    elif suffix in _HDF5_SUFFIXES:
        _require_h5py()
        with h5py.File(target, "w") as handle:
            for name, state in states.items():
                _write_h5_state(handle.create_group(name), state)
    else:
        torch.save({name: s.to_dict() for name, s in states.items()}, target)
    logger.info("saved %d layer states to %s", len(states), target)


def load_graph_state(graph: Graph, path: PathLike) -> None:
    """
    Restore weights for every layer of ``graph`` found in ``path``.

    All states are validated against their layers before any layer is written.
    """
    source = Path(path)
    suffix = source.suffix.lower()
    if suffix == ".json":
        with source.open("r", encoding="utf-8") as handle:
            states = {k: NeuralState.from_dict(v) for k, v in json.load(handle).items()}
    elif suffix in _HDF5_SUFFIXES:
        _require_h5py()
        with h5py.File(source, "r") as handle:
            states = {k: _read_h5_state(handle[k]) for k in handle.keys()}
    else:
        states = {k: NeuralState.from_dict(v) for k, v in torch.load(source).items()}

    missing = [layer.name for layer in graph if layer.name not in states]
    if missing:
        raise KeyError(f"State file {source} has no entry for layers {missing}")
    for layer in graph:
        _validate(layer, states[layer.name])
    for layer in graph:
        apply_state(layer, states[layer.name])
    logger.info("loaded %d layer states from %s", len(graph), source)


def _validate(layer: Layer, state: NeuralState) -> None:
    layer.setup(False)
    weights = _slots(layer, False, ChannelType.WEIGHT)
    biases = _slots(layer, False, ChannelType.BIAS)
    expected = [s.weights.numel() for s in weights] + [s.weights.numel() for s in biases]
    actual = [t.numel() for t in state.weights] + [t.numel() for t in state.bias_weights]
    if len(state.weights) != len(weights) or len(state.bias_weights) != len(biases) or expected != actual:
        raise ShapeMismatch(f"State {state.name!r} does not fit {describe(layer)}: {actual} vs {expected}.")
