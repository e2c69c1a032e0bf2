from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import torch

from .core import Graph, Layer
from .signal import ChannelType

logger = logging.getLogger(__name__)


@dataclass
class StatRecord:
    name: str
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float


@dataclass
class GradientSummary:
    layers: List[StatRecord]
    parameters: List[StatRecord]
    frozen_layers: List[str]

    def to_text(self, top_k: Optional[int] = None) -> str:
        sections: List[str] = []

        def _fmt_section(title: str, rows: Sequence[StatRecord]) -> Optional[str]:
            if not rows:
                return None
            lines = [f"{title} gradients:"]
            limit = rows if top_k is None else rows[:top_k]
            for rec in limit:
                lines.append(
                    f"  {rec.name:<30} |l2|={rec.l2:.4e} "
                    f"|max|={rec.max_abs:.4e} mean|g|={rec.mean_abs:.4e} "
                    f"zero%={rec.zero_frac * 100:5.2f}"
                )
            return "\n".join(lines)

        for label, rows in (("Layer", self.layers), ("Parameter", self.parameters)):
            block = _fmt_section(label, rows)
            if block:
                sections.append(block)

        if self.frozen_layers:
            sections.append("Frozen layers: " + ", ".join(sorted(self.frozen_layers)))

        return "\n".join(sections)


class _StatBucket:
    __slots__ = ("entries", "l2_sum", "abs_sum", "max_abs", "zero_count", "elem_count")

    def __init__(self) -> None:
        self.entries = 0
        self.l2_sum = 0.0
        self.abs_sum = 0.0
        self.max_abs = 0.0
        self.zero_count = 0
        self.elem_count = 0

    def add(self, rows: Sequence[torch.Tensor]) -> None:
        if not rows:
            return
        data = torch.stack([row.detach().reshape(-1) for row in rows])
        if data.numel() == 0:
            return
        abs_val = data.abs()
        self.entries += 1
        self.l2_sum += float(data.norm().item())
        self.abs_sum += float(abs_val.sum().item())
        self.max_abs = max(self.max_abs, float(abs_val.max().item()))
        self.zero_count += int((abs_val <= 1e-9).sum().item())
        self.elem_count += data.numel()

    def to_record(self, name: str) -> StatRecord:
        if self.entries == 0 or self.elem_count == 0:
            return StatRecord(name=name, l2=0.0, max_abs=0.0, mean_abs=0.0, zero_frac=0.0)
        return StatRecord(
            name=name,
            l2=self.l2_sum / self.entries,
            max_abs=self.max_abs,
            mean_abs=self.abs_sum / self.elem_count,
            zero_frac=self.zero_count / max(1, self.elem_count),
        )


class GradientWatcher:
    """
    Track gradient flow through a Graph.

    After each layer's backward step the watcher reads the gradients that
    layer wrote into its inputs: data inputs are aggregated per layer, weight
    and bias inputs per parameter slot ("<layer>.in<k>").
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self._layer_stats: Dict[str, _StatBucket] = {}
        self._param_stats: Dict[str, _StatBucket] = {}
        self.graph.register_event_listener(self._on_event)

    def close(self) -> None:
        self.graph.unregister_event_listener(self._on_event)

    def _on_event(self, payload: Dict[str, Any]) -> None:
        if payload.get("event") != "layer_backward":
            return
        layer = self.graph.layer(str(payload["layer"]))
        for index, kind in enumerate(layer.in_types):
            signal = layer.inputs[index]
            if signal is None:
                continue
            if kind is ChannelType.DATA:
                bucket = self._layer_stats.setdefault(layer.name, _StatBucket())
            elif layer.trainable:
                bucket = self._param_stats.setdefault(f"{layer.name}.in{index}", _StatBucket())
            else:
                continue
            bucket.add(signal.gradients)

    def reset(self) -> None:
        self._layer_stats.clear()
        self._param_stats.clear()

    def pop_summary(self, *, top_k: Optional[int] = None) -> Optional[GradientSummary]:
        layers = self._consume(self._layer_stats, top_k)
        parameters = self._consume(self._param_stats, top_k)
        if not layers and not parameters:
            return None
        frozen = [
            layer.name
            for layer in self.graph
            if not layer.trainable and any(k is not ChannelType.DATA for k in layer.in_types)
        ]
        return GradientSummary(layers=layers, parameters=parameters, frozen_layers=frozen)

    def _consume(self, store: Dict[str, _StatBucket], top_k: Optional[int]) -> List[StatRecord]:
        if not store:
            return []
        items = [bucket.to_record(name) for name, bucket in store.items()]
        store.clear()
        items.sort(key=lambda rec: rec.l2, reverse=True)
        if top_k is not None:
            return items[:top_k]
        return items


def describe_layer(layer: Layer) -> Dict[str, Any]:
    """Read-only view of one layer for inspectors and logs."""
    return {
        "name": layer.name,
        "id": layer.id,
        "type": type(layer).__name__,
        "inputs": [
            {"kind": kind.value, "dim": str(dim)}
            for kind, dim in zip(layer.in_types, layer.input_dimensions())
        ],
        "outputs": [
            {"kind": kind.value, "dim": str(dim)}
            for kind, dim in zip(layer.out_types, layer.output_dimensions())
        ],
        "trainable": layer.trainable,
        "initialized": layer.initialized,
        "visible": layer.visible,
        "dependencies": [dep.name for dep in layer.dependencies],
        "children": [child.name for child in layer.children],
    }


def describe_graph(graph: Graph) -> List[Dict[str, Any]]:
    """One describe_layer() row per layer, in forward order."""
    return [describe_layer(layer) for layer in graph.forward_order()]


def plot_gradient_heatmap(
    summary: GradientSummary,
    *,
    section: str = "layers",
    metric: str = "l2",
    ax: Optional["matplotlib.axes.Axes"] = None,
) -> "matplotlib.axes.Axes":
    """
    Render a 1×N heatmap for the requested gradient metric using matplotlib.
    """
    rows = getattr(summary, section, None)
    if not rows:
        raise ValueError(f"No rows available for section {section!r}.")
    values = [getattr(row, metric) for row in rows]
    labels = [row.name for row in rows]
    try:
        import matplotlib.pyplot as plt  # type: ignore
        import numpy as np
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for heatmap rendering.") from exc

    if ax is None:
        _, ax = plt.subplots(figsize=(max(4, len(values)), 2))
    data = np.array([values], dtype=float)
    im = ax.imshow(data, aspect="auto", cmap="magma")
    ax.set_yticks([])
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, rotation=45, ha="right")
    ax.set_title(f"{section.capitalize()} gradient {metric}")
    plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    return ax


def visualize_layer_output(
    graph: Graph,
    layer_name: str,
    *,
    sample_index: int = 0,
    channel: int = 0,
    ax: Optional["matplotlib.axes.Axes"] = None,
    save_path: Optional[str] = None,
    title: Optional[str] = None,
) -> "matplotlib.axes.Axes":
    """
    Render one channel of a layer's most recent output as a width x height image.

    Args:
        graph: Graph that has already run a forward pass.
        layer_name: Layer whose first output is drawn.
        sample_index: Sample row to draw.
        channel: Depth slice of the output map.
        ax: Optional matplotlib axes; a new figure is created when omitted.
        save_path: When given, the figure is written there as PNG and closed.
        title: Optional custom plot title.
    """
    try:
        import matplotlib.pyplot as plt  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for visualization helpers.") from exc

    layer = graph.layer(layer_name)
    dim = layer.output_size()
    rows = layer.output(0).samples
    if not 0 <= sample_index < len(rows):
        raise IndexError(f"sample_index {sample_index} out of range for {len(rows)} samples.")
    if not 0 <= channel < dim.depth:
        raise IndexError(f"channel {channel} out of range for depth {dim.depth}.")
    maps = rows[sample_index].detach().cpu().view(dim.depth, dim.height, dim.width)
    frame = maps[channel].numpy()

    if ax is None:
        _, ax = plt.subplots(figsize=(4, 4))
    im = ax.imshow(frame, cmap="magma", interpolation="nearest")
    ax.set_title(title or f"{layer_name} [{dim}] sample={sample_index} channel={channel}")
    ax.axis("off")
    plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    if save_path is not None:
        fig = ax.figure
        fig.tight_layout()
        abs_path = os.path.abspath(save_path)
        fig.savefig(abs_path, dpi=150)
        logger.info("saved %s output to %s", layer_name, abs_path)
        plt.close(fig)
    return ax
