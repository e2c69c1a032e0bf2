"""
Flat `[N, D]` sample datasets for demos and tests.

Synthetic Gaussian-blob classification data is generated deterministically
from a seed and split by fractional bounds; an HDF5 file can stand in for it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union

import torch

try:
    import h5py  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    h5py = None  # type: ignore


DEMO_DEFAULTS: Dict[str, Any] = {
    "path": None,
    "batch_size": 16,
    "synth_total": 400,
    "synth_feature_dim": 8,
    "synth_classes": 3,
    "synth_seed": 7,
    "synth_bounds": {"train": (0.0, 0.7), "val": (0.7, 0.85), "test": (0.85, 1.0)},
    "task_type": "classification",
}

_INT_DTYPES = (torch.int64, torch.int32, torch.int16)


@dataclass
class SampleDataset:
    """
    `[N, D]` samples with optional labels.

    Integer labels are class indices (one-hot targets); float labels are used
    as regression targets directly.
    """

    data: torch.Tensor
    labels: Optional[torch.Tensor]
    batch_size: int
    split: str = "train"
    task_type: str = "classification"
    num_classes: Optional[int] = field(init=False, default=None)

    def __post_init__(self) -> None:
        if self.data.dim() != 2:
            raise ValueError(f"SampleDataset expects data shaped [N, D], got {tuple(self.data.shape)}.")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.labels is not None:
            if self.labels.shape[0] != self.data.shape[0]:
                raise ValueError(
                    f"labels hold {self.labels.shape[0]} rows but data holds {self.data.shape[0]}."
                )
            if self.has_class_labels and self.labels.numel():
                self.num_classes = int(self.labels.max().item()) + 1

    @property
    def has_class_labels(self) -> bool:
        return self.labels is not None and self.labels.dtype in _INT_DTYPES

    @property
    def num_samples(self) -> int:
        return int(self.data.shape[0])

    @property
    def feature_dim(self) -> int:
        return int(self.data.shape[1])

    @property
    def batches_per_epoch(self) -> int:
        return max(1, math.ceil(self.num_samples / self.batch_size))

    @property
    def target_dim(self) -> int:
        if self.labels is None:
            return self.feature_dim
        if self.has_class_labels:
            return self.num_classes or 1
        return 1 if self.labels.dim() == 1 else int(self.labels.shape[-1])

    def iter_batches(self, *, shuffle: bool = True) -> Iterator[Dict[str, torch.Tensor]]:
        """Yield ``{"x": [B, D]}`` batches, plus ``"y"`` when labels are present."""
        order = torch.randperm(self.num_samples) if shuffle else torch.arange(self.num_samples)
        for idx in order.split(self.batch_size):
            batch = {"x": self.data[idx]}
            if self.labels is not None:
                batch["y"] = self.labels[idx]
            yield batch

    def targets(self, labels: torch.Tensor, num_classes: Optional[int] = None) -> torch.Tensor:
        """
        Float target rows for ``labels``: one-hot for class indices, as-is otherwise.

        ``num_classes`` overrides the width inferred from this split, which can
        fall short when a split lacks the highest class.
        """
        if self.has_class_labels:
            return torch.nn.functional.one_hot(labels.long(), num_classes or self.num_classes or 1).float()
        return labels.float().unsqueeze(1) if labels.dim() == 1 else labels.float()

    def summary(self) -> str:
        return (
            f"{self.split} split: {self.num_samples} samples x {self.feature_dim} dims, "
            f"{self.target_dim} targets (batch={self.batch_size}, steps/epoch={self.batches_per_epoch})"
        )


def load_demo_dataset(
    *,
    split: str = "train",
    batch_size: int = 16,
    path: Optional[Union[str, Path]] = None,
    config: Optional[Mapping[str, Any]] = None,
    **overrides: Any,
) -> SampleDataset:
    """
    Synthesize (or read from HDF5) one split of the demo classification set.

    Settings resolve as DEMO_DEFAULTS, then the ``split``/``batch_size``/``path``
    arguments, then ``config``, then ``overrides``. With a ``path`` the file is
    expected to hold ``<split>/data`` and ``<split>/labels``; a missing file is
    written from the synthetic data first.
    """
    cfg = {**DEMO_DEFAULTS, "split": split, "batch_size": batch_size, "path": path}
    cfg.update(config or {})
    cfg.update(overrides)

    name = str(cfg["split"]).lower()
    if not name:
        raise ValueError("split must be a non-empty string")
    synth = {
        "total": int(cfg["synth_total"]),
        "dim": int(cfg["synth_feature_dim"]),
        "classes": int(cfg["synth_classes"]),
        "seed": int(cfg["synth_seed"]),
        "bounds": dict(cfg["synth_bounds"]),
    }
    if cfg["path"] is None:
        data, labels = _synthesize_split(name, **synth)
    else:
        data, labels = _read_hdf5_split(Path(cfg["path"]), name, synth)
    return SampleDataset(data, labels, int(cfg["batch_size"]), split=name, task_type=str(cfg["task_type"]))


def _synthesize_split(
    split: str,
    *,
    total: int,
    dim: int,
    classes: int,
    seed: int,
    bounds: Mapping[str, Tuple[float, float]],
) -> Tuple[torch.Tensor, torch.Tensor]:
    # Every split draws the same full set, then slices its fraction.
    generator = torch.Generator().manual_seed(seed)
    centers = 3.0 * torch.randn(classes, dim, generator=generator)
    labels = torch.randint(0, classes, (total,), generator=generator)
    data = centers[labels] + torch.randn(total, dim, generator=generator)
    lo, hi = bounds.get(split, (0.0, 1.0))
    rows = slice(int(lo * total), int(hi * total))
    return data[rows].contiguous(), labels[rows].contiguous()


def _read_hdf5_split(
    path: Path, split: str, synth: Dict[str, Any]
) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    if h5py is None:
        raise RuntimeError("h5py is required to read datasets from disk. Install h5py or omit the path.")
    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        with h5py.File(path, "w") as handle:
            for name in synth["bounds"]:
                data, labels = _synthesize_split(name, **synth)
                group = handle.create_group(name)
                group.create_dataset("data", data=data.numpy(), compression="gzip")
                group.create_dataset("labels", data=labels.numpy())
    with h5py.File(path, "r") as handle:
        group = handle[split] if split in handle else handle
        data = torch.from_numpy(group["data"][...]).float()
        labels = torch.from_numpy(group["labels"][...]).long() if "labels" in group else None
    return data, labels
