from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import torch

from . import losses
from .core import Graph, Layer, Phase
from .data_helper import SampleDataset
from .optimizers import Optimizer, build_optimizer

Batch = Dict[str, torch.Tensor]

if TYPE_CHECKING:
    from .diagnostics import GradientWatcher


@dataclass(frozen=True)
class TrainLoopConfig:
    epochs: int
    lr: float
    log_every: int
    optimizer: str = "adam"
    loss: str = "mse"
    val_every: int = 1


@dataclass
class EpochStats:
    avg_loss: float
    final_loss: float
    avg_metric: Optional[float]


def _single(layers: List[Layer], role: str) -> Layer:
    if len(layers) != 1:
        names = [layer.name for layer in layers]
        raise ValueError(f"Graph must have exactly one {role} layer to train; found {names}.")
    return layers[0]


def _accuracy(outputs: torch.Tensor, labels: torch.Tensor) -> float:
    predicted = outputs.argmax(dim=1)
    return float((predicted == labels.long()).float().mean().item())


class Trainer:
    def __init__(
        self,
        graph: Graph,
        dataset: SampleDataset,
        config: TrainLoopConfig,
        *,
        optimizer: Optional[Optimizer] = None,
        val_dataset: Optional[SampleDataset] = None,
        grad_monitor: Optional["GradientWatcher"] = None,
        grad_summary_top_k: Optional[int] = 5,
    ) -> None:
        self.graph = graph
        self.dataset = dataset
        self.config = config
        self.optimizer = optimizer
        self.loss = losses.get_loss(config.loss)
        self.val_dataset = val_dataset
        self.grad_monitor = grad_monitor
        self.grad_summary_top_k = grad_summary_top_k
        self.input_layer = _single(graph.roots(), "input")
        self.output_layer = _single(graph.leaves(), "output")

    def run(self, *, seed: Optional[int] = None) -> List[float]:
        if seed is not None:
            torch.manual_seed(seed)
        history: List[float] = []
        for epoch in range(1, self.config.epochs + 1):
            stats = self._train_epoch(epoch)
            history.append(stats.avg_loss)
            self._log_epoch(epoch, stats)
            if (
                self.val_dataset is not None
                and self.config.val_every > 0
                and (epoch % self.config.val_every) == 0
            ):
                self._log_validation(epoch)
        return history

    def _train_epoch(self, epoch: int) -> EpochStats:
        total_loss = 0.0
        total_metric = 0.0
        steps = 0
        last_loss_value = 0.0
        optimizer = self._ensure_optimizer()
        classification = self.dataset.num_classes is not None
        self.graph.set_phase(Phase.TRAIN)

        for step, batch in enumerate(self.dataset.iter_batches(shuffle=True), start=1):
            outputs = self._forward(batch)
            targets = self._targets(self.dataset, batch, outputs.shape[1])
            last_loss_value = losses.value(self.loss, outputs, targets)
            grads = losses.gradient(self.loss, outputs, targets)
            self.graph.backward({self.output_layer: grads})
            self.graph.update_weights(optimizer, int(batch["x"].shape[0]))

            total_loss += last_loss_value
            steps += 1
            if classification:
                total_metric += _accuracy(outputs, batch["y"])

            if step % self.config.log_every == 0 or step == self.dataset.batches_per_epoch:
                print(
                    f"[epoch {epoch}] step {step}/{self.dataset.batches_per_epoch} "
                    f"loss={last_loss_value:.4f}"
                )
                self._log_gradient_summary()

        avg_metric = (total_metric / steps) if (classification and steps > 0) else None
        avg_loss = total_loss / max(1, steps)
        return EpochStats(avg_loss=avg_loss, final_loss=last_loss_value, avg_metric=avg_metric)

    def _ensure_optimizer(self) -> Optimizer:
        if self.optimizer is None:
            self.optimizer = build_optimizer(self.config.optimizer, self.config.lr)
        return self.optimizer

    def _forward(self, batch: Batch) -> torch.Tensor:
        results = self.graph.forward({self.input_layer: batch["x"]})
        return results[f"{self.output_layer.name}.out"]

    @staticmethod
    def _targets(dataset: SampleDataset, batch: Batch, width: int) -> torch.Tensor:
        if "y" not in batch:
            return batch["x"]
        return dataset.targets(batch["y"], num_classes=width)

    def _log_epoch(self, epoch: int, stats: EpochStats) -> None:
        if stats.avg_metric is not None:
            print(f"Epoch {epoch} final loss: {stats.final_loss:.4f} acc={stats.avg_metric:.4f}")
        else:
            print(f"Epoch {epoch} final loss: {stats.final_loss:.4f}")

    def _log_validation(self, epoch: int) -> None:
        assert self.val_dataset is not None
        val_loss, val_metric = self.evaluate(self.val_dataset)
        if val_metric is not None:
            print(f"[val after epoch {epoch}] avg_loss={val_loss:.4f} acc={val_metric:.4f}")
        else:
            print(f"[val after epoch {epoch}] avg_loss={val_loss:.4f}")

    def evaluate(self, dataset: SampleDataset) -> Tuple[float, Optional[float]]:
        """Average loss and, for class labels, accuracy over ``dataset`` in test phase."""
        self.graph.set_phase(Phase.TEST)
        total = 0.0
        correct = 0.0
        batches = 0
        try:
            for batch in dataset.iter_batches(shuffle=False):
                outputs = self._forward(batch)
                total += losses.value(self.loss, outputs, self._targets(dataset, batch, outputs.shape[1]))
                if dataset.num_classes is not None:
                    correct += _accuracy(outputs, batch["y"])
                batches += 1
        finally:
            self.graph.set_phase(Phase.TRAIN)
        avg_loss = total / max(1, batches)
        metric = correct / max(1, batches) if dataset.num_classes is not None else None
        return avg_loss, metric

    def _log_gradient_summary(self) -> None:
        if self.grad_monitor is None:
            return
        summary = self.grad_monitor.pop_summary(top_k=self.grad_summary_top_k)
        if summary is None:
            return
        text = summary.to_text()
        if not text:
            return
        for line in text.splitlines():
            print(f"    {line}")


def train_graph(
    graph: Graph,
    dataset: SampleDataset,
    *,
    epochs: int,
    lr: float,
    log_every: int,
    seed: Optional[int] = None,
    optimizer: str = "adam",
    loss: str = "mse",
    val_dataset: Optional[SampleDataset] = None,
    val_every: int = 1,
    grad_monitor: Optional["GradientWatcher"] = None,
    grad_summary_top_k: Optional[int] = 5,
) -> List[float]:
    """
    Train a single-input, single-output graph on a SampleDataset.

    Returns a list of average loss values per epoch.
    """
    config = TrainLoopConfig(
        epochs=epochs,
        lr=lr,
        log_every=log_every,
        optimizer=optimizer,
        loss=loss,
        val_every=val_every,
    )
    trainer = Trainer(
        graph,
        dataset,
        config,
        val_dataset=val_dataset,
        grad_monitor=grad_monitor,
        grad_summary_top_k=grad_summary_top_k,
    )
    return trainer.run(seed=seed)


def evaluate(
    graph: Graph,
    dataset: SampleDataset,
    *,
    loss: str = "mse",
) -> Tuple[float, Optional[float]]:
    """Average loss and accuracy (None for non-class labels) of ``graph`` on ``dataset``."""
    config = TrainLoopConfig(epochs=0, lr=0.0, log_every=1, loss=loss)
    return Trainer(graph, dataset, config).evaluate(dataset)
