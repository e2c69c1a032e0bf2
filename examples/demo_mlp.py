"""
Demo script: two-layer classifier on synthetic Gaussian blobs.

Builds input -> fc -> batch norm -> tanh -> fc, trains it with Adam on
softmax cross-entropy, prints gradient summaries along the way and writes the
trained weights to a JSON state file.
"""

from __future__ import annotations

import logging
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import tigerflow
from tigerflow import Dim3


CONFIG = {
    "seed": 3,
    "epochs": 8,
    "lr": 1e-2,
    "log_every": 10,
    "val_every": 2,
    "hidden": 32,
    "optimizer": "adam",
    "loss": "cross_entropy",
    "state_path": "demo_mlp_state.json",
    "data": {
        "batch_size": 32,
        "synth_total": 1200,
        "synth_feature_dim": 8,
        "synth_classes": 4,
        "synth_seed": 19,
    },
}


def build_graph(feature_dim: int, hidden: int, classes: int) -> tigerflow.Graph:
    graph = tigerflow.Graph()
    inp = tigerflow.InputLayer(Dim3(feature_dim, 1, 1), name="input")
    fc1 = tigerflow.FullyConnectedLayer(feature_dim, hidden, name="fc1")
    norm = tigerflow.BatchNormLayer(name="norm", momentum=0.9)
    act = tigerflow.ActivationLayer(kind="tanh", name="act")
    head = tigerflow.FullyConnectedLayer(hidden, classes, name="head")
    fc1.weight_init = tigerflow.weight_init.he()
    graph.chain(inp, fc1, norm, act, head)
    return graph


def run() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    cfg = CONFIG
    dataset = tigerflow.load_demo_dataset(split="train", config=cfg["data"])
    val_dataset = tigerflow.load_demo_dataset(split="val", config=cfg["data"])
    print(dataset.summary())
    print(val_dataset.summary())

    graph = build_graph(dataset.feature_dim, cfg["hidden"], dataset.target_dim)
    for row in tigerflow.describe_graph(graph):
        dims = ", ".join(slot["dim"] for slot in row["inputs"])
        print(f"  {row['id']:>2} {row['name']:<6} {row['type']:<20} in=[{dims}]")

    watcher = tigerflow.GradientWatcher(graph)
    tigerflow.train_graph(
        graph,
        dataset,
        epochs=cfg["epochs"],
        lr=cfg["lr"],
        log_every=cfg["log_every"],
        seed=cfg["seed"],
        optimizer=cfg["optimizer"],
        loss=cfg["loss"],
        val_dataset=val_dataset,
        val_every=cfg["val_every"],
        grad_monitor=watcher,
        grad_summary_top_k=3,
    )
    watcher.close()

    loss, acc = tigerflow.evaluate(graph, val_dataset, loss=cfg["loss"])
    print(f"validation loss={loss:.4f} acc={acc:.4f}")
    tigerflow.save_graph_state(graph, cfg["state_path"])
    print("Done.")


if __name__ == "__main__":
    run()
