import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import tigerflow  # noqa: E402


def _build_simple_graph(output_dim: int = 4) -> tigerflow.Graph:
    g = tigerflow.Graph()
    inp = tigerflow.InputLayer(tigerflow.Dim3(8, 1, 1), name="input")
    enc = tigerflow.FullyConnectedLayer(8, 16, name="enc")
    act = tigerflow.ActivationLayer(kind="relu", name="act")
    head = tigerflow.FullyConnectedLayer(16, output_dim, name="head")
    g.chain(inp, enc, act, head)
    return g


def test_record_trace_summary_and_order():
    torch.manual_seed(5)
    graph = _build_simple_graph()
    x = torch.randn(3, 8)

    with tigerflow.record(graph) as trace:
        outputs = graph.forward({"input": x})
        graph.backward({"head": torch.ones(3, 4)})
        graph.update_weights(tigerflow.GradientDescent(alpha=0.01), batch_size=3)

    summary = trace.summary()
    assert summary["forward_passes"] == 1
    assert summary["backward_passes"] == 1
    assert summary["updates"] == 1
    assert summary["events"] == 8
    assert summary["layers"] == {"input": 2, "enc": 2, "act": 2, "head": 2}
    assert len(trace.events) == summary["events"]
    assert trace.order("forward") == ["input", "enc", "act", "head"]
    assert trace.order("backward") == ["head", "act", "enc", "input"]
    assert "head.out" in outputs
    assert outputs["head.out"].shape == (3, 4)


def test_record_stops_listening_after_context():
    graph = _build_simple_graph()
    with tigerflow.record(graph) as trace:
        graph.forward({"input": torch.randn(1, 8)})
    graph.forward({"input": torch.randn(1, 8)})

    assert trace.summary()["forward_passes"] == 1
    first = trace.events[0]
    assert (first.kind, first.layer, first.id, first.order) == ("forward", "input", 0, 0)


def test_trace_order_selects_pass():
    graph = _build_simple_graph()
    with tigerflow.record(graph) as trace:
        graph.forward({"input": torch.randn(2, 8)})
        graph.forward({"input": torch.randn(2, 8)})

    indices = sorted({e.pass_index for e in trace.events})
    assert len(indices) == 2
    assert trace.order("forward", pass_index=indices[0]) == trace.order("forward")
    assert trace.order("backward") == []
