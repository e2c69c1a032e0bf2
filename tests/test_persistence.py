import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import tigerflow  # noqa: E402


Dim3 = tigerflow.Dim3


def _build(seed: int) -> tigerflow.Graph:
    torch.manual_seed(seed)
    g = tigerflow.Graph()
    inp = tigerflow.InputLayer(Dim3(3, 1, 1), name="input")
    fc = tigerflow.FullyConnectedLayer(3, 4, name="fc")
    act = tigerflow.ActivationLayer(kind="tanh", name="act")
    head = tigerflow.FullyConnectedLayer(4, 2, has_bias=False, name="head")
    g.chain(inp, fc, act, head)
    g.setup()
    return g


def test_layer_state_captures_buffers():
    g = _build(0)
    g.forward({"input": torch.randn(2, 3)})
    g.backward({"head": torch.ones(2, 2)})

    state = tigerflow.layer_state(g.layer("fc"))
    assert state.name == "fc"
    assert [t.numel() for t in state.weights] == [12]
    assert [t.numel() for t in state.bias_weights] == [4]
    assert [t.numel() for t in state.weight_changes] == [12]
    assert [t.numel() for t in state.responses] == [8]
    torch.testing.assert_close(state.bias_weight_changes[0], g.layer("fc").input(2).merge_gradients())
    assert state.bias_responses == []


@pytest.mark.parametrize("suffix", [".json", ".pt"])
def test_neural_state_file_round_trip(tmp_path, suffix):
    g = _build(1)
    state = tigerflow.layer_state(g.layer("fc"))
    path = tmp_path / f"fc{suffix}"

    tigerflow.write_neural_state(path, state)
    loaded = tigerflow.read_neural_state(path)

    assert loaded.name == "fc"
    for key in tigerflow.NeuralState.buffer_names():
        original = getattr(state, key)
        restored = getattr(loaded, key)
        assert len(original) == len(restored)
        for a, b in zip(original, restored):
            torch.testing.assert_close(b, a.float())


def test_neural_state_hdf5_round_trip(tmp_path):
    pytest.importorskip("h5py")
    g = _build(2)
    state = tigerflow.layer_state(g.layer("head"))
    path = tmp_path / "head.h5"

    tigerflow.write_neural_state(path, state)
    loaded = tigerflow.read_neural_state(path)

    assert loaded.name == "head"
    torch.testing.assert_close(loaded.weights[0], state.weights[0])
    assert loaded.bias_weights == []


def test_apply_state_restores_weights():
    source = _build(3)
    target = _build(4)
    assert not source.layer("fc").has_same_weights(target.layer("fc"), 1e-6)

    tigerflow.apply_state(target.layer("fc"), tigerflow.layer_state(source.layer("fc")))

    assert source.layer("fc").has_same_weights(target.layer("fc"), 1e-6)


def test_apply_state_is_all_or_nothing():
    g = _build(5)
    fc = g.layer("fc")
    before = [w.clone() for w in fc.input_weights()]
    state = tigerflow.layer_state(fc)
    state.weights = [torch.zeros(12)]
    state.bias_weights = [torch.zeros(3)]

    with pytest.raises(tigerflow.ShapeMismatch):
        tigerflow.apply_state(fc, state)
    for old, new in zip(before, fc.input_weights()):
        torch.testing.assert_close(new, old)


@pytest.mark.parametrize("suffix", [".json", ".pt"])
def test_graph_state_round_trip(tmp_path, suffix):
    source = _build(6)
    target = _build(7)
    path = tmp_path / f"graph{suffix}"

    tigerflow.save_graph_state(source, path)
    tigerflow.load_graph_state(target, path)

    for name in ("fc", "head"):
        assert source.layer(name).has_same_weights(target.layer(name), 1e-6)
    x = torch.randn(3, 3)
    torch.testing.assert_close(
        source.forward({"input": x})["head.out"],
        target.forward({"input": x})["head.out"],
    )


def test_load_graph_state_rejects_missing_layer(tmp_path):
    source = _build(8)
    path = tmp_path / "graph.json"
    tigerflow.save_graph_state(source, path)

    bigger = _build(9)
    bigger.connect("head", tigerflow.IdentityLayer(name="extra"))
    before = bigger.layer("fc").input(1).weights.clone()
    with pytest.raises(KeyError):
        tigerflow.load_graph_state(bigger, path)
    torch.testing.assert_close(bigger.layer("fc").input(1).weights, before)
