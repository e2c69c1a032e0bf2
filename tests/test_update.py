import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import tigerflow  # noqa: E402


Dim3 = tigerflow.Dim3


class RecordingOptimizer:
    def __init__(self):
        self.calls = []

    def __call__(self, gradient, weights, parallelize):
        self.calls.append((gradient.clone(), weights, parallelize))


@pytest.mark.parametrize("in_dim,expected", [(511, False), (512, True)])
def test_parallel_hint_threshold(in_dim, expected):
    fc = tigerflow.FullyConnectedLayer(in_dim, 1, has_bias=False)
    fc.forward_with([torch.ones(2, in_dim)])
    fc.backward_with([torch.ones(2, 1)])
    opt = RecordingOptimizer()

    fc.update_weights(opt, batch_size=2)

    assert len(opt.calls) == 1
    gradient, weights, parallelize = opt.calls[0]
    assert weights.numel() == in_dim
    assert parallelize is expected


def test_update_scales_merged_gradient_by_batch():
    g = tigerflow.Graph()
    src = tigerflow.FullyConnectedLayer(2, 2, has_bias=False, name="src")
    first = tigerflow.IdentityLayer(name="first")
    second = tigerflow.IdentityLayer(name="second")
    g.connect(src, first)
    g.connect(src, second)

    g.forward({"src": torch.ones(2, 2)})
    g.backward({"first": torch.full((2, 2), 1.0), "second": torch.full((2, 2), 2.0)})
    opt = RecordingOptimizer()
    g.update_weights(opt, batch_size=2)

    assert len(opt.calls) == 1
    gradient, _, _ = opt.calls[0]
    # Each sample contributes outer(ones, 3); the sum over 2 samples is halved.
    torch.testing.assert_close(gradient, torch.full((4,), 3.0))
    for row in src.input(1).gradients:
        assert float(row.abs().sum()) == 0.0


def test_non_trainable_layer_is_skipped():
    fc = tigerflow.FullyConnectedLayer(2, 2)
    fc.forward_with([torch.ones(1, 2)])
    fc.backward_with([torch.ones(1, 2)])
    fc.trainable = False
    posts = []
    fc.post = lambda: posts.append(1)
    opt = RecordingOptimizer()

    fc.update_weights(opt, batch_size=1)

    assert opt.calls == []
    assert posts == []
    assert float(fc.input(1).gradients[0].abs().sum()) > 0.0


def test_update_rejects_empty_batch():
    fc = tigerflow.FullyConnectedLayer(2, 2)
    fc.setup(False)
    with pytest.raises(ValueError):
        fc.update_weights(RecordingOptimizer(), batch_size=0)


def test_tied_weight_is_stepped_once():
    torch.manual_seed(0)
    g = tigerflow.Graph()
    inp = tigerflow.InputLayer(Dim3(3, 1, 1), name="input")
    enc = tigerflow.FullyConnectedLayer(3, 3, has_bias=False, name="enc")
    dec = tigerflow.FullyConnectedLayer(3, 3, has_bias=False, name="dec")
    g.chain(inp, enc, dec)
    shared = g.tie("enc", 1, "dec", 1)

    assert enc.inputs[1] is shared and dec.inputs[1] is shared
    assert g.parameters() == [shared]

    g.forward({"input": torch.randn(4, 3)})
    g.backward({"dec": torch.randn(4, 3)})
    expected = shared.merge_gradients() / 4.0
    opt = RecordingOptimizer()
    g.update_weights(opt, batch_size=4)

    assert len(opt.calls) == 1
    torch.testing.assert_close(opt.calls[0][0], expected)
    assert opt.calls[0][1] is shared.weights
    assert enc.has_same_weights(dec, 0.0)


def test_tie_rejects_data_slot():
    g = tigerflow.Graph()
    a = tigerflow.FullyConnectedLayer(2, 2, name="a")
    b = tigerflow.FullyConnectedLayer(2, 2, name="b")
    g.add(a, b)
    with pytest.raises(tigerflow.ConnectionConflict):
        g.tie("a", 0, "b", 0)


def test_has_same_weights_detects_perturbation():
    eps = 1e-6
    a = tigerflow.FullyConnectedLayer(4, 3)
    b = tigerflow.FullyConnectedLayer(4, 3)
    for layer in (a, b):
        layer.weight_init = tigerflow.weight_init.constant(0.5)
        layer.setup(True)

    assert a.has_same_weights(b, eps)
    b.input(1).weights[5] += 2 * eps
    assert not a.has_same_weights(b, eps)


def test_has_same_weights_shape_mismatch():
    a = tigerflow.FullyConnectedLayer(4, 3)
    b = tigerflow.FullyConnectedLayer(4, 3, has_bias=False)
    c = tigerflow.FullyConnectedLayer(2, 2, has_bias=False)
    for layer in (a, b, c):
        layer.setup(False)
    assert not a.has_same_weights(b, 1.0)
    assert not b.has_same_weights(c, 1.0)


def test_gradient_descent_trains_linear_fit():
    torch.manual_seed(3)
    g = tigerflow.Graph()
    inp = tigerflow.InputLayer(Dim3(2, 1, 1), name="input")
    fc = tigerflow.FullyConnectedLayer(2, 1, name="fc")
    g.chain(inp, fc)
    x = torch.randn(32, 2)
    target = x @ torch.tensor([[2.0], [-1.0]]) + 0.5
    opt = tigerflow.GradientDescent(alpha=0.1)

    first = None
    for _ in range(200):
        y = g.forward({"input": x})["fc.out"]
        loss = tigerflow.losses.value("mse", y, target)
        first = loss if first is None else first
        g.backward({"fc": tigerflow.losses.gradient("mse", y, target)})
        g.update_weights(opt, batch_size=32)

    assert loss < first * 0.01
    torch.testing.assert_close(fc.input(1).weights, torch.tensor([2.0, -1.0]), atol=1e-2, rtol=0)
