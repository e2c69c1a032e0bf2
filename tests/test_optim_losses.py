import math
import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import tigerflow  # noqa: E402
from tigerflow import losses, weight_init  # noqa: E402


def test_gradient_descent_step_with_decay():
    w = torch.tensor([1.0, -2.0])
    opt = tigerflow.GradientDescent(alpha=0.1, lambda_=0.5)
    opt(torch.tensor([1.0, 1.0]), w, False)
    # w - 0.1 * (g + 0.5 * w)
    torch.testing.assert_close(w, torch.tensor([0.85, -2.0]))


def test_momentum_accumulates_velocity():
    w = torch.zeros(1)
    opt = tigerflow.Momentum(alpha=0.1, mu=0.9)
    opt(torch.ones(1), w, False)
    opt(torch.ones(1), w, False)
    # v1 = -0.1, v2 = -0.09 - 0.1
    torch.testing.assert_close(w, torch.tensor([-0.1 - 0.19]))


def test_adam_first_step_is_alpha_sized_and_state_is_per_buffer():
    a = torch.zeros(3)
    b = torch.zeros(3)
    opt = tigerflow.Adam(alpha=0.01)
    opt(torch.tensor([0.5, -2.0, 1e-3]), a, True)
    torch.testing.assert_close(a, torch.tensor([-0.01, 0.01, -0.01]), atol=1e-4, rtol=0)

    opt(torch.tensor([1.0, 1.0, 1.0]), b, False)
    torch.testing.assert_close(b, torch.full((3,), -0.01), atol=1e-6, rtol=0)

    opt.reset()
    c = torch.zeros(1)
    opt(torch.ones(1), c, False)
    torch.testing.assert_close(c, torch.tensor([-0.01]), atol=1e-6, rtol=0)


def test_adam_ignores_stale_state_under_a_reused_id():
    opt = tigerflow.Adam(alpha=0.01)
    a = torch.zeros(2)
    for _ in range(3):
        opt(torch.tensor([1.0, -1.0]), a, False)

    b = torch.zeros(2)
    # Entry left behind under b's id, as happens when id() values are recycled.
    opt._state[id(b)] = opt._state[id(a)]
    opt(torch.tensor([1.0, 1.0]), b, False)

    torch.testing.assert_close(b, torch.full((2,), -0.01), atol=1e-6, rtol=0)


def test_rules_step_torch_optimizers_per_buffer():
    w = torch.zeros(3)
    opt = tigerflow.Momentum(alpha=0.1, mu=0.9)
    opt(torch.ones(3), w, False)

    inner = opt._optimizer_for(w)
    assert isinstance(inner, torch.optim.SGD)
    torch.testing.assert_close(inner.state[w]["momentum_buffer"], torch.ones(3))
    assert w.grad is None
    assert isinstance(tigerflow.build_optimizer("rmsprop", 0.1)._optimizer_for(w), torch.optim.RMSprop)


def test_adagrad_and_rmsprop_shrink_steps():
    w = torch.zeros(1)
    opt = tigerflow.Adagrad(alpha=0.1)
    opt(torch.ones(1), w, False)
    first = float(w)
    opt(torch.ones(1), w, False)
    second = float(w) - first
    assert first == pytest.approx(-0.1, abs=1e-6)
    assert second == pytest.approx(-0.1 / math.sqrt(2.0), abs=1e-6)

    w = torch.zeros(1)
    rms = tigerflow.RMSprop(alpha=0.01, mu=0.9)
    rms(torch.ones(1), w, False)
    assert float(w) == pytest.approx(-0.01 / math.sqrt(0.1), rel=1e-4)


def test_optimizer_reshapes_flat_gradient():
    w = torch.zeros(2, 2)
    tigerflow.GradientDescent(alpha=1.0)(torch.ones(4), w, False)
    torch.testing.assert_close(w, -torch.ones(2, 2))


def test_mse_and_absolute_derivatives():
    y = torch.tensor([1.0, 2.0])
    t = torch.tensor([0.0, 4.0])
    assert float(losses.mse.f(y, t)) == pytest.approx(2.5)
    torch.testing.assert_close(losses.mse.df(y, t), torch.tensor([1.0, -2.0]))
    assert float(losses.absolute.f(y, t)) == pytest.approx(1.5)
    torch.testing.assert_close(losses.absolute.df(y, t), torch.tensor([0.5, -0.5]))


def test_cross_entropy_gradient_against_autograd():
    torch.manual_seed(0)
    y = torch.randn(4)
    t = torch.tensor([0.0, 0.0, 1.0, 0.0])
    yr = y.clone().requires_grad_(True)
    losses.cross_entropy.f(yr, t).backward()
    torch.testing.assert_close(losses.cross_entropy.df(y, t), yr.grad)
    # A class index behaves like its one-hot row.
    torch.testing.assert_close(losses.cross_entropy.df(y, torch.tensor([2.0])), yr.grad)


def test_batch_gradient_rows_and_value():
    outputs = torch.tensor([[1.0, 0.0], [0.0, 1.0]])
    targets = torch.zeros(2, 2)
    rows = losses.gradient("mse", outputs, targets)
    assert len(rows) == 2
    torch.testing.assert_close(rows[0], torch.tensor([1.0, 0.0]))
    assert losses.value("mse", outputs, targets) == pytest.approx(0.5)
    with pytest.raises(ValueError):
        losses.gradient("mse", outputs, torch.zeros(3, 2))
    with pytest.raises(ValueError):
        losses.get_loss("hinge")


def test_weight_init_bounds():
    torch.manual_seed(0)
    buf = torch.empty(1000)
    weight_init.xavier()(buf, 10, 20)
    assert float(buf.abs().max()) <= math.sqrt(6.0 / 30.0)
    weight_init.lecun()(buf, 25, 0)
    assert float(buf.abs().max()) <= 1.0 / 5.0
    weight_init.constant(0.3)(buf, 1, 1)
    torch.testing.assert_close(buf, torch.full((1000,), 0.3))
    weight_init.he()(buf, 50, 1)
    assert abs(float(buf.std()) - 0.2) < 0.03
