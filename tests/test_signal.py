import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import tigerflow  # noqa: E402
from tigerflow.signal import ChannelType, Signal  # noqa: E402


Dim3 = tigerflow.Dim3


def test_make_id_alphabet():
    ident = tigerflow.make_id(12)
    assert len(ident) == 12
    assert set(ident) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ012345")


def test_dim3_size_and_text():
    dim = Dim3(4, 3, 2)
    assert dim.size() == 24
    assert str(dim) == "4x3x2"
    assert Dim3().size() == 0


def test_resize_grows_and_never_shrinks():
    signal = Signal(None, Dim3(3, 1, 1))
    signal.value[0].copy_(torch.tensor([1.0, 2.0, 3.0]))
    signal.resize(4)
    assert signal.capacity == 4
    assert len(signal.samples) == 4
    torch.testing.assert_close(signal.samples[3], torch.tensor([1.0, 2.0, 3.0]))
    assert all(float(row.abs().sum()) == 0.0 for row in signal.gradients)

    signal.resize(2)
    assert signal.capacity == 4
    assert signal.active == 2
    assert len(signal.samples) == 2
    assert len(signal.gradients) == 2

    with pytest.raises(ValueError):
        signal.resize(0)


def test_parameter_signal_keeps_one_value_row():
    signal = Signal(None, Dim3(2, 2, 1), kind=ChannelType.WEIGHT)
    signal.resize(5)
    assert len(signal.value) == 1
    assert len(signal.samples) == 1
    assert len(signal.gradients) == 5
    assert signal.is_parameter


def test_accumulate_sums_contributions():
    signal = Signal(None, Dim3(2, 1, 1))
    signal.resize(2)
    signal.accumulate([torch.ones(2), torch.ones(2)])
    signal.accumulate([torch.full((2,), 2.0), torch.zeros(2)])
    torch.testing.assert_close(signal.gradients[0], torch.full((2,), 3.0))
    torch.testing.assert_close(signal.gradients[1], torch.ones(2))
    torch.testing.assert_close(signal.merge_gradients(), torch.full((2,), 4.0))

    signal.clear_gradients()
    assert float(signal.merge_gradients().abs().sum()) == 0.0


def test_merge_ignores_inactive_rows():
    signal = Signal(None, Dim3(1, 1, 1))
    signal.set_gradients([torch.ones(1)] * 3)
    signal.resize(1)
    torch.testing.assert_close(signal.merge_gradients(), torch.ones(1))


def test_set_samples_requires_rows():
    signal = Signal(None, Dim3(1, 1, 1))
    with pytest.raises(ValueError):
        signal.set_samples([])
