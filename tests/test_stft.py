# SPDX-License-Identifier: Apache-2.0
"""Tests for the STFT lowering."""

from __future__ import annotations

from typing import Optional, Sequence, Union

import numpy as np
import onnx
from onnx import TensorProto, helper, numpy_helper
import pytest
import torch

from onnx_fx_frontend import InvalidNodeError, convert_onnx_to_fx

from .common import make_model, rand, value


def _reference_stft(
    signal: np.ndarray,
    frame_step: int,
    frame_length: int,
    window: Optional[np.ndarray] = None,
    onesided: bool = True,
) -> np.ndarray:
    batch, length, channels = signal.shape
    data = signal[..., 0] + 1j * signal[..., 1] if channels == 2 else signal[..., 0]
    num_frames = (length - frame_length) // frame_step + 1
    result = []
    for b in range(batch):
        frames = []
        for f in range(num_frames):
            frame = data[b, f * frame_step : f * frame_step + frame_length]
            if window is not None:
                frame = frame * window
            spectrum = np.fft.rfft(frame) if onesided else np.fft.fft(frame)
            frames.append(np.stack([spectrum.real, spectrum.imag], axis=-1))
        result.append(np.stack(frames))
    return np.stack(result).astype(np.float32)


def _int_scalar(name: str, number: Union[int, Sequence[int]]) -> onnx.TensorProto:
    return numpy_helper.from_array(np.array(number, dtype=np.int64), name=name)


def _stft_model(
    signal_shape,
    output_shape,
    *,
    frame_step: Union[int, Sequence[int]] = 4,
    window_length: Optional[int] = None,
    frame_length: Optional[int] = None,
    static_frame_step: bool = True,
    static_frame_length: bool = True,
    **attrs,
) -> onnx.ModelProto:
    inputs = [value("signal", signal_shape)]
    initializers = []
    if static_frame_step:
        initializers.append(_int_scalar("frame_step", frame_step))
    else:
        inputs.append(value("frame_step", (), TensorProto.INT64))
    node_inputs = ["signal", "frame_step", "", ""]
    if window_length is not None:
        inputs.append(value("window", (window_length,)))
        node_inputs[2] = "window"
    if frame_length is not None:
        if static_frame_length:
            initializers.append(_int_scalar("frame_length", frame_length))
        else:
            inputs.append(value("frame_length", (), TensorProto.INT64))
        node_inputs[3] = "frame_length"
    while not node_inputs[-1]:
        node_inputs.pop()

    node = helper.make_node("STFT", node_inputs, ["output"], name="stft", **attrs)
    return make_model(
        nodes=[node],
        inputs=inputs,
        outputs=[value("output", output_shape)],
        initializers=initializers,
        opset=17,
    )


def test_onesided_stft_with_window() -> None:
    model = _stft_model((2, 16, 1), (2, 3, 5, 2), window_length=8, frame_length=8)
    signal = rand((2, 16, 1), seed=1)
    window = np.hanning(8).astype(np.float32)

    graph_module = convert_onnx_to_fx(model)
    with torch.no_grad():
        result = graph_module(torch.from_numpy(signal), torch.from_numpy(window))

    assert tuple(result.shape) == (2, 3, 5, 2)
    expected = _reference_stft(signal, 4, 8, window=window)
    np.testing.assert_allclose(result.numpy(), expected, rtol=1e-4, atol=1e-4)


def test_two_sided_stft_of_complex_signal_uses_window_length() -> None:
    model = _stft_model((1, 12, 2), (1, 3, 6, 2), frame_step=3, window_length=6, onesided=0)
    signal = rand((1, 12, 2), seed=2)
    window = rand((6,), seed=3)

    graph_module = convert_onnx_to_fx(model)
    with torch.no_grad():
        result = graph_module(torch.from_numpy(signal), torch.from_numpy(window))

    expected = _reference_stft(signal, 3, 6, window=window, onesided=False)
    np.testing.assert_allclose(result.numpy(), expected, rtol=1e-4, atol=1e-4)


def test_frame_length_defaults_to_length_over_step() -> None:
    model = _stft_model((1, 16, 1), (1, 4, 3, 2))
    signal = rand((1, 16, 1), seed=4)

    with torch.no_grad():
        result = convert_onnx_to_fx(model)(torch.from_numpy(signal))

    expected = _reference_stft(signal, 4, 4)
    np.testing.assert_allclose(result.numpy(), expected, rtol=1e-4, atol=1e-4)


def test_frame_step_must_be_constant() -> None:
    model = _stft_model((1, 16, 1), (1, 4, 3, 2), static_frame_step=False)
    with pytest.raises(InvalidNodeError, match="frame_step input must be a scalar"):
        convert_onnx_to_fx(model)


def test_signal_must_have_static_rank_three() -> None:
    model = _stft_model((1, 16), (1, 4, 3, 2))
    with pytest.raises(InvalidNodeError, match="rank equal to 3"):
        convert_onnx_to_fx(model)


def test_onesided_rejects_complex_signal() -> None:
    model = _stft_model((1, 16, 2), (1, 4, 3, 2))
    with pytest.raises(InvalidNodeError, match="can NOT be complex"):
        convert_onnx_to_fx(model)


def test_window_length_must_match_frame_length() -> None:
    model = _stft_model((1, 16, 1), (1, 2, 5, 2), window_length=6, frame_length=8)
    with pytest.raises(InvalidNodeError, match="equal to frame_length") as excinfo:
        convert_onnx_to_fx(model)
    assert excinfo.value.node_description == "STFT node 'stft'"


def test_signal_last_dimension_must_be_real_or_complex() -> None:
    model = _stft_model((1, 16, 3), (1, 4, 3, 2), onesided=0)
    with pytest.raises(InvalidNodeError, match="must be 1 \\(real\\) or 2 \\(complex\\), got 3"):
        convert_onnx_to_fx(model)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        pytest.param({"frame_length": 12}, "yields no frames", id="frame_longer_than_signal"),
        pytest.param({"frame_step": 0}, "frame_step must be positive", id="zero_step"),
        pytest.param(
            {"frame_length": 4, "static_frame_length": False},
            "frame_length input must be a scalar",
            id="frame_length_not_constant",
        ),
        pytest.param({"frame_step": [4, 4]}, "frame_step input must be a scalar", id="two_element_step"),
    ],
)
def test_invalid_framing_is_rejected(kwargs, message) -> None:
    model = _stft_model((1, 10, 1), (1, 1, 7, 2), **kwargs)
    with pytest.raises(InvalidNodeError, match=message):
        convert_onnx_to_fx(model)
