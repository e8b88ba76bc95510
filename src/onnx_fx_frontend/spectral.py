# SPDX-License-Identifier: Apache-2.0
"""Spectral operators: STFT lowered to framing, windowing and a DFT."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

import onnx
import torch
from torch import fx

from .errors import ConversionError, InvalidNodeError
from .registry import register_op

if TYPE_CHECKING:  # pragma: no cover - only for type checking
    from .graph_builder import GraphBuilder

log = logging.getLogger(__name__)

_SIGNAL_AXIS = 1


def _frame_signal(signal: torch.Tensor, frame_length: int, frame_step: int) -> torch.Tensor:
    """Split ``[batch, length, C]`` into ``[batch, frames, frame_length, C]``."""

    frames = signal.unfold(_SIGNAL_AXIS, frame_length, frame_step)
    return frames.permute(0, 1, 3, 2)


def _apply_window(frames: torch.Tensor, window: torch.Tensor) -> torch.Tensor:
    # The window runs along the frame axis and is shared by real and imaginary parts.
    return frames * window.to(frames.dtype).unsqueeze(-1)


def _dft(frames: torch.Tensor, dft_length: int, onesided: bool) -> torch.Tensor:
    """Forward DFT along axis 2 of ``[batch, frames, frame_length, C]``.

    ``C`` is 1 for real and 2 for complex input. The result stores the complex
    spectrum as a trailing ``[real, imag]`` pair.
    """

    if frames.shape[-1] == 2:
        signal = torch.view_as_complex(frames.contiguous())
    else:
        signal = frames[..., 0]
    if onesided:
        spectrum = torch.fft.rfft(signal, n=dft_length, dim=2)
    else:
        spectrum = torch.fft.fft(signal, n=dft_length, dim=2)
    return torch.view_as_real(spectrum)


def _constant_int(builder: "GraphBuilder", node: onnx.NodeProto, index: int, what: str) -> int:
    message = f"{what} input must be a scalar or Shape{{1}} constant."
    try:
        tensor = builder.get_tensor_value(node.input[index])
    except ConversionError as exc:
        raise InvalidNodeError(builder.describe(node), message) from exc
    if tensor.numel() != 1:
        raise InvalidNodeError(builder.describe(node), message)
    return int(tensor.reshape(-1)[0].item())


def _is_complex(shape: Optional[List[Optional[int]]]) -> bool:
    return bool(shape) and shape[-1] == 2


@register_op("STFT", since_version=17)
def stft(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    description = builder.describe(node)
    attrs = builder.get_attributes(node)
    onesided = int(attrs.get("onesided", 1))

    signal = builder.get_value(node.input[0])
    frame_step = _constant_int(builder, node, 1, "frame_step")
    if frame_step <= 0:
        raise InvalidNodeError(description, f"frame_step must be positive, got {frame_step}")

    signal_shape = builder.get_value_shape(node.input[0])
    if signal_shape is None or len(signal_shape) != 3 or any(dim is None for dim in signal_shape):
        raise InvalidNodeError(description, "Shape of signal input must be static with the rank equal to 3.")
    if signal_shape[-1] not in (1, 2):
        raise InvalidNodeError(
            description,
            f"The last dimension of signal input must be 1 (real) or 2 (complex), got {signal_shape[-1]}.",
        )
    signal_length = signal_shape[_SIGNAL_AXIS]

    window = builder.get_optional_value(node, 2)
    window_shape = builder.get_value_shape(node.input[2]) if window is not None else None
    if window_shape is not None and len(window_shape) != 1:
        raise InvalidNodeError(description, "The rank of window input must be 1D.")
    window_length = window_shape[0] if window_shape else None

    if len(node.input) > 3 and node.input[3]:
        frame_length = _constant_int(builder, node, 3, "frame_length")
    elif window_length is not None:
        frame_length = window_length
    else:
        frame_length = signal_length // frame_step
    if window_length is not None and window_length != frame_length:
        raise InvalidNodeError(description, "The length of window input must be equal to frame_length.")

    if onesided == 1 and _is_complex(signal_shape):
        raise InvalidNodeError(description, "If attribute onesided==1, signal input can NOT be complex.")

    num_frames = (signal_length - frame_length) // frame_step + 1
    if frame_length <= 0 or num_frames <= 0:
        raise InvalidNodeError(
            description,
            f"signal of length {signal_length} yields no frames of length {frame_length}",
        )
    log.debug(
        "%s: %d frames of length %d, step %d, onesided=%d",
        description,
        num_frames,
        frame_length,
        frame_step,
        onesided,
    )

    frames = builder.call_function(node, _frame_signal, (signal, frame_length, frame_step))
    if window is not None:
        frames = builder.call_function(node, _apply_window, (frames, window))
    return builder.call_function(node, _dft, (frames, frame_length, onesided == 1))
