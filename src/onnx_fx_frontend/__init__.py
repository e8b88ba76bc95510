"""Public API for the onnx_fx_frontend package."""

from .converter import convert_onnx_to_fx
from .errors import ConversionError, InvalidNodeError, UnsupportedOperatorError
from .loop import TensorIterator
from .registry import supported_ops

__all__ = [
    "convert_onnx_to_fx",
    "ConversionError",
    "InvalidNodeError",
    "TensorIterator",
    "UnsupportedOperatorError",
    "supported_ops",
]
