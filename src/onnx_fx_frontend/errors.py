"""Custom exception types used by the onnx_fx_frontend package."""

from __future__ import annotations


class ConversionError(RuntimeError):
    """Raised when a model conversion fails for any reason."""


class UnsupportedOperatorError(ConversionError):
    """Raised when encountering an ONNX operator that is not yet supported."""


class InvalidNodeError(ConversionError):
    """Raised when a node violates a precondition of its converter."""

    def __init__(self, node_description: str, message: str) -> None:
        super().__init__(f"{node_description}: {message}")
        self.node_description = node_description
