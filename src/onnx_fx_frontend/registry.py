# SPDX-License-Identifier: Apache-2.0
"""Opset-aware registry that maps ONNX ops to FX lowering handlers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

import onnx

if TYPE_CHECKING:  # pragma: no cover - only for type checking
    from .graph_builder import GraphBuilder


OpHandler = Callable[["GraphBuilder", onnx.NodeProto], object]

# op_type -> [(since_version, handler)] sorted by since_version
OP_REGISTRY: Dict[str, List[Tuple[int, OpHandler]]] = {}


def register_op(op_type: str, since_version: int = 1) -> Callable[[OpHandler], OpHandler]:
    """Decorator used to register an ONNX operator handler.

    A handler registered with ``since_version=N`` serves every opset from
    ``N`` up to (excluding) the next registered version of the same op.
    """

    def decorator(func: OpHandler) -> OpHandler:
        versions = OP_REGISTRY.setdefault(op_type, [])
        if any(version == since_version for version, _ in versions):
            raise ValueError(f"Handler for {op_type}-{since_version} is already registered")
        versions.append((since_version, func))
        versions.sort(key=lambda item: item[0])
        return func

    return decorator


def get_handler(op_type: str, opset_version: int) -> Optional[OpHandler]:
    """Return the handler that serves ``op_type`` in ``opset_version``."""

    selected = None
    for since_version, handler in OP_REGISTRY.get(op_type, ()):
        if since_version > opset_version:
            break
        selected = handler
    return selected


def supported_ops() -> Dict[str, List[int]]:
    return {op_type: [version for version, _ in versions] for op_type, versions in OP_REGISTRY.items()}


__all__ = ["OP_REGISTRY", "OpHandler", "get_handler", "register_op", "supported_ops"]
