"""Handlers for elementwise, constant, random and scatter ONNX operators."""

from __future__ import annotations

import operator
from typing import TYPE_CHECKING, Callable, Optional, Sequence

import onnx
from onnx import TensorProto
import torch
from torch import fx

from .errors import ConversionError, InvalidNodeError
from .registry import register_op
from .utils import normalize_axis, onnx_dtype_to_torch, tensor_proto_to_torch

if TYPE_CHECKING:  # pragma: no cover - only for type checking
    from .graph_builder import GraphBuilder


_SEED_MASK = 0xFFFF_FFFF_FFFF_FFFF


def _legacy_broadcast(lhs: torch.Tensor, rhs: torch.Tensor, axis: Optional[int]) -> torch.Tensor:
    """Reshape ``rhs`` so its dims line up with ``lhs`` starting at ``axis``."""

    lhs_rank, rhs_rank = lhs.dim(), rhs.dim()
    if axis is None:
        axis = lhs_rank - rhs_rank
    elif axis < 0:
        axis += lhs_rank
    trailing = lhs_rank - axis - rhs_rank
    if axis < 0 or trailing < 0:
        raise ValueError(
            f"Cannot broadcast a rank-{rhs_rank} tensor into rank {lhs_rank} at axis {axis}"
        )
    return rhs.reshape((1,) * axis + tuple(rhs.shape) + (1,) * trailing)


def _random_normal(
    shape: Sequence[int],
    dtype: torch.dtype,
    mean: float,
    scale: float,
    seed: Optional[float],
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    generator = None
    if seed is not None:
        generator = torch.Generator(device=device or "cpu")
        generator.manual_seed(int(seed) & _SEED_MASK)
    sample_dtype = torch.float64 if dtype == torch.float64 else torch.float32
    sample = torch.randn(tuple(shape), generator=generator, dtype=sample_dtype, device=device)
    return (sample * scale + mean).to(dtype)


def _random_normal_like(
    x: torch.Tensor,
    dtype: Optional[torch.dtype],
    mean: float,
    scale: float,
    seed: Optional[float],
) -> torch.Tensor:
    return _random_normal(x.shape, dtype if dtype is not None else x.dtype, mean, scale, seed, device=x.device)


def _scatter_nd(data: torch.Tensor, indices: torch.Tensor, updates: torch.Tensor) -> torch.Tensor:
    output = data.clone()
    index_depth = indices.shape[-1]
    flat_indices = indices.reshape(-1, index_depth).long()
    flat_updates = updates.reshape((-1,) + tuple(data.shape[index_depth:]))
    output[tuple(flat_indices.t())] = flat_updates
    return output


def _legacy_binary_op(builder: "GraphBuilder", node: onnx.NodeProto, target: Callable) -> fx.Node:
    """Lower a binary op from opsets 1-6 that may carry the ``broadcast`` attribute."""

    attrs = builder.get_attributes(node)
    lhs = builder.get_value(node.input[0])
    rhs = builder.get_value(node.input[1])
    if not int(attrs.get("broadcast", 0)):
        return builder.call_function(node, target, (lhs, rhs))

    axis = attrs.get("axis")
    if axis is not None:
        axis = int(axis)
        lhs_shape = builder.get_value_shape(node.input[0])
        if lhs_shape is not None:
            axis = normalize_axis(builder.describe(node), axis, len(lhs_shape))
    aligned = builder.call_function(node, _legacy_broadcast, (lhs, rhs, axis))
    return builder.call_function(node, target, (lhs, aligned))


@register_op("Constant")
def constant(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    attrs = builder.get_attributes(node)
    tensor: torch.Tensor
    if "value" in attrs:
        value = attrs["value"]
        if not isinstance(value, onnx.TensorProto):
            raise ConversionError("'value' attribute of Constant node is not a TensorProto")
        tensor = tensor_proto_to_torch(value)
    elif "value_float" in attrs:
        tensor = torch.tensor(attrs["value_float"], dtype=torch.float32)
    elif "value_floats" in attrs:
        tensor = torch.tensor(attrs["value_floats"], dtype=torch.float32)
    elif "value_int" in attrs:
        tensor = torch.tensor(attrs["value_int"], dtype=torch.int64)
    elif "value_ints" in attrs:
        tensor = torch.tensor(attrs["value_ints"], dtype=torch.int64)
    else:
        raise ConversionError("Constant node is missing a supported value attribute")
    name_hint = node.output[0] if node.output else node.name
    return builder.create_constant_attr(node, tensor, name_hint=name_hint, trainable=False)


@register_op("Identity")
def identity(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    return builder.get_value(node.input[0])


@register_op("Add")
def add_v1(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    return _legacy_binary_op(builder, node, operator.add)


@register_op("Add", since_version=7)
def add(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    lhs = builder.get_value(node.input[0])
    rhs = builder.get_value(node.input[1])
    return builder.call_function(node, operator.add, (lhs, rhs))


@register_op("Mul")
def mul_v1(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    return _legacy_binary_op(builder, node, operator.mul)


@register_op("Mul", since_version=7)
def mul(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    lhs = builder.get_value(node.input[0])
    rhs = builder.get_value(node.input[1])
    return builder.call_function(node, operator.mul, (lhs, rhs))


@register_op("Sqrt")
def sqrt(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    x = builder.get_value(node.input[0])
    return builder.call_function(node, torch.sqrt, (x,))


def _random_dtype(builder: "GraphBuilder", node: onnx.NodeProto, dtype_enum: int) -> torch.dtype:
    dtype = onnx_dtype_to_torch(dtype_enum)
    if dtype is None or not dtype.is_floating_point:
        raise InvalidNodeError(builder.describe(node), f"unsupported 'dtype' value {dtype_enum}")
    return dtype


@register_op("RandomNormal")
def random_normal(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    attrs = builder.get_attributes(node)
    if "shape" not in attrs:
        raise InvalidNodeError(builder.describe(node), "the 'shape' attribute is required")
    shape = tuple(int(dim) for dim in attrs["shape"])
    dtype = _random_dtype(builder, node, int(attrs.get("dtype", TensorProto.FLOAT)))
    mean = float(attrs.get("mean", 0.0))
    scale = float(attrs.get("scale", 1.0))
    seed = attrs.get("seed")
    seed = float(seed) if seed is not None else None
    return builder.call_function(node, _random_normal, (shape, dtype, mean, scale, seed))


@register_op("RandomNormalLike")
def random_normal_like(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    attrs = builder.get_attributes(node)
    x = builder.get_value(node.input[0])
    dtype = None
    if "dtype" in attrs:
        dtype = _random_dtype(builder, node, int(attrs["dtype"]))
    mean = float(attrs.get("mean", 0.0))
    scale = float(attrs.get("scale", 1.0))
    seed = attrs.get("seed")
    seed = float(seed) if seed is not None else None
    return builder.call_function(node, _random_normal_like, (x, dtype, mean, scale, seed))


@register_op("ScatterND", since_version=11)
def scatter_nd(builder: "GraphBuilder", node: onnx.NodeProto) -> fx.Node:
    attrs = builder.get_attributes(node)
    reduction = attrs.get("reduction", "none")
    if reduction != "none":
        raise InvalidNodeError(
            builder.describe(node),
            f"unsupported value of attribute 'reduction'. Only 'none' is supported, got: {reduction}",
        )
    data = builder.get_value(node.input[0])
    indices = builder.get_value(node.input[1])
    updates = builder.get_value(node.input[2])
    return builder.call_function(node, _scatter_nd, (data, indices, updates))

