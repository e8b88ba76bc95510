# SPDX-License-Identifier: Apache-2.0
"""Internal utility helpers for ONNX to FX conversion."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np
import onnx
import torch
from onnx import TensorProto, numpy_helper

from .errors import InvalidNodeError


_DTYPE_MAP: Dict[int, torch.dtype] = {
    TensorProto.FLOAT: torch.float32,
    TensorProto.DOUBLE: torch.float64,
    TensorProto.FLOAT16: torch.float16,
    TensorProto.BFLOAT16: torch.bfloat16,
    TensorProto.INT64: torch.int64,
    TensorProto.INT32: torch.int32,
    TensorProto.INT16: torch.int16,
    TensorProto.INT8: torch.int8,
    TensorProto.UINT8: torch.uint8,
    TensorProto.BOOL: torch.bool,
    TensorProto.COMPLEX64: torch.complex64,
    TensorProto.COMPLEX128: torch.complex128,
}


@dataclass(frozen=True)
class ValueInfo:
    """Container for light-weight ONNX value metadata.

    ``shape`` is ``None`` when even the rank is unknown; symbolic or missing
    dims are ``None`` entries.
    """

    shape: Optional[List[Optional[int]]]
    dtype: Optional[torch.dtype]

    @classmethod
    def from_proto(cls, value: onnx.ValueInfoProto) -> "ValueInfo":
        tensor_type = value.type.tensor_type
        shape: Optional[List[Optional[int]]] = None
        if tensor_type.HasField("shape"):
            shape = [
                int(dim.dim_value) if dim.HasField("dim_value") else None
                for dim in tensor_type.shape.dim
            ]
        return cls(shape=shape, dtype=_DTYPE_MAP.get(tensor_type.elem_type))


def tensor_proto_to_torch(tensor: TensorProto) -> torch.Tensor:
    """Convert an ONNX ``TensorProto`` to a ``torch.Tensor``.

    A copy is always returned to decouple the Torch tensor from the ONNX buffer.
    """

    np_array = numpy_helper.to_array(tensor)
    torch_dtype = _DTYPE_MAP.get(tensor.data_type)
    result = torch.from_numpy(np.array(np_array))
    if torch_dtype is not None and result.dtype != torch_dtype:
        result = result.to(torch_dtype)
    return result.clone().detach()


def onnx_dtype_to_torch(dtype: int) -> Optional[torch.dtype]:
    """Map an ONNX TensorProto data type enum to a Torch dtype, if known."""

    return _DTYPE_MAP.get(dtype)


def build_value_info_map(graph: onnx.GraphProto) -> Dict[str, ValueInfo]:
    """Collect ONNX value info metadata of one graph for quick lookup."""

    all_infos: Iterable[onnx.ValueInfoProto] = (
        list(graph.input) + list(graph.value_info) + list(graph.output)
    )
    return {value_info.name: ValueInfo.from_proto(value_info) for value_info in all_infos}


def normalize_axis(node_description: str, axis: int, rank: int) -> int:
    """Map ``axis`` into ``[0, rank)``, accepting negative values."""

    if not -rank <= axis < rank:
        raise InvalidNodeError(
            node_description,
            f"axis {axis} is out of the tensor rank range [{-rank}, {rank - 1}]",
        )
    return axis + rank if axis < 0 else axis


_NAME_SANITIZER = re.compile(r"[^0-9a-zA-Z_]")


def sanitize_name(name: str) -> str:
    """Sanitize a string so it can be used as an attribute / module name."""

    clean = _NAME_SANITIZER.sub("_", name)
    if clean and clean[0].isdigit():
        clean = f"_{clean}"
    return clean or "const"
