# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Union

import onnx
from torch import fx

from .graph_builder import GraphBuilder


def convert_onnx_to_fx(model: Union[onnx.ModelProto, str], *, debug: bool = False) -> fx.GraphModule:
    """Lower an ONNX model, or the path of one, to a ``torch.fx.GraphModule``.

    ``Scan`` nodes become :class:`~onnx_fx_frontend.loop.TensorIterator`
    submodules that own their converted body. ``debug`` prints the result.
    """

    return GraphBuilder.from_model(model, debug=debug).build()
