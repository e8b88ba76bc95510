# SPDX-License-Identifier: Apache-2.0
"""Shared test utilities."""

from __future__ import annotations

from typing import Dict, List, Sequence

import numpy as np
import onnx
import onnxruntime as ort
from onnx import TensorProto, helper


def ort_run(model: onnx.ModelProto, feeds: Dict[str, np.ndarray]) -> list[np.ndarray]:
    session = ort.InferenceSession(model.SerializeToString(), providers=["CPUExecutionProvider"])
    output_names = [output.name for output in model.graph.output]
    return session.run(output_names, feeds)


def make_model(
    *,
    nodes: List[onnx.NodeProto],
    inputs: List[onnx.ValueInfoProto],
    outputs: List[onnx.ValueInfoProto],
    initializers: List[onnx.TensorProto] | None = None,
    opset: int = 18,
    check: bool = True,
) -> onnx.ModelProto:
    graph = helper.make_graph(
        nodes,
        "single_op_graph",
        inputs,
        outputs,
        initializer=initializers or [],
    )
    opset_imports = [helper.make_opsetid("", opset)]
    model = helper.make_model(graph, opset_imports=opset_imports)
    model.ir_version = helper.find_min_ir_version_for(opset_imports)
    if check:
        onnx.checker.check_model(model)
    return model


def value(name: str, shape: Sequence[int | None] | None, elem_type: int = TensorProto.FLOAT) -> onnx.ValueInfoProto:
    return helper.make_tensor_value_info(name, elem_type, None if shape is None else list(shape))


def rand(shape: Sequence[int], seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.standard_normal(tuple(shape)).astype(np.float32)
