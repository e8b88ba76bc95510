# SPDX-License-Identifier: Apache-2.0
import numpy as np
import onnx
from onnx import TensorProto, helper
import torch

from onnx_fx_frontend import convert_onnx_to_fx


def build_model() -> onnx.ModelProto:
    """Running sum over the first axis, followed by an elementwise sqrt."""

    body = helper.make_graph(
        [
            helper.make_node("Add", ["sum_in", "x_t"], ["sum_out"]),
            helper.make_node("Sqrt", ["sum_out"], ["y_t"]),
        ],
        "running_sum",
        [
            helper.make_tensor_value_info("sum_in", TensorProto.FLOAT, [3]),
            helper.make_tensor_value_info("x_t", TensorProto.FLOAT, [3]),
        ],
        [
            helper.make_tensor_value_info("sum_out", TensorProto.FLOAT, [3]),
            helper.make_tensor_value_info("y_t", TensorProto.FLOAT, [3]),
        ],
    )
    scan = helper.make_node("Scan", ["init", "xs"], ["total", "ys"], name="scan", body=body, num_scan_inputs=1)
    graph = helper.make_graph(
        [scan],
        "running_sum_model",
        [
            helper.make_tensor_value_info("init", TensorProto.FLOAT, [3]),
            helper.make_tensor_value_info("xs", TensorProto.FLOAT, [5, 3]),
        ],
        [
            helper.make_tensor_value_info("total", TensorProto.FLOAT, [3]),
            helper.make_tensor_value_info("ys", TensorProto.FLOAT, [5, 3]),
        ],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 16)])
    onnx.checker.check_model(model)
    return model


def main():
    fx_model = convert_onnx_to_fx(build_model(), debug=True)
    print(fx_model.scan.body.code)

    init = torch.zeros(3)
    xs = torch.rand(5, 3)
    with torch.no_grad():
        total, ys = fx_model(init, xs)

    expected = np.sqrt(np.cumsum(xs.numpy(), axis=0))
    print("Total:", total)
    print("Scan outputs:", ys)
    assert np.allclose(ys.numpy(), expected, atol=1e-6), "Outputs do not match!"
    print("Outputs match! ✅")


if __name__ == "__main__":
    main()
