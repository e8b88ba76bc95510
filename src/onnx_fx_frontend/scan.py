# SPDX-License-Identifier: Apache-2.0
"""Lowering of the ONNX ``Scan`` operator onto :class:`TensorIterator`."""

from __future__ import annotations

import logging
import operator
from typing import TYPE_CHECKING, List, Sequence

import onnx
import torch
from torch import fx

from .errors import InvalidNodeError
from .loop import TensorIterator
from .registry import register_op
from .utils import normalize_axis

if TYPE_CHECKING:  # pragma: no cover - only for type checking
    from .graph_builder import GraphBuilder, Subgraph

log = logging.getLogger(__name__)


def _output_node(graph: fx.Graph) -> fx.Node:
    for node in reversed(graph.nodes):
        if node.op == "output":
            return node
    raise RuntimeError("FX graph has no output node")


def _squeeze_scan_inputs(
    builder: "GraphBuilder",
    node: onnx.NodeProto,
    subgraph: "Subgraph",
    input_names: Sequence[str],
    num_initial_values: int,
    scan_input_axes: Sequence[int],
) -> List[int]:
    """Give scan-input placeholders a size-1 sliced axis and squeeze it away.

    Returns the slicing axes, normalized wherever the input rank is known.
    """

    description = builder.describe(node)
    graph = subgraph.module.graph
    placeholders = subgraph.placeholders

    for i in range(num_initial_values):
        placeholders[i].meta["onnx_shape"] = builder.get_value_shape(input_names[i])

    axes: List[int] = []
    squeezes = []
    for i, axis in enumerate(scan_input_axes):
        index = num_initial_values + i
        placeholder = placeholders[index]
        shape = builder.get_value_shape(input_names[index])
        if shape is not None:
            axis = normalize_axis(description, axis, len(shape))
            shape[axis] = 1
        placeholder.meta["onnx_shape"] = shape
        axes.append(axis)
        squeezes.append((placeholder, axis))

    # Squeezes go after the last placeholder so that all inputs stay first.
    with graph.inserting_after(placeholders[-1]):
        for placeholder, axis in reversed(squeezes):
            users = list(placeholder.users)
            squeeze = graph.call_function(torch.squeeze, (placeholder, axis))
            for user in users:
                user.replace_input_with(placeholder, squeeze)
    return axes


def _unsqueeze_scan_outputs(
    builder: "GraphBuilder",
    node: onnx.NodeProto,
    subgraph: "Subgraph",
    num_initial_values: int,
    scan_output_axes: Sequence[int],
) -> List[int]:
    """Add the axis along which each scan output of the body is concatenated."""

    description = builder.describe(node)
    graph = subgraph.module.graph
    output_node = _output_node(graph)
    outputs = list(output_node.args[0])

    axes: List[int] = []
    with graph.inserting_before(output_node):
        for i, axis in enumerate(scan_output_axes):
            index = num_initial_values + i
            value = outputs[index]
            shape = value.meta.get("onnx_shape") if isinstance(value, fx.Node) else None
            if shape is not None:
                axis = normalize_axis(description, axis, len(shape) + 1)
            outputs[index] = graph.call_function(torch.unsqueeze, (value, axis))
            axes.append(axis)
    output_node.args = (tuple(outputs),)
    return axes


def _scan_to_tensor_iterator(
    builder: "GraphBuilder",
    node: onnx.NodeProto,
    subgraph: "Subgraph",
    input_names: Sequence[str],
    num_scan_inputs: int,
    scan_input_axes: Sequence[int],
    scan_input_directions: Sequence[int],
    scan_output_axes: Sequence[int],
    scan_output_directions: Sequence[int],
) -> List[fx.Node]:
    num_body_inputs = len(subgraph.input_names)
    num_initial_values = num_body_inputs - num_scan_inputs
    num_scan_outputs = len(subgraph.output_names) - num_initial_values

    input_axes = _squeeze_scan_inputs(
        builder, node, subgraph, input_names, num_initial_values, scan_input_axes
    )
    output_axes = _unsqueeze_scan_outputs(builder, node, subgraph, num_initial_values, scan_output_axes)
    subgraph.module.graph.lint()
    subgraph.module.recompile()

    iterator = TensorIterator(subgraph.module, num_body_inputs + len(subgraph.outer_inputs))
    for i in range(num_scan_inputs):
        index = num_initial_values + i
        if scan_input_directions[i]:
            iterator.set_sliced_input(index, index, -1, -1, 1, 0, input_axes[i])
        else:
            iterator.set_sliced_input(index, index, 0, 1, 1, -1, input_axes[i])

    for i in range(num_initial_values):
        # Back edge for state input/output.
        iterator.set_merged_input(i, i, i)
        iterator.get_iter_value(i, -1)
    for i in range(num_scan_outputs):
        index = num_initial_values + i
        if scan_output_directions[i]:
            iterator.get_concatenated_slices(index, -1, -1, 1, 0, output_axes[i])
        else:
            iterator.get_concatenated_slices(index, 0, 1, 1, -1, output_axes[i])

    for k in range(len(subgraph.outer_inputs)):
        iterator.set_invariant_input(num_body_inputs + k, num_body_inputs + k)

    args = [builder.get_value(name) for name in input_names]
    args.extend(builder.get_value(name) for name in subgraph.outer_inputs)
    module_name = builder.register_module(node, iterator, base_name=node.name or "scan")
    # The iterator returns a tuple; value info goes on the getitem nodes.
    iterator_node = builder.call_module(node, module_name, args, with_value_info=False)

    return [
        builder.call_function(node, operator.getitem, (iterator_node, i), output_idx=i)
        for i in range(num_initial_values + num_scan_outputs)
    ]


def _int_list(attrs, name: str, default: List[int]) -> List[int]:
    value = attrs.get(name)
    if value is None:
        return default
    return [int(v) for v in value]


def _import_onnx_scan(
    builder: "GraphBuilder",
    node: onnx.NodeProto,
    default_axis: int,
    in_offset: int,
    in_directions_attr_name: str,
) -> List[fx.Node]:
    description = builder.describe(node)
    attrs = builder.get_attributes(node)
    if "num_scan_inputs" not in attrs:
        raise InvalidNodeError(description, "the 'num_scan_inputs' attribute is required")
    num_scan_inputs = int(attrs["num_scan_inputs"])

    input_names = list(node.input[in_offset:])
    if not all(input_names):
        raise InvalidNodeError(description, "all initial state and scan inputs must be provided")

    subgraph = builder.import_subgraph(node, "body")
    num_body_inputs = len(subgraph.input_names)
    num_initial_values = num_body_inputs - num_scan_inputs
    num_scan_outputs = len(subgraph.output_names) - num_initial_values
    if num_scan_inputs < 1 or num_initial_values < 0:
        raise InvalidNodeError(
            description,
            f"num_scan_inputs={num_scan_inputs} does not fit a body with {num_body_inputs} inputs",
        )
    if num_scan_outputs < 0:
        raise InvalidNodeError(
            description,
            f"body returns {len(subgraph.output_names)} outputs but carries {num_initial_values} states",
        )
    if len(input_names) != num_body_inputs:
        raise InvalidNodeError(
            description,
            f"node provides {len(input_names)} inputs but the body expects {num_body_inputs}",
        )

    scan_input_axes = _int_list(attrs, "scan_input_axes", [default_axis] * num_scan_inputs)
    scan_input_directions = _int_list(attrs, in_directions_attr_name, [0] * num_scan_inputs)
    scan_output_axes = _int_list(attrs, "scan_output_axes", [default_axis] * num_scan_outputs)
    scan_output_directions = _int_list(attrs, "scan_output_directions", [0] * num_scan_outputs)
    for name, values, expected in (
        ("scan_input_axes", scan_input_axes, num_scan_inputs),
        (in_directions_attr_name, scan_input_directions, num_scan_inputs),
        ("scan_output_axes", scan_output_axes, num_scan_outputs),
        ("scan_output_directions", scan_output_directions, num_scan_outputs),
    ):
        if len(values) != expected:
            raise InvalidNodeError(description, f"'{name}' must have {expected} entries, got {len(values)}")

    log.debug(
        "%s: %d states, %d scan inputs, %d scan outputs, %d outer scope inputs",
        description,
        num_initial_values,
        num_scan_inputs,
        num_scan_outputs,
        len(subgraph.outer_inputs),
    )
    return _scan_to_tensor_iterator(
        builder,
        node,
        subgraph,
        input_names,
        num_scan_inputs,
        scan_input_axes,
        scan_input_directions,
        scan_output_axes,
        scan_output_directions,
    )


@register_op("Scan", since_version=8)
def scan_v8(builder: "GraphBuilder", node: onnx.NodeProto) -> List[fx.Node]:
    # Scan-8 has an optional leading `sequence_lens` input and a batch axis,
    # so the sequence axis defaults to 1.
    if node.input and node.input[0]:
        raise InvalidNodeError(builder.describe(node), "the 'sequence_lens' input is not supported")
    return _import_onnx_scan(builder, node, 1, 1, "directions")


@register_op("Scan", since_version=9)
def scan(builder: "GraphBuilder", node: onnx.NodeProto) -> List[fx.Node]:
    return _import_onnx_scan(builder, node, 0, 0, "scan_input_directions")
