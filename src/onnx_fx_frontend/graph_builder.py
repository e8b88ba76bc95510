"""Core graph builder that lowers ONNX graphs to PyTorch FX graphs."""

from __future__ import annotations

import collections
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import onnx
from onnx import helper, shape_inference
import torch
from torch import fx, nn

from .errors import ConversionError, UnsupportedOperatorError
from .registry import OP_REGISTRY, get_handler
from .utils import ValueInfo, build_value_info_map, sanitize_name, tensor_proto_to_torch

# Importing the handler modules populates the registry.
from . import ops, scan, spectral  # noqa: F401

log = logging.getLogger(__name__)

_DEFAULT_DOMAINS = ("", "ai.onnx")


class FXModuleRoot(nn.Module):
    """Root module that hosts parameters, buffers, and submodules for FX."""

    pass


@dataclass
class Subgraph:
    """A nested ONNX graph lowered to its own ``fx.GraphModule``.

    The module's placeholders are the ONNX graph inputs in order, followed by
    one placeholder per entry of ``outer_inputs``: values the body reads from
    the enclosing scope that are not known at conversion time. The module
    always returns a tuple ordered like ``output_names``.
    """

    module: fx.GraphModule
    input_names: List[str]
    output_names: List[str]
    outer_inputs: List[str]

    @property
    def placeholders(self) -> List[fx.Node]:
        return [node for node in self.module.graph.nodes if node.op == "placeholder"]


def default_opset_version(model: onnx.ModelProto) -> int:
    """Return the version of the default ONNX operator set imported by ``model``."""

    for opset in model.opset_import:
        if opset.domain in _DEFAULT_DOMAINS:
            return int(opset.version)
    raise ConversionError("Model does not import the default ONNX operator set")


class GraphBuilder:
    """Convert an ONNX graph into a ``torch.fx.Graph``.

    Builders for nested graphs (``Scan`` bodies) are created with ``parent``
    set; they resolve names that are not defined locally in the enclosing
    builder.
    """

    def __init__(
        self,
        graph: onnx.GraphProto,
        *,
        opset_version: int,
        parent: Optional["GraphBuilder"] = None,
        debug: bool = False,
    ) -> None:
        self.onnx_graph = graph
        self.opset_version = opset_version
        self.parent = parent
        self.debug = debug
        self.graph = fx.Graph()
        self.root_module = FXModuleRoot()

        self.initializers: Dict[str, torch.Tensor] = {
            tensor.name: tensor_proto_to_torch(tensor)
            for tensor in graph.initializer
        }
        self.tensor_values: Dict[str, torch.Tensor] = dict(self.initializers)
        self.constant_attr_nodes: Dict[str, fx.Node] = {}
        self.env: Dict[str, fx.Node] = {}
        self.value_info: Dict[str, ValueInfo] = build_value_info_map(graph)
        self.graph_outputs: List[str] = [value.name for value in graph.output]
        self.input_names: List[str] = []
        self.outer_inputs: List[str] = []
        self.module_name_counters: Dict[str, int] = collections.defaultdict(int)
        self.attr_name_counters: Dict[str, int] = collections.defaultdict(int)
        self.placeholder_name_counters: Dict[str, int] = collections.defaultdict(int)
        self.value_users: Dict[str, int] = self._count_value_users(graph)
        self._last_placeholder: Optional[fx.Node] = None

    # ---------------------------------------------------------------------
    # High-level API
    # ---------------------------------------------------------------------

    @classmethod
    def from_model(cls, model_or_path: onnx.ModelProto | str, *, debug: bool = False) -> "GraphBuilder":
        """Factory that loads a model if needed and performs shape inference."""

        if isinstance(model_or_path, str):
            model = onnx.load(model_or_path)
        elif isinstance(model_or_path, onnx.ModelProto):
            model = model_or_path
        else:
            raise TypeError("model must be a path or onnx.ModelProto")

        try:
            # Shape inference enriches ValueInfo so we can propagate metadata.
            model = shape_inference.infer_shapes(model)
        except Exception as exc:
            log.warning("ONNX shape inference failed (%s), converting without inferred shapes", exc)
        return cls(model.graph, opset_version=default_opset_version(model), debug=debug)

    def build(self, *, as_tuple: bool = False) -> fx.GraphModule:
        """Perform the conversion and return the constructed GraphModule."""

        self._create_placeholders()
        self._convert_nodes()
        self._create_outputs(as_tuple=as_tuple)
        graph_module = fx.GraphModule(self.root_module, self.graph)
        graph_module.graph.lint()
        if self.debug:
            print(graph_module.graph)
        return graph_module

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    def describe(self, node: onnx.NodeProto) -> str:
        """Human readable identification of a node for error messages."""

        name = node.name or (node.output[0] if node.output else "")
        return f"{node.op_type} node '{name}'"

    def has_value(self, name: str) -> bool:
        if name in self.env or name in self.tensor_values or name in self.initializers:
            return True
        return self.parent is not None and self.parent.has_value(name)

    def get_value(self, name: str) -> fx.Node:
        """Retrieve an FX node corresponding to a named ONNX value."""

        if not name:
            raise ConversionError("Empty value name encountered in ONNX graph")
        if name in self.env:
            return self.env[name]
        if name in self.constant_attr_nodes:
            return self.constant_attr_nodes[name]
        if name in self.initializers:
            return self._get_initializer_attr_node(name)
        if name in self.tensor_values:
            attr_node = self._create_attr_node(name, self.tensor_values[name], trainable=False)
            self.env[name] = attr_node
            return attr_node
        if self.parent is not None and self.parent.has_value(name):
            return self._capture_outer_value(name)
        raise ConversionError(f"Value '{name}' is unknown in the current graph context")

    def get_optional_value(self, node: onnx.NodeProto, index: int) -> Optional[fx.Node]:
        """Return the FX node feeding input ``index`` or ``None`` when it is omitted."""

        if index >= len(node.input) or not node.input[index]:
            return None
        return self.get_value(node.input[index])

    def get_tensor_value(self, name: str) -> torch.Tensor:
        """Return a tensor for a value that is statically known at conversion time."""

        if name in self.tensor_values:
            return self.tensor_values[name].clone().detach()
        if self.parent is not None and name not in self.env:
            return self.parent.get_tensor_value(name)
        raise ConversionError(f"Tensor value for '{name}' is not statically known")

    def get_value_shape(self, name: str) -> Optional[List[Optional[int]]]:
        """Best known shape of a value; ``None`` when even the rank is unknown."""

        info = self.value_info.get(name)
        if info is not None and info.shape is not None:
            return list(info.shape)
        if name in self.tensor_values:
            return list(self.tensor_values[name].shape)
        fx_node = self.env.get(name)
        if fx_node is not None:
            shape = fx_node.meta.get("onnx_shape")
            return list(shape) if shape is not None else None
        if self.parent is not None:
            return self.parent.get_value_shape(name)
        return None

    def get_attributes(self, node: onnx.NodeProto) -> Dict[str, object]:
        """Convert ONNX node attributes into a Python dictionary.

        Graph attributes are skipped; use :meth:`import_subgraph` for them.
        """

        attrs: Dict[str, object] = {}
        for attr in node.attribute:
            if attr.type in (onnx.AttributeProto.GRAPH, onnx.AttributeProto.GRAPHS):
                continue
            value = helper.get_attribute_value(attr)
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            attrs[attr.name] = value
        return attrs

    def get_value_info(self, name: str) -> Optional[ValueInfo]:
        """Fetch stored metadata for a given ONNX value if available."""

        return self.value_info.get(name)

    def import_subgraph(self, node: onnx.NodeProto, attr_name: str) -> Subgraph:
        """Lower the graph attribute ``attr_name`` of ``node`` to a GraphModule."""

        graph_proto = next(
            (attr.g for attr in node.attribute if attr.name == attr_name and attr.type == onnx.AttributeProto.GRAPH),
            None,
        )
        if graph_proto is None:
            raise ConversionError(f"{self.describe(node)} is missing the '{attr_name}' graph attribute")

        log.debug("Importing subgraph '%s' of %s", attr_name, self.describe(node))
        child = GraphBuilder(graph_proto, opset_version=self.opset_version, parent=self)
        module = child.build(as_tuple=True)
        return Subgraph(
            module=module,
            input_names=list(child.input_names),
            output_names=list(child.graph_outputs),
            outer_inputs=list(child.outer_inputs),
        )

    def register_module(self, node: onnx.NodeProto, module: nn.Module, *, base_name: Optional[str] = None) -> str:
        """Register a submodule on the FX root and return its qualified name."""

        raw_name = base_name or node.name or node.op_type.lower()
        sanitized = sanitize_name(raw_name)
        counter = self.module_name_counters[sanitized]
        self.module_name_counters[sanitized] += 1
        name = sanitized if counter == 0 else f"{sanitized}_{counter}"
        self.root_module.add_module(name, module)
        return name

    def call_module(
        self,
        node: onnx.NodeProto,
        module_name: str,
        args: Sequence[fx.Node],
        kwargs: Optional[Dict[str, object]] = None,
        *,
        output_idx: int = 0,
        with_value_info: bool = True,
    ) -> fx.Node:
        fx_node = self.graph.call_module(module_name, args=tuple(args), kwargs=kwargs or {})
        self._annotate_node(fx_node, node, output_idx, with_value_info=with_value_info)
        return fx_node

    def call_function(
        self,
        node: onnx.NodeProto,
        target,
        args: Sequence[fx.Node | object],
        kwargs: Optional[Dict[str, object]] = None,
        *,
        output_idx: int = 0,
    ) -> fx.Node:
        fx_node = self.graph.call_function(target, args=tuple(args), kwargs=kwargs or {})
        self._annotate_node(fx_node, node, output_idx)
        return fx_node

    def create_constant_attr(
        self,
        node: onnx.NodeProto,
        tensor: torch.Tensor,
        *,
        name_hint: Optional[str] = None,
        trainable: Optional[bool] = None,
    ) -> fx.Node:
        """Register a tensor as an attribute on the root module and return its node."""

        base_name = name_hint or node.name or (node.output[0] if node.output else "const")
        return self._create_attr_node(base_name, tensor, trainable=trainable)

    def set_output_value(self, name: str, node: fx.Node) -> None:
        if name:
            self.env[name] = node

    # ------------------------------------------------------------------
    # Internal mechanics
    # ------------------------------------------------------------------

    def _count_value_users(self, graph: onnx.GraphProto) -> Dict[str, int]:
        counter: Dict[str, int] = collections.Counter()
        for node in graph.node:
            for input_name in node.input:
                if input_name:
                    counter[input_name] += 1
        for output in graph.output:
            if output.name:
                counter[output.name] += 1
        return counter

    def _add_placeholder(self, source_name: str, preferred: str) -> fx.Node:
        sanitized = sanitize_name(preferred)
        counter = self.placeholder_name_counters[sanitized]
        self.placeholder_name_counters[sanitized] += 1
        preferred_name = sanitized if counter == 0 else f"{sanitized}_{counter}"

        # Placeholders stay ahead of every computation node.
        if self._last_placeholder is None:
            context = self.graph.inserting_before(None)
        else:
            context = self.graph.inserting_after(self._last_placeholder)
        with context:
            placeholder = self.graph.placeholder(preferred_name)
        if placeholder.name != preferred_name:
            placeholder.name = preferred_name
        self._last_placeholder = placeholder

        placeholder.meta["onnx_name"] = source_name
        placeholder.meta["onnx_sanitized_name"] = preferred_name
        return placeholder

    def _create_placeholders(self) -> None:
        initializer_names = set(self.initializers.keys())
        for value in self.onnx_graph.input:
            if value.name in initializer_names:
                continue
            placeholder = self._add_placeholder(value.name, value.name)
            info = self.get_value_info(value.name)
            if info:
                placeholder.meta["onnx_shape"] = info.shape
                placeholder.meta["onnx_dtype"] = info.dtype
            placeholder.meta["onnx_op_type"] = "Input"
            self.env[value.name] = placeholder
            self.input_names.append(value.name)

    def _capture_outer_value(self, name: str) -> fx.Node:
        try:
            tensor = self.parent.get_tensor_value(name)
        except ConversionError:
            tensor = None
        if tensor is not None:
            attr_node = self._create_attr_node(name, tensor, trainable=False)
            self.env[name] = attr_node
            return attr_node

        placeholder = self._add_placeholder(name, f"outer_{name}")
        placeholder.meta["onnx_op_type"] = "OuterScope"
        shape = self.parent.get_value_shape(name)
        if shape is not None:
            placeholder.meta["onnx_shape"] = shape
        self.env[name] = placeholder
        self.outer_inputs.append(name)
        log.debug("Subgraph captures outer scope value '%s'", name)
        return placeholder

    def _convert_nodes(self) -> None:
        for node in self.onnx_graph.node:
            if node.domain not in _DEFAULT_DOMAINS:
                raise UnsupportedOperatorError(
                    f"Operator '{node.domain}.{node.op_type}' from a custom domain is not supported "
                    f"(node name: '{node.name}')"
                )
            handler = get_handler(node.op_type, self.opset_version)
            if handler is None:
                if node.op_type in OP_REGISTRY:
                    raise UnsupportedOperatorError(
                        f"Operator '{node.op_type}' is not supported in opset {self.opset_version} "
                        f"(node name: '{node.name}')"
                    )
                raise UnsupportedOperatorError(
                    f"Operator '{node.op_type}' is not supported (node name: '{node.name}')"
                )
            log.debug("Converting %s with opset %d", self.describe(node), self.opset_version)
            result = handler(self, node)
            if result is None:
                continue
            outputs = [name for name in node.output if name]
            if isinstance(result, fx.Node):
                self._assign_single_output(node, result, outputs)
            elif isinstance(result, Sequence):
                self._assign_sequence_output(node, result)
            else:
                raise ConversionError(
                    f"Handler for op '{node.op_type}' returned unsupported value type"
                )

    def _assign_single_output(self, node: onnx.NodeProto, fx_node: fx.Node, outputs: List[str]) -> None:
        if not outputs:
            return
        self.env[outputs[0]] = fx_node
        for extra in outputs[1:]:
            if self.value_users.get(extra, 0) > 0:
                raise UnsupportedOperatorError(
                    f"Operator '{node.op_type}' produces multiple outputs which are not supported"
                )

    def _assign_sequence_output(
        self,
        node: onnx.NodeProto,
        nodes: Sequence[fx.Node],
    ) -> None:
        # Output positions matter for multi-output ops, so empty names are kept here.
        declared = list(node.output)
        if len(declared) > len(nodes):
            raise ConversionError(
                f"Operator '{node.op_type}' produced {len(nodes)} tensors, "
                f"but graph declares {len(declared)} outputs"
            )
        for name, fx_node in zip(declared, nodes):
            self.set_output_value(name, fx_node)

    def _create_outputs(self, *, as_tuple: bool) -> None:
        output_nodes = [self.get_value(name) for name in self.graph_outputs]
        if len(output_nodes) == 1 and not as_tuple:
            self.graph.output(output_nodes[0])
        else:
            self.graph.output(tuple(output_nodes))

    def _get_initializer_attr_node(self, name: str) -> fx.Node:
        if name in self.constant_attr_nodes:
            return self.constant_attr_nodes[name]
        tensor = self.initializers[name]
        return self._create_attr_node(name, tensor, trainable=None)

    def _create_attr_node(
        self,
        source_name: str,
        tensor: torch.Tensor,
        *,
        trainable: Optional[bool],
    ) -> fx.Node:
        sanitized = sanitize_name(source_name)
        counter = self.attr_name_counters[sanitized]
        self.attr_name_counters[sanitized] += 1
        attr_name = sanitized if counter == 0 else f"{sanitized}_{counter}"

        tensor_copy = tensor.clone().detach()
        if trainable is None:
            trainable = tensor_copy.dtype.is_floating_point or tensor_copy.dtype.is_complex

        if trainable:
            parameter = nn.Parameter(tensor_copy)
            self.root_module.register_parameter(attr_name, parameter)
        else:
            self.root_module.register_buffer(attr_name, tensor_copy)

        attr_node = self.graph.create_node("get_attr", attr_name, (), {})
        attr_node.meta["onnx_name"] = source_name
        attr_node.meta["onnx_op_type"] = "Constant"
        attr_node.meta["onnx_shape"] = list(tensor.shape)
        attr_node.meta["onnx_dtype"] = tensor.dtype

        self.constant_attr_nodes[source_name] = attr_node
        self.tensor_values[source_name] = tensor.clone().detach()
        return attr_node

    def _annotate_node(
        self, fx_node: fx.Node, node: onnx.NodeProto, output_idx: int, *, with_value_info: bool = True
    ) -> None:
        outputs = [name for name in node.output if name]
        value_name = outputs[output_idx] if output_idx < len(outputs) else node.name
        info = self.get_value_info(value_name) if value_name and with_value_info else None
        fx_node.meta["onnx_op_type"] = node.op_type
        fx_node.meta["onnx_name"] = node.name or value_name
        if outputs:
            fx_node.meta["onnx_outputs"] = outputs
        if info:
            fx_node.meta["onnx_shape"] = info.shape
            fx_node.meta["onnx_dtype"] = info.dtype


__all__ = ["GraphBuilder", "FXModuleRoot", "Subgraph", "default_opset_version"]
