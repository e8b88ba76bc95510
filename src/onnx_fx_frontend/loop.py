# SPDX-License-Identifier: Apache-2.0
"""Iterator module that executes an FX body graph over slices of its inputs.

A :class:`TensorIterator` is configured the way loop constructs are described
by graph runtimes: every body input is either *sliced* from an outer input
along an axis, *merged* (loop carried, initialised from an outer input and
fed back from a body output) or *invariant*. Outputs are either the value of a
body output at the last iteration or the per-iteration values concatenated
along an axis.

Slicing parameters follow the ``(start, stride, part_size, end)`` convention:
``(0, 1, 1, -1)`` walks the axis forward one element at a time and
``(-1, -1, 1, 0)`` walks it backwards. Negative ``start``/``end`` count from the
end of the axis and ``end`` is inclusive.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import torch
from torch import fx, nn


@dataclass(frozen=True)
class SlicedInput:
    body_index: int
    input_index: int
    start: int
    stride: int
    part_size: int
    end: int
    axis: int


@dataclass(frozen=True)
class MergedInput:
    body_index: int
    input_index: int
    body_output_index: int


@dataclass(frozen=True)
class InvariantInput:
    body_index: int
    input_index: int


@dataclass(frozen=True)
class IterValueOutput:
    body_output_index: int


@dataclass(frozen=True)
class ConcatOutput:
    body_output_index: int
    start: int
    stride: int
    part_size: int
    end: int
    axis: int


OutputDescription = Union[IterValueOutput, ConcatOutput]


def _resolve_position(position: int, size: int) -> int:
    return position + size if position < 0 else position


def _num_iterations(length: int, desc: Union[SlicedInput, ConcatOutput]) -> int:
    if length == 0:
        return 0
    start = _resolve_position(desc.start, length)
    end = _resolve_position(desc.end, length)
    span = abs(end - start) + 1
    if span < desc.part_size:
        return 0
    return (span - desc.part_size) // abs(desc.stride) + 1


class TensorIterator(nn.Module):
    """Run ``body`` once per slice of the sliced inputs.

    ``body`` must return a tuple. Port descriptions are registered with the
    ``set_*`` / ``get_*`` methods before the module is first called; the
    ``get_*`` methods return the position of the new output in the tuple
    returned by :meth:`forward`.
    """

    def __init__(self, body: fx.GraphModule, num_body_inputs: int) -> None:
        super().__init__()
        self.body = body
        self.num_body_inputs = num_body_inputs
        self.sliced_inputs: List[SlicedInput] = []
        self.merged_inputs: List[MergedInput] = []
        self.invariant_inputs: List[InvariantInput] = []
        self.output_descriptions: List[OutputDescription] = []

    # ------------------------------------------------------------------
    # Port configuration
    # ------------------------------------------------------------------

    def set_sliced_input(
        self,
        body_index: int,
        input_index: int,
        start: int,
        stride: int,
        part_size: int,
        end: int,
        axis: int,
    ) -> None:
        if stride == 0 or part_size <= 0:
            raise ValueError("Sliced input needs a non-zero stride and a positive part size")
        self.sliced_inputs.append(SlicedInput(body_index, input_index, start, stride, part_size, end, axis))

    def set_merged_input(self, body_index: int, input_index: int, body_output_index: int) -> None:
        self.merged_inputs.append(MergedInput(body_index, input_index, body_output_index))

    def set_invariant_input(self, body_index: int, input_index: int) -> None:
        self.invariant_inputs.append(InvariantInput(body_index, input_index))

    def get_iter_value(self, body_output_index: int, iteration: int = -1) -> int:
        if iteration != -1:
            raise ValueError("Only the value of the last iteration can be requested")
        self.output_descriptions.append(IterValueOutput(body_output_index))
        return len(self.output_descriptions) - 1

    def get_concatenated_slices(
        self,
        body_output_index: int,
        start: int,
        stride: int,
        part_size: int,
        end: int,
        axis: int,
    ) -> int:
        self.output_descriptions.append(ConcatOutput(body_output_index, start, stride, part_size, end, axis))
        return len(self.output_descriptions) - 1

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def forward(self, *inputs: torch.Tensor) -> Tuple[torch.Tensor, ...]:
        body_args: List[Optional[torch.Tensor]] = [None] * self.num_body_inputs
        for desc in self.invariant_inputs:
            body_args[desc.body_index] = inputs[desc.input_index]
        for desc in self.merged_inputs:
            body_args[desc.body_index] = inputs[desc.input_index]

        num_iterations = self._count_iterations(inputs)
        concat_parts: List[List[torch.Tensor]] = [[] for _ in self.output_descriptions]
        last_outputs: Optional[Sequence[torch.Tensor]] = None

        for iteration in range(num_iterations):
            for desc in self.sliced_inputs:
                body_args[desc.body_index] = self._slice(inputs[desc.input_index], desc, iteration)
            outputs = self.body(*body_args)
            for desc in self.merged_inputs:
                body_args[desc.body_index] = outputs[desc.body_output_index]
            for position, desc in enumerate(self.output_descriptions):
                if isinstance(desc, ConcatOutput):
                    concat_parts[position].append(outputs[desc.body_output_index])
            last_outputs = outputs

        results: List[torch.Tensor] = []
        for position, desc in enumerate(self.output_descriptions):
            if isinstance(desc, IterValueOutput):
                results.append(self._iter_value(desc, last_outputs, inputs))
            else:
                results.append(self._concat(desc, concat_parts[position]))
        return tuple(results)

    def _count_iterations(self, inputs: Sequence[torch.Tensor]) -> int:
        if not self.sliced_inputs:
            raise ValueError("TensorIterator requires at least one sliced input")
        counts = set()
        for desc in self.sliced_inputs:
            tensor = inputs[desc.input_index]
            counts.add(_num_iterations(tensor.shape[desc.axis], desc))
        if len(counts) != 1:
            raise ValueError(f"Sliced inputs disagree on the number of iterations: {sorted(counts)}")
        return counts.pop()

    def _slice(self, tensor: torch.Tensor, desc: SlicedInput, iteration: int) -> torch.Tensor:
        length = tensor.shape[desc.axis]
        start = _resolve_position(desc.start, length)
        if desc.stride > 0:
            begin = start + iteration * desc.stride
        else:
            begin = start + 1 + iteration * desc.stride - desc.part_size
        return tensor.narrow(desc.axis, begin, desc.part_size)

    def _iter_value(
        self,
        desc: IterValueOutput,
        last_outputs: Optional[Sequence[torch.Tensor]],
        inputs: Sequence[torch.Tensor],
    ) -> torch.Tensor:
        if last_outputs is not None:
            return last_outputs[desc.body_output_index]
        # No iteration ran: a loop-carried value keeps its initial value.
        for merged in self.merged_inputs:
            if merged.body_output_index == desc.body_output_index:
                return inputs[merged.input_index]
        raise ValueError(
            f"Body output {desc.body_output_index} has no value because the loop ran zero iterations"
        )

    def _concat(self, desc: ConcatOutput, parts: List[torch.Tensor]) -> torch.Tensor:
        if not parts:
            raise ValueError(
                f"Body output {desc.body_output_index} cannot be concatenated after zero iterations"
            )
        if desc.stride < 0:
            parts = parts[::-1]
        return torch.cat(parts, dim=desc.axis)


__all__ = [
    "ConcatOutput",
    "InvariantInput",
    "IterValueOutput",
    "MergedInput",
    "SlicedInput",
    "TensorIterator",
]
