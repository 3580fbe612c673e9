from __future__ import annotations

import copy
from dataclasses import dataclass

import onnx
from onnx import TensorProto, helper


@dataclass(frozen=True)
class GraphTables:
    """Name lookups over a source graph, built once per split."""

    initializers: dict[str, onnx.TensorProto]
    inputs: dict[str, onnx.ValueInfoProto]
    outputs: dict[str, onnx.ValueInfoProto]
    value_info: dict[str, onnx.ValueInfoProto]

    @staticmethod
    def build(graph: onnx.GraphProto) -> "GraphTables":
        return GraphTables(
            initializers={t.name: t for t in graph.initializer},
            inputs={vi.name: vi for vi in graph.input},
            outputs={vi.name: vi for vi in graph.output},
            value_info={vi.name: vi for vi in graph.value_info},
        )

    def shape_of(self, name: str) -> onnx.ValueInfoProto | None:
        """Best shape/type record for ``name``: value-info, then outputs, then inputs."""
        for table in (self.value_info, self.outputs, self.inputs):
            if name in table:
                return table[name]
        return None


def renamed(vi: onnx.ValueInfoProto, new_name: str) -> onnx.ValueInfoProto:
    out = copy.deepcopy(vi)
    out.name = new_name
    return out


def int64_scalar_info(name: str) -> onnx.ValueInfoProto:
    return helper.make_tensor_value_info(name, TensorProto.INT64, [])

