from __future__ import annotations

import copy
import enum
import logging
from dataclasses import dataclass
from typing import Sequence

import onnx
from onnx import helper

from .assignment import StageAssignment
from .config import Direction, SplitConfig, StageCut
from .errors import DanglingInputError, MalformedCutError, MissingValueInfoError
from .events import EventFeed, EventSlot
from .graph_utils import GraphTables
from .sync import SyncBlock, SyncInserter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageGraph:
    """One split stage: an independent model plus its boundary contract."""

    stage: int
    model: onnx.ModelProto
    event_slots: tuple[EventSlot, ...]
    # Boundary tensors, already suffixed: fed in / fetched out of this stage.
    boundary_inputs: tuple[str, ...]
    boundary_outputs: tuple[str, ...]

    @property
    def graph(self) -> onnx.GraphProto:
        return self.model.graph

    @property
    def input_names(self) -> list[str]:
        return [vi.name for vi in self.model.graph.input]

    @property
    def output_names(self) -> list[str]:
        return [vi.name for vi in self.model.graph.output]

    @property
    def event_feed(self) -> EventFeed:
        return EventFeed(self.event_slots)


class _PartState(enum.Enum):
    PENDING = 0
    OPEN = 1
    CLOSED = 2


class _StageBuilder:
    """Collects one stage's graph pieces, then freezes them into a model.

    Graph entries are keyed by name so that repeated additions are no-ops.
    """

    def __init__(self, stage: int):
        self.stage = stage
        self.nodes: list[onnx.NodeProto] = []
        self.inputs: dict[str, onnx.ValueInfoProto] = {}
        self.outputs: dict[str, onnx.ValueInfoProto] = {}
        self.value_info: dict[str, onnx.ValueInfoProto] = {}
        self.initializers: dict[str, onnx.TensorProto] = {}
        self.slots: list[EventSlot] = []
        self.boundary_inputs: list[str] = []
        self.boundary_outputs: list[str] = []

    @staticmethod
    def _add(table: dict, item) -> None:
        if item.name not in table:
            table[item.name] = copy.deepcopy(item)

    def add_block(self, block: SyncBlock) -> None:
        self.nodes.extend(copy.deepcopy(n) for n in block.nodes)
        for vi in block.inputs:
            self._add(self.inputs, vi)
        for vi in block.outputs:
            self._add(self.outputs, vi)
        for vi in block.value_info:
            self._add(self.value_info, vi)
        self.slots.extend(block.slots)
        self.boundary_inputs.extend(block.boundary_inputs)
        self.boundary_outputs.extend(block.boundary_outputs)

    def check_inputs_resolve(self) -> None:
        available = set(self.inputs) | set(self.initializers)
        for node in self.nodes:
            for name in node.input:
                if name and name not in available:
                    raise DanglingInputError(
                        f"stage {self.stage}: node {node.op_type} {node.output[0] if node.output else node.name!r} "
                        f"consumes {name!r}, which is not produced earlier in the stage, "
                        "not a stage input and not an initializer"
                    )
            available.update(o for o in node.output if o)

    def freeze(self, source: onnx.ModelProto, config: SplitConfig) -> StageGraph:
        io_names = set(self.inputs) | set(self.outputs)
        graph = helper.make_graph(
            nodes=self.nodes,
            name=f"{source.graph.name or 'graph'}_stage{self.stage}",
            inputs=list(self.inputs.values()),
            outputs=list(self.outputs.values()),
            initializer=list(self.initializers.values()),
            value_info=[vi for name, vi in self.value_info.items() if name not in io_names],
        )

        opsets = [copy.deepcopy(op) for op in source.opset_import]
        if self.slots and not any(op.domain == config.event_domain for op in opsets):
            opsets.append(helper.make_opsetid(config.event_domain, config.event_opset))

        model = helper.make_model(graph, opset_imports=opsets, producer_name="pipesplit")
        model.ir_version = source.ir_version
        model.domain = source.domain
        model.model_version = source.model_version
        for prop in source.metadata_props:
            model.metadata_props.append(copy.deepcopy(prop))

        if config.check_models:
            onnx.checker.check_model(model)

        return StageGraph(
            stage=self.stage,
            model=model,
            event_slots=tuple(self.slots),
            boundary_inputs=tuple(self.boundary_inputs),
            boundary_outputs=tuple(self.boundary_outputs),
        )


class GraphPartitioner:
    """Builds one sub-graph per stage from a node-to-stage assignment."""

    def __init__(
        self,
        model: onnx.ModelProto,
        cuts: Sequence[StageCut],
        assignment: StageAssignment,
        config: SplitConfig,
    ):
        self._model = model
        self._graph = model.graph
        self._cuts = tuple(cuts)
        self._assignment = assignment
        self._config = config
        self._tables = GraphTables.build(model.graph)
        self._sync = SyncInserter(self._tables, config)

        last = len(self._cuts) - 1
        self.pipeline_start = (0, Direction.FORWARD)
        if self._cuts[0].backward.nodes:
            self.pipeline_end = (0, Direction.BACKWARD)
        else:
            # Forward-only pipelines end at the last stage.
            self.pipeline_end = (last, Direction.FORWARD)

    def _copy_inputs(self, b: _StageBuilder, node: onnx.NodeProto, cut: StageCut) -> None:
        t = self._tables
        sync_inputs = cut.sync_inputs
        for name in node.input:
            if not name:
                continue
            if name in t.initializers:
                b._add(b.initializers, t.initializers[name])
            if name in t.inputs and name not in sync_inputs:
                b._add(b.inputs, t.inputs[name])

    def _copy_outputs(self, b: _StageBuilder, node: onnx.NodeProto, cut: StageCut) -> None:
        t = self._tables
        sync_outputs = cut.sync_outputs
        for name in node.output:
            if not name or name in sync_outputs:
                continue
            if name in t.outputs:
                b._add(b.outputs, t.outputs[name])
            elif name in t.value_info:
                b._add(b.value_info, t.value_info[name])
            elif self._config.strict_value_info:
                raise MissingValueInfoError(f"stage {b.stage}: no value-info for {name!r}")

    def build_stage(self, stage: int) -> StageGraph:
        cut = self._cuts[stage]
        index = self._assignment.index
        b = _StageBuilder(stage)
        state = {d: _PartState.PENDING for d in Direction}

        for node_id in self._assignment.nodes_of(stage):
            node = self._graph.node[node_id]
            name = index.names[node_id]
            direction = self._assignment.part_of(node_id)
            part = cut.part(direction)
            where = f"stage {stage} {direction.value}"

            if state[direction] is _PartState.CLOSED:
                raise MalformedCutError(
                    f"{where}: node {name!r} comes after the last listed node {part.last!r}"
                )
            if state[direction] is _PartState.PENDING:
                if name != part.first:
                    raise MalformedCutError(
                        f"{where}: node {name!r} comes before the first listed node {part.first!r}"
                    )
                start = (stage, direction) == self.pipeline_start
                b.add_block(self._sync.entry(stage, direction, part, pipeline_start=start))
                state[direction] = _PartState.OPEN

            b.nodes.append(copy.deepcopy(node))
            self._copy_inputs(b, node, cut)
            self._copy_outputs(b, node, cut)

            if name == part.last:
                end = (stage, direction) == self.pipeline_end
                b.add_block(self._sync.exit(stage, direction, part, pipeline_end=end))
                state[direction] = _PartState.CLOSED

        for direction, st in state.items():
            if cut.part(direction).nodes and st is not _PartState.CLOSED:
                raise MalformedCutError(
                    f"stage {stage} {direction.value}: anchor nodes "
                    f"{cut.part(direction).first!r}/{cut.part(direction).last!r} are owned by another stage"
                )

        b.check_inputs_resolve()
        result = b.freeze(self._model, self._config)
        logger.info(
            "Stage %d: %d node(s), %d input(s), %d output(s), %d event slot(s)",
            stage,
            len(result.graph.node),
            len(result.graph.input),
            len(result.graph.output),
            len(result.event_slots),
        )
        return result

    def build(self) -> list[StageGraph]:
        # Build every stage before returning any, so a bad cut yields nothing.
        return [self.build_stage(i) for i in range(len(self._cuts))]
