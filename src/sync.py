"""Wait/record node insertion at the boundaries of a stage part.

Boundary tensors are gated by event nodes and renamed along the way::

    wait_data -> recv -> wait_pipeline -> fw/bw -> record_pipeline -> send -> record_data

``wait_data``/``record_data`` order micro-batches that reuse the same buffer,
``wait_pipeline``/``record_pipeline`` order stages within one micro-batch.
The pipeline start has no data wait and the pipeline end has no data record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import onnx
from onnx import helper

from .config import Direction, PartCut, SplitConfig
from .errors import MalformedCutError, MissingValueInfoError
from .events import EventAction, EventKind, EventSlot
from .graph_utils import GraphTables, int64_scalar_info, renamed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncBlock:
    """Nodes and graph entries produced for one part entry or exit."""

    nodes: tuple[onnx.NodeProto, ...] = ()
    inputs: tuple[onnx.ValueInfoProto, ...] = ()
    outputs: tuple[onnx.ValueInfoProto, ...] = ()
    value_info: tuple[onnx.ValueInfoProto, ...] = ()
    slots: tuple[EventSlot, ...] = ()
    # Boundary tensor names fed to / fetched from the stage.
    boundary_inputs: tuple[str, ...] = field(default=())
    boundary_outputs: tuple[str, ...] = field(default=())

    @property
    def empty(self) -> bool:
        return not self.nodes


class SyncInserter:
    def __init__(self, tables: GraphTables, config: SplitConfig):
        self._tables = tables
        self._config = config

    def _event_node(self, action: EventAction, slot: EventSlot, inputs: list[str], outputs: list[str]) -> onnx.NodeProto:
        op_type = self._config.wait_op if action is EventAction.WAIT else self._config.record_op
        return helper.make_node(
            op_type,
            inputs=[slot.name] + inputs,
            outputs=outputs,
            name=slot.name,
            domain=self._config.event_domain,
        )

    def _shape(self, name: str, where: str) -> onnx.ValueInfoProto:
        vi = self._tables.shape_of(name)
        if vi is None:
            raise MissingValueInfoError(f"{where}: no value-info for boundary tensor {name!r}")
        return vi

    def entry(self, stage: int, direction: Direction, part: PartCut, *, pipeline_start: bool) -> SyncBlock:
        """Wait nodes placed before the first node of ``part``."""

        if not part.has_entry:
            return SyncBlock()

        cfg = self._config
        where = f"stage {stage} {direction.value} entry"
        data_slot = None if pipeline_start else EventSlot(EventAction.WAIT, EventKind.DATA, stage, direction)
        pipe_slot = EventSlot(EventAction.WAIT, EventKind.PIPELINE, stage, direction)

        data_in: list[str] = []
        data_out: list[str] = []
        pipe_in: list[str] = []
        pipe_out: list[str] = []
        inputs: list[onnx.ValueInfoProto] = []
        value_info: list[onnx.ValueInfoProto] = []

        for name in part.sync_inputs:
            fed = name + cfg.sync_suffix
            if data_slot is not None:
                recv = name + cfg.recv_suffix
                data_in.append(fed)
                data_out.append(recv)
                pipe_in.append(recv)
            else:
                pipe_in.append(fed)
            pipe_out.append(name)

            graph_input = self._tables.inputs.get(name)
            if graph_input is not None:
                # Graph inputs enter the pipeline at its start only.
                if not pipeline_start:
                    raise MalformedCutError(
                        f"{where}: graph input {name!r} can only be a sync input of the pipeline start"
                    )
                inputs.append(renamed(graph_input, fed))
                value_info.append(renamed(graph_input, name))
            else:
                vi = self._shape(name, where)
                inputs.append(renamed(vi, fed))
                if data_slot is not None:
                    value_info.append(renamed(vi, data_out[-1]))
                value_info.append(renamed(vi, name))

        # Dependencies go on the first wait.
        if data_slot is not None:
            data_in.extend(part.wait_depends)
        else:
            pipe_in.extend(part.wait_depends)

        nodes: list[onnx.NodeProto] = []
        slots: list[EventSlot] = []
        if data_slot is not None:
            nodes.append(self._event_node(EventAction.WAIT, data_slot, data_in, data_out))
            slots.append(data_slot)
        nodes.append(self._event_node(EventAction.WAIT, pipe_slot, pipe_in, pipe_out))
        slots.append(pipe_slot)
        inputs.extend(int64_scalar_info(s.name) for s in slots)

        logger.debug(
            "%s: %d wait node(s) gating %s", where, len(nodes), list(part.sync_inputs) or "dependencies only"
        )
        return SyncBlock(
            nodes=tuple(nodes),
            inputs=tuple(inputs),
            value_info=tuple(value_info),
            slots=tuple(slots),
            boundary_inputs=tuple(n + cfg.sync_suffix for n in part.sync_inputs),
        )

    def exit(self, stage: int, direction: Direction, part: PartCut, *, pipeline_end: bool) -> SyncBlock:
        """Record nodes placed after the last node of ``part``."""

        if not part.has_exit:
            return SyncBlock()

        cfg = self._config
        where = f"stage {stage} {direction.value} exit"
        pipe_slot = EventSlot(EventAction.RECORD, EventKind.PIPELINE, stage, direction)
        data_slot = None if pipeline_end else EventSlot(EventAction.RECORD, EventKind.DATA, stage, direction)

        pipe_in = list(part.sync_outputs) + list(part.record_depends)
        pipe_out: list[str] = []
        data_in: list[str] = []
        data_out: list[str] = []
        outputs: list[onnx.ValueInfoProto] = []
        value_info: list[onnx.ValueInfoProto] = []

        for name in part.sync_outputs:
            vi = self._shape(name, where)
            sent = name + cfg.sync_suffix
            if data_slot is not None:
                relay = name + cfg.send_suffix
                pipe_out.append(relay)
                data_in.append(relay)
                data_out.append(sent)
                value_info.append(renamed(vi, relay))
            else:
                pipe_out.append(sent)
            outputs.append(renamed(vi, sent))
            value_info.append(renamed(vi, name))

        nodes = [self._event_node(EventAction.RECORD, pipe_slot, pipe_in, pipe_out)]
        slots = [pipe_slot]
        if data_slot is not None:
            # Keeps the data record after the part even without sync outputs.
            data_in.extend(part.record_depends)
            nodes.append(self._event_node(EventAction.RECORD, data_slot, data_in, data_out))
            slots.append(data_slot)

        logger.debug(
            "%s: %d record node(s) sending %s", where, len(nodes), list(part.sync_outputs) or "dependencies only"
        )
        return SyncBlock(
            nodes=tuple(nodes),
            inputs=tuple(int64_scalar_info(s.name) for s in slots),
            outputs=tuple(outputs),
            value_info=tuple(value_info),
            slots=tuple(slots),
            boundary_outputs=tuple(n + cfg.sync_suffix for n in part.sync_outputs),
        )
