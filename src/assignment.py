from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import onnx

from .config import Direction, StageCut
from .errors import DuplicateNodeError, MalformedCutError, UnassignedNodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NodeIndex:
    """Stable integer ids for graph nodes, keyed by first output name.

    The id of a node is its position in the source graph.
    """

    names: tuple[str, ...]
    by_name: dict[str, int]

    @staticmethod
    def build(graph: onnx.GraphProto) -> "NodeIndex":
        names: list[str] = []
        by_name: dict[str, int] = {}
        for node_id, node in enumerate(graph.node):
            if not node.output or not node.output[0]:
                raise MalformedCutError(
                    f"node #{node_id} ({node.op_type} {node.name!r}) has no first output to identify it"
                )
            name = node.output[0]
            if name in by_name:
                raise DuplicateNodeError(
                    f"nodes #{by_name[name]} and #{node_id} share first output {name!r}"
                )
            by_name[name] = node_id
            names.append(name)
        return NodeIndex(names=tuple(names), by_name=by_name)

    def __len__(self) -> int:
        return len(self.names)

    def id_of(self, name: str) -> int:
        return self.by_name[name]


@dataclass(frozen=True)
class StageAssignment:
    index: NodeIndex
    # Per node id: (stage, direction).
    placement: tuple[tuple[int, Direction], ...]
    num_stages: int

    def stage_of(self, node_id: int) -> int:
        return self.placement[node_id][0]

    def part_of(self, node_id: int) -> Direction:
        return self.placement[node_id][1]

    def nodes_of(self, stage: int) -> list[int]:
        return [i for i, (s, _) in enumerate(self.placement) if s == stage]


def assign_stages(graph: onnx.GraphProto, cuts: Sequence[StageCut]) -> StageAssignment:
    """Map every node of ``graph`` to exactly one stage part.

    A node belongs to stage ``i`` if its first output appears in the forward or
    backward node list of ``cuts[i]``. The first matching stage wins, forward
    before backward.
    """

    index = NodeIndex.build(graph)

    # Resolve the cut lists against the index first, so that stale names fail
    # loudly instead of silently leaving a part empty.
    owner: dict[int, tuple[int, Direction]] = {}
    for stage, cut in enumerate(cuts):
        for direction in (Direction.FORWARD, Direction.BACKWARD):
            for name in cut.part(direction).nodes:
                node_id = index.by_name.get(name)
                if node_id is None:
                    raise MalformedCutError(
                        f"stage {stage} {direction.value} lists {name!r}, which is not a node output"
                    )
                if node_id in owner:
                    prev_stage, prev_dir = owner[node_id]
                    logger.warning(
                        "Node %r listed by stage %d %s and stage %d %s; keeping the first",
                        name,
                        prev_stage,
                        prev_dir.value,
                        stage,
                        direction.value,
                    )
                    continue
                owner[node_id] = (stage, direction)

    unassigned = [index.names[i] for i in range(len(index)) if i not in owner]
    if unassigned:
        raise UnassignedNodeError(
            f"{len(unassigned)} node(s) are not listed in any stage cut: {unassigned[:10]}"
        )

    placement = tuple(owner[i] for i in range(len(index)))
    for stage in range(len(cuts)):
        logger.debug("Stage %d owns %d node(s)", stage, sum(1 for s, _ in placement if s == stage))
    return StageAssignment(index=index, placement=placement, num_stages=len(cuts))
