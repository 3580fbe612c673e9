from __future__ import annotations

import enum
import json
import os
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence, Union

from .errors import MalformedCutError


class Direction(str, enum.Enum):
    FORWARD = "fw"
    BACKWARD = "bw"


def _names(values: Iterable[str] | None, what: str) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        raise MalformedCutError(f"{what} must be a list of names, got a string: {values!r}")
    out = tuple(str(v) for v in values)
    if any(not v for v in out):
        raise MalformedCutError(f"{what} contains an empty name")
    if len(set(out)) != len(out):
        raise MalformedCutError(f"{what} contains duplicate names: {list(out)}")
    return out


@dataclass(frozen=True)
class PartCut:
    """One direction (forward or backward) of a stage.

    Nodes are identified by their first output name. The first and last entry
    of ``nodes`` anchor the wait and record nodes of this part.
    """

    nodes: tuple[str, ...] = ()
    # Tensors received from another stage.
    sync_inputs: tuple[str, ...] = ()
    # Tensors sent to another stage. Plain graph outputs need not be listed.
    sync_outputs: tuple[str, ...] = ()
    # Control dependencies for keeping topological order.
    wait_depends: tuple[str, ...] = ()
    record_depends: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("nodes", "sync_inputs", "sync_outputs", "wait_depends", "record_depends"):
            object.__setattr__(self, name, _names(getattr(self, name), name))
        if not self.nodes and (self.has_entry or self.has_exit):
            raise MalformedCutError("a part with sync tensors or dependencies must list at least one node")

    @property
    def has_entry(self) -> bool:
        return bool(self.sync_inputs or self.wait_depends)

    @property
    def has_exit(self) -> bool:
        return bool(self.sync_outputs or self.record_depends)

    @property
    def first(self) -> str | None:
        return self.nodes[0] if self.nodes else None

    @property
    def last(self) -> str | None:
        return self.nodes[-1] if self.nodes else None

    @staticmethod
    def from_dict(d: Mapping[str, Any] | Sequence[Any] | None) -> "PartCut":
        if d is None:
            return PartCut()
        if isinstance(d, (list, tuple)):
            # Positional form: [nodes, sync_inputs, sync_outputs, wait_depends, record_depends]
            if len(d) > 5:
                raise MalformedCutError(f"positional part cut takes at most 5 lists, got {len(d)}")
            return PartCut(*d)
        unknown = set(d) - {"nodes", "sync_inputs", "sync_outputs", "wait_depends", "record_depends"}
        if unknown:
            raise MalformedCutError(f"unknown part cut keys: {sorted(unknown)}")
        return PartCut(**d)


@dataclass(frozen=True)
class StageCut:
    forward: PartCut = field(default_factory=PartCut)
    backward: PartCut = field(default_factory=PartCut)

    def __post_init__(self) -> None:
        for what in ("sync_inputs", "sync_outputs"):
            shared = set(getattr(self.forward, what)) & set(getattr(self.backward, what))
            if shared:
                raise MalformedCutError(f"{what} listed by both forward and backward parts: {sorted(shared)}")

    def part(self, direction: Direction) -> PartCut:
        return self.forward if direction is Direction.FORWARD else self.backward

    @property
    def sync_inputs(self) -> frozenset[str]:
        return frozenset(self.forward.sync_inputs + self.backward.sync_inputs)

    @property
    def sync_outputs(self) -> frozenset[str]:
        return frozenset(self.forward.sync_outputs + self.backward.sync_outputs)

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "StageCut":
        unknown = set(d) - {"forward", "fw", "backward", "bw"}
        if unknown:
            raise MalformedCutError(f"unknown stage cut keys: {sorted(unknown)}")
        fw = d.get("forward", d.get("fw"))
        bw = d.get("backward", d.get("bw"))
        return StageCut(forward=PartCut.from_dict(fw), backward=PartCut.from_dict(bw))


CutsLike = Union[str, "os.PathLike[str]", Sequence[Union[StageCut, Mapping[str, Any]]]]


def load_cuts(cuts: CutsLike) -> tuple[StageCut, ...]:
    """Normalize cut specs from a JSON file path or a list of dicts/StageCut."""

    if isinstance(cuts, (str, os.PathLike)):
        with open(cuts, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if isinstance(raw, dict):
            raw = raw.get("stages", raw.get("cuts"))
        if not isinstance(raw, list):
            raise MalformedCutError(f"{os.fspath(cuts)}: expected a list of stage cuts")
        cuts = raw

    out = tuple(c if isinstance(c, StageCut) else StageCut.from_dict(c) for c in cuts)
    if not out:
        raise MalformedCutError("at least one stage cut is required")
    return out


@dataclass(frozen=True)
class SplitConfig:
    """Naming and op conventions for the inserted synchronization nodes."""

    event_domain: str = "com.microsoft"
    event_opset: int = 1
    wait_op: str = "WaitEvent"
    record_op: str = "RecordEvent"

    # Suffixes for the boundary tensor names:
    #   wait_data -> recv -> wait_pipeline -> fw/bw -> record_pipeline -> send -> record_data
    sync_suffix: str = "_sync"
    recv_suffix: str = "_recv"
    send_suffix: str = "_send"

    # Raise on node outputs without value-info instead of skipping them.
    strict_value_info: bool = False

    # Run onnx.checker on each stage model.
    check_models: bool = False

    def __post_init__(self) -> None:
        suffixes = (self.sync_suffix, self.recv_suffix, self.send_suffix)
        if any(not s for s in suffixes):
            raise ValueError("name suffixes must be non-empty")
        if len(set(suffixes)) != len(suffixes):
            raise ValueError("sync/recv/send suffixes must be distinct")
        if not self.wait_op or not self.record_op or self.wait_op == self.record_op:
            raise ValueError("wait_op and record_op must be distinct non-empty op types")
        if self.event_opset < 1:
            raise ValueError("event_opset must be >= 1")

    @staticmethod
    def from_dict(d: Mapping[str, Any] | None = None, **kwargs) -> "SplitConfig":
        merged = dict(d or {})
        merged.update(kwargs)
        return SplitConfig(**merged)
