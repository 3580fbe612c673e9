"""Event ids and event slots shared by the splitter and the runtime.

A split stage exposes every inserted wait/record node's event id as a graph
input (a *slot*). The splitter only allocates slots; the caller decides the
numbers fed into them for each micro-batch.

Two namespaces exist and are typed separately so they can not be mixed:

- ``PipelineEvent``: stage-to-stage order within one micro-batch.
- ``DataEvent``: order across micro-batches sharing a buffer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Mapping, Union

import torch

from .config import Direction
from .errors import EventNamespaceError


class EventKind(str, enum.Enum):
    DATA = "data"
    PIPELINE = "pipeline"


class EventAction(str, enum.Enum):
    WAIT = "wait"
    RECORD = "record"


@dataclass(frozen=True, order=True)
class DataEvent:
    value: int

    kind = EventKind.DATA

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", int(self.value))

    @property
    def is_null(self) -> bool:
        return self.value < 0


@dataclass(frozen=True, order=True)
class PipelineEvent:
    value: int

    kind = EventKind.PIPELINE

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", int(self.value))

    @property
    def is_null(self) -> bool:
        return self.value < 0


EventId = Union[DataEvent, PipelineEvent]

_EVENT_TYPES: dict[EventKind, type] = {
    EventKind.DATA: DataEvent,
    EventKind.PIPELINE: PipelineEvent,
}


def make_event(kind: EventKind, value: int) -> EventId:
    return _EVENT_TYPES[kind](value)


def slot_name(action: EventAction, kind: EventKind, stage: int, direction: Direction) -> str:
    # e.g. "wait_data_1_fw", "record_pipeline_0_bw"
    return f"{action.value}_{kind.value}_{stage}_{direction.value}"


@dataclass(frozen=True)
class EventSlot:
    """One event-id input of a stage graph."""

    action: EventAction
    kind: EventKind
    stage: int
    direction: Direction

    @property
    def name(self) -> str:
        return slot_name(self.action, self.kind, self.stage, self.direction)


def event_tensor(event: EventId) -> torch.Tensor:
    return torch.tensor(event.value, dtype=torch.int64)


class EventFeed:
    """Turns typed event ids into the int64 feeds of one stage invocation."""

    def __init__(self, slots: tuple[EventSlot, ...]):
        self._slots = {s.name: s for s in slots}

    @property
    def slot_names(self) -> list[str]:
        return list(self._slots)

    def build(self, events: Mapping[str, EventId]) -> dict[str, torch.Tensor]:
        unknown = set(events) - set(self._slots)
        if unknown:
            raise KeyError(f"unknown event slots: {sorted(unknown)}")
        missing = [n for n in self._slots if n not in events]
        if missing:
            raise KeyError(f"no event id supplied for slots: {missing}")

        feed: dict[str, torch.Tensor] = {}
        for name, slot in self._slots.items():
            event = events[name]
            if not isinstance(event, (DataEvent, PipelineEvent)):
                raise EventNamespaceError(
                    f"slot {name!r} needs a {slot.kind.value} event, got untyped {event!r}"
                )
            if event.kind is not slot.kind:
                raise EventNamespaceError(
                    f"slot {name!r} needs a {slot.kind.value} event, got {type(event).__name__}"
                )
            feed[name] = event_tensor(event)
        return feed
