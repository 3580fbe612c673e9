"""Pipeline-parallel splitter for ONNX training graphs.

- Split one forward + loss + backward graph into ordered stages
- Gate every cross-stage tensor with WaitEvent/RecordEvent nodes
- Keep pipeline order (within a micro-batch) apart from data order
  (across micro-batches reusing a buffer)

A small torch reference session and runner execute split stages
concurrently for verification.
"""

from .assignment import NodeIndex, StageAssignment, assign_stages
from .config import Direction, PartCut, SplitConfig, StageCut, load_cuts
from .errors import (
    DanglingInputError,
    DuplicateNodeError,
    EventAlreadyRecordedError,
    EventNamespaceError,
    EventTimeoutError,
    MalformedCutError,
    MissingValueInfoError,
    PipelineAbortedError,
    PipelineRuntimeError,
    PipelineSplitError,
    UnassignedNodeError,
    UnsupportedOpError,
)
from .events import DataEvent, EventAction, EventFeed, EventKind, EventSlot, PipelineEvent
from .partition import GraphPartitioner, StageGraph
from .runner import BatchOutputs, MicroBatch, PipelineRunner
from .runtime import EventHub
from .session import ReferenceSession, RunResult, register_kernel
from .splitter import split_model, split_model_file
from .sync import SyncBlock, SyncInserter

__all__ = [
    "BatchOutputs",
    "DanglingInputError",
    "DataEvent",
    "Direction",
    "DuplicateNodeError",
    "EventAction",
    "EventAlreadyRecordedError",
    "EventFeed",
    "EventHub",
    "EventKind",
    "EventNamespaceError",
    "EventSlot",
    "EventTimeoutError",
    "GraphPartitioner",
    "MalformedCutError",
    "MicroBatch",
    "MissingValueInfoError",
    "NodeIndex",
    "PartCut",
    "PipelineAbortedError",
    "PipelineEvent",
    "PipelineRunner",
    "PipelineRuntimeError",
    "PipelineSplitError",
    "ReferenceSession",
    "RunResult",
    "SplitConfig",
    "StageAssignment",
    "StageCut",
    "StageGraph",
    "SyncBlock",
    "SyncInserter",
    "UnassignedNodeError",
    "UnsupportedOpError",
    "assign_stages",
    "load_cuts",
    "register_kernel",
    "split_model",
    "split_model_file",
]
