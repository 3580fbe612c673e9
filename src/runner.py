from __future__ import annotations

import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import torch

from .errors import PipelineAbortedError, PipelineRuntimeError
from .events import EventId
from .partition import StageGraph
from .runtime import EventHub
from .session import ReferenceSession, RunResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MicroBatch:
    """Caller-supplied inputs of one micro-batch.

    ``feeds`` holds ordinary tensors per stage (e.g. ``X_sync``, ``labels``).
    ``events`` holds the event id for every slot of every stage. Boundary
    tensors passed between stages are wired by the runner.
    """

    feeds: Mapping[int, Mapping[str, torch.Tensor]]
    events: Mapping[int, Mapping[str, EventId]]
    fetches: Optional[Mapping[int, Sequence[str]]] = None


@dataclass
class BatchOutputs:
    results: dict[int, dict[str, torch.Tensor]] = field(default_factory=dict)

    def __getitem__(self, stage: int) -> dict[str, torch.Tensor]:
        return self.results[stage]


class PipelineRunner:
    """Runs every (micro-batch, stage) invocation as a concurrent task.

    Ordering between invocations comes only from the event hub: all tasks are
    submitted at once and block in their wait nodes. Boundary tensors travel
    through one future per (micro-batch, tensor name).
    Each ``run`` starts from a cleared hub, so one event schedule can be
    replayed every training step.
    """

    def __init__(
        self,
        stages: Sequence[StageGraph],
        *,
        hub: Optional[EventHub] = None,
        sessions: Optional[Sequence[ReferenceSession]] = None,
        wait_timeout: Optional[float] = None,
    ):
        self._stages = list(stages)
        self.hub = hub if hub is not None else EventHub(default_timeout=wait_timeout)
        if sessions is None:
            sessions = [ReferenceSession.for_stage(s, self.hub, wait_timeout) for s in self._stages]
        if len(sessions) != len(self._stages):
            raise ValueError(f"got {len(sessions)} session(s) for {len(self._stages)} stage(s)")
        self._sessions = {s.stage: sess for s, sess in zip(self._stages, sessions)}
        self._by_stage = {s.stage: s for s in self._stages}
        self._run_lock = threading.Lock()

        self._producer: dict[str, int] = {}
        for stage in self._stages:
            for name in stage.boundary_outputs:
                self._producer[name] = stage.stage

    def _invoke(
        self,
        batch: int,
        stage: StageGraph,
        feed: dict[str, Any],
        fetch: Sequence[str],
        sinks: Mapping[str, concurrent.futures.Future],
    ) -> RunResult:
        logger.debug("batch %d stage %d: start", batch, stage.stage)
        result = self._sessions[stage.stage].run(feed, fetch, sinks=sinks)
        logger.debug("batch %d stage %d: %s", batch, stage.stage, "ok" if result.ok else result.error)
        return result

    def run(self, batches: Sequence[MicroBatch], max_workers: Optional[int] = None) -> list[BatchOutputs]:
        if not self._run_lock.acquire(blocking=False):
            raise PipelineRuntimeError("PipelineRunner.run is already in progress")
        try:
            self.hub.reset()
            return self._run(batches, max_workers)
        finally:
            self._run_lock.release()

    def _run(self, batches: Sequence[MicroBatch], max_workers: Optional[int]) -> list[BatchOutputs]:
        # Every invocation may block in a wait, so each needs its own worker.
        n_tasks = len(batches) * len(self._stages)
        max_workers = max_workers or max(n_tasks, 1)
        if max_workers < n_tasks:
            logger.warning(
                "max_workers=%d < %d invocations; a schedule that blocks early tasks may deadlock",
                max_workers,
                n_tasks,
            )

        channels: list[dict[str, concurrent.futures.Future]] = [
            {name: concurrent.futures.Future() for name in self._producer} for _ in batches
        ]

        # Build every feed up front so a bad schedule fails before any task blocks.
        plan = []
        for b, mb in enumerate(batches):
            for stage in self._stages:
                s = stage.stage
                feed: dict[str, Any] = dict(mb.feeds.get(s, {}))
                feed.update(stage.event_feed.build(mb.events.get(s, {})))
                for name in stage.boundary_inputs:
                    if name in self._producer:
                        feed[name] = channels[b][name]
                    elif name not in feed:
                        raise PipelineRuntimeError(
                            f"batch {b} stage {s}: boundary input {name!r} has no producer and no feed"
                        )
                sinks = {name: channels[b][name] for name in stage.boundary_outputs}
                fetch = (mb.fetches or {}).get(s, stage.output_names)
                plan.append((b, stage, feed, fetch, sinks))

        tasks: dict[concurrent.futures.Future, tuple[int, int]] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pipesplit") as pool:
            for b, stage, feed, fetch, sinks in plan:
                fut = pool.submit(self._invoke, b, stage, feed, fetch, sinks)
                tasks[fut] = (b, stage.stage)

            first_error: Optional[BaseException] = None
            outputs = [BatchOutputs() for _ in batches]
            for fut in concurrent.futures.as_completed(tasks):
                b, s = tasks[fut]
                result = fut.result()
                if result.ok:
                    fetch = (batches[b].fetches or {}).get(s, self._by_stage[s].output_names)
                    outputs[b].results[s] = dict(zip(fetch, result.outputs))
                    continue
                if first_error is None:
                    first_error = result.error
                    # Dependents would block forever; wake them.
                    self.hub.abort(f"batch {b} stage {s} failed: {result.error}")
                    for ch in channels:
                        for f in ch.values():
                            f.cancel()
                elif not isinstance(result.error, PipelineAbortedError):
                    logger.error("batch %d stage %d also failed: %s", b, s, result.error)

        if first_error is not None:
            raise first_error
        return outputs
