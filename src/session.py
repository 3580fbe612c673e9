from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Sequence

import numpy as np
import onnx
import torch
from onnx import helper, numpy_helper

from .errors import EventTimeoutError, PipelineAbortedError, PipelineRuntimeError, UnsupportedOpError
from .events import EventKind, make_event
from .partition import StageGraph
from .runtime import EventHub

logger = logging.getLogger(__name__)

Kernel = Callable[["_Context", onnx.NodeProto, list], list]

_KERNELS: dict[tuple[str, str], Kernel] = {}


def register_kernel(op_type: str, domain: str = "") -> Callable[[Kernel], Kernel]:
    def deco(fn: Kernel) -> Kernel:
        _KERNELS[(domain, op_type)] = fn
        return fn

    return deco


def _attrs(node: onnx.NodeProto) -> dict[str, Any]:
    return {a.name: helper.get_attribute_value(a) for a in node.attribute}


@dataclass
class _Context:
    session: "ReferenceSession"


@dataclass
class RunResult:
    """Outcome of one session invocation: status plus fetched tensors."""

    ok: bool
    outputs: list[torch.Tensor] = field(default_factory=list)
    error: Optional[BaseException] = None

    def unwrap(self) -> list[torch.Tensor]:
        if not self.ok:
            if self.error is None:
                raise PipelineRuntimeError("session run failed without an error")
            raise self.error
        return self.outputs


# Kernels for small MLP training graphs and the event ops.


@register_kernel("Identity")
def _identity(ctx, node, xs):
    return [xs[0]]


@register_kernel("MatMul")
def _matmul(ctx, node, xs):
    return [torch.matmul(xs[0], xs[1])]


@register_kernel("Gemm")
def _gemm(ctx, node, xs):
    a = _attrs(node)
    x, w = xs[0], xs[1]
    if a.get("transA", 0):
        x = x.transpose(0, 1)
    if a.get("transB", 0):
        w = w.transpose(0, 1)
    y = a.get("alpha", 1.0) * torch.matmul(x, w)
    if len(xs) > 2 and xs[2] is not None:
        y = y + a.get("beta", 1.0) * xs[2]
    return [y]


@register_kernel("Add")
def _add(ctx, node, xs):
    return [xs[0] + xs[1]]


@register_kernel("Sub")
def _sub(ctx, node, xs):
    return [xs[0] - xs[1]]


@register_kernel("Mul")
def _mul(ctx, node, xs):
    return [xs[0] * xs[1]]


@register_kernel("Div")
def _div(ctx, node, xs):
    return [xs[0] / xs[1]]


@register_kernel("Neg")
def _neg(ctx, node, xs):
    return [-xs[0]]


@register_kernel("Relu")
def _relu(ctx, node, xs):
    return [torch.relu(xs[0])]


@register_kernel("Sigmoid")
def _sigmoid(ctx, node, xs):
    return [torch.sigmoid(xs[0])]


@register_kernel("ReluGrad", "com.microsoft")
def _relu_grad(ctx, node, xs):
    dy, x = xs
    return [dy * (x > 0).to(dy.dtype)]


@register_kernel("Transpose")
def _transpose(ctx, node, xs):
    perm = _attrs(node).get("perm")
    x = xs[0]
    if perm is None:
        perm = list(reversed(range(x.ndim)))
    return [x.permute(*perm)]


def _reduce(fn, node, xs):
    a = _attrs(node)
    x = xs[0]
    axes = a.get("axes")
    if axes is None and len(xs) > 1 and xs[1] is not None:
        axes = [int(v) for v in xs[1].reshape(-1).tolist()]
    keepdims = bool(a.get("keepdims", 1))
    if not axes:
        y = fn(x)
        if keepdims:
            y = y.reshape([1] * x.ndim)
        return [y]
    return [fn(x, dim=tuple(axes), keepdim=keepdims)]


@register_kernel("ReduceSum")
def _reduce_sum(ctx, node, xs):
    return _reduce(torch.sum, node, xs)


@register_kernel("ReduceMean")
def _reduce_mean(ctx, node, xs):
    return _reduce(torch.mean, node, xs)


def _event(ctx: _Context, node: onnx.NodeProto, xs: list) -> Any:
    session = ctx.session
    kind = session.event_kinds.get(node.input[0])
    if kind is None:
        raise PipelineRuntimeError(f"event input {node.input[0]!r} has no known event kind")
    return make_event(kind, int(xs[0].item()))


@register_kernel("WaitEvent", "com.microsoft")
def _wait_event(ctx, node, xs):
    event = _event(ctx, node, xs)
    ctx.session.hub.wait(event, ctx.session.wait_timeout)
    return list(xs[1 : 1 + len(node.output)])


@register_kernel("RecordEvent", "com.microsoft")
def _record_event(ctx, node, xs):
    event = _event(ctx, node, xs)
    ctx.session.hub.record(event)
    return list(xs[1 : 1 + len(node.output)])


class ReferenceSession:
    """Executes one graph node by node with torch kernels.

    Feed values may be ``concurrent.futures.Future`` objects; they are
    resolved when first consumed. Futures passed as ``sinks`` are completed as
    soon as the named tensor is produced, before the run finishes.
    Concurrent ``run`` calls are safe: all state lives in the call.
    """

    def __init__(
        self,
        model: onnx.ModelProto,
        *,
        hub: Optional[EventHub] = None,
        event_kinds: Optional[Mapping[str, EventKind]] = None,
        wait_timeout: Optional[float] = None,
    ):
        self._graph = model.graph
        self.hub = hub if hub is not None else EventHub()
        self.event_kinds = dict(event_kinds or {})
        self.wait_timeout = wait_timeout

        self._kernels: list[Kernel] = []
        for node in self._graph.node:
            kernel = _KERNELS.get((node.domain or "", node.op_type))
            if kernel is None and node.domain == "ai.onnx":
                kernel = _KERNELS.get(("", node.op_type))
            if kernel is None:
                raise UnsupportedOpError(f"no kernel for {node.domain or 'ai.onnx'}::{node.op_type}")
            self._kernels.append(kernel)

        self._constants = {
            t.name: torch.from_numpy(np.array(numpy_helper.to_array(t))) for t in self._graph.initializer
        }
        self._required = [vi.name for vi in self._graph.input if vi.name not in self._constants]

    @staticmethod
    def for_stage(stage: StageGraph, hub: EventHub, wait_timeout: Optional[float] = None) -> "ReferenceSession":
        kinds = {slot.name: slot.kind for slot in stage.event_slots}
        return ReferenceSession(stage.model, hub=hub, event_kinds=kinds, wait_timeout=wait_timeout)

    @property
    def input_names(self) -> list[str]:
        return list(self._required)

    @property
    def output_names(self) -> list[str]:
        return [vi.name for vi in self._graph.output]

    def _resolve(self, env: dict[str, Any], name: str) -> Any:
        value = env[name]
        if isinstance(value, concurrent.futures.Future):
            try:
                value = value.result(timeout=self.wait_timeout)
            except concurrent.futures.CancelledError as e:
                raise PipelineAbortedError(f"input {name!r} was cancelled") from e
            except concurrent.futures.TimeoutError as e:
                raise EventTimeoutError(f"input {name!r} did not arrive within {self.wait_timeout}s") from e
            env[name] = value
        return value

    def _execute(
        self,
        feed: Mapping[str, Any],
        fetch: Sequence[str],
        sinks: Mapping[str, concurrent.futures.Future],
    ) -> list[torch.Tensor]:
        missing = [n for n in self._required if n not in feed]
        if missing:
            raise PipelineRuntimeError(f"missing feeds: {missing}")

        env: dict[str, Any] = dict(self._constants)
        env.update(feed)
        ctx = _Context(self)
        for node, kernel in zip(self._graph.node, self._kernels):
            xs = [self._resolve(env, n) if n else None for n in node.input]
            ys = kernel(ctx, node, xs)
            for name, y in zip(node.output, ys):
                if not name:
                    continue
                env[name] = y
                sink = sinks.get(name)
                if sink is not None and not sink.done():
                    sink.set_result(y)

        unknown = [n for n in fetch if n not in env]
        if unknown:
            raise PipelineRuntimeError(f"cannot fetch {unknown}: not produced by this graph")
        return [self._resolve(env, n) for n in fetch]

    def run(
        self,
        feed: Mapping[str, Any],
        fetch: Optional[Sequence[str]] = None,
        *,
        sinks: Optional[Mapping[str, concurrent.futures.Future]] = None,
    ) -> RunResult:
        fetch = list(fetch) if fetch is not None else self.output_names
        try:
            outputs = self._execute(feed, fetch, sinks or {})
        except Exception as e:
            logger.debug("run failed on %r: %s", self._graph.name, e)
            return RunResult(ok=False, error=e)
        return RunResult(ok=True, outputs=outputs)
