class PipelineSplitError(RuntimeError):
    """Base error for invalid split requests. Raised once, at split time."""


class UnassignedNodeError(PipelineSplitError):
    """Raised when a graph node is not listed in any stage cut."""


class DuplicateNodeError(PipelineSplitError):
    """Raised when two graph nodes share the same first output name."""


class MalformedCutError(PipelineSplitError):
    """Raised when a cut spec is inconsistent with the graph."""


class MissingValueInfoError(PipelineSplitError):
    """Raised when a boundary tensor has no shape/type record to copy."""


class DanglingInputError(PipelineSplitError):
    """Raised when a stage node consumes a tensor the stage cannot provide."""


class PipelineRuntimeError(RuntimeError):
    """Base error for executing split stages."""


class EventTimeoutError(PipelineRuntimeError):
    """Raised when a wait is not matched by a record within the timeout."""


class EventAlreadyRecordedError(PipelineRuntimeError):
    """Raised when the same event id is recorded twice on one hub."""


class EventNamespaceError(PipelineRuntimeError, TypeError):
    """Raised when a data event id is fed to a pipeline slot or vice versa."""


class PipelineAbortedError(PipelineRuntimeError):
    """Raised in waiters when the hub is aborted after a stage failure."""


class UnsupportedOpError(PipelineRuntimeError):
    """Raised when the reference session has no kernel for an op."""
