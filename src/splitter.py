from __future__ import annotations

import logging
import os
from typing import Optional, Sequence, Union

import onnx

from .assignment import assign_stages
from .config import CutsLike, SplitConfig, load_cuts
from .errors import MalformedCutError
from .partition import GraphPartitioner, StageGraph

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


def split_model(
    model: onnx.ModelProto,
    cuts: CutsLike,
    config: Optional[SplitConfig] = None,
) -> list[StageGraph]:
    """Split a training-step model into pipeline stages.

    Steps:
    - Assign every node to one stage part by its first output name.
    - Build each stage's sub-graph, copying nodes, constants and inputs.
    - Insert wait/record event nodes at each part's entry and exit.

    The source model is not modified. Any invalid cut raises a
    ``PipelineSplitError`` subclass and no stage is returned.
    """

    config = config or SplitConfig()
    stage_cuts = load_cuts(cuts)

    assignment = assign_stages(model.graph, stage_cuts)
    stages = GraphPartitioner(model, stage_cuts, assignment, config).build()

    logger.info(
        "Split %r (%d nodes) into %d stage(s)",
        model.graph.name,
        len(model.graph.node),
        len(stages),
    )
    return stages


def split_model_file(
    model_path: PathLike,
    out_paths: Sequence[PathLike],
    cuts: CutsLike,
    config: Optional[SplitConfig] = None,
) -> list[StageGraph]:
    """Load a model, split it and save one ``.onnx`` file per stage."""

    stage_cuts = load_cuts(cuts)
    if len(out_paths) != len(stage_cuts):
        raise MalformedCutError(
            f"got {len(out_paths)} output path(s) for {len(stage_cuts)} stage cut(s)"
        )

    model = onnx.load(os.fspath(model_path))
    stages = split_model(model, stage_cuts, config)

    # Only write once every stage has been built.
    for stage, path in zip(stages, out_paths):
        onnx.save(stage.model, os.fspath(path))
        logger.info("Saved stage %d to %s", stage.stage, os.fspath(path))
    return stages
