import numpy as np
import pytest
from onnx import TensorProto, helper, numpy_helper

from pipesplit import DataEvent, PipelineEvent, StageCut

BATCH, D_IN, D_H1, D_H2, D_OUT = 2, 4, 3, 3, 2

# name -> shape for every float tensor in the training graph
SHAPES = {
    "X": [BATCH, D_IN],
    "labels": [BATCH, D_OUT],
    "T1": [BATCH, D_H1],
    "T2": [BATCH, D_H1],
    "T3": [BATCH, D_H1],
    "T4": [BATCH, D_H2],
    "T5": [BATCH, D_H2],
    "T6": [BATCH, D_H2],
    "T7": [BATCH, D_OUT],
    "predictions": [BATCH, D_OUT],
    "diff": [BATCH, D_OUT],
    "diff_square": [BATCH, D_OUT],
    "loss": [],
    "predictions_grad": [BATCH, D_OUT],
    "B3_grad": [D_OUT],
    "T6_trans": [D_H2, BATCH],
    "W3_grad": [D_H2, D_OUT],
    "W3_trans": [D_OUT, D_H2],
    "T6_grad": [BATCH, D_H2],
    "T5_grad": [BATCH, D_H2],
    "B2_grad": [D_H2],
    "T3_trans": [D_H1, BATCH],
    "W2_grad": [D_H1, D_H2],
    "W2_trans": [D_H2, D_H1],
    "T3_grad": [BATCH, D_H1],
    "T2_grad": [BATCH, D_H1],
    "B1_grad": [D_H1],
    "X_trans": [D_IN, BATCH],
    "W1_grad": [D_IN, D_H1],
}

GRAPH_INPUTS = ["X", "labels"]
GRAPH_OUTPUTS = ["loss", "predictions", "W1_grad", "B1_grad", "W2_grad", "B2_grad", "W3_grad", "B3_grad"]


def make_weights(seed=0):
    rng = np.random.default_rng(seed)
    return {
        "W1": rng.standard_normal((D_IN, D_H1)).astype(np.float32),
        "B1": rng.standard_normal((D_H1,)).astype(np.float32),
        "W2": rng.standard_normal((D_H1, D_H2)).astype(np.float32),
        "B2": rng.standard_normal((D_H2,)).astype(np.float32),
        "W3": rng.standard_normal((D_H2, D_OUT)).astype(np.float32),
        "B3": rng.standard_normal((D_OUT,)).astype(np.float32),
        # d(mean(diff^2))/d(diff) = 2 * diff / numel
        "grad_scale": np.array(2.0 / (BATCH * D_OUT), dtype=np.float32),
    }


def build_mlp_training_model(weights=None):
    """3-layer MLP with MSE loss and a hand-written backward pass."""

    weights = weights if weights is not None else make_weights()
    n = helper.make_node
    nodes = [
        # forward
        n("MatMul", ["X", "W1"], ["T1"]),
        n("Add", ["T1", "B1"], ["T2"]),
        n("Relu", ["T2"], ["T3"]),
        n("MatMul", ["T3", "W2"], ["T4"]),
        n("Add", ["T4", "B2"], ["T5"]),
        n("Relu", ["T5"], ["T6"]),
        n("MatMul", ["T6", "W3"], ["T7"]),
        n("Add", ["T7", "B3"], ["predictions"]),
        n("Sub", ["predictions", "labels"], ["diff"]),
        n("Mul", ["diff", "diff"], ["diff_square"]),
        n("ReduceMean", ["diff_square"], ["loss"], keepdims=0),
        # backward, last layer first
        n("Mul", ["diff", "grad_scale"], ["predictions_grad"]),
        n("ReduceSum", ["predictions_grad"], ["B3_grad"], axes=[0], keepdims=0),
        n("Transpose", ["T6"], ["T6_trans"]),
        n("MatMul", ["T6_trans", "predictions_grad"], ["W3_grad"]),
        n("Transpose", ["W3"], ["W3_trans"]),
        n("MatMul", ["predictions_grad", "W3_trans"], ["T6_grad"]),
        n("ReluGrad", ["T6_grad", "T6"], ["T5_grad"], domain="com.microsoft"),
        n("ReduceSum", ["T5_grad"], ["B2_grad"], axes=[0], keepdims=0),
        n("Transpose", ["T3"], ["T3_trans"]),
        n("MatMul", ["T3_trans", "T5_grad"], ["W2_grad"]),
        n("Transpose", ["W2"], ["W2_trans"]),
        n("MatMul", ["T5_grad", "W2_trans"], ["T3_grad"]),
        n("ReluGrad", ["T3_grad", "T3"], ["T2_grad"], domain="com.microsoft"),
        n("ReduceSum", ["T2_grad"], ["B1_grad"], axes=[0], keepdims=0),
        n("Transpose", ["X"], ["X_trans"]),
        n("MatMul", ["X_trans", "T2_grad"], ["W1_grad"]),
    ]

    def vi(name):
        return helper.make_tensor_value_info(name, TensorProto.FLOAT, SHAPES[name])

    io = set(GRAPH_INPUTS) | set(GRAPH_OUTPUTS)
    graph = helper.make_graph(
        nodes,
        "mlp_training",
        inputs=[vi(name) for name in GRAPH_INPUTS],
        outputs=[vi(name) for name in GRAPH_OUTPUTS],
        initializer=[numpy_helper.from_array(v, name=k) for k, v in weights.items()],
        value_info=[vi(name) for name in SHAPES if name not in io],
    )
    model = helper.make_model(
        graph,
        opset_imports=[helper.make_opsetid("", 12), helper.make_opsetid("com.microsoft", 1)],
    )
    model.ir_version = 7
    return model


def mlp_cuts():
    return [
        # stage 0
        {
            "fw": {"nodes": ["T1", "T2", "T3"], "sync_inputs": ["X"], "sync_outputs": ["T3"]},
            "bw": {
                "nodes": ["T2_grad", "B1_grad", "X_trans", "W1_grad"],
                "sync_inputs": ["T3_grad"],
                "wait_depends": ["T3_sync"],
                "record_depends": ["B1_grad", "W1_grad"],
            },
        },
        # stage 1
        {
            "fw": {"nodes": ["T4", "T5", "T6"], "sync_inputs": ["T3"], "sync_outputs": ["T6"]},
            "bw": {
                "nodes": ["T5_grad", "B2_grad", "T3_trans", "W2_grad", "W2_trans", "T3_grad"],
                "sync_inputs": ["T6_grad"],
                "sync_outputs": ["T3_grad"],
                "wait_depends": ["T6_sync"],
                "record_depends": ["B2_grad", "W2_grad"],
            },
        },
        # stage 2
        {
            "fw": {"nodes": ["T7", "predictions", "diff", "diff_square", "loss"], "sync_inputs": ["T6"]},
            "bw": {
                "nodes": ["predictions_grad", "B3_grad", "T6_trans", "W3_grad", "W3_trans", "T6_grad"],
                "sync_outputs": ["T6_grad"],
                "record_depends": ["loss", "predictions", "B3_grad", "W3_grad"],
            },
        },
    ]


def stage_events(record_data, wait_record_pipeline):
    """Per-stage event ids of one micro-batch.

    ``record_data`` holds 4 data events, ``wait_record_pipeline`` 5
    (wait, record) pipeline pairs: fw of stages 0..2, bw of stage 1, bw of stage 0.
    """

    d = [DataEvent(v) for v in record_data]
    p = [(PipelineEvent(w), PipelineEvent(r)) for w, r in wait_record_pipeline]
    return {
        0: {
            "wait_pipeline_0_fw": p[0][0],
            "record_pipeline_0_fw": p[0][1],
            "record_data_0_fw": d[0],
            "wait_data_0_bw": d[3],
            "wait_pipeline_0_bw": p[4][0],
            "record_pipeline_0_bw": p[4][1],
        },
        1: {
            "wait_data_1_fw": d[0],
            "wait_pipeline_1_fw": p[1][0],
            "record_pipeline_1_fw": p[1][1],
            "record_data_1_fw": d[1],
            "wait_data_1_bw": d[2],
            "wait_pipeline_1_bw": p[3][0],
            "record_pipeline_1_bw": p[3][1],
            "record_data_1_bw": d[3],
        },
        2: {
            "wait_data_2_fw": d[1],
            "wait_pipeline_2_fw": p[2][0],
            "record_pipeline_2_bw": p[2][1],
            "record_data_2_bw": d[2],
        },
    }


@pytest.fixture
def weights():
    return make_weights()


@pytest.fixture
def mlp_model(weights):
    return build_mlp_training_model(weights)


@pytest.fixture
def cuts():
    return [StageCut.from_dict(c) for c in mlp_cuts()]


@pytest.fixture
def make_events():
    return stage_events


@pytest.fixture
def make_model():
    return build_mlp_training_model


@pytest.fixture
def raw_cuts():
    return mlp_cuts()
