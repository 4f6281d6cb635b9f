"""
Straightforward reference computation of a ModelGraph.

No tiling, no memory model: each weighted layer is one int64 matmul followed by
requantization. The simulator must match it bit for bit.
"""

from typing import Dict

import numpy as np

from npusim.core.structures import GRAPH_INPUT, ModelGraph
from .quantization import lower_input, raise_output, requantize, vector_op


def reference_forward(graph: ModelGraph, x: np.ndarray) -> Dict[int, np.ndarray]:
    """
    Returns:
        layer_id -> int8 output for every layer
    """
    values: Dict[int, np.ndarray] = {GRAPH_INPUT: x.reshape(graph.input_shape).astype(np.int8)}
    for layer in graph.layers:
        x_in = values[layer.producers[0]]
        if layer.op_kind.has_weights:
            a = lower_input(layer, x_in).astype(np.int64)
            acc = a @ layer.weight_matrix().astype(np.int64)
            y = requantize(acc, layer.requant_multiplier, layer.bias, layer.activation_function)
            values[layer.layer_id] = raise_output(layer, y)
        else:
            values[layer.layer_id] = vector_op(layer, x_in)
    del values[GRAPH_INPUT]
    return values


def dequantize(x: np.ndarray, scale: float) -> np.ndarray:
    return x.astype(np.float32) * scale
