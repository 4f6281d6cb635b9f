"""
Shared fixtures: hardware presets and model description builders.
"""

import numpy as np
import pytest

from npusim.core.structures import CompiledModel
from npusim.compiler import HardwareMapper
from npusim.frontends import parse_model_description
from npusim.hardware import create_tiny_config


def matmul_layer(name, weight, m, w_scale=0.01, output_scale=0.25, activation='none',
                 inputs=None, bias=None):
    k, n = weight.shape
    layer = {
        'name': name,
        'op_kind': 'matmul',
        'input_shape': [m, k],
        'output_shape': [m, n],
        'weight': {'data': weight, 'scale': w_scale},
        'output_scale': output_scale,
        'activation_function': activation,
    }
    if inputs is not None:
        layer['inputs'] = inputs
    if bias is not None:
        layer['bias'] = bias
    return layer


def random_weights(rng, k, n):
    return rng.integers(-128, 128, size=(k, n), dtype=np.int8)


def mlp_description(rng, m=4, dims=(8, 8, 4), name='mlp'):
    """Dense layers dims[0] -> dims[1] -> ... with ReLU between them."""
    layers = []
    for i in range(len(dims) - 1):
        last = i == len(dims) - 2
        layers.append(matmul_layer(
            f"fc{i + 1}",
            random_weights(rng, dims[i], dims[i + 1]),
            m,
            activation='none' if last else 'relu',
            bias=rng.integers(-500, 500, size=dims[i + 1]).tolist(),
        ))
    return {'name': name, 'input': {'shape': [m, dims[0]], 'scale': 0.05}, 'layers': layers}


def conv_description(rng, name='convnet'):
    """conv2d(2->3, 3x3, pad 1) -> relu -> maxpool 2 -> flatten matmul."""
    conv_w = rng.integers(-128, 128, size=(3, 2, 3, 3), dtype=np.int8)
    fc_w = random_weights(rng, 3 * 3 * 3, 5)
    return {
        'name': name,
        'input': {'shape': [2, 6, 6], 'scale': 0.05},
        'layers': [
            {'name': 'conv', 'op_kind': 'conv2d',
             'input_shape': [2, 6, 6], 'output_shape': [3, 6, 6],
             'weight': {'data': conv_w, 'scale': 0.01}, 'output_scale': 0.2,
             'padding': 1, 'bias': [10, -20, 30]},
            {'name': 'relu', 'op_kind': 'activation',
             'input_shape': [3, 6, 6], 'output_shape': [3, 6, 6],
             'activation_function': 'relu'},
            {'name': 'pool', 'op_kind': 'pool', 'pool_type': 'max', 'kernel_size': 2,
             'input_shape': [3, 6, 6], 'output_shape': [3, 3, 3]},
            matmul_layer('fc', fc_w, 1, output_scale=0.5),
        ],
    }


def compile_description(description, config, model_id=1):
    graph = parse_model_description(description)
    schedule = HardwareMapper(config).compile(graph, model_id)
    return CompiledModel(model_id=model_id, graph=graph, schedule=schedule)


def random_input(rng, shape):
    return rng.integers(-128, 128, size=shape, dtype=np.int8)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def tiny_config():
    return create_tiny_config()


@pytest.fixture
def mlp(rng):
    return mlp_description(rng)


@pytest.fixture
def convnet(rng):
    return conv_description(rng)
