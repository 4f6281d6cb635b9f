"""
PyTorch FX Frontend

Traces a float PyTorch model with torch.fx, calibrates per-tensor symmetric
int8 scales on an example input, and emits a model description accepted by
the Topology Extractor.

Supported modules: nn.Linear, nn.Conv2d (groups=1, dilation=1), nn.ReLU,
nn.MaxPool2d, nn.AvgPool2d. nn.Flatten, nn.Identity and nn.Dropout are
treated as views. A ReLU that directly follows a Linear/Conv2d whose output
feeds nothing else is fused into that layer.

Usage:
    from npusim.frontends.torch_fx import describe_module

    model = nn.Sequential(nn.Linear(16, 8), nn.ReLU(), nn.Linear(8, 4))
    description = describe_module(model, torch.randn(4, 16))
    graph = parse_model_description(description)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.fx import GraphModule, Node, symbolic_trace
from torch.fx.passes.shape_prop import ShapeProp

from npusim.core.errors import UnsupportedOpError, ValidationError

logger = logging.getLogger(__name__)

_VIEW_MODULES = (nn.Flatten, nn.Identity, nn.Dropout)
_VIEW_FUNCTIONS = {torch.flatten, torch.reshape}
_VIEW_METHODS = {'flatten', 'view', 'reshape', 'contiguous'}
_RELU_FUNCTIONS = {torch.relu, F.relu}


def symmetric_scale(x: torch.Tensor) -> float:
    """Per-tensor symmetric int8 scale: max|x| / 127 (1.0 for all-zero tensors)."""
    peak = float(x.detach().abs().max()) if x.numel() else 0.0
    return peak / 127.0 if peak > 0 else 1.0


def quantize(x: torch.Tensor, scale: float) -> np.ndarray:
    return np.clip(np.round(x.detach().cpu().numpy() / scale), -128, 127).astype(np.int8)


class _CalibratingShapeProp(ShapeProp):
    """ShapeProp that also keeps every node's output for scale calibration."""

    def __init__(self, module: GraphModule):
        super().__init__(module)
        self.values: Dict[str, torch.Tensor] = {}

    def run_node(self, n: Node) -> Any:
        result = super().run_node(n)
        if isinstance(result, torch.Tensor):
            self.values[n.name] = result.detach()
        return result


def _activation_shape(t: torch.Tensor) -> List[int]:
    """Drop the batch dim of NCHW tensors; keep (M, K) for 2-D activations."""
    shape = list(t.shape)
    if len(shape) == 4:
        if shape[0] != 1:
            raise ValidationError("conv2d/pool frontend expects batch size 1")
        return shape[1:]
    if len(shape) == 2:
        return shape
    if len(shape) == 3:
        return shape
    raise ValidationError(f"Unsupported activation rank {len(shape)}")


def _trace(model: nn.Module, example_input: torch.Tensor) -> Tuple[GraphModule, Dict[str, torch.Tensor]]:
    model.eval()
    try:
        fx_graph = symbolic_trace(model)
    except Exception as e:
        raise RuntimeError(f"Failed to trace model: {e}")
    prop = _CalibratingShapeProp(fx_graph)
    with torch.no_grad():
        prop.propagate(example_input)
    return fx_graph, prop.values


def describe_module(
    model: nn.Module,
    example_input: torch.Tensor,
    name: str = "model",
    input_scale: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Build a model description from a float PyTorch model.

    Args:
        model: Model built from the supported modules
        example_input: Calibration input (batch 1 for conv models)
        name: Model name recorded in the description
        input_scale: Override for the graph input scale

    Returns:
        Description dict (numpy weights) for parse_model_description()

    Raises:
        UnsupportedOpError: For modules/functions outside the vocabulary
    """
    fx_graph, values = _trace(model, example_input)
    modules = dict(fx_graph.named_modules())

    in_scale = input_scale or symmetric_scale(example_input)
    description: Dict[str, Any] = {
        'name': name,
        'input': {'shape': _activation_shape(example_input), 'scale': in_scale},
        'layers': [],
    }
    layers: List[Dict[str, Any]] = description['layers']

    # fx node name -> name of the layer (or input) that produced its tensor
    alias: Dict[str, str] = {}
    scales: Dict[str, float] = {}
    layer_index: Dict[str, int] = {}
    users: Dict[str, int] = {n.name: len(n.users) for n in fx_graph.graph.nodes}

    def source(node: Node) -> str:
        arg = node.args[0]
        return alias[arg.name]

    def source_scale(node: Node) -> float:
        return scales[source(node)]

    def add_relu(node: Node):
        src = source(node)
        if src in layer_index:
            prev = layers[layer_index[src]]
            if prev['op_kind'] in ('matmul', 'conv2d') and prev['activation_function'] == 'none' \
                    and users[node.args[0].name] == 1:
                prev['activation_function'] = 'relu'
                prev['output_scale'] = symmetric_scale(values[node.name])
                scales[src] = prev['output_scale']
                alias[node.name] = src
                return
        shape = _activation_shape(values[node.name])
        layers.append({
            'name': node.name, 'op_kind': 'activation',
            'input_shape': shape, 'output_shape': shape,
            'activation_function': 'relu', 'inputs': [src],
        })
        layer_index[node.name] = len(layers) - 1
        alias[node.name] = node.name
        scales[node.name] = source_scale(node)

    for node in fx_graph.graph.nodes:
        if node.op == 'placeholder':
            alias[node.name] = 'input'
            scales['input'] = in_scale
            continue
        if node.op == 'output':
            continue

        if node.op == 'call_module':
            module = modules[node.target]
            if isinstance(module, nn.Linear):
                s_in = source_scale(node)
                w_scale = symmetric_scale(module.weight)
                out_scale = symmetric_scale(values[node.name])
                in_shape = _activation_shape(values[node.args[0].name])
                if len(in_shape) != 2:
                    in_shape = [1, int(np.prod(in_shape))]
                layer = {
                    'name': node.name, 'op_kind': 'matmul',
                    'input_shape': in_shape,
                    'output_shape': [in_shape[0], module.out_features],
                    'weight': {'data': quantize(module.weight.T, w_scale), 'scale': w_scale},
                    'output_scale': out_scale,
                    'activation_function': 'none',
                    'inputs': [source(node)],
                }
                if module.bias is not None:
                    layer['bias'] = np.round(
                        module.bias.detach().numpy() / (s_in * w_scale)).astype(np.int32)
                layers.append(layer)

            elif isinstance(module, nn.Conv2d):
                if module.groups != 1 or module.dilation != (1, 1) or \
                        module.padding_mode != 'zeros' or isinstance(module.padding, str):
                    raise UnsupportedOpError(f"conv2d({module})", node.name)
                if module.stride[0] != module.stride[1] or module.padding[0] != module.padding[1]:
                    raise UnsupportedOpError("conv2d(asymmetric stride/padding)", node.name)
                s_in = source_scale(node)
                w_scale = symmetric_scale(module.weight)
                layer = {
                    'name': node.name, 'op_kind': 'conv2d',
                    'input_shape': _activation_shape(values[node.args[0].name]),
                    'output_shape': _activation_shape(values[node.name]),
                    'weight': {'data': quantize(module.weight, w_scale), 'scale': w_scale},
                    'output_scale': symmetric_scale(values[node.name]),
                    'activation_function': 'none',
                    'stride': module.stride[0],
                    'padding': module.padding[0],
                    'inputs': [source(node)],
                }
                if module.bias is not None:
                    layer['bias'] = np.round(
                        module.bias.detach().numpy() / (s_in * w_scale)).astype(np.int32)
                layers.append(layer)

            elif isinstance(module, (nn.MaxPool2d, nn.AvgPool2d)):
                kernel = module.kernel_size
                stride = module.stride or kernel
                if module.padding not in (0, (0, 0)):
                    raise UnsupportedOpError("pool(padding)", node.name)
                layers.append({
                    'name': node.name, 'op_kind': 'pool',
                    'pool_type': 'max' if isinstance(module, nn.MaxPool2d) else 'avg',
                    'kernel_size': kernel, 'stride': stride if isinstance(stride, int) else stride[0],
                    'input_shape': _activation_shape(values[node.args[0].name]),
                    'output_shape': _activation_shape(values[node.name]),
                    'inputs': [source(node)],
                })

            elif isinstance(module, nn.ReLU):
                add_relu(node)
                continue

            elif isinstance(module, _VIEW_MODULES):
                alias[node.name] = source(node)
                continue

            else:
                raise UnsupportedOpError(type(module).__name__, node.name)

            layer_index[node.name] = len(layers) - 1
            alias[node.name] = node.name
            scales[node.name] = layers[-1].get('output_scale') or source_scale(node)

        elif node.op == 'call_function':
            if node.target in _RELU_FUNCTIONS:
                add_relu(node)
            elif node.target in _VIEW_FUNCTIONS:
                alias[node.name] = source(node)
            else:
                raise UnsupportedOpError(getattr(node.target, '__name__', str(node.target)), node.name)

        elif node.op == 'call_method':
            if node.target == 'relu':
                add_relu(node)
            elif node.target in _VIEW_METHODS:
                alias[node.name] = source(node)
            else:
                raise UnsupportedOpError(f"Tensor.{node.target}", node.name)

        else:
            raise UnsupportedOpError(node.op, node.name)

    logger.info("Described '%s' with %d layers", name, len(layers))
    return description
