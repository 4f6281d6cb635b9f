"""
Model Description Frontend (Topology Extractor)

Parses a model description (plain dict, usually loaded from JSON) into a
validated, immutable ModelGraph.

Description schema:

    {
        "name": "mlp",
        "input": {"shape": [4, 16], "scale": 0.05},
        "layers": [
            {"name": "fc1", "op_kind": "matmul",
             "input_shape": [4, 16], "output_shape": [4, 8],
             "weight": {"data": [[...]], "scale": 0.02},
             "bias": [...], "output_scale": 0.1,
             "activation_function": "relu",
             "inputs": ["input"]},
            ...
        ]
    }

`inputs` defaults to the previous layer ("input" for the first one). Every
supported op reads exactly one tensor, so each layer names one producer.

Validation:
- op kind in {matmul, conv2d, activation, pool}     -> UnsupportedOpError
- unknown producers, duplicate names, cycles          -> ValidationError
- per-op shape arithmetic and every edge's shapes     -> ValidationError
- weights representable as int8, scales positive      -> ValidationError
"""

import heapq
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from npusim.core.errors import UnsupportedOpError, ValidationError
from npusim.core.structures import (
    GRAPH_INPUT,
    ActivationFunction,
    Edge,
    Layer,
    ModelGraph,
    OpKind,
    PoolType,
    StorageLocation,
    Tensor,
    num_elements,
)

logger = logging.getLogger(__name__)

INPUT_NAME = "input"


def _as_shape(value: Any, what: str) -> Tuple[int, ...]:
    try:
        shape = tuple(int(d) for d in value)
    except (TypeError, ValueError):
        raise ValidationError(f"{what}: shape must be a list of integers, got {value!r}")
    if not shape or any(d <= 0 for d in shape):
        raise ValidationError(f"{what}: shape dimensions must be positive, got {shape}")
    return shape


def _as_scale(value: Any, what: str) -> float:
    try:
        scale = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{what}: scale must be a number, got {value!r}")
    if not np.isfinite(scale) or scale <= 0:
        raise ValidationError(f"{what}: scale must be positive and finite, got {scale}")
    return scale


def _as_int(value: Any, what: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{what} must be an integer, got {value!r}")


def _as_int8(data: Any, what: str) -> np.ndarray:
    try:
        array = np.asarray(data)
    except ValueError as e:
        raise ValidationError(f"{what}: weight data is not a rectangular array ({e})")
    if array.dtype == object:
        raise ValidationError(f"{what}: weight data is not a rectangular numeric array")
    if array.dtype == np.int8:
        return array.copy()
    if not np.issubdtype(array.dtype, np.integer):
        if not np.issubdtype(array.dtype, np.floating) or not np.all(np.mod(array, 1) == 0):
            raise ValidationError(f"{what}: weights must be integer-valued int8")
    if array.size and (array.min() < -128 or array.max() > 127):
        raise ValidationError(f"{what}: weights out of int8 range [-128, 127]")
    return array.astype(np.int8)


def _pair(value: Any, default: int, what: str) -> Tuple[int, int]:
    if value is None:
        return (default, default)
    if isinstance(value, (list, tuple)):
        if len(value) != 2:
            raise ValidationError(f"{what} must be an integer or a pair, got {value!r}")
        return (_as_int(value[0], what), _as_int(value[1], what))
    size = _as_int(value, what)
    return (size, size)


class _LayerSpec:
    """Parsed but not yet wired layer description."""

    def __init__(self, index: int, raw: Dict[str, Any], previous: str):
        self.index = index
        if not isinstance(raw, dict):
            raise ValidationError(f"Layer {index} must be a mapping, got {type(raw).__name__}")
        self.name = str(raw.get('name', f"layer{index}"))
        kind = raw.get('op_kind')
        try:
            self.op_kind = OpKind(kind)
        except ValueError:
            raise UnsupportedOpError(str(kind), self.name)

        where = f"layer '{self.name}'"
        self.input_shape = _as_shape(raw.get('input_shape'), f"{where} input_shape")
        self.output_shape = _as_shape(raw.get('output_shape'), f"{where} output_shape")

        inputs = raw.get('inputs', [previous])
        if isinstance(inputs, str):
            inputs = [inputs]
        if not isinstance(inputs, (list, tuple)) or len(inputs) != 1:
            raise ValidationError(f"{where}: expected exactly one input, got {inputs}")
        self.producer_name = str(inputs[0])

        act = raw.get('activation_function', 'none') or 'none'
        try:
            self.activation_function = ActivationFunction(act)
        except ValueError:
            raise ValidationError(f"{where}: unknown activation function '{act}'")

        self.output_scale: Optional[float] = None
        if raw.get('output_scale') is not None:
            self.output_scale = _as_scale(raw['output_scale'], f"{where} output_scale")

        self.kernel_size = _pair(raw.get('kernel_size'), 1, f"{where} kernel_size")
        # pools default to non-overlapping windows
        default_stride = self.kernel_size[0] if self.op_kind == OpKind.POOL else 1
        self.stride = _as_int(raw.get('stride', default_stride), f"{where} stride")
        self.padding = _as_int(raw.get('padding', 0), f"{where} padding")
        if self.stride <= 0 or self.padding < 0:
            raise ValidationError(f"{where}: invalid stride/padding {self.stride}/{self.padding}")
        pool = raw.get('pool_type', 'max')
        try:
            self.pool_type = PoolType(pool)
        except ValueError:
            raise ValidationError(f"{where}: unknown pool type '{pool}'")

        self.weight: Optional[Tensor] = None
        self.bias: Optional[np.ndarray] = None
        weight = raw.get('weight', raw.get('weight_tensor'))
        if self.op_kind.has_weights:
            if not isinstance(weight, dict) or 'data' not in weight:
                raise ValidationError(f"{where}: {self.op_kind.value} requires a weight tensor")
            data = _as_int8(weight['data'], where)
            self.weight = Tensor(
                name=f"{self.name}.weight",
                shape=tuple(data.shape),
                scale=_as_scale(weight.get('scale'), f"{where} weight"),
                data=data,
                location=StorageLocation.FLASH,
            )
            if raw.get('bias') is not None:
                try:
                    self.bias = np.asarray(raw['bias'], dtype=np.int64)
                except (TypeError, ValueError):
                    raise ValidationError(f"{where}: bias must be a list of integers")
                if self.bias.min(initial=0) < np.iinfo(np.int32).min or \
                        self.bias.max(initial=0) > np.iinfo(np.int32).max:
                    raise ValidationError(f"{where}: bias out of int32 range")
                self.bias = self.bias.astype(np.int32)
        elif weight is not None:
            raise ValidationError(f"{where}: {self.op_kind.value} layers carry no weights")

    def check_shapes(self):
        """Per-op shape arithmetic."""
        where = f"layer '{self.name}'"
        ins, outs = self.input_shape, self.output_shape

        if self.op_kind == OpKind.MATMUL:
            if len(ins) != 2 or len(outs) != 2:
                raise ValidationError(f"{where}: matmul expects (M, K) -> (M, N) shapes")
            if len(self.weight.shape) != 2:
                raise ValidationError(f"{where}: matmul weight must be (K, N)")
            k, n = self.weight.shape
            if ins[1] != k or outs != (ins[0], n):
                raise ValidationError(
                    f"{where}: shape mismatch {ins} x {self.weight.shape} -> {outs}"
                )
            self._check_bias(n)

        elif self.op_kind == OpKind.CONV2D:
            if len(ins) != 3 or len(outs) != 3 or len(self.weight.shape) != 4:
                raise ValidationError(
                    f"{where}: conv2d expects (C, H, W) activations and (Cout, Cin, kh, kw) weights"
                )
            cout, cin, kh, kw = self.weight.shape
            self.kernel_size = (kh, kw)
            ho = (ins[1] + 2 * self.padding - kh) // self.stride + 1
            wo = (ins[2] + 2 * self.padding - kw) // self.stride + 1
            if ins[0] != cin or ho <= 0 or wo <= 0 or outs != (cout, ho, wo):
                raise ValidationError(
                    f"{where}: shape mismatch {ins} * {self.weight.shape} "
                    f"(stride {self.stride}, padding {self.padding}) -> {outs}"
                )
            self._check_bias(cout)

        elif self.op_kind == OpKind.POOL:
            if len(ins) != 3 or len(outs) != 3:
                raise ValidationError(f"{where}: pool expects (C, H, W) shapes")
            kh, kw = self.kernel_size
            ho = (ins[1] - kh) // self.stride + 1
            wo = (ins[2] - kw) // self.stride + 1
            if ho <= 0 or wo <= 0 or outs != (ins[0], ho, wo):
                raise ValidationError(
                    f"{where}: pool {self.kernel_size}/{self.stride} maps {ins} -> "
                    f"{(ins[0], ho, wo)}, declared {outs}"
                )

        else:
            if ins != outs:
                raise ValidationError(f"{where}: activation must preserve shape, {ins} != {outs}")

    def _check_bias(self, n: int):
        if self.bias is not None and self.bias.shape != (n,):
            raise ValidationError(
                f"layer '{self.name}': bias shape {self.bias.shape} != ({n},)"
            )


def shapes_compatible(producer_shape: Sequence[int], consumer: _LayerSpec) -> bool:
    """
    Producer output must match the consumer's declared input shape. A matmul
    declared with input (1, P) also accepts any producer with P elements
    (implicit flatten).
    """
    producer_shape = tuple(producer_shape)
    if producer_shape == consumer.input_shape:
        return True
    return (
        consumer.op_kind == OpKind.MATMUL
        and consumer.input_shape[0] == 1
        and num_elements(producer_shape) == consumer.input_shape[1]
    )


class TopologyExtractor:
    """
    Build a ModelGraph from a model description.

    Layers end up in a stable topological order: declaration order wherever
    the declaration is already a valid execution order.
    """

    def extract(self, description: Dict[str, Any]) -> ModelGraph:
        if not isinstance(description, dict):
            raise ValidationError("Model description must be a mapping")
        raw_layers = description.get('layers')
        if not raw_layers:
            raise ValidationError("Model description has no layers")
        if not isinstance(raw_layers, list):
            raise ValidationError("Model description 'layers' must be a list")
        graph_input = description.get('input') or {}
        if not isinstance(graph_input, dict):
            raise ValidationError("Model description 'input' must be a mapping with shape and scale")
        input_shape = _as_shape(graph_input.get('shape'), "graph input")
        input_scale = _as_scale(graph_input.get('scale', 1.0), "graph input")
        name = str(description.get('name', 'model'))

        specs: List[_LayerSpec] = []
        previous = INPUT_NAME
        for index, raw in enumerate(raw_layers):
            spec = _LayerSpec(index, raw, previous)
            spec.check_shapes()
            specs.append(spec)
            previous = spec.name

        by_name: Dict[str, _LayerSpec] = {}
        for spec in specs:
            if spec.name in by_name or spec.name == INPUT_NAME:
                raise ValidationError(f"Duplicate or reserved layer name '{spec.name}'")
            by_name[spec.name] = spec

        producer_of: Dict[int, int] = {}
        for spec in specs:
            if spec.producer_name == INPUT_NAME:
                producer_of[spec.index] = GRAPH_INPUT
            elif spec.producer_name in by_name:
                producer_of[spec.index] = by_name[spec.producer_name].index
            else:
                raise ValidationError(
                    f"Layer '{spec.name}' reads unknown tensor '{spec.producer_name}'"
                )

        order = self._topological_order(specs, producer_of)
        new_id = {spec_index: position for position, spec_index in enumerate(order)}

        # Edge shape checks and scale propagation, in execution order
        out_scale: Dict[int, float] = {GRAPH_INPUT: input_scale}
        out_shape: Dict[int, Tuple[int, ...]] = {GRAPH_INPUT: input_shape}
        for spec_index in order:
            spec = specs[spec_index]
            src = producer_of[spec_index]
            if not shapes_compatible(out_shape[src], spec):
                src_name = INPUT_NAME if src == GRAPH_INPUT else specs[src].name
                raise ValidationError(
                    f"Edge {src_name} -> {spec.name}: producer shape {out_shape[src]} "
                    f"does not match expected {spec.input_shape}"
                )
            out_shape[spec_index] = spec.output_shape
            in_scale = out_scale[src]
            if spec.op_kind.has_weights:
                out_scale[spec_index] = spec.output_scale if spec.output_scale else in_scale
            else:
                out_scale[spec_index] = in_scale

        consumers: Dict[int, List[int]] = {new_id[i]: [] for i in order}
        for spec_index in order:
            src = producer_of[spec_index]
            if src != GRAPH_INPUT:
                consumers[new_id[src]].append(new_id[spec_index])

        layers: List[Layer] = []
        edges: List[Edge] = []
        for spec_index in order:
            spec = specs[spec_index]
            lid = new_id[spec_index]
            src = producer_of[spec_index]
            producer = GRAPH_INPUT if src == GRAPH_INPUT else new_id[src]
            layers.append(Layer(
                layer_id=lid,
                name=spec.name,
                op_kind=spec.op_kind,
                input_shape=spec.input_shape,
                output_shape=spec.output_shape,
                input_scale=out_scale[src],
                output_scale=out_scale[spec_index],
                weight=spec.weight,
                bias=spec.bias,
                activation_function=spec.activation_function,
                stride=spec.stride,
                padding=spec.padding,
                kernel_size=spec.kernel_size,
                pool_type=spec.pool_type,
                producers=(producer,),
                consumers=tuple(sorted(consumers[lid])),
            ))
            edges.append(Edge(producer=producer, consumer=lid, shape=out_shape[src]))

        output_ids = tuple(layer.layer_id for layer in layers if not layer.consumers)
        graph = ModelGraph(
            name=name,
            input_shape=input_shape,
            input_scale=input_scale,
            layers=tuple(layers),
            edges=tuple(edges),
            output_ids=output_ids,
        )
        logger.info(
            "Extracted graph '%s': %d layers, %d outputs, %d MACs",
            name, len(layers), len(output_ids), graph.total_macs,
        )
        return graph

    @staticmethod
    def _topological_order(specs: List[_LayerSpec], producer_of: Dict[int, int]) -> List[int]:
        """Kahn's algorithm; ties broken by declaration index."""
        indegree = {spec.index: 0 for spec in specs}
        children: Dict[int, List[int]] = {spec.index: [] for spec in specs}
        for index, src in producer_of.items():
            if src != GRAPH_INPUT:
                indegree[index] += 1
                children[src].append(index)

        ready = [index for index, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[int] = []
        while ready:
            index = heapq.heappop(ready)
            order.append(index)
            for child in children[index]:
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(specs):
            stuck = sorted(specs[i].name for i, d in indegree.items() if d > 0)
            raise ValidationError(f"Model graph contains a cycle through {stuck}")
        return order


def parse_model_description(description: Dict[str, Any]) -> ModelGraph:
    """Validate a description dict and return its ModelGraph."""
    return TopologyExtractor().extract(description)


def load_model_description(filepath: Path) -> ModelGraph:
    """Load a JSON model description from disk."""
    with open(filepath, 'r') as f:
        return parse_model_description(json.load(f))


def description_to_json(description: Dict[str, Any]) -> str:
    """Serialize a description, converting numpy arrays to nested lists."""
    def convert(obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
    return json.dumps(description, default=convert)
