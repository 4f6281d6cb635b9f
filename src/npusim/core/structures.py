"""
Core data structures for the NPU compiler and simulator.

This module defines the intermediate representation shared by every stage:
- Tensor: int8 tensor with a quantization scale and storage location
- Layer: one node of the model graph (matmul, conv2d, activation, pool)
- ModelGraph: arena of layers indexed by integer id, adjacency as index tuples
- Tile: one weight sub-block plus its activation slice, one array pass
- ScheduleStep / Schedule: ordered tiles interleaved with transfer directives

Everything here is immutable once built. Weight arrays are marked read-only.
"""

import hashlib
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np


GRAPH_INPUT = -1  # producer id used for edges that come from the graph input


class OpKind(Enum):
    """Operations supported by the array and its vector unit."""
    MATMUL = "matmul"
    CONV2D = "conv2d"
    ACTIVATION = "activation"
    POOL = "pool"

    @property
    def has_weights(self) -> bool:
        return self in (OpKind.MATMUL, OpKind.CONV2D)


class ActivationFunction(Enum):
    NONE = "none"
    RELU = "relu"


class PoolType(Enum):
    MAX = "max"
    AVG = "avg"


class StorageLocation(Enum):
    """Where a tensor lives in the memory hierarchy."""
    HOST = "host"
    FLASH = "flash"                        # bulk storage, staged DMA
    WEIGHT_CACHE = "weight_cache"
    ACTIVATION_BUFFER = "activation_buffer"


class TileOrder(Enum):
    """Tile traversal policy within a layer."""
    ROW_MAJOR = "row_major"        # k-block outer, n-block inner
    COLUMN_MAJOR = "column_major"  # n-block outer, k-block inner


def num_elements(shape: Tuple[int, ...]) -> int:
    return int(np.prod(shape)) if shape else 1


@dataclass(frozen=True, eq=False)
class Tensor:
    """Quantized int8 tensor. `data` is None for activations (runtime values)."""
    name: str
    shape: Tuple[int, ...]
    scale: float
    data: Optional[np.ndarray] = None
    location: StorageLocation = StorageLocation.FLASH

    def __post_init__(self):
        if self.scale <= 0:
            raise ValueError(f"Tensor '{self.name}': scale must be positive, got {self.scale}")
        if self.data is not None:
            self.data.setflags(write=False)


@dataclass(frozen=True, eq=False)
class Layer:
    """
    One node of the model graph.

    `producers` holds the ids of layers feeding this one (GRAPH_INPUT for the
    graph input); `consumers` holds the ids of layers reading its output.
    """
    layer_id: int
    name: str
    op_kind: OpKind
    input_shape: Tuple[int, ...]
    output_shape: Tuple[int, ...]
    input_scale: float
    output_scale: float
    weight: Optional[Tensor] = None
    bias: Optional[np.ndarray] = None      # int32, accumulator units
    activation_function: ActivationFunction = ActivationFunction.NONE
    stride: int = 1
    padding: int = 0
    kernel_size: Tuple[int, int] = (1, 1)
    pool_type: PoolType = PoolType.MAX
    producers: Tuple[int, ...] = ()
    consumers: Tuple[int, ...] = ()

    def __post_init__(self):
        if self.bias is not None:
            self.bias.setflags(write=False)

    def weight_matrix(self) -> np.ndarray:
        """
        Weights as the K x N matrix the array consumes.

        conv2d weights (Cout, Cin, kh, kw) are lowered im2col-style to
        (Cin*kh*kw, Cout).
        """
        if self.weight is None or self.weight.data is None:
            raise ValueError(f"Layer '{self.name}' has no weights")
        w = self.weight.data
        if self.op_kind == OpKind.CONV2D:
            return np.ascontiguousarray(w.reshape(w.shape[0], -1).T)
        return w

    def matmul_dims(self) -> Tuple[int, int, int]:
        """(M, K, N): activation vectors, reduction length, output features."""
        if self.op_kind == OpKind.MATMUL:
            m, k = self.input_shape
            return m, k, self.output_shape[1]
        if self.op_kind == OpKind.CONV2D:
            cout, ho, wo = self.output_shape
            cin = self.input_shape[0]
            kh, kw = self.kernel_size
            return ho * wo, cin * kh * kw, cout
        raise ValueError(f"Layer '{self.name}' ({self.op_kind.value}) is not a matrix op")

    @property
    def requant_multiplier(self) -> float:
        """s_in * s_w / s_out, applied to the int accumulator."""
        if self.weight is None:
            return self.input_scale / self.output_scale
        return self.input_scale * self.weight.scale / self.output_scale


@dataclass(frozen=True)
class Edge:
    """Activation tensor flowing from producer to consumer."""
    producer: int
    consumer: int
    shape: Tuple[int, ...]


@dataclass(frozen=True, eq=False)
class ModelGraph:
    """
    Directed acyclic graph of layers.

    Layers form an arena indexed by `layer_id` and are stored in topological
    order, so iterating `layers` is a valid execution order.
    """
    name: str
    input_shape: Tuple[int, ...]
    input_scale: float
    layers: Tuple[Layer, ...]
    edges: Tuple[Edge, ...]
    output_ids: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)

    def __getitem__(self, layer_id: int) -> Layer:
        return self.layers[layer_id]

    @property
    def weighted_layers(self) -> List[Layer]:
        return [layer for layer in self.layers if layer.op_kind.has_weights]

    @property
    def primary_output(self) -> Layer:
        """The last sink in execution order."""
        return self.layers[self.output_ids[-1]]

    @property
    def total_macs(self) -> int:
        total = 0
        for layer in self.weighted_layers:
            m, k, n = layer.matmul_dims()
            total += m * k * n
        return total

    def fingerprint(self) -> str:
        """Content hash over topology, shapes, scales and weight bytes."""
        h = hashlib.sha256()
        h.update(repr((self.input_shape, self.input_scale)).encode())
        h.update(repr([(e.producer, e.consumer, e.shape) for e in self.edges]).encode())
        for layer in self.layers:
            h.update(repr((
                layer.layer_id, layer.op_kind.value, layer.input_shape,
                layer.output_shape, layer.input_scale, layer.output_scale,
                layer.activation_function.value, layer.stride, layer.padding,
                layer.kernel_size, layer.pool_type.value, layer.producers,
            )).encode())
            if layer.weight is not None and layer.weight.data is not None:
                h.update(repr(layer.weight.scale).encode())
                h.update(layer.weight.data.tobytes())
            if layer.bias is not None:
                h.update(layer.bias.tobytes())
        return h.hexdigest()[:16]


@dataclass(frozen=True)
class Tile:
    """
    One array pass: weight block [k0:k0+rows, n0:n0+cols] of a layer's K x N
    weight matrix with weights resident, streaming all M activation vectors of
    columns [k0:k0+rows].

    Byte offsets address the row-major int8 weight matrix (stride N) and the
    row-major M x K activation matrix (stride K).
    """
    layer_id: int
    tile_id: int
    k_index: int
    n_index: int
    row_offset: int          # k0
    col_offset: int          # n0
    rows: int                # PE rows used
    cols: int                # PE columns used
    stream_length: int       # M
    weight_byte_offset: int
    weight_row_stride: int
    activation_byte_offset: int
    activation_row_stride: int
    weight_load_cycles: int
    activation_stream_cycles: int
    pipeline_cycles: int     # R + C - 1 fill/drain
    estimated_cycles: int

    @property
    def key(self) -> Tuple[int, int]:
        return (self.layer_id, self.tile_id)

    @property
    def weight_bytes(self) -> int:
        return self.rows * self.cols

    @property
    def activation_bytes(self) -> int:
        return self.stream_length * self.rows

    @property
    def macs(self) -> int:
        return self.stream_length * self.rows * self.cols

    @property
    def array_coordinates(self) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        """((first_row, first_col), (last_row, last_col)) of the PEs in use."""
        return (0, 0), (self.rows - 1, self.cols - 1)


class StepKind(Enum):
    """Schedule step kinds, in the order they may appear for a layer."""
    LAYER_BEGIN = "layer_begin"
    WEIGHT_PREFETCH = "weight_prefetch"    # bulk storage -> weight cache
    ACTIVATION_DMA = "activation_dma"      # activation store -> shadow half
    BUFFER_SWAP = "buffer_swap"
    TILE_COMPUTE = "tile_compute"
    VECTOR_OP = "vector_op"                # activation / pool on the vector unit
    LAYER_END = "layer_end"


@dataclass(frozen=True)
class ScheduleStep:
    kind: StepKind
    layer_id: int
    tile: Optional[Tile] = None
    nbytes: int = 0
    cycles: int = 0

    def __repr__(self):
        target = f" tile={self.tile.key}" if self.tile is not None else ""
        return f"<{self.kind.value} layer={self.layer_id}{target} bytes={self.nbytes}>"


@dataclass(frozen=True)
class Schedule:
    """Ordered, immutable execution plan for one compiled model."""
    model_id: int
    graph_fingerprint: str
    hardware_fingerprint: str
    steps: Tuple[ScheduleStep, ...]

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[ScheduleStep]:
        return iter(self.steps)

    @property
    def tiles(self) -> List[Tile]:
        return [s.tile for s in self.steps if s.kind == StepKind.TILE_COMPUTE]

    def tiles_for_layer(self, layer_id: int) -> List[Tile]:
        return [t for t in self.tiles if t.layer_id == layer_id]

    @property
    def estimated_cycles(self) -> int:
        """Sum of tile and vector-op estimates, ignoring transfer stalls."""
        return sum(
            s.tile.estimated_cycles if s.kind == StepKind.TILE_COMPUTE else s.cycles
            for s in self.steps
            if s.kind in (StepKind.TILE_COMPUTE, StepKind.VECTOR_OP)
        )

    def summary(self) -> Dict:
        counts: Dict[str, int] = {}
        for step in self.steps:
            counts[step.kind.value] = counts.get(step.kind.value, 0) + 1
        return {
            'model_id': self.model_id,
            'graph_fingerprint': self.graph_fingerprint,
            'num_steps': len(self.steps),
            'num_tiles': len(self.tiles),
            'estimated_cycles': self.estimated_cycles,
            'step_counts': counts,
        }


@dataclass(frozen=True)
class CompiledModel:
    """A validated graph with its schedule. Owns both."""
    model_id: int
    graph: ModelGraph
    schedule: Schedule


def ceil_div(a, b) -> int:
    """Ceiling division; `b` may be a float bandwidth."""
    return int(math.ceil(a / b))
