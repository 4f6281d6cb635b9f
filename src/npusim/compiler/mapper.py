"""
Hardware Mapper - Maps a ModelGraph onto the weight-stationary systolic array

Each weighted layer is viewed as an M x K activation matrix times a K x N weight
matrix (conv2d lowered im2col-style: K = Cin*kh*kw, N = Cout, M = Ho*Wo).
The weight matrix is split into ceil(K/R) x ceil(N/C) tiles. A tile keeps its
weight block resident in the PE registers and streams all M activation vectors
through the array before the next tile is loaded, so every weight byte is
shifted into the array exactly once per inference.

Tile cost model:
    weight_load_cycles       = ceil(weight_bytes / weight_load_bytes_per_cycle)
    activation_stream_cycles = M
    estimated_cycles         = max(weight_load, activation_stream) + (R + C - 1)

The weight shift-in for a tile overlaps the activation stream of the previous
one, hence the max(). R + C - 1 is the pipeline fill/drain latency. A single
tile therefore costs exactly M + R + C - 1 cycles only while M is at least
weight_load_cycles; a shorter stream is bounded by the weight shift-in (a
full 4x4 tile on the tiny preset costs 4 + 7 = 11 cycles for M = 1, 2 or 3).

Emitted schedule for a weighted layer with tiles t0..tn:

    LAYER_BEGIN
    ACTIVATION_DMA(t0) WEIGHT_PREFETCH(t0) BUFFER_SWAP(t0)
    TILE_COMPUTE(t0) ACTIVATION_DMA(t1) WEIGHT_PREFETCH(t1) BUFFER_SWAP(t1)
    ...
    TILE_COMPUTE(tn)
    LAYER_END

Transfer directives that follow a TILE_COMPUTE are issued when that compute
begins (double buffering). Activation and pool layers become a single
VECTOR_OP. Layer order is exactly the graph order.
"""

import logging
from typing import List, Tuple

from npusim.core.errors import CapacityError
from npusim.core.structures import (
    Layer,
    ModelGraph,
    Schedule,
    ScheduleStep,
    StepKind,
    Tile,
    TileOrder,
    ceil_div,
    num_elements,
)
from npusim.hardware.config import HardwareConfig

logger = logging.getLogger(__name__)

WEIGHT_ELEMENT_BITS = 8


class HardwareMapper:
    """
    Compiles ModelGraphs into Schedules for one HardwareConfig.

    Usage:
        mapper = HardwareMapper(create_tiny_config())
        schedule = mapper.compile(graph, model_id=1)
    """

    def __init__(self, config: HardwareConfig):
        self.config = config
        self.rows = config.array_rows
        self.cols = config.array_cols

    def tile_cost(self, rows: int, cols: int, stream_length: int) -> Tuple[int, int, int]:
        """
        Returns:
            (weight_load_cycles, activation_stream_cycles, estimated_cycles)
        """
        weight_load = ceil_div(rows * cols, self.config.weight_load_bytes_per_cycle)
        stream = stream_length
        return weight_load, stream, max(weight_load, stream) + self.config.pipeline_cycles

    def tile_grid(self, k: int, n: int) -> List[Tuple[int, int]]:
        """(k_index, n_index) pairs in traversal order."""
        k_blocks = ceil_div(k, self.rows)
        n_blocks = ceil_div(n, self.cols)
        if self.config.tile_order == TileOrder.COLUMN_MAJOR:
            return [(ki, ni) for ni in range(n_blocks) for ki in range(k_blocks)]
        return [(ki, ni) for ki in range(k_blocks) for ni in range(n_blocks)]

    def plan_layer(self, layer: Layer) -> List[Tile]:
        """
        Decompose one weighted layer into tiles.

        Raises:
            CapacityError: If a tile cannot fit the array registers, a weight
                cache bank, or an activation half-buffer
        """
        if self.config.pe_register_bits < WEIGHT_ELEMENT_BITS:
            raise CapacityError(
                f"Layer '{layer.name}': {WEIGHT_ELEMENT_BITS}-bit weights do not fit "
                f"{self.config.pe_register_bits}-bit PE registers"
            )

        m, k, n = layer.matmul_dims()
        tiles = []
        for tile_id, (ki, ni) in enumerate(self.tile_grid(k, n)):
            k0 = ki * self.rows
            n0 = ni * self.cols
            rows = min(self.rows, k - k0)
            cols = min(self.cols, n - n0)
            weight_load, stream, estimated = self.tile_cost(rows, cols, m)
            tile = Tile(
                layer_id=layer.layer_id,
                tile_id=tile_id,
                k_index=ki,
                n_index=ni,
                row_offset=k0,
                col_offset=n0,
                rows=rows,
                cols=cols,
                stream_length=m,
                weight_byte_offset=k0 * n + n0,
                weight_row_stride=n,
                activation_byte_offset=k0,
                activation_row_stride=k,
                weight_load_cycles=weight_load,
                activation_stream_cycles=stream,
                pipeline_cycles=self.config.pipeline_cycles,
                estimated_cycles=estimated,
            )
            self._check_capacity(layer, tile)
            tiles.append(tile)
        return tiles

    def _check_capacity(self, layer: Layer, tile: Tile):
        if tile.rows > self.rows or tile.cols > self.cols:
            raise CapacityError(
                f"Tile {tile.key} of '{layer.name}' is {tile.rows}x{tile.cols}, "
                f"array is {self.rows}x{self.cols}"
            )
        if tile.weight_bytes > self.config.weight_bank_bytes:
            raise CapacityError(
                f"Tile {tile.key} of '{layer.name}': {tile.weight_bytes} weight bytes exceed "
                f"weight cache bank of {self.config.weight_bank_bytes} bytes"
            )
        if tile.activation_bytes > self.config.activation_half_bytes:
            raise CapacityError(
                f"Tile {tile.key} of '{layer.name}': activation slice of "
                f"{tile.activation_bytes} bytes exceeds half-buffer of "
                f"{self.config.activation_half_bytes} bytes"
            )

    def _layer_steps(self, layer: Layer) -> List[ScheduleStep]:
        lid = layer.layer_id
        steps = [ScheduleStep(StepKind.LAYER_BEGIN, lid)]

        if not layer.op_kind.has_weights:
            elements = num_elements(layer.input_shape)
            steps.append(ScheduleStep(
                StepKind.VECTOR_OP, lid,
                nbytes=elements,
                cycles=ceil_div(elements, self.config.vector_lanes),
            ))
            steps.append(ScheduleStep(StepKind.LAYER_END, lid))
            return steps

        tiles = self.plan_layer(layer)

        def stage(tile: Tile):
            steps.append(ScheduleStep(StepKind.ACTIVATION_DMA, lid, tile, nbytes=tile.activation_bytes))
            steps.append(ScheduleStep(StepKind.WEIGHT_PREFETCH, lid, tile, nbytes=tile.weight_bytes))
            steps.append(ScheduleStep(StepKind.BUFFER_SWAP, lid, tile))

        stage(tiles[0])
        for i, tile in enumerate(tiles):
            steps.append(ScheduleStep(
                StepKind.TILE_COMPUTE, lid, tile,
                nbytes=tile.weight_bytes, cycles=tile.estimated_cycles,
            ))
            if i + 1 < len(tiles):
                stage(tiles[i + 1])
        steps.append(ScheduleStep(StepKind.LAYER_END, lid))
        return steps

    def compile(self, graph: ModelGraph, model_id: int = 0) -> Schedule:
        """
        Produce the Schedule for `graph`.

        Deterministic: the same graph and config always give an identical
        Schedule.
        """
        steps: List[ScheduleStep] = []
        for layer in graph.layers:
            steps.extend(self._layer_steps(layer))

        schedule = Schedule(
            model_id=model_id,
            graph_fingerprint=graph.fingerprint(),
            hardware_fingerprint=self.config.fingerprint(),
            steps=tuple(steps),
        )
        logger.info(
            "Compiled '%s' (model %d): %d layers, %d tiles, ~%d cycles",
            graph.name, model_id, len(graph), len(schedule.tiles), schedule.estimated_cycles,
        )
        return schedule
