#!/usr/bin/env python
"""
Tests for the Hardware Mapper and schedule cache.
"""

import numpy as np
import pytest

from npusim.compiler import HardwareMapper, ScheduleCache
from npusim.core.errors import CapacityError
from npusim.core.structures import StepKind, TileOrder
from npusim.frontends import parse_model_description
from npusim.hardware import create_tiny_config

from conftest import matmul_layer, mlp_description, random_weights


def single_matmul(rng, k, n, m):
    return parse_model_description({
        'input': {'shape': [m, k], 'scale': 0.05},
        'layers': [matmul_layer('fc', random_weights(rng, k, n), m)],
    })


@pytest.mark.parametrize("m", [4, 8, 13])
def test_scenario_a_single_tile(rng, tiny_config, m):
    """4x4 weights on a 4x4 array: one tile costing (4 + 4 - 1) + stream length."""
    graph = single_matmul(rng, 4, 4, m)
    schedule = HardwareMapper(tiny_config).compile(graph)

    tiles = schedule.tiles
    assert len(tiles) == 1
    tile = tiles[0]
    assert (tile.rows, tile.cols) == (4, 4)
    assert tile.estimated_cycles == 4 + 4 - 1 + m
    assert tile.array_coordinates == ((0, 0), (3, 3))


@pytest.mark.parametrize("m", [1, 2, 3])
def test_single_tile_shorter_stream_than_weight_load(rng, tiny_config, m):
    """Below 4 vectors the 4-cycle weight shift-in bounds the tile, not the stream."""
    tile = HardwareMapper(tiny_config).compile(single_matmul(rng, 4, 4, m)).tiles[0]
    assert tile.weight_load_cycles == 4
    assert tile.activation_stream_cycles == m
    assert tile.estimated_cycles == 4 + (4 + 4 - 1)


def test_scenario_b_four_tiles_in_reuse_order(rng, tiny_config):
    graph = single_matmul(rng, 8, 8, 8)
    schedule = HardwareMapper(tiny_config).compile(graph)

    tiles = schedule.tiles
    assert len(tiles) == 4
    assert [(t.k_index, t.n_index) for t in tiles] == [(0, 0), (0, 1), (1, 0), (1, 1)]
    assert [t.tile_id for t in tiles] == [0, 1, 2, 3]
    for tile in tiles:
        assert tile.estimated_cycles == 4 + 4 - 1 + 8
    assert [t.weight_byte_offset for t in tiles] == [0, 4, 32, 36]
    assert [t.activation_byte_offset for t in tiles] == [0, 0, 4, 4]


def test_column_major_order(rng):
    config = create_tiny_config(tile_order=TileOrder.COLUMN_MAJOR)
    schedule = HardwareMapper(config).compile(single_matmul(rng, 8, 8, 8))
    assert [(t.k_index, t.n_index) for t in schedule.tiles] == [(0, 0), (1, 0), (0, 1), (1, 1)]


def test_weight_load_dominates_short_streams(rng):
    config = create_tiny_config(weight_load_bytes_per_cycle=1.0)
    schedule = HardwareMapper(config).compile(single_matmul(rng, 4, 4, 2))
    tile = schedule.tiles[0]
    assert tile.weight_load_cycles == 16
    assert tile.estimated_cycles == 16 + 7


@pytest.mark.parametrize("k,n", [(8, 8), (7, 5), (13, 3), (1, 9)])
def test_tiling_covers_weights_exactly_once(rng, tiny_config, k, n):
    graph = single_matmul(rng, k, n, 3)
    schedule = HardwareMapper(tiny_config).compile(graph)

    coverage = np.zeros((k, n), dtype=int)
    for tile in schedule.tiles_for_layer(0):
        coverage[tile.row_offset:tile.row_offset + tile.rows,
                 tile.col_offset:tile.col_offset + tile.cols] += 1
        assert tile.weight_byte_offset == tile.row_offset * n + tile.col_offset
    assert np.all(coverage == 1)


def test_compile_is_deterministic(rng, tiny_config, convnet):
    graph = parse_model_description(convnet)
    first = HardwareMapper(tiny_config).compile(graph, model_id=3)
    second = HardwareMapper(tiny_config).compile(graph, model_id=3)
    assert first == second
    assert first.steps == second.steps


def test_double_buffer_directives(rng, tiny_config):
    schedule = HardwareMapper(tiny_config).compile(single_matmul(rng, 8, 4, 4))
    kinds = [step.kind for step in schedule]
    assert kinds == [
        StepKind.LAYER_BEGIN,
        StepKind.ACTIVATION_DMA, StepKind.WEIGHT_PREFETCH, StepKind.BUFFER_SWAP,
        StepKind.TILE_COMPUTE,
        StepKind.ACTIVATION_DMA, StepKind.WEIGHT_PREFETCH, StepKind.BUFFER_SWAP,
        StepKind.TILE_COMPUTE,
        StepKind.LAYER_END,
    ]
    steps = list(schedule)
    # The DMA right after compute i stages tile i+1
    assert steps[4].tile.tile_id == 0
    assert steps[5].tile.tile_id == 1
    assert steps[7].tile.tile_id == 1


def test_layer_order_preserved(tiny_config, convnet):
    graph = parse_model_description(convnet)
    schedule = HardwareMapper(tiny_config).compile(graph)
    begins = [s.layer_id for s in schedule if s.kind == StepKind.LAYER_BEGIN]
    assert begins == [0, 1, 2, 3]
    vector_ops = [s for s in schedule if s.kind == StepKind.VECTOR_OP]
    assert [s.layer_id for s in vector_ops] == [1, 2]
    assert vector_ops[0].cycles == 3 * 6 * 6 // 4


def test_conv_tiles(tiny_config, convnet):
    graph = parse_model_description(convnet)
    schedule = HardwareMapper(tiny_config).compile(graph)
    conv_tiles = schedule.tiles_for_layer(0)
    # K = 2*3*3 = 18 -> 5 row blocks, N = 3 -> 1 column block
    assert len(conv_tiles) == 5
    assert conv_tiles[-1].rows == 2
    assert all(t.stream_length == 36 for t in conv_tiles)


def test_register_width_capacity_error(rng):
    config = create_tiny_config(pe_register_bits=4)
    with pytest.raises(CapacityError, match="register"):
        HardwareMapper(config).compile(single_matmul(rng, 4, 4, 4))


def test_weight_bank_capacity_error(rng):
    config = create_tiny_config(weight_cache_bytes=128)  # 8 bytes per bank
    with pytest.raises(CapacityError, match="bank"):
        HardwareMapper(config).compile(single_matmul(rng, 4, 4, 4))


def test_activation_half_buffer_capacity_error(rng):
    config = create_tiny_config(activation_buffer_bytes=64)  # 32-byte halves
    with pytest.raises(CapacityError, match="half-buffer"):
        HardwareMapper(config).compile(single_matmul(rng, 4, 4, 16))


class TestScheduleCache:
    def test_reuses_schedule(self, rng, tiny_config, mlp):
        cache = ScheduleCache(HardwareMapper(tiny_config))
        graph = parse_model_description(mlp)

        first = cache.get_or_compile(graph, 7)
        second = cache.get_or_compile(parse_model_description(mlp), 7)

        assert second is first
        assert (cache.hits, cache.misses) == (1, 1)
        assert 7 in cache

    def test_stale_entry_is_recompiled(self, rng, tiny_config, mlp):
        cache = ScheduleCache(HardwareMapper(tiny_config))
        first = cache.get_or_compile(parse_model_description(mlp), 7)

        other = parse_model_description(mlp_description(np.random.default_rng(99)))
        second = cache.get_or_compile(other, 7)

        assert second is not first
        assert second.graph_fingerprint == other.fingerprint()
        assert cache.misses == 2
        assert len(cache) == 1
