#!/usr/bin/env python
"""
Sparsity engine: skip masks, cost adjustment, and output invariance.
"""

import numpy as np
import pytest

from npusim.compiler import HardwareMapper
from npusim.execution import Simulator, SparsityEngine
from npusim.frontends import parse_model_description
from npusim.hardware import create_tiny_config

from conftest import compile_description, matmul_layer, mlp_description, random_input


def test_mask_counts():
    engine = SparsityEngine()
    w = np.array([[1, 0], [0, 0]], dtype=np.int8)
    a = np.array([[3, 0], [0, 5]], dtype=np.int8)
    mask = engine.build_mask((0, 0), w, a)

    assert mask.total_macs == 8
    # Only a[0, 0] * w[0, 0] has two non-zero operands
    assert mask.effective_macs == 1
    assert mask.skipped_macs == 7
    assert mask.sparsity_ratio == pytest.approx(7 / 8)
    assert mask.weight_sparsity == pytest.approx(0.75)
    assert mask.activation_sparsity == pytest.approx(0.5)


def test_disabled_engine_counts_everything():
    engine = SparsityEngine(enabled=False)
    mask = engine.build_mask((0, 0), np.zeros((4, 4), dtype=np.int8), np.zeros((2, 4), dtype=np.int8))
    assert mask.effective_macs == mask.total_macs == 32
    assert engine.sparsity_ratio == 0.0


def test_adjusted_cycles_shorten_the_stream(rng, tiny_config):
    graph = parse_model_description({
        'input': {'shape': [32, 4], 'scale': 0.05},
        'layers': [matmul_layer('fc', rng.integers(-8, 8, size=(4, 4), dtype=np.int8), 32)],
    })
    tile = HardwareMapper(tiny_config).compile(graph).tiles[0]
    assert tile.estimated_cycles == 32 + 7

    engine = SparsityEngine()
    w = np.ones((4, 4), dtype=np.int8)
    a = np.ones((32, 4), dtype=np.int8)
    a[:, 2:] = 0
    mask = engine.build_mask(tile.key, w, a)
    assert mask.sparsity_ratio == pytest.approx(0.5)
    assert engine.adjusted_cycles(tile, mask) == 16 + 7

    # Never below the weight shift-in time
    mask = engine.build_mask(tile.key, w, np.zeros((32, 4), dtype=np.int8))
    assert engine.adjusted_cycles(tile, mask) == tile.weight_load_cycles + 7

    assert SparsityEngine(enabled=False).adjusted_cycles(tile, mask) == tile.estimated_cycles


def sparsify(description, rng, density):
    for layer in description['layers']:
        w = layer['weight']['data']
        layer['weight']['data'] = np.where(rng.random(w.shape) < density, w, 0).astype(np.int8)
    return description


@pytest.mark.parametrize("seed", range(8))
def test_outputs_independent_of_skipping(seed):
    rng = np.random.default_rng(seed)
    description = sparsify(mlp_description(rng, m=5, dims=(12, 9, 6)), rng, rng.uniform(0.1, 0.9))
    x = random_input(rng, (5, 12))
    x[rng.random(x.shape) < rng.uniform(0.0, 0.8)] = 0

    sparse_config = create_tiny_config(sparsity_enabled=True)
    dense_config = create_tiny_config(sparsity_enabled=False)
    sparse = Simulator(sparse_config).run(compile_description(description, sparse_config), x)
    dense = Simulator(dense_config).run(compile_description(description, dense_config), x)

    np.testing.assert_array_equal(sparse.output, dense.output)
    assert sparse.report.effective_macs <= dense.report.effective_macs


def test_sparse_model_is_cheaper(rng):
    description = sparsify(mlp_description(rng, m=32, dims=(8, 8, 4)), rng, 0.3)
    x = random_input(rng, (32, 8))

    sparse_config = create_tiny_config(sparsity_enabled=True)
    dense_config = create_tiny_config(sparsity_enabled=False)
    sparse = Simulator(sparse_config).run(compile_description(description, sparse_config), x).report
    dense = Simulator(dense_config).run(compile_description(description, dense_config), x).report

    assert sparse.sparsity_ratio > 0.5
    assert dense.sparsity_ratio == 0.0
    assert sparse.total_macs == dense.total_macs
    assert sparse.energy_breakdown['mac'] < dense.energy_breakdown['mac']
    assert sparse.estimated_energy_pj < dense.estimated_energy_pj
    assert sparse.total_cycles < dense.total_cycles
