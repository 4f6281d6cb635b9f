#!/usr/bin/env python
"""
Hardware configuration presets, validation and JSON round trip.
"""

import pytest

from npusim.core.structures import TileOrder
from npusim.hardware import HardwareConfig, PowerMode, create_edge_npu_config, create_tiny_config


def test_edge_preset():
    config = create_edge_npu_config()
    assert (config.array_rows, config.array_cols) == (16, 16)
    assert config.weight_cache_banks == 16
    assert config.weight_bank_bytes == 4096
    assert config.weight_load_bytes_per_cycle == 16.0
    assert config.vector_lanes == 16
    assert config.pipeline_cycles == 31


def test_tiny_preset_overrides():
    config = create_tiny_config(stall_budget_cycles=10)
    assert config.num_pes == 16
    assert config.stall_budget_cycles == 10
    assert config.activation_half_bytes == 2048


def test_power_modes():
    config = HardwareConfig()
    assert config.clock_hz(PowerMode.NOMINAL) == config.nominal_clock_hz
    assert config.clock_hz(PowerMode.LOW_POWER) == config.low_power_clock_hz
    assert config.peak_tops(PowerMode.LOW_POWER) < config.peak_tops()


def test_json_round_trip(tmp_path):
    config = create_tiny_config(tile_order=TileOrder.COLUMN_MAJOR, backoff_factor=0.25)
    config.energy.mac_pj = 0.5
    path = tmp_path / "hw.json"
    config.to_json(path)

    loaded = HardwareConfig.from_json(path)
    assert loaded == config
    assert loaded.tile_order == TileOrder.COLUMN_MAJOR
    assert loaded.energy.mac_pj == 0.5
    assert loaded.fingerprint() == config.fingerprint()


def test_fingerprint_tracks_changes():
    assert create_tiny_config().fingerprint() == create_tiny_config().fingerprint()
    assert create_tiny_config().fingerprint() != create_tiny_config(array_cols=8).fingerprint()


@pytest.mark.parametrize("overrides", [
    {'array_rows': 0},
    {'weight_cache_banks': 0},
    {'backoff_factor': 1.0},
    {'backoff_factor': 0.0},
    {'max_backoff_retries': -1},
    {'transfer_queue_depth': 0},
    {'activation_buffer_bytes': 1},
])
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        create_tiny_config(**overrides)
