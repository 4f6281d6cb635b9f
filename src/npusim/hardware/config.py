"""
Static Hardware Parameters

Array geometry, memory capacities, transfer bandwidths/latencies, clock
operating points, back-off policy and energy coefficients. These are
configuration inputs, never hard-coded in the compiler or simulator.

Configs serialize to plain dicts/JSON so they can be stored next to model
descriptions:

    config = create_edge_npu_config()
    config.to_json(Path("npu.json"))
    same = HardwareConfig.from_json(Path("npu.json"))
"""

import hashlib
import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from npusim.core.structures import TileOrder


class PowerMode(Enum):
    """Operating points selectable with the PowerControl command."""
    NOMINAL = 0
    LOW_POWER = 1


@dataclass
class EnergyCoefficients:
    """
    Per-event energy in picojoules.

    Values follow the usual int8 systolic-array ballpark: off-chip/flash reads
    dominate, on-chip SRAM is an order of magnitude cheaper, a MAC is cheaper
    still.
    """
    mac_pj: float = 0.2                          # 8-bit MAC
    weight_shift_in_pj_per_byte: float = 0.3     # cache -> PE registers
    weight_cache_read_pj_per_byte: float = 0.5
    weight_cache_write_pj_per_byte: float = 0.6
    flash_read_pj_per_byte: float = 10.0         # bulk storage DMA
    activation_buffer_pj_per_byte: float = 0.5
    accumulator_pj_per_element: float = 0.4      # 32-bit partial sum write
    vector_op_pj_per_element: float = 0.1
    static_pj_per_cycle: float = 2.0             # leakage + clock tree

    # Low-power operating point scales dynamic energy (lower voltage)
    low_power_dynamic_scale: float = 0.6


@dataclass
class HardwareConfig:
    """
    Complete static description of one NPU instance.

    Attributes:
        array_rows, array_cols: Systolic array R x C
        pe_register_bits: Width of the per-PE weight register
        weight_cache_bytes: Total weight cache capacity (split across banks)
        weight_cache_banks: Number of banks (16-way banked SRAM)
        activation_buffer_bytes: Total double-buffer capacity (two halves)
        weight_load_bytes_per_cycle: Cache -> array weight shift-in rate
            (defaults to one array row per cycle)
        flash_latency_cycles, flash_bytes_per_cycle: Bulk-storage DMA model
        activation_dma_latency_cycles, activation_dma_bytes_per_cycle:
            Activation store -> half-buffer DMA model
        transfer_queue_depth: Outstanding transfers per channel
        vector_lanes: Elements per cycle for activation/pool layers
        nominal_clock_hz, low_power_clock_hz: Operating points
        stall_budget_cycles: Longest tolerated wait on a buffer flip
        max_backoff_retries: Back-off attempts before a HardwareFault
        backoff_factor: Clock scale multiplier applied per back-off
    """
    array_rows: int = 16
    array_cols: int = 16
    pe_register_bits: int = 8

    weight_cache_bytes: int = 64 * 1024
    weight_cache_banks: int = 16
    activation_buffer_bytes: int = 64 * 1024

    weight_load_bytes_per_cycle: Optional[float] = None
    flash_latency_cycles: int = 32
    flash_bytes_per_cycle: float = 8.0
    activation_dma_latency_cycles: int = 4
    activation_dma_bytes_per_cycle: float = 16.0
    transfer_queue_depth: int = 2
    vector_lanes: Optional[int] = None

    nominal_clock_hz: float = 500e6
    low_power_clock_hz: float = 100e6

    stall_budget_cycles: int = 4096
    max_backoff_retries: int = 3
    backoff_factor: float = 0.5

    tile_order: TileOrder = TileOrder.ROW_MAJOR
    sparsity_enabled: bool = True
    cycle_accurate: bool = True

    energy: EnergyCoefficients = field(default_factory=EnergyCoefficients)

    def __post_init__(self):
        if self.array_rows <= 0 or self.array_cols <= 0:
            raise ValueError(
                f"Array dimensions must be positive, got {self.array_rows}x{self.array_cols}"
            )
        if self.weight_cache_banks <= 0:
            raise ValueError("weight_cache_banks must be positive")
        if self.weight_cache_bytes < self.weight_cache_banks:
            raise ValueError("weight_cache_bytes must cover at least one byte per bank")
        if self.activation_buffer_bytes < 2:
            raise ValueError("activation_buffer_bytes must hold two halves")
        if not 0.0 < self.backoff_factor < 1.0:
            raise ValueError(f"backoff_factor must be in (0, 1), got {self.backoff_factor}")
        if self.max_backoff_retries < 0:
            raise ValueError("max_backoff_retries must be non-negative")
        if self.transfer_queue_depth < 1:
            raise ValueError("transfer_queue_depth must be at least 1")
        if isinstance(self.tile_order, str):
            self.tile_order = TileOrder(self.tile_order)
        if isinstance(self.energy, dict):
            self.energy = EnergyCoefficients(**self.energy)
        if self.weight_load_bytes_per_cycle is None:
            self.weight_load_bytes_per_cycle = float(self.array_cols)
        if self.vector_lanes is None:
            self.vector_lanes = self.array_cols

    @property
    def num_pes(self) -> int:
        return self.array_rows * self.array_cols

    @property
    def pipeline_cycles(self) -> int:
        """Systolic fill/drain latency R + C - 1."""
        return self.array_rows + self.array_cols - 1

    @property
    def weight_bank_bytes(self) -> int:
        return self.weight_cache_bytes // self.weight_cache_banks

    @property
    def activation_half_bytes(self) -> int:
        return self.activation_buffer_bytes // 2

    def clock_hz(self, mode: PowerMode) -> float:
        return self.low_power_clock_hz if mode == PowerMode.LOW_POWER else self.nominal_clock_hz

    def peak_tops(self, mode: PowerMode = PowerMode.NOMINAL) -> float:
        """2 ops per MAC, all PEs busy."""
        return 2 * self.num_pes * self.clock_hz(mode) / 1e12

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['tile_order'] = self.tile_order.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HardwareConfig':
        data = dict(data)
        if 'energy' in data and isinstance(data['energy'], dict):
            data['energy'] = EnergyCoefficients(**data['energy'])
        if 'tile_order' in data:
            data['tile_order'] = TileOrder(data['tile_order'])
        return cls(**data)

    def to_json(self, filepath: Path):
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_json(cls, filepath: Path) -> 'HardwareConfig':
        with open(filepath, 'r') as f:
            return cls.from_dict(json.load(f))

    def fingerprint(self) -> str:
        """Stable hash; schedules compiled for a different config are stale."""
        payload = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()[:16]


def create_tiny_config(**overrides) -> HardwareConfig:
    """4x4 array with small memories, convenient for inspection and tests."""
    params = dict(
        array_rows=4,
        array_cols=4,
        weight_cache_bytes=16 * 16,
        weight_cache_banks=16,
        activation_buffer_bytes=4 * 1024,
        flash_latency_cycles=8,
        flash_bytes_per_cycle=4.0,
        activation_dma_latency_cycles=2,
        activation_dma_bytes_per_cycle=8.0,
        stall_budget_cycles=256,
    )
    params.update(overrides)
    return HardwareConfig(**params)


def create_edge_npu_config(**overrides) -> HardwareConfig:
    """16x16 edge NPU: 64 KiB weight cache in 16 banks, 64 KiB activation store."""
    return HardwareConfig(**overrides)
