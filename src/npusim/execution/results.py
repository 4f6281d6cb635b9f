"""
Inference results and execution reports.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class StallEvent:
    """Cycles the array sat idle waiting on the memory hierarchy."""
    cycle: int                # cycle at which the wait began
    duration: int
    reason: str               # 'activation_dma' or 'weight_fill'
    layer_id: int
    tile_key: Optional[Tuple[int, int]] = None

    def to_dict(self) -> Dict:
        return {
            'cycle': self.cycle,
            'duration': self.duration,
            'reason': self.reason,
            'layer_id': self.layer_id,
            'tile_key': list(self.tile_key) if self.tile_key else None,
        }


@dataclass
class LayerReport:
    layer_id: int
    name: str
    op_kind: str
    start_cycle: int = 0
    end_cycle: int = 0
    tiles: int = 0
    macs: int = 0
    effective_macs: int = 0
    stall_cycles: int = 0
    energy_pj: float = 0.0

    @property
    def cycles(self) -> int:
        return self.end_cycle - self.start_cycle

    @property
    def sparsity_ratio(self) -> float:
        if self.macs == 0:
            return 0.0
        return 1.0 - self.effective_macs / self.macs

    def to_dict(self) -> Dict:
        return {
            'layer_id': self.layer_id,
            'name': self.name,
            'op_kind': self.op_kind,
            'start_cycle': self.start_cycle,
            'end_cycle': self.end_cycle,
            'cycles': self.cycles,
            'tiles': self.tiles,
            'macs': self.macs,
            'effective_macs': self.effective_macs,
            'sparsity_ratio': self.sparsity_ratio,
            'stall_cycles': self.stall_cycles,
            'energy_pj': self.energy_pj,
        }


@dataclass
class ExecutionReport:
    """
    Timing and energy for one inference.

    `total_cycles` counts nominal-clock cycles; a back-off stretches compute
    by 1 / clock_scale.
    """
    total_cycles: int
    estimated_energy_pj: float
    stall_events: List[StallEvent]
    layers: List[LayerReport]
    energy_breakdown: Dict[str, float]
    total_macs: int
    effective_macs: int
    clock_hz: float
    power_mode: str
    backoff_events: int = 0
    clock_scale: float = 1.0
    array_cycles: int = 0
    memory_stats: Dict = field(default_factory=dict)

    @property
    def stall_cycles(self) -> int:
        return sum(e.duration for e in self.stall_events)

    @property
    def sparsity_ratio(self) -> float:
        if self.total_macs == 0:
            return 0.0
        return 1.0 - self.effective_macs / self.total_macs

    @property
    def latency_s(self) -> float:
        return self.total_cycles / self.clock_hz

    @property
    def effective_tops(self) -> float:
        """Dense-equivalent throughput: 2 ops per MAC over the run latency."""
        if self.total_cycles == 0:
            return 0.0
        return 2 * self.total_macs / self.latency_s / 1e12

    @property
    def tops_per_watt(self) -> float:
        if self.estimated_energy_pj == 0:
            return 0.0
        return 2 * self.total_macs / (self.estimated_energy_pj * 1e-12) / 1e12

    def to_dict(self) -> Dict:
        return {
            'total_cycles': self.total_cycles,
            'estimated_energy_pj': self.estimated_energy_pj,
            'stall_events': [e.to_dict() for e in self.stall_events],
            'stall_cycles': self.stall_cycles,
            'layers': [layer.to_dict() for layer in self.layers],
            'energy_breakdown': dict(self.energy_breakdown),
            'total_macs': self.total_macs,
            'effective_macs': self.effective_macs,
            'sparsity_ratio': self.sparsity_ratio,
            'clock_hz': self.clock_hz,
            'power_mode': self.power_mode,
            'backoff_events': self.backoff_events,
            'clock_scale': self.clock_scale,
            'array_cycles': self.array_cycles,
            'latency_s': self.latency_s,
            'effective_tops': self.effective_tops,
            'tops_per_watt': self.tops_per_watt,
            'memory': self.memory_stats,
        }

    def summary(self) -> Dict:
        return {
            'total_cycles': self.total_cycles,
            'estimated_energy_pj': self.estimated_energy_pj,
            'stall_events': len(self.stall_events),
            'stall_cycles': self.stall_cycles,
            'backoff_events': self.backoff_events,
            'sparsity_ratio': self.sparsity_ratio,
            'latency_us': self.latency_s * 1e6,
        }


@dataclass
class InferenceResult:
    outputs: Dict[str, np.ndarray]    # sink layer name -> int8 tensor
    output: np.ndarray                # primary (last) sink
    output_scale: float
    report: ExecutionReport
