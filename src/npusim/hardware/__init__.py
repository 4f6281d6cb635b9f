"""
Static hardware parameters for the simulated NPU.
"""

from .config import (
    PowerMode,
    EnergyCoefficients,
    HardwareConfig,
    create_tiny_config,
    create_edge_npu_config,
)

__all__ = [
    'PowerMode',
    'EnergyCoefficients',
    'HardwareConfig',
    'create_tiny_config',
    'create_edge_npu_config',
]
