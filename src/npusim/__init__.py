"""
npusim: quantized NN graph compiler and simulator for a weight-stationary
systolic NPU.

Pipeline:
    model description -> TopologyExtractor -> ModelGraph
    ModelGraph -> HardwareMapper -> Schedule
    Schedule -> Simulator (MemoryHierarchy + SparsityEngine + SystolicArray)
    ProtocolEngine drives a Device through host command packets

Usage:
    from npusim import HardwareMapper, Simulator, create_tiny_config, parse_model_description

    config = create_tiny_config()
    graph = parse_model_description(description)
    schedule = HardwareMapper(config).compile(graph, model_id=1)
    result = Simulator(config).run(CompiledModel(1, graph, schedule), x)
"""

__version__ = "0.1.0"

from npusim.core import *  # noqa: F401,F403
from npusim.core import __all__ as _core_all
from npusim.hardware import (
    PowerMode,
    EnergyCoefficients,
    HardwareConfig,
    create_tiny_config,
    create_edge_npu_config,
)
from npusim.frontends import TopologyExtractor, parse_model_description, load_model_description
from npusim.compiler import HardwareMapper, ScheduleCache
from npusim.memory import MemoryHierarchy
from npusim.execution import Simulator, InferenceResult, ExecutionReport, reference_forward
from npusim.protocol import Device, ProtocolEngine, EngineState, Opcode, encode_packet, decode_packet

__all__ = list(_core_all) + [
    # Hardware
    'PowerMode',
    'EnergyCoefficients',
    'HardwareConfig',
    'create_tiny_config',
    'create_edge_npu_config',

    # Frontend / compiler
    'TopologyExtractor',
    'parse_model_description',
    'load_model_description',
    'HardwareMapper',
    'ScheduleCache',

    # Execution
    'MemoryHierarchy',
    'Simulator',
    'InferenceResult',
    'ExecutionReport',
    'reference_forward',

    # Protocol
    'Device',
    'ProtocolEngine',
    'EngineState',
    'Opcode',
    'encode_packet',
    'decode_packet',
]
