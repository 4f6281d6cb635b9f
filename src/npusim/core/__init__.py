"""
Core IR and error taxonomy shared by the compiler, simulator and protocol engine.
"""

from .errors import (
    NPUError,
    ValidationError,
    UnsupportedOpError,
    CapacityError,
    ProtocolError,
    SequenceError,
    ThermalOrStallBackoff,
    BufferStallError,
    HardwareFault,
    ExecutionCancelled,
)

from .structures import (
    GRAPH_INPUT,
    OpKind,
    ActivationFunction,
    PoolType,
    StorageLocation,
    TileOrder,
    Tensor,
    Layer,
    Edge,
    ModelGraph,
    Tile,
    StepKind,
    ScheduleStep,
    Schedule,
    CompiledModel,
    ceil_div,
    num_elements,
)

__all__ = [
    # errors
    'NPUError',
    'ValidationError',
    'UnsupportedOpError',
    'CapacityError',
    'ProtocolError',
    'SequenceError',
    'ThermalOrStallBackoff',
    'BufferStallError',
    'HardwareFault',
    'ExecutionCancelled',

    # structures
    'GRAPH_INPUT',
    'OpKind',
    'ActivationFunction',
    'PoolType',
    'StorageLocation',
    'TileOrder',
    'Tensor',
    'Layer',
    'Edge',
    'ModelGraph',
    'Tile',
    'StepKind',
    'ScheduleStep',
    'Schedule',
    'CompiledModel',
    'ceil_div',
    'num_elements',
]
