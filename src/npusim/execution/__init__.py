"""
Execution: systolic array model, sparsity engine, simulator and reference.

Usage:
    from npusim.execution import Simulator, reference_forward

    result = Simulator(config).run(compiled_model, x)
"""

from .quantization import requantize, im2col, lower_input, raise_output, pool2d, vector_op
from .systolic import ArrayPass, SystolicArray
from .sparsity import SkipMask, SparsityEngine
from .results import StallEvent, LayerReport, ExecutionReport, InferenceResult
from .simulator import Simulator
from .reference import reference_forward, dequantize

__all__ = [
    # Integer kernels
    'requantize',
    'im2col',
    'lower_input',
    'raise_output',
    'pool2d',
    'vector_op',

    # Array
    'ArrayPass',
    'SystolicArray',

    # Sparsity
    'SkipMask',
    'SparsityEngine',

    # Results
    'StallEvent',
    'LayerReport',
    'ExecutionReport',
    'InferenceResult',

    # Simulation
    'Simulator',
    'reference_forward',
    'dequantize',
]
