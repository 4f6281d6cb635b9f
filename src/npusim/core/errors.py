"""
Error taxonomy for the NPU toolchain and simulator.

Recoverable conditions (stall/back-off) derive from ThermalOrStallBackoff and
are retried inside the simulator. Everything else propagates to the caller
with no partial state mutation.
"""

from typing import Optional, Tuple


class NPUError(Exception):
    """Base class for all npusim errors."""


class ValidationError(NPUError):
    """Malformed, cyclic or shape-inconsistent model graph."""


class UnsupportedOpError(NPUError):
    """Op kind outside {matmul, conv2d, activation, pool}."""

    def __init__(self, op_kind: str, layer_name: Optional[str] = None):
        self.op_kind = op_kind
        self.layer_name = layer_name
        where = f" (layer '{layer_name}')" if layer_name else ""
        super().__init__(f"Unsupported op kind '{op_kind}'{where}")


class CapacityError(NPUError):
    """A tile does not fit the array, a PE register, or a memory bank."""


class ProtocolError(NPUError):
    """Malformed host packet. The packet is discarded."""


class SequenceError(NPUError):
    """Command issued from a state that does not permit it."""

    def __init__(self, command: str, state: str):
        self.command = command
        self.state = state
        super().__init__(f"{command} not permitted in state {state}")


class ThermalOrStallBackoff(NPUError):
    """Recoverable condition handled by reducing the simulated clock rate."""


class BufferStallError(ThermalOrStallBackoff):
    """Double-buffer flip could not proceed within the stall budget."""

    def __init__(self, tile_key: Tuple[int, int], wait_cycles: int, budget_cycles: int):
        self.tile_key = tile_key
        self.wait_cycles = wait_cycles
        self.budget_cycles = budget_cycles
        super().__init__(
            f"Buffer flip for tile {tile_key} would wait {wait_cycles} cycles "
            f"(budget {budget_cycles})"
        )


class HardwareFault(NPUError):
    """Unrecoverable for the current run; requires a fresh Initialize."""


class ExecutionCancelled(NPUError):
    """Raised inside the simulator when a cancellation request is honored."""
