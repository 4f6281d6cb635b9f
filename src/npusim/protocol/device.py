"""
Simulated device instance.

A Device bundles everything one NPU owns: hardware config, memory hierarchy,
mapper with its schedule cache, simulator, the loaded model and the host-visible
input/output buffers. Nothing here is process-global; create one Device per
simulated chip.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np

from npusim.compiler import HardwareMapper, ScheduleCache
from npusim.core.errors import HardwareFault, ProtocolError, ValidationError
from npusim.core.structures import CompiledModel, num_elements
from npusim.execution.results import InferenceResult
from npusim.execution.simulator import Simulator
from npusim.frontends.description import parse_model_description
from npusim.hardware.config import HardwareConfig, PowerMode
from npusim.memory.hierarchy import MemoryHierarchy

logger = logging.getLogger(__name__)


class Device:
    def __init__(self, config: Optional[HardwareConfig] = None):
        self.config = config or HardwareConfig()
        self.hierarchy = MemoryHierarchy(self.config)
        self.mapper = HardwareMapper(self.config)
        self.schedule_cache = ScheduleCache(self.mapper)
        self.simulator = Simulator(self.config, self.hierarchy)
        self.power_mode = PowerMode.NOMINAL

        self.model: Optional[CompiledModel] = None
        self.input_buffer = bytearray()
        self.last_result: Optional[InferenceResult] = None
        self._registered: Dict[int, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Model lifecycle
    # ------------------------------------------------------------------

    def register_model(self, model_id: int, description: Dict[str, Any]):
        """Stage a description for an Initialize packet with an empty payload."""
        self._registered[model_id] = description

    def load_model(self, model_id: int, description: Optional[Dict[str, Any]] = None) -> CompiledModel:
        """
        Validate, compile (or fetch the cached schedule) and make the model current.

        On failure the previously loaded state is left as it was.
        """
        if description is None:
            if model_id not in self._registered:
                raise ValidationError(f"No model description registered for id {model_id}")
            description = self._registered[model_id]

        graph = parse_model_description(description)
        schedule = self.schedule_cache.get_or_compile(graph, model_id)

        self.hierarchy.reset()
        self.model = CompiledModel(model_id=model_id, graph=graph, schedule=schedule)
        self.input_buffer = bytearray(num_elements(graph.input_shape))
        self.last_result = None
        logger.info("Loaded model %d '%s'", model_id, graph.name)
        return self.model

    def unload(self):
        self.model = None
        self.input_buffer = bytearray()
        self.last_result = None
        self.hierarchy.reset()

    def reset(self):
        self.unload()
        self.set_power_mode(PowerMode.NOMINAL)

    # ------------------------------------------------------------------
    # Data path
    # ------------------------------------------------------------------

    def _require_model(self) -> CompiledModel:
        if self.model is None:
            raise HardwareFault("No model loaded")
        return self.model

    def write_input(self, offset: int, data: bytes):
        self._require_model()
        if offset + len(data) > len(self.input_buffer):
            raise ProtocolError(
                f"Input write [{offset}, {offset + len(data)}) outside "
                f"{len(self.input_buffer)}-byte input buffer"
            )
        self.input_buffer[offset:offset + len(data)] = data

    def input_tensor(self) -> np.ndarray:
        model = self._require_model()
        return np.frombuffer(bytes(self.input_buffer), dtype=np.int8).reshape(model.graph.input_shape)

    def execute(self, cancel_event=None) -> InferenceResult:
        model = self._require_model()
        result = self.simulator.run(model, self.input_tensor(), cancel_event)
        self.last_result = result
        return result

    def output_bytes(self, offset: int = 0) -> bytes:
        if self.last_result is None:
            raise HardwareFault("No completed inference")
        data = self.last_result.output.tobytes()
        if offset > len(data):
            raise ProtocolError(f"Output offset {offset} outside {len(data)}-byte output")
        return data[offset:]

    def set_power_mode(self, mode: PowerMode):
        self.power_mode = mode
        self.simulator.power_mode = mode
        logger.info("Power mode: %s (%.0f MHz)", mode.name, self.config.clock_hz(mode) / 1e6)
