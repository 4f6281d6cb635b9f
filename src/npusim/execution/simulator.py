"""
Dataflow Scheduler/Simulator

Executes a compiled Schedule step by step against a MemoryHierarchy:

- WEIGHT_PREFETCH / ACTIVATION_DMA are issued at the current issue point
  (the start of the compute they overlap with)
- BUFFER_SWAP blocks until the shadow half has landed; a wait beyond the stall
  budget raises BufferStallError, which triggers a clock back-off and a retry
- TILE_COMPUTE waits for resident weights, reads the active half, runs the
  systolic array and accumulates into the layer's output accumulator
- VECTOR_OP runs activation/pool layers on the vector unit
- LAYER_END requantizes the accumulator into the layer's int8 output

Back-off model:
    On each BufferStallError the clock scale is multiplied by backoff_factor.
    Compute then takes cycles / clock_scale nominal cycles and the stall budget
    grows to stall_budget_cycles / clock_scale, so transfers catch up. The
    reduced clock holds for the rest of the run. After max_backoff_retries
    back-offs a further stall raises HardwareFault.

Cancellation is checked at every step boundary. A cancelled run flushes the
in-flight transfers and raises ExecutionCancelled.

Usage:
    simulator = Simulator(config, MemoryHierarchy(config))
    result = simulator.run(compiled_model, x)
    print(result.report.total_cycles)
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

import numpy as np

from npusim.core.errors import (
    BufferStallError,
    ExecutionCancelled,
    HardwareFault,
    ValidationError,
)
from npusim.core.structures import (
    GRAPH_INPUT,
    CompiledModel,
    Layer,
    ScheduleStep,
    StepKind,
    Tile,
    ceil_div,
    num_elements,
)
from npusim.hardware.config import HardwareConfig, PowerMode
from npusim.memory.hierarchy import MemoryHierarchy
from .quantization import lower_input, raise_output, requantize, vector_op
from .results import ExecutionReport, InferenceResult, LayerReport, StallEvent
from .sparsity import SparsityEngine
from .systolic import SystolicArray

logger = logging.getLogger(__name__)

StepHook = Callable[[int, ScheduleStep], None]


class _RunState:
    """Mutable bookkeeping for one inference."""

    def __init__(self, x: np.ndarray):
        self.cycle = 0
        self.issue_cycle = 0
        self.clock_scale = 1.0
        self.backoffs = 0
        self.values: Dict[int, np.ndarray] = {GRAPH_INPUT: x}
        self.stalls: List[StallEvent] = []
        self.layers: List[LayerReport] = []
        self.energy: Dict[str, float] = {
            'mac': 0.0,
            'weight_shift_in': 0.0,
            'weight_cache': 0.0,
            'flash': 0.0,
            'activation_buffer': 0.0,
            'accumulator': 0.0,
            'vector': 0.0,
            'static': 0.0,
        }
        self.total_macs = 0
        self.effective_macs = 0

        # Current layer
        self.layer: Optional[Layer] = None
        self.report: Optional[LayerReport] = None
        self.lowered: Optional[np.ndarray] = None
        self.acc: Optional[np.ndarray] = None
        self.weights: Optional[np.ndarray] = None


class Simulator:
    """
    Cycle-accounting simulator for one device.

    `step_hook`, when set, is called as hook(step_index, step) before each step
    is executed; tests use it to cancel at an exact step boundary.
    """

    def __init__(
        self,
        config: HardwareConfig,
        hierarchy: Optional[MemoryHierarchy] = None,
        power_mode: PowerMode = PowerMode.NOMINAL,
    ):
        self.config = config
        self.hierarchy = hierarchy or MemoryHierarchy(config)
        self.power_mode = power_mode
        self.array = SystolicArray(config.array_rows, config.array_cols, config.cycle_accurate)
        self.sparsity = SparsityEngine(config.sparsity_enabled)
        self.step_hook: Optional[StepHook] = None

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        model: CompiledModel,
        x: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> InferenceResult:
        """
        Run one inference.

        Args:
            model: Compiled graph and schedule
            x: int8 input with the graph input's shape (or element count)
            cancel_event: Set from another thread to stop at the next step

        Raises:
            ValidationError: Input does not match the graph input
            HardwareFault: Stall persisted past the back-off limit
            ExecutionCancelled: cancel_event was set
        """
        graph = model.graph
        x = np.asarray(x)
        if x.size != num_elements(graph.input_shape):
            raise ValidationError(
                f"Input has {x.size} elements, graph '{graph.name}' expects "
                f"{graph.input_shape}"
            )
        if x.dtype != np.int8:
            if not np.issubdtype(x.dtype, np.integer):
                raise ValidationError(f"Input must be an integer array, got dtype {x.dtype}")
            if np.any(x < -128) or np.any(x > 127):
                raise ValidationError("Input values outside int8 range")
            x = x.astype(np.int8)

        self.hierarchy.begin_inference()
        self.array.reset()
        self.sparsity.reset()
        mem_before = self._memory_counters()

        state = _RunState(x.reshape(graph.input_shape))
        for index, step in enumerate(model.schedule.steps):
            if self.step_hook is not None:
                self.step_hook(index, step)
            if cancel_event is not None and cancel_event.is_set():
                self.hierarchy.flush(state.cycle)
                logger.info("Execution of model %d cancelled at step %d (cycle %d)",
                            model.model_id, index, state.cycle)
                raise ExecutionCancelled(f"Cancelled at step {index}, cycle {state.cycle}")
            self._execute_step(model, step, state)

        report = self._build_report(state, mem_before)
        outputs = {graph[i].name: state.values[i] for i in graph.output_ids}
        primary = graph.primary_output
        logger.info(
            "Model %d: %d cycles, %.1f pJ, %d stalls, %d back-offs",
            model.model_id, report.total_cycles, report.estimated_energy_pj,
            len(report.stall_events), report.backoff_events,
        )
        return InferenceResult(
            outputs=outputs,
            output=state.values[primary.layer_id],
            output_scale=primary.output_scale,
            report=report,
        )

    # ------------------------------------------------------------------
    # Step dispatch
    # ------------------------------------------------------------------

    def _execute_step(self, model: CompiledModel, step: ScheduleStep, state: _RunState):
        kind = step.kind
        if kind == StepKind.LAYER_BEGIN:
            self._layer_begin(model.graph[step.layer_id], state)
        elif kind == StepKind.ACTIVATION_DMA:
            self._activation_dma(step.tile, state)
        elif kind == StepKind.WEIGHT_PREFETCH:
            self._weight_prefetch(step.tile, state)
        elif kind == StepKind.BUFFER_SWAP:
            self._buffer_swap(step.tile, state)
        elif kind == StepKind.TILE_COMPUTE:
            self._tile_compute(step.tile, state)
        elif kind == StepKind.VECTOR_OP:
            self._vector_op(step, state)
        elif kind == StepKind.LAYER_END:
            self._layer_end(state)
        else:
            raise HardwareFault(f"Unknown schedule step {kind}")

    def _layer_begin(self, layer: Layer, state: _RunState):
        state.layer = layer
        state.issue_cycle = state.cycle
        state.report = LayerReport(
            layer_id=layer.layer_id,
            name=layer.name,
            op_kind=layer.op_kind.value,
            start_cycle=state.cycle,
        )
        x_in = state.values[layer.producers[0]]
        if layer.op_kind.has_weights:
            state.lowered = lower_input(layer, x_in)
            state.weights = layer.weight_matrix()
            m, _, n = layer.matmul_dims()
            state.acc = np.zeros((m, n), dtype=np.int64)
        logger.debug("Layer %d '%s' begins at cycle %d", layer.layer_id, layer.name, state.cycle)

    def _activation_dma(self, tile: Tile, state: _RunState):
        k0 = tile.row_offset
        data = np.ascontiguousarray(state.lowered[:, k0:k0 + tile.rows])
        self.hierarchy.stage_activations(tile, data, state.issue_cycle)
        state.energy['activation_buffer'] += data.nbytes * self.config.energy.activation_buffer_pj_per_byte

    def _weight_prefetch(self, tile: Tile, state: _RunState):
        self.hierarchy.prefetch_weights(tile, state.issue_cycle)

    def _buffer_swap(self, tile: Tile, state: _RunState):
        while True:
            budget = self.config.stall_budget_cycles / state.clock_scale
            try:
                waited = self.hierarchy.flip(state.cycle, budget)
                break
            except BufferStallError as e:
                if state.backoffs >= self.config.max_backoff_retries:
                    self.hierarchy.flush(state.cycle)
                    raise HardwareFault(
                        f"Stall on tile {e.tile_key} persisted after "
                        f"{state.backoffs} clock back-offs ({e.wait_cycles} cycle wait)"
                    ) from e
                state.backoffs += 1
                state.clock_scale *= self.config.backoff_factor
                logger.warning(
                    "%s; backing off clock to %.3fx (attempt %d/%d)",
                    e, state.clock_scale, state.backoffs, self.config.max_backoff_retries,
                )
        if waited > 0:
            self._record_stall(state, waited, 'activation_dma', tile)

    def _tile_compute(self, tile: Tile, state: _RunState):
        energy = self.config.energy
        ready = self.hierarchy.weights_ready_at(tile, state.cycle)
        if ready > state.cycle:
            self._record_stall(state, ready - state.cycle, 'weight_fill', tile)

        activations = self.hierarchy.read_activations(tile.key)
        k0, n0 = tile.row_offset, tile.col_offset
        block = state.weights[k0:k0 + tile.rows, n0:n0 + tile.cols]
        resident = self.hierarchy.registers.load(block)

        mask = self.sparsity.build_mask(tile.key, block, activations)
        result = self.array.run(resident, activations)
        state.acc[:, n0:n0 + tile.cols] += result.outputs[:, :tile.cols]

        cycles = self.sparsity.adjusted_cycles(tile, mask)
        ticks = ceil_div(cycles, state.clock_scale)
        state.issue_cycle = state.cycle
        state.cycle += ticks

        tile_energy = {
            'mac': mask.effective_macs * energy.mac_pj,
            'weight_shift_in': tile.weight_bytes * energy.weight_shift_in_pj_per_byte,
            'weight_cache': tile.weight_bytes * energy.weight_cache_read_pj_per_byte,
            'activation_buffer': activations.nbytes * energy.activation_buffer_pj_per_byte,
            'accumulator': tile.stream_length * tile.cols * energy.accumulator_pj_per_element,
        }
        for key, value in tile_energy.items():
            state.energy[key] += value

        report = state.report
        report.tiles += 1
        report.macs += mask.total_macs
        report.effective_macs += mask.effective_macs
        report.energy_pj += sum(tile_energy.values())
        state.total_macs += mask.total_macs
        state.effective_macs += mask.effective_macs

    def _vector_op(self, step: ScheduleStep, state: _RunState):
        layer = state.layer
        state.values[layer.layer_id] = vector_op(layer, state.values[layer.producers[0]])
        state.issue_cycle = state.cycle
        state.cycle += ceil_div(step.cycles, state.clock_scale)
        pj = step.nbytes * self.config.energy.vector_op_pj_per_element
        state.energy['vector'] += pj
        state.report.energy_pj += pj

    def _layer_end(self, state: _RunState):
        layer = state.layer
        if layer.op_kind.has_weights:
            y = requantize(state.acc, layer.requant_multiplier, layer.bias, layer.activation_function)
            state.values[layer.layer_id] = raise_output(layer, y)
        state.report.end_cycle = state.cycle
        state.layers.append(state.report)
        state.layer = None
        state.report = None
        state.lowered = None
        state.acc = None
        state.weights = None

    def _record_stall(self, state: _RunState, duration: int, reason: str, tile: Tile):
        event = StallEvent(
            cycle=state.cycle,
            duration=duration,
            reason=reason,
            layer_id=tile.layer_id,
            tile_key=tile.key,
        )
        state.stalls.append(event)
        state.report.stall_cycles += duration
        state.cycle += duration
        logger.debug("Stall %s", event)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _memory_counters(self) -> Dict[str, int]:
        return {
            'flash_bytes': self.hierarchy.flash.bytes_transferred,
            'hits': self.hierarchy.weight_cache.hits,
            'misses': self.hierarchy.weight_cache.misses,
            'evictions': self.hierarchy.weight_cache.evictions,
        }

    def _build_report(self, state: _RunState, before: Dict[str, int]) -> ExecutionReport:
        energy = self.config.energy
        after = self._memory_counters()
        flash_bytes = after['flash_bytes'] - before['flash_bytes']
        state.energy['flash'] += flash_bytes * energy.flash_read_pj_per_byte
        state.energy['weight_cache'] += flash_bytes * energy.weight_cache_write_pj_per_byte

        if self.power_mode == PowerMode.LOW_POWER:
            for key in state.energy:
                state.energy[key] *= energy.low_power_dynamic_scale
        state.energy['static'] = state.cycle * energy.static_pj_per_cycle

        memory_stats = self.hierarchy.stats()
        memory_stats['inference'] = {
            'flash_bytes': flash_bytes,
            'cache_hits': after['hits'] - before['hits'],
            'cache_misses': after['misses'] - before['misses'],
            'cache_evictions': after['evictions'] - before['evictions'],
        }

        return ExecutionReport(
            total_cycles=state.cycle,
            estimated_energy_pj=float(sum(state.energy.values())),
            stall_events=list(state.stalls),
            layers=list(state.layers),
            energy_breakdown=dict(state.energy),
            total_macs=state.total_macs,
            effective_macs=state.effective_macs,
            clock_hz=self.config.clock_hz(self.power_mode),
            power_mode=self.power_mode.name.lower(),
            backoff_events=state.backoffs,
            clock_scale=state.clock_scale,
            array_cycles=self.array.cycles,
            memory_stats=memory_stats,
        )
