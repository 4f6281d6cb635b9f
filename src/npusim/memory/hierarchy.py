"""
Memory Hierarchy Manager

Owns every level the array draws operands from:

    flash (bulk storage) --TransferChannel--> WeightCache --shift-in--> PE registers
    activation store --TransferChannel--> ActivationDoubleBuffer (shadow half)

One MemoryHierarchy belongs to one simulated device. It is mutable per
inference; the weight cache keeps its contents between inferences and is
cleared by reset() when a model is (re)loaded.
"""

import logging
from typing import Dict, List

import numpy as np

from npusim.core.errors import CapacityError
from npusim.core.structures import Tile
from npusim.hardware.config import HardwareConfig
from .banks import ActivationDoubleBuffer, TileKey, WeightCache
from .transfers import Transfer, TransferChannel

logger = logging.getLogger(__name__)


class RegisterFile:
    """Per-PE weight registers of an R x C array."""

    def __init__(self, rows: int, cols: int, width_bits: int):
        self.rows = rows
        self.cols = cols
        self.width_bits = width_bits
        self.weights = np.zeros((rows, cols), dtype=np.int8)
        self.loads = 0

    def load(self, block: np.ndarray) -> np.ndarray:
        """Shift a weight block in; unused PEs hold zero."""
        if block.shape[0] > self.rows or block.shape[1] > self.cols:
            raise CapacityError(
                f"Weight block {block.shape} exceeds {self.rows}x{self.cols} array"
            )
        if block.dtype.itemsize * 8 > self.width_bits:
            raise CapacityError(
                f"{block.dtype} weights do not fit {self.width_bits}-bit PE registers"
            )
        self.weights = np.zeros((self.rows, self.cols), dtype=np.int8)
        self.weights[:block.shape[0], :block.shape[1]] = block
        self.loads += 1
        return self.weights

    def clear(self):
        self.weights = np.zeros((self.rows, self.cols), dtype=np.int8)
        self.loads = 0


class MemoryHierarchy:
    """
    Weight cache, activation double buffer, registers and the two DMA channels.

    Usage:
        hierarchy = MemoryHierarchy(config)
        ready = hierarchy.prefetch_weights(tile, cycle)
        hierarchy.stage_activations(tile, slice_, cycle)
        waited = hierarchy.flip(cycle, budget)
    """

    def __init__(self, config: HardwareConfig):
        self.config = config
        self.registers = RegisterFile(config.array_rows, config.array_cols, config.pe_register_bits)
        self.weight_cache = WeightCache(
            config.weight_cache_bytes,
            config.weight_cache_banks,
            slot_bytes=config.num_pes,
        )
        self.activation_buffer = ActivationDoubleBuffer(config.activation_half_bytes)
        self.flash = TransferChannel(
            "flash",
            config.flash_latency_cycles,
            config.flash_bytes_per_cycle,
            depth=config.transfer_queue_depth,
        )
        self.activation_dma = TransferChannel(
            "activation_dma",
            config.activation_dma_latency_cycles,
            config.activation_dma_bytes_per_cycle,
            depth=config.transfer_queue_depth,
        )

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------

    def _fetch(self, tile: Tile, cycle: int) -> int:
        transfer = self.flash.submit(tile.key, tile.weight_bytes, cycle)
        self.weight_cache.insert(tile.key, tile.weight_bytes, transfer.end)
        return transfer.end

    def prefetch_weights(self, tile: Tile, cycle: int) -> int:
        """
        Reference a tile's weights; start the flash fill on a miss.

        Returns:
            Cycle at which the weights are resident
        """
        entry = self.weight_cache.lookup(tile.key)
        if entry is not None:
            return entry.ready_at
        return self._fetch(tile, cycle)

    def weights_ready_at(self, tile: Tile, cycle: int) -> int:
        """Residency check at compute time; refetches if the tile was evicted."""
        entry = self.weight_cache.peek(tile.key)
        if entry is not None:
            return entry.ready_at
        self.weight_cache.misses += 1
        logger.debug("Demand fetch for evicted tile %s", tile.key)
        return self._fetch(tile, cycle)

    # ------------------------------------------------------------------
    # Activations
    # ------------------------------------------------------------------

    def stage_activations(self, tile: Tile, data: np.ndarray, cycle: int) -> Transfer:
        transfer = self.activation_dma.submit(tile.key, data.nbytes, cycle)
        self.activation_buffer.fill_shadow(tile.key, data, transfer.start, transfer.end)
        return transfer

    def flip(self, cycle: int, budget_cycles: float) -> int:
        return self.activation_buffer.flip(cycle, budget_cycles)

    def read_activations(self, key: TileKey) -> np.ndarray:
        return self.activation_buffer.read_active(key)

    # ------------------------------------------------------------------
    # Fault injection / lifecycle
    # ------------------------------------------------------------------

    def inject_activation_delay(self, key: TileKey, cycles: int):
        self.activation_dma.inject_delay(key, cycles)

    def inject_weight_delay(self, key: TileKey, cycles: int):
        self.flash.inject_delay(key, cycles)

    def flush(self, cycle: int) -> List[TileKey]:
        """
        Abort in-flight transfers at `cycle`.

        Cache entries whose fill had not landed are dropped; completed entries
        stay resident. Both activation halves are emptied.
        """
        aborted = self.flash.cancel_pending(cycle) + self.activation_dma.cancel_pending(cycle)
        dropped = self.weight_cache.discard_pending(cycle)
        self.activation_buffer.flush()
        logger.debug("Flush at cycle %d: %d transfers aborted, %d cache entries dropped",
                     cycle, len(aborted), len(dropped))
        return dropped

    def begin_inference(self):
        """Start a fresh timeline at cycle 0, keeping resident weights."""
        self.weight_cache.settle()
        self.activation_buffer.flush()
        self.flash.restart()
        self.activation_dma.restart()

    def reset(self):
        """Model reload: every level back to empty."""
        self.registers.clear()
        self.weight_cache.reset()
        self.activation_buffer.reset()
        self.flash.reset()
        self.activation_dma.reset()

    def stats(self) -> Dict:
        cache = self.weight_cache
        return {
            'weight_cache': {
                'hits': cache.hits,
                'misses': cache.misses,
                'evictions': cache.evictions,
                'resident_tiles': len(cache),
            },
            'activation_buffer': {'flips': self.activation_buffer.flips},
            'flash': self.flash.stats(),
            'activation_dma': self.activation_dma.stats(),
            'register_loads': self.registers.loads,
        }
