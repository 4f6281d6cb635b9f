"""
Sparsity-Aware Execution Engine

Scans a tile's operands for exact zeros at issue time and builds a SkipMask.
The mask feeds the cost model only: fewer effective MACs shorten the
activation stream estimate and cut MAC energy. The arithmetic always runs on
the full operands, so outputs never depend on the mask.

Effective MACs for a tile with weights W (rows x cols) and activations
A (M x rows):

    effective = sum_i  nonzero(A[:, i]) * nonzero(W[i, :])
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from npusim.core.structures import Tile, ceil_div

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkipMask:
    tile_key: Tuple[int, int]
    weight_zero: np.ndarray       # rows x cols, True where the weight is 0
    activation_zero: np.ndarray   # M x rows, True where the activation is 0
    total_macs: int
    effective_macs: int

    @property
    def skipped_macs(self) -> int:
        return self.total_macs - self.effective_macs

    @property
    def sparsity_ratio(self) -> float:
        """Fraction of MACs with at least one zero operand."""
        if self.total_macs == 0:
            return 0.0
        return self.skipped_macs / self.total_macs

    @property
    def weight_sparsity(self) -> float:
        return float(self.weight_zero.mean()) if self.weight_zero.size else 0.0

    @property
    def activation_sparsity(self) -> float:
        return float(self.activation_zero.mean()) if self.activation_zero.size else 0.0


class SparsityEngine:
    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.tiles_scanned = 0
        self.total_macs = 0
        self.effective_macs = 0

    def build_mask(self, tile_key: Tuple[int, int], weights: np.ndarray,
                   activations: np.ndarray) -> SkipMask:
        weight_zero = weights == 0
        activation_zero = activations == 0
        m = activations.shape[0]
        total = m * weights.shape[0] * weights.shape[1]
        if self.enabled:
            nz_w = (~weight_zero).sum(axis=1).astype(np.int64)
            nz_a = (~activation_zero).sum(axis=0).astype(np.int64)
            effective = int(nz_a @ nz_w)
        else:
            effective = total

        mask = SkipMask(
            tile_key=tile_key,
            weight_zero=weight_zero,
            activation_zero=activation_zero,
            total_macs=total,
            effective_macs=effective,
        )
        self.tiles_scanned += 1
        self.total_macs += total
        self.effective_macs += effective
        logger.debug("Tile %s: %.1f%% MACs skippable", tile_key, 100 * mask.sparsity_ratio)
        return mask

    def adjusted_cycles(self, tile: Tile, mask: SkipMask) -> int:
        """Tile cost with the activation stream shortened by the skip ratio."""
        if not self.enabled:
            return tile.estimated_cycles
        stream = ceil_div(tile.activation_stream_cycles * (1.0 - mask.sparsity_ratio), 1)
        return max(tile.weight_load_cycles, stream) + tile.pipeline_cycles

    @property
    def sparsity_ratio(self) -> float:
        if self.total_macs == 0:
            return 0.0
        return 1.0 - self.effective_macs / self.total_macs

    def reset(self):
        self.tiles_scanned = 0
        self.total_macs = 0
        self.effective_macs = 0
