"""
Weight-Stationary Systolic Array

R x C processing elements. PE(i, j) holds weight W[i, j] for the whole pass.
Each cycle, in lockstep:
- activations move one PE to the right (row i is fed a[m, i] at cycle m + i,
  the usual input skew)
- every PE multiplies its resident weight with the activation it holds
- partial sums move one PE down; the bottom row emits finished dot products

Column j emits the result for activation vector m at cycle m + (R - 1) + j, so
a pass over M vectors takes M + R + C - 2 cycles plus one cycle to latch the
last output: M + (R + C - 1) in total, the pipeline term of the tile cost.

The vectorized path computes the same int64 dot products with one matmul and
is bit-identical; it exists because the cycle loop is slow for large layers.
"""

from dataclasses import dataclass

import numpy as np


@dataclass
class ArrayPass:
    outputs: np.ndarray   # M x C, int64
    cycles: int


class SystolicArray:
    def __init__(self, rows: int, cols: int, cycle_accurate: bool = True):
        self.rows = rows
        self.cols = cols
        self.cycle_accurate = cycle_accurate
        self.passes = 0
        self.cycles = 0

    def pass_cycles(self, stream_length: int) -> int:
        return stream_length + self.rows + self.cols - 1

    def run(self, weights: np.ndarray, activations: np.ndarray) -> ArrayPass:
        """
        Stream `activations` (M x rows, rows <= R) through resident `weights`
        (R x C, already padded by the register file).
        """
        m = activations.shape[0]
        a = np.zeros((m, self.rows), dtype=np.int64)
        a[:, :activations.shape[1]] = activations
        w = weights.astype(np.int64)

        if self.cycle_accurate:
            outputs = self._run_cycles(w, a)
        else:
            outputs = a @ w

        cycles = self.pass_cycles(m)
        self.passes += 1
        self.cycles += cycles
        return ArrayPass(outputs=outputs, cycles=cycles)

    def _run_cycles(self, w: np.ndarray, a: np.ndarray) -> np.ndarray:
        R, C = self.rows, self.cols
        m = a.shape[0]
        act = np.zeros((R, C), dtype=np.int64)
        psum = np.zeros((R, C), dtype=np.int64)
        outputs = np.zeros((m, C), dtype=np.int64)
        row_idx = np.arange(R)
        col_idx = np.arange(C)

        for t in range(m + R + C - 2):
            # Feed column 0 with the skewed activation wavefront
            vec = t - row_idx
            valid = (vec >= 0) & (vec < m)
            feed = np.zeros(R, dtype=np.int64)
            feed[valid] = a[vec[valid], row_idx[valid]]

            act[:, 1:] = act[:, :-1]
            act[:, 0] = feed

            prod = act * w
            new_psum = np.empty_like(psum)
            new_psum[0] = prod[0]
            new_psum[1:] = psum[:-1] + prod[1:]
            psum = new_psum

            # Bottom row drains
            out_vec = t - (R - 1) - col_idx
            done = (out_vec >= 0) & (out_vec < m)
            outputs[out_vec[done], col_idx[done]] = psum[R - 1, done]

        return outputs

    def reset(self):
        self.passes = 0
        self.cycles = 0
