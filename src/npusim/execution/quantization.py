"""
Integer kernels shared by the simulator and the reference model.

All helpers are pure numpy and deterministic. The accumulator is int64, the
requantized result int8 (symmetric, zero point 0).
"""

from typing import Optional, Tuple

import numpy as np

from npusim.core.structures import ActivationFunction, Layer, OpKind, PoolType


def requantize(
    acc: np.ndarray,
    multiplier: float,
    bias: Optional[np.ndarray] = None,
    activation: ActivationFunction = ActivationFunction.NONE,
) -> np.ndarray:
    """
    int accumulator -> int8: clip(round((acc + bias) * multiplier), -128, 127).

    `bias` broadcasts over the last axis (output features). ReLU is applied
    after rounding.
    """
    acc = acc.astype(np.int64)
    if bias is not None:
        acc = acc + bias.astype(np.int64)
    x = np.round(acc.astype(np.float64) * multiplier)
    if activation == ActivationFunction.RELU:
        x = np.maximum(x, 0)
    return np.clip(x, -128, 127).astype(np.int8)


def im2col(x: np.ndarray, kh: int, kw: int, stride: int = 1, pad: int = 0) -> np.ndarray:
    """Convert a [C, H, W] input to a [Ho*Wo, C*kh*kw] matrix."""
    C, H, W = x.shape
    out_h = (H + 2 * pad - kh) // stride + 1
    out_w = (W + 2 * pad - kw) // stride + 1

    if pad > 0:
        x = np.pad(x, ((0, 0), (pad, pad), (pad, pad)), mode='constant')

    col = np.zeros((out_h * out_w, C * kh * kw), dtype=x.dtype)
    idx = 0
    for i in range(out_h):
        for j in range(out_w):
            patch = x[:, i * stride:i * stride + kh, j * stride:j * stride + kw]
            col[idx] = patch.reshape(-1)
            idx += 1
    return col


def lower_input(layer: Layer, x: np.ndarray) -> np.ndarray:
    """The M x K int8 activation matrix a weighted layer streams through the array."""
    if layer.op_kind == OpKind.CONV2D:
        kh, kw = layer.kernel_size
        return im2col(x, kh, kw, layer.stride, layer.padding)
    return np.ascontiguousarray(x.reshape(layer.input_shape))


def raise_output(layer: Layer, y: np.ndarray) -> np.ndarray:
    """M x N result back to the layer's output shape ((Cout, Ho, Wo) for conv2d)."""
    if layer.op_kind == OpKind.CONV2D:
        cout, ho, wo = layer.output_shape
        return np.ascontiguousarray(y.T.reshape(cout, ho, wo))
    return y.reshape(layer.output_shape)


def pool2d(x: np.ndarray, kernel: Tuple[int, int], stride: int, pool_type: PoolType) -> np.ndarray:
    """Max or rounded-average pooling of a [C, H, W] int8 tensor, no padding."""
    C, H, W = x.shape
    kh, kw = kernel
    out_h = (H - kh) // stride + 1
    out_w = (W - kw) // stride + 1
    out = np.zeros((C, out_h, out_w), dtype=np.int8)
    for i in range(out_h):
        for j in range(out_w):
            window = x[:, i * stride:i * stride + kh, j * stride:j * stride + kw].astype(np.int64)
            window = window.reshape(C, -1)
            if pool_type == PoolType.MAX:
                out[:, i, j] = window.max(axis=1)
            else:
                out[:, i, j] = np.clip(np.round(window.mean(axis=1)), -128, 127)
    return out


def vector_op(layer: Layer, x: np.ndarray) -> np.ndarray:
    """Activation or pool layer on the vector unit; scale is unchanged."""
    x = x.reshape(layer.input_shape)
    if layer.op_kind == OpKind.POOL:
        return pool2d(x, layer.kernel_size, layer.stride, layer.pool_type)
    if layer.activation_function == ActivationFunction.RELU:
        return np.maximum(x, 0).astype(np.int8)
    return x.astype(np.int8)
