"""
Memory Hierarchy

Register files, banked weight cache, double-buffered activation store and
staged DMA channels from bulk storage.

Usage:
    from npusim.memory import MemoryHierarchy

    hierarchy = MemoryHierarchy(config)
"""

from .banks import (
    BufferState,
    MemoryBank,
    CacheEntry,
    WeightCache,
    HalfBuffer,
    ActivationDoubleBuffer,
)
from .transfers import Transfer, TransferChannel
from .hierarchy import RegisterFile, MemoryHierarchy

__all__ = [
    # Banks
    'BufferState',
    'MemoryBank',
    'CacheEntry',
    'WeightCache',
    'HalfBuffer',
    'ActivationDoubleBuffer',

    # Transfers
    'Transfer',
    'TransferChannel',

    # Hierarchy
    'RegisterFile',
    'MemoryHierarchy',
]
