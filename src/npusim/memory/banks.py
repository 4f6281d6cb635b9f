"""
On-Chip Memory Banks

Bounded containers for the two on-chip SRAM structures the array reads:

- WeightCache: 16-way banked weight SRAM. Entries are keyed by
  (layer_id, tile_id); each bank evicts least-recently-used tiles once its
  resident-tile count reaches capacity.
- ActivationDoubleBuffer: two half-buffers in ping-pong operation. The active
  half feeds the array while the shadow half receives the next tile's DMA.
  A flip is permitted only once the shadow transfer has completed.

Double-buffering principle:
    While computing on half A, fill half B with the next tile's activations.
    Flip between tiles. Block (stall) if the fill is not done yet.

    |--fill[0]--|--compute[0]--|--compute[1]--|--compute[2]--|
                |--fill[1]--|   |--fill[2]--|  |--fill[3]--|
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, List, Optional, Tuple

import numpy as np

from npusim.core.errors import BufferStallError, CapacityError, HardwareFault

logger = logging.getLogger(__name__)

TileKey = Tuple[int, int]


class BufferState(Enum):
    """State of a single half-buffer."""
    EMPTY = "empty"           # No data
    LOADING = "loading"       # DMA in progress
    READY = "ready"           # Data landed, not yet active
    COMPUTING = "computing"   # Active half feeding the array
    DIRTY = "dirty"           # Consumed, may be overwritten


@dataclass
class MemoryBank:
    """
    Bounded byte container.

    Tracks resident entries (key -> bytes). Allocation beyond capacity raises
    CapacityError; callers decide whether to evict first.
    """
    name: str
    capacity_bytes: int
    used_bytes: int = 0
    entries: Dict[Hashable, int] = field(default_factory=dict)

    @property
    def free_bytes(self) -> int:
        return self.capacity_bytes - self.used_bytes

    def can_fit(self, nbytes: int) -> bool:
        return nbytes <= self.free_bytes

    def allocate(self, key: Hashable, nbytes: int):
        if key in self.entries:
            return
        if not self.can_fit(nbytes):
            raise CapacityError(
                f"{self.name}: {nbytes} bytes do not fit ({self.free_bytes} of "
                f"{self.capacity_bytes} free)"
            )
        self.entries[key] = nbytes
        self.used_bytes += nbytes

    def release(self, key: Hashable):
        nbytes = self.entries.pop(key, 0)
        self.used_bytes -= nbytes

    def clear(self):
        self.entries.clear()
        self.used_bytes = 0

    @property
    def utilization(self) -> float:
        if self.capacity_bytes == 0:
            return 0.0
        return self.used_bytes / self.capacity_bytes


@dataclass
class CacheEntry:
    key: TileKey
    nbytes: int
    bank: int
    ready_at: int   # cycle at which the fill from bulk storage completes


class WeightCache:
    """
    Banked weight SRAM with per-bank LRU replacement.

    Each bank holds at most `slots_per_bank` resident tiles (bank bytes divided
    by the largest tile the array can hold) and never more bytes than it has.
    """

    def __init__(self, capacity_bytes: int, num_banks: int, slot_bytes: int):
        self.num_banks = num_banks
        self.bank_bytes = capacity_bytes // num_banks
        self.slot_bytes = slot_bytes
        self.slots_per_bank = max(1, self.bank_bytes // max(1, slot_bytes))
        self.banks = [MemoryBank(f"weight_bank{i}", self.bank_bytes) for i in range(num_banks)]
        self._lru: List["OrderedDict[TileKey, CacheEntry]"] = [
            OrderedDict() for _ in range(num_banks)
        ]
        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def bank_of(self, key: TileKey) -> int:
        layer_id, tile_id = key
        return (layer_id * 31 + tile_id) % self.num_banks

    def __contains__(self, key: TileKey) -> bool:
        return key in self._lru[self.bank_of(key)]

    def __len__(self) -> int:
        return sum(len(lru) for lru in self._lru)

    def lookup(self, key: TileKey) -> Optional[CacheEntry]:
        """Hit refreshes recency; returns None on miss. Updates hit/miss counters."""
        lru = self._lru[self.bank_of(key)]
        entry = lru.get(key)
        if entry is None:
            self.misses += 1
            return None
        lru.move_to_end(key)
        self.hits += 1
        return entry

    def peek(self, key: TileKey) -> Optional[CacheEntry]:
        """Lookup without touching recency or counters."""
        return self._lru[self.bank_of(key)].get(key)

    def insert(self, key: TileKey, nbytes: int, ready_at: int) -> List[TileKey]:
        """
        Make `key` resident, evicting LRU entries of its bank as needed.

        Returns:
            Keys evicted to make room
        """
        bank_index = self.bank_of(key)
        bank = self.banks[bank_index]
        lru = self._lru[bank_index]
        if nbytes > bank.capacity_bytes:
            raise CapacityError(
                f"Weight tile {key} ({nbytes} B) exceeds bank capacity {bank.capacity_bytes} B"
            )
        if key in lru:
            lru[key].ready_at = ready_at
            lru.move_to_end(key)
            return []

        evicted = []
        while lru and (len(lru) >= self.slots_per_bank or not bank.can_fit(nbytes)):
            old_key, _ = lru.popitem(last=False)
            bank.release(old_key)
            evicted.append(old_key)
            self.evictions += 1
        bank.allocate(key, nbytes)
        lru[key] = CacheEntry(key=key, nbytes=nbytes, bank=bank_index, ready_at=ready_at)
        if evicted:
            logger.debug("Weight bank %d evicted %s for %s", bank_index, evicted, key)
        return evicted

    def discard_pending(self, cycle: int) -> List[TileKey]:
        """Drop entries whose fill had not completed by `cycle`."""
        dropped = []
        for bank_index, lru in enumerate(self._lru):
            for key in [k for k, e in lru.items() if e.ready_at > cycle]:
                del lru[key]
                self.banks[bank_index].release(key)
                dropped.append(key)
        return dropped

    def settle(self):
        """Start a new timeline: every resident entry is ready at cycle 0."""
        for lru in self._lru:
            for entry in lru.values():
                entry.ready_at = 0

    def resident_keys(self) -> List[TileKey]:
        return sorted(k for lru in self._lru for k in lru)

    def reset(self):
        for bank, lru in zip(self.banks, self._lru):
            bank.clear()
            lru.clear()
        self.hits = 0
        self.misses = 0
        self.evictions = 0


@dataclass
class HalfBuffer:
    """
    One half of the activation double buffer.

    Holds the activation slice of exactly one tile. The data is copied in when
    the DMA is issued but only becomes readable once the fill completes.
    """
    buffer_id: int
    capacity_bytes: int
    state: BufferState = BufferState.EMPTY
    tile_key: Optional[TileKey] = None
    data: Optional[np.ndarray] = None
    fill_start: int = 0
    ready_at: int = 0

    def begin_fill(self, tile_key: TileKey, data: np.ndarray, start: int, ready_at: int):
        if data.nbytes > self.capacity_bytes:
            raise CapacityError(
                f"Activation slice for {tile_key} ({data.nbytes} B) exceeds half-buffer "
                f"capacity {self.capacity_bytes} B"
            )
        self.state = BufferState.LOADING
        self.tile_key = tile_key
        self.data = data
        self.fill_start = start
        self.ready_at = ready_at

    def is_available(self) -> bool:
        return self.state in {BufferState.EMPTY, BufferState.DIRTY}

    def clear(self):
        self.state = BufferState.EMPTY
        self.tile_key = None
        self.data = None
        self.fill_start = 0
        self.ready_at = 0


class ActivationDoubleBuffer:
    """Ping-pong activation store with blocking flips."""

    def __init__(self, half_bytes: int):
        self.halves = [HalfBuffer(0, half_bytes), HalfBuffer(1, half_bytes)]
        self.active = 0
        self.shadow = 1
        self.flips = 0

    @property
    def active_half(self) -> HalfBuffer:
        return self.halves[self.active]

    @property
    def shadow_half(self) -> HalfBuffer:
        return self.halves[self.shadow]

    def fill_shadow(self, tile_key: TileKey, data: np.ndarray, start: int, ready_at: int):
        shadow = self.shadow_half
        if not shadow.is_available():
            raise HardwareFault(
                f"Shadow half {shadow.buffer_id} still {shadow.state.value} "
                f"({shadow.tile_key}) when DMA for {tile_key} was issued"
            )
        shadow.begin_fill(tile_key, data, start, ready_at)

    def flip(self, cycle: int, budget_cycles: float) -> int:
        """
        Make the shadow half active.

        Blocks until the shadow fill completes. A wait longer than the budget
        raises BufferStallError and leaves both halves untouched.

        Returns:
            Cycles waited
        """
        shadow = self.shadow_half
        if shadow.state != BufferState.LOADING:
            raise HardwareFault(f"Flip requested with shadow half {shadow.state.value}")
        wait = max(0, shadow.ready_at - cycle)
        if wait > budget_cycles:
            raise BufferStallError(shadow.tile_key, wait, int(budget_cycles))

        old = self.active_half
        if old.state != BufferState.EMPTY:
            old.clear()
            old.state = BufferState.DIRTY
        shadow.state = BufferState.COMPUTING
        self.active, self.shadow = self.shadow, self.active
        self.flips += 1
        return wait

    def read_active(self, tile_key: TileKey) -> np.ndarray:
        """Operands for `tile_key`; anything else would be stale data."""
        active = self.active_half
        if active.state != BufferState.COMPUTING or active.tile_key != tile_key:
            raise HardwareFault(
                f"Stale activation read: tile {tile_key} but active half holds "
                f"{active.tile_key} ({active.state.value})"
            )
        return active.data

    def flush(self):
        for half in self.halves:
            half.clear()
        self.active, self.shadow = 0, 1

    def reset(self):
        self.flush()
        self.flips = 0
