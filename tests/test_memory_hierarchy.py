#!/usr/bin/env python
"""
Tests for the memory hierarchy: weight cache, activation double buffer,
transfer channels.
"""

import numpy as np
import pytest

from npusim.core.errors import BufferStallError, CapacityError, HardwareFault
from npusim.memory import (
    ActivationDoubleBuffer,
    BufferState,
    MemoryBank,
    MemoryHierarchy,
    TransferChannel,
    WeightCache,
)


class TestMemoryBank:
    def test_allocate_and_release(self):
        bank = MemoryBank("b", 32)
        bank.allocate('a', 20)
        assert bank.free_bytes == 12
        assert bank.utilization == pytest.approx(20 / 32)
        with pytest.raises(CapacityError):
            bank.allocate('b', 16)
        bank.release('a')
        assert bank.used_bytes == 0


class TestWeightCache:
    def make_cache(self):
        # 2 banks of 32 bytes, 16-byte tiles -> 2 slots per bank
        return WeightCache(capacity_bytes=64, num_banks=2, slot_bytes=16)

    def test_hits_and_misses(self):
        cache = self.make_cache()
        assert cache.lookup((0, 0)) is None
        cache.insert((0, 0), 16, ready_at=10)
        entry = cache.lookup((0, 0))
        assert entry.ready_at == 10
        assert (cache.hits, cache.misses) == (1, 1)

    def test_lru_eviction_per_bank(self):
        cache = self.make_cache()
        # (0, 0), (0, 2), (0, 4) all land in bank 0
        assert {cache.bank_of(k) for k in [(0, 0), (0, 2), (0, 4)]} == {0}
        cache.insert((0, 0), 16, 0)
        cache.insert((0, 2), 16, 0)
        cache.lookup((0, 0))              # (0, 2) is now least recent
        evicted = cache.insert((0, 4), 16, 0)

        assert evicted == [(0, 2)]
        assert (0, 0) in cache and (0, 4) in cache
        assert (0, 2) not in cache
        assert cache.evictions == 1

    def test_other_bank_unaffected(self):
        cache = self.make_cache()
        cache.insert((0, 1), 16, 0)          # bank 1
        for tile_id in (0, 2, 4, 6):
            cache.insert((0, tile_id), 16, 0)
        assert (0, 1) in cache

    def test_tile_larger_than_bank(self):
        cache = self.make_cache()
        with pytest.raises(CapacityError):
            cache.insert((0, 0), 40, 0)

    def test_discard_pending(self):
        cache = self.make_cache()
        cache.insert((0, 0), 16, ready_at=5)
        cache.insert((0, 1), 16, ready_at=50)
        dropped = cache.discard_pending(cycle=20)
        assert dropped == [(0, 1)]
        assert (0, 0) in cache

    def test_peek_does_not_count(self):
        cache = self.make_cache()
        cache.insert((0, 0), 16, 0)
        assert cache.peek((0, 0)) is not None
        assert cache.peek((0, 1)) is None
        assert (cache.hits, cache.misses) == (0, 0)


class TestActivationDoubleBuffer:
    def data(self, n=16):
        return np.arange(n, dtype=np.int8).reshape(-1, 4)

    def test_flip_waits_for_fill(self):
        buf = ActivationDoubleBuffer(half_bytes=64)
        buf.fill_shadow((0, 0), self.data(), start=0, ready_at=10)
        waited = buf.flip(cycle=4, budget_cycles=100)

        assert waited == 6
        assert buf.active_half.state == BufferState.COMPUTING
        np.testing.assert_array_equal(buf.read_active((0, 0)), self.data())

    def test_stale_read_is_a_fault(self):
        buf = ActivationDoubleBuffer(half_bytes=64)
        buf.fill_shadow((0, 0), self.data(), 0, 0)
        buf.flip(0, 10)
        with pytest.raises(HardwareFault, match="Stale"):
            buf.read_active((0, 1))

    def test_stall_beyond_budget_leaves_state_untouched(self):
        buf = ActivationDoubleBuffer(half_bytes=64)
        buf.fill_shadow((0, 0), self.data(), 0, 0)
        buf.flip(0, 10)
        buf.fill_shadow((0, 1), self.data(), 0, ready_at=500)

        with pytest.raises(BufferStallError) as exc_info:
            buf.flip(cycle=10, budget_cycles=100)

        assert exc_info.value.tile_key == (0, 1)
        assert exc_info.value.wait_cycles == 490
        assert buf.shadow_half.state == BufferState.LOADING
        assert buf.active_half.tile_key == (0, 0)
        # A larger budget lets the same flip through
        assert buf.flip(cycle=10, budget_cycles=1000) == 490
        assert buf.active_half.tile_key == (0, 1)

    def test_shadow_must_be_free(self):
        buf = ActivationDoubleBuffer(half_bytes=64)
        buf.fill_shadow((0, 0), self.data(), 0, 5)
        with pytest.raises(HardwareFault):
            buf.fill_shadow((0, 1), self.data(), 0, 5)

    def test_slice_larger_than_half(self):
        buf = ActivationDoubleBuffer(half_bytes=8)
        with pytest.raises(CapacityError):
            buf.fill_shadow((0, 0), self.data(), 0, 0)

    def test_flush(self):
        buf = ActivationDoubleBuffer(half_bytes=64)
        buf.fill_shadow((0, 0), self.data(), 0, 50)
        buf.flush()
        assert all(h.state == BufferState.EMPTY for h in buf.halves)


class TestTransferChannel:
    def test_transfer_time(self):
        channel = TransferChannel("dma", latency_cycles=2, bytes_per_cycle=8.0)
        transfer = channel.submit('a', 20, cycle=5)
        assert (transfer.start, transfer.end) == (5, 5 + 2 + 3)

    def test_bounded_queue_backpressure(self):
        channel = TransferChannel("dma", latency_cycles=2, bytes_per_cycle=8.0, depth=2)
        t1 = channel.submit('a', 16, 0)
        t2 = channel.submit('b', 16, 0)
        t3 = channel.submit('c', 16, 0)

        assert t1.end == 4 and t2.end == 4
        assert t3.start == 4
        assert t3.queued_cycles == 4
        assert channel.stats()['queued_cycles'] == 4

    def test_injected_delay_applies_once(self):
        channel = TransferChannel("dma", latency_cycles=2, bytes_per_cycle=8.0)
        channel.inject_delay('a', 100)
        assert channel.submit('a', 16, 0).duration == 104
        assert channel.submit('a', 16, 200).duration == 4

    def test_cancel_pending(self):
        channel = TransferChannel("dma", latency_cycles=2, bytes_per_cycle=8.0)
        channel.submit('a', 16, 0)
        late = channel.submit('b', 800, 0)
        aborted = channel.cancel_pending(cycle=10)
        assert aborted == [late]
        assert late.cancelled
        assert channel.pending(10) == []


class TestMemoryHierarchy:
    def test_reset_clears_everything(self, tiny_config):
        hierarchy = MemoryHierarchy(tiny_config)
        hierarchy.weight_cache.insert((0, 0), 16, 0)
        hierarchy.inject_activation_delay((0, 0), 10)
        hierarchy.reset()
        assert len(hierarchy.weight_cache) == 0
        assert hierarchy.activation_dma.submit((0, 0), 8, 0).duration == 3

    def test_register_file_pads_and_checks_width(self, tiny_config):
        hierarchy = MemoryHierarchy(tiny_config)
        resident = hierarchy.registers.load(np.ones((2, 3), dtype=np.int8))
        assert resident.shape == (4, 4)
        assert resident.sum() == 6
        with pytest.raises(CapacityError):
            hierarchy.registers.load(np.ones((2, 2), dtype=np.int16))
