"""
Staged Asynchronous Transfers

Models the DMA channels that feed on-chip memory:
- bulk storage (flash) -> weight cache
- activation store -> shadow half of the activation double buffer

Each channel is a producer/consumer queue of bounded depth (2 by default,
matching the double buffer). A submit against a full queue waits for the
oldest outstanding transfer to retire; nothing queues without bound.

Transfer time = latency + ceil(bytes / bandwidth), plus any injected delay.
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Hashable, List

from npusim.core.structures import ceil_div

logger = logging.getLogger(__name__)


@dataclass
class Transfer:
    key: Hashable
    nbytes: int
    requested_at: int
    start: int
    end: int
    cancelled: bool = False

    @property
    def queued_cycles(self) -> int:
        """Cycles the producer waited for a free queue slot."""
        return self.start - self.requested_at

    @property
    def duration(self) -> int:
        return self.end - self.start


class TransferChannel:
    """One DMA channel with a bounded in-flight queue."""

    def __init__(
        self,
        name: str,
        latency_cycles: int,
        bytes_per_cycle: float,
        depth: int = 2,
    ):
        """
        Args:
            name: Channel name for logs/reports
            latency_cycles: Fixed setup latency per transfer
            bytes_per_cycle: Sustained bandwidth
            depth: Maximum outstanding transfers
        """
        self.name = name
        self.latency_cycles = latency_cycles
        self.bytes_per_cycle = bytes_per_cycle
        self.depth = depth

        self._in_flight: Deque[Transfer] = deque()
        self._delays: Dict[Hashable, int] = {}
        self.bytes_transferred = 0
        self.transfers = 0
        self.queued_cycles = 0
        self.cancelled = 0

    def transfer_cycles(self, nbytes: int) -> int:
        return self.latency_cycles + ceil_div(nbytes, self.bytes_per_cycle)

    def inject_delay(self, key: Hashable, cycles: int):
        """Fault injection: the next transfer for `key` takes `cycles` longer."""
        self._delays[key] = self._delays.get(key, 0) + cycles

    def _retire(self, cycle: int):
        while self._in_flight and self._in_flight[0].end <= cycle:
            self._in_flight.popleft()

    def submit(self, key: Hashable, nbytes: int, cycle: int) -> Transfer:
        """Issue a transfer at `cycle`; returns it with its start/end cycles."""
        self._retire(cycle)
        start = cycle
        while len(self._in_flight) >= self.depth:
            oldest = self._in_flight.popleft()
            start = max(start, oldest.end)

        end = start + self.transfer_cycles(nbytes) + self._delays.pop(key, 0)
        transfer = Transfer(key=key, nbytes=nbytes, requested_at=cycle, start=start, end=end)
        self._in_flight.append(transfer)

        self.bytes_transferred += nbytes
        self.transfers += 1
        self.queued_cycles += transfer.queued_cycles
        logger.debug("%s: %s %d B [%d, %d)", self.name, key, nbytes, start, end)
        return transfer

    def pending(self, cycle: int) -> List[Transfer]:
        return [t for t in self._in_flight if t.end > cycle]

    def cancel_pending(self, cycle: int) -> List[Transfer]:
        """Abort every transfer still in flight at `cycle`."""
        aborted = self.pending(cycle)
        for transfer in aborted:
            transfer.cancelled = True
        self._in_flight.clear()
        self.cancelled += len(aborted)
        return aborted

    def stats(self) -> Dict:
        return {
            'transfers': self.transfers,
            'bytes': self.bytes_transferred,
            'queued_cycles': self.queued_cycles,
            'cancelled': self.cancelled,
        }

    def restart(self):
        """New timeline: drop in-flight bookkeeping, keep injected faults."""
        self._in_flight.clear()

    def reset(self):
        self._in_flight.clear()
        self._delays.clear()
        self.bytes_transferred = 0
        self.transfers = 0
        self.queued_cycles = 0
        self.cancelled = 0
