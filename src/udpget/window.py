from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field


@dataclass(slots=True)
class InFlight:
    index: int
    sequence: int
    cycle: int
    block: bytes
    retries: int = 0
    sent_at: float = field(default_factory=time.monotonic)


class Window:
    """Send-window bookkeeping for one session.

    Chunk ``index`` travels as ``sequence = index % capacity`` plus the parity of
    ``index // capacity``. A sequence number is only reused once the packet that
    held it one cycle earlier has been acknowledged, so every chunk in flight lies
    within one window of the oldest unacknowledged chunk. Entries are kept in
    least-recently-sent order.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"window capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.next_index = 0
        self._in_flight: OrderedDict[int, InFlight] = OrderedDict()

    @property
    def outstanding(self) -> int:
        return len(self._in_flight)

    @property
    def next_sequence(self) -> int:
        return self.next_index % self.capacity

    @property
    def next_cycle(self) -> int:
        return (self.next_index // self.capacity) % 2

    def _key(self, sequence: int, cycle: int) -> int:
        return cycle * self.capacity + sequence

    def can_send(self) -> bool:
        """Whether chunk ``next_index`` may go out now.

        Besides the capacity bound, chunk n reuses the sequence number of chunk
        n - capacity and waits for that chunk's acknowledgment. Acks for any
        other outstanding chunk free capacity but not this slot.
        """
        if self.outstanding >= self.capacity:
            return False
        return self._key(self.next_sequence, 1 - self.next_cycle) not in self._in_flight

    def push(self, block: bytes) -> InFlight:
        """Record ``block`` as the packet for ``next_sequence`` and advance."""
        if not self.can_send():
            raise RuntimeError(
                f"window overrun: outstanding={self.outstanding} capacity={self.capacity} "
                f"next_sequence={self.next_sequence}"
            )
        entry = InFlight(
            index=self.next_index,
            sequence=self.next_sequence,
            cycle=self.next_cycle,
            block=block,
        )
        self._in_flight[self._key(entry.sequence, entry.cycle)] = entry
        self.next_index += 1
        return entry

    def retire(self, sequence: int, cycle: int) -> InFlight | None:
        if not 0 <= sequence < self.capacity:
            return None
        return self._in_flight.pop(self._key(sequence, cycle), None)

    def oldest(self) -> InFlight | None:
        for entry in self._in_flight.values():
            return entry
        return None

    def refresh(self, entry: InFlight) -> None:
        entry.retries += 1
        entry.sent_at = time.monotonic()
        self._in_flight.move_to_end(self._key(entry.sequence, entry.cycle))

    def clear(self) -> None:
        self._in_flight.clear()
