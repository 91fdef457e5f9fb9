from __future__ import annotations

import io
import random
from collections import Counter, deque
from typing import Callable, Optional

import pytest

from udpget.config import TransferConfig
from udpget.packet import Framer, Packet
from udpget.receiver import StreamReassembler

HOLDER = ("10.0.0.1", 6969)
REQUESTER = ("10.0.0.2", 40000)

DropRule = Callable[[Packet, int], bool]


class InlineLink:
    """Holder-side transport whose far end is a StreamReassembler run inline.

    Nothing ever blocks: a receive with no acknowledgment queued times out
    immediately, which makes retransmission behaviour deterministic.
    """

    def __init__(
        self,
        reassembler: StreamReassembler,
        *,
        drop_data: Optional[DropRule] = None,
        drop_ack: Optional[DropRule] = None,
        reorder: Optional[random.Random] = None,
    ):
        self.reassembler = reassembler
        self.framer: Framer = reassembler.framer
        self.drop_data = drop_data or (lambda packet, nth: False)
        self.drop_ack = drop_ack or (lambda packet, nth: False)
        self.reorder = reorder
        self.sent: list[Packet] = []
        self.raw_sent: list[bytes] = []
        self.sends_at_receive: list[int] = []
        self.on_send: Optional[Callable[[], None]] = None
        self.inbox: deque = deque()
        self._held: list[bytes] = []
        self._data_counts: Counter = Counter()
        self._ack_counts: Counter = Counter()

    def transmissions(self, sequence: int, cycle: int = 0) -> int:
        return sum(1 for p in self.sent if p.sequence == sequence and p.cycle == cycle)

    def send_to(self, peer, data: bytes) -> None:
        assert peer == REQUESTER
        packet = self.framer.decode(data)
        self.sent.append(packet)
        self.raw_sent.append(data)
        if self.on_send is not None:
            self.on_send()

        key = (packet.sequence, packet.cycle)
        self._data_counts[key] += 1
        if not packet.is_completion and self.drop_data(packet, self._data_counts[key]):
            return
        if self.reorder is not None and not packet.is_completion:
            self._held.append(data)
            return
        self._deliver(data)

    def _deliver(self, data: bytes) -> None:
        ack = self.reassembler.accept(data)
        if ack is None:
            return
        packet = self.framer.decode(ack)
        key = (packet.sequence, packet.cycle)
        self._ack_counts[key] += 1
        if self.drop_ack(packet, self._ack_counts[key]):
            return
        self.inbox.append((REQUESTER, ack))

    def receive_from(self, max_len: int, timeout):
        self.sends_at_receive.append(len(self.sent))
        if not self.inbox and self._held:
            held, self._held = self._held, []
            self.reorder.shuffle(held)
            for data in held:
                self._deliver(data)
        if not self.inbox:
            raise TimeoutError("no acknowledgment queued")
        return self.inbox.popleft()

    def __enter__(self) -> "InlineLink":
        return self

    def __exit__(self, *exc: object) -> None:
        pass


class QueueTransport:
    """Replays queued datagrams and records everything sent."""

    address = HOLDER

    def __init__(self, inbox=()):
        self.inbox: deque = deque(inbox)
        self.sent: list[tuple] = []
        self.closed = False

    def send_to(self, peer, data: bytes) -> None:
        self.sent.append((peer, data))

    def receive_from(self, max_len: int, timeout):
        if not self.inbox:
            raise TimeoutError("queue empty")
        item = self.inbox.popleft()
        if isinstance(item, BaseException):
            raise item
        return item

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "QueueTransport":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def data_blocks(framer: Framer, content: bytes, window_size: int) -> list[bytes]:
    step = framer.payload_max
    chunks = [content[i : i + step] for i in range(0, len(content), step)]
    return [
        framer.encode(i % window_size, chunk, cycle=(i // window_size) % 2)
        for i, chunk in enumerate(chunks)
    ]


@pytest.fixture
def small_config() -> TransferConfig:
    return TransferConfig(window_size=10, payload_max=10, timeout_ms=50, max_retries=5)


@pytest.fixture
def source():
    def make(content: bytes) -> io.BytesIO:
        return io.BytesIO(content)

    return make
