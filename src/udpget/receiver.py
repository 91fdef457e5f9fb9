from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from .config import TransferConfig
from .errors import IncompleteTransfer, MalformedPacket
from .metrics import Metrics
from .net import Address, DatagramTransport
from .packet import Framer

log = logging.getLogger(__name__)


class ReassemblerState(enum.Enum):
    RECEIVING = "receiving"
    SEALED = "sealed"


class StreamReassembler:
    """Requester-side reassembly of one transfer.

    Each data packet is acknowledged, including retransmitted duplicates, but its
    payload enters the stream only once and only in chunk order.
    """

    def __init__(self, config: TransferConfig | None = None):
        self.config = config or TransferConfig()
        self.framer = Framer(self.config.payload_max)
        self.window_size = self.config.window_size
        self.state = ReassemblerState.RECEIVING
        self.metrics = Metrics()
        self.expected = 0
        self._pending: dict[int, bytes] = {}
        self._buffer = bytearray()
        self._content: bytes | None = None

    @property
    def sealed(self) -> bool:
        return self.state is ReassemblerState.SEALED

    @property
    def content(self) -> bytes:
        if self._content is None:
            raise IncompleteTransfer(
                f"stream not sealed; {len(self._buffer)} bytes received so far"
            )
        return self._content

    def _resolve(self, sequence: int, cycle: int) -> int:
        # chunks the holder may still send lie in [expected - W, expected + W)
        space = 2 * self.window_size
        tag = cycle * self.window_size + sequence
        index = self.expected + (tag - self.expected) % space
        if index >= self.expected + self.window_size:
            index -= space
        return index

    def accept(self, block: bytes) -> bytes | None:
        """Consume one datagram; return the acknowledgment to send back, if any.

        Raises ``MalformedPacket`` for undecodable datagrams.
        """
        if self.sealed:
            log.debug("ignoring %d-byte datagram after completion", len(block))
            return None

        packet = self.framer.decode(block)
        self.metrics.packets_received += 1

        if packet.is_completion:
            self._seal()
            return None

        if packet.sequence >= self.window_size:
            raise MalformedPacket(f"sequence {packet.sequence} outside window of {self.window_size}")

        index = self._resolve(packet.sequence, packet.cycle)
        if index < self.expected or index in self._pending:
            self.metrics.duplicates += 1
            log.debug("duplicate seq=%d cycle=%d (chunk %d); re-acknowledging",
                      packet.sequence, packet.cycle, index)
        else:
            self._pending[index] = packet.payload
            self._flush()

        return self.framer.encode_ack(packet.sequence, packet.cycle)

    def _flush(self) -> None:
        while self.expected in self._pending:
            payload = self._pending.pop(self.expected)
            self._buffer += payload
            self.metrics.bytes_received += len(payload)
            self.expected += 1

    def _seal(self) -> None:
        if self._pending:
            missing = min(self._pending) - self.expected
            raise IncompleteTransfer(
                f"completion marker arrived with {missing} chunk(s) missing before chunk {min(self._pending)}"
            )
        self._content = bytes(self._buffer)
        self._buffer = bytearray()
        self.state = ReassemblerState.SEALED
        self.metrics.finish()
        log.debug("stream sealed: %d bytes in %d chunks", len(self._content), self.expected)


@dataclass(slots=True)
class Requester:
    """Fetches one file from a holder.

    Nothing on the wire carries the window size or payload limit, so
    ``config`` must match the holder's on both.
    """

    transport: DatagramTransport
    server: Address
    config: TransferConfig = field(default_factory=TransferConfig)
    reassembler: StreamReassembler = field(init=False)
    peer: Address | None = field(init=False, default=None)

    def __post_init__(self) -> None:
        self.reassembler = StreamReassembler(self.config)

    @property
    def metrics(self) -> Metrics:
        return self.reassembler.metrics

    def fetch(self, name: str) -> bytes:
        log.info("requesting %r from %s:%d", name, *self.server)
        self.transport.send_to(self.server, name.encode("utf-8"))

        while not self.reassembler.sealed:
            try:
                addr, raw = self.transport.receive_from(
                    self.reassembler.framer.packet_size, self.config.idle_timeout_s
                )
            except TimeoutError as e:
                raise IncompleteTransfer(
                    f"no data for {self.config.idle_timeout_s:.2f}s; "
                    f"{self.reassembler.metrics.bytes_received} bytes received"
                ) from e

            # the holder answers from a per-session port; lock onto the first one
            if self.peer is None:
                self.peer = addr
            elif addr != self.peer:
                log.debug("ignoring %d bytes from foreign peer %s", len(raw), addr)
                self.metrics.dropped += 1
                continue

            try:
                ack = self.reassembler.accept(raw)
            except MalformedPacket as e:
                log.debug("dropping malformed packet: %s", e)
                self.metrics.dropped += 1
                continue

            if ack is not None:
                self.transport.send_to(self.peer, ack)

        content = self.reassembler.content
        log.info("received %r: %d bytes in %.3fs (%.2f Mbps)", name, len(content),
                 self.metrics.duration_s, self.metrics.throughput_mbps)
        return content
