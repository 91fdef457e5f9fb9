from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import BinaryIO

from .config import TransferConfig
from .constants import HEADER_SIZE
from .errors import MalformedPacket, SourceReadError, TransferAborted
from .metrics import Metrics
from .net import Address, DatagramTransport
from .packet import Framer, Packet
from .window import InFlight, Window

log = logging.getLogger(__name__)


class SenderState(enum.Enum):
    OPEN = "open"
    DRAINING = "draining"
    COMPLETE = "complete"


@dataclass(slots=True)
class AckReceiver:
    transport: DatagramTransport
    peer: Address
    framer: Framer
    metrics: Metrics = field(default_factory=Metrics)

    def await_ack(self, timeout: float) -> Packet:
        """Block until an acknowledgment from ``peer`` arrives.

        Malformed datagrams and datagrams from other addresses are dropped
        without extending the deadline. Raises ``TimeoutError`` when nothing
        usable arrives in time.
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("timed out waiting for an acknowledgment")

            addr, raw = self.transport.receive_from(self.framer.packet_size, remaining)
            if addr != self.peer:
                log.debug("ignoring %d bytes from foreign peer %s", len(raw), addr)
                self.metrics.dropped += 1
                continue
            if len(raw) != HEADER_SIZE:
                log.debug("ignoring %d-byte datagram, acks are %d bytes", len(raw), HEADER_SIZE)
                self.metrics.dropped += 1
                continue
            try:
                ack = self.framer.decode(raw)
            except MalformedPacket as e:
                log.debug("dropping malformed ack: %s", e)
                self.metrics.dropped += 1
                continue
            if ack.is_completion or ack.payload:
                self.metrics.dropped += 1
                continue
            return ack


@dataclass(slots=True)
class WindowSender:
    """Holder side of one transfer session.

    Fills the window from ``source``, then alternates between draining one
    acknowledgment and refilling, retransmitting the least-recently-sent packet
    whenever an acknowledgment does not arrive in time.
    """

    transport: DatagramTransport
    peer: Address
    source: BinaryIO
    config: TransferConfig = field(default_factory=TransferConfig)
    state: SenderState = SenderState.OPEN
    framer: Framer = field(init=False)
    window: Window = field(init=False)
    acks: AckReceiver = field(init=False)
    metrics: Metrics = field(init=False)

    def __post_init__(self) -> None:
        self.framer = Framer(self.config.payload_max)
        self.window = Window(self.config.window_size)
        self.metrics = Metrics()
        self.acks = AckReceiver(self.transport, self.peer, self.framer, self.metrics)

    def run(self) -> Metrics:
        log.debug("session to %s started; window=%d payload_max=%d",
                  self.peer, self.window.capacity, self.framer.payload_max)
        try:
            while self.state is not SenderState.COMPLETE:
                if self.state is SenderState.OPEN:
                    self._fill_window()
                if self.window.outstanding:
                    self._drain_one()
                elif self.state is SenderState.DRAINING:
                    self.state = SenderState.COMPLETE
        finally:
            self.window.clear()

        self.transport.send_to(self.peer, self.framer.encode_completion())
        self.metrics.packets_sent += 1
        self.metrics.finish()
        log.info("sent %d bytes in %d chunks to %s; retransmits=%d timeouts=%d",
                 self.metrics.bytes_sent, self.window.next_index, self.peer,
                 self.metrics.retransmits, self.metrics.timeouts)
        return self.metrics

    def _read_chunk(self) -> bytes:
        try:
            chunk = self.source.read(self.framer.payload_max)
            # byte sources may return short reads before end of file
            while chunk and len(chunk) < self.framer.payload_max:
                more = self.source.read(self.framer.payload_max - len(chunk))
                if not more:
                    break
                chunk += more
        except OSError as e:
            raise SourceReadError(f"reading chunk {self.window.next_index} failed: {e}") from e
        return chunk

    def _fill_window(self) -> None:
        while self.state is SenderState.OPEN and self.window.can_send():
            chunk = self._read_chunk()
            if not chunk:
                log.debug("source exhausted after %d chunks; draining %d outstanding",
                          self.window.next_index, self.window.outstanding)
                self.state = SenderState.DRAINING
                return
            block = self.framer.encode(self.window.next_sequence, chunk, cycle=self.window.next_cycle)
            entry = self.window.push(block)
            self.transport.send_to(self.peer, block)
            self.metrics.packets_sent += 1
            self.metrics.bytes_sent += len(chunk)
            log.debug("sent seq=%d cycle=%d len=%d outstanding=%d",
                      entry.sequence, entry.cycle, len(chunk), self.window.outstanding)

    def _drain_one(self) -> None:
        try:
            ack = self.acks.await_ack(self.config.timeout_s)
        except TimeoutError:
            self.metrics.timeouts += 1
            self._retransmit_oldest()
            return

        self.metrics.acks_received += 1
        entry = self.window.retire(ack.sequence, ack.cycle)
        if entry is None:
            self.metrics.duplicates += 1
            log.debug("ignoring ack seq=%d cycle=%d: not outstanding", ack.sequence, ack.cycle)
            return
        log.debug("ack seq=%d cycle=%d retired; outstanding=%d",
                  ack.sequence, ack.cycle, self.window.outstanding)

    def _retransmit_oldest(self) -> None:
        entry: InFlight | None = self.window.oldest()
        if entry is None:
            return
        if entry.retries >= self.config.max_retries:
            raise TransferAborted(
                f"no acknowledgment for seq={entry.sequence} (chunk {entry.index}) "
                f"after {entry.retries} retries"
            )
        self.window.refresh(entry)
        self.transport.send_to(self.peer, entry.block)
        self.metrics.packets_sent += 1
        self.metrics.retransmits += 1
        log.debug("timeout; retransmitted seq=%d cycle=%d retry=%d",
                  entry.sequence, entry.cycle, entry.retries)
