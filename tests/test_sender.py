from __future__ import annotations

import io
import random

import pytest

from conftest import REQUESTER, InlineLink, QueueTransport
from udpget.config import TransferConfig
from udpget.errors import SourceReadError, TransferAborted
from udpget.packet import Framer
from udpget.receiver import StreamReassembler
from udpget.sender import AckReceiver, SenderState, WindowSender


def transfer(content: bytes, config: TransferConfig, **link_kwargs):
    reassembler = StreamReassembler(config)
    link = InlineLink(reassembler, **link_kwargs)
    sender = WindowSender(link, REQUESTER, io.BytesIO(content), config)
    return sender, link, reassembler


def test_happy_path_25_bytes(small_config):
    content = bytes(range(25))
    sender, link, reassembler = transfer(content, small_config)
    metrics = sender.run()

    assert [p.length for p in link.sent] == [10, 10, 5, 0]
    assert [p.sequence for p in link.sent[:3]] == [0, 1, 2]
    assert link.sent[-1].is_completion
    assert [len(raw) for raw in link.raw_sent] == [14, 14, 14, 4]
    assert reassembler.content == content
    assert sender.state is SenderState.COMPLETE
    assert metrics.bytes_sent == 25
    assert metrics.retransmits == 0


def test_empty_source_sends_only_completion(small_config):
    sender, link, reassembler = transfer(b"", small_config)
    sender.run()
    assert len(link.sent) == 1
    assert link.sent[0].is_completion
    assert reassembler.content == b""


def test_lost_first_transmission_is_retransmitted_once(small_config):
    content = b"A" * 10 + b"B" * 10 + b"C" * 5
    sender, link, reassembler = transfer(
        content,
        small_config,
        drop_data=lambda packet, nth: packet.sequence == 1 and nth == 1,
    )
    metrics = sender.run()

    assert link.transmissions(1) == 2
    assert link.transmissions(0) == 1
    assert link.transmissions(2) == 1
    assert metrics.retransmits == 1
    assert metrics.timeouts == 1
    assert reassembler.content == content


def test_window_stall_until_first_chunk_acknowledged():
    config = TransferConfig(window_size=10, payload_max=1, timeout_ms=50, max_retries=3)
    content = b"0123456789X"
    sender, link, reassembler = transfer(content, config)
    sender.run()

    # the eleventh chunk is not sent before the holder has read an acknowledgment
    assert link.sends_at_receive[0] == 10
    assert link.sent[10].payload == b"X"
    assert (link.sent[10].sequence, link.sent[10].cycle) == (0, 1)
    assert reassembler.content == content


def test_window_stall_waits_for_the_slot_being_reused():
    config = TransferConfig(window_size=10, payload_max=1, timeout_ms=50, max_retries=3)
    content = b"0123456789X"
    # chunk 0 needs a retransmission, so chunks 1-9 are acknowledged first
    sender, link, _ = transfer(content, config, drop_data=lambda packet, nth: packet.sequence == 0 and nth == 1)
    sender.run()
    first_eleventh = next(i for i, p in enumerate(link.sent) if p.payload == b"X")
    retransmit_of_zero = [i for i, p in enumerate(link.sent) if p.sequence == 0 and p.cycle == 0][1]
    assert first_eleventh > retransmit_of_zero


def test_outstanding_never_exceeds_window():
    config = TransferConfig(window_size=4, payload_max=3, timeout_ms=50, max_retries=20)
    content = bytes(random.Random(1).getrandbits(8) for _ in range(500))
    rng = random.Random(2)
    sender, link, reassembler = transfer(
        content,
        config,
        drop_data=lambda packet, nth: rng.random() < 0.2,
        drop_ack=lambda packet, nth: rng.random() < 0.2,
    )
    samples: list[int] = []
    link.on_send = lambda: samples.append(sender.window.outstanding)
    sender.run()

    assert samples
    assert max(samples) <= config.window_size
    assert reassembler.content == content


def test_liveness_under_bounded_consecutive_loss():
    config = TransferConfig(window_size=5, payload_max=8, timeout_ms=50, max_retries=4)
    content = bytes(range(256)) * 3
    # every sequence loses its first three transmissions, fewer than max_retries
    sender, link, reassembler = transfer(content, config, drop_data=lambda packet, nth: nth % 4 != 0)
    metrics = sender.run()
    assert reassembler.content == content
    assert metrics.retransmits > 0


def test_lost_acks_are_recovered_by_retransmission(small_config):
    content = bytes(range(95))
    sender, link, reassembler = transfer(content, small_config, drop_ack=lambda packet, nth: nth == 1)
    metrics = sender.run()
    assert reassembler.content == content
    assert reassembler.metrics.duplicates == metrics.retransmits
    assert metrics.retransmits == 10


def test_reordering_and_wraparound_across_many_cycles():
    config = TransferConfig(window_size=3, payload_max=5, timeout_ms=50, max_retries=10)
    content = bytes(random.Random(3).getrandbits(8) for _ in range(1000))
    sender, link, reassembler = transfer(content, config, reorder=random.Random(4))
    sender.run()
    assert reassembler.content == content
    assert sender.window.next_index == 200


def test_retry_budget_exhaustion_aborts(small_config):
    sender, link, reassembler = transfer(b"x" * 30, small_config, drop_data=lambda packet, nth: packet.sequence == 2)
    with pytest.raises(TransferAborted):
        sender.run()
    assert link.transmissions(2) == small_config.max_retries + 1
    assert not any(p.is_completion for p in link.sent)
    assert sender.window.outstanding == 0


def test_zero_retries_aborts_on_first_timeout(source):
    config = TransferConfig(window_size=2, payload_max=4, timeout_ms=50, max_retries=0)
    sender = WindowSender(QueueTransport(), REQUESTER, source(b"abcd"), config)
    with pytest.raises(TransferAborted):
        sender.run()


def test_short_reads_are_coalesced_into_full_chunks(small_config):
    class Trickle(io.RawIOBase):
        def __init__(self, data: bytes):
            super().__init__()
            self.data = data

        def readable(self) -> bool:
            return True

        def read(self, n: int = -1) -> bytes:
            k = 3 if n < 0 else min(n, 3)
            out, self.data = self.data[:k], self.data[k:]
            return out

    reassembler = StreamReassembler(small_config)
    link = InlineLink(reassembler)
    WindowSender(link, REQUESTER, Trickle(b"z" * 23), small_config).run()
    assert [p.length for p in link.sent] == [10, 10, 3, 0]
    assert reassembler.content == b"z" * 23


def test_ack_receiver_skips_foreign_malformed_and_data():
    framer = Framer(10)
    good = framer.encode_ack(4)
    transport = QueueTransport(
        [
            (("10.9.9.9", 1), good),
            (REQUESTER, b"\x01"),
            (REQUESTER, framer.encode(1, b"data")),
            (REQUESTER, framer.encode_completion()),
            (REQUESTER, good),
        ]
    )
    acks = AckReceiver(transport, REQUESTER, framer)
    ack = acks.await_ack(1.0)
    assert ack.sequence == 4
    assert acks.metrics.dropped == 4
    with pytest.raises(TimeoutError):
        acks.await_ack(1.0)


def test_duplicate_ack_does_not_change_window(small_config):
    framer = Framer(small_config.payload_max)
    ack0 = framer.encode_ack(0)
    transport = QueueTransport([(REQUESTER, ack0), (REQUESTER, ack0)])
    sender = WindowSender(transport, REQUESTER, io.BytesIO(b"q" * 15), small_config)
    sender._fill_window()
    assert sender.window.outstanding == 2
    sender._drain_one()
    assert sender.window.outstanding == 1
    sender._drain_one()
    assert sender.window.outstanding == 1
    assert sender.metrics.duplicates == 1


def test_source_read_failure_is_a_transfer_error(small_config):
    class Broken(io.RawIOBase):
        def readable(self) -> bool:
            return True

        def read(self, n: int = -1) -> bytes:
            raise OSError(5, "Input/output error")

    link = InlineLink(StreamReassembler(small_config))
    sender = WindowSender(link, REQUESTER, Broken(), small_config)
    with pytest.raises(SourceReadError):
        sender.run()
    assert link.sent == []
