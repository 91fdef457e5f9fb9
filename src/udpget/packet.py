from __future__ import annotations

import struct
from dataclasses import dataclass

from .constants import (
    COMPLETION_MARKER,
    CYCLE_BIT,
    HEADER_FORMAT,
    HEADER_SIZE,
    LENGTH_MASK,
    LENGTH_SHIFT,
    SEQ_MASK,
)
from .errors import MalformedPacket

_HEADER = struct.Struct(HEADER_FORMAT)
assert _HEADER.size == HEADER_SIZE


@dataclass(frozen=True, slots=True)
class Packet:
    sequence: int
    payload: bytes = b""
    cycle: int = 0

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def is_completion(self) -> bool:
        return self.sequence == COMPLETION_MARKER


COMPLETION = Packet(sequence=COMPLETION_MARKER)


def _pack_word(sequence: int, length: int, cycle: int) -> bytes:
    if not 0 <= sequence < SEQ_MASK:
        raise ValueError(f"sequence out of range: {sequence}")
    word = sequence | (length << LENGTH_SHIFT)
    if cycle:
        word |= CYCLE_BIT
    return _HEADER.pack(word)


@dataclass(frozen=True, slots=True)
class Framer:
    """Fixed-size packet codec: a 4-byte header word followed by a zero-padded payload."""

    payload_max: int

    @property
    def packet_size(self) -> int:
        return HEADER_SIZE + self.payload_max

    def encode(self, sequence: int, payload: bytes, cycle: int = 0) -> bytes:
        # chunks are read at payload_max granularity, so anything longer is a bug upstream
        if len(payload) > self.payload_max:
            raise ValueError(f"payload too large: {len(payload)} > {self.payload_max}")
        header = _pack_word(sequence, len(payload), cycle)
        return header + payload.ljust(self.payload_max, b"\x00")

    def encode_ack(self, sequence: int, cycle: int = 0) -> bytes:
        return _pack_word(sequence, 0, cycle)

    def encode_completion(self) -> bytes:
        return _HEADER.pack(COMPLETION_MARKER)

    def decode(self, block: bytes) -> Packet:
        if len(block) < HEADER_SIZE:
            raise MalformedPacket(f"datagram too small to be a packet: {len(block)} bytes")

        (word,) = _HEADER.unpack_from(block)
        if word == COMPLETION_MARKER:
            return COMPLETION

        length = (word >> LENGTH_SHIFT) & LENGTH_MASK
        if length > self.payload_max:
            raise MalformedPacket(f"declared length {length} exceeds payload_max {self.payload_max}")

        payload = block[HEADER_SIZE : HEADER_SIZE + length]
        if len(payload) != length:
            raise MalformedPacket(f"truncated payload: expected {length}, got {len(payload)}")

        return Packet(
            sequence=word & SEQ_MASK,
            payload=bytes(payload),
            cycle=1 if word & CYCLE_BIT else 0,
        )
