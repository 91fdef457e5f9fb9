from __future__ import annotations

HEADER_FORMAT = "!I"  # seq (0-15), payload length (16-30), cycle parity (31)
HEADER_SIZE = 4

SEQ_MASK = 0xFFFF
LENGTH_SHIFT = 16
LENGTH_MASK = 0x7FFF
CYCLE_BIT = 0x80000000

COMPLETION_MARKER = 0xFFFFFFFF

MAX_WINDOW_SIZE = SEQ_MASK  # keeps every seq field below the marker's 0xFFFF
MAX_PAYLOAD = min(LENGTH_MASK, 65507 - HEADER_SIZE)

DEFAULT_WINDOW_SIZE = 10
DEFAULT_PAYLOAD_MAX = 1400  # conservative to avoid IP fragmentation
DEFAULT_TIMEOUT_MS = 250
DEFAULT_MAX_RETRIES = 20
DEFAULT_PORT = 6969
