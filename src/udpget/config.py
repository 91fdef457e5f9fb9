from __future__ import annotations

from dataclasses import dataclass

from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAYLOAD_MAX,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WINDOW_SIZE,
    HEADER_SIZE,
    MAX_PAYLOAD,
    MAX_WINDOW_SIZE,
)


@dataclass(frozen=True, slots=True)
class TransferConfig:
    window_size: int = DEFAULT_WINDOW_SIZE
    payload_max: int = DEFAULT_PAYLOAD_MAX
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    # 0 means "long enough for the holder to exhaust its retries"
    idle_timeout_ms: int = 0

    def __post_init__(self) -> None:
        if not 1 <= self.window_size <= MAX_WINDOW_SIZE:
            raise ValueError(f"window_size must be in [1, {MAX_WINDOW_SIZE}], got {self.window_size}")
        if not 1 <= self.payload_max <= MAX_PAYLOAD:
            raise ValueError(f"payload_max must be in [1, {MAX_PAYLOAD}], got {self.payload_max}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must not be negative, got {self.max_retries}")
        if self.idle_timeout_ms < 0:
            raise ValueError(f"idle_timeout_ms must not be negative, got {self.idle_timeout_ms}")

    @property
    def packet_size(self) -> int:
        return HEADER_SIZE + self.payload_max

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def idle_timeout_s(self) -> float:
        if self.idle_timeout_ms:
            return self.idle_timeout_ms / 1000.0
        return self.timeout_s * (self.max_retries + 2)
