from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass, field
from typing import Protocol, Tuple

from .errors import TransportError

Address = Tuple[str, int]

log = logging.getLogger(__name__)


class DatagramTransport(Protocol):
    def send_to(self, peer: Address, data: bytes) -> None: ...

    def receive_from(self, max_len: int, timeout: float | None) -> Tuple[Address, bytes]: ...


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    duplicate_rate: float = 0.0
    delay_ms: float = 0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        for name in ("loss_rate", "duplicate_rate"):
            rate = getattr(self, name)
            if not 0.0 <= rate <= 1.0:
                raise ValueError(f"{name} must be in [0, 1], got {rate}")
        if self.delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {self.delay_ms}")

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and self.rng.random() < self.loss_rate

    def should_duplicate(self) -> bool:
        return self.duplicate_rate > 0 and self.rng.random() < self.duplicate_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class UdpEndpoint:
    """UDP socket wrapper that optionally simulates an unreliable network."""

    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def listening(
        cls,
        host: str,
        port: int,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            sock.close()
            raise TransportError(f"cannot bind {host}:{port}: {e}") from e
        return cls(sock, impairment)

    @classmethod
    def ephemeral(cls, host: str = "0.0.0.0", impairment: Impairment | None = None) -> "UdpEndpoint":
        return cls.listening(host, 0, impairment)

    @property
    def address(self) -> Address:
        host, port = self.sock.getsockname()[:2]
        return host, port

    def send_to(self, peer: Address, data: bytes) -> None:
        if self.impairment.should_drop():
            log.debug("dropped outbound %d bytes to %s", len(data), peer)
            return
        self.impairment.sleep_if_needed()
        copies = 2 if self.impairment.should_duplicate() else 1
        try:
            for _ in range(copies):
                self.sock.sendto(data, peer)
        except OSError as e:
            raise TransportError(f"sendto {peer} failed: {e}") from e

    def receive_from(self, max_len: int, timeout: float | None) -> Tuple[Address, bytes]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if deadline is None:
                self.sock.settimeout(None)
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("timed out waiting for a datagram")
                self.sock.settimeout(remaining)
            try:
                data, addr = self.sock.recvfrom(max_len)
            except TimeoutError:
                raise
            except OSError as e:
                raise TransportError(f"recvfrom failed: {e}") from e
            if self.impairment.should_drop():
                log.debug("dropped inbound %d bytes from %s", len(data), addr)
                continue
            self.impairment.sleep_if_needed()
            return (addr[0], addr[1]), data

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UdpEndpoint":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
