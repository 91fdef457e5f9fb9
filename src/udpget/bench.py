from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass

from .config import TransferConfig
from .errors import IncompleteTransfer
from .holder import FileCatalog, Holder
from .metrics import Metrics
from .net import Impairment, UdpEndpoint
from .receiver import Requester


@dataclass(frozen=True, slots=True)
class BenchmarkResult:
    bytes_transferred: int
    duration_s: float
    throughput_mbps: float
    retransmits: int
    timeouts: int
    duplicates: int


def run_benchmark(
    *,
    size_bytes: int,
    config: TransferConfig | None = None,
    impairment: Impairment | None = None,
) -> BenchmarkResult:
    """Serve a random file over loopback and fetch it back."""
    config = config or TransferConfig()
    impair = impairment or Impairment()
    payload = os.urandom(size_bytes)

    with tempfile.TemporaryDirectory() as root:
        with open(os.path.join(root, "bench.bin"), "wb") as f:
            f.write(payload)

        holder_ep = UdpEndpoint.listening("127.0.0.1", 0, impairment=impair)
        server = holder_ep.address
        holder = Holder(holder_ep, FileCatalog(root), config)
        holder_metrics: dict[str, Metrics | None] = {}

        def holder_runner() -> None:
            try:
                holder_metrics["m"] = holder.serve_once(timeout=10.0)
            finally:
                holder_ep.close()

        t = threading.Thread(target=holder_runner, daemon=True)
        t.start()

        with UdpEndpoint.ephemeral("127.0.0.1", impairment=impair) as requester_ep:
            requester = Requester(requester_ep, server, config)
            received = requester.fetch("bench.bin")

        t.join(timeout=10.0)

    if received != payload:
        raise IncompleteTransfer(f"benchmark payload mismatch: sent {size_bytes} bytes, got {len(received)}")

    send_metrics = holder_metrics.get("m") or Metrics()
    duration_s = max(0.001, requester.metrics.duration_s)
    return BenchmarkResult(
        bytes_transferred=size_bytes,
        duration_s=duration_s,
        throughput_mbps=(size_bytes * 8 / 1_000_000) / duration_s,
        retransmits=send_metrics.retransmits,
        timeouts=send_metrics.timeouts,
        duplicates=requester.metrics.duplicates,
    )
