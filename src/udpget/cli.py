from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict

from .bench import run_benchmark
from .config import TransferConfig
from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PAYLOAD_MAX,
    DEFAULT_PORT,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WINDOW_SIZE,
)
from .errors import TransferError
from .holder import FileCatalog, Holder
from .net import Impairment, UdpEndpoint
from .receiver import Requester

log = logging.getLogger(__name__)


def config_from_args(args: argparse.Namespace) -> TransferConfig:
    return TransferConfig(
        window_size=args.window_size,
        payload_max=args.payload_max,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
        idle_timeout_ms=getattr(args, "idle_timeout_ms", 0),
    )


def impairment_from_args(args: argparse.Namespace) -> Impairment:
    return Impairment(
        loss_rate=args.loss_rate,
        duplicate_rate=args.duplicate_rate,
        delay_ms=args.delay_ms,
    )


def emit(payload: dict, as_json: bool) -> None:
    print(json.dumps(payload, indent=2) if as_json else payload)


def cmd_serve(args: argparse.Namespace) -> int:
    try:
        endpoint = UdpEndpoint.listening(args.host, args.port, impairment=impairment_from_args(args))
    except TransferError as e:
        log.error("%s", e)
        return 1
    holder = Holder(endpoint, FileCatalog(args.root), config_from_args(args))
    try:
        holder.serve_forever(threaded=args.threaded)
    except KeyboardInterrupt:
        log.info("interrupted; shutting down")
        holder.stop()
    finally:
        endpoint.close()
    return 0


def cmd_fetch(args: argparse.Namespace) -> int:
    with UdpEndpoint.ephemeral(impairment=impairment_from_args(args)) as udp:
        requester = Requester(udp, (args.host, args.port), config_from_args(args))
        try:
            content = requester.fetch(args.name)
        except TransferError as e:
            log.error("fetch of %r failed: %s", args.name, e)
            return 1

    with open(args.out, "wb") as out:
        out.write(content)

    metrics = requester.metrics
    payload = {
        "role": "requester",
        "bytes": len(content),
        "seconds": metrics.duration_s,
        "mbps": metrics.throughput_mbps,
        "duplicates": metrics.duplicates,
        "dropped": metrics.dropped,
    }
    emit(payload, args.json)
    return 0


def cmd_bench(args: argparse.Namespace) -> int:
    try:
        r = run_benchmark(
            size_bytes=args.size_bytes,
            config=config_from_args(args),
            impairment=impairment_from_args(args),
        )
    except TransferError as e:
        log.error("benchmark failed: %s", e)
        return 1
    payload = {"role": "bench", **asdict(r)}
    emit(payload, args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="udpget", description="Windowed file fetch over UDP.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--window-size", type=int, default=DEFAULT_WINDOW_SIZE, help="must be the same on serve and fetch")
        x.add_argument("--payload-max", type=int, default=DEFAULT_PAYLOAD_MAX, help="must be the same on serve and fetch")
        x.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
        x.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate packet loss (0-1)")
        x.add_argument("--duplicate-rate", type=float, default=0.0, help="simulate packet duplication (0-1)")
        x.add_argument("--delay-ms", type=float, default=0.0, help="simulate send/receive delay")
        x.add_argument("--json", action="store_true")

    serve = sub.add_parser("serve", help="serve files from a directory")
    add_common(serve)
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=DEFAULT_PORT)
    serve.add_argument("--root", default=".")
    serve.add_argument("--threaded", action="store_true", help="one thread per session")
    serve.set_defaults(func=cmd_serve)

    fetch = sub.add_parser("fetch", help="fetch a file from a holder")
    add_common(fetch)
    fetch.add_argument("--host", required=True)
    fetch.add_argument("--port", type=int, default=DEFAULT_PORT)
    fetch.add_argument("--name", required=True)
    fetch.add_argument("--out", required=True)
    fetch.add_argument("--idle-timeout-ms", type=int, default=0)
    fetch.set_defaults(func=cmd_fetch)

    bench = sub.add_parser("bench", help="loopback benchmark")
    add_common(bench)
    bench.add_argument("--size-bytes", type=int, default=1_000_000)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        config_from_args(args)
        impairment_from_args(args)
    except ValueError as e:
        parser.error(str(e))
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
