from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable

from .config import TransferConfig
from .errors import FileNotFound, SourceReadError, TransferAborted, TransportError
from .metrics import Metrics
from .net import Address, UdpEndpoint
from .packet import Framer
from .sender import WindowSender

log = logging.getLogger(__name__)

# long enough for any sane path; longer requests are truncated and fail lookup
MAX_REQUEST_LEN = 4096


class FileCatalog:
    """Resolves requested names to files below ``root``."""

    def __init__(self, root: str | os.PathLike[str] = "."):
        self.root = Path(root).resolve()

    def resolve(self, name: str) -> Path:
        if not name or "\x00" in name:
            raise FileNotFound(f"invalid file name {name!r}")
        path = (self.root / name).resolve()
        if path != self.root and self.root not in path.parents:
            raise FileNotFound(f"{name!r} is outside {self.root}")
        if not path.is_file():
            raise FileNotFound(f"no such file: {name!r}")
        return path

    def open_file_for_read(self, name: str) -> BinaryIO:
        path = self.resolve(name)
        try:
            return open(path, "rb")
        except OSError as e:
            raise FileNotFound(f"cannot open {name!r}: {e}") from e


class Holder:
    """Serves file requests, one isolated session per request.

    Every session answers from its own ephemeral endpoint, so window state and
    acknowledgments of concurrent requesters never mix.
    """

    def __init__(
        self,
        endpoint: UdpEndpoint,
        catalog: FileCatalog,
        config: TransferConfig | None = None,
        *,
        session_endpoint: Callable[[], UdpEndpoint] | None = None,
        poll_interval: float = 0.5,
    ):
        self.endpoint = endpoint
        self.catalog = catalog
        self.config = config or TransferConfig()
        self.poll_interval = poll_interval
        self._session_endpoint = session_endpoint or self._default_session_endpoint
        self._stopped = threading.Event()
        self._sessions: list[threading.Thread] = []
        # (peer, name) -> expiry; None while the session is still running
        self._recent: dict[tuple[Address, str], float | None] = {}
        self._recent_lock = threading.Lock()

    def _default_session_endpoint(self) -> UdpEndpoint:
        host = self.endpoint.address[0]
        return UdpEndpoint.ephemeral(host, self.endpoint.impairment)

    def stop(self) -> None:
        self._stopped.set()

    def serve_once(self, timeout: float | None = None) -> Metrics | None:
        """Wait for one request and serve it on the calling thread."""
        request = self._next_request(timeout)
        if request is None:
            return None
        peer, name = request
        return self.handle_request(peer, name)

    def serve_forever(self, threaded: bool = False) -> None:
        log.info("holder serving %s on %s:%d", self.catalog.root, *self.endpoint.address)
        while not self._stopped.is_set():
            request = self._next_request(self.poll_interval)
            if request is None:
                continue
            peer, name = request
            if threaded:
                t = threading.Thread(target=self.handle_request, args=(peer, name), daemon=True)
                t.start()
                self._sessions = [s for s in self._sessions if s.is_alive()]
                self._sessions.append(t)
            else:
                self.handle_request(peer, name)
        for t in self._sessions:
            t.join()

    def _next_request(self, timeout: float | None) -> tuple[Address, str] | None:
        try:
            peer, raw = self.endpoint.receive_from(MAX_REQUEST_LEN, timeout)
        except TimeoutError:
            return None
        try:
            name = raw.decode("utf-8")
        except UnicodeDecodeError:
            # handled as a missing file, so the requester still gets an answer
            name = ""
        log.info("request from %s:%d for %r", *peer, name)
        return peer, name

    def handle_request(self, peer: Address, name: str) -> Metrics | None:
        """Serve one request; session failures are logged, never raised.

        A repeat of a request that is still being served, or was finished
        less than ``config.idle_timeout_s`` ago, is a duplicated datagram and
        is dropped.
        """
        if not self._claim(peer, name):
            log.debug("dropping repeated request from %s:%d for %r", *peer, name)
            return None
        try:
            with self._session_endpoint() as session:
                return self._run_session(session, peer, name)
        except TransferAborted as e:
            log.warning("transfer of %r to %s:%d aborted: %s", name, *peer, e)
        except (SourceReadError, TransportError) as e:
            log.error("transfer of %r to %s:%d failed: %s", name, *peer, e)
        finally:
            self._release(peer, name)
        return None

    def _claim(self, peer: Address, name: str) -> bool:
        now = time.monotonic()
        with self._recent_lock:
            self._recent = {k: exp for k, exp in self._recent.items() if exp is None or exp > now}
            if (peer, name) in self._recent:
                return False
            self._recent[(peer, name)] = None
            return True

    def _release(self, peer: Address, name: str) -> None:
        with self._recent_lock:
            self._recent[(peer, name)] = time.monotonic() + self.config.idle_timeout_s

    def _run_session(self, session: UdpEndpoint, peer: Address, name: str) -> Metrics | None:
        try:
            source = self.catalog.open_file_for_read(name)
        except FileNotFound as e:
            log.warning("request from %s:%d failed: %s", *peer, e)
            session.send_to(peer, Framer(self.config.payload_max).encode_completion())
            return None

        with source:
            return WindowSender(session, peer, source, self.config).run()
