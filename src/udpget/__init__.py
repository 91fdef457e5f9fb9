"""udpget: fetch a file from a holder process over UDP.

The holder streams the file as fixed-size packets through a sliding send
window; the requester acknowledges every packet and reassembles the stream
until it sees the completion marker.

- ``packet``: framing of data packets, acknowledgments and the completion marker
- ``window`` / ``sender``: holder-side window, acknowledgment and retransmission
- ``receiver``: requester-side reassembly and session
- ``holder``: request handling with one isolated session per requester
"""

from .config import TransferConfig
from .errors import (
    FileNotFound,
    IncompleteTransfer,
    MalformedPacket,
    SourceReadError,
    TransferAborted,
    TransferError,
    TransportError,
)
from .holder import FileCatalog, Holder
from .receiver import Requester, StreamReassembler
from .sender import WindowSender

__all__ = [
    "FileCatalog",
    "FileNotFound",
    "Holder",
    "IncompleteTransfer",
    "MalformedPacket",
    "Requester",
    "SourceReadError",
    "StreamReassembler",
    "TransferAborted",
    "TransferConfig",
    "TransferError",
    "TransportError",
    "WindowSender",
]
