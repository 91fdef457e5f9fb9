from __future__ import annotations


class TransferError(Exception):
    pass


class TransportError(TransferError):
    """The datagram primitive itself failed; not retried at this layer."""


class MalformedPacket(TransferError, ValueError):
    pass


class FileNotFound(TransferError, FileNotFoundError):
    pass


class TransferAborted(TransferError):
    pass


class IncompleteTransfer(TransferError):
    pass


class SourceReadError(TransferError):
    """The file being served could not be read."""
