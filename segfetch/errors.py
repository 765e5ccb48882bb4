"""
Exception taxonomy for segfetch.

Every failure that can end an exchange derives from TransferError, so
callers can tell "the transfer failed" apart from a resource that is
simply absent on the provider.
"""


class TransferError(Exception):
    """Base class for all failures of a single exchange."""

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConnectError(TransferError):
    pass


class BindError(TransferError):
    pass


class AcceptError(TransferError):
    pass


class TransportError(TransferError):
    """Generic failure of the underlying stream."""


class ConnectionClosed(TransportError):
    """Peer closed the stream before the expected bytes arrived."""


class ShortRead(ConnectionClosed):
    pass


class ShortWrite(TransportError):
    pass


class SendError(TransferError):
    pass


class ProtocolViolation(TransferError):
    pass


class ChecksumMismatch(TransferError):
    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"segment checksum mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class ResourceError(TransferError):
    """Local file access failed while serving or storing a resource."""
