import socket
import logging
from typing import Optional, Tuple

from .errors import (
    AcceptError,
    BindError,
    ConnectError,
    ConnectionClosed,
    ShortWrite,
    TransportError,
)

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

RECV_BUFFER = 65536


class Session:
    """
    One reliable, ordered byte stream between requester and provider.

    The session owns its socket and is the only thing that closes it.
    """

    def __init__(self, sock: socket.socket, peer: Optional[Address] = None):
        self.socket: Optional[socket.socket] = sock
        self.peer = peer

    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self.socket is None

    def _sock(self) -> socket.socket:
        if self.socket is None:
            raise TransportError("session is closed")
        return self.socket

    def read_exact(self, n: int) -> bytes:
        """Block until exactly n bytes arrive."""
        sock = self._sock()
        buf = bytearray()
        while len(buf) < n:
            try:
                chunk = sock.recv(min(n - len(buf), RECV_BUFFER))
            except (ConnectionResetError, ConnectionAbortedError) as e:
                raise ConnectionClosed(
                    f"connection reset after {len(buf)}/{n} bytes: {e}"
                ) from e
            except OSError as e:
                raise TransportError(f"read failed: {e}") from e
            if not chunk:
                raise ConnectionClosed(f"peer closed after {len(buf)}/{n} bytes")
            buf.extend(chunk)
        return bytes(buf)

    def write_exact(self, data: bytes) -> None:
        """Block until every byte of data has been handed to the transport."""
        sock = self._sock()
        try:
            sock.sendall(data)
        except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as e:
            raise ShortWrite(f"peer closed while writing {len(data)} bytes: {e}") from e
        except OSError as e:
            raise TransportError(f"write failed: {e}") from e

    def close(self) -> None:
        """Release the socket. Safe to call more than once."""
        sock, self.socket = self.socket, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug("Ignoring error while closing session to %s: %s", self.peer, e)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# ----------------------------------------------------------------------
# Requester side
# ----------------------------------------------------------------------

def connect(address: Address, timeout: Optional[float] = None) -> Session:
    """Open a TCP session to the provider at address."""
    try:
        sock = socket.create_connection(address, timeout=timeout)
    except OSError as e:
        raise ConnectError(f"failed to connect to {address[0]}:{address[1]}: {e}") from e
    sock.settimeout(timeout)
    logger.info("Connection established to %s:%d", address[0], address[1])
    return Session(sock, peer=address)


# ----------------------------------------------------------------------
# Provider side
# ----------------------------------------------------------------------

class Listener:
    """Bound, listening TCP socket that yields one Session per accept()."""

    def __init__(self, sock: socket.socket, io_timeout: Optional[float] = None):
        self.socket: Optional[socket.socket] = sock
        self.io_timeout = io_timeout

    @classmethod
    def bind(
        cls,
        address: Address,
        backlog: int = 5,
        io_timeout: Optional[float] = None,
    ) -> "Listener":
        try:
            family = socket.getaddrinfo(
                address[0] or None, address[1], type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
            )[0][0]
            # create_server sets SO_REUSEADDR on POSIX
            sock = socket.create_server(address, family=family, backlog=backlog)
        except OSError as e:
            raise BindError(f"failed to bind {address[0]}:{address[1]}: {e}") from e
        logger.info("Listening on %s:%d", *sock.getsockname()[:2])
        return cls(sock, io_timeout)

    @property
    def address(self) -> Address:
        if self.socket is None:
            raise TransportError("listener is closed")
        host, port = self.socket.getsockname()[:2]
        return (host, port)

    def accept(self) -> Session:
        if self.socket is None:
            raise AcceptError("listener is closed")
        try:
            sock, peer = self.socket.accept()
        except OSError as e:
            raise AcceptError(f"accept failed: {e}") from e
        sock.settimeout(self.io_timeout)
        logger.info("Accepted connection from %s:%d", peer[0], peer[1])
        return Session(sock, peer=(peer[0], peer[1]))

    def close(self) -> None:
        sock, self.socket = self.socket, None
        if sock is None:
            return
        # shutdown() wakes a thread blocked in accept() on Linux
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def __enter__(self) -> "Listener":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def listen_and_accept(address: Address, backlog: int = 5) -> Session:
    """Bind, wait for exactly one inbound connection, and stop listening."""
    with Listener.bind(address, backlog) as listener:
        return listener.accept()
