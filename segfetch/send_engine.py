import enum
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from .config import ServerConfig, TransferConfig
from .errors import AcceptError, ProtocolViolation, ResourceError, TransferError
from .network_io import Listener, Session
from .protocol import FILE_TAG, encode_segment, expect_file_header, decode_request_name, write_header
from .storage import FileStorage

logger = logging.getLogger(__name__)


class ProviderState(enum.Enum):
    LISTENING = "listening"
    ACCEPTING = "accepting"
    AWAITING_REQUEST = "awaiting_request"
    RESPONDING = "responding"
    IDLE = "idle"
    SENDING = "sending"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class ProviderStats:
    connections: int = 0
    completed: int = 0
    absent: int = 0
    failed: int = 0


class Provider:
    """
    Provider state machine: accept a connection, read one request,
    reply with the resource size, then stream it as checksummed segments.

    A failure while serving a client only ends that client's connection;
    serve_forever() keeps accepting. By default connections are handled
    one at a time; with server_config.concurrent each accepted connection
    gets its own worker thread.
    """

    def __init__(
        self,
        server_config: ServerConfig,
        transfer_config: TransferConfig,
        storage: FileStorage,
    ):
        self.server_config = server_config
        self.transfer_config = transfer_config
        self.storage = storage

        self.state = ProviderState.CLOSED
        self.stats = ProviderStats()
        self.running = False
        self.listener: Optional[Listener] = None

        self._lock = threading.Lock()
        self._active_sessions = 0
        self._workers: List[threading.Thread] = []

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return self._active_sessions

    @property
    def open_handles(self) -> int:
        return self.storage.open_handles

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> Listener:
        """Bind the listening socket. Raises BindError."""
        if self.listener is None:
            self.listener = Listener.bind(
                self.server_config.address,
                backlog=self.server_config.backlog,
                io_timeout=self.transfer_config.io_timeout_sec,
            )
        self.running = True
        self.state = ProviderState.LISTENING
        return self.listener

    def stop(self) -> None:
        """Stop accepting; a blocked accept() returns with AcceptError."""
        self.running = False
        if self.listener is not None:
            self.listener.close()
            self.listener = None
        self.state = ProviderState.CLOSED
        logger.info("Provider stopped")

    def serve_forever(self, max_connections: Optional[int] = None) -> None:
        """Accept and serve until stop() or max_connections handled."""
        listener = self.start()
        logger.info(
            "Serving %s (chunk size %d, %s)",
            self.storage.resource_root,
            self.transfer_config.chunk_size,
            "concurrent" if self.server_config.concurrent else "sequential",
        )
        handled = 0
        try:
            while self.running and (max_connections is None or handled < max_connections):
                self.state = ProviderState.ACCEPTING
                try:
                    session = listener.accept()
                except AcceptError as e:
                    if not self.running:
                        break
                    logger.error("Accept failed: %s", e)
                    raise
                handled += 1

                if self.server_config.concurrent:
                    worker = threading.Thread(
                        target=self.handle_connection,
                        args=(session,),
                        name=f"segfetch-worker-{handled}",
                        daemon=True,
                    )
                    self._reap_workers()
                    self._workers.append(worker)
                    worker.start()
                else:
                    self.handle_connection(session)
                    self._set_state(ProviderState.LISTENING)
        finally:
            self._join_workers()
            self.stop()

    def _reap_workers(self) -> None:
        self._workers = [w for w in self._workers if w.is_alive()]

    def _join_workers(self) -> None:
        for worker in self._workers:
            worker.join()
        self._workers.clear()

    # ------------------------------------------------------------------
    # Per-connection exchange
    # ------------------------------------------------------------------

    def handle_connection(self, session: Session) -> bool:
        """
        Serve one accepted session and close it. Returns True when the
        exchange finished normally (including "resource absent").
        """
        with self._lock:
            self._active_sessions += 1
            self.stats.connections += 1
        try:
            found = self._serve(session)
        except TransferError as e:
            logger.warning("Exchange with %s failed (%s): %s", session.peer, e.kind, e)
            with self._lock:
                self.stats.failed += 1
            self._set_state(ProviderState.FAILED)
            return False
        except Exception:
            logger.exception("Unexpected error while serving %s", session.peer)
            with self._lock:
                self.stats.failed += 1
            self._set_state(ProviderState.FAILED)
            return False
        finally:
            session.close()
            with self._lock:
                self._active_sessions -= 1

        with self._lock:
            if found:
                self.stats.completed += 1
            else:
                self.stats.absent += 1
        self._set_state(ProviderState.CLOSED)
        return True

    def _set_state(self, state: ProviderState) -> None:
        # Worker threads share one Provider; only sequential mode tracks state.
        if not self.server_config.concurrent:
            self.state = state

    def _serve(self, session: Session) -> bool:
        self._set_state(ProviderState.AWAITING_REQUEST)
        name = self._read_request(session)
        logger.info("Requested resource: %r", name)

        self._set_state(ProviderState.RESPONDING)
        exists, size = self.storage.stat(name)
        if exists and size > 0xFFFFFFFF:
            raise ResourceError(f"resource {name!r} is too large to announce ({size} bytes)")

        if not exists or size == 0:
            if exists:
                logger.info("Resource %r is empty; reporting it as absent", name)
            else:
                logger.info("Resource %r does not exist", name)
            write_header(session, FILE_TAG, 0)
            self._set_state(ProviderState.IDLE)
            return False

        write_header(session, FILE_TAG, size)
        self._set_state(ProviderState.SENDING)
        segments = self._send_resource(session, name, size)
        logger.info("Sent %r: %d bytes in %d segments", name, size, segments)
        return True

    def _read_request(self, session: Session) -> str:
        header = expect_file_header(session)
        limit = self.transfer_config.max_request_size
        if header.length == 0:
            raise ProtocolViolation("empty resource name in request")
        if header.length > limit:
            raise ProtocolViolation(
                f"request of {header.length} bytes exceeds limit of {limit}"
            )
        return decode_request_name(session.read_exact(header.length))

    def _send_resource(self, session: Session, name: str, size: int) -> int:
        chunk_size = self.transfer_config.chunk_size
        handle = self.storage.open_for_read(name)
        try:
            sent = 0
            segments = 0
            while sent < size:
                want = min(chunk_size, size - sent)
                chunk = self.storage.read_chunk(handle, want)
                if len(chunk) != want:
                    raise ResourceError(
                        f"{name!r} shrank during transfer: read {len(chunk)} of {want} "
                        f"bytes at offset {sent}"
                    )
                session.write_exact(encode_segment(chunk))
                sent += len(chunk)
                segments += 1
            return segments
        finally:
            self.storage.close(handle)
