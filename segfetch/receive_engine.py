import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config import TransferConfig
from .errors import ProtocolViolation, SendError, TransferError, TransportError
from .network_io import Address, Session, connect
from .protocol import (
    FILE_TAG,
    CHECKSUM_SIZE,
    encode_request_name,
    expect_file_header,
    verify_segment,
    write_header,
)
from .storage import FileStorage, PendingFile

logger = logging.getLogger(__name__)


class RequesterState(enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    AWAITING_REPLY = "awaiting_reply"
    AWAITING_HEADER = "awaiting_header"
    ABSENT = "absent"
    DECLINED = "declined"
    RECEIVING = "receiving"
    DONE = "done"
    FAILED = "failed"


class OutcomeStatus(enum.Enum):
    ABSENT = "absent"
    RECEIVED = "received"
    DECLINED = "declined"
    ERROR = "error"


@dataclass
class Outcome:
    status: OutcomeStatus
    resource: str
    path: Optional[str] = None
    size: int = 0
    segments: int = 0
    error: Optional[TransferError] = None

    @property
    def kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.ERROR


class Requester:
    """
    Requester state machine: connect, ask for one resource, receive it.

    fetch() raises TransferError subclasses; an absent resource or a
    declined download is a normal Outcome, not an exception.

    While receiving, state alternates between AWAITING_HEADER (blocked on
    the next segment header) and RECEIVING (reading and storing that
    segment's payload).
    """

    def __init__(
        self,
        config: TransferConfig,
        storage: FileStorage,
        confirm: Optional[Callable[[int], bool]] = None,
        connect_func: Callable[..., Session] = connect,
    ):
        self.config = config
        self.storage = storage
        self.confirm = confirm
        self.connect_func = connect_func
        self.state = RequesterState.IDLE

    def fetch(self, address: Address, name: str) -> Outcome:
        self.state = RequesterState.IDLE
        try:
            session = self.connect_func(address, timeout=self.config.io_timeout_sec)
        except TransferError:
            self.state = RequesterState.FAILED
            raise
        self.state = RequesterState.CONNECTED

        try:
            return self.exchange(session, name)
        except TransferError:
            self.state = RequesterState.FAILED
            raise
        finally:
            session.close()

    def exchange(self, session: Session, name: str) -> Outcome:
        """Run the protocol over an already open session."""
        self._send_request(session, name)
        self.state = RequesterState.AWAITING_REPLY

        reply = expect_file_header(session)
        if reply.length == 0:
            logger.info("Resource %r does not exist on provider", name)
            self.state = RequesterState.ABSENT
            return Outcome(OutcomeStatus.ABSENT, resource=name)

        total_size = reply.length
        logger.info("Resource %r exists, %d bytes", name, total_size)

        if self.confirm is not None and not self.confirm(total_size):
            logger.info("Download of %r declined", name)
            self.state = RequesterState.DECLINED
            return Outcome(OutcomeStatus.DECLINED, resource=name, size=total_size)

        self.state = RequesterState.RECEIVING
        handle = self.storage.open_for_write(name)
        try:
            segments = self._receive_segments(session, handle, total_size)
        except BaseException:
            self.storage.discard(handle)
            raise
        path = self.storage.commit(handle)

        self.state = RequesterState.DONE
        logger.info("Received %r: %d bytes in %d segments -> %s", name, total_size, segments, path)
        return Outcome(
            OutcomeStatus.RECEIVED,
            resource=name,
            path=path,
            size=total_size,
            segments=segments,
        )

    # ------------------------------------------------------------------

    def _send_request(self, session: Session, name: str) -> None:
        payload = encode_request_name(name)
        try:
            write_header(session, FILE_TAG, len(payload))
            session.write_exact(payload)
        except TransportError as e:
            raise SendError(f"failed to send request for {name!r}: {e}") from e
        logger.debug("Sent request for %r (%d bytes)", name, len(payload))

    def _receive_segments(self, session: Session, handle: PendingFile, total_size: int) -> int:
        received = 0
        segments = 0
        while received < total_size:
            self.state = RequesterState.AWAITING_HEADER
            header = expect_file_header(session)
            self.state = RequesterState.RECEIVING
            seg_len = header.length
            if seg_len == 0:
                raise ProtocolViolation(
                    f"empty segment with {total_size - received} bytes outstanding"
                )
            if received + seg_len > total_size:
                raise ProtocolViolation(
                    f"segment of {seg_len} bytes overruns announced size "
                    f"({received}/{total_size} received)"
                )

            content = verify_segment(session.read_exact(seg_len + CHECKSUM_SIZE))
            self.storage.append(handle, content)
            received += seg_len
            segments += 1
            logger.debug("Segment %d: %d bytes (%d/%d)", segments, seg_len, received, total_size)
        return segments
