"""
Frame codec for segfetch.

Every logical message starts with a fixed 5-byte header:

  c   tag      (always b"f" for file transfer)
  I   length   (unsigned 32-bit, network byte order)

followed by exactly `length` payload bytes. Segment frames carry one extra
checksum byte after the content; that byte is NOT counted in `length`.
"""

import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ChecksumMismatch, ConnectionClosed, ProtocolViolation, ShortRead

if TYPE_CHECKING:
    from .network_io import Session


FILE_TAG = b"f"
HEADER_FORMAT = "!cI"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 5 bytes
MAX_LENGTH = 0xFFFFFFFF

CHECKSUM_DIVISOR = 32
CHECKSUM_SIZE = 1


@dataclass(frozen=True)
class MessageHeader:
    tag: bytes
    length: int

    @property
    def is_file_transfer(self) -> bool:
        return self.tag == FILE_TAG


def encode_header(tag: bytes, length: int) -> bytes:
    if len(tag) != 1:
        raise ValueError(f"tag must be a single byte, got {tag!r}")
    if not 0 <= length <= MAX_LENGTH:
        raise ProtocolViolation(f"length {length} does not fit in 32 bits")
    return struct.pack(HEADER_FORMAT, tag, length)


def decode_header(raw: bytes) -> MessageHeader:
    if len(raw) != HEADER_SIZE:
        raise ValueError(f"header must be {HEADER_SIZE} bytes, got {len(raw)}")
    tag, length = struct.unpack(HEADER_FORMAT, raw)
    return MessageHeader(tag=tag, length=length)


def write_header(session: "Session", tag: bytes, length: int) -> None:
    session.write_exact(encode_header(tag, length))


def read_header(session: "Session") -> MessageHeader:
    try:
        raw = session.read_exact(HEADER_SIZE)
    except ShortRead:
        raise
    except ConnectionClosed as e:
        raise ShortRead(f"incomplete message header: {e}") from e
    return decode_header(raw)


def expect_file_header(session: "Session") -> MessageHeader:
    """Read one header and reject anything not tagged for file transfer."""
    header = read_header(session)
    if not header.is_file_transfer:
        raise ProtocolViolation(f"unexpected message tag {header.tag!r}")
    return header


# ------------------------------------------------------------------
# Segments
# ------------------------------------------------------------------

def compute_checksum(content: bytes) -> int:
    return sum(content) % CHECKSUM_DIVISOR


def encode_segment(content: bytes) -> bytes:
    """Header + content + checksum byte, ready for write_exact."""
    return (
        encode_header(FILE_TAG, len(content))
        + content
        + bytes([compute_checksum(content)])
    )


def verify_segment(payload: bytes) -> bytes:
    """
    Split a received `content + checksum` buffer and validate it.

    Returns the content bytes; raises ChecksumMismatch when the trailing
    byte disagrees with the recomputed checksum.
    """
    if len(payload) < CHECKSUM_SIZE:
        raise ProtocolViolation("segment is missing its checksum byte")
    content = payload[:-CHECKSUM_SIZE]
    received = payload[-1]
    expected = compute_checksum(content)
    if received != expected:
        raise ChecksumMismatch(expected, received)
    return content


# ------------------------------------------------------------------
# Request payload
# ------------------------------------------------------------------

def encode_request_name(name: str) -> bytes:
    """UTF-8 name plus one NUL terminator."""
    if not name:
        raise ValueError("resource name must not be empty")
    return name.encode("utf-8") + b"\0"


def decode_request_name(payload: bytes) -> str:
    if payload.endswith(b"\0"):
        payload = payload[:-1]
    if not payload or b"\0" in payload:
        raise ProtocolViolation("malformed resource name in request")
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolViolation(f"resource name is not valid UTF-8: {e}") from e
