"""
segfetch: point-to-point file retrieval over TCP

A requester connects to a provider, asks for a named file, and either
learns that it does not exist or receives it as a sequence of segments,
each carrying a one-byte checksum. The package provides:
- a fixed 5-byte frame header (tag + 32-bit length, network byte order)
- blocking TCP sessions with exact-length reads and writes
- requester and provider state machines
"""

__version__ = "0.1.0"

from .config import SegfetchConfig, load_config
from .node import create_provider, create_requester, request, serve_forever
from .receive_engine import Outcome, OutcomeStatus

__all__ = [
    'SegfetchConfig',
    'load_config',
    'create_provider',
    'create_requester',
    'request',
    'serve_forever',
    'Outcome',
    'OutcomeStatus',
]
