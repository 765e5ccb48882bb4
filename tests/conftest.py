import socket

import pytest

from segfetch.network_io import Session


@pytest.fixture
def session_pair():
    """Two connected in-process Sessions: (requester_side, provider_side)."""
    a, b = socket.socketpair()
    left, right = Session(a, peer=("local", 1)), Session(b, peer=("local", 2))
    yield left, right
    left.close()
    right.close()


@pytest.fixture
def free_port():
    """A TCP port nothing is listening on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
