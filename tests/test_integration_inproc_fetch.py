import logging
import os
import socket
import threading

import pytest

from segfetch import send_engine
from segfetch.config import SegfetchConfig
from segfetch.node import create_provider, request
from segfetch.protocol import FILE_TAG, HEADER_SIZE, encode_header, encode_request_name, encode_segment
from segfetch.receive_engine import OutcomeStatus
from segfetch.send_engine import ProviderState


@pytest.fixture
def resource_root(tmp_path):
    root = tmp_path / "files"
    root.mkdir()
    (root / "a.txt").write_bytes(b"abcdefghij")
    (root / "b.txt").write_bytes(os.urandom(600))
    return root


def _start_provider(root, max_connections, concurrent=False):
    """Bind on an ephemeral port and serve in a background thread."""
    config = SegfetchConfig()
    config.server.concurrent = concurrent
    provider = create_provider(host="127.0.0.1", port=0, resource_root=str(root), config=config)
    listener = provider.start()
    thread = threading.Thread(
        target=provider.serve_forever,
        kwargs={"max_connections": max_connections},
        daemon=True,
    )
    thread.start()
    return provider, listener.address, thread


def _fetch(address, name, out_dir):
    return request(address, name, output_dir=str(out_dir), config=SegfetchConfig())


def test_sequential_clients_receive_correct_files(resource_root, tmp_path):
    out_dir = tmp_path / "out"
    provider, address, thread = _start_provider(resource_root, max_connections=3)

    first = _fetch(address, "a.txt", out_dir)
    second = _fetch(address, "b.txt", out_dir)
    third = _fetch(address, "missing.txt", out_dir)
    thread.join(timeout=10.0)
    assert not thread.is_alive()

    assert first.status is OutcomeStatus.RECEIVED
    assert first.size == 10
    assert first.segments == 1
    assert open(first.path, "rb").read() == b"abcdefghij"

    assert second.status is OutcomeStatus.RECEIVED
    assert second.size == 600
    assert second.segments == 2
    assert open(second.path, "rb").read() == (resource_root / "b.txt").read_bytes()

    assert third.status is OutcomeStatus.ABSENT
    assert sorted(os.listdir(out_dir)) == ["received_a.txt", "received_b.txt"]

    assert provider.stats.connections == 3
    assert provider.stats.completed == 2
    assert provider.stats.absent == 1
    assert provider.stats.failed == 0
    assert provider.active_sessions == 0
    assert provider.open_handles == 0
    assert provider.state is ProviderState.CLOSED


def test_concurrent_mode_serves_parallel_clients(resource_root, tmp_path):
    provider, address, thread = _start_provider(resource_root, max_connections=4, concurrent=True)
    outcomes = {}

    def worker(index, name):
        outcomes[index] = _fetch(address, name, tmp_path / f"out{index}")

    workers = [
        threading.Thread(target=worker, args=(i, "a.txt" if i % 2 else "b.txt"))
        for i in range(4)
    ]
    for w in workers:
        w.start()
    for w in workers:
        w.join(timeout=10.0)
    thread.join(timeout=10.0)

    assert all(o.status is OutcomeStatus.RECEIVED for o in outcomes.values())
    assert outcomes[1].size == 10
    assert outcomes[0].size == 600
    assert provider.stats.completed == 4
    assert provider.active_sessions == 0
    assert provider.open_handles == 0


def test_corrupted_segment_is_detected_end_to_end(resource_root, tmp_path, monkeypatch):
    sent = []

    def corrupting_encode_segment(content):
        raw = bytearray(encode_segment(content))
        sent.append(len(content))
        if len(sent) == 2:
            raw[-1] ^= 0x10
        return bytes(raw)

    monkeypatch.setattr(send_engine, "encode_segment", corrupting_encode_segment)
    out_dir = tmp_path / "out"
    provider, address, thread = _start_provider(resource_root, max_connections=1)

    outcome = _fetch(address, "b.txt", out_dir)
    thread.join(timeout=10.0)

    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.kind == "ChecksumMismatch"
    assert not outcome.ok
    assert not os.path.exists(out_dir / "received_b.txt")
    assert os.listdir(out_dir) == []
    assert provider.active_sessions == 0


def test_request_to_unreachable_provider(free_port, tmp_path):
    outcome = _fetch(("127.0.0.1", free_port), "a.txt", tmp_path)
    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.kind == "ConnectError"


def test_requester_leaving_mid_transfer_does_not_stop_service(resource_root, tmp_path, caplog):
    (resource_root / "big.bin").write_bytes(b"\x5a" * (32 * 1024 * 1024))
    provider, address, thread = _start_provider(resource_root, max_connections=2)

    with caplog.at_level(logging.WARNING, logger="segfetch.send_engine"):
        quitter = socket.create_connection(address)
        payload = encode_request_name("big.bin")
        quitter.sendall(encode_header(FILE_TAG, len(payload)) + payload)
        assert quitter.recv(HEADER_SIZE, socket.MSG_WAITALL) == encode_header(FILE_TAG, 32 * 1024 * 1024)
        quitter.recv(1024)
        quitter.close()

        follower = _fetch(address, "a.txt", tmp_path / "out")
        thread.join(timeout=30.0)

    assert not thread.is_alive()
    assert follower.status is OutcomeStatus.RECEIVED
    assert open(follower.path, "rb").read() == b"abcdefghij"
    assert provider.stats.failed == 1
    assert provider.stats.completed == 1
    assert "ShortWrite" in caplog.text
    assert provider.active_sessions == 0
    assert provider.open_handles == 0


def test_symlink_loop_does_not_stop_sequential_service(resource_root, tmp_path):
    os.symlink("loop", str(resource_root / "loop"))
    provider, address, thread = _start_provider(resource_root, max_connections=3)

    looped = _fetch(address, "loop", tmp_path / "out")
    nested = _fetch(address, "a.txt/x", tmp_path / "out")
    after = _fetch(address, "a.txt", tmp_path / "out")
    thread.join(timeout=10.0)

    assert looped.status is OutcomeStatus.ABSENT
    assert nested.status is OutcomeStatus.ABSENT
    assert after.status is OutcomeStatus.RECEIVED
    assert provider.stats.absent == 2
    assert provider.stats.failed == 0
