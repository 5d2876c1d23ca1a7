#!/usr/bin/env python3
"""
Concurrency and connection supervision tests.
Sessions run in independent threads; the acceptor never waits for them.
"""

import dataclasses
import hashlib
import os
import threading
import time
from typing import Any, List

import pytest

from fileshare import FileShareClient, ServiceConfig

CONCURRENT_THREADS = 20


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def client_upload_worker(config: ServiceConfig, port: int, filename: str, barrier: threading.Barrier, results: list):
    client = None
    try:
        client = FileShareClient(config, host='127.0.0.1', port=port)
        client.connect()
        assert client.authenticate("user", "pass123")
        barrier.wait(timeout=10)
        client.upload(filename)
        results.append(filename)
    except Exception as e:
        results.append(e)
    finally:
        if client:
            client.quit()


def test_concurrent_uploads_of_distinct_files(running_server, server_config, client_files_dir, server_output_dir):
    client_files_dir.mkdir(parents=True, exist_ok=True)
    expected = {}
    for i in range(CONCURRENT_THREADS):
        name = f"stress_file_{i:03d}.dat"
        data = os.urandom(10 * 1024)
        (client_files_dir / name).write_bytes(data)
        expected[name] = sha256_bytes(data)

    barrier = threading.Barrier(CONCURRENT_THREADS)
    results: List[Any] = []
    threads = [
        threading.Thread(
            target=client_upload_worker,
            args=(server_config, running_server.port, name, barrier, results)
        )
        for name in expected
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    exceptions = [r for r in results if isinstance(r, Exception)]
    assert not exceptions, f"Errors during concurrent upload: {exceptions}"
    assert sorted(results) == sorted(expected)

    for name, digest in expected.items():
        assert sha256_bytes((server_output_dir / name).read_bytes()) == digest


def test_sessions_are_independent(running_server, raw_channel):
    stalled = raw_channel(running_server.port)
    stalled.send_text("AUTH user pass123")
    assert stalled.receive_text() == "AUTH_SUCCESS"
    stalled.send_text("UPLOAD stalled.bin 1000")
    assert stalled.receive_text() == "OK_UPLOAD"
    # `stalled` now blocks its own session thread waiting for bytes

    other = raw_channel(running_server.port)
    other.send_text("AUTH admin adminpass")
    assert other.receive_text() == "AUTH_SUCCESS"
    other.send_text("LIST")
    assert other.receive_text() == "stalled.bin"


def test_connection_limit_refuses_extra_clients(server_factory, server_config, raw_channel, eventually):
    server = server_factory(dataclasses.replace(server_config, max_connections=1))

    first = raw_channel(server.port)
    first.send_text("AUTH user pass123")
    assert first.receive_text() == "AUTH_SUCCESS"

    refused = raw_channel(server.port)
    refused.send_text("AUTH user pass123")
    assert refused.receive() is None

    first.send_text("QUIT")
    assert first.receive() is None
    assert eventually(lambda: not any(t.is_alive() for t in server.active_threads))

    again = raw_channel(server.port)
    again.send_text("AUTH user pass123")
    assert again.receive_text() == "AUTH_SUCCESS"


def test_unbounded_by_default(running_server, raw_channel):
    channels = [raw_channel(running_server.port) for _ in range(10)]
    for channel in channels:
        channel.send_text("AUTH user pass123")
    for channel in channels:
        assert channel.receive_text() == "AUTH_SUCCESS"


def test_idle_timeout_closes_silent_connection(server_factory, server_config, raw_channel):
    server = server_factory(dataclasses.replace(server_config, idle_timeout=0.2))
    channel = raw_channel(server.port)
    time.sleep(0.5)
    assert channel.receive() is None


def test_shutdown_stops_accepting(server_factory, server_config):
    server = server_factory(server_config)
    port = server.port
    server.shutdown()
    assert server.running is False

    client = FileShareClient(server_config, host='127.0.0.1', port=port)
    with pytest.raises(OSError):
        client.connect()
