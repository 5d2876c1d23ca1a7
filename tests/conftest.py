# conftest.py
import sys
import socket
import threading
import time
from collections import deque
from pathlib import Path
from typing import Iterable, List, Optional

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fileshare import FileShareServer, FileShareClient, MessageChannel, ServiceConfig


class ScriptedChannel:
    """
    In-memory stand-in for MessageChannel.
    receive() pops from `inbound` and returns None once it is drained
    (same as a peer disconnect); send() records into `sent`.
    """

    def __init__(self, inbound: Iterable[bytes] = ()):
        self.inbound = deque(inbound)
        self.sent: List[bytes] = []
        self.fail_sends = False
        self.closed = False

    def send(self, message: bytes) -> bool:
        if self.fail_sends:
            return False
        self.sent.append(bytes(message))
        return True

    def send_text(self, text: str) -> bool:
        return self.send(text.encode('utf-8'))

    def receive(self) -> Optional[bytes]:
        if not self.inbound:
            return None
        return self.inbound.popleft()

    def receive_text(self) -> Optional[str]:
        message = self.receive()
        return None if message is None else message.decode('utf-8', errors='replace')

    def close(self) -> None:
        self.closed = True

    @property
    def sent_text(self) -> List[str]:
        return [m.decode('utf-8', errors='replace') for m in self.sent]


@pytest.fixture
def scripted_channel():
    return ScriptedChannel


@pytest.fixture
def server_output_dir(tmp_path: Path) -> Path:
    output = tmp_path / "server_files"
    output.mkdir()
    return output


@pytest.fixture
def client_files_dir(tmp_path: Path) -> Path:
    return tmp_path / "client_files"


@pytest.fixture
def server_config(server_output_dir: Path, client_files_dir: Path) -> ServiceConfig:
    # Port 0: let the OS pick a free one
    return ServiceConfig(
        host='127.0.0.1',
        port=0,
        storage_root=server_output_dir,
        client_root=client_files_dir
    )


@pytest.fixture
def server_factory():
    """Starts FileShareServer instances in background threads and stops them after the test."""
    started = []

    def _start(config: ServiceConfig) -> FileShareServer:
        server = FileShareServer(config)
        thread = threading.Thread(target=server.start_server, daemon=True)
        thread.start()

        deadline = time.time() + 5.0
        while not server.running:
            if time.time() > deadline:
                pytest.fail("Server did not start within 5 seconds.")
            time.sleep(0.01)

        started.append((server, thread))
        return server

    yield _start

    for server, thread in started:
        server.shutdown()
        thread.join(timeout=2.0)


@pytest.fixture
def running_server(server_factory, server_config: ServiceConfig) -> FileShareServer:
    return server_factory(server_config)


@pytest.fixture
def raw_channel():
    """Opens MessageChannels straight to a server port (no client driver)."""
    opened = []

    def _open(port: int, config: Optional[ServiceConfig] = None) -> MessageChannel:
        config = config or ServiceConfig()
        sock = socket.create_connection(('127.0.0.1', port), timeout=5.0)
        channel = MessageChannel(sock, config.key, config.max_message_size)
        opened.append(channel)
        return channel

    yield _open

    for channel in opened:
        channel.close()


@pytest.fixture
def client_factory():
    clients = []

    def _connect(config: ServiceConfig, port: int) -> FileShareClient:
        client = FileShareClient(config, host='127.0.0.1', port=port)
        client.connect()
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        client.close()


@pytest.fixture
def connected_client(client_factory, running_server: FileShareServer, server_config: ServiceConfig) -> FileShareClient:
    client = client_factory(server_config, running_server.port)
    assert client.authenticate("user", "pass123") is True
    return client


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def eventually():
    return wait_for
