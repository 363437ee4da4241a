# conftest.py
import dataclasses
import socket
import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from remote_shell import (
    ClientRegistry,
    EventBus,
    LineStream,
    RemoteShellServer,
    ServerConfig,
    SessionHandler,
)
from secure_transport import TransportConfig, generate_self_signed_cert

TEST_LOGIN = "operator"
TEST_PASSWORD = "s3cret"


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Active wait instead of fixed sleeps"""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture(scope="session")
def certificate(tmp_path_factory):
    """Self-signed certificate shared by every TLS test"""
    cert_dir = tmp_path_factory.mktemp("certs")
    return generate_self_signed_cert(cert_dir / "server.crt", cert_dir / "server.key")


@pytest.fixture
def server_config(tmp_path, certificate):
    cert_path, key_path = certificate
    return ServerConfig(
        host="127.0.0.1",
        port=0,
        login=TEST_LOGIN,
        password=TEST_PASSWORD,
        output_dir=tmp_path / "server_output",
        transport=TransportConfig(certfile=str(cert_path), keyfile=str(key_path)),
    )


@pytest.fixture
def client_transport(certificate):
    cert_path, _ = certificate
    return TransportConfig(certfile=None, keyfile=None, cafile=str(cert_path), server_hostname="localhost")


@pytest.fixture
def server(server_config):
    """
    Starts the TLS server in a thread on a free port (port=0)
    and shuts it down after the test.
    """
    server_node = RemoteShellServer(server_config)
    server_thread = server_node.start(timeout=10)

    yield server_node

    server_node.shutdown()
    server_thread.join(timeout=2)


@pytest.fixture
def handler_session(server_config):
    """
    Runs a SessionHandler over a socketpair (no TLS at this seam).
    Returns a factory; keyword arguments override ServerConfig fields.
    """
    sessions = []

    def start(**overrides):
        config = dataclasses.replace(server_config, **overrides) if overrides else server_config
        server_sock, client_sock = socket.socketpair()
        client_sock.settimeout(5)
        events = EventBus()
        registry = ClientRegistry(events)
        handler = SessionHandler(server_sock, "peer:1", config, registry, events)
        thread = threading.Thread(target=handler.run, daemon=True)
        thread.start()
        session = SimpleNamespace(
            handler=handler,
            peer=LineStream(client_sock),
            sock=client_sock,
            registry=registry,
            events=events,
            thread=thread,
            config=config,
        )
        sessions.append(session)
        return session

    yield start

    for session in sessions:
        session.peer.close()
        session.thread.join(timeout=2)


def peer_login(peer: LineStream, login: str = TEST_LOGIN, password: str = TEST_PASSWORD) -> str:
    """Plays the client half of one handshake pass, returns the result line"""
    peer.read_line()
    peer.write_line(login)
    peer.read_line()
    peer.write_line(password)
    return peer.read_line()
