#!/usr/bin/env python3
"""
test_client_driver.py

RemoteShellClient against a scripted peer on a socketpair:
handshake passes, command gating, upload exclusivity and disconnects.
"""

import socket
import threading
import time
from unittest.mock import patch

import pytest

from conftest import wait_for
from remote_shell import (
    ABANDONED,
    AUTH_FAILURE,
    AUTH_SUCCESS,
    LOGIN_PROMPT,
    PASSWORD_PROMPT,
    SEND_FILE_NAME,
    SEND_FILE_SIZE,
    UPLOAD_PREFIX,
    EventKind,
    FileTransferChannel,
    LineStream,
    NotAuthenticatedError,
    RemoteShellClient,
    SessionState,
    TransferInProgressError,
)


@pytest.fixture
def scripted():
    """A client attached to one end of a socketpair; the test plays the server"""
    client_sock, server_sock = socket.socketpair()
    server_sock.settimeout(5)
    client = RemoteShellClient(reply_timeout=5)
    lines = []
    client.events.subscribe(lambda e: lines.append(e.payload) if e.kind is EventKind.LOG_LINE else None)
    client.attach(client_sock, "fake:1")
    srv = LineStream(server_sock)
    yield client, srv, lines
    client.disconnect()
    srv.close()


def logged_in(client, srv):
    for line in (LOGIN_PROMPT, PASSWORD_PROMPT, AUTH_SUCCESS):
        srv.write_line(line)
    result = client.submit_credentials("operator", "s3cret")
    assert srv.read_line() == "operator"
    assert srv.read_line() == "s3cret"
    return result


### 1. Handshake
def test_successful_login_starts_reader(scripted):
    client, srv, lines = scripted

    result = logged_in(client, srv)

    assert result.authenticated
    assert client.authenticated
    assert client.session.state is SessionState.AUTHENTICATED
    assert LOGIN_PROMPT in lines and PASSWORD_PROMPT in lines

    srv.write_line("hello from server")
    assert wait_for(lambda: "Server response: hello from server" in lines)


def test_failed_login_then_retry(scripted):
    client, srv, lines = scripted
    for line in (LOGIN_PROMPT, PASSWORD_PROMPT, AUTH_FAILURE, LOGIN_PROMPT, PASSWORD_PROMPT, AUTH_SUCCESS):
        srv.write_line(line)
    attempts = iter([("operator", "wrong"), ("operator", "s3cret")])

    result = client.login(lambda: next(attempts))

    assert result.authenticated
    assert [srv.read_line() for _ in range(4)] == ["operator", "wrong", "operator", "s3cret"]
    assert AUTH_FAILURE in lines
    assert "Do you want to try again?" in lines


def test_quit_during_login(scripted):
    client, srv, lines = scripted
    srv.write_line(LOGIN_PROMPT)
    srv.write_line(ABANDONED)

    result = client.login(lambda: None)

    assert result.abandoned
    assert not result.authenticated
    assert srv.read_line() == "quit"
    assert not client.connected
    assert ABANDONED in lines


def test_server_drops_during_login(scripted):
    client, srv, _ = scripted
    srv.write_line(LOGIN_PROMPT)
    srv.sock.shutdown(socket.SHUT_WR)

    with pytest.raises(ConnectionAbortedError):
        client.submit_credentials("operator", "s3cret")
    assert not client.connected


### 2. Commands
def test_commands_require_authentication(scripted, tmp_path):
    client, _, lines = scripted
    source = tmp_path / "f.txt"
    source.write_text("x")

    with pytest.raises(NotAuthenticatedError):
        client.send_command("ls")
    with pytest.raises(NotAuthenticatedError):
        client.send_file(source)
    assert "Error: you must be connected to send a command." in lines


def test_blank_and_upload_commands_are_refused_locally(scripted):
    client, srv, _ = scripted
    logged_in(client, srv)

    for text in ("", "   ", "\t"):
        with pytest.raises(ValueError):
            client.send_command(text)
    with pytest.raises(ValueError):
        client.send_command(UPLOAD_PREFIX + "/etc/hosts")

    client.send_command("ls -l")
    assert srv.read_line() == "ls -l"


@pytest.mark.parametrize("text", ["echo a\nupload:/x", "echo a\r\necho b", "echo a\r"])
def test_multiline_commands_are_refused_locally(scripted, text):
    client, srv, _ = scripted
    logged_in(client, srv)

    with pytest.raises(ValueError):
        client.send_command(text)

    client.send_command("echo b")
    assert srv.read_line() == "echo b"
    assert client.history == ("echo b",)


def test_history_records_sent_commands(scripted):
    client, srv, _ = scripted
    logged_in(client, srv)

    client.send_command("pwd")
    client.send_command("whoami")

    assert client.history == ("pwd", "whoami")
    assert srv.read_line() == "pwd"
    assert srv.read_line() == "whoami"


### 3. Uploads
def test_upload_control_tokens_are_not_logged(scripted, tmp_path):
    client, srv, lines = scripted
    logged_in(client, srv)
    source = tmp_path / "report.txt"
    source.write_bytes(b"quarterly numbers")

    worker = client.start_upload(source)
    assert srv.read_line() == f"{UPLOAD_PREFIX}{source.resolve()}"
    stored = FileTransferChannel().receive(srv, tmp_path / "out")
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert stored.read_bytes() == b"quarterly numbers"
    assert "Upload of report.txt complete (17 bytes)." in lines
    assert f"Server response: {SEND_FILE_NAME}" not in lines
    assert f"Server response: {SEND_FILE_SIZE}" not in lines
    assert not client.uploading


def test_send_file_blocks_until_confirmed(scripted, tmp_path):
    client, srv, _ = scripted
    logged_in(client, srv)
    source = tmp_path / "small.bin"
    source.write_bytes(b"\x01\x02\x03")
    outcome = []

    uploader = threading.Thread(target=lambda: outcome.append(client.send_file(source)))
    uploader.start()
    srv.read_line()
    FileTransferChannel().receive(srv, tmp_path / "out")
    uploader.join(timeout=5)

    assert outcome == [True]


def test_no_interleaving_while_uploading(scripted, tmp_path):
    client, srv, _ = scripted
    logged_in(client, srv)
    source = tmp_path / "big.bin"
    source.write_bytes(b"z" * 50_000)

    worker = client.start_upload(source)
    assert client.uploading
    srv.read_line()

    with pytest.raises(TransferInProgressError):
        client.send_command("ls")
    with pytest.raises(TransferInProgressError):
        client.start_upload(source)

    FileTransferChannel().receive(srv, tmp_path / "out")
    worker.join(timeout=5)

    client.send_command("ls")
    assert srv.read_line() == "ls"


def test_missing_file_is_refused(scripted, tmp_path):
    client, srv, _ = scripted
    logged_in(client, srv)

    with pytest.raises(FileNotFoundError):
        client.send_file(tmp_path / "nope.bin")
    assert not client.uploading


def test_disconnect_cancels_upload(scripted, tmp_path):
    client, srv, lines = scripted
    logged_in(client, srv)
    source = tmp_path / "huge.bin"
    source.write_bytes(b"\x00" * (4 * 1024 * 1024))

    worker = client.start_upload(source)
    srv.read_line()
    srv.write_line(SEND_FILE_NAME)
    assert srv.read_line() == "huge.bin"
    srv.write_line(SEND_FILE_SIZE)
    assert srv.read_line() == str(4 * 1024 * 1024)
    # the peer stops reading, so the sender fills the socket buffer and blocks

    client.disconnect()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert not client.connected
    assert not client.uploading
    assert "Disconnected during upload. Transfer cancelled." in lines
    assert not any(line.startswith("Upload of huge.bin complete") for line in lines)


### 4. Disconnects
def test_disconnect_is_idempotent(scripted):
    client, srv, lines = scripted
    logged_in(client, srv)

    client.disconnect()
    client.disconnect()

    assert lines.count("Disconnected from server.") == 1
    assert client.session.state is SessionState.CLOSED
    assert srv.read_line() is None


def test_server_close_is_detected(scripted):
    client, srv, lines = scripted
    logged_in(client, srv)

    srv.close()

    assert wait_for(lambda: not client.connected)
    assert "Connection closed by server." in lines
    with pytest.raises(NotAuthenticatedError):
        client.send_command("ls")


### 5. Stream stays in step with the server
def test_slow_command_before_upload_keeps_stream_in_step(scripted, tmp_path):
    client, srv, lines = scripted
    logged_in(client, srv)
    client.reply_timeout = 0.2
    source = tmp_path / "late.txt"
    source.write_bytes(b"late bytes")

    client.send_command("sleep 1")
    assert srv.read_line() == "sleep 1"
    worker = client.start_upload(source)
    assert srv.read_line().startswith(UPLOAD_PREFIX)
    # the server is still busy with the previous command
    time.sleep(0.6)
    srv.write_line("")
    stored = FileTransferChannel().receive(srv, tmp_path / "out")
    worker.join(timeout=5)

    assert stored.read_bytes() == b"late bytes"
    assert client.connected
    assert "Upload of late.txt complete (10 bytes)." in lines
    client.send_command("echo hi")
    assert srv.read_line() == "echo hi"


def test_upload_failure_after_request_disconnects(scripted, tmp_path):
    client, srv, lines = scripted
    logged_in(client, srv)
    source = tmp_path / "f.txt"
    source.write_text("x")

    with patch.object(client.channel, "send", side_effect=OSError("disk gone")):
        assert client.send_file(source) is False

    assert srv.read_line().startswith(UPLOAD_PREFIX)
    assert not client.connected
    assert "File transfer failed: disk gone" in lines
    assert not client.uploading


def test_session_record_holds_stream(scripted):
    client, srv, _ = scripted
    logged_in(client, srv)

    assert client.session.stream is client._stream
    assert client.session.remote_address == "fake:1"
