#!/usr/bin/env python3
"""
Secure Remote Shell
TLS protected remote command execution with file upload
Thread-per-connection server, background-reader client
"""

import argparse
import getpass
import hmac
import json
import locale
import logging
import os
import queue
import re
import signal
import socket
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Set, Tuple

from jsonschema import validate, ValidationError

from secure_transport import (
    TransportConfig,
    accept_tls,
    cert_fingerprint_sha256,
    create_server_context,
    generate_self_signed_cert,
    open_tls_connection,
)

DEFAULT_PORT = 12345
DEFAULT_LOGIN = "bouba"
DEFAULT_PASSWORD = "passer"
BUFFER_SIZE = 8192
MAX_LINE_LENGTH = 64 * 1024
MAX_FILE_SIZE = 10 * 1024 * 1024 * 1024
MAX_GLOBAL_CONNECTIONS = 50
LISTEN_BACKLOG = 5
ACCEPT_POLL_INTERVAL = 0.5
REPLY_TIMEOUT = 30
OUTPUT_DIR = Path("received")
RECEIVED_PREFIX = "received_"
PARTIAL_SUFFIX = ".part"
DEFAULT_LOG_FILE = "server_log.txt"
ENCODING = "utf-8"

UPLOAD_PREFIX = "upload:"
SEND_FILE_NAME = "SEND_FILE_NAME"
SEND_FILE_SIZE = "SEND_FILE_SIZE"
CONTROL_TOKENS = frozenset({SEND_FILE_NAME, SEND_FILE_SIZE})
QUIT_COMMAND = "quit"

LOGIN_PROMPT = "Enter your login (or 'quit' to exit):"
PASSWORD_PROMPT = "Enter your password:"
AUTH_SUCCESS_MARKER = "Authentication successful"
AUTH_SUCCESS = AUTH_SUCCESS_MARKER + ". You are connected."
AUTH_FAILURE = "Authentication failed. Please try again."
ABANDONED = "Connection abandoned."
FILE_RECEIVED = "File received and saved."
INVALID_SIZE = "ERROR: invalid file size"
STDERR_PREFIX = "ERROR: "

_SIZE_PATTERN = re.compile(r"[0-9]+")

_TIMEOUT_SCHEMA = {"type": ["number", "null"], "exclusiveMinimum": 0}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "host": {"type": "string"},
        "port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "login": {"type": "string", "minLength": 1},
        "password": {"type": "string"},
        "output_dir": {"type": "string", "minLength": 1},
        "command_timeout": _TIMEOUT_SCHEMA,
        "idle_timeout": _TIMEOUT_SCHEMA,
        "max_file_size": {"type": "integer", "minimum": 0},
        "max_connections": {"type": "integer", "minimum": 1},
        "chunk_size": {"type": "integer", "minimum": 1},
        "transport": {
            "type": "object",
            "properties": {
                "certfile": {"type": ["string", "null"]},
                "keyfile": {"type": ["string", "null"]},
                "cafile": {"type": ["string", "null"]},
                "check_hostname": {"type": "boolean"},
                "server_hostname": {"type": ["string", "null"]},
                "handshake_timeout": {"type": "number", "exclusiveMinimum": 0},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

logger = logging.getLogger(__name__)


def setup_logging(log_file: Optional[str] = DEFAULT_LOG_FILE, level: int = logging.INFO,
                  console_level: Optional[int] = None) -> None:
    """Console output plus the append-only event log file"""
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s')
    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.setLevel(console_level if console_level is not None else level)
    root.addHandler(console)

    if log_file:
        handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5, encoding='utf-8')
        handler.setFormatter(formatter)
        root.addHandler(handler)


# --- Errors ---

class RemoteShellError(Exception):
    """Base class for remote shell failures"""


class ConfigError(RemoteShellError):
    pass


class ProtocolError(RemoteShellError):
    """Peer violated the line protocol; fatal to the session"""


class IncompleteTransferError(ProtocolError):
    """Stream ended before the declared byte count was consumed"""

    def __init__(self, expected: int, received: int):
        super().__init__(f"Expected {expected} bytes, got {received}")
        self.expected = expected
        self.received = received


class TransferCancelledError(IncompleteTransferError):
    """Session was torn down between two chunks"""


class NotAuthenticatedError(RemoteShellError, ConnectionError):
    pass


class TransferInProgressError(RemoteShellError):
    pass


# --- Events ---

class EventKind(Enum):
    LOG_LINE = "log_line"
    CLIENT_CONNECTED = "client_connected"
    CLIENT_DISCONNECTED = "client_disconnected"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    payload: str
    timestamp: datetime = field(default_factory=datetime.now)

    def format(self) -> str:
        return f"[{self.timestamp:%Y-%m-%d %H:%M:%S}] {self.payload}"


class EventBus:
    """
    Thread-safe publish/subscribe hub.
    Every event is also written through the module logger, so the
    configured file handler receives the full event log.
    """

    def __init__(self):
        self._subscribers: List[Callable[[Event], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return unsubscribe

    def emit(self, kind: EventKind, payload: str, level: int = logging.INFO) -> Event:
        event = Event(kind, payload)
        if kind is EventKind.LOG_LINE:
            logger.log(level, payload)
        else:
            logger.log(level, f"{kind.value}: {payload}")

        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Event subscriber failed: {e}")
        return event

    def log(self, message: str, level: int = logging.INFO) -> Event:
        return self.emit(EventKind.LOG_LINE, message, level)


# --- Registry ---

class ClientRegistry:
    """Set of remote addresses whose sessions are currently authenticated"""

    def __init__(self, events: Optional[EventBus] = None):
        self.events = events or EventBus()
        self._clients: Set[str] = set()
        self._lock = threading.Lock()

    def add(self, address: str) -> bool:
        with self._lock:
            if address in self._clients:
                return False
            self._clients.add(address)
        self.events.emit(EventKind.CLIENT_CONNECTED, address)
        return True

    def remove(self, address: str) -> bool:
        with self._lock:
            if address not in self._clients:
                return False
            self._clients.remove(address)
        self.events.emit(EventKind.CLIENT_DISCONNECTED, address)
        return True

    def clear(self) -> List[str]:
        with self._lock:
            removed = sorted(self._clients)
            self._clients.clear()
        for address in removed:
            self.events.emit(EventKind.CLIENT_DISCONNECTED, address)
        return removed

    def snapshot(self) -> frozenset:
        with self._lock:
            return frozenset(self._clients)

    def subscribe(self, callback: Callable[[Event], None]) -> Callable[[], None]:
        """Receives only connect/disconnect events"""
        def forward(event: Event):
            if event.kind is not EventKind.LOG_LINE:
                callback(event)
        return self.events.subscribe(forward)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)


# --- Authentication ---

@dataclass(frozen=True)
class Credential:
    login: str
    password: str


@dataclass(frozen=True)
class AuthResult:
    authenticated: bool
    message: str
    abandoned: bool = False


class AuthenticationService:
    """
    Checks a login/password pair against the single pair held by the server.
    Plain-text exact match, no lockout and no attempt counting.
    """

    def __init__(self, login: str, password: str):
        self._expected = Credential(login, password)

    def authenticate(self, login: Optional[str], password: Optional[str]) -> bool:
        if login is None or password is None:
            return False
        login_ok = hmac.compare_digest(login.encode(ENCODING), self._expected.login.encode(ENCODING))
        password_ok = hmac.compare_digest(password.encode(ENCODING), self._expected.password.encode(ENCODING))
        return login_ok and password_ok


# --- Command execution ---

@dataclass
class CommandResult:
    output: str
    exit_code: Optional[int]
    timed_out: bool = False


class CommandExecutor:
    """
    Runs one command line through the host shell and folds every outcome,
    including spawn failures and timeouts, into the returned text.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.encoding = locale.getpreferredencoding(False)

    def execute(self, command_line: str) -> str:
        return self.run(command_line).output

    def run(self, command_line: str) -> CommandResult:
        try:
            process = subprocess.Popen(
                command_line,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            return CommandResult(f"Execution failed: {e}", None)

        timed_out = False
        try:
            stdout, stderr = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill(process)
            stdout, stderr = process.communicate()

        output = self._combine(stdout, stderr)
        if timed_out:
            notice = f"Command timed out after {self.timeout:g} seconds."
            output = f"{output}\n{notice}" if output else notice
        return CommandResult(output, process.returncode, timed_out)

    def _combine(self, stdout: bytes, stderr: bytes) -> str:
        lines = stdout.decode(self.encoding, errors="replace").splitlines()
        lines += [STDERR_PREFIX + line for line in stderr.decode(self.encoding, errors="replace").splitlines()]
        return "\n".join(lines).strip()

    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        # shell=True puts the real command in a grandchild; kill the whole group
        if os.name == "posix":
            try:
                os.killpg(process.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                return
        process.kill()


# --- Stream and file transfer ---

class BoundedReader:
    """Yields exactly `size` bytes from a binary stream, or raises IncompleteTransferError"""

    def __init__(self, stream: BinaryIO, size: int, chunk_size: int = BUFFER_SIZE,
                 should_continue: Optional[Callable[[], bool]] = None):
        self.stream = stream
        self.size = size
        self.chunk_size = chunk_size
        self.should_continue = should_continue
        self.received = 0

    def __iter__(self) -> Iterator[bytes]:
        while self.received < self.size:
            if self.should_continue is not None and not self.should_continue():
                raise TransferCancelledError(self.size, self.received)
            chunk = self.stream.read(min(self.chunk_size, self.size - self.received))
            if not chunk:
                raise IncompleteTransferError(self.size, self.received)
            self.received += len(chunk)
            yield chunk


class LineStream:
    """UTF-8 lines and raw bytes over one connected socket"""

    def __init__(self, sock: socket.socket, max_line_length: Optional[int] = None):
        self.sock = sock
        self.max_line_length = max_line_length
        self._reader = sock.makefile("rb")
        self._write_lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def read_line(self) -> Optional[str]:
        """Next line without its terminator, None on EOF"""
        if self.max_line_length:
            raw = self._reader.readline(self.max_line_length)
            if len(raw) >= self.max_line_length and not raw.endswith(b"\n"):
                raise ProtocolError(f"Line exceeds {self.max_line_length} bytes")
        else:
            raw = self._reader.readline()
        if not raw:
            return None
        return raw.decode(ENCODING, errors="replace").rstrip("\r\n")

    def read_exactly(self, size: int, chunk_size: int = BUFFER_SIZE,
                     should_continue: Optional[Callable[[], bool]] = None) -> BoundedReader:
        return BoundedReader(self._reader, size, chunk_size, should_continue)

    def write_line(self, text: str) -> None:
        self.write_bytes(text.encode(ENCODING) + b"\n")

    def write_bytes(self, data) -> None:
        with self._write_lock:
            self.sock.sendall(data)

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        # unblocks a reader sitting in recv() on another thread
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        for resource in (self.sock, self._reader):
            try:
                resource.close()
            except (OSError, ValueError) as e:
                logger.debug(f"Error while closing stream: {e}")


@dataclass(frozen=True)
class FileTransferRequest:
    declared_name: str
    declared_size: int


def parse_declared_size(text: str, max_size: int = MAX_FILE_SIZE) -> int:
    candidate = text.strip()
    if not _SIZE_PATTERN.fullmatch(candidate):
        raise ProtocolError(f"Invalid declared size: {text!r}")
    size = int(candidate)
    if size > max_size:
        raise ProtocolError(f"Declared size {size} exceeds the limit of {max_size} bytes")
    return size


def sanitize_filename(filename: str) -> str:
    """Sanitize filename to prevent path traversal"""
    filename = os.path.basename(filename)
    filename = re.sub(r'[^\w\s\-\.]', '', filename)

    if len(filename) > 255:
        name, ext = os.path.splitext(filename)
        if len(ext) > 21:
            ext = ext[:21]
        name = name[:255 - len(ext)]
        filename = name + ext

    reserved = ['CON', 'PRN', 'AUX', 'NUL', 'COM1', 'LPT1']
    if filename.upper().split('.')[0] in reserved:
        filename = f"safe_{filename}"
    return filename or "unnamed_file"


class FileTransferChannel:
    """
    Upload sub-protocol, identical on both ends of the stream:

    1. receiver -> SEND_FILE_NAME, sender -> bare file name
    2. receiver -> SEND_FILE_SIZE, sender -> decimal byte count
    3. sender -> exactly that many raw bytes, unframed
    4. receiver -> confirmation line once every byte is on disk
    """

    def __init__(self, chunk_size: int = BUFFER_SIZE, max_file_size: int = MAX_FILE_SIZE,
                 log: Optional[Callable[..., Any]] = None):
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self._log = log or (lambda message, level=logging.INFO: logger.log(level, message))

    def read_request(self, stream: LineStream) -> FileTransferRequest:
        stream.write_line(SEND_FILE_NAME)
        name = stream.read_line()
        if name is None:
            raise ConnectionAbortedError("Peer closed the stream before sending the file name")

        stream.write_line(SEND_FILE_SIZE)
        size_line = stream.read_line()
        if size_line is None:
            raise ConnectionAbortedError("Peer closed the stream before sending the file size")
        try:
            size = parse_declared_size(size_line, self.max_file_size)
        except ProtocolError:
            stream.write_line(INVALID_SIZE)
            raise
        return FileTransferRequest(name, size)

    def receive(self, stream: LineStream, output_dir: Path,
                should_continue: Optional[Callable[[], bool]] = None) -> Path:
        """Stores the upload as received_<name>; a short stream leaves nothing behind"""
        request = self.read_request(stream)
        safe_name = sanitize_filename(request.declared_name)
        if safe_name != request.declared_name:
            self._log(f"Declared file name {request.declared_name!r} sanitized to {safe_name!r}", logging.WARNING)

        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        target = output_dir / f"{RECEIVED_PREFIX}{safe_name}"
        # one part file per transfer; concurrent uploads of one name must not share it
        fd, partial_name = tempfile.mkstemp(dir=output_dir, prefix=f".{target.name}.", suffix=PARTIAL_SUFFIX)
        partial = Path(partial_name)

        self._log(f"Receiving file {safe_name} ({request.declared_size} bytes)")
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in stream.read_exactly(request.declared_size, self.chunk_size, should_continue):
                    handle.write(chunk)
        except Exception:
            partial.unlink(missing_ok=True)
            raise
        os.replace(partial, target)

        self._log(f"File {safe_name} received successfully.")
        stream.write_line(FILE_RECEIVED)
        return target

    def send(self, stream: LineStream, local_path: Path,
             next_control: Optional[Callable[[], Optional[str]]] = None,
             should_continue: Optional[Callable[[], bool]] = None,
             on_payload_start: Optional[Callable[[], None]] = None) -> int:
        """
        Sender half. `next_control` supplies the receiver's control lines
        (defaults to reading them straight off the stream). Returns the
        number of payload bytes written; fewer than the file size means
        `should_continue` stopped the loop.
        """
        next_control = next_control or stream.read_line
        local_path = Path(local_path)
        total_size = local_path.stat().st_size

        self._expect(next_control(), SEND_FILE_NAME)
        stream.write_line(local_path.name)
        self._expect(next_control(), SEND_FILE_SIZE)
        stream.write_line(str(total_size))
        if on_payload_start:
            on_payload_start()

        sent = 0
        chunk_ba = bytearray(self.chunk_size)
        chunk_view = memoryview(chunk_ba)
        with local_path.open("rb") as source:
            while sent < total_size:
                if should_continue is not None and not should_continue():
                    self._log(f"Transfer of {local_path.name} stopped at {sent}/{total_size} bytes.", logging.WARNING)
                    return sent
                read_len = source.readinto(chunk_view[:min(self.chunk_size, total_size - sent)])
                if not read_len:
                    raise IncompleteTransferError(total_size, sent)
                stream.write_bytes(chunk_view[:read_len])
                sent += read_len
        return sent

    @staticmethod
    def _expect(line: Optional[str], token: str) -> None:
        if line is None:
            raise ConnectionAbortedError(f"Stream closed while waiting for {token}")
        if line != token:
            raise ProtocolError(f"Expected {token}, got {line!r}")


# --- Configuration ---

@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    login: str = DEFAULT_LOGIN
    password: str = DEFAULT_PASSWORD
    output_dir: Path = OUTPUT_DIR
    command_timeout: Optional[float] = None
    idle_timeout: Optional[float] = None
    max_file_size: int = MAX_FILE_SIZE
    max_connections: int = MAX_GLOBAL_CONNECTIONS
    chunk_size: int = BUFFER_SIZE
    transport: TransportConfig = field(default_factory=TransportConfig)

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)
        if isinstance(self.transport, dict):
            self.transport = TransportConfig(**self.transport)
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"Invalid port: {self.port}")
        if self.max_connections < 1:
            raise ConfigError("max_connections must be at least 1")
        if self.chunk_size < 1:
            raise ConfigError("chunk_size must be at least 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        try:
            validate(instance=data, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e.message}") from e
        return cls(**data)


def load_config(path) -> ServerConfig:
    """Reads and validates a JSON configuration file"""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    return ServerConfig.from_dict(data)


# --- Server ---

class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class SessionPhase(Enum):
    AWAITING_LOGIN = "awaiting_login"
    AWAITING_PASSWORD = "awaiting_password"
    COMMAND_LOOP = "command_loop"
    FILE_RECEIVE = "file_receive"
    CLOSED = "closed"


@dataclass
class Session:
    remote_address: str
    stream: Optional[LineStream] = None
    state: SessionState = SessionState.UNAUTHENTICATED


class SessionHandler:
    """Server side state machine for one accepted connection"""

    def __init__(self, conn: socket.socket, remote_address: str, config: ServerConfig,
                 registry: ClientRegistry, events: EventBus,
                 auth: Optional[AuthenticationService] = None,
                 executor: Optional[CommandExecutor] = None):
        self.conn = conn
        self.session = Session(remote_address)
        self.phase = SessionPhase.AWAITING_LOGIN
        self.config = config
        self.registry = registry
        self.events = events
        self.auth = auth or AuthenticationService(config.login, config.password)
        self.executor = executor or CommandExecutor(config.command_timeout)
        self.channel = FileTransferChannel(config.chunk_size, config.max_file_size, log=self.events.log)
        self._stream: Optional[LineStream] = None
        self._closing = threading.Event()
        self._cleanup_lock = threading.Lock()

    @property
    def remote_address(self) -> str:
        return self.session.remote_address

    def run(self) -> None:
        address = self.remote_address
        try:
            self.conn.settimeout(self.config.idle_timeout)
            self._stream = self.session.stream = LineStream(self.conn, MAX_LINE_LENGTH)
            if self._authenticate():
                self._command_loop()
                self.events.log(f"Client {address} closed the connection.")
        except ConnectionAbortedError as e:
            self.events.log(f"Client {address} connection closed: {e}")
        except IncompleteTransferError as e:
            self.events.log(f"Incomplete file transfer from {address}: {e}", logging.WARNING)
        except ProtocolError as e:
            self.events.log(f"Protocol error with client {address}: {e}", logging.ERROR)
        except (OSError, ValueError) as e:
            # ValueError: stream closed underneath us by close()
            if not self._closing.is_set():
                self.events.log(f"Error with client {address}: {e}", logging.ERROR)
        finally:
            self._cleanup()

    def close(self) -> None:
        """Asks the session to stop; cleanup still runs on the handling thread"""
        self._closing.set()
        if self._stream is not None:
            self._stream.close()
        else:
            try:
                self.conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def _is_active(self) -> bool:
        return not self._closing.is_set()

    def _authenticate(self) -> bool:
        address = self.remote_address
        while True:
            self.phase = SessionPhase.AWAITING_LOGIN
            self._stream.write_line(LOGIN_PROMPT)
            login = self._stream.read_line()
            if login is None or login.lower() == QUIT_COMMAND:
                self._send_abandon_notice()
                self.events.log(f"Client {address} abandoned authentication.")
                return False

            self.phase = SessionPhase.AWAITING_PASSWORD
            self._stream.write_line(PASSWORD_PROMPT)
            password = self._stream.read_line()

            if self.auth.authenticate(login, password):
                with self._cleanup_lock:
                    self.session.state = SessionState.AUTHENTICATED
                    self.registry.add(address)
                self.events.log(f"Client authenticated and connected: {address}")
                self._stream.write_line(AUTH_SUCCESS)
                return True

            self.events.log(f"Authentication failed for {address}", logging.WARNING)
            self._stream.write_line(AUTH_FAILURE)

    def _send_abandon_notice(self) -> None:
        try:
            self._stream.write_line(ABANDONED)
        except OSError as e:
            logger.debug(f"Could not deliver abandon notice to {self.remote_address}: {e}")

    def _command_loop(self) -> None:
        address = self.remote_address
        self.phase = SessionPhase.COMMAND_LOOP
        while self._is_active():
            line = self._stream.read_line()
            if line is None:
                return
            self.events.log(f"Command received from {address}: {line}")
            if line.startswith(UPLOAD_PREFIX):
                self.phase = SessionPhase.FILE_RECEIVE
                self.channel.receive(self._stream, self.config.output_dir, should_continue=self._is_active)
                self.phase = SessionPhase.COMMAND_LOOP
            else:
                self._stream.write_line(self.executor.execute(line))

    def _cleanup(self) -> None:
        with self._cleanup_lock:
            if self.session.state is SessionState.CLOSED:
                return
            was_authenticated = self.session.state is SessionState.AUTHENTICATED
            self.session.state = SessionState.CLOSED
            self.phase = SessionPhase.CLOSED
        if was_authenticated:
            self.registry.remove(self.remote_address)
        if self._stream is not None:
            self._stream.close()
        else:
            try:
                self.conn.close()
            except OSError as e:
                self.events.log(f"Error while closing client socket: {e}", logging.ERROR)


class RemoteShellServer:
    """Accepts TLS connections and runs one SessionHandler thread per client"""

    def __init__(self, config: Optional[ServerConfig] = None, events: Optional[EventBus] = None):
        self.config = config or ServerConfig()
        self.host = self.config.host
        self.port = self.config.port
        self.events = events or EventBus()
        self.registry = ClientRegistry(self.events)
        self.auth = AuthenticationService(self.config.login, self.config.password)
        self.executor = CommandExecutor(self.config.command_timeout)
        self.socket: Optional[socket.socket] = None
        self.running = False
        self.active_threads: List[threading.Thread] = []
        self._handlers: Set[SessionHandler] = set()
        self._handlers_lock = threading.Lock()
        self._ready = threading.Event()
        self._context = None

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def start(self, timeout: float = 10) -> threading.Thread:
        """Runs start_server() on a daemon thread, returns once the socket is bound"""
        thread = threading.Thread(target=self.start_server, name="Listener", daemon=True)
        thread.start()
        if not self.wait_until_ready(timeout):
            raise TimeoutError("Server did not start within the timeout")
        return thread

    def start_server(self) -> None:
        """Bind, then accept connections until shutdown()"""
        self._context = create_server_context(self.config.transport)
        self.config.output_dir.mkdir(parents=True, exist_ok=True)

        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind((self.host, self.port))
        self.port = self.socket.getsockname()[1]
        self.socket.listen(LISTEN_BACKLOG)
        self.socket.settimeout(ACCEPT_POLL_INTERVAL)
        self.running = True

        fingerprint = cert_fingerprint_sha256(Path(self.config.transport.certfile).read_bytes())
        self.events.log(f"TLS server started on port {self.port}. Waiting for secure connections...")
        self.events.log(f"Certificate SHA-256 fingerprint: {fingerprint}")
        self.events.log(f"Files output: {self.config.output_dir.resolve()}")
        self._ready.set()

        try:
            while self.running:
                try:
                    conn, addr = self.socket.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self.running:
                        self.events.log(f"TLS server error: {e}", logging.ERROR)
                    break
                self._dispatch(conn, addr)
        finally:
            self.shutdown()

    def _dispatch(self, conn: socket.socket, addr: Tuple[str, int]) -> None:
        self.active_threads = [t for t in self.active_threads if t.is_alive()]
        if len(self.active_threads) >= self.config.max_connections:
            self.events.log(f"Connection limit reached, refusing {addr[0]}:{addr[1]}", logging.WARNING)
            conn.close()
            return
        client_thread = threading.Thread(
            target=self._serve_connection,
            args=(conn, addr),
            name=f"ClientThread-{addr[0]}:{addr[1]}",
            daemon=True,
        )
        client_thread.start()
        self.active_threads.append(client_thread)

    def _serve_connection(self, conn: socket.socket, addr: Tuple[str, int]) -> None:
        remote_address = f"{addr[0]}:{addr[1]}"
        try:
            tls_conn = accept_tls(self._context, conn, self.config.transport.handshake_timeout)
        except (OSError, ValueError) as e:
            self.events.log(f"TLS handshake failed with {remote_address}: {e}", logging.WARNING)
            conn.close()
            return

        handler = SessionHandler(tls_conn, remote_address, self.config, self.registry,
                                 self.events, self.auth, self.executor)
        with self._handlers_lock:
            if not self.running:
                tls_conn.close()
                return
            self._handlers.add(handler)
        try:
            handler.run()
        finally:
            with self._handlers_lock:
                self._handlers.discard(handler)

    def shutdown(self) -> None:
        """Stops accepting, tears down every live session and empties the registry"""
        was_running = self.running
        self.running = False
        if self.socket:
            try:
                self.socket.close()
            except OSError as e:
                logger.debug(f"Error closing listening socket: {e}")

        with self._handlers_lock:
            handlers = list(self._handlers)
        for handler in handlers:
            handler.close()

        if was_running:
            self.events.log("Server stopped.")
        self.registry.clear()


# --- Client ---

class RemoteShellClient:
    """
    Client side session driver: login handshake, then commands and uploads.

    One background reader owns the inbound stream once authenticated.
    Control tokens and the upload confirmation are handed to the upload
    path through a queue; every other line is published as a log event.
    """

    def __init__(self, transport: Optional[TransportConfig] = None, events: Optional[EventBus] = None,
                 reply_timeout: float = REPLY_TIMEOUT, chunk_size: int = BUFFER_SIZE):
        self.transport = transport or TransportConfig(certfile=None, keyfile=None)
        self.events = events or EventBus()
        self.reply_timeout = reply_timeout
        self.channel = FileTransferChannel(chunk_size=chunk_size, log=self.events.log)
        self.session: Optional[Session] = None
        self._stream: Optional[LineStream] = None
        self._connected = threading.Event()
        self._state_lock = threading.Lock()
        self._uploading = False
        self._replies: "queue.Queue[Optional[str]]" = queue.Queue()
        self._awaiting_reply = threading.Event()
        self._reader_thread: Optional[threading.Thread] = None
        self._history: List[str] = []

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def authenticated(self) -> bool:
        return (self.connected and self.session is not None
                and self.session.state is SessionState.AUTHENTICATED)

    @property
    def uploading(self) -> bool:
        return self._uploading

    @property
    def history(self) -> Tuple[str, ...]:
        return tuple(self._history)

    def connect(self, host: str, port: int) -> Session:
        if self.connected:
            raise RemoteShellError("Already connected.")
        try:
            sock = open_tls_connection(host, port, self.transport)
        except (OSError, ValueError) as e:
            self.events.log(f"TLS connection error: {e}", logging.ERROR)
            raise
        return self.attach(sock, f"{host}:{port}")

    def attach(self, sock: socket.socket, remote_address: str) -> Session:
        """Adopts an already connected socket as the session transport"""
        sock.settimeout(self.reply_timeout)
        self._stream = LineStream(sock)
        self._replies = queue.Queue()
        self.session = Session(remote_address, stream=self._stream)
        self._connected.set()
        self.events.log(f"Connected to {remote_address}.")
        return self.session

    def submit_credentials(self, login: str, password: str) -> AuthResult:
        """One pass of the handshake; on failure the server re-prompts for the next pass"""
        if not self.connected or self.session is None:
            raise ConnectionError("Not connected to server.")
        if self.session.state is SessionState.AUTHENTICATED:
            return AuthResult(True, "Already authenticated.")

        self.events.log(self._read_handshake_line())
        if login.lower() == QUIT_COMMAND:
            self._stream.write_line(QUIT_COMMAND)
            notice = self._stream.read_line() or ABANDONED
            self.events.log(notice)
            self.disconnect()
            return AuthResult(False, notice, abandoned=True)

        self._stream.write_line(login)
        self.events.log(self._read_handshake_line())
        self._stream.write_line(password)
        result = self._read_handshake_line()
        self.events.log(result)

        if AUTH_SUCCESS_MARKER in result:
            self.session.state = SessionState.AUTHENTICATED
            self._stream.sock.settimeout(None)
            self._reader_thread = threading.Thread(
                target=self._listen,
                name=f"ServerReader-{self.session.remote_address}",
                daemon=True,
            )
            self._reader_thread.start()
            return AuthResult(True, result)

        self.events.log("Do you want to try again?")
        return AuthResult(False, result)

    def login(self, credentials_provider: Callable[[], Optional[Tuple[str, str]]]) -> AuthResult:
        """Asks the provider for credentials until success; None means give up"""
        while True:
            credentials = credentials_provider()
            if credentials is None:
                return self.submit_credentials(QUIT_COMMAND, "")
            result = self.submit_credentials(*credentials)
            if result.authenticated or result.abandoned:
                return result

    def _read_handshake_line(self) -> str:
        line = self._stream.read_line()
        if line is None:
            self.disconnect()
            raise ConnectionAbortedError("Server closed the connection during authentication.")
        return line

    def send_command(self, text: str) -> None:
        """Fire-and-forget; the output arrives later as log events"""
        if not self.authenticated:
            self.events.log("Error: you must be connected to send a command.", logging.WARNING)
            raise NotAuthenticatedError("You must be connected to send a command.")
        if text is None or not text.strip():
            raise ValueError("Command must not be empty.")
        if "\n" in text or "\r" in text:
            raise ValueError("Commands must be a single line.")
        if text.startswith(UPLOAD_PREFIX):
            raise ValueError("Use send_file() to upload files.")
        with self._state_lock:
            if self._uploading:
                raise TransferInProgressError("A file upload is in progress.")
            self._stream.write_line(text)
            self._history.append(text)

    def send_file(self, local_path) -> bool:
        """Uploads on the calling thread; True once the server confirmed the file"""
        path = self._begin_upload(local_path)
        return self._upload(path)

    def start_upload(self, local_path) -> threading.Thread:
        """Same as send_file() on a worker thread; the upload slot is taken before returning"""
        path = self._begin_upload(local_path)
        worker = threading.Thread(target=self._upload, args=(path,), name=f"Upload-{path.name}", daemon=True)
        worker.start()
        return worker

    def _begin_upload(self, local_path) -> Path:
        if not self.authenticated:
            self.events.log("Error: you must be connected to upload a file.", logging.WARNING)
            raise NotAuthenticatedError("You must be connected to upload a file.")
        path = Path(local_path)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {local_path}")
        if "\n" in path.name or "\r" in path.name:
            raise ValueError("File names containing line breaks cannot be sent.")
        with self._state_lock:
            if self._uploading:
                raise TransferInProgressError("A file upload is already in progress.")
            self._uploading = True
        return path

    def _upload(self, path: Path) -> bool:
        try:
            self._drain_replies()
            self.events.log(f"Starting upload of {path.name}")
            self._stream.write_line(f"{UPLOAD_PREFIX}{path.resolve()}")
            sent = self.channel.send(
                self._stream,
                path,
                next_control=self._next_reply,
                should_continue=self._connected.is_set,
                on_payload_start=self._awaiting_reply.set,
            )
            if not self.connected:
                self.events.log("Upload interrupted by disconnect.", logging.WARNING)
                return False

            reply = self._next_reply()
            if reply is None:
                self.events.log("Upload interrupted: connection closed.", logging.WARNING)
                return False
            if reply != FILE_RECEIVED:
                self.events.log(f"Upload of {path.name} rejected by server.", logging.WARNING)
                return False
            self.events.log(f"Upload of {path.name} complete ({sent} bytes).")
            return True
        except (RemoteShellError, OSError, ValueError) as e:
            if not self.connected:
                self.events.log("Upload interrupted by disconnect.", logging.WARNING)
                return False
            # the server is inside the upload exchange; the byte stream cannot be resynchronised
            self.events.log(f"File transfer failed: {e}", logging.ERROR)
            self.disconnect()
            return False
        finally:
            self._awaiting_reply.clear()
            with self._state_lock:
                self._uploading = False

    def _next_reply(self) -> Optional[str]:
        """
        Blocks until the reader hands over a line, or None once the stream
        is gone. No timeout: the server answers `upload:` only after the
        commands queued before it have finished.
        """
        return self._replies.get()

    def _drain_replies(self) -> None:
        while True:
            try:
                self._replies.get_nowait()
            except queue.Empty:
                return

    def _listen(self) -> None:
        try:
            while self.connected:
                line = self._stream.read_line()
                if line is None:
                    break
                if line in CONTROL_TOKENS:
                    self._replies.put(line)
                    continue
                if self._awaiting_reply.is_set():
                    self._awaiting_reply.clear()
                    self._replies.put(line)
                self.events.log(f"Server response: {line}")
        except (OSError, ValueError) as e:
            if self.connected:
                self.events.log(f"Read error: {e}", logging.ERROR)
        finally:
            self._replies.put(None)
            if self.connected:
                self.events.log("Connection closed by server.", logging.WARNING)
                self.disconnect()

    def disconnect(self) -> None:
        """Safe at any time; an upload in flight stops before its next chunk"""
        with self._state_lock:
            was_connected = self._connected.is_set()
            self._connected.clear()
            uploading = self._uploading
        if self.session is not None:
            self.session.state = SessionState.CLOSED
        if self._stream is not None:
            self._stream.close()
        self._replies.put(None)
        if was_connected:
            if uploading:
                self.events.log("Disconnected during upload. Transfer cancelled.")
            else:
                self.events.log("Disconnected from server.")


# --- CLI ---

def parse_address(value: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    host, port = value, default_port
    if ':' in value:
        host, port_str = value.rsplit(':', 1)
        try:
            port = int(port_str)
        except ValueError:
            raise ValueError(f"Invalid port number: {port_str}") from None
    if not 0 < port <= 65535:
        raise ValueError(f"Invalid port number: {port}")
    return host, port


def prompt_credentials() -> Optional[Tuple[str, str]]:
    try:
        login = input("Login (or 'quit' to exit): ")
        if login.lower() == QUIT_COMMAND:
            return None
        password = getpass.getpass("Password: ")
    except (EOFError, KeyboardInterrupt):
        return None
    return login, password


def build_server_config(args: argparse.Namespace) -> ServerConfig:
    config = load_config(args.config) if args.config else ServerConfig()
    overrides = {
        'host': args.host,
        'port': args.port,
        'output_dir': Path(args.output_dir) if args.output_dir else None,
        'command_timeout': args.command_timeout,
        'idle_timeout': args.idle_timeout,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if args.certfile:
        config.transport.certfile = args.certfile
    if args.keyfile:
        config.transport.keyfile = args.keyfile
    return config


def run_server(args: argparse.Namespace) -> int:
    config = build_server_config(args)
    setup_logging(args.log_file)
    server = RemoteShellServer(config)
    try:
        server.start_server()
    except KeyboardInterrupt:
        logger.info("User interrupt, shutting down.")
    finally:
        server.shutdown()
    return 0


def run_client(args: argparse.Namespace) -> int:
    setup_logging(None, console_level=logging.WARNING)
    host, port = parse_address(args.connect)
    transport = TransportConfig(
        certfile=None,
        keyfile=None,
        cafile=args.cafile,
        check_hostname=not args.no_check_hostname,
        server_hostname=args.server_hostname,
    )
    client = RemoteShellClient(transport)
    client.events.subscribe(lambda event: print(event.payload))

    try:
        client.connect(host, port)
        if not client.login(prompt_credentials).authenticated:
            return 1
        while client.connected:
            try:
                line = input()
            except EOFError:
                break
            stripped = line.strip()
            if stripped.lower() == QUIT_COMMAND:
                break
            try:
                if stripped.startswith("upload "):
                    client.send_file(stripped[len("upload "):].strip())
                else:
                    client.send_command(line)
            except (ValueError, FileNotFoundError, RemoteShellError) as e:
                print(f"[ERROR] {e}")
    except KeyboardInterrupt:
        logger.info("User interrupt, shutting down.")
    except OSError as e:
        logger.error(f"Client operation failed: {e}")
        return 1
    finally:
        client.disconnect()
    return 0


def run_gen_cert(args: argparse.Namespace) -> int:
    hostnames = [args.cn] + [name for name in args.hostname if name != args.cn]
    cert_path, key_path = generate_self_signed_cert(
        Path(args.out + ".crt"),
        Path(args.out + ".key"),
        common_name=args.cn,
        hostnames=hostnames,
        ip_addresses=args.ip,
        days=args.days,
    )
    print(f"Wrote {key_path} and {cert_path}")
    print(f"SHA-256 fingerprint: {cert_fingerprint_sha256(cert_path.read_bytes())}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Secure Remote Shell (TLS command execution and file upload)")
    subparsers = parser.add_subparsers(dest='mode', required=True)

    server = subparsers.add_parser('server', help='Run the remote shell server')
    server.add_argument('--config', type=str, help='JSON configuration file')
    server.add_argument('--host', type=str, help='Binding host IP')
    server.add_argument('--port', type=int, help='Port number')
    server.add_argument('--output-dir', type=str, help='Directory for received files')
    server.add_argument('--certfile', type=str, help='Server certificate (PEM)')
    server.add_argument('--keyfile', type=str, help='Server private key (PEM)')
    server.add_argument('--command-timeout', type=float, help='Kill commands running longer than this (seconds)')
    server.add_argument('--idle-timeout', type=float, help='Close sessions idle for this long (seconds)')
    server.add_argument('--log-file', type=str, default=DEFAULT_LOG_FILE, help='Event log file')
    server.set_defaults(handler=run_server)

    client = subparsers.add_parser('client', help='Open an interactive session')
    client.add_argument('--connect', type=str, required=True, help='Server HOST[:PORT]')
    client.add_argument('--cafile', type=str, help='Certificate to trust (PEM), system store when omitted')
    client.add_argument('--server-hostname', type=str, help='Name to verify in the server certificate')
    client.add_argument('--no-check-hostname', action='store_true', help='Skip certificate hostname check')
    client.set_defaults(handler=run_client)

    gen_cert = subparsers.add_parser('gen-cert', help='Write a self-signed server certificate')
    gen_cert.add_argument('--out', type=str, required=True, help='Output prefix, e.g. certs/server')
    gen_cert.add_argument('--cn', type=str, default='localhost', help='Common name')
    gen_cert.add_argument('--hostname', action='append', default=[], help='Extra DNS name (repeatable)')
    gen_cert.add_argument('--ip', action='append', default=['127.0.0.1'], help='IP address SAN (repeatable)')
    gen_cert.add_argument('--days', type=int, default=365, help='Validity in days')
    gen_cert.set_defaults(handler=run_gen_cert)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.handler(args)
    except (ConfigError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2


if __name__ == '__main__':
    sys.exit(main())
