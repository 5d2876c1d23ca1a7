#!/usr/bin/env python3
"""
Remote File Sharing Service
Authenticated LIST / DOWNLOAD / UPLOAD over a framed, XOR-obfuscated TCP channel.
One thread per client connection.

The XOR obfuscation is NOT encryption: it only keeps the wire from being
plain text.
"""

import socket
import os
import hmac
import json
import struct
import threading
import argparse
import getpass
import logging
import enum
import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from jsonschema import validate, ValidationError

BUFFER_SIZE = 4096
DOWNLOAD_CHUNK_SIZE = BUFFER_SIZE
UPLOAD_CHUNK_SIZE = BUFFER_SIZE // 2
DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 9999
OBFUSCATION_KEY = b'mysecretkey'
SERVER_FILES_DIR = Path("server_files")
CLIENT_FILES_DIR = Path("client_files")
LENGTH_PREFIX_FORMAT = '!I'
LENGTH_PREFIX_SIZE = struct.calcsize(LENGTH_PREFIX_FORMAT)

DEFAULT_USERS = {
    "user": "pass123",
    "admin": "adminpass",
}

# Commands (client -> server)
CMD_AUTH = "AUTH"
CMD_LIST = "LIST"
CMD_DOWNLOAD = "DOWNLOAD"
CMD_UPLOAD = "UPLOAD"
CMD_QUIT = "QUIT"
READY_TOKEN = "START"
CANCEL_TOKEN = "CANCEL"

# Responses (server -> client)
AUTH_SUCCESS = "AUTH_SUCCESS"
AUTH_FAIL = "AUTH_FAIL"
OK_DOWNLOAD = "OK_DOWNLOAD"
DOWNLOAD_DONE = "DOWNLOAD_DONE"
OK_UPLOAD = "OK_UPLOAD"
UPLOAD_SUCCESS = "UPLOAD_SUCCESS"
ERROR_PREFIX = "ERROR"

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "host": {"type": "string"},
        "port": {"type": "integer", "minimum": 0, "maximum": 65535},
        "storage_root": {"type": "string", "minLength": 1},
        "client_root": {"type": "string", "minLength": 1},
        "key": {"type": "string", "minLength": 1},
        "users": {
            "type": "object",
            "additionalProperties": {"type": "string"}
        },
        "max_message_size": {"type": "integer", "minimum": 64},
        "download_chunk_size": {"type": "integer", "minimum": 1},
        "upload_chunk_size": {"type": "integer", "minimum": 1},
        "abort_notice": {"type": "boolean"},
        "max_connections": {"type": ["integer", "null"], "minimum": 1},
        "idle_timeout": {"type": ["number", "null"], "exclusiveMinimum": 0},
        "max_upload_size": {"type": ["integer", "null"], "minimum": 0}
    },
    "additionalProperties": False
}

ARGUMENT_SCHEMAS = {
    CMD_LIST: {"type": "array", "maxItems": 0},
    CMD_QUIT: {"type": "array", "maxItems": 0},
    CMD_DOWNLOAD: {
        "type": "array",
        "minItems": 1,
        "maxItems": 1,
        "items": {"type": "string", "minLength": 1}
    },
    CMD_UPLOAD: {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "array",
        "minItems": 2,
        "maxItems": 2,
        "prefixItems": [
            {"type": "string", "minLength": 1},
            {"type": "string", "pattern": "^[0-9]+$"}
        ]
    }
}

logger = logging.getLogger("fileshare")


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Install the console (and optional file) handlers used by the CLI."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, delay=True))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


# --- Errors ---

class FileShareError(Exception):
    """Base class for every error raised by this module"""


class CommandError(FileShareError):
    """A recoverable command failure, answered with `reply` and the session continues"""
    reply: Optional[str] = f"{ERROR_PREFIX} Command failed."

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)


class AuthenticationRequired(CommandError):
    reply = f"{ERROR_PREFIX} Authentication required."


class UnknownCommand(CommandError):
    reply = f"{ERROR_PREFIX} Unknown command."


class InvalidArguments(CommandError):
    reply = f"{ERROR_PREFIX} Invalid arguments."


class InvalidFilename(CommandError):
    reply = f"{ERROR_PREFIX} Invalid filename."


class MissingFile(CommandError):
    reply = f"{ERROR_PREFIX} File not found."


class ListingFailed(CommandError):
    reply = f"{ERROR_PREFIX} Failed to list directory."


class FileCreateFailed(CommandError):
    reply = f"{ERROR_PREFIX} Cannot create file."


class UploadTooLarge(CommandError):
    reply = f"{ERROR_PREFIX} File too large."


class TransferIncomplete(CommandError):
    reply = f"{ERROR_PREFIX} Upload incomplete."


class TransferAborted(CommandError):
    reply = f"{ERROR_PREFIX} Download aborted."


# Every error reply the server can send
SERVER_ERROR_REPLIES = frozenset(
    [CommandError.reply] + [cls.reply for cls in CommandError.__subclasses__()]
)


class TransportDisconnected(FileShareError, ConnectionAbortedError):
    """The peer went away; terminal for the session"""


class RemoteError(FileShareError):
    """Client side: the server answered with an error (kept verbatim)"""

    def __init__(self, reply: str):
        super().__init__(reply)
        self.reply = reply


class LocalFileError(FileShareError):
    """Client side: the local file could not be read or written"""


# --- Configuration ---

@dataclass(frozen=True)
class ServiceConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    storage_root: Path = SERVER_FILES_DIR
    client_root: Path = CLIENT_FILES_DIR
    key: bytes = OBFUSCATION_KEY
    users: Mapping[str, str] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_USERS)))
    max_message_size: int = BUFFER_SIZE
    download_chunk_size: int = DOWNLOAD_CHUNK_SIZE
    upload_chunk_size: int = UPLOAD_CHUNK_SIZE
    abort_notice: bool = True
    max_connections: Optional[int] = None
    idle_timeout: Optional[float] = None
    max_upload_size: Optional[int] = None

    def __post_init__(self):
        if not self.key:
            raise ValueError("Obfuscation key must not be empty")
        if self.download_chunk_size > self.max_message_size:
            raise ValueError(
                f"download_chunk_size ({self.download_chunk_size}) exceeds max_message_size ({self.max_message_size})"
            )
        if self.upload_chunk_size > self.max_message_size:
            raise ValueError(
                f"upload_chunk_size ({self.upload_chunk_size}) exceeds max_message_size ({self.max_message_size})"
            )
        # Frozen: normalise through object.__setattr__
        object.__setattr__(self, 'storage_root', Path(self.storage_root))
        object.__setattr__(self, 'client_root', Path(self.client_root))
        if not isinstance(self.users, MappingProxyType):
            object.__setattr__(self, 'users', MappingProxyType(dict(self.users)))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceConfig":
        """Build a config from a JSON-like dict, validated against CONFIG_SCHEMA."""
        try:
            validate(instance=data, schema=CONFIG_SCHEMA)
        except ValidationError as e:
            logger.error(f"Invalid configuration: {e.message}")
            raise ValueError(f"Invalid configuration: {e.message}") from e

        values = dict(data)
        if 'key' in values:
            values['key'] = values['key'].encode('utf-8')
        return cls(**values)


def load_config(path: str) -> ServiceConfig:
    """Load a JSON configuration file"""
    config_path = Path(path)
    try:
        data = json.loads(config_path.read_text(encoding='utf-8'))
    except json.JSONDecodeError as e:
        raise ValueError(f"Configuration file {config_path} is not valid JSON: {e}") from e
    config = ServiceConfig.from_dict(data)
    logger.info(f"Loaded configuration from {config_path.resolve()}")
    return config


def ensure_storage_root(root: Path) -> Path:
    """Create the storage directory for this role if it is missing"""
    root = Path(root)
    if not root.exists():
        root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created directory: {root}")
    return root


def resolve_in_root(root: Path, filename: str) -> Path:
    """
    Resolve a peer-supplied bare filename under `root`.
    Raises InvalidFilename for anything that would land outside it.
    """
    if not filename or filename in ('.', '..') or '\x00' in filename:
        raise InvalidFilename(f"Rejected filename {filename!r}")

    resolved_root = Path(root).resolve()
    target = (resolved_root / filename).resolve()
    if target.parent != resolved_root:
        raise InvalidFilename(f"Path escapes storage root: {filename!r}")
    return target


# --- Codec & channel ---

def xor_transform(data: bytes, key: bytes) -> bytes:
    """Repeating-key XOR. Involutive and length preserving."""
    if not key:
        raise ValueError("Key must not be empty")
    if not data:
        return b''
    repeats, remainder = divmod(len(data), len(key))
    keystream = key * repeats + key[:remainder]
    mixed = int.from_bytes(data, 'big') ^ int.from_bytes(keystream, 'big')
    return mixed.to_bytes(len(data), 'big')


class MessageChannel:
    """
    One logical message per send/receive.
    Wire form: 4-byte big-endian length prefix + obfuscated payload.
    """

    def __init__(self, sock: socket.socket, key: bytes = OBFUSCATION_KEY, max_message_size: int = BUFFER_SIZE):
        self.sock = sock
        self.key = key
        self.max_message_size = max_message_size
        self._closed = False

    def _recv_all(self, length: int) -> Optional[bytes]:
        """Receives exactly N bytes or returns None on disconnect/timeout"""
        data = bytearray()
        while len(data) < length:
            try:
                packet = self.sock.recv(length - len(data))
            except socket.timeout:
                logger.warning("Socket timeout during reception")
                return None
            except OSError as e:
                logger.debug(f"Error receiving data: {e}")
                return None
            if not packet:
                return None
            data.extend(packet)
        return bytes(data)

    def send(self, message: bytes) -> bool:
        if len(message) > self.max_message_size:
            raise ValueError(f"Message too large: {len(message)} > {self.max_message_size} bytes")
        frame = struct.pack(LENGTH_PREFIX_FORMAT, len(message)) + xor_transform(message, self.key)
        try:
            self.sock.sendall(frame)
        except OSError as e:
            logger.debug(f"Error sending data: {e}")
            return False
        return True

    def receive(self) -> Optional[bytes]:
        header = self._recv_all(LENGTH_PREFIX_SIZE)
        if header is None:
            return None

        length, = struct.unpack(LENGTH_PREFIX_FORMAT, header)
        if length > self.max_message_size:
            raise ValueError(f"Frame too large: {length} > {self.max_message_size} bytes")
        if length == 0:
            return b''

        payload = self._recv_all(length)
        if payload is None:
            return None
        return xor_transform(payload, self.key)

    def send_text(self, text: str) -> bool:
        return self.send(text.encode('utf-8'))

    def receive_text(self) -> Optional[str]:
        message = self.receive()
        if message is None:
            return None
        return message.decode('utf-8', errors='replace')

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.close()
        except OSError:
            pass


# --- Authentication ---

class CredentialStore:
    """Read-only username -> password table"""

    def __init__(self, users: Mapping[str, str]):
        self._users = MappingProxyType(dict(users))

    def password_for(self, username: str) -> Optional[str]:
        return self._users.get(username)

    def __contains__(self, username: object) -> bool:
        return username in self._users

    def __len__(self) -> int:
        return len(self._users)


class AuthenticationGate:
    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    def check(self, username: str, password: str) -> bool:
        expected = self.credentials.password_for(username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode('utf-8'), password.encode('utf-8'))

    def authenticate(self, session: "ClientSession", username: str, password: str) -> bool:
        """Marks the session authenticated on success; never closes it on failure."""
        if not self.check(username, password):
            return False
        session.authenticated = True
        session.username = username
        return True


# --- Transfers ---

class TransferState(enum.Enum):
    DONE = "done"
    ABORTED = "aborted"
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"


@dataclass
class TransferProgress:
    expected: int
    moved: int = 0

    @property
    def finished(self) -> bool:
        return self.moved >= self.expected

    @property
    def remaining(self) -> int:
        return max(0, self.expected - self.moved)


class TransferEngine:
    """
    Chunked file transfers over a MessageChannel, both directions.
    Server side: serve_download / receive_upload.
    Client side: fetch_download / push_upload.
    """

    def __init__(self, channel: MessageChannel, root: Path, config: ServiceConfig):
        self.channel = channel
        self.root = Path(root)
        self.config = config

    def _send(self, message: bytes) -> None:
        if not self.channel.send(message):
            raise TransportDisconnected("Connection lost while sending")

    def _send_text(self, text: str) -> None:
        self._send(text.encode('utf-8'))

    # Server -> client

    def serve_download(self, filename: str) -> TransferState:
        path = resolve_in_root(self.root, filename)
        if not path.is_file():
            raise MissingFile(f"{filename} does not exist")

        try:
            f = path.open('rb')
        except OSError as e:
            raise MissingFile(f"Cannot open {filename}: {e}") from e

        with f:
            total_size = os.fstat(f.fileno()).st_size
            self._send_text(f"{OK_DOWNLOAD} {total_size}")

            ready = self.channel.receive()
            if ready is None:
                raise TransportDisconnected("Client disconnected before starting the download")
            if ready != READY_TOKEN.encode('utf-8'):
                logger.warning(f"Client did not start transfer of {filename} (got {ready[:32]!r})")
                aborted = TransferAborted(f"Download of {filename} not started")
                if not self.config.abort_notice:
                    # Legacy behaviour: no notice, the client is left waiting
                    aborted.reply = None
                raise aborted

            while chunk := f.read(self.config.download_chunk_size):
                self._send(chunk)

        self._send_text(DOWNLOAD_DONE)
        logger.info(f"Finished sending {filename} ({total_size} bytes)")
        return TransferState.DONE

    # Client -> server

    def receive_upload(self, filename: str, declared_size: int) -> TransferState:
        path = resolve_in_root(self.root, filename)
        max_size = self.config.max_upload_size
        if max_size is not None and declared_size > max_size:
            raise UploadTooLarge(f"{filename}: {declared_size} > {max_size} bytes")

        try:
            out = path.open('wb')
        except OSError as e:
            raise FileCreateFailed(f"Cannot create {filename}: {e}") from e

        progress = TransferProgress(expected=declared_size)
        with out:
            self._send_text(OK_UPLOAD)
            while not progress.finished:
                chunk = self.channel.receive()
                if chunk is None:
                    logger.warning(f"Upload failed: client disconnected after {progress.moved} bytes")
                    break
                out.write(chunk)
                progress.moved += len(chunk)

        if progress.moved != progress.expected:
            raise TransferIncomplete(
                f"Upload of {filename} incomplete: {progress.moved}/{progress.expected} bytes"
            )

        self._send_text(UPLOAD_SUCCESS)
        logger.info(f"Successfully received {filename} ({progress.moved} bytes)")
        return TransferState.COMPLETE

    # Client side mirrors

    def fetch_download(self, filename: str) -> TransferProgress:
        """Runs after DOWNLOAD has been sent; writes the file under the local root."""
        reply = self.channel.receive_text()
        if reply is None:
            raise TransportDisconnected("Connection lost waiting for download reply")

        tokens = reply.split()
        if not tokens or tokens[0] != OK_DOWNLOAD or len(tokens) < 2 or not tokens[1].isdigit():
            raise RemoteError(reply)
        total_size = int(tokens[1])

        try:
            dest = resolve_in_root(self.root, filename)
            out = dest.open('wb')
        except (OSError, InvalidFilename) as e:
            self._send_text(CANCEL_TOKEN)
            if self.config.abort_notice:
                self.channel.receive_text()
            raise LocalFileError(f"Could not open file for writing: {filename} ({e})") from e

        progress = TransferProgress(expected=total_size)
        write_error: Optional[OSError] = None
        try:
            self._send_text(READY_TOKEN)
            while not progress.finished:
                chunk = self.channel.receive()
                if chunk is None:
                    raise TransportDisconnected(
                        f"Connection lost during download ({progress.moved}/{total_size} bytes)"
                    )
                if len(chunk) > progress.remaining:
                    chunk = chunk[:progress.remaining]
                # Keep draining after a local failure so the stream stays in sync
                if write_error is None:
                    try:
                        out.write(chunk)
                    except OSError as e:
                        write_error = e
                progress.moved += len(chunk)
        finally:
            try:
                out.close()
            except OSError as e:
                write_error = write_error or e

        done_signal = self.channel.receive_text()
        if done_signal != DOWNLOAD_DONE:
            logger.warning(f"Did not receive final DONE signal. Got: {done_signal!r}")
        if write_error is not None:
            raise LocalFileError(f"Could not write {filename}: {write_error}") from write_error
        return progress

    def push_upload(self, filename: str) -> int:
        try:
            path = resolve_in_root(self.root, filename)
        except InvalidFilename as e:
            raise LocalFileError(str(e)) from e
        if not path.is_file():
            raise LocalFileError(f"File not found in '{self.root}' directory: {filename}")

        try:
            f = path.open('rb')
        except OSError as e:
            raise LocalFileError(f"Cannot read {filename}: {e}") from e

        with f:
            total_size = os.fstat(f.fileno()).st_size
            self._send_text(f"{CMD_UPLOAD} {filename} {total_size}")

            reply = self.channel.receive_text()
            if reply is None:
                raise TransportDisconnected("Connection lost waiting for upload reply")
            if reply != OK_UPLOAD:
                raise RemoteError(reply)

            logger.info(f"Uploading {filename} ({total_size} bytes)...")
            while True:
                try:
                    chunk = f.read(self.config.upload_chunk_size)
                except OSError as e:
                    # The server still expects the declared bytes; the session cannot continue
                    self.channel.close()
                    raise LocalFileError(f"Cannot read {filename}: {e}") from e
                if not chunk:
                    break
                self._send(chunk)

        final = self.channel.receive_text()
        if final is None:
            raise TransportDisconnected("Connection lost waiting for upload confirmation")
        if final != UPLOAD_SUCCESS:
            raise RemoteError(final)
        return total_size


# --- Server ---

class ClientSession:
    """Per-connection command loop (SERVER LOGIC)"""

    def __init__(
        self,
        channel: MessageChannel,
        config: ServiceConfig,
        gate: AuthenticationGate,
        peer: str = "unknown_peer"
    ):
        self.channel = channel
        self.config = config
        self.gate = gate
        self.peer = peer
        self.authenticated = False
        self.username: Optional[str] = None
        self.engine = TransferEngine(channel, config.storage_root, config)
        self.running = True
        self._handlers: Dict[str, Callable[[List[str]], None]] = {
            CMD_LIST: self._handle_list,
            CMD_DOWNLOAD: self._handle_download,
            CMD_UPLOAD: self._handle_upload,
            CMD_QUIT: self._handle_quit,
        }

    @staticmethod
    def parse(message: bytes) -> Tuple[str, List[str]]:
        tokens = message.decode('utf-8', errors='replace').split()
        if not tokens:
            return '', []
        return tokens[0], tokens[1:]

    @staticmethod
    def _validate_args(command: str, args: List[str]) -> None:
        schema = ARGUMENT_SCHEMAS.get(command)
        if schema is None:
            return
        try:
            validate(instance=args, schema=schema)
        except ValidationError as e:
            raise InvalidArguments(f"{command}: {e.message}") from e

    def _reply(self, text: str) -> None:
        self.channel.send_text(text)

    def run(self) -> None:
        thread_name = threading.current_thread().name
        logger.info(f"[{thread_name}] New client connected from {self.peer}.")

        try:
            while self.running:
                message = self.channel.receive()
                if message is None:
                    logger.info(f"[{thread_name}] Client disconnected.")
                    break

                command, args = self.parse(message)
                if command == CMD_AUTH:
                    logger.info(f"[{thread_name}] Received command: {CMD_AUTH} {args[0] if args else ''}")
                else:
                    logger.info(f"[{thread_name}] Received command: {' '.join([command] + args)}")

                try:
                    self.dispatch(command, args)
                except CommandError as e:
                    logger.info(f"[{thread_name}] {command or '<empty>'} failed: {e}")
                    if e.reply:
                        self._reply(e.reply)

        except TransportDisconnected as e:
            logger.info(f"[{thread_name}] Client connection closed: {e}")
        except ValueError as e:
            logger.error(f"[{thread_name}] Protocol error: {e}")
        except Exception as e:
            logger.error(f"[{thread_name}] Error handling client: {e}", exc_info=True)
        finally:
            self.channel.close()
            logger.info(f"[{thread_name}] Client connection closed.")

    def dispatch(self, command: str, args: List[str]) -> None:
        if command == CMD_AUTH:
            self._handle_auth(args)
            return

        if not self.authenticated:
            raise AuthenticationRequired(f"{command or '<empty>'} before AUTH")

        handler = self._handlers.get(command)
        if handler is None:
            raise UnknownCommand(command)
        self._validate_args(command, args)
        handler(args)

    def _handle_auth(self, args: List[str]) -> None:
        username, password = (args + ['', ''])[:2]
        if self.gate.authenticate(self, username, password):
            self._reply(AUTH_SUCCESS)
            logger.info(f"User '{username}' authenticated.")
        else:
            self._reply(AUTH_FAIL)
            logger.warning(f"Failed auth attempt for user '{username}'.")

    def _handle_list(self, args: List[str]) -> None:
        try:
            names = sorted(entry.name for entry in self.config.storage_root.iterdir())
        except OSError as e:
            raise ListingFailed(f"Failed to list directory: {e}") from e

        listing = "\n".join(names).encode('utf-8')
        if len(listing) > self.config.max_message_size:
            raise ListingFailed(f"File list is {len(listing)} bytes, over the message limit")
        self.channel.send(listing)

    def _handle_download(self, args: List[str]) -> None:
        self.engine.serve_download(args[0])

    def _handle_upload(self, args: List[str]) -> None:
        self.engine.receive_upload(args[0], int(args[1]))

    def _handle_quit(self, args: List[str]) -> None:
        logger.info(f"Client '{self.username}' sent QUIT. Disconnecting.")
        self.running = False


class FileShareServer:
    """Accepts connections and runs one ClientSession thread per client"""

    def __init__(self, config: Optional[ServiceConfig] = None):
        self.config = config or ServiceConfig()
        self.host = self.config.host
        self.port = self.config.port
        self.gate = AuthenticationGate(CredentialStore(self.config.users))
        self.socket: Optional[socket.socket] = None
        self.running = False
        self.active_threads: List[threading.Thread] = []
        self._connection_counter = 0
        ensure_storage_root(self.config.storage_root)

    def _handle_connection(self, conn: socket.socket, addr: Tuple[str, int]) -> None:
        if self.config.idle_timeout is not None:
            conn.settimeout(self.config.idle_timeout)
        channel = MessageChannel(conn, self.config.key, self.config.max_message_size)
        session = ClientSession(channel, self.config, self.gate, peer=f"{addr[0]}:{addr[1]}")
        session.run()

    def start_server(self) -> None:
        self.socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind((self.host, self.port))
        self.port = self.socket.getsockname()[1]
        self.socket.listen(5)
        self.running = True

        logger.info(f"Server listening on {self.host}:{self.port}...")
        logger.info(f"Shared files: {self.config.storage_root.resolve()}")

        try:
            while self.running:
                try:
                    conn, addr = self.socket.accept()
                except OSError as e:
                    if self.running:
                        logger.error(f"Socket error in server loop: {e}")
                    break

                self.active_threads = [t for t in self.active_threads if t.is_alive()]
                limit = self.config.max_connections
                if limit is not None and len(self.active_threads) >= limit:
                    logger.warning(f"Connection limit reached ({limit}), refusing {addr[0]}:{addr[1]}.")
                    conn.close()
                    continue

                self._connection_counter += 1
                client_thread = threading.Thread(
                    target=self._handle_connection,
                    args=(conn, addr),
                    name=f"ClientThread-{self._connection_counter}",
                    daemon=True
                )
                client_thread.start()
                self.active_threads.append(client_thread)
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Stop accepting; running sessions are left to finish on their own"""
        was_running = self.running
        self.running = False
        if self.socket:
            try:
                # Wakes a thread blocked in accept()
                self.socket.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self.socket.close()
            except OSError:
                pass
        if was_running:
            logger.info("Server shut down.")


# --- Client ---

class FileShareClient:
    """Command driver for the interactive client (CLIENT LOGIC)"""

    PROMPT = "\n(list, upload [file], download [file], quit)\n> "

    def __init__(self, config: Optional[ServiceConfig] = None, host: str = '127.0.0.1', port: Optional[int] = None):
        self.config = config or ServiceConfig()
        self.host = host
        self.port = self.config.port if port is None else port
        self.channel: Optional[MessageChannel] = None
        self.engine: Optional[TransferEngine] = None
        self.authenticated = False

    def connect(self) -> None:
        sock = socket.create_connection((self.host, self.port))
        self.channel = MessageChannel(sock, self.config.key, self.config.max_message_size)
        ensure_storage_root(self.config.client_root)
        self.engine = TransferEngine(self.channel, self.config.client_root, self.config)
        logger.info(f"Connected to server at {self.host}:{self.port}")

    def _require_channel(self) -> MessageChannel:
        if self.channel is None:
            raise ConnectionError("Not connected to server.")
        return self.channel

    def _request(self, text: str) -> str:
        channel = self._require_channel()
        if not channel.send_text(text):
            raise TransportDisconnected("Connection lost while sending command")
        reply = channel.receive_text()
        if reply is None:
            raise TransportDisconnected("Connection lost waiting for server reply")
        return reply

    def authenticate(self, username: str, password: str) -> bool:
        reply = self._request(f"{CMD_AUTH} {username} {password}")
        self.authenticated = reply == AUTH_SUCCESS
        return self.authenticated

    def login(
        self,
        read_line: Callable[[str], str] = input,
        read_secret: Callable[[str], str] = getpass.getpass,
        write: Callable[[str], None] = print
    ) -> None:
        while not self.authenticated:
            username = read_line("Username: ").strip()
            password = read_secret("Password: ").strip()
            if self.authenticate(username, password):
                write("[+] Authentication successful!")
            else:
                write("[-] Authentication failed. Please try again.")

    def list_files(self) -> List[str]:
        reply = self._request(CMD_LIST)
        if reply in SERVER_ERROR_REPLIES:
            raise RemoteError(reply)
        return [name for name in reply.split("\n") if name]

    def download(self, filename: str) -> TransferProgress:
        channel = self._require_channel()
        if not channel.send_text(f"{CMD_DOWNLOAD} {filename}"):
            raise TransportDisconnected("Connection lost while sending command")
        return self.engine.fetch_download(filename)

    def upload(self, filename: str) -> int:
        self._require_channel()
        return self.engine.push_upload(filename)

    def quit(self) -> None:
        if self.channel is not None:
            self.channel.send_text(CMD_QUIT)
        self.close()

    def close(self) -> None:
        if self.channel is not None:
            self.channel.close()
            self.channel = None
            self.engine = None

    def run_shell(
        self,
        read_line: Callable[[str], str] = input,
        write: Callable[[str], None] = print
    ) -> int:
        """Interactive command loop. Returns a process exit status."""
        while True:
            try:
                line = read_line(self.PROMPT)
            except EOFError:
                line = "quit"

            parts = line.split()
            if not parts:
                continue
            command, args = parts[0], parts[1:]

            if command in ("download", "upload") and not args:
                write(f"Usage: {command} [filename]")
                continue

            try:
                if command == "list":
                    write("Files on server:")
                    for name in self.list_files():
                        write(name)
                elif command == "download":
                    progress = self.download(args[0])
                    write(f"[+] Download complete: {self.config.client_root / args[0]} ({progress.moved} bytes)")
                elif command == "upload":
                    size = self.upload(args[0])
                    write(f"[+] Server response: {UPLOAD_SUCCESS} ({size} bytes)")
                elif command == "quit":
                    self.quit()
                    return 0
                else:
                    write("[-] Unknown command.")
            except RemoteError as e:
                write(f"[-] Server error: {e.reply}")
            except LocalFileError as e:
                write(f"[-] Error: {e}")
                if self.channel is not None and self.channel.closed:
                    write("[-] Connection to server lost.")
                    self.close()
                    return 1
            except (TransportDisconnected, ValueError) as e:
                logger.error(f"Connection lost: {e}")
                write("[-] Connection to server lost.")
                self.close()
                return 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Remote File Sharing Service")
    parser.add_argument('--mode', choices=['server', 'client'], required=True, help='Run as server or client')
    parser.add_argument('--host', type=str, default=None, help='Bind address (server) or server address (client)')
    parser.add_argument('--port', type=int, default=None, help='Port number')
    parser.add_argument('--config', type=str, help='Path to a JSON configuration file')
    parser.add_argument('--storage', type=str, help='Override the storage directory for this role')
    parser.add_argument('--log-file', type=str, default='fileshare.log', help='Also write logs to this file (empty to disable)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, args.log_file)

    try:
        config = load_config(args.config) if args.config else ServiceConfig()
    except (OSError, ValueError) as e:
        logger.error(f"Cannot load configuration: {e}")
        return 2

    overrides: Dict[str, Any] = {}
    if args.port is not None:
        overrides['port'] = args.port
    if args.storage:
        overrides['storage_root' if args.mode == 'server' else 'client_root'] = Path(args.storage)
    if args.mode == 'server' and args.host:
        overrides['host'] = args.host
    if overrides:
        config = dataclasses.replace(config, **overrides)

    if args.mode == 'server':
        server = FileShareServer(config)
        try:
            server.start_server()
        except KeyboardInterrupt:
            logger.info("User interrupt, shutting down.")
        finally:
            server.shutdown()
        return 0

    client = FileShareClient(config, host=args.host or '127.0.0.1')
    try:
        client.connect()
    except OSError as e:
        logger.error(f"Connection failed. Is the server running? ({e})")
        return 1

    try:
        client.login()
        return client.run_shell()
    except (TransportDisconnected, ValueError) as e:
        logger.error(f"Connection lost: {e}")
        return 1
    except (KeyboardInterrupt, EOFError):
        logger.info("User interrupt, shutting down.")
        client.quit()
        return 0
    finally:
        client.close()


if __name__ == '__main__':
    raise SystemExit(main())
