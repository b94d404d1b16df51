"""The line-oriented TCP protocol spoken by daemons registering with the lookup service."""

from __future__ import annotations

import json
import re
import socket
import struct
import time
from typing import BinaryIO, Callable, Optional

from .options import LogLevel, Options
from .registration_db import PeerInfo, Producer, Registration, RegistrationDB

VERSION = "1.2.1"

_NAME_RE = re.compile(r"^[.a-zA-Z0-9_-]+(#ephemeral)?$")
_MAX_NAME_LENGTH = 64
_EPHEMERAL_SUFFIX = "#ephemeral"
_SIZE = struct.Struct(">i")


def _is_valid_name(name: str) -> bool:
    return 1 <= len(name) <= _MAX_NAME_LENGTH and _NAME_RE.match(name) is not None


def is_valid_topic_name(name: str) -> bool:
    """Report whether ``name`` may be used as a topic name."""
    return _is_valid_name(name)


def is_valid_channel_name(name: str) -> bool:
    """Report whether ``name`` may be used as a channel name."""
    return _is_valid_name(name)


def send_response(stream: BinaryIO, data: bytes) -> int:
    """Write ``data`` framed by a 4-byte big-endian length; return bytes written."""
    frame = _SIZE.pack(len(data)) + data
    stream.write(frame)
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()
    return len(frame)


class ClientError(Exception):
    """An error caused by a client, reported back to it as ``CODE description``."""

    def __init__(self, code: str, description: str, parent: Optional[BaseException] = None):
        super().__init__(f"{code} {description}")
        self.code = code
        self.description = description
        self.parent = parent

    def __str__(self) -> str:
        return f"{self.code} {self.description}"


class FatalClientError(ClientError):
    """A client error after which the connection is closed."""


def _format_address(address: object) -> str:
    if isinstance(address, tuple) and len(address) >= 2:
        host, port = address[0], address[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(address)


class Client:
    """One connected peer: its byte streams, its address and, once identified, its info."""

    def __init__(
        self,
        reader: BinaryIO,
        writer: BinaryIO,
        remote_address: str,
        *resources: object,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.remote_address = remote_address
        self.peer_info: Optional[PeerInfo] = None
        self._resources = resources

    @classmethod
    def from_socket(cls, sock: socket.socket, address: object) -> "Client":
        return cls(sock.makefile("rb"), sock.makefile("wb"), _format_address(address), sock)

    def close(self) -> None:
        for resource in (self.reader, self.writer, *self._resources):
            try:
                resource.close()  # type: ignore[attr-defined]
            except OSError:
                pass

    def __str__(self) -> str:
        return self.remote_address


class LookupProtocolV1:
    """Handles the commands of one protocol version against a registry."""

    def __init__(
        self,
        db: RegistrationDB,
        options: Options,
        ports: Optional[Callable[[], tuple[int, int]]] = None,
    ) -> None:
        self.db = db
        self.options = options
        self._ports = ports or (lambda: (0, 0))

    def _log(self, level: LogLevel, message: str, *args: object) -> None:
        self.options.logf(level, message, *args)

    def io_loop(self, client: Client) -> None:
        """Serve commands until the peer disconnects.

        Raises the client error or I/O error that ended the connection. On
        exit the client is removed as producer from all its registrations.
        """
        try:
            while True:
                raw = client.reader.readline()
                if not raw.endswith(b"\n"):
                    return
                params = raw.decode("utf-8", "replace").strip().split(" ")
                try:
                    response = self.execute(client, params)
                except ClientError as err:
                    ctx = f" - {err.parent}" if err.parent is not None else ""
                    self._log(LogLevel.ERROR, "[%s] - %s%s", client, err, ctx)
                    try:
                        send_response(client.writer, str(err).encode())
                    except OSError as send_err:
                        self._log(LogLevel.ERROR, "[%s] - %s%s", client, send_err, ctx)
                        raise err from send_err
                    if isinstance(err, FatalClientError):
                        raise
                    continue
                if response is not None:
                    send_response(client.writer, response)
        finally:
            self._log(LogLevel.INFO, "PROTOCOL(V1): [%s] exiting ioloop", client)
            self._unregister_all(client)

    def _unregister_all(self, client: Client) -> None:
        if client.peer_info is None:
            return
        for reg in self.db.lookup_registrations(client.peer_info.id):
            removed, _ = self.db.remove_producer(reg, client.peer_info.id)
            if removed:
                self._log(
                    LogLevel.INFO,
                    "DB: client(%s) UNREGISTER category:%s key:%s subkey:%s",
                    client, reg.category, reg.key, reg.subkey,
                )

    def execute(self, client: Client, params: list[str]) -> Optional[bytes]:
        """Run one command line, already split into words."""
        command = params[0] if params else ""
        if command == "PING":
            return self.ping(client, params)
        if command == "IDENTIFY":
            return self.identify(client, params[1:])
        if command == "REGISTER":
            return self.register(client, params[1:])
        if command == "UNREGISTER":
            return self.unregister(client, params[1:])
        raise FatalClientError("E_INVALID", f"invalid command {command}")

    @staticmethod
    def _topic_channel(command: str, params: list[str]) -> tuple[str, str]:
        if not params:
            raise FatalClientError("E_INVALID", f"{command} insufficient number of params")
        topic = params[0]
        channel = params[1] if len(params) >= 2 else ""
        if not is_valid_topic_name(topic):
            raise FatalClientError("E_BAD_TOPIC", f"{command} topic name '{topic}' is not valid")
        if channel and not is_valid_channel_name(channel):
            raise FatalClientError(
                "E_BAD_CHANNEL", f"{command} channel name '{channel}' is not valid"
            )
        return topic, channel

    @staticmethod
    def _require_identified(client: Client) -> PeerInfo:
        if client.peer_info is None:
            raise FatalClientError("E_INVALID", "client must IDENTIFY")
        return client.peer_info

    def _log_change(self, verb: str, client: Client, category: str, key: str, subkey: str) -> None:
        self._log(
            LogLevel.INFO,
            "DB: client(%s) %s category:%s key:%s subkey:%s",
            client, verb, category, key, subkey,
        )

    def register(self, client: Client, params: list[str]) -> bytes:
        """Record the client as producer of a topic and, optionally, a channel."""
        peer_info = self._require_identified(client)
        topic, channel = self._topic_channel("REGISTER", params)
        if channel:
            key = Registration("channel", topic, channel)
            if self.db.add_producer(key, Producer(peer_info)):
                self._log_change("REGISTER", client, "channel", topic, channel)
        key = Registration("topic", topic, "")
        if self.db.add_producer(key, Producer(peer_info)):
            self._log_change("REGISTER", client, "topic", topic, "")
        return b"OK"

    def unregister(self, client: Client, params: list[str]) -> bytes:
        """Remove the client as producer of a channel, or of a topic and its channels."""
        peer_info = self._require_identified(client)
        topic, channel = self._topic_channel("UNREGISTER", params)
        if channel:
            key = Registration("channel", topic, channel)
            removed, left = self.db.remove_producer(key, peer_info.id)
            if removed:
                self._log_change("UNREGISTER", client, "channel", topic, channel)
            if left == 0 and channel.endswith(_EPHEMERAL_SUFFIX):
                self.db.remove_registration(key)
            return b"OK"

        for reg in self.db.find_registrations("channel", topic, "*"):
            removed, _ = self.db.remove_producer(reg, peer_info.id)
            if removed:
                self._log(
                    LogLevel.WARN,
                    "client(%s) unexpected UNREGISTER category:%s key:%s subkey:%s",
                    client, "channel", topic, reg.subkey,
                )
        key = Registration("topic", topic, "")
        removed, left = self.db.remove_producer(key, peer_info.id)
        if removed:
            self._log_change("UNREGISTER", client, "topic", topic, "")
        if left == 0 and topic.endswith(_EPHEMERAL_SUFFIX):
            self.db.remove_registration(key)
        return b"OK"

    def identify(self, client: Client, params: list[str]) -> bytes:
        """Read the client's JSON description and answer with this server's."""
        if client.peer_info is not None:
            raise FatalClientError("E_INVALID", "cannot IDENTIFY again")

        header = client.reader.read(_SIZE.size)
        if header is None or len(header) != _SIZE.size:
            raise FatalClientError("E_BAD_BODY", "IDENTIFY failed to read body size")
        (body_len,) = _SIZE.unpack(header)
        if body_len < 0:
            raise FatalClientError("E_BAD_BODY", "IDENTIFY failed to read body")
        body = client.reader.read(body_len) if body_len else b""
        if body is None or len(body) != body_len:
            raise FatalClientError("E_BAD_BODY", "IDENTIFY failed to read body")

        try:
            peer_info = PeerInfo.from_json(body, client.remote_address)
        except ValueError as exc:
            raise FatalClientError(
                "E_BAD_BODY", "IDENTIFY failed to decode JSON body", exc
            ) from exc
        peer_info.remote_address = client.remote_address

        if (
            not peer_info.broadcast_address
            or peer_info.tcp_port == 0
            or peer_info.http_port == 0
            or not peer_info.version
        ):
            raise FatalClientError("E_BAD_BODY", "IDENTIFY missing fields")

        peer_info.last_update = time.time_ns()
        self._log(
            LogLevel.INFO,
            "CLIENT(%s): IDENTIFY Address:%s TCP:%d HTTP:%d Version:%s",
            client, peer_info.broadcast_address, peer_info.tcp_port,
            peer_info.http_port, peer_info.version,
        )

        client.peer_info = peer_info
        if self.db.add_producer(Registration("client", "", ""), Producer(peer_info)):
            self._log_change("REGISTER", client, "client", "", "")

        tcp_port, http_port = self._ports()
        data = {
            "tcp_port": tcp_port,
            "http_port": http_port,
            "version": VERSION,
            "broadcast_address": self.options.broadcast_address,
            "hostname": socket.gethostname(),
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()

    def ping(self, client: Client, params: list[str]) -> bytes:
        """Mark an identified client as alive."""
        peer_info = client.peer_info
        if peer_info is not None:
            now = time.time_ns()
            elapsed = (now - peer_info.last_update) / 1e9
            self._log(
                LogLevel.INFO, "CLIENT(%s): pinged (last ping %.6fs)", peer_info.id, elapsed
            )
            peer_info.last_update = now
        return b"OK"