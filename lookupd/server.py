"""The lookup daemon: a TCP listener for registering daemons plus the HTTP API."""

from __future__ import annotations

import argparse
import platform
import queue
import re
import signal
import socket
import socketserver
import sys
import threading
from http.server import ThreadingHTTPServer
from typing import Callable, Optional, Sequence

from .http import HTTPApi, make_request_handler
from .lookup_protocol import VERSION, Client, ClientError, LookupProtocolV1, send_response
from .options import LogLevel, Options
from .registration_db import RegistrationDB

PROTOCOL_MAGIC_V1 = b"  V1"

_POLL_INTERVAL = 0.2
_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)"


def _split_host_port(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid address {address!r}")
    return host.strip("[]"), int(port)


def _family(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _format_address(address: object) -> str:
    if isinstance(address, tuple):
        host, port = address[0], address[1]
        return f"[{host}]:{port}" if ":" in str(host) else f"{host}:{port}"
    return str(address)


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], handler: type) -> None:
        self.address_family = _family(address[0])
        super().__init__(address, handler)

    def server_bind(self) -> None:
        # skip the reverse lookup that HTTPServer does on bind
        socketserver.TCPServer.server_bind(self)
        self.server_name, self.server_port = str(self.server_address[0]), self.server_address[1]


class NSQLookupd:
    """A lookup daemon bound to its TCP and HTTP addresses."""

    def __init__(self, options: Optional[Options] = None) -> None:
        self.options = options if options is not None else Options()
        self.db = RegistrationDB()
        self._lock = threading.Lock()
        self._closing = False
        self._http_serving = False
        self._threads: list[threading.Thread] = []
        self._conns: dict[str, socket.socket] = {}

        self._log(LogLevel.INFO, "nsqlookupd v%s (built w/ python %s)",
                  VERSION, platform.python_version())

        address = self.options.tcp_address
        try:
            host, port = _split_host_port(address)
            self._tcp_listener = socket.create_server((host, port), family=_family(host))
        except (OSError, ValueError) as exc:
            raise OSError(f"listen ({address}) failed - {exc}") from exc
        self._tcp_listener.settimeout(_POLL_INTERVAL)

        address = self.options.http_address
        try:
            handler = make_request_handler(HTTPApi(self.db, self.options))
            self._http_server = _HTTPServer(_split_host_port(address), handler)
        except (OSError, ValueError) as exc:
            self._tcp_listener.close()
            raise OSError(f"listen ({address}) failed - {exc}") from exc

        self._protocol = LookupProtocolV1(
            self.db, self.options, ports=lambda: (self.tcp_address[1], self.http_address[1])
        )

    def _log(self, level: LogLevel, message: str, *args: object) -> None:
        self.options.logf(level, message, *args)

    @property
    def tcp_address(self) -> tuple[str, int]:
        """The host and port the TCP listener is actually bound to."""
        host, port = self._tcp_listener.getsockname()[:2]
        return host, port

    @property
    def http_address(self) -> tuple[str, int]:
        """The host and port the HTTP server is actually bound to."""
        host, port = self._http_server.server_address[:2]
        return str(host), int(port)

    def main(self) -> None:
        """Serve until :meth:`exit` is called; raise the error that stopped a server."""
        exits: queue.Queue[Optional[BaseException]] = queue.Queue()
        with self._lock:
            if self._closing:
                return
            self._http_serving = True
            for target in (self._serve_tcp, self._serve_http):
                thread = threading.Thread(target=self._run, args=(target, exits), daemon=True)
                self._threads.append(thread)
                thread.start()
        err = exits.get()
        if err is not None:
            self._log(LogLevel.FATAL, "%s", err)
            raise err

    @staticmethod
    def _run(target: Callable[[], None], exits: queue.Queue) -> None:
        try:
            target()
        except Exception as exc:  # noqa: BLE001 - reported to main()
            exits.put(exc)
        else:
            exits.put(None)

    def _serve_tcp(self) -> None:
        name = _format_address(self._tcp_listener.getsockname())
        self._log(LogLevel.INFO, "TCP: listening on %s", name)
        while not self._closing:
            try:
                conn, address = self._tcp_listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._closing:
                    break
                raise
            threading.Thread(target=self.handle_connection, args=(conn, address),
                             daemon=True).start()
        self._log(LogLevel.INFO, "TCP: closing %s", name)

    def _serve_http(self) -> None:
        name = _format_address(self._http_server.server_address)
        self._log(LogLevel.INFO, "HTTP: listening on %s", name)
        self._http_server.serve_forever(poll_interval=_POLL_INTERVAL)
        self._log(LogLevel.INFO, "HTTP: closing %s", name)

    def exit(self) -> None:
        """Close the listeners and client connections and wait for the servers."""
        with self._lock:
            self._closing = True
            serving, self._http_serving = self._http_serving, False
            conns = list(self._conns.values())
        self._tcp_listener.close()
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if serving:
            self._http_server.shutdown()
        self._http_server.server_close()
        for thread in self._threads:
            thread.join()

    def handle_connection(self, conn: socket.socket, address: object) -> None:
        """Serve one TCP connection until it ends, then close it."""
        peer = _format_address(address)
        self._log(LogLevel.INFO, "TCP: new client(%s)", peer)

        # a 4-byte magic names the protocol version the client wants to speak
        try:
            magic = conn.recv(len(PROTOCOL_MAGIC_V1), socket.MSG_WAITALL)
            if len(magic) < len(PROTOCOL_MAGIC_V1):
                raise EOFError("EOF")
        except (OSError, EOFError) as exc:
            self._log(LogLevel.ERROR, "failed to read protocol version - %s", exc)
            conn.close()
            return
        text = magic.decode("latin-1")
        self._log(LogLevel.INFO, "CLIENT(%s): desired protocol magic '%s'", peer, text)

        if magic != PROTOCOL_MAGIC_V1:
            try:
                with conn.makefile("wb") as writer:
                    send_response(writer, b"E_BAD_PROTOCOL")
            except OSError:
                pass
            conn.close()
            self._log(LogLevel.ERROR, "client(%s) bad protocol magic '%s'", peer, text)
            return

        client = Client.from_socket(conn, address)
        with self._lock:
            self._conns[peer] = conn
        try:
            self._protocol.io_loop(client)
        except (ClientError, OSError) as err:
            self._log(LogLevel.ERROR, "client(%s) - %s", peer, err)
        finally:
            with self._lock:
                self._conns.pop(peer, None)
            client.close()


def _parse_duration(text: str) -> float:
    """Parse ``300``, ``45s``, ``1m30s`` or ``50ms`` into seconds."""
    value = text.strip()
    if re.fullmatch(r"\d+(?:\.\d*)?", value):
        return float(value)
    if not re.fullmatch(f"(?:{_DURATION_PART})+", value):
        raise ValueError(f"invalid duration {text!r}")
    return sum(float(n) * _DURATION_UNITS[u] for n, u in re.findall(_DURATION_PART, value))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the lookup daemon from the command line; return the exit status."""
    parser = argparse.ArgumentParser(prog="nsqlookupd")
    parser.add_argument("--version", action="store_true", help="print version string")
    parser.add_argument("--log-level", type=LogLevel.parse, help="debug, info, warn, error or fatal")
    parser.add_argument("--log-prefix", help="log message prefix")
    parser.add_argument("--tcp-address", help="<addr>:<port> to listen on for TCP clients")
    parser.add_argument("--http-address", help="<addr>:<port> to listen on for HTTP clients")
    parser.add_argument("--broadcast-address", help="address of this lookupd node")
    parser.add_argument("--inactive-producer-timeout", type=_parse_duration,
                        help="duration since a producer's last ping before it is inactive")
    parser.add_argument("--tombstone-lifetime", type=_parse_duration,
                        help="duration a producer stays tombstoned")
    args = vars(parser.parse_args(argv))
    if args.pop("version"):
        print(f"nsqlookupd v{VERSION} (built w/ python {platform.python_version()})")
        return 0

    overrides = {name: value for name, value in args.items() if value is not None}
    try:
        daemon = NSQLookupd(Options(**overrides))
    except OSError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        return 1

    try:
        signal.signal(signal.SIGTERM, signal.default_int_handler)
    except ValueError:
        pass

    code = 0
    try:
        daemon.main()
    except KeyboardInterrupt:
        pass
    except Exception:  # noqa: BLE001 - already logged as fatal
        code = 1
    finally:
        daemon.exit()
    return code