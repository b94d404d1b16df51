"""HTTP interface of the lookup daemon: queries for consumers and admin actions."""

from __future__ import annotations

import json
import re
import time
from http.server import BaseHTTPRequestHandler
from typing import Any, Callable, Mapping, Optional, Sequence, Union
from urllib.parse import unquote_plus, urlsplit

from .lookup_protocol import VERSION, is_valid_channel_name, is_valid_topic_name
from .options import LogLevel, Options
from .registration_db import PeerInfo, Producers, Registration, RegistrationDB

Params = Optional[Mapping[str, Union[str, Sequence[str]]]]
Response = tuple[int, dict[str, str], bytes]

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")
_V1_CONTENT_TYPE = "nsq; version=1.0"


class HTTPError(Exception):
    """An error answered to the HTTP client with a status code and a message."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


def _parse_query(query: str) -> dict[str, list[str]]:
    """Parse a query string; raise ValueError on a malformed percent escape."""
    params: dict[str, list[str]] = {}
    for part in re.split(r"[&;]", query):
        if not part:
            continue
        name, _, value = part.partition("=")
        if _BAD_ESCAPE.search(name) or _BAD_ESCAPE.search(value):
            raise ValueError(f"invalid escape in {part!r}")
        params.setdefault(unquote_plus(name), []).append(unquote_plus(value))
    return params


def _param(params: Params, name: str) -> Optional[str]:
    """First value of a query parameter, or None when it is absent."""
    if params is None:
        raise HTTPError(400, "INVALID_REQUEST")
    value = params.get(name)
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value[0] if value else None


def _require(params: Params, name: str, missing_code: str) -> str:
    value = _param(params, name)
    if value is None:
        raise HTTPError(400, missing_code)
    return value


def get_topic_channel_args(params: Params) -> tuple[str, str]:
    """Read and validate the ``topic`` and ``channel`` parameters."""
    topic = _require(params, "topic", "MISSING_ARG_TOPIC")
    if not is_valid_topic_name(topic):
        raise HTTPError(400, "INVALID_ARG_TOPIC")
    channel = _require(params, "channel", "MISSING_ARG_CHANNEL")
    if not is_valid_channel_name(channel):
        raise HTTPError(400, "INVALID_ARG_CHANNEL")
    return topic, channel


def _json_default(value: Any) -> Any:
    if isinstance(value, PeerInfo):
        return value.to_dict()
    raise TypeError(f"cannot encode {type(value).__name__}")


def _v1_response(code: int, data: Any) -> Response:
    headers = {"X-NSQ-Content-Type": _V1_CONTENT_TYPE}
    if code != 200:
        body = json.dumps({"message": str(data)}).encode()
        headers["Content-Type"] = "application/json; charset=utf-8"
    elif data is None:
        body = b""
    elif isinstance(data, str):
        body = data.encode()
    elif isinstance(data, (bytes, bytearray)):
        body = bytes(data)
    else:
        body = json.dumps(data, default=_json_default).encode()
        headers["Content-Type"] = "application/json; charset=utf-8"
    return code, headers, body


def _plain_response(code: int, data: Any) -> Response:
    return code, {"Content-Type": "text/plain; charset=utf-8"}, str(data).encode()


class HTTPApi:
    """Routes HTTP requests to handlers working on a registration database."""

    def __init__(self, db: RegistrationDB, options: Options) -> None:
        self.db = db
        self.options = options
        get, post = "GET", "POST"
        self._routes: dict[str, dict[str, tuple[Callable[[Params], Any], bool]]] = {
            "/ping": {get: (self.ping, True)},
            "/info": {get: (self.info, False)},
            "/debug": {get: (self.debug, False)},
            "/lookup": {get: (self.lookup, False)},
            "/topics": {get: (self.topics, False)},
            "/channels": {get: (self.channels, False)},
            "/nodes": {get: (self.nodes, False)},
            "/topic/create": {post: (self.create_topic, False)},
            "/topic/delete": {post: (self.delete_topic, False)},
            "/channel/create": {post: (self.create_channel, False)},
            "/channel/delete": {post: (self.delete_channel, False)},
            "/topic/tombstone": {post: (self.tombstone_topic_producer, False)},
        }

    def _log(self, level: LogLevel, message: str, *args: object) -> None:
        self.options.logf(level, message, *args)

    def handle(self, method: str, target: str) -> Response:
        """Answer one request; return status code, headers and body."""
        start = time.monotonic()
        split = urlsplit(target)
        routes = self._routes.get(split.path)
        if routes is None:
            response = _v1_response(404, "NOT_FOUND")
        elif method == "OPTIONS":
            allow = ", ".join(sorted({*routes, "OPTIONS"}))
            response = (200, {"Allow": allow}, b"")
        elif method not in routes:
            allow = ", ".join(sorted({*routes, "OPTIONS"}))
            code, headers, body = _v1_response(405, "METHOD_NOT_ALLOWED")
            headers["Allow"] = allow
            response = (code, headers, body)
        else:
            handler, plain = routes[method]
            respond = _plain_response if plain else _v1_response
            try:
                params: Params = _parse_query(split.query)
            except ValueError:
                params = None
            try:
                response = respond(200, handler(params))
            except HTTPError as err:
                response = respond(err.code, err.message)
            except Exception as exc:  # noqa: BLE001 - any handler failure is a 500
                self._log(LogLevel.ERROR, "panic in HTTP handler - %s", exc)
                response = _v1_response(500, "INTERNAL_ERROR")
        elapsed = time.monotonic() - start
        self._log(LogLevel.INFO, "%d %s %s %.6fs", response[0], method, target, elapsed)
        return response

    def ping(self, params: Params) -> str:
        """Liveness check: the registration database must answer a lookup."""
        self.db.find_registrations("client", "", "")
        return "OK"

    def info(self, params: Params) -> dict[str, str]:
        return {"version": VERSION}

    def topics(self, params: Params) -> dict[str, list[str]]:
        return {"topics": self.db.find_registrations("topic", "*", "").keys()}

    def channels(self, params: Params) -> dict[str, list[str]]:
        topic = _require(params, "topic", "MISSING_ARG_TOPIC")
        return {"channels": self.db.find_registrations("channel", topic, "*").subkeys()}

    def lookup(self, params: Params) -> dict[str, Any]:
        topic = _require(params, "topic", "MISSING_ARG_TOPIC")
        if not self.db.find_registrations("topic", topic, ""):
            raise HTTPError(404, "TOPIC_NOT_FOUND")
        channels = self.db.find_registrations("channel", topic, "*").subkeys()
        producers = self.db.find_producers("topic", topic, "").filter_by_active(
            self.options.inactive_producer_timeout, self.options.tombstone_lifetime
        )
        return {"channels": channels, "producers": producers.peer_info()}

    def create_topic(self, params: Params) -> None:
        topic = _require(params, "topic", "MISSING_ARG_TOPIC")
        if not is_valid_topic_name(topic):
            raise HTTPError(400, "INVALID_ARG_TOPIC")
        self._log(LogLevel.INFO, "DB: adding topic(%s)", topic)
        self.db.add_registration(Registration("topic", topic, ""))

    def delete_topic(self, params: Params) -> None:
        topic = _require(params, "topic", "MISSING_ARG_TOPIC")
        for reg in self.db.find_registrations("channel", topic, "*"):
            self._log(LogLevel.INFO, "DB: removing channel(%s) from topic(%s)", reg.subkey, topic)
            self.db.remove_registration(reg)
        for reg in self.db.find_registrations("topic", topic, ""):
            self._log(LogLevel.INFO, "DB: removing topic(%s)", topic)
            self.db.remove_registration(reg)

    def tombstone_topic_producer(self, params: Params) -> None:
        topic = _require(params, "topic", "MISSING_ARG_TOPIC")
        node = _require(params, "node", "MISSING_ARG_NODE")
        self._log(
            LogLevel.INFO, "DB: setting tombstone for producer@%s of topic(%s)", node, topic
        )
        for producer in self.db.find_producers("topic", topic, ""):
            info = producer.peer_info
            if f"{info.broadcast_address}:{info.http_port}" == node:
                producer.tombstone()

    def create_channel(self, params: Params) -> None:
        if params is None:
            raise HTTPError(400, "INVALID_REQUEST")
        topic, channel = get_topic_channel_args(params)
        self._log(LogLevel.INFO, "DB: adding channel(%s) in topic(%s)", channel, topic)
        self.db.add_registration(Registration("channel", topic, channel))
        self._log(LogLevel.INFO, "DB: adding topic(%s)", topic)
        self.db.add_registration(Registration("topic", topic, ""))

    def delete_channel(self, params: Params) -> None:
        if params is None:
            raise HTTPError(400, "INVALID_REQUEST")
        topic, channel = get_topic_channel_args(params)
        registrations = self.db.find_registrations("channel", topic, channel)
        if not registrations:
            raise HTTPError(404, "CHANNEL_NOT_FOUND")
        self._log(LogLevel.INFO, "DB: removing channel(%s) from topic(%s)", channel, topic)
        for reg in registrations:
            self.db.remove_registration(reg)

    def nodes(self, params: Params) -> dict[str, list[dict[str, Any]]]:
        # tombstoned nodes are kept; only inactive ones are dropped
        producers = self.db.find_producers("client", "", "").filter_by_active(
            self.options.inactive_producer_timeout, 0
        )
        topic_producers: dict[str, Producers] = {}
        nodes = []
        for producer in producers:
            info = producer.peer_info
            topics = self.db.lookup_registrations(info.id).filter("topic", "*", "").keys()
            tombstones = []
            for topic in topics:
                if topic not in topic_producers:
                    topic_producers[topic] = self.db.find_producers("topic", topic, "")
                match = next(
                    (tp for tp in topic_producers[topic] if tp.peer_info is info), None
                )
                tombstones.append(
                    match is not None and match.is_tombstoned(self.options.tombstone_lifetime)
                )
            nodes.append(
                {
                    "remote_address": info.remote_address,
                    "hostname": info.hostname,
                    "broadcast_address": info.broadcast_address,
                    "tcp_port": info.tcp_port,
                    "http_port": info.http_port,
                    "version": info.version,
                    "tombstones": tombstones,
                    "topics": topics,
                }
            )
        return {"producers": nodes}

    def debug(self, params: Params) -> dict[str, list[dict[str, Any]]]:
        data: dict[str, list[dict[str, Any]]] = {}
        for reg, producers in self.db.snapshot().items():
            key = f"{reg.category}:{reg.key}:{reg.subkey}"
            for producer in producers:
                info = producer.peer_info
                data.setdefault(key, []).append(
                    {
                        "id": info.id,
                        "hostname": info.hostname,
                        "broadcast_address": info.broadcast_address,
                        "tcp_port": info.tcp_port,
                        "http_port": info.http_port,
                        "version": info.version,
                        "last_update": info.last_update,
                        "tombstoned": producer.tombstoned,
                        "tombstoned_at": producer.tombstoned_at,
                    }
                )
        return data


def make_request_handler(api: HTTPApi) -> type[BaseHTTPRequestHandler]:
    """A request handler class serving ``api`` for :mod:`http.server` servers."""

    class _Handler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"
        server_version = "nsqlookupd"

        def _dispatch(self) -> None:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            if length > 0:
                self.rfile.read(length)
            status, headers, body = api.handle(self.command, self.path)
            self.send_response(status)
            for name, value in headers.items():
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(body)

        do_GET = _dispatch
        do_POST = _dispatch
        do_PUT = _dispatch
        do_DELETE = _dispatch
        do_PATCH = _dispatch
        do_HEAD = _dispatch
        do_OPTIONS = _dispatch

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            # requests are already logged by the API; server chatter goes to debug
            api._log(LogLevel.DEBUG, "HTTP: %s - %s", self.address_string(), format % args)

    return _Handler