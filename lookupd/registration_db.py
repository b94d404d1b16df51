"""In-memory registry of topics, channels and the producers that serve them."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Iterable, Union

Duration = Union[int, float, timedelta]

_WILDCARD = "*"


def _duration_ns(value: Duration) -> int:
    """Convert a duration given in seconds or as a timedelta to nanoseconds."""
    if isinstance(value, timedelta):
        return int(value.total_seconds() * 1_000_000_000)
    return int(value * 1_000_000_000)


@dataclass(frozen=True)
class Registration:
    """A registry key: a category (client, topic, channel), a key and a subkey."""

    category: str
    key: str
    subkey: str

    def is_match(self, category: str, key: str, subkey: str) -> bool:
        """Report whether this registration matches, ``*`` being a wildcard."""
        if category != self.category:
            return False
        if key != _WILDCARD and self.key != key:
            return False
        if subkey != _WILDCARD and self.subkey != subkey:
            return False
        return True


class Registrations(list):
    """A list of :class:`Registration` with lookup helpers."""

    def filter(self, category: str, key: str, subkey: str) -> "Registrations":
        return Registrations(r for r in self if r.is_match(category, key, subkey))

    def keys(self) -> list[str]:
        return [r.key for r in self]

    def subkeys(self) -> list[str]:
        return [r.subkey for r in self]


_STRING_FIELDS = ("remote_address", "hostname", "broadcast_address", "version")
_INT_FIELDS = ("tcp_port", "http_port")


@dataclass(eq=False)
class PeerInfo:
    """What a connected daemon told about itself when it identified."""

    id: str = ""
    remote_address: str = ""
    hostname: str = ""
    broadcast_address: str = ""
    tcp_port: int = 0
    http_port: int = 0
    version: str = ""
    last_update: int = 0  # nanoseconds since the epoch

    @classmethod
    def from_json(cls, data: Union[str, bytes, bytearray], peer_id: str) -> "PeerInfo":
        """Decode a JSON object body; raise ValueError if it is malformed."""
        try:
            doc = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValueError(f"invalid JSON: {exc}") from exc
        if not isinstance(doc, dict):
            raise ValueError("JSON body must be an object")

        values: dict[str, Any] = {}
        for name in _STRING_FIELDS:
            value = doc.get(name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"field {name!r} must be a string")
            values[name] = value
        for name in _INT_FIELDS:
            value = doc.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"field {name!r} must be an integer")
            values[name] = value
        return cls(id=peer_id, **values)

    def to_dict(self) -> dict[str, Any]:
        """The public JSON form of this peer."""
        return {
            "remote_address": self.remote_address,
            "hostname": self.hostname,
            "broadcast_address": self.broadcast_address,
            "tcp_port": self.tcp_port,
            "http_port": self.http_port,
            "version": self.version,
        }


@dataclass(eq=False)
class Producer:
    """A peer serving a registration, possibly tombstoned."""

    peer_info: PeerInfo
    tombstoned: bool = False
    tombstoned_at: int = 0  # nanoseconds since the epoch

    def __str__(self) -> str:
        info = self.peer_info
        return f"{info.broadcast_address} [{info.tcp_port}, {info.http_port}]"

    def tombstone(self) -> None:
        self.tombstoned = True
        self.tombstoned_at = time.time_ns()

    def is_tombstoned(self, lifetime: Duration) -> bool:
        return self.tombstoned and time.time_ns() - self.tombstoned_at < _duration_ns(lifetime)


class Producers(list):
    """A list of :class:`Producer` with filtering helpers."""

    def filter_by_active(
        self, inactivity_timeout: Duration, tombstone_lifetime: Duration
    ) -> "Producers":
        """Keep producers seen recently enough and not currently tombstoned."""
        now = time.time_ns()
        timeout_ns = _duration_ns(inactivity_timeout)
        return Producers(
            p
            for p in self
            if now - p.peer_info.last_update <= timeout_ns
            and not p.is_tombstoned(tombstone_lifetime)
        )

    def peer_info(self) -> list[PeerInfo]:
        return [p.peer_info for p in self]


@dataclass
class RegistrationDB:
    """Thread-safe map from registrations to the producers behind them."""

    _map: dict[Registration, dict[str, Producer]] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def add_registration(self, key: Registration) -> None:
        """Add a registration with no producers, unless it already exists."""
        with self._lock:
            self._map.setdefault(key, {})

    def add_producer(self, key: Registration, producer: Producer) -> bool:
        """Add a producer to a registration; return False if it was already there."""
        with self._lock:
            producers = self._map.setdefault(key, {})
            peer_id = producer.peer_info.id
            if peer_id in producers:
                return False
            producers[peer_id] = producer
            return True

    def remove_producer(self, key: Registration, peer_id: str) -> tuple[bool, int]:
        """Remove a producer; return whether it was removed and how many remain.

        The registration itself is kept even when no producers remain.
        """
        with self._lock:
            producers = self._map.get(key)
            if producers is None:
                return False, 0
            removed = producers.pop(peer_id, None) is not None
            return removed, len(producers)

    def remove_registration(self, key: Registration) -> None:
        """Remove a registration and all its producers."""
        with self._lock:
            self._map.pop(key, None)

    @staticmethod
    def _needs_filter(key: str, subkey: str) -> bool:
        return key == _WILDCARD or subkey == _WILDCARD

    def find_registrations(self, category: str, key: str, subkey: str) -> Registrations:
        with self._lock:
            if not self._needs_filter(key, subkey):
                reg = Registration(category, key, subkey)
                return Registrations([reg] if reg in self._map else [])
            return Registrations(r for r in self._map if r.is_match(category, key, subkey))

    def find_producers(self, category: str, key: str, subkey: str) -> Producers:
        """Producers of all matching registrations, one per peer id."""
        with self._lock:
            if not self._needs_filter(key, subkey):
                reg = Registration(category, key, subkey)
                return Producers(self._map.get(reg, {}).values())
            seen: set[str] = set()
            result = Producers()
            for reg, producers in self._map.items():
                if not reg.is_match(category, key, subkey):
                    continue
                for producer in producers.values():
                    if producer.peer_info.id not in seen:
                        seen.add(producer.peer_info.id)
                        result.append(producer)
            return result

    def lookup_registrations(self, peer_id: str) -> Registrations:
        """All registrations the given peer is a producer of."""
        with self._lock:
            return Registrations(reg for reg, producers in self._map.items() if peer_id in producers)

    def snapshot(self) -> dict[Registration, list[Producer]]:
        """A consistent copy of the whole registry."""
        with self._lock:
            return {reg: list(producers.values()) for reg, producers in self._map.items()}

    def _all(self) -> Iterable[Registration]:
        with self._lock:
            return list(self._map)