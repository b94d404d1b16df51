"""Configuration and levelled logging for the lookup daemon."""

from __future__ import annotations

import socket
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Callable, Optional


class LogLevel(IntEnum):
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4
    FATAL = 5

    @classmethod
    def parse(cls, name: str) -> "LogLevel":
        """Parse a level name such as ``info`` or ``warning``; raise ValueError otherwise."""
        normalized = name.strip().upper().replace("WARNING", "WARN")
        try:
            return cls[normalized]
        except KeyError:
            raise ValueError(f"invalid log level {name!r}") from None


@dataclass
class Options:
    """Settings of a lookup daemon; durations are in seconds."""

    log_level: LogLevel = LogLevel.INFO
    log_prefix: str = "[nsqlookupd] "
    logger: Optional[Callable[[str], None]] = None

    tcp_address: str = "0.0.0.0:4160"
    http_address: str = "0.0.0.0:4161"
    broadcast_address: str = field(default_factory=socket.gethostname)

    inactive_producer_timeout: float = 300.0
    tombstone_lifetime: float = 45.0

    def _write_stderr(self, line: str) -> None:
        stamp = datetime.now().strftime("%Y/%m/%d %H:%M:%S.%f")
        print(f"{self.log_prefix}{stamp} {line}", file=sys.stderr, flush=True)

    def logf(self, level: LogLevel, message: str, *args: object) -> None:
        """Log a %-formatted message if ``level`` reaches the configured level."""
        if level < self.log_level:
            return
        text = message % args if args else message
        label = "WARNING" if level == LogLevel.WARN else LogLevel(level).name
        (self.logger or self._write_stderr)(f"{label}: {text}")