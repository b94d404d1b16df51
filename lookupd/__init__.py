"""Directory daemon for message queue nodes: registration over TCP, lookup over HTTP."""

__version__ = "1.0.0"