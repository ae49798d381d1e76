"""Exception types raised by the sync engine."""

from __future__ import annotations

from typing import Any


class StorixSyncError(RuntimeError):
    """Base error for every failure surfaced by :mod:`storix_sync`."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class ConfigurationError(StorixSyncError):
    """Raised when the supplied options cannot be turned into a config."""


class UnknownTableError(StorixSyncError, KeyError):
    """Raised when an operation names a table outside the closed table set."""

    def __init__(self, table: str) -> None:
        super().__init__(f"unknown table: {table}", reason="unknown_table")
        self.table = table

    def __str__(self) -> str:
        return self.args[0]


class TransportError(StorixSyncError):
    """The delivery mechanism failed before a reply could be read."""


class TransportTimeout(TransportError):
    """No reply arrived within the transport timeout."""

    def __init__(self, message: str, *, timeout: float) -> None:
        super().__init__(message, reason="timeout")
        self.timeout = timeout


class RemoteLogicError(StorixSyncError):
    """The exchange succeeded but the remote answered with ``{"error": ...}``."""

    def __init__(self, message: str, *, payload: Any = None) -> None:
        super().__init__(message, reason="remote_error")
        self.payload = payload


class MalformedPayloadError(StorixSyncError):
    """A stored field expected to hold JSON could not be decoded."""

    def __init__(self, message: str, *, raw: Any = None) -> None:
        super().__init__(message, reason="malformed_payload")
        self.raw = raw


__all__ = [
    "ConfigurationError",
    "MalformedPayloadError",
    "RemoteLogicError",
    "StorixSyncError",
    "TransportError",
    "TransportTimeout",
    "UnknownTableError",
]
