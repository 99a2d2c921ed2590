"""
Bot Resilience — Error Classification

Maps raised exceptions onto a closed set of failure kinds so retry policies
decide on tags rather than on message text.

Usage:
    kind = classify_error(exc)
    if kind in policy.retryable_kinds:
        ...
"""
import asyncio
import errno
import socket
import sqlite3
from enum import Enum

import aiohttp
import httpx


class ErrorKind(str, Enum):
    CONNECTION_RESET = "ECONNRESET"
    HOST_NOT_FOUND = "ENOTFOUND"
    TIMEOUT = "ETIMEDOUT"
    CONNECTION_REFUSED = "ECONNREFUSED"
    RATE_LIMITED = "RATE_LIMIT"          # chat platform asked us to slow down
    TOO_MANY_REQUESTS = "429"            # generic HTTP API throttling
    DATABASE_BUSY = "SQLITE_BUSY"
    DATABASE_LOCKED = "SQLITE_LOCKED"
    PERMANENT = "PERMANENT"              # anything unrecognised

    @property
    def recoverable(self) -> bool:
        """
        Whether the kind can ever succeed on a later attempt. A policy's
        retryable_kinds allow-list, not this flag, decides what is retried.
        """
        return self is not ErrorKind.PERMANENT


DEFAULT_RETRYABLE_KINDS = frozenset({
    ErrorKind.CONNECTION_RESET,
    ErrorKind.HOST_NOT_FOUND,
    ErrorKind.TIMEOUT,
    ErrorKind.CONNECTION_REFUSED,
})

_ERRNO_KINDS = {
    errno.ECONNRESET: ErrorKind.CONNECTION_RESET,
    errno.ECONNREFUSED: ErrorKind.CONNECTION_REFUSED,
    errno.ETIMEDOUT: ErrorKind.TIMEOUT,
    errno.EPIPE: ErrorKind.CONNECTION_RESET,
}

# First match wins, so subclasses come before their bases.
_TYPE_KINDS = (
    (socket.gaierror, ErrorKind.HOST_NOT_FOUND),
    (ConnectionResetError, ErrorKind.CONNECTION_RESET),
    (ConnectionAbortedError, ErrorKind.CONNECTION_RESET),
    (BrokenPipeError, ErrorKind.CONNECTION_RESET),
    (ConnectionRefusedError, ErrorKind.CONNECTION_REFUSED),
    (httpx.TimeoutException, ErrorKind.TIMEOUT),
    (httpx.ConnectError, ErrorKind.CONNECTION_REFUSED),
    (httpx.RemoteProtocolError, ErrorKind.CONNECTION_RESET),
    (httpx.ReadError, ErrorKind.CONNECTION_RESET),
    (httpx.WriteError, ErrorKind.CONNECTION_RESET),
    (aiohttp.ServerTimeoutError, ErrorKind.TIMEOUT),
    (aiohttp.ServerDisconnectedError, ErrorKind.CONNECTION_RESET),
    (aiohttp.ClientConnectorError, ErrorKind.CONNECTION_REFUSED),
    (aiohttp.ClientConnectionError, ErrorKind.CONNECTION_RESET),
    (TimeoutError, ErrorKind.TIMEOUT),
    (asyncio.TimeoutError, ErrorKind.TIMEOUT),
)

_BY_VALUE = {kind.value: kind for kind in ErrorKind}


def _http_status(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status
    return None


def _sqlite_kind(error: sqlite3.OperationalError) -> ErrorKind | None:
    name = getattr(error, "sqlite_errorname", "")
    if name in _BY_VALUE:
        return _BY_VALUE[name]
    message = str(error).lower()
    if "database table is locked" in message:
        return ErrorKind.DATABASE_LOCKED
    if "database is locked" in message or "database is busy" in message:
        return ErrorKind.DATABASE_BUSY
    return None


def classify_error(error: BaseException) -> ErrorKind:
    """
    Resolve the failure kind of an exception.

    Checked in order: an explicit ``kind`` tag, HTTP status, a ``code``
    attribute naming a kind, sqlite busy/locked, OS errno, exception type.
    """
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    status = _http_status(error)
    if status == 429:
        return ErrorKind.TOO_MANY_REQUESTS

    # Response errors carry their status, not a failure code
    code = getattr(error, "code", None) if status is None else None
    if code is not None and str(code) in _BY_VALUE:
        return _BY_VALUE[str(code)]

    if isinstance(error, sqlite3.OperationalError):
        kind = _sqlite_kind(error)
        if kind:
            return kind

    if isinstance(error, OSError) and error.errno in _ERRNO_KINDS:
        return _ERRNO_KINDS[error.errno]

    for exc_type, kind in _TYPE_KINDS:
        if isinstance(error, exc_type):
            return kind

    return ErrorKind.PERMANENT


def is_transient(error: BaseException, kinds: frozenset = DEFAULT_RETRYABLE_KINDS) -> bool:
    """Default retry classifier: the error's kind is on the allow-list."""
    return classify_error(error) in kinds
