"""Relay error taxonomy.

Every failure a caller can observe is one of these kinds. Errors are raised
inside the relay and converted to Response-shaped results at the Relay Core
boundary, so no caller ever sees a raw exception.
"""

from __future__ import annotations

import re
from enum import Enum

NOT_CONNECTED_MESSAGE = "Agent is not connected"
TIMEOUT_ERROR_PREFIX = "Timeout after"
NOT_FOUND_PREFIX = "Session not found"
AGENT_DISCONNECTED_MESSAGE = "Agent disconnected before command completed."
AGENT_REPLACED_MESSAGE = "Agent reconnected; previous in-flight commands were canceled."
DISCONNECTED_PREFIXES = ("Agent disconnected", "Agent reconnected")
BLOCKED_AGENT_HINT = (
    "The browser agent may be blocked. Manually restart or refresh the agent and retry."
)

_TIMEOUT_PATTERN = re.compile(r"^Timeout after (\d+)ms")


class ErrorKind(str, Enum):
    """Failure classes surfaced to callers."""

    NOT_CONNECTED = "NotConnected"
    TIMEOUT = "Timeout"
    REJECTED = "Rejected"
    NOT_FOUND = "NotFound"
    PROTOCOL_PARSE = "ProtocolParseError"

    @property
    def retryable(self) -> bool:
        """Timeout and NotConnected may succeed on retry; the rest are terminal."""
        return self in (ErrorKind.NOT_CONNECTED, ErrorKind.TIMEOUT)


class RelayError(Exception):
    """Base class for all relay errors."""

    kind: ErrorKind = ErrorKind.REJECTED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotConnectedError(RelayError):
    """No downstream channel is open."""

    kind = ErrorKind.NOT_CONNECTED

    def __init__(self, message: str = NOT_CONNECTED_MESSAGE):
        super().__init__(message)


class RelayTimeoutError(RelayError):
    """Channel open but the agent did not answer in time."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_ms: int, *, include_blocked_hint: bool = False):
        super().__init__(make_timeout_error(timeout_ms, include_blocked_hint))
        self.timeout_ms = timeout_ms
        self.include_blocked_hint = include_blocked_hint

    @classmethod
    def from_message(cls, message: str) -> RelayTimeoutError:
        """Rebuild a timeout error from its wire message."""
        match = _TIMEOUT_PATTERN.match(message)
        timeout_ms = int(match.group(1)) if match else 0
        error = cls(timeout_ms, include_blocked_hint=BLOCKED_AGENT_HINT in message)
        error.args = (message,)
        error.message = message
        return error


class RejectedError(RelayError):
    """The agent answered with an error. The message is passed through verbatim."""

    kind = ErrorKind.REJECTED


class NotFoundError(RelayError):
    """A session key could not be resolved by the registry."""

    kind = ErrorKind.NOT_FOUND


class ProtocolParseError(RelayError):
    """An inbound frame from the agent could not be parsed."""

    kind = ErrorKind.PROTOCOL_PARSE

    def __init__(self, message: str, raw: str | None = None):
        super().__init__(message)
        self.raw = raw


def make_timeout_error(timeout_ms: int, include_blocked_hint: bool) -> str:
    """Build the textual timeout error, optionally with the blocked-agent hint."""
    base = f"{TIMEOUT_ERROR_PREFIX} {timeout_ms}ms"
    if not include_blocked_hint:
        return base
    return f"{base}. {BLOCKED_AGENT_HINT}"


def is_timeout_error(error: str | None) -> bool:
    """Check whether an error string came from a timed-out command."""
    return isinstance(error, str) and error.startswith(TIMEOUT_ERROR_PREFIX)


def classify_error(error: str | None) -> ErrorKind | None:
    """Recover the error kind from a Response error string.

    Responses carry plain strings on the wire, so the kind is recovered from
    the well-known prefixes. Anything unrecognised is an agent rejection.
    """
    if not error:
        return None
    if error == NOT_CONNECTED_MESSAGE or error.startswith(DISCONNECTED_PREFIXES):
        return ErrorKind.NOT_CONNECTED
    if is_timeout_error(error):
        return ErrorKind.TIMEOUT
    if error.startswith(NOT_FOUND_PREFIX):
        return ErrorKind.NOT_FOUND
    return ErrorKind.REJECTED


_STATUS_BY_KIND = {
    ErrorKind.NOT_CONNECTED: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.REJECTED: 502,
    ErrorKind.PROTOCOL_PARSE: 502,
}


def status_for_error(error: str | None) -> int:
    """Map a Response error string to an HTTP status code.

    not-connected -> 503, timeout -> 504, not-found -> 404, all else -> 502.
    """
    kind = classify_error(error)
    if kind is None:
        return 200
    return _STATUS_BY_KIND[kind]


_ERROR_CLASSES: dict[ErrorKind, type[RelayError]] = {
    ErrorKind.NOT_CONNECTED: NotConnectedError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.REJECTED: RejectedError,
    ErrorKind.PROTOCOL_PARSE: ProtocolParseError,
}


def error_from_message(error: str) -> RelayError:
    """Turn a Response error string back into a typed exception."""
    kind = classify_error(error) or ErrorKind.REJECTED
    if kind is ErrorKind.TIMEOUT:
        return RelayTimeoutError.from_message(error)
    return _ERROR_CLASSES[kind](error)
