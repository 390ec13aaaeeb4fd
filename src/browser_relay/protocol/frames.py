"""Inbound frame definitions.

The agent sends two kinds of frames back to the relay:
- Responses: carry the correlation id of the command they answer
- Notifications: uncorrelated events and logs

The relay also produces its own notifications (status changes, orphan
responses, diagnostics) which share the same shape so subscribers see one
uniform stream.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..errors import ProtocolParseError

FORWARDED_EVENT_METHOD = "forwardCDPEvent"
LOG_METHOD = "log"


class Response(BaseModel):
    """Agent answer to exactly one command."""

    id: int
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class NotificationKind(str, Enum):
    """Notification types delivered to subscribers."""

    FORWARDED_EVENT = "event"
    LOG = "log"
    STATUS_CHANGE = "status"
    ORPHAN_RESPONSE = "orphan-response"
    DIAGNOSTIC = "diagnostic"


class Notification(BaseModel):
    """An uncorrelated notification."""

    kind: NotificationKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_event(self) -> dict[str, Any]:
        """Flatten to the dict subscribers receive."""
        return {"type": self.kind.value, "timestamp": self.timestamp, **self.payload}

    @property
    def event_method(self) -> str | None:
        """Protocol method of a forwarded event, if any."""
        if self.kind != NotificationKind.FORWARDED_EVENT:
            return None
        return self.payload.get("method")

    @classmethod
    def forwarded_event(
        cls,
        method: str,
        params: dict[str, Any] | None = None,
        target_id: str | None = None,
        session_id: str | None = None,
    ) -> Notification:
        payload: dict[str, Any] = {"method": method, "params": params or {}}
        if target_id:
            payload["targetId"] = target_id
        if session_id:
            payload["sessionId"] = session_id
        return cls(kind=NotificationKind.FORWARDED_EVENT, payload=payload)

    @classmethod
    def log(cls, level: str, args: list[str]) -> Notification:
        return cls(kind=NotificationKind.LOG, payload={"level": level, "args": args})

    @classmethod
    def status(cls, agent_connected: bool, reason: str | None = None) -> Notification:
        return cls(
            kind=NotificationKind.STATUS_CHANGE,
            payload={"agentConnected": agent_connected, "reason": reason},
        )

    @classmethod
    def orphan(cls, response: Response) -> Notification:
        return cls(
            kind=NotificationKind.ORPHAN_RESPONSE,
            payload={"id": response.id, "result": response.result, "error": response.error},
        )

    @classmethod
    def diagnostic(cls, name: str, message: str, raw: Any = None) -> Notification:
        return cls(
            kind=NotificationKind.DIAGNOSTIC,
            payload={"diagnostic": name, "message": message, "raw": raw},
        )


def _is_record(value: Any) -> bool:
    return isinstance(value, dict)


def _parse_response(parsed: dict[str, Any]) -> Response:
    error = parsed.get("error")
    if error is not None and not isinstance(error, str):
        raise ProtocolParseError(f"Response {parsed['id']} has a non-string error")
    return Response(id=parsed["id"], result=parsed.get("result"), error=error)


def _parse_event(params: dict[str, Any]) -> Notification:
    inner = params.get("params")
    if inner is not None and not _is_record(inner):
        raise ProtocolParseError("Forwarded event params must be an object")
    target_id = params.get("targetId")
    session_id = params.get("sessionId")
    return Notification.forwarded_event(
        params["method"],
        inner,
        target_id=target_id if isinstance(target_id, str) else None,
        session_id=session_id if isinstance(session_id, str) else None,
    )


def parse_frame(text: str | bytes) -> Response | Notification | None:
    """Parse one inbound agent frame.

    Returns:
        A Response, a Notification, or None for keepalive replies

    Raises:
        ProtocolParseError: If the frame is not valid JSON or is malformed
    """
    if isinstance(text, bytes):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolParseError(f"Frame is not UTF-8: {e}") from e

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolParseError(f"Invalid JSON frame: {e}", raw=text) from e

    if not _is_record(parsed):
        return Notification.diagnostic("unknown-from-agent", "Frame is not an object", parsed)

    frame_id = parsed.get("id")
    if isinstance(frame_id, int) and not isinstance(frame_id, bool):
        try:
            return _parse_response(parsed)
        except ProtocolParseError as e:
            e.raw = text
            raise

    method = parsed.get("method")
    params = parsed.get("params")

    is_event = _is_record(params) and isinstance(params.get("method"), str)
    if method == FORWARDED_EVENT_METHOD and is_event:
        try:
            return _parse_event(params)
        except ProtocolParseError as e:
            e.raw = text
            raise

    if method == LOG_METHOD and _is_record(params) and isinstance(params.get("args"), list):
        level = params.get("level")
        return Notification.log(
            level if isinstance(level, str) else "log",
            [a if isinstance(a, str) else json.dumps(a) for a in params["args"]],
        )

    if parsed.get("type") == "pong":
        return None

    return Notification.diagnostic("unknown-from-agent", "Unrecognized frame", parsed)
