"""Relay wire protocol.

Defines the command/response/notification protocol spoken on both sides of
the relay:
- Commands: caller -> relay -> agent, stamped with a correlation id
- Responses: agent -> relay, carrying the matching correlation id
- Notifications: agent -> relay -> subscribers, uncorrelated
"""

from .commands import (
    AgentMethod,
    Command,
    CommandKind,
    CommandRequest,
    CommandRequestParams,
    SessionOp,
)
from .frames import Notification, NotificationKind, Response, parse_frame

__all__ = [
    "AgentMethod",
    "Command",
    "CommandKind",
    "CommandRequest",
    "CommandRequestParams",
    "SessionOp",
    "Notification",
    "NotificationKind",
    "Response",
    "parse_frame",
]
