"""Command definitions for the protocol layer.

Commands are requests from external callers that expect exactly one
Response. The relay assigns every command a fresh integer correlation id
before it is forwarded to the agent; ids supplied by callers are discarded.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CommandKind(str, Enum):
    """Top-level command variants."""

    SESSION_OP = "sessionOp"  # Registry-scoped operation
    PASS_THROUGH = "passThrough"  # Opaque protocol method for the agent


# Method names used by earlier relay clients
LEGACY_KIND_ALIASES = {
    "tab": CommandKind.SESSION_OP,
    "cdp": CommandKind.PASS_THROUGH,
}


class SessionOp(str, Enum):
    """Closed set of registry-scoped operations."""

    GET_ACTIVE = "getActive"
    GET_ACTIVE_ID = "getActiveId"
    ATTACH = "attach"
    DETACH = "detach"
    LIST = "list"

    @classmethod
    def parse(cls, method: str) -> SessionOp:
        """Resolve a session op from its name or a known alias.

        Raises:
            ValueError: If the method is not a registry-scoped operation
        """
        name = method.removeprefix("tab.")
        op = _SESSION_OP_ALIASES.get(name)
        if op is None:
            try:
                op = cls(name)
            except ValueError:
                raise ValueError(f"Unknown session op: {method}") from None
        return op


_SESSION_OP_ALIASES = {
    "getActiveTarget": SessionOp.GET_ACTIVE,
    "getActiveTargetId": SessionOp.GET_ACTIVE_ID,
    "attachTab": SessionOp.ATTACH,
    "detachTab": SessionOp.DETACH,
    "listSessions": SessionOp.LIST,
}


class AgentMethod(str, Enum):
    """Session-scoped methods the relay itself issues to the agent."""

    GET_ACTIVE_TARGET = "tab.getActiveTarget"
    ATTACH = "tab.attach"
    DETACH = "tab.detach"
    CREATE_TARGET = "Target.createTarget"


class Command(BaseModel):
    """A command from a caller (or the registry) to the agent.

    Example wire form, as sent to the agent:
        {
            "id": 7,
            "method": "passThrough",
            "params": {
                "method": "Runtime.evaluate",
                "params": {"expression": "document.title"},
                "targetId": "A1B2C3"
            }
        }
    """

    model_config = ConfigDict(populate_by_name=True)

    correlation_id: int = 0  # 0 until the relay assigns one
    kind: CommandKind
    method: str
    params: dict[str, Any] | None = None
    session_key: str | None = Field(default=None, alias="sessionKey")

    def with_correlation_id(self, correlation_id: int) -> Command:
        """Return a copy stamped with a relay-assigned id."""
        return self.model_copy(update={"correlation_id": correlation_id})

    def to_wire(self, target_id: str | None = None, session_id: str | None = None) -> dict:
        """Serialize to the agent frame format."""
        inner: dict[str, Any] = {"method": self.method}
        if self.params is not None:
            inner["params"] = self.params
        if target_id:
            inner["targetId"] = target_id
        if session_id:
            inner["sessionId"] = session_id
        return {"id": self.correlation_id, "method": self.kind.value, "params": inner}

    @classmethod
    def session_op(
        cls,
        method: str | SessionOp | AgentMethod,
        params: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> Command:
        """Create a registry-scoped command."""
        return cls(
            kind=CommandKind.SESSION_OP,
            method=method.value if isinstance(method, Enum) else method,
            params=params,
            session_key=session_key,
        )

    @classmethod
    def pass_through(
        cls,
        method: str,
        params: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> Command:
        """Create a pass-through protocol command."""
        return cls(
            kind=CommandKind.PASS_THROUGH,
            method=method,
            params=params,
            session_key=session_key,
        )


# =============================================================================
# Inbound request shapes (external callers)
# =============================================================================


class CommandRequestParams(BaseModel):
    """The `params` object of an inbound command request."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    method: str
    params: dict[str, Any] | None = None
    session_key: str | None = Field(default=None, alias="sessionKey")
    target_id: str | None = Field(default=None, alias="targetId")

    @field_validator("session_key", "target_id", mode="before")
    @classmethod
    def _numeric_key_to_str(cls, value: Any) -> Any:
        # Tab ids come back from getActive as integers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class CommandRequest(BaseModel):
    """Inbound command body.

    Accepts the current shape `{"method": "passThrough", "params": {...}}`,
    the enveloped shape `{"type": "command", ...}` and the legacy
    `"tab"`/`"cdp"` method names. Any `id` field is ignored.
    """

    model_config = ConfigDict(extra="ignore")

    type: Literal["command"] | None = None
    method: CommandKind
    params: CommandRequestParams

    @field_validator("method", mode="before")
    @classmethod
    def _resolve_legacy_kind(cls, value: Any) -> Any:
        if isinstance(value, str) and value in LEGACY_KIND_ALIASES:
            return LEGACY_KIND_ALIASES[value]
        return value

    def to_command(self) -> Command:
        """Convert to an unstamped Command."""
        return Command(
            kind=self.method,
            method=self.params.method,
            params=self.params.params,
            session_key=self.params.session_key or self.params.target_id,
        )
