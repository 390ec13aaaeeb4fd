"""Session Registry - external key to target/session bookkeeping.

Maps caller-facing session keys (tab ids, usually) to the agent's target and
session ids, keeps parent/child session links, and emits synthetic
`Target.detachedFromTarget` events so subscribers learn about sessions that
went away.

The registry never talks to the channel directly. It issues commands through
the relay's request function and publishes through the relay's emitter, which
keeps every outbound command on the same correlation and timeout path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import (
    NOT_FOUND_PREFIX,
    NotConnectedError,
    NotFoundError,
    RejectedError,
    RelayError,
    error_from_message,
)
from .protocol import AgentMethod, Command, Notification, NotificationKind, Response

logger = logging.getLogger(__name__)

ATTACHED_EVENT = "Target.attachedToTarget"
DETACHED_EVENT = "Target.detachedFromTarget"
DESTROYED_EVENTS = ("Target.targetDestroyed", "Inspector.detached")
FALLBACK_URL = "about:blank"


class SessionState(str, Enum):
    ATTACHING = "attaching"
    ATTACHED = "attached"
    DETACHED = "detached"


@dataclass
class SessionHandle:
    """One attached browsing context."""

    external_key: str
    target_id: str
    session_id: str | None = None
    state: SessionState = SessionState.ATTACHED

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalKey": self.external_key,
            "targetId": self.target_id,
            "sessionId": self.session_id,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class RoutingKey:
    """Where a pass-through command is delivered."""

    target_id: str | None
    session_id: str | None = None


RequestFn = Callable[..., Awaitable[Response]]
EmitFn = Callable[[Notification], Any]


class SessionRegistry:
    """Tracks attached sessions and their child sessions.

    All state lives on the event loop thread; every mutation is synchronous,
    so a disconnect can clear the registry between any two awaits.
    """

    def __init__(
        self,
        request: RequestFn,
        emit: EmitFn,
        *,
        create_fallback_target: bool = False,
    ):
        self._request = request
        self._emit = emit
        self._create_fallback_target = create_fallback_target

        self._handles: dict[str, SessionHandle] = {}
        self._children: dict[str, str] = {}  # child session id -> parent external key
        self._attaching: dict[str, asyncio.Task[SessionHandle]] = {}
        # Bumped on every wholesale clear; results from older epochs are discarded
        self._epoch = 0

    def __len__(self) -> int:
        return len(self._handles)

    def get(self, external_key: str) -> SessionHandle | None:
        return self._handles.get(external_key)

    def parent_of(self, child_session_id: str) -> str | None:
        return self._children.get(child_session_id)

    @property
    def handles(self) -> list[SessionHandle]:
        return list(self._handles.values())

    async def _call(
        self,
        command: Command,
        *,
        timeout_ms: int | None = None,
    ) -> Any:
        response = await self._request(command, timeout_ms=timeout_ms)
        if response.error is not None:
            raise error_from_message(response.error)
        return response.result

    # ------------------------------------------------------------------
    # Attach
    # ------------------------------------------------------------------

    async def ensure_attached(self, external_key: str) -> SessionHandle:
        """Return the ATTACHED handle for `external_key`, attaching if needed.

        Concurrent callers for the same key share a single attach command.
        """
        handle = self._handles.get(external_key)
        if handle is not None and handle.state is SessionState.ATTACHED:
            return handle

        task = self._attaching.get(external_key)
        if task is None:
            task = asyncio.create_task(self._attach(external_key, self._epoch))
            self._attaching[external_key] = task
            task.add_done_callback(lambda t, key=external_key: self._attach_finished(key, t))
        return await asyncio.shield(task)

    def _attach_finished(self, external_key: str, task: asyncio.Task[SessionHandle]) -> None:
        if self._attaching.get(external_key) is task:
            del self._attaching[external_key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Attach of {external_key} failed: {task.exception()}")

    async def _attach(self, external_key: str, epoch: int) -> SessionHandle:
        if epoch == self._epoch:
            self._handles[external_key] = SessionHandle(
                external_key=external_key, target_id="", state=SessionState.ATTACHING
            )
        try:
            result = await self._call(
                Command.session_op(AgentMethod.ATTACH, {"externalKey": external_key})
            )
            if epoch != self._epoch:
                raise NotConnectedError()
            if not isinstance(result, dict) or not result.get("targetId"):
                raise RejectedError(f"Attach of {external_key} returned no targetId")
        except BaseException:
            pending = self._handles.get(external_key)
            stale = pending is not None and pending.state is SessionState.ATTACHING
            if epoch == self._epoch and stale:
                del self._handles[external_key]
            raise

        session_id = result.get("sessionId")
        handle = SessionHandle(
            external_key=external_key,
            target_id=result["targetId"],
            session_id=session_id if isinstance(session_id, str) else None,
        )
        self._handles[external_key] = handle
        logger.info(f"Attached {external_key} -> target {handle.target_id}")
        return handle

    # ------------------------------------------------------------------
    # Active context
    # ------------------------------------------------------------------

    async def active_target(
        self,
        *,
        timeout_ms: int | None = None,
        allow_fallback: bool = True,
    ) -> dict[str, Any]:
        """Ask the agent for the active context and record it.

        Returns:
            {"tabId": ..., "targetId": ...}

        Raises:
            RelayError: On any failure. A rejection falls back to a fresh
                context only when fallback targets are enabled.
        """
        epoch = self._epoch
        try:
            result = await self._call(
                Command.session_op(AgentMethod.GET_ACTIVE_TARGET), timeout_ms=timeout_ms
            )
            return self._record_active(result, epoch)
        except RejectedError as e:
            if not (allow_fallback and self._create_fallback_target):
                raise
            logger.warning(f"Active context unavailable ({e.message}); opening {FALLBACK_URL}")
            return await self._open_fallback_target(timeout_ms)

    def _record_active(self, result: Any, epoch: int) -> dict[str, Any]:
        if not isinstance(result, dict):
            raise RejectedError("Active target result is not an object")
        target_id = result.get("targetId")
        if not target_id or not isinstance(target_id, str):
            raise RejectedError("No active target")

        tab_id = result.get("tabId")
        external_key = str(tab_id) if tab_id is not None else target_id
        if epoch == self._epoch:
            existing = self._handles.get(external_key)
            session_id = result.get("sessionId")
            if not isinstance(session_id, str):
                same_target = existing is not None and existing.target_id == target_id
                session_id = existing.session_id if same_target else None
            self._handles[external_key] = SessionHandle(
                external_key=external_key, target_id=target_id, session_id=session_id
            )
        return {"tabId": tab_id, "targetId": target_id}

    async def _open_fallback_target(self, timeout_ms: int | None) -> dict[str, Any]:
        result = await self._call(
            Command.pass_through(AgentMethod.CREATE_TARGET.value, {"url": FALLBACK_URL}),
            timeout_ms=timeout_ms,
        )
        target_id = result.get("targetId") if isinstance(result, dict) else None
        if not target_id:
            raise RejectedError("Fallback context could not be created")
        handle = await self.ensure_attached(target_id)
        return {"tabId": None, "targetId": handle.target_id}

    # ------------------------------------------------------------------
    # Detach
    # ------------------------------------------------------------------

    def _forget(self, handle: SessionHandle) -> None:
        self._handles.pop(handle.external_key, None)
        handle.state = SessionState.DETACHED
        for child_id, parent_key in list(self._children.items()):
            if parent_key == handle.external_key:
                del self._children[child_id]

    def _emit_detached(self, handle: SessionHandle) -> None:
        self._emit(
            Notification.forwarded_event(
                DETACHED_EVENT,
                {"sessionId": handle.session_id, "targetId": handle.target_id},
            )
        )

    async def detach(self, external_key: str, also_teardown: bool = True) -> bool:
        """Detach a session, optionally tearing it down in the agent.

        Returns:
            False if the key was not tracked
        """
        handle = self._handles.get(external_key)
        if handle is None or handle.state is not SessionState.ATTACHED:
            return False

        self._forget(handle)
        self._emit_detached(handle)
        logger.info(f"Detached {external_key}")

        if also_teardown:
            try:
                await self._call(
                    Command.session_op(AgentMethod.DETACH, {"externalKey": external_key})
                )
            except RelayError as e:
                logger.debug(f"Agent teardown of {external_key} failed: {e.message}")
        return True

    def handle_external_detach(self, external_key: str) -> bool:
        """Forget a session the agent reported as gone."""
        handle = self._handles.get(external_key)
        if handle is None:
            return False
        self._forget(handle)
        self._emit_detached(handle)
        logger.info(f"Session {external_key} closed by agent")
        return True

    def detach_all(self) -> int:
        """Drop every session without downstream teardown (connection loss).

        In-flight attaches resolve with NotConnectedError.
        """
        self._epoch += 1
        count = len(self._handles)
        for handle in self._handles.values():
            handle.state = SessionState.DETACHED
        self._handles.clear()
        self._children.clear()
        self._attaching.clear()
        if count:
            logger.info(f"Cleared {count} session(s)")
        return count

    # ------------------------------------------------------------------
    # Child sessions
    # ------------------------------------------------------------------

    def track_child_session(self, child_session_id: str, parent_key: str) -> bool:
        if parent_key not in self._handles:
            logger.debug(f"Ignoring child {child_session_id}: parent {parent_key} is not tracked")
            return False
        logger.debug(f"Child session {child_session_id} attached under {parent_key}")
        self._children[child_session_id] = parent_key
        return True

    def untrack_child_session(self, child_session_id: str) -> bool:
        if self._children.pop(child_session_id, None) is None:
            return False
        logger.debug(f"Child session {child_session_id} detached")
        return True

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _find(self, key: str) -> SessionHandle | None:
        handle = self._handles.get(key)
        if handle is not None and handle.state is SessionState.ATTACHED:
            return handle
        attached = [h for h in self._handles.values() if h.state is SessionState.ATTACHED]
        for handle in attached:
            if handle.target_id == key:
                return handle
        for handle in attached:
            if handle.session_id and handle.session_id == key:
                return handle
        return None

    def resolve_routing_key(self, session_key: str) -> RoutingKey:
        """Resolve a caller's session key to a routing destination.

        Tries, in order: external key, target id, top-level session id,
        child session id (routed through its parent's target).

        Raises:
            NotFoundError: If nothing matches
        """
        handle = self._find(session_key)
        if handle is not None:
            return RoutingKey(target_id=handle.target_id, session_id=handle.session_id)

        parent_key = self._children.get(session_key)
        parent = self._handles.get(parent_key) if parent_key else None
        if parent is not None:
            return RoutingKey(target_id=parent.target_id, session_id=session_key)

        raise NotFoundError(f"{NOT_FOUND_PREFIX}: {session_key}")

    def snapshot(self) -> dict[str, Any]:
        return {
            "sessions": [handle.to_dict() for handle in self._handles.values()],
            "children": dict(self._children),
        }

    # ------------------------------------------------------------------
    # Agent events
    # ------------------------------------------------------------------

    def observe(self, notification: Notification) -> None:
        """Update bookkeeping from a forwarded agent event."""
        if notification.kind != NotificationKind.FORWARDED_EVENT:
            return

        method = notification.event_method
        payload = notification.payload
        params = payload.get("params") or {}
        child_id = params.get("sessionId")

        if method == ATTACHED_EVENT and isinstance(child_id, str):
            parent = self._parent_for_event(payload)
            if parent is not None and parent.session_id != child_id:
                self.track_child_session(child_id, parent.external_key)

        elif method == DETACHED_EVENT and isinstance(child_id, str):
            if self.untrack_child_session(child_id):
                return
            handle = self._find(child_id)
            if handle is not None:
                # The agent already announced it; just drop the bookkeeping
                self._forget(handle)
                logger.info(f"Session {handle.external_key} detached by agent")

        elif method in DESTROYED_EVENTS:
            target_id = params.get("targetId") or payload.get("targetId")
            handle = self._find(target_id) if isinstance(target_id, str) else None
            if handle is not None:
                self.handle_external_detach(handle.external_key)

    def _parent_for_event(self, payload: dict[str, Any]) -> SessionHandle | None:
        for field in ("sessionId", "targetId"):
            value = payload.get(field)
            if isinstance(value, str):
                handle = self._find(value)
                if handle is not None:
                    return handle
        return None
