"""Relay Core - dispatch, correlation and health classification.

The facade every outer surface talks to. Owns one of each component:

    RelayCore
    ├── PendingRequestTable   correlation ids -> waiting futures
    ├── DownstreamConnection  the single link to the agent
    ├── EventBroadcaster      notifications -> subscribers
    └── SessionRegistry       session keys -> targets/sessions

Callers never see exceptions from `dispatch()`: every failure is folded into
a Response carrying an error string.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .broadcast import EventBroadcaster
from .config import RelayConfig
from .downstream import REASON_REPLACED, ConnectionEvent, DownstreamConnection
from .errors import (
    AGENT_DISCONNECTED_MESSAGE,
    AGENT_REPLACED_MESSAGE,
    BLOCKED_AGENT_HINT,
    NOT_CONNECTED_MESSAGE,
    NOT_FOUND_PREFIX,
    ErrorKind,
    NotFoundError,
    ProtocolParseError,
    RejectedError,
    RelayError,
    RelayTimeoutError,
)
from .pending import PendingRequestTable
from .protocol import (
    Command,
    CommandKind,
    Notification,
    NotificationKind,
    Response,
    SessionOp,
    parse_frame,
)
from .registry import RoutingKey, SessionRegistry

logger = logging.getLogger(__name__)

ACTION_CONNECT = "Open the browser and enable the relay agent."
ACTION_CHECK_AGENT = "Check the browser agent logs and retry."


class HealthProbe(BaseModel):
    """Result of the active-target round trip."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool
    timeout_ms: int
    message: str | None = None


class HealthReport(BaseModel):
    """Relay health, as served on GET /health.

    `reachable` reports the relay itself; any report that was served at all
    means the relay answered, so it is always true here. Agent state is carried
    by the `agent_*` fields.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    ok: bool
    reachable: bool = True
    agent_connected: bool
    agent_responsive: bool
    agent_likely_blocked: bool = False
    detail: str
    checked_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    probe: HealthProbe
    action: str | None = None


class RelayCore:
    """Multiplexes caller commands over the single agent connection."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        connection: DownstreamConnection | None = None,
    ):
        self.config = config or RelayConfig()
        self._ids = itertools.count(1)

        self.pending = PendingRequestTable()
        self.broadcaster = EventBroadcaster(max_queue_size=self.config.subscriber_queue_size)
        self.connection = connection or DownstreamConnection(self.config)
        self.registry = SessionRegistry(
            self.request,
            self.broadcaster.publish,
            create_fallback_target=self.config.create_fallback_target,
        )

        self.connection.on_frame(self._on_frame)
        self.connection.on_lifecycle(self._on_lifecycle)

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    def next_correlation_id(self) -> int:
        """Issue a fresh correlation id. Ids are never reused."""
        return next(self._ids)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, *, maintain: bool = True) -> None:
        if maintain:
            self.connection.start_maintaining()
        logger.info("Relay core started")

    async def stop(self) -> None:
        await self.connection.disconnect()
        self.broadcaster.close()
        logger.info("Relay core stopped")

    async def set_maintain(self, enabled: bool) -> None:
        """Turn connection maintenance on or off."""
        if enabled:
            self.connection.start_maintaining()
        else:
            await self.connection.disconnect()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        command: Command,
        *,
        timeout_ms: int | None = None,
        include_blocked_hint: bool = False,
        routing: RoutingKey | None = None,
    ) -> Response:
        """Send one command to the agent and wait for its Response.

        Never raises on relay failures. When the agent is not connected the
        answer is immediate and no pending entry or timer is created.
        """
        correlation_id = self.next_correlation_id()
        if not self.connection.is_connected:
            return Response(id=correlation_id, error=NOT_CONNECTED_MESSAGE)

        stamped = command.with_correlation_id(correlation_id)
        future = self.pending.register(
            correlation_id,
            timeout_ms or self.config.request_timeout_ms,
            include_blocked_hint=include_blocked_hint,
        )
        if routing is not None:
            frame = stamped.to_wire(routing.target_id, routing.session_id)
        else:
            frame = stamped.to_wire()

        sent = await self.connection.send(frame)
        if not sent and not future.done():
            self.pending.discard(correlation_id)
            future.set_result(Response(id=correlation_id, error=NOT_CONNECTED_MESSAGE))

        try:
            return await future
        except asyncio.CancelledError:
            self.pending.discard(correlation_id)
            raise

    async def dispatch(self, command: Command) -> Response:
        """Run one caller command to completion."""
        try:
            if command.kind is CommandKind.PASS_THROUGH:
                return await self._pass_through(command)
            result = await self._session_op(command)
        except RelayError as e:
            return Response(id=self.next_correlation_id(), error=e.message)
        except ValueError as e:
            return Response(id=self.next_correlation_id(), error=str(e))
        return Response(id=self.next_correlation_id(), result=result)

    async def _pass_through(self, command: Command) -> Response:
        if not self.connection.is_connected:
            return Response(id=self.next_correlation_id(), error=NOT_CONNECTED_MESSAGE)
        routing = None
        if command.session_key:
            routing = self.registry.resolve_routing_key(command.session_key)
        return await self.request(command, routing=routing, include_blocked_hint=True)

    async def _session_op(self, command: Command) -> Any:
        op = SessionOp.parse(command.method)
        params = command.params or {}

        if op is SessionOp.LIST:
            return self.registry.snapshot()
        if op is SessionOp.GET_ACTIVE:
            return await self.registry.active_target()
        if op is SessionOp.GET_ACTIVE_ID:
            active = await self.registry.active_target()
            return active["targetId"]

        key = command.session_key or params.get("externalKey") or params.get("sessionKey")
        if not key:
            raise RejectedError(f"{op.value} requires a session key")
        key = str(key)

        if op is SessionOp.ATTACH:
            handle = await self.registry.ensure_attached(key)
            return handle.to_dict()

        # DETACH
        teardown = params.get("teardown", True) is not False
        if not await self.registry.detach(key, also_teardown=teardown):
            raise NotFoundError(f"{NOT_FOUND_PREFIX}: {key}")
        return {"detached": key}

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_frame(self, frame: str | bytes) -> None:
        try:
            parsed = parse_frame(frame)
        except ProtocolParseError as e:
            logger.warning(f"Malformed frame from agent: {e.message}")
            raw = e.raw if e.raw is not None else repr(frame)
            self.broadcaster.publish(
                Notification.diagnostic(ErrorKind.PROTOCOL_PARSE.value, e.message, raw)
            )
            return

        if parsed is None:
            return

        if isinstance(parsed, Response):
            if not self.pending.resolve(parsed.id, parsed):
                logger.debug(f"Orphan response for id {parsed.id}")
                self.broadcaster.publish(Notification.orphan(parsed))
            return

        if parsed.kind == NotificationKind.DIAGNOSTIC:
            logger.debug(f"Unrecognized frame from agent: {parsed.payload.get('raw')!r}")
        self.broadcaster.publish(parsed)
        self.registry.observe(parsed)

    def _on_lifecycle(self, event: ConnectionEvent) -> None:
        if event.connected:
            self.broadcaster.publish(Notification.status(True))
            return

        if event.reason == REASON_REPLACED:
            reason = AGENT_REPLACED_MESSAGE
        else:
            reason = AGENT_DISCONNECTED_MESSAGE
        self.pending.fail_all(reason)
        self.registry.detach_all()
        self.broadcaster.publish(Notification.status(False, event.reason))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health(self) -> HealthReport:
        """Classify the agent as healthy, disconnected, blocked or unresponsive."""
        timeout_ms = self.config.health_probe_timeout_ms

        if not self.connection.is_connected:
            return HealthReport(
                ok=False,
                agent_connected=False,
                agent_responsive=False,
                detail=NOT_CONNECTED_MESSAGE,
                probe=HealthProbe(ok=False, timeout_ms=timeout_ms, message="Skipped"),
                action=ACTION_CONNECT,
            )

        try:
            await self.registry.active_target(timeout_ms=timeout_ms, allow_fallback=False)
        except RelayTimeoutError as e:
            logger.warning(f"Health probe timed out: {e.message}")
            return HealthReport(
                ok=False,
                agent_connected=True,
                agent_responsive=False,
                agent_likely_blocked=True,
                detail="Agent did not answer the health probe",
                probe=HealthProbe(ok=False, timeout_ms=timeout_ms, message=e.message),
                action=BLOCKED_AGENT_HINT,
            )
        except RelayError as e:
            connected = self.connection.is_connected
            return HealthReport(
                ok=False,
                agent_connected=connected,
                agent_responsive=False,
                detail=e.message,
                probe=HealthProbe(ok=False, timeout_ms=timeout_ms, message=e.message),
                action=ACTION_CHECK_AGENT if connected else ACTION_CONNECT,
            )

        return HealthReport(
            ok=True,
            agent_connected=True,
            agent_responsive=True,
            detail="Agent connected and responsive",
            probe=HealthProbe(ok=True, timeout_ms=timeout_ms),
        )
