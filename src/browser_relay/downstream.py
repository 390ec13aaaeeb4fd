"""Downstream Connection - the relay's single logical link to the browser agent.

Owns at most one live channel. In dial-out mode a background task probes the
agent host, performs the WebSocket handshake and re-dials on loss. In dial-in
mode the /agent route hands each accepted socket to `adopt()`. Either way the
rest of the relay sees one connection with one lifecycle:

    IDLE -> PROBING_REACHABILITY -> HANDSHAKING -> CONNECTED -> DISCONNECTED -> ...

Lifecycle events are delivered synchronously to registered handlers, so
anything they do (failing pending commands, clearing sessions) happens before
the next frame or command is processed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .config import RelayConfig
from .transport import (
    Channel,
    Connector,
    HttpReachabilityProbe,
    ReachabilityProbe,
    connect_websocket,
)

logger = logging.getLogger(__name__)

# Disconnect reasons
REASON_MANUAL = "manual"
REASON_REPLACED = "replaced"
REASON_CLOSED = "closed"
REASON_STALE = "stale"

# WebSocket close code 1012 = service restart
CLOSE_CODE_REPLACED = 1012


class ConnectionState(str, Enum):
    """Downstream connection lifecycle states."""

    IDLE = "idle"
    PROBING_REACHABILITY = "probing_reachability"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class ConnectionEvent:
    """Lifecycle notification: Connected or Disconnected(reason)."""

    connected: bool
    reason: str | None = None


FrameHandler = Callable[[str | bytes], None]
LifecycleHandler = Callable[[ConnectionEvent], None]


class DownstreamConnection:
    """Manages the channel to the agent and its lifecycle."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        connector: Connector | None = None,
        probe: ReachabilityProbe | None = None,
    ):
        self._config = config
        self._connector = connector or self._default_connector
        self._probe = probe or HttpReachabilityProbe(
            config.agent_http_url, timeout=config.reachability_timeout_ms / 1000
        )

        self._state = ConnectionState.IDLE
        self._channel: Channel | None = None
        self._maintaining = False
        self._maintain_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None

        self._frame_handlers: list[FrameHandler] = []
        self._lifecycle_handlers: list[LifecycleHandler] = []

    async def _default_connector(self) -> Channel:
        return await connect_websocket(self._config.agent_url)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def on_frame(self, handler: FrameHandler) -> None:
        self._frame_handlers.append(handler)

    def on_lifecycle(self, handler: LifecycleHandler) -> None:
        self._lifecycle_handlers.append(handler)

    def _emit(self, event: ConnectionEvent) -> None:
        for handler in self._lifecycle_handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Lifecycle handler failed")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_open

    @property
    def is_maintaining(self) -> bool:
        return self._maintaining

    # ------------------------------------------------------------------
    # Maintenance loop (dial-out)
    # ------------------------------------------------------------------

    def start_maintaining(self) -> None:
        """Start dialling the agent and re-dialling on loss.

        Idempotent: a second call while already maintaining does nothing.
        """
        if self._maintaining:
            return
        self._maintaining = True
        if not self._config.dial_out:
            logger.info("No agent URL configured; waiting for the agent to connect")
            return
        self._maintain_task = asyncio.create_task(self._maintain_loop())
        logger.info(f"Maintaining connection to agent at {self._config.agent_url}")

    def stop_maintaining(self) -> None:
        """Stop re-dialling. The current channel, if any, stays up."""
        self._maintaining = False
        task = self._maintain_task
        self._maintain_task = None
        if task is not None and not task.done():
            task.cancel()

    async def _maintain_loop(self) -> None:
        interval = self._config.reconnect_interval_ms / 1000
        while self._maintaining:
            if not self.is_connected:
                try:
                    await self._try_connect_once()
                except Exception as e:
                    logger.debug(f"Agent connection attempt failed: {e!r}")
                    if not self.is_connected:
                        self._state = ConnectionState.DISCONNECTED
            await asyncio.sleep(interval)

    async def _try_connect_once(self) -> bool:
        """One probe + handshake attempt. Returns True on success."""
        self._state = ConnectionState.PROBING_REACHABILITY
        if not await self._probe():
            self._state = ConnectionState.DISCONNECTED
            return False

        self._state = ConnectionState.HANDSHAKING
        try:
            channel = await asyncio.wait_for(
                self._connector(), timeout=self._config.handshake_timeout_ms / 1000
            )
        except TimeoutError:
            logger.warning(
                f"Agent handshake timed out after {self._config.handshake_timeout_ms}ms"
            )
            self._state = ConnectionState.DISCONNECTED
            return False

        if not self._maintaining:
            # Maintenance was switched off while the handshake was in flight
            await channel.close()
            self._state = ConnectionState.DISCONNECTED
            return False

        await self.adopt(channel)
        return True

    # ------------------------------------------------------------------
    # Channel ownership
    # ------------------------------------------------------------------

    async def adopt(self, channel: Channel) -> None:
        """Make `channel` the live link, superseding any existing one.

        The superseded channel produces a Disconnected("replaced") event before
        the new Connected event, so its in-flight commands are failed rather
        than answered by the new agent.
        """
        previous = self._release_channel()
        if previous is not None:
            logger.warning("Agent reconnected; replacing existing connection")
            self._state = ConnectionState.DISCONNECTED
            self._emit(ConnectionEvent(connected=False, reason=REASON_REPLACED))

        self._channel = channel
        self._state = ConnectionState.CONNECTED
        self._reader_task = asyncio.create_task(self._read_loop(channel))
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(channel))
        origin = "dial-out" if channel.dialled else "dial-in"
        logger.info(f"Agent connected ({origin})")
        self._emit(ConnectionEvent(connected=True))

        if previous is not None:
            await self._close_quietly(previous, CLOSE_CODE_REPLACED, "Replaced by new connection")

    def _release_channel(self) -> Channel | None:
        """Detach the current channel and stop its tasks. No events emitted."""
        channel = self._channel
        self._channel = None
        current = asyncio.current_task()
        for task in (self._reader_task, self._keepalive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reader_task = None
        self._keepalive_task = None
        return channel

    async def _close_quietly(self, channel: Channel, code: int = 1000, reason: str = "") -> None:
        try:
            await channel.close(code, reason)
        except Exception as e:
            logger.debug(f"Error closing agent channel: {e!r}")

    async def disconnect(self) -> None:
        """Stop maintenance and close the live channel.

        Emits exactly one Disconnected("manual") event.
        """
        task = self._maintain_task
        self.stop_maintaining()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task

        channel = self._release_channel()
        if channel is not None:
            await self._close_quietly(channel)
        self._state = ConnectionState.DISCONNECTED
        logger.info("Agent connection closed")
        self._emit(ConnectionEvent(connected=False, reason=REASON_MANUAL))

    def _handle_channel_closed(self, channel: Channel, reason: str) -> None:
        # A superseded or manually released channel no longer owns the lifecycle
        if channel is not self._channel:
            return
        self._release_channel()
        self._state = ConnectionState.DISCONNECTED
        logger.warning(f"Agent disconnected ({reason})")
        self._emit(ConnectionEvent(connected=False, reason=reason))

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def _read_loop(self, channel: Channel) -> None:
        reason = REASON_CLOSED
        try:
            async for frame in channel.receive():
                for handler in self._frame_handlers:
                    try:
                        handler(frame)
                    except Exception:
                        logger.exception("Frame handler failed")
        except Exception as e:
            reason = f"error: {e}"
            logger.warning(f"Agent read loop failed: {e!r}")
        finally:
            self._handle_channel_closed(channel, reason)

    async def _keepalive_loop(self, channel: Channel) -> None:
        interval = self._config.agent_keepalive_ms / 1000
        while True:
            await asyncio.sleep(interval)
            if not channel.is_open:
                return
            try:
                await channel.ping()
            except Exception as e:
                logger.debug(f"Agent keepalive failed: {e!r}")

    async def send(self, message: dict[str, Any]) -> bool:
        """Send a frame to the agent.

        Silently drops the frame when no channel is live.

        Returns:
            True if the frame was handed to the channel
        """
        channel = self._channel
        if channel is None or not channel.is_open:
            logger.debug("Agent not connected; dropping outbound frame")
            return False
        try:
            await channel.send_text(json.dumps(message))
        except Exception as e:
            logger.warning(f"Failed to send frame to agent: {e!r}")
            return False
        return True

    async def check_connection(self) -> bool:
        """Re-verify the live channel and tear it down if stale.

        Dialled channels are re-probed over HTTP; adopted channels are judged
        by their socket state.
        """
        channel = self._channel
        if channel is None:
            return False

        if channel.dialled:
            healthy = channel.is_open and await self._probe()
        else:
            healthy = channel.is_open

        if not healthy and channel is self._channel:
            logger.warning("Agent connection is stale; closing it")
            self._release_channel()
            self._state = ConnectionState.DISCONNECTED
            self._emit(ConnectionEvent(connected=False, reason=REASON_STALE))
            await self._close_quietly(channel)
        return healthy
