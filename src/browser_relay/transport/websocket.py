"""WebSocket channel implementations.

Two ends of the same link:
- WebSocketClientChannel: the relay dials the agent using the websockets client
- StarletteChannel: the agent dials the relay and the /agent route hands the
  accepted Starlette socket over
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import websockets
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.exceptions import ConnectionClosed
from websockets.protocol import State

logger = logging.getLogger(__name__)

PING_FRAME = json.dumps({"type": "ping"})


class WebSocketClientChannel:
    """Client-side channel opened by the relay."""

    def __init__(self, websocket: Any):
        self._websocket = websocket  # websockets ClientConnection
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._websocket.state is State.OPEN

    @property
    def dialled(self) -> bool:
        return True

    async def send_text(self, text: str) -> None:
        await self._websocket.send(text)

    async def receive(self) -> AsyncIterator[str | bytes]:
        try:
            async for message in self._websocket:
                yield message
        except ConnectionClosed as e:
            logger.debug(f"Agent socket closed: {e}")
        finally:
            self._closed = True

    async def ping(self) -> None:
        # Pong arrival is not awaited; a dead peer shows up as a close
        await self._websocket.ping()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._closed = True
        await self._websocket.close(code, reason)


class StarletteChannel:
    """Server-side channel for an agent that connected to the relay.

    The socket must already be accepted. The owning route keeps the ASGI
    connection alive by awaiting `wait_closed()`.
    """

    def __init__(self, websocket: WebSocket):
        self._websocket = websocket
        self._closed = asyncio.Event()

    @property
    def is_open(self) -> bool:
        return (
            not self._closed.is_set()
            and self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    @property
    def dialled(self) -> bool:
        return False

    async def send_text(self, text: str) -> None:
        await self._websocket.send_text(text)

    async def receive(self) -> AsyncIterator[str | bytes]:
        try:
            while not self._closed.is_set():
                message = await self._websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                data = message.get("text")
                if data is None:
                    data = message.get("bytes")
                if data is not None:
                    yield data
        except WebSocketDisconnect:
            logger.debug("Agent socket disconnected")
        finally:
            self._closed.set()

    async def ping(self) -> None:
        # Starlette cannot send protocol pings; agents ignore or answer with pong
        await self._websocket.send_text(PING_FRAME)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self._closed.set()
        if self._websocket.application_state == WebSocketState.CONNECTED:
            await self._websocket.close(code=code, reason=reason)

    async def wait_closed(self) -> None:
        await self._closed.wait()


async def connect_websocket(url: str) -> WebSocketClientChannel:
    """Open a channel to the agent's WebSocket endpoint.

    Keepalive pings are driven by the Downstream Connection, so the library's
    own ping loop is disabled.
    """
    websocket = await websockets.connect(url, ping_interval=None, max_size=None)
    logger.debug(f"WebSocket handshake with {url} complete")
    return WebSocketClientChannel(websocket)
