"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from browser_relay.config import RelayConfig
from browser_relay.relay import RelayCore


class FakeChannel:
    """In-memory stand-in for an agent WebSocket.

    Frames the relay sends are decoded into `sent` and queued for
    `next_frame()`; frames pushed with `feed()` are delivered to the relay.
    """

    def __init__(self, dialled: bool = False):
        self.dialled = dialled
        self.sent: list[dict[str, Any]] = []
        self.pings = 0
        self.close_calls: list[tuple[int, str]] = []
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._inbox: asyncio.Queue[str | bytes | None] = asyncio.Queue()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send_text(self, text: str) -> None:
        if not self._open:
            raise ConnectionError("channel closed")
        frame = json.loads(text)
        self.sent.append(frame)
        self._outbox.put_nowait(frame)

    async def receive(self) -> AsyncIterator[str | bytes]:
        while True:
            item = await self._inbox.get()
            if item is None:
                break
            yield item
        self._open = False

    async def ping(self) -> None:
        self.pings += 1

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        self._open = False
        self._inbox.put_nowait(None)

    # Test helpers

    def feed(self, frame: dict[str, Any] | str | bytes) -> None:
        """Deliver a frame from the agent to the relay."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._inbox.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the agent going away."""
        self._inbox.put_nowait(None)

    async def next_frame(self, timeout: float = 1.0) -> dict[str, Any]:
        """Wait for the next frame the relay sends."""
        return await asyncio.wait_for(self._outbox.get(), timeout=timeout)

    async def respond(
        self,
        result: Any = None,
        *,
        error: str | None = None,
    ) -> dict[str, Any]:
        """Answer the next command the relay sends. Returns that command."""
        frame = await self.next_frame()
        reply: dict[str, Any] = {"id": frame["id"]}
        if error is not None:
            reply["error"] = error
        else:
            reply["result"] = result
        self.feed(reply)
        return frame


async def settle() -> None:
    """Let reader tasks drain queued frames."""
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def fake_channel_cls() -> type[FakeChannel]:
    return FakeChannel


@pytest.fixture
def settle_loop():
    return settle


@pytest.fixture
def config(tmp_path: Path) -> RelayConfig:
    """Dial-in only config with short timeouts."""
    return RelayConfig(
        agent_url="",
        request_timeout_ms=500,
        health_probe_timeout_ms=100,
        agent_keepalive_ms=60000,
        state_file=tmp_path / "state.json",
    )


@pytest_asyncio.fixture
async def relay(config: RelayConfig) -> AsyncIterator[RelayCore]:
    core = RelayCore(config)
    yield core
    await core.stop()


@pytest_asyncio.fixture
async def agent(relay: RelayCore) -> FakeChannel:
    """A fake agent already adopted by the relay."""
    channel = FakeChannel()
    await relay.connection.adopt(channel)
    return channel
