"""SDK Client - talks to a running relay over HTTP.

Usage:
    async with create_client("http://127.0.0.1:9222") as client:
        active = await client.active_target()
        title = await client.pass_through(
            "Runtime.evaluate",
            {"expression": "document.title"},
            session_key=str(active.result["tabId"]),
        )
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import ErrorKind, classify_error
from .protocol import CommandKind

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "http://127.0.0.1:9222"


@dataclass
class CommandResult:
    """Outcome of one relay command."""

    ok: bool
    result: Any = None
    error: str | None = None
    status_code: int = 200

    @property
    def kind(self) -> ErrorKind | None:
        return classify_error(self.error)

    @property
    def retryable(self) -> bool:
        kind = self.kind
        return kind is not None and kind.retryable


@dataclass
class RelayClient:
    """HTTP client for the relay's command, health, event and state endpoints."""

    base_url: str = DEFAULT_RELAY_URL
    timeout: float = 30.0
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)
    _http_client: httpx.AsyncClient | None = field(default=None, repr=False)

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            )
        return self._http_client

    async def __aenter__(self) -> RelayClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def command(
        self,
        kind: CommandKind | str,
        method: str,
        params: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> CommandResult:
        """Send one command. Relay-side failures come back in the result."""
        inner: dict[str, Any] = {"method": method}
        if params is not None:
            inner["params"] = params
        if session_key is not None:
            inner["sessionKey"] = session_key
        body = {"method": CommandKind(kind).value, "params": inner}

        response = await self._client().post("/command", json=body)
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise
        if not isinstance(data, dict) or "ok" not in data:
            response.raise_for_status()
            raise ValueError(f"Unexpected response from relay: {data!r}")
        return CommandResult(
            ok=bool(data.get("ok")),
            result=data.get("result"),
            error=data.get("error"),
            status_code=response.status_code,
        )

    async def session_op(
        self,
        op: str,
        params: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> CommandResult:
        return await self.command(CommandKind.SESSION_OP, op, params, session_key)

    async def pass_through(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        session_key: str | None = None,
    ) -> CommandResult:
        return await self.command(CommandKind.PASS_THROUGH, method, params, session_key)

    async def active_target(self) -> CommandResult:
        return await self.session_op("getActive")

    # ------------------------------------------------------------------
    # Health and state
    # ------------------------------------------------------------------

    async def health(self) -> dict[str, Any]:
        """Fetch the health report (returned for both 200 and 503)."""
        response = await self._client().get("/health")
        if response.status_code not in (200, 503):
            response.raise_for_status()
        return response.json()

    async def get_state(self) -> dict[str, Any]:
        response = await self._client().get("/agent/state")
        response.raise_for_status()
        return response.json()

    async def set_state(self, maintain: bool) -> dict[str, Any]:
        response = await self._client().post("/agent/state", json={"maintain": maintain})
        response.raise_for_status()
        return response.json()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Subscribe to the SSE notification stream.

        Usage:
            async for event in client.events():
                if event["type"] == "status" and not event["agentConnected"]:
                    break
        """
        client = self._client()
        request = client.build_request(
            "GET", "/events", timeout=httpx.Timeout(self.timeout, read=None)
        )
        response = await client.send(request, stream=True)
        try:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue  # blank separators and keepalive comments
                data = line[6:]
                try:
                    yield json.loads(data)
                except json.JSONDecodeError:
                    logger.warning(f"Failed to parse SSE data: {data}")
        finally:
            await response.aclose()


def create_client(base_url: str = DEFAULT_RELAY_URL, timeout: float = 30.0) -> RelayClient:
    """Create an SDK client for a relay.

    Args:
        base_url: Relay URL (default: http://127.0.0.1:9222)
        timeout: Per-request timeout in seconds; SSE reads never time out

    Returns:
        RelayClient configured for HTTP
    """
    return RelayClient(base_url=base_url, timeout=timeout)
