"""Agent-facing endpoints.

- /agent: WebSocket route for agents that dial in to the relay
- /agent/state: read or change the persisted maintain-connection toggle
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, StrictBool, ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from ..transport import StarletteChannel

logger = logging.getLogger(__name__)


class MaintainState(BaseModel):
    """Body of POST /agent/state."""

    maintain: StrictBool


async def agent_websocket(websocket: WebSocket) -> None:
    """Adopt an agent that connected to the relay.

    Keeps the ASGI connection open until the channel closes, either because
    the agent went away or because a newer agent replaced it.
    """
    relay = websocket.app.state.relay
    await websocket.accept()
    client = websocket.client
    logger.info(f"Agent dialled in from {client.host if client else 'unknown'}")

    channel = StarletteChannel(websocket)
    await relay.connection.adopt(channel)
    await channel.wait_closed()


def _state_payload(request: Request) -> dict:
    relay = request.app.state.relay
    return {
        "maintain": relay.connection.is_maintaining,
        "agentConnected": relay.is_connected,
    }


async def get_state(request: Request) -> JSONResponse:
    """Current toggle value and connectivity (after a staleness check)."""
    await request.app.state.relay.connection.check_connection()
    return JSONResponse(_state_payload(request))


async def set_state(request: Request) -> JSONResponse:
    """Persist the toggle and start or stop connection maintenance."""
    try:
        state = MaintainState.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse({"error": 'Body must be {"maintain": true|false}'}, status_code=400)

    request.app.state.toggle.save(state.maintain)
    await request.app.state.relay.set_maintain(state.maintain)
    logger.info(f"Maintain connection set to {state.maintain}")
    return JSONResponse(_state_payload(request))


agent_routes = [
    WebSocketRoute("/agent", agent_websocket),
    Route("/agent/state", get_state, methods=["GET"]),
    Route("/agent/state", set_state, methods=["POST"]),
]
