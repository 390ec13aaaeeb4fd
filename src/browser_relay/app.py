"""Browser Relay Application.

Creates the Starlette ASGI application with all routes:
- / - Relay reachability (GET/HEAD)
- /health - Agent health classification
- /command - Command dispatch
- /events - SSE notification stream
- /agent - WebSocket route for agents that dial in
- /agent/state - Maintain-connection toggle
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route, WebSocketRoute

from .config import RelayConfig
from .relay import RelayCore
from .routes import agent_routes, command_routes, event_routes, health_routes
from .toggle import ToggleStore


def create_app(
    config: RelayConfig | None = None,
    *,
    relay: RelayCore | None = None,
    toggle: ToggleStore | None = None,
) -> Starlette:
    """Create the relay application.

    Args:
        config: Relay configuration. Defaults to RELAY_* environment variables.
        relay: Pre-built relay core (tests inject one with a fake connection)
        toggle: Toggle store. Defaults to the configured state file.

    Returns:
        Configured Starlette application
    """
    if relay is None:
        relay = RelayCore(config or RelayConfig.from_env())
    toggle = toggle or ToggleStore(relay.config.state_file)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await relay.start(maintain=toggle.load())
        try:
            yield
        finally:
            await relay.stop()

    routes: list[Route | WebSocketRoute] = []
    routes.extend(health_routes)
    routes.extend(command_routes)
    routes.extend(event_routes)
    routes.extend(agent_routes)

    # CORS middleware for local tools
    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origin_regex=r"http://(localhost|127\.0\.0\.1)(:\d+)?",
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.relay = relay
    app.state.toggle = toggle
    return app
