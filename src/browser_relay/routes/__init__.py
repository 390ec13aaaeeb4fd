"""HTTP, SSE and WebSocket routes for the relay."""

from .agent import agent_routes
from .command import command_routes
from .events import event_routes
from .health import health_routes

__all__ = [
    "agent_routes",
    "command_routes",
    "event_routes",
    "health_routes",
]
