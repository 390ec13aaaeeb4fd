"""Transport layer.

Physical links between the relay and the browser agent. Either side may
dial; both ends look identical to the Downstream Connection.
"""

from .base import Channel, Connector, ReachabilityProbe
from .reachability import HttpReachabilityProbe
from .websocket import (
    StarletteChannel,
    WebSocketClientChannel,
    connect_websocket,
)

__all__ = [
    "Channel",
    "Connector",
    "ReachabilityProbe",
    "HttpReachabilityProbe",
    "StarletteChannel",
    "WebSocketClientChannel",
    "connect_websocket",
]
