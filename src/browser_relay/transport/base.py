"""Channel abstraction.

A channel is one physical, bidirectional text link to the browser agent.
The Downstream Connection owns at most one channel at a time and never cares
whether the relay dialled the agent or the agent dialled the relay.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Protocol, runtime_checkable


@runtime_checkable
class Channel(Protocol):
    """Protocol for a physical link to the agent.

    Implementations:
    - WebSocketClientChannel: relay dialled the agent (websockets client)
    - StarletteChannel: agent dialled the relay's /agent route
    """

    @property
    def is_open(self) -> bool:
        """Whether the link is currently usable."""
        ...

    @property
    def dialled(self) -> bool:
        """True if the relay opened this link itself."""
        ...

    async def send_text(self, text: str) -> None:
        """Send one frame."""
        ...

    def receive(self) -> AsyncIterator[str | bytes]:
        """Yield inbound frames until the link closes."""
        ...

    async def ping(self) -> None:
        """Send a keepalive."""
        ...

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close the link. Safe to call more than once."""
        ...


# Opens a new channel to the agent (the handshake)
Connector = Callable[[], Awaitable[Channel]]

# Cheap check that the agent host answers at all
ReachabilityProbe = Callable[[], Awaitable[bool]]
