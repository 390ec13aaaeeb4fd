"""Reachability probe for the agent host."""

import logging

import httpx

logger = logging.getLogger(__name__)


class HttpReachabilityProbe:
    """Checks that the agent host answers HTTP at all.

    Any HTTP response counts as reachable: a WebSocket-only endpoint typically
    answers a plain HEAD with 400 or 426, which still proves the host is up.
    Only transport failures (refused, reset, timed out) count as unreachable.
    """

    def __init__(self, url: str, timeout: float = 1.0):
        self.url = url
        self.timeout = timeout

    async def __call__(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await client.head(self.url)
        except httpx.HTTPError as e:
            logger.debug(f"Agent host {self.url} unreachable: {e!r}")
            return False
        return True
