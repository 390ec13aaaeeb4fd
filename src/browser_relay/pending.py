"""Pending request table.

Correlates each outbound command with its eventual Response. Every entry owns
an event-loop timer; whichever of response, timeout or connection loss comes
first fulfils the waiting future and removes the entry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from .errors import make_timeout_error
from .protocol.frames import Response

logger = logging.getLogger(__name__)


@dataclass
class PendingEntry:
    """One in-flight command awaiting its response."""

    correlation_id: int
    created_at: float
    timeout_ms: int
    timeout_handle: asyncio.TimerHandle
    future: asyncio.Future[Response]

    def fulfil(self, response: Response) -> None:
        """Cancel the timer and complete the waiting future."""
        self.timeout_handle.cancel()
        if not self.future.done():
            self.future.set_result(response)


class PendingRequestTable:
    """In-flight commands keyed by correlation id.

    Only ever touched from the event loop thread, so no locking is needed.
    """

    def __init__(self) -> None:
        self._entries: dict[int, PendingEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._entries

    def register(
        self,
        correlation_id: int,
        timeout_ms: int,
        *,
        include_blocked_hint: bool = False,
    ) -> asyncio.Future[Response]:
        """Register a pending command.

        Args:
            correlation_id: Relay-assigned id of the outbound command
            timeout_ms: Milliseconds before a synthetic timeout response
            include_blocked_hint: Append the blocked-agent hint on timeout

        Returns:
            Future resolved with the correlated (or synthetic) Response

        Raises:
            ValueError: If the id already has a pending entry
        """
        if correlation_id in self._entries:
            raise ValueError(f"Correlation id {correlation_id} is already pending")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Response] = loop.create_future()
        handle = loop.call_later(
            timeout_ms / 1000,
            self._expire,
            correlation_id,
            timeout_ms,
            include_blocked_hint,
        )
        self._entries[correlation_id] = PendingEntry(
            correlation_id=correlation_id,
            created_at=time.monotonic(),
            timeout_ms=timeout_ms,
            timeout_handle=handle,
            future=future,
        )
        return future

    def resolve(self, correlation_id: int, response: Response) -> bool:
        """Complete a pending command with the agent's response.

        Returns:
            False if no entry exists (an orphan response)
        """
        entry = self._entries.pop(correlation_id, None)
        if entry is None:
            return False
        entry.fulfil(response)
        return True

    def discard(self, correlation_id: int) -> None:
        """Drop an entry whose waiter went away (e.g. cancelled)."""
        entry = self._entries.pop(correlation_id, None)
        if entry is not None:
            entry.timeout_handle.cancel()

    def fail_all(self, reason: str) -> int:
        """Fail every pending command with `reason`.

        Returns:
            Number of entries failed
        """
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.fulfil(Response(id=entry.correlation_id, error=reason))
        if entries:
            logger.info(f"Failed {len(entries)} pending command(s): {reason}")
        return len(entries)

    def _expire(self, correlation_id: int, timeout_ms: int, include_blocked_hint: bool) -> None:
        entry = self._entries.pop(correlation_id, None)
        if entry is None:
            return
        logger.warning(f"Command {correlation_id} timed out after {timeout_ms}ms")
        entry.fulfil(
            Response(
                id=correlation_id,
                error=make_timeout_error(timeout_ms, include_blocked_hint),
            )
        )
