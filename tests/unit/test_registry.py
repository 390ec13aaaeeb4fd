"""Unit tests for the session registry."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from browser_relay.errors import (
    AGENT_DISCONNECTED_MESSAGE,
    NotConnectedError,
    NotFoundError,
    RejectedError,
    RelayTimeoutError,
)
from browser_relay.protocol import Command, Notification, Response
from browser_relay.registry import RoutingKey, SessionRegistry, SessionState


class ScriptedAgent:
    """Answers registry commands by method name."""

    def __init__(self) -> None:
        self.commands: list[Command] = []
        self.timeouts: list[int | None] = []
        self.replies: dict[str, Any] = {}
        self.gate: asyncio.Event | None = None
        self._ids = 0

    async def request(self, command: Command, *, timeout_ms: int | None = None) -> Response:
        self.commands.append(command)
        self.timeouts.append(timeout_ms)
        self._ids += 1
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.get(command.method)
        if isinstance(reply, Exception):
            return Response(id=self._ids, error=str(reply))
        return Response(id=self._ids, result=reply)

    def methods(self) -> list[str]:
        return [c.method for c in self.commands]


@pytest.fixture
def scripted() -> ScriptedAgent:
    return ScriptedAgent()


@pytest.fixture
def emitted() -> list[Notification]:
    return []


@pytest.fixture
def registry(scripted: ScriptedAgent, emitted: list[Notification]) -> SessionRegistry:
    return SessionRegistry(scripted.request, emitted.append)


def _event(method: str, params: dict[str, Any], **routing: str) -> Notification:
    return Notification.forwarded_event(
        method, params, target_id=routing.get("target_id"), session_id=routing.get("session_id")
    )


# =============================================================================
# Attach
# =============================================================================


class TestEnsureAttached:
    @pytest.mark.asyncio
    async def test_attach_records_handle(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1", "sessionId": "S1"}

        handle = await registry.ensure_attached("12")

        assert handle.target_id == "T1"
        assert handle.session_id == "S1"
        assert handle.state is SessionState.ATTACHED
        assert scripted.commands[0].params == {"externalKey": "12"}

    @pytest.mark.asyncio
    async def test_existing_handle_is_reused(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        first = await registry.ensure_attached("12")
        second = await registry.ensure_attached("12")

        assert first is second
        assert scripted.methods() == ["tab.attach"]

    @pytest.mark.asyncio
    async def test_concurrent_attach_issues_one_command(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "TA"}
        scripted.gate = asyncio.Event()

        first = asyncio.create_task(registry.ensure_attached("tabA"))
        second = asyncio.create_task(registry.ensure_attached("tabA"))
        await asyncio.sleep(0)
        scripted.gate.set()
        handles = await asyncio.gather(first, second)

        assert handles[0] is handles[1]
        assert scripted.methods() == ["tab.attach"]

    @pytest.mark.asyncio
    async def test_missing_target_id_is_rejected(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"sessionId": "S1"}

        with pytest.raises(RejectedError):
            await registry.ensure_attached("12")
        assert registry.get("12") is None

    @pytest.mark.asyncio
    async def test_agent_error_propagates(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = Exception("No tab with given id 12")

        with pytest.raises(RejectedError, match="No tab with given id 12"):
            await registry.ensure_attached("12")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_detach_all_fails_in_flight_attach(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        scripted.gate = asyncio.Event()

        task = asyncio.create_task(registry.ensure_attached("12"))
        await asyncio.sleep(0)
        registry.detach_all()
        scripted.gate.set()

        with pytest.raises(NotConnectedError):
            await task
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_disconnect_error_is_not_connected(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = Exception(AGENT_DISCONNECTED_MESSAGE)

        with pytest.raises(NotConnectedError):
            await registry.ensure_attached("12")


# =============================================================================
# Active context
# =============================================================================


class TestActiveTarget:
    @pytest.mark.asyncio
    async def test_active_target_is_recorded(self, registry, scripted) -> None:
        scripted.replies["tab.getActiveTarget"] = {"tabId": 7, "targetId": "T7"}

        result = await registry.active_target()

        assert result == {"tabId": 7, "targetId": "T7"}
        handle = registry.get("7")
        assert handle is not None
        assert handle.target_id == "T7"
        assert handle.state is SessionState.ATTACHED

    @pytest.mark.asyncio
    async def test_empty_target_is_rejected(self, registry, scripted) -> None:
        scripted.replies["tab.getActiveTarget"] = {"tabId": 7, "targetId": ""}

        with pytest.raises(RejectedError):
            await registry.active_target()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_probe_timeout_is_passed_through(self, registry, scripted) -> None:
        scripted.replies["tab.getActiveTarget"] = Exception("Timeout after 100ms")

        with pytest.raises(RelayTimeoutError):
            await registry.active_target(timeout_ms=100)
        assert scripted.timeouts == [100]

    @pytest.mark.asyncio
    async def test_no_fallback_by_default(self, registry, scripted) -> None:
        scripted.replies["tab.getActiveTarget"] = Exception("No active tab")

        with pytest.raises(RejectedError):
            await registry.active_target()
        assert scripted.methods() == ["tab.getActiveTarget"]

    @pytest.mark.asyncio
    async def test_fallback_opens_blank_context(self, scripted, emitted) -> None:
        registry = SessionRegistry(scripted.request, emitted.append, create_fallback_target=True)
        scripted.replies["tab.getActiveTarget"] = Exception("No active tab")
        scripted.replies["Target.createTarget"] = {"targetId": "NEW"}
        scripted.replies["tab.attach"] = {"targetId": "NEW", "sessionId": "S9"}

        result = await registry.active_target()

        assert result == {"tabId": None, "targetId": "NEW"}
        assert scripted.methods() == ["tab.getActiveTarget", "Target.createTarget", "tab.attach"]
        assert scripted.commands[1].params == {"url": "about:blank"}

    @pytest.mark.asyncio
    async def test_health_probe_never_falls_back(self, scripted, emitted) -> None:
        registry = SessionRegistry(scripted.request, emitted.append, create_fallback_target=True)
        scripted.replies["tab.getActiveTarget"] = Exception("No active tab")

        with pytest.raises(RejectedError):
            await registry.active_target(allow_fallback=False)
        assert scripted.methods() == ["tab.getActiveTarget"]


# =============================================================================
# Detach
# =============================================================================


class TestDetach:
    @pytest.mark.asyncio
    async def test_detach_emits_synthetic_event(self, registry, scripted, emitted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1", "sessionId": "S1"}
        await registry.ensure_attached("12")

        assert await registry.detach("12", also_teardown=True)

        assert registry.get("12") is None
        assert emitted[-1].event_method == "Target.detachedFromTarget"
        assert emitted[-1].payload["params"] == {"sessionId": "S1", "targetId": "T1"}
        assert scripted.methods() == ["tab.attach", "tab.detach"]

    @pytest.mark.asyncio
    async def test_detach_without_teardown(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        await registry.ensure_attached("12")

        assert await registry.detach("12", also_teardown=False)
        assert scripted.methods() == ["tab.attach"]

    @pytest.mark.asyncio
    async def test_teardown_failure_is_not_raised(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        scripted.replies["tab.detach"] = Exception("Debugger is not attached")
        await registry.ensure_attached("12")

        assert await registry.detach("12")
        assert registry.get("12") is None

    @pytest.mark.asyncio
    async def test_detach_unknown_key(self, registry) -> None:
        assert await registry.detach("nope") is False

    @pytest.mark.asyncio
    async def test_detach_removes_child_links(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1", "sessionId": "S1"}
        await registry.ensure_attached("12")
        registry.track_child_session("C1", "12")
        registry.track_child_session("C2", "12")

        await registry.detach("12")

        assert registry.parent_of("C1") is None
        assert registry.parent_of("C2") is None

    @pytest.mark.asyncio
    async def test_handle_external_detach(self, registry, scripted, emitted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        await registry.ensure_attached("12")

        assert registry.handle_external_detach("12")

        assert registry.get("12") is None
        assert emitted[-1].event_method == "Target.detachedFromTarget"
        assert scripted.methods() == ["tab.attach"]

    @pytest.mark.asyncio
    async def test_detach_all_clears_everything(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        handle = await registry.ensure_attached("12")
        registry.track_child_session("C1", "12")

        assert registry.detach_all() == 1
        assert len(registry) == 0
        assert registry.parent_of("C1") is None
        assert handle.state is SessionState.DETACHED


# =============================================================================
# Routing and child sessions
# =============================================================================


class TestRouting:
    @pytest.mark.asyncio
    async def test_resolution_order(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1", "sessionId": "S1"}
        await registry.ensure_attached("12")
        registry.track_child_session("C1", "12")

        assert registry.resolve_routing_key("12") == RoutingKey("T1", "S1")
        assert registry.resolve_routing_key("T1") == RoutingKey("T1", "S1")
        assert registry.resolve_routing_key("S1") == RoutingKey("T1", "S1")
        assert registry.resolve_routing_key("C1") == RoutingKey("T1", "C1")

    def test_unknown_key_not_found(self, registry) -> None:
        with pytest.raises(NotFoundError, match="Session not found"):
            registry.resolve_routing_key("missing")

    def test_child_needs_tracked_parent(self, registry) -> None:
        assert registry.track_child_session("C1", "ghost") is False
        assert registry.parent_of("C1") is None

    @pytest.mark.asyncio
    async def test_child_links_follow_agent_events(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1", "sessionId": "S1"}
        await registry.ensure_attached("12")

        registry.observe(
            _event(
                "Target.attachedToTarget",
                {"sessionId": "C1", "targetInfo": {"type": "iframe"}},
                session_id="S1",
            )
        )
        assert registry.parent_of("C1") == "12"

        registry.observe(_event("Target.detachedFromTarget", {"sessionId": "C1"}, session_id="S1"))
        assert registry.parent_of("C1") is None
        assert registry.get("12") is not None

    @pytest.mark.asyncio
    async def test_destroyed_target_is_forgotten(self, registry, scripted, emitted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1", "sessionId": "S1"}
        await registry.ensure_attached("12")

        registry.observe(_event("Target.targetDestroyed", {"targetId": "T1"}))

        assert registry.get("12") is None
        assert emitted[-1].event_method == "Target.detachedFromTarget"

    @pytest.mark.asyncio
    async def test_snapshot(self, registry, scripted) -> None:
        scripted.replies["tab.attach"] = {"targetId": "T1"}
        await registry.ensure_attached("12")
        registry.track_child_session("C1", "12")

        snapshot = registry.snapshot()
        assert snapshot["sessions"] == [
            {"externalKey": "12", "targetId": "T1", "sessionId": None, "state": "attached"}
        ]
        assert snapshot["children"] == {"C1": "12"}
