"""Integration tests for the served app: lifespan, dial-in agents and state.

Uses Starlette's TestClient so the lifespan runs and real WebSocket
connections reach the /agent route.
"""

import json

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from browser_relay.app import create_app
from browser_relay.config import RelayConfig
from browser_relay.downstream import CLOSE_CODE_REPLACED
from browser_relay.toggle import ToggleStore


@pytest.fixture
def fast_config(config: RelayConfig) -> RelayConfig:
    """Agent keepalive pings quickly so tests can tell when a socket is adopted."""
    config.agent_keepalive_ms = 50
    return config


def _wait_for_ping(websocket) -> None:
    assert websocket.receive_json() == {"type": "ping"}


# =============================================================================
# Tests: Reachability and health
# =============================================================================


class TestServedApp:
    def test_root_get_and_head(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            assert client.get("/").json() == {"service": "browser-relay"}
            assert client.head("/").status_code == 200

    def test_health_without_agent(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            response = client.get("/health")

        assert response.status_code == 503
        data = response.json()
        assert data["agentConnected"] is False
        assert data["agentLikelyBlocked"] is False
        # The relay answered even though the agent is absent
        assert data["reachable"] is True

    def test_command_without_agent(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            response = client.post(
                "/command",
                json={"method": "sessionOp", "params": {"method": "getActive"}},
            )

        assert response.status_code == 503
        assert response.json() == {
            "ok": False,
            "result": None,
            "error": "Agent is not connected",
        }

    def test_list_works_without_agent(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            response = client.post(
                "/command",
                json={"method": "sessionOp", "params": {"method": "list"}},
            )

        assert response.status_code == 200
        assert response.json()["result"] == {"sessions": [], "children": {}}


# =============================================================================
# Tests: Maintain toggle
# =============================================================================


class TestMaintainToggle:
    def test_lifespan_applies_persisted_toggle(self, config: RelayConfig):
        ToggleStore(config.state_file).save(False)

        with TestClient(create_app(config)) as client:
            state = client.get("/agent/state").json()

        assert state == {"maintain": False, "agentConnected": False}

    def test_default_toggle_is_on(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            assert client.get("/agent/state").json()["maintain"] is True

    def test_toggle_survives_restart(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            response = client.post("/agent/state", json={"maintain": False})
            assert response.status_code == 200

        with TestClient(create_app(config)) as client:
            assert client.get("/agent/state").json()["maintain"] is False

    @pytest.mark.parametrize(
        "body",
        [{"maintain": "yes"}, {"maintain": 1}, {}, ["maintain"]],
    )
    def test_rejects_non_boolean(self, config: RelayConfig, body):
        with TestClient(create_app(config)) as client:
            response = client.post("/agent/state", json=body)

        assert response.status_code == 400
        assert not config.state_file.exists()

    def test_rejects_invalid_json(self, config: RelayConfig):
        with TestClient(create_app(config)) as client:
            response = client.post("/agent/state", content=b"maintain")
        assert response.status_code == 400


# =============================================================================
# Tests: Dial-in agents
# =============================================================================


class TestAgentWebSocket:
    def test_dial_in_agent_is_adopted(self, fast_config: RelayConfig):
        with TestClient(create_app(fast_config)) as client:
            with client.websocket_connect("/agent") as agent:
                _wait_for_ping(agent)
                state = client.get("/agent/state").json()
                assert state["agentConnected"] is True

    def test_newer_agent_replaces_older(self, fast_config: RelayConfig):
        with TestClient(create_app(fast_config)) as client:
            with client.websocket_connect("/agent") as first:
                _wait_for_ping(first)
                with client.websocket_connect("/agent") as second:
                    _wait_for_ping(second)

                    with pytest.raises(WebSocketDisconnect) as exc_info:
                        for _ in range(100):
                            first.receive_text()
                    assert exc_info.value.code == CLOSE_CODE_REPLACED

                    assert client.get("/agent/state").json()["agentConnected"] is True

    def test_agent_frames_reach_relay(self, fast_config: RelayConfig):
        app = create_app(fast_config)
        with TestClient(app) as client:
            with client.websocket_connect("/agent") as agent:
                _wait_for_ping(agent)
                # Unsolicited response for an id that was never issued
                agent.send_text(json.dumps({"id": 4242, "result": "stray"}))
                agent.send_text(json.dumps({"type": "pong"}))
                _wait_for_ping(agent)

            assert app.state.relay.broadcaster.published >= 2
