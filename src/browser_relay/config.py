"""Relay configuration.

All tunables live in one dataclass. Defaults mirror a local setup where the
relay listens on 127.0.0.1:9222 and the browser agent exposes its own
WebSocket endpoint on 127.0.0.1:9223.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9222
DEFAULT_AGENT_URL = "ws://127.0.0.1:9223/relay"
DEFAULT_REQUEST_TIMEOUT_MS = 15000
DEFAULT_HEALTH_PROBE_TIMEOUT_MS = 3000


def parse_positive_int(raw_value: str | None, fallback: int) -> int:
    """Parse a positive integer, falling back on anything else."""
    if raw_value is None:
        return fallback
    try:
        parsed = int(float(raw_value))
    except (ValueError, OverflowError):
        logger.warning(f"Ignoring invalid integer setting: {raw_value!r}")
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def parse_bool(raw_value: str | None, fallback: bool = False) -> bool:
    """Parse a boolean environment flag."""
    if raw_value is None:
        return fallback
    return raw_value.strip().lower() in ("1", "true", "yes", "on")


def default_state_file() -> Path:
    """Location of the persisted maintain-connection toggle."""
    return Path.home() / ".browser-relay" / "state.json"


@dataclass
class RelayConfig:
    """Relay configuration."""

    # Relay HTTP server
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    # Downstream agent. Empty agent_url disables dial-out; the agent must then
    # connect to the relay's /agent WebSocket route instead.
    agent_url: str = DEFAULT_AGENT_URL

    # Timeout tiers
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    health_probe_timeout_ms: int = DEFAULT_HEALTH_PROBE_TIMEOUT_MS

    # Connection maintenance
    reconnect_interval_ms: int = 3000
    reachability_timeout_ms: int = 1000
    handshake_timeout_ms: int = 5000
    agent_keepalive_ms: int = 20000

    # Subscribers
    sse_keepalive_ms: int = 15000
    subscriber_queue_size: int = 1000

    # Toggle persistence
    state_file: Path = field(default_factory=default_state_file)

    # Open a fresh context when the active one cannot be attached
    create_fallback_target: bool = False

    def __post_init__(self) -> None:
        # The probe tier must never outlast the general tier
        self.health_probe_timeout_ms = min(self.health_probe_timeout_ms, self.request_timeout_ms)

    @property
    def dial_out(self) -> bool:
        """Whether the relay dials the agent itself."""
        return bool(self.agent_url)

    @property
    def agent_http_url(self) -> str:
        """HTTP origin of the agent, used for the cheap reachability probe."""
        parts = urlsplit(self.agent_url)
        scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
        return urlunsplit((scheme, parts.netloc, "/", "", ""))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelayConfig:
        """Build a configuration from RELAY_* environment variables."""
        env = os.environ if environ is None else environ

        request_timeout_ms = parse_positive_int(
            env.get("RELAY_REQUEST_TIMEOUT_MS"), DEFAULT_REQUEST_TIMEOUT_MS
        )
        state_file = env.get("RELAY_STATE_FILE")

        return cls(
            host=env.get("RELAY_HOST", DEFAULT_HOST),
            port=parse_positive_int(env.get("RELAY_PORT"), DEFAULT_PORT),
            agent_url=env.get("RELAY_AGENT_URL", DEFAULT_AGENT_URL),
            request_timeout_ms=request_timeout_ms,
            health_probe_timeout_ms=parse_positive_int(
                env.get("RELAY_HEALTH_PROBE_TIMEOUT_MS"),
                min(DEFAULT_HEALTH_PROBE_TIMEOUT_MS, request_timeout_ms),
            ),
            reconnect_interval_ms=parse_positive_int(env.get("RELAY_RECONNECT_INTERVAL_MS"), 3000),
            reachability_timeout_ms=parse_positive_int(
                env.get("RELAY_REACHABILITY_TIMEOUT_MS"), 1000
            ),
            handshake_timeout_ms=parse_positive_int(env.get("RELAY_HANDSHAKE_TIMEOUT_MS"), 5000),
            agent_keepalive_ms=parse_positive_int(env.get("RELAY_AGENT_KEEPALIVE_MS"), 20000),
            sse_keepalive_ms=parse_positive_int(env.get("RELAY_SSE_KEEPALIVE_MS"), 15000),
            subscriber_queue_size=parse_positive_int(env.get("RELAY_SUBSCRIBER_QUEUE_SIZE"), 1000),
            state_file=Path(state_file) if state_file else default_state_file(),
            create_fallback_target=parse_bool(env.get("RELAY_CREATE_FALLBACK_TARGET")),
        )
