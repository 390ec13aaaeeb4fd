"""Browser Relay CLI.

Usage:
    browser-relay serve                      # Run the relay on 127.0.0.1:9222
    browser-relay serve --agent-url ''       # Wait for the agent to dial in
    browser-relay health                     # Check relay and agent health

    browser-relay active                     # Show the active browsing context
    browser-relay command Page.reload -s 12  # Pass a protocol method through
    browser-relay command list --op          # Run a registry operation
    browser-relay events                     # Stream notifications

    browser-relay maintain status            # Show the maintain toggle
    browser-relay maintain on|off            # Change it
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any

import click
import httpx

from .client import DEFAULT_RELAY_URL, CommandResult, create_client
from .config import DEFAULT_HOST, DEFAULT_PORT

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

url_option = click.option(
    "--url",
    default=DEFAULT_RELAY_URL,
    envvar="RELAY_URL",
    show_default=True,
    help="Relay base URL",
)


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _run(coro: Any) -> Any:
    """Run a client coroutine, turning connection failures into exit code 1."""
    try:
        return asyncio.run(coro)
    except httpx.ConnectError as e:
        click.echo(f"Cannot connect to relay: {e}", err=True)
        sys.exit(1)
    except httpx.HTTPStatusError as e:
        click.echo(f"Relay returned {e.response.status_code}", err=True)
        sys.exit(1)


def _exit_with(result: CommandResult) -> None:
    if result.ok:
        _echo_json(result.result)
        return
    click.echo(f"Error ({result.status_code}): {result.error}", err=True)
    sys.exit(1)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Logging verbosity",
)
def main(log_level: str) -> None:
    """Browser Relay - drive a live browser through a single agent connection."""
    _configure_logging(log_level)


# =============================================================================
# Server
# =============================================================================


@main.command()
@click.option("--host", default=DEFAULT_HOST, envvar="RELAY_HOST", help="Host to bind to")
@click.option("--port", default=DEFAULT_PORT, envvar="RELAY_PORT", help="Port to bind to")
@click.option(
    "--agent-url",
    default=None,
    help="Agent WebSocket URL to dial; empty to accept dial-in only",
)
@click.option("--request-timeout", type=int, default=None, help="Command timeout (ms)")
@click.option("--fallback-target", is_flag=True, help="Open about:blank if no context is active")
def serve(
    host: str,
    port: int,
    agent_url: str | None,
    request_timeout: int | None,
    fallback_target: bool,
) -> None:
    """Run the relay HTTP server."""
    import uvicorn

    # The app factory reads its configuration from the environment
    os.environ["RELAY_HOST"] = host
    os.environ["RELAY_PORT"] = str(port)
    if agent_url is not None:
        os.environ["RELAY_AGENT_URL"] = agent_url
    if request_timeout is not None:
        os.environ["RELAY_REQUEST_TIMEOUT_MS"] = str(request_timeout)
    if fallback_target:
        os.environ["RELAY_CREATE_FALLBACK_TARGET"] = "1"

    click.echo(f"Starting browser relay on http://{host}:{port}", err=True)
    click.echo("Press Ctrl+C to stop", err=True)

    uvicorn.run(
        "browser_relay.app:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=logging.getLevelName(logging.getLogger().level).lower(),
    )


# =============================================================================
# Client commands
# =============================================================================


@main.command()
@url_option
def health(url: str) -> None:
    """Check relay and agent health."""

    async def check() -> dict[str, Any]:
        async with create_client(url) as client:
            return await client.health()

    report = _run(check())
    _echo_json(report)
    if not report.get("ok"):
        sys.exit(1)


@main.command()
@url_option
def active(url: str) -> None:
    """Show the active browsing context."""

    async def run() -> CommandResult:
        async with create_client(url) as client:
            return await client.active_target()

    _exit_with(_run(run()))


@main.command()
@url_option
@click.argument("method")
@click.option("--params", "-p", default=None, help="JSON object of method params")
@click.option("--session", "-s", "session_key", default=None, help="Session key to route to")
@click.option("--op", "session_op", is_flag=True, help="Run a registry operation instead")
def command(
    url: str,
    method: str,
    params: str | None,
    session_key: str | None,
    session_op: bool,
) -> None:
    """Send one command through the relay.

    Examples:

        # Evaluate in the active tab
        browser-relay command Runtime.evaluate -p '{"expression": "1+1"}' -s 12

        # List registry sessions
        browser-relay command list --op
    """
    parsed: dict[str, Any] | None = None
    if params:
        try:
            parsed = json.loads(params)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"not valid JSON: {e}", param_hint="--params") from e
        if not isinstance(parsed, dict):
            raise click.BadParameter("must be a JSON object", param_hint="--params")

    async def run() -> CommandResult:
        async with create_client(url) as client:
            if session_op:
                return await client.session_op(method, parsed, session_key)
            return await client.pass_through(method, parsed, session_key)

    _exit_with(_run(run()))


@main.command()
@url_option
@click.option("--count", "-n", type=int, default=None, help="Stop after N events")
def events(url: str, count: int | None) -> None:
    """Stream relay notifications as JSON lines."""

    async def run() -> None:
        seen = 0
        async with create_client(url) as client:
            async for event in client.events():
                click.echo(json.dumps(event, ensure_ascii=False))
                seen += 1
                if count is not None and seen >= count:
                    break

    try:
        _run(run())
    except KeyboardInterrupt:
        click.echo("\nStopped", err=True)


# =============================================================================
# Maintain toggle
# =============================================================================


@main.group()
def maintain() -> None:
    """Show or change the maintain-connection toggle."""


def _set_maintain(url: str, enabled: bool | None) -> None:
    async def run() -> dict[str, Any]:
        async with create_client(url) as client:
            if enabled is None:
                return await client.get_state()
            return await client.set_state(enabled)

    state = _run(run())
    click.echo(
        f"maintain: {'on' if state.get('maintain') else 'off'}  "
        f"agent: {'connected' if state.get('agentConnected') else 'disconnected'}"
    )


@maintain.command("on")
@url_option
def maintain_on(url: str) -> None:
    """Keep the agent connection up."""
    _set_maintain(url, True)


@maintain.command("off")
@url_option
def maintain_off(url: str) -> None:
    """Drop the agent connection and stop reconnecting."""
    _set_maintain(url, False)


@maintain.command("status")
@url_option
def maintain_status(url: str) -> None:
    """Show the toggle and connection state."""
    _set_maintain(url, None)


if __name__ == "__main__":
    main()
