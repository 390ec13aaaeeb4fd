"""SSE event streaming endpoint."""

import json

from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.routing import Route

KEEPALIVE_COMMENT = ": keepalive\n\n"


async def sse_endpoint(request: Request) -> StreamingResponse:
    """SSE endpoint - streams every notification to the client.

    The first frame is a `hello` carrying the current connection state.
    A keepalive comment goes out whenever the stream has been idle for the
    configured interval.
    """
    relay = request.app.state.relay
    keepalive = relay.config.sse_keepalive_ms / 1000
    # Subscribe before the first yield so nothing published after hello is missed
    subscription = relay.broadcaster.subscribe()

    async def event_stream():
        try:
            hello = {"type": "hello", "agentConnected": relay.is_connected}
            yield f"data: {json.dumps(hello)}\n\n"

            while True:
                if await request.is_disconnected():
                    break

                notification = await subscription.get(timeout=keepalive)
                if notification is None:
                    if subscription.is_closed:
                        break
                    yield KEEPALIVE_COMMENT
                    continue

                yield f"data: {json.dumps(notification.to_event())}\n\n"
        finally:
            relay.broadcaster.unsubscribe(subscription)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


event_routes = [
    Route("/events", sse_endpoint, methods=["GET"]),
]
