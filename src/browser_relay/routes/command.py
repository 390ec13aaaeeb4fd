"""Command endpoint.

POST /command with a body like:
    {"method": "passThrough", "params": {"method": "Page.reload", "sessionKey": "12"}}

Always answers {"ok", "result", "error"}.
"""

import logging

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ..errors import status_for_error
from ..protocol import CommandKind, CommandRequest, SessionOp

logger = logging.getLogger(__name__)


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse({"ok": False, "result": None, "error": error}, status_code=400)


async def command_endpoint(request: Request) -> JSONResponse:
    """Dispatch one command through the relay."""
    try:
        body = await request.json()
    except ValueError:
        return _bad_request("Request body must be JSON")

    try:
        command_request = CommandRequest.model_validate(body)
    except ValidationError as e:
        logger.debug(f"Rejected command body: {e}")
        return _bad_request(f"Invalid command: {e.errors()[0]['msg']}")

    command = command_request.to_command()
    if command.kind is CommandKind.SESSION_OP:
        try:
            SessionOp.parse(command.method)
        except ValueError as e:
            return _bad_request(str(e))

    response = await request.app.state.relay.dispatch(command)
    return JSONResponse(
        {"ok": response.ok, "result": response.result, "error": response.error},
        status_code=status_for_error(response.error),
    )


command_routes = [
    Route("/command", command_endpoint, methods=["POST"]),
]
