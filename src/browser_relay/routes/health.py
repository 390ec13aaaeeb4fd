"""Health check and reachability endpoints."""

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

SERVICE_NAME = "browser-relay"


async def health_check(request: Request) -> JSONResponse:
    """Classify agent health. 200 when healthy, 503 otherwise."""
    report = await request.app.state.relay.health()
    return JSONResponse(
        report.model_dump(by_alias=True),
        status_code=200 if report.ok else 503,
    )


async def root(request: Request) -> JSONResponse:
    """Lets agents check that the relay is up before dialling in."""
    return JSONResponse({"service": SERVICE_NAME})


health_routes = [
    Route("/", root, methods=["GET", "HEAD"]),
    Route("/health", health_check, methods=["GET"]),
]
