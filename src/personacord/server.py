"""Liveness and job intake server for the pipeline worker."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from aiohttp import web

from personacord.core.error_handling import COMMON_HANDLER_EXCEPTIONS, log_exception
from personacord.core.exceptions import JobValidationError
from personacord.jobs.queue import JobQueue

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

RequestHandler = Callable[[web.Request], Awaitable[web.StreamResponse]]
SERVER_HANDLER_EXCEPTIONS = COMMON_HANDLER_EXCEPTIONS
QUEUE_KEY = web.AppKey("queue", JobQueue)


@web.middleware
async def _error_middleware(
    request: web.Request,
    handler: RequestHandler,
) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except SERVER_HANDLER_EXCEPTIONS as exc:
        log_exception(
            logger=logger,
            message="Unhandled pipeline server error",
            error=exc,
            context={
                "method": request.method,
                "path": request.path,
            },
        )
        return web.Response(status=500, text="Internal server error")


async def health_check(_request: web.Request) -> web.Response:
    """Return a basic liveness response."""
    return web.Response(text="I'm alive")


async def get_job_result(request: web.Request) -> web.Response:
    """Return the stored result for a request id, or 404 while it is unknown."""
    queue = request.app[QUEUE_KEY]
    request_id = request.match_info["request_id"]
    result = await queue.results.get_result(request_id)
    if result is None:
        status = queue.status(request_id)
        return web.json_response(
            {"requestId": request_id, "status": status.value if status else None},
            status=404,
        )
    return web.json_response(result.to_wire())


async def submit_job(request: web.Request) -> web.Response:
    """Validate and enqueue a job payload.

    Answers 200 with the stored result when the request id already completed,
    202 when the job was queued and 400 when the payload is invalid.
    """
    queue = request.app[QUEUE_KEY]
    try:
        payload: Any = await request.json()
    except ValueError:
        return web.json_response({"error": "Body must be JSON"}, status=400)
    if not isinstance(payload, dict):
        return web.json_response({"error": "Body must be a JSON object"}, status=400)

    try:
        stored = await queue.enqueue(payload)
    except JobValidationError as exc:
        return web.json_response({"error": str(exc), "issues": exc.issues}, status=400)
    if stored is not None:
        return web.json_response(stored.to_wire())
    request_id = str(payload.get("requestId", payload.get("request_id")))
    # A request id submitted again while in flight keeps its current status
    status = queue.status(request_id)
    return web.json_response(
        {"requestId": request_id, "status": status.value if status else "queued"},
        status=202,
    )


def create_app(queue: JobQueue) -> web.Application:
    """Build the aiohttp application around `queue`."""
    app = web.Application(middlewares=[_error_middleware])
    app[QUEUE_KEY] = queue
    app.add_routes(
        [
            web.get("/", health_check),
            web.get("/jobs/{request_id}", get_job_result),
            web.post("/jobs", submit_job),
        ],
    )
    return app


async def start_server(queue: JobQueue, config: Mapping[str, Any]) -> web.AppRunner:
    """Start the HTTP server.

    Returns the underlying aiohttp runner so callers can clean it up on shutdown.
    """
    runner = web.AppRunner(create_app(queue))
    await runner.setup()
    port = int(os.environ.get("PORT", str(config.get("port", 8001))))
    host = os.environ.get("HOST", config.get("host"))
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Pipeline server listening on %s:%s", host or "0.0.0.0", port)  # noqa: S104
    return runner
