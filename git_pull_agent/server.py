"""aiohttp REST API for the git pull agent.

Routes:
- ``GET /health``: liveness only
- ``POST /git-pull``: start an update in the background, answer 202 at once
- ``GET /status``: executor state, current and last run
- ``POST /cancel``: abort the running update
- anything else: 404 ``{"error": "Not found"}``

CORS is permissive and ``OPTIONS`` preflights get a bare 200.
"""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Awaitable, Callable

from aiohttp import web

from git_pull_agent import __version__
from git_pull_agent.config import Settings, get_settings
from git_pull_agent.executor import UpdateExecutor
from git_pull_agent.logging import get_logger, setup_logging
from git_pull_agent.models import UpdateTrigger
from git_pull_agent.runtime import get_runtime_locator

log = get_logger("git_pull_agent.server")

SERVICE_NAME = "git-pull-agent"

EXECUTOR_KEY = web.AppKey("executor", UpdateExecutor)
SETTINGS_KEY = web.AppKey("settings", Settings)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS, GET",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Update-Signature",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Answer preflights, add CORS headers and turn routing misses into JSON 404s."""
    if request.method == "OPTIONS":
        return web.Response(status=200, headers=CORS_HEADERS)

    try:
        response = await handler(request)
    except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
        response = web.json_response({"error": "Not found"}, status=404)

    response.headers.update(CORS_HEADERS)
    return response


# ------------------------------------------------------------------
# Handlers
# ------------------------------------------------------------------


async def handle_health(request: web.Request) -> web.Response:
    settings = request.app[SETTINGS_KEY]
    return web.json_response(
        {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": __version__,
            "directory": str(settings.app_path),
            "host": settings.git_pull_host,
            "port": settings.git_pull_port,
            "backendReporting": settings.backend_reporting,
            "secretConfigured": bool(settings.update_secret.get_secret_value()),
        }
    )


async def handle_git_pull(request: web.Request) -> web.Response:
    """Accept a trigger. The body is optional and never blocks the update."""
    executor = request.app[EXECUTOR_KEY]

    raw = await request.read()
    data: object = {}
    if raw.strip():
        try:
            data = json.loads(raw.decode("utf-8", errors="replace"))
        except (json.JSONDecodeError, RecursionError) as exc:
            log.warning("trigger_body_unparsable", error=str(exc), size=len(raw))
            data = {}

    trigger = UpdateTrigger.from_dict(data)
    queued = executor.is_busy
    executor.trigger(trigger)

    return web.json_response(
        {
            "status": "accepted",
            "message": "Update queued" if queued else "Update started",
            "updateId": trigger.update_id,
            "queued": queued,
        },
        status=202,
    )


async def handle_status(request: web.Request) -> web.Response:
    executor = request.app[EXECUTOR_KEY]
    return web.json_response(executor.status_snapshot())


async def handle_cancel(request: web.Request) -> web.Response:
    executor = request.app[EXECUTOR_KEY]
    if executor.cancel():
        return web.json_response({"cancelled": True})
    return web.json_response(
        {"cancelled": False, "error": "No update in progress"},
        status=409,
    )


async def _on_shutdown(app: web.Application) -> None:
    await app[EXECUTOR_KEY].shutdown()


def create_app(executor: UpdateExecutor, settings: Settings) -> web.Application:
    """Build the aiohttp application."""
    app = web.Application(middlewares=[cors_middleware])
    app[EXECUTOR_KEY] = executor
    app[SETTINGS_KEY] = settings

    app.router.add_get("/health", handle_health)
    app.router.add_post("/git-pull", handle_git_pull)
    app.router.add_get("/status", handle_status)
    app.router.add_post("/cancel", handle_cancel)

    app.on_shutdown.append(_on_shutdown)
    return app


async def run_server() -> None:
    """Run the agent until SIGTERM/SIGINT."""
    setup_logging()
    settings = get_settings()

    runtime = get_runtime_locator().resolve()
    log.info(
        "git_pull_agent_starting",
        directory=str(settings.app_path),
        host=settings.git_pull_host,
        port=settings.git_pull_port,
        secret_configured=bool(settings.update_secret.get_secret_value()),
        backend_reporting=settings.backend_reporting,
        npm=runtime.resolved_executable_path,
        npm_generic=runtime.is_generic_fallback,
    )

    executor = UpdateExecutor(settings)
    app = create_app(executor=executor, settings=settings)

    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, settings.git_pull_host, settings.git_pull_port)
    await site.start()
    log.info(
        "git_pull_agent_listening",
        endpoint=f"http://{settings.git_pull_host}:{settings.git_pull_port}/git-pull",
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
        log.info("git_pull_agent_shutting_down")
    finally:
        await runner.cleanup()
        log.info("git_pull_agent_stopped")
