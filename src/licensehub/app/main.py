"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from licensehub import __version__
from licensehub.adapters import build_aws_collaborators
from licensehub.app.api.v1 import dispatch_router
from licensehub.app.config import get_settings
from licensehub.app.container import build_container
from licensehub.app.logging import setup_logging
from licensehub.app.metrics import get_metrics_response
from licensehub.app.middleware import LoggingMiddleware
from licensehub.core.errors import LicenseHubError
from licensehub.core.logging_schema import LogEvent
from licensehub.infra import (
    close_aws,
    close_db,
    get_aws_client,
    get_engine,
    get_session_factory,
    init_aws,
    init_db,
)

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()

    await init_db()
    init_aws()

    container = build_container(get_session_factory(), build_aws_collaborators(settings))
    app.state.container = container

    sweeps = []
    if settings.sweep.enabled:
        sweeps += [container.prep_sweep, container.shutdown_sweep]
    if settings.metrics.enabled:
        sweeps.append(container.metrics_sweep)
    tasks = [asyncio.create_task(sweep.run()) for sweep in sweeps]

    logger.info(
        "Starting application",
        extra={"event": LogEvent.APP_STARTED, "sweeps": [s.SWEEP_NAME for s in sweeps]},
    )

    yield

    logger.info("Shutting down application", extra={"event": LogEvent.APP_STOPPED})
    for sweep in sweeps:
        sweep.stop()
    for task in tasks:
        task.cancel()
    for task in tasks:
        with suppress(asyncio.CancelledError):
            await task

    close_aws()
    await close_db()


app = FastAPI(title="LicenseHub", version=__version__, lifespan=lifespan)

app.add_middleware(LoggingMiddleware)


@app.exception_handler(LicenseHubError)
async def licensehub_error_handler(request: Request, exc: LicenseHubError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


app.include_router(dispatch_router, prefix="/api/v1")


async def _check(name: str, check: Callable[[], Awaitable[object]]) -> tuple[str, str]:
    try:
        await check()
    except RuntimeError:
        return name, "not initialized"
    except Exception as exc:
        return name, f"error: {exc}"
    return name, "connected"


async def _ping_database() -> None:
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))


async def _ping_aws() -> None:
    async with get_aws_client("sts") as sts:
        await sts.get_caller_identity()


@app.get("/health")
async def health():
    """Backend reachability. Always 200; "degraded" names the failing backend."""
    services = dict(
        await asyncio.gather(_check("database", _ping_database), _check("aws", _ping_aws))
    )
    healthy = all(state == "connected" for state in services.values())
    return {
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "services": services,
    }


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return get_metrics_response()
