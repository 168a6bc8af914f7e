"""
Main Application - FastAPI application setup.
"""

import asyncio
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from pointledger.api.admin_routes import router as admin_router
from pointledger.api.routes import points_router, router
from pointledger.config import settings
from pointledger.db.migration_runner import run_migrations
from pointledger.db.session import Database
from pointledger.observability import get_logger, log_context, metrics, setup_logging
from pointledger.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Applies pending migrations when configured, then owns the Database for
    the life of the process. A Database already on app.state is left alone.
    """
    logger.info(
        "application_starting",
        environment=settings.environment,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    owns_database = getattr(app.state, "database", None) is None
    if owns_database:
        database = Database(settings)
        instrument_sqlalchemy(database.write_engine, database.read_engine)
        app.state.database = database

    yield

    if owns_database:
        await app.state.database.close()
    logger.info("application_stopped")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)

setup_tracing()
instrument_fastapi(app)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Return 422 with the failing fields; request bodies are not logged."""
    errors = [
        {"type": e.get("type"), "loc": e.get("loc"), "msg": e.get("msg")} for e in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, errors=errors)
    return JSONResponse(status_code=422, content={"detail": errors})


def _route_template(request: Request) -> str:
    # /v1/points/users/{user_id}/spend, not the concrete path, to bound label cardinality
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


@app.middleware("http")
async def observe_requests(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Request id binding, timing, access log and HTTP metrics."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    method = request.method
    start = time.perf_counter()
    in_progress = metrics.http_requests_in_progress.labels(method=method)

    with log_context(request_id=request_id):
        in_progress.inc()
        try:
            response = await call_next(request)
        except Exception as exc:
            endpoint = _route_template(request)
            metrics.record_http_request(endpoint, method, 500, time.perf_counter() - start)
            metrics.record_error(type(exc).__name__, "http_request")
            logger.error("request_failed", method=method, path=endpoint, exc_info=True)
            raise
        finally:
            in_progress.dec()

        endpoint = _route_template(request)
        duration = time.perf_counter() - start
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=round(duration, 4),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router)
app.include_router(points_router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus scrape endpoint; 404 when metrics are disabled."""
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pointledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
