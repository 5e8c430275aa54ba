"""FastAPI application for the discovery and training API."""

from __future__ import annotations

from contextlib import asynccontextmanager
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.middleware.base import BaseHTTPMiddleware

from mailmine.core.logging import configure_logging
from mailmine.engine import DiscoveryEngine
from mailmine.errors import (
    AlreadyReviewed,
    BudgetExhausted,
    DiscoveryError,
    ExceptionNotFound,
    InvalidTransition,
    NoActiveWalker,
    SampleNotFound,
    SessionNotFound,
)
from mailmine.web.routes import discovery, health, training

logger = structlog.get_logger()

ERROR_STATUS = {
    SessionNotFound: status.HTTP_404_NOT_FOUND,
    SampleNotFound: status.HTTP_404_NOT_FOUND,
    ExceptionNotFound: status.HTTP_404_NOT_FOUND,
    AlreadyReviewed: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    NoActiveWalker: status.HTTP_409_CONFLICT,
    BudgetExhausted: status.HTTP_402_PAYMENT_REQUIRED,
}


def status_for(exc: DiscoveryError) -> int:
    for error_type, code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_422_UNPROCESSABLE_ENTITY


# Request Logging Middleware
class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        request_id = request.headers.get("X-Request-ID", str(uuid4()))
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("request_failed", error=str(exc))
            raise
        logger.info("request_completed", status_code=response.status_code)
        return response


def create_app(
    engine: DiscoveryEngine,
    *,
    recover_on_startup: bool = True,
    instrument: bool = True,
) -> FastAPI:
    """Build the API around ``engine``.

    On startup, walks left running by a previous process are relaunched; on
    shutdown, running walks are signalled to stop and pending alerts drained.
    """
    configure_logging(engine.config.log_level, engine.config.log_format)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if recover_on_startup:
            await engine.recover()
        yield
        await engine.shutdown()

    app = FastAPI(
        title="mailmine",
        description="Autonomous discovery and training API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(RequestLoggingMiddleware)
    if instrument:
        Instrumentator().instrument(app).expose(app)

    @app.exception_handler(DiscoveryError)
    async def discovery_error_handler(request: Request, exc: DiscoveryError):
        code = status_for(exc)
        logger.info("request_rejected", error=exc.code, status_code=code)
        return JSONResponse(
            status_code=code,
            content={"error": exc.code, "detail": exc.message},
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"error": "invalid_request", "detail": str(exc)},
        )

    app.include_router(health.router)
    app.include_router(discovery.router)
    app.include_router(training.router)
    return app
