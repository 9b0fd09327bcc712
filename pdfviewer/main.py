"""PDF viewer service entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Iterable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_settings
from .container import ServiceContainer
from .database import init_db
from .middleware import RequestIdMiddleware, get_request_id
from .observability import RequestMetricsMiddleware
from .routers import documents, health, observability, pages, search, utils
from .utils.errors import (
    NotFoundError,
    PdfViewerError,
    StateConflictError,
    TransientIOError,
    ValidationError,
)
from .utils.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger("uvicorn.error")

cors_allow_origins = list(settings.cors_allow_origins)
allow_credentials = True
if "*" in cors_allow_origins or not cors_allow_origins:
    cors_allow_origins = ["*"]
    allow_credentials = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph on startup and stop the workers on exit."""

    init_db()
    container = ServiceContainer.from_settings(get_settings())
    app.state.container = container
    container.start()
    try:
        yield
    finally:
        container.shutdown(wait=True)


app = FastAPI(title="PDF Viewer", version=__version__, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIdMiddleware)
app.add_middleware(RequestMetricsMiddleware)


ROUTERS: Iterable = (
    documents.router,
    pages.router,
    search.router,
    utils.router,
    health.router,
    observability.router,
)

for router in ROUTERS:
    app.include_router(router)


def status_code_for(exc: PdfViewerError) -> int:
    """Map a domain error onto an HTTP status code."""

    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, StateConflictError):
        return 409
    if isinstance(exc, TransientIOError):
        return 503
    return 500


@app.exception_handler(PdfViewerError)
async def handle_domain_error(request: Request, exc: PdfViewerError) -> JSONResponse:
    """Render domain errors as ``{"detail", "code", "extra"}`` payloads."""

    status_code = status_code_for(exc)
    log = logger.warning if status_code >= 500 else logger.info
    log(
        "%s %s failed with %s: %s",
        request.method,
        request.url.path,
        exc.code,
        exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "code": exc.code,
            "extra": exc.extra,
            "request_id": get_request_id(),
        },
    )


@app.exception_handler(Exception)
async def handle_unexpected_exception(
    request: Request, exc: Exception
) -> JSONResponse:
    """Ensure unexpected exceptions return a JSON payload."""

    logger.exception(
        "Unhandled exception while processing %s %s", request.method, request.url.path
    )
    headers: dict[str, str] = {}
    if request.headers.get("origin") and cors_allow_origins == ["*"]:
        headers["Access-Control-Allow-Origin"] = "*"

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error", "request_id": get_request_id()},
        headers=headers or None,
    )


__all__ = ["app", "status_code_for"]
