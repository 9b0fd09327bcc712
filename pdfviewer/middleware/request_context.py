"""Request identifiers shared between middleware, error handlers and logs."""

from __future__ import annotations

import contextvars
import logging
import re
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

LOGGER = logging.getLogger(__name__)

_REQUEST_ID: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "pdfviewer_request_id", default=None
)

_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def get_request_id(default: str | None = None) -> str | None:
    """Return the identifier of the request being served, if any."""

    return _REQUEST_ID.get(default)


def resolve_request_id(value: str | None) -> str:
    """Accept a well formed client supplied id or mint a new one."""

    candidate = (value or "").strip()
    if _REQUEST_ID_PATTERN.match(candidate):
        return candidate
    return uuid.uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo a request id header and expose the id through a context variable."""

    def __init__(self, app: ASGIApp, header_name: str = "X-Request-ID") -> None:
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        request_id = resolve_request_id(request.headers.get(self.header_name))
        token = _REQUEST_ID.set(request_id)
        try:
            LOGGER.debug("%s %s [%s]", request.method, request.url.path, request_id)
            response = await call_next(request)
        finally:
            _REQUEST_ID.reset(token)
        response.headers[self.header_name] = request_id
        return response


__all__ = ["RequestIdMiddleware", "get_request_id", "resolve_request_id"]
