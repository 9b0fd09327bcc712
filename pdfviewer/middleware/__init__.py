"""ASGI middleware for the PDF viewer service."""

from .request_context import RequestIdMiddleware, get_request_id

__all__ = ["RequestIdMiddleware", "get_request_id"]
