"""API routers for the PDF viewer service."""

from . import documents, health, observability, pages, search, utils

__all__ = ["documents", "health", "observability", "pages", "search", "utils"]
