"""Page model definition."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return the current UTC timestamp."""

    return datetime.now(UTC)


class PageStatus(str, Enum):
    """Lifecycle states for a single page extraction."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentPage(SQLModel, table=True):
    """A single page of a document and its extracted artifacts."""

    __tablename__ = "document_pages"
    __table_args__ = (
        UniqueConstraint("document_id", "page_number", name="uq_document_page_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    document_id: int = Field(foreign_key="document.id", index=True, nullable=False)
    page_number: int = Field(nullable=False, description="1-based page number.")
    content: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
        description="Extracted text, empty for image-only pages.",
    )
    page_file_path: str | None = Field(default=None)
    thumbnail_path: str | None = Field(default=None)
    page_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
        description="Per-page details such as pixel dimensions.",
    )
    status: str = Field(default=PageStatus.PENDING.value, index=True)
    processing_error: str | None = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    attempts: int = Field(default=0, description="Extraction attempts in the last run.")
    is_parsed: bool = Field(default=False)
    is_indexed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=_utcnow, nullable=False)


__all__ = ["DocumentPage", "PageStatus"]
