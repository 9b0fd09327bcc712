"""Document model definition."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return the current UTC timestamp."""

    return datetime.now(UTC)


class DocumentStatus(str, Enum):
    """Lifecycle states a document moves through."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Document(SQLModel, table=True):
    """Represents an uploaded PDF tracked by the processing pipeline."""

    id: Optional[int] = Field(default=None, primary_key=True)
    hash: str = Field(
        unique=True,
        index=True,
        description="Content-derived identifier used in every external reference.",
    )
    title: str = Field(default="", description="Human readable document title.")
    filename: str = Field(description="Sanitised filename stored on disk.")
    original_filename: str = Field(
        index=True, description="Filename supplied by the uploader."
    )
    mime_type: str = Field(default="application/pdf")
    file_path: str = Field(description="Blob path of the original file.")
    file_size: int = Field(default=0, description="Size of the original file in bytes.")
    page_count: int | None = Field(
        default=None, description="Number of pages, set once validation succeeds."
    )
    status: str = Field(
        default=DocumentStatus.UPLOADED.value,
        index=True,
        description="Processing status for the document.",
    )
    is_searchable: bool = Field(
        default=False,
        description="Whether the document completed and every page is indexed.",
    )
    cancel_requested: bool = Field(
        default=False,
        description="Cooperative cancellation flag consulted by page jobs.",
    )
    doc_metadata: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
        description="Free-form key/value metadata.",
    )
    processing_started_at: datetime | None = Field(default=None)
    processing_completed_at: datetime | None = Field(default=None)
    processing_error: str | None = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=_utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=_utcnow, nullable=False)


__all__ = ["Document", "DocumentStatus"]
