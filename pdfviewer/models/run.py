"""Processing run audit model definition."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return the current UTC timestamp."""

    return datetime.now(UTC)


class RunStatus(str, Enum):
    """Outcome of one processing or retry run."""

    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ProcessingRun(SQLModel, table=True):
    """Audit record of one pass of page extraction over a document."""

    __tablename__ = "processing_runs"
    __table_args__ = (
        UniqueConstraint("document_id", "run_number", name="uq_document_run_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    document_id: int = Field(foreign_key="document.id", index=True, nullable=False)
    run_number: int = Field(nullable=False, description="1 for the first pass, +1 per retry.")
    operation: str = Field(default="process", description="process or retry.")
    status: str = Field(default=RunStatus.RUNNING.value, index=True)
    pages_requested: int = Field(default=0)
    pages_completed: int = Field(default=0)
    pages_failed: int = Field(default=0)
    failure_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(default_factory=_utcnow, nullable=False)
    completed_at: datetime | None = Field(default=None)
    duration_seconds: float | None = Field(default=None)


__all__ = ["ProcessingRun", "RunStatus"]
