"""SQLAlchemy ORM models for the staging tables."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Import review states
STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_SKIPPED = "skipped"
IMPORT_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_SKIPPED)


class Base(DeclarativeBase):
    """Shared declarative base for all models."""


class StagedImport(Base):
    """A classified message waiting for a reviewer to accept or reject it."""

    __tablename__ = "email_imports"
    __table_args__ = (
        UniqueConstraint("message_id", name="uq_email_imports_message_id"),
        UniqueConstraint("job_id", name="uq_email_imports_job_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(500), nullable=False, index=True)

    # Message snapshot
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    from_email: Mapped[str] = mapped_column(String(300), nullable=False, default="")
    from_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    to_email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    email_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    body_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    body_html: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_outbound: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    account_email: Mapped[str | None] = mapped_column(String(300), nullable=True)

    # Classification
    classification: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    classification_source: Mapped[str] = mapped_column(String(20), nullable=False, default="llm")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    # Review
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=STATUS_PENDING, index=True
    )
    job_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<StagedImport id={self.id} message_id={self.message_id!r} "
            f"classification={self.classification!r} status={self.status!r}>"
        )
