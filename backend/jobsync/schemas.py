"""Pydantic schemas for the ingestion and review HTTP payloads.

Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

from jobsync.extraction.types import job_status_for, label_for

BODY_TEXT_LIMIT = 10_000
BODY_HTML_LIMIT = 50_000


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Ingestion ─────────────────────────────────────────────


class ImportRecord(WireModel):
    """One pre-classified message submitted for staging."""

    message_id: str = Field(..., min_length=1)
    subject: str = ""
    from_email: str = ""
    from_name: Optional[str] = None
    to_email: Optional[str] = None
    email_date: Optional[datetime] = None
    body_text: Optional[str] = None
    body_html: Optional[str] = None
    classification: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    classification_source: str = "llm"
    reason: Optional[str] = None
    is_outbound: bool = False
    account_email: Optional[str] = None
    extracted_data: Optional[dict[str, Any]] = None

    @field_validator("body_text")
    @classmethod
    def truncate_text(cls, v: Optional[str]) -> Optional[str]:
        return v[:BODY_TEXT_LIMIT] if v else v

    @field_validator("body_html")
    @classmethod
    def truncate_html(cls, v: Optional[str]) -> Optional[str]:
        return v[:BODY_HTML_LIMIT] if v else v


class ImportBatch(WireModel):
    """POST body. Entries stay raw here and are validated one by one when staged."""

    imports: List[Any] = Field(default_factory=list)


class CorrectionRecord(WireModel):
    """A reviewer override. ``message`` is required only for promotions."""

    message_id: str = Field(..., min_length=1)
    original_type: str
    corrected_type: str
    message: Optional[ImportRecord] = None


class ExtractedDataUpdate(WireModel):
    message_id: str = Field(..., min_length=1)
    extracted_data: dict[str, Any]


class PatchBatch(WireModel):
    """PATCH body: reclassifications and/or extracted-data backfills."""

    corrections: List[Any] = Field(default_factory=list)
    updates: List[Any] = Field(default_factory=list)


class ImportResultOut(WireModel):
    message: str
    mode: str
    processed: int = 0
    skipped: int = 0
    discarded: int = 0
    errors: Optional[List[str]] = None
    failed_ids: Optional[List[str]] = None


class CorrectionResultOut(WireModel):
    updated: int = 0
    not_found: int = 0
    promoted: int = 0
    deleted: int = 0
    errors: Optional[List[str]] = None
    failed_ids: Optional[List[str]] = None


class DeleteResultOut(WireModel):
    deleted: int


class CountsOut(WireModel):
    pending: int
    total: int


# ── Review ────────────────────────────────────────────────


class StagedImportOut(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: int
    message_id: str
    subject: str
    from_email: str
    from_name: Optional[str] = None
    to_email: Optional[str] = None
    email_date: Optional[datetime] = None
    is_outbound: bool
    classification: str
    confidence: float
    classification_source: str
    reason: Optional[str] = None
    extracted_data: Optional[dict[str, Any]] = None
    status: str
    job_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @computed_field
    @property
    def label(self) -> str:
        return label_for(self.classification)

    @computed_field(alias="suggestedStatus")
    @property
    def suggested_status(self) -> str:
        """Tracker status a reviewer would usually give the job on approval."""
        return job_status_for(self.classification)


class StagedImportDetailOut(StagedImportOut):
    body_text: Optional[str] = None
    body_html: Optional[str] = None


class StagedImportListOut(WireModel):
    items: List[StagedImportOut]
    total: int
    page: int
    page_size: int


class ApproveRequest(WireModel):
    job_id: Optional[str] = Field(None, max_length=100)


class BulkActionRequest(WireModel):
    message_ids: List[str] = Field(..., min_length=1)


class BulkActionOut(WireModel):
    changed: int
