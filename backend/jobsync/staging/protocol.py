"""Idempotent staging of classified messages and replay of reviewer corrections.

Per message the state machine is::

    absent -> pending -> {approved, rejected, skipped} -> pending (restore)

The unique constraint on ``message_id`` is the only concurrency guard:
a producer that loses an insert race sees ``IntegrityError`` and the entry
is counted as skipped, exactly like a duplicate caught by the pre-check.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Literal, Mapping, Optional, TypeVar

import structlog
from pydantic import BaseModel, ValidationError
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from jobsync.email.parser import strip_message_id
from jobsync.errors import InvalidTransition
from jobsync.extraction.types import ClassificationType
from jobsync.models import (
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    STATUS_SKIPPED,
    StagedImport,
)
from jobsync.schemas import CorrectionRecord, ExtractedDataUpdate, ImportRecord

logger = structlog.get_logger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6
MANUAL_CONFIDENCE = 1.0

Outcome = Literal["processed", "skipped", "discarded"]

M = TypeVar("M", bound=BaseModel)


@dataclass
class ImportSummary:
    """Per-batch outcome counts for new classifications."""

    processed: int = 0
    skipped: int = 0
    discarded: int = 0
    errors: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)

    def count(self, outcome: Outcome) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


@dataclass
class CorrectionSummary:
    """Per-batch outcome counts for corrections and backfills."""

    updated: int = 0
    not_found: int = 0
    promoted: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate(model: type[M], entry: Any) -> M:
    """Validate one raw batch entry; already-built models pass through."""
    if isinstance(entry, model):
        return entry
    return model.model_validate(entry)


def _entry_id(entry: Any, index: int) -> str:
    """Best-effort message id of an entry that may not have validated."""
    if isinstance(entry, BaseModel):
        value = getattr(entry, "message_id", None)
    elif isinstance(entry, Mapping):
        value = entry.get("messageId") or entry.get("message_id")
    else:
        value = None
    if isinstance(value, str) and strip_message_id(value):
        return strip_message_id(value)
    return f"entry {index}"


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'entry'}: {err['msg']}"
            for err in exc.errors()
        )
    return str(exc)


class StagingService:
    """Apply import, correction and review operations against one session.

    Every entry is committed on its own so one bad entry never rolls back
    the rest of the batch.
    """

    def __init__(self, session: Session, threshold: float = DEFAULT_CONFIDENCE_THRESHOLD) -> None:
        self._session = session
        self._threshold = threshold

    # ── Lookups ───────────────────────────────────────────

    def find(self, message_id: str) -> Optional[StagedImport]:
        """Match the id as given, without brackets, or wrapped in brackets."""
        stripped = strip_message_id(message_id)
        candidates = {message_id, stripped, f"<{stripped}>"}
        return (
            self._session.query(StagedImport)
            .filter(or_(*(StagedImport.message_id == c for c in candidates)))
            .first()
        )

    def counts(self) -> dict[str, int]:
        total = self._session.query(func.count(StagedImport.id)).scalar() or 0
        pending = (
            self._session.query(func.count(StagedImport.id))
            .filter(StagedImport.status == STATUS_PENDING)
            .scalar()
            or 0
        )
        return {"pending": pending, "total": total}

    # ── New classifications ───────────────────────────────

    def _create_one(self, record: ImportRecord) -> Outcome:
        message_id = strip_message_id(record.message_id)
        if not message_id:
            raise ValueError("messageId is empty")

        if self.find(message_id) is not None:
            return "skipped"

        kind = ClassificationType.parse(record.classification)
        if kind is None:
            raise ValueError(f"unknown classification {record.classification!r}")
        if not kind.is_job_related or record.confidence < self._threshold:
            logger.debug(
                "import_discarded",
                message_id=message_id,
                classification=kind.value,
                confidence=record.confidence,
            )
            return "discarded"

        row = StagedImport(
            message_id=message_id,
            subject=record.subject,
            from_email=record.from_email,
            from_name=record.from_name,
            to_email=record.to_email,
            email_date=record.email_date,
            body_text=record.body_text,
            body_html=record.body_html,
            is_outbound=record.is_outbound,
            account_email=record.account_email,
            classification=kind.value,
            confidence=record.confidence,
            classification_source=record.classification_source,
            reason=record.reason,
            extracted_data=record.extracted_data,
            status=STATUS_PENDING,
        )
        self._session.add(row)
        try:
            self._session.commit()
        except IntegrityError:
            # Another producer staged the same message between check and insert
            self._session.rollback()
            logger.info("import_race_skipped", message_id=message_id)
            return "skipped"
        logger.info(
            "import_staged",
            message_id=message_id,
            classification=kind.value,
            confidence=record.confidence,
        )
        return "processed"

    def create_imports(self, records: Iterable[ImportRecord | Mapping[str, Any]]) -> ImportSummary:
        """Stage each record at most once; entries succeed or fail independently.

        Raw mappings are validated here, one at a time, so a malformed entry
        is reported in ``errors`` and ``failed_ids`` while the rest are staged.
        """
        summary = ImportSummary()
        for index, entry in enumerate(records):
            try:
                summary.count(self._create_one(_validate(ImportRecord, entry)))
            except Exception as exc:
                self._session.rollback()
                message_id = _entry_id(entry, index)
                logger.error("import_failed", message_id=message_id, error=_describe(exc))
                summary.errors.append(f"{message_id}: {_describe(exc)}")
                summary.failed_ids.append(message_id)
        logger.info(
            "import_batch_done",
            processed=summary.processed,
            skipped=summary.skipped,
            discarded=summary.discarded,
            errors=len(summary.errors),
        )
        return summary

    # ── Corrections ───────────────────────────────────────

    def _promote(self, correction: CorrectionRecord, kind: ClassificationType, summary: CorrectionSummary) -> None:
        if correction.message is None:
            logger.warning("promotion_without_message", message_id=correction.message_id)
            summary.not_found += 1
            return
        record = correction.message.model_copy(
            update={
                "message_id": correction.message_id,
                "classification": kind.value,
                "confidence": MANUAL_CONFIDENCE,
                "classification_source": "manual",
            }
        )
        outcome = self._create_one(record)
        if outcome == "processed":
            summary.promoted += 1
        elif outcome == "skipped":
            # Already staged by another producer; relabel it instead
            self._relabel(correction.message_id, kind, summary)

    def _relabel(self, message_id: str, kind: ClassificationType, summary: CorrectionSummary) -> None:
        row = self.find(message_id)
        if row is None:
            summary.not_found += 1
            return
        row.classification = kind.value
        row.classification_source = "manual"
        self._session.commit()
        summary.updated += 1
        logger.info("import_relabelled", message_id=row.message_id, classification=kind.value)

    def _apply_one(self, correction: CorrectionRecord, summary: CorrectionSummary) -> None:
        original = ClassificationType.parse(correction.original_type)
        corrected = ClassificationType.parse(correction.corrected_type)
        if original is None or corrected is None:
            raise ValueError(
                f"unknown type in {correction.original_type!r} -> {correction.corrected_type!r}"
            )
        if original == corrected:
            logger.debug("correction_unchanged", message_id=correction.message_id)
            return

        if not original.is_job_related and corrected.is_job_related:
            self._promote(correction, corrected, summary)
        elif original.is_job_related and not corrected.is_job_related:
            removed = self.delete_import(correction.message_id)
            if removed:
                summary.deleted += removed
            else:
                summary.not_found += 1
        else:
            self._relabel(correction.message_id, corrected, summary)

    def apply_corrections(self, corrections: Iterable[CorrectionRecord | Mapping[str, Any]]) -> CorrectionSummary:
        """Replay reviewer overrides: relabel, promote (other -> job) or demote (job -> other)."""
        summary = CorrectionSummary()
        for index, entry in enumerate(corrections):
            try:
                self._apply_one(_validate(CorrectionRecord, entry), summary)
            except Exception as exc:
                self._session.rollback()
                message_id = _entry_id(entry, index)
                logger.error("correction_failed", message_id=message_id, error=_describe(exc))
                summary.errors.append(f"{message_id}: {_describe(exc)}")
                summary.failed_ids.append(message_id)
        return summary

    def delete_import(self, message_id: str) -> int:
        """Remove the staged import for *message_id*. Returns the number deleted."""
        row = self.find(message_id)
        if row is None:
            return 0
        self._session.delete(row)
        self._session.commit()
        logger.info("import_deleted", message_id=row.message_id)
        return 1

    def update_extracted_data(self, updates: Iterable[ExtractedDataUpdate | Mapping[str, Any]]) -> CorrectionSummary:
        """Backfill: overlay the supplied non-empty fields on the stored data."""
        summary = CorrectionSummary()
        for index, entry in enumerate(updates):
            try:
                update = _validate(ExtractedDataUpdate, entry)
                row = self.find(update.message_id)
                if row is None:
                    summary.not_found += 1
                    continue
                merged = dict(row.extracted_data or {})
                merged.update({k: v for k, v in update.extracted_data.items() if v})
                row.extracted_data = merged
                self._session.commit()
                summary.updated += 1
            except Exception as exc:
                self._session.rollback()
                message_id = _entry_id(entry, index)
                logger.error("backfill_failed", message_id=message_id, error=_describe(exc))
                summary.errors.append(f"{message_id}: {_describe(exc)}")
                summary.failed_ids.append(message_id)
        return summary

    # ── Reviewer transitions ──────────────────────────────

    def _require(self, message_id: str) -> StagedImport:
        row = self.find(message_id)
        if row is None:
            raise LookupError(f"No staged import for {message_id!r}")
        return row

    def approve(self, message_id: str, job_id: Optional[str] = None) -> StagedImport:
        """Accept a pending import, optionally linking the job record it became."""
        row = self._require(message_id)
        if row.status != STATUS_PENDING:
            raise InvalidTransition(row.message_id, row.status, "approve")
        row.status = STATUS_APPROVED
        row.job_id = job_id
        row.reviewed_at = _utcnow()
        self._session.commit()
        logger.info("import_approved", message_id=row.message_id, job_id=job_id)
        return row

    def _close(self, message_id: str, status: str, action: str) -> StagedImport:
        """Reject or skip. Only pending imports close; a reviewed one is restored first."""
        row = self._require(message_id)
        if row.status != STATUS_PENDING:
            raise InvalidTransition(row.message_id, row.status, action)
        row.status = status
        row.reviewed_at = _utcnow()
        self._session.commit()
        logger.info(f"import_{status}", message_id=row.message_id)
        return row

    def reject(self, message_id: str) -> StagedImport:
        return self._close(message_id, STATUS_REJECTED, "reject")

    def skip(self, message_id: str) -> StagedImport:
        return self._close(message_id, STATUS_SKIPPED, "skip")

    def restore(self, message_id: str) -> StagedImport:
        """Return a reviewed import to the pending queue."""
        row = self._require(message_id)
        if row.status == STATUS_PENDING:
            raise InvalidTransition(row.message_id, row.status, "restore")
        row.status = STATUS_PENDING
        row.reviewed_at = None
        self._session.commit()
        logger.info("import_restored", message_id=row.message_id)
        return row

    def bulk_close(self, message_ids: Iterable[str], status: str) -> int:
        """Reject or skip many imports at once; only pending ones change."""
        if status not in (STATUS_REJECTED, STATUS_SKIPPED):
            raise ValueError(f"bulk action must reject or skip, not {status!r}")
        ids = {strip_message_id(m) for m in message_ids}
        changed = (
            self._session.query(StagedImport)
            .filter(StagedImport.message_id.in_(ids), StagedImport.status == STATUS_PENDING)
            .update(
                {StagedImport.status: status, StagedImport.reviewed_at: _utcnow()},
                synchronize_session=False,
            )
        )
        self._session.commit()
        return changed
