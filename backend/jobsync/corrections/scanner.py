"""Detect reviewer relabels made in the mail store and replay them.

A reviewer corrects a label by tagging the message::

    notmuch tag +jobsync-was/rejection -jobsync/rejection +jobsync/interview -- id:abc123

The ``jobsync-was/<type>`` tag records the original label and the current
``jobsync/<type>`` tag is the corrected one. Messages tagged only
``jobsync-corrected`` must also carry a was-tag; without one they are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog

from jobsync.config import AppConfig
from jobsync.corrections.store import Correction, CorrectionStore
from jobsync.email.classifier import is_high_variance_correction
from jobsync.email.mailstore import (
    CLASSIFICATION_TAG_PREFIX,
    TAG_CORRECTED,
    WAS_TAG_PREFIX,
    MailStore,
    MessageRef,
    was_tag,
)
from jobsync.email.parser import NormalizedMessage, parse_email_bytes, strip_message_id
from jobsync.extraction.pipeline import account_for, to_import_record
from jobsync.extraction.types import CLASSIFICATION_TYPES, ClassificationResult, ClassificationType
from jobsync.schemas import CorrectionRecord
from jobsync.staging.sink import StagingSink

logger = structlog.get_logger(__name__)


@dataclass
class CorrectionScanSummary:
    found: int = 0
    corrections: int = 0
    high_variance: int = 0
    promoted: int = 0
    relabelled: int = 0
    deleted: int = 0
    not_found: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Pending:
    message_id: str
    original: str
    corrected: str
    correction: Correction
    record: CorrectionRecord
    ref_id: str


def _labels(tags: set[str], prefix: str) -> list[str]:
    return sorted(
        t[len(prefix):] for t in tags if t.startswith(prefix) and t[len(prefix):] in CLASSIFICATION_TYPES
    )


class CorrectionScanner:
    """Turn tag deltas into corrections: pool the instructive ones, replay all of them."""

    def __init__(
        self,
        config: AppConfig,
        store: CorrectionStore,
        mail_store: MailStore,
        sink: StagingSink,
    ) -> None:
        self._config = config
        self._store = store
        self._mail = mail_store
        self._sink = sink

    def _candidates(self) -> dict[str, MessageRef]:
        found: dict[str, MessageRef] = {}
        queries = [f"tag:{was_tag(t)}" for t in CLASSIFICATION_TYPES] + [f"tag:{TAG_CORRECTED}"]
        for query in queries:
            for ref in self._mail.query(query):
                found.setdefault(ref.message_id, ref)
        return found

    def _resolve(self, ref: MessageRef, summary: CorrectionScanSummary) -> Optional[_Pending]:
        tags = self._mail.tags(ref.message_id)
        originals = _labels(tags, WAS_TAG_PREFIX)
        if not originals:
            logger.warning("correction_missing_origin", message_id=ref.message_id)
            summary.skipped += 1
            return None
        if len(originals) > 1:
            # Tags stay put until the reviewer removes the extra was-tags
            logger.warning("correction_ambiguous_origin", message_id=ref.message_id, originals=originals)
            summary.skipped += 1
            summary.errors.append(f"{ref.message_id}: several original labels {', '.join(originals)}")
            return None
        original = originals[0]

        current = _labels(tags, CLASSIFICATION_TAG_PREFIX)
        changed = [t for t in current if t != original]
        if not changed:
            logger.debug("correction_unchanged", message_id=ref.message_id, type=original)
            summary.skipped += 1
            return None
        corrected = changed[0]

        message = parse_email_bytes(
            self._mail.read(ref),
            filename=ref.path.name if ref.path else None,
            monitored_emails=self._config.monitored_emails_list,
        )
        return self._build(message, original, corrected, ref.message_id)

    def _build(self, message: NormalizedMessage, original: str, corrected: str, ref_id: str) -> _Pending:
        correction = Correction(
            message_id=message.message_id,
            original_type=original,
            corrected_type=corrected,
            subject=message.subject,
            from_email=message.from_email,
            from_name=message.from_name or None,
            to_email=message.to_email or None,
            is_outbound=message.is_outbound,
            body_preview=message.best_text,
            high_variance=is_high_variance_correction(message),
        )
        payload = None
        kind = ClassificationType(corrected)
        if not ClassificationType(original).is_job_related and kind.is_job_related:
            # Never staged before; the server needs the whole message to create it
            payload = to_import_record(
                message,
                ClassificationResult(type=kind, confidence=1.0, source="manual"),
                account_for(message, self._config.monitored_emails_list),
            )
        record = CorrectionRecord(
            message_id=message.message_id,
            original_type=original,
            corrected_type=corrected,
            message=payload,
        )
        return _Pending(message.message_id, original, corrected, correction, record, ref_id)

    def scan(self) -> CorrectionScanSummary:
        summary = CorrectionScanSummary()
        candidates = self._candidates()
        summary.found = len(candidates)
        logger.info("correction_scan_started", candidates=len(candidates))

        pending: list[_Pending] = []
        for message_id, ref in candidates.items():
            try:
                item = self._resolve(ref, summary)
            except Exception as exc:
                logger.error("correction_read_failed", message_id=message_id, error=str(exc))
                summary.errors.append(f"{message_id}: {exc}")
                continue
            if item is not None:
                pending.append(item)

        failed: set[str] = set()
        if pending:
            try:
                result = self._sink.submit_corrections([p.record for p in pending])
            except Exception as exc:
                # Tags stay in place so the next scan replays these corrections
                logger.error("correction_submit_failed", count=len(pending), error=str(exc))
                summary.errors.append(f"submit: {exc}")
                return summary
            summary.promoted = result.promoted
            summary.relabelled = result.updated
            summary.deleted = result.deleted
            summary.not_found = result.not_found
            summary.errors.extend(result.errors)
            failed = {strip_message_id(m) for m in result.failed_ids}

        for item in pending:
            if strip_message_id(item.message_id) in failed:
                # Rejected by the sink: keep the was-tag so the next scan replays it
                logger.warning("correction_not_applied", message_id=item.message_id)
                continue
            summary.corrections += 1
            if self._store.record(item.correction, persist=False):
                summary.high_variance += 1
            logger.info(
                "correction_recorded",
                message_id=item.message_id,
                original=item.original,
                corrected=item.corrected,
                high_variance=item.correction.high_variance,
            )
            try:
                self._mail.mutate_tags(item.ref_id, remove=[was_tag(item.original), TAG_CORRECTED])
            except Exception as exc:
                logger.error("correction_untag_failed", message_id=item.message_id, error=str(exc))
                summary.errors.append(f"{item.message_id}: {exc}")

        self._store.mark_scanned(persist=False)
        self._store.save()
        logger.info(
            "correction_scan_complete",
            corrections=summary.corrections,
            high_variance=summary.high_variance,
            pool_size=len(self._store),
            promoted=summary.promoted,
            relabelled=summary.relabelled,
            deleted=summary.deleted,
            not_found=summary.not_found,
            errors=len(summary.errors),
        )
        return summary
