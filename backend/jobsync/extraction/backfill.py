"""Maintenance passes over already-labelled mail: metadata and tag backfills."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from jobsync.config import AppConfig
from jobsync.email.mailstore import MailStore, TAG_PROCESSED, classification_tag
from jobsync.email.parser import parse_email_bytes
from jobsync.extraction.llm import LLMProvider, extract_with_model
from jobsync.extraction.rules import DEFAULT_GAZETTEER, Gazetteer, extract_by_rules, needs_llm_fallback
from jobsync.extraction.types import ClassificationType
from jobsync.models import StagedImport
from jobsync.schemas import ExtractedDataUpdate
from jobsync.staging.sink import StagingSink

logger = structlog.get_logger(__name__)


@dataclass
class BackfillSummary:
    scanned: int = 0
    extracted: int = 0
    skipped: int = 0
    updated: int = 0
    not_found: int = 0
    errors: list[str] = field(default_factory=list)


def build_job_label_query() -> str:
    """Mail carrying any job-related ``jobsync/<type>`` label."""
    return " OR ".join(
        f"tag:{classification_tag(kind.value)}" for kind in ClassificationType if kind.is_job_related
    )


def run_backfill_metadata(
    config: AppConfig,
    store: MailStore,
    sink: Optional[StagingSink],
    provider: Optional[LLMProvider] = None,
    *,
    dry_run: bool = False,
    limit: Optional[int] = None,
    gazetteer: Gazetteer = DEFAULT_GAZETTEER,
) -> BackfillSummary:
    """Re-run extraction on labelled mail and push the fields to the staged imports.

    Messages where neither company nor title can be found are skipped. With
    *dry_run* (or without a sink) nothing is sent; the extracted values are
    only logged.
    """
    summary = BackfillSummary()
    refs = store.query(build_job_label_query())
    if limit is not None:
        refs = refs[:limit]
    summary.scanned = len(refs)
    logger.info("backfill_metadata_started", messages=len(refs), dry_run=dry_run, llm=provider is not None)

    updates: list[ExtractedDataUpdate] = []
    for ref in refs:
        try:
            message = parse_email_bytes(
                store.read(ref),
                filename=ref.path.name if ref.path else None,
                monitored_emails=config.monitored_emails_list,
            )
            data = extract_by_rules(message, gazetteer)
            if provider is not None and needs_llm_fallback(data):
                data = data.merge(
                    extract_with_model(
                        provider,
                        message,
                        body_chars=config.prompt_body_chars,
                        timeout_sec=config.llm_timeout_sec,
                    )
                )
        except Exception as exc:
            logger.error("backfill_extract_failed", message_id=ref.message_id, error=str(exc))
            summary.errors.append(f"{ref.message_id}: {exc}")
            continue

        if not data.company and not data.job_title:
            summary.skipped += 1
            continue
        summary.extracted += 1
        logger.info(
            "backfill_extracted",
            message_id=message.message_id,
            company=data.company,
            job_title=data.job_title,
            location=data.location,
        )
        updates.append(ExtractedDataUpdate(message_id=message.message_id, extracted_data=data.to_dict()))

    if updates and sink is not None and not dry_run:
        try:
            result = sink.submit_updates(updates)
        except Exception as exc:
            logger.error("backfill_submit_failed", count=len(updates), error=str(exc))
            summary.errors.append(f"submit: {exc}")
        else:
            summary.updated = result.updated
            summary.not_found = result.not_found
            summary.errors.extend(result.errors)

    logger.info(
        "backfill_metadata_complete",
        scanned=summary.scanned,
        extracted=summary.extracted,
        skipped=summary.skipped,
        updated=summary.updated,
        not_found=summary.not_found,
        errors=len(summary.errors),
    )
    return summary


def run_backfill_tags(session: Session, store: MailStore) -> BackfillSummary:
    """Tag mail with the classification held by its staged import."""
    summary = BackfillSummary()
    for row in session.query(StagedImport).order_by(StagedImport.id):
        summary.scanned += 1
        wanted = classification_tag(row.classification)
        try:
            if wanted in store.tags(row.message_id):
                summary.skipped += 1
                continue
            store.mutate_tags(row.message_id, add=[wanted, TAG_PROCESSED])
        except Exception as exc:
            logger.error("backfill_tag_failed", message_id=row.message_id, error=str(exc))
            summary.errors.append(f"{row.message_id}: {exc}")
            continue
        summary.updated += 1
    logger.info(
        "backfill_tags_complete",
        scanned=summary.scanned,
        tagged=summary.updated,
        already_tagged=summary.skipped,
        errors=len(summary.errors),
    )
    return summary
