"""Ingestion endpoint shared by the local agent and the server-local sync."""

from __future__ import annotations

import secrets
from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from jobsync.config import AppConfig, get_config
from jobsync.database import get_db, get_session_factory
from jobsync.email.mailstore import create_mail_store
from jobsync.errors import ConfigurationError, MailStoreError
from jobsync.extraction.pipeline import build_pipeline, run_sync
from jobsync.logging_config import bind_run_context
from jobsync.schemas import (
    CorrectionResultOut,
    CountsOut,
    DeleteResultOut,
    ImportBatch,
    ImportResultOut,
    PatchBatch,
)
from jobsync.staging.protocol import StagingService
from jobsync.staging.sink import LocalStagingSink

logger = structlog.get_logger(__name__)


def require_api_key(
    x_api_key: Optional[str] = Header(None),
    config: AppConfig = Depends(get_config),
) -> None:
    """Reject callers that do not present the shared secret."""
    try:
        secret = config.require_server_secret()
    except ConfigurationError as exc:
        logger.error("email_sync_not_configured", error=str(exc))
        raise HTTPException(status_code=500, detail="Email sync is not configured")
    if not x_api_key or not secrets.compare_digest(x_api_key, secret):
        raise HTTPException(status_code=401, detail="Invalid API key")


router = APIRouter(
    prefix="/api/email-sync",
    tags=["email-sync"],
    dependencies=[Depends(require_api_key)],
)


def _server_local_sync(config: AppConfig) -> ImportResultOut:
    """Classify new mail from the server's own mail store and stage it directly."""
    try:
        store = create_mail_store(config)
        pipeline = build_pipeline(config)
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    sink = LocalStagingSink(get_session_factory(), threshold=config.confidence_threshold)
    try:
        with bind_run_context("server-local-sync"):
            summary = run_sync(config, store, pipeline, sink)
    except MailStoreError as exc:
        logger.error("server_local_sync_failed", error=str(exc))
        raise HTTPException(status_code=502, detail=f"Mail store unavailable: {exc}")
    finally:
        pipeline.close()

    return ImportResultOut(
        message=f"Classified {summary.classified} of {summary.scanned} new emails",
        mode="server-local",
        processed=summary.processed,
        skipped=summary.skipped,
        discarded=summary.discarded,
        errors=summary.errors or None,
    )


@router.post("", response_model=ImportResultOut, response_model_exclude_none=True)
def submit_imports(
    payload: Optional[ImportBatch] = Body(None),
    config: AppConfig = Depends(get_config),
    db: Session = Depends(get_db),
) -> ImportResultOut:
    """Stage pre-classified imports, or run server-local sync when the body is empty."""
    if payload is None:
        return _server_local_sync(config)

    summary = StagingService(db, threshold=config.confidence_threshold).create_imports(payload.imports)
    return ImportResultOut(
        message=f"Received {len(payload.imports)} imports",
        mode="client",
        processed=summary.processed,
        skipped=summary.skipped,
        discarded=summary.discarded,
        errors=summary.errors or None,
        failed_ids=summary.failed_ids or None,
    )


@router.patch("", response_model=CorrectionResultOut, response_model_exclude_none=True)
def apply_corrections(
    payload: PatchBatch,
    config: AppConfig = Depends(get_config),
    db: Session = Depends(get_db),
) -> CorrectionResultOut:
    """Replay reviewer corrections and/or backfill extracted fields."""
    if not payload.corrections and not payload.updates:
        raise HTTPException(status_code=400, detail="Provide corrections or updates")

    service = StagingService(db, threshold=config.confidence_threshold)
    out = CorrectionResultOut()
    errors: list[str] = []
    failed_ids: list[str] = []
    for summary in (
        service.apply_corrections(payload.corrections),
        service.update_extracted_data(payload.updates),
    ):
        out.updated += summary.updated
        out.not_found += summary.not_found
        out.promoted += summary.promoted
        out.deleted += summary.deleted
        errors.extend(summary.errors)
        failed_ids.extend(summary.failed_ids)
    out.errors = errors or None
    out.failed_ids = failed_ids or None
    logger.info(
        "corrections_applied",
        updated=out.updated,
        not_found=out.not_found,
        promoted=out.promoted,
        deleted=out.deleted,
    )
    return out


@router.delete("", response_model=DeleteResultOut)
def delete_import(
    message_id: str = Query(..., alias="messageId", min_length=1),
    db: Session = Depends(get_db),
) -> DeleteResultOut:
    """Remove a staged import (demotion to ``other``)."""
    return DeleteResultOut(deleted=StagingService(db).delete_import(message_id))


@router.get("", response_model=CountsOut)
def import_counts(db: Session = Depends(get_db)) -> CountsOut:
    """Pending and total staged imports."""
    return CountsOut(**StagingService(db).counts())
