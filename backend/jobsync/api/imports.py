"""Review endpoints for the staged import queue."""

from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from jobsync.database import get_db
from jobsync.errors import InvalidTransition
from jobsync.extraction.types import CLASSIFICATION_TYPES
from jobsync.models import IMPORT_STATUSES, STATUS_REJECTED, STATUS_SKIPPED, StagedImport
from jobsync.schemas import (
    ApproveRequest,
    BulkActionOut,
    BulkActionRequest,
    DeleteResultOut,
    StagedImportDetailOut,
    StagedImportListOut,
    StagedImportOut,
)
from jobsync.staging.protocol import StagingService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/imports", tags=["imports"])


def _get_or_404(db: Session, import_id: int) -> StagedImport:
    row = db.query(StagedImport).filter(StagedImport.id == import_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Import not found")
    return row


@router.get("", response_model=StagedImportListOut)
def list_imports(
    status: Optional[str] = Query(None, description="Filter by review status"),
    classification: Optional[str] = Query(None, description="Filter by classification"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    db: Session = Depends(get_db),
) -> StagedImportListOut:
    """List staged imports, newest email first."""
    if status and status not in IMPORT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    if classification and classification not in CLASSIFICATION_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown classification: {classification}")

    query = db.query(StagedImport)
    if status:
        query = query.filter(StagedImport.status == status)
    if classification:
        query = query.filter(StagedImport.classification == classification)

    total = query.count()
    items = (
        query.order_by(StagedImport.email_date.desc(), StagedImport.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return StagedImportListOut(
        items=[StagedImportOut.model_validate(i) for i in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.post("/bulk/reject", response_model=BulkActionOut)
def bulk_reject(body: BulkActionRequest, db: Session = Depends(get_db)) -> BulkActionOut:
    changed = StagingService(db).bulk_close(body.message_ids, STATUS_REJECTED)
    logger.info("imports_bulk_rejected", requested=len(body.message_ids), changed=changed)
    return BulkActionOut(changed=changed)


@router.post("/bulk/skip", response_model=BulkActionOut)
def bulk_skip(body: BulkActionRequest, db: Session = Depends(get_db)) -> BulkActionOut:
    changed = StagingService(db).bulk_close(body.message_ids, STATUS_SKIPPED)
    logger.info("imports_bulk_skipped", requested=len(body.message_ids), changed=changed)
    return BulkActionOut(changed=changed)


@router.get("/{import_id}", response_model=StagedImportDetailOut)
def get_import(import_id: int, db: Session = Depends(get_db)) -> StagedImportDetailOut:
    return StagedImportDetailOut.model_validate(_get_or_404(db, import_id))


def _transition(db: Session, import_id: int, action: str, **kwargs: object) -> StagedImportOut:
    row = _get_or_404(db, import_id)
    service = StagingService(db)
    try:
        updated = getattr(service, action)(row.message_id, **kwargs)
    except InvalidTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return StagedImportOut.model_validate(updated)


@router.post("/{import_id}/approve", response_model=StagedImportOut)
def approve_import(
    import_id: int,
    body: Optional[ApproveRequest] = None,
    db: Session = Depends(get_db),
) -> StagedImportOut:
    """Accept a pending import, optionally linking the job it became."""
    return _transition(db, import_id, "approve", job_id=body.job_id if body else None)


@router.post("/{import_id}/reject", response_model=StagedImportOut)
def reject_import(import_id: int, db: Session = Depends(get_db)) -> StagedImportOut:
    return _transition(db, import_id, "reject")


@router.post("/{import_id}/skip", response_model=StagedImportOut)
def skip_import(import_id: int, db: Session = Depends(get_db)) -> StagedImportOut:
    return _transition(db, import_id, "skip")


@router.post("/{import_id}/restore", response_model=StagedImportOut)
def restore_import(import_id: int, db: Session = Depends(get_db)) -> StagedImportOut:
    """Put a reviewed import back in the pending queue."""
    return _transition(db, import_id, "restore")


@router.delete("/{import_id}", response_model=DeleteResultOut)
def delete_import(import_id: int, db: Session = Depends(get_db)) -> DeleteResultOut:
    row = _get_or_404(db, import_id)
    return DeleteResultOut(deleted=StagingService(db).delete_import(row.message_id))
