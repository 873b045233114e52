"""Where producers deliver staging operations: the local database or the remote endpoint."""

from __future__ import annotations

from typing import Protocol, Sequence

from sqlalchemy.orm import Session, sessionmaker

from jobsync.schemas import CorrectionRecord, ExtractedDataUpdate, ImportRecord
from jobsync.staging.protocol import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    CorrectionSummary,
    ImportSummary,
    StagingService,
)


class StagingSink(Protocol):
    def submit_imports(self, records: Sequence[ImportRecord]) -> ImportSummary: ...

    def submit_corrections(self, corrections: Sequence[CorrectionRecord]) -> CorrectionSummary: ...

    def submit_updates(self, updates: Sequence[ExtractedDataUpdate]) -> CorrectionSummary: ...

    def delete(self, message_id: str) -> int: ...


class LocalStagingSink:
    """Applies operations directly through ``StagingService`` (server-local mode)."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._session_factory = session_factory
        self._threshold = threshold

    def _service(self, session: Session) -> StagingService:
        return StagingService(session, threshold=self._threshold)

    def submit_imports(self, records: Sequence[ImportRecord]) -> ImportSummary:
        with self._session_factory() as session:
            return self._service(session).create_imports(records)

    def submit_corrections(self, corrections: Sequence[CorrectionRecord]) -> CorrectionSummary:
        with self._session_factory() as session:
            return self._service(session).apply_corrections(corrections)

    def submit_updates(self, updates: Sequence[ExtractedDataUpdate]) -> CorrectionSummary:
        with self._session_factory() as session:
            return self._service(session).update_extracted_data(updates)

    def delete(self, message_id: str) -> int:
        with self._session_factory() as session:
            return self._service(session).delete_import(message_id)
