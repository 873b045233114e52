"""Bounded, file-backed pool of human corrections used as few-shot examples."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger(__name__)

DEFAULT_POOL_CAP = 50
DEFAULT_EXAMPLE_COUNT = 5
BODY_PREVIEW_CHARS = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Correction(BaseModel):
    """One reviewer override, with the message context captured at the time."""

    message_id: str
    original_type: str
    corrected_type: str
    subject: str = ""
    from_email: str = ""
    from_name: Optional[str] = None
    to_email: Optional[str] = None
    is_outbound: bool = False
    body_preview: str = ""
    high_variance: bool = False
    corrected_at: datetime = Field(default_factory=_utcnow)

    @field_validator("body_preview")
    @classmethod
    def truncate_preview(cls, v: str) -> str:
        return v[:BODY_PREVIEW_CHARS]

    @property
    def direction(self) -> str:
        return "SENT" if self.is_outbound else "RECEIVED"


class CorrectionLog(BaseModel):
    """On-disk shape of the corrections file."""

    corrections: list[Correction] = Field(default_factory=list)
    last_scan: Optional[datetime] = None


class CorrectionStore:
    """Append-only ring of high-variance corrections, oldest evicted past ``cap``.

    Rule-catchable corrections are never written here: they point at a rule
    that needs fixing, not at something the model should learn.

    Usage::

        store = CorrectionStore(config.corrections_path, cap=config.correction_pool_cap)
        store.record(correction)
        examples = store.recent_examples(5)
    """

    def __init__(self, path: Path | str, cap: int = DEFAULT_POOL_CAP) -> None:
        self._path = Path(path).expanduser()
        self._cap = cap
        self._log = self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_scan(self) -> Optional[datetime]:
        return self._log.last_scan

    def __len__(self) -> int:
        return len(self._log.corrections)

    def _load(self) -> CorrectionLog:
        if not self._path.exists():
            return CorrectionLog()
        text = self._path.read_text(encoding="utf-8")
        if not text.strip():
            return CorrectionLog()
        log = CorrectionLog.model_validate_json(text)
        logger.debug("corrections_loaded", path=str(self._path), count=len(log.corrections))
        return log

    def save(self) -> None:
        """Write the log atomically (temp file in the same directory, then replace)."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".corrections-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self._log.model_dump_json(indent=2))
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def record(self, correction: Correction, *, persist: bool = True) -> bool:
        """Append *correction* if it is high-variance. Returns True when stored."""
        if not correction.high_variance:
            logger.debug("correction_not_pooled", message_id=correction.message_id)
            return False
        corrections = [*self._log.corrections, correction]
        self._log.corrections = corrections[-self._cap:]
        if persist:
            self.save()
        logger.info(
            "correction_pooled",
            message_id=correction.message_id,
            original=correction.original_type,
            corrected=correction.corrected_type,
            pool_size=len(self._log.corrections),
        )
        return True

    def recent_examples(self, n: int = DEFAULT_EXAMPLE_COUNT) -> list[Correction]:
        """The ``n`` most recent pooled corrections, oldest first."""
        if n <= 0:
            return []
        return list(self._log.corrections[-n:])

    def all(self) -> list[Correction]:
        return list(self._log.corrections)

    def mark_scanned(self, *, persist: bool = True) -> None:
        self._log.last_scan = _utcnow()
        if persist:
            self.save()
