"""HTTP client the local agent uses to reach the ingestion endpoint."""

from __future__ import annotations

from typing import Any, Optional, Sequence

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jobsync.config import AppConfig
from jobsync.errors import SyncError
from jobsync.schemas import CorrectionRecord, ExtractedDataUpdate, ImportRecord
from jobsync.staging.protocol import CorrectionSummary, ImportSummary

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "x-api-key"


def _wire(model: Any) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class SyncClient:
    """Remote ``StagingSink`` over ``/api/email-sync``.

    Usage::

        with SyncClient(config) as client:
            summary = client.submit_imports(records)

    Raises:
        ConfigurationError: on construction when no client API key is set.
    """

    def __init__(self, config: AppConfig, client: Optional[httpx.Client] = None) -> None:
        self._headers = {API_KEY_HEADER: config.require_client_secret()}
        self._url = config.jobsync_api_url
        self._client = client or httpx.Client(timeout=config.sync_timeout_sec)

    def __enter__(self) -> "SyncClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        resp = self._client.request(method, self._url, json=json, params=params, headers=self._headers)
        if resp.status_code >= 400:
            raise SyncError(f"{method} {self._url} returned {resp.status_code}: {resp.text[:200]}")
        return resp.json()

    def submit_imports(self, records: Sequence[ImportRecord]) -> ImportSummary:
        data = self._request("POST", json={"imports": [_wire(r) for r in records]})
        logger.info("sync_imports_sent", count=len(records), response=data.get("message"))
        return ImportSummary(
            processed=int(data.get("processed", 0)),
            skipped=int(data.get("skipped", 0)),
            discarded=int(data.get("discarded", 0)),
            errors=list(data.get("errors") or []),
            failed_ids=list(data.get("failedIds") or []),
        )

    def _patch(self, key: str, items: Sequence[Any]) -> CorrectionSummary:
        data = self._request("PATCH", json={key: [_wire(i) for i in items]})
        return CorrectionSummary(
            updated=int(data.get("updated", 0)),
            not_found=int(data.get("notFound", 0)),
            promoted=int(data.get("promoted", 0)),
            deleted=int(data.get("deleted", 0)),
            errors=list(data.get("errors") or []),
            failed_ids=list(data.get("failedIds") or []),
        )

    def submit_corrections(self, corrections: Sequence[CorrectionRecord]) -> CorrectionSummary:
        return self._patch("corrections", corrections)

    def submit_updates(self, updates: Sequence[ExtractedDataUpdate]) -> CorrectionSummary:
        return self._patch("updates", updates)

    def delete(self, message_id: str) -> int:
        data = self._request("DELETE", params={"messageId": message_id})
        return int(data.get("deleted", 0))
