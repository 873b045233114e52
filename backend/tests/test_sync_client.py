"""Tests for the HTTP client used by the local agent."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest
from pydantic import SecretStr

from jobsync.errors import ConfigurationError, SyncError
from jobsync.schemas import CorrectionRecord, ExtractedDataUpdate, ImportRecord
from jobsync.sync.client import API_KEY_HEADER, SyncClient


def _client(config, handler) -> SyncClient:
    return SyncClient(config, client=httpx.Client(transport=httpx.MockTransport(handler)))


class TestSyncClient:
    def test_submit_imports_sends_camel_case_with_key(self, config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get(API_KEY_HEADER)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "message": "ok",
                    "mode": "client",
                    "processed": 1,
                    "skipped": 2,
                    "errors": ["m9@x: database is locked"],
                    "failedIds": ["m9@x"],
                },
            )

        record = ImportRecord(
            message_id="m1@x",
            subject="Interview",
            from_email="hr@acme.io",
            email_date=datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc),
            classification="interview",
            confidence=0.9,
            is_outbound=False,
            extracted_data={"jobTitle": "Engineer"},
        )
        with _client(config, handler) as client:
            summary = client.submit_imports([record])

        assert (summary.processed, summary.skipped, summary.discarded) == (1, 2, 0)
        assert summary.failed_ids == ["m9@x"]
        assert seen["method"] == "POST"
        assert seen["url"] == "http://jobsync.test/api/email-sync"
        assert seen["key"] == "client-secret"
        sent = seen["body"]["imports"][0]
        assert sent["messageId"] == "m1@x"
        assert sent["fromEmail"] == "hr@acme.io"
        assert sent["isOutbound"] is False
        assert sent["emailDate"].startswith("2025-01-06T09:00:00")
        assert sent["extractedData"] == {"jobTitle": "Engineer"}
        assert "bodyHtml" not in sent

    def test_corrections_and_updates_use_patch(self, config):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PATCH"
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"updated": 1, "notFound": 2, "promoted": 3, "deleted": 0})

        client = _client(config, handler)
        summary = client.submit_corrections([
            CorrectionRecord(message_id="a@x", original_type="other", corrected_type="offer")
        ])
        assert (summary.updated, summary.not_found, summary.promoted) == (1, 2, 3)
        client.submit_updates([ExtractedDataUpdate(message_id="a@x", extracted_data={"company": "Acme"})])

        assert bodies[0] == {
            "corrections": [{"messageId": "a@x", "originalType": "other", "correctedType": "offer"}]
        }
        assert bodies[1] == {"updates": [{"messageId": "a@x", "extractedData": {"company": "Acme"}}]}

    def test_delete_passes_message_id(self, config):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            assert request.url.params["messageId"] == "<a@x>"
            return httpx.Response(200, json={"deleted": 1})

        assert _client(config, handler).delete("<a@x>") == 1

    def test_error_status_raises(self, config):
        client = _client(config, lambda request: httpx.Response(401, json={"detail": "Invalid API key"}))
        with pytest.raises(SyncError, match="401"):
            client.submit_imports([])

    def test_requires_client_secret(self, config):
        with pytest.raises(ConfigurationError):
            SyncClient(config.model_copy(update={"jobsync_api_key": SecretStr("")}))
