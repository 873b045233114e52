"""Tests for turning mail-store relabels into replayed corrections."""

from __future__ import annotations

import pytest

from jobsync.corrections.scanner import CorrectionScanner
from jobsync.corrections.store import CorrectionStore
from jobsync.email.mailstore import TAG_CORRECTED, TAG_PROCESSED, MaildirMailStore
from jobsync.errors import SyncError
from jobsync.models import StagedImport
from jobsync.schemas import ImportRecord
from jobsync.staging.protocol import CorrectionSummary, StagingService
from jobsync.staging.sink import LocalStagingSink

from conftest import make_raw_email


class FailingSink:
    def submit_corrections(self, corrections):
        raise SyncError("HTTP 502")


class PartialSink:
    """Applies the batch but reports the named corrections as failed."""

    def __init__(self, *failing: str) -> None:
        self._failing = set(failing)

    def submit_corrections(self, corrections):
        failed = [c.message_id for c in corrections if c.message_id in self._failing]
        return CorrectionSummary(
            promoted=len(corrections) - len(failed),
            errors=[f"{m}: database is locked" for m in failed],
            failed_ids=failed,
        )


@pytest.fixture
def mail(config):
    return MaildirMailStore(config.maildir_path)


@pytest.fixture
def pool(config):
    return CorrectionStore(config.corrections_path)


def _deliver(mail, name, subject, tags, from_addr="Acme Careers <careers@acme.io>"):
    raw = make_raw_email(subject=subject, from_addr=from_addr, message_id=f"<{name}@test>")
    mail.add_message(raw, f"{name}.eml", tags=tags)


def _stage(session_factory, message_id, classification):
    with session_factory() as session:
        StagingService(session).create_imports([
            ImportRecord(message_id=message_id, subject="s", classification=classification, confidence=0.9)
        ])


def _row(session_factory, message_id):
    with session_factory() as session:
        return session.query(StagedImport).filter_by(message_id=message_id).one_or_none()


class TestCorrectionScanner:
    def test_promotion_stages_message_and_pools_it(self, config, mail, pool, session_factory):
        _deliver(
            mail,
            "chat",
            "Quick question about Tuesday",
            [TAG_PROCESSED, "jobsync-was/other", "jobsync/interview"],
            from_addr="Jane Doe <jane@startup.io>",
        )
        scanner = CorrectionScanner(config, pool, mail, LocalStagingSink(session_factory))

        summary = scanner.scan()

        assert (summary.found, summary.corrections, summary.promoted) == (1, 1, 1)
        assert summary.high_variance == 1
        row = _row(session_factory, "chat@test")
        assert row.classification == "interview"
        assert row.confidence == 1.0
        assert row.classification_source == "manual"
        assert row.subject == "Quick question about Tuesday"
        assert mail.tags("chat@test") == {TAG_PROCESSED, "jobsync/interview"}

        reloaded = CorrectionStore(config.corrections_path)
        assert [c.message_id for c in reloaded.all()] == ["chat@test"]
        assert reloaded.last_scan is not None

    def test_demotion_deletes_and_rule_caught_is_not_pooled(self, config, mail, pool, session_factory):
        _stage(session_factory, "confirm@test", "job_response")
        _deliver(mail, "confirm", "Thank you for applying to Acme", ["jobsync-was/job_response", "jobsync/other"])

        summary = CorrectionScanner(config, pool, mail, LocalStagingSink(session_factory)).scan()

        assert summary.deleted == 1
        assert summary.high_variance == 0
        assert len(pool) == 0
        assert _row(session_factory, "confirm@test") is None

    def test_relabel_between_job_types(self, config, mail, pool, session_factory):
        _stage(session_factory, "iv@test", "interview")
        _deliver(mail, "iv", "Interview Invitation: Backend Engineer", ["jobsync-was/interview", "jobsync/rejection"])

        summary = CorrectionScanner(config, pool, mail, LocalStagingSink(session_factory)).scan()

        assert summary.relabelled == 1
        assert _row(session_factory, "iv@test").classification == "rejection"

    def test_corrected_tag_without_origin_is_skipped(self, config, mail, pool, session_factory):
        _deliver(mail, "odd", "Hello", [TAG_CORRECTED, "jobsync/offer"])

        summary = CorrectionScanner(config, pool, mail, LocalStagingSink(session_factory)).scan()

        assert summary.found == 1
        assert summary.skipped == 1
        assert summary.corrections == 0
        assert TAG_CORRECTED in mail.tags("odd@test")

    def test_unchanged_label_is_skipped(self, config, mail, pool, session_factory):
        _deliver(mail, "same", "Hello", ["jobsync-was/offer", "jobsync/offer"])
        summary = CorrectionScanner(config, pool, mail, LocalStagingSink(session_factory)).scan()
        assert summary.skipped == 1

    def test_failed_submit_keeps_tags_for_next_scan(self, config, mail, pool):
        _deliver(
            mail,
            "chat",
            "Quick question about Tuesday",
            ["jobsync-was/other", "jobsync/interview"],
            from_addr="Jane Doe <jane@startup.io>",
        )

        summary = CorrectionScanner(config, pool, mail, FailingSink()).scan()

        assert summary.errors == ["submit: HTTP 502"]
        assert summary.corrections == 0
        assert len(pool) == 0
        assert "jobsync-was/other" in mail.tags("chat@test")

    def test_correction_the_sink_failed_is_replayed_not_pooled(self, config, mail, pool):
        _deliver(
            mail,
            "chat",
            "Quick question about Tuesday",
            ["jobsync-was/other", "jobsync/interview"],
            from_addr="Jane Doe <jane@startup.io>",
        )
        _deliver(
            mail,
            "coffee",
            "Coffee next week?",
            ["jobsync-was/other", "jobsync/offer"],
            from_addr="Sam Lee <sam@startup.io>",
        )

        summary = CorrectionScanner(config, pool, mail, PartialSink("chat@test")).scan()

        assert summary.corrections == 1
        assert summary.errors == ["chat@test: database is locked"]
        assert [c.message_id for c in pool.all()] == ["coffee@test"]
        assert "jobsync-was/other" in mail.tags("chat@test")
        assert "jobsync-was/other" not in mail.tags("coffee@test")

    def test_several_original_labels_are_left_for_the_reviewer(self, config, mail, pool, session_factory):
        _deliver(mail, "twice", "Hello", ["jobsync-was/interview", "jobsync-was/rejection", "jobsync/offer"])

        summary = CorrectionScanner(config, pool, mail, LocalStagingSink(session_factory)).scan()

        assert summary.skipped == 1
        assert summary.corrections == 0
        assert summary.errors == ["twice@test: several original labels interview, rejection"]
        assert {"jobsync-was/interview", "jobsync-was/rejection"} <= mail.tags("twice@test")
