"""Tests for the bounded few-shot correction pool."""

from __future__ import annotations

from jobsync.corrections.store import BODY_PREVIEW_CHARS, Correction, CorrectionStore


def _correction(idx: int, *, high_variance: bool = True) -> Correction:
    return Correction(
        message_id=f"m{idx}@x",
        original_type="other",
        corrected_type="interview",
        subject=f"Subject {idx}",
        from_email="jane@startup.io",
        high_variance=high_variance,
    )


class TestCorrectionStore:
    def test_only_high_variance_is_pooled(self, tmp_path):
        store = CorrectionStore(tmp_path / "corrections.json")
        assert store.record(_correction(1, high_variance=False)) is False
        assert store.record(_correction(2)) is True
        assert [c.message_id for c in store.all()] == ["m2@x"]

    def test_cap_evicts_oldest(self, tmp_path):
        store = CorrectionStore(tmp_path / "corrections.json", cap=50)
        for idx in range(51):
            store.record(_correction(idx), persist=False)
        assert len(store) == 50
        assert store.all()[0].message_id == "m1@x"
        assert store.all()[-1].message_id == "m50@x"

    def test_recent_examples_newest_n(self, tmp_path):
        store = CorrectionStore(tmp_path / "corrections.json")
        for idx in range(8):
            store.record(_correction(idx), persist=False)
        assert [c.message_id for c in store.recent_examples(3)] == ["m5@x", "m6@x", "m7@x"]
        assert store.recent_examples(0) == []

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "corrections.json"
        store = CorrectionStore(path)
        store.record(_correction(1))
        store.mark_scanned()

        reloaded = CorrectionStore(path)
        assert len(reloaded) == 1
        assert reloaded.all()[0].corrected_type == "interview"
        assert reloaded.last_scan is not None

    def test_missing_or_empty_file_is_empty_pool(self, tmp_path):
        path = tmp_path / "corrections.json"
        assert len(CorrectionStore(path)) == 0
        path.write_text("  ")
        assert len(CorrectionStore(path)) == 0

    def test_unsaved_records_are_not_on_disk(self, tmp_path):
        path = tmp_path / "corrections.json"
        store = CorrectionStore(path)
        store.record(_correction(1), persist=False)
        assert not path.exists()
        store.save()
        assert len(CorrectionStore(path)) == 1

    def test_body_preview_truncated(self):
        c = Correction(message_id="x", original_type="other", corrected_type="offer", body_preview="a" * 5000)
        assert len(c.body_preview) == BODY_PREVIEW_CHARS
        assert c.direction == "RECEIVED"
