"""Tests for the command-line entry points."""

from __future__ import annotations

import pytest

from jobsync.cli import build_parser, main
from jobsync.email.mailstore import MaildirMailStore

from conftest import make_raw_email


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("MAIL_STORE", "maildir")
    monkeypatch.setenv("MAILDIR_PATH", str(tmp_path / "mail"))
    monkeypatch.setenv("JOBSYNC_DIR", str(tmp_path / "jobsync"))
    monkeypatch.setenv("LLM_ENABLED", "false")
    monkeypatch.delenv("MONITORED_EMAILS", raising=False)
    monkeypatch.delenv("JOBSYNC_API_KEY", raising=False)
    env_file = tmp_path / "config"
    env_file.write_text("")
    return env_file


class TestParser:
    def test_backfill_flags(self):
        args = build_parser().parse_args(["backfill-metadata", "--dry-run", "--limit", "5"])
        assert args.dry_run is True
        assert args.limit == 5
        assert args.llm is False
        assert args.log_name == "backfill"

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    def test_local_sync_requires_monitored_emails(self, env, capsys):
        assert main(["--env-file", str(env), "local-sync"]) == 1
        assert "MONITORED_EMAILS" in capsys.readouterr().err

    def test_scan_corrections_requires_client_key(self, env, capsys):
        assert main(["--env-file", str(env), "scan-corrections"]) == 1
        assert "JOBSYNC_API_KEY" in capsys.readouterr().err

    def test_backfill_dry_run_needs_no_key(self, env, tmp_path, capsys):
        store = MaildirMailStore(tmp_path / "mail")
        store.add_message(
            make_raw_email(subject="Thank you for applying to Acme Corp!"),
            "1.eml",
            tags=("jobsync/job_response",),
        )

        assert main(["--env-file", str(env), "backfill-metadata", "--dry-run"]) == 0
        out = capsys.readouterr().out
        assert "scanned=1 extracted=1" in out
        assert "dry run" in out

    def test_invalid_setting(self, env, monkeypatch, capsys):
        monkeypatch.setenv("CONFIDENCE_THRESHOLD", "2")
        assert main(["--env-file", str(env), "backfill-tags"]) == 1
        assert "Configuration error" in capsys.readouterr().err
