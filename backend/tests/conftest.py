"""Shared fixtures: config, in-memory database, message builders and a stub model."""

from __future__ import annotations

from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from jobsync.config import AppConfig
from jobsync.email.parser import NormalizedMessage
from jobsync.models import Base

MONITORED = "me@example.com"


def make_raw_email(
    *,
    subject: str,
    from_addr: str = "Acme Careers <careers@acme.io>",
    to_addr: str = MONITORED,
    body: str = "",
    html: Optional[str] = None,
    message_id: Optional[str] = "<abc123@acme.io>",
    date: str = "Mon, 06 Jan 2025 09:00:00 +0000",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    msg["Date"] = date
    if message_id:
        msg["Message-ID"] = message_id
    msg.set_content(body or " ")
    if html:
        msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


def make_message(
    subject: str = "Hello",
    *,
    from_email: str = "careers@acme.io",
    from_name: str = "Acme Careers",
    to_email: str = MONITORED,
    text_body: str = "",
    html_body: Optional[str] = None,
    message_id: str = "abc123@acme.io",
    is_outbound: bool = False,
) -> NormalizedMessage:
    return NormalizedMessage(
        message_id=message_id,
        subject=subject,
        from_email=from_email,
        from_name=from_name,
        to_email=to_email,
        date=datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc),
        text_body=text_body,
        html_body=html_body,
        is_outbound=is_outbound,
    )


class StubProvider:
    """LLM provider that returns canned replies and records its prompts."""

    def __init__(self, *replies: str, error: Optional[Exception] = None) -> None:
        self._replies = list(replies)
        self._error = error
        self.prompts: list[str] = []
        self.systems: list[Optional[str]] = []

    def generate(self, prompt: str, *, system: Optional[str] = None, max_tokens: Optional[int] = None) -> str:
        self.prompts.append(prompt)
        self.systems.append(system)
        if self._error is not None:
            raise self._error
        if len(self._replies) > 1:
            return self._replies.pop(0)
        return self._replies[0] if self._replies else ""


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        _env_file=None,
        monitored_emails=MONITORED,
        llm_enabled=False,
        mail_store="maildir",
        maildir_path=str(tmp_path / "mail"),
        jobsync_dir=tmp_path / "jobsync",
        database_url=f"sqlite:///{tmp_path / 'jobsync.db'}",
        email_sync_api_key="server-secret",
        jobsync_api_key="client-secret",
        jobsync_api_url="http://jobsync.test/api/email-sync",
        jobsync_concurrency=2,
        log_file=None,
    )


@pytest.fixture
def session_factory():
    """In-memory SQLite shared by every session (and thread) of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()
