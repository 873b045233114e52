"""Email MIME parsing into an immutable normalized record."""

from __future__ import annotations

import email as email_lib
from dataclasses import dataclass
from datetime import datetime, timezone
from email import policy
from email.header import decode_header, make_header
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import Iterable, List, Optional

import structlog
from bs4 import BeautifulSoup

from jobsync.errors import EmailParseError

logger = structlog.get_logger(__name__)

NO_SUBJECT = "(No subject)"


@dataclass(frozen=True)
class NormalizedMessage:
    """Snapshot of one email, created once per parse and never mutated."""

    message_id: str
    subject: str
    from_email: str
    from_name: str
    to_email: str
    date: datetime
    text_body: str
    html_body: Optional[str] = None
    is_outbound: bool = False

    @property
    def best_text(self) -> str:
        """Plain-text body, falling back to the HTML part rendered as text."""
        if self.text_body.strip():
            return self.text_body
        if self.html_body:
            return html_to_text(self.html_body)
        return ""

    @property
    def direction(self) -> str:
        return "SENT" if self.is_outbound else "RECEIVED"

    @property
    def sender(self) -> str:
        if self.from_name:
            return f"{self.from_name} <{self.from_email}>"
        return self.from_email


# ── MIME helpers ──────────────────────────────────────────


def strip_message_id(value: str) -> str:
    """Remove surrounding angle brackets and whitespace from a Message-ID."""
    return (value or "").strip().strip("<>").strip()


def decode_mime_text(value: Optional[str]) -> str:
    """Decode a MIME-encoded header value to a plain string."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(str(value)))).strip()
    except (UnicodeDecodeError, LookupError, ValueError):
        return str(value).strip()


def parse_date(date_raw: str) -> Optional[datetime]:
    """Parse a raw email date into a timezone-aware UTC datetime, or None."""
    if not date_raw:
        return None
    try:
        dt = parsedate_to_datetime(date_raw)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def html_to_text(html: str) -> str:
    """Strip HTML tags and return readable text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def extract_bodies(msg: Message) -> tuple[str, Optional[str]]:
    """Return ``(text_body, html_body)`` ignoring attachments."""
    plain_parts: List[str] = []
    html_parts: List[str] = []

    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        cdisp = str(part.get("Content-Disposition", "")).lower()
        if "attachment" in cdisp:
            continue
        ctype = part.get_content_type()
        if ctype == "text/plain":
            plain_parts.append(_decode_part(part))
        elif ctype == "text/html":
            html_parts.append(_decode_part(part))

    html_body = "\n".join(html_parts) if html_parts else None
    return "\n".join(plain_parts), html_body


def is_monitored_address(address: str, monitored: Iterable[str]) -> bool:
    """Case-insensitive exact match of *address* against the monitored list."""
    lowered = (address or "").strip().lower()
    return bool(lowered) and lowered in {m.strip().lower() for m in monitored}


# ── Top-level parser ─────────────────────────────────────


def parse_email_bytes(
    raw: bytes,
    *,
    filename: Optional[str] = None,
    monitored_emails: Iterable[str] = (),
) -> NormalizedMessage:
    """Parse raw RFC 822 bytes into a ``NormalizedMessage``.

    Args:
        raw: The message file content.
        filename: Source file name, used to build a stable identifier when
            the message carries no Message-ID header.
        monitored_emails: The user's own addresses; decides ``is_outbound``.

    Raises:
        EmailParseError: The bytes are empty or carry no usable headers.
    """
    if not raw or not raw.strip():
        raise EmailParseError(f"Empty message: {filename or '<bytes>'}")

    try:
        msg = email_lib.message_from_bytes(raw, policy=policy.compat32)
    except (TypeError, ValueError) as exc:
        raise EmailParseError(f"Unparseable message {filename or '<bytes>'}: {exc}") from exc

    if not msg.keys():
        raise EmailParseError(f"Message has no headers: {filename or '<bytes>'}")

    message_id = strip_message_id(decode_mime_text(msg.get("Message-ID") or msg.get("Message-Id")))
    if not message_id:
        stem = Path(filename).name if filename else "unknown"
        message_id = f"local-{stem}@jobsync"

    from_name, from_email = parseaddr(decode_mime_text(msg.get("From", "")))
    to_pairs = getaddresses([decode_mime_text(v) for v in msg.get_all("To", [])])
    to_email = ", ".join(addr for _, addr in to_pairs if addr)

    text_body, html_body = extract_bodies(msg)
    date = parse_date(decode_mime_text(msg.get("Date", ""))) or datetime.now(timezone.utc)

    return NormalizedMessage(
        message_id=message_id,
        subject=decode_mime_text(msg.get("Subject", "")) or NO_SUBJECT,
        from_email=from_email.strip(),
        from_name=from_name.strip(),
        to_email=to_email,
        date=date,
        text_body=text_body,
        html_body=html_body,
        is_outbound=is_monitored_address(from_email, monitored_emails),
    )


def parse_email_file(path: Path | str, monitored_emails: Iterable[str] = ()) -> NormalizedMessage:
    """Read and parse a message file from disk."""
    path = Path(path)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise EmailParseError(f"Cannot read {path}: {exc}") from exc
    return parse_email_bytes(raw, filename=path.name, monitored_emails=monitored_emails)
