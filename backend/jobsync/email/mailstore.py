"""Mail store capability: query by tag expression, read raw files, mutate tags."""

from __future__ import annotations

import json
import os
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from email.parser import BytesHeaderParser
from email.utils import getaddresses
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from jobsync.config import AppConfig
from jobsync.email.parser import decode_mime_text, strip_message_id
from jobsync.email.tagquery import QueryTarget, compile_query
from jobsync.errors import ConfigurationError, MailStoreError
from jobsync.extraction.types import CLASSIFICATION_TYPES

logger = structlog.get_logger(__name__)

# ── Tag conventions ───────────────────────────────────────
TAG_NEW = "new"
TAG_PROCESSED = "jobsync-processed"
TAG_CORRECTED = "jobsync-corrected"
CLASSIFICATION_TAG_PREFIX = "jobsync/"
WAS_TAG_PREFIX = "jobsync-was/"


def classification_tag(kind: str) -> str:
    return f"{CLASSIFICATION_TAG_PREFIX}{kind}"


def was_tag(kind: str) -> str:
    return f"{WAS_TAG_PREFIX}{kind}"


def mark_processed(store: "MailStore", message_id: str, kind: Optional[str] = None) -> None:
    """Move a message out of the new-mail query, recording its label when known."""
    add = [TAG_PROCESSED]
    if kind:
        add.append(classification_tag(kind))
    store.mutate_tags(message_id, add=add, remove=[TAG_NEW])


def build_new_mail_query(monitored_emails: Iterable[str]) -> str:
    """Unprocessed new mail sent to or from any monitored address."""
    addresses = [a for a in monitored_emails if a]
    clauses = ["tag:new"]
    if addresses:
        per_address = " OR ".join(f"(from:{a} OR to:{a})" for a in addresses)
        clauses.append(f"({per_address})")
    clauses.extend(["NOT tag:spam", "NOT tag:trash", f"NOT tag:{TAG_PROCESSED}"])
    return " AND ".join(clauses)


def build_untagged_query() -> str:
    """Processed mail that never received a ``jobsync/<type>`` tag."""
    any_label = " OR ".join(f"tag:{classification_tag(t)}" for t in CLASSIFICATION_TYPES)
    return f"tag:{TAG_PROCESSED} AND NOT ({any_label})"


@dataclass(frozen=True)
class MessageRef:
    """Handle to one message in the store; ``path`` may be resolved lazily."""

    message_id: str
    path: Optional[Path] = None


class MailStore(Protocol):
    def query(self, expression: str) -> list[MessageRef]: ...

    def read(self, ref: MessageRef) -> bytes: ...

    def tags(self, message_id: str) -> set[str]: ...

    def mutate_tags(
        self, message_id: str, add: Sequence[str] = (), remove: Sequence[str] = ()
    ) -> None: ...


# ── notmuch ───────────────────────────────────────────────


class _NotmuchFailed(MailStoreError):
    """Non-zero exit from notmuch; usually a locked database, worth retrying."""


class NotmuchMailStore:
    """Mail store backed by the ``notmuch`` command line tool."""

    def __init__(self, binary: str = "notmuch", config_path: Optional[str] = None, timeout: int = 30) -> None:
        self._binary = binary
        self._timeout = timeout
        self._env = dict(os.environ)
        if config_path:
            self._env["NOTMUCH_CONFIG"] = str(Path(config_path).expanduser())

    @retry(
        retry=retry_if_exception_type((_NotmuchFailed, subprocess.TimeoutExpired)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    def _run(self, *args: str) -> str:
        try:
            proc = subprocess.run(
                [self._binary, *args],
                capture_output=True,
                text=True,
                timeout=self._timeout,
                env=self._env,
                check=False,
            )
        except FileNotFoundError as exc:
            raise MailStoreError(f"notmuch binary not found: {self._binary}") from exc
        if proc.returncode != 0:
            raise _NotmuchFailed(
                f"notmuch {args[0]} exited {proc.returncode}: {proc.stderr.strip()[:200]}"
            )
        return proc.stdout

    def _run_json(self, *args: str) -> list:
        try:
            output = self._run(*args)
        except subprocess.TimeoutExpired as exc:
            raise MailStoreError(f"notmuch {args[0]} timed out after {self._timeout}s") from exc
        if not output.strip():
            return []
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise MailStoreError(f"notmuch {args[0]} returned invalid JSON") from exc

    def query(self, expression: str) -> list[MessageRef]:
        ids = self._run_json("search", "--format=json", "--output=messages", expression)
        logger.debug("notmuch_query", expression=expression, count=len(ids))
        return [MessageRef(message_id=strip_message_id(str(i))) for i in ids]

    def _resolve_path(self, message_id: str) -> Path:
        files = self._run_json("search", "--format=json", "--output=files", f"id:{message_id}")
        if not files:
            raise MailStoreError(f"No file for message {message_id}")
        return Path(files[0])

    def read(self, ref: MessageRef) -> bytes:
        path = ref.path or self._resolve_path(ref.message_id)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise MailStoreError(f"Cannot read {path}: {exc}") from exc

    def tags(self, message_id: str) -> set[str]:
        return set(self._run_json("search", "--format=json", "--output=tags", f"id:{message_id}"))

    def mutate_tags(
        self, message_id: str, add: Sequence[str] = (), remove: Sequence[str] = ()
    ) -> None:
        changes = [f"+{t}" for t in add] + [f"-{t}" for t in remove]
        if not changes:
            return
        try:
            self._run("tag", *changes, "--", f"id:{strip_message_id(message_id)}")
        except subprocess.TimeoutExpired as exc:
            raise MailStoreError(f"notmuch tag timed out for {message_id}") from exc
        logger.debug("notmuch_tagged", message_id=message_id, changes=" ".join(changes))


# ── File-system double ────────────────────────────────────


class MaildirMailStore:
    """Directory of ``.eml`` files with a ``tags.json`` sidecar.

    Evaluates the same tag algebra as notmuch, so the pipeline can run in
    tests and offline without a real mail index.
    """

    TAGS_FILE = "tags.json"

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._tags: dict[str, list[str]] = self._load_tags()

    @property
    def root(self) -> Path:
        return self._root

    def _load_tags(self) -> dict[str, list[str]]:
        path = self._root / self.TAGS_FILE
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def _save_tags(self) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tags-", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(self._tags, handle, indent=2, sort_keys=True)
        os.replace(tmp_name, self._root / self.TAGS_FILE)

    def _index(self) -> dict[str, tuple[QueryTarget, Path]]:
        """Map message id to ``(target, path)`` for every stored file."""
        parser = BytesHeaderParser()
        entries: dict[str, tuple[QueryTarget, Path]] = {}
        for path in sorted(self._root.rglob("*.eml")):
            with path.open("rb") as handle:
                headers = parser.parse(handle)
            message_id = strip_message_id(decode_mime_text(headers.get("Message-ID", "")))
            if not message_id:
                message_id = f"local-{path.name}@jobsync"
            to_addrs = getaddresses([decode_mime_text(v) for v in headers.get_all("To", [])])
            target = QueryTarget(
                message_id=message_id,
                tags=frozenset(self._tags.get(message_id, [])),
                from_header=decode_mime_text(headers.get("From", "")),
                to_header=", ".join(f"{n} <{a}>" for n, a in to_addrs),
                subject=decode_mime_text(headers.get("Subject", "")),
            )
            entries[message_id] = (target, path)
        return entries

    def add_message(self, raw: bytes, filename: str, tags: Iterable[str] = (TAG_NEW,)) -> MessageRef:
        """Store a raw message and give it initial tags (delivery)."""
        path = self._root / filename
        path.write_bytes(raw)
        headers = BytesHeaderParser().parsebytes(raw)
        message_id = strip_message_id(decode_mime_text(headers.get("Message-ID", "")))
        if not message_id:
            message_id = f"local-{path.name}@jobsync"
        with self._lock:
            self._tags[message_id] = sorted(set(self._tags.get(message_id, [])) | set(tags))
            self._save_tags()
        return MessageRef(message_id=message_id, path=path)

    def query(self, expression: str) -> list[MessageRef]:
        matcher = compile_query(expression)
        with self._lock:
            index = self._index()
        return [
            MessageRef(message_id=mid, path=path)
            for mid, (target, path) in index.items()
            if matcher(target)
        ]

    def read(self, ref: MessageRef) -> bytes:
        path = ref.path
        if path is None:
            with self._lock:
                entry = self._index().get(ref.message_id)
            if entry is None:
                raise MailStoreError(f"No file for message {ref.message_id}")
            path = entry[1]
        try:
            return path.read_bytes()
        except OSError as exc:
            raise MailStoreError(f"Cannot read {path}: {exc}") from exc

    def tags(self, message_id: str) -> set[str]:
        with self._lock:
            return set(self._tags.get(strip_message_id(message_id), []))

    def mutate_tags(
        self, message_id: str, add: Sequence[str] = (), remove: Sequence[str] = ()
    ) -> None:
        key = strip_message_id(message_id)
        with self._lock:
            current = set(self._tags.get(key, []))
            current = (current | set(add)) - set(remove)
            self._tags[key] = sorted(current)
            self._save_tags()


def create_mail_store(config: AppConfig) -> MailStore:
    """Instantiate the configured mail store."""
    kind = config.mail_store.lower()
    if kind == "notmuch":
        return NotmuchMailStore(config.notmuch_bin, config.notmuch_config)
    if kind == "maildir":
        if not config.maildir_path:
            raise ConfigurationError("MAILDIR_PATH is required when MAIL_STORE=maildir")
        return MaildirMailStore(config.maildir_path)
    raise ConfigurationError(f"Unknown mail store: {config.mail_store!r}")
