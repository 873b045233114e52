"""Exception types shared across the pipeline."""

from __future__ import annotations


class JobSyncError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(JobSyncError):
    """A required setting (shared secret, API credential) is missing or invalid.

    Entry points treat this as fatal and exit before doing any work.
    """


class MailStoreError(JobSyncError):
    """The mail store query, tag mutation or file read failed."""


class EmailParseError(JobSyncError):
    """A raw message could not be parsed into a normalized record."""


class LLMError(JobSyncError):
    """Transport or protocol failure talking to the language model."""


class SyncError(JobSyncError):
    """The remote ingestion endpoint rejected or failed a request."""


class InvalidTransition(JobSyncError):
    """A reviewer action is not allowed from the import's current status."""

    def __init__(self, message_id: str, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} import {message_id!r} in status {current!r}")
        self.message_id = message_id
        self.current = current
        self.action = action
