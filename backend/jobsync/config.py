"""Pipeline configuration with Pydantic Settings validation."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobsync.errors import ConfigurationError

_DEFAULT_JOBSYNC_DIR = Path.home() / ".jobsync"


class AppConfig(BaseSettings):
    """All pipeline settings, loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=("../.env", ".env", str(_DEFAULT_JOBSYNC_DIR / "config")),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Mailboxes ─────────────────────────────────────────
    monitored_emails: str = ""

    # ── Classification policy ─────────────────────────────
    confidence_threshold: float = 0.6
    jobsync_concurrency: int = 4
    few_shot_examples: int = 5
    correction_pool_cap: int = 50
    prompt_body_chars: int = 3000

    # ── LLM ───────────────────────────────────────────────
    llm_enabled: bool = True
    llm_provider: str = "ollama"  # ollama | openai
    # OLLAMA_BASE_URL / OLLAMA_MODEL are accepted for the local runtime
    llm_base_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("llm_base_url", "ollama_base_url")
    )
    llm_model: str = Field(
        "llama3.2", validation_alias=AliasChoices("llm_model", "ollama_model")
    )
    llm_api_key: SecretStr = SecretStr("")
    llm_timeout_sec: int = 60
    llm_temperature: float = 0.1
    llm_max_tokens: int = 400

    # ── Ingestion endpoint (server side) ──────────────────
    email_sync_api_key: SecretStr = SecretStr("")

    # ── Sync client (agent side) ──────────────────────────
    jobsync_api_url: str = "http://localhost:3000/api/email-sync"
    jobsync_api_key: SecretStr = SecretStr("")
    sync_timeout_sec: int = 30

    # ── Database ──────────────────────────────────────────
    database_url: str = "sqlite:///jobsync.db"

    # ── Mail store ────────────────────────────────────────
    mail_store: str = "notmuch"  # notmuch | maildir
    notmuch_bin: str = "notmuch"
    notmuch_config: Optional[str] = None
    maildir_path: Optional[str] = None

    # ── Local state ───────────────────────────────────────
    jobsync_dir: Path = _DEFAULT_JOBSYNC_DIR
    corrections_path: Optional[Path] = None
    gazetteer_path: Optional[Path] = None

    # ── Server ────────────────────────────────────────────
    host: str = "0.0.0.0"
    port: int = 8000

    # ── Logging ───────────────────────────────────────────
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # ── Validators ────────────────────────────────────────
    @field_validator("llm_enabled", mode="before")
    @classmethod
    def parse_bool(cls, v: object) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in {"1", "true", "yes", "on"}
        return bool(v)

    @field_validator("confidence_threshold")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1")
        return v

    @field_validator("jobsync_concurrency", "few_shot_examples", "correction_pool_cap")
    @classmethod
    def check_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def _resolve_corrections_path(self) -> "AppConfig":
        """Default the corrections log to live inside ``jobsync_dir``."""
        if self.corrections_path is None:
            self.corrections_path = self.jobsync_dir / "corrections.json"
        return self

    @property
    def monitored_emails_list(self) -> list[str]:
        return [e.strip().lower() for e in self.monitored_emails.split(",") if e.strip()]

    # ── Required secrets ──────────────────────────────────

    def require_server_secret(self) -> str:
        secret = self.email_sync_api_key.get_secret_value()
        if not secret:
            raise ConfigurationError("EMAIL_SYNC_API_KEY is not configured")
        return secret

    def require_client_secret(self) -> str:
        secret = self.jobsync_api_key.get_secret_value()
        if not secret:
            raise ConfigurationError(
                f"JOBSYNC_API_KEY is not set (add it to {self.jobsync_dir / 'config'})"
            )
        return secret

    def require_llm_credentials(self) -> None:
        """The hosted provider cannot run without a key; local Ollama needs none."""
        if (
            self.llm_enabled
            and self.llm_provider.lower() == "openai"
            and not self.llm_api_key.get_secret_value()
        ):
            raise ConfigurationError("LLM_API_KEY is required for the openai provider")


def get_config() -> AppConfig:
    """Load and return validated application config (also the FastAPI dependency)."""
    return AppConfig()
