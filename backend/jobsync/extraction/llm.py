"""LLM fallback classification and extraction with provider abstraction."""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Optional, Protocol, Sequence

import httpx
import structlog
from openai import OpenAI

from jobsync.config import AppConfig
from jobsync.corrections.store import Correction
from jobsync.email.parser import NormalizedMessage
from jobsync.errors import LLMError
from jobsync.extraction.types import (
    CLASSIFICATION_TYPES,
    ClassificationResult,
    ClassificationType,
    ExtractedData,
)

logger = structlog.get_logger(__name__)

DEFAULT_BODY_CHARS = 3000
DEFAULT_CONFIDENCE = 0.5
FEW_SHOT_PREVIEW_CHARS = 500
EXTRACTION_MAX_TOKENS = 200
TRUNCATION_MARKER = "\n[... truncated ...]"
OLLAMA_DEFAULT_URL = "http://localhost:11434"


class LLMProvider(Protocol):
    """A single synchronous text generation call biased towards JSON output."""

    def generate(
        self, prompt: str, *, system: Optional[str] = None, max_tokens: Optional[int] = None
    ) -> str: ...


# ── Ollama Provider ───────────────────────────────────────


class OllamaProvider:
    """Local Ollama runtime reached over its ``/api/generate`` endpoint."""

    def __init__(self, config: AppConfig, client: Optional[httpx.Client] = None) -> None:
        self._config = config
        self._client = client or httpx.Client(
            base_url=config.llm_base_url or OLLAMA_DEFAULT_URL,
            timeout=config.llm_timeout_sec,
        )

    def generate(
        self, prompt: str, *, system: Optional[str] = None, max_tokens: Optional[int] = None
    ) -> str:
        cfg = self._config
        payload: dict[str, Any] = {
            "model": cfg.llm_model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": cfg.llm_temperature,
                "num_predict": max_tokens or cfg.llm_max_tokens,
            },
        }
        if system:
            payload["system"] = system

        resp = self._client.post("/api/generate", json=payload)
        if resp.status_code >= 400:
            raise LLMError(f"Ollama returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise LLMError("Ollama returned a non-JSON envelope") from exc
        return str(body.get("response", ""))

    def close(self) -> None:
        self._client.close()


# ── OpenAI Provider ───────────────────────────────────────


class OpenAIProvider:
    """OpenAI (or any OpenAI-compatible endpoint) chat completions."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config
        self._client = OpenAI(
            api_key=config.llm_api_key.get_secret_value(),
            base_url=config.llm_base_url or None,
            timeout=config.llm_timeout_sec,
            max_retries=0,  # Failed messages are retried on the next batch
        )

    def generate(
        self, prompt: str, *, system: Optional[str] = None, max_tokens: Optional[int] = None
    ) -> str:
        cfg = self._config
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        resp = self._client.chat.completions.create(
            model=cfg.llm_model,
            timeout=cfg.llm_timeout_sec,
            temperature=0,
            max_tokens=max_tokens or cfg.llm_max_tokens,
            response_format={"type": "json_object"},
            messages=messages,
        )
        return (resp.choices[0].message.content or "").strip()

    def close(self) -> None:
        self._client.close()


# ── Factory ───────────────────────────────────────────────

_PROVIDERS: dict[str, type] = {
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
}


def create_llm_provider(config: AppConfig) -> LLMProvider:
    """Instantiate the configured LLM provider."""
    provider_cls = _PROVIDERS.get(config.llm_provider.lower())
    if provider_cls is None:
        raise ValueError(
            f"Unknown LLM provider: {config.llm_provider!r}. "
            f"Available: {', '.join(_PROVIDERS)}"
        )
    return provider_cls(config)


# ── Hard-timeout wrapper ──────────────────────────────────


def generate_with_timeout(
    provider: LLMProvider,
    prompt: str,
    *,
    system: Optional[str] = None,
    max_tokens: Optional[int] = None,
    timeout_sec: int = 60,
) -> str:
    """Call the provider with a hard thread-based timeout.

    The HTTP client timeouts bound each socket operation, not the whole
    request, so a slow-drip response could otherwise stall a worker.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(provider.generate, prompt, system=system, max_tokens=max_tokens)
    try:
        return future.result(timeout=timeout_sec)
    except FuturesTimeoutError:
        future.cancel()
        raise LLMError(f"LLM hard-timeout after {timeout_sec}s")
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


# ── Prompts ───────────────────────────────────────────────

CLASSIFICATION_SYSTEM_PROMPT = (
    "You are an email classifier for a job seeker's mailbox. Decide which part of a job "
    "search an email belongs to and extract the job details it mentions.\n\n"
    "Classify into exactly one type:\n"
    "- job_application: the user SENT an application or a message applying for a role\n"
    "- job_response: an employer or job board confirms an application was received\n"
    "- interview: an invitation to interview, phone screen, assessment or scheduling request\n"
    "- rejection: the application was unsuccessful or the role is no longer available\n"
    "- offer: a job offer or offer letter\n"
    "- follow_up: reminders, next steps, status updates that are neither rejection nor interview\n"
    "- other: anything not about the user's own job applications\n\n"
    "Guidance:\n"
    "- Job alert digests, recommended jobs, newsletters, marketing, webinars and account "
    "notifications are 'other' even when they mention jobs.\n"
    "- A polite 'thank you for your interest' that says the user was not selected is 'rejection'.\n"
    "- Emails the user sent (Direction: SENT) applying for a role are 'job_application'.\n"
    "- company is the employer, never the job board or ATS vendor (SEEK, LinkedIn, Workday, "
    "Greenhouse).\n\n"
    "Respond ONLY with a JSON object:\n"
    '{"type": "<one of the types>", "confidence": <0.0-1.0>, "reasoning": "<short>", '
    '"extractedData": {"company": null, "jobTitle": null, "location": null, '
    '"applicationUrl": null, "recruiterName": null, "salaryRange": null}}\n'
    "Use null for anything not stated in the email."
)

EXTRACTION_SYSTEM_PROMPT = (
    "You extract job application details from emails. Respond ONLY with valid JSON."
)


def truncate_body(body: str, limit: int = DEFAULT_BODY_CHARS) -> str:
    text = body or ""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def build_few_shot_block(examples: Sequence[Correction]) -> str:
    """Render corrections as worked examples, or "" when there are none."""
    if not examples:
        return ""
    lines = ["Here are some examples of previous corrections to learn from:", ""]
    for idx, ex in enumerate(examples, start=1):
        lines.extend([
            f'Example {idx} (CORRECTED - was "{ex.original_type}", should be "{ex.corrected_type}"):',
            f"Subject: {ex.subject}",
            f"From: {ex.from_email}",
            f"Direction: {ex.direction}",
            f"Body preview: {ex.body_preview[:FEW_SHOT_PREVIEW_CHARS]}",
            f"CORRECT classification: {ex.corrected_type}",
            "",
        ])
    lines.append("Now classify the following email:")
    lines.append("")
    return "\n".join(lines)


def build_classification_prompt(
    message: NormalizedMessage,
    examples: Sequence[Correction] = (),
    body_chars: int = DEFAULT_BODY_CHARS,
) -> tuple[str, str]:
    """Return ``(system, user)`` prompts for classifying *message*."""
    user = (
        f"{build_few_shot_block(examples)}"
        f"Direction: {message.direction}\n"
        f"From: {message.sender}\n"
        f"To: {message.to_email}\n"
        f"Subject: {message.subject}\n"
        f"Date: {message.date.isoformat()}\n\n"
        f"Body:\n{truncate_body(message.best_text, body_chars)}"
    )
    return CLASSIFICATION_SYSTEM_PROMPT, user


def build_extraction_prompt(
    message: NormalizedMessage, body_chars: int = DEFAULT_BODY_CHARS
) -> tuple[str, str]:
    """Return ``(system, user)`` prompts for extracting job fields from *message*."""
    user = (
        "Extract job application details from this email.\n\n"
        f"From: {message.sender}\n"
        f"Subject: {message.subject}\n\n"
        f"Body:\n{truncate_body(message.best_text, body_chars)}\n\n"
        "Extract these fields (use null if not found):\n"
        "- company: The company name (employer, not job board)\n"
        "- jobTitle: The specific job title/position\n"
        "- location: City or location mentioned\n"
        "- source: Job board used (SEEK, LinkedIn, Indeed, etc.) or null\n"
        "- jobType: One of: full-time, part-time, contract, casual, temporary, "
        "internship, graduate, or null\n\n"
        "Respond ONLY with JSON:\n"
        '{"company":"...","jobTitle":"...","location":"...","source":"...","jobType":"..."}'
    )
    return EXTRACTION_SYSTEM_PROMPT, user


# ── Response parsing ──────────────────────────────────────


def find_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` span in *text*, ignoring braces in strings."""
    start = (text or "").find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:pos + 1]
    return None


def parse_json_object(text: str) -> Optional[dict[str, Any]]:
    """Decode the first JSON object embedded in a model reply, or None."""
    span = find_json_object(text)
    if span is None:
        return None
    try:
        parsed = json.loads(span)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _coerce_confidence(value: object) -> float:
    if value is None or isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    try:
        confidence = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return min(max(confidence, 0.0), 1.0)


def parse_classification_response(text: str) -> Optional[ClassificationResult]:
    """Turn a raw model reply into a result; None when it is not usable."""
    parsed = parse_json_object(text)
    if parsed is None:
        logger.warning("llm_unparseable_response", preview=(text or "")[:120])
        return None

    kind = ClassificationType.parse(parsed.get("type") or parsed.get("classification"))
    if kind is None:
        logger.warning(
            "llm_unknown_label",
            label=str(parsed.get("type"))[:40],
            allowed=",".join(CLASSIFICATION_TYPES),
        )
        return None

    extracted = parsed.get("extractedData") or parsed.get("extracted_data")
    return ClassificationResult(
        type=kind,
        confidence=_coerce_confidence(parsed.get("confidence")),
        source="llm",
        reason=str(parsed.get("reasoning") or parsed.get("reason") or ""),
        extracted_data=ExtractedData.from_dict(extracted if isinstance(extracted, dict) else None),
    )


# ── Entry points ──────────────────────────────────────────


def classify_with_model(
    provider: LLMProvider,
    message: NormalizedMessage,
    examples: Sequence[Correction] = (),
    *,
    body_chars: int = DEFAULT_BODY_CHARS,
    timeout_sec: int = 60,
) -> Optional[ClassificationResult]:
    """Classify *message* with the model. Any failure returns None, never "other"."""
    system, user = build_classification_prompt(message, examples, body_chars)
    try:
        raw = generate_with_timeout(provider, user, system=system, timeout_sec=timeout_sec)
    except Exception as exc:
        logger.warning("llm_classification_failed", message_id=message.message_id, error=str(exc))
        return None

    result = parse_classification_response(raw)
    if result is not None:
        logger.debug(
            "llm_classified",
            message_id=message.message_id,
            type=result.type.value,
            confidence=result.confidence,
            few_shot=len(examples),
        )
    return result


def extract_with_model(
    provider: LLMProvider,
    message: NormalizedMessage,
    *,
    body_chars: int = DEFAULT_BODY_CHARS,
    timeout_sec: int = 60,
) -> Optional[ExtractedData]:
    """Ask the model for job fields. Any failure returns None."""
    system, user = build_extraction_prompt(message, body_chars)
    try:
        raw = generate_with_timeout(
            provider, user, system=system, max_tokens=EXTRACTION_MAX_TOKENS, timeout_sec=timeout_sec
        )
    except Exception as exc:
        logger.warning("llm_extraction_failed", message_id=message.message_id, error=str(exc))
        return None

    parsed = parse_json_object(raw)
    if parsed is None:
        logger.warning("llm_unparseable_extraction", message_id=message.message_id)
        return None
    return ExtractedData.from_dict(parsed)
