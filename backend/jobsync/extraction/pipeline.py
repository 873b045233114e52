"""Classification pipeline: rules, then the model, then field extraction; and the batch runners."""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, Optional, Sequence, TypeVar

import structlog

from jobsync.config import AppConfig
from jobsync.corrections.store import Correction, CorrectionStore
from jobsync.email.classifier import classify_by_rules
from jobsync.email.mailstore import (
    MailStore,
    MessageRef,
    build_new_mail_query,
    build_untagged_query,
    mark_processed,
)
from jobsync.email.parser import (
    NormalizedMessage,
    is_monitored_address,
    parse_email_bytes,
    strip_message_id,
)
from jobsync.extraction.llm import (
    LLMProvider,
    classify_with_model,
    create_llm_provider,
    extract_with_model,
)
from jobsync.extraction.rules import (
    DEFAULT_GAZETTEER,
    Gazetteer,
    extract_by_rules,
    load_gazetteer,
    needs_llm_fallback,
)
from jobsync.extraction.types import ClassificationResult, ExtractedData
from jobsync.schemas import ImportRecord
from jobsync.staging.sink import StagingSink

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Outcome statuses produced by the batch worker
OUTCOME_STAGE = "stage"          # job-related and above the gate; send for review
OUTCOME_DISCARDED = "discarded"  # classified, but not staged
OUTCOME_UNCLASSIFIED = "unclassified"
OUTCOME_ERROR = "error"


class ClassificationPipeline:
    """Classify one message and, when job-related, extract its fields.

    The few-shot examples are loaded once by the caller and shared read-only
    by every worker thread. ``provider`` may be None, in which case only the
    rule engines run.
    """

    def __init__(
        self,
        config: AppConfig,
        provider: Optional[LLMProvider] = None,
        examples: Sequence[Correction] = (),
        gazetteer: Gazetteer = DEFAULT_GAZETTEER,
    ) -> None:
        self._config = config
        self._provider = provider
        self._examples = tuple(examples)
        self._gazetteer = gazetteer

    @property
    def has_model(self) -> bool:
        return self._provider is not None

    def classify(self, message: NormalizedMessage) -> Optional[ClassificationResult]:
        """Rule engine first; the model only when no rule fires. None means undecided."""
        result = classify_by_rules(message)
        if result is not None:
            return result
        if self._provider is None:
            logger.debug("no_rule_and_no_model", message_id=message.message_id)
            return None
        return classify_with_model(
            self._provider,
            message,
            self._examples,
            body_chars=self._config.prompt_body_chars,
            timeout_sec=self._config.llm_timeout_sec,
        )

    def extract(self, message: NormalizedMessage, seed: Optional[ExtractedData] = None) -> ExtractedData:
        """Rule extraction, filled from *seed*, then the model only if company or title is missing."""
        data = extract_by_rules(message, self._gazetteer).merge(seed)
        if needs_llm_fallback(data) and self._provider is not None:
            data = data.merge(
                extract_with_model(
                    self._provider,
                    message,
                    body_chars=self._config.prompt_body_chars,
                    timeout_sec=self._config.llm_timeout_sec,
                )
            )
        return data

    def process(self, message: NormalizedMessage) -> Optional[ClassificationResult]:
        result = self.classify(message)
        if result is None or not result.is_job_related:
            return result
        return replace(result, extracted_data=self.extract(message, result.extracted_data))

    def close(self) -> None:
        close = getattr(self._provider, "close", None)
        if close is not None:
            close()


def build_pipeline(
    config: AppConfig,
    examples: Optional[Sequence[Correction]] = None,
) -> ClassificationPipeline:
    """Wire the provider, few-shot examples and gazetteer from *config*.

    The examples are read from the correction store once, here, so every
    worker in the batch sees the same list.

    Raises:
        ConfigurationError: the configured provider needs a key that is not set.
    """
    config.require_llm_credentials()
    provider = create_llm_provider(config) if config.llm_enabled else None
    if examples is None:
        store = CorrectionStore(config.corrections_path, cap=config.correction_pool_cap)
        examples = store.recent_examples(config.few_shot_examples)
    logger.info(
        "pipeline_ready",
        llm=config.llm_provider if provider else "disabled",
        few_shot=len(examples),
    )
    return ClassificationPipeline(config, provider, examples, load_gazetteer(config.gazetteer_path))


# ── Batch execution ───────────────────────────────────────


@dataclass(frozen=True)
class MessageOutcome:
    """What happened to one message inside a batch.

    ``message_id`` is the parsed Message-ID sent to the sink; ``ref_id`` is the
    id the mail store knows the message by, which differs for files without
    a Message-ID header.
    """

    message_id: str
    status: str
    message: Optional[NormalizedMessage] = None
    result: Optional[ClassificationResult] = None
    error: Optional[str] = None
    ref_id: Optional[str] = None

    @property
    def tag_id(self) -> str:
        return self.ref_id or self.message_id


@dataclass
class SyncSummary:
    """Result summary after a sync or reclassify run."""

    scanned: int = 0
    classified: int = 0
    by_rule: int = 0
    by_llm: int = 0
    unclassified: int = 0
    sent: int = 0
    processed: int = 0
    skipped: int = 0
    discarded: int = 0
    errors: list[str] = field(default_factory=list)


def process_batch(
    items: Iterable[T],
    worker: Callable[[T], MessageOutcome],
    concurrency: int,
    key: Callable[[T], str] = str,
) -> list[MessageOutcome]:
    """Run *worker* over *items* on a bounded pool; outcomes in completion order.

    An exception escaping the worker becomes an ``error`` outcome for that item.
    Each task runs in a copy of the caller's context so bound log fields follow it.
    """
    outcomes: list[MessageOutcome] = []
    with ThreadPoolExecutor(max_workers=max(1, concurrency)) as pool:
        futures = {
            pool.submit(contextvars.copy_context().run, worker, item): item
            for item in items
        }
        for future in as_completed(futures):
            item = futures[future]
            try:
                outcomes.append(future.result())
            except Exception as exc:
                logger.error("worker_failed", item=key(item), error=str(exc))
                outcomes.append(MessageOutcome(message_id=key(item), status=OUTCOME_ERROR, error=str(exc)))
    return outcomes


def account_for(message: NormalizedMessage, monitored: Sequence[str]) -> Optional[str]:
    """The monitored mailbox this message belongs to."""
    if message.is_outbound:
        return message.from_email.lower()
    for address in message.to_email.split(","):
        if is_monitored_address(address, monitored):
            return address.strip().lower()
    return None


def to_import_record(
    message: NormalizedMessage,
    result: ClassificationResult,
    account_email: Optional[str] = None,
) -> ImportRecord:
    extracted = None if result.extracted_data.is_empty else result.extracted_data.to_dict()
    return ImportRecord(
        message_id=message.message_id,
        subject=message.subject,
        from_email=message.from_email,
        from_name=message.from_name or None,
        to_email=message.to_email or None,
        email_date=message.date,
        body_text=message.best_text or None,
        body_html=message.html_body,
        classification=result.type.value,
        confidence=result.confidence,
        classification_source=result.source,
        reason=result.reason or None,
        is_outbound=message.is_outbound,
        account_email=account_email,
        extracted_data=extracted,
    )


def _ref_key(ref: MessageRef) -> str:
    return ref.message_id


def _make_worker(
    config: AppConfig,
    store: MailStore,
    pipeline: ClassificationPipeline,
) -> Callable[[MessageRef], MessageOutcome]:
    threshold = config.confidence_threshold
    monitored = config.monitored_emails_list

    def worker(ref: MessageRef) -> MessageOutcome:
        raw = store.read(ref)
        message = parse_email_bytes(
            raw,
            filename=ref.path.name if ref.path else None,
            monitored_emails=monitored,
        )
        result = pipeline.process(message)
        if result is None:
            # Left untagged so the next run retries it
            return MessageOutcome(message.message_id, OUTCOME_UNCLASSIFIED, message=message, ref_id=ref.message_id)

        logger.info(
            "email_classified",
            message_id=message.message_id,
            type=result.type.value,
            confidence=result.confidence,
            source=result.source,
        )
        if not result.passes_gate(threshold):
            mark_processed(store, ref.message_id, result.type.value)
            return MessageOutcome(
                message.message_id, OUTCOME_DISCARDED, message=message, result=result, ref_id=ref.message_id
            )
        return MessageOutcome(
            message.message_id, OUTCOME_STAGE, message=message, result=result, ref_id=ref.message_id
        )

    return worker


def _tally(outcomes: Sequence[MessageOutcome], summary: SyncSummary) -> list[MessageOutcome]:
    to_stage: list[MessageOutcome] = []
    for outcome in outcomes:
        if outcome.result is not None:
            summary.classified += 1
            if outcome.result.source == "llm":
                summary.by_llm += 1
            else:
                summary.by_rule += 1
        if outcome.status == OUTCOME_STAGE:
            to_stage.append(outcome)
        elif outcome.status == OUTCOME_DISCARDED:
            summary.discarded += 1
        elif outcome.status == OUTCOME_UNCLASSIFIED:
            summary.unclassified += 1
        elif outcome.status == OUTCOME_ERROR:
            summary.errors.append(f"{outcome.message_id}: {outcome.error}")
    return to_stage


def _deliver(
    config: AppConfig,
    store: MailStore,
    sink: StagingSink,
    to_stage: Sequence[MessageOutcome],
    summary: SyncSummary,
) -> None:
    """Send staged candidates in one batch; tag them only once the sink has accepted."""
    if not to_stage:
        return
    monitored = config.monitored_emails_list
    records = [
        to_import_record(o.message, o.result, account_for(o.message, monitored))
        for o in to_stage
        if o.message is not None and o.result is not None
    ]
    try:
        result = sink.submit_imports(records)
    except Exception as exc:
        logger.error("sync_submit_failed", count=len(records), error=str(exc))
        summary.errors.append(f"submit: {exc}")
        return

    summary.sent += len(records)
    summary.processed += result.processed
    summary.skipped += result.skipped
    summary.discarded += result.discarded
    summary.errors.extend(result.errors)
    failed = {strip_message_id(m) for m in result.failed_ids}
    for outcome in to_stage:
        if strip_message_id(outcome.message_id) in failed:
            # Still new, so the next run sends it again
            logger.warning("import_left_new", message_id=outcome.message_id)
            continue
        try:
            mark_processed(store, outcome.tag_id, outcome.result.type.value)
        except Exception as exc:
            logger.error("tagging_failed", message_id=outcome.message_id, error=str(exc))
            summary.errors.append(f"{outcome.message_id}: {exc}")


def _run(
    config: AppConfig,
    store: MailStore,
    pipeline: ClassificationPipeline,
    sink: StagingSink,
    query: str,
    event: str,
) -> SyncSummary:
    summary = SyncSummary()
    refs = store.query(query)
    summary.scanned = len(refs)
    logger.info(f"{event}_started", messages=len(refs), concurrency=config.jobsync_concurrency)
    if not refs:
        return summary

    outcomes = process_batch(refs, _make_worker(config, store, pipeline), config.jobsync_concurrency, key=_ref_key)
    to_stage = _tally(outcomes, summary)
    _deliver(config, store, sink, to_stage, summary)

    logger.info(
        f"{event}_complete",
        scanned=summary.scanned,
        classified=summary.classified,
        by_rule=summary.by_rule,
        by_llm=summary.by_llm,
        sent=summary.sent,
        processed=summary.processed,
        skipped=summary.skipped,
        discarded=summary.discarded,
        unclassified=summary.unclassified,
        errors=len(summary.errors),
    )
    return summary


def run_sync(
    config: AppConfig,
    store: MailStore,
    pipeline: ClassificationPipeline,
    sink: StagingSink,
) -> SyncSummary:
    """Classify new mail for the monitored addresses and stage the job-related messages."""
    return _run(config, store, pipeline, sink, build_new_mail_query(config.monitored_emails_list), "sync")


def run_reclassify_untagged(
    config: AppConfig,
    store: MailStore,
    pipeline: ClassificationPipeline,
    sink: StagingSink,
) -> SyncSummary:
    """Give a label to processed mail that never got one; job-related ones are staged."""
    return _run(config, store, pipeline, sink, build_untagged_query(), "reclassify")
