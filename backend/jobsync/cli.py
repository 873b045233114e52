"""Command-line entry points for the local agent and the server.

USAGE:
  jobsync local-sync
  jobsync scan-corrections
  jobsync reclassify-untagged
  jobsync backfill-metadata --dry-run --limit 20 --llm
  jobsync backfill-tags
  jobsync serve --port 8000

Settings come from the environment, ``.env`` and ``~/.jobsync/config``.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

import structlog
from dotenv import load_dotenv

from jobsync.config import AppConfig, get_config
from jobsync.corrections.scanner import CorrectionScanner
from jobsync.corrections.store import CorrectionStore
from jobsync.database import get_db_session, init_db
from jobsync.email.mailstore import create_mail_store
from jobsync.errors import ConfigurationError, JobSyncError
from jobsync.extraction.backfill import run_backfill_metadata, run_backfill_tags
from jobsync.extraction.llm import create_llm_provider
from jobsync.extraction.pipeline import (
    SyncSummary,
    build_pipeline,
    run_reclassify_untagged,
    run_sync,
)
from jobsync.extraction.rules import load_gazetteer
from jobsync.logging_config import bind_run_context, setup_logging
from jobsync.sync.client import SyncClient

logger = structlog.get_logger(__name__)

DEFAULT_ENV_FILE = Path.home() / ".jobsync" / "config"

Command = Callable[[AppConfig, argparse.Namespace], int]


def _require_monitored(config: AppConfig) -> None:
    if not config.monitored_emails_list:
        raise ConfigurationError("MONITORED_EMAILS is not set")


def _print_sync(label: str, summary: SyncSummary) -> None:
    print(
        f"{label}: scanned={summary.scanned} classified={summary.classified} "
        f"(rules={summary.by_rule}, llm={summary.by_llm}) sent={summary.sent} "
        f"staged={summary.processed} skipped={summary.skipped} discarded={summary.discarded} "
        f"unclassified={summary.unclassified} errors={len(summary.errors)}"
    )


# ── Commands ──────────────────────────────────────────────


def cmd_local_sync(config: AppConfig, args: argparse.Namespace) -> int:
    _require_monitored(config)
    client = SyncClient(config)
    store = create_mail_store(config)
    pipeline = build_pipeline(config)
    try:
        summary = run_sync(config, store, pipeline, client)
    finally:
        pipeline.close()
        client.close()
    _print_sync("Sync complete", summary)
    return 0


def cmd_reclassify(config: AppConfig, args: argparse.Namespace) -> int:
    client = SyncClient(config)
    store = create_mail_store(config)
    pipeline = build_pipeline(config)
    try:
        summary = run_reclassify_untagged(config, store, pipeline, client)
    finally:
        pipeline.close()
        client.close()
    _print_sync("Reclassify complete", summary)
    return 0


def cmd_scan_corrections(config: AppConfig, args: argparse.Namespace) -> int:
    with SyncClient(config) as client:
        scanner = CorrectionScanner(
            config,
            CorrectionStore(config.corrections_path, cap=config.correction_pool_cap),
            create_mail_store(config),
            client,
        )
        summary = scanner.scan()
    print(
        f"Scan complete: {summary.corrections} correction(s), "
        f"{summary.high_variance} high-variance, promoted={summary.promoted} "
        f"relabelled={summary.relabelled} deleted={summary.deleted} "
        f"not_found={summary.not_found} errors={len(summary.errors)}"
    )
    if summary.found == 0:
        print(
            "To correct a label, tag the original and swap the current one, e.g.\n"
            "  notmuch tag +jobsync-was/rejection -jobsync/rejection +jobsync/interview -- id:abc123"
        )
    return 0


def cmd_backfill_metadata(config: AppConfig, args: argparse.Namespace) -> int:
    provider = None
    if args.llm:
        config.require_llm_credentials()
        provider = create_llm_provider(config)
    client = None if args.dry_run else SyncClient(config)
    try:
        summary = run_backfill_metadata(
            config,
            create_mail_store(config),
            client,
            provider,
            dry_run=args.dry_run,
            limit=args.limit,
            gazetteer=load_gazetteer(config.gazetteer_path),
        )
    finally:
        if client is not None:
            client.close()
    print(
        f"Backfill complete: scanned={summary.scanned} extracted={summary.extracted} "
        f"skipped={summary.skipped} updated={summary.updated} "
        f"not_found={summary.not_found} errors={len(summary.errors)}"
        + (" (dry run, nothing sent)" if args.dry_run else "")
    )
    return 0


def cmd_backfill_tags(config: AppConfig, args: argparse.Namespace) -> int:
    store = create_mail_store(config)
    init_db(config)
    with get_db_session() as session:
        summary = run_backfill_tags(session, store)
    print(
        f"Tag backfill complete: {summary.updated} tagged, "
        f"{summary.skipped} already tagged, errors={len(summary.errors)}"
    )
    return 0


def cmd_serve(config: AppConfig, args: argparse.Namespace) -> int:
    import uvicorn

    config.require_server_secret()
    uvicorn.run(
        "jobsync.main:app",
        host=args.host or config.host,
        port=args.port or config.port,
        reload=args.reload,
    )
    return 0


# ── Parser ────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jobsync",
        description="Classify job-search email and stage it for review",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help=f"Extra settings file to load (default: {DEFAULT_ENV_FILE})",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("local-sync", help="Classify new mail and send job-related messages to the server") \
        .set_defaults(func=cmd_local_sync, log_name="local-sync")
    sub.add_parser("scan-corrections", help="Record label corrections made with jobsync-was/* tags") \
        .set_defaults(func=cmd_scan_corrections, log_name="corrections")
    sub.add_parser("reclassify-untagged", help="Label processed mail that has no jobsync/* tag") \
        .set_defaults(func=cmd_reclassify, log_name="reclassify")

    backfill = sub.add_parser("backfill-metadata", help="Re-extract company/title for labelled mail")
    backfill.add_argument("--dry-run", action="store_true", help="Log what would be sent, send nothing")
    backfill.add_argument("--limit", type=int, default=None, help="Process at most N messages")
    backfill.add_argument("--llm", action="store_true", help="Use the model when rules miss company or title")
    backfill.set_defaults(func=cmd_backfill_metadata, log_name="backfill")

    sub.add_parser("backfill-tags", help="Tag mail with the labels held by staged imports") \
        .set_defaults(func=cmd_backfill_tags, log_name="backfill-tags")

    serve = sub.add_parser("serve", help="Run the ingestion and review API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=cmd_serve, log_name="server")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(args.env_file or DEFAULT_ENV_FILE)

    try:
        config = get_config()
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    log_file = config.log_file or str(config.jobsync_dir / f"{args.log_name}.log")
    setup_logging(level=args.log_level or config.log_level, log_file=log_file)

    command: Command = args.func
    try:
        with bind_run_context(args.command):
            return command(config, args)
    except ConfigurationError as exc:
        logger.error("configuration_error", command=args.command, error=str(exc))
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1
    except JobSyncError as exc:
        logger.error("command_failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
