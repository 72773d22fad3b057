from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from dotenv import load_dotenv

from .auth import build_token_cache
from .config import PAGING_MODES, Settings, load_settings
from .exceptions import ExportError
from .exporter import build_orchestrator
from .http_client import HttpClient, HttpConfig
from .logging_utils import configure_logging, get_logger, log_json
from .storage import ObjectStorage


def cmd_run(settings: Settings, args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(settings)
    try:
        result = orchestrator.run(
            sql=args.sql,
            output_path=args.output,
            upload=False if args.no_upload else None,
            mode=args.mode,
        )
    finally:
        orchestrator.close()
    print("OK")
    print(f"output: {result.output_path}")
    print(f"columns: {len(result.header)}")
    print(f"rows_written: {result.rows_written}")
    print(f"total_rows: {result.total_rows}")
    print(f"batches: {result.batches}")
    if result.upload_url:
        print(f"uploaded: {result.upload_url}")
    return 0


def cmd_token(settings: Settings) -> int:
    with HttpClient(HttpConfig(connect_timeout=settings.connect_timeout, read_timeout=settings.read_timeout)) as http:
        tokens = build_token_cache(settings, http)
        cred = tokens.acquire()
    source = tokens.source.name if tokens.source else "none"
    print("OK")
    print(f"source: {source}")
    print(f"token_type: {cred.token_type}")
    print(f"token_length: {len(cred.token)}")
    print(f"expires_in_minutes: {round(tokens.seconds_until_expiry() / 60)}")
    return 0


def cmd_storage_check(settings: Settings) -> int:
    if not settings.s3_bucket:
        print("S3_BUCKET is not configured")
        return 2
    storage = ObjectStorage(region_name=settings.s3_region)
    if not storage.bucket_exists(settings.s3_bucket):
        print(f"bucket {settings.s3_bucket}: missing")
        return 1
    print(f"bucket {settings.s3_bucket}: ok")
    for key in storage.list_files(settings.s3_bucket, prefix=settings.s3_prefix):
        print(f"  {key}")
    return 0


def schedule_loop(settings: Settings) -> None:
    from apscheduler.schedulers.blocking import BlockingScheduler
    from apscheduler.triggers.cron import CronTrigger
    from apscheduler.triggers.interval import IntervalTrigger

    logger = get_logger()
    orchestrator = build_orchestrator(settings)
    sched = BlockingScheduler(timezone="UTC")

    def job() -> None:
        try:
            orchestrator.run()
        except ExportError as e:
            log_json(logger, logging.ERROR, "scheduled_export_failed", error=str(e), error_type=type(e).__name__)

    if settings.schedule_cron:
        trigger = CronTrigger.from_crontab(settings.schedule_cron, timezone="UTC")
    else:
        trigger = IntervalTrigger(minutes=settings.schedule_minutes)
    sched.add_job(job, trigger, id="query_export", max_instances=1, coalesce=True)

    log_json(
        logger,
        logging.INFO,
        "scheduler_started",
        cron=settings.schedule_cron,
        minutes=None if settings.schedule_cron else settings.schedule_minutes,
    )
    try:
        sched.start()
    finally:
        orchestrator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="query_export")
    sub = parser.add_subparsers(dest="cmd", required=True)

    runp = sub.add_parser("run", help="Run one export")
    runp.add_argument("--sql", type=str, default=None, help="Override QUERY_SQL")
    runp.add_argument("--output", type=str, default=None, help="Output CSV path")
    runp.add_argument("--mode", choices=PAGING_MODES, default=None, help="Paging mode (default: PAGING_MODE)")
    runp.add_argument("--no-upload", action="store_true", help="Skip object storage upload")

    sub.add_parser("token", help="Acquire and validate an access token")
    sub.add_parser("storage-check", help="Check the configured bucket and list exports")
    sub.add_parser("schedule", help="Run exports on SCHEDULE_CRON / SCHEDULE_MINUTES")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv(override=False)
    args = build_parser().parse_args(argv)

    logger = get_logger()
    try:
        settings = load_settings()
    except ExportError as e:
        configure_logging("INFO")
        log_json(logger, logging.ERROR, "config_invalid", error=str(e))
        return 2
    configure_logging(settings.log_level)

    try:
        if args.cmd == "run":
            return cmd_run(settings, args)
        if args.cmd == "token":
            return cmd_token(settings)
        if args.cmd == "storage-check":
            return cmd_storage_check(settings)
        if args.cmd == "schedule":
            schedule_loop(settings)
            return 0
    except ExportError as e:
        log_json(logger, logging.ERROR, "command_failed", cmd=args.cmd, error=str(e), error_type=type(e).__name__)
        return 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
