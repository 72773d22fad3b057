from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional, Sequence

from .auth import TokenCache, build_token_cache
from .config import Settings
from .exceptions import ExportError, StorageError
from .http_client import HttpClient, HttpConfig
from .logging_utils import get_logger, log_json
from .models import ExportResult, FieldDescriptor, RowBatch
from .planner import PaginationPlanner
from .storage import ObjectStorage
from .transport import QueryTransport
from .utils import as_iso, now_utc, preview, timestamp_slug
from .writer import TabularWriter


def default_output_path(settings: Settings) -> str:
    if settings.output_csv:
        return settings.output_csv
    return str(Path(settings.output_dir) / f"{settings.output_prefix}_{timestamp_slug()}.csv")


class ExportOrchestrator:
    """One export run: authenticate, page through the query, stream to CSV, publish."""

    def __init__(
        self,
        settings: Settings,
        tokens: TokenCache,
        planner: PaginationPlanner,
        storage: Optional[ObjectStorage] = None,
        http: Optional[HttpClient] = None,
    ) -> None:
        self.settings = settings
        self.tokens = tokens
        self.planner = planner
        self.storage = storage
        self.http = http
        self.logger = get_logger(__name__)

    def run(
        self,
        sql: Optional[str] = None,
        output_path: Optional[str] = None,
        upload: Optional[bool] = None,
        mode: Optional[str] = None,
    ) -> ExportResult:
        sql = sql or self.settings.sql_query
        output_path = output_path or default_output_path(self.settings)
        upload = self.settings.upload_enabled if upload is None else upload
        mode = mode or self.settings.paging_mode
        started = time.monotonic()

        log_json(self.logger, logging.INFO, "export_started", mode=mode, output=output_path, sql_preview=preview(sql))

        writer = TabularWriter(output_path)
        header: List[str] = []
        batches = 0

        # The file is only created once the probe has returned field descriptors.
        def on_fields(fields: Sequence[FieldDescriptor]) -> None:
            header.extend(f.name for f in fields)
            writer.open()
            writer.write_header(header)

        def on_batch(batch: RowBatch) -> None:
            nonlocal batches
            writer.write_rows(batch.rows, header, batch.shape)
            batches += 1

        try:
            self.tokens.acquire()
            if mode == "cursor":
                plan = self.planner.run_cursor(sql, on_fields, on_batch)
            else:
                plan = self.planner.run(sql, on_fields, on_batch)
        except ExportError as e:
            log_json(
                self.logger,
                logging.ERROR,
                "export_failed",
                error=str(e),
                error_type=type(e).__name__,
                rows_written=writer.rows_written,
                output=output_path,
            )
            raise
        finally:
            writer.close()

        result = ExportResult(
            output_path=output_path,
            header=header,
            rows_written=writer.rows_written,
            batches=batches,
            total_rows=plan.total_rows,
            paging_mode=mode,
            elapsed_sec=round(time.monotonic() - started, 3),
        )

        if upload:
            result.upload_url = self._publish(result)

        log_json(
            self.logger,
            logging.INFO,
            "export_complete",
            output=result.output_path,
            rows_written=result.rows_written,
            total_rows=result.total_rows,
            batches=result.batches,
            elapsed_sec=result.elapsed_sec,
            upload_url=result.upload_url,
        )
        if mode == "offset" and result.rows_written != result.total_rows:
            log_json(
                self.logger,
                logging.WARNING,
                "row_count_mismatch",
                expected=result.total_rows,
                written=result.rows_written,
            )
        return result

    def _publish(self, result: ExportResult) -> Optional[str]:
        bucket = self.settings.s3_bucket
        if self.storage is None or not bucket:
            log_json(self.logger, logging.WARNING, "upload_skipped", reason="storage not configured")
            return None

        filename = Path(result.output_path).name
        prefix = self.settings.s3_prefix.strip("/")
        remote_path = f"{prefix}/{filename}" if prefix else filename
        metadata = {
            "source": "query-export",
            "row_count": str(result.rows_written),
            "exported_at": as_iso(now_utc()) or "",
        }
        try:
            return self.storage.upload(
                bucket,
                result.output_path,
                remote_path,
                make_public=self.settings.s3_make_public,
                metadata=metadata,
            )
        except StorageError as e:
            # Local export is complete; publishing is best effort.
            log_json(self.logger, logging.ERROR, "upload_failed", bucket=bucket, key=remote_path, error=str(e))
            return None

    def close(self) -> None:
        if self.http is not None:
            self.http.close()


def build_orchestrator(settings: Settings, storage: Optional[ObjectStorage] = None) -> ExportOrchestrator:
    http = HttpClient(
        HttpConfig(
            connect_timeout=settings.connect_timeout,
            read_timeout=settings.read_timeout,
        )
    )
    tokens = build_token_cache(settings, http)
    transport = QueryTransport.from_settings(settings, http, tokens)
    planner = PaginationPlanner(
        transport,
        max_batch_size=settings.max_batch_size,
        probe_row_limit=settings.probe_row_limit,
        pause_every=settings.pause_every,
        pause_seconds=settings.pause_seconds,
    )
    if storage is None and settings.upload_enabled:
        storage = ObjectStorage(region_name=settings.s3_region)
    return ExportOrchestrator(settings, tokens, planner, storage=storage, http=http)
