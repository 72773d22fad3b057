from __future__ import annotations

import logging
import time
from typing import Callable, Sequence

from .exceptions import PlanningError
from .logging_utils import get_logger, log_json
from .models import FieldDescriptor, PaginationPlan, RowBatch
from .transport import QueryTransport
from .utils import preview

FieldsSink = Callable[[Sequence[FieldDescriptor]], None]
BatchSink = Callable[[RowBatch], None]

MAX_BATCH_SIZE = 25000
PROBE_ROW_LIMIT = 1


class PaginationPlanner:
    """Turns one query into a sequence of bounded fetches.

    Offset mode (``run``) probes with a one-row limit to learn the handle and
    total row count, then walks the result set in pages of at most
    ``max_batch_size`` rows. Cursor mode (``run_cursor``) follows the
    server-issued ``nextBatchId`` chain instead.

    Each batch is handed to ``on_batch`` before the next request is made, so at
    most one page is held in memory.
    """

    def __init__(
        self,
        transport: QueryTransport,
        max_batch_size: int = MAX_BATCH_SIZE,
        probe_row_limit: int = PROBE_ROW_LIMIT,
        pause_every: int = 10,
        pause_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")
        self.transport = transport
        self.max_batch_size = max_batch_size
        self.probe_row_limit = probe_row_limit
        self.pause_every = pause_every
        self.pause_seconds = pause_seconds
        self.sleep = sleep
        self.logger = get_logger(__name__)

    def run(self, sql: str, on_fields: FieldsSink, on_batch: BatchSink) -> PaginationPlan:
        probe = self.transport.submit(sql, row_limit=self.probe_row_limit)
        if probe.handle is None:
            log_json(
                self.logger,
                logging.ERROR,
                "probe_missing_handle",
                returned_rows=probe.batch.returned_rows,
                fields=probe.header,
            )
            raise PlanningError("No queryId returned from initial query")

        handle = probe.handle
        plan = PaginationPlan(total_rows=handle.row_count, max_batch_size=self.max_batch_size)
        log_json(
            self.logger,
            logging.INFO,
            "probe_complete",
            query_id=handle.query_id,
            total_rows=handle.row_count,
            fields=len(probe.fields),
            sql_preview=preview(sql),
        )

        on_fields(probe.fields)

        while not plan.is_complete:
            size = plan.next_request_size()
            batch = self.transport.fetch_by_offset(handle, plan.offset, size)
            advance = batch.row_advance
            plan.advance(advance)

            log_json(
                self.logger,
                logging.INFO,
                "batch_fetched",
                batch=plan.requests_made,
                requested=size,
                returned=advance,
                offset=plan.offset,
                total_rows=plan.total_rows,
                progress_pct=plan.progress_pct(),
            )

            on_batch(batch)

            if batch.done or plan.is_complete:
                break
            if advance == 0:
                log_json(
                    self.logger,
                    logging.WARNING,
                    "paging_stalled",
                    offset=plan.offset,
                    total_rows=plan.total_rows,
                )
                break
            self._pace(plan.requests_made)

        log_json(
            self.logger,
            logging.INFO,
            "paging_complete",
            mode="offset",
            batches=plan.requests_made,
            total_rows=plan.total_rows,
            rows_fetched=plan.rows_fetched,
        )
        return plan

    def run_cursor(self, sql: str, on_fields: FieldsSink, on_batch: BatchSink) -> PaginationPlan:
        first = self.transport.submit(sql)
        total = first.handle.row_count if first.handle else 0
        plan = PaginationPlan(total_rows=total, max_batch_size=self.max_batch_size)

        on_fields(first.fields)
        batch = first.batch
        while True:
            plan.advance(len(batch.rows))
            on_batch(batch)
            log_json(
                self.logger,
                logging.INFO,
                "batch_fetched",
                batch=plan.requests_made,
                returned=len(batch.rows),
                rows_fetched=plan.rows_fetched,
                has_next=bool(batch.next_batch_id),
            )
            if batch.done or not batch.next_batch_id:
                break
            self._pace(plan.requests_made)
            batch = self.transport.fetch_by_cursor(batch.next_batch_id)

        log_json(
            self.logger,
            logging.INFO,
            "paging_complete",
            mode="cursor",
            batches=plan.requests_made,
            total_rows=plan.total_rows,
            rows_fetched=plan.rows_fetched,
        )
        return plan

    def _pace(self, requests_made: int) -> None:
        if self.pause_every > 0 and requests_made % self.pause_every == 0:
            self.sleep(self.pause_seconds)
