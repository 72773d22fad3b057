from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: float
    issued_at: float
    token_type: str = "Bearer"
    scope: str | None = None
    instance_url: str | None = None
    static: bool = False

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def auth_header(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


@dataclass(frozen=True)
class ValidationEntry:
    valid: bool
    checked_at: float


@dataclass(frozen=True)
class QueryHandle:
    query_id: str
    row_count: int = 0


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    position: int
    type: str | None = None
    nullable: bool = True


class RowShape(str, Enum):
    POSITIONAL = "POSITIONAL"
    NAMED = "NAMED"

    @classmethod
    def of(cls, rows: Sequence[Any]) -> "RowShape":
        """Resolve the shape of a batch from its first row; empty batches count as positional."""
        if rows and isinstance(rows[0], dict):
            return cls.NAMED
        return cls.POSITIONAL


@dataclass
class RowBatch:
    rows: List[Any]
    shape: RowShape = RowShape.POSITIONAL
    returned_rows: int | None = None
    done: bool = False
    next_batch_id: str | None = None
    offset: int | None = None

    @property
    def row_advance(self) -> int:
        # returnedRows is authoritative; fall back to what actually arrived.
        return self.returned_rows or len(self.rows)


@dataclass
class QueryResult:
    batch: RowBatch
    fields: Tuple[FieldDescriptor, ...]
    handle: Optional[QueryHandle]

    @property
    def header(self) -> List[str]:
        return [f.name for f in self.fields]


@dataclass
class PaginationPlan:
    total_rows: int
    max_batch_size: int
    offset: int = 0
    requests_made: int = 0
    rows_fetched: int = 0

    @property
    def remaining(self) -> int:
        return max(self.total_rows - self.offset, 0)

    @property
    def is_complete(self) -> bool:
        return self.offset >= self.total_rows

    def next_request_size(self) -> int:
        return min(self.max_batch_size, self.remaining)

    def advance(self, rows: int) -> None:
        if rows < 0:
            raise ValueError(f"offset can only move forward, got {rows}")
        self.offset += rows
        self.rows_fetched += rows
        self.requests_made += 1

    def progress_pct(self) -> int:
        if self.total_rows <= 0:
            return 100
        return min(100, round(self.offset * 100 / self.total_rows))


@dataclass
class ExportResult:
    output_path: str
    header: List[str]
    rows_written: int
    batches: int
    total_rows: int
    paging_mode: str
    elapsed_sec: float
    upload_url: str | None = None
    meta: Dict[str, Any] = field(default_factory=dict)
