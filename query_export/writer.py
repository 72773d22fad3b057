"""Streaming CSV output.

Rows are written with the csv module's excel dialect: minimal RFC 4180
quoting and CRLF line endings.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, TextIO

from .exceptions import WriteError
from .logging_utils import get_logger
from .models import RowBatch, RowShape
from .utils import stable_json_dumps

logger = get_logger(__name__)


def to_cell(value: Any) -> Any:
    """Normalize one scalar for CSV output. None stays None (empty field)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return stable_json_dumps(value)
    return value


def project(row: Any, header: Sequence[str], shape: RowShape) -> List[Any]:
    if shape is RowShape.NAMED:
        if not isinstance(row, Mapping):
            raise WriteError(f"Positional row in a NAMED batch: {type(row).__name__}")
        return [row.get(name) for name in header]
    if isinstance(row, Mapping):
        raise WriteError("Named row in a POSITIONAL batch")
    return list(row)


class TabularWriter:
    """Streaming CSV writer: header once, then any number of row batches.

    Named rows are projected onto the header; keys outside the header are
    dropped and missing keys become empty fields. Positional rows are written
    as they arrive.
    """

    def __init__(self, path: str | Path, encoding: str = "utf-8") -> None:
        self.path = Path(path)
        self.encoding = encoding
        self.rows_written = 0
        self.header: Optional[List[str]] = None
        self._fh: Optional[TextIO] = None
        self._csv: Any = None

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def open(self) -> "TabularWriter":
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # csv handles line endings itself
            self._fh = self.path.open("w", encoding=self.encoding, newline="")
        except OSError as e:
            raise WriteError(f"Cannot open output file {self.path}: {e}") from e
        self._csv = csv.writer(self._fh, dialect="excel", quoting=csv.QUOTE_MINIMAL)
        return self

    def write_header(self, names: Sequence[str]) -> None:
        self._require_open()
        if self.header is not None:
            raise WriteError("Header already written")
        self.header = list(names)
        self._writerow(self.header)

    def write_rows(self, rows: Iterable[Any], names: Sequence[str], shape: RowShape) -> int:
        self._require_open()
        if self.header is None:
            raise WriteError("write_header() must be called before write_rows()")
        n = 0
        for row in rows:
            self._writerow([to_cell(v) for v in project(row, names, shape)])
            n += 1
        self.rows_written += n
        return n

    def write_batch(self, batch: RowBatch) -> int:
        return self.write_rows(batch.rows, self.header or [], batch.shape)

    def close(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.close()
        except OSError as e:
            raise WriteError(f"Failed to close {self.path}: {e}") from e
        finally:
            self._fh = None
            self._csv = None
        logger.info("Wrote CSV to %s (rows=%d)", self.path, self.rows_written)

    def __enter__(self) -> "TabularWriter":
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _require_open(self) -> None:
        if self._fh is None:
            raise WriteError("Write stream not opened. Call open() first.")

    def _writerow(self, values: Sequence[Any]) -> None:
        try:
            self._csv.writerow(values)
        except OSError as e:
            raise WriteError(f"Failed writing to {self.path}: {e}") from e


def read_rows(fh: TextIO) -> List[List[str]]:
    """Parse CSV text written by TabularWriter back into lists of strings."""
    return [row for row in csv.reader(fh)]

