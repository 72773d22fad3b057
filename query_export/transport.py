from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import requests

from .auth import TokenCache
from .config import Settings
from .exceptions import QueryError
from .http_client import HttpClient
from .logging_utils import get_logger, log_json
from .models import FieldDescriptor, QueryHandle, QueryResult, RowBatch, RowShape


def _first_present(*candidates: Any) -> Any:
    for c in candidates:
        if c not in (None, ""):
            return c
    return None


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_fields(metadata: Any) -> Tuple[FieldDescriptor, ...]:
    """Build the ordered field descriptors from either metadata layout.

    - list of ``{"name", "type", "nullable"}``: list order is column order
    - mapping of ``name -> {"placeInOrder", "type", "nullable"}``: sorted by placeInOrder
    """
    if not metadata:
        return ()

    fields: List[FieldDescriptor] = []
    if isinstance(metadata, Mapping):
        for idx, (name, meta) in enumerate(metadata.items()):
            meta = meta if isinstance(meta, Mapping) else {}
            pos = _as_int(meta.get("placeInOrder"))
            fields.append(
                FieldDescriptor(
                    name=str(name),
                    position=idx if pos is None else pos,
                    type=meta.get("type"),
                    nullable=bool(meta.get("nullable", True)),
                )
            )
    else:
        for idx, meta in enumerate(metadata):
            if not isinstance(meta, Mapping) or not meta.get("name"):
                continue
            pos = _as_int(meta.get("placeInOrder"))
            fields.append(
                FieldDescriptor(
                    name=str(meta["name"]),
                    position=idx if pos is None else pos,
                    type=meta.get("type"),
                    nullable=bool(meta.get("nullable", True)),
                )
            )

    # sorted() is stable, so equal positions keep response order
    return tuple(sorted(fields, key=lambda f: f.position))


def parse_batch(payload: Mapping[str, Any], offset: Optional[int] = None) -> RowBatch:
    rows = payload.get("data") or []
    if not isinstance(rows, list):
        rows = []
    return RowBatch(
        rows=rows,
        shape=RowShape.of(rows),
        returned_rows=_as_int(payload.get("returnedRows")),
        done=bool(payload.get("done", False)),
        next_batch_id=payload.get("nextBatchId") or None,
        offset=offset,
    )


def extract_handle(payload: Mapping[str, Any]) -> Optional[QueryHandle]:
    """Look for the query id and total row count in every known response location.

    Returns None when no query id is present anywhere; the caller decides
    whether that is fatal.
    """
    status = payload.get("status")
    status = status if isinstance(status, Mapping) else {}

    query_id = _first_present(payload.get("queryId"), status.get("queryId"))
    if query_id is None:
        return None

    row_count = _as_int(status.get("rowCount")) or _as_int(payload.get("rowCount")) or 0
    return QueryHandle(query_id=str(query_id), row_count=row_count)


def parse_query_response(payload: Mapping[str, Any]) -> QueryResult:
    return QueryResult(
        batch=parse_batch(payload, offset=0),
        fields=parse_fields(payload.get("metadata")),
        handle=extract_handle(payload),
    )


class QueryTransport:
    """Request/response wrapper around the query-sql endpoints.

    Fetches a credential from the TokenCache right before every call and
    raises QueryError on any non-success status; it never retries or pages.
    """

    def __init__(self, http: HttpClient, tokens: TokenCache, base_url: str, dataspace: str):
        self.http = http
        self.tokens = tokens
        self.base_url = base_url.rstrip("/")
        self.dataspace = dataspace
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings, http: HttpClient, tokens: TokenCache) -> "QueryTransport":
        return cls(http, tokens, base_url=settings.api_base_url, dataspace=settings.dataspace)

    @property
    def query_url(self) -> str:
        return f"{self.base_url}/ssot/query-sql"

    def submit(self, sql: str, row_limit: Optional[int] = None) -> QueryResult:
        body: Dict[str, Any] = {"sql": sql}
        if row_limit is not None:
            body["rowLimit"] = row_limit

        payload = self._call("POST", self.query_url, "Query POST", json=body)
        result = parse_query_response(payload)

        log_json(
            self.logger,
            logging.INFO,
            "query_submitted",
            done=result.batch.done,
            row_count=result.handle.row_count if result.handle else None,
            returned_rows=result.batch.returned_rows,
            query_id=result.handle.query_id if result.handle else None,
            data_length=len(result.batch.rows),
            metadata_names=result.header,
        )
        return result

    def fetch_by_cursor(self, next_batch_id: str) -> RowBatch:
        url = f"{self.query_url}/{quote(next_batch_id, safe='')}"
        payload = self._call("GET", url, "Query NEXT")
        return parse_batch(payload)

    def fetch_by_offset(self, handle: QueryHandle, offset: int, limit: int) -> RowBatch:
        url = f"{self.query_url}/{quote(handle.query_id, safe='')}/rows"
        payload = self._call("GET", url, "Query ROWS", extra_params={"offset": offset, "rowLimit": limit})
        return parse_batch(payload, offset=offset)

    def _call(
        self,
        method: str,
        url: str,
        label: str,
        extra_params: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> Mapping[str, Any]:
        cred = self.tokens.acquire()
        params: Dict[str, Any] = {"dataspace": self.dataspace}
        if extra_params:
            params.update(extra_params)

        headers = {**cred.auth_header(), "Accept": "application/json"}
        if "json" in kwargs:
            headers["Content-Type"] = "application/json"

        try:
            resp = self.http.request(method, url, params=params, headers=headers, **kwargs)
        except requests.RequestException as e:
            raise QueryError(f"{label} failed: {e}", status=None, body="") from e

        if not resp.ok:
            text = resp.text or ""
            raise QueryError(f"{label} failed {resp.status_code}: {text}", status=resp.status_code, body=text)

        try:
            payload = resp.json()
        except ValueError as e:
            raise QueryError(f"{label} returned a non-JSON body", status=resp.status_code, body=resp.text or "") from e

        if not isinstance(payload, Mapping):
            raise QueryError(f"{label} returned unexpected JSON", status=resp.status_code, body=resp.text or "")
        return payload
