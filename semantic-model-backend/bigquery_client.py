"""
Async BigQuery REST client for compiled and scoped queries.

Submits a query with jobs.query, polls getQueryResults until the job is
complete, then pulls the remaining rows in parallel startIndex chunks.
Rows are handed to an optional on_rows callback as they arrive.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from errors import QueryCancelledError, QueryExecutionError, WarehouseAuthError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://bigquery.googleapis.com/bigquery/v2"
NUMERIC_TYPES = {"INTEGER", "INT64", "FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC"}

INITIAL_BATCH_SIZE = 50000
PARALLEL_CHUNK_SIZE = 50000
CONCURRENCY = 8

RowsCallback = Callable[[List[Dict[str, Any]]], None]


class AccessTokenProvider:
    """Bearer token source. refresh_token() re-reads the environment variable."""

    def __init__(self, token: Optional[str] = None, env_var: str = "BIGQUERY_ACCESS_TOKEN"):
        self.env_var = env_var
        self._token = token

    async def get_token(self) -> str:
        if not self._token:
            self._token = os.getenv(self.env_var)
        if not self._token:
            raise WarehouseAuthError("No BigQuery access token configured")
        return self._token

    async def refresh_token(self) -> str:
        self._token = os.getenv(self.env_var) or self._token
        return await self.get_token()


@dataclass
class QueryResult:
    rows: List[Dict[str, Any]]
    columns: List[Dict[str, str]]
    total_rows: int
    job_id: Optional[str] = None

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass
class _Delivery:
    """Rows handed to the caller so far"""
    rows: int = 0
    chunks: Dict[int, List[Dict[str, Any]]] = field(default_factory=dict)


def _parse_numeric(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_rows(fields: List[Dict[str, Any]], raw_rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Turn BigQuery {"f": [{"v": ...}]} rows into dicts; numeric types become floats."""
    numeric = [str(f.get("type", "")).upper() in NUMERIC_TYPES for f in fields]
    names = [str(f.get("name", "")).strip() for f in fields]

    parsed = []
    for raw in raw_rows or []:
        cells = raw.get("f") or []
        row = {}
        for idx, name in enumerate(names):
            value = cells[idx].get("v") if idx < len(cells) and cells[idx] else None
            row[name] = _parse_numeric(value) if numeric[idx] else value
        parsed.append(row)
    return parsed


class BigQueryClient:
    """jobs.query + getQueryResults with retry, auth refresh, polling and cancellation"""

    def __init__(
        self,
        project_id: str,
        token_provider: Optional[AccessTokenProvider] = None,
        api_base: str = DEFAULT_API_BASE,
        request_timeout: float = 30.0,
        query_timeout: float = 300.0,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        poll_initial: float = 1.0,
        poll_max: float = 5.0,
        chunk_size: int = PARALLEL_CHUNK_SIZE,
        concurrency: int = CONCURRENCY,
    ):
        self.project_id = project_id
        self.token_provider = token_provider or AccessTokenProvider()
        self.api_base = api_base.rstrip("/")
        self.request_timeout = request_timeout
        self.query_timeout = query_timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.poll_initial = poll_initial
        self.poll_max = poll_max
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self):
        """Ensure aiohttp session exists"""
        if self.session is None or self.session.closed:
            timeout = aiohttp.ClientTimeout(total=self.request_timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)

    async def close(self):
        """Close aiohttp session"""
        if self.session and not self.session.closed:
            await self.session.close()

    # ------------------------------------------------------------------ HTTP

    async def _send(self, method: str, url: str, headers: Dict[str, str],
                    json: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, Any]] = None) -> Tuple[int, Dict[str, Any]]:
        """One HTTP round trip. Returns (status, parsed JSON body)."""
        await self._ensure_session()
        async with self.session.request(method, url, headers=headers, json=json, params=params) as response:
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = {}
            return response.status, body or {}

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def _request(self, method: str, url: str, json: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send with retry on 5xx/429/connection errors and one token refresh on 401.

        Raises:
            WarehouseAuthError: 401 after the token was refreshed once
            QueryExecutionError: non-retryable status or retries exhausted
        """
        retries = 0
        backoff = self.initial_backoff
        refreshed = False

        while True:
            token = await self.token_provider.get_token()
            headers = {"Authorization": f"Bearer {token}"}
            try:
                status, body = await self._send(method, url, headers, json=json, params=params)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if retries < self.max_retries:
                    logger.warning(f"[WARN] BigQuery network error, retrying in {backoff}s ({e})")
                    await self._sleep(backoff)
                    retries += 1
                    backoff *= 2
                    continue
                raise QueryExecutionError(f"BigQuery request failed: {e}") from e

            if status == 401:
                if refreshed:
                    raise WarehouseAuthError("BigQuery rejected the access token after refresh")
                logger.info("BigQuery returned 401, refreshing access token")
                refreshed = True
                await self.token_provider.refresh_token()
                continue

            if status == 429 or status >= 500:
                if retries < self.max_retries:
                    logger.warning(f"[WARN] BigQuery request failed ({status}), retrying in {backoff}s")
                    await self._sleep(backoff)
                    retries += 1
                    backoff *= 2
                    continue

            if status >= 400:
                message = (body.get("error") or {}).get("message") or f"HTTP {status}"
                raise QueryExecutionError(f"BigQuery Query Error: {message}")

            return body

    # ----------------------------------------------------------------- query

    def _results_url(self, job_id: str) -> str:
        return f"{self.api_base}/projects/{self.project_id}/queries/{job_id}"

    @staticmethod
    def _check_cancel(cancel_event: Optional[asyncio.Event], delivery: _Delivery) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"BigQuery fetch cancelled after {delivery.rows} rows")
            raise QueryCancelledError(rows_delivered=delivery.rows)

    @staticmethod
    def _deliver(delivery: _Delivery, rows: List[Dict[str, Any]], on_rows: Optional[RowsCallback]) -> None:
        if not rows:
            return
        if on_rows is not None:
            on_rows(rows)
        delivery.rows += len(rows)

    async def query(self, sql: str, limit: Optional[int] = None,
                    on_rows: Optional[RowsCallback] = None,
                    cancel_event: Optional[asyncio.Event] = None) -> QueryResult:
        """
        Run one statement and return every row.

        Raises:
            QueryCancelledError: cancel_event was set; rows_delivered counts the
                rows already passed to on_rows
            QueryExecutionError / WarehouseAuthError
        """
        delivery = _Delivery()
        batch = min(limit, INITIAL_BATCH_SIZE) if limit else INITIAL_BATCH_SIZE

        self._check_cancel(cancel_event, delivery)
        body = await self._request(
            "POST",
            f"{self.api_base}/projects/{self.project_id}/queries",
            json={"query": sql, "useLegacySql": False, "timeoutMs": 30000, "maxResults": batch},
        )

        job_ref = body.get("jobReference") or {}
        job_id = job_ref.get("jobId")
        location = job_ref.get("location")
        base_params = {"location": location} if location else {}
        fields = (body.get("schema") or {}).get("fields")

        wait = self.poll_initial
        waited = 0.0
        while not body.get("jobComplete"):
            if waited + wait > self.query_timeout:
                raise QueryExecutionError("BigQuery job failed to complete in time.")
            self._check_cancel(cancel_event, delivery)
            await self._sleep(wait)
            waited += wait
            body = await self._request("GET", self._results_url(job_id), params={**base_params, "maxResults": batch})
            fields = (body.get("schema") or {}).get("fields") or fields
            wait = min(wait * 1.5, self.poll_max)

        fields = fields or []
        columns = [{"name": f.get("name"), "type": f.get("type")} for f in fields]
        total_rows = int(body.get("totalRows") or 0)

        first_raw = body.get("rows") or []
        if not first_raw and total_rows > 0 and body.get("pageToken"):
            self._check_cancel(cancel_event, delivery)
            page = await self._request(
                "GET",
                self._results_url(job_id),
                params={**base_params, "pageToken": body["pageToken"], "maxResults": batch},
            )
            first_raw = page.get("rows") or []

        first_rows = parse_rows(fields, first_raw)
        self._deliver(delivery, first_rows, on_rows)
        delivery.chunks[0] = first_rows

        end_offset = min(total_rows, limit) if limit else total_rows
        start_offset = len(first_rows)
        if end_offset > start_offset:
            starts = list(range(start_offset, end_offset, self.chunk_size))
            logger.info(f"Fetching {end_offset - start_offset} rows in {len(starts)} chunks (concurrency {self.concurrency})")
            await self._fetch_chunks(job_id, base_params, fields, starts, end_offset, delivery, on_rows, cancel_event)

        rows: List[Dict[str, Any]] = []
        for start in sorted(delivery.chunks):
            rows.extend(delivery.chunks[start])
        if limit:
            rows = rows[:limit]

        logger.info(f"[OK] BigQuery job {job_id}: {len(rows)} rows")
        return QueryResult(rows=rows, columns=columns, total_rows=total_rows, job_id=job_id)

    async def _fetch_chunks(self, job_id, base_params, fields, starts, end_offset,
                            delivery: _Delivery, on_rows, cancel_event) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def fetch_chunk(start: int) -> None:
            async with semaphore:
                target = min(self.chunk_size, end_offset - start)
                collected: List[Dict[str, Any]] = []
                cursor = start
                while len(collected) < target:
                    self._check_cancel(cancel_event, delivery)
                    body = await self._request(
                        "GET",
                        self._results_url(job_id),
                        params={**base_params, "startIndex": cursor, "maxResults": target - len(collected)},
                    )
                    raw = body.get("rows") or []
                    if not raw:
                        logger.error(f"Chunk at {start} stopped at {len(collected)} of {target} rows")
                        raise QueryExecutionError(
                            f"BigQuery returned {start + len(collected)} of {end_offset} rows"
                        )
                    parsed = parse_rows(fields, raw)
                    self._deliver(delivery, parsed, on_rows)
                    collected.extend(parsed)
                    cursor += len(parsed)
                delivery.chunks[start] = collected

        tasks = [asyncio.ensure_future(fetch_chunk(start)) for start in starts]
        try:
            await asyncio.gather(*tasks)
        except QueryCancelledError:
            await self._cancel_tasks(tasks)
            raise QueryCancelledError(rows_delivered=delivery.rows) from None
        except BaseException:
            await self._cancel_tasks(tasks)
            raise

    @staticmethod
    async def _cancel_tasks(tasks) -> None:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def execute_query(self, sql: str, limit: Optional[int] = None,
                            on_rows: Optional[RowsCallback] = None,
                            cancel_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """Same result shape as DatabaseManager.execute_query."""
        result = await self.query(sql, limit=limit, on_rows=on_rows, cancel_event=cancel_event)
        return {
            "data": result.rows,
            "columns": [c["name"] for c in result.columns],
            "row_count": result.row_count,
        }
