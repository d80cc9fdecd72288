"""
Tests for the BigQuery REST client.

HTTP is replaced by scripted _send implementations and _sleep records the
requested delays instead of waiting, so retry, polling, chunking and
cancellation run instantly and deterministically.
"""

import asyncio
import os
import unittest
from unittest import mock

import aiohttp

from bigquery_client import AccessTokenProvider, BigQueryClient, parse_rows
from errors import QueryCancelledError, QueryExecutionError, WarehouseAuthError

FIELDS = [{"name": "id", "type": "INTEGER"}, {"name": "label", "type": "STRING"}]


def _raw(values):
    return {"f": [{"v": v} for v in values]}


def _complete(rows, total=None, job_id="job-1", **extra):
    body = {
        "jobComplete": True,
        "jobReference": {"jobId": job_id},
        "schema": {"fields": FIELDS},
        "totalRows": str(len(rows) if total is None else total),
        "rows": [_raw(r) for r in rows],
    }
    body.update(extra)
    return 200, body


class FakeTokens(AccessTokenProvider):

    def __init__(self):
        super().__init__(token="tok-1")
        self.refreshes = 0

    async def refresh_token(self):
        self.refreshes += 1
        self._token = f"tok-{self.refreshes + 1}"
        return self._token


class ScriptedClient(BigQueryClient):
    """Replies with a fixed list of (status, body) pairs or exceptions."""

    def __init__(self, responses, **kwargs):
        kwargs.setdefault("initial_backoff", 0.5)
        super().__init__("acme", token_provider=FakeTokens(), **kwargs)
        self.responses = list(responses)
        self.calls = []
        self.sleeps = []

    async def _send(self, method, url, headers, json=None, params=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "json": json, "params": params})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)


class PagedClient(BigQueryClient):
    """Serves a fixed result set, at most page_size rows per response."""

    def __init__(self, values, first_page=1, page_size=1, **kwargs):
        super().__init__("acme", token_provider=FakeTokens(), **kwargs)
        self.values = values
        self.first_page = first_page
        self.page_size = page_size
        self.start_indexes = []

    async def _send(self, method, url, headers, json=None, params=None):
        await asyncio.sleep(0)
        if method == "POST":
            rows = [[v, f"row-{v}"] for v in self.values[:self.first_page]]
            return _complete(rows, total=len(self.values))
        start = params["startIndex"]
        self.start_indexes.append(start)
        count = min(self.page_size, params["maxResults"])
        rows = [[v, f"row-{v}"] for v in self.values[start:start + count]]
        return 200, {"jobComplete": True, "rows": [_raw(r) for r in rows]}

    async def _sleep(self, seconds):
        pass


# ---------------------------------------------------------------------------
# Parsing and tokens
# ---------------------------------------------------------------------------

class TestParseRows(unittest.TestCase):

    def test_numeric_columns_become_floats(self):
        fields = [{"name": "n", "type": "INT64"}, {"name": "s", "type": "STRING"}, {"name": "f", "type": "FLOAT"}]
        rows = parse_rows(fields, [_raw(["3", "x", None]), _raw(["not-a-number", "y", "1.5"])])
        self.assertEqual(rows, [
            {"n": 3.0, "s": "x", "f": None},
            {"n": None, "s": "y", "f": 1.5},
        ])

    def test_short_rows_padded_with_none(self):
        self.assertEqual(parse_rows(FIELDS, [{"f": [{"v": "1"}]}]), [{"id": 1.0, "label": None}])


class TestAccessTokenProvider(unittest.IsolatedAsyncioTestCase):

    async def test_missing_token(self):
        provider = AccessTokenProvider(env_var="SEMANTIC_MODEL_TEST_UNSET_TOKEN")
        with self.assertRaises(WarehouseAuthError):
            await provider.get_token()

    async def test_refresh_rereads_environment(self):
        provider = AccessTokenProvider(token="old", env_var="SEMANTIC_MODEL_TEST_TOKEN")
        with mock.patch.dict(os.environ, {"SEMANTIC_MODEL_TEST_TOKEN": "fresh"}):
            self.assertEqual(await provider.refresh_token(), "fresh")


# ---------------------------------------------------------------------------
# Retry and auth
# ---------------------------------------------------------------------------

class TestRequestRetry(unittest.IsolatedAsyncioTestCase):

    async def test_retries_server_errors_with_backoff(self):
        client = ScriptedClient([(500, {}), (503, {}), _complete([["1", "a"]])])
        result = await client.query("SELECT 1")
        self.assertEqual(result.rows, [{"id": 1.0, "label": "a"}])
        self.assertEqual(client.sleeps, [0.5, 1.0])

    async def test_rate_limit_retries_exhausted(self):
        quota = (429, {"error": {"message": "Quota exceeded"}})
        client = ScriptedClient([quota] * 4, max_retries=3)
        with self.assertRaises(QueryExecutionError) as ctx:
            await client.query("SELECT 1")
        self.assertIn("BigQuery Query Error: Quota exceeded", ctx.exception.message)
        self.assertEqual(len(client.calls), 4)
        self.assertEqual(client.sleeps, [0.5, 1.0, 2.0])

    async def test_network_errors_retried(self):
        client = ScriptedClient([
            aiohttp.ClientConnectionError("reset"),
            asyncio.TimeoutError(),
            _complete([["2", "b"]]),
        ])
        result = await client.query("SELECT 1")
        self.assertEqual(result.row_count, 1)

    async def test_client_errors_not_retried(self):
        client = ScriptedClient([(400, {"error": {"message": "Syntax error at [1:8]"}})])
        with self.assertRaises(QueryExecutionError) as ctx:
            await client.query("SELEC 1")
        self.assertEqual(len(client.calls), 1)
        self.assertIn("Syntax error", ctx.exception.message)

    async def test_unauthorized_refreshes_once(self):
        client = ScriptedClient([(401, {}), _complete([["1", "a"]])])
        await client.query("SELECT 1")
        self.assertEqual(client.token_provider.refreshes, 1)
        self.assertEqual(client.calls[0]["headers"]["Authorization"], "Bearer tok-1")
        self.assertEqual(client.calls[1]["headers"]["Authorization"], "Bearer tok-2")

    async def test_unauthorized_after_refresh_fails(self):
        client = ScriptedClient([(401, {}), (401, {}), _complete([])])
        with self.assertRaises(WarehouseAuthError) as ctx:
            await client.query("SELECT 1")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(client.token_provider.refreshes, 1)
        self.assertEqual(len(client.calls), 2)


# ---------------------------------------------------------------------------
# Job polling and paging
# ---------------------------------------------------------------------------

class TestPolling(unittest.IsolatedAsyncioTestCase):

    async def test_polls_until_complete(self):
        pending = (200, {"jobComplete": False, "jobReference": {"jobId": "job-9", "location": "EU"}})
        client = ScriptedClient([pending, (200, {"jobComplete": False}), _complete([["1", "a"]], job_id="job-9")])
        result = await client.query("SELECT 1")

        self.assertEqual(result.job_id, "job-9")
        self.assertEqual(client.sleeps, [1.0, 1.5])
        poll = client.calls[1]
        self.assertEqual(poll["method"], "GET")
        self.assertTrue(poll["url"].endswith("/projects/acme/queries/job-9"))
        self.assertEqual(poll["params"]["location"], "EU")

    async def test_poll_backoff_is_capped(self):
        pending = (200, {"jobComplete": False, "jobReference": {"jobId": "job-1"}})
        client = ScriptedClient([pending] * 4 + [_complete([])], poll_initial=2.0, poll_max=3.0)
        await client.query("SELECT 1")
        self.assertEqual(client.sleeps, [2.0, 3.0, 3.0, 3.0])

    async def test_job_timeout(self):
        pending = (200, {"jobComplete": False, "jobReference": {"jobId": "job-1"}})
        client = ScriptedClient([pending, pending], poll_initial=1.0, query_timeout=2.0)
        with self.assertRaises(QueryExecutionError) as ctx:
            await client.query("SELECT 1")
        self.assertEqual(ctx.exception.message, "BigQuery job failed to complete in time.")

    async def test_empty_first_page_follows_page_token(self):
        first = _complete([], total=2, pageToken="page-2")
        second = (200, {"rows": [_raw(["1", "a"]), _raw(["2", "b"])]})
        client = ScriptedClient([first, second])
        result = await client.query("SELECT 1")
        self.assertEqual([r["id"] for r in result.rows], [1.0, 2.0])
        self.assertEqual(client.calls[1]["params"]["pageToken"], "page-2")


class TestChunkedFetch(unittest.IsolatedAsyncioTestCase):

    async def test_rows_reassembled_in_order(self):
        client = PagedClient([str(v) for v in range(7)], first_page=1, page_size=1, chunk_size=2, concurrency=3)
        received = []
        result = await client.execute_query("SELECT id, label FROM t", on_rows=received.extend)

        self.assertEqual([r["id"] for r in result["data"]], [float(v) for v in range(7)])
        self.assertEqual(result["columns"], ["id", "label"])
        self.assertEqual(result["row_count"], 7)
        self.assertEqual(len(received), 7)
        self.assertEqual(sorted(client.start_indexes), list(range(1, 7)))

    async def test_limit_bounds_fetch(self):
        client = PagedClient([str(v) for v in range(10)], first_page=2, page_size=5, chunk_size=2)
        result = await client.query("SELECT id FROM t", limit=5)
        self.assertEqual(result.row_count, 5)
        self.assertEqual(sorted(client.start_indexes), [2, 4])

    async def test_short_chunk_is_an_error(self):
        client = ScriptedClient([_complete([["1", "a"], ["2", "b"]], total=5), (200, {"rows": []})])
        with self.assertRaises(QueryExecutionError) as ctx:
            await client.query("SELECT id, label FROM t")
        self.assertEqual(ctx.exception.message, "BigQuery returned 2 of 5 rows")
        self.assertEqual(client.calls[1]["params"]["startIndex"], 2)


class TestCancellation(unittest.IsolatedAsyncioTestCase):

    async def test_cancel_before_start(self):
        client = ScriptedClient([])
        cancel = asyncio.Event()
        cancel.set()
        with self.assertRaises(QueryCancelledError) as ctx:
            await client.query("SELECT 1", cancel_event=cancel)
        self.assertEqual(ctx.exception.rows_delivered, 0)
        self.assertEqual(client.calls, [])

    async def test_rows_delivered_matches_callback(self):
        client = PagedClient([str(v) for v in range(10)], first_page=1, page_size=1, chunk_size=3, concurrency=1)
        cancel = asyncio.Event()
        received = []

        def on_rows(rows):
            received.extend(rows)
            if len(received) >= 3:
                cancel.set()

        with self.assertRaises(QueryCancelledError) as ctx:
            await client.query("SELECT id FROM t", on_rows=on_rows, cancel_event=cancel)

        self.assertEqual(ctx.exception.code, "QUERY_CANCELLED")
        self.assertEqual(ctx.exception.rows_delivered, len(received))
        self.assertEqual(len(received), 3)


if __name__ == "__main__":
    unittest.main()
