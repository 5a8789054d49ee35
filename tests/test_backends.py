"""Unit tests for db/backends.py -- HTTP and SQLAlchemy store backends.

Covers:
- HttpSqlBackend: eager config validation (URL, ids, API key)
- HttpSqlBackend: request shape (endpoint, headers, JSON body, timeout)
- HttpSqlBackend: 429 -> StoreRateLimitError with Retry-After
- HttpSqlBackend: 5xx / 4xx -> StoreNetworkError with status, body truncated to 500 chars
- HttpSqlBackend: requests timeout / connection failure mapping
- HttpSqlBackend: success=false -> QueryRejectedError with store code and hints
- HttpSqlBackend: rowCount falls back to len(rows)
- EngineSqlBackend: $n placeholders, rows as dicts, row counts
- EngineSqlBackend: constraint violations -> QueryRejectedError
- EngineSqlBackend: transaction() commits or rolls back as one unit
- EngineSqlBackend: a SQLite write blocked past the call timeout -> StoreTimeoutError
"""

import json
import sqlite3

import pytest
import requests

from core.errors import (
    InternalError,
    QueryRejectedError,
    StoreConfigError,
    StoreNetworkError,
    StoreRateLimitError,
    StoreTimeoutError,
)
from db.backends import EngineSqlBackend, HttpSqlBackend

APP_ID = "5f2b8c9e-1d2a-4c3b-9e8f-0a1b2c3d4e5f"
SCHEMA_ID = "app_0a1b2c3d-4e5f-4a6b-8c7d-9e0f1a2b3c4d"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def _response(status: int, payload=None, text: str = "", headers: dict | None = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp.reason = "Test"
    body = json.dumps(payload) if payload is not None else text
    resp._content = body.encode("utf-8")
    resp.headers.update(headers or {})
    return resp


class FakeSession:
    """Stands in for requests.Session; replays scripted outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []
        self.closed = False

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


def _backend(*outcomes, **kwargs) -> tuple[HttpSqlBackend, FakeSession]:
    session = FakeSession(*outcomes)
    backend = HttpSqlBackend(app_id=APP_ID, api_key="key-123", session=session, **kwargs)
    return backend, session


# ---------------------------------------------------------------------------
# HttpSqlBackend -- configuration
# ---------------------------------------------------------------------------


class TestHttpConfig:
    def test_invalid_base_url(self):
        with pytest.raises(StoreConfigError) as exc_info:
            HttpSqlBackend(app_id=APP_ID, api_key="k", base_url="not-a-url", session=FakeSession())
        assert exc_info.value.details["field"] == "base_url"

    def test_invalid_app_id(self):
        with pytest.raises(StoreConfigError) as exc_info:
            HttpSqlBackend(app_id="not-a-uuid", api_key="k", session=FakeSession())
        assert exc_info.value.details["field"] == "app_id"

    def test_empty_api_key(self):
        with pytest.raises(StoreConfigError) as exc_info:
            HttpSqlBackend(app_id=APP_ID, api_key="   ", session=FakeSession())
        assert exc_info.value.details["field"] == "api_key"

    def test_prefixed_schema_id_accepted(self):
        backend, _ = _backend(app_schema_id=SCHEMA_ID)
        assert backend.app_schema_id == SCHEMA_ID

    def test_schema_id_defaults_to_app_id(self):
        backend, _ = _backend()
        assert backend.app_schema_id == APP_ID


# ---------------------------------------------------------------------------
# HttpSqlBackend -- request and response mapping
# ---------------------------------------------------------------------------


class TestHttpExecute:
    def test_request_shape(self):
        backend, session = _backend(
            _response(200, {"success": True, "rows": [{"id": 1}], "rowCount": 1}),
            app_schema_id=SCHEMA_ID,
            base_url="https://store.example/",
        )
        result = backend.execute("SELECT * FROM users WHERE id = $1", ["u1"], timeout=5)

        call = session.calls[0]
        assert call["url"] == f"https://store.example/api/apps/{APP_ID}/postgresql/query"
        assert call["json"] == {"sql": "SELECT * FROM users WHERE id = $1", "params": ["u1"]}
        assert call["headers"]["X-API-Key"] == "key-123"
        assert call["headers"]["X-App-ID"] == SCHEMA_ID
        assert call["timeout"] == 5
        assert result.rows == [{"id": 1}]
        assert result.row_count == 1

    def test_row_count_falls_back_to_rows(self):
        backend, _ = _backend(_response(200, {"success": True, "rows": [{"a": 1}, {"a": 2}]}))
        assert backend.execute("SELECT 1", [], timeout=1).row_count == 2

    def test_rate_limit_with_retry_after(self):
        backend, _ = _backend(_response(429, text="slow down", headers={"Retry-After": "7"}))
        with pytest.raises(StoreRateLimitError) as exc_info:
            backend.execute("SELECT 1", [], timeout=1)
        assert exc_info.value.retry_after == 7.0

    def test_rate_limit_without_retry_after(self):
        backend, _ = _backend(_response(429))
        with pytest.raises(StoreRateLimitError) as exc_info:
            backend.execute("SELECT 1", [], timeout=1)
        assert exc_info.value.retry_after is None

    def test_server_error_keeps_status_and_truncates_body(self):
        backend, _ = _backend(_response(503, text="x" * 2000))
        with pytest.raises(StoreNetworkError) as exc_info:
            backend.execute("SELECT 1", [], timeout=1)
        assert exc_info.value.status_code == 503
        assert len(exc_info.value.details["response_text"]) == 500

    def test_client_error(self):
        backend, _ = _backend(_response(403, text="forbidden"))
        with pytest.raises(StoreNetworkError) as exc_info:
            backend.execute("SELECT 1", [], timeout=1)
        assert exc_info.value.status_code == 403

    def test_timeout(self):
        backend, _ = _backend(requests.Timeout("read timed out"))
        with pytest.raises(StoreTimeoutError):
            backend.execute("SELECT 1", [], timeout=1)

    def test_connection_error_has_no_status(self):
        backend, _ = _backend(requests.ConnectionError("refused"))
        with pytest.raises(StoreNetworkError) as exc_info:
            backend.execute("SELECT 1", [], timeout=1)
        assert exc_info.value.status_code is None

    def test_query_rejected(self):
        payload = {
            "success": False,
            "error": {"code": "42P01", "message": 'relation "nope" does not exist', "hints": ["check the table"]},
        }
        backend, _ = _backend(_response(200, payload))
        with pytest.raises(QueryRejectedError) as exc_info:
            backend.execute("SELECT * FROM nope", [], timeout=1)
        assert exc_info.value.store_code == "42P01"
        assert exc_info.value.hints == ["check the table"]

    def test_non_json_body(self):
        backend, _ = _backend(_response(200, text="<html>proxy</html>"))
        with pytest.raises(InternalError):
            backend.execute("SELECT 1", [], timeout=1)

    def test_close_closes_session(self):
        backend, session = _backend()
        backend.close()
        assert session.closed is True


# ---------------------------------------------------------------------------
# EngineSqlBackend
# ---------------------------------------------------------------------------


@pytest.fixture
def engine_backend():
    backend = EngineSqlBackend("sqlite:///:memory:")
    backend.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT UNIQUE NOT NULL)", [], timeout=5)
    yield backend
    backend.close()


class TestEngineBackend:
    def test_positional_placeholders(self, engine_backend):
        engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "alpha"], timeout=5)
        result = engine_backend.execute("SELECT id, name FROM items WHERE name = $1", ["alpha"], timeout=5)
        assert result.rows == [{"id": 1, "name": "alpha"}]
        assert result.row_count == 1

    def test_many_placeholders(self, engine_backend):
        """$10 must not be read as $1 followed by a literal 0."""
        values = list(range(1, 11))
        sql = "SELECT " + ", ".join(f"${i} AS c{i}" for i in values)
        row = engine_backend.execute(sql, values, timeout=5).rows[0]
        assert row["c10"] == 10
        assert row["c1"] == 1

    def test_row_count_for_writes(self, engine_backend):
        for i, name in enumerate(["a", "b", "c"]):
            engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [i, name], timeout=5)
        result = engine_backend.execute("DELETE FROM items WHERE id >= $1", [1], timeout=5)
        assert result.row_count == 2
        assert result.rows == []

    def test_unique_violation_is_query_rejected(self, engine_backend):
        engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "dup"], timeout=5)
        with pytest.raises(QueryRejectedError) as exc_info:
            engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [2, "dup"], timeout=5)
        assert "UNIQUE" in exc_info.value.message

    def test_transaction_commits(self, engine_backend):
        with engine_backend.transaction():
            engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "one"], timeout=5)
            engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [2, "two"], timeout=5)
        assert engine_backend.execute("SELECT COUNT(*) AS n FROM items", [], timeout=5).rows[0]["n"] == 2

    def test_transaction_rolls_back_on_error(self, engine_backend):
        with pytest.raises(RuntimeError):
            with engine_backend.transaction():
                engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "one"], timeout=5)
                raise RuntimeError("boom")
        assert engine_backend.execute("SELECT COUNT(*) AS n FROM items", [], timeout=5).rows[0]["n"] == 0

    def test_nested_transaction_joins_outer(self, engine_backend):
        with pytest.raises(RuntimeError):
            with engine_backend.transaction():
                with engine_backend.transaction():
                    engine_backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "inner"], timeout=5)
                raise RuntimeError("outer fails")
        assert engine_backend.execute("SELECT COUNT(*) AS n FROM items", [], timeout=5).rows[0]["n"] == 0


class TestEngineBackendLocking:
    @pytest.fixture
    def file_backend(self, tmp_path):
        path = tmp_path / "store.db"
        backend = EngineSqlBackend(f"sqlite:///{path}")
        backend.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL)", [], timeout=5)
        yield backend, path
        backend.close()

    def test_lock_wait_past_timeout_is_store_timeout(self, file_backend):
        backend, path = file_backend
        writer = sqlite3.connect(path, isolation_level=None)
        try:
            writer.execute("BEGIN IMMEDIATE")
            with pytest.raises(StoreTimeoutError) as exc_info:
                backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "blocked"], timeout=0.05)
            assert exc_info.value.details == {"timeout": 0.05}
        finally:
            writer.execute("ROLLBACK")
            writer.close()

    def test_write_succeeds_once_lock_released(self, file_backend):
        backend, path = file_backend
        writer = sqlite3.connect(path, isolation_level=None)
        writer.execute("BEGIN IMMEDIATE")
        writer.execute("ROLLBACK")
        writer.close()
        result = backend.execute("INSERT INTO items (id, name) VALUES ($1, $2)", [1, "free"], timeout=0.05)
        assert result.row_count == 1
