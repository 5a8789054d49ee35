"""
db/backends.py -- Store backends behind the resilient query executor.

A backend knows how to run ONE parameterized statement against one kind of
relational store and how to translate that store's failures into the typed
errors in core/errors.py. It never retries; retry policy lives in
db/executor.py.

Two backends:
  HttpSqlBackend   -- a remote PostgreSQL-over-HTTP API (POST JSON
                      {"sql", "params"}, receive {"success", "rows",
                      "rowCount", "error"}). Uses a shared requests.Session
                      for connection pooling.
  EngineSqlBackend -- a local store through a SQLAlchemy Core engine
                      (SQLite for development and tests, PostgreSQL in
                      production). Supports real transactions.

SQL dialect: statements use PostgreSQL positional placeholders ($1, $2, ...)
so the same text runs unchanged against both backends. EngineSqlBackend
rewrites them into SQLAlchemy bound parameters -- values are always bound,
never interpolated.

Layer rule: db/ imports from core/ only. Never from auth/.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

import requests
from sqlalchemy import create_engine, event, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine

from core.errors import (
    InternalError,
    QueryRejectedError,
    StoreNetworkError,
    StoreRateLimitError,
    StoreTimeoutError,
)
from core.validation import validate_non_empty, validate_url, validate_uuid

logger = logging.getLogger("gatehouse.db.backends")

DEFAULT_BASE_URL = "https://storage.mechdna.net"

# Response bodies are kept in error details for diagnosis, truncated so a
# misbehaving proxy cannot flood the logs.
_MAX_ERROR_TEXT = 500

_PLACEHOLDER_RE = re.compile(r"\$(\d+)")


@dataclass
class QueryResult:
    """Rows as plain dicts plus the affected/returned row count."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0


class SqlBackend(ABC):
    """One parameterized statement in, one QueryResult out."""

    # True when transaction() gives real multi-statement atomicity.
    supports_transactions: bool = False

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any], timeout: float) -> QueryResult:
        """Run a statement. Raises Transport or QueryRejected errors."""

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group statements. The default runs them sequentially, unwrapped."""
        yield

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Remote HTTP store
# ---------------------------------------------------------------------------


def _parse_retry_after(value: str | None) -> float | None:
    """Retry-After in seconds. HTTP-date values are ignored (None)."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class HttpSqlBackend(SqlBackend):
    """Backend for the remote PostgreSQL-over-HTTP store.

    Usage:
        backend = HttpSqlBackend(app_id="app_...", api_key="...")
        result = backend.execute("SELECT * FROM users WHERE id = $1", [user_id], timeout=30)

    Connection parameters are validated here, eagerly: a bad URL or id fails
    at construction with StoreConfigError rather than on the first query.
    """

    def __init__(
        self,
        app_id: str,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        app_schema_id: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = validate_url(base_url, "base_url")
        self.app_id = validate_uuid(validate_non_empty(app_id, "app_id"), "app_id")
        # The schema id defaults to the app id (the common single-schema case).
        schema_id = app_schema_id or app_id
        self.app_schema_id = validate_uuid(validate_non_empty(schema_id, "app_schema_id"), "app_schema_id")
        self._api_key = validate_non_empty(api_key, "api_key")

        if session is None:
            session = requests.Session()
            # Known endpoint: a few hops is generous and limits redirect-based SSRF.
            session.max_redirects = 3
        self._session = session
        self._url = f"{self.base_url.rstrip('/')}/api/apps/{self.app_id}/postgresql/query"

        logger.debug("HttpSqlBackend initialized for %s", self.base_url)

    def execute(self, sql: str, params: Sequence[Any], timeout: float) -> QueryResult:
        logger.debug("Executing SQL over HTTP (params=%d, sql_length=%d)", len(params), len(sql))
        try:
            resp = self._session.post(
                self._url,
                json={"sql": sql, "params": list(params)},
                headers={
                    "Content-Type": "application/json",
                    "X-API-Key": self._api_key,
                    "X-App-ID": self.app_schema_id,
                },
                timeout=timeout,
            )
        except requests.Timeout as exc:
            logger.error("Store query timed out after %gs", timeout)
            raise StoreTimeoutError(f"Query timed out after {timeout:g}s", details={"timeout": timeout}) from exc
        except requests.RequestException as exc:
            raise StoreNetworkError(f"Could not reach store: {exc}") from exc

        if resp.status_code == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            logger.warning("Rate limited by store (retry_after=%s)", retry_after)
            raise StoreRateLimitError(retry_after, details={"status_code": 429})

        if not resp.ok:
            body = resp.text or ""
            logger.error("HTTP error from store: %s %s (%d bytes)", resp.status_code, resp.reason, len(body))
            raise StoreNetworkError(
                f"HTTP {resp.status_code}: {resp.reason}",
                status_code=resp.status_code,
                details={"response_text": body[:_MAX_ERROR_TEXT]},
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise InternalError("Store returned a response that is not JSON") from exc

        if payload.get("success") is False:
            error = payload.get("error") or {}
            logger.error("Store rejected query: %s", error.get("code"))
            raise QueryRejectedError(
                error.get("message") or "Unknown error",
                store_code=error.get("code"),
                hints=error.get("hints"),
            )

        rows = payload.get("rows") or []
        row_count = payload.get("rowCount")
        if row_count is None:
            row_count = len(rows)
        logger.debug("Query ok (row_count=%d, rows=%d)", row_count, len(rows))
        return QueryResult(rows=rows, row_count=row_count)

    def close(self) -> None:
        self._session.close()


# ---------------------------------------------------------------------------
# Local SQLAlchemy store
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _bind_positional(sql: str, params: Sequence[Any]) -> tuple[str, dict[str, Any]]:
    """Rewrite $1..$n into :p1..:pn and build the matching bind dict."""
    bound = {f"p{i}": value for i, value in enumerate(params, start=1)}
    return _PLACEHOLDER_RE.sub(r":p\1", sql), bound


def _is_statement_timeout(exc: sa_exc.DBAPIError) -> bool:
    # psycopg raises QueryCanceled (an OperationalError) when statement_timeout
    # fires; sqlite reports "database is locked" once busy_timeout runs out.
    message = str(exc.orig)
    return (
        type(exc.orig).__name__ == "QueryCanceled"
        or "statement timeout" in message
        or "database is locked" in message
    )


class EngineSqlBackend(SqlBackend):
    """Backend over a SQLAlchemy Core engine.

    Usage:
        backend = EngineSqlBackend("sqlite:///:memory:")
        backend = EngineSqlBackend("postgresql+psycopg://user:pw@host/db")

    Statements outside transaction() each run in their own short transaction.
    Inside transaction(), every statement issued from the same context shares
    one connection and commits or rolls back together.
    """

    supports_transactions = True

    def __init__(self, url_or_engine: str | Engine) -> None:
        if isinstance(url_or_engine, Engine):
            self.engine = url_or_engine
        else:
            connect_args: dict = {}
            if url_or_engine.startswith("sqlite"):
                connect_args["check_same_thread"] = False
            self.engine = create_engine(url_or_engine, connect_args=connect_args)
            if url_or_engine.startswith("sqlite"):
                event.listen(self.engine, "connect", _set_wal_mode)
        self._bound: ContextVar[Connection | None] = ContextVar(f"gatehouse_conn_{id(self)}", default=None)

    def execute(self, sql: str, params: Sequence[Any], timeout: float) -> QueryResult:
        statement, bound = _bind_positional(sql, params)
        try:
            conn = self._bound.get()
            if conn is not None:
                return self._run(conn, statement, bound, timeout)
            with self.engine.begin() as conn:
                return self._run(conn, statement, bound, timeout)
        except sa_exc.TimeoutError as exc:
            raise StoreTimeoutError(f"Query timed out after {timeout:g}s", details={"timeout": timeout}) from exc
        except sa_exc.OperationalError as exc:
            if _is_statement_timeout(exc):
                raise StoreTimeoutError(f"Query timed out after {timeout:g}s", details={"timeout": timeout}) from exc
            raise StoreNetworkError(f"Store unavailable: {exc.orig}") from exc
        except sa_exc.DBAPIError as exc:
            raise QueryRejectedError(str(exc.orig), store_code=getattr(exc.orig, "pgcode", None)) from exc

    def _run(self, conn: Connection, statement: str, bound: dict[str, Any], timeout: float) -> QueryResult:
        # Integer milliseconds computed here, never caller input.
        timeout_ms = int(timeout * 1000)
        if conn.dialect.name == "postgresql":
            conn.exec_driver_sql(f"SET LOCAL statement_timeout = {timeout_ms}")
        elif conn.dialect.name == "sqlite":
            # Bounds how long a statement waits on another writer's lock.
            conn.exec_driver_sql(f"PRAGMA busy_timeout = {timeout_ms}")
        result = conn.execute(text(statement), bound)
        if result.returns_rows:
            rows = [dict(row) for row in result.mappings().all()]
            return QueryResult(rows=rows, row_count=len(rows))
        return QueryResult(rows=[], row_count=max(result.rowcount, 0))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if self._bound.get() is not None:
            # Nested block joins the outer transaction.
            yield
            return
        try:
            conn = self.engine.connect()
        except sa_exc.DBAPIError as exc:
            raise StoreNetworkError(f"Store unavailable: {exc.orig}") from exc
        with conn, conn.begin():
            token = self._bound.set(conn)
            try:
                yield
            finally:
                self._bound.reset(token)

    def close(self) -> None:
        self.engine.dispose()
