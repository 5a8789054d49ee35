"""
db/executor.py -- Resilient query executor: timeout, retry with backoff, typed errors.

ResilientExecutor wraps a SqlBackend and is the only object the credential
store talks to. It adds:

  Timeout: every backend call receives the configured timeout and must raise
      StoreTimeoutError when it is exceeded.

  Retry with exponential backoff: timeouts, rate limits and server-side
      (5xx) or connection-level network failures are retried up to
      max_retries times. The delay before retry n (0-based) is
      base_delay * 2**n. A rate-limit error that carries retry_after uses that
      delay instead. Everything else -- QueryRejectedError, 4xx network
      errors -- propagates on the first occurrence.

  Exhaustion: after the last retry the final transport error propagates
      unchanged, so callers can still tell Timeout from RateLimit.

Retry sleeps block only the calling unit of work. There are no background
threads; cancellation beyond the per-call timeout is the backend's business.

Inside transaction() on a backend with real transactions, retries are off:
a failed statement has already aborted the transaction, so replaying it
alone would be wrong. The whole unit of work fails instead.

Layer rule: db/ imports from core/ only.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from core.config import Settings
from core.errors import (
    StoreConfigError,
    StoreNetworkError,
    StoreRateLimitError,
    StoreTimeoutError,
    TransportError,
)
from core.validation import validate_positive, validate_range
from db.backends import EngineSqlBackend, HttpSqlBackend, QueryResult, SqlBackend

logger = logging.getLogger("gatehouse.db.executor")

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 0.1


def is_retryable(exc: Exception) -> bool:
    """True for the transport failures worth another attempt."""
    if isinstance(exc, (StoreRateLimitError, StoreTimeoutError)):
        return True
    if isinstance(exc, StoreNetworkError):
        # No status: the request never got an answer (refused, reset, DNS).
        return exc.status_code is None or exc.status_code >= 500
    return False


class ResilientExecutor:
    """Run SQL through a backend with bounded time and bounded retries.

    Usage:
        executor = ResilientExecutor(EngineSqlBackend("sqlite:///:memory:"))
        row = executor.fetch_one("SELECT * FROM users WHERE email = $1", ["a@b.co"])

    sleep is injectable so tests can record delays instead of waiting.
    """

    def __init__(
        self,
        backend: SqlBackend,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = validate_positive(timeout, "timeout")
        self.max_retries = int(validate_range(max_retries, 0, 5, "max_retries"))
        if base_delay < 0:
            raise StoreConfigError(f"base_delay cannot be negative, got {base_delay}", details={"field": "base_delay"})
        self.base_delay = base_delay
        self._backend = backend
        self._sleep = sleep
        self._in_transaction: ContextVar[bool] = ContextVar(f"gatehouse_tx_{id(self)}", default=False)

        logger.debug(
            "ResilientExecutor initialized (backend=%s, timeout=%gs, max_retries=%d)",
            type(backend).__name__,
            self.timeout,
            self.max_retries,
        )

    @property
    def backend(self) -> SqlBackend:
        return self._backend

    def _delay_for(self, exc: TransportError, attempt: int) -> float:
        if isinstance(exc, StoreRateLimitError) and exc.retry_after is not None:
            return exc.retry_after
        return self.base_delay * (2**attempt)

    def execute(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Execute one statement, retrying transient transport failures.

        Raises:
            StoreTimeoutError, StoreRateLimitError, StoreNetworkError: after
                retries are exhausted (or at once when not retryable).
            QueryRejectedError: at once; never retried.
        """
        params = tuple(params)
        retries_allowed = not (self._in_transaction.get() and self._backend.supports_transactions)
        attempt = 0
        while True:
            try:
                return self._backend.execute(sql, params, self.timeout)
            except TransportError as exc:
                if not retries_allowed or not is_retryable(exc):
                    raise
                if attempt >= self.max_retries:
                    logger.error("Query failed after %d retries: %s", self.max_retries, exc.code)
                    raise
                delay = self._delay_for(exc, attempt)
                logger.warning(
                    "Query failed (%s), retrying in %.3fs (attempt %d/%d)",
                    exc.code,
                    delay,
                    attempt + 1,
                    self.max_retries,
                )
                self._sleep(delay)
                attempt += 1

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        rows = self.execute(sql, params).rows
        return rows[0] if rows else None

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        return self.execute(sql, params).rows

    @contextmanager
    def transaction(self) -> Iterator["ResilientExecutor"]:
        """Group statements into one unit of work.

        Atomic on backends with transactions (EngineSqlBackend); sequential
        statements on the remote HTTP store.
        """
        token = self._in_transaction.set(True)
        try:
            with self._backend.transaction():
                yield self
        finally:
            self._in_transaction.reset(token)

    def close(self) -> None:
        self._backend.close()


def create_executor(settings: Settings) -> ResilientExecutor:
    """Build the executor described by settings.

    A configured store_app_id selects the remote HTTP store; otherwise the
    local SQLAlchemy engine at database_url is used.
    """
    backend: SqlBackend
    if settings.store_app_id:
        backend = HttpSqlBackend(
            app_id=settings.store_app_id,
            api_key=settings.store_api_key,
            base_url=settings.store_base_url,
            app_schema_id=settings.store_app_schema_id or None,
        )
    else:
        backend = EngineSqlBackend(settings.database_url)
    return ResilientExecutor(
        backend,
        timeout=settings.store_timeout_seconds,
        max_retries=settings.store_max_retries,
        base_delay=settings.store_retry_base_delay,
    )
