"""
core/errors.py -- Exception hierarchy for Gatehouse.

Every error raised by the library derives from GatehouseError and carries a
stable string `code`. Callers branch on the class (or on `code`), never on the
message text.

Families:
  Validation / Conflict / Unauthorized -- caller-facing workflow outcomes.
      Raised immediately, never retried. Messages are the most generic the
      category allows so they never reveal whether an account or token exists.

  NotConfigured -- an operator bug (e.g. an OAuth provider with no client
      credentials). Fatal to the call that hit it.

  StoreConfig -- bad connection parameters for the query executor, raised
      eagerly at construction time.

  Transport (Network / Timeout / RateLimit) -- retried inside
      db.executor.ResilientExecutor and only surfaced after retries run out.

  QueryRejected -- the store understood the request and refused the SQL.
      Not retried.

Security: `details` is for server-side logs only. to_dict() exposes code and
message and nothing else, so no error ever leaks another user's data.

Layer rule: core/ is the kernel. No imports from db/ or auth/.
"""

from __future__ import annotations

from typing import Any


class GatehouseError(Exception):
    """Base class for every error raised by Gatehouse."""

    code: str = "GATEHOUSE_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, str]:
        """Caller-safe representation; details stay server-side."""
        return {"code": self.code, "message": self.message}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# ---------------------------------------------------------------------------
# Workflow outcomes
# ---------------------------------------------------------------------------


class ValidationError(GatehouseError):
    """Bad input shape (email, password policy). Surfaced verbatim."""

    code = "VALIDATION_ERROR"


class ConflictError(GatehouseError):
    """The request conflicts with existing state (EMAIL_EXISTS, ALREADY_VERIFIED)."""

    code = "CONFLICT"


class UnauthorizedError(GatehouseError):
    """Bad credentials or an invalid / expired single-use token."""

    code = "UNAUTHORIZED"


class NotConfiguredError(GatehouseError):
    """A feature was invoked without the settings it needs."""

    code = "NOT_CONFIGURED"


class OAuthError(UnauthorizedError):
    """An OAuth callback was rejected.

    `code` is the reason: STATE_MISMATCH, STATE_EXPIRED, MISSING_CODE_VERIFIER,
    EXCHANGE_FAILED, PROFILE_FETCH_FAILED or EMAIL_UNAVAILABLE.
    """

    code = "OAUTH_FAILED"


class InternalError(GatehouseError):
    """The store returned something the core cannot make sense of."""

    code = "INTERNAL_ERROR"


# ---------------------------------------------------------------------------
# Query executor errors
# ---------------------------------------------------------------------------


class StoreConfigError(GatehouseError):
    """Invalid executor / backend configuration. Raised at construction."""

    code = "STORE_CONFIG_ERROR"


class TransportError(GatehouseError):
    """Base for failures in reaching the store. Subclasses may be retried."""

    code = "STORE_TRANSPORT_ERROR"


class StoreNetworkError(TransportError):
    """Transport or HTTP failure.

    status_code is None when no response was received at all (connection
    refused, DNS failure, dropped connection).
    """

    code = "STORE_NETWORK_ERROR"

    def __init__(self, message: str, status_code: int | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class StoreTimeoutError(TransportError):
    """A single store call exceeded the configured timeout."""

    code = "STORE_TIMEOUT"


class StoreRateLimitError(TransportError):
    """The store asked us to slow down.

    retry_after is the store-suggested delay in seconds, or None when the
    store did not say.
    """

    code = "STORE_RATE_LIMITED"

    def __init__(self, retry_after: float | None = None, details: dict[str, Any] | None = None) -> None:
        if retry_after is None:
            message = "Rate limit exceeded"
        else:
            message = f"Rate limit exceeded. Retry after {retry_after:g}s"
        super().__init__(message, details=details)
        self.retry_after = retry_after


class QueryRejectedError(GatehouseError):
    """The store reported a semantic SQL error (constraint, syntax, ...)."""

    code = "QUERY_REJECTED"

    def __init__(
        self,
        message: str,
        store_code: str | None = None,
        hints: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.store_code = store_code
        self.hints = hints or []
