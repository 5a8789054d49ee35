"""
auth/store.py -- Credential and session persistence over the resilient executor.

Pattern: Repository + Data Mapper.
AuthStore is the repository; _row_to_user / _row_to_session / ... are the
mappers. Workflow code never touches SQL directly.

Every statement goes through db.executor.ResilientExecutor, so the same
store runs against the remote HTTP SQL API and a local SQLAlchemy engine.
SQL uses PostgreSQL positional placeholders ($1, $2, ...).

Security:
  All values are bound parameters. The only interpolated SQL fragment is a
  provider id column, and it comes from OAuthProvider.id_column, never from
  caller input.

  Emails are normalized (lowercase, trimmed) by normalize_email() and only
  there. Every lookup and insert goes through it.

  Session validity is decided by ONE query (join + expires_at > now). There
  is no separate "is it expired?" step that could race with use.

  Password changes must be followed by delete_all_user_sessions(). The store
  provides the bulk delete; auth/workflows.py enforces the ordering.

Timestamps: stored as fixed-width ISO-8601 UTC strings
(2024-01-01T00:00:00.000000+00:00) so string comparison in SQL orders them
correctly on every backend. The clock is injectable for expiry tests.

Layer rule: imports from core/ and db/ are allowed. No imports from workflows.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

from auth.models import (
    EmailVerificationToken,
    OAuthProfile,
    OAuthProvider,
    PasswordResetToken,
    RequestContext,
    Session,
    User,
)
from auth.tokens import generate_session_id, generate_token
from core.errors import ConflictError, InternalError, QueryRejectedError, ValidationError
from db.executor import ResilientExecutor

logger = logging.getLogger("gatehouse.auth.store")

DEFAULT_SESSION_EXPIRES_IN = 2_592_000  # 30 days, seconds
VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)

_USER_FIELDS = (
    "id",
    "email",
    "email_verified",
    "password_hash",
    "github_id",
    "google_id",
    "name",
    "avatar_url",
    "created_at",
    "updated_at",
)
_USER_COLUMNS = ", ".join(_USER_FIELDS)
_USER_COLUMNS_JOINED = ", ".join(f"u.{name}" for name in _USER_FIELDS)

_SELECT_USER = "SELECT " + _USER_COLUMNS + " FROM users"
_SELECT_SESSION = "SELECT id, user_id, expires_at, ip_address, user_agent, created_at FROM sessions"
_SELECT_VERIFICATION = "SELECT token, user_id, email, expires_at, created_at FROM email_verification_tokens"
_SELECT_RESET = "SELECT token, user_id, expires_at, created_at FROM password_reset_tokens"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical form of an email address: trimmed and lowercased."""
    return email.strip().lower()


def _to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Any) -> datetime | None:
    """Parse a timestamp read back from the store into an aware UTC datetime.

    Local stores return the ISO strings written by _to_iso(); PostgreSQL
    TIMESTAMPTZ columns come back over HTTP as ISO strings with a Z or an
    offset. Both are accepted.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text_value = str(value)
        if text_value.endswith("Z"):
            text_value = text_value[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text_value)
        except ValueError as exc:
            raise InternalError(f"Store returned an unreadable timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_unique_violation(exc: QueryRejectedError) -> bool:
    """True when the store rejected a statement for a duplicate key."""
    if exc.store_code == "23505":
        return True
    message = exc.message.lower()
    return "unique constraint" in message or "duplicate key" in message


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, sessions and single-use tokens.

    Usage:
        store = AuthStore(ResilientExecutor(EngineSqlBackend("sqlite:///:memory:")))
        user = store.create_user("a@example.com", password_hash=hasher.hash("pw"))
        session_id = store.create_session(user.id)
        assert store.validate_session(session_id).id == user.id
    """

    def __init__(
        self,
        executor: ResilientExecutor,
        clock: Callable[[], datetime] = utc_now,
        session_expires_in: int = DEFAULT_SESSION_EXPIRES_IN,
    ) -> None:
        if session_expires_in <= 0:
            raise ValueError("session_expires_in must be positive")
        self._db = executor
        self._clock = clock
        self.session_expires_in = session_expires_in

    def now(self) -> datetime:
        """Current time from the injected clock (aware, UTC)."""
        return self._clock()

    def _now_iso(self) -> str:
        return _to_iso(self.now())

    @contextmanager
    def transaction(self) -> Iterator["AuthStore"]:
        """Run a group of store calls as one unit of work (see ResilientExecutor.transaction)."""
        with self._db.transaction():
            yield self

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def get_user_by_id(self, user_id: str) -> User | None:
        row = self._db.fetch_one(_SELECT_USER + " WHERE id = $1", [user_id])
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        """Look up a user by email. The email is normalized first."""
        row = self._db.fetch_one(_SELECT_USER + " WHERE email = $1", [normalize_email(email)])
        return _row_to_user(row) if row is not None else None

    def get_user_by_provider_id(self, provider: OAuthProvider, external_id: str) -> User | None:
        """Look up the user linked to a provider's stable account id."""
        sql = _SELECT_USER + f" WHERE {provider.id_column} = $1"  # noqa: S608 -- column from enum
        row = self._db.fetch_one(sql, [external_id])
        return _row_to_user(row) if row is not None else None

    def create_user(
        self,
        email: str,
        password_hash: str | None = None,
        email_verified: bool = False,
        name: str | None = None,
        avatar_url: str | None = None,
        provider_ids: dict[OAuthProvider, str] | None = None,
    ) -> User:
        """Insert a new user and return it.

        Raises:
            ValidationError(NO_CREDENTIAL): neither a password hash nor a
                provider id was given.
            QueryRejectedError: the store refused the insert (e.g. duplicate
                email; see is_unique_violation()).
        """
        provider_ids = {p: v for p, v in (provider_ids or {}).items() if v}
        if not password_hash and not provider_ids:
            raise ValidationError("A user needs a password or a linked provider", code="NO_CREDENTIAL")

        now = self.now()
        user = User(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            email_verified=bool(email_verified),
            password_hash=password_hash or None,
            github_id=provider_ids.get(OAuthProvider.GITHUB),
            google_id=provider_ids.get(OAuthProvider.GOOGLE),
            name=name,
            avatar_url=avatar_url,
            created_at=now,
            updated_at=now,
        )
        self._db.execute(
            "INSERT INTO users (" + _USER_COLUMNS + ") VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
            [
                user.id,
                user.email,
                user.email_verified,
                user.password_hash,
                user.github_id,
                user.google_id,
                user.name,
                user.avatar_url,
                _to_iso(now),
                _to_iso(now),
            ],
        )
        logger.info("User created (id=%s)", user.id)
        return user

    def update_password_hash(self, user_id: str, password_hash: str, reset_token: str | None = None) -> bool:
        """Replace a user's password hash. Returns False if nothing was updated.

        With reset_token, the update only applies while that reset token for
        this user still exists, so a consumer that lost the race for the
        token cannot write its password.
        """
        if reset_token is None:
            result = self._db.execute(
                "UPDATE users SET password_hash = $1, updated_at = $2 WHERE id = $3",
                [password_hash, self._now_iso(), user_id],
            )
        else:
            result = self._db.execute(
                "UPDATE users SET password_hash = $1, updated_at = $2 WHERE id = $3 "
                "AND EXISTS (SELECT 1 FROM password_reset_tokens WHERE token = $4 AND user_id = $3)",
                [password_hash, self._now_iso(), user_id, reset_token],
            )
        return result.row_count > 0

    def mark_email_verified(self, user_id: str) -> bool:
        result = self._db.execute(
            "UPDATE users SET email_verified = $1, updated_at = $2 WHERE id = $3",
            [True, self._now_iso(), user_id],
        )
        return result.row_count > 0

    def upsert_oauth_user(self, provider: OAuthProvider, profile: OAuthProfile) -> User:
        """Find, link or create the user for an OAuth profile.

        Resolution order:
          1. A user already carrying this provider id: refresh email, name and
             avatar from the profile.
          2. Else a user with the profile's email: link the provider id and
             fill only the profile fields that are still null.
          3. Else create an OAuth-only user (password_hash NULL).

        The provider id match must come first. A user who changed their email
        at the provider would otherwise be duplicated (or linked to a
        stranger's account). The verified flag is OR-ed in both update
        branches, so an OAuth login never unverifies an account.

        Raises ConflictError(EMAIL_EXISTS) when the refreshed email already
        belongs to a different user.
        """
        if not profile.email:
            raise ValidationError("OAuth profile has no email", code="INVALID_EMAIL")
        email = normalize_email(profile.email)
        column = provider.id_column

        with self.transaction():
            existing = self.get_user_by_provider_id(provider, profile.id)
            if existing is not None:
                try:
                    self._db.execute(
                        "UPDATE users SET email = $1, name = $2, avatar_url = $3, email_verified = $4, "
                        "updated_at = $5 WHERE id = $6",
                        [
                            email,
                            profile.name if profile.name is not None else existing.name,
                            profile.avatar_url if profile.avatar_url is not None else existing.avatar_url,
                            existing.email_verified or bool(profile.email_verified),
                            self._now_iso(),
                            existing.id,
                        ],
                    )
                except QueryRejectedError as exc:
                    # The provider-side email now belongs to another local account.
                    if is_unique_violation(exc):
                        logger.warning("OAuth email update collides with another user (id=%s)", existing.id)
                        raise ConflictError("Another account already uses this email", code="EMAIL_EXISTS") from exc
                    raise
                logger.info("OAuth login for linked user (id=%s, provider=%s)", existing.id, provider.value)
                return self._reload(existing.id)

            by_email = self.get_user_by_email(email)
            if by_email is not None:
                sql = (
                    f"UPDATE users SET {column} = $1, "  # noqa: S608 -- column from enum
                    "name = COALESCE(name, $2), avatar_url = COALESCE(avatar_url, $3), "
                    "email_verified = $4, updated_at = $5 WHERE id = $6"
                )
                self._db.execute(
                    sql,
                    [
                        profile.id,
                        profile.name,
                        profile.avatar_url,
                        by_email.email_verified or bool(profile.email_verified),
                        self._now_iso(),
                        by_email.id,
                    ],
                )
                logger.info("Linked %s account to existing user (id=%s)", provider.value, by_email.id)
                return self._reload(by_email.id)

            return self.create_user(
                email,
                email_verified=bool(profile.email_verified),
                name=profile.name,
                avatar_url=profile.avatar_url,
                provider_ids={provider: profile.id},
            )

    def _reload(self, user_id: str) -> User:
        user = self.get_user_by_id(user_id)
        if user is None:
            raise InternalError("User vanished during update", details={"user_id": user_id})
        return user

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        expires_in: int | None = None,
        context: RequestContext | None = None,
    ) -> str:
        """Insert a new session and return its id."""
        session_id = generate_session_id()
        now = self.now()
        expires_at = now + timedelta(seconds=expires_in or self.session_expires_in)
        context = context or RequestContext()
        self._db.execute(
            "INSERT INTO sessions (id, user_id, expires_at, ip_address, user_agent, created_at) "
            "VALUES ($1, $2, $3, $4, $5, $6)",
            [session_id, user_id, _to_iso(expires_at), context.ip_address, context.user_agent, _to_iso(now)],
        )
        logger.debug("Session created for user %s", user_id)
        return session_id

    def validate_session(self, session_id: str) -> User | None:
        """Return the session's user if the session exists and has not expired."""
        if not session_id:
            return None
        row = self._db.fetch_one(
            "SELECT " + _USER_COLUMNS_JOINED + " FROM sessions s JOIN users u ON u.id = s.user_id "
            "WHERE s.id = $1 AND s.expires_at > $2",
            [session_id, self._now_iso()],
        )
        return _row_to_user(row) if row is not None else None

    def list_user_sessions(self, user_id: str) -> list[Session]:
        """Live sessions for a user, newest first."""
        rows = self._db.fetch_all(
            _SELECT_SESSION + " WHERE user_id = $1 AND expires_at > $2 ORDER BY created_at DESC",
            [user_id, self._now_iso()],
        )
        return [_row_to_session(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        result = self._db.execute("DELETE FROM sessions WHERE id = $1", [session_id])
        return result.row_count > 0

    def delete_all_user_sessions(self, user_id: str) -> int:
        """Delete every session of a user. Returns the number deleted."""
        result = self._db.execute("DELETE FROM sessions WHERE user_id = $1", [user_id])
        logger.info("Revoked %d session(s) for user %s", result.row_count, user_id)
        return result.row_count

    def cleanup_expired_sessions(self) -> int:
        result = self._db.execute("DELETE FROM sessions WHERE expires_at <= $1", [self._now_iso()])
        return result.row_count

    # ------------------------------------------------------------------
    # Email verification tokens
    # ------------------------------------------------------------------

    def replace_verification_token(self, user_id: str, email: str) -> EmailVerificationToken:
        """Void any live verification token for the user and issue a new one (24 h)."""
        now = self.now()
        record = EmailVerificationToken(
            token=generate_token(),
            user_id=user_id,
            email=normalize_email(email),
            expires_at=now + VERIFICATION_TOKEN_TTL,
            created_at=now,
        )
        with self.transaction():
            self._db.execute("DELETE FROM email_verification_tokens WHERE user_id = $1", [user_id])
            self._db.execute(
                "INSERT INTO email_verification_tokens (token, user_id, email, expires_at, created_at) "
                "VALUES ($1, $2, $3, $4, $5)",
                [record.token, user_id, record.email, _to_iso(record.expires_at), _to_iso(now)],
            )
        return record

    def get_verification_token(self, token: str) -> EmailVerificationToken | None:
        row = self._db.fetch_one(_SELECT_VERIFICATION + " WHERE token = $1", [token])
        return _row_to_verification_token(row) if row is not None else None

    def delete_verification_token(self, token: str) -> bool:
        """Delete a token. False when it was already gone (consumed elsewhere)."""
        result = self._db.execute("DELETE FROM email_verification_tokens WHERE token = $1", [token])
        return result.row_count > 0

    def cleanup_expired_verification_tokens(self) -> int:
        result = self._db.execute(
            "DELETE FROM email_verification_tokens WHERE expires_at <= $1",
            [self._now_iso()],
        )
        return result.row_count

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def replace_reset_token(self, user_id: str) -> PasswordResetToken:
        """Void any live reset token for the user and issue a new one (1 h)."""
        now = self.now()
        record = PasswordResetToken(
            token=generate_token(),
            user_id=user_id,
            expires_at=now + RESET_TOKEN_TTL,
            created_at=now,
        )
        with self.transaction():
            self._db.execute("DELETE FROM password_reset_tokens WHERE user_id = $1", [user_id])
            self._db.execute(
                "INSERT INTO password_reset_tokens (token, user_id, expires_at, created_at) VALUES ($1, $2, $3, $4)",
                [record.token, user_id, _to_iso(record.expires_at), _to_iso(now)],
            )
        return record

    def get_reset_token(self, token: str) -> PasswordResetToken | None:
        row = self._db.fetch_one(_SELECT_RESET + " WHERE token = $1", [token])
        return _row_to_reset_token(row) if row is not None else None

    def delete_reset_token(self, token: str) -> bool:
        result = self._db.execute("DELETE FROM password_reset_tokens WHERE token = $1", [token])
        return result.row_count > 0

    def cleanup_expired_reset_tokens(self) -> int:
        result = self._db.execute("DELETE FROM password_reset_tokens WHERE expires_at <= $1", [self._now_iso()])
        return result.row_count

    def close(self) -> None:
        self._db.close()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        # SQLite returns 0/1; the HTTP store returns JSON booleans.
        email_verified=bool(row["email_verified"]),
        password_hash=row["password_hash"],
        github_id=row["github_id"],
        google_id=row["google_id"],
        name=row["name"],
        avatar_url=row["avatar_url"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_session(row: dict[str, Any]) -> Session:
    return Session(
        id=row["id"],
        user_id=str(row["user_id"]),
        expires_at=_parse_ts(row["expires_at"]),
        ip_address=row["ip_address"],
        user_agent=row["user_agent"],
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_verification_token(row: dict[str, Any]) -> EmailVerificationToken:
    return EmailVerificationToken(
        token=row["token"],
        user_id=str(row["user_id"]),
        email=row["email"],
        expires_at=_parse_ts(row["expires_at"]),
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_reset_token(row: dict[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        token=row["token"],
        user_id=str(row["user_id"]),
        expires_at=_parse_ts(row["expires_at"]),
        created_at=_parse_ts(row["created_at"]),
    )
