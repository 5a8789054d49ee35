"""
auth/workflows.py -- Registration, login, email verification and password reset.

AuthService composes the store (auth/store.py) and a password hasher
(auth/hashing.py). Both are constructor arguments; nothing here reaches for
module-level defaults or settings, so tests substitute fakes freely.

Security design decisions:
  Enumeration safety: login answers INVALID_CREDENTIALS with one message
       whether the account is missing, OAuth-only or the password is wrong,
       and runs exactly one hasher verify in each case (against a dummy hash
       when there is no real one). Resend and reset requests return through
       _uniform_outcome(), so the existing, absent and no-credential
       branches produce the same result shape. Tokens never appear in those
       results; they go to the caller-supplied deliver(email, token)
       callback, which is only invoked for real accounts.

  Single-use tokens: consumption deletes the token and checks that the
       delete actually removed a row. A second consumer racing the first
       sees nothing to delete and fails with INVALID_TOKEN.

  Password reset order: hash, update the user (only while the token still
       exists), delete the token, re-apply the hash, then delete ALL sessions
       of the user. A crash part-way through never leaves the old password
       usable with a surviving session, and on a store without transactions
       the caller whose delete removed the token is the one whose password
       stays. The whole sequence runs in one store transaction where the
       backend has them.

  Validation first: email shape and password policy are checked before
       any storage access.

Layer rule: imports from core/, db/ and auth/ only.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TypeVar

from auth.hashing import PasswordHasher, create_migrating_hasher
from auth.models import (
    EmailVerificationResult,
    LoginResult,
    PasswordResetRequestResult,
    RegistrationResult,
    RequestContext,
    ResetTokenStatus,
    User,
    VerificationResendResult,
)
from auth.store import DEFAULT_SESSION_EXPIRES_IN, AuthStore, is_unique_violation, normalize_email
from auth.tokens import generate_token
from core.config import Settings
from core.errors import ConflictError, QueryRejectedError, UnauthorizedError, ValidationError

logger = logging.getLogger("gatehouse.auth.workflows")

DEFAULT_PASSWORD_MIN_LENGTH = 8
MAX_EMAIL_LENGTH = 254

_EMAIL_RE = re.compile(
    r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+"
)

_INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"

DeliverFn = Callable[[str, str], None]
_R = TypeVar("_R", VerificationResendResult, PasswordResetRequestResult)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def is_valid_email(email: str) -> bool:
    """Simplified RFC 5322 check: at most 254 chars, no spaces, no '..',
    no leading or trailing dot in the local part, dotted domain."""
    if not isinstance(email, str) or not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    if " " in email:
        return False
    candidate = email.strip().lower()
    if ".." in candidate:
        return False
    local_part = candidate.split("@", 1)[0]
    if local_part.startswith(".") or local_part.endswith("."):
        return False
    return _EMAIL_RE.fullmatch(candidate) is not None


def validate_password(password: str, min_length: int = DEFAULT_PASSWORD_MIN_LENGTH) -> None:
    """Raise ValidationError(INVALID_PASSWORD) when password breaks the policy."""
    if not isinstance(password, str) or len(password) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters long", code="INVALID_PASSWORD")


def _uniform_outcome(result_type: type[_R], email: str, *, simulate_work: bool = False) -> _R:
    """Build the one result every enumeration-sensitive branch returns.

    simulate_work spends roughly the cost of issuing a token on branches
    that issue nothing, to flatten the timing signal.
    """
    if simulate_work:
        generate_token()
    return result_type(email=email)


def _invalid_credentials() -> UnauthorizedError:
    return UnauthorizedError(_INVALID_CREDENTIALS_MESSAGE, code="INVALID_CREDENTIALS")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuthService:
    """Email/password account lifecycle over an AuthStore.

    Usage:
        service = AuthService(store, Pbkdf2PasswordHasher())
        reg = service.register("a@example.com", "correct horse")
        send_mail(reg.user.email, reg.verification_token)
        service.verify_email(token_from_link)
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        *,
        password_min_length: int = DEFAULT_PASSWORD_MIN_LENGTH,
        session_expires_in: int = DEFAULT_SESSION_EXPIRES_IN,
    ) -> None:
        if password_min_length < 1:
            raise ValueError("password_min_length must be at least 1")
        if session_expires_in <= 0:
            raise ValueError("session_expires_in must be positive")
        self._store = store
        self._hasher = hasher
        self.password_min_length = password_min_length
        self.session_expires_in = session_expires_in
        # Verified against when there is no real hash, so every login costs one verify.
        self._dummy_hash = hasher.hash(generate_token())

    @classmethod
    def from_settings(cls, store: AuthStore, settings: Settings) -> "AuthService":
        """Build a service with the hasher and policy named in settings.

        Hashes from the other supported algorithms still verify and are
        rewritten with the configured one on the next successful login.
        """
        return cls(
            store,
            create_migrating_hasher(settings.password_hasher),
            password_min_length=settings.password_min_length,
            session_expires_in=settings.session_expire_seconds,
        )

    @property
    def store(self) -> AuthStore:
        return self._store

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, context: RequestContext | None = None) -> RegistrationResult:
        """Create a password account, a verification token and a first session.

        Raises:
            ValidationError: INVALID_EMAIL or INVALID_PASSWORD.
            ConflictError: EMAIL_EXISTS.
        """
        if not is_valid_email(email):
            raise ValidationError("Invalid email address", code="INVALID_EMAIL")
        validate_password(password, self.password_min_length)

        normalized = normalize_email(email)
        if self._store.get_user_by_email(normalized) is not None:
            raise ConflictError("User with this email already exists", code="EMAIL_EXISTS")

        password_hash = self._hasher.hash(password)
        with self._store.transaction():
            try:
                user = self._store.create_user(normalized, password_hash=password_hash)
            except QueryRejectedError as exc:
                # Lost a race with a concurrent registration for the same email.
                if is_unique_violation(exc):
                    raise ConflictError("User with this email already exists", code="EMAIL_EXISTS") from exc
                raise
            verification = self._store.replace_verification_token(user.id, user.email)
            session_id = self._store.create_session(user.id, self.session_expires_in, context)

        logger.info("Registered user %s", user.id)
        return RegistrationResult(user=user, session_id=session_id, verification_token=verification.token)

    def login(self, email: str, password: str, context: RequestContext | None = None) -> LoginResult:
        """Check credentials and open a session.

        Raises UnauthorizedError(INVALID_CREDENTIALS) for a missing account,
        an OAuth-only account and a wrong password alike.
        """
        if not email or not password:
            raise UnauthorizedError("Email and password are required", code="INVALID_CREDENTIALS")

        user = self._store.get_user_by_email(email)
        if user is None:
            self._hasher.verify(self._dummy_hash, password)
            raise _invalid_credentials()
        if user.password_hash is None:
            self._hasher.verify(self._dummy_hash, password)
            logger.debug("Password login attempted on OAuth-only account %s", user.id)
            raise _invalid_credentials()
        if not self._hasher.verify(user.password_hash, password):
            raise _invalid_credentials()

        if self._hasher.needs_rehash(user.password_hash):
            self._store.update_password_hash(user.id, self._hasher.hash(password))
            logger.info("Upgraded password hash parameters for user %s", user.id)

        session_id = self._store.create_session(user.id, self.session_expires_in, context)
        return LoginResult(user=user, session_id=session_id)

    def logout(self, session_id: str) -> bool:
        return self._store.delete_session(session_id)

    def validate_session(self, session_id: str) -> User | None:
        return self._store.validate_session(session_id)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> EmailVerificationResult:
        """Consume a verification token and mark the owner's email verified.

        Raises UnauthorizedError with INVALID_TOKEN or TOKEN_EXPIRED.
        """
        if not token or not token.strip():
            raise UnauthorizedError("Verification token is required", code="INVALID_TOKEN")

        record = self._store.get_verification_token(token)
        if record is None:
            raise UnauthorizedError("Invalid verification token", code="INVALID_TOKEN")
        if record.expires_at <= self._store.now():
            self._store.delete_verification_token(token)
            raise UnauthorizedError("Verification token has expired", code="TOKEN_EXPIRED")

        with self._store.transaction():
            if not self._store.delete_verification_token(token):
                raise UnauthorizedError("Invalid verification token", code="INVALID_TOKEN")
            user = self._store.get_user_by_id(record.user_id)
            # The token verifies one address; it is void once the account's email changed.
            if user is None or user.email != record.email:
                raise UnauthorizedError("Invalid verification token", code="INVALID_TOKEN")
            self._store.mark_email_verified(user.id)

        logger.info("Email verified for user %s", record.user_id)
        return EmailVerificationResult(user_id=record.user_id)

    def resend_verification_email(self, email: str, deliver: DeliverFn | None = None) -> VerificationResendResult:
        """Void and re-issue a verification token, handing it to deliver().

        An unknown email gets the same result as a known one.

        Raises ConflictError(ALREADY_VERIFIED) for a verified account.
        """
        normalized = normalize_email(email) if isinstance(email, str) else ""
        user = self._store.get_user_by_email(normalized) if normalized else None
        if user is None:
            return _uniform_outcome(VerificationResendResult, normalized, simulate_work=True)
        if user.email_verified:
            raise ConflictError("Email is already verified", code="ALREADY_VERIFIED")

        record = self._store.replace_verification_token(user.id, user.email)
        if deliver is not None:
            deliver(user.email, record.token)
        return _uniform_outcome(VerificationResendResult, normalized)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, deliver: DeliverFn | None = None) -> PasswordResetRequestResult:
        """Issue a reset token for a password account and hand it to deliver().

        Always returns the same result shape. Missing and OAuth-only accounts
        get nothing persisted and nothing delivered.
        """
        normalized = normalize_email(email) if isinstance(email, str) else ""
        user = self._store.get_user_by_email(normalized) if normalized else None
        if user is None or not user.has_password:
            return _uniform_outcome(PasswordResetRequestResult, normalized, simulate_work=True)

        record = self._store.replace_reset_token(user.id)
        if deliver is not None:
            deliver(user.email, record.token)
        logger.info("Password reset requested for user %s", user.id)
        return _uniform_outcome(PasswordResetRequestResult, normalized)

    def verify_reset_token(self, token: str) -> ResetTokenStatus:
        """Report whether a reset token is usable, without consuming it.

        An expired token is deleted and reported invalid.
        """
        if not token or not token.strip():
            return ResetTokenStatus(valid=False)
        record = self._store.get_reset_token(token)
        if record is None:
            return ResetTokenStatus(valid=False)
        if record.expires_at <= self._store.now():
            self._store.delete_reset_token(token)
            return ResetTokenStatus(valid=False)
        return ResetTokenStatus(valid=True, user_id=record.user_id)

    def reset_password(self, token: str, new_password: str) -> int:
        """Consume a reset token, set the new password and revoke every session.

        Returns the number of sessions revoked.

        Raises:
            ValidationError(INVALID_PASSWORD): new_password breaks the policy.
            UnauthorizedError: INVALID_TOKEN or TOKEN_EXPIRED.
        """
        if not token or not token.strip():
            raise UnauthorizedError("Reset token is required", code="INVALID_TOKEN")
        validate_password(new_password, self.password_min_length)

        record = self._store.get_reset_token(token)
        if record is None:
            raise UnauthorizedError("Invalid reset token", code="INVALID_TOKEN")
        if record.expires_at <= self._store.now():
            self._store.delete_reset_token(token)
            raise UnauthorizedError("Reset token has expired", code="TOKEN_EXPIRED")

        password_hash = self._hasher.hash(new_password)
        with self._store.transaction():
            if not self._store.update_password_hash(record.user_id, password_hash, reset_token=token):
                raise UnauthorizedError("Invalid reset token", code="INVALID_TOKEN")
            if not self._store.delete_reset_token(token):
                raise UnauthorizedError("Invalid reset token", code="INVALID_TOKEN")
            # Without store transactions a racing consumer may have written its
            # hash between our update and our delete. The delete winner's hash
            # is the one that stays.
            self._store.update_password_hash(record.user_id, password_hash)
            revoked = self._store.delete_all_user_sessions(record.user_id)

        logger.info("Password reset for user %s (%d session(s) revoked)", record.user_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired(self) -> dict[str, int]:
        """Run all three expiry sweeps. Safe to call concurrently with traffic."""
        counts = {
            "sessions": self._store.cleanup_expired_sessions(),
            "verification_tokens": self._store.cleanup_expired_verification_tokens(),
            "reset_tokens": self._store.cleanup_expired_reset_tokens(),
        }
        logger.info(
            "Expired rows removed: %d session(s), %d verification token(s), %d reset token(s)",
            counts["sessions"],
            counts["verification_tokens"],
            counts["reset_tokens"],
        )
        return counts
