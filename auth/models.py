"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). The store maps rows
into these; workflows pass them around and return them to the host.

Timestamps are timezone-aware UTC datetimes. The store converts them to
and from the fixed-width ISO strings kept in the database.

Layer rule: no imports from db/. Import from core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class OAuthProvider(str, Enum):
    """Supported external identity providers.

    Each member knows which users column holds its external id and whether
    its authorization flow needs a PKCE verifier.
    """

    GITHUB = "github"
    GOOGLE = "google"

    @property
    def id_column(self) -> str:
        return _PROVIDER_ID_COLUMNS[self]

    @property
    def requires_pkce(self) -> bool:
        return self in _PKCE_PROVIDERS


_PROVIDER_ID_COLUMNS: dict[OAuthProvider, str] = {
    OAuthProvider.GITHUB: "github_id",
    OAuthProvider.GOOGLE: "google_id",
}

_PKCE_PROVIDERS = frozenset({OAuthProvider.GOOGLE})


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """An identity.

    password_hash is None for OAuth-only accounts. A user always has at least
    one credential method: a password hash or a provider id.
    """

    id: str
    email: str  # normalized (lowercase, trimmed)
    email_verified: bool = False
    password_hash: str | None = None
    github_id: str | None = None
    google_id: str | None = None
    name: str | None = None
    avatar_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def provider_id(self, provider: OAuthProvider) -> str | None:
        return getattr(self, provider.id_column)

    @property
    def has_password(self) -> bool:
        return self.password_hash is not None


@dataclass
class Session:
    """Proof of authentication. Valid iff it exists and expires_at is in the future."""

    id: str
    user_id: str
    expires_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime | None = None


@dataclass
class EmailVerificationToken:
    token: str
    user_id: str
    email: str
    expires_at: datetime
    created_at: datetime | None = None


@dataclass
class PasswordResetToken:
    token: str
    user_id: str
    expires_at: datetime
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# OAuth artifacts
# ---------------------------------------------------------------------------


@dataclass
class OAuthProfile:
    """Provider profile normalized to a common shape."""

    id: str  # provider's stable user id
    email: str | None
    email_verified: bool = False
    name: str | None = None
    avatar_url: str | None = None


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "bearer"


@dataclass(frozen=True)
class OAuthState:
    """CSRF state and optional PKCE verifier held by the caller between
    redirect and callback (typically in a short-lived signed cookie).
    Never persisted in the relational store.
    """

    state: str
    created_at: datetime
    code_verifier: str | None = None


@dataclass(frozen=True)
class RequestContext:
    """Client details captured on the session row."""

    ip_address: str | None = None
    user_agent: str | None = None


# ---------------------------------------------------------------------------
# Workflow results
# ---------------------------------------------------------------------------


@dataclass
class RegistrationResult:
    """The verification token is returned for the host to deliver; the core
    never sends mail."""

    user: User
    session_id: str
    verification_token: str


@dataclass
class LoginResult:
    user: User
    session_id: str


@dataclass
class EmailVerificationResult:
    user_id: str


@dataclass(frozen=True)
class VerificationResendResult:
    email: str
    success: bool = True
    code: str = "EMAIL_SENT"


@dataclass(frozen=True)
class PasswordResetRequestResult:
    email: str
    success: bool = True
    code: str = "RESET_REQUESTED"


@dataclass(frozen=True)
class ResetTokenStatus:
    valid: bool
    user_id: str | None = None


@dataclass(frozen=True)
class OAuthAuthorization:
    """Where to send the browser, plus what the caller must keep for the callback."""

    url: str
    state: OAuthState


@dataclass
class OAuthResult:
    user: User
    session_id: str
