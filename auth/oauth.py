"""
auth/oauth.py -- OAuth provider clients (Authlib) and the exchange state machine.

Two layers:

  OAuthClient (one per provider) -- talks to the provider: builds the
      authorization URL, exchanges the code for tokens, fetches and
      normalizes the profile. GitHubOAuthClient and GoogleOAuthClient use
      Authlib's requests OAuth2Session.

  OAuthExchange -- the state machine the host drives:
      Unstarted -> AuthorizationRequested(state, verifier?) -> CallbackReceived
                -> Linked | Rejected

Security notes:
  CSRF: begin_authorization() returns an OAuthState the caller must keep
      (typically in a short-lived signed cookie). complete_authorization()
      compares it with the state returned by the provider BEFORE any network
      call. A mismatch is terminal and never retried. The state is a nonce,
      not a credential, so a plain comparison is enough.

  Freshness: a stored state older than state_ttl (10 minutes by default)
      is rejected with STATE_EXPIRED.

  PKCE: providers with requires_pkce (Google) get an S256 verifier. A
      callback without one is rejected before the code exchange.

  Missing email: a profile with no usable email fails the exchange
      explicitly (EMAIL_UNAVAILABLE) instead of creating an account nobody
      can recover.

Configuration absence is a synchronous NotConfiguredError on provider
choice alone. No network call is made for an unconfigured provider.

Layer rule: imports from core/ and auth/ only. Settings are read by
build_oauth_clients() and nowhere else.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session

from auth.models import (
    OAuthAuthorization,
    OAuthProfile,
    OAuthProvider,
    OAuthResult,
    OAuthState,
    OAuthTokens,
    RequestContext,
)
from auth.store import AuthStore
from auth.tokens import generate_token
from core.config import Settings
from core.errors import ConflictError, NotConfiguredError, OAuthError

logger = logging.getLogger("gatehouse.auth.oauth")

DEFAULT_STATE_TTL = 600  # seconds

# Provider API calls are user-facing; do not hang the callback indefinitely.
_HTTP_TIMEOUT = 10


# ---------------------------------------------------------------------------
# Provider clients
# ---------------------------------------------------------------------------


class OAuthClient(ABC):
    """What the exchange state machine needs from a provider."""

    provider: OAuthProvider
    scopes: tuple[str, ...] = ()

    @abstractmethod
    def authorization_url(self, state: str, scopes: Sequence[str], code_verifier: str | None = None) -> str:
        """Build the provider URL to send the browser to. No network call."""

    @abstractmethod
    def exchange_code(self, code: str, code_verifier: str | None = None) -> OAuthTokens:
        """Trade an authorization code for tokens. Raises OAuthError(EXCHANGE_FAILED)."""

    @abstractmethod
    def fetch_profile(self, tokens: OAuthTokens) -> OAuthProfile:
        """Fetch the normalized profile. Raises OAuthError(PROFILE_FETCH_FAILED
        or EMAIL_UNAVAILABLE)."""


class AuthlibOAuthClient(OAuthClient):
    """Shared Authlib plumbing for authorization-code providers.

    session_factory builds a requests-compatible OAuth2Session; tests pass a
    fake to keep the suite off the network.
    """

    authorize_url: str = ""
    token_url: str = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        session_factory: Callable[..., Any] = OAuth2Session,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._session_factory = session_factory

    def _session(self, **kwargs: Any) -> Any:
        return self._session_factory(self.client_id, self.client_secret, redirect_uri=self.redirect_uri, **kwargs)

    def authorization_url(self, state: str, scopes: Sequence[str], code_verifier: str | None = None) -> str:
        kwargs: dict[str, Any] = {"scope": " ".join(scopes)}
        if code_verifier:
            kwargs["code_challenge_method"] = "S256"
        session = self._session(**kwargs)
        try:
            url, _ = session.create_authorization_url(self.authorize_url, state=state, code_verifier=code_verifier)
        finally:
            session.close()
        return url

    def exchange_code(self, code: str, code_verifier: str | None = None) -> OAuthTokens:
        extra: dict[str, Any] = {}
        if code_verifier:
            extra["code_verifier"] = code_verifier
        session = self._session()
        try:
            token = session.fetch_token(self.token_url, code=code, timeout=_HTTP_TIMEOUT, **extra)
        except (AuthlibBaseError, requests.RequestException, ValueError) as exc:
            logger.warning("%s code exchange failed: %s", self.provider.value, type(exc).__name__)
            raise OAuthError("Authorization code exchange failed", code="EXCHANGE_FAILED") from exc
        finally:
            session.close()

        access_token = token.get("access_token") if token else None
        if not access_token:
            raise OAuthError("Provider returned no access token", code="EXCHANGE_FAILED")
        return OAuthTokens(
            access_token=access_token,
            refresh_token=token.get("refresh_token"),
            token_type=token.get("token_type") or "bearer",
        )

    def _get_json(self, session: Any, url: str) -> Any:
        """GET a provider API resource, mapping every failure to PROFILE_FETCH_FAILED."""
        try:
            resp = session.get(url, headers=self._api_headers(), timeout=_HTTP_TIMEOUT)
            resp.raise_for_status()
            return resp.json()
        except (AuthlibBaseError, requests.RequestException, ValueError) as exc:
            logger.warning("%s profile request failed: %s", self.provider.value, type(exc).__name__)
            raise OAuthError("Could not fetch the provider profile", code="PROFILE_FETCH_FAILED") from exc

    def _api_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def _token_session(self, tokens: OAuthTokens) -> Any:
        return self._session(token={"access_token": tokens.access_token, "token_type": tokens.token_type})


class GitHubOAuthClient(AuthlibOAuthClient):
    """GitHub: authorization code flow, static endpoints, no PKCE.

    The profile email comes from /user when public. Otherwise /user/emails
    is consulted: the primary verified address first, then any verified
    address. An account with no verified address is rejected.
    """

    provider = OAuthProvider.GITHUB
    scopes = ("user:email",)
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    api_base_url = "https://api.github.com"

    def _api_headers(self) -> dict[str, str]:
        return {"Accept": "application/vnd.github+json"}

    def fetch_profile(self, tokens: OAuthTokens) -> OAuthProfile:
        session = self._token_session(tokens)
        try:
            user = self._get_json(session, f"{self.api_base_url}/user")
            if not isinstance(user, dict) or user.get("id") is None:
                raise OAuthError("GitHub profile has no id", code="PROFILE_FETCH_FAILED")

            # A public profile email is not marked verified by the API.
            email = user.get("email")
            email_verified = False
            if not email:
                email = self._verified_email(self._get_json(session, f"{self.api_base_url}/user/emails"))
                email_verified = True
        finally:
            session.close()

        return OAuthProfile(
            id=str(user["id"]),
            email=email,
            email_verified=email_verified,
            name=user.get("name"),
            avatar_url=user.get("avatar_url"),
        )

    @staticmethod
    def _verified_email(entries: Any) -> str:
        entries = entries if isinstance(entries, list) else []
        for entry in entries:
            if entry.get("primary") and entry.get("verified") and entry.get("email"):
                return entry["email"]
        for entry in entries:
            if entry.get("verified") and entry.get("email"):
                return entry["email"]
        raise OAuthError("No verified email on the GitHub account", code="EMAIL_UNAVAILABLE")


class GoogleOAuthClient(AuthlibOAuthClient):
    """Google: authorization code flow with PKCE (S256), OIDC userinfo profile."""

    provider = OAuthProvider.GOOGLE
    scopes = ("openid", "email", "profile")
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_url = "https://www.googleapis.com/oauth2/v3/userinfo"

    def fetch_profile(self, tokens: OAuthTokens) -> OAuthProfile:
        session = self._token_session(tokens)
        try:
            info = self._get_json(session, self.userinfo_url)
        finally:
            session.close()

        if not isinstance(info, dict) or not info.get("sub"):
            raise OAuthError("Google userinfo has no subject", code="PROFILE_FETCH_FAILED")
        return OAuthProfile(
            id=str(info["sub"]),
            email=info.get("email"),
            email_verified=bool(info.get("email_verified", False)),
            name=info.get("name"),
            avatar_url=info.get("picture"),
        )


_CLIENT_TYPES: dict[OAuthProvider, type[AuthlibOAuthClient]] = {
    OAuthProvider.GITHUB: GitHubOAuthClient,
    OAuthProvider.GOOGLE: GoogleOAuthClient,
}

_PROVIDER_LABELS = {OAuthProvider.GITHUB: "GitHub", OAuthProvider.GOOGLE: "Google"}


def build_oauth_clients(settings: Settings) -> dict[OAuthProvider, OAuthClient]:
    """Build a client for every fully configured provider.

    A provider is registered only when client id, secret and redirect URI
    are all set. The rest stay absent, so choosing them raises
    NotConfiguredError.
    """
    clients: dict[OAuthProvider, OAuthClient] = {}
    for provider, client_type in _CLIENT_TYPES.items():
        prefix = provider.value
        client_id = getattr(settings, f"{prefix}_client_id")
        client_secret = getattr(settings, f"{prefix}_client_secret")
        redirect_uri = getattr(settings, f"{prefix}_redirect_uri")
        if client_id and client_secret and redirect_uri:
            clients[provider] = client_type(client_id, client_secret, redirect_uri)
            logger.info("%s OAuth provider registered", _PROVIDER_LABELS[provider])
    return clients


def get_enabled_providers(clients: Mapping[OAuthProvider, OAuthClient]) -> list[dict]:
    """Return {"name", "label"} for every configured provider, in enum order."""
    return [
        {"name": provider.value, "label": _PROVIDER_LABELS[provider]} for provider in OAuthProvider if provider in clients
    ]


# ---------------------------------------------------------------------------
# Exchange state machine
# ---------------------------------------------------------------------------


class OAuthExchange:
    """Drive the authorization-code flow from redirect to session.

    Usage:
        exchange = OAuthExchange(store, build_oauth_clients(settings))
        auth = exchange.begin_authorization("github")
        # persist auth.state, redirect to auth.url ...
        result = exchange.complete_authorization("github", code, auth.state, returned_state)
    """

    def __init__(
        self,
        store: AuthStore,
        clients: Mapping[OAuthProvider, OAuthClient],
        clock: Callable[[], datetime] | None = None,
        state_ttl: int = DEFAULT_STATE_TTL,
        session_expires_in: int | None = None,
    ) -> None:
        if state_ttl <= 0:
            raise ValueError("state_ttl must be positive")
        self._store = store
        self._clients = dict(clients)
        self._clock = clock or store.now
        self.state_ttl = state_ttl
        self.session_expires_in = session_expires_in

    def _resolve(self, provider: OAuthProvider | str) -> tuple[OAuthProvider, OAuthClient]:
        try:
            resolved = OAuthProvider(provider)
        except ValueError:
            raise NotConfiguredError(f"Unknown OAuth provider: {provider!r}") from None
        client = self._clients.get(resolved)
        if client is None:
            raise NotConfiguredError(f"{_PROVIDER_LABELS[resolved]} OAuth is not configured")
        return resolved, client

    def begin_authorization(
        self,
        provider: OAuthProvider | str,
        scopes: Sequence[str] | None = None,
    ) -> OAuthAuthorization:
        """Generate state (and a PKCE verifier where required) and the provider URL.

        Raises NotConfiguredError for an unknown or unconfigured provider.
        """
        resolved, client = self._resolve(provider)
        verifier = generate_token() if resolved.requires_pkce else None
        state = OAuthState(state=generate_token(), created_at=self._clock(), code_verifier=verifier)
        url = client.authorization_url(state.state, tuple(scopes or client.scopes), code_verifier=verifier)
        logger.debug("OAuth authorization requested (provider=%s)", resolved.value)
        return OAuthAuthorization(url=url, state=state)

    def complete_authorization(
        self,
        provider: OAuthProvider | str,
        code: str,
        stored_state: OAuthState | None,
        returned_state: str | None,
        context: RequestContext | None = None,
    ) -> OAuthResult:
        """Validate the callback, exchange the code, link the user, open a session.

        Raises:
            NotConfiguredError: unknown or unconfigured provider.
            OAuthError: with code STATE_MISMATCH, STATE_EXPIRED,
                MISSING_CODE_VERIFIER, EXCHANGE_FAILED, PROFILE_FETCH_FAILED,
                EMAIL_UNAVAILABLE or ACCOUNT_CONFLICT (the provider email is
                already used by another account).
            TransportError: the store was unreachable after retries.
        """
        resolved, client = self._resolve(provider)

        if stored_state is None or not returned_state or stored_state.state != returned_state:
            logger.warning("OAuth callback rejected: state mismatch (provider=%s)", resolved.value)
            raise OAuthError("OAuth state mismatch", code="STATE_MISMATCH")

        if self._clock() - stored_state.created_at > timedelta(seconds=self.state_ttl):
            logger.warning("OAuth callback rejected: state expired (provider=%s)", resolved.value)
            raise OAuthError("OAuth state expired", code="STATE_EXPIRED")

        verifier = stored_state.code_verifier if resolved.requires_pkce else None
        if resolved.requires_pkce and not verifier:
            logger.warning("OAuth callback rejected: missing PKCE verifier (provider=%s)", resolved.value)
            raise OAuthError("Missing PKCE code verifier", code="MISSING_CODE_VERIFIER")

        if not code:
            raise OAuthError("Missing authorization code", code="EXCHANGE_FAILED")

        tokens = client.exchange_code(code, code_verifier=verifier)
        profile = client.fetch_profile(tokens)
        if not profile.email or not profile.email.strip():
            logger.warning("OAuth callback rejected: no email from %s", resolved.value)
            raise OAuthError("The provider did not supply an email address", code="EMAIL_UNAVAILABLE")

        try:
            user = self._store.upsert_oauth_user(resolved, profile)
        except ConflictError as exc:
            logger.warning("OAuth callback rejected: account conflict for %s", resolved.value)
            raise OAuthError("This sign-in could not be linked to an account", code="ACCOUNT_CONFLICT") from exc
        session_id = self._store.create_session(user.id, expires_in=self.session_expires_in, context=context)
        logger.info("OAuth login completed (user=%s, provider=%s)", user.id, resolved.value)
        return OAuthResult(user=user, session_id=session_id)
