"""
auth/tokens.py -- Random token generation, base64url codec, constant-time compare.

Security design decisions:
  Entropy: every token comes from the `secrets` module (the OS CSPRNG).
       Verification and reset tokens carry 32 bytes (256 bits); session ids
       carry 25 bytes (200 bits). Both are far beyond brute-force range, so
       the store can look them up by plain equality -- the lookup itself is
       the authorization step.

  Encoding: base64url without padding, so tokens survive URLs, cookies and
       email clients untouched.

  Comparison: constant_time_equal() is for secrets compared against user
       input outside the database (password digests). It checks length first
       and then defers to hmac.compare_digest.

Layer rule: no imports from db/. Import from core/ is allowed.
"""

from __future__ import annotations

import base64
import hmac
import secrets

TOKEN_ENTROPY_BYTES = 32
SESSION_ENTROPY_BYTES = 25


def b64url_encode(raw: bytes) -> str:
    """base64url without '=' padding."""
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    """Inverse of b64url_encode. Accepts padded or unpadded input.

    Raises ValueError (binascii.Error) on characters outside the alphabet.
    """
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded.encode("ascii"), altchars=b"-_", validate=True)


def generate_token(entropy_bytes: int = TOKEN_ENTROPY_BYTES) -> str:
    """Return a URL-safe token built from `entropy_bytes` CSPRNG bytes."""
    if entropy_bytes <= 0:
        raise ValueError("entropy_bytes must be positive")
    return b64url_encode(secrets.token_bytes(entropy_bytes))


def generate_session_id() -> str:
    """Return a fresh session id (200 bits of entropy)."""
    return generate_token(SESSION_ENTROPY_BYTES)


def constant_time_equal(a: bytes | str, b: bytes | str) -> bool:
    """Compare two secrets without leaking where they differ.

    Strings are compared as UTF-8 bytes. Unequal lengths return False
    immediately; the length of a derived key is not secret.
    """
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)
