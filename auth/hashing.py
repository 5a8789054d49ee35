"""
auth/hashing.py -- Pluggable password hashing.

Every implementation satisfies the PasswordHasher contract:
    id                       -- short algorithm name ("argon2id", "pbkdf2", "bcrypt")
    hash(password) -> str    -- self-describing stored value (salt + parameters)
    verify(stored, password) -> bool
    needs_rehash(stored) -> bool
    identifies(stored) -> bool   -- stored value carries this algorithm's prefix

Security design decisions:
  Self-describing values: each stored hash embeds every parameter needed to
       verify it. Raising the cost for new hashes never breaks old ones, and
       needs_rehash() lets the login flow upgrade them transparently.

  Never trust stored parameters blindly: a corrupted or planted hash must not
       be able to demand an unbounded computation. PBKDF2 clamps iterations
       and key length; Argon2 clamps memory, time and lanes. Out-of-bound
       values make verify() return False before any work is done.

  verify() never raises on malformed input -- it returns False, so login error
       handling stays uniform regardless of what is in the password_hash column.

  Final digest comparison is constant-time in all three implementations
       (hmac.compare_digest for PBKDF2, libargon2 and bcrypt internally).

All calls are plain blocking functions with no shared mutable state. Hosts
with an event loop should run them in a worker thread (e.g.
asyncio.to_thread) since each call is slow on purpose.

Layer rule: no imports from db/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from abc import ABC, abstractmethod

import bcrypt
from argon2 import PasswordHasher as _Argon2
from argon2 import Type, extract_parameters
from argon2.exceptions import InvalidHashError, VerificationError

from auth.tokens import b64url_decode, b64url_encode, constant_time_equal
from core.errors import ValidationError

logger = logging.getLogger("gatehouse.auth.hashing")


class PasswordHasher(ABC):
    """Contract shared by every password hashing algorithm."""

    id: str = ""
    # Leading markers of the stored values this algorithm produces.
    prefixes: tuple[str, ...] = ()

    @abstractmethod
    def hash(self, password: str) -> str:
        """Return a new salted, self-describing hash of password."""

    @abstractmethod
    def verify(self, stored: str, password: str) -> bool:
        """Return True iff password matches stored. Never raises."""

    def needs_rehash(self, stored: str) -> bool:
        """True when stored was produced with parameters other than ours."""
        return False

    def identifies(self, stored: str) -> bool:
        """True when stored looks like a value this algorithm produced."""
        return isinstance(stored, str) and any(stored.startswith(p) for p in self.prefixes)


# ---------------------------------------------------------------------------
# Argon2id (memory-hard)
# ---------------------------------------------------------------------------

# Ceilings for parameters read back out of a stored hash.
_ARGON2_MAX_MEMORY_KIB = 1_048_576  # 1 GiB
_ARGON2_MAX_TIME_COST = 10
_ARGON2_MAX_PARALLELISM = 16


class Argon2idPasswordHasher(PasswordHasher):
    """Argon2id via argon2-cffi. Defaults follow the OWASP minimum profile
    (19 MiB, 2 passes, 1 lane). The PHC string ($argon2id$v=19$m=..,t=..,p=..$salt$hash)
    carries all parameters, so verification is self-describing.
    """

    id = "argon2id"
    prefixes = ("$argon2id$",)

    def __init__(self, memory_cost: int = 19456, time_cost: int = 2, parallelism: int = 1) -> None:
        self.memory_cost = memory_cost
        self.time_cost = time_cost
        self.parallelism = parallelism
        self._impl = _Argon2(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        return self._impl.hash(password)

    def verify(self, stored: str, password: str) -> bool:
        try:
            params = extract_parameters(stored)
        except (InvalidHashError, ValueError):
            return False
        if (
            params.type is not Type.ID
            or params.memory_cost > _ARGON2_MAX_MEMORY_KIB
            or params.time_cost > _ARGON2_MAX_TIME_COST
            or params.parallelism > _ARGON2_MAX_PARALLELISM
        ):
            logger.warning("Rejected argon2 hash with out-of-bound parameters")
            return False
        try:
            return self._impl.verify(stored, password)
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, stored: str) -> bool:
        try:
            return self._impl.check_needs_rehash(stored)
        except (InvalidHashError, ValueError):
            return True


# ---------------------------------------------------------------------------
# PBKDF2 (portable fallback)
# ---------------------------------------------------------------------------

_PBKDF2_PREFIX = "$pbkdf2$"
_PBKDF2_DIGESTS = ("sha256", "sha512")
_PBKDF2_MIN_ITERATIONS = 100_000
_PBKDF2_MAX_ITERATIONS = 2_000_000
_PBKDF2_MIN_KEY_LENGTH = 16
_PBKDF2_MAX_KEY_LENGTH = 64
_PBKDF2_MIN_SALT_LENGTH = 8
_PBKDF2_MAX_SALT_LENGTH = 64


def _parse_prefixed_int(part: str, prefix: str) -> int | None:
    if not part.startswith(prefix):
        return None
    digits = part[len(prefix) :]
    return int(digits) if digits.isdecimal() else None


class Pbkdf2PasswordHasher(PasswordHasher):
    """Salted PBKDF2-HMAC via hashlib, for hosts without a native Argon2.

    Stored format (seven '$'-separated fields, the first empty):
        $pbkdf2$<sha256|sha512>$i=<iterations>$l=<key_length>$<salt_b64url>$<key_b64url>
    """

    id = "pbkdf2"
    prefixes = (_PBKDF2_PREFIX,)

    def __init__(
        self,
        iterations: int = 600_000,
        digest: str = "sha256",
        salt_length: int = 16,
        key_length: int = 32,
    ) -> None:
        if digest not in _PBKDF2_DIGESTS:
            raise ValueError(f"digest must be one of {_PBKDF2_DIGESTS}, got {digest!r}")
        if not _PBKDF2_MIN_ITERATIONS <= iterations <= _PBKDF2_MAX_ITERATIONS:
            raise ValueError(f"iterations must be between {_PBKDF2_MIN_ITERATIONS} and {_PBKDF2_MAX_ITERATIONS}")
        if not _PBKDF2_MIN_KEY_LENGTH <= key_length <= _PBKDF2_MAX_KEY_LENGTH:
            raise ValueError(f"key_length must be between {_PBKDF2_MIN_KEY_LENGTH} and {_PBKDF2_MAX_KEY_LENGTH}")
        if not _PBKDF2_MIN_SALT_LENGTH <= salt_length <= _PBKDF2_MAX_SALT_LENGTH:
            raise ValueError(f"salt_length must be between {_PBKDF2_MIN_SALT_LENGTH} and {_PBKDF2_MAX_SALT_LENGTH}")
        self.iterations = iterations
        self.digest = digest
        self.salt_length = salt_length
        self.key_length = key_length

    def hash(self, password: str) -> str:
        salt = secrets.token_bytes(self.salt_length)
        key = hashlib.pbkdf2_hmac(self.digest, password.encode("utf-8"), salt, self.iterations, self.key_length)
        return (
            f"{_PBKDF2_PREFIX}{self.digest}$i={self.iterations}$l={self.key_length}"
            f"${b64url_encode(salt)}${b64url_encode(key)}"
        )

    def _parse(self, stored: str) -> tuple[str, int, int, bytes, bytes] | None:
        """Return (digest, iterations, key_length, salt, key), or None when
        anything is malformed or out of bounds. No key derivation happens here."""
        if not isinstance(stored, str) or not stored.startswith(_PBKDF2_PREFIX):
            return None
        parts = stored.split("$")
        if len(parts) != 7:
            return None
        _, _, digest, iterations_part, key_length_part, salt_part, key_part = parts

        if digest not in _PBKDF2_DIGESTS:
            return None
        iterations = _parse_prefixed_int(iterations_part, "i=")
        key_length = _parse_prefixed_int(key_length_part, "l=")
        if iterations is None or not _PBKDF2_MIN_ITERATIONS <= iterations <= _PBKDF2_MAX_ITERATIONS:
            return None
        if key_length is None or not _PBKDF2_MIN_KEY_LENGTH <= key_length <= _PBKDF2_MAX_KEY_LENGTH:
            return None

        try:
            salt = b64url_decode(salt_part)
            key = b64url_decode(key_part)
        except ValueError:
            return None
        if not _PBKDF2_MIN_SALT_LENGTH <= len(salt) <= _PBKDF2_MAX_SALT_LENGTH:
            return None
        if len(key) != key_length:
            return None
        return digest, iterations, key_length, salt, key

    def verify(self, stored: str, password: str) -> bool:
        parsed = self._parse(stored)
        if parsed is None:
            return False
        digest, iterations, key_length, salt, expected = parsed
        derived = hashlib.pbkdf2_hmac(digest, password.encode("utf-8"), salt, iterations, key_length)
        return constant_time_equal(derived, expected)

    def needs_rehash(self, stored: str) -> bool:
        parsed = self._parse(stored)
        if parsed is None:
            return True
        digest, iterations, key_length, salt, _ = parsed
        return (digest, iterations, key_length, len(salt)) != (
            self.digest,
            self.iterations,
            self.key_length,
            self.salt_length,
        )


# ---------------------------------------------------------------------------
# bcrypt (migration path for existing hashes)
# ---------------------------------------------------------------------------

_BCRYPT_MAX_PASSWORD_BYTES = 72


class BcryptPasswordHasher(PasswordHasher):
    """bcrypt via the `bcrypt` package, used directly (no passlib wrapper).

    bcrypt only looks at the first 72 bytes of a password. Rather than
    truncate silently, hash() rejects longer passwords with ValidationError.
    """

    id = "bcrypt"
    prefixes = ("$2a$", "$2b$", "$2y$")

    def __init__(self, rounds: int = 12) -> None:
        if not 4 <= rounds <= 31:
            raise ValueError("rounds must be between 4 and 31")
        self.rounds = rounds

    def hash(self, password: str) -> str:
        raw = password.encode("utf-8")
        if len(raw) > _BCRYPT_MAX_PASSWORD_BYTES:
            raise ValidationError(
                f"Password must be at most {_BCRYPT_MAX_PASSWORD_BYTES} bytes long",
                code="INVALID_PASSWORD",
            )
        return bcrypt.hashpw(raw, bcrypt.gensalt(self.rounds)).decode("utf-8")

    def verify(self, stored: str, password: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
        except (ValueError, TypeError, AttributeError):
            return False

    def needs_rehash(self, stored: str) -> bool:
        # $2b$12$... -- the cost is the third field.
        parts = stored.split("$") if isinstance(stored, str) else []
        if len(parts) < 4 or not parts[2].isdecimal():
            return True
        return int(parts[2]) != self.rounds


_HASHERS: dict[str, type[PasswordHasher]] = {
    Argon2idPasswordHasher.id: Argon2idPasswordHasher,
    Pbkdf2PasswordHasher.id: Pbkdf2PasswordHasher,
    BcryptPasswordHasher.id: BcryptPasswordHasher,
}


def create_password_hasher(name: str = "pbkdf2", **options) -> PasswordHasher:
    """Build a hasher by id. Options are passed to the constructor."""
    try:
        cls = _HASHERS[name]
    except KeyError:
        raise ValueError(f"Unknown password hasher {name!r}; expected one of {sorted(_HASHERS)}") from None
    return cls(**options)


# ---------------------------------------------------------------------------
# Migration between algorithms
# ---------------------------------------------------------------------------


class MigratingPasswordHasher(PasswordHasher):
    """Hashes with one algorithm and still verifies values from the others.

    verify() dispatches on the stored value's prefix. needs_rehash() is True
    for anything the primary did not produce, so the login flow rewrites
    legacy hashes with the primary algorithm on the next successful login.

    Usage:
        hasher = MigratingPasswordHasher(Pbkdf2PasswordHasher(), [BcryptPasswordHasher()])
    """

    def __init__(self, primary: PasswordHasher, legacy: list[PasswordHasher] | tuple[PasswordHasher, ...] = ()) -> None:
        self.primary = primary
        self.legacy = tuple(h for h in legacy if h.id != primary.id)
        self.id = primary.id
        self.prefixes = primary.prefixes

    def _for(self, stored: str) -> PasswordHasher:
        for hasher in self.legacy:
            if hasher.identifies(stored):
                return hasher
        return self.primary

    def hash(self, password: str) -> str:
        return self.primary.hash(password)

    def verify(self, stored: str, password: str) -> bool:
        return self._for(stored).verify(stored, password)

    def needs_rehash(self, stored: str) -> bool:
        if not self.primary.identifies(stored):
            return True
        return self.primary.needs_rehash(stored)


def create_migrating_hasher(name: str = "pbkdf2", **options) -> MigratingPasswordHasher:
    """The named hasher as primary, every other registered algorithm as legacy.

    Legacy verifiers use their default parameters; their stored values are
    self-describing, so the defaults only matter for needs_rehash().
    """
    primary = create_password_hasher(name, **options)
    legacy = [cls() for hasher_id, cls in _HASHERS.items() if hasher_id != name]
    return MigratingPasswordHasher(primary, legacy)
