"""Unit tests for auth/hashing.py -- Argon2id, PBKDF2 and bcrypt hashers.

Covers:
- verify(hash(P), P) is True and verify(hash(P), Q) is False for every hasher
- hash() is salted: two hashes of the same password differ
- PBKDF2 stored format and parameter round-trip
- PBKDF2 verify rejects tampered or out-of-bound stored values without raising
- PBKDF2 constructor bounds
- Argon2 verify rejects malformed and oversized-parameter hashes
- needs_rehash() reports parameter drift
- bcrypt refuses passwords longer than 72 bytes
- create_password_hasher() factory
- identifies() recognises each algorithm's own stored values
- MigratingPasswordHasher verifies legacy algorithms and flags them for rehash
"""

import pytest

from auth.hashing import (
    Argon2idPasswordHasher,
    BcryptPasswordHasher,
    MigratingPasswordHasher,
    Pbkdf2PasswordHasher,
    create_migrating_hasher,
    create_password_hasher,
)
from auth.tokens import b64url_encode
from core.errors import ValidationError

# Cheap parameters: the algorithms are real, only the cost is lowered.
_FAST_HASHERS = [
    pytest.param(lambda: Pbkdf2PasswordHasher(iterations=100_000), id="pbkdf2"),
    pytest.param(lambda: Argon2idPasswordHasher(memory_cost=1024, time_cost=1), id="argon2id"),
    pytest.param(lambda: BcryptPasswordHasher(rounds=4), id="bcrypt"),
]


# ---------------------------------------------------------------------------
# Shared contract
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("make_hasher", _FAST_HASHERS)
class TestHasherContract:
    def test_correct_password_verifies(self, make_hasher):
        hasher = make_hasher()
        assert hasher.verify(hasher.hash("correct horse"), "correct horse") is True

    def test_wrong_password_fails(self, make_hasher):
        hasher = make_hasher()
        assert hasher.verify(hasher.hash("correct horse"), "battery staple") is False

    def test_hash_is_salted(self, make_hasher):
        hasher = make_hasher()
        assert hasher.hash("same password") != hasher.hash("same password")

    def test_unicode_password(self, make_hasher):
        hasher = make_hasher()
        assert hasher.verify(hasher.hash("pässwörd-日本"), "pässwörd-日本") is True

    @pytest.mark.parametrize("stored", ["", "garbage", "$", "$pbkdf2$", "$argon2id$", "$2b$"])
    def test_malformed_stored_value_returns_false(self, make_hasher, stored):
        assert make_hasher().verify(stored, "anything") is False

    def test_fresh_hash_does_not_need_rehash(self, make_hasher):
        hasher = make_hasher()
        assert hasher.needs_rehash(hasher.hash("pw-12345")) is False


# ---------------------------------------------------------------------------
# PBKDF2
# ---------------------------------------------------------------------------


class TestPbkdf2Format:
    def test_stored_value_is_self_describing(self):
        stored = Pbkdf2PasswordHasher(iterations=123_456, digest="sha512", key_length=48).hash("pw")
        parts = stored.split("$")
        assert len(parts) == 7
        assert parts[1:5] == ["pbkdf2", "sha512", "i=123456", "l=48"]

    def test_verify_uses_stored_parameters(self):
        """A hash made with other parameters still verifies (parameter rotation)."""
        old = Pbkdf2PasswordHasher(iterations=100_000, digest="sha512").hash("pw-rotate")
        current = Pbkdf2PasswordHasher(iterations=150_000)
        assert current.verify(old, "pw-rotate") is True
        assert current.needs_rehash(old) is True

    def test_default_parameters(self):
        hasher = Pbkdf2PasswordHasher()
        assert (hasher.iterations, hasher.digest, hasher.salt_length, hasher.key_length) == (
            600_000,
            "sha256",
            16,
            32,
        )


class TestPbkdf2Tampering:
    @pytest.fixture
    def stored(self):
        return Pbkdf2PasswordHasher(iterations=100_000).hash("pw-tamper")

    def _replace(self, stored, index, value):
        parts = stored.split("$")
        parts[index] = value
        return "$".join(parts)

    @pytest.mark.parametrize("iterations", ["i=99999", "i=2000001", "i=999999999999", "i=abc", "i=-5", "x=100000"])
    def test_out_of_bound_iterations(self, stored, iterations):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        assert hasher.verify(self._replace(stored, 3, iterations), "pw-tamper") is False

    @pytest.mark.parametrize("key_length", ["l=15", "l=65", "l=", "l=31"])
    def test_bad_key_length(self, stored, key_length):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        assert hasher.verify(self._replace(stored, 4, key_length), "pw-tamper") is False

    def test_unknown_digest(self, stored):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        assert hasher.verify(self._replace(stored, 2, "md5"), "pw-tamper") is False

    def test_short_salt(self, stored):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        assert hasher.verify(self._replace(stored, 5, b64url_encode(b"1234567")), "pw-tamper") is False

    def test_bad_base64(self, stored):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        assert hasher.verify(self._replace(stored, 6, "!!!not-base64!!!"), "pw-tamper") is False

    def test_extra_field(self, stored):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        assert hasher.verify(stored + "$extra", "pw-tamper") is False

    def test_flipped_key_byte(self, stored):
        hasher = Pbkdf2PasswordHasher(iterations=100_000)
        key = stored.rsplit("$", 1)[1]
        flipped = ("A" if key[0] != "A" else "B") + key[1:]
        assert hasher.verify(self._replace(stored, 6, flipped), "pw-tamper") is False


class TestPbkdf2Constructor:
    @pytest.mark.parametrize(
        "options",
        [
            {"iterations": 99_999},
            {"iterations": 2_000_001},
            {"key_length": 8},
            {"key_length": 128},
            {"salt_length": 4},
            {"salt_length": 65},
            {"digest": "md5"},
        ],
    )
    def test_out_of_bound_options_rejected(self, options):
        with pytest.raises(ValueError):
            Pbkdf2PasswordHasher(**options)


# ---------------------------------------------------------------------------
# Argon2id
# ---------------------------------------------------------------------------


class TestArgon2id:
    def test_phc_string_carries_parameters(self):
        stored = Argon2idPasswordHasher(memory_cost=1024, time_cost=1, parallelism=1).hash("pw")
        assert stored.startswith("$argon2id$")
        assert "m=1024,t=1,p=1" in stored

    def test_parameter_drift_needs_rehash(self):
        old = Argon2idPasswordHasher(memory_cost=1024, time_cost=1).hash("pw")
        current = Argon2idPasswordHasher(memory_cost=2048, time_cost=1)
        assert current.verify(old, "pw") is True
        assert current.needs_rehash(old) is True

    def test_oversized_memory_cost_rejected_before_hashing(self):
        stored = Argon2idPasswordHasher(memory_cost=1024, time_cost=1).hash("pw")
        planted = stored.replace("m=1024", "m=4194304")
        assert Argon2idPasswordHasher().verify(planted, "pw") is False

    def test_argon2i_hash_rejected(self):
        stored = Argon2idPasswordHasher(memory_cost=1024, time_cost=1).hash("pw")
        assert Argon2idPasswordHasher().verify(stored.replace("$argon2id$", "$argon2i$"), "pw") is False


# ---------------------------------------------------------------------------
# bcrypt
# ---------------------------------------------------------------------------


class TestBcrypt:
    def test_long_password_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            BcryptPasswordHasher(rounds=4).hash("x" * 73)
        assert exc_info.value.code == "INVALID_PASSWORD"

    def test_rounds_drift_needs_rehash(self):
        stored = BcryptPasswordHasher(rounds=4).hash("pw")
        assert BcryptPasswordHasher(rounds=5).needs_rehash(stored) is True

    def test_rounds_bounds(self):
        with pytest.raises(ValueError):
            BcryptPasswordHasher(rounds=3)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestFactory:
    @pytest.mark.parametrize(
        "name,cls",
        [("pbkdf2", Pbkdf2PasswordHasher), ("argon2id", Argon2idPasswordHasher), ("bcrypt", BcryptPasswordHasher)],
    )
    def test_builds_by_id(self, name, cls):
        hasher = create_password_hasher(name)
        assert isinstance(hasher, cls)
        assert hasher.id == name

    def test_passes_options(self):
        assert create_password_hasher("pbkdf2", iterations=200_000).iterations == 200_000

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            create_password_hasher("md5")


# ---------------------------------------------------------------------------
# Migration between algorithms
# ---------------------------------------------------------------------------


class TestMigratingHasher:
    @pytest.fixture
    def pbkdf2(self):
        return Pbkdf2PasswordHasher(iterations=100_000)

    @pytest.fixture
    def bcrypt_hasher(self):
        return BcryptPasswordHasher(rounds=4)

    @pytest.fixture
    def argon2(self):
        return Argon2idPasswordHasher(memory_cost=1024, time_cost=1)

    def test_identifies_own_values_only(self, pbkdf2, bcrypt_hasher, argon2):
        stored = {h.id: h.hash("pw") for h in (pbkdf2, bcrypt_hasher, argon2)}
        for hasher in (pbkdf2, bcrypt_hasher, argon2):
            assert {k for k, v in stored.items() if hasher.identifies(v)} == {hasher.id}
        assert pbkdf2.identifies(None) is False

    def test_hashes_with_primary(self, pbkdf2, bcrypt_hasher):
        hasher = MigratingPasswordHasher(pbkdf2, [bcrypt_hasher])
        assert hasher.id == "pbkdf2"
        assert pbkdf2.identifies(hasher.hash("pw"))

    def test_verifies_legacy_values(self, pbkdf2, bcrypt_hasher, argon2):
        hasher = MigratingPasswordHasher(pbkdf2, [bcrypt_hasher, argon2])
        for legacy in (bcrypt_hasher, argon2):
            stored = legacy.hash("correct horse")
            assert hasher.verify(stored, "correct horse") is True
            assert hasher.verify(stored, "battery staple") is False

    def test_legacy_values_need_rehash(self, pbkdf2, bcrypt_hasher):
        hasher = MigratingPasswordHasher(pbkdf2, [bcrypt_hasher])
        assert hasher.needs_rehash(bcrypt_hasher.hash("pw")) is True
        assert hasher.needs_rehash(pbkdf2.hash("pw")) is False
        assert hasher.needs_rehash(Pbkdf2PasswordHasher(iterations=120_000).hash("pw")) is True

    def test_unrecognised_value_goes_to_primary(self, pbkdf2, bcrypt_hasher):
        hasher = MigratingPasswordHasher(pbkdf2, [bcrypt_hasher])
        assert hasher.verify("not-a-hash", "pw") is False
        assert hasher.verify("", "pw") is False

    def test_factory_registers_other_algorithms_as_legacy(self):
        hasher = create_migrating_hasher("pbkdf2", iterations=100_000)
        assert hasher.primary.id == "pbkdf2"
        assert sorted(h.id for h in hasher.legacy) == ["argon2id", "bcrypt"]
        assert hasher.verify(BcryptPasswordHasher(rounds=4).hash("pw"), "pw") is True
