"""Tests for argon2id password hashing."""

from authledger.service.passwords import PasswordHasher


def _fast_hasher(**params):
    params.setdefault("time_cost", 1)
    params.setdefault("memory_cost", 8)
    params.setdefault("parallelism", 1)
    return PasswordHasher(**params)


class TestPasswordHashing:
    def test_hash_is_salted(self):
        hasher = _fast_hasher()
        first = hasher.hash("TestPassword123!")
        second = hasher.hash("TestPassword123!")

        assert first != second
        assert first.startswith("$argon2id$")
        assert "TestPassword123!" not in first

    def test_verify_matches_and_mismatches(self):
        hasher = _fast_hasher()
        digest = hasher.hash("TestPassword123!")

        assert hasher.verify("TestPassword123!", digest) is True
        assert hasher.verify("WrongPassword123!", digest) is False

    def test_verify_never_raises_on_bad_digest(self):
        hasher = _fast_hasher()
        assert hasher.verify("TestPassword123!", "not-a-hash") is False
        assert hasher.verify("TestPassword123!", "") is False

    def test_needs_rehash_on_parameter_change(self):
        legacy = _fast_hasher(time_cost=2)
        current = _fast_hasher()
        digest = legacy.hash("TestPassword123!")

        assert current.needs_rehash(digest) is True
        assert current.needs_rehash(current.hash("TestPassword123!")) is False
        assert current.needs_rehash("garbage") is True
