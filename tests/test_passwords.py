"""Tests for argon2id password hashing and verification."""

import pytest

from fairshare.service.passwords import UNUSABLE_PASSWORD_PREFIX, PasswordSecurity


@pytest.fixture
def passwords():
    return PasswordSecurity(time_cost=1, memory_cost=1024, parallelism=1)


class TestHashing:
    def test_hash_is_argon2id(self, passwords):
        digest = passwords.hash("correct horse")

        assert digest.startswith("$argon2id$")
        assert "correct horse" not in digest

    def test_same_secret_hashes_differently(self, passwords):
        """Salting means two hashes of one secret never match."""
        assert passwords.hash("secret1") != passwords.hash("secret1")

    def test_default_parameters(self):
        digest = PasswordSecurity().hash("pw123456")

        assert "m=65536,t=3,p=4" in digest


class TestVerify:
    def test_matching_secret(self, passwords):
        digest = passwords.hash("pw123456")

        assert passwords.verify("pw123456", digest) is True

    def test_wrong_secret(self, passwords):
        digest = passwords.hash("pw123456")

        assert passwords.verify("pw1234567", digest) is False

    @pytest.mark.parametrize("digest", [None, "", "not-a-hash", "$argon2id$garbage"])
    def test_unparseable_digest_returns_false(self, passwords, digest):
        """verify never raises, whatever the stored digest looks like."""
        assert passwords.verify("pw123456", digest) is False

    def test_unusable_digest_never_matches(self, passwords):
        digest = PasswordSecurity.unusable_digest()

        assert digest.startswith(UNUSABLE_PASSWORD_PREFIX)
        assert passwords.verify("", digest) is False
        assert passwords.verify(digest, digest) is False

    def test_verify_dummy_is_always_false(self, passwords):
        assert passwords.verify_dummy("anything") is False
        # second call reuses the cached dummy digest
        assert passwords.verify_dummy("anything") is False


class TestNeedsRehash:
    def test_weaker_parameters_need_rehash(self, passwords):
        digest = passwords.hash("pw123456")
        stronger = PasswordSecurity(time_cost=2, memory_cost=2048, parallelism=1)

        assert stronger.needs_rehash(digest) is True
        assert passwords.needs_rehash(digest) is False

    def test_unusable_digest_is_left_alone(self, passwords):
        assert passwords.needs_rehash(PasswordSecurity.unusable_digest()) is False
        assert passwords.needs_rehash("") is False
