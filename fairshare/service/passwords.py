from __future__ import annotations

import secrets
import threading
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from fairshare.logging import get_logger

logger = get_logger(__name__)

# Prefix that can never be produced by argon2; marks accounts without a password
UNUSABLE_PASSWORD_PREFIX = "!"


class PasswordSecurity:
    """Argon2id hashing and constant-time verification of user passwords."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_digest: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, secret: str, digest: Optional[str]) -> bool:
        """Return True iff ``secret`` matches ``digest``.

        Never raises: a mismatch, an empty digest, an unusable-password marker or
        a digest argon2 cannot parse all yield False.
        """
        if not digest or digest.startswith(UNUSABLE_PASSWORD_PREFIX):
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_digest_unverifiable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, digest: str) -> bool:
        if not digest or digest.startswith(UNUSABLE_PASSWORD_PREFIX):
            return False
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return False

    def verify_dummy(self, secret: str) -> bool:
        """Spend one verification against a throwaway digest.

        Used when the account does not exist so the response takes as long as a
        real password check. Always returns False.
        """
        with self._dummy_lock:
            if self._dummy_digest is None:
                self._dummy_digest = self._hasher.hash(secrets.token_urlsafe(16))
            digest = self._dummy_digest
        self.verify(secret, digest)
        return False

    @staticmethod
    def unusable_digest() -> str:
        """Digest for accounts that authenticate elsewhere (e.g. Google)."""
        return UNUSABLE_PASSWORD_PREFIX + secrets.token_urlsafe(32)
