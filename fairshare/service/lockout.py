from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fairshare.service.errors import LOCKED_STATUS, ErrorKind, ServiceError
from fairshare.service.tokens import Clock
from fairshare.storage.models import User, utcnow

ACCOUNT_LOCKED = "account_locked"
LOCKED_MESSAGE = "Account is temporarily locked due to multiple failed login attempts"


def account_locked_error(locked_until: Optional[datetime] = None) -> ServiceError:
    detail = {"locked_until": locked_until.isoformat()} if locked_until else None
    return ServiceError(
        ErrorKind.FORBIDDEN,
        LOCKED_MESSAGE,
        reason=ACCOUNT_LOCKED,
        detail=detail,
        status_code=LOCKED_STATUS,
    )


class LockoutPolicy:
    """Brute-force lockout rules.

    An account is ``Locked`` while ``security.locked_until`` lies in the future
    and ``Open`` otherwise. The policy only decides; counting happens in the
    store's atomic ``record_failed_login`` using :meth:`store_arguments`.
    """

    def __init__(
        self,
        *,
        threshold: int = 5,
        duration: timedelta = timedelta(hours=2),
        clock: Optional[Clock] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        self.threshold = threshold
        self.duration = duration
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def is_locked(self, user: User, now: Optional[datetime] = None) -> bool:
        return user.security.is_locked(now or self.now())

    def ensure_open(self, user: User, now: Optional[datetime] = None) -> None:
        """Raise the 423 ``account_locked`` error if ``user`` is locked."""
        if self.is_locked(user, now):
            raise account_locked_error(user.security.locked_until)

    def store_arguments(self, now: Optional[datetime] = None) -> dict:
        return {
            "now": now or self.now(),
            "threshold": self.threshold,
            "lock_duration": self.duration,
        }
