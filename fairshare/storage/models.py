from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    """Account lifecycle states; only ``ACTIVE`` accounts may authenticate."""

    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class AuthProvider(str, Enum):
    PASSWORD = "password"
    GOOGLE = "google"


@dataclass
class SecurityState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    last_logout: Optional[datetime] = None
    current_token: Optional[str] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    status: UserStatus = UserStatus.ACTIVE
    role: str = "user"
    auth_provider: AuthProvider = AuthProvider.PASSWORD
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    security: SecurityState = field(default_factory=SecurityState)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        password_hash: str,
        *,
        status: UserStatus = UserStatus.ACTIVE,
        role: str = "user",
        auth_provider: AuthProvider = AuthProvider.PASSWORD,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username.strip().lower(),
            email=email.strip().lower(),
            password_hash=password_hash,
            status=UserStatus(status),
            role=role,
            auth_provider=AuthProvider(auth_provider),
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def copy(self) -> "User":
        return replace(self, security=replace(self.security))

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for API responses; the password digest and token mirror are omitted."""

        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "status": self.status.value,
            "role": self.role,
            "authProvider": self.auth_provider.value,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "lastLogin": _iso(self.security.last_login),
            "lastLogout": _iso(self.security.last_logout),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# Fields callers may pass to ``update_user``. Security counters are excluded:
# they only change through record_failed_login/reset_login_attempts.
UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "role",
        "password_hash",
        "first_name",
        "last_name",
        "last_login",
        "last_logout",
        "current_token",
    }
)
SECURITY_FIELDS = frozenset({"last_login", "last_logout", "current_token"})
