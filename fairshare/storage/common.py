"""Common storage utilities shared between the memory and redis implementations.

Both backends persist a user as a flat document of primitive values so the
same encoding serves a JSON state file and a Redis hash.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

from fairshare.storage.models import (
    SECURITY_FIELDS,
    UPDATABLE_FIELDS,
    AuthProvider,
    SecurityState,
    User,
    UserStatus,
    utcnow,
)


def _dt_to_str(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def _str_to_dt(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode()
    return datetime.fromisoformat(raw)


def user_to_document(user: User) -> Dict[str, str]:
    """Flatten a user into string fields (empty string stands for ``None``)."""

    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "password_hash": user.password_hash,
        "status": user.status.value,
        "role": user.role,
        "auth_provider": user.auth_provider.value,
        "first_name": user.first_name or "",
        "last_name": user.last_name or "",
        "failed_attempts": str(user.security.failed_attempts),
        "locked_until": _dt_to_str(user.security.locked_until),
        "last_login": _dt_to_str(user.security.last_login),
        "last_logout": _dt_to_str(user.security.last_logout),
        "current_token": user.security.current_token or "",
        "created_at": _dt_to_str(user.created_at),
        "updated_at": _dt_to_str(user.updated_at),
    }


def user_from_document(doc: Mapping[Any, Any]) -> User:
    data = {
        (k.decode() if isinstance(k, bytes) else k): (
            v.decode() if isinstance(v, bytes) else v
        )
        for k, v in doc.items()
    }
    return User(
        id=data["id"],
        username=data["username"],
        email=data["email"],
        password_hash=data.get("password_hash", ""),
        status=UserStatus(data.get("status") or UserStatus.ACTIVE.value),
        role=data.get("role") or "user",
        auth_provider=AuthProvider(data.get("auth_provider") or AuthProvider.PASSWORD.value),
        first_name=data.get("first_name") or None,
        last_name=data.get("last_name") or None,
        security=SecurityState(
            failed_attempts=int(data.get("failed_attempts") or 0),
            locked_until=_str_to_dt(data.get("locked_until")),
            last_login=_str_to_dt(data.get("last_login")),
            last_logout=_str_to_dt(data.get("last_logout")),
            current_token=data.get("current_token") or None,
        ),
        created_at=_str_to_dt(data.get("created_at")) or utcnow(),
        updated_at=_str_to_dt(data.get("updated_at")) or utcnow(),
    )


def validate_patch(patch: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = set(patch) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not updatable: {', '.join(sorted(unknown))}")
    normalized = dict(patch)
    if "status" in normalized:
        normalized["status"] = UserStatus(normalized["status"])
    return normalized


def apply_patch(user: User, patch: Mapping[str, Any], now: datetime) -> User:
    """Apply a validated patch to ``user`` in place and return it."""

    for name, value in patch.items():
        if name in SECURITY_FIELDS:
            setattr(user.security, name, value)
        else:
            setattr(user, name, value)
    user.updated_at = now
    return user


def apply_failed_login(
    user: User, now: datetime, threshold: int, lock_duration: timedelta
) -> User:
    """Count one failed login against ``user`` in place.

    A lock that has already elapsed is treated as spent: the counter restarts
    before this attempt is counted. A new lock is only set when none is active.
    """

    security = user.security
    lock_active = security.is_locked(now)
    if security.locked_until is not None and not lock_active:
        security.failed_attempts = 0
        security.locked_until = None
    security.failed_attempts += 1
    if security.failed_attempts >= threshold and not lock_active:
        security.locked_until = now + lock_duration
    user.updated_at = now
    return user


def patch_to_document(patch: Mapping[str, Any]) -> Dict[str, str]:
    encoded: Dict[str, str] = {}
    for name, value in patch.items():
        if isinstance(value, datetime):
            encoded[name] = value.isoformat()
        elif isinstance(value, UserStatus):
            encoded[name] = value.value
        elif value is None:
            encoded[name] = ""
        else:
            encoded[name] = str(value)
    return encoded
