from __future__ import annotations

import re
import unicodedata

MAX_EMAIL_LENGTH = 254
MAX_PASSWORD_LENGTH = 128

_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]{3,30}$")
_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

# zero-width and bidi override characters that can be used to spoof identifiers
_INVISIBLE = frozenset(
    ["\u200b", "\u200c", "\u200d", "\ufeff"]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2066, 0x206A)]
)


def _normalize_unicode(value: str) -> str:
    cleaned = "".join(c for c in value if c not in _INVISIBLE)
    return unicodedata.normalize("NFKC", cleaned)


def canonical_username(value: str) -> str:
    """Fold a username the way it is stored, without checking its format."""
    return _normalize_unicode(value.strip()).lower().strip()


def normalize_username(value: str) -> str:
    """Validate a username and return its canonical (lower-cased) form.

    Usernames are 3-30 characters of ASCII letters, digits and underscores.
    """
    normalized = canonical_username(value)
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "Username must be 3-30 characters and contain only letters, numbers, and underscores"
        )
    return normalized


def normalize_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("Email address is too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Please provide a valid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def check_password(value: str, *, min_length: int) -> str:
    if len(value) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters long")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    return value
