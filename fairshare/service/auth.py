from __future__ import annotations

import asyncio
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, TypeVar

from fairshare.config import Settings
from fairshare.logging import get_logger
from fairshare.service.errors import ErrorKind, ServiceError
from fairshare.service.google import GoogleIdentityVerifier
from fairshare.service.lockout import LockoutPolicy, account_locked_error
from fairshare.service.passwords import PasswordSecurity
from fairshare.service.session_gate import SessionGate
from fairshare.service.tokens import Clock, IssuedToken, TokenService
from fairshare.service.validation import (
    canonical_username,
    check_password,
    normalize_email,
    normalize_username,
)
from fairshare.storage.errors import ConstraintViolation, StoreUnavailable
from fairshare.storage.models import AuthProvider, User, UserStatus, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS_MESSAGE = "Invalid username or password"
TRANSIENT_MESSAGE = "Service temporarily unavailable, please retry"


class CredentialStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(self, user: User) -> User: ...

    def update_user(self, user_id: str, **patch: Any) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        threshold: int,
        lock_duration: timedelta,
    ) -> Optional[User]: ...

    def reset_login_attempts(self, user_id: str) -> Optional[User]: ...

    def verify_connection(self) -> bool: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class AuthResult:
    user: User
    token: IssuedToken
    created: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "user": self.user.to_public_dict(),
            "token": self.token.token,
            "expiresAt": self.token.expires_at.isoformat(),
        }


def _invalid_credentials() -> ServiceError:
    return ServiceError(
        ErrorKind.UNAUTHENTICATED,
        INVALID_CREDENTIALS_MESSAGE,
        reason="invalid_credentials",
    )


def _inactive_account(user: User) -> ServiceError:
    return ServiceError(
        ErrorKind.FORBIDDEN,
        f"Account is {user.status.value}. Please contact support.",
        reason=f"account_{user.status.value}",
    )


class AuthService:
    """Signup, signin, signout, token refresh and Google sign-in.

    The credential store is synchronous; every call goes through
    :meth:`_call_store`, which runs it on a worker thread so the event loop
    is never blocked.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordSecurity] = None,
        tokens: Optional[TokenService] = None,
        lockout: Optional[LockoutPolicy] = None,
        google: Optional[GoogleIdentityVerifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.settings = settings
        self._clock = clock or utcnow
        self.passwords = passwords or PasswordSecurity(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self.tokens = tokens or TokenService(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            lifetime=timedelta(minutes=settings.token_ttl_minutes),
            leeway=timedelta(seconds=settings.token_leeway_seconds),
            clock=self._clock,
        )
        self.lockout = lockout or LockoutPolicy(
            threshold=settings.lockout_threshold,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
            clock=self._clock,
        )
        self.google = google or GoogleIdentityVerifier(
            settings.google_client_id,
            tokeninfo_url=settings.google_tokeninfo_url,
            timeout=settings.google_timeout_seconds,
        )
        self.gate = SessionGate(self.tokens, self.lockout, self.load_user)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    async def _call_store(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        idempotent: bool = False,
        **kwargs: Any,
    ) -> T:
        """Run a blocking store call off the event loop.

        Idempotent calls run under ``store_timeout_seconds`` and get one retry;
        a late commit from an abandoned attempt is harmless because replaying
        the call gives the same result. Other calls (account creation, failure
        counting) are awaited until the worker returns, so a TRANSIENT answer
        is never followed by a write from that same request. Their deadline
        is the backend's own socket timeout, raised as ``StoreUnavailable``.
        Either way an unreachable backend becomes ``ServiceError(TRANSIENT)``.
        """
        attempts = 2 if idempotent else 1
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                call = asyncio.to_thread(fn, *args, **kwargs)
                if not idempotent:
                    return await call
                return await asyncio.wait_for(
                    call, timeout=self.settings.store_timeout_seconds
                )
            except (asyncio.TimeoutError, StoreUnavailable) as exc:
                last_error = exc
                self.logger.warning(
                    "store_call_failed",
                    operation=operation,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
        raise ServiceError(
            ErrorKind.TRANSIENT, TRANSIENT_MESSAGE, detail={"operation": operation}
        ) from last_error

    async def load_user(self, user_id: str) -> Optional[User]:
        return await self._call_store("get_user", self.store.get_user, user_id, idempotent=True)

    # -- signup -------------------------------------------------------------

    async def signup(
        self,
        username: Optional[str],
        email: Optional[str],
        password: Optional[str],
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        missing = [
            name
            for name, value in (("username", username), ("email", email), ("password", password))
            if not value
        ]
        if missing:
            raise ServiceError(
                ErrorKind.VALIDATION_FAILED,
                "Username, email, and password are required",
                detail={"missing": missing},
            )
        try:
            username = normalize_username(username)
            email = normalize_email(email)
            check_password(password, min_length=self.settings.password_min_length)
        except ValueError as exc:
            raise ServiceError(ErrorKind.VALIDATION_FAILED, str(exc)) from exc

        if await self._call_store(
            "get_user_by_email", self.store.get_user_by_email, email, idempotent=True
        ):
            raise ServiceError(
                ErrorKind.CONFLICT, "Email is already in use", reason="email_taken"
            )
        if await self._call_store(
            "get_user_by_username", self.store.get_user_by_username, username, idempotent=True
        ):
            raise ServiceError(
                ErrorKind.CONFLICT, "Username is already in use", reason="username_taken"
            )

        digest = await asyncio.to_thread(self.passwords.hash, password)
        user = User.new(
            username,
            email,
            digest,
            status=self.settings.signup_default_status,
            first_name=first_name,
            last_name=last_name,
        )
        created = await self._create_user(user)
        issued = self.tokens.issue(created.id, created.username)
        stored = await self._call_store(
            "update_user",
            self.store.update_user,
            created.id,
            current_token=issued.token,
            idempotent=True,
        )
        self.logger.info("signup_succeeded", user_id=created.id, username=created.username)
        return AuthResult(user=stored or created, token=issued, created=True)

    async def _create_user(self, user: User) -> User:
        try:
            return await self._call_store("create_user", self.store.create_user, user)
        except ConstraintViolation as exc:
            # lost a race with a concurrent signup for the same email/username
            field = exc.detail.get("field", "account")
            self.logger.info("signup_duplicate_race", field=field)
            message = {
                "email": "Email is already in use",
                "username": "Username is already in use",
            }.get(field, "Account already exists")
            raise ServiceError(
                ErrorKind.CONFLICT, message, reason=f"{field}_taken"
            ) from exc

    # -- signin -------------------------------------------------------------

    async def signin(self, username: Optional[str], password: Optional[str]) -> AuthResult:
        if not username or not password:
            raise ServiceError(
                ErrorKind.VALIDATION_FAILED, "Username and password are required"
            )
        lookup = canonical_username(username)
        user = await self._call_store(
            "get_user_by_username", self.store.get_user_by_username, lookup, idempotent=True
        )
        if user is None:
            await asyncio.to_thread(self.passwords.verify_dummy, password)
            self.logger.info("signin_failed", reason="unknown_user")
            raise _invalid_credentials()

        now = self._now()
        if self.lockout.is_locked(user, now):
            self.logger.warning("signin_refused_locked", user_id=user.id)
            raise account_locked_error(user.security.locked_until)

        if not await asyncio.to_thread(self.passwords.verify, password, user.password_hash):
            updated = await self._call_store(
                "record_failed_login",
                self.store.record_failed_login,
                user.id,
                **self.lockout.store_arguments(now),
            )
            if updated is not None and updated.security.is_locked(now):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_attempts=updated.security.failed_attempts,
                    locked_until=updated.security.locked_until.isoformat(),
                )
            else:
                self.logger.info("signin_failed", reason="bad_password", user_id=user.id)
            raise _invalid_credentials()

        rehash = None
        if self.passwords.needs_rehash(user.password_hash):
            rehash = await asyncio.to_thread(self.passwords.hash, password)
        return await self._complete_login(user, now, password_hash=rehash)

    async def _complete_login(
        self,
        user: User,
        now: datetime,
        *,
        password_hash: Optional[str] = None,
        created: bool = False,
    ) -> AuthResult:
        self.lockout.ensure_open(user, now)
        if not user.is_active:
            self.logger.warning(
                "signin_refused_status", user_id=user.id, status=user.status.value
            )
            raise _inactive_account(user)

        issued = self.tokens.issue(user.id, user.username)
        if user.security.failed_attempts or user.security.locked_until:
            await self._call_store(
                "reset_login_attempts",
                self.store.reset_login_attempts,
                user.id,
                idempotent=True,
            )
        patch: dict[str, Any] = {"current_token": issued.token, "last_login": now}
        if password_hash:
            patch["password_hash"] = password_hash
            self.logger.info("password_rehashed", user_id=user.id)
        stored = await self._call_store(
            "update_user", self.store.update_user, user.id, idempotent=True, **patch
        )
        self.logger.info("signin_succeeded", user_id=user.id, provider=user.auth_provider.value)
        return AuthResult(user=stored or user, token=issued, created=created)

    # -- signout / refresh --------------------------------------------------

    async def signout(self, user_id: Optional[str]) -> None:
        if not user_id:
            raise ServiceError(ErrorKind.VALIDATION_FAILED, "User ID is required")
        updated = await self._call_store(
            "update_user",
            self.store.update_user,
            user_id,
            current_token=None,
            last_logout=self._now(),
            idempotent=True,
        )
        if updated is None:
            self.logger.info("signout_unknown_user", user_id=user_id)
            return
        self.logger.info("signout_succeeded", user_id=user_id)

    async def refresh(
        self, user_id: Optional[str], authorization: Optional[str] = None
    ) -> IssuedToken:
        """Issue a fresh token for ``user_id``.

        With ``refresh_requires_token`` enabled (the default) the caller must
        present a valid bearer token for the same user and the full session
        gate applies.

        Raises:
            ServiceError: VALIDATION_FAILED without a user id; the session
                gate's errors; FORBIDDEN when the token belongs to another
                user; NOT_FOUND for an unknown id when no token is required.
        """
        if not user_id:
            raise ServiceError(ErrorKind.VALIDATION_FAILED, "User ID is required")
        if self.settings.refresh_requires_token:
            context = await self.gate.authenticate(authorization)
            if context.user.id != user_id:
                self.logger.warning(
                    "refresh_user_mismatch", token_user_id=context.user.id, user_id=user_id
                )
                raise ServiceError(
                    ErrorKind.FORBIDDEN,
                    "Token does not belong to this user",
                    reason="token_user_mismatch",
                )
            user = context.user
        else:
            user = await self.load_user(user_id)
            if user is None:
                raise ServiceError(ErrorKind.NOT_FOUND, "User not found")

        issued = self.tokens.issue(user.id, user.username)
        await self._call_store(
            "update_user",
            self.store.update_user,
            user.id,
            current_token=issued.token,
            idempotent=True,
        )
        self.logger.info("token_refreshed", user_id=user.id)
        return issued

    # -- google -------------------------------------------------------------

    async def google_signin(self, id_token: Optional[str]) -> AuthResult:
        identity = await self.google.verify(id_token or "")
        user = await self._call_store(
            "get_user_by_email", self.store.get_user_by_email, identity.email, idempotent=True
        )
        created = False
        if user is None:
            username = await self._available_username(identity.email)
            candidate = User.new(
                username,
                identity.email,
                PasswordSecurity.unusable_digest(),
                status=self.settings.signup_default_status,
                auth_provider=AuthProvider.GOOGLE,
                first_name=identity.given_name,
                last_name=identity.family_name,
            )
            try:
                user = await self._call_store("create_user", self.store.create_user, candidate)
                created = True
                self.logger.info("google_user_created", user_id=user.id)
            except ConstraintViolation:
                user = await self._call_store(
                    "get_user_by_email",
                    self.store.get_user_by_email,
                    identity.email,
                    idempotent=True,
                )
                if user is None:
                    raise ServiceError(
                        ErrorKind.CONFLICT, "Account already exists", reason="username_taken"
                    )
        return await self._complete_login(user, self._now(), created=created)

    async def _available_username(self, email: str) -> str:
        local = email.split("@", 1)[0].lower()
        base = re.sub(r"[^a-z0-9_]", "_", local)[:24]
        if len(base) < 3:
            base = f"user_{base}"
        candidates = [base] + [f"{base}_{secrets.token_hex(2)}" for _ in range(4)]
        for candidate in candidates:
            taken = await self._call_store(
                "get_user_by_username",
                self.store.get_user_by_username,
                candidate,
                idempotent=True,
            )
            if not taken:
                return candidate
        return f"user_{secrets.token_hex(6)}"

    # -- admin --------------------------------------------------------------

    async def set_user_status(self, user_id: str, status: str) -> User:
        try:
            new_status = UserStatus(status)
        except ValueError as exc:
            allowed = ", ".join(s.value for s in UserStatus)
            raise ServiceError(
                ErrorKind.VALIDATION_FAILED, f"Status must be one of: {allowed}"
            ) from exc
        updated = await self._call_store(
            "update_user", self.store.update_user, user_id, status=new_status, idempotent=True
        )
        if updated is None:
            raise ServiceError(ErrorKind.NOT_FOUND, "User not found")
        self.logger.info("user_status_changed", user_id=user_id, status=new_status.value)
        return updated

    async def unlock_user(self, user_id: str) -> User:
        updated = await self._call_store(
            "reset_login_attempts", self.store.reset_login_attempts, user_id, idempotent=True
        )
        if updated is None:
            raise ServiceError(ErrorKind.NOT_FOUND, "User not found")
        self.logger.info("user_unlocked", user_id=user_id)
        return updated

    async def check_store(self) -> bool:
        return bool(
            await self._call_store(
                "verify_connection", self.store.verify_connection, idempotent=True
            )
        )
