from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

from fairshare.logging import get_logger
from fairshare.service.errors import ErrorKind, ServiceError
from fairshare.service.lockout import LockoutPolicy
from fairshare.service.tokens import TOKEN_MALFORMED, TokenClaims, TokenService
from fairshare.storage.models import User

logger = get_logger(__name__)

UserLoader = Callable[[str], Awaitable[Optional[User]]]

MISSING_TOKEN = "missing_token"
INVALID_SCHEME = "invalid_scheme"
USER_NOT_FOUND = "user_not_found"
INSUFFICIENT_ROLE = "insufficient_role"


@dataclass(frozen=True)
class AuthContext:
    user: User
    claims: TokenClaims
    token: str

    @property
    def user_id(self) -> str:
        return self.user.id

    def token_info(self) -> dict[str, Any]:
        return {
            "userId": self.claims.user_id,
            "username": self.claims.username,
            "issuedAt": self.claims.issued_at.isoformat(),
            "expiresAt": self.claims.expires_at.isoformat(),
        }


class GateOutcome(str, Enum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    REJECTED = "rejected"


@dataclass(frozen=True)
class GateResult:
    """Result of optional authentication.

    ``ANONYMOUS`` means no credential was offered; ``REJECTED`` means one was
    offered and failed, with the failure in ``error``.
    """

    outcome: GateOutcome
    context: Optional[AuthContext] = None
    error: Optional[ServiceError] = None

    @property
    def authenticated(self) -> bool:
        return self.outcome == GateOutcome.AUTHENTICATED


def extract_bearer(header: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        ServiceError: UNAUTHENTICATED with reason ``missing_token`` when the
            header (or the token after the scheme) is absent, or
            ``invalid_scheme`` when the scheme is not Bearer.
    """
    if not header or not header.strip():
        raise ServiceError(
            ErrorKind.UNAUTHENTICATED,
            "Authorization header is required",
            reason=MISSING_TOKEN,
        )
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise ServiceError(
            ErrorKind.UNAUTHENTICATED,
            "Invalid authorization format. Use 'Bearer <token>'",
            reason=INVALID_SCHEME,
        )
    token = token.strip()
    if not token:
        raise ServiceError(
            ErrorKind.UNAUTHENTICATED, "Token is required", reason=MISSING_TOKEN
        )
    return token


class SessionGate:
    """Turns an Authorization header into an :class:`AuthContext`.

    Checks run in a fixed order: header shape, token verification, account
    existence, account status, then lockout. The first failure wins.
    """

    def __init__(
        self,
        tokens: TokenService,
        lockout: LockoutPolicy,
        load_user: UserLoader,
    ) -> None:
        self.tokens = tokens
        self.lockout = lockout
        self._load_user = load_user

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        claims = self.tokens.verify(token)

        user = await self._load_user(claims.user_id)
        if user is None:
            logger.warning("auth_user_not_found", user_id=claims.user_id, reason=USER_NOT_FOUND)
            # wire error is identical to a malformed token; only the log knows why
            raise ServiceError(
                ErrorKind.UNAUTHENTICATED, "Invalid token", reason=TOKEN_MALFORMED
            )

        if not user.is_active:
            raise ServiceError(
                ErrorKind.FORBIDDEN,
                f"Account is {user.status.value}. Please contact support.",
                reason=f"account_{user.status.value}",
            )

        self.lockout.ensure_open(user)
        return AuthContext(user=user, claims=claims, token=token)

    async def authenticate_optional(self, authorization: Optional[str]) -> GateResult:
        if not authorization or not authorization.strip():
            return GateResult(GateOutcome.ANONYMOUS)
        try:
            context = await self.authenticate(authorization)
        except ServiceError as exc:
            # never blocks the request; a store outage is only louder in the log
            log_fn = logger.warning if exc.kind == ErrorKind.TRANSIENT else logger.info
            log_fn(
                "optional_auth_rejected",
                reason=exc.reason,
                error_kind=exc.kind.name,
            )
            return GateResult(GateOutcome.REJECTED, error=exc)
        return GateResult(GateOutcome.AUTHENTICATED, context=context)


def require_role(context: Optional[AuthContext], roles: Iterable[str]) -> AuthContext:
    """Check that an authenticated caller holds one of ``roles``.

    Raises:
        ServiceError: UNAUTHENTICATED without a context, FORBIDDEN with reason
            ``insufficient_role`` when the caller's role is not listed.
    """
    if context is None:
        raise ServiceError(ErrorKind.UNAUTHENTICATED, "Authentication required")
    allowed = set(roles)
    if (context.user.role or "user") not in allowed:
        logger.warning(
            "role_check_failed",
            user_id=context.user.id,
            role=context.user.role,
            required=sorted(allowed),
        )
        raise ServiceError(
            ErrorKind.FORBIDDEN, "Insufficient permissions", reason=INSUFFICIENT_ROLE
        )
    return context
