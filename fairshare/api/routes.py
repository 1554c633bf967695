from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Request, Response
from fastapi.responses import JSONResponse

from fairshare.api.schemas import (
    Envelope,
    GoogleSigninRequest,
    RefreshTokenRequest,
    SigninRequest,
    SignoutRequest,
    SignupRequest,
    UserStatusUpdateRequest,
)
from fairshare.logging import get_logger
from fairshare.service.errors import ErrorKind, ServiceError
from fairshare.service.rate_limit import RateLimitDecision
from fairshare.service.runtime import get_runtime
from fairshare.service.session_gate import AuthContext, GateResult, require_role

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_decision(cls, decision: RateLimitDecision) -> "RateLimitInfo":
        return cls(decision.limit, decision.remaining, decision.reset_seconds)

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_key(request: Request) -> str:
    """Rate-limit key for the caller: the peer address, or the first forwarded hop when trusted."""
    runtime = get_runtime()
    if runtime.settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(request: Request) -> RateLimitInfo:
    """Count the request against the signin limiter.

    Raises:
        ServiceError: RATE_LIMITED once the client exceeds its per-window limit.
    """
    runtime = get_runtime()
    decision = runtime.signin_limiter.check(_client_key(request))
    info = RateLimitInfo.from_decision(decision)
    if not decision.allowed:
        raise ServiceError(
            ErrorKind.RATE_LIMITED,
            "Too many authentication attempts. Please try again later.",
            detail={
                "limit": info.limit,
                "remaining": 0,
                "reset_seconds": info.reset_seconds,
                "retry_after_seconds": decision.retry_after_seconds,
            },
        )
    return info


def _respond(
    message: str,
    data: Any = None,
    *,
    status_code: int = 200,
    rate_limit: Optional[RateLimitInfo] = None,
) -> JSONResponse:
    envelope = Envelope.ok(message, data, status_code=status_code)
    response = JSONResponse(status_code=status_code, content=envelope.to_content())
    if rate_limit is not None:
        rate_limit.apply_headers(response)
    return response


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Session gate dependency: reject the request unless it carries a valid session."""
    ctx = await get_runtime().auth.gate.authenticate(authorization)
    request.state.user = ctx.user
    request.state.token = ctx.token_info()
    return ctx


async def get_optional_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> GateResult:
    result = await get_runtime().auth.gate.authenticate_optional(authorization)
    request.state.user = result.context.user if result.context else None
    request.state.token = result.context.token_info() if result.context else None
    return result


async def get_admin_user(ctx: AuthContext = Depends(get_user)) -> AuthContext:
    return require_role(ctx, {"admin"})


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest = Body(...)):
    """Create a new account and return it with a session token.

    Raises:
        400: Missing fields, malformed username/email or short password
        409: Email or username already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.signup(
        body.username,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _respond("User registered successfully", result.to_payload(), status_code=201)


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(request: Request, body: SigninRequest = Body(...)):
    """Authenticate with username and password.

    Raises:
        400: Missing username or password
        401: Unknown username or wrong password
        403: Account not active
        423: Account locked after repeated failures
        429: Too many attempts from this client
    """
    info = _enforce_rate_limit(request)
    result = await get_runtime().auth.signin(body.username, body.password)
    return _respond("Login successful", result.to_payload(), rate_limit=info)


@router.post("/auth/signout", response_model=Envelope, tags=["auth"])
async def signout(body: SignoutRequest = Body(...)):
    """Clear the stored session for ``userId``; succeeds for unknown ids."""
    await get_runtime().auth.signout(body.user_id)
    return _respond("Logout successful")


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    body: RefreshTokenRequest = Body(...),
    authorization: Optional[str] = Header(None),
):
    """Issue a new token for ``userId``.

    Raises:
        400: Missing userId
        401: Missing or invalid bearer token (when tokens are required)
        403: Token belongs to another user, or account inactive
        404: Unknown user (when tokens are not required)
    """
    issued = await get_runtime().auth.refresh(body.user_id, authorization)
    return _respond(
        "Token refreshed successfully",
        {"token": issued.token, "expiresAt": issued.expires_at.isoformat()},
    )


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def google_signin(body: GoogleSigninRequest = Body(...)):
    """Sign in with a Google ID token, creating the account on first use.

    Raises:
        400: Google sign-in not configured or token missing
        401: Token rejected by Google or issued for another client
        503: Google unreachable
    """
    result = await get_runtime().auth.google_signin(body.id_token)
    status_code = 201 if result.created else 200
    return _respond("Login successful", result.to_payload(), status_code=status_code)


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    return _respond(
        "Current user",
        {"user": principal.user.to_public_dict(), "token": principal.token_info()},
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_probe(result: GateResult = Depends(get_optional_user)):
    """Report whether the caller is signed in; never rejects the request."""
    data: dict[str, Any] = {"authenticated": result.authenticated}
    if result.context is not None:
        data["user"] = result.context.user.to_public_dict()
        data["token"] = result.context.token_info()
    return _respond("Session status", data)


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    body: UserStatusUpdateRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    """Set an account's status (admin only).

    Raises:
        400: Unknown status value
        403: Caller is not an admin
        404: Unknown user
    """
    user = await get_runtime().auth.set_user_status(user_id, body.status)
    logger.info(
        "admin_status_update", admin_id=principal.user_id, user_id=user_id, status=body.status
    )
    return _respond("User status updated", {"user": user.to_public_dict()})


@router.post("/admin/users/{user_id}/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_admin_user),
):
    """Clear failed-attempt counters and any active lock (admin only)."""
    user = await get_runtime().auth.unlock_user(user_id)
    logger.info("admin_unlock", admin_id=principal.user_id, user_id=user_id)
    return _respond("User unlocked", {"user": user.to_public_dict()})
