"""Tests for the session gate and its optional/role variants."""

from datetime import timedelta

import pytest

from fairshare.service.errors import LOCKED_STATUS, ErrorKind, ServiceError
from fairshare.service.lockout import LockoutPolicy
from fairshare.service.session_gate import (
    INSUFFICIENT_ROLE,
    INVALID_SCHEME,
    MISSING_TOKEN,
    GateOutcome,
    SessionGate,
    extract_bearer,
    require_role,
)
from fairshare.service.tokens import TOKEN_EXPIRED, TOKEN_MALFORMED, TokenService
from fairshare.storage.models import User, UserStatus


@pytest.fixture
def tokens(fake_clock):
    return TokenService(
        "gate-test-secret-0123456789abcdef",
        issuer="fairshare",
        audience="fairshare-clients",
        lifetime=timedelta(hours=1),
        clock=fake_clock,
    )


@pytest.fixture
def users():
    return {}


@pytest.fixture
def gate(tokens, fake_clock, users):
    async def load_user(user_id):
        return users.get(user_id)

    return SessionGate(tokens, LockoutPolicy(clock=fake_clock), load_user)


@pytest.fixture
def alice(users):
    user = User.new("alice", "alice@example.com", "digest")
    users[user.id] = user
    return user


def _bearer(tokens, user):
    return f"Bearer {tokens.issue(user.id, user.username).token}"


class TestExtractBearer:
    @pytest.mark.parametrize("header", [None, "", "   "])
    def test_missing_header(self, header):
        with pytest.raises(ServiceError) as exc:
            extract_bearer(header)
        assert exc.value.message == "Authorization header is required"
        assert exc.value.reason == MISSING_TOKEN

    @pytest.mark.parametrize("header", ["Basic abc", "Token abc", "abc"])
    def test_wrong_scheme(self, header):
        with pytest.raises(ServiceError) as exc:
            extract_bearer(header)
        assert exc.value.message == "Invalid authorization format. Use 'Bearer <token>'"
        assert exc.value.reason == INVALID_SCHEME

    def test_scheme_without_token(self):
        with pytest.raises(ServiceError) as exc:
            extract_bearer("Bearer ")
        assert exc.value.message == "Token is required"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer abc.def.ghi") == "abc.def.ghi"


class TestAuthenticate:
    async def test_valid_token(self, gate, tokens, alice):
        ctx = await gate.authenticate(_bearer(tokens, alice))

        assert ctx.user_id == alice.id
        assert ctx.claims.username == "alice"
        info = ctx.token_info()
        assert info["userId"] == alice.id
        assert set(info) == {"userId", "username", "issuedAt", "expiresAt"}

    async def test_expired_token(self, gate, tokens, alice, fake_clock):
        header = _bearer(tokens, alice)
        fake_clock.advance(timedelta(hours=1))

        with pytest.raises(ServiceError) as exc:
            await gate.authenticate(header)
        assert exc.value.status_code == 401
        assert exc.value.reason == TOKEN_EXPIRED

    async def test_garbage_token(self, gate):
        with pytest.raises(ServiceError) as exc:
            await gate.authenticate("Bearer not.a.token")
        assert exc.value.reason == TOKEN_MALFORMED

    async def test_deleted_user_looks_like_bad_token(self, gate, tokens, alice, users):
        header = _bearer(tokens, alice)
        del users[alice.id]

        with pytest.raises(ServiceError) as deleted:
            await gate.authenticate(header)
        with pytest.raises(ServiceError) as garbage:
            await gate.authenticate("Bearer not.a.token")

        assert deleted.value.status_code == 401
        assert deleted.value.message == garbage.value.message == "Invalid token"
        assert deleted.value.reason == garbage.value.reason == TOKEN_MALFORMED

    async def test_token_signed_with_other_secret(self, gate, fake_clock, alice):
        forger = TokenService(
            "some-other-secret-0123456789abcdef",
            issuer="fairshare",
            audience="fairshare-clients",
            lifetime=timedelta(hours=1),
            clock=fake_clock,
        )

        with pytest.raises(ServiceError) as exc:
            await gate.authenticate(_bearer(forger, alice))
        assert exc.value.kind == ErrorKind.UNAUTHENTICATED
        assert exc.value.reason == TOKEN_MALFORMED

    @pytest.mark.parametrize("status", [UserStatus.PENDING, UserStatus.SUSPENDED, UserStatus.INACTIVE])
    async def test_inactive_account(self, gate, tokens, alice, status):
        alice.status = status

        with pytest.raises(ServiceError) as exc:
            await gate.authenticate(_bearer(tokens, alice))
        assert exc.value.kind == ErrorKind.FORBIDDEN
        assert exc.value.status_code == 403
        assert exc.value.reason == f"account_{status.value}"

    async def test_locked_account(self, gate, tokens, alice, fake_clock):
        alice.security.locked_until = fake_clock.now + timedelta(minutes=5)

        with pytest.raises(ServiceError) as exc:
            await gate.authenticate(_bearer(tokens, alice))
        assert exc.value.status_code == LOCKED_STATUS

    async def test_status_checked_before_lock(self, gate, tokens, alice, fake_clock):
        alice.status = UserStatus.SUSPENDED
        alice.security.locked_until = fake_clock.now + timedelta(minutes=5)

        with pytest.raises(ServiceError) as exc:
            await gate.authenticate(_bearer(tokens, alice))
        assert exc.value.status_code == 403


class TestAuthenticateOptional:
    async def test_no_header_is_anonymous(self, gate):
        result = await gate.authenticate_optional(None)

        assert result.outcome == GateOutcome.ANONYMOUS
        assert result.authenticated is False
        assert result.context is None

    async def test_bad_token_is_rejected_not_raised(self, gate):
        result = await gate.authenticate_optional("Bearer nope")

        assert result.outcome == GateOutcome.REJECTED
        assert result.error.reason == TOKEN_MALFORMED

    async def test_valid_token(self, gate, tokens, alice):
        result = await gate.authenticate_optional(_bearer(tokens, alice))

        assert result.authenticated is True
        assert result.context.user_id == alice.id

    async def test_store_outage_falls_back_to_anonymous(self, tokens, fake_clock, alice):
        async def failing_loader(user_id):
            raise ServiceError(ErrorKind.TRANSIENT, "Service temporarily unavailable, please retry")

        gate = SessionGate(tokens, LockoutPolicy(clock=fake_clock), failing_loader)

        result = await gate.authenticate_optional(_bearer(tokens, alice))

        assert result.outcome == GateOutcome.REJECTED
        assert result.context is None
        assert result.error.kind == ErrorKind.TRANSIENT


class TestRequireRole:
    async def test_admin_allowed(self, gate, tokens, alice):
        alice.role = "admin"
        ctx = await gate.authenticate(_bearer(tokens, alice))

        assert require_role(ctx, {"admin"}) is ctx

    async def test_user_refused(self, gate, tokens, alice):
        ctx = await gate.authenticate(_bearer(tokens, alice))

        with pytest.raises(ServiceError) as exc:
            require_role(ctx, ["admin"])
        assert exc.value.status_code == 403
        assert exc.value.message == "Insufficient permissions"
        assert exc.value.reason == INSUFFICIENT_ROLE

    def test_no_context(self):
        with pytest.raises(ServiceError) as exc:
            require_role(None, ["admin"])
        assert exc.value.status_code == 401
        assert exc.value.message == "Authentication required"
