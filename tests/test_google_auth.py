"""Tests for Google ID token verification and Google sign-in."""

import httpx
import pytest

from fairshare.config import Settings
from fairshare.service.auth import AuthService
from fairshare.service.errors import ErrorKind, ServiceError
from fairshare.service.google import GOOGLE_TOKEN_REJECTED, GoogleIdentityVerifier
from fairshare.storage.memory import MemoryStore
from fairshare.storage.models import AuthProvider, User

CLIENT_ID = "client-123.apps.googleusercontent.com"


def _tokeninfo(**overrides):
    info = {
        "aud": CLIENT_ID,
        "sub": "1234567890",
        "email": "Carol@Example.com",
        "email_verified": "true",
        "given_name": "Carol",
        "family_name": "Jones",
    }
    info.update(overrides)
    return info


def _verifier(handler, client_id=CLIENT_ID):
    return GoogleIdentityVerifier(
        client_id,
        tokeninfo_url="https://google.test/tokeninfo",
        transport=httpx.MockTransport(handler),
    )


def _respond_with(status_code=200, body=None):
    def handler(request):
        return httpx.Response(status_code, json=body if body is not None else _tokeninfo())

    return handler


class TestGoogleIdentityVerifier:
    async def test_verified_identity(self):
        seen = {}

        def handler(request):
            seen["id_token"] = request.url.params["id_token"]
            return httpx.Response(200, json=_tokeninfo())

        identity = await _verifier(handler).verify("google-id-token")

        assert seen["id_token"] == "google-id-token"
        assert identity.email == "carol@example.com"
        assert identity.subject == "1234567890"
        assert identity.given_name == "Carol"

    async def test_not_configured(self):
        with pytest.raises(ServiceError) as exc:
            await _verifier(_respond_with(), client_id=None).verify("tok")
        assert exc.value.kind == ErrorKind.VALIDATION_FAILED
        assert exc.value.reason == "google_not_configured"

    async def test_empty_token(self):
        with pytest.raises(ServiceError) as exc:
            await _verifier(_respond_with()).verify("")
        assert exc.value.status_code == 400

    async def test_rejected_by_google(self):
        with pytest.raises(ServiceError) as exc:
            await _verifier(_respond_with(400, {"error": "invalid_token"})).verify("tok")
        assert exc.value.status_code == 401
        assert exc.value.reason == GOOGLE_TOKEN_REJECTED

    async def test_other_client_audience(self):
        with pytest.raises(ServiceError) as exc:
            await _verifier(_respond_with(body=_tokeninfo(aud="someone-else"))).verify("tok")
        assert exc.value.reason == GOOGLE_TOKEN_REJECTED

    async def test_unverified_email(self):
        with pytest.raises(ServiceError) as exc:
            await _verifier(_respond_with(body=_tokeninfo(email_verified="false"))).verify("tok")
        assert exc.value.message == "Google account email is not verified"

    async def test_google_outage_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(ServiceError) as exc:
            await _verifier(handler).verify("tok")
        assert exc.value.kind == ErrorKind.TRANSIENT

    async def test_google_5xx_is_transient(self):
        with pytest.raises(ServiceError) as exc:
            await _verifier(_respond_with(502, {})).verify("tok")
        assert exc.value.status_code == 503


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store):
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        google_client_id=CLIENT_ID,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
        test_mode=True,
    )
    return AuthService(store, settings, google=_verifier(_respond_with()))


class TestGoogleSignin:
    async def test_first_signin_creates_account(self, service, store):
        result = await service.google_signin("tok")

        assert result.created is True
        assert result.user.username == "carol"
        assert result.user.auth_provider == AuthProvider.GOOGLE
        assert result.user.first_name == "Carol"
        stored = store.get_user(result.user.id)
        assert stored.password_hash.startswith("!")
        assert stored.security.current_token == result.token.token

    async def test_second_signin_reuses_account(self, service):
        first = await service.google_signin("tok")
        second = await service.google_signin("tok")

        assert second.created is False
        assert second.user.id == first.user.id

    async def test_links_existing_password_account(self, service, store):
        existing = store.create_user(User.new("carol_j", "carol@example.com", "digest"))

        result = await service.google_signin("tok")

        assert result.created is False
        assert result.user.id == existing.id

    async def test_username_collision_gets_suffix(self, service, store):
        store.create_user(User.new("carol", "other@example.com", "digest"))

        result = await service.google_signin("tok")

        assert result.user.username.startswith("carol_")
        assert result.user.username != "carol"

    async def test_google_account_cannot_use_password_signin(self, service):
        created = await service.google_signin("tok")

        with pytest.raises(ServiceError) as exc:
            await service.signin(created.user.username, "!anything")
        assert exc.value.status_code == 401
