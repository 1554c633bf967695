from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from fairshare.logging import get_logger
from fairshare.service.errors import ErrorKind, ServiceError
from fairshare.storage.models import utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]

TOKEN_EXPIRED = "token_expired"
TOKEN_MALFORMED = "token_malformed"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    username: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: TokenClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


def _malformed(message: str = "Invalid token") -> ServiceError:
    return ServiceError(ErrorKind.UNAUTHENTICATED, message, reason=TOKEN_MALFORMED)


class TokenService:
    """Issues and verifies HS256 bearer tokens.

    Tokens are stateless: verification needs only the shared secret and the
    clock. The claims carry ``sub`` (user id), ``username``, ``iat``, ``exp``,
    ``iss``, ``aud`` and a random ``jti``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        lifetime: timedelta,
        leeway: timedelta = timedelta(0),
        clock: Optional[Clock] = None,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.lifetime = lifetime
        self.leeway = leeway
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, user_id: str, username: str) -> IssuedToken:
        now = self._now()
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + self.lifetime
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "username": username,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": jti,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        claims = TokenClaims(
            user_id=user_id,
            username=username,
            issued_at=issued_at,
            expires_at=expires_at,
            jti=jti,
        )
        return IssuedToken(token=token, claims=claims)

    def verify(self, token: str) -> TokenClaims:
        """Return the token's claims or raise ``ServiceError(UNAUTHENTICATED)``.

        Raises:
            ServiceError: reason ``token_expired`` when ``exp`` (plus leeway) is
                in the past, ``token_malformed`` for anything else wrong with the
                token: structure, algorithm, signature, issuer, audience or
                missing claims.
        """
        if not token or not isinstance(token, str):
            raise _malformed()
        parts = token.split(".")
        if len(parts) != 3:
            raise _malformed()
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise _malformed()
        # Only HS256 is accepted; anything else (including "none") is rejected
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise _malformed()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise _malformed()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise _malformed()
        if not isinstance(payload, dict):
            raise _malformed()

        if payload.get("iss") != self.issuer:
            raise _malformed()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise _malformed()

        user_id = payload.get("sub")
        username = payload.get("username")
        if not isinstance(user_id, str) or not user_id or not isinstance(username, str):
            raise _malformed()
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            raise _malformed()

        expires_at = datetime.fromtimestamp(exp_ts, tz=timezone.utc)
        if self._now() >= expires_at + self.leeway:
            raise ServiceError(
                ErrorKind.UNAUTHENTICATED, "Token has expired", reason=TOKEN_EXPIRED
            )
        return TokenClaims(
            user_id=user_id,
            username=username,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=expires_at,
            jti=str(payload.get("jti") or ""),
        )
