from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from fairshare.logging import get_logger
from fairshare.service.errors import ErrorKind, ServiceError

logger = get_logger(__name__)

GOOGLE_TOKEN_REJECTED = "google_token_rejected"


@dataclass(frozen=True)
class GoogleIdentity:
    subject: str
    email: str
    email_verified: bool
    given_name: Optional[str] = None
    family_name: Optional[str] = None


def _truthy(value: Any) -> bool:
    # tokeninfo returns booleans as the strings "true"/"false"
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class GoogleIdentityVerifier:
    """Validates Google ID tokens by delegating to Google's tokeninfo endpoint.

    Google checks the signature and expiry; this class checks that the token
    was minted for our client id and that the email is verified.
    """

    def __init__(
        self,
        client_id: Optional[str],
        *,
        tokeninfo_url: str = "https://oauth2.googleapis.com/tokeninfo",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def _rejected(self, message: str = "Google token rejected") -> ServiceError:
        return ServiceError(
            ErrorKind.UNAUTHENTICATED, message, reason=GOOGLE_TOKEN_REJECTED
        )

    async def verify(self, id_token: str) -> GoogleIdentity:
        """Resolve ``id_token`` to a verified Google identity.

        Raises:
            ServiceError: VALIDATION_FAILED when no client id is configured,
                TRANSIENT when Google cannot be reached or answers 5xx, and
                UNAUTHENTICATED when the token is refused, was issued for
                another client, or carries an unverified email.
        """
        if not self.configured:
            raise ServiceError(
                ErrorKind.VALIDATION_FAILED,
                "Google sign-in is not configured",
                reason="google_not_configured",
            )
        if not id_token:
            raise ServiceError(ErrorKind.VALIDATION_FAILED, "Google ID token is required")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(
                    self.tokeninfo_url, params={"id_token": id_token}
                )
        except httpx.TransportError as exc:
            logger.error("google_tokeninfo_unreachable", error=str(exc))
            raise ServiceError(
                ErrorKind.TRANSIENT, "Google sign-in is temporarily unavailable"
            ) from exc

        if response.status_code >= 500:
            logger.error("google_tokeninfo_server_error", status_code=response.status_code)
            raise ServiceError(
                ErrorKind.TRANSIENT, "Google sign-in is temporarily unavailable"
            )
        if response.status_code != 200:
            logger.warning("google_tokeninfo_rejected", status_code=response.status_code)
            raise self._rejected()

        try:
            info = response.json()
        except ValueError as exc:
            logger.error("google_tokeninfo_parse_error", error=str(exc))
            raise self._rejected() from exc
        if not isinstance(info, dict):
            raise self._rejected()

        if info.get("aud") != self.client_id:
            logger.warning("google_token_audience_mismatch", audience=info.get("aud"))
            raise self._rejected()
        subject = info.get("sub")
        email = (info.get("email") or "").strip().lower()
        if not subject or not email:
            raise self._rejected()
        if not _truthy(info.get("email_verified")):
            raise self._rejected("Google account email is not verified")

        logger.info("google_identity_verified", subject=subject)
        return GoogleIdentity(
            subject=str(subject),
            email=email,
            email_verified=True,
            given_name=info.get("given_name"),
            family_name=info.get("family_name"),
        )
