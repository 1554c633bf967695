from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fairshare.service.errors import ErrorKind

_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ErrorBody(BaseModel):
    """Machine-readable part of a failed response."""

    code: str = Field(..., description="Stable error code derived from the error kind")
    reason: Optional[str] = None
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    data: Optional[Any] = None
    status_code: int = Field(..., alias="statusCode")
    timestamp: str = Field(default_factory=_timestamp)
    error: Optional[ErrorBody] = None

    @classmethod
    def ok(cls, message: str, data: Any = None, *, status_code: int = 200) -> "Envelope":
        return cls(success=True, message=message, data=data, status_code=status_code)

    def to_content(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(_CamelModel):
    # presence and format are checked by the service so messages stay uniform
    username: Optional[str] = Field(default=None, max_length=256)
    email: Optional[str] = Field(default=None, max_length=320)
    password: Optional[str] = Field(default=None, max_length=1024)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)


class SigninRequest(_CamelModel):
    username: Optional[str] = Field(default=None, max_length=256)
    password: Optional[str] = Field(default=None, max_length=1024)


class SignoutRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=128)


class RefreshTokenRequest(_CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=128)


class GoogleSigninRequest(_CamelModel):
    id_token: Optional[str] = Field(default=None, alias="idToken", max_length=8192)


class UserStatusUpdateRequest(_CamelModel):
    status: str = Field(..., max_length=32)
