"""
API request and response models for the passkey REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in core/models.py, which own the
internal domain representation. Route handlers map between the two.

Field names follow the browser-facing JSON convention (camelCase) through
aliases; Python code uses snake_case. populate_by_name lets tests and Python
callers use either.

The `credential` payloads are opaque: the WebAuthn standard owns their shape
and only the verifier looks inside, so they are typed as plain dicts.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import AuthenticationResult, RegistrationResult

_camel = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegistrationOptionsRequest(BaseModel):
    """Request body for POST /register/options."""

    model_config = _camel

    username: str = Field(min_length=1, max_length=255)
    display_name: str = Field(alias="displayName", min_length=1, max_length=255)
    user_id: Optional[str] = Field(default=None, alias="userId", max_length=255)


class RegistrationVerifyRequest(BaseModel):
    """Request body for POST /register/verify."""

    model_config = _camel

    username: str = Field(min_length=1, max_length=255)
    credential: dict[str, Any]


class AuthenticationOptionsRequest(BaseModel):
    """Request body for POST /authenticate/options. No username = discoverable flow."""

    model_config = _camel

    username: Optional[str] = Field(default=None, max_length=255)

    @field_validator("username")
    @classmethod
    def blank_is_absent(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class AuthenticationVerifyRequest(BaseModel):
    """Request body for POST /authenticate/verify.

    username must be the same value (or absence) sent to /authenticate/options
    for this ceremony -- it selects which pending challenge is consumed.
    """

    model_config = _camel

    username: Optional[str] = Field(default=None, max_length=255)
    credential: dict[str, Any]

    @field_validator("username")
    @classmethod
    def blank_is_absent(cls, value: Optional[str]) -> Optional[str]:
        return value or None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RegistrationVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    verified: bool
    user_id: str = Field(alias="userId")
    credential_id: str = Field(alias="credentialId")

    @classmethod
    def from_result(cls, result: RegistrationResult) -> "RegistrationVerifyResponse":
        return cls(verified=result.verified, user_id=result.user_id, credential_id=result.credential_id)


class AuthenticationVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    verified: bool
    user_id: str = Field(alias="userId")
    username: str

    @classmethod
    def from_result(cls, result: AuthenticationResult) -> "AuthenticationVerifyResponse":
        return cls(verified=result.verified, user_id=result.user_id, username=result.username)


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope for every non-2xx response."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
