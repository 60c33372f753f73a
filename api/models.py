"""
api/models.py -- Request and response bodies of the JSON endpoints (Pydantic v2).

They are intentionally separate from the dataclasses in auth/models.py, which
are the domain shapes. Route handlers convert from one to the other.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.device import DeviceCodeGrant
from auth.models import User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class DeviceTokenRequest(BaseModel):
    """Request body for POST /auth/device/token.

    device_code is optional at the schema level so a missing value gets the
    endpoint's own invalid_request answer rather than a generic validation error.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    device_code: Optional[str] = Field(default=None, max_length=128)


class UserPatch(BaseModel):
    """Request body for PATCH /api/users/me. Only the public-profile flag is writable."""

    model_config = ConfigDict(extra="forbid")

    is_public: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class DeviceCodeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_code: str
    user_code: str
    expires_in: int
    interval: int
    verification_url: str

    @classmethod
    def from_grant(cls, grant: DeviceCodeGrant) -> "DeviceCodeResponse":
        return cls(
            device_code=grant.device_code,
            user_code=grant.user_code,
            expires_in=grant.expires_in,
            interval=grant.interval,
            verification_url=grant.verification_url,
        )


class DeviceTokenResponse(BaseModel):
    """Poll outcome. token is present only when status is "approved"."""

    model_config = ConfigDict(frozen=True)

    status: Literal["approved", "pending"]
    token: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET/PATCH /api/users/me. Never includes the token itself."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: Optional[str]
    is_public: bool
    api_token_created_at: Optional[str]

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            is_public=user.is_public,
            api_token_created_at=user.api_token_created_at,
        )


class TokenResponse(BaseModel):
    """Response for POST /api/users/me/token/regenerate."""

    model_config = ConfigDict(frozen=True)

    api_token: str
    api_token_created_at: str


class ErrorResponse(BaseModel):
    """Flat error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: str
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
