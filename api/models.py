"""
API request and response models for the session authority REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

The wire format is camelCase (rememberDevice, otpId, accessToken) to match the
existing web client; Python attributes stay snake_case via alias_generator.
Serialize with model_dump(by_alias=True).
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import LoginEvent, RefreshToken, User


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(_CamelModel):
    """Body for POST /login. Lengths are capped well below bcrypt's 72-byte limit concerns."""

    username: str = Field(max_length=255)
    password: str = Field(max_length=255)
    remember_device: bool = False
    device_id: Optional[str] = Field(default=None, max_length=255)


class VerifyOtpRequest(_CamelModel):
    """Body for POST /login/verify."""

    otp_id: str = Field(min_length=1, max_length=64)
    code: str = Field(min_length=1, max_length=16)
    remember_device: bool = False
    device_id: Optional[str] = Field(default=None, max_length=255)


class ProfileUpdate(_CamelModel):
    """Body for PATCH /profile. Omitted or null fields are left unchanged."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    username: Optional[str] = Field(default=None, min_length=1, max_length=255)
    require_email_otp: Optional[bool] = None


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(_CamelModel):
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(_CamelModel):
    """Public view of a user. Never includes the credential."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str
    organization_id: Optional[str] = None
    require_email_otp: bool = False
    is_active: bool = True
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            name=user.name,
            email=user.email,
            role=user.role,
            organization_id=user.organization_id,
            require_email_otp=user.require_email_otp,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class LoginResponse(_CamelModel):
    user: UserResponse
    access_token: str


class OtpRequiredResponse(_CamelModel):
    requires_email_code: bool = True
    otp_id: str
    email: str


class RefreshResponse(_CamelModel):
    access_token: str


class MessageResponse(BaseModel):
    message: str


class ResetPasswordResponse(BaseModel):
    message: str
    user: UserResponse


class SessionRow(_CamelModel):
    """One active refresh-token chain head in GET /admin/sessions."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    user_id: str
    username: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    user_agent: Optional[str] = None
    device_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: datetime

    @classmethod
    def from_record(cls, token: RefreshToken, user: Optional[User]) -> "SessionRow":
        return cls(
            id=token.id,
            user_id=token.user_id,
            username=user.username if user else None,
            name=user.name if user else None,
            role=user.role if user else None,
            ip_address=token.ip_address,
            country=token.country,
            user_agent=token.user_agent,
            device_hash=token.device_hash,
            created_at=token.created_at,
            expires_at=token.expires_at,
        )


class AccessLogRow(_CamelModel):
    """One login event in GET /admin/access-log."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    name: Optional[str] = None
    role: Optional[str] = None
    ip_address: Optional[str] = None
    country: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_event(cls, event: LoginEvent, user: Optional[User]) -> "AccessLogRow":
        return cls(
            id=event.id,
            user_id=event.user_id,
            username=user.username if user else None,
            name=user.name if user else None,
            role=user.role if user else None,
            ip_address=event.ip_address,
            country=event.country,
            user_agent=event.user_agent,
            success=event.success,
            reason=event.reason,
            created_at=event.created_at,
        )


class RevokedCountResponse(BaseModel):
    message: str
    revoked: int


class ErrorResponse(BaseModel):
    """Error envelope returned on 4xx/5xx responses: {"error": "<generic message>"}."""

    model_config = ConfigDict(frozen=True)

    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
