"""
API request and response models for the authgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
auth/results.py, which own the internal representation. Route handlers map
between the two.

Field checks here give clients an early 422 with a readable message. The
orchestrator re-validates everything, so these are a convenience, not the
security boundary.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.passwords import MAX_PASSWORD_LENGTH, password_problems
from auth.validation import EMAIL_MAX_LENGTH, USERNAME_MAX_LENGTH, email_problems, username_problems

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. username may also be an email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=EMAIL_MAX_LENGTH)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)
    device_info: Optional[str] = Field(default=None, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)
    device_info: Optional[str] = Field(default=None, max_length=255)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=4096)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(max_length=USERNAME_MAX_LENGTH)
    email: str = Field(max_length=EMAIL_MAX_LENGTH)
    password: str = Field(max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def check_username(cls, value: str) -> str:
        problems = username_problems(value)
        if problems:
            raise ValueError(problems[0])
        return value

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        problems = email_problems(value)
        if problems:
            raise ValueError(problems[0])
        return value.lower()

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        problems = password_problems(value)
        if problems:
            raise ValueError("; ".join(problems))
        return value


class PasswordResetInitiateRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username_or_email: str = Field(min_length=1, max_length=EMAIL_MAX_LENGTH)


class PasswordResetCompleteRequest(BaseModel):
    """Strength is checked by the orchestrator so a weak password and a bad
    token are reported through the same error envelope."""

    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(min_length=1, max_length=MAX_PASSWORD_LENGTH)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Token pair, or an MFA challenge with no tokens."""

    model_config = ConfigDict(frozen=True)

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expiry: Optional[datetime] = None
    refresh_token_expiry: Optional[datetime] = None
    token_type: str = "bearer"
    requires_mfa: bool = False
    mfa_challenge: Optional[str] = None


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    sessions_terminated: int


class VerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    roles: list[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    error_message: Optional[str] = None


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    created_at: datetime
    message: str = "Registration successful"


class PasswordResetResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    reset_at: Optional[datetime] = None


class MeResponse(BaseModel):
    """Identity of the caller behind the Bearer token."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    roles: list[str]
    mfa_enabled: bool


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    device: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime


class UnlockResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    message: str


class KeyRotationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    lockout_until: Optional[datetime] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
