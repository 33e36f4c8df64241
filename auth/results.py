"""
auth/results.py -- Tagged results returned by LoginOrchestrator.

Every orchestrator operation returns either its success dataclass or an
AuthFailure. Callers branch on isinstance(); nothing in the normal flow is
signalled by raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class FailureKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    AUTHENTICATION_FAILED = "authentication_failed"
    ACCOUNT_LOCKED = "account_locked"
    SESSION_INVALID = "session_invalid"
    KEY_UNAVAILABLE = "key_unavailable"
    CONFLICT = "conflict"
    OPERATION_FAILED = "operation_failed"


@dataclass(frozen=True)
class AuthFailure:
    kind: FailureKind
    message: str
    lockout_until: datetime | None = None
    problems: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    account_id: str
    requires_mfa: bool = False


@dataclass(frozen=True)
class MfaChallenge:
    """Password accepted; a second factor is needed before any token is issued."""

    account_id: str
    message: str = "Please enter your MFA code"
    requires_mfa: bool = True


@dataclass(frozen=True)
class LogoutResult:
    success: bool
    message: str


@dataclass(frozen=True)
class LogoutAllResult:
    success: bool
    message: str
    sessions_terminated: int


@dataclass(frozen=True)
class VerifyResult:
    is_valid: bool
    account_id: str | None = None
    username: str | None = None
    email: str | None = None
    roles: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    issued_at: datetime | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class RegistrationResult:
    account_id: str
    username: str
    email: str
    created_at: datetime


@dataclass(frozen=True)
class PasswordResetResult:
    message: str
    completed_at: datetime | None = None


@dataclass(frozen=True)
class UnlockResult:
    account_id: str
    message: str = "Account unlocked"


LoginResult = TokenPair | MfaChallenge | AuthFailure
RefreshResult = TokenPair | AuthFailure
