"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). Stores and the orchestrator do the work.

Ownership:
  Account    -- owned by AccountStore. Lockout fields are mutated only by
                LockoutPolicy and explicit unlock/reset operations.
  SigningKey -- owned by KeyStore. Only is_active/expires_at change after
                creation (on demotion).
  Session    -- owned by SessionRegistry. account_id is a lookup reference,
                never an object back-pointer.
  AuditEvent -- append-only, owned by the audit trail.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AuditEventKind(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_MFA_REQUIRED = "LOGIN_MFA_REQUIRED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    TOKEN_REFRESH_SUCCESS = "TOKEN_REFRESH_SUCCESS"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    LOGOUT_SUCCESS = "LOGOUT_SUCCESS"
    LOGOUT_FAILED = "LOGOUT_FAILED"
    LOGOUT_ALL_SUCCESS = "LOGOUT_ALL_SUCCESS"
    LOGOUT_ALL_FAILED = "LOGOUT_ALL_FAILED"
    USER_REGISTERED = "USER_REGISTERED"
    REGISTRATION_FAILED = "REGISTRATION_FAILED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_RESET_FAILED = "PASSWORD_RESET_FAILED"
    KEY_ROTATED = "KEY_ROTATED"
    OPERATION_ERROR = "OPERATION_ERROR"


@dataclass
class Account:
    """A user identity with credentials and lockout state.

    Lockout invariant: is_locked implies lockout_until is set. The flag is
    advisory -- once lockout_until passes the account is treated as unlocked
    on the next check, but the flag and the failure counter stay as they are
    until the next recorded success or failure (see LockoutPolicy).
    """

    username: str
    email: str
    password_hash: str
    id: str | None = None
    roles: list[str] = field(default_factory=lambda: ["user"])
    mfa_enabled: bool = False
    is_locked: bool = False
    lockout_until: datetime | None = None
    failed_attempts: int = 0
    last_attempt: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


@dataclass
class SigningKey:
    """An RSA signing key pair.

    private_pem is the unencrypted PKCS#8 PEM held in memory only; the store
    persists it encrypted. Every key with expires_at in the future can verify
    tokens; exactly one key is active (the current signer).
    """

    key_id: str
    private_pem: str
    public_pem: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class Session:
    """One row per still-valid refresh token."""

    account_id: str
    jti: str
    created_at: datetime
    expires_at: datetime
    session_id: str | None = None
    device: str | None = None
    ip_address: str | None = None

    def is_active_at(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class AuditEvent:
    kind: AuditEventKind
    timestamp: datetime
    account_id: str | None = None
    username: str | None = None
    ip_address: str | None = None
    detail: str | None = None
    id: int | None = None
