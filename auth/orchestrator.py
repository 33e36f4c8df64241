"""
auth/orchestrator.py -- Login, refresh, logout, verify and account flows.

LoginOrchestrator composes the account store, password hasher, lockout
policy, token issuer, session registry and audit trail. Every collaborator is
passed to the constructor; nothing is looked up globally. build_orchestrator()
wires the production graph from Settings.

Result contract:
  Each public operation returns its success dataclass or an AuthFailure (see
  auth/results.py). Expected outcomes -- bad password, locked account, revoked
  session -- are results, not exceptions.

  This is the only layer that turns an unexpected exception into a generic
  OPERATION_FAILED result (KEY_UNAVAILABLE for signing-key failures). It logs
  the traceback and records an OPERATION_ERROR audit event before returning.

  Audit sink failures are logged and otherwise ignored.

Metrics:
  Every guarded operation observes its duration and outcome on AuthMetrics;
  login, registration and password-reset outcomes are also counted.

Anti-enumeration:
  An unknown username and a wrong password produce the same failure, the
  same message and (via PasswordHasher.dummy_verify) comparable latency.
  Lockout is revealed only once the account has actually been evaluated.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.engine import Engine

from auth.audit import AuditTrail, SqlAuditTrail
from auth.keys import KeyManager, KeyStore, KeyUnavailableError
from auth.lockout import DecisionKind, LockoutPolicy, Outcome
from auth.metrics import AuthMetrics
from auth.models import Account, AuditEventKind
from auth.passwords import PasswordHasher, password_problems
from auth.results import (
    AuthFailure,
    FailureKind,
    LoginResult,
    LogoutAllResult,
    LogoutResult,
    MfaChallenge,
    PasswordResetResult,
    RefreshResult,
    RegistrationResult,
    TokenPair,
    UnlockResult,
    VerifyResult,
)
from auth.sessions import SessionRegistry
from auth.store import AccountStore, DuplicateAccountError, create_db_engine
from auth.tokens import ACCESS, REFRESH, TokenIssuer
from auth.validation import email_problems, username_problems
from core.clock import Clock, utcnow
from core.config import Settings

logger = logging.getLogger("authgate.auth.orchestrator")

ResetNotifier = Callable[[Account, str], None]

_INVALID_CREDENTIALS = "Invalid username or password"
_ACCOUNT_LOCKED = "Account is locked due to too many failed login attempts"
_RESET_REQUESTED = "If an account with that username/email exists, a password reset link has been sent."
_RESET_COMPLETED = "Password has been reset successfully. You can now log in with your new password."
_INVALID_RESET_TOKEN = "Invalid or expired reset token"


def _outcome(result) -> str:
    if isinstance(result, AuthFailure):
        return result.kind.value
    if isinstance(result, MfaChallenge):
        return "mfa_required"
    return "success"


def _count_login(metrics: AuthMetrics, result) -> None:
    metrics.record_login(_outcome(result), mfa_required=isinstance(result, MfaChallenge))


def _count_registration(metrics: AuthMetrics, result) -> None:
    metrics.record_registration(not isinstance(result, AuthFailure))


def _count_reset(reset_type: str):
    def count(metrics: AuthMetrics, result) -> None:
        metrics.record_password_reset(reset_type, not isinstance(result, AuthFailure))

    return count


def _guarded(operation: str, count: Callable[[AuthMetrics, object], None] | None = None):
    """Translate unexpected exceptions from an orchestrator method into an AuthFailure.

    The outcome and duration of every call land on the orchestrator's metrics;
    count, when given, records operation-specific counters as well.
    """

    def decorate(method):
        @functools.wraps(method)
        def wrapper(self: LoginOrchestrator, *args, **kwargs):
            started = time.perf_counter()
            try:
                result = method(self, *args, **kwargs)
            except KeyUnavailableError:
                logger.exception("Signing key unavailable during %s", operation)
                self._audit(AuditEventKind.OPERATION_ERROR, detail=f"{operation}: signing key unavailable")
                result = AuthFailure(FailureKind.KEY_UNAVAILABLE, "Token service is temporarily unavailable")
            except Exception:
                logger.exception("Unexpected error during %s", operation)
                self._audit(AuditEventKind.OPERATION_ERROR, detail=f"{operation} failed unexpectedly")
                result = AuthFailure(FailureKind.OPERATION_FAILED, f"{operation.capitalize()} failed")
            self.metrics.observe_duration(operation, _outcome(result), time.perf_counter() - started)
            if count is not None:
                count(self.metrics, result)
            return result

        return wrapper

    return decorate


class LoginOrchestrator:
    def __init__(
        self,
        accounts: AccountStore,
        hasher: PasswordHasher,
        lockout: LockoutPolicy,
        tokens: TokenIssuer,
        sessions: SessionRegistry,
        audit: AuditTrail,
        keys: KeyManager,
        secret_key: str,
        reset_ttl: timedelta = timedelta(minutes=15),
        reset_notifier: ResetNotifier | None = None,
        clock: Clock = utcnow,
        metrics: AuthMetrics | None = None,
    ) -> None:
        self.accounts = accounts
        self.hasher = hasher
        self.lockout = lockout
        self.tokens = tokens
        self.sessions = sessions
        self.audit = audit
        self.keys = keys
        self.reset_ttl = reset_ttl
        self.reset_notifier = reset_notifier
        self._secret_key = secret_key.encode("utf-8")
        self._clock = clock
        self.metrics = metrics if metrics is not None else AuthMetrics()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _audit(
        self,
        kind: AuditEventKind,
        account_id: str | None = None,
        username: str | None = None,
        ip_address: str | None = None,
        detail: str | None = None,
    ) -> None:
        try:
            self.audit.record(kind, account_id=account_id, username=username, ip_address=ip_address, detail=detail)
        except Exception:
            logger.exception("Audit sink failed to record %s", kind.value)

    def _issue_pair(self, account: Account, device: str | None, ip_address: str | None) -> TokenPair:
        access = self.tokens.issue_access_token(account)
        refresh = self.tokens.issue_refresh_token(account)
        self.sessions.create(account.id, refresh.jti, device, ip_address, expires_at=refresh.expires_at)
        self.metrics.record_session_operation("create")
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_token_expires_at=access.expires_at,
            refresh_token_expires_at=refresh.expires_at,
            account_id=account.id,
        )

    def _hash_reset_token(self, raw_token: str) -> str:
        return hmac.new(self._secret_key, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    @_guarded("login", _count_login)
    def login(
        self,
        username: str,
        password: str,
        device: str | None = None,
        ip_address: str | None = None,
    ) -> LoginResult:
        """Authenticate with username (or email) and password.

        Returns TokenPair, MfaChallenge, or AuthFailure with kind
        AUTHENTICATION_FAILED / ACCOUNT_LOCKED / INVALID_INPUT.
        """
        if not username or not password:
            self._audit(AuditEventKind.LOGIN_FAILED, username=username or None, ip_address=ip_address,
                        detail="Missing credentials")
            return AuthFailure(FailureKind.INVALID_INPUT, "Username and password are required")

        account = self.accounts.get_by_username_or_email(username)
        if account is None:
            self.hasher.dummy_verify(password)
            self._audit(AuditEventKind.LOGIN_FAILED, username=username, ip_address=ip_address, detail="User not found")
            return AuthFailure(FailureKind.AUTHENTICATION_FAILED, _INVALID_CREDENTIALS)

        if self.lockout.is_locked(account):
            self._audit(AuditEventKind.LOGIN_FAILED, account.id, account.username, ip_address, "Account locked")
            return AuthFailure(FailureKind.ACCOUNT_LOCKED, _ACCOUNT_LOCKED, lockout_until=account.lockout_until)

        if not self.hasher.verify(password, account.password_hash):
            decision = self.lockout.check_and_record(account, Outcome.FAILURE)
            self._audit(AuditEventKind.LOGIN_FAILED, account.id, account.username, ip_address, "Invalid password")
            if decision.kind is DecisionKind.JUST_LOCKED:
                self.metrics.record_lockout()
                self._audit(
                    AuditEventKind.ACCOUNT_LOCKED,
                    account.id,
                    account.username,
                    ip_address,
                    f"Account locked after {decision.failed_attempts} failed login attempts",
                )
            if decision.kind is not DecisionKind.ALLOW:
                return AuthFailure(FailureKind.ACCOUNT_LOCKED, _ACCOUNT_LOCKED, lockout_until=decision.lockout_until)
            return AuthFailure(FailureKind.AUTHENTICATION_FAILED, _INVALID_CREDENTIALS)

        decision = self.lockout.check_and_record(account, Outcome.SUCCESS)
        if decision.kind is DecisionKind.LOCKED:
            # A parallel failure locked the account between our check and now.
            self._audit(AuditEventKind.LOGIN_FAILED, account.id, account.username, ip_address, "Account locked")
            return AuthFailure(FailureKind.ACCOUNT_LOCKED, _ACCOUNT_LOCKED, lockout_until=decision.lockout_until)

        if account.mfa_enabled:
            self._audit(AuditEventKind.LOGIN_MFA_REQUIRED, account.id, account.username, ip_address)
            return MfaChallenge(account_id=account.id)

        pair = self._issue_pair(account, device, ip_address)
        self._audit(AuditEventKind.LOGIN_SUCCESS, account.id, account.username, ip_address)
        return pair

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    @_guarded("token refresh")
    def refresh(
        self,
        refresh_token: str,
        device: str | None = None,
        ip_address: str | None = None,
    ) -> RefreshResult:
        """Exchange a refresh token for a new pair. The presented token is single-use."""
        claims = self.tokens.verified_claims(refresh_token, REFRESH) if refresh_token else None
        if claims is None:
            self._audit(AuditEventKind.TOKEN_REFRESH_FAILED, ip_address=ip_address, detail="Invalid refresh token")
            return AuthFailure(FailureKind.INVALID_INPUT, "Invalid or expired refresh token")

        session = self.sessions.find_by_jti(claims.jti)
        if session is None or not session.is_active_at(self._clock()) or session.account_id != claims.subject:
            self._audit(
                AuditEventKind.TOKEN_REFRESH_FAILED,
                claims.subject,
                ip_address=ip_address,
                detail="Session not found or expired",
            )
            return AuthFailure(FailureKind.SESSION_INVALID, "Session has been revoked or has expired")

        account = self.accounts.get_by_id(session.account_id)
        if account is None:
            self.sessions.revoke(claims.jti)
            self._audit(
                AuditEventKind.TOKEN_REFRESH_FAILED,
                session.account_id,
                ip_address=ip_address,
                detail="Account not found for session",
            )
            return AuthFailure(FailureKind.SESSION_INVALID, "Session has been revoked or has expired")

        if self.lockout.is_locked(account):
            self.sessions.revoke(claims.jti)
            self._audit(
                AuditEventKind.TOKEN_REFRESH_FAILED, account.id, account.username, ip_address, "Account locked"
            )
            return AuthFailure(FailureKind.ACCOUNT_LOCKED, _ACCOUNT_LOCKED, lockout_until=account.lockout_until)

        if not self.sessions.revoke(claims.jti):
            # Lost the race against another request presenting the same token.
            self._audit(
                AuditEventKind.TOKEN_REFRESH_FAILED,
                account.id,
                account.username,
                ip_address,
                "Refresh token already used",
            )
            return AuthFailure(FailureKind.SESSION_INVALID, "Session has been revoked or has expired")

        self.metrics.record_session_operation("rotate")
        pair = self._issue_pair(account, device or session.device, ip_address or session.ip_address)
        self._audit(AuditEventKind.TOKEN_REFRESH_SUCCESS, account.id, account.username, ip_address)
        return pair

    @_guarded("logout")
    def logout(self, refresh_token: str, ip_address: str | None = None) -> LogoutResult | AuthFailure:
        """Revoke the session behind a refresh token. Already-gone sessions still report success.

        The jti is read without verification so an expired refresh token can
        still end its session.
        """
        claims = self.tokens.claims(refresh_token) if refresh_token else None
        if claims is None or not claims.jti:
            self._audit(AuditEventKind.LOGOUT_FAILED, ip_address=ip_address, detail="Invalid refresh token format")
            return AuthFailure(FailureKind.INVALID_INPUT, "Invalid refresh token format")

        if self.sessions.revoke(claims.jti):
            self.metrics.record_session_operation("revoke")
            self._audit(AuditEventKind.LOGOUT_SUCCESS, claims.subject, ip_address=ip_address)
        else:
            self._audit(
                AuditEventKind.LOGOUT_FAILED,
                claims.subject,
                ip_address=ip_address,
                detail="Session not found or already revoked",
            )
        return LogoutResult(success=True, message="Logout successful")

    @_guarded("logout all")
    def logout_all(self, account_id: str, ip_address: str | None = None) -> LogoutAllResult | AuthFailure:
        account = self.accounts.get_by_id(account_id) if account_id else None
        if account is None:
            self._audit(AuditEventKind.LOGOUT_ALL_FAILED, account_id or None, ip_address=ip_address,
                        detail="User not found")
            return AuthFailure(FailureKind.INVALID_INPUT, "Account not found")

        count = self.sessions.revoke_all(account.id)
        self.metrics.record_session_operation("revoke_all", count)
        self._audit(
            AuditEventKind.LOGOUT_ALL_SUCCESS,
            account.id,
            account.username,
            ip_address,
            f"All sessions terminated. Sessions revoked: {count}",
        )
        return LogoutAllResult(success=True, message="All sessions terminated successfully", sessions_terminated=count)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify(self, access_token: str) -> VerifyResult:
        """Check an access token and that its account still exists and is not locked.

        Never returns AuthFailure: every problem is an invalid VerifyResult.
        """
        try:
            claims = self.tokens.verified_claims(access_token, ACCESS) if access_token else None
            if claims is None:
                return VerifyResult(is_valid=False, error_message="Invalid or expired token")
            account = self.accounts.get_by_id(claims.subject)
            if account is None:
                return VerifyResult(is_valid=False, error_message="User no longer exists")
            if self.lockout.is_locked(account):
                return VerifyResult(is_valid=False, error_message="User account is locked")
            return VerifyResult(
                is_valid=True,
                account_id=account.id,
                username=claims.username,
                email=claims.email,
                roles=claims.roles,
                expires_at=claims.expires_at,
                issued_at=claims.issued_at,
            )
        except Exception:
            logger.exception("Unexpected error during token verification")
            self._audit(AuditEventKind.OPERATION_ERROR, detail="token verification failed unexpectedly")
            return VerifyResult(is_valid=False, error_message="Token validation failed")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    @_guarded("registration", _count_registration)
    def register(
        self,
        username: str,
        email: str,
        password: str,
        ip_address: str | None = None,
        roles: list[str] | None = None,
        mfa_enabled: bool = False,
    ) -> RegistrationResult | AuthFailure:
        problems = username_problems(username) + email_problems(email) + password_problems(password)
        if problems:
            self._audit(AuditEventKind.REGISTRATION_FAILED, username=username, ip_address=ip_address,
                        detail="; ".join(problems))
            return AuthFailure(FailureKind.INVALID_INPUT, "Registration data is invalid", problems=problems)

        account = Account(
            username=username,
            email=email.lower(),
            password_hash=self.hasher.hash(password),
            roles=roles or ["user"],
            mfa_enabled=mfa_enabled,
        )
        try:
            account = self.accounts.create(account)
        except DuplicateAccountError:
            self._audit(AuditEventKind.REGISTRATION_FAILED, username=username, ip_address=ip_address,
                        detail="Username or email already registered")
            return AuthFailure(FailureKind.CONFLICT, "Username or email is already registered")

        self._audit(AuditEventKind.USER_REGISTERED, account.id, account.username, ip_address)
        return RegistrationResult(
            account_id=account.id,
            username=account.username,
            email=account.email,
            created_at=account.created_at,
        )

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @_guarded("password reset", _count_reset("initiate"))
    def initiate_password_reset(
        self, username_or_email: str, ip_address: str | None = None
    ) -> PasswordResetResult | AuthFailure:
        """Start a reset. The response is identical whether or not the account exists."""
        account = self.accounts.get_by_username_or_email(username_or_email) if username_or_email else None
        if account is None:
            self._audit(AuditEventKind.PASSWORD_RESET_FAILED, username=username_or_email or None,
                        ip_address=ip_address, detail="Account not found")
            return PasswordResetResult(message=_RESET_REQUESTED)

        raw_token = secrets.token_urlsafe(32)
        expires_at = self._clock() + self.reset_ttl
        self.accounts.set_reset_token(account.id, self._hash_reset_token(raw_token), expires_at)
        self._audit(AuditEventKind.PASSWORD_RESET_REQUESTED, account.id, account.username, ip_address)

        if self.reset_notifier is None:
            logger.warning("No reset notifier configured; reset token for account %s was not delivered", account.id)
        else:
            try:
                self.reset_notifier(account, raw_token)
            except Exception:
                logger.exception("Reset notifier failed for account %s", account.id)
        return PasswordResetResult(message=_RESET_REQUESTED)

    @_guarded("password reset", _count_reset("complete"))
    def complete_password_reset(
        self, token: str, new_password: str, ip_address: str | None = None
    ) -> PasswordResetResult | AuthFailure:
        """Set a new password with a reset token and end every session of the account."""
        now = self._clock()
        token_hash = self._hash_reset_token(token) if token else None
        account = self.accounts.get_by_reset_token_hash(token_hash, now) if token_hash else None
        if account is None:
            self._audit(AuditEventKind.PASSWORD_RESET_FAILED, ip_address=ip_address, detail=_INVALID_RESET_TOKEN)
            return AuthFailure(FailureKind.INVALID_INPUT, _INVALID_RESET_TOKEN)

        if self.lockout.is_locked(account):
            self._audit(AuditEventKind.PASSWORD_RESET_FAILED, account.id, account.username, ip_address,
                        "Account locked")
            return AuthFailure(FailureKind.ACCOUNT_LOCKED, "Account is locked. Please contact support.",
                               lockout_until=account.lockout_until)

        problems = password_problems(new_password or "")
        if problems:
            self._audit(AuditEventKind.PASSWORD_RESET_FAILED, account.id, account.username, ip_address,
                        "Weak password")
            return AuthFailure(FailureKind.INVALID_INPUT, "New password does not meet requirements", problems=problems)

        password_hash = self.hasher.hash(new_password)
        if not self.accounts.clear_reset_token(account.id, token_hash):
            self._audit(AuditEventKind.PASSWORD_RESET_FAILED, account.id, account.username, ip_address,
                        "Reset token already used")
            return AuthFailure(FailureKind.INVALID_INPUT, _INVALID_RESET_TOKEN)

        self.accounts.set_password(account.id, password_hash)
        revoked = self.sessions.revoke_all(account.id)
        self.metrics.record_session_operation("revoke_all", revoked)
        self._audit(
            AuditEventKind.PASSWORD_RESET_COMPLETED,
            account.id,
            account.username,
            ip_address,
            f"Password reset successfully. Sessions revoked: {revoked}",
        )
        return PasswordResetResult(message=_RESET_COMPLETED, completed_at=now)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @_guarded("unlock")
    def unlock_account(
        self, account_id: str, actor: str | None = None, ip_address: str | None = None
    ) -> UnlockResult | AuthFailure:
        account = self.accounts.get_by_id(account_id)
        if account is None:
            return AuthFailure(FailureKind.INVALID_INPUT, "Account not found")
        self.lockout.unlock(account.id)
        detail = f"Unlocked by {actor}" if actor else "Unlocked"
        self._audit(AuditEventKind.ACCOUNT_UNLOCKED, account.id, account.username, ip_address, detail)
        return UnlockResult(account_id=account.id)

    @_guarded("key rotation")
    def rotate_signing_key(self, actor: str | None = None, force: bool = True) -> str | None | AuthFailure:
        """Rotate the signing key and return the new key id.

        Without force the key rotates only when it is due; None means it was not.
        """
        key_id = self.keys.rotate() if force else self.keys.rotate_if_needed()
        if key_id is None:
            return None
        self.metrics.record_key_rotation("forced" if force else "scheduled")
        self._audit(AuditEventKind.KEY_ROTATED, username=actor, detail=f"Activated signing key {key_id}")
        return key_id


def build_orchestrator(
    settings: Settings,
    engine: Engine | None = None,
    clock: Clock = utcnow,
    reset_notifier: ResetNotifier | None = None,
) -> LoginOrchestrator:
    """Wire the production component graph from settings."""
    engine = engine or create_db_engine(settings.database_url)
    accounts = AccountStore(engine, clock=clock)
    keys = KeyManager(
        KeyStore(engine, settings.secret_key),
        lifetime=timedelta(days=settings.signing_key_lifetime_days),
        rotation_interval=timedelta(days=settings.key_rotation_interval_days),
        grace=settings.key_grace,
        key_size=settings.signing_key_size,
        clock=clock,
        signing_horizon=settings.signing_horizon,
    )
    refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
    tokens = TokenIssuer(
        keys,
        access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
        refresh_ttl=refresh_ttl,
        leeway=timedelta(seconds=settings.token_leeway_seconds),
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )
    return LoginOrchestrator(
        accounts=accounts,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        lockout=LockoutPolicy(
            accounts,
            threshold=settings.lockout_threshold,
            duration=timedelta(seconds=settings.lockout_duration_seconds),
            clock=clock,
        ),
        tokens=tokens,
        sessions=SessionRegistry(engine, ttl=refresh_ttl, clock=clock),
        audit=SqlAuditTrail(engine, clock=clock),
        keys=keys,
        secret_key=settings.secret_key,
        reset_ttl=timedelta(seconds=settings.password_reset_ttl_seconds),
        reset_notifier=reset_notifier,
        clock=clock,
    )
