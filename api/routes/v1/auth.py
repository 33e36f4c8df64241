"""
api/routes/v1/auth.py -- Authentication, session and key endpoints.

Routes:
  POST /api/v1/auth/login                        -- password login; token pair or MFA challenge
  POST /api/v1/auth/refresh                      -- rotate a refresh token into a new pair
  POST /api/v1/auth/logout                       -- end the session behind a refresh token
  POST /api/v1/auth/logout-all                   -- end every session of the caller (Bearer)
  GET  /api/v1/auth/verify                       -- check the Bearer access token
  POST /api/v1/auth/register                     -- create an account
  POST /api/v1/auth/password-reset/initiate      -- request a reset token
  POST /api/v1/auth/password-reset/complete      -- set a new password with a reset token
  GET  /api/v1/auth/me                           -- caller identity (Bearer)
  GET  /api/v1/auth/sessions                     -- caller's active sessions (Bearer)
  GET  /api/v1/auth/jwks                         -- public verification keys
  POST /api/v1/auth/accounts/{user_id}/unlock    -- clear a lockout (admin)
  POST /api/v1/auth/keys/rotate                  -- force signing-key rotation (admin)

Handlers are plain `def`: the orchestrator does blocking bcrypt and SQL work,
so FastAPI runs them in its threadpool.

Every orchestrator AuthFailure becomes an HTTPException through _raise_failure
and the shared error envelope. Token-bearing responses carry
Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.limiter import credential_rate_limit, limiter
from api.models import (
    KeyRotationResponse,
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    PasswordResetCompleteRequest,
    PasswordResetInitiateRequest,
    PasswordResetResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SessionInfo,
    UnlockResponse,
    VerifyResponse,
)
from auth.dependencies import bearer_token, get_current_account, get_orchestrator, require_admin
from auth.models import Account
from auth.orchestrator import LoginOrchestrator
from auth.results import AuthFailure, FailureKind, MfaChallenge, TokenPair

router = APIRouter()

_STATUS_BY_KIND = {
    FailureKind.INVALID_INPUT: 400,
    FailureKind.AUTHENTICATION_FAILED: 401,
    FailureKind.ACCOUNT_LOCKED: 423,
    FailureKind.SESSION_INVALID: 401,
    FailureKind.KEY_UNAVAILABLE: 503,
    FailureKind.CONFLICT: 409,
    FailureKind.OPERATION_FAILED: 500,
}

_NO_STORE = {"Cache-Control": "no-store"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _raise_failure(failure: AuthFailure) -> None:
    detail: dict = {"code": failure.kind.value, "message": failure.message}
    if failure.problems:
        detail["detail"] = "; ".join(failure.problems)
    headers = dict(_NO_STORE)
    if failure.lockout_until is not None:
        detail["lockout_until"] = failure.lockout_until.isoformat()
    if failure.kind is FailureKind.AUTHENTICATION_FAILED or failure.kind is FailureKind.SESSION_INVALID:
        headers["WWW-Authenticate"] = "Bearer"
    raise HTTPException(status_code=_STATUS_BY_KIND[failure.kind], detail=detail, headers=headers)


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _token_pair_response(pair: TokenPair) -> LoginResponse:
    return LoginResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_token_expiry=pair.access_token_expires_at,
        refresh_token_expiry=pair.refresh_token_expires_at,
    )


# ---------------------------------------------------------------------------
# Token lifecycle (public)
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> LoginResponse:
    """Authenticate with username (or email) and password.

    Wrong username and wrong password produce the same 401. A locked account
    gets 423 with lockout_until once the attempt has been evaluated.
    """
    response.headers.update(_NO_STORE)
    device = body.device_info or request.headers.get("User-Agent")
    result = orchestrator.login(body.username, body.password, device=device, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    if isinstance(result, MfaChallenge):
        return LoginResponse(requires_mfa=True, mfa_challenge=result.message)
    return _token_pair_response(result)


@router.post("/auth/refresh", response_model=LoginResponse)
def refresh(
    request: Request,
    response: Response,
    body: RefreshRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> LoginResponse:
    """Exchange a refresh token for a new pair. The old refresh token stops working."""
    response.headers.update(_NO_STORE)
    device = body.device_info or request.headers.get("User-Agent")
    result = orchestrator.refresh(body.refresh_token, device=device, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return _token_pair_response(result)


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    body: LogoutRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> LogoutResponse:
    """End one session. Succeeds even when the session is already gone."""
    result = orchestrator.logout(body.refresh_token, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return LogoutResponse(success=result.success, message=result.message)


@router.get("/auth/verify", response_model=VerifyResponse)
def verify(request: Request, orchestrator: LoginOrchestrator = Depends(get_orchestrator)) -> VerifyResponse:
    """Report whether the Bearer access token is valid. Always 200; see is_valid."""
    token = bearer_token(request)
    if token is None:
        return VerifyResponse(is_valid=False, error_message="Missing or invalid Authorization header")
    result = orchestrator.verify(token)
    return VerifyResponse(
        is_valid=result.is_valid,
        user_id=result.account_id,
        username=result.username,
        email=result.email,
        roles=result.roles,
        expires_at=result.expires_at,
        issued_at=result.issued_at,
        error_message=result.error_message,
    )


@router.get("/auth/jwks")
def jwks(orchestrator: LoginOrchestrator = Depends(get_orchestrator)) -> dict:
    """JWK Set of every signing key still valid for verification."""
    return orchestrator.keys.jwks()


# ---------------------------------------------------------------------------
# Registration and password reset (public, rate-limited)
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    request: Request,
    body: RegisterRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> RegisterResponse:
    result = orchestrator.register(body.username, body.email, body.password, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return RegisterResponse(
        user_id=result.account_id,
        username=result.username,
        email=result.email,
        created_at=result.created_at,
    )


@limiter.limit(credential_rate_limit)
@router.post("/auth/password-reset/initiate", response_model=PasswordResetResponse)
def initiate_password_reset(
    request: Request,
    body: PasswordResetInitiateRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> PasswordResetResponse:
    """Same response whether or not the account exists."""
    result = orchestrator.initiate_password_reset(body.username_or_email, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return PasswordResetResponse(message=result.message)


@limiter.limit(credential_rate_limit)
@router.post("/auth/password-reset/complete", response_model=PasswordResetResponse)
def complete_password_reset(
    request: Request,
    response: Response,
    body: PasswordResetCompleteRequest,
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> PasswordResetResponse:
    response.headers.update(_NO_STORE)
    result = orchestrator.complete_password_reset(body.token, body.new_password, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return PasswordResetResponse(message=result.message, reset_at=result.completed_at)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    current: Account = Depends(get_current_account),
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> LogoutAllResponse:
    result = orchestrator.logout_all(current.id, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return LogoutAllResponse(
        success=result.success,
        message=result.message,
        sessions_terminated=result.sessions_terminated,
    )


@router.get("/auth/me", response_model=MeResponse)
def me(current: Account = Depends(get_current_account)) -> MeResponse:
    return MeResponse(
        user_id=current.id,
        username=current.username,
        email=current.email,
        roles=current.roles,
        mfa_enabled=current.mfa_enabled,
    )


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(
    current: Account = Depends(get_current_account),
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> list[SessionInfo]:
    """Active sessions of the caller, newest first. jti values are never exposed."""
    return [
        SessionInfo(
            session_id=s.session_id,
            device=s.device,
            ip_address=s.ip_address,
            created_at=s.created_at,
            expires_at=s.expires_at,
        )
        for s in orchestrator.sessions.list_active(current.id)
    ]


# ---------------------------------------------------------------------------
# Administration (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/accounts/{user_id}/unlock", response_model=UnlockResponse)
def unlock_account(
    request: Request,
    user_id: str,
    admin: Account = Depends(require_admin),
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> UnlockResponse:
    result = orchestrator.unlock_account(user_id, actor=admin.username, ip_address=_client_ip(request))
    if isinstance(result, AuthFailure):
        if result.kind is FailureKind.INVALID_INPUT:
            raise HTTPException(status_code=404, detail={"code": "not_found", "message": result.message})
        _raise_failure(result)
    return UnlockResponse(user_id=result.account_id, message=result.message)


@router.post("/auth/keys/rotate", response_model=KeyRotationResponse)
def rotate_keys(
    admin: Account = Depends(require_admin),
    orchestrator: LoginOrchestrator = Depends(get_orchestrator),
) -> KeyRotationResponse:
    result = orchestrator.rotate_signing_key(actor=admin.username)
    if isinstance(result, AuthFailure):
        _raise_failure(result)
    return KeyRotationResponse(key_id=result)
