"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive only as "Authorization: Bearer <token>". Desktop and
mobile clients hold tokens themselves, so there is no cookie path.

get_orchestrator() hands routes the LoginOrchestrator that the lifespan put
on app.state. try_get_current_account() is the soft variant (None on any
failure); get_current_account() raises HTTP 401 and require_admin() adds a
403 for callers without the "admin" role.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.models import Account
from auth.orchestrator import LoginOrchestrator


def get_orchestrator(request: Request) -> LoginOrchestrator:
    return request.app.state.orchestrator


def bearer_token(request: Request) -> str | None:
    """Return the raw token from the Authorization header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request from its Bearer access token.

    Goes through LoginOrchestrator.verify(), so a token whose account was
    deleted or is currently locked does not authenticate. Never raises.
    """
    token = bearer_token(request)
    if token is None:
        return None
    orchestrator = get_orchestrator(request)
    result = orchestrator.verify(token)
    if not result.is_valid:
        return None
    return orchestrator.accounts.get_by_id(result.account_id)


def get_current_account(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return account


def require_admin(account: Account = Depends(get_current_account)) -> Account:
    """Require the admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    if not account.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account
