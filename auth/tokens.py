"""
auth/tokens.py -- JWT access/refresh token minting and verification.

Security design decisions:
  JWT: python-jose with RS256. Every token header carries the signing key id
       ("kid"); verification looks that key up through KeyManager, so tokens
       signed by a demoted-but-unexpired key keep validating after rotation.

  Expiry is checked against the injected clock, not the wall clock jose would
       use, so lockout windows, session expiry and token expiry are all judged
       by the same time source. One fixed leeway (default 30s) is applied to
       both exp and iat.

  validate() returns False on any failure and never raises. claims() reads the
       payload WITHOUT verification -- logout needs the jti off a token that may
       already be expired. Anything that makes a trust decision must go through
       verified_claims() instead.

  Both token types carry "typ" so a refresh token cannot be replayed as an
       access token or the other way round.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from jose import jwt
from jose.exceptions import JOSEError

from auth.keys import ALGORITHM, KeyUnavailableError
from core.clock import Clock, utcnow

if TYPE_CHECKING:
    from auth.keys import KeyManager
    from auth.models import Account

logger = logging.getLogger("authgate.auth.tokens")

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "jti", "typ", "iat", "exp")
_REQUIRED_ACCESS_CLAIMS = ("username", "roles")


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject: str | None
    jti: str | None
    token_type: str | None
    issued_at: datetime | None
    expires_at: datetime | None
    username: str | None = None
    email: str | None = None
    roles: list[str] = field(default_factory=list)
    key_id: str | None = None


def _timestamp(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _text(value) -> str | None:
    """String claims of any other JSON type read as absent."""
    return value if isinstance(value, str) else None


def _to_claims(payload: dict, key_id: str | None) -> TokenClaims:
    roles = payload.get("roles") or []
    return TokenClaims(
        subject=_text(payload.get("sub")),
        jti=_text(payload.get("jti")),
        token_type=_text(payload.get("typ")),
        issued_at=_timestamp(payload.get("iat")),
        expires_at=_timestamp(payload.get("exp")),
        username=_text(payload.get("username")),
        email=_text(payload.get("email")),
        roles=[r for r in roles if isinstance(r, str)] if isinstance(roles, list) else [],
        key_id=key_id,
    )


class TokenIssuer:
    """Mints and checks signed tokens using the keys KeyManager hands out."""

    def __init__(
        self,
        keys: KeyManager,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(minutes=60),
        leeway: timedelta = timedelta(seconds=30),
        issuer: str = "authgate",
        audience: str = "authgate-clients",
        clock: Clock = utcnow,
    ) -> None:
        self.keys = keys
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.leeway = leeway
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def issue_access_token(self, account: Account) -> IssuedToken:
        return self._issue(
            account,
            ACCESS,
            self.access_ttl,
            {"username": account.username, "email": account.email, "roles": list(account.roles)},
        )

    def issue_refresh_token(self, account: Account) -> IssuedToken:
        """Refresh tokens carry only identity; their jti keys the session row."""
        return self._issue(account, REFRESH, self.refresh_ttl, {})

    def _issue(self, account: Account, token_type: str, ttl: timedelta, extra: dict) -> IssuedToken:
        # Whole seconds, so the returned expiry equals the exp claim exactly.
        now = self._clock().replace(microsecond=0)
        expires_at = now + ttl
        jti = uuid.uuid4().hex
        key = self.keys.current_signing_key()
        claims = {
            "sub": account.id,
            "jti": jti,
            "typ": token_type,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            **extra,
        }
        try:
            token = jwt.encode(claims, key.private_pem, algorithm=ALGORITHM, headers={"kid": key.key_id})
        except JOSEError as exc:
            raise KeyUnavailableError(f"Signing with key {key.key_id} failed") from exc
        return IssuedToken(token=token, jti=jti, expires_at=expires_at)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def validate(self, token: str, token_type: str | None = None) -> bool:
        """Return True iff the token is well-formed, correctly signed, unexpired and complete."""
        return self.verified_claims(token, token_type) is not None

    def verified_claims(self, token: str, token_type: str | None = None) -> TokenClaims | None:
        """Fully verify the token and return its claims, or None on any failure.

        token_type, when given, must match the "typ" claim.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JOSEError:
            return None
        key_id = _text(header.get("kid"))
        if not key_id or header.get("alg") != ALGORITHM:
            return None

        try:
            key = self.keys.validation_key(key_id)
        except KeyUnavailableError as exc:
            logger.warning("Token references unreadable key: %s", exc)
            return None
        if key is None:
            return None

        try:
            payload = jwt.decode(
                token,
                key.public_pem,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                # exp/nbf are checked below against the shared clock.
                options={"verify_exp": False, "verify_nbf": False},
            )
        except JOSEError:
            return None

        if any(payload.get(name) in (None, "") for name in _REQUIRED_CLAIMS):
            return None
        if token_type is not None and payload["typ"] != token_type:
            return None
        if payload["typ"] == ACCESS and any(name not in payload for name in _REQUIRED_ACCESS_CLAIMS):
            return None

        try:
            claims = _to_claims(payload, key_id)
        except (TypeError, ValueError, OverflowError):
            return None
        if not (claims.subject and claims.jti and claims.token_type):
            return None

        now = self._clock()
        if now >= claims.expires_at + self.leeway:
            return None
        if claims.issued_at > now + self.leeway:
            return None
        return claims

    def claims(self, token: str) -> TokenClaims | None:
        """Read claims WITHOUT verifying signature or expiry.

        Returns None only when the token is not a parseable JWT. Never use the
        result for a trust decision.
        """
        try:
            header = jwt.get_unverified_header(token)
            payload = jwt.get_unverified_claims(token)
            return _to_claims(payload, _text(header.get("kid")))
        except (JOSEError, TypeError, ValueError, OverflowError):
            return None
