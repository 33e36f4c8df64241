"""
auth/sessions.py -- Registry of live refresh-token sessions.

One row per still-valid refresh token, keyed by the token's jti. Every
mutation is a single SQL statement, so an interrupted request never leaves a
session half-written.

revoke() reports whether it actually removed the row. The refresh flow
relies on that: when two requests present the same refresh token at once,
only the one whose DELETE hit a row goes on to mint new tokens.

revoke_all() and a concurrent create() are ordinary last-writer-wins SQL: a
session created while revoke_all() is in flight may survive it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine

from auth.models import Session
from auth.store import sessions_table
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("authgate.auth.sessions")


class SessionRegistry:
    """Repository for Session rows.

    ttl must match TokenIssuer.refresh_ttl; callers that already hold the
    refresh token's expiry pass it to create() so the two agree exactly.
    """

    def __init__(self, engine: Engine, ttl: timedelta = timedelta(minutes=60), clock: Clock = utcnow) -> None:
        self.engine = engine
        self.ttl = ttl
        self._clock = clock

    def create(
        self,
        account_id: str,
        jti: str,
        device: str | None = None,
        ip_address: str | None = None,
        expires_at: datetime | None = None,
    ) -> Session:
        now = self._clock()
        session = Session(
            session_id=uuid.uuid4().hex,
            account_id=account_id,
            jti=jti,
            device=device,
            ip_address=ip_address,
            created_at=now,
            expires_at=expires_at or now + self.ttl,
        )
        with self.engine.connect() as conn:
            conn.execute(
                sessions_table.insert().values(
                    session_id=session.session_id,
                    account_id=account_id,
                    jti=jti,
                    device=device,
                    ip_address=ip_address,
                    created_at=to_iso(session.created_at),
                    expires_at=to_iso(session.expires_at),
                )
            )
            conn.commit()
        return session

    def find_by_jti(self, jti: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(sessions_table.select().where(sessions_table.c.jti == jti)).fetchone()
        return _row_to_session(row) if row is not None else None

    def is_active(self, jti: str) -> bool:
        session = self.find_by_jti(jti)
        return session is not None and session.is_active_at(self._clock())

    def list_active(self, account_id: str) -> list[Session]:
        """Unexpired sessions for one account, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                sessions_table.select()
                .where((sessions_table.c.account_id == account_id) & (sessions_table.c.expires_at > to_iso(self._clock())))
                .order_by(sessions_table.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke(self, jti: str) -> bool:
        """Delete the session for jti. Revoking an absent session is a no-op returning False."""
        with self.engine.connect() as conn:
            result = conn.execute(sessions_table.delete().where(sessions_table.c.jti == jti))
            conn.commit()
        return result.rowcount > 0

    def revoke_all(self, account_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(sessions_table.delete().where(sessions_table.c.account_id == account_id))
            conn.commit()
        return result.rowcount

    def cleanup_expired(self) -> int:
        """Delete every session with expires_at <= now. Idempotent."""
        with self.engine.connect() as conn:
            result = conn.execute(sessions_table.delete().where(sessions_table.c.expires_at <= to_iso(self._clock())))
            conn.commit()
        if result.rowcount:
            logger.info("Removed %d expired session(s)", result.rowcount)
        return result.rowcount


def _row_to_session(row) -> Session:
    return Session(
        session_id=row.session_id,
        account_id=row.account_id,
        jti=row.jti,
        device=row.device,
        ip_address=row.ip_address,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
    )
