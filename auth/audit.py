"""
auth/audit.py -- Append-only security event trail.

The orchestrator only ever calls record(). It never reads events back, and
a failing sink must not fail the operation being audited -- the orchestrator
catches and logs sink errors (see LoginOrchestrator._audit).

SqlAuditTrail writes each event as one INSERT and mirrors it to the
"authgate.audit" logger. list_events() backs `python main.py audit`.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.engine import Engine

from auth.models import AuditEvent, AuditEventKind
from auth.store import audit_log_table
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("authgate.audit")

_WARNING_KINDS = frozenset({AuditEventKind.ACCOUNT_LOCKED, AuditEventKind.OPERATION_ERROR})


class AuditTrail(Protocol):
    def record(
        self,
        kind: AuditEventKind,
        account_id: str | None = None,
        username: str | None = None,
        ip_address: str | None = None,
        detail: str | None = None,
    ) -> None: ...


class SqlAuditTrail:
    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def record(
        self,
        kind: AuditEventKind,
        account_id: str | None = None,
        username: str | None = None,
        ip_address: str | None = None,
        detail: str | None = None,
    ) -> None:
        level = logging.WARNING if kind in _WARNING_KINDS else logging.INFO
        logger.log(
            level,
            "%s account=%s username=%s ip=%s detail=%s",
            kind.value,
            account_id or "-",
            username or "-",
            ip_address or "-",
            detail or "-",
        )
        with self.engine.connect() as conn:
            conn.execute(
                audit_log_table.insert().values(
                    kind=kind.value,
                    account_id=account_id,
                    username=username,
                    ip_address=ip_address,
                    detail=detail,
                    timestamp=to_iso(self._clock()),
                )
            )
            conn.commit()

    def list_events(
        self,
        account_id: str | None = None,
        kind: AuditEventKind | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events first, optionally filtered."""
        query = audit_log_table.select()
        if account_id is not None:
            query = query.where(audit_log_table.c.account_id == account_id)
        if kind is not None:
            query = query.where(audit_log_table.c.kind == kind.value)
        query = query.order_by(audit_log_table.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            AuditEvent(
                id=row.id,
                kind=AuditEventKind(row.kind),
                account_id=row.account_id,
                username=row.username,
                ip_address=row.ip_address,
                detail=row.detail,
                timestamp=from_iso(row.timestamp),
            )
            for row in rows
        ]
