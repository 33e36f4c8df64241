"""
auth/maintenance.py -- The periodic housekeeping tick.

run_maintenance() is one idempotent unit of work: rotate the signing key if
it is due, drop signing keys whose verification window has closed, and delete
expired sessions. Something outside decides when to call it -- the API
lifespan loop (api/main.py) or `python main.py cleanup`. Calling it twice in a
row is harmless; the second call finds nothing to do.

When an AuthMetrics is passed, scheduled rotations and session cleanups are
counted on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.audit import AuditTrail
from auth.keys import KeyManager
from auth.metrics import AuthMetrics
from auth.models import AuditEventKind
from auth.sessions import SessionRegistry

logger = logging.getLogger("authgate.auth.maintenance")


@dataclass(frozen=True)
class MaintenanceReport:
    rotated_key_id: str | None
    keys_pruned: int
    sessions_removed: int

    @property
    def rotated(self) -> bool:
        return self.rotated_key_id is not None


def run_maintenance(
    keys: KeyManager,
    sessions: SessionRegistry,
    audit: AuditTrail | None = None,
    metrics: AuthMetrics | None = None,
) -> MaintenanceReport:
    rotated_key_id = keys.rotate_if_needed()
    if rotated_key_id is not None and metrics is not None:
        metrics.record_key_rotation("scheduled")
    if rotated_key_id is not None and audit is not None:
        try:
            audit.record(AuditEventKind.KEY_ROTATED, detail=f"Scheduled rotation activated {rotated_key_id}")
        except Exception:
            logger.exception("Audit sink failed to record scheduled key rotation")
    keys_pruned = keys.prune_expired()
    try:
        sessions_removed = sessions.cleanup_expired()
    except Exception:
        if metrics is not None:
            metrics.record_session_cleanup(False)
        raise
    if metrics is not None:
        metrics.record_session_cleanup(True, sessions_removed)
    report = MaintenanceReport(
        rotated_key_id=rotated_key_id,
        keys_pruned=keys_pruned,
        sessions_removed=sessions_removed,
    )
    logger.info(
        "Maintenance: rotated=%s keys_pruned=%d sessions_removed=%d",
        report.rotated_key_id or "no",
        report.keys_pruned,
        report.sessions_removed,
    )
    return report
