"""
tests/test_metrics.py -- Unit tests for auth/metrics.py and the orchestrator's use of it.

Covers:
  - Each orchestrator instance gets its own registry
  - Login outcomes are counted by result and MFA flag; lockouts are counted once
  - Registration and password-reset outcomes
  - Session create/rotate/revoke/revoke_all operations
  - Forced and scheduled key rotations; cleanup counts from the maintenance tick
  - Every guarded operation observes a duration
"""

from __future__ import annotations

import pytest

from auth.maintenance import run_maintenance
from auth.metrics import AuthMetrics

PASSWORD = "Correct-Horse-7"
WRONG = "Wrong-Horse-7"

LOGINS = "authgate_login_attempts_total"
SESSION_OPS = "authgate_session_operations_total"


def test_registries_are_independent():
    first, second = AuthMetrics(), AuthMetrics()
    first.record_lockout()
    assert first.value("authgate_account_lockouts_total") == 1
    assert second.value("authgate_account_lockouts_total") == 0


def test_render_is_prometheus_text():
    metrics = AuthMetrics()
    metrics.record_login("success")
    body = metrics.render().decode("utf-8")
    assert "# TYPE authgate_login_attempts_total counter" in body
    assert 'authgate_login_attempts_total{result="success",mfa_required="false"} 1.0' in body


class TestLoginCounters:
    def test_success_failure_and_lockout(self, orchestrator, make_account):
        make_account()
        metrics = orchestrator.metrics

        orchestrator.login("alice", PASSWORD)
        for _ in range(5):
            orchestrator.login("alice", WRONG)
        orchestrator.login("alice", PASSWORD)

        assert metrics.value(LOGINS, result="success", mfa_required="false") == 1
        assert metrics.value(LOGINS, result="authentication_failed", mfa_required="false") == 4
        assert metrics.value(LOGINS, result="account_locked", mfa_required="false") == 2
        assert metrics.value("authgate_account_lockouts_total") == 1

    def test_mfa_challenge(self, orchestrator, make_account):
        make_account("mfauser", mfa_enabled=True)
        orchestrator.login("mfauser", PASSWORD)
        assert orchestrator.metrics.value(LOGINS, result="mfa_required", mfa_required="true") == 1
        assert orchestrator.metrics.value(SESSION_OPS, operation="create") == 0

    def test_duration_is_observed(self, orchestrator, make_account):
        make_account()
        orchestrator.login("alice", PASSWORD)
        orchestrator.login("nobody", PASSWORD)
        metrics = orchestrator.metrics
        name = "authgate_auth_request_duration_seconds_count"
        assert metrics.value(name, operation="login", result="success") == 1
        assert metrics.value(name, operation="login", result="authentication_failed") == 1

    def test_unexpected_error_is_counted_as_operation_failed(self, orchestrator, make_account, monkeypatch):
        make_account()

        def explode(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(orchestrator.sessions, "create", explode)
        orchestrator.login("alice", PASSWORD)
        assert orchestrator.metrics.value(LOGINS, result="operation_failed", mfa_required="false") == 1


class TestAccountCounters:
    def test_registration(self, orchestrator):
        orchestrator.register("newuser", "new@example.com", PASSWORD)
        orchestrator.register("newuser", "other@example.com", PASSWORD)
        name = "authgate_registration_attempts_total"
        assert orchestrator.metrics.value(name, result="success") == 1
        assert orchestrator.metrics.value(name, result="failure") == 1

    def test_password_reset(self, orchestrator, make_account, notifier):
        make_account()
        orchestrator.initiate_password_reset("alice")
        orchestrator.complete_password_reset("not-the-token", "Brand-New-Pass-9")
        orchestrator.complete_password_reset(notifier.last_token, "Brand-New-Pass-9")
        name = "authgate_password_reset_attempts_total"
        metrics = orchestrator.metrics
        assert metrics.value(name, type="initiate", result="success") == 1
        assert metrics.value(name, type="complete", result="failure") == 1
        assert metrics.value(name, type="complete", result="success") == 1


class TestSessionCounters:
    def test_session_lifecycle(self, orchestrator, make_account):
        account = make_account()
        first = orchestrator.login("alice", PASSWORD)
        orchestrator.login("alice", PASSWORD)
        orchestrator.refresh(first.refresh_token)
        orchestrator.logout(first.refresh_token)
        orchestrator.logout_all(account.id)

        metrics = orchestrator.metrics
        assert metrics.value(SESSION_OPS, operation="create") == 3
        assert metrics.value(SESSION_OPS, operation="rotate") == 1
        # The refreshed token's session is already gone, so logout revokes nothing.
        assert metrics.value(SESSION_OPS, operation="revoke") == 0
        assert metrics.value(SESSION_OPS, operation="revoke_all") == 2


class TestMaintenanceCounters:
    def test_rotations_and_cleanup(self, orchestrator, make_account, clock):
        make_account()
        orchestrator.login("alice", PASSWORD)
        orchestrator.rotate_signing_key()
        metrics = orchestrator.metrics

        clock.advance(days=61)
        run_maintenance(orchestrator.keys, orchestrator.sessions, orchestrator.audit, metrics)

        assert metrics.value("authgate_key_rotations_total", trigger="forced") == 1
        assert metrics.value("authgate_key_rotations_total", trigger="scheduled") == 1
        assert metrics.value("authgate_session_cleanups_total", result="success") == 1
        assert metrics.value("authgate_sessions_cleaned_total") == 1

    def test_failed_cleanup_is_counted(self, orchestrator, monkeypatch):
        orchestrator.keys.current_signing_key()

        def explode():
            raise RuntimeError("database went away")

        monkeypatch.setattr(orchestrator.sessions, "cleanup_expired", explode)
        with pytest.raises(RuntimeError):
            run_maintenance(orchestrator.keys, orchestrator.sessions, metrics=orchestrator.metrics)
        assert orchestrator.metrics.value("authgate_session_cleanups_total", result="failure") == 1
