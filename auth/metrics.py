"""
auth/metrics.py -- Prometheus counters and histograms for the auth engine.

AuthMetrics owns its own CollectorRegistry so several orchestrators (one per
test, say) never collide on metric names. The API serves the registry at
GET /metrics in the Prometheus text format.

Metric names:
  authgate_login_attempts_total{result, mfa_required}
  authgate_account_lockouts_total
  authgate_registration_attempts_total{result}
  authgate_password_reset_attempts_total{type, result}
  authgate_session_operations_total{operation}
  authgate_session_cleanups_total{result}
  authgate_sessions_cleaned_total
  authgate_key_rotations_total{trigger}
  authgate_auth_request_duration_seconds{operation, result}

Layer rule: no imports from api/.
"""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


def _result(success: bool) -> str:
    return "success" if success else "failure"


class AuthMetrics:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.login_attempts = Counter(
            "authgate_login_attempts_total",
            "Login attempts by result",
            ["result", "mfa_required"],
            registry=self.registry,
        )
        self.lockouts = Counter(
            "authgate_account_lockouts_total",
            "Accounts locked after repeated failed logins",
            registry=self.registry,
        )
        self.registrations = Counter(
            "authgate_registration_attempts_total",
            "Registration attempts by result",
            ["result"],
            registry=self.registry,
        )
        self.password_resets = Counter(
            "authgate_password_reset_attempts_total",
            "Password reset initiations and completions by result",
            ["type", "result"],
            registry=self.registry,
        )
        self.session_operations = Counter(
            "authgate_session_operations_total",
            "Session create/revoke operations",
            ["operation"],
            registry=self.registry,
        )
        self.session_cleanups = Counter(
            "authgate_session_cleanups_total",
            "Expired-session cleanup runs",
            ["result"],
            registry=self.registry,
        )
        self.sessions_cleaned = Counter(
            "authgate_sessions_cleaned_total",
            "Expired sessions removed by cleanup",
            registry=self.registry,
        )
        self.key_rotations = Counter(
            "authgate_key_rotations_total",
            "Signing key rotations",
            ["trigger"],
            registry=self.registry,
        )
        self.request_duration = Histogram(
            "authgate_auth_request_duration_seconds",
            "Duration of auth engine operations",
            ["operation", "result"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry,
        )

    def record_login(self, result: str, mfa_required: bool = False) -> None:
        self.login_attempts.labels(result=result, mfa_required=str(mfa_required).lower()).inc()

    def record_lockout(self) -> None:
        self.lockouts.inc()

    def record_registration(self, success: bool) -> None:
        self.registrations.labels(result=_result(success)).inc()

    def record_password_reset(self, reset_type: str, success: bool) -> None:
        self.password_resets.labels(type=reset_type, result=_result(success)).inc()

    def record_session_operation(self, operation: str, count: int = 1) -> None:
        if count > 0:
            self.session_operations.labels(operation=operation).inc(count)

    def record_session_cleanup(self, success: bool, cleaned: int = 0) -> None:
        self.session_cleanups.labels(result=_result(success)).inc()
        if cleaned > 0:
            self.sessions_cleaned.inc(cleaned)

    def record_key_rotation(self, trigger: str) -> None:
        self.key_rotations.labels(trigger=trigger).inc()

    def observe_duration(self, operation: str, result: str, seconds: float) -> None:
        self.request_duration.labels(operation=operation, result=result).observe(seconds)

    def value(self, name: str, **labels: str) -> float:
        """Current value of one sample, 0.0 when it has never been recorded."""
        sample = self.registry.get_sample_value(name, labels or None)
        return sample if sample is not None else 0.0

    def render(self) -> bytes:
        return generate_latest(self.registry)
