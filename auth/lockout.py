"""
auth/lockout.py -- Progressive account lockout policy.

Two halves:

  transition() is a pure state machine: (state, outcome, now) -> (new state,
  decision). No I/O, no clock reads, trivially unit-testable.

  check_and_record() applies one transition to a stored account with
  linearized updates. Within this process a lock keyed by account id
  serializes concurrent attempts for the same account; across processes the
  store write is a conditional UPDATE (compare-and-swap on the failure
  counter and last-attempt stamp), retried on conflict. Two parallel wrong
  passwords therefore always count as two failures.

Lazy unlock:
  is_locked() is true only while now < lockout_until. When the window has
  passed the account is treated as unlocked, but the stored flag and failure
  counter are left untouched until the next recorded outcome. A failure right
  after expiry therefore starts from the stale counter (already >= threshold)
  and re-locks immediately, while a success resets everything.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from core.clock import Clock, utcnow

if TYPE_CHECKING:
    from auth.models import Account
    from auth.store import AccountStore

logger = logging.getLogger("authgate.auth.lockout")

_MAX_CAS_RETRIES = 5


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class DecisionKind(str, Enum):
    ALLOW = "allow"
    LOCKED = "locked"
    JUST_LOCKED = "just_locked"


@dataclass(frozen=True)
class LockoutState:
    is_locked: bool = False
    lockout_until: datetime | None = None
    failed_attempts: int = 0
    last_attempt: datetime | None = None

    @classmethod
    def of(cls, account: Account) -> LockoutState:
        return cls(
            is_locked=account.is_locked,
            lockout_until=account.lockout_until,
            failed_attempts=account.failed_attempts,
            last_attempt=account.last_attempt,
        )

    def locked_at(self, now: datetime) -> bool:
        return self.is_locked and self.lockout_until is not None and now < self.lockout_until


@dataclass(frozen=True)
class LockoutDecision:
    kind: DecisionKind
    lockout_until: datetime | None = None
    failed_attempts: int = 0


class LockoutConflictError(RuntimeError):
    """The lockout state kept changing underneath us; the attempt was not recorded."""


class _KeyedLocks:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]


class LockoutPolicy:
    """Failed-attempt counter and lockout window over stored accounts."""

    def __init__(
        self,
        store: AccountStore,
        threshold: int = 5,
        duration: timedelta = timedelta(minutes=30),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.duration = duration
        self._clock = clock
        self._locks = _KeyedLocks()

    def is_locked(self, account: Account) -> bool:
        return LockoutState.of(account).locked_at(self._clock())

    def transition(
        self, state: LockoutState, outcome: Outcome, now: datetime
    ) -> tuple[LockoutState, LockoutDecision]:
        """Pure lockout state machine.

        A currently-locked account rejects the attempt without touching the
        counters. Otherwise a failure increments the counter and locks once it
        reaches the threshold; a success clears everything.
        """
        if state.locked_at(now):
            return state, LockoutDecision(DecisionKind.LOCKED, state.lockout_until, state.failed_attempts)

        if outcome is Outcome.SUCCESS:
            new_state = LockoutState(last_attempt=now)
            return new_state, LockoutDecision(DecisionKind.ALLOW)

        attempts = state.failed_attempts + 1
        if attempts >= self.threshold:
            until = now + self.duration
            new_state = LockoutState(is_locked=True, lockout_until=until, failed_attempts=attempts, last_attempt=now)
            return new_state, LockoutDecision(DecisionKind.JUST_LOCKED, until, attempts)

        new_state = replace(state, failed_attempts=attempts, last_attempt=now)
        return new_state, LockoutDecision(DecisionKind.ALLOW, None, attempts)

    def check_and_record(self, account: Account, outcome: Outcome) -> LockoutDecision:
        """Record one login outcome for the account and return the decision.

        Always re-reads the account inside the per-account lock so the
        decision reflects every attempt that completed before this one.
        """
        account_id = account.id
        if account_id is None:
            raise ValueError("Cannot record a lockout outcome for an unsaved account")

        with self._locks.hold(account_id):
            for _ in range(_MAX_CAS_RETRIES):
                current = self.store.get_by_id(account_id)
                if current is None:
                    # Account vanished mid-flight; nothing left to count against.
                    return LockoutDecision(DecisionKind.ALLOW)
                expected = LockoutState.of(current)
                new_state, decision = self.transition(expected, outcome, self._clock())
                if new_state == expected:
                    return decision
                if self.store.save_lockout_state(account_id, new_state, expected):
                    if decision.kind is DecisionKind.JUST_LOCKED:
                        logger.warning(
                            "Account %s locked until %s after %d failed attempts",
                            account_id,
                            decision.lockout_until,
                            decision.failed_attempts,
                        )
                    return decision
                logger.debug("Lockout state for %s changed concurrently, retrying", account_id)
        raise LockoutConflictError(f"Could not record lockout outcome for account {account_id}")

    def unlock(self, account_id: str) -> bool:
        """Explicitly clear the lockout flag, window and counter."""
        with self._locks.hold(account_id):
            return self.store.reset_lockout(account_id)
