"""
auth/store.py -- SQLAlchemy Core schema and the account repository.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account is the mapper. The session
registry, key store and audit trail live in their own modules but share the
schema and engine factory defined here, so one create_all() builds every
table.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Lockout writes are a conditional UPDATE (compare-and-swap on the failure
  counter and last-attempt stamp). The per-account lock in LockoutPolicy
  serializes writers inside one process; the CAS keeps two processes sharing
  the database from losing an increment.

  Password-reset tokens are stored as HMAC-SHA256 digests only. Clearing a
  token is conditional on its digest, so concurrent completions cannot both
  consume it.

Timestamps are fixed-width ISO-8601 UTC text (see core/clock.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from auth.lockout import LockoutState
from auth.models import Account
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("authgate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts_table = Table(
    "accounts",
    metadata,
    Column("id", String(32), primary_key=True),  # uuid4 hex
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("roles", String(255), nullable=False, server_default="user"),  # comma-separated
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("is_locked", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(32)),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("last_attempt", String(32)),
    Column("reset_token_hash", String(64), unique=True),  # HMAC-SHA256 hex
    Column("reset_token_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

sessions_table = Table(
    "sessions",
    metadata,
    Column("session_id", String(32), primary_key=True),
    Column("account_id", String(32), nullable=False, index=True),
    Column("jti", String(64), nullable=False, unique=True),
    Column("device", String(255)),
    Column("ip_address", String(64)),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
)

signing_keys_table = Table(
    "signing_keys",
    metadata,
    Column("key_id", String(64), primary_key=True),
    Column("private_pem", Text, nullable=False),  # encrypted PKCS#8
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="0"),
)

audit_log_table = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(40), nullable=False, index=True),
    Column("account_id", String(32), index=True),
    Column("username", String(255)),
    Column("ip_address", String(64)),
    Column("detail", Text),
    Column("timestamp", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and a busy timeout on every new SQLite connection.

    PRAGMAs are per-connection, so they must be set as the pool opens each
    one. The busy timeout lets concurrent writers wait instead of failing
    with "database is locked".
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def create_db_engine(db_url: str) -> Engine:
    """Create an engine for db_url and make sure every table exists."""
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


class DuplicateAccountError(Exception):
    """Username or email is already taken."""


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore(create_db_engine("sqlite:///auth.db"))
        account = store.create(Account(username="alice", email="a@example.com", password_hash=h))
        same = store.get_by_username_or_email("a@example.com")
    """

    def __init__(self, engine: Engine, clock: Clock = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, account: Account) -> Account:
        """Insert a new account and return it with id and timestamps set.

        Raises DuplicateAccountError if the username or email already exists.
        The UNIQUE constraints are the source of truth, so two concurrent
        registrations of the same name cannot both succeed.
        """
        now = self._clock()
        account.id = account.id or uuid.uuid4().hex
        account.email = account.email.lower()
        account.created_at = now
        account.updated_at = now
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    accounts_table.insert().values(
                        id=account.id,
                        username=account.username,
                        email=account.email,
                        password_hash=account.password_hash,
                        roles=",".join(account.roles),
                        mfa_enabled=1 if account.mfa_enabled else 0,
                        is_locked=0,
                        failed_attempts=0,
                        created_at=to_iso(now),
                        updated_at=to_iso(now),
                    )
                )
                conn.commit()
        except IntegrityError as exc:
            raise DuplicateAccountError(f"Account {account.username!r} or its email already exists") from exc
        return account

    def get_by_id(self, account_id: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(accounts_table.select().where(accounts_table.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str) -> Account | None:
        """Exact, case-sensitive username match."""
        with self.engine.connect() as conn:
            row = conn.execute(accounts_table.select().where(accounts_table.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Emails are stored lower-cased, so the lookup is too."""
        with self.engine.connect() as conn:
            row = conn.execute(accounts_table.select().where(accounts_table.c.email == email.lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username_or_email(self, identifier: str) -> Account | None:
        """Resolve a login identifier that may be either a username or an email.

        A username match wins over an email match.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                accounts_table.select().where(
                    or_(accounts_table.c.username == identifier, accounts_table.c.email == identifier.lower())
                )
            ).fetchall()
        if not rows:
            return None
        for row in rows:
            if row.username == identifier:
                return _row_to_account(row)
        return _row_to_account(rows[0])

    def list_accounts(self) -> list[Account]:
        with self.engine.connect() as conn:
            rows = conn.execute(accounts_table.select().order_by(accounts_table.c.username)).fetchall()
        return [_row_to_account(r) for r in rows]

    # ------------------------------------------------------------------
    # Lockout state
    # ------------------------------------------------------------------

    def save_lockout_state(self, account_id: str, new: LockoutState, expected: LockoutState) -> bool:
        """Write new lockout state if the stored state still matches expected.

        Returns False when another writer got there first; the caller re-reads
        and retries.
        """
        last_attempt_col = accounts_table.c.last_attempt
        if expected.last_attempt is None:
            last_attempt_matches = last_attempt_col.is_(None)
        else:
            last_attempt_matches = last_attempt_col == to_iso(expected.last_attempt)
        with self.engine.connect() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(
                    (accounts_table.c.id == account_id)
                    & (accounts_table.c.failed_attempts == expected.failed_attempts)
                    & last_attempt_matches
                )
                .values(
                    is_locked=1 if new.is_locked else 0,
                    lockout_until=to_iso(new.lockout_until) if new.lockout_until else None,
                    failed_attempts=new.failed_attempts,
                    last_attempt=to_iso(new.last_attempt) if new.last_attempt else None,
                    updated_at=to_iso(self._clock()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def reset_lockout(self, account_id: str) -> bool:
        """Clear lock flag, window and counter. Returns False if the account does not exist."""
        with self.engine.connect() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(is_locked=0, lockout_until=None, failed_attempts=0, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Credentials and profile
    # ------------------------------------------------------------------

    def set_password(self, account_id: str, password_hash: str) -> bool:
        """Replace the password hash, dropping any pending reset token and lockout."""
        with self.engine.connect() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(
                    password_hash=password_hash,
                    reset_token_hash=None,
                    reset_token_expires_at=None,
                    is_locked=0,
                    lockout_until=None,
                    failed_attempts=0,
                    updated_at=to_iso(self._clock()),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def set_reset_token(self, account_id: str, token_hash: str, expires_at: datetime) -> None:
        """Store a reset token digest, replacing any earlier one for the account."""
        with self.engine.connect() as conn:
            conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(
                    reset_token_hash=token_hash,
                    reset_token_expires_at=to_iso(expires_at),
                    updated_at=to_iso(self._clock()),
                )
            )
            conn.commit()

    def get_by_reset_token_hash(self, token_hash: str, now: datetime) -> Account | None:
        """Return the account holding this reset token digest, if the token has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                accounts_table.select().where(accounts_table.c.reset_token_hash == token_hash)
            ).fetchone()
        if row is None:
            return None
        expires_at = from_iso(row.reset_token_expires_at)
        if expires_at is None or now >= expires_at:
            return None
        return _row_to_account(row)

    def clear_reset_token(self, account_id: str, token_hash: str | None = None) -> bool:
        """Drop the pending reset token.

        With token_hash given, only that exact token is cleared, and the
        return value says whether this call was the one that cleared it. Two
        requests presenting the same token therefore cannot both proceed.
        """
        condition = accounts_table.c.id == account_id
        if token_hash is not None:
            condition = condition & (accounts_table.c.reset_token_hash == token_hash)
        else:
            condition = condition & accounts_table.c.reset_token_hash.is_not(None)
        with self.engine.connect() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(condition)
                .values(reset_token_hash=None, reset_token_expires_at=None, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def set_mfa_enabled(self, account_id: str, enabled: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(mfa_enabled=1 if enabled else 0, updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def set_roles(self, account_id: str, roles: list[str]) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                accounts_table.update()
                .where(accounts_table.c.id == account_id)
                .values(roles=",".join(roles), updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        roles=[r for r in row.roles.split(",") if r],
        mfa_enabled=bool(row.mfa_enabled),
        is_locked=bool(row.is_locked),
        lockout_until=from_iso(row.lockout_until),
        failed_attempts=row.failed_attempts,
        last_attempt=from_iso(row.last_attempt),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
