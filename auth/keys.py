"""
auth/keys.py -- RSA signing-key storage, rotation and lookup.

Security design decisions:
  RS256 with 2048-bit (or larger) RSA keys from the cryptography package.
  Private keys are persisted as PKCS#8 PEM encrypted with SECRET_KEY
  (BestAvailableEncryption), so a copy of the database alone does not leak
  signing material.

  Exactly one key is active. rotate() demotes the current key and inserts the
  new one inside a single transaction, and the whole rotation runs under one
  process-wide lock, so two concurrent rotations can never leave two active
  keys. First-key creation in current_signing_key() takes the same lock with
  a double check.

  A demoted key stays valid for verification until rotation time + grace,
  where grace is at least the longest token lifetime. Expired keys are never
  returned by validation_key(), even while still stored.

  Key generation failure raises KeyUnavailableError. There is no fallback to
  a weaker key.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import logging
import secrets
import threading
from datetime import datetime, timedelta

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import SigningKey
from auth.store import signing_keys_table
from core.clock import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("authgate.auth.keys")

ALGORITHM = "RS256"

_MAX_KEY_ID_ATTEMPTS = 5


class KeyUnavailableError(Exception):
    """No usable signing key could be produced or loaded."""


# ---------------------------------------------------------------------------
# Key material helpers
# ---------------------------------------------------------------------------


def _generate_private_key(key_size: int) -> rsa.RSAPrivateKey:
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except Exception as exc:
        raise KeyUnavailableError(f"RSA key generation failed: {exc}") from exc


def _private_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _public_pem(key: rsa.RSAPrivateKey) -> str:
    return (
        key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("ascii")
    )


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _new_key_id(now) -> str:
    return f"key-{now:%Y%m%d%H%M%S}-{secrets.token_hex(4)}"


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class KeyStore:
    """Persists signing keys with the private half encrypted at rest."""

    def __init__(self, engine: Engine, passphrase: str) -> None:
        self.engine = engine
        self._passphrase = passphrase.encode("utf-8")
        # key_id -> (private_pem, public_pem), decrypted at most once per process.
        self._material: dict[str, tuple[str, str]] = {}
        self._material_lock = threading.Lock()

    def _encrypt(self, private_pem: str) -> str:
        key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
        return key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(self._passphrase),
        ).decode("ascii")

    def _decrypt(self, encrypted_pem: str) -> rsa.RSAPrivateKey:
        return serialization.load_pem_private_key(encrypted_pem.encode("ascii"), password=self._passphrase)

    def insert_active(self, key: SigningKey, demoted_expires_at) -> None:
        """Demote every active key and insert key as the only active one, atomically.

        Demoted keys keep the earlier of their own expiry and demoted_expires_at.
        Raises IntegrityError if key.key_id is already taken.
        """
        with self.engine.begin() as conn:
            active_rows = conn.execute(
                signing_keys_table.select().where(signing_keys_table.c.is_active == 1)
            ).fetchall()
            for row in active_rows:
                expires_at = min(from_iso(row.expires_at), demoted_expires_at)
                conn.execute(
                    update(signing_keys_table)
                    .where(signing_keys_table.c.key_id == row.key_id)
                    .values(is_active=0, expires_at=to_iso(expires_at))
                )
            conn.execute(
                signing_keys_table.insert().values(
                    key_id=key.key_id,
                    private_pem=self._encrypt(key.private_pem),
                    created_at=to_iso(key.created_at),
                    expires_at=to_iso(key.expires_at),
                    is_active=1,
                )
            )
        with self._material_lock:
            self._material[key.key_id] = (key.private_pem, key.public_pem)

    def get(self, key_id: str) -> SigningKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(signing_keys_table.select().where(signing_keys_table.c.key_id == key_id)).fetchone()
        return self._row_to_key(row) if row is not None else None

    def active(self) -> SigningKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                signing_keys_table.select()
                .where(signing_keys_table.c.is_active == 1)
                .order_by(signing_keys_table.c.created_at.desc())
            ).fetchone()
        return self._row_to_key(row) if row is not None else None

    def list_keys(self) -> list[SigningKey]:
        """All readable stored keys, newest first. Undecryptable rows are logged and left out."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                signing_keys_table.select().order_by(signing_keys_table.c.created_at.desc())
            ).fetchall()
        keys = []
        for row in rows:
            try:
                keys.append(self._row_to_key(row))
            except KeyUnavailableError as exc:
                logger.warning("%s", exc)
        return keys

    def delete_expired(self, now) -> list[str]:
        """Remove inactive keys whose verification window has closed. Returns their ids."""
        expired = (signing_keys_table.c.is_active == 0) & (signing_keys_table.c.expires_at <= to_iso(now))
        with self.engine.begin() as conn:
            key_ids = [r.key_id for r in conn.execute(signing_keys_table.select().where(expired)).fetchall()]
            if key_ids:
                conn.execute(signing_keys_table.delete().where(signing_keys_table.c.key_id.in_(key_ids)))
        with self._material_lock:
            for key_id in key_ids:
                self._material.pop(key_id, None)
        return key_ids

    def _row_to_key(self, row) -> SigningKey:
        with self._material_lock:
            material = self._material.get(row.key_id)
        if material is None:
            try:
                private_key = self._decrypt(row.private_pem)
            except (ValueError, TypeError) as exc:
                # Wrong SECRET_KEY (e.g. a regenerated dev key) or corrupt PEM.
                raise KeyUnavailableError(f"Signing key {row.key_id} cannot be decrypted") from exc
            material = (_private_pem(private_key), _public_pem(private_key))
            with self._material_lock:
                self._material[row.key_id] = material
        return SigningKey(
            key_id=row.key_id,
            private_pem=material[0],
            public_pem=material[1],
            created_at=from_iso(row.created_at),
            expires_at=from_iso(row.expires_at),
            is_active=bool(row.is_active),
        )


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class KeyManager:
    """Answers "which key signs" and "which key verifies kid X".

    Usage:
        manager = KeyManager(KeyStore(engine, settings.secret_key), grace=settings.key_grace)
        signer = manager.current_signing_key()
        verifier = manager.validation_key(token_kid)   # None when unknown or expired
    """

    def __init__(
        self,
        store: KeyStore,
        lifetime: timedelta = timedelta(days=90),
        rotation_interval: timedelta = timedelta(days=60),
        grace: timedelta = timedelta(hours=1),
        key_size: int = 2048,
        clock: Clock = utcnow,
        signing_horizon: timedelta | None = None,
    ) -> None:
        self.store = store
        self.lifetime = lifetime
        self.rotation_interval = rotation_interval
        self.grace = grace
        # A key stops signing once it has less than this left to live.
        self.signing_horizon = grace if signing_horizon is None else signing_horizon
        self.key_size = key_size
        self._clock = clock
        self._rotation_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def current_signing_key(self) -> SigningKey:
        """Return the active key, creating and activating one if none exists.

        An active key too close to its expiry to outlive the tokens it would
        sign is replaced rather than returned.
        """
        key = self._readable_active()
        if key is not None and self._can_sign(key, self._clock()):
            return key
        with self._rotation_lock:
            key = self._readable_active()
            if key is not None and self._can_sign(key, self._clock()):
                return key
            logger.info("No usable active signing key; generating one")
            return self._rotate_locked()

    def _can_sign(self, key: SigningKey, now: datetime) -> bool:
        return key.expires_at - now >= self.signing_horizon

    def _readable_active(self) -> SigningKey | None:
        """The active key, or None when there is none or it cannot be decrypted.

        An unreadable active key (SECRET_KEY changed) is superseded by the
        next rotation; tokens it signed can no longer be verified anyway.
        """
        try:
            return self.store.active()
        except KeyUnavailableError as exc:
            logger.warning("%s; it will be replaced", exc)
            return None

    def validation_key(self, key_id: str) -> SigningKey | None:
        """Return the key named key_id if it is still within its expiry."""
        key = self.store.get(key_id)
        if key is None or not key.is_valid_at(self._clock()):
            return None
        return key

    def valid_keys(self) -> list[SigningKey]:
        now = self._clock()
        return [k for k in self.store.list_keys() if k.is_valid_at(now)]

    def jwks(self) -> dict:
        """Public halves of every verification-valid key as a JWK Set."""
        keys = []
        for key in self.valid_keys():
            numbers = serialization.load_pem_public_key(key.public_pem.encode("ascii")).public_numbers()
            keys.append(
                {
                    "kty": "RSA",
                    "use": "sig",
                    "alg": ALGORITHM,
                    "kid": key.key_id,
                    "n": _b64url_uint(numbers.n),
                    "e": _b64url_uint(numbers.e),
                }
            )
        return {"keys": keys}

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self) -> str:
        """Generate and activate a new key, demoting the previous one. Returns the new key id."""
        with self._rotation_lock:
            return self._rotate_locked().key_id

    def should_rotate(self) -> bool:
        key = self._readable_active()
        if key is None:
            return True
        now = self._clock()
        return now - key.created_at >= self.rotation_interval or not self._can_sign(key, now)

    def rotate_if_needed(self) -> str | None:
        """Rotate when the active key is due. Safe to call from several schedulers at once."""
        if not self.should_rotate():
            return None
        with self._rotation_lock:
            # Another caller may have rotated while we waited.
            if not self.should_rotate():
                return None
            return self._rotate_locked().key_id

    def prune_expired(self) -> int:
        removed = self.store.delete_expired(self._clock())
        if removed:
            logger.info("Pruned expired signing keys: %s", ", ".join(removed))
        return len(removed)

    def _rotate_locked(self) -> SigningKey:
        now = self._clock()
        private_key = _generate_private_key(self.key_size)
        for _ in range(_MAX_KEY_ID_ATTEMPTS):
            key = SigningKey(
                key_id=_new_key_id(now),
                private_pem=_private_pem(private_key),
                public_pem=_public_pem(private_key),
                created_at=now,
                expires_at=now + self.lifetime,
                is_active=True,
            )
            try:
                self.store.insert_active(key, demoted_expires_at=now + self.grace)
            except IntegrityError:
                logger.debug("Key id %s already taken, regenerating", key.key_id)
                continue
            logger.info("Activated signing key %s (expires %s)", key.key_id, key.expires_at)
            return key
        raise KeyUnavailableError("Could not allocate a unique signing key id")
