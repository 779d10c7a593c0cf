"""
store/sql.py -- SQLAlchemy Core persistence for passkey identities and challenges.

Pattern: Repository + Data Mapper.
SQLPasskeyStore is the repository; _row_to_credential / _row_to_challenge are
the mappers. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Atomicity:
  Multi-statement operations run inside engine.begin() so they commit or roll
  back as one unit.

  get_and_delete_challenge() is a compare-and-delete: the DELETE matches both
  the key and the challenge value that was read. If a concurrent caller
  consumed (or a new issuance replaced) the row in between, rowcount is 0 and
  this caller gets None. Exactly one of two racing consumers wins.

  update_credential_counter() is a compare-and-set: the UPDATE only matches
  while the stored counter is <= the new one, so two racing authentications
  can never leave the lower value behind.

Errors:
  Any SQLAlchemyError is re-raised as StorageFailure with the original chained.
  Domain failures (UserNotFound, CredentialNotFound, CounterRegression) pass
  through untouched.

Timestamps:
  Identity and credential timestamps are ISO 8601 strings (UTC). Challenge
  timestamps are epoch seconds (REAL) so the expiry sweep is a numeric compare.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.errors import CounterRegression, CredentialNotFound, StorageFailure, UserNotFound
from core.models import Challenge, Credential, UserIdentity, utcnow

logger = logging.getLogger("passkeykit.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "passkey_users",
    _metadata,
    Column("user_id", String(255), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("display_name", Text, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)

_credentials = Table(
    "passkey_credentials",
    _metadata,
    Column("id", String(1024), primary_key=True),  # globally unique, base64url
    Column("user_id", String(255), nullable=False, index=True),
    Column("position", Integer, nullable=False),  # registration order within the user
    Column("public_key", Text, nullable=False),
    Column("counter", BigInteger, nullable=False, server_default="0"),
    Column("transports", Text),  # JSON list or NULL
    Column("created_at", String(40), nullable=False),
)

_challenges = Table(
    "passkey_challenges",
    _metadata,
    Column("lookup_key", String(255), primary_key=True),  # username, "" for discoverable
    Column("challenge", Text, nullable=False),
    Column("user_id", String(255), nullable=False, server_default=""),
    Column("display_name", Text, nullable=False, server_default=""),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float, nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on the challenge writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Store operation %s failed: %s", operation, exc)
        raise StorageFailure(f"Storage operation {operation} failed") from exc


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SQLPasskeyStore:
    """Repository for identities, credentials, and pending challenges.

    Usage:
        store = SQLPasskeyStore("sqlite:///passkeys.db")
        store.save_user(identity)
        identity = store.get_user_by_credential_id(credential_id)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with _storage_errors("create_schema"):
            _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    def save_user(self, identity: UserIdentity) -> None:
        """Insert or fully replace identity and its credential list.

        Raises StorageFailure if the username already maps to a different
        user_id, the user_id is held by another username, or any credential ID
        is owned by another identity.
        """
        ids = [c.id for c in identity.credentials]
        with _storage_errors("save_user"), self.engine.begin() as conn:
            row = conn.execute(_users.select().where(_users.c.username == identity.username)).fetchone()
            if row is not None and row.user_id != identity.user_id:
                raise StorageFailure(f"User id for {identity.username!r} cannot change")
            if row is None:
                holder = conn.execute(
                    select(_users.c.username).where(_users.c.user_id == identity.user_id)
                ).scalar()
                if holder is not None:
                    raise StorageFailure(f"User id {identity.user_id!r} belongs to another user")
            if ids:
                owners = conn.execute(
                    select(_credentials.c.id, _credentials.c.user_id).where(_credentials.c.id.in_(ids))
                ).fetchall()
                for owner in owners:
                    if owner.user_id != identity.user_id:
                        raise StorageFailure(f"Credential {owner.id} belongs to another user")

            values = {
                "username": identity.username,
                "display_name": identity.display_name,
                "created_at": identity.created_at.isoformat(),
                "updated_at": identity.updated_at.isoformat(),
            }
            if row is None:
                conn.execute(_users.insert().values(user_id=identity.user_id, **values))
            else:
                conn.execute(_users.update().where(_users.c.user_id == identity.user_id).values(**values))

            conn.execute(_credentials.delete().where(_credentials.c.user_id == identity.user_id))
            for position, credential in enumerate(identity.credentials):
                self._insert_credential(conn, identity.user_id, position, credential)

    def get_user_by_username(self, username: str) -> Optional[UserIdentity]:
        with _storage_errors("get_user_by_username"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
            return self._load_identity(conn, row) if row is not None else None

    def get_user_by_user_id(self, user_id: str) -> Optional[UserIdentity]:
        with _storage_errors("get_user_by_user_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.user_id == user_id)).fetchone()
            return self._load_identity(conn, row) if row is not None else None

    def get_user_by_credential_id(self, credential_id: str) -> Optional[UserIdentity]:
        """Resolve an identity from a credential ID. O(1) via the credentials primary key."""
        with _storage_errors("get_user_by_credential_id"), self.engine.connect() as conn:
            owner = conn.execute(
                select(_credentials.c.user_id).where(_credentials.c.id == credential_id)
            ).scalar()
            if owner is None:
                return None
            row = conn.execute(_users.select().where(_users.c.user_id == owner)).fetchone()
            return self._load_identity(conn, row) if row is not None else None

    def add_credential(self, username: str, credential: Credential) -> None:
        """Append a credential to an existing identity.

        Raises UserNotFound for an unknown username. A credential ID that is
        already registered (to anyone) violates the primary key and surfaces as
        StorageFailure.
        """
        with _storage_errors("add_credential"), self.engine.begin() as conn:
            user_id = conn.execute(select(_users.c.user_id).where(_users.c.username == username)).scalar()
            if user_id is None:
                raise UserNotFound()
            last = conn.execute(
                select(func.max(_credentials.c.position)).where(_credentials.c.user_id == user_id)
            ).scalar()
            position = 0 if last is None else last + 1
            self._insert_credential(conn, user_id, position, credential)
            conn.execute(_users.update().where(_users.c.user_id == user_id).values(updated_at=utcnow().isoformat()))

    def update_credential_counter(self, credential_id: str, new_counter: int) -> None:
        with _storage_errors("update_credential_counter"), self.engine.begin() as conn:
            row = conn.execute(
                select(_credentials.c.user_id, _credentials.c.counter).where(_credentials.c.id == credential_id)
            ).fetchone()
            if row is None:
                raise CredentialNotFound()
            result = conn.execute(
                _credentials.update()
                .where((_credentials.c.id == credential_id) & (_credentials.c.counter <= new_counter))
                .values(counter=new_counter)
            )
            if result.rowcount == 0:
                raise CounterRegression(
                    f"Counter for {credential_id} would go from {row.counter} to {new_counter}"
                )
            conn.execute(
                _users.update().where(_users.c.user_id == row.user_id).values(updated_at=utcnow().isoformat())
            )

    # ------------------------------------------------------------------
    # Challenge store
    # ------------------------------------------------------------------

    def save_challenge(self, challenge: Challenge) -> None:
        """Store challenge under its username, replacing any pending one."""
        with _storage_errors("save_challenge"), self.engine.begin() as conn:
            conn.execute(_challenges.delete().where(_challenges.c.lookup_key == challenge.username))
            conn.execute(
                _challenges.insert().values(
                    lookup_key=challenge.username,
                    challenge=challenge.challenge,
                    user_id=challenge.user_id,
                    display_name=challenge.display_name,
                    created_at=_to_epoch(challenge.created_at),
                    expires_at=_to_epoch(challenge.expires_at),
                )
            )

    def get_and_delete_challenge(self, key: str) -> Optional[Challenge]:
        with _storage_errors("get_and_delete_challenge"), self.engine.begin() as conn:
            row = conn.execute(_challenges.select().where(_challenges.c.lookup_key == key)).fetchone()
            if row is None:
                return None
            result = conn.execute(
                _challenges.delete().where(
                    (_challenges.c.lookup_key == key) & (_challenges.c.challenge == row.challenge)
                )
            )
            if result.rowcount != 1:
                logger.info("Challenge under key %r was consumed concurrently", key)
                return None
        return _row_to_challenge(row)

    def cleanup_expired_challenges(self, now: Optional[datetime] = None) -> int:
        cutoff = _to_epoch(now or utcnow())
        with _storage_errors("cleanup_expired_challenges"), self.engine.begin() as conn:
            result = conn.execute(_challenges.delete().where(_challenges.c.expires_at < cutoff))
        return result.rowcount

    # ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("Store health check failed: %s", exc)
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_credential(conn: Connection, user_id: str, position: int, credential: Credential) -> None:
        conn.execute(
            _credentials.insert().values(
                id=credential.id,
                user_id=user_id,
                position=position,
                public_key=credential.public_key,
                counter=credential.counter,
                transports=json.dumps(credential.transports) if credential.transports is not None else None,
                created_at=credential.created_at.isoformat(),
            )
        )

    @staticmethod
    def _load_identity(conn: Connection, row) -> UserIdentity:
        rows = conn.execute(
            _credentials.select()
            .where(_credentials.c.user_id == row.user_id)
            .order_by(_credentials.c.position)
        ).fetchall()
        return UserIdentity(
            user_id=row.user_id,
            username=row.username,
            display_name=row.display_name,
            credentials=[_row_to_credential(r) for r in rows],
            created_at=datetime.fromisoformat(row.created_at),
            updated_at=datetime.fromisoformat(row.updated_at),
        )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        public_key=row.public_key,
        counter=row.counter,
        transports=json.loads(row.transports) if row.transports is not None else None,
        created_at=datetime.fromisoformat(row.created_at),
    )


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        challenge=row.challenge,
        user_id=row.user_id,
        username=row.lookup_key,
        display_name=row.display_name,
        created_at=_from_epoch(row.created_at),
        expires_at=_from_epoch(row.expires_at),
    )
