"""
store/memory.py -- In-process dict-backed PasskeyStorage.

FOR DEVELOPMENT AND TESTS ONLY. Everything lives in this process: data is lost
on restart and is not shared between workers. Construction in production mode
raises StorageFailure, so a misconfigured deployment fails at startup rather
than silently forgetting every passkey.

A single lock guards all three maps. Each public method takes it once and does
no I/O while holding it, which is what makes get_and_delete_challenge() atomic
per key and update_credential_counter() a true compare-and-set.

Records are deep-copied on the way in and out so callers cannot mutate stored
state behind the store's back.

Usage:
    store = MemoryPasskeyStore()
    store.save_challenge(challenge)
    pending = store.get_and_delete_challenge("alice@example.com")
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime
from typing import Optional

from core.errors import CounterRegression, CredentialNotFound, StorageFailure, UserNotFound
from core.models import Challenge, Credential, UserIdentity, utcnow

logger = logging.getLogger("passkeykit.store")


class MemoryPasskeyStore:
    def __init__(self, *, production: bool = False) -> None:
        if production:
            msg = (
                "MemoryPasskeyStore is being used in production. "
                "This loses every user and credential on restart. "
                "Set DATABASE_URL to a persistent database."
            )
            logger.error(msg)
            raise StorageFailure(msg)
        self._lock = threading.Lock()
        self._users: dict[str, UserIdentity] = {}  # username -> identity
        self._user_ids: dict[str, str] = {}  # user id -> username
        self._credential_index: dict[str, str] = {}  # credential id -> username
        self._challenges: dict[str, Challenge] = {}  # key -> challenge

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    def save_user(self, identity: UserIdentity) -> None:
        with self._lock:
            previous = self._users.get(identity.username)
            if previous is not None and previous.user_id != identity.user_id:
                raise StorageFailure(f"User id for {identity.username!r} cannot change")
            holder = self._user_ids.get(identity.user_id)
            if holder is not None and holder != identity.username:
                raise StorageFailure(f"User id {identity.user_id!r} belongs to another user")
            for credential in identity.credentials:
                owner = self._credential_index.get(credential.id)
                if owner is not None and owner != identity.username:
                    raise StorageFailure(f"Credential {credential.id} belongs to another user")
            if previous is not None:
                for credential in previous.credentials:
                    self._credential_index.pop(credential.id, None)
            self._users[identity.username] = copy.deepcopy(identity)
            self._user_ids[identity.user_id] = identity.username
            for credential in identity.credentials:
                self._credential_index[credential.id] = identity.username

    def get_user_by_username(self, username: str) -> Optional[UserIdentity]:
        with self._lock:
            return copy.deepcopy(self._users.get(username))

    def get_user_by_user_id(self, user_id: str) -> Optional[UserIdentity]:
        with self._lock:
            username = self._user_ids.get(user_id)
            if username is None:
                return None
            return copy.deepcopy(self._users.get(username))

    def get_user_by_credential_id(self, credential_id: str) -> Optional[UserIdentity]:
        with self._lock:
            username = self._credential_index.get(credential_id)
            if username is None:
                return None
            return copy.deepcopy(self._users.get(username))

    def add_credential(self, username: str, credential: Credential) -> None:
        with self._lock:
            user = self._users.get(username)
            if user is None:
                raise UserNotFound()
            if credential.id in self._credential_index:
                raise StorageFailure(f"Credential {credential.id} is already registered")
            user.credentials.append(copy.deepcopy(credential))
            user.updated_at = utcnow()
            self._credential_index[credential.id] = username

    def update_credential_counter(self, credential_id: str, new_counter: int) -> None:
        with self._lock:
            username = self._credential_index.get(credential_id)
            user = self._users.get(username) if username is not None else None
            credential = user.find_credential(credential_id) if user is not None else None
            if credential is None:
                raise CredentialNotFound()
            if new_counter < credential.counter:
                raise CounterRegression(
                    f"Counter for {credential_id} would go from {credential.counter} to {new_counter}"
                )
            credential.counter = new_counter
            user.updated_at = utcnow()

    # ------------------------------------------------------------------
    # Challenge store
    # ------------------------------------------------------------------

    def save_challenge(self, challenge: Challenge) -> None:
        with self._lock:
            self._challenges[challenge.username] = copy.deepcopy(challenge)

    def get_and_delete_challenge(self, key: str) -> Optional[Challenge]:
        with self._lock:
            return self._challenges.pop(key, None)

    def cleanup_expired_challenges(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            expired = [key for key, c in self._challenges.items() if c.is_expired(now)]
            for key in expired:
                del self._challenges[key]
        return len(expired)

    # ------------------------------------------------------------------

    def is_healthy(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._users.clear()
            self._user_ids.clear()
            self._credential_index.clear()
            self._challenges.clear()
