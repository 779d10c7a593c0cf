"""
store/base.py -- The storage contract PasskeyService is written against.

Any backend that satisfies PasskeyStorage can be injected: the bundled
in-memory and SQLAlchemy stores, or a custom one over another database.
Every method may raise StorageFailure.

Atomicity requirements a custom store must honour:
  get_and_delete_challenge() -- read-and-remove is one indivisible step per
      key. Two concurrent callers on the same key: exactly one gets the
      challenge, the other gets None.
  update_credential_counter() -- compare-and-set against the stored value.
      A write that would lower the counter raises CounterRegression.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from core.models import Challenge, Credential, UserIdentity


class CredentialStore(Protocol):
    def save_user(self, identity: UserIdentity) -> None:
        """Insert or fully replace an identity, re-indexing every credential it owns.

        Raises StorageFailure if the username already has a different user_id,
        the user_id belongs to another username, or a credential belongs to
        another identity.
        """
        ...

    def get_user_by_username(self, username: str) -> Optional[UserIdentity]: ...

    def get_user_by_user_id(self, user_id: str) -> Optional[UserIdentity]: ...

    def get_user_by_credential_id(self, credential_id: str) -> Optional[UserIdentity]:
        """Resolve the owning identity through the cross-user credential index."""
        ...

    def add_credential(self, username: str, credential: Credential) -> None:
        """Append a credential. Raises UserNotFound for an unknown username."""
        ...

    def update_credential_counter(self, credential_id: str, new_counter: int) -> None:
        """Overwrite a counter. Raises CredentialNotFound or CounterRegression."""
        ...


class ChallengeStore(Protocol):
    def save_challenge(self, challenge: Challenge) -> None:
        """Store under challenge.username, replacing whatever was pending there."""
        ...

    def get_and_delete_challenge(self, key: str) -> Optional[Challenge]:
        """Atomically remove and return the challenge under key, or None."""
        ...

    def cleanup_expired_challenges(self, now: Optional[datetime] = None) -> int:
        """Remove challenges whose expires_at has passed. Returns the count removed."""
        ...


class PasskeyStorage(CredentialStore, ChallengeStore, Protocol):
    def is_healthy(self) -> bool: ...

    def close(self) -> None: ...
