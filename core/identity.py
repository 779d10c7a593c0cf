"""
core/identity.py -- Challenge keys and identity resolution.

The challenge lookup key is decided exactly once per ceremony, from the
username the caller supplied when asking for options, and the same function
derives it again from the same input when the caller verifies. It is never
re-derived from the identity resolved mid-ceremony: a discoverable challenge
is saved under the anonymous key and must be consumed under the anonymous
key, even though the real username is known by then.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from core.errors import CredentialNotFound, UserNotFound
from core.models import Credential, UserIdentity

if TYPE_CHECKING:
    from store.base import CredentialStore

logger = logging.getLogger("passkeykit.identity")

# Store key for discoverable (usernameless) authentication challenges.
ANONYMOUS_KEY = ""

_USER_ID_BYTES = 32


@dataclass(frozen=True)
class ChallengeKey:
    """Where a ceremony's challenge lives in the challenge store.

    Either keyed by a username or by the anonymous sentinel. Build it with
    for_username() on both ends of a ceremony; never construct it from a
    resolved identity.
    """

    value: str

    @classmethod
    def for_username(cls, username: Optional[str]) -> "ChallengeKey":
        return cls(username or ANONYMOUS_KEY)

    @property
    def is_anonymous(self) -> bool:
        return self.value == ANONYMOUS_KEY

    def __str__(self) -> str:
        return self.value or "<anonymous>"


def mint_user_id() -> str:
    """Return a fresh opaque user id: 32 CSPRNG bytes, base64url encoded."""
    return bytes_to_base64url(secrets.token_bytes(_USER_ID_BYTES))


def user_handle(user_id: str) -> bytes:
    """Return the WebAuthn user handle bytes for a user id.

    Ids minted here are base64url and decode losslessly, so the handle the
    browser sees (options.user.id) is the id itself. Caller-supplied ids that
    are not canonical base64url fall back to their UTF-8 bytes.
    """
    try:
        raw = base64url_to_bytes(user_id)
    except ValueError:
        return user_id.encode("utf-8")
    if raw and bytes_to_base64url(raw) == user_id:
        return raw
    return user_id.encode("utf-8")


class IdentityResolver:
    """Derives the identity a ceremony acts on from a username or a credential ID."""

    def __init__(self, credentials: CredentialStore) -> None:
        self._credentials = credentials

    def registration_user_id(self, username: str, supplied: Optional[str] = None) -> str:
        """Pick the user id for a registration ceremony.

        Precedence is existing identity, then supplied id, then a fresh mint.
        This deliberately inverts the "supplied id first" order: a user id is
        the WebAuthn user handle and is never reassigned, so an existing
        identity keeps its id (the add-a-second-passkey case) even when the
        caller supplied a different one.

        A supplied id is honoured only for a new username and only while no
        other identity holds it. Two identities sharing a handle would let an
        authenticator replace one user's discoverable passkey with the
        other's, so a colliding id is ignored and a fresh one minted before
        any challenge is parked.
        """
        existing = self._credentials.get_user_by_username(username)
        if existing is not None:
            if supplied and supplied != existing.user_id:
                logger.warning("Ignoring supplied user id for existing username %s", username)
            return existing.user_id
        if supplied:
            holder = self._credentials.get_user_by_user_id(supplied)
            if holder is None:
                return supplied
            logger.warning("Supplied user id for %s already belongs to %s; minting a new one", username, holder.username)
        return mint_user_id()

    def existing_credentials(self, username: str) -> list[Credential]:
        """Credentials registered under username; empty for an unknown username."""
        identity = self._credentials.get_user_by_username(username)
        return list(identity.credentials) if identity is not None else []

    def resolve_credential_owner(self, credential_id: str) -> tuple[UserIdentity, Credential]:
        """Return (identity, credential) for a credential ID from a ceremony response.

        Raises UserNotFound when no identity owns the ID (including IDs that
        were never registered), CredentialNotFound when the cross-user index
        and the identity's own list disagree.
        """
        identity = self._credentials.get_user_by_credential_id(credential_id)
        if identity is None:
            raise UserNotFound()
        credential = identity.find_credential(credential_id)
        if credential is None:
            logger.error("Credential index points %s at %s but the credential is missing", credential_id, identity.username)
            raise CredentialNotFound()
        return identity, credential
