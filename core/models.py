"""
core/models.py -- Domain dataclasses for passkey identities and ceremonies.

Pattern: Data class (pure data container, almost no logic). Stores and the
service do the work; these own the domain shape.

All binary material (credential IDs, public keys, challenges, user handles)
is carried as unpadded base64url strings. That is the form the browser uses
on the wire, so a credential ID read from a ceremony response can be compared
to a stored one without decoding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# A browser ceremony response (PublicKeyCredential serialized to JSON). Its
# shape is owned by the WebAuthn standard; only the verifier looks inside.
CeremonyResponse = dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credential:
    """One registered authenticator public key.

    id is unique across the whole store, not just per user -- it is the key
    discoverable authentication resolves identities from.
    counter never moves backwards; the store refuses a lower value.
    transports is an advisory hint list ("internal", "hybrid", ...), never validated.
    """

    id: str
    public_key: str
    counter: int = 0
    transports: Optional[list[str]] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserIdentity:
    """One registrant. user_id is assigned once and never reassigned."""

    user_id: str
    username: str
    display_name: str
    credentials: list[Credential] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def find_credential(self, credential_id: str) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None


@dataclass
class Challenge:
    """One pending ceremony.

    username is the store key. An empty string marks a discoverable
    (usernameless) authentication. user_id is blank for authentication
    challenges; nothing reads it during authentication verification.
    """

    challenge: str
    user_id: str
    username: str
    created_at: datetime
    expires_at: datetime
    display_name: str = ""

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())


# ---------------------------------------------------------------------------
# Ceremony results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegistrationResult:
    verified: bool
    user_id: str
    credential_id: str


@dataclass(frozen=True)
class AuthenticationResult:
    verified: bool
    user_id: str
    username: str
