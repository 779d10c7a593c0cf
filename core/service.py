"""
core/service.py -- PasskeyService: the four ceremony operations.

The service is stateless per call. Everything durable lives in the injected
store; everything cryptographic lives in the injected verifier. Several
instances over the same store are safe.

Each operation validates before it mutates, one step at a time:
  1. consume the challenge (the single-use enforcement point)
  2. resolve identity / ask the verifier
  3. only then write credentials or counters
A failure at any step leaves nothing to roll back.

Usage:
    service = PasskeyService.from_settings(get_settings(), store)
    options = service.generate_registration_options("alice@example.com", "Alice")
    # ... browser runs navigator.credentials.create(options) ...
    result = service.verify_registration("alice@example.com", credential)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from core.errors import ChallengeNotFoundOrExpired, UserNotFound, VerificationFailed
from core.identity import ChallengeKey, IdentityResolver, user_handle
from core.models import (
    AuthenticationResult,
    CeremonyResponse,
    Challenge,
    Credential,
    RegistrationResult,
    UserIdentity,
    utcnow,
)
from core.verifier import Verifier, WebAuthnVerifier

if TYPE_CHECKING:
    from core.config import Settings
    from store.base import PasskeyStorage

logger = logging.getLogger("passkeykit.service")

DEFAULT_CHALLENGE_TTL = timedelta(minutes=5)


def _reported_transports(response: CeremonyResponse) -> Optional[list[str]]:
    """Transport hints the browser attached to a registration response, if any."""
    inner = response.get("response")
    if not isinstance(inner, dict):
        return None
    transports = inner.get("transports")
    if not isinstance(transports, list):
        return None
    return [str(t) for t in transports]


class PasskeyService:
    def __init__(
        self,
        store: PasskeyStorage,
        *,
        rp_name: str,
        rp_id: str,
        origin: str,
        verifier: Optional[Verifier] = None,
        challenge_ttl: timedelta = DEFAULT_CHALLENGE_TTL,
        timeout_ms: int = 60000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rp_name = rp_name or "Passkey Demo"
        self.rp_id = rp_id
        self.origin = origin
        self.verifier: Verifier = verifier or WebAuthnVerifier()
        self.challenge_ttl = challenge_ttl
        self.timeout_ms = timeout_ms
        self._clock = clock
        self._identities = IdentityResolver(store)

    @classmethod
    def from_settings(
        cls, settings: Settings, store: PasskeyStorage, verifier: Optional[Verifier] = None
    ) -> "PasskeyService":
        return cls(
            store,
            rp_name=settings.rp_name,
            rp_id=settings.rp_id,
            origin=settings.origin,
            verifier=verifier,
            challenge_ttl=timedelta(seconds=settings.challenge_ttl_seconds),
            timeout_ms=settings.ceremony_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def generate_registration_options(
        self, username: str, display_name: str, user_id: Optional[str] = None
    ) -> dict[str, Any]:
        """Build creation options for a new passkey and park the challenge under username.

        Existing credentials for the username go into the exclusion list so the
        same authenticator is not registered twice.
        """
        user_id_to_use = self._identities.registration_user_id(username, user_id)
        exclude = self._identities.existing_credentials(username)

        options = self.verifier.registration_options(
            rp_name=self.rp_name,
            rp_id=self.rp_id,
            user_handle=user_handle(user_id_to_use),
            username=username,
            display_name=display_name,
            exclude=exclude,
            timeout_ms=self.timeout_ms,
        )
        self._park_challenge(
            ChallengeKey.for_username(username),
            options["challenge"],
            user_id=user_id_to_use,
            display_name=display_name,
        )
        logger.info("Issued registration options for %s (%d excluded)", username, len(exclude))
        return options

    def verify_registration(self, username: str, response: CeremonyResponse) -> RegistrationResult:
        """Check a registration response and store the new credential.

        The user id comes from the consumed challenge, never a fresh mint, so
        options and verification agree for one ceremony. When the username
        already has an identity the credential is appended and that identity's
        id is returned.
        """
        challenge = self._consume_challenge(ChallengeKey.for_username(username))

        verification = self.verifier.verify_registration(
            response=response,
            expected_challenge=challenge.challenge,
            expected_origin=self.origin,
            expected_rp_id=self.rp_id,
        )
        if not verification.verified or not verification.credential_id or not verification.public_key:
            logger.warning("Registration verification failed for %s: %s", username, verification.reason)
            raise VerificationFailed("Registration verification failed")

        now = self._clock()
        credential = Credential(
            id=verification.credential_id,
            public_key=verification.public_key,
            counter=verification.counter,
            transports=_reported_transports(response),
            created_at=now,
        )

        existing = self.store.get_user_by_username(username)
        if existing is not None:
            self.store.add_credential(username, credential)
            user_id = existing.user_id
        else:
            self.store.save_user(
                UserIdentity(
                    user_id=challenge.user_id,
                    username=username,
                    display_name=challenge.display_name or username,
                    credentials=[credential],
                    created_at=now,
                    updated_at=now,
                )
            )
            user_id = challenge.user_id

        logger.info("Registered credential %s for %s", credential.id, username)
        return RegistrationResult(verified=True, user_id=user_id, credential_id=credential.id)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def generate_authentication_options(self, username: Optional[str] = None) -> dict[str, Any]:
        """Build request options and park the challenge.

        With a username the options carry an allow-list (empty when the
        username is unknown, so unknown and credential-less users look alike).
        Without one the allow-list is omitted entirely and the challenge goes
        under the anonymous key: a discoverable ceremony.
        """
        key = ChallengeKey.for_username(username)
        allow = None if key.is_anonymous else self._identities.existing_credentials(key.value)

        options = self.verifier.authentication_options(rp_id=self.rp_id, allow=allow, timeout_ms=self.timeout_ms)
        self._park_challenge(key, options["challenge"], user_id="")
        logger.info("Issued authentication options under key %s", key)
        return options

    def verify_authentication(
        self, username: Optional[str], response: CeremonyResponse
    ) -> AuthenticationResult:
        """Check an assertion and advance the credential's counter.

        The challenge is consumed under the key derived from the caller's
        username input, exactly as at issuance. The identity is resolved from
        the credential ID in the response, and its real username is returned.
        When a username was given, the credential must belong to it.
        """
        key = ChallengeKey.for_username(username)
        challenge = self._consume_challenge(key)

        identity, credential = self._identities.resolve_credential_owner(str(response.get("id", "")))
        if not key.is_anonymous and identity.username != key.value:
            logger.warning("Credential %s is not registered to %s", credential.id, key.value)
            raise UserNotFound()

        verification = self.verifier.verify_authentication(
            response=response,
            expected_challenge=challenge.challenge,
            expected_origin=self.origin,
            expected_rp_id=self.rp_id,
            credential=credential,
        )
        if not verification.verified:
            logger.warning("Authentication verification failed for %s: %s", identity.username, verification.reason)
            raise VerificationFailed("Authentication verification failed")

        self.store.update_credential_counter(credential.id, verification.new_counter)
        logger.info("Authenticated %s with credential %s", identity.username, credential.id)
        return AuthenticationResult(verified=True, user_id=identity.user_id, username=identity.username)

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def _park_challenge(self, key: ChallengeKey, value: str, *, user_id: str, display_name: str = "") -> None:
        now = self._clock()
        self.store.save_challenge(
            Challenge(
                challenge=value,
                user_id=user_id,
                username=key.value,
                display_name=display_name,
                created_at=now,
                expires_at=now + self.challenge_ttl,
            )
        )

    def _consume_challenge(self, key: ChallengeKey) -> Challenge:
        challenge = self.store.get_and_delete_challenge(key.value)
        if challenge is None:
            logger.info("No pending challenge under key %s", key)
            raise ChallengeNotFoundOrExpired()
        return challenge
