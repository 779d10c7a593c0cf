"""
core/verifier.py -- The seam between ceremony orchestration and WebAuthn crypto.

PasskeyService never parses attestation objects or checks signatures itself.
It hands the opaque browser response, the expected challenge, origin and RP ID
to a Verifier and gets back verified / not-verified plus the extracted
credential material.

WebAuthnVerifier is the production implementation on top of py_webauthn
(`webauthn` on PyPI). Library exceptions are translated into a not-verified
result carrying the reason, so the service decides how to fail.

Options are returned as plain JSON-ready dicts (options_to_json output), ready
to pass to navigator.credentials.create()/get() unchanged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from core.models import CeremonyResponse, Credential

logger = logging.getLogger("passkeykit.verifier")

# Malformed browser payloads surface from the library as these, besides its
# own WebAuthnException hierarchy (e.g. binascii.Error is a ValueError).
_MALFORMED = (WebAuthnException, ValueError, KeyError, TypeError)


@dataclass(frozen=True)
class RegistrationVerification:
    verified: bool
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    counter: int = 0
    reason: str = ""


@dataclass(frozen=True)
class AuthenticationVerification:
    verified: bool
    new_counter: int = 0
    reason: str = ""


class Verifier(Protocol):
    """What PasskeyService needs from a WebAuthn library."""

    def registration_options(
        self,
        *,
        rp_name: str,
        rp_id: str,
        user_handle: bytes,
        username: str,
        display_name: str,
        exclude: list[Credential],
        timeout_ms: int,
    ) -> dict[str, Any]: ...

    def verify_registration(
        self,
        *,
        response: CeremonyResponse,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification: ...

    def authentication_options(
        self,
        *,
        rp_id: str,
        allow: Optional[list[Credential]],
        timeout_ms: int,
    ) -> dict[str, Any]: ...

    def verify_authentication(
        self,
        *,
        response: CeremonyResponse,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        credential: Credential,
    ) -> AuthenticationVerification: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _transports(values: Optional[list[str]]) -> Optional[list[AuthenticatorTransport]]:
    """Map stored transport hints to library enums, dropping unknown values."""
    if not values:
        return None
    known = []
    for value in values:
        try:
            known.append(AuthenticatorTransport(value))
        except ValueError:
            logger.debug("Dropping unknown transport hint %r", value)
    return known or None


def _descriptor_json(credential: Credential) -> dict[str, Any]:
    """PublicKeyCredentialDescriptor JSON built from the stored base64url id, never decoded."""
    entry: dict[str, Any] = {"id": credential.id, "type": "public-key"}
    transports = _transports(credential.transports)
    if transports:
        entry["transports"] = [t.value for t in transports]
    return entry


# ---------------------------------------------------------------------------
# py_webauthn implementation
# ---------------------------------------------------------------------------


class WebAuthnVerifier:
    """Verifier backed by py_webauthn.

    Registration requires a discoverable (resident) credential so the same
    passkey works for usernameless sign-in later. User verification is
    preferred, attestation is not requested.
    """

    def registration_options(
        self,
        *,
        rp_name: str,
        rp_id: str,
        user_handle: bytes,
        username: str,
        display_name: str,
        exclude: list[Credential],
        timeout_ms: int,
    ) -> dict[str, Any]:
        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=rp_name,
            user_id=user_handle,
            user_name=username,
            user_display_name=display_name,
            timeout=timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            exclude_credentials=[],
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
        )
        payload = json.loads(options_to_json(options))
        # Descriptors are written from the stored ids; a first passkey gets [].
        payload["excludeCredentials"] = [_descriptor_json(c) for c in exclude]
        return payload

    def verify_registration(
        self,
        *,
        response: CeremonyResponse,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
    ) -> RegistrationVerification:
        try:
            verified = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
            )
        except _MALFORMED as exc:
            logger.warning("Registration response rejected: %s", exc)
            return RegistrationVerification(verified=False, reason=str(exc))
        return RegistrationVerification(
            verified=True,
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            counter=verified.sign_count,
        )

    def authentication_options(
        self,
        *,
        rp_id: str,
        allow: Optional[list[Credential]],
        timeout_ms: int,
    ) -> dict[str, Any]:
        options = generate_authentication_options(
            rp_id=rp_id,
            timeout=timeout_ms,
            allow_credentials=None,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        payload = json.loads(options_to_json(options))
        # No allow-list at all is the discoverable-credential signal. A known
        # username with zero credentials still gets an explicit empty list.
        payload.pop("allowCredentials", None)
        if allow is not None:
            payload["allowCredentials"] = [_descriptor_json(c) for c in allow]
        return payload

    def verify_authentication(
        self,
        *,
        response: CeremonyResponse,
        expected_challenge: str,
        expected_origin: str,
        expected_rp_id: str,
        credential: Credential,
    ) -> AuthenticationVerification:
        try:
            verified = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_origin=expected_origin,
                expected_rp_id=expected_rp_id,
                credential_public_key=base64url_to_bytes(credential.public_key),
                credential_current_sign_count=credential.counter,
            )
        except _MALFORMED as exc:
            logger.warning("Authentication response rejected for credential %s: %s", credential.id, exc)
            return AuthenticationVerification(verified=False, reason=str(exc))
        return AuthenticationVerification(verified=True, new_counter=verified.new_sign_count)
