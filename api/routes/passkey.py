"""
api/routes/passkey.py -- The four passkey ceremony endpoints.

Routes (mounted under /api/passkey):
  POST /register/options      -- creation options for navigator.credentials.create()
  POST /register/verify       -- verify attestation, store credential
  POST /authenticate/options  -- request options for navigator.credentials.get()
  POST /authenticate/verify   -- verify assertion, advance signature counter

Any other method on these paths is answered 405 by the router. Bodies are
validated by the request models before the service runs; a missing field is a
400. Service failures (PasskeyError) are turned into 500 responses carrying
the failure message by the handler in api/main.py.

Handlers are plain `def`: the service and stores are synchronous, so FastAPI
runs them in its threadpool and the event loop never blocks on store I/O.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Request

from api.models import (
    AuthenticationOptionsRequest,
    AuthenticationVerifyRequest,
    AuthenticationVerifyResponse,
    RegistrationOptionsRequest,
    RegistrationVerifyRequest,
    RegistrationVerifyResponse,
)
from core.service import PasskeyService

router = APIRouter()


def _service(request: Request) -> PasskeyService:
    return request.app.state.passkey_service


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/register/options")
def registration_options(request: Request, body: RegistrationOptionsRequest) -> dict[str, Any]:
    """Return WebAuthn creation options; the challenge is parked under body.username."""
    return _service(request).generate_registration_options(body.username, body.display_name, body.user_id)


@router.post("/register/verify", response_model=RegistrationVerifyResponse)
def registration_verify(request: Request, body: RegistrationVerifyRequest) -> RegistrationVerifyResponse:
    result = _service(request).verify_registration(body.username, body.credential)
    return RegistrationVerifyResponse.from_result(result)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@router.post("/authenticate/options")
def authentication_options(
    request: Request, body: Optional[AuthenticationOptionsRequest] = None
) -> dict[str, Any]:
    """Return WebAuthn request options.

    An absent body, absent username, or empty username all mean discoverable
    authentication: no allow-list, challenge parked under the anonymous key.
    """
    username = body.username if body is not None else None
    return _service(request).generate_authentication_options(username)


@router.post("/authenticate/verify", response_model=AuthenticationVerifyResponse)
def authentication_verify(request: Request, body: AuthenticationVerifyRequest) -> AuthenticationVerifyResponse:
    result = _service(request).verify_authentication(body.username, body.credential)
    return AuthenticationVerifyResponse.from_result(result)
