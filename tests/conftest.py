"""
tests/conftest.py -- Shared fixtures and fakes for passkeykit tests.

This module provides:
  - FakeVerifier: stands in for py_webauthn. A ceremony response verifies when
    it echoes the expected challenge and origin, the way clientDataJSON does.
    Counter rules match the real library (a non-increasing non-zero counter is
    rejected).
  - FakeAuthenticator: stands in for the browser/platform authenticator. It
    builds responses FakeVerifier understands.
  - store: parametrized over both store implementations so every contract
    test runs against MemoryPasskeyStore and SQLPasskeyStore.
  - api_client: TestClient over the real app with a patched lifespan that
    wires an isolated in-memory store and a FakeVerifier into app.state.

The DEBUG env var must be set before any core import so get_settings() accepts
the in-memory store instead of raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import secrets
from collections.abc import Generator
from contextlib import asynccontextmanager
from typing import Any, Optional

# CRITICAL: Set DEBUG before any core/store import so the in-memory store is
# allowed and Settings() does not demand a DATABASE_URL.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient
from webauthn.helpers import bytes_to_base64url

from api.main import app
from client.passkey_client import PasskeyClientError
from core.models import Credential
from core.service import PasskeyService
from core.verifier import AuthenticationVerification, RegistrationVerification
from store.memory import MemoryPasskeyStore
from store.sql import SQLPasskeyStore

RP_ID = "localhost"
ORIGIN = "http://localhost:3000"


# ---------------------------------------------------------------------------
# Ceremony response builders
# ---------------------------------------------------------------------------


def registration_response(
    credential_id: str,
    challenge: str,
    *,
    counter: int = 0,
    origin: str = ORIGIN,
    transports: Optional[list[str]] = None,
) -> dict[str, Any]:
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "challenge": challenge,
        "origin": origin,
        "publicKey": f"pk-{credential_id}",
        "counter": counter,
        "response": {"transports": transports if transports is not None else ["internal"]},
    }


def assertion_response(credential_id: str, challenge: str, counter: int, *, origin: str = ORIGIN) -> dict[str, Any]:
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "challenge": challenge,
        "origin": origin,
        "publicKey": f"pk-{credential_id}",
        "counter": counter,
        "response": {},
    }


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeVerifier:
    def registration_options(self, *, rp_name, rp_id, user_handle, username, display_name, exclude, timeout_ms):
        return {
            "challenge": bytes_to_base64url(secrets.token_bytes(32)),
            "rp": {"name": rp_name, "id": rp_id},
            "user": {"id": bytes_to_base64url(user_handle), "name": username, "displayName": display_name},
            "pubKeyCredParams": [{"type": "public-key", "alg": -7}, {"type": "public-key", "alg": -257}],
            "timeout": timeout_ms,
            "excludeCredentials": [{"id": c.id, "type": "public-key"} for c in exclude],
            "authenticatorSelection": {"residentKey": "required", "userVerification": "preferred"},
            "attestation": "none",
        }

    def verify_registration(self, *, response, expected_challenge, expected_origin, expected_rp_id):
        if response.get("challenge") != expected_challenge:
            return RegistrationVerification(verified=False, reason="challenge mismatch")
        if response.get("origin") != expected_origin:
            return RegistrationVerification(verified=False, reason="origin mismatch")
        return RegistrationVerification(
            verified=True,
            credential_id=response["id"],
            public_key=response["publicKey"],
            counter=response.get("counter", 0),
        )

    def authentication_options(self, *, rp_id, allow, timeout_ms):
        options = {
            "challenge": bytes_to_base64url(secrets.token_bytes(32)),
            "rpId": rp_id,
            "timeout": timeout_ms,
            "userVerification": "preferred",
        }
        if allow is not None:
            options["allowCredentials"] = [{"id": c.id, "type": "public-key"} for c in allow]
        return options

    def verify_authentication(self, *, response, expected_challenge, expected_origin, expected_rp_id, credential):
        if response.get("challenge") != expected_challenge:
            return AuthenticationVerification(verified=False, reason="challenge mismatch")
        if response.get("origin") != expected_origin:
            return AuthenticationVerification(verified=False, reason="origin mismatch")
        if response.get("publicKey") != credential.public_key:
            return AuthenticationVerification(verified=False, reason="bad signature")
        new_counter = response["counter"]
        if (new_counter > 0 or credential.counter > 0) and new_counter <= credential.counter:
            return AuthenticationVerification(verified=False, reason="counter regression")
        return AuthenticationVerification(verified=True, new_counter=new_counter)


class FakeAuthenticator:
    """A software authenticator holding any number of discoverable credentials."""

    def __init__(self, origin: str = ORIGIN) -> None:
        self.origin = origin
        self.counters: dict[str, int] = {}
        self.created: list[dict[str, Any]] = []

    def create(self, options: dict[str, Any]) -> dict[str, Any]:
        excluded = {c["id"] for c in options.get("excludeCredentials", [])}
        credential_id = bytes_to_base64url(secrets.token_bytes(16))
        assert credential_id not in excluded
        self.counters[credential_id] = 0
        self.created.append(options)
        return registration_response(credential_id, options["challenge"], origin=self.origin)

    def get(self, options: dict[str, Any]) -> dict[str, Any]:
        allowed = options.get("allowCredentials")
        candidates = [c["id"] for c in allowed] if allowed is not None else list(self.counters)
        usable = [c for c in candidates if c in self.counters]
        if not usable:
            raise PasskeyClientError("No passkey available for this site")
        credential_id = usable[0]
        self.counters[credential_id] += 1
        return assertion_response(credential_id, options["challenge"], self.counters[credential_id], origin=self.origin)


# ---------------------------------------------------------------------------
# Store and service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    """Each test using this fixture runs once per store implementation."""
    if request.param == "memory":
        s = MemoryPasskeyStore()
    else:
        s = SQLPasskeyStore(f"sqlite:///{tmp_path / 'passkeys.db'}")
    yield s
    s.close()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def service(store, verifier) -> PasskeyService:
    return PasskeyService(store, rp_name="Test RP", rp_id=RP_ID, origin=ORIGIN, verifier=verifier)


def make_credential(credential_id: str, counter: int = 0) -> Credential:
    return Credential(id=credential_id, public_key=f"pk-{credential_id}", counter=counter, transports=["internal"])


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: MemoryPasskeyStore, service: PasskeyService):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine (a real asyncio.Task is
    required so shutdown can .cancel() it).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.store = store
        app.state.passkey_service = service
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client() -> Generator[tuple[TestClient, MemoryPasskeyStore], None, None]:
    """Yield (client, store) with a fresh in-memory store per test."""
    store = MemoryPasskeyStore()
    service = PasskeyService(store, rp_name="Test RP", rp_id=RP_ID, origin=ORIGIN, verifier=FakeVerifier())
    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, store

    store.close()
