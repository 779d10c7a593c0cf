"""
client/passkey_client.py -- Drive passkey ceremonies against the HTTP API.

Each ceremony is two round trips with the authenticator in between:

    POST {api_url}/register/options      -> options
    authenticator.create(options)        -> credential
    POST {api_url}/register/verify       -> {verified, userId, credentialId}

    POST {api_url}/authenticate/options  -> options
    authenticator.get(options)           -> credential
    POST {api_url}/authenticate/verify   -> {verified, userId, username}

The authenticator is whatever can run the WebAuthn ceremony on this side: a
browser bridge, a hardware token library, or a software authenticator in
tests. The client never inspects options or credentials.

register() and authenticate() never raise for ceremony or transport failures;
they return a PasskeyResult with success=False and an error message, so a UI
can show the message directly.

The username passed to authenticate() is sent on both legs unchanged. That is
what makes the server consume the same challenge it issued.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import requests

logger = logging.getLogger("passkeykit.client")


class Authenticator(Protocol):
    """The platform ceremony: navigator.credentials.create()/get() equivalent.

    Implementations raise PasskeyClientError when the user cancels or the
    authenticator refuses; the client reports that as a failed result.
    """

    def create(self, options: dict[str, Any]) -> dict[str, Any]: ...

    def get(self, options: dict[str, Any]) -> dict[str, Any]: ...


@dataclass
class PasskeyResult:
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class PasskeyClientError(Exception):
    """One leg of a ceremony failed. Caught inside the client and reported."""


class PasskeyClient:
    """Usage:
    client = PasskeyClient("https://example.com/api/passkey", authenticator)
    result = client.register("alice@example.com", "Alice")
    if result.success:
        user_id = result.data["userId"]

    api_url is the absolute base URL of the passkey routes. A relative URL
    is accepted only together with a session that resolves it against a base
    (e.g. a TestClient).
    """

    def __init__(
        self,
        api_url: str,
        authenticator: Optional[Authenticator] = None,
        session: Any = None,
        timeout: Optional[float] = 10,
    ) -> None:
        if session is None and urlparse(api_url).scheme not in ("http", "https"):
            raise ValueError(f"api_url must be an absolute http(s) URL, got {api_url!r}")
        self.api_url = api_url.rstrip("/")
        self.authenticator = authenticator
        # Anything with a requests-style post(url, json=..., timeout=...) works.
        self._session = session if session is not None else requests.Session()
        self.timeout = timeout

    def is_supported(self) -> bool:
        return self.authenticator is not None

    def register(self, username: str, display_name: str, user_id: Optional[str] = None) -> PasskeyResult:
        if not self.is_supported():
            return PasskeyResult(success=False, error="Passkeys are not supported on this client")
        try:
            options = self._post(
                "/register/options",
                {"username": username, "displayName": display_name, "userId": user_id},
                "Failed to get registration options",
            )
            credential = self.authenticator.create(options)
            result = self._post(
                "/register/verify",
                {"username": username, "credential": credential},
                "Failed to verify registration",
            )
        except (PasskeyClientError, requests.RequestException) as exc:
            logger.warning("Passkey registration for %s failed: %s", username, exc)
            return PasskeyResult(success=False, error=str(exc) or "Registration failed")
        return PasskeyResult(success=True, data=result)

    def authenticate(self, username: Optional[str] = None) -> PasskeyResult:
        if not self.is_supported():
            return PasskeyResult(success=False, error="Passkeys are not supported on this client")
        try:
            options = self._post(
                "/authenticate/options",
                {"username": username},
                "Failed to get authentication options",
            )
            credential = self.authenticator.get(options)
            result = self._post(
                "/authenticate/verify",
                {"username": username, "credential": credential},
                "Failed to verify authentication",
            )
        except (PasskeyClientError, requests.RequestException) as exc:
            logger.warning("Passkey authentication failed: %s", exc)
            return PasskeyResult(success=False, error=str(exc) or "Authentication failed")
        return PasskeyResult(success=True, data=result)

    # ------------------------------------------------------------------

    def _post(self, path: str, body: dict[str, Any], failure: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"json": body}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        resp = self._session.post(f"{self.api_url}{path}", **kwargs)
        if resp.status_code != 200:
            raise PasskeyClientError(_server_message(resp) or failure)
        return resp.json()


def _server_message(resp: Any) -> Optional[str]:
    """Pull error.message out of the server's ErrorResponse envelope, if present."""
    try:
        payload = resp.json()
    except ValueError:
        return None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("message")
    if isinstance(error, str):
        return error
    return None
