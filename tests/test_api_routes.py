"""
tests/test_api_routes.py -- Integration tests for the /api/passkey routes.

These tests exercise the full stack: FastAPI routing -> request model
validation -> PasskeyService -> MemoryPasskeyStore -> response model
serialization and the ErrorResponse envelope.

Coverage:
  - 405 for non-POST methods on every ceremony path
  - 400 for missing or invalid bodies (the service never runs)
  - Registration and authentication happy paths, camelCase field names
  - Ceremony failures as 500 with the failure message and code
  - Unexpected exceptions as 500 with a generic message

Fixtures used (from conftest.py):
  - api_client: (client, store) -- TestClient with a FakeVerifier-backed service
"""

from __future__ import annotations

import pytest
from conftest import assertion_response, registration_response
from fastapi.testclient import TestClient

from api.main import app

CEREMONY_PATHS = [
    "/api/passkey/register/options",
    "/api/passkey/register/verify",
    "/api/passkey/authenticate/options",
    "/api/passkey/authenticate/verify",
]


def _register(client: TestClient, username: str, credential_id: str, display_name: str = "Alice") -> dict:
    options = client.post(
        "/api/passkey/register/options", json={"username": username, "displayName": display_name}
    ).json()
    resp = client.post(
        "/api/passkey/register/verify",
        json={"username": username, "credential": registration_response(credential_id, options["challenge"])},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestMethodNotAllowed:
    @pytest.mark.parametrize("path", CEREMONY_PATHS)
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    def test_non_post_is_405(self, api_client, path: str, method: str) -> None:
        client, _ = api_client
        resp = client.request(method, path)
        assert resp.status_code == 405
        assert resp.json()["error"]["code"] == "method_not_allowed"
        assert "POST" in resp.headers["allow"]


class TestBadRequest:
    def test_missing_body(self, api_client) -> None:
        client, store = api_client
        resp = client.post("/api/passkey/register/options")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "bad_request"
        assert store.get_and_delete_challenge("") is None

    def test_missing_display_name(self, api_client) -> None:
        client, store = api_client
        resp = client.post("/api/passkey/register/options", json={"username": "alice"})
        assert resp.status_code == 400
        assert store.get_and_delete_challenge("alice") is None

    def test_empty_username(self, api_client) -> None:
        client, _ = api_client
        resp = client.post("/api/passkey/register/options", json={"username": "", "displayName": "A"})
        assert resp.status_code == 400

    def test_verify_without_credential(self, api_client) -> None:
        client, _ = api_client
        resp = client.post("/api/passkey/register/verify", json={"username": "alice"})
        assert resp.status_code == 400

    def test_authenticate_verify_without_credential(self, api_client) -> None:
        client, _ = api_client
        resp = client.post("/api/passkey/authenticate/verify", json={})
        assert resp.status_code == 400

    def test_malformed_json(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(
            "/api/passkey/register/verify",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400


class TestRegistrationRoutes:
    def test_options_shape(self, api_client) -> None:
        client, store = api_client
        resp = client.post("/api/passkey/register/options", json={"username": "alice", "displayName": "Alice"})
        assert resp.status_code == 200
        options = resp.json()
        assert options["user"]["name"] == "alice"
        assert options["user"]["displayName"] == "Alice"
        assert options["excludeCredentials"] == []
        assert store.get_and_delete_challenge("alice").challenge == options["challenge"]

    def test_register_round_trip(self, api_client) -> None:
        client, store = api_client
        options = client.post(
            "/api/passkey/register/options", json={"username": "alice", "displayName": "Alice"}
        ).json()
        resp = client.post(
            "/api/passkey/register/verify",
            json={"username": "alice", "credential": registration_response("cred-1", options["challenge"])},
        )
        assert resp.status_code == 200
        assert resp.json() == {"verified": True, "userId": options["user"]["id"], "credentialId": "cred-1"}
        assert store.get_user_by_username("alice").display_name == "Alice"

    def test_supplied_user_id(self, api_client) -> None:
        client, _ = api_client
        options = client.post(
            "/api/passkey/register/options",
            json={"username": "carol", "displayName": "Carol", "userId": "custom-id"},
        ).json()
        resp = client.post(
            "/api/passkey/register/verify",
            json={"username": "carol", "credential": registration_response("cred-c", options["challenge"])},
        )
        assert resp.json()["userId"] == "custom-id"

    def test_verify_without_options_is_500_with_message(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(
            "/api/passkey/register/verify",
            json={"username": "alice", "credential": registration_response("cred-1", "abc")},
        )
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "challenge_not_found"
        assert error["message"] == "Challenge not found or expired"

    def test_rejected_response_is_500(self, api_client) -> None:
        client, store = api_client
        client.post("/api/passkey/register/options", json={"username": "alice", "displayName": "Alice"})
        resp = client.post(
            "/api/passkey/register/verify",
            json={"username": "alice", "credential": registration_response("cred-1", "forged")},
        )
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "verification_failed"
        assert store.get_user_by_username("alice") is None


class TestAuthenticationRoutes:
    def test_username_flow(self, api_client) -> None:
        client, store = api_client
        registered = _register(client, "alice", "cred-1")

        options = client.post("/api/passkey/authenticate/options", json={"username": "alice"}).json()
        assert [c["id"] for c in options["allowCredentials"]] == ["cred-1"]

        resp = client.post(
            "/api/passkey/authenticate/verify",
            json={"username": "alice", "credential": assertion_response("cred-1", options["challenge"], 1)},
        )
        assert resp.status_code == 200
        assert resp.json() == {"verified": True, "userId": registered["userId"], "username": "alice"}
        assert store.get_user_by_credential_id("cred-1").credentials[0].counter == 1

    @pytest.mark.parametrize("options_kwargs", [{}, {"json": {}}, {"json": {"username": ""}}])
    def test_discoverable_flow(self, api_client, options_kwargs) -> None:
        """No body, an empty body and an empty username all start a discoverable ceremony."""
        client, _ = api_client
        registered = _register(client, "bob", "cred-b", display_name="Bob")

        resp = client.post("/api/passkey/authenticate/options", **options_kwargs)
        assert resp.status_code == 200
        options = resp.json()
        assert "allowCredentials" not in options

        resp = client.post(
            "/api/passkey/authenticate/verify",
            json={"credential": assertion_response("cred-b", options["challenge"], 1)},
        )
        assert resp.status_code == 200
        assert resp.json()["userId"] == registered["userId"]
        assert resp.json()["username"] == "bob"

    def test_unknown_username_gets_empty_allow_list(self, api_client) -> None:
        client, _ = api_client
        options = client.post("/api/passkey/authenticate/options", json={"username": "ghost"}).json()
        assert options["allowCredentials"] == []

    def test_unknown_credential_is_user_not_found(self, api_client) -> None:
        client, _ = api_client
        options = client.post("/api/passkey/authenticate/options", json={}).json()
        resp = client.post(
            "/api/passkey/authenticate/verify",
            json={"credential": assertion_response("cred-nope", options["challenge"], 1)},
        )
        assert resp.status_code == 500
        assert resp.json()["error"] == {"code": "user_not_found", "message": "User not found", "detail": None}

    def test_counter_regression_rejected(self, api_client) -> None:
        client, _ = api_client
        _register(client, "alice", "cred-1")
        for counter, expected in ((5, 200), (9, 200), (3, 500)):
            options = client.post("/api/passkey/authenticate/options", json={"username": "alice"}).json()
            resp = client.post(
                "/api/passkey/authenticate/verify",
                json={"username": "alice", "credential": assertion_response("cred-1", options["challenge"], counter)},
            )
            assert resp.status_code == expected


class TestUnexpectedErrors:
    def test_unhandled_exception_hides_details(self, api_client, monkeypatch) -> None:
        client, _ = api_client
        service = app.state.passkey_service

        def explode(*args, **kwargs):
            raise RuntimeError("secret internals")

        monkeypatch.setattr(service, "generate_authentication_options", explode)
        quiet = TestClient(app, raise_server_exceptions=False)
        resp = quiet.post("/api/passkey/authenticate/options", json={})
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "internal_error"
        assert "secret" not in resp.text
