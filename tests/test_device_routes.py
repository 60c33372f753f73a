"""
tests/test_device_routes.py -- Integration tests for the device authorization endpoints.

Drives the flow the way the CLI and a browser would: JSON for
/auth/device/code and /auth/device/token, a session-authenticated form post
for /auth/device/confirm.

Coverage:
  - Issue a code, poll pending (428), confirm in the browser, poll approved (200, repeatable)
  - Poll errors: missing code, unknown code, expired code
  - Confirmation page requires a session and pre-fills ?code=
  - Confirmation form messages: invalid, already used
  - Confirmation requires a same-origin proof
  - Device code issuance is rate limited
  - A failing inline cleanup does not change the poll answer
"""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from auth.models import DeviceAuthorization
from auth.store import to_iso, utcnow
from conftest import ORIGIN, make_user, sign_in
from core.config import get_settings


def _issue(client: TestClient) -> dict:
    resp = client.post("/auth/device/code")
    assert resp.status_code == 200
    return resp.json()


def _poll(client: TestClient, device_code: str):
    return client.post("/auth/device/token", json={"device_code": device_code})


class TestDeviceFlowEndToEnd:
    def test_issue_returns_codes(self, client: TestClient) -> None:
        data = _issue(client)
        assert set(data) == {"device_code", "user_code", "expires_in", "interval", "verification_url"}
        assert data["expires_in"] == 600
        assert data["interval"] == 5
        assert data["verification_url"].endswith("/auth/device")

    def test_full_flow(self, client: TestClient, user_store) -> None:
        """request -> pending -> confirm (lowercase, no hyphen) -> approved, twice."""
        user = make_user(user_store, api_token="e" * 64)
        grant = _issue(client)

        pending = _poll(client, grant["device_code"])
        assert pending.status_code == 428
        assert pending.json() == {"status": "pending"}

        sign_in(client)
        typed = grant["user_code"].lower().replace("-", "")
        resp = client.post("/auth/device/confirm", data={"user_code": typed}, headers=ORIGIN)
        assert resp.status_code == 200
        assert "Device linked" in resp.text

        for _ in range(2):
            approved = _poll(client, grant["device_code"])
            assert approved.status_code == 200
            assert approved.json() == {"status": "approved", "token": user.api_token}

    def test_confirm_twice_reports_already_used(self, client: TestClient, user_store) -> None:
        make_user(user_store)
        grant = _issue(client)
        sign_in(client)
        client.post("/auth/device/confirm", data={"user_code": grant["user_code"]}, headers=ORIGIN)
        resp = client.post("/auth/device/confirm", data={"user_code": grant["user_code"]}, headers=ORIGIN)
        assert "Code already used" in resp.text

    def test_confirm_gives_tokenless_user_a_token(self, client: TestClient, user_store) -> None:
        user = make_user(user_store)
        grant = _issue(client)
        sign_in(client)
        client.post("/auth/device/confirm", data={"user_code": grant["user_code"]}, headers=ORIGIN)
        token = _poll(client, grant["device_code"]).json()["token"]
        assert token == user_store.get_by_id(user.id).api_token


class TestPollErrors:
    def test_missing_device_code(self, client: TestClient) -> None:
        resp = client.post("/auth/device/token", json={})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_malformed_body(self, client: TestClient) -> None:
        resp = client.post("/auth/device/token", content=b"not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_request"

    def test_unknown_device_code(self, client: TestClient) -> None:
        resp = _poll(client, "never-issued")
        assert resp.status_code == 400
        assert resp.json()["error"] == "invalid_device_code"

    def test_expired_device_code(self, client: TestClient, user_store) -> None:
        user_store.create_device_authorization(
            DeviceAuthorization(
                device_code="stale",
                user_code="STAL-EEEE",
                expires_at=to_iso(utcnow() - timedelta(minutes=1)),
                api_token="e" * 64,
            )
        )
        resp = _poll(client, "stale")
        assert resp.status_code == 400
        assert resp.json()["error"] == "expired_token"


class TestConfirmationPage:
    def test_requires_session(self, client: TestClient) -> None:
        resp = client.get("/auth/device?code=AB12CD34")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["next"] == ["/auth/device?code=AB12CD34"]

    def test_prefills_normalized_code(self, client: TestClient, user_store) -> None:
        make_user(user_store)
        sign_in(client)
        resp = client.get("/auth/device?code=ab12cd34")
        assert resp.status_code == 200
        assert 'value="AB12-CD34"' in resp.text

    def test_confirm_without_session_redirects(self, client: TestClient) -> None:
        """The login redirect cannot replay a POST, so it returns to / instead."""
        resp = client.post("/auth/device/confirm", data={"user_code": "AB12-CD34"}, headers=ORIGIN)
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/login"
        assert parse_qs(location.query)["next"] == ["/"]

    def test_confirm_unknown_code(self, client: TestClient, user_store) -> None:
        make_user(user_store)
        sign_in(client)
        resp = client.post("/auth/device/confirm", data={"user_code": "ZZZZ-ZZZZ"}, headers=ORIGIN)
        assert resp.status_code == 200
        assert "Invalid code" in resp.text

    def test_confirm_empty_code(self, client: TestClient, user_store) -> None:
        make_user(user_store)
        sign_in(client)
        resp = client.post("/auth/device/confirm", data={"user_code": ""}, headers=ORIGIN)
        assert "User code is required" in resp.text

    def test_confirm_expired_code(self, client: TestClient, user_store) -> None:
        make_user(user_store)
        user_store.create_device_authorization(
            DeviceAuthorization(
                device_code="stale", user_code="STAL-EEEE", expires_at=to_iso(utcnow() - timedelta(seconds=1))
            )
        )
        sign_in(client)
        resp = client.post("/auth/device/confirm", data={"user_code": "STAL-EEEE"}, headers=ORIGIN)
        assert "Code expired" in resp.text

    def test_confirm_cross_site_rejected(self, client: TestClient, user_store) -> None:
        """A form auto-submitted from another site must not approve anything."""
        make_user(user_store, api_token="e" * 64)
        grant = _issue(client)
        sign_in(client)
        resp = client.post(
            "/auth/device/confirm",
            data={"user_code": grant["user_code"]},
            headers={"Origin": "https://evil.example"},
        )
        assert resp.status_code == 403
        assert _poll(client, grant["device_code"]).status_code == 428


def test_device_code_rate_limited(client: TestClient) -> None:
    """Default limit is 10/minute per client: the 11th request in the window gets 429."""
    statuses = [client.post("/auth/device/code").status_code for _ in range(11)]
    assert statuses[:10] == [200] * 10
    assert statuses[10] == 429


def test_rate_limited_response_has_retry_after(client: TestClient) -> None:
    for _ in range(10):
        client.post("/auth/device/code")
    resp = client.post("/auth/device/code")
    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limited"
    assert int(resp.headers["Retry-After"]) >= 1


def test_failed_inline_cleanup_keeps_poll_answer(client: TestClient, user_store, monkeypatch) -> None:
    """A sweep that hits a locked database is logged; the client still gets its token."""
    make_user(user_store, api_token="e" * 64)
    grant = _issue(client)
    sign_in(client)
    client.post("/auth/device/confirm", data={"user_code": grant["user_code"]}, headers=ORIGIN)

    def locked(cutoff):
        raise OperationalError("DELETE", {}, Exception("database is locked"))

    monkeypatch.setattr(get_settings(), "cleanup_probability", 1.0)
    monkeypatch.setattr(user_store, "delete_expired_device_authorizations", locked)

    resp = _poll(client, grant["device_code"])
    assert resp.status_code == 200
    assert resp.json() == {"status": "approved", "token": "e" * 64}
