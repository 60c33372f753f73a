"""
tests/test_csrf.py -- Unit tests for the same-origin check in auth/csrf.py.

The HTTP-level behavior (403 on guarded routes) is covered in
test_auth_routes.py and test_bearer.py; these pin down the decision itself.
"""

from __future__ import annotations

import pytest
from starlette.requests import Request

from auth.csrf import csrf_failure, is_guarded, normalize_origin


def _request(headers: dict[str, str], path: str = "/auth/login") -> Request:
    raw = [(b"host", b"testserver")] + [(k.lower().encode(), v.encode()) for k, v in headers.items()]
    return Request(
        {
            "type": "http",
            "method": "POST",
            "scheme": "https",
            "server": ("testserver", 443),
            "path": path,
            "root_path": "",
            "query_string": b"",
            "headers": raw,
        }
    )


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("https://Example.com", "https://example.com"),
        ("https://example.com:8443/some/path?q=1", "https://example.com:8443"),
        ("null", None),
        ("", None),
        (None, None),
        ("ftp://example.com", None),
    ],
)
def test_normalize_origin(value, expected) -> None:
    assert normalize_origin(value) == expected


@pytest.mark.parametrize(
    ("path", "guarded"),
    [
        ("/auth/login", True),
        ("/auth/device/confirm", True),
        ("/api/users/me", True),
        ("/api/users/me/token/regenerate", True),
        ("/auth/logout", False),
        ("/auth/device/token", False),
        ("/auth/login-help", False),
    ],
)
def test_is_guarded(path: str, guarded: bool) -> None:
    assert is_guarded(path) is guarded


class TestCsrfFailure:
    def test_same_origin_passes(self) -> None:
        assert csrf_failure(_request({"Origin": "https://testserver"})) is None

    def test_trusted_origin_passes(self) -> None:
        req = _request({"Origin": "https://app.example"})
        assert csrf_failure(req, ["https://app.example/"]) is None

    def test_foreign_origin_fails(self) -> None:
        assert csrf_failure(_request({"Origin": "https://evil.example"})) == "origin_mismatch"

    def test_opaque_origin_fails(self) -> None:
        assert csrf_failure(_request({"Origin": "null"})) == "unparseable_origin"

    def test_origin_takes_precedence_over_referer(self) -> None:
        req = _request({"Origin": "https://evil.example", "Referer": "https://testserver/login"})
        assert csrf_failure(req) == "origin_mismatch"

    def test_referer_fallback(self) -> None:
        assert csrf_failure(_request({"Referer": "https://testserver/login"})) is None
        assert csrf_failure(_request({"Referer": "https://evil.example/x"})) == "referer_mismatch"

    def test_no_proof_fails(self) -> None:
        assert csrf_failure(_request({})) == "no_origin"

    def test_scheme_must_match(self) -> None:
        assert csrf_failure(_request({"Origin": "http://testserver"})) == "origin_mismatch"

    def test_bearer_requests_are_exempt(self) -> None:
        req = _request({"Authorization": "Bearer abc", "Origin": "https://evil.example"})
        assert csrf_failure(req) is None
