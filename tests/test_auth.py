import json
import os
import sys
import unittest
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from fastapi.testclient import TestClient

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from auth import (
    COOKIE_NAME,
    DEV_TOKEN,
    GOOGLE_AUTH_URL,
    GOOGLE_TOKEN_URL,
    STATE_COOKIE_NAME,
    GoogleOAuthClient,
    OAuthError,
    TokenService,
)
from rest_api import RepTrackAPI
from settings_schema import validate_settings


class FakeResponse:
    def __init__(self, status_code: int, payload: dict) -> None:
        self.status_code = status_code
        self.payload = payload

    @property
    def text(self) -> str:
        return json.dumps(self.payload)

    def json(self) -> dict:
        return self.payload


class FakeGoogleSession:
    """Stands in for ``requests.Session`` against Google's endpoints."""

    def __init__(self, profile: dict, token_status: int = 200) -> None:
        self.profile = profile
        self.token_status = token_status
        self.posted: list[dict] = []

    def post(self, url, data=None, timeout=None):
        self.posted.append({"url": url, **(data or {})})
        if self.token_status != 200:
            return FakeResponse(self.token_status, {"error": "invalid_grant"})
        return FakeResponse(200, {"access_token": "access-123"})

    def get(self, url, headers=None, timeout=None):
        if headers != {"Authorization": "Bearer access-123"}:
            return FakeResponse(401, {})
        return FakeResponse(200, self.profile)


PROFILE = {
    "id": "google-42",
    "email": "jane@example.com",
    "name": "Jane",
    "picture": "https://example.com/jane.png",
}


def test_token_roundtrip():
    tokens = TokenService("secret")
    token = tokens.issue({"id": 3, "email": "a@example.com", "role": "user"})
    claims = tokens.verify(token)
    assert claims["userId"] == 3
    assert claims["email"] == "a@example.com"
    assert claims["exp"] - claims["iat"] == 7 * 24 * 3600
    assert tokens.max_age == 7 * 24 * 3600


def test_token_rejects_expired_and_foreign_tokens():
    expired = TokenService("secret", ttl_days=-1).issue({"id": 1, "email": "a@b.c"})
    with pytest.raises(jwt.ExpiredSignatureError):
        TokenService("secret").verify(expired)
    foreign = TokenService("other").issue({"id": 1, "email": "a@b.c"})
    with pytest.raises(jwt.InvalidTokenError):
        TokenService("secret").verify(foreign)


def test_authorization_url_contains_state():
    client = GoogleOAuthClient("cid", "csecret", "http://app/api/auth/callback")
    url = urlparse(client.authorization_url("xyz"))
    params = parse_qs(url.query)
    assert url.geturl().startswith(GOOGLE_AUTH_URL)
    assert params["client_id"] == ["cid"]
    assert params["state"] == ["xyz"]
    assert params["redirect_uri"] == ["http://app/api/auth/callback"]


def test_authenticate_requires_profile_fields():
    session = FakeGoogleSession({"id": "1"})
    client = GoogleOAuthClient("cid", "csecret", "http://app/cb", session=session)
    with pytest.raises(OAuthError):
        client.authenticate("code")
    assert session.posted[0]["url"] == GOOGLE_TOKEN_URL
    assert session.posted[0]["grant_type"] == "authorization_code"


class AuthEndpointsTest(unittest.TestCase):
    def setUp(self) -> None:
        self.db_path = "test_auth.db"
        if os.path.exists(self.db_path):
            os.remove(self.db_path)
        self.session = FakeGoogleSession(dict(PROFILE))
        self.api = self._make_api("development")
        self.client = TestClient(self.api.app)

    def tearDown(self) -> None:
        if os.path.exists(self.db_path):
            os.remove(self.db_path)

    def _make_api(self, environment: str, session=None) -> RepTrackAPI:
        settings = validate_settings(
            {
                "environment": environment,
                "db_path": self.db_path,
                "jwt_secret": "test-secret",
                "google_client_id": "cid",
                "google_client_secret": "csecret",
                "app_url": "http://localhost:3000",
            }
        )
        return RepTrackAPI(settings=settings, oauth_session=session or self.session)

    def _seed_dev_user(self) -> int:
        return self.api.users.create("test@example.com", "Test User", "dev", "dev-user-1")

    def test_me_requires_valid_cookie(self) -> None:
        uid = self._seed_dev_user()
        self.assertEqual(self.client.get("/api/user/me").status_code, 401)

        self.client.cookies.set(COOKIE_NAME, "garbage")
        response = self.client.get("/api/user/me")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["detail"], "Invalid token")

        ghost = self.api.tokens.issue({"id": 999, "email": "ghost@example.com"})
        self.client.cookies.set(COOKIE_NAME, ghost)
        response = self.client.get("/api/user/me")
        self.assertEqual(response.json()["detail"], "User not found")

        token = self.api.tokens.issue(self.api.users.fetch(uid))
        self.client.cookies.set(COOKIE_NAME, token)
        response = self.client.get("/api/user/me")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "id": uid,
                "email": "test@example.com",
                "name": "Test User",
                "avatarUrl": None,
                "role": "user",
            },
        )

    def test_dev_bypass_header(self) -> None:
        headers = {"x-dev-token": DEV_TOKEN}
        self.assertEqual(self.client.get("/api/user/me", headers=headers).status_code, 401)
        self._seed_dev_user()
        response = self.client.get("/api/user/me", headers=headers)
        self.assertEqual(response.json()["email"], "test@example.com")
        response = self.client.get("/api/user/me", headers={"x-dev-token": "nope"})
        self.assertEqual(response.status_code, 401)

    def test_dev_login(self) -> None:
        response = self.client.post("/api/auth/dev")
        self.assertEqual(response.status_code, 404)
        self._seed_dev_user()
        response = self.client.post("/api/auth/dev")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["success"])
        self.assertIn(COOKIE_NAME, response.cookies)
        self.assertIn("HttpOnly", response.headers["set-cookie"])
        me = self.client.get("/api/user/me")
        self.assertEqual(me.json()["email"], "test@example.com")

        response = self.client.post("/api/auth/logout")
        self.assertEqual(response.json(), {"success": True})
        self.assertIn("Max-Age=0", response.headers["set-cookie"])

    def test_production_disables_dev_paths(self) -> None:
        self._seed_dev_user()
        client = TestClient(self._make_api("production").app)
        self.assertEqual(client.post("/api/auth/dev").status_code, 403)
        response = client.get("/api/user/me", headers={"x-dev-token": DEV_TOKEN})
        self.assertEqual(response.status_code, 401)

    def test_google_redirect_sets_state(self) -> None:
        response = self.client.get("/api/auth/google", follow_redirects=False)
        self.assertEqual(response.status_code, 302)
        location = response.headers["location"]
        self.assertTrue(location.startswith(GOOGLE_AUTH_URL))
        state = parse_qs(urlparse(location).query)["state"][0]
        self.assertEqual(response.cookies.get(STATE_COOKIE_NAME), state)

    def test_google_redirect_requires_configuration(self) -> None:
        settings = validate_settings({"db_path": self.db_path})
        client = TestClient(RepTrackAPI(settings=settings).app)
        response = client.get("/api/auth/google", follow_redirects=False)
        self.assertEqual(response.status_code, 500)

    def test_callback_creates_user(self) -> None:
        self.client.cookies.set(STATE_COOKIE_NAME, "xyz")
        response = self.client.get(
            "/api/auth/callback",
            params={"code": "abc", "state": "xyz"},
            follow_redirects=False,
        )
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], "/workout")
        self.assertIn(COOKIE_NAME, response.cookies)
        self.assertEqual(self.session.posted[0]["code"], "abc")

        user = self.api.users.fetch_by_email("jane@example.com")
        self.assertEqual(user["provider"], "google")
        self.assertEqual(user["provider_id"], "google-42")
        self.assertEqual(user["avatar_url"], PROFILE["picture"])
        claims = self.api.tokens.verify(response.cookies[COOKIE_NAME])
        self.assertEqual(claims["userId"], user["id"])

    def test_callback_links_existing_email(self) -> None:
        uid = self.api.users.create("jane@example.com", "Jane", "dev", "dev-2")
        self.client.cookies.set(STATE_COOKIE_NAME, "xyz")
        self.client.get(
            "/api/auth/callback",
            params={"code": "abc", "state": "xyz"},
            follow_redirects=False,
        )
        user = self.api.users.fetch(uid)
        self.assertEqual(user["provider"], "google")
        self.assertEqual(user["provider_id"], "google-42")

    def test_callback_errors_redirect_home(self) -> None:
        def callback(**params):
            return self.client.get(
                "/api/auth/callback", params=params, follow_redirects=False
            ).headers["location"]

        self.assertEqual(callback(error="access_denied"), "/?error=access_denied")
        self.assertEqual(callback(state="xyz"), "/?error=no_code")
        self.client.cookies.set(STATE_COOKIE_NAME, "xyz")
        self.assertEqual(callback(code="abc", state="other"), "/?error=invalid_state")

        failing = FakeGoogleSession(dict(PROFILE), token_status=400)
        client = TestClient(self._make_api("development", failing).app)
        client.cookies.set(STATE_COOKIE_NAME, "xyz")
        response = client.get(
            "/api/auth/callback",
            params={"code": "abc", "state": "xyz"},
            follow_redirects=False,
        )
        self.assertEqual(response.headers["location"], "/?error=auth_failed")
        self.assertIsNone(self.api.users.fetch_by_email("jane@example.com"))


if __name__ == "__main__":
    unittest.main()
