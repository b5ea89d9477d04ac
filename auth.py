import datetime
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import jwt
import requests
from fastapi import Header, HTTPException, Request, Response

from db import UserRepository
from logging_utils import get_logger

logger = get_logger(__name__)

COOKIE_NAME = "token"
STATE_COOKIE_NAME = "oauth_state"
DEV_TOKEN = "dev-bypass"
ALGORITHM = "HS256"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class OAuthError(RuntimeError):
    """Raised when the identity provider rejects a request."""


@dataclass
class RequestContext:
    """Per-request state handed to endpoints once a user is authenticated."""

    user: dict

    @property
    def user_id(self) -> int:
        return int(self.user["id"])


class TokenService:
    """Issue and verify signed session tokens."""

    def __init__(self, secret: str, ttl_days: int = 7) -> None:
        self.secret = secret
        self.ttl = datetime.timedelta(days=ttl_days)

    @property
    def max_age(self) -> int:
        return int(self.ttl.total_seconds())

    def issue(self, user: dict) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload = {
            "userId": user["id"],
            "email": user["email"],
            "role": user.get("role", "user"),
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(payload, self.secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> dict:
        """Return the token claims; raises ``jwt.InvalidTokenError``."""
        return jwt.decode(token, self.secret, algorithms=[ALGORITHM])


def set_auth_cookie(
    response: Response, token: str, max_age: int, secure: bool = False
) -> None:
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=secure,
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(COOKIE_NAME, path="/", httponly=True)


class Authenticator:
    """FastAPI dependency resolving the session cookie to a :class:`RequestContext`.

    Outside production the ``x-dev-token`` header may stand in for a
    cookie and authenticates as the seeded development user.
    """

    def __init__(
        self,
        users: UserRepository,
        tokens: TokenService,
        allow_dev_bypass: bool = False,
        dev_user_email: str = "test@example.com",
    ) -> None:
        self.users = users
        self.tokens = tokens
        self.allow_dev_bypass = allow_dev_bypass
        self.dev_user_email = dev_user_email

    def __call__(
        self,
        request: Request,
        x_dev_token: Optional[str] = Header(default=None),
    ) -> RequestContext:
        if self.allow_dev_bypass and x_dev_token == DEV_TOKEN:
            user = self.users.fetch_by_email(self.dev_user_email)
            if user is not None:
                return RequestContext(user)

        token = request.cookies.get(COOKIE_NAME)
        if not token:
            raise HTTPException(status_code=401, detail="Unauthorized")
        try:
            claims = self.tokens.verify(token)
        except jwt.InvalidTokenError as e:
            logger.warning("Rejected session token: %s", e)
            raise HTTPException(status_code=401, detail="Invalid token")
        user = self.users.fetch(claims.get("userId"))
        if user is None:
            raise HTTPException(status_code=401, detail="User not found")
        return RequestContext(user)


class GoogleOAuthClient:
    """Authorization-code flow against Google's OAuth2 endpoints."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.session = session or requests.Session()

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "email profile",
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> dict:
        resp = self.session.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            timeout=30,
        )
        if resp.status_code != 200:
            raise OAuthError(f"Token exchange failed: {resp.text}")
        return resp.json()

    def fetch_user_info(self, access_token: str) -> dict:
        resp = self.session.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=30,
        )
        if resp.status_code != 200:
            raise OAuthError("Failed to get user info")
        return resp.json()

    def authenticate(self, code: str) -> dict:
        """Exchange ``code`` and return the Google profile."""
        tokens = self.exchange_code(code)
        access_token = tokens.get("access_token")
        if not access_token:
            raise OAuthError("Token response did not include an access token")
        profile = self.fetch_user_info(access_token)
        if not profile.get("id") or not profile.get("email"):
            raise OAuthError("Profile is missing id or email")
        return profile
