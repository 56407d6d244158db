"""
Google OAuth 2.0 client: authorization URL, code exchange, refresh and revoke.
"""

import logging
import urllib.parse
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Callable

import requests

from assignment_calendar_sync.models import AuthorizationExpiredError
from assignment_calendar_sync.models import ConfigError
from assignment_calendar_sync.models import TokenRefreshError

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
)

DEFAULT_EXPIRES_IN = 3600

# Token endpoint error codes that mean the grant is gone for good.
_FATAL_GRANT_ERRORS = frozenset({"invalid_grant", "unauthorized_client", "invalid_client"})


@dataclass(frozen=True)
class OAuthTokens:
    access_token: str
    refresh_token: str | None
    expires_at: datetime


class GoogleOAuthClient:
    """Talks to Google's OAuth endpoints; holds no per-user state."""

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str,
        session: requests.Session | None = None,
        timeout: float = 8.0,
        clock: Callable[[], datetime] | None = None,
    ):
        if not client_id or not client_secret:
            raise ConfigError("Google OAuth client id and secret must be configured")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.session = session or requests.Session()
        self.timeout = timeout
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def authorization_url(self, state: str) -> str:
        """URL the user visits to grant offline calendar access.

        ``state`` round-trips through Google and should encode the
        (user, student, role) the callback belongs to.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{AUTH_URL}?{urllib.parse.urlencode(params)}"

    def exchange_code(self, code: str) -> OAuthTokens:
        tokens = self._token_request(
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        if not tokens.refresh_token:
            # Google only returns a refresh token when consent was (re)granted.
            raise AuthorizationExpiredError(
                "Google did not return a refresh token; revoke access and connect again"
            )
        return tokens

    def refresh(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Raises AuthorizationExpiredError when Google rejects the grant and
        TokenRefreshError for failures that may clear up by themselves.
        """
        return self._token_request(
            {
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "refresh_token",
            }
        )

    def fetch_account_email(self, access_token: str) -> str | None:
        try:
            response = self.session.get(
                USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Could not look up connected account e-mail: {e}")
            return None
        if response.status_code != 200:
            logger.warning(f"Account e-mail lookup returned HTTP {response.status_code}")
            return None
        return response.json().get("email")

    def revoke(self, token: str) -> bool:
        """Best-effort revocation at Google; returns False on any failure."""
        try:
            response = self.session.post(
                REVOKE_URL,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Token revocation request failed: {e}")
            return False
        if response.status_code != 200:
            logger.warning(f"Token revocation returned HTTP {response.status_code}")
            return False
        return True

    def _token_request(self, data: dict[str, str]) -> OAuthTokens:
        grant_type = data["grant_type"]
        try:
            response = self.session.post(TOKEN_URL, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise TokenRefreshError(f"Token endpoint unreachable ({grant_type}): {e}") from e

        if response.status_code >= 500:
            raise TokenRefreshError(f"Token endpoint returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise TokenRefreshError(
                f"Token endpoint returned a non-JSON body (HTTP {response.status_code})"
            ) from None

        if response.status_code != 200:
            error = payload.get("error", "unknown_error")
            description = payload.get("error_description", "")
            if error in _FATAL_GRANT_ERRORS or response.status_code in (400, 401):
                raise AuthorizationExpiredError(f"{error}: {description}".rstrip(": "))
            raise TokenRefreshError(f"Token endpoint rejected {grant_type}: {error}")

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("Token endpoint response is missing access_token")
        expires_in = int(payload.get("expires_in", DEFAULT_EXPIRES_IN))
        return OAuthTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=self.clock() + timedelta(seconds=expires_in),
        )
