"""
Google OAuth2 connectors.

One connector per stored grant: ``sheets`` (spreadsheets + drive.file, also
used for Drive uploads) and ``calendar``.  Both share Google's token
endpoint; they only differ in scopes and slug.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.base import BaseConnector
from core.exceptions import CredentialRevoked, ProviderRejected, ProviderTransient

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_TOKEN_TIMEOUT = httpx.Timeout(10.0)

# OAuth error codes meaning the user's grant is gone and needs re-consent.
REVOKING_ERRORS = frozenset({"invalid_grant", "unauthorized_client"})


class GoogleOAuthConnector(BaseConnector):
    """Shared Google OAuth2 web flow; subclasses pick the scopes."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=_TOKEN_TIMEOUT)

    def is_configured(self) -> bool:
        return bool(config.google_client_id and config.google_client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/{self.provider_name}/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": config.google_client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def handle_callback(self, code: str) -> Dict[str, Any]:
        """Exchange auth code for tokens and look up the account email."""
        async with self._client() as client:
            token_resp = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": config.google_client_id,
                    "client_secret": config.google_client_secret,
                    "redirect_uri": self._redirect_uri(),
                    "grant_type": "authorization_code",
                },
            )
            token_resp.raise_for_status()
            token_data = token_resp.json()

            headers = {"Authorization": f"Bearer {token_data['access_token']}"}
            user_resp = await client.get(GOOGLE_USERINFO_URL, headers=headers)
            user_resp.raise_for_status()
            user_info = user_resp.json()

        return {
            "access_token": token_data["access_token"],
            "refresh_token": token_data.get("refresh_token"),
            "expires_in": token_data.get("expires_in", 3600),
            "account_label": user_info.get("email", ""),
        }

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """Use refresh token to get a new access token."""
        try:
            async with self._client() as client:
                resp = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": config.google_client_id,
                        "client_secret": config.google_client_secret,
                        "refresh_token": refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
        except httpx.TransportError as exc:
            # Covers timeouts and connection errors.
            raise ProviderTransient(f"Token endpoint unreachable: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise ProviderTransient(
                f"Token endpoint returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            error, message = _oauth_error(resp)
            if error in REVOKING_ERRORS:
                raise CredentialRevoked(f"Refresh rejected: {message}", status_code=resp.status_code)
            # invalid_client, invalid_request, ...: operator-side config, the grant itself is intact
            raise ProviderRejected(f"Token refresh failed: {message}", status_code=resp.status_code)

        data = resp.json()
        return {
            "access_token": data["access_token"],
            "expires_in": data.get("expires_in", 3600),
            "refresh_token": data.get("refresh_token"),
        }

    async def revoke_token(self, token: str) -> bool:
        """Revoke the token at Google."""
        try:
            async with self._client() as client:
                resp = await client.post(GOOGLE_REVOKE_URL, params={"token": token})
                return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False


class GoogleSheetsConnector(GoogleOAuthConnector):
    """Spreadsheet mirror + Drive uploads share this grant."""

    @property
    def provider_name(self) -> str:
        return "sheets"

    @property
    def display_name(self) -> str:
        return "Google Sheets & Drive"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive.file",
            "https://www.googleapis.com/auth/userinfo.email",
        ]


class GoogleCalendarConnector(GoogleOAuthConnector):
    @property
    def provider_name(self) -> str:
        return "calendar"

    @property
    def display_name(self) -> str:
        return "Google Calendar"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/calendar.events",
            "https://www.googleapis.com/auth/userinfo.email",
        ]


def _oauth_error(resp: httpx.Response) -> Tuple[str, str]:
    """Return the OAuth ``error`` code and a readable message for an error body."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return "", f"HTTP {resp.status_code}"
    error = str(body.get("error") or "")
    description = body.get("error_description")
    label = error or f"HTTP {resp.status_code}"
    return error, f"{label} ({description})" if description else label
