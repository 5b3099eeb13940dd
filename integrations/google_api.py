"""
Authorised request plumbing shared by the Google destinations.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import config
from connectors.token_manager import TokenRefresher
from core.exceptions import AuthExpired, ProviderRejected, ProviderTransient
from integrations.retry import RetryResult, retry_transient
from utils.schemas import Credential

logger = logging.getLogger(__name__)

SHEETS_API = "https://sheets.googleapis.com/v4/spreadsheets"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"
DRIVE_API = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_API = "https://www.googleapis.com/upload/drive/v3/files"

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


def raise_for_provider_status(resp: httpx.Response) -> None:
    """Map an HTTP error response onto the delivery error taxonomy."""
    if resp.is_success:
        return
    message = f"HTTP {resp.status_code}: {_google_error_message(resp)}"
    if resp.status_code == 401:
        raise AuthExpired(message, status_code=401)
    if resp.status_code in _RETRYABLE_STATUS or resp.status_code >= 500:
        raise ProviderTransient(message, status_code=resp.status_code)
    raise ProviderRejected(message, status_code=resp.status_code)


def _google_error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or "error"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("message") or error.get("status") or "error"
    return str(error or body.get("message") or resp.reason_phrase)


class AuthorizedSession:
    """
    Issues calls with one credential.  A 401 triggers exactly one forced
    refresh and one replay; a second 401 raises ``AuthExpired``.
    """

    def __init__(self, refresher: TokenRefresher, credential: Credential, client: httpx.AsyncClient):
        self._refresher = refresher
        self.credential = credential
        self._client = client

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {self.credential.access_token}"
        try:
            return await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderTransient(f"{method} {url} failed: {exc!r}") from exc

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        resp = await self._send(method, url, **dict(kwargs))
        if resp.status_code == 401:
            logger.info(
                "Access token rejected for %s/%s; refreshing once",
                self.credential.provider.value,
                self.credential.user_id,
            )
            self.credential = await self._refresher.ensure_fresh(self.credential, force=True)
            resp = await self._send(method, url, **dict(kwargs))
            if resp.status_code == 401:
                raise AuthExpired("Access token rejected after refresh", status_code=401)
        raise_for_provider_status(resp)
        return resp

    async def json(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        resp = await self.request(method, url, **kwargs)
        return resp.json() if resp.content else {}


class GoogleApi:
    """
    Factory for authorised sessions plus the retry policy every Google
    destination uses.

    Parameters
    ----------
    refresher    : hands out fresh credentials
    transport    : optional httpx transport (tests use ``httpx.MockTransport``)
    retry_policy : ``max_attempts`` / ``backoff_base`` / ``backoff_max``
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[Dict[str, Any]] = None,
        request_timeout: float = 15.0,
    ):
        self.refresher = refresher
        self._transport = transport
        self._retry_policy = retry_policy or config.get_retry_policy()
        self._timeout = httpx.Timeout(request_timeout)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    def session(self, credential: Credential, client: httpx.AsyncClient) -> AuthorizedSession:
        return AuthorizedSession(self.refresher, credential, client)

    async def with_retry(self, operation, *, label: str) -> RetryResult:
        return await retry_transient(operation, label=label, **self._retry_policy)
