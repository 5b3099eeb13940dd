"""
Connector API routes — OAuth connect/callback, list credentials, disconnect.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import hashlib
import hmac
import html
import json
import logging
import time
from base64 import b64decode, b64encode
from typing import Any, Dict

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from api.dependencies import get_credential_store
from auth.dependencies import get_current_user_id
from config.settings import config
from connectors.registry import ConnectorRegistry
from connectors.token_manager import SqlCredentialStore, store_oauth_grant
from utils.schemas import Provider

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])

# ── State token helpers (CSRF protection) ──────────────────────────────

_STATE_TTL = 600  # seconds


def _state_sig(raw: bytes) -> str:
    return hmac.new(config.oauth_state_secret.encode(), raw, hashlib.sha256).hexdigest()[:16]


def _create_state(user_id: str) -> str:
    """Create an opaque state string encoding user_id + expiry."""
    payload = json.dumps({"user_id": user_id, "exp": int(time.time()) + _STATE_TTL})
    raw = payload.encode()
    return b64encode(raw).decode() + "." + _state_sig(raw)


def _verify_state(state: str) -> str:
    """Verify state token, return user_id. Raises on failure."""
    try:
        parts = state.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        if not hmac.compare_digest(parts[1], _state_sig(raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("state expired")
        return payload["user_id"]
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid or expired OAuth state: {exc}",
        )


def _provider_or_404(provider: str):
    connector = ConnectorRegistry().get(provider)
    if connector is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider '{provider}' not found or not configured",
        )
    return connector


# ── Routes ─────────────────────────────────────────────────────────────


@router.get("/providers")
async def list_providers() -> list[dict]:
    """
    List all available connector providers and their configuration status.
    No auth required — used by the dashboard to show available connectors.
    """
    return ConnectorRegistry().list_providers()


@router.get("/credentials")
async def list_credentials(
    user_id: str = Depends(get_current_user_id),
    store: SqlCredentialStore = Depends(get_credential_store),
) -> list[dict]:
    """
    The authenticated user's Google grants, including revoked ones and the
    reason they were revoked (so the owner knows to reconnect).
    """
    return await store.list_for_user(user_id)


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: str,
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should open this URL in a popup window.
    """
    connector = _provider_or_404(provider)
    return {"auth_url": connector.get_auth_url(_create_state(user_id)), "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str = Query(...),
    state: str = Query(...),
    store: SqlCredentialStore = Depends(get_credential_store),
) -> HTMLResponse:
    """
    OAuth callback — Google redirects here after consent.

    Exchanges the auth code for tokens, stores the credential (re-consent
    reactivates a revoked one), and returns a small HTML page that
    notifies the opener window and auto-closes.
    """
    user_id = _verify_state(state)
    connector = _provider_or_404(provider)

    try:
        token_data = await connector.handle_callback(code)
    except httpx.HTTPError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        return HTMLResponse(
            content=_callback_html(
                success=False,
                message="Connection failed, please try again",
                provider=provider,
            ),
            status_code=200,
        )

    credential = await store_oauth_grant(store, user_id, Provider(provider), token_data)

    account_label = credential.account_label or provider
    logger.info("OAuth connected: user=%s provider=%s account=%s", user_id, provider, account_label)
    return HTMLResponse(
        content=_callback_html(
            success=True,
            message=f"Connected {connector.display_name} as {account_label}",
            provider=provider,
        ),
        status_code=200,
    )


@router.delete("/{provider}")
async def disconnect_provider(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    store: SqlCredentialStore = Depends(get_credential_store),
) -> Dict[str, Any]:
    """Revoke the grant at Google (best effort) and delete the credential."""
    connector = _provider_or_404(provider)
    credential = await store.get(user_id, Provider(provider))
    if credential is None:
        raise HTTPException(404, "Not connected")

    revoked = await connector.revoke_token(credential.refresh_token or credential.access_token)
    await store.delete(user_id, Provider(provider))
    logger.info("Disconnected %s for user %s (revoked at provider: %s)", provider, user_id, revoked)
    return {"status": "disconnected", "provider": provider, "revoked": revoked}


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Page shown in the OAuth popup after redirect.  Posts the result to the
    opener window and closes itself.
    """
    status_text = "Connected" if success else "Connection failed"
    color = "#15803d" if success else "#b91c1c"
    notice = json.dumps(
        {"type": "formsync-oauth", "provider": provider, "success": success, "message": message}
    ).replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>FormSync — {html.escape(provider)}: {status_text}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; display: flex; align-items: center;
               justify-content: center; height: 100vh; margin: 0; background: #f8fafc; }}
        .card {{ text-align: center; padding: 32px; background: #fff; border-radius: 10px;
                border: 1px solid #e2e8f0; max-width: 380px; }}
        h2 {{ color: {color}; margin: 0 0 8px; }}
        p {{ color: #475569; font-size: 0.9rem; }}
    </style>
</head>
<body>
    <div class="card">
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p>You can close this window.</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({notice}, window.location.origin);
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
