"""
Identity token verification.

The identity system issues base64-encoded JSON payloads signed with
HMAC-SHA256 using the shared ``config.identity_token_secret``
(env var: ``IDENTITY_TOKEN_SECRET``).  This service only needs the
``user_id`` claim.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from base64 import b64decode, b64encode

from fastapi import HTTPException, status

from config.settings import config

_DEFAULT_EXPIRY_SECONDS = 3600


def _sign(raw: bytes) -> str:
    return hmac.new(config.identity_token_secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(user_id: str, expires_in: int = _DEFAULT_EXPIRY_SECONDS) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    payload = {
        "user_id": user_id,
        "exp": int(time.time()) + expires_in,
    }
    raw = json.dumps(payload).encode()
    return b64encode(raw).decode() + "." + _sign(raw)


def verify_token(token: str) -> str:
    """
    Verify token and return ``user_id``.

    Raises ``HTTPException(401)`` on invalid or expired tokens.
    """
    try:
        parts = token.split(".", 1)
        if len(parts) != 2:
            raise ValueError("bad format")
        raw = b64decode(parts[0])
        if not hmac.compare_digest(parts[1], _sign(raw)):
            raise ValueError("bad signature")
        payload = json.loads(raw)
        if payload.get("exp", 0) < time.time():
            raise ValueError("token expired")
        return payload["user_id"]
    except (ValueError, KeyError, TypeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid or expired token: {exc}",
        )
