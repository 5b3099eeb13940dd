"""
FastAPI dependencies for the objects wired at startup.

``main.on_startup`` puts the fan-out pieces on ``app.state``; routes
pull them from there so tests can swap in fakes.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from connectors.token_manager import SqlCredentialStore
from core.dispatcher import SubmissionRepository
from core.fanout_factory import Fanout


def get_fanout(request: Request) -> Fanout:
    fanout = getattr(request.app.state, "fanout", None)
    if fanout is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return fanout


def get_repository(request: Request) -> SubmissionRepository:
    return request.app.state.repository


def get_credential_store(request: Request) -> SqlCredentialStore:
    return request.app.state.credential_store
