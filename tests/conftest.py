"""
Shared fakes: in-memory stores, a token connector that counts refreshes,
and a programmable Google/Resend HTTP fake built on ``httpx.MockTransport``.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Union

import httpx
import pytest

from connectors.token_manager import TokenRefresher
from integrations.google_api import GoogleApi
from utils.schemas import (
    Connection,
    Credential,
    CredentialStatus,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
    FormConfig,
    ProcessingStatus,
    Provider,
    ResolvedConnections,
    Submission,
)

OWNER = "11111111-1111-1111-1111-111111111111"
FORM_ID = "22222222-2222-2222-2222-222222222222"
FAST_RETRY = {"max_attempts": 3, "backoff_base": 0.0, "backoff_max": 0.0}


def make_credential(
    provider: Provider = Provider.SHEETS,
    *,
    user_id: str = OWNER,
    expires_in: int = 3600,
    access_token: str = "access-0",
    refresh_token: str = "refresh-0",
    status: CredentialStatus = CredentialStatus.ACTIVE,
) -> Credential:
    return Credential(
        user_id=user_id,
        provider=provider,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        status=status,
    )


def make_form(**overrides: Any) -> FormConfig:
    data = {
        "id": FORM_ID,
        "owner_user_id": OWNER,
        "title": "Contact",
        "field_labels": {"name": "Name", "email": "Email"},
    }
    data.update(overrides)
    return FormConfig(**data)


def make_submission(payload: Optional[Dict[str, Any]] = None, **overrides: Any) -> Submission:
    data = {
        "id": "sub-1",
        "form_id": FORM_ID,
        "payload": payload if payload is not None else {"name": "Alice", "email": "a@x.com"},
        "submitted_at": datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return Submission(**data)


def make_connection(kind: DestinationKind, **overrides: Any) -> Connection:
    defaults = {
        DestinationKind.SHEETS: {"external_id": "sheet-1", "header_layout": ["Timestamp", "Name", "Email"]},
        DestinationKind.CALENDAR: {"external_id": "primary"},
        DestinationKind.DRIVE: {"external_id": "folder-1"},
    }[kind]
    data = {"id": f"conn-{kind.value}", "owner_user_id": OWNER, "provider": kind, **defaults}
    data.update(overrides)
    return Connection(**data)


# ── Credential store / token connector ───────────────────────────────


class InMemoryCredentialStore:
    def __init__(self, *credentials: Credential):
        self.rows: Dict[tuple, Credential] = {c.key: c for c in credentials}
        self.upserts: List[Credential] = []

    async def get(self, user_id: str, provider: Provider) -> Optional[Credential]:
        return self.rows.get((user_id, Provider(provider).value))

    async def upsert(self, credential: Credential) -> None:
        self.rows[credential.key] = credential
        self.upserts.append(credential)

    async def mark_revoked(self, user_id: str, provider: Provider, reason: str) -> None:
        key = (user_id, Provider(provider).value)
        if key in self.rows:
            self.rows[key] = self.rows[key].model_copy(
                update={"status": CredentialStatus.REVOKED, "error_message": reason}
            )

    async def delete(self, user_id: str, provider: Provider) -> bool:
        return self.rows.pop((user_id, Provider(provider).value), None) is not None

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            {"provider": c.provider.value, "status": c.status.value, "error_message": c.error_message}
            for c in self.rows.values()
            if c.user_id == user_id
        ]


class FakeTokenConnector:
    """Stands in for the Google token endpoint; counts refresh calls."""

    def __init__(
        self,
        provider_name: str = "sheets",
        *,
        error: Optional[Exception] = None,
        rotate: bool = False,
        delay: float = 0.01,
    ):
        self.provider_name = provider_name
        self.display_name = provider_name
        self.error = error
        self.rotate = rotate
        self.delay = delay
        self.calls = 0

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        self.calls += 1
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        data = {"access_token": f"fresh-{self.calls}", "expires_in": 3600}
        if self.rotate:
            data["refresh_token"] = f"refresh-{self.calls}"
        return data


# ── Submission repository ────────────────────────────────────────────


class InMemoryRepository:
    def __init__(
        self,
        form: Optional[FormConfig] = None,
        connections: Optional[ResolvedConnections] = None,
    ):
        self.forms: Dict[str, FormConfig] = {form.id: form} if form else {}
        self.connections: Dict[str, ResolvedConnections] = {}
        if form is not None:
            self.connections[form.id] = connections or ResolvedConnections()
        self.submissions: Dict[str, Submission] = {}
        self.logs: List[DeliveryOutcome] = []
        self.status_history: List[ProcessingStatus] = []
        self.layout_updates: List[tuple] = []

    async def get_form(self, form_id: str) -> Optional[FormConfig]:
        return self.forms.get(form_id)

    async def load_connections(self, form_id: str) -> ResolvedConnections:
        return self.connections.get(form_id, ResolvedConnections())

    async def update_header_layout(self, connection_id: str, header_layout: List[str]) -> None:
        self.layout_updates.append((connection_id, list(header_layout)))

    async def create_submission(self, form_id: str, payload: Dict[str, Any]) -> Submission:
        submission = Submission(id=str(uuid.uuid4()), form_id=form_id, payload=payload)
        self.submissions[submission.id] = submission
        return submission

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        return self.submissions.get(submission_id)

    async def update_status(self, submission_id: str, status: ProcessingStatus) -> None:
        self.status_history.append(status)
        if submission_id in self.submissions:
            self.submissions[submission_id] = self.submissions[submission_id].model_copy(
                update={"processing_status": status}
            )

    async def save_outcomes(self, outcomes: List[DeliveryOutcome]) -> None:
        self.logs.extend(outcomes)

    async def delivered_destinations(self, submission_id: str) -> Set[str]:
        return {
            o.destination.value
            for o in self.logs
            if o.submission_id == submission_id and o.result == DeliveryResult.DELIVERED
        }

    async def list_outcomes(self, submission_id: str) -> List[DeliveryOutcome]:
        return [o for o in self.logs if o.submission_id == submission_id]


# ── HTTP fake ────────────────────────────────────────────────────────

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeHttp:
    """
    Route requests by method + URL fragment.  Each route answers with its
    responses in order and repeats the last one once exhausted.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self._routes: List[Dict[str, Any]] = []

    def on(self, method: str, fragment: str, *responses: Responder) -> "FakeHttp":
        self._routes.append({"method": method, "fragment": fragment, "responses": list(responses), "used": 0})
        return self

    def calls(self, method: str, fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and fragment in str(r.url)]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for route in self._routes:
            if route["method"] == request.method and route["fragment"] in str(request.url):
                responses = route["responses"]
                answer = responses[min(route["used"], len(responses) - 1)]
                route["used"] += 1
                return answer(request) if callable(answer) else answer
        return httpx.Response(404, json={"error": {"message": f"no fake route for {request.url}"}})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def token_connector() -> FakeTokenConnector:
    return FakeTokenConnector("sheets")


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore(make_credential(Provider.SHEETS), make_credential(Provider.CALENDAR))


@pytest.fixture
def refresher(store, token_connector) -> TokenRefresher:
    connectors = {"sheets": token_connector, "calendar": FakeTokenConnector("calendar")}
    return TokenRefresher(store, connectors=connectors, skew_seconds=60)


@pytest.fixture
def google_api(refresher, http) -> GoogleApi:
    return GoogleApi(refresher, transport=http.transport, retry_policy=FAST_RETRY)
