"""
Centralised fan-out builder.

Startup wiring and tests both call ``build_fanout`` so the destination
set and its shared collaborators are assembled in exactly one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from config.settings import config
from connectors.token_manager import CredentialStore, TokenRefresher
from core.connection_resolver import ConnectionResolver
from core.dispatcher import Destination, SubmissionDispatcher, SubmissionRepository
from core.intake import SubmissionIntake
from core.task_supervisor import BackgroundTaskSupervisor
from integrations.calendar import CalendarClient
from integrations.drive import DriveClient
from integrations.email import NotificationSender
from integrations.google_api import GoogleApi
from integrations.sheets import SheetsClient
from utils.schemas import DestinationKind


@dataclass
class Fanout:
    refresher: TokenRefresher
    resolver: ConnectionResolver
    sheets: SheetsClient
    calendar: CalendarClient
    drive: DriveClient
    dispatcher: SubmissionDispatcher
    intake: SubmissionIntake
    supervisor: BackgroundTaskSupervisor


def build_destinations(api: GoogleApi, sender: NotificationSender) -> Dict[DestinationKind, Destination]:
    return {
        DestinationKind.SHEETS: SheetsClient(api),
        DestinationKind.CALENDAR: CalendarClient(api),
        DestinationKind.DRIVE: DriveClient(api),
        DestinationKind.EMAIL: sender,
    }


def build_fanout(
    store: CredentialStore,
    repository: SubmissionRepository,
    *,
    refresher: Optional[TokenRefresher] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sender: Optional[NotificationSender] = None,
    supervisor: Optional[BackgroundTaskSupervisor] = None,
) -> Fanout:
    """
    Wire refresher → Google API → destinations → dispatcher → intake.

    ``transport`` is shared by every outbound HTTP client so tests can
    fake all providers with one ``httpx.MockTransport``.
    """
    refresher = refresher or TokenRefresher(store)
    api = GoogleApi(refresher, transport=transport)
    sender = sender or NotificationSender(transport=transport)
    destinations = build_destinations(api, sender)

    resolver = ConnectionResolver(repository)
    dispatcher = SubmissionDispatcher(
        destinations, resolver, repository, timeout=config.delivery_timeout_seconds
    )
    supervisor = supervisor or BackgroundTaskSupervisor()
    return Fanout(
        refresher=refresher,
        resolver=resolver,
        sheets=destinations[DestinationKind.SHEETS],
        calendar=destinations[DestinationKind.CALENDAR],
        drive=destinations[DestinationKind.DRIVE],
        dispatcher=dispatcher,
        intake=SubmissionIntake(repository, dispatcher, supervisor),
        supervisor=supervisor,
    )
