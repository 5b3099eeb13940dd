"""
Database helper functions — load forms and connections, persist
submissions and their delivery logs.

The plain functions take an open ``AsyncSession``; ``SqlSubmissionRepository``
wraps them with one independent session per call for background dispatch.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import DeliveryLog, Form, IntegrationConnection, SubmissionRecord
from utils.schemas import (
    Connection,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
    FormConfig,
    ProcessingStatus,
    ResolvedConnections,
    Submission,
)

logger = logging.getLogger(__name__)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return _to_uuid(value)
    except ValueError:
        return None


# ── Row → schema ────────────────────────────────────────────────────


def _connection_schema(row: IntegrationConnection) -> Connection:
    return Connection(
        id=str(row.connection_id),
        owner_user_id=str(row.owner_user_id),
        provider=DestinationKind(row.provider),
        external_id=row.external_id,
        external_url=row.external_url,
        sheet_name=row.sheet_name,
        header_layout=list(row.header_layout or []),
        settings=dict(row.settings or {}),
    )


def _form_schema(row: Form) -> FormConfig:
    return FormConfig(
        id=str(row.form_id),
        owner_user_id=str(row.owner_user_id),
        title=row.title,
        field_labels=dict(row.field_labels or {}),
        notification_emails=list(row.notification_emails or []),
        notify_includes_files=bool(row.notify_includes_files),
    )


def _submission_schema(row: SubmissionRecord) -> Submission:
    return Submission(
        id=str(row.submission_id),
        form_id=str(row.form_id),
        payload=dict(row.payload or {}),
        submitted_at=row.submitted_at,
        processing_status=ProcessingStatus(row.processing_status),
    )


def _outcome_schema(row: DeliveryLog) -> DeliveryOutcome:
    return DeliveryOutcome(
        submission_id=str(row.submission_id),
        destination=DestinationKind(row.destination),
        result=DeliveryResult(row.result),
        detail=row.detail or "",
        error_kind=row.error_kind,
        attempts=row.attempts or 0,
        external_ref=row.external_ref,
        links=list(row.links or []),
    )


# ── Forms & connections ─────────────────────────────────────────────


async def get_form(session: AsyncSession, form_id: str) -> Optional[FormConfig]:
    fid = _parse_uuid(form_id)
    if fid is None:
        return None
    result = await session.execute(select(Form).where(Form.form_id == fid))
    row = result.scalar_one_or_none()
    return _form_schema(row) if row else None


async def load_connections(session: AsyncSession, form_id: str) -> ResolvedConnections:
    """Active connections referenced by the form; inactive ones count as absent."""
    result = await session.execute(select(Form).where(Form.form_id == _to_uuid(form_id)))
    form = result.scalar_one_or_none()
    if form is None:
        return ResolvedConnections()

    ids = {
        DestinationKind.SHEETS: form.sheets_connection_id,
        DestinationKind.CALENDAR: form.calendar_connection_id,
        DestinationKind.DRIVE: form.drive_connection_id,
    }
    wanted = [cid for cid in ids.values() if cid is not None]
    if not wanted:
        return ResolvedConnections()

    rows = await session.execute(
        select(IntegrationConnection).where(
            IntegrationConnection.connection_id.in_(wanted),
            IntegrationConnection.is_active.is_(True),
        )
    )
    by_id = {row.connection_id: row for row in rows.scalars().all()}
    found: Dict[str, Connection] = {}
    for kind, cid in ids.items():
        row = by_id.get(cid) if cid is not None else None
        if row is not None:
            found[kind.value] = _connection_schema(row)
    return ResolvedConnections(**found)


async def get_connection(session: AsyncSession, connection_id: str) -> Optional[Connection]:
    cid = _parse_uuid(connection_id)
    if cid is None:
        return None
    result = await session.execute(
        select(IntegrationConnection).where(IntegrationConnection.connection_id == cid)
    )
    row = result.scalar_one_or_none()
    return _connection_schema(row) if row else None


async def forms_using_connection(session: AsyncSession, connection_id: str) -> List[FormConfig]:
    result = await session.execute(
        select(Form).where(Form.sheets_connection_id == _to_uuid(connection_id))
    )
    return [_form_schema(row) for row in result.scalars().all()]


async def create_connection(
    session: AsyncSession,
    owner_user_id: str,
    provider: DestinationKind,
    external_id: str,
    *,
    external_url: Optional[str] = None,
    sheet_name: Optional[str] = None,
    header_layout: Optional[List[str]] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Connection:
    row = IntegrationConnection(
        connection_id=uuid.uuid4(),
        owner_user_id=_to_uuid(owner_user_id),
        provider=provider.value,
        external_id=external_id,
        external_url=external_url,
        sheet_name=sheet_name or "Form Submissions",
        header_layout=list(header_layout or []),
        settings=dict(settings or {}),
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )
    if header_layout:
        row.last_synced = row.created_at
    session.add(row)
    await session.flush()
    logger.info("Created %s connection %s -> %s", provider.value, row.connection_id, external_id)
    return _connection_schema(row)


async def attach_connection(session: AsyncSession, form_id: str, connection: Connection) -> None:
    """Point the form's slot for ``connection.provider`` at the connection."""
    column = {
        DestinationKind.SHEETS: "sheets_connection_id",
        DestinationKind.CALENDAR: "calendar_connection_id",
        DestinationKind.DRIVE: "drive_connection_id",
    }[connection.provider]
    await session.execute(
        update(Form)
        .where(Form.form_id == _to_uuid(form_id))
        .values({column: _to_uuid(connection.id)})
    )
    await session.flush()


async def update_header_layout(session: AsyncSession, connection_id: str, header_layout: List[str]) -> None:
    await session.execute(
        update(IntegrationConnection)
        .where(IntegrationConnection.connection_id == _to_uuid(connection_id))
        .values(header_layout=header_layout, last_synced=datetime.now(timezone.utc))
    )
    await session.flush()


# ── Submissions ─────────────────────────────────────────────────────


async def create_submission(session: AsyncSession, form_id: str, payload: Dict[str, Any]) -> Submission:
    row = SubmissionRecord(
        submission_id=uuid.uuid4(),
        form_id=_to_uuid(form_id),
        payload=payload,
        submitted_at=datetime.now(timezone.utc),
        processing_status=ProcessingStatus.PENDING.value,
    )
    session.add(row)
    await session.flush()
    return _submission_schema(row)


async def get_submission(session: AsyncSession, submission_id: str) -> Optional[Submission]:
    sid = _parse_uuid(submission_id)
    if sid is None:
        return None
    result = await session.execute(
        select(SubmissionRecord).where(SubmissionRecord.submission_id == sid)
    )
    row = result.scalar_one_or_none()
    return _submission_schema(row) if row else None


async def update_status(session: AsyncSession, submission_id: str, status: ProcessingStatus) -> None:
    values: Dict[str, Any] = {"processing_status": status.value}
    if status == ProcessingStatus.COMPLETED:
        values["completed_at"] = datetime.now(timezone.utc)
    await session.execute(
        update(SubmissionRecord)
        .where(SubmissionRecord.submission_id == _to_uuid(submission_id))
        .values(**values)
    )
    await session.flush()


async def save_delivery_logs(session: AsyncSession, outcomes: List[DeliveryOutcome]) -> None:
    """Persist one ``DeliveryLog`` row per outcome."""
    for outcome in outcomes:
        session.add(
            DeliveryLog(
                submission_id=_to_uuid(outcome.submission_id),
                destination=outcome.destination.value,
                result=outcome.result.value,
                detail=outcome.detail,
                error_kind=outcome.error_kind,
                attempts=outcome.attempts,
                external_ref=outcome.external_ref,
                links=outcome.links,
            )
        )
    await session.flush()


async def delivered_destinations(session: AsyncSession, submission_id: str) -> Set[str]:
    result = await session.execute(
        select(DeliveryLog.destination).where(
            DeliveryLog.submission_id == _to_uuid(submission_id),
            DeliveryLog.result == DeliveryResult.DELIVERED.value,
        )
    )
    return set(result.scalars().all())


async def list_delivery_logs(session: AsyncSession, submission_id: str) -> List[DeliveryOutcome]:
    result = await session.execute(
        select(DeliveryLog)
        .where(DeliveryLog.submission_id == _to_uuid(submission_id))
        .order_by(DeliveryLog.created_at.asc())
    )
    return [_outcome_schema(row) for row in result.scalars().all()]


# ── Repository (independent session per call) ───────────────────────


class SqlSubmissionRepository:
    """
    Repository used by intake and the background dispatcher.

    Dispatch outlives the request that scheduled it, so every call opens
    and commits its own session.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from database.session import async_session_factory

            session_factory = async_session_factory
        self._session_factory = session_factory

    async def get_form(self, form_id: str) -> Optional[FormConfig]:
        async with self._session_factory() as session:
            return await get_form(session, form_id)

    async def load_connections(self, form_id: str) -> ResolvedConnections:
        async with self._session_factory() as session:
            return await load_connections(session, form_id)

    async def update_header_layout(self, connection_id: str, header_layout: List[str]) -> None:
        async with self._session_factory() as session:
            await update_header_layout(session, connection_id, header_layout)
            await session.commit()

    async def create_submission(self, form_id: str, payload: Dict[str, Any]) -> Submission:
        async with self._session_factory() as session:
            submission = await create_submission(session, form_id, payload)
            await session.commit()
            return submission

    async def get_submission(self, submission_id: str) -> Optional[Submission]:
        async with self._session_factory() as session:
            return await get_submission(session, submission_id)

    async def update_status(self, submission_id: str, status: ProcessingStatus) -> None:
        async with self._session_factory() as session:
            await update_status(session, submission_id, status)
            await session.commit()

    async def save_outcomes(self, outcomes: List[DeliveryOutcome]) -> None:
        if not outcomes:
            return
        async with self._session_factory() as session:
            await save_delivery_logs(session, outcomes)
            await session.commit()

    async def delivered_destinations(self, submission_id: str) -> Set[str]:
        async with self._session_factory() as session:
            return await delivered_destinations(session, submission_id)

    async def list_outcomes(self, submission_id: str) -> List[DeliveryOutcome]:
        async with self._session_factory() as session:
            return await list_delivery_logs(session, submission_id)
