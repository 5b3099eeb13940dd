"""
REST API routes — submission intake, status, re-dispatch, connection
setup, header sync and the Google resource pickers.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile

from api.dependencies import get_fanout, get_repository
from auth.dependencies import db_session, get_current_user_id
from core.connection_resolver import merge_header_layout
from core.dispatcher import SubmissionRepository
from core.exceptions import CredentialRevoked, DeliveryError, NoConnection, ProviderRejected
from core.fanout_factory import Fanout
from core.intake import DispatchInProgress, FormNotFound, SubmissionNotFound
from database.helpers import (
    attach_connection,
    create_connection,
    forms_using_connection,
    get_connection,
    get_form,
)
from integrations.drive import FOLDER_MIME, SPREADSHEET_MIME
from integrations.sheets import DEFAULT_SHEET_NAME, parse_spreadsheet_id
from utils.schemas import (
    Connection,
    ConnectionRequest,
    ConnectSheetRequest,
    CreateFolderRequest,
    CreateSheetRequest,
    DestinationKind,
    FormConfig,
    Submission,
    SubmissionAccepted,
    SubmissionRequest,
    UploadedFile,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

router = APIRouter()


async def _read_submission(request: Request) -> Tuple[Dict[str, Any], List[UploadedFile]]:
    """
    Accept either ``{"payload": {...}}`` JSON or a multipart form with a
    ``payload`` JSON field, plain fields and file parts.
    """
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        try:
            body = SubmissionRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, f"Invalid submission body: {exc}")
        return body.payload, []

    form = await request.form()
    payload: Dict[str, Any] = {}
    files: List[UploadedFile] = []
    raw_payload = form.get("payload")
    if isinstance(raw_payload, str) and raw_payload:
        try:
            decoded = json.loads(raw_payload)
        except ValueError as exc:
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, f"payload is not valid JSON: {exc}")
        if not isinstance(decoded, dict):
            raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "payload must be a JSON object")
        payload.update(decoded)

    for key, value in form.multi_items():
        if key == "payload":
            continue
        if isinstance(value, UploadFile):
            if not value.filename:
                continue
            files.append(
                UploadedFile(
                    field_id=key,
                    filename=value.filename,
                    content=await value.read(),
                    mime_type=value.content_type or "application/octet-stream",
                )
            )
            # The payload records the file name; bytes only go to Drive.
            payload.setdefault(key, value.filename)
        else:
            payload.setdefault(key, value)
    return payload, files


async def _owned_submission(
    submission_id: str, user_id: str, repository: SubmissionRepository
) -> Submission:
    submission = await repository.get_submission(submission_id)
    if submission is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Submission not found")
    form = await repository.get_form(submission.form_id)
    if form is None or form.owner_user_id != user_id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Submission not found")
    return submission


# ── Intake ───────────────────────────────────────────────────────────


@router.post(
    "/forms/{form_id}/submissions",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SubmissionAccepted,
)
async def submit_form(
    form_id: str,
    request: Request,
    fanout: Fanout = Depends(get_fanout),
) -> SubmissionAccepted:
    """
    Store a submission and schedule delivery.  Responds as soon as the
    submission is committed; destination failures never reach the submitter.
    """
    payload, files = await _read_submission(request)
    try:
        return await fanout.intake.submit(form_id, payload, files)
    except FormNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Form not found")


# ── Submission management ────────────────────────────────────────────


@router.get("/submissions/{submission_id}")
async def get_submission_status(
    submission_id: str,
    user_id: str = Depends(get_current_user_id),
    repository: SubmissionRepository = Depends(get_repository),
) -> Dict[str, Any]:
    """Processing status plus every recorded delivery outcome."""
    submission = await _owned_submission(submission_id, user_id, repository)
    outcomes = await repository.list_outcomes(submission_id)
    return {
        "submission_id": submission.id,
        "form_id": submission.form_id,
        "submitted_at": submission.submitted_at.isoformat(),
        "status": submission.processing_status.value,
        "partial_failure": any(o.result.is_failure for o in outcomes),
        "outcomes": [o.model_dump(mode="json") for o in outcomes],
    }


@router.post("/submissions/{submission_id}/redispatch", status_code=status.HTTP_202_ACCEPTED)
async def redispatch_submission(
    submission_id: str,
    user_id: str = Depends(get_current_user_id),
    repository: SubmissionRepository = Depends(get_repository),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    """Re-run delivery; destinations that already succeeded are skipped."""
    await _owned_submission(submission_id, user_id, repository)
    try:
        submission = await fanout.intake.redispatch(submission_id)
    except SubmissionNotFound:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Submission not found")
    except DispatchInProgress:
        raise HTTPException(status.HTTP_409_CONFLICT, "Delivery already in progress")
    return {"submission_id": submission.id, "status": submission.processing_status.value}




# ── Connections ──────────────────────────────────────────────────────


async def _from_google(call: Awaitable[T], what: str) -> T:
    """Await a Google API call, mapping delivery errors onto HTTP errors."""
    try:
        return await call
    except (NoConnection, CredentialRevoked) as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, f"Reconnect your Google account: {exc}")
    except ProviderRejected as exc:
        if exc.status_code in (403, 404):
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"{what}: not found or not shared with this account")
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, f"{what} failed: {exc}")
    except DeliveryError as exc:
        logger.warning("%s failed: %s", what, exc)
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, f"{what} failed: {exc}")


async def _owned_form(session: AsyncSession, form_id: Optional[str], user_id: str) -> Optional[FormConfig]:
    if form_id is None:
        return None
    form = await get_form(session, form_id)
    if form is None or form.owner_user_id != user_id:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Form not found")
    return form


@router.post("/sheets", status_code=status.HTTP_201_CREATED)
async def create_sheet(
    body: CreateSheetRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    """
    Create a spreadsheet in the owner's Drive with its header row in place
    and store the connection.  With ``form_id`` the headers come from the
    form's labels and the form starts mirroring into the new sheet.
    """
    form = await _owned_form(session, body.form_id, user_id)
    headers = merge_header_layout([], form.field_labels.values() if form else [])
    created = await _from_google(
        fanout.sheets.create_spreadsheet(user_id, body.title, headers, sheet_name=body.sheet_name),
        "Spreadsheet creation",
    )
    connection = await create_connection(
        session,
        user_id,
        DestinationKind.SHEETS,
        created["id"],
        external_url=created["url"],
        sheet_name=created["sheet_name"],
        header_layout=headers,
    )
    if form is not None:
        await attach_connection(session, form.id, connection)
    return {"connection": connection.model_dump(mode="json"), "spreadsheet": created}


@router.post("/sheets/connect", status_code=status.HTTP_201_CREATED)
async def connect_sheet(
    body: ConnectSheetRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    """
    Connect a spreadsheet the owner already has, by URL or id.

    The sheet's existing header row is kept; the seed columns and the
    form's labels (with ``form_id``) are appended to it when missing.
    """
    spreadsheet_id = parse_spreadsheet_id(body.spreadsheet_url)
    if spreadsheet_id is None:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, "Not a Google Sheets URL")
    form = await _owned_form(session, body.form_id, user_id)

    info = await _from_google(fanout.sheets.get_spreadsheet(user_id, spreadsheet_id), "Spreadsheet lookup")
    sheet_name = body.sheet_name or (info["sheet_names"][0] if info["sheet_names"] else DEFAULT_SHEET_NAME)
    if info["sheet_names"] and sheet_name not in info["sheet_names"]:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            f"Spreadsheet has no tab named {sheet_name!r}",
        )

    target = Connection(
        id="",
        owner_user_id=user_id,
        provider=DestinationKind.SHEETS,
        external_id=spreadsheet_id,
        sheet_name=sheet_name,
    )
    existing = await _from_google(fanout.sheets.read_headers(target), "Header read")
    headers = merge_header_layout(existing, form.field_labels.values() if form else [])
    if headers != existing:
        await _from_google(fanout.sheets.write_headers(target, headers), "Header write")

    connection = await create_connection(
        session,
        user_id,
        DestinationKind.SHEETS,
        spreadsheet_id,
        external_url=info["url"],
        sheet_name=sheet_name,
        header_layout=headers,
    )
    if form is not None:
        await attach_connection(session, form.id, connection)
    return {"connection": connection.model_dump(mode="json"), "spreadsheet": info}


@router.post("/connections", status_code=status.HTTP_201_CREATED)
async def create_target_connection(
    body: ConnectionRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    """Store a calendar or Drive folder target with its settings."""
    if body.provider not in (DestinationKind.CALENDAR, DestinationKind.DRIVE):
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Only calendar and drive connections are created here; use /sheets for spreadsheets",
        )
    form = await _owned_form(session, body.form_id, user_id)
    connection = await create_connection(
        session,
        user_id,
        body.provider,
        body.external_id,
        external_url=body.external_url,
        settings=body.settings,
    )
    if form is not None:
        await attach_connection(session, form.id, connection)
    return {"connection": connection.model_dump(mode="json")}


# ── Sheets ───────────────────────────────────────────────────────────


@router.post("/sheets/{connection_id}/sync-headers")
async def sync_sheet_headers(
    connection_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    """
    Append the labels of every form using this sheet to its header row.
    Existing columns, including ones added by hand, are never moved or removed.
    """
    connection = await get_connection(session, connection_id)
    if (
        connection is None
        or connection.provider != DestinationKind.SHEETS
        or connection.owner_user_id != user_id
    ):
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Sheet connection not found")

    labels: List[str] = []
    for form in await forms_using_connection(session, connection_id):
        labels.extend(form.field_labels.values())

    updated = await _from_google(fanout.resolver.sync_headers(connection, labels, fanout.sheets), "Header sync")
    return {
        "connection_id": connection_id,
        "header_layout": updated.header_layout,
        "added": len(updated.header_layout) - len(connection.header_layout),
    }


# ── Google pickers ───────────────────────────────────────────────────


@router.get("/google/spreadsheets")
async def list_spreadsheets(
    user_id: str = Depends(get_current_user_id),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    files = await _from_google(fanout.drive.list_files(user_id, SPREADSHEET_MIME), "Spreadsheet listing")
    return {"spreadsheets": files}


@router.get("/google/calendars")
async def list_calendars(
    user_id: str = Depends(get_current_user_id),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    calendars = await _from_google(fanout.calendar.list_calendars(user_id), "Calendar listing")
    return {"calendars": calendars}


@router.get("/google/folders")
async def list_folders(
    user_id: str = Depends(get_current_user_id),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    folders = await _from_google(fanout.drive.list_files(user_id, FOLDER_MIME), "Folder listing")
    return {"folders": folders}


@router.post("/google/folders", status_code=status.HTTP_201_CREATED)
async def create_folder(
    body: CreateFolderRequest,
    user_id: str = Depends(get_current_user_id),
    fanout: Fanout = Depends(get_fanout),
) -> Dict[str, Any]:
    folder = await _from_google(
        fanout.drive.create_folder(user_id, body.name, body.parent_id), "Folder creation"
    )
    return {"folder": folder}
