"""
Google Drive destination — stores each uploaded file in the connection's folder.

Connection ``settings`` keys (all optional):
  folder_structure_template  e.g. "{{form_title}}/{{name}}", rendered per submission
  organize_by_date           append a dated subfolder (``date_format``, default YYYY-MM-DD)
  public_links               share uploads as "anyone with the link"
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from config.settings import config
from core.exceptions import DeliveryError, NoConnection, NoData
from integrations.google_api import DRIVE_API, DRIVE_UPLOAD_API, AuthorizedSession, GoogleApi
from utils.schemas import (
    Connection,
    DeliveryContext,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
    Submission,
)
from utils.templating import interpolate

logger = logging.getLogger(__name__)

_FILE_FIELDS = "id,name,webViewLink,webContentLink"
FOLDER_MIME = "application/vnd.google-apps.folder"
SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"
DEFAULT_DATE_FORMAT = "YYYY-MM-DD"
_DATE_TOKENS = (("YYYY", "%Y"), ("MM", "%m"), ("DD", "%d"))


def multipart_related(metadata: Dict[str, Any], content: bytes, mime_type: str) -> Tuple[bytes, str]:
    """Build a ``multipart/related`` body (metadata part + media part)."""
    boundary = f"formsync-{uuid.uuid4().hex}"
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode()
    tail = f"\r\n--{boundary}--\r\n".encode()
    return head + content + tail, f"multipart/related; boundary={boundary}"


def _quote_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def folder_path_for(settings: Dict[str, Any], form_title: str, submission: Submission) -> List[str]:
    """
    Subfolder names below the connection folder for one submission.

    ``folder_structure_template`` is split on "/" after placeholders are
    filled; segments that render empty are dropped.  ``organize_by_date``
    adds the submission date as the innermost folder.
    """
    template = settings.get("folder_structure_template") or ""
    rendered = interpolate(template, form_title, submission.payload)
    segments = [part.strip() for part in rendered.split("/") if part.strip()]
    if settings.get("organize_by_date"):
        pattern = settings.get("date_format") or DEFAULT_DATE_FORMAT
        for token, directive in _DATE_TOKENS:
            pattern = pattern.replace(token, directive)
        segments.append(submission.submitted_at.strftime(pattern))
    return segments


class DriveClient:
    destination = DestinationKind.DRIVE

    def __init__(self, api: GoogleApi):
        self._api = api

    async def upload_file(
        self,
        connection: Connection,
        field_id: str,
        file_bytes: bytes,
        file_name: str,
        *,
        mime_type: str = "application/octet-stream",
        submission_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Upload one file into ``folder_id`` (default: the connection folder)
        and return ``{id, url, attempts}``.

        Files are tagged with the submission and field ids so a retry after
        an ambiguous failure finds the earlier upload instead of storing a
        second copy.
        """
        parent = folder_id or connection.external_id
        credential = await self._api.refresher.acquire(
            connection.owner_user_id, self.destination.credential_provider
        )
        app_properties = {"formsyncField": field_id}
        if submission_id:
            app_properties["formsyncSubmission"] = submission_id
        metadata = {
            "name": file_name,
            "parents": [parent],
            "appProperties": app_properties,
        }
        body, content_type = multipart_related(metadata, file_bytes, mime_type)

        async with self._api.client() as client:
            session = self._api.session(credential, client)

            async def attempt(number: int) -> Dict[str, Any]:
                if number > 1 and submission_id:
                    existing = await self._find_existing(session, parent, submission_id, field_id, file_name)
                    if existing:
                        return existing
                return await session.json(
                    "POST",
                    DRIVE_UPLOAD_API,
                    params={"uploadType": "multipart", "fields": _FILE_FIELDS},
                    content=body,
                    headers={"Content-Type": content_type},
                )

            result = await self._api.with_retry(attempt, label=f"drive upload {file_name}")
            uploaded = result.value

            if connection.settings.get("public_links", config.drive_public_links):
                await self._share_with_link(session, uploaded["id"])

        return {
            "id": uploaded["id"],
            "url": uploaded.get("webViewLink") or f"https://drive.google.com/file/d/{uploaded['id']}/view",
            "attempts": result.attempts,
        }

    async def _find_existing(
        self,
        session: AuthorizedSession,
        parent: str,
        submission_id: str,
        field_id: str,
        file_name: str,
    ) -> Optional[Dict[str, Any]]:
        query = (
            f"'{_quote_query(parent)}' in parents and trashed = false"
            f" and name = '{_quote_query(file_name)}'"
            f" and appProperties has {{ key='formsyncSubmission' and value='{_quote_query(submission_id)}' }}"
            f" and appProperties has {{ key='formsyncField' and value='{_quote_query(field_id)}' }}"
        )
        body = await session.json(
            "GET", f"{DRIVE_API}/files", params={"q": query, "fields": f"files({_FILE_FIELDS})"}
        )
        files = body.get("files") or []
        return files[0] if files else None

    async def _share_with_link(self, session: AuthorizedSession, file_id: str) -> None:
        """Grant "anyone with the link" read access; failure leaves the file private."""
        try:
            await session.request(
                "POST",
                f"{DRIVE_API}/files/{file_id}/permissions",
                json={"role": "reader", "type": "anyone"},
            )
        except DeliveryError as exc:
            logger.warning("Could not share Drive file %s by link: %s", file_id, exc)

    # ── Folders ─────────────────────────────────────────────────────────

    async def resolve_folder(self, owner_user_id: str, base_folder_id: str, path: List[str]) -> str:
        """Walk ``path`` below ``base_folder_id``, creating missing folders; returns the leaf id."""
        if not path:
            return base_folder_id
        credential = await self._api.refresher.acquire(owner_user_id, self.destination.credential_provider)
        parent = base_folder_id
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            for name in path:
                parent = await self._child_folder(session, parent, name)
        return parent

    async def _child_folder(self, session: AuthorizedSession, parent: str, name: str) -> str:
        query = (
            f"name = '{_quote_query(name)}' and '{_quote_query(parent)}' in parents"
            f" and mimeType = '{FOLDER_MIME}' and trashed = false"
        )

        async def attempt(_number: int) -> str:
            # Searching first also covers a create that landed on an earlier attempt.
            body = await session.json("GET", f"{DRIVE_API}/files", params={"q": query, "fields": "files(id)"})
            found = body.get("files") or []
            if found:
                return found[0]["id"]
            created = await session.json(
                "POST",
                f"{DRIVE_API}/files",
                params={"fields": "id"},
                json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent]},
            )
            logger.info("Created Drive folder %r under %s", name, parent)
            return created["id"]

        result = await self._api.with_retry(attempt, label=f"drive folder {name}")
        return result.value

    async def create_folder(self, owner_user_id: str, name: str, parent_id: Optional[str] = None) -> Dict[str, Any]:
        credential = await self._api.refresher.acquire(owner_user_id, self.destination.credential_provider)
        metadata: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            metadata["parents"] = [parent_id]
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            created = await session.json(
                "POST", f"{DRIVE_API}/files", params={"fields": "id,name,webViewLink"}, json=metadata
            )
        return {"id": created["id"], "name": created.get("name", name), "url": created.get("webViewLink")}

    async def list_files(self, owner_user_id: str, mime_type: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recently modified, non-trashed files of one type (folders, spreadsheets)."""
        credential = await self._api.refresher.acquire(owner_user_id, self.destination.credential_provider)
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            result = await self._api.with_retry(
                lambda _n: session.json(
                    "GET",
                    f"{DRIVE_API}/files",
                    params={
                        "q": f"mimeType = '{mime_type}' and trashed = false",
                        "orderBy": "modifiedTime desc",
                        "pageSize": limit,
                        "fields": "files(id,name,webViewLink,modifiedTime)",
                    },
                ),
                label=f"drive list {mime_type}",
            )
        return [
            {
                "id": item["id"],
                "name": item.get("name", ""),
                "url": item.get("webViewLink"),
                "modified_time": item.get("modifiedTime"),
            }
            for item in result.value.get("files", [])
        ]

    # ── Destination ─────────────────────────────────────────────────────

    async def deliver(self, ctx: DeliveryContext) -> DeliveryOutcome:
        """
        Upload every file.  One failed file does not stop the others; the
        outcome then carries the links that did land and names the files
        that did not.
        """
        if not ctx.files:
            raise NoData("Submission has no uploaded files")

        connection = ctx.connection
        path = folder_path_for(connection.settings, ctx.form.title, ctx.submission)
        folder_id = await self.resolve_folder(connection.owner_user_id, connection.external_id, path)

        links: List[Dict[str, str]] = []
        failures: List[Tuple[str, DeliveryError]] = []
        attempts = 0
        for upload in ctx.files:
            try:
                uploaded = await self.upload_file(
                    connection,
                    upload.field_id,
                    upload.content,
                    upload.filename,
                    mime_type=upload.mime_type,
                    submission_id=ctx.submission.id,
                    folder_id=folder_id,
                )
            except DeliveryError as exc:
                # A missing grant before anything uploaded skips the destination as a whole.
                if isinstance(exc, NoConnection) and not links:
                    raise
                logger.warning(
                    "Drive upload of %s for submission %s failed: %s", upload.filename, ctx.submission.id, exc
                )
                attempts = max(attempts, exc.attempts)
                failures.append((upload.filename, exc))
                continue
            attempts = max(attempts, uploaded["attempts"])
            links.append({"field_id": upload.field_id, "file_name": upload.filename, "url": uploaded["url"]})

        if not failures:
            return DeliveryOutcome(
                submission_id=ctx.submission.id,
                destination=self.destination,
                result=DeliveryResult.DELIVERED,
                detail=f"Uploaded {len(links)} file(s)",
                attempts=attempts,
                links=links,
            )

        retryable = all(exc.retryable for _, exc in failures)
        failed = ", ".join(f"{name} ({exc})" for name, exc in failures)
        return DeliveryOutcome(
            submission_id=ctx.submission.id,
            destination=self.destination,
            result=DeliveryResult.FAILED_RETRYABLE if retryable else DeliveryResult.FAILED_PERMANENT,
            detail=f"Uploaded {len(links)} of {len(ctx.files)} file(s); failed: {failed}",
            error_kind=failures[0][1].kind,
            attempts=attempts,
            links=links,
        )
