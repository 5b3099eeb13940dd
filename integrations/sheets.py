"""
Google Sheets destination — mirrors each submission as one appended row.

Row layout follows the connection's ``header_layout``: the ``Timestamp``
column gets the submission time, ``Submission ID`` the submission id, and
every other column the payload value whose form label matches the header.
Payload fields without a column are dropped; columns without a value are
left empty.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from core.exceptions import ProviderRejected
from integrations.google_api import SHEETS_API, AuthorizedSession, GoogleApi
from utils.schemas import (
    Connection,
    Credential,
    DeliveryContext,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
    FormConfig,
    Submission,
)

logger = logging.getLogger(__name__)

TIMESTAMP_HEADER = "Timestamp"
SUBMISSION_ID_HEADER = "Submission ID"
DEFAULT_SHEET_NAME = "Form Submissions"

_ROW_IN_RANGE = re.compile(r"![A-Z]+(\d+)")
_SPREADSHEET_URL = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")
_BARE_ID = re.compile(r"^[a-zA-Z0-9-_]{20,}$")


def format_cell(value: Any) -> str:
    """Render one payload value as sheet text; missing values are ``""``."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (list, tuple)):
        return ", ".join(format_cell(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def build_row(header_layout: List[str], submission: Submission, form: FormConfig) -> List[str]:
    """Position payload values by header; one cell per header, never more."""
    by_label = {form.label_for(field_id): value for field_id, value in submission.payload.items()}
    row: List[str] = []
    for header in header_layout:
        if header == TIMESTAMP_HEADER:
            row.append(submission.submitted_at.isoformat())
        elif header == SUBMISSION_ID_HEADER:
            row.append(submission.id)
        else:
            row.append(format_cell(by_label.get(header)))
    return row


def column_letter(index: int) -> str:
    """0 → A, 25 → Z, 26 → AA."""
    letters = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        letters = chr(65 + rem) + letters
    return letters


def _a1(sheet_name: str, cells: str) -> str:
    escaped = sheet_name.replace("'", "''")
    return quote(f"'{escaped}'!{cells}", safe="")


def parse_spreadsheet_id(url_or_id: str) -> Optional[str]:
    """Spreadsheet id from a ``docs.google.com/spreadsheets/d/<id>/...`` URL or a bare id."""
    text = (url_or_id or "").strip()
    match = _SPREADSHEET_URL.search(text)
    if match:
        return match.group(1)
    return text if _BARE_ID.match(text) else None


def _spreadsheet_url(spreadsheet_id: str) -> str:
    return f"https://docs.google.com/spreadsheets/d/{spreadsheet_id}/edit"


class SheetsClient:
    destination = DestinationKind.SHEETS

    def __init__(self, api: GoogleApi):
        self._api = api

    async def _credential(self, owner_user_id: str) -> Credential:
        return await self._api.refresher.acquire(owner_user_id, self.destination.credential_provider)

    # ── Spreadsheets ────────────────────────────────────────────────────

    async def create_spreadsheet(
        self,
        owner_user_id: str,
        title: str,
        headers: List[str],
        *,
        sheet_name: str = DEFAULT_SHEET_NAME,
    ) -> Dict[str, Any]:
        """
        Create a spreadsheet with one tab named ``sheet_name`` and write
        ``headers`` as its first row.  Returns ``{id, url, title, sheet_name}``.

        The create call is not retried; a timed-out create may still have landed.
        """
        credential = await self._credential(owner_user_id)
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            created = await session.json(
                "POST",
                SHEETS_API,
                json={"properties": {"title": title}, "sheets": [{"properties": {"title": sheet_name}}]},
            )
        spreadsheet_id = created["spreadsheetId"]
        logger.info("Created spreadsheet %s (%r) for user %s", spreadsheet_id, title, owner_user_id)

        result = {
            "id": spreadsheet_id,
            "url": created.get("spreadsheetUrl") or _spreadsheet_url(spreadsheet_id),
            "title": title,
            "sheet_name": sheet_name,
        }
        if headers:
            target = Connection(
                id="",
                owner_user_id=owner_user_id,
                provider=self.destination,
                external_id=spreadsheet_id,
                sheet_name=sheet_name,
            )
            await self.write_headers(target, headers)
        return result

    async def get_spreadsheet(self, owner_user_id: str, spreadsheet_id: str) -> Dict[str, Any]:
        """Title, URL and tab names of a spreadsheet the owner can open."""
        credential = await self._credential(owner_user_id)
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            result = await self._api.with_retry(
                lambda _n: session.json(
                    "GET",
                    f"{SHEETS_API}/{spreadsheet_id}",
                    params={"fields": "spreadsheetId,spreadsheetUrl,properties.title,sheets.properties.title"},
                ),
                label=f"sheets get {spreadsheet_id}",
            )
        body = result.value
        return {
            "id": body.get("spreadsheetId", spreadsheet_id),
            "url": body.get("spreadsheetUrl") or _spreadsheet_url(spreadsheet_id),
            "title": body.get("properties", {}).get("title", ""),
            "sheet_names": [s["properties"]["title"] for s in body.get("sheets", []) if "properties" in s],
        }

    # ── Provider operations ─────────────────────────────────────────────

    async def append_row(
        self,
        connection: Connection,
        values: List[str],
        *,
        dedup_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Append ``values`` as one row.

        When the layout has a ``Submission ID`` column and ``dedup_key`` is
        given, a retry first checks that column and skips the append if an
        earlier attempt already landed.
        """
        credential = await self._credential(connection.owner_user_id)
        url = f"{SHEETS_API}/{connection.external_id}/values/{_a1(connection.sheet_name, 'A1')}:append"

        async with self._api.client() as client:
            session = self._api.session(credential, client)

            async def attempt(number: int) -> Dict[str, Any]:
                if number > 1 and dedup_key:
                    existing = await self._find_row(session, connection, dedup_key)
                    if existing:
                        logger.info("Row for %s already present; skipping re-append", dedup_key)
                        return {"updated_range": existing, "deduplicated": True}
                body = await session.json(
                    "POST",
                    url,
                    params={"valueInputOption": "RAW", "insertDataOption": "INSERT_ROWS"},
                    json={"values": [values]},
                )
                return {"updated_range": body.get("updates", {}).get("updatedRange")}

            result = await self._api.with_retry(attempt, label=f"sheets append {connection.external_id}")

        out = dict(result.value)
        out["attempts"] = result.attempts
        match = _ROW_IN_RANGE.search(out.get("updated_range") or "")
        out["row_number"] = int(match.group(1)) if match else None
        return out

    async def _find_row(
        self, session: AuthorizedSession, connection: Connection, dedup_key: str
    ) -> Optional[str]:
        if SUBMISSION_ID_HEADER not in connection.header_layout:
            return None
        col = column_letter(connection.header_layout.index(SUBMISSION_ID_HEADER))
        body = await session.json(
            "GET",
            f"{SHEETS_API}/{connection.external_id}/values/{_a1(connection.sheet_name, f'{col}:{col}')}",
        )
        for offset, row in enumerate(body.get("values", []), start=1):
            if row and row[0] == dedup_key:
                return f"{connection.sheet_name}!A{offset}"
        return None

    async def read_headers(self, connection: Connection) -> List[str]:
        """The sheet's current first row, including columns the owner added by hand."""
        credential = await self._credential(connection.owner_user_id)
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            result = await self._api.with_retry(
                lambda _n: session.json(
                    "GET", f"{SHEETS_API}/{connection.external_id}/values/{_a1(connection.sheet_name, '1:1')}"
                ),
                label=f"sheets read headers {connection.external_id}",
            )
        values = result.value.get("values") or [[]]
        return [str(v) for v in values[0]]

    async def write_headers(self, connection: Connection, headers: List[str]) -> None:
        credential = await self._credential(connection.owner_user_id)
        async with self._api.client() as client:
            session = self._api.session(credential, client)
            await self._api.with_retry(
                lambda _n: session.json(
                    "PUT",
                    f"{SHEETS_API}/{connection.external_id}/values/{_a1(connection.sheet_name, '1:1')}",
                    params={"valueInputOption": "RAW"},
                    json={"values": [headers]},
                ),
                label=f"sheets headers {connection.external_id}",
            )

    # ── Destination ─────────────────────────────────────────────────────

    async def deliver(self, ctx: DeliveryContext) -> DeliveryOutcome:
        connection = ctx.connection
        if not connection.header_layout:
            raise ProviderRejected("No headers configured for this sheet; sync headers first")

        row = build_row(connection.header_layout, ctx.submission, ctx.form)
        result = await self.append_row(connection, row, dedup_key=ctx.submission.id)

        detail = (
            f"Appended row {result['row_number']}" if result.get("row_number") else "Appended row"
        )
        if result.get("deduplicated"):
            detail = "Row already present from an earlier attempt"
        return DeliveryOutcome(
            submission_id=ctx.submission.id,
            destination=self.destination,
            result=DeliveryResult.DELIVERED,
            detail=detail,
            attempts=result["attempts"],
            external_ref=result.get("updated_range"),
        )
