"""
Connection Resolver — which destinations a form mirrors into, and the
append-only header layout of its spreadsheet.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Protocol

from integrations.sheets import SUBMISSION_ID_HEADER, TIMESTAMP_HEADER
from utils.schemas import Connection, FormConfig, ResolvedConnections

logger = logging.getLogger(__name__)

# Leading columns of a layout created from scratch.  ``Submission ID`` lets a
# retried append find the row an earlier attempt already wrote.
SEED_HEADERS = (TIMESTAMP_HEADER, SUBMISSION_ID_HEADER)


class ConnectionRepository(Protocol):
    async def get_form(self, form_id: str) -> Optional[FormConfig]: ...

    async def load_connections(self, form_id: str) -> ResolvedConnections: ...

    async def update_header_layout(self, connection_id: str, header_layout: List[str]) -> None: ...


class HeaderWriter(Protocol):
    async def read_headers(self, connection: Connection) -> List[str]: ...

    async def write_headers(self, connection: Connection, headers: List[str]) -> None: ...


def merge_header_layout(existing: List[str], labels: Iterable[str]) -> List[str]:
    """
    Append labels the layout does not have yet.

    Existing columns keep their order and are never removed.  A layout
    created from scratch starts with the ``Timestamp`` and ``Submission ID``
    columns.
    """
    merged = list(existing)
    if not merged:
        merged.extend(SEED_HEADERS)
    seen = set(merged)
    for label in labels:
        label = (label or "").strip()
        if label and label not in seen:
            merged.append(label)
            seen.add(label)
    return merged


class ConnectionResolver:
    def __init__(self, repository: ConnectionRepository):
        self._repository = repository

    async def resolve(self, form_id: str) -> ResolvedConnections:
        """
        Load the form's configured destinations.  Any subset may be
        absent; a form with none resolves to an empty result.
        """
        resolved = await self._repository.load_connections(form_id)
        logger.debug(
            "Form %s destinations: sheets=%s calendar=%s drive=%s",
            form_id,
            bool(resolved.sheets),
            bool(resolved.calendar),
            bool(resolved.drive),
        )
        return resolved

    async def sync_headers(
        self,
        connection: Connection,
        labels: Iterable[str],
        sheets: Optional[HeaderWriter] = None,
    ) -> Connection:
        """
        Merge ``labels`` into the header layout and persist the result.

        With ``sheets`` given, the merge starts from the sheet's live header
        row so columns the owner added or renamed by hand survive; the row
        is only rewritten when labels were appended.  Without it (or when
        the sheet has no header row yet) the stored layout is the base.
        Returns the updated connection.
        """
        base = list(connection.header_layout)
        live: Optional[List[str]] = None
        if sheets is not None:
            live = await sheets.read_headers(connection)
            if live:
                base = live

        merged = merge_header_layout(base, labels)
        if sheets is not None and merged != live:
            await sheets.write_headers(connection, merged)
        if merged == connection.header_layout:
            return connection

        await self._repository.update_header_layout(connection.id, merged)
        logger.info(
            "Header layout for connection %s went from %d to %d columns",
            connection.id,
            len(connection.header_layout),
            len(merged),
        )
        return connection.model_copy(update={"header_layout": merged})
