"""
Tests for connection resolution and the append-only header layout.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

from core.connection_resolver import ConnectionResolver, merge_header_layout
from integrations.sheets import SheetsClient
from utils.schemas import DestinationKind, ResolvedConnections

from conftest import FORM_ID, InMemoryRepository, make_connection, make_form


def _sheet_with_row(*headers):
    sheets = AsyncMock()
    sheets.read_headers.return_value = list(headers)
    return sheets


class TestMergeHeaderLayout:
    def test_new_layout_starts_with_timestamp_and_submission_id(self):
        assert merge_header_layout([], ["Name", "Email"]) == ["Timestamp", "Submission ID", "Name", "Email"]

    def test_new_labels_are_appended(self):
        assert merge_header_layout(["Timestamp", "Name"], ["Email", "Name"]) == ["Timestamp", "Name", "Email"]

    def test_existing_columns_are_never_removed_or_reordered(self):
        existing = ["Timestamp", "Old Field", "Name"]
        assert merge_header_layout(existing, ["Name"]) == existing

    def test_blank_and_duplicate_labels_are_ignored(self):
        assert merge_header_layout(["Timestamp"], ["", "  ", "Phone", "Phone"]) == ["Timestamp", "Phone"]

    def test_existing_layout_is_not_reseeded(self):
        assert merge_header_layout(["Name"], ["Email"]) == ["Name", "Email"]


class TestResolve:
    @pytest.mark.asyncio
    async def test_any_subset_may_be_absent(self):
        sheets = make_connection(DestinationKind.SHEETS)
        repo = InMemoryRepository(make_form(), ResolvedConnections(sheets=sheets))

        resolved = await ConnectionResolver(repo).resolve(FORM_ID)

        assert resolved.sheets == sheets
        assert resolved.calendar is None and resolved.drive is None
        assert not resolved.is_empty()

    @pytest.mark.asyncio
    async def test_no_connections_is_valid(self):
        resolved = await ConnectionResolver(InMemoryRepository(make_form())).resolve(FORM_ID)
        assert resolved.is_empty()


class TestSyncHeaders:
    @pytest.mark.asyncio
    async def test_writes_and_persists_grown_layout(self):
        repo = InMemoryRepository(make_form())
        sheets = _sheet_with_row("Timestamp", "Name")
        connection = make_connection(DestinationKind.SHEETS, header_layout=["Timestamp", "Name"])

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Name", "Email"], sheets)

        assert updated.header_layout == ["Timestamp", "Name", "Email"]
        sheets.write_headers.assert_awaited_once_with(connection, ["Timestamp", "Name", "Email"])
        assert repo.layout_updates == [("conn-sheets", ["Timestamp", "Name", "Email"])]

    @pytest.mark.asyncio
    async def test_unchanged_layout_writes_nothing(self):
        repo = InMemoryRepository(make_form())
        sheets = _sheet_with_row("Timestamp", "Name", "Email")
        connection = make_connection(DestinationKind.SHEETS)

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Email"], sheets)

        assert updated is connection
        sheets.write_headers.assert_not_awaited()
        assert repo.layout_updates == []

    @pytest.mark.asyncio
    async def test_columns_added_by_hand_are_kept(self):
        repo = InMemoryRepository(make_form())
        sheets = _sheet_with_row("Timestamp", "Name", "Email", "Follow-up notes")
        connection = make_connection(DestinationKind.SHEETS)

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Name", "Phone"], sheets)

        expected = ["Timestamp", "Name", "Email", "Follow-up notes", "Phone"]
        assert updated.header_layout == expected
        sheets.write_headers.assert_awaited_once_with(connection, expected)
        assert repo.layout_updates == [("conn-sheets", expected)]

    @pytest.mark.asyncio
    async def test_hand_edit_alone_is_recorded_without_rewriting_the_sheet(self):
        repo = InMemoryRepository(make_form())
        sheets = _sheet_with_row("Timestamp", "Name", "Email", "Notes")
        connection = make_connection(DestinationKind.SHEETS)

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Name"], sheets)

        assert updated.header_layout == ["Timestamp", "Name", "Email", "Notes"]
        sheets.write_headers.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_sheet_gets_the_stored_layout(self):
        repo = InMemoryRepository(make_form())
        sheets = _sheet_with_row()
        connection = make_connection(DestinationKind.SHEETS)

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Name"], sheets)

        assert updated is connection
        sheets.write_headers.assert_awaited_once_with(connection, ["Timestamp", "Name", "Email"])

    @pytest.mark.asyncio
    async def test_fresh_layout_is_seeded_with_submission_id(self):
        repo = InMemoryRepository(make_form())
        connection = make_connection(DestinationKind.SHEETS, header_layout=[])

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Name"])

        assert updated.header_layout == ["Timestamp", "Submission ID", "Name"]

    @pytest.mark.asyncio
    async def test_reads_the_live_row_through_the_sheets_api(self, google_api, http):
        http.on("GET", "values/", httpx.Response(200, json={"values": [["Timestamp", "Name", "Email", "Notes"]]}))
        http.on("PUT", "values/", httpx.Response(200, json={}))
        repo = InMemoryRepository(make_form())
        connection = make_connection(DestinationKind.SHEETS)

        updated = await ConnectionResolver(repo).sync_headers(connection, ["Phone"], SheetsClient(google_api))

        assert updated.header_layout == ["Timestamp", "Name", "Email", "Notes", "Phone"]
        (put,) = http.calls("PUT", "values/")
        assert put.url.params["valueInputOption"] == "RAW"
