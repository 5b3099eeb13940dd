"""
Tests for the Sheets destination: row layout, append call, 401 handling,
retries and de-duplication.
"""

import json

import httpx
import pytest

from core.exceptions import AuthExpired, ProviderRejected, ProviderTransient
from integrations.sheets import SheetsClient, build_row, column_letter, format_cell, parse_spreadsheet_id
from utils.schemas import DeliveryContext, DeliveryResult, DestinationKind

from conftest import OWNER, make_connection, make_form, make_submission

APPEND_OK = httpx.Response(200, json={"updates": {"updatedRange": "'Form Submissions'!A5:C5"}})


def _ctx(connection=None, submission=None, form=None) -> DeliveryContext:
    return DeliveryContext(
        submission=submission or make_submission(),
        form=form or make_form(),
        connection=connection or make_connection(DestinationKind.SHEETS),
    )


class TestBuildRow:
    def test_alice_row(self):
        submission = make_submission({"name": "Alice", "email": "a@x.com"})
        row = build_row(["Timestamp", "Name", "Email"], submission, make_form())

        assert row == [submission.submitted_at.isoformat(), "Alice", "a@x.com"]

    def test_unknown_fields_are_dropped_without_shifting(self):
        submission = make_submission({"phone": "555", "name": "Alice", "email": "a@x.com"})
        row = build_row(["Timestamp", "Name", "Email"], submission, make_form())

        assert row[1:] == ["Alice", "a@x.com"]
        assert len(row) == 3

    def test_missing_values_render_empty(self):
        submission = make_submission({"email": "a@x.com"})
        row = build_row(["Timestamp", "Name", "Email"], submission, make_form())

        assert row[1:] == ["", "a@x.com"]

    def test_unlabelled_field_matches_by_id(self):
        submission = make_submission({"name": "Alice", "company": "Acme"})
        row = build_row(["Name", "company"], submission, make_form())

        assert row == ["Alice", "Acme"]

    def test_submission_id_column(self):
        row = build_row(["Submission ID", "Name"], make_submission(), make_form())
        assert row == ["sub-1", "Alice"]


class TestFormatCell:
    @pytest.mark.parametrize(
        "value, expected",
        [
            (None, ""),
            (True, "TRUE"),
            (3, "3"),
            (["a", "b"], "a, b"),
            ({"k": "v"}, '{"k": "v"}'),
        ],
    )
    def test_values(self, value, expected):
        assert format_cell(value) == expected


class TestColumnLetter:
    @pytest.mark.parametrize("index, letters", [(0, "A"), (25, "Z"), (26, "AA"), (27, "AB"), (701, "ZZ")])
    def test_letters(self, index, letters):
        assert column_letter(index) == letters


class TestSheetsDelivery:
    @pytest.mark.asyncio
    async def test_appends_one_row(self, google_api, http):
        http.on("POST", ":append", APPEND_OK)

        outcome = await SheetsClient(google_api).deliver(_ctx())

        assert outcome.result == DeliveryResult.DELIVERED
        assert outcome.attempts == 1
        assert "row 5" in outcome.detail
        (request,) = http.calls("POST", ":append")
        assert request.url.params["valueInputOption"] == "RAW"
        assert request.url.params["insertDataOption"] == "INSERT_ROWS"
        assert request.headers["Authorization"] == "Bearer access-0"
        body = json.loads(request.content)
        assert body["values"][0][1:] == ["Alice", "a@x.com"]

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_replays(self, google_api, http, token_connector):
        http.on("POST", ":append", httpx.Response(401), APPEND_OK)

        outcome = await SheetsClient(google_api).deliver(_ctx())

        assert outcome.result == DeliveryResult.DELIVERED
        assert token_connector.calls == 1
        first, second = http.calls("POST", ":append")
        assert first.headers["Authorization"] == "Bearer access-0"
        assert second.headers["Authorization"] == "Bearer fresh-1"

    @pytest.mark.asyncio
    async def test_second_401_is_auth_expired(self, google_api, http, token_connector):
        http.on("POST", ":append", httpx.Response(401))

        with pytest.raises(AuthExpired):
            await SheetsClient(google_api).deliver(_ctx())

        assert token_connector.calls == 1
        assert len(http.calls("POST", ":append")) == 2

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, google_api, http):
        http.on("POST", ":append", httpx.Response(503), APPEND_OK)

        outcome = await SheetsClient(google_api).deliver(_ctx())

        assert outcome.result == DeliveryResult.DELIVERED
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_transient_errors_exhaust_attempts(self, google_api, http):
        http.on("POST", ":append", httpx.Response(500))

        with pytest.raises(ProviderTransient) as exc_info:
            await SheetsClient(google_api).deliver(_ctx())

        assert exc_info.value.attempts == 3
        assert len(http.calls("POST", ":append")) == 3

    @pytest.mark.asyncio
    async def test_deleted_spreadsheet_is_rejected_without_retry(self, google_api, http):
        http.on("POST", ":append", httpx.Response(404, json={"error": {"message": "Requested entity was not found."}}))

        with pytest.raises(ProviderRejected, match="not found"):
            await SheetsClient(google_api).deliver(_ctx())

        assert len(http.calls("POST", ":append")) == 1

    @pytest.mark.asyncio
    async def test_retry_skips_append_when_row_already_landed(self, google_api, http):
        connection = make_connection(
            DestinationKind.SHEETS, header_layout=["Timestamp", "Submission ID", "Name", "Email"]
        )
        http.on("POST", ":append", httpx.Response(503))
        http.on("GET", "/values/", httpx.Response(200, json={"values": [["Submission ID"], ["sub-0"], ["sub-1"]]}))

        outcome = await SheetsClient(google_api).deliver(_ctx(connection=connection))

        assert outcome.result == DeliveryResult.DELIVERED
        assert "already present" in outcome.detail
        assert len(http.calls("POST", ":append")) == 1

    @pytest.mark.asyncio
    async def test_empty_layout_is_rejected(self, google_api, http):
        connection = make_connection(DestinationKind.SHEETS, header_layout=[])

        with pytest.raises(ProviderRejected):
            await SheetsClient(google_api).deliver(_ctx(connection=connection))

        assert http.requests == []


class TestHeaders:
    @pytest.mark.asyncio
    async def test_read_headers(self, google_api, http):
        http.on("GET", "/values/", httpx.Response(200, json={"values": [["Timestamp", "Name"]]}))

        headers = await SheetsClient(google_api).read_headers(make_connection(DestinationKind.SHEETS))

        assert headers == ["Timestamp", "Name"]

    @pytest.mark.asyncio
    async def test_write_headers(self, google_api, http):
        http.on("PUT", "/values/", httpx.Response(200, json={}))

        await SheetsClient(google_api).write_headers(
            make_connection(DestinationKind.SHEETS), ["Timestamp", "Name", "Email"]
        )

        (request,) = http.calls("PUT", "/values/")
        assert json.loads(request.content) == {"values": [["Timestamp", "Name", "Email"]]}

    @pytest.mark.asyncio
    async def test_empty_sheet_reads_as_no_headers(self, google_api, http):
        http.on("GET", "/values/", httpx.Response(200, json={"range": "'Form Submissions'!1:1"}))

        assert await SheetsClient(google_api).read_headers(make_connection(DestinationKind.SHEETS)) == []


class TestSpreadsheets:
    @pytest.mark.asyncio
    async def test_create_names_the_tab_and_writes_headers(self, google_api, http):
        http.on(
            "POST",
            "v4/spreadsheets",
            httpx.Response(
                200,
                json={"spreadsheetId": "new-sheet", "spreadsheetUrl": "https://docs.google.com/spreadsheets/d/new-sheet/edit"},
            ),
        )
        http.on("PUT", "/values/", httpx.Response(200, json={}))

        created = await SheetsClient(google_api).create_spreadsheet(
            OWNER, "Contact responses", ["Timestamp", "Submission ID", "Name"]
        )

        assert created == {
            "id": "new-sheet",
            "url": "https://docs.google.com/spreadsheets/d/new-sheet/edit",
            "title": "Contact responses",
            "sheet_name": "Form Submissions",
        }
        (create,) = http.calls("POST", "v4/spreadsheets")
        assert json.loads(create.content) == {
            "properties": {"title": "Contact responses"},
            "sheets": [{"properties": {"title": "Form Submissions"}}],
        }
        (put,) = http.calls("PUT", "/values/")
        assert "new-sheet/values/" in str(put.url)
        assert json.loads(put.content) == {"values": [["Timestamp", "Submission ID", "Name"]]}

    @pytest.mark.asyncio
    async def test_create_is_not_retried(self, google_api, http):
        http.on("POST", "v4/spreadsheets", httpx.Response(503))

        with pytest.raises(ProviderTransient):
            await SheetsClient(google_api).create_spreadsheet(OWNER, "Contact responses", [])

        assert len(http.requests) == 1

    @pytest.mark.asyncio
    async def test_get_spreadsheet(self, google_api, http):
        http.on(
            "GET",
            "v4/spreadsheets/abc",
            httpx.Response(
                200,
                json={
                    "spreadsheetId": "abc",
                    "properties": {"title": "Leads"},
                    "sheets": [{"properties": {"title": "Sheet1"}}, {"properties": {"title": "Archive"}}],
                },
            ),
        )

        info = await SheetsClient(google_api).get_spreadsheet(OWNER, "abc")

        assert info == {
            "id": "abc",
            "url": "https://docs.google.com/spreadsheets/d/abc/edit",
            "title": "Leads",
            "sheet_names": ["Sheet1", "Archive"],
        }

    @pytest.mark.asyncio
    async def test_missing_spreadsheet_is_rejected(self, google_api, http):
        http.on("GET", "v4/spreadsheets/gone", httpx.Response(404, json={"error": {"message": "Requested entity was not found."}}))

        with pytest.raises(ProviderRejected):
            await SheetsClient(google_api).get_spreadsheet(OWNER, "gone")


class TestParseSpreadsheetId:
    @pytest.mark.parametrize(
        "value",
        [
            "https://docs.google.com/spreadsheets/d/1AbC-dEf_123456789012345/edit#gid=0",
            "docs.google.com/spreadsheets/d/1AbC-dEf_123456789012345",
            "1AbC-dEf_123456789012345",
        ],
    )
    def test_accepts_urls_and_bare_ids(self, value):
        assert parse_spreadsheet_id(value) == "1AbC-dEf_123456789012345"

    @pytest.mark.parametrize("value", ["", "https://example.com/sheet", "not an id"])
    def test_rejects_anything_else(self, value):
        assert parse_spreadsheet_id(value) is None
