"""
Tests for the Airtable client, OAuth client and submission payloads.

HTTP traffic goes through httpx.MockTransport; nothing leaves the process.
"""

import base64
import hashlib
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from backend.airtable.client import AirtableClient, AirtableError, map_airtable_field
from backend.airtable.oauth import AirtableOAuth
from backend.airtable.submission import build_submission

API_URL = "https://airtable.test/v0"

TABLES = {
    "tables": [
        {
            "id": "tbl1",
            "name": "Responses",
            "fields": [
                {"id": "fld1", "name": "Name", "type": "singleLineText"},
                {"id": "fld2", "name": "Notes", "type": "multilineText"},
                {"id": "fld3", "name": "Count", "type": "number"},
                {
                    "id": "fld4",
                    "name": "Status",
                    "type": "singleSelect",
                    "options": {"choices": [{"id": "sel1", "name": "New"}, {"id": "sel2", "name": "Done"}]},
                },
                {"id": "fld5", "name": "Files", "type": "multipleAttachments"},
            ],
        },
        {"id": "tbl2", "name": "Other", "fields": []},
    ]
}


def make_client(handler) -> AirtableClient:
    return AirtableClient(api_url=API_URL, transport=httpx.MockTransport(handler))


# =============================================================
# Test: Field mapping
# =============================================================


class TestMapAirtableField:

    @pytest.mark.parametrize("airtable_type, form_type", [
        ("singleLineText", "shortText"),
        ("multilineText", "longText"),
        ("singleSelect", "singleSelect"),
        ("multipleSelects", "multipleSelect"),
        ("multipleAttachments", "attachment"),
    ])
    def test_supported(self, airtable_type, form_type):
        mapped = map_airtable_field({"id": "f", "name": "F", "type": airtable_type})
        assert mapped["type"] == form_type

    @pytest.mark.parametrize("airtable_type", ["number", "date", "checkbox", "formula"])
    def test_unsupported(self, airtable_type):
        assert map_airtable_field({"id": "f", "name": "F", "type": airtable_type}) is None

    def test_select_without_choices(self):
        mapped = map_airtable_field({"id": "f", "name": "F", "type": "multipleSelects"})
        assert mapped["options"] == []


# =============================================================
# Test: AirtableClient
# =============================================================


class TestAirtableClient:

    @pytest.mark.asyncio
    async def test_list_bases_follows_offset(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.params.get("offset") == "page2":
                return httpx.Response(200, json={"bases": [{"id": "app2", "name": "Two"}]})
            return httpx.Response(
                200,
                json={"bases": [{"id": "app1", "name": "One", "permissionLevel": "create"}], "offset": "page2"},
            )

        bases = await make_client(handler).list_bases("tok")
        assert bases == [{"id": "app1", "name": "One"}, {"id": "app2", "name": "Two"}]
        assert seen[0].url.path == "/v0/meta/bases"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_list_tables(self):
        def handler(request):
            assert request.url.path == "/v0/meta/bases/app1/tables"
            return httpx.Response(200, json=TABLES)

        tables = await make_client(handler).list_tables("tok", "app1")
        assert tables == [{"id": "tbl1", "name": "Responses"}, {"id": "tbl2", "name": "Other"}]

    @pytest.mark.asyncio
    async def test_list_form_fields_filters_and_maps(self):
        client = make_client(lambda request: httpx.Response(200, json=TABLES))
        fields = await client.list_form_fields("tok", "app1", "tbl1")
        assert [f["id"] for f in fields] == ["fld1", "fld2", "fld4", "fld5"]
        status = fields[2]
        assert status["options"] == [{"id": "sel1", "name": "New"}, {"id": "sel2", "name": "Done"}]

    @pytest.mark.asyncio
    async def test_list_form_fields_unknown_table(self):
        client = make_client(lambda request: httpx.Response(200, json=TABLES))
        with pytest.raises(AirtableError) as exc_info:
            await client.list_form_fields("tok", "app1", "tblMissing")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_create_record_sends_typecast(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "rec1", "fields": {}})

        record = await make_client(handler).create_record("tok", "app1", "tbl1", {"fld1": "Ada"})
        assert record["id"] == "rec1"
        assert captured["path"] == "/v0/app1/tbl1"
        assert captured["body"] == {"fields": {"fld1": "Ada"}, "typecast": True}

    @pytest.mark.asyncio
    async def test_provider_error_is_wrapped(self):
        def handler(request):
            return httpx.Response(
                422,
                json={"error": {"type": "INVALID_VALUE_FOR_COLUMN", "message": "Bad value"}},
            )

        with pytest.raises(AirtableError) as exc_info:
            await make_client(handler).create_record("tok", "app1", "tbl1", {})
        assert exc_info.value.status_code == 422
        assert exc_info.value.message == "Bad value"

    @pytest.mark.asyncio
    async def test_throttling_keeps_status(self):
        def handler(request):
            return httpx.Response(429, text="slow down")

        with pytest.raises(AirtableError) as exc_info:
            await make_client(handler).list_bases("tok")
        assert exc_info.value.status_code == 429

    @pytest.mark.asyncio
    async def test_network_error_is_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("boom", request=request)

        with pytest.raises(AirtableError) as exc_info:
            await make_client(handler).whoami("tok")
        assert exc_info.value.status_code is None


# =============================================================
# Test: AirtableOAuth
# =============================================================


class TestAirtableOAuth:

    def make_oauth(self, handler=None, secret=None) -> AirtableOAuth:
        transport = httpx.MockTransport(handler) if handler else None
        return AirtableOAuth(
            client_id="client123",
            client_secret=secret,
            redirect_uri="http://localhost:8000/api/oauth/callback",
            token_url="https://airtable.test/oauth2/v1/token",
            transport=transport,
        )

    def test_not_configured_without_client_id(self):
        oauth = AirtableOAuth(client_id=None, client_secret=None, redirect_uri="http://x")
        assert oauth.configured is False

    def test_authorization_url(self):
        pending = self.make_oauth().start_authorization()
        query = parse_qs(urlparse(pending.url).query)
        assert query["client_id"] == ["client123"]
        assert query["response_type"] == ["code"]
        assert query["state"] == [pending.state]
        assert query["scope"] == ["data.records:read data.records:write schema.bases:read"]
        assert query["code_challenge_method"] == ["S256"]

        digest = hashlib.sha256(pending.code_verifier.encode()).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
        assert query["code_challenge"] == [expected]

    def test_each_authorization_is_unique(self):
        oauth = self.make_oauth()
        assert oauth.start_authorization().state != oauth.start_authorization().state

    @pytest.mark.asyncio
    async def test_exchange_code(self):
        captured = {}

        def handler(request):
            captured["form"] = parse_qs(request.content.decode())
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(
                200,
                json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600, "scope": "x"},
            )

        grant = await self.make_oauth(handler).exchange_code("code1", "verifier1")
        assert grant.access_token == "at"
        assert grant.refresh_token == "rt"
        assert grant.expires_at() is not None
        assert captured["form"]["grant_type"] == ["authorization_code"]
        assert captured["form"]["code_verifier"] == ["verifier1"]
        assert captured["form"]["client_id"] == ["client123"]
        assert captured["auth"] is None

    @pytest.mark.asyncio
    async def test_refresh_with_secret_uses_basic_auth(self):
        captured = {}

        def handler(request):
            captured["form"] = parse_qs(request.content.decode())
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"access_token": "new"})

        grant = await self.make_oauth(handler, secret="shh").refresh("rt")
        assert grant.access_token == "new"
        assert grant.refresh_token is None
        assert captured["form"]["grant_type"] == ["refresh_token"]
        assert "client_id" not in captured["form"]
        assert captured["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_rejected_grant(self):
        oauth = self.make_oauth(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(AirtableError) as exc_info:
            await oauth.exchange_code("bad", "v")
        assert exc_info.value.status_code == 400


# =============================================================
# Test: Submission payloads
# =============================================================


class TestBuildSubmission:

    def test_only_visible_answers(self, student_form):
        answers = {"FullName": "Ada", "IsStudent": "No", "School": "stale", "Employer": "ACME"}
        payload = build_submission(student_form, answers)
        assert payload.fields == {"FullName": "Ada", "IsStudent": "No", "Employer": "ACME"}
        assert payload.base_id == "appStudentSurvey1"
        assert payload.table_id == "tblResponses0001"
        assert payload.warning() is None

    def test_values_unchanged(self, event_form):
        answers = {"Name": "Ada", "TicketType": "General", "Sessions": ["Keynote", "Panel"]}
        payload = build_submission(event_form, answers)
        assert payload.fields["Sessions"] == ["Keynote", "Panel"]

    def test_attachments_by_url(self, event_form):
        answers = {
            "TicketType": "Speaker",
            "Materials": [{"url": "https://files.example.com/s.pdf", "filename": "s.pdf"}],
        }
        payload = build_submission(event_form, answers)
        assert payload.fields["Materials"] == [{"url": "https://files.example.com/s.pdf", "filename": "s.pdf"}]

    def test_inline_attachments_skipped(self, event_form):
        answers = {
            "TicketType": "Sponsor",
            "Materials": [
                {"base64": "aGVsbG8=", "filename": "a.png"},
                {"url": "https://files.example.com/b.png"},
            ],
            "Organisation": "City University",
            "StudentId": [{"base64": "aGVsbG8="}],
        }
        payload = build_submission(event_form, answers)
        assert payload.fields["Materials"] == [{"url": "https://files.example.com/b.png"}]
        assert "StudentId" not in payload.fields
        assert payload.skipped_attachments == ["Materials", "StudentId"]
        assert "Materials, StudentId" in payload.warning()
