"""
docsync - Microsoft Graph Connector Tests
=========================================

OneDrive and SharePoint against an httpx.MockTransport:
- token grants and auth failure mapping
- token reuse and refresh inside the expiry margin
- listing with pagination, folder skipping and checksum fallback
- downloads through the pre-authenticated URL
"""

import httpx
import pytest

from docsync.db.models import Platform
from docsync.services.base import AuthError, DownloadError
from docsync.services.connectors.base import ConnectorConfig
from docsync.services.connectors.onedrive import GRAPH_BASE_URL, GraphConnector

CREDS = {"client_id": "cid", "client_secret": "secret", "tenant_id": "tenant"}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class GraphStub:
    """Minimal Graph + login endpoint."""

    def __init__(self):
        self.token_calls = 0
        self.token_status = 200
        self.expires_in = 3600
        self.items = []
        self.page_size = None
        self.requests = []
        self.reject_next_api_call = False

    def file_item(self, item_id, name, **extra):
        item = {
            "id": item_id,
            "name": name,
            "size": 10,
            "lastModifiedDateTime": "2024-05-01T10:00:00Z",
            "file": {"mimeType": "application/pdf", "hashes": {"quickXorHash": f"qx-{item_id}"}},
            "cTag": f"ctag-{item_id}",
        }
        item.update(extra)
        return item

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if "login.microsoftonline.com" in url:
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(
                200,
                json={"access_token": f"token-{self.token_calls}", "expires_in": self.expires_in},
            )

        if self.reject_next_api_call:
            self.reject_next_api_call = False
            return httpx.Response(401, json={"error": "expired"})

        if url.startswith("https://download.example.com/"):
            assert "Authorization" not in request.headers
            return httpx.Response(200, content=b"%PDF-1.4 body")

        if "/sites/contoso.sharepoint.com" in url:
            return httpx.Response(200, json={"id": "site-123"})

        if "/items/" in url:
            item_id = url.rsplit("/items/", 1)[1]
            if item_id == "nourl":
                return httpx.Response(200, json={"id": "nourl", "name": "x.pdf", "file": {}})
            return httpx.Response(
                200,
                json={
                    "id": item_id,
                    "name": "Report.pdf",
                    "file": {},
                    "@microsoft.graph.downloadUrl": f"https://download.example.com/{item_id}",
                },
            )

        if url.endswith("/children") or "children?" in url or "skiptoken" in url:
            if self.page_size and "skiptoken" not in url:
                return httpx.Response(
                    200,
                    json={
                        "value": self.items[: self.page_size],
                        "@odata.nextLink": f"{GRAPH_BASE_URL}/me/drive/root/children?skiptoken=2",
                    },
                )
            if self.page_size:
                return httpx.Response(200, json={"value": self.items[self.page_size:]})
            return httpx.Response(200, json={"value": self.items})

        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def stub():
    return GraphStub()


@pytest.fixture
def clock():
    return FakeClock()


def make_connector(stub, clock, platform=Platform.ONEDRIVE, credentials=None, **config):
    return GraphConnector(
        ConnectorConfig(platform=platform, credentials=dict(credentials or CREDS), **config),
        transport=httpx.MockTransport(stub.handler),
        clock=clock,
    )


class TestAuthentication:

    async def test_client_credentials_grant(self, stub, clock):
        connector = make_connector(stub, clock)
        await connector.authenticate()

        token_request = stub.requests[0]
        assert "/tenant/oauth2/v2.0/token" in str(token_request.url)
        body = token_request.content.decode()
        assert "grant_type=client_credentials" in body
        assert connector.is_authenticated
        await connector.release()

    async def test_refresh_token_grant_when_stored(self, stub, clock):
        creds = {"client_id": "cid", "client_secret": "secret", "refresh_token": "rt"}
        connector = make_connector(stub, clock, credentials=creds)
        await connector.authenticate()

        assert "/common/oauth2/v2.0/token" in str(stub.requests[0].url)
        assert "grant_type=refresh_token" in stub.requests[0].content.decode()
        await connector.release()

    @pytest.mark.parametrize("status", [400, 401, 403])
    async def test_rejected_secret_is_auth_error(self, stub, clock, status):
        stub.token_status = status
        connector = make_connector(stub, clock)
        with pytest.raises(AuthError):
            await connector.authenticate()
        await connector.release()

    async def test_server_error_is_not_auth_error(self, stub, clock):
        stub.token_status = 503
        connector = make_connector(stub, clock)
        with pytest.raises(DownloadError):
            await connector.authenticate()
        await connector.release()

    async def test_missing_fields_is_auth_error(self, stub, clock):
        connector = make_connector(stub, clock, credentials={"client_id": "cid"})
        with pytest.raises(AuthError, match="client_secret"):
            await connector.authenticate()
        assert stub.token_calls == 0

    async def test_sharepoint_requires_site_url(self, stub, clock):
        connector = make_connector(stub, clock, platform=Platform.SHAREPOINT)
        with pytest.raises(AuthError, match="site_url"):
            await connector.authenticate()

    async def test_token_reused_until_margin(self, stub, clock):
        stub.items = [stub.file_item("1", "a.pdf")]
        connector = make_connector(stub, clock)

        await connector.list_entries("/")
        clock.now += 3600 - 31
        await connector.list_entries("/")
        assert stub.token_calls == 1

        # Inside the 30 s margin the token counts as expired
        clock.now += 2
        await connector.list_entries("/")
        assert stub.token_calls == 2
        await connector.release()

    async def test_401_triggers_one_reauthentication(self, stub, clock):
        stub.items = [stub.file_item("1", "a.pdf")]
        connector = make_connector(stub, clock)
        await connector.authenticate()
        stub.reject_next_api_call = True

        entries = await connector.list_entries("/")
        assert len(entries) == 1
        assert stub.token_calls == 2
        await connector.release()


class TestListing:

    async def test_lists_files_and_skips_folders(self, stub, clock):
        stub.items = [
            stub.file_item("1", "a.pdf"),
            {"id": "2", "name": "Sub", "folder": {"childCount": 3}},
            stub.file_item("3", "b.docx"),
        ]
        connector = make_connector(stub, clock)
        entries = await connector.list_entries("/Documents")

        assert [e.name for e in entries] == ["a.pdf", "b.docx"]
        assert entries[0].path == "/Documents/a.pdf"
        assert entries[0].checksum == "qx-1"
        assert entries[0].platform == Platform.ONEDRIVE
        assert "/me/drive/root:/Documents:/children" in str(stub.requests[-1].url)
        await connector.release()

    async def test_checksum_falls_back_to_ctag(self, stub, clock):
        item = stub.file_item("1", "a.pdf")
        item["file"] = {"mimeType": "application/pdf"}
        stub.items = [item]
        connector = make_connector(stub, clock)

        entries = await connector.list_entries("/")
        assert entries[0].checksum == "ctag-1"
        await connector.release()

    async def test_follows_pagination(self, stub, clock):
        stub.items = [stub.file_item(str(i), f"f{i}.pdf") for i in range(5)]
        stub.page_size = 2
        connector = make_connector(stub, clock)

        entries = await connector.list_entries("/")
        assert len(entries) == 5
        await connector.release()

    async def test_limit_stops_early(self, stub, clock):
        stub.items = [stub.file_item(str(i), f"f{i}.pdf") for i in range(5)]
        connector = make_connector(stub, clock)

        entries = await connector.list_entries("/", limit=1)
        assert len(entries) == 1
        await connector.release()

    async def test_drive_owner_selects_user_drive(self, stub, clock):
        connector = make_connector(stub, clock, drive_owner="alex@contoso.com")
        await connector.list_entries("/")
        assert "/users/alex%40contoso.com/drive/root/children" in str(stub.requests[-1].url)
        await connector.release()

    async def test_sharepoint_resolves_site(self, stub, clock):
        stub.items = [stub.file_item("1", "a.pdf")]
        connector = make_connector(
            stub,
            clock,
            platform=Platform.SHAREPOINT,
            site_url="https://contoso.sharepoint.com/sites/Team",
        )
        entries = await connector.list_entries("/")

        assert entries[0].platform == Platform.SHAREPOINT
        urls = [str(r.url) for r in stub.requests]
        assert any("/sites/contoso.sharepoint.com:/sites/Team" in u for u in urls)
        assert "/sites/site-123/drive/root/children" in urls[-1]
        await connector.release()


class TestDownload:

    async def test_fetch_streams_to_unique_file(self, stub, clock, tmp_path):
        connector = make_connector(stub, clock)
        first = await connector.fetch_entry("abc", tmp_path)
        second = await connector.fetch_entry("abc", tmp_path)

        assert first != second
        assert first.read_bytes() == b"%PDF-1.4 body"
        assert first.name.endswith("_Report.pdf")
        await connector.release()

    async def test_missing_download_url(self, stub, clock, tmp_path):
        connector = make_connector(stub, clock)
        with pytest.raises(DownloadError, match="No download URL"):
            await connector.fetch_entry("nourl", tmp_path)
        await connector.release()


class TestConnectionTest:

    async def test_success(self, stub, clock):
        stub.items = [stub.file_item("1", "a.pdf"), stub.file_item("2", "b.pdf")]
        connector = make_connector(stub, clock)
        result = await connector.test_connection()

        assert result.ok
        assert result.sample_count == 1
        await connector.release()

    async def test_auth_failure_never_raises(self, stub, clock):
        stub.token_status = 401
        connector = make_connector(stub, clock)
        result = await connector.test_connection()

        assert not result.ok
        assert result.error_code == "auth_error"
        await connector.release()

    async def test_release_discards_token(self, stub, clock):
        connector = make_connector(stub, clock)
        await connector.authenticate()
        await connector.release()
        assert not connector.is_authenticated
