"""
docsync - Pytest Configuration
==============================

Shared fixtures: settings pointed at a temp directory, a fresh in-memory
database per test, the Registry, a cipher and a scriptable fake connector.
"""

import asyncio
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"

# Set test environment BEFORE any imports
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"

from sqlalchemy.pool import StaticPool

from docsync.core.config import Settings
from docsync.db.database import create_engine_for, create_session_factory
from docsync.db.models import Base, Platform, SourceStatus
from docsync.db.repository import Registry
from docsync.services.base import AuthError, DownloadError
from docsync.services.connectors.base import BaseConnector, ConnectorConfig, RemoteEntry
from docsync.services.encryption import CredentialCipher
from docsync.utils.paths import unique_temp_path


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with every storage root under tmp_path and no change watch."""
    return Settings(
        ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        STORAGE_PATH=str(tmp_path / "storage"),
        TEMP_PATH=str(tmp_path / "temp"),
        EXPORT_PATH=str(tmp_path / "exports"),
        WATCH_ENABLED=False,
        MICROSOFT_CLIENT_ID="",
        MICROSOFT_CLIENT_SECRET="",
        MICROSOFT_TENANT_ID="",
        GOOGLE_CLIENT_ID="",
        GOOGLE_CLIENT_SECRET="",
    )


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def async_engine():
    """Fresh in-memory SQLite engine with tables, one per test."""
    engine = create_engine_for(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return create_session_factory(async_engine)


@pytest.fixture
def registry(session_factory) -> Registry:
    return Registry(session_factory)


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_ENCRYPTION_KEY)


GRAPH_CREDENTIALS = {
    "client_id": "client-id",
    "client_secret": "client-secret",
    "tenant_id": "tenant-id",
}


@pytest.fixture
def make_source(registry, cipher):
    """Create a stored source; credentials are encrypted like the service does."""

    async def _make(**overrides: Any):
        fields = {
            "name": "Team docs",
            "platform": Platform.ONEDRIVE,
            "credentials": cipher.encrypt(dict(GRAPH_CREDENTIALS)),
            "source_path": "/Documents",
            "destinations": [],
            "extensions": [".docx", ".pdf"],
            "exclude_patterns": [],
            "status": SourceStatus.ACTIVE,
        }
        if "plain_credentials" in overrides:
            fields["credentials"] = cipher.encrypt(overrides.pop("plain_credentials"))
        fields.update(overrides)
        return await registry.create_source(**fields)

    return _make


# =============================================================================
# Fake connector
# =============================================================================

class FakeConnector(BaseConnector):
    """
    In-memory connector. Entries and file bodies come from the owning
    FakeConnectorFactory, so tests can change them between passes.
    """

    display_name = "Fake"

    def __init__(self, config: ConnectorConfig, factory: "FakeConnectorFactory"):
        super().__init__(config)
        self.platform = config.platform
        self.factory = factory
        self.released = False
        self.fetched: List[str] = []

    def _token_request(self):
        return {}

    async def authenticate(self) -> None:
        if self.factory.auth_error:
            raise AuthError(self.platform.value, "invalid_client")
        self._access_token = "fake-token"
        self._token_expires_at = self._clock() + 3600

    async def list_entries(self, path: Optional[str] = None, limit: Optional[int] = None) -> List[RemoteEntry]:
        if self.factory.list_auth_error:
            raise AuthError(self.platform.value, "token revoked")
        if self.factory.list_error is not None:
            raise self.factory.list_error
        self.factory.listing += 1
        self.factory.max_concurrent_lists = max(self.factory.max_concurrent_lists, self.factory.listing)
        try:
            if self.factory.list_gate is not None:
                await self.factory.list_gate.wait()
            entries = list(self.factory.entries)
        finally:
            self.factory.listing -= 1
        return entries[:limit] if limit else entries

    async def fetch_entry(self, entry_id: str, dest_dir: Union[str, Path]) -> Path:
        if entry_id in self.factory.fetch_failures:
            raise DownloadError(f"Download failed for {entry_id}")
        entry = next(e for e in self.factory.entries if e.id == entry_id)
        path = unique_temp_path(dest_dir, entry.name)
        path.write_bytes(self.factory.contents[entry_id])
        self.fetched.append(entry_id)
        return path

    async def release(self) -> None:
        self.released = True
        await super().release()


class FakeConnectorFactory:
    """create_connector-compatible factory recording every connector it builds."""

    def __init__(self):
        self.entries: List[RemoteEntry] = []
        self.contents: Dict[str, bytes] = {}
        self.fetch_failures: set = set()
        self.auth_error = False
        self.list_auth_error = False
        self.list_error: Optional[Exception] = None
        self.list_gate: Optional[asyncio.Event] = None
        self.listing = 0
        self.max_concurrent_lists = 0
        self.created: List[FakeConnector] = []

    def add_file(
        self,
        name: str,
        content: bytes,
        checksum: Optional[str] = None,
        platform: Platform = Platform.ONEDRIVE,
        folder: str = "/Documents",
    ) -> RemoteEntry:
        entry = RemoteEntry(
            id=f"id-{uuid.uuid4().hex[:8]}",
            name=name,
            path=f"{folder}/{name}",
            size=len(content),
            checksum=checksum or f"sum-{name}",
            platform=platform,
        )
        self.entries.append(entry)
        self.contents[entry.id] = content
        return entry

    def __call__(self, platform, credentials, source_path="/", site_url=None, drive_owner=None, config=None, **kwargs):
        connector = FakeConnector(
            ConnectorConfig(
                platform=platform,
                credentials=credentials,
                source_path=source_path or "/",
                site_url=site_url,
                drive_owner=drive_owner,
            ),
            self,
        )
        self.created.append(connector)
        return connector


@pytest.fixture
def fake_connectors() -> FakeConnectorFactory:
    return FakeConnectorFactory()


# =============================================================================
# Sample documents
# =============================================================================

@pytest.fixture
def docx_bytes(tmp_path) -> bytes:
    """A small Word document with a heading, a list and a table."""
    from docx import Document

    doc = Document()
    doc.core_properties.title = "Quarterly Plan"
    doc.core_properties.author = "Planning Team"
    doc.add_heading("Quarterly Plan", level=1)
    doc.add_paragraph("The plan covers three workstreams.")
    doc.add_paragraph("Hiring", style="List Bullet")
    doc.add_paragraph("Budget", style="List Bullet")
    table = doc.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Owner"
    table.cell(0, 1).text = "Due"
    table.cell(1, 0).text = "Ops"
    table.cell(1, 1).text = "June"
    path = tmp_path / "sample.docx"
    doc.save(str(path))
    return path.read_bytes()
