"""
docsync - OneDrive/SharePoint Connector
=======================================

Connector for Microsoft OneDrive and SharePoint document libraries.

Both products expose the same Microsoft Graph drive API; the only
difference is the drive root:
- Personal drive: /me/drive (or /users/{owner}/drive)
- Site-scoped drive: /sites/{site_id}/drive, site id resolved from the site URL
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, urlparse

import structlog

from docsync.db.models import Platform
from docsync.services.base import AuthError, DownloadError
from docsync.services.connectors.base import (
    BaseConnector,
    ConnectorConfig,
    RemoteEntry,
)
from docsync.services.connectors.registry import ConnectorRegistry

logger = structlog.get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
LOGIN_BASE_URL = "https://login.microsoftonline.com"
GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
DELEGATED_SCOPE = "Files.Read.All Sites.Read.All offline_access"

# Graph caps $top for children listings
MAX_PAGE_SIZE = 200

_SELECT_FIELDS = "id,name,size,lastModifiedDateTime,file,folder,webUrl,cTag,eTag"


@ConnectorRegistry.register(Platform.SHAREPOINT)
@ConnectorRegistry.register(Platform.ONEDRIVE)
class GraphConnector(BaseConnector):
    """
    Connector for Microsoft OneDrive and SharePoint.

    Uses the client-credentials grant, or the refresh-token grant when a
    refresh token is stored with the credentials.
    """

    display_name = "OneDrive / SharePoint"

    def __init__(self, config: ConnectorConfig, **kwargs):
        super().__init__(config, **kwargs)
        self.platform = config.platform
        self.personal = config.platform == Platform.ONEDRIVE
        self.display_name = "OneDrive" if self.personal else "SharePoint"
        self._site_id: Optional[str] = None

    @property
    def required_credentials(self) -> tuple:
        if self.credentials.get("refresh_token"):
            return ("client_id", "client_secret")
        return ("client_id", "client_secret", "tenant_id")

    def _missing_credentials(self) -> List[str]:
        missing = super()._missing_credentials()
        if not self.personal and not self.config.site_url:
            missing.append("site_url")
        return missing

    def _token_endpoint(self) -> str:
        tenant = self.credentials.get("tenant_id") or "common"
        return f"{LOGIN_BASE_URL}/{tenant}/oauth2/v2.0/token"

    def _token_request(self) -> Dict[str, str]:
        data = {
            "client_id": self.credentials["client_id"],
            "client_secret": self.credentials["client_secret"],
        }
        if self.credentials.get("refresh_token"):
            data.update(
                grant_type="refresh_token",
                refresh_token=self.credentials["refresh_token"],
                scope=DELEGATED_SCOPE,
            )
        else:
            data.update(grant_type="client_credentials", scope=GRAPH_DEFAULT_SCOPE)
        return data

    async def _resolve_site_id(self) -> str:
        """Resolve the Graph site id from site_url (cached until release)."""
        if self._site_id is None:
            parsed = urlparse(self.config.site_url or "")
            if not parsed.hostname:
                raise AuthError(self.platform.value, f"Invalid SharePoint site URL: {self.config.site_url!r}")
            site_path = parsed.path.rstrip("/")
            url = f"{GRAPH_BASE_URL}/sites/{parsed.hostname}"
            if site_path:
                url += f":{quote(site_path)}"
            response = await self._request("GET", url)
            self._site_id = response.json()["id"]
            self.log_debug("Resolved SharePoint site", site_id=self._site_id)
        return self._site_id

    async def _drive_base(self) -> str:
        if self.personal:
            if self.config.drive_owner:
                return f"{GRAPH_BASE_URL}/users/{quote(self.config.drive_owner)}/drive"
            return f"{GRAPH_BASE_URL}/me/drive"
        return f"{GRAPH_BASE_URL}/sites/{await self._resolve_site_id()}/drive"

    @staticmethod
    def _normalize_folder(path: Optional[str]) -> str:
        path = (path or "/").replace("\\", "/").strip()
        if path in ("", "/"):
            return "/"
        return "/" + path.strip("/")

    async def list_entries(self, path: Optional[str] = None, limit: Optional[int] = None) -> List[RemoteEntry]:
        folder = self._normalize_folder(path if path is not None else self.config.source_path)
        base = await self._drive_base()
        if folder == "/":
            url = f"{base}/root/children"
        else:
            url = f"{base}/root:{quote(folder)}:/children"

        params: Optional[Dict[str, Any]] = {
            "$select": _SELECT_FIELDS,
            "$top": min(limit, MAX_PAGE_SIZE) if limit else MAX_PAGE_SIZE,
        }
        entries: List[RemoteEntry] = []

        while url:
            response = await self._request("GET", url, params=params)
            data = response.json()
            for item in data.get("value", []):
                entry = self._parse_drive_item(item, folder)
                if entry is not None:
                    entries.append(entry)
                    if limit and len(entries) >= limit:
                        return entries
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

        self.log_debug("Listed drive items", folder=folder, count=len(entries))
        return entries

    def _parse_drive_item(self, item: Dict[str, Any], folder: str) -> Optional[RemoteEntry]:
        """Parse a drive item; folders and packages yield None."""
        if "folder" in item or "file" not in item:
            return None

        name = item.get("name") or "Untitled"
        file_facet = item.get("file") or {}
        hashes = file_facet.get("hashes") or {}
        checksum = (
            hashes.get("sha256Hash")
            or hashes.get("sha1Hash")
            or hashes.get("quickXorHash")
            or item.get("cTag")
            or item.get("eTag")
        )

        modified = None
        if item.get("lastModifiedDateTime"):
            modified = datetime.fromisoformat(item["lastModifiedDateTime"].replace("Z", "+00:00"))

        return RemoteEntry(
            id=item["id"],
            name=name,
            path=f"{folder.rstrip('/')}/{name}",
            size=item.get("size") or 0,
            modified_time=modified,
            checksum=checksum,
            mime_type=file_facet.get("mimeType"),
            platform=self.platform,
            web_url=item.get("webUrl"),
        )

    async def fetch_entry(self, entry_id: str, dest_dir: Union[str, Path]) -> Path:
        base = await self._drive_base()
        response = await self._request("GET", f"{base}/items/{quote(entry_id)}")
        info = response.json()

        if "folder" in info:
            raise DownloadError(f"{info.get('name', entry_id)} is a folder", details={"entry_id": entry_id})

        download_url = info.get("@microsoft.graph.downloadUrl")
        if not download_url:
            raise DownloadError(
                "No download URL available for this file",
                details={"entry_id": entry_id},
            )

        # Pre-authenticated URL; sending the bearer token to it is rejected
        return await self._stream_to_file(
            download_url,
            info.get("name") or entry_id,
            dest_dir,
            authenticated=False,
        )

    async def release(self) -> None:
        self._site_id = None
        await super().release()
