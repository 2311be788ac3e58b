"""
docsync - Google Drive Connector
================================

Connects to Google Drive (API v3) over plain REST.

Features:
- OAuth 2.0 refresh-token grant
- Folder listing by folder id ("root" for My Drive)
- Export of Google Docs, Sheets and Slides to Office formats
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from docsync.db.models import Platform
from docsync.services.base import DownloadError
from docsync.services.connectors.base import BaseConnector, ConnectorConfig, RemoteEntry
from docsync.services.connectors.registry import ConnectorRegistry

logger = structlog.get_logger(__name__)

DRIVE_BASE_URL = "https://www.googleapis.com/drive/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

GOOGLE_APPS_PREFIX = "application/vnd.google-apps."
FOLDER_MIMETYPE = "application/vnd.google-apps.folder"

# Native Google formats and the Office export requested for each
GOOGLE_EXPORT_MIMETYPES = {
    "application/vnd.google-apps.document": {
        "export_mime": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "extension": ".docx",
    },
    "application/vnd.google-apps.spreadsheet": {
        "export_mime": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "extension": ".xlsx",
    },
    "application/vnd.google-apps.presentation": {
        "export_mime": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "extension": ".pptx",
    },
}

MAX_PAGE_SIZE = 1000
DEFAULT_PAGE_SIZE = 100

_LIST_FIELDS = "nextPageToken,files(id,name,size,modifiedTime,mimeType,md5Checksum,version,webViewLink)"


def exported_name(name: str, mime_type: Optional[str]) -> str:
    """Name a native Google file gets once exported ("Plan" -> "Plan.docx")."""
    export = GOOGLE_EXPORT_MIMETYPES.get(mime_type or "")
    if export is None:
        return name
    stem = name[: -len(Path(name).suffix)] if Path(name).suffix else name
    return stem + export["extension"]


@ConnectorRegistry.register(Platform.GOOGLE_DRIVE)
class GoogleDriveConnector(BaseConnector):
    """
    Google Drive connector.

    source_path is a folder id; "/" and "" mean the My Drive root.
    """

    platform = Platform.GOOGLE_DRIVE
    display_name = "Google Drive"
    token_url = GOOGLE_TOKEN_URL
    required_credentials = ("client_id", "client_secret", "refresh_token")

    def __init__(self, config: ConnectorConfig, **kwargs):
        super().__init__(config, **kwargs)

    def _token_request(self) -> Dict[str, str]:
        return {
            "client_id": self.credentials["client_id"],
            "client_secret": self.credentials["client_secret"],
            "refresh_token": self.credentials["refresh_token"],
            "grant_type": "refresh_token",
        }

    @staticmethod
    def _folder_id(path: Optional[str]) -> str:
        path = (path or "").strip().strip("/")
        return path or "root"

    async def list_entries(self, path: Optional[str] = None, limit: Optional[int] = None) -> List[RemoteEntry]:
        folder_id = self._folder_id(path if path is not None else self.config.source_path)
        escaped = folder_id.replace("\\", "\\\\").replace("'", "\\'")
        params: Dict[str, Any] = {
            "q": f"'{escaped}' in parents and trashed=false and mimeType!='{FOLDER_MIMETYPE}'",
            "fields": _LIST_FIELDS,
            "orderBy": "modifiedTime desc",
            "pageSize": min(limit, MAX_PAGE_SIZE) if limit else DEFAULT_PAGE_SIZE,
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        entries: List[RemoteEntry] = []

        while True:
            response = await self._request("GET", f"{DRIVE_BASE_URL}/files", params=params)
            data = response.json()
            for file in data.get("files", []):
                entries.append(self._parse_file(file, folder_id))
                if limit and len(entries) >= limit:
                    return entries

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token

        self.log_debug("Listed Drive files", folder_id=folder_id, count=len(entries))
        return entries

    def _parse_file(self, file: Dict[str, Any], folder_id: str) -> RemoteEntry:
        mime_type = file.get("mimeType")
        name = exported_name(file.get("name") or "Untitled", mime_type)

        checksum = file.get("md5Checksum")
        if not checksum and file.get("version"):
            # Native files have no md5; version bumps on every edit
            checksum = f"v{file['version']}"

        modified = None
        if file.get("modifiedTime"):
            modified = datetime.fromisoformat(file["modifiedTime"].replace("Z", "+00:00"))

        try:
            size = int(file.get("size") or 0)
        except (TypeError, ValueError):
            size = 0

        return RemoteEntry(
            id=file["id"],
            name=name,
            path=f"{folder_id}/{name}",
            size=size,
            modified_time=modified,
            checksum=checksum,
            mime_type=mime_type,
            platform=self.platform,
            web_url=file.get("webViewLink"),
        )

    async def fetch_entry(self, entry_id: str, dest_dir: Union[str, Path]) -> Path:
        response = await self._request(
            "GET",
            f"{DRIVE_BASE_URL}/files/{entry_id}",
            params={"fields": "id,name,mimeType,size", "supportsAllDrives": "true"},
        )
        info = response.json()
        mime_type = info.get("mimeType") or ""
        name = info.get("name") or entry_id

        if mime_type.startswith(GOOGLE_APPS_PREFIX):
            export = GOOGLE_EXPORT_MIMETYPES.get(mime_type)
            if export is None:
                raise DownloadError(
                    f"Unsupported Google Apps format: {mime_type}",
                    details={"entry_id": entry_id, "mime_type": mime_type},
                )
            return await self._stream_to_file(
                f"{DRIVE_BASE_URL}/files/{entry_id}/export",
                exported_name(name, mime_type),
                dest_dir,
                params={"mimeType": export["export_mime"]},
            )

        return await self._stream_to_file(
            f"{DRIVE_BASE_URL}/files/{entry_id}",
            name,
            dest_dir,
            params={"alt": "media", "supportsAllDrives": "true"},
        )
