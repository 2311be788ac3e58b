"""
docsync - Base Connector
========================

Abstract base class for remote storage connectors.

Provides a unified interface for:
- Authentication (short-lived token from the platform token endpoint)
- Listing files in a folder
- Downloading a file to a local temp path
- Polling-based change detection
"""

import asyncio
import time
from abc import abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import structlog
from pydantic import BaseModel, Field

from docsync.core.config import settings
from docsync.db.models import Platform
from docsync.services.base import (
    AuthError,
    BaseService,
    DownloadError,
    ServiceException,
)
from docsync.utils.async_helpers import cancel_and_wait, create_safe_task, maybe_await
from docsync.utils.paths import unique_temp_path

logger = structlog.get_logger(__name__)

# Re-authenticate when the cached token expires within this many seconds
TOKEN_REFRESH_MARGIN_SECONDS = 30

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

# Token endpoint answers that mean "the stored secret is bad"
_AUTH_FAILURE_STATUSES = {400, 401, 403}


class RemoteEntry(BaseModel):
    """A file in remote storage, normalised across platforms."""
    id: str
    name: str
    path: str
    size: int = 0
    modified_time: Optional[datetime] = None
    checksum: Optional[str] = None
    mime_type: Optional[str] = None
    platform: Platform
    web_url: Optional[str] = None

    @property
    def extension(self) -> str:
        return Path(self.name).suffix.lower()


class ConnectionTestResult(BaseModel):
    """Outcome of test_connection(). Failures are data, not exceptions."""
    ok: bool
    message: str
    platform: Platform
    sample_count: int = 0
    error_code: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ConnectorConfig(BaseModel):
    """Configuration for a connector instance. Credentials are plaintext here."""
    platform: Platform
    credentials: Dict[str, Any] = Field(default_factory=dict)
    source_path: str = "/"
    site_url: Optional[str] = None
    drive_owner: Optional[str] = None
    timeout: float = Field(default_factory=lambda: settings.HTTP_TIMEOUT_SECONDS)
    watch_interval: float = Field(default_factory=lambda: settings.WATCH_INTERVAL_SECONDS)


ChangeCallback = Callable[[List[RemoteEntry]], Union[None, Awaitable[None]]]


class WatchHandle:
    """Cancellation handle for a running change watch."""

    def __init__(self, task: asyncio.Task, path: str):
        self._task = task
        self.path = path

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()

    async def stop(self) -> None:
        """Cancel and wait for the polling task to unwind."""
        await cancel_and_wait(self._task)


def entry_changed(previous: Optional[RemoteEntry], current: RemoteEntry) -> bool:
    """True for a new id, a different checksum or a newer modified time."""
    if previous is None:
        return True
    if current.checksum and previous.checksum and current.checksum != previous.checksum:
        return True
    if current.modified_time and previous.modified_time:
        return current.modified_time > previous.modified_time
    return False


class BaseConnector(BaseService):
    """
    Abstract base class for storage connectors.

    All connectors must implement:
    - _token_request(): form data for the token endpoint
    - list_entries(): list files (never folders) under a path
    - fetch_entry(): download one file to a local temp file

    Token handling, HTTP error mapping, connection tests and the
    polling watch are shared.
    """

    platform: Platform = None
    display_name: str = "Base Connector"
    token_url: str = ""
    required_credentials: tuple = ()

    def __init__(
        self,
        config: ConnectorConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(platform=config.platform.value)
        self.config = config
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._auth_lock = asyncio.Lock()
        self._watches: List[WatchHandle] = []

    @property
    def credentials(self) -> Dict[str, Any]:
        return self.config.credentials

    @property
    def is_authenticated(self) -> bool:
        return self._access_token is not None and not self._token_stale()

    # =========================================================================
    # HTTP / token plumbing
    # =========================================================================

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    def _token_stale(self) -> bool:
        return self._clock() >= self._token_expires_at - TOKEN_REFRESH_MARGIN_SECONDS

    def _missing_credentials(self) -> List[str]:
        return [key for key in self.required_credentials if not self.credentials.get(key)]

    @abstractmethod
    def _token_request(self) -> Dict[str, str]:
        """Form fields posted to token_url."""

    def _token_endpoint(self) -> str:
        return self.token_url

    async def _after_authenticate(self) -> None:
        """Hook run after a fresh token is obtained (e.g. resolve a site id)."""

    async def authenticate(self) -> None:
        """
        Obtain a fresh access token.

        Raises:
            AuthError: missing credential fields or the platform rejected them
            DownloadError: the token endpoint was unreachable
        """
        missing = self._missing_credentials()
        if missing:
            raise AuthError(
                self.platform.value,
                f"{self.display_name} requires {', '.join(missing)}",
                details={"missing": missing},
            )

        client = self._get_client()
        try:
            response = await client.post(
                self._token_endpoint(),
                data=self._token_request(),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise DownloadError(f"Token endpoint unreachable: {e}") from e

        if response.status_code in _AUTH_FAILURE_STATUSES:
            raise AuthError(
                self.platform.value,
                f"Authentication rejected by {self.display_name} ({response.status_code})",
                details={"status": response.status_code, "body": _error_body(response)},
            )
        if response.status_code >= 400:
            raise DownloadError(
                f"Token endpoint returned {response.status_code}",
                details={"status": response.status_code},
            )

        data = response.json()
        token = data.get("access_token")
        if not token:
            raise AuthError(self.platform.value, "Token endpoint returned no access token")

        self._access_token = token
        self._token_expires_at = self._clock() + float(data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        if data.get("refresh_token"):
            # Some grants rotate the refresh token
            self.credentials["refresh_token"] = data["refresh_token"]

        await self._after_authenticate()
        self.log_debug("Authenticated", expires_in=data.get("expires_in"))

    async def _ensure_token(self) -> str:
        """Never let a call proceed on a token known to be stale."""
        async with self._auth_lock:
            if self._access_token is None or self._token_stale():
                await self.authenticate()
            return self._access_token

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Authenticated request with status mapping.

        A 401 triggers one re-authentication and retry; a second 401/403
        is an AuthError. Other error statuses and transport failures are
        DownloadErrors.
        """
        for attempt in range(2):
            token = await self._ensure_token()
            headers = dict(kwargs.pop("headers", None) or {})
            headers["Authorization"] = f"Bearer {token}"
            try:
                response = await self._get_client().request(method, url, headers=headers, **kwargs)
            except httpx.HTTPError as e:
                raise DownloadError(f"{method} {url} failed: {e}", details={"url": url}) from e

            if response.status_code == 401 and attempt == 0:
                self._access_token = None
                kwargs["headers"] = {k: v for k, v in headers.items() if k != "Authorization"}
                continue
            break

        if response.status_code in (401, 403):
            raise AuthError(
                self.platform.value,
                f"Access denied by {self.display_name} ({response.status_code})",
                details={"url": url, "status": response.status_code},
            )
        if response.status_code >= 400:
            raise DownloadError(
                f"{self.display_name} returned {response.status_code} for {url}",
                details={"url": url, "status": response.status_code, "body": _error_body(response)},
            )
        return response

    async def _stream_to_file(
        self,
        url: str,
        name: str,
        dest_dir: Union[str, Path],
        authenticated: bool = True,
        params: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Stream url into a unique file under dest_dir."""
        target = unique_temp_path(dest_dir, name)
        headers = {}
        if authenticated:
            headers["Authorization"] = f"Bearer {await self._ensure_token()}"

        try:
            async with self._get_client().stream("GET", url, headers=headers, params=params) as response:
                if response.status_code >= 400:
                    raise DownloadError(
                        f"Download of {name} failed with status {response.status_code}",
                        details={"status": response.status_code},
                    )
                with open(target, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            target.unlink(missing_ok=True)
            raise DownloadError(f"Download of {name} failed: {e}") from e
        except DownloadError:
            target.unlink(missing_ok=True)
            raise

        self.log_debug("Downloaded file", file_name=name, local_path=str(target), size=target.stat().st_size)
        return target

    # =========================================================================
    # Capability set
    # =========================================================================

    async def test_connection(self) -> ConnectionTestResult:
        """Authenticate and perform one cheap listing. Never raises."""
        try:
            await self.authenticate()
            sample = await self.list_entries(self.config.source_path, limit=1)
            return ConnectionTestResult(
                ok=True,
                message="Connection successful",
                platform=self.platform,
                sample_count=len(sample),
            )
        except AuthError as e:
            return ConnectionTestResult(
                ok=False,
                message=e.message,
                platform=self.platform,
                error_code="auth_error",
                details=e.details,
            )
        except ServiceException as e:
            return ConnectionTestResult(
                ok=False,
                message=e.message,
                platform=self.platform,
                error_code=e.code.lower(),
                details=e.details,
            )
        except Exception as e:
            self.log_error("Connection test failed unexpectedly", error=e)
            return ConnectionTestResult(
                ok=False,
                message=str(e) or type(e).__name__,
                platform=self.platform,
                error_code="unexpected_error",
            )

    @abstractmethod
    async def list_entries(self, path: Optional[str] = None, limit: Optional[int] = None) -> List[RemoteEntry]:
        """
        List files under path, following pagination.

        Folders are never returned.
        """

    @abstractmethod
    async def fetch_entry(self, entry_id: str, dest_dir: Union[str, Path]) -> Path:
        """
        Download an entry to a unique local file.

        Raises:
            DownloadError: transport failure or no retrievable content
        """

    def watch_for_changes(
        self,
        path: Optional[str],
        callback: ChangeCallback,
        interval: Optional[float] = None,
    ) -> WatchHandle:
        """
        Poll path and call callback with each non-empty batch of changes.

        The first poll only records a baseline.
        """
        path = path if path is not None else self.config.source_path
        interval = interval if interval is not None else self.config.watch_interval
        task = create_safe_task(
            self._watch_loop(path, callback, interval),
            name=f"watch_{self.platform.value}_{path}",
        )
        handle = WatchHandle(task, path)
        self._watches.append(handle)
        self.log_info("Change watch started", path=path, interval=interval)
        return handle

    async def _watch_loop(self, path: str, callback: ChangeCallback, interval: float) -> None:
        snapshot: Optional[Dict[str, RemoteEntry]] = None
        while True:
            try:
                entries = await self.list_entries(path)
                if snapshot is not None:
                    changed = [e for e in entries if entry_changed(snapshot.get(e.id), e)]
                    if changed:
                        self.log_info("Changes detected", path=path, count=len(changed))
                        await maybe_await(callback(changed))
                snapshot = {e.id: e for e in entries}
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log_warning("Change watch poll failed", path=path, error=str(e))
            await asyncio.sleep(interval)

    async def release(self) -> None:
        """Discard cached tokens, stop watches and close the HTTP client."""
        for handle in self._watches:
            await handle.stop()
        self._watches.clear()
        self._access_token = None
        self._token_expires_at = 0.0
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.log_debug("Connector released")

    async def __aenter__(self) -> "BaseConnector":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]
