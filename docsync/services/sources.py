"""
docsync - Source Service
========================

Create, update and inspect configured sources.

Everything that reaches the Registry has been validated here first:
platform, connector settings, extension allow-list, exclusion patterns
and export destinations. Credentials are encrypted before storage and
are only ever returned masked.
"""

import re
from typing import Any, Callable, Dict, List, Optional

from docsync.core.config import Settings, settings
from docsync.db.models import LogStatus, Platform, Source, SourceStatus, SyncAction
from docsync.db.repository import IdLike, Registry
from docsync.services.base import BaseService, ValidationError
from docsync.services.connectors.base import BaseConnector, ConnectionTestResult
from docsync.services.connectors.registry import (
    create_connector,
    parse_platform,
    validate_connector_config,
)
from docsync.services.encryption import (
    CredentialCipher,
    decrypt_credentials,
    encrypt_credentials,
    get_cipher,
    mask_credentials,
)
from docsync.utils.paths import validate_destination_path

# create_connector-compatible factory
ConnectorFactory = Callable[..., BaseConnector]

MAX_NAME_LENGTH = 255

_UPDATABLE_FIELDS = {
    "name",
    "platform",
    "credentials",
    "source_path",
    "site_url",
    "drive_owner",
    "destinations",
    "extensions",
    "exclude_patterns",
    "status",
}


def normalize_extensions(extensions: Optional[List[str]], default: Optional[List[str]] = None) -> List[str]:
    """Lower-case, dot-prefixed, de-duplicated. Empty input falls back to default."""
    result: List[str] = []
    for raw in extensions or []:
        ext = str(raw or "").strip().lower()
        if not ext.startswith("."):
            ext = "." + ext
        if len(ext) < 2 or "/" in ext or "\\" in ext or " " in ext:
            raise ValidationError(f"Invalid file extension: {raw!r}", field="extensions")
        if ext not in result:
            result.append(ext)
    if not result and default:
        return normalize_extensions(default)
    return result


def validate_exclude_patterns(patterns: Optional[List[str]]) -> List[str]:
    """Every pattern must compile as a regular expression."""
    result = []
    for pattern in patterns or []:
        try:
            re.compile(pattern)
        except (re.error, TypeError) as e:
            raise ValidationError(
                f"Invalid exclusion pattern {pattern!r}: {e}",
                field="exclude_patterns",
            ) from e
        result.append(pattern)
    return result


def validate_destinations(destinations: Optional[List[str]]) -> List[str]:
    result = []
    for destination in destinations or []:
        normalized = validate_destination_path(destination)
        if normalized not in result:
            result.append(normalized)
    return result


def decrypt_source_credentials(source: Source, cipher: CredentialCipher) -> Dict[str, Any]:
    """
    Raises:
        IntegrityError: the stored blob was tampered with, uses another key
            or does not hold a mapping
    """
    return decrypt_credentials(source.credentials, cipher)


def connector_for_source(
    source: Source,
    cipher: CredentialCipher,
    factory: ConnectorFactory = create_connector,
    config: Optional[Settings] = None,
) -> BaseConnector:
    """Build an unauthenticated connector from a stored source."""
    return factory(
        source.platform,
        decrypt_source_credentials(source, cipher),
        source_path=source.source_path,
        site_url=source.site_url,
        drive_owner=source.drive_owner,
        config=config,
    )


class SourceService(BaseService):
    """Configuration entry point for sources."""

    def __init__(
        self,
        registry: Registry,
        cipher: Optional[CredentialCipher] = None,
        connector_factory: ConnectorFactory = create_connector,
        config: Optional[Settings] = None,
    ):
        super().__init__()
        self.registry = registry
        self.cipher = cipher or get_cipher()
        self.connector_factory = connector_factory
        self.config = config or settings

    # =========================================================================
    # CRUD
    # =========================================================================

    async def create_source(
        self,
        name: str,
        platform: Any,
        credentials: Dict[str, Any],
        source_path: str = "/",
        site_url: Optional[str] = None,
        drive_owner: Optional[str] = None,
        destinations: Optional[List[str]] = None,
        extensions: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None,
        status: SourceStatus = SourceStatus.ACTIVE,
    ) -> Source:
        """
        Validate and store a new source.

        Raises:
            ValidationError: any field is invalid
        """
        platform = parse_platform(platform)
        fields = {
            "name": self._validate_name(name),
            "platform": platform,
            "source_path": source_path or "/",
            "site_url": site_url,
            "drive_owner": drive_owner,
            "destinations": validate_destinations(destinations),
            "extensions": normalize_extensions(extensions, self.config.DEFAULT_EXTENSIONS),
            "exclude_patterns": validate_exclude_patterns(exclude_patterns),
            "status": status,
        }
        self._validate_connector(platform, credentials or {}, site_url)
        fields["credentials"] = encrypt_credentials(credentials, self.cipher)

        source = await self.registry.create_source(**fields)
        self.log_info("Source configured", source_id=str(source.id), name=source.name, platform=platform.value)
        return source

    async def update_source(self, source_id: IdLike, **changes: Any) -> Source:
        """
        Update a source. Passing ``credentials`` replaces the stored blob.

        Raises:
            NotFoundError: unknown source
            ValidationError: unknown or invalid field
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown source field: {', '.join(sorted(unknown))}", field=sorted(unknown)[0])

        source = await self.registry.get_source_or_raise(source_id)
        fields: Dict[str, Any] = {}

        if "name" in changes:
            fields["name"] = self._validate_name(changes["name"])
        if "platform" in changes:
            fields["platform"] = parse_platform(changes["platform"])
        if "source_path" in changes:
            fields["source_path"] = changes["source_path"] or "/"
        for key in ("site_url", "drive_owner"):
            if key in changes:
                fields[key] = changes[key]
        if "destinations" in changes:
            fields["destinations"] = validate_destinations(changes["destinations"])
        if "extensions" in changes:
            fields["extensions"] = normalize_extensions(changes["extensions"], self.config.DEFAULT_EXTENSIONS)
        if "exclude_patterns" in changes:
            fields["exclude_patterns"] = validate_exclude_patterns(changes["exclude_patterns"])
        if "status" in changes:
            fields["status"] = SourceStatus(changes["status"])

        if {"platform", "site_url", "credentials"} & set(changes):
            credentials = changes.get("credentials")
            if credentials is None:
                credentials = decrypt_source_credentials(source, self.cipher)
            self._validate_connector(
                fields.get("platform", source.platform),
                credentials,
                fields.get("site_url", source.site_url),
            )
            if "credentials" in changes:
                fields["credentials"] = encrypt_credentials(credentials, self.cipher)

        updated = await self.registry.update_source(source.id, **fields)
        self.log_info("Source updated", source_id=str(source.id), fields=sorted(fields))
        return updated

    async def get_source(self, source_id: IdLike) -> Source:
        return await self.registry.get_source_or_raise(source_id)

    async def list_sources(
        self,
        status: Optional[SourceStatus] = None,
        platform: Optional[Any] = None,
    ) -> List[Source]:
        return await self.registry.list_sources(
            status=status,
            platform=parse_platform(platform) if platform is not None else None,
        )

    async def delete_source(self, source_id: IdLike) -> bool:
        return await self.registry.delete_source(source_id)

    async def describe_source(self, source_id: IdLike) -> Dict[str, Any]:
        """Source as a dict with credentials masked."""
        source = await self.registry.get_source_or_raise(source_id)
        try:
            credentials = mask_credentials(decrypt_source_credentials(source, self.cipher))
        except Exception as e:
            self.log_warning("Stored credentials unreadable", source_id=str(source.id), error=str(e))
            credentials = {"error": "unreadable"}
        return {
            "id": str(source.id),
            "name": source.name,
            "platform": source.platform.value,
            "source_path": source.source_path,
            "site_url": source.site_url,
            "drive_owner": source.drive_owner,
            "destinations": list(source.destinations or []),
            "extensions": list(source.extensions or []),
            "exclude_patterns": list(source.exclude_patterns or []),
            "status": source.status.value,
            "last_sync_at": source.last_sync_at.isoformat() if source.last_sync_at else None,
            "credentials": credentials,
        }

    # =========================================================================
    # Connection tests
    # =========================================================================

    async def test_credentials(
        self,
        platform: Any,
        credentials: Dict[str, Any],
        source_path: str = "/",
        site_url: Optional[str] = None,
        drive_owner: Optional[str] = None,
    ) -> ConnectionTestResult:
        """Test unsaved credentials. Never raises for connection problems."""
        platform = parse_platform(platform)
        errors = validate_connector_config(platform, credentials or {}, site_url, self.config)
        if errors:
            return ConnectionTestResult(
                ok=False,
                message="; ".join(errors),
                platform=platform,
                error_code="validation_error",
                details={"errors": errors},
            )

        connector = self.connector_factory(
            platform,
            credentials,
            source_path=source_path,
            site_url=site_url,
            drive_owner=drive_owner,
            config=self.config,
        )
        try:
            return await connector.test_connection()
        finally:
            await connector.release()

    async def test_connection(self, source_id: IdLike) -> ConnectionTestResult:
        """Test a stored source and record the outcome as a SyncLog."""
        source = await self.registry.get_source_or_raise(source_id)
        connector = connector_for_source(source, self.cipher, self.connector_factory, self.config)
        try:
            result = await connector.test_connection()
        finally:
            await connector.release()

        await self.registry.append_log(
            source.id,
            SyncAction.TEST_CONNECTION,
            LogStatus.SUCCESS if result.ok else LogStatus.ERROR,
            result.message,
            details={"sample_count": result.sample_count, "error_code": result.error_code},
        )
        return result

    # =========================================================================
    # Validation
    # =========================================================================

    @staticmethod
    def _validate_name(name: Any) -> str:
        name = str(name or "").strip()
        if not name:
            raise ValidationError("Source name is required", field="name")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Source name is too long (max {MAX_NAME_LENGTH} characters)", field="name")
        return name

    def _validate_connector(self, platform: Platform, credentials: Dict[str, Any], site_url: Optional[str]) -> None:
        errors = validate_connector_config(platform, credentials, site_url, self.config)
        if errors:
            raise ValidationError(
                "Invalid connector configuration: " + "; ".join(errors),
                field="credentials",
                details={"errors": errors},
            )
