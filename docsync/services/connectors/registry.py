"""
docsync - Connector Registry
============================

Central registry mapping platforms to connector implementations.
Adding a platform means registering one new class; nothing else changes.
"""

from typing import Any, Dict, List, Optional, Type

import httpx
import structlog

from docsync.core.config import Settings, settings as default_settings
from docsync.db.models import Platform
from docsync.services.base import ValidationError
from docsync.services.connectors.base import BaseConnector, ConnectorConfig

logger = structlog.get_logger(__name__)


class ConnectorRegistry:
    """
    Registry for connector types.

    Maintains a mapping of platforms to their implementations
    and provides factory methods for instantiation.
    """

    _connectors: Dict[Platform, Type[BaseConnector]] = {}

    @classmethod
    def register(cls, platform: Platform):
        """
        Decorator to register a connector class.

        Usage:
            @ConnectorRegistry.register(Platform.GOOGLE_DRIVE)
            class GoogleDriveConnector(BaseConnector):
                ...
        """
        def decorator(connector_class: Type[BaseConnector]):
            cls._connectors[platform] = connector_class
            logger.debug("Registered connector", platform=platform.value, cls=connector_class.__name__)
            return connector_class
        return decorator

    @classmethod
    def get(cls, platform: Platform) -> Optional[Type[BaseConnector]]:
        """Get a connector class by platform."""
        return cls._connectors.get(platform)

    @classmethod
    def platforms(cls) -> List[Platform]:
        return sorted(cls._connectors, key=lambda p: p.value)

    @classmethod
    def create(
        cls,
        config: ConnectorConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> BaseConnector:
        """
        Create a connector instance.

        Raises:
            ValidationError: no connector is registered for the platform
        """
        connector_class = cls.get(config.platform)
        if connector_class is None:
            raise ValidationError(f"Unsupported platform: {config.platform}", field="platform")
        return connector_class(config, transport=transport)


def parse_platform(value: Any) -> Platform:
    """Accept a Platform or its string value ("google-drive" is tolerated)."""
    if isinstance(value, Platform):
        return value
    normalized = str(value or "").strip().lower().replace("-", "").replace("_", "")
    for platform in Platform:
        if platform.value == normalized:
            return platform
    supported = ", ".join(p.value for p in Platform)
    raise ValidationError(f"Unsupported platform: {value}. Supported platforms: {supported}", field="platform")


def apply_credential_defaults(
    platform: Platform,
    credentials: Dict[str, Any],
    config: Optional[Settings] = None,
) -> Dict[str, Any]:
    """Fill missing application credentials from settings. Stored values win."""
    config = config or default_settings
    if platform in (Platform.SHAREPOINT, Platform.ONEDRIVE):
        defaults = {
            "client_id": config.MICROSOFT_CLIENT_ID,
            "client_secret": config.MICROSOFT_CLIENT_SECRET,
            "tenant_id": config.MICROSOFT_TENANT_ID,
        }
    else:
        defaults = {
            "client_id": config.GOOGLE_CLIENT_ID,
            "client_secret": config.GOOGLE_CLIENT_SECRET,
        }
    merged = dict(credentials or {})
    for key, value in defaults.items():
        if not merged.get(key) and value:
            merged[key] = value
    return merged


def validate_connector_config(
    platform: Any,
    credentials: Dict[str, Any],
    site_url: Optional[str] = None,
    config: Optional[Settings] = None,
) -> List[str]:
    """
    Return the list of problems with a connector configuration.

    Credentials are checked after settings defaults are applied, so a
    deployment-wide client id does not have to be stored per source.
    """
    try:
        platform = parse_platform(platform)
    except ValidationError as e:
        return [e.message]

    creds = apply_credential_defaults(platform, credentials, config)
    errors = []
    if platform == Platform.GOOGLE_DRIVE:
        required = ["client_id", "client_secret", "refresh_token"]
    elif creds.get("refresh_token"):
        required = ["client_id", "client_secret"]
    else:
        required = ["client_id", "client_secret", "tenant_id"]

    for key in required:
        if not creds.get(key):
            errors.append(f"Missing required field: credentials.{key}")
    if platform == Platform.SHAREPOINT and not site_url:
        errors.append("Missing required field: site_url")
    return errors


def create_connector(
    platform: Any,
    credentials: Dict[str, Any],
    source_path: str = "/",
    site_url: Optional[str] = None,
    drive_owner: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    config: Optional[Settings] = None,
) -> BaseConnector:
    """
    Convenience function to create a connector from plaintext credentials.
    """
    platform = parse_platform(platform)
    connector_config = ConnectorConfig(
        platform=platform,
        credentials=apply_credential_defaults(platform, credentials, config),
        source_path=source_path or "/",
        site_url=site_url,
        drive_owner=drive_owner,
    )
    return ConnectorRegistry.create(connector_config, transport=transport)


# Import connectors to register them
import docsync.services.connectors.onedrive  # noqa: E402,F401
import docsync.services.connectors.google_drive  # noqa: E402,F401
