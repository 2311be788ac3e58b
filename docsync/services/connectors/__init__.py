"""
docsync - Connector Framework
=============================

Remote storage connectors behind one capability set.

Supported platforms:
- SharePoint document libraries (Microsoft Graph, site-scoped drive)
- OneDrive (Microsoft Graph, personal drive)
- Google Drive
"""

from docsync.services.connectors.base import (
    BaseConnector,
    ConnectionTestResult,
    ConnectorConfig,
    RemoteEntry,
    WatchHandle,
)
from docsync.services.connectors.registry import (
    ConnectorRegistry,
    create_connector,
    parse_platform,
    validate_connector_config,
)
from docsync.services.connectors.onedrive import GraphConnector
from docsync.services.connectors.google_drive import GoogleDriveConnector

__all__ = [
    # Base classes
    "BaseConnector",
    "ConnectionTestResult",
    "ConnectorConfig",
    "RemoteEntry",
    "WatchHandle",
    # Registry
    "ConnectorRegistry",
    "create_connector",
    "parse_platform",
    "validate_connector_config",
    # Connectors
    "GraphConnector",
    "GoogleDriveConnector",
]
