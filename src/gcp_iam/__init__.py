from gcp_iam.config import ConfigConfig
from gcp_iam.database import Database
from gcp_iam.errors import (
    AuthenticationFailure,
    ExternalToolFailure,
    GcpIamError,
    SyncFailure,
    TransportFailure,
)
from gcp_iam.fetcher import CatalogFetcher
from gcp_iam.models import Permission, Role, Service
from gcp_iam.store import Store
from gcp_iam.sync import SyncReport, Synchronizer


__all__ = [
    "AuthenticationFailure",
    "CatalogFetcher",
    "ConfigConfig",
    "Database",
    "ExternalToolFailure",
    "GcpIamError",
    "Permission",
    "Role",
    "Service",
    "Store",
    "SyncFailure",
    "SyncReport",
    "Synchronizer",
    "TransportFailure",
]
