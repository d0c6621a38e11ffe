"""anifunnel storage layer: async SQLite database for overrides and authentication."""

from anifunnel.storage.database import Database, OverrideConflictError, StorageError
from anifunnel.storage.models import Credential, Override

__all__ = [
    "Credential",
    "Database",
    "Override",
    "OverrideConflictError",
    "StorageError",
]
