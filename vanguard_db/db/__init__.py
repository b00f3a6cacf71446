"""
Database package initializer exposing the connection registry, the per-code
database client and the declarative base.
"""

from .base import Base
from .config import ConnectionDescriptor, ConnectionRegistry, DbKind
from .session import DatabaseClient, build_client, create_tables

# Import models to ensure they are registered with SQLAlchemy metadata
# when the db package is imported.
from . import models as models  # noqa: F401

__all__ = [
    "Base",
    "ConnectionDescriptor",
    "ConnectionRegistry",
    "DbKind",
    "DatabaseClient",
    "build_client",
    "create_tables",
    "models",
]
